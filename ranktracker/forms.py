from django import forms

from .conf import get_config
from .models import DiscoveryMethod, Platform

COUNTRY_CHOICES = [
    ("us", "🇺🇸 United States"),
    ("gb", "🇬🇧 United Kingdom"),
    ("ca", "🇨🇦 Canada"),
    ("au", "🇦🇺 Australia"),
    ("de", "🇩🇪 Germany"),
    ("fr", "🇫🇷 France"),
    ("jp", "🇯🇵 Japan"),
    ("kr", "🇰🇷 South Korea"),
    ("cn", "🇨🇳 China"),
    ("br", "🇧🇷 Brazil"),
    ("in", "🇮🇳 India"),
    ("mx", "🇲🇽 Mexico"),
    ("es", "🇪🇸 Spain"),
    ("it", "🇮🇹 Italy"),
    ("nl", "🇳🇱 Netherlands"),
    ("se", "🇸🇪 Sweden"),
    ("no", "🇳🇴 Norway"),
    ("dk", "🇩🇰 Denmark"),
    ("fi", "🇫🇮 Finland"),
    ("pt", "🇵🇹 Portugal"),
    ("ru", "🇷🇺 Russia"),
    ("tr", "🇹🇷 Turkey"),
    ("sa", "🇸🇦 Saudi Arabia"),
    ("ae", "🇦🇪 UAE"),
    ("sg", "🇸🇬 Singapore"),
    ("th", "🇹🇭 Thailand"),
    ("id", "🇮🇩 Indonesia"),
    ("ph", "🇵🇭 Philippines"),
    ("vn", "🇻🇳 Vietnam"),
    ("tw", "🇹🇼 Taiwan"),
]


class RegionField(forms.ChoiceField):
    """Storefront country code, lower-cased, defaulting to ``us``."""

    def __init__(self, **kwargs):
        kwargs.setdefault("choices", COUNTRY_CHOICES)
        kwargs.setdefault("required", False)
        super().__init__(**kwargs)

    def to_python(self, value):
        return (super().to_python(value) or "us").strip().lower()


class DiscoverForm(forms.Form):
    """Run keyword discovery for one app."""

    app_id = forms.IntegerField()
    platform = forms.ChoiceField(choices=Platform.choices, required=False)
    region = RegionField()
    max_candidates = forms.IntegerField(required=False, min_value=1, max_value=100)
    background = forms.BooleanField(required=False)

    def clean_max_candidates(self):
        value = self.cleaned_data.get("max_candidates")
        return value or get_config()["DISCOVERY_MAX_CANDIDATES"]


class TrackKeywordForm(forms.Form):
    """One keyword to start (or resume) tracking."""

    app_id = forms.IntegerField()
    keyword = forms.CharField(max_length=200)
    platform = forms.ChoiceField(choices=Platform.choices, required=False)
    region = RegionField()
    discovery_method = forms.CharField(required=False)

    def clean_keyword(self):
        keyword = self.cleaned_data["keyword"].strip().lower()
        if not keyword:
            raise forms.ValidationError("Keyword is empty.")
        return keyword

    def clean_discovery_method(self):
        method = self.cleaned_data.get("discovery_method") or ""
        if method and method not in DiscoveryMethod.values:
            raise forms.ValidationError(f"Unknown discovery method '{method}'.")
        return method


class RankingRangeForm(forms.Form):
    """Optional ``start``/``end`` dates (YYYY-MM-DD) for ranking history."""

    start = forms.DateField(required=False)
    end = forms.DateField(required=False)

    def clean(self):
        cleaned = super().clean()
        start, end = cleaned.get("start"), cleaned.get("end")
        if start and end and start > end:
            raise forms.ValidationError("start must not be after end.")
        return cleaned
