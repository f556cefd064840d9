"""
Tests for the storefront search client and its parser strategies.

HTTP is stubbed by patching ``requests.get`` inside ranktracker.serp.
"""

import json
from unittest.mock import MagicMock, patch

import pytest
import requests

from ranktracker.exceptions import (
    NetworkTimeout,
    NetworkUnreachable,
    NotFound,
    ParseFailure,
    RateLimited,
)
from ranktracker.ratelimit import RateLimiter
from ranktracker.serp import (
    USER_AGENTS,
    ItunesPatternStrategy,
    PlayHtmlStrategy,
    SerpClient,
)


def itunes_body(count, target_position=None, target_id="1234567890"):
    results = []
    for position in range(1, count + 1):
        track_id = int(target_id) if position == target_position else 500000 + position
        results.append({
            "trackId": track_id,
            "trackName": f"App {position}",
            "artistName": f"Dev {position}",
            "averageUserRating": 4.5,
            "userRatingCount": 1000 * position,
            "primaryGenreName": "Health & Fitness",
        })
    return json.dumps({"resultCount": count, "results": results})


PLAY_HTML = """
<html><body>
<div class="card">
  <a href="/store/apps/details?id=com.fit.tracker" aria-label="Fit Tracker Pro"><img src="x.png"></a>
  <a href="/store/apps/details?id=com.fit.tracker"><span>Fit Tracker Pro</span></a>
  <div aria-label="Rated 4.6 stars out of five stars"></div>
  <span>12K reviews</span>
</div>
<div class="card">
  <a href="/store/apps/details?id=com.steps.counter&amp;hl=en"><span>Step Counter</span></a>
</div>
</body></html>
"""

# Play sometimes ships results only inside inline script data.
PLAY_SCRIPT_ONLY = r"""
<html><body><script>
AF_initDataCallback({data: ["/store/apps/details?id=com.alpha.app", "x",
"/store/apps/details?id=com.beta.app", "/store/apps/details?id=com.alpha.app"]});
</script></body></html>
"""


def ok(text):
    response = MagicMock()
    response.status_code = 200
    response.text = text
    response.iter_content.return_value = [text.encode()]
    return response


def status(code):
    response = MagicMock()
    response.status_code = code
    response.text = ""
    response.iter_content.return_value = []
    return response


@pytest.fixture
def client():
    limiters = {
        "ios": RateLimiter(600_000, name="ios-test"),
        "android": RateLimiter(600_000, name="android-test"),
    }
    return SerpClient(limiters, timeout=5)


# =============================================================================
# iOS
# =============================================================================


class TestItunes:

    @patch("ranktracker.serp.requests.get")
    def test_structured_parse(self, mock_get, client):
        mock_get.return_value = ok(itunes_body(20, target_position=7))

        result = client.fetch_ranking("fitness tracker", "ios", "US")

        assert result.strategy == "itunes_json"
        assert result.total_results == 20
        assert [i.position for i in result.items] == list(range(1, 21))
        assert result.position_of("1234567890") == 7
        first = result.items[0]
        assert first.name == "App 1"
        assert first.developer == "Dev 1"
        assert first.rating_count == 1000
        assert first.category == "Health & Fitness"

    @patch("ranktracker.serp.requests.get")
    def test_repeated_track_id_listed_once(self, mock_get, client):
        payload = json.loads(itunes_body(8))
        payload["results"][1]["trackId"] = 901
        payload["results"][6]["trackId"] = 901
        mock_get.return_value = ok(json.dumps(payload))

        result = client.fetch_ranking("fitness tracker", "ios", "us")

        app_ids = [i.app_id for i in result.items]
        assert app_ids.count("901") == 1
        assert len(app_ids) == len(set(app_ids)) == 7
        assert result.position_of("901") == 2
        assert [i.position for i in result.items] == list(range(1, 8))

    @patch("ranktracker.serp.requests.get")
    def test_request_shape(self, mock_get, client):
        mock_get.return_value = ok(itunes_body(3))

        client.fetch_ranking("fitness tracker", "ios", "gb", depth=25)

        args, kwargs = mock_get.call_args
        assert args[0] == "https://itunes.apple.com/search"
        assert kwargs["params"]["term"] == "fitness tracker"
        assert kwargs["params"]["country"] == "gb"
        assert kwargs["params"]["limit"] == 25
        assert kwargs["timeout"] == 5
        assert kwargs["stream"] is True
        assert kwargs["headers"]["User-Agent"] in USER_AGENTS

    @patch("ranktracker.serp.requests.get")
    def test_depth_capped_at_fifty(self, mock_get, client):
        mock_get.return_value = ok(itunes_body(60, target_position=55))

        result = client.fetch_ranking("fitness tracker", "ios", "us", depth=200)

        assert len(result.items) == 50
        assert mock_get.call_args.kwargs["params"]["limit"] == 50
        # Beyond the cap is "not ranking", never a large number.
        assert result.position_of("1234567890") is None

    @patch("ranktracker.serp.requests.get")
    def test_falls_back_to_pattern_on_truncated_json(self, mock_get, client):
        body = (
            '{"resultCount":2,"results":[{"trackId":111,"trackName":"Alpha",'
            '"userRatingCount":50},{"artistName":"Beta Inc","trackId":222,"trackName":"Be'
        )
        mock_get.return_value = ok(body)

        result = client.fetch_ranking("alpha", "ios", "us")

        assert result.strategy == "itunes_pattern"
        assert [i.app_id for i in result.items] == ["111", "222"]
        assert result.items[0].name == "Alpha"
        assert result.items[0].rating_count == 50
        assert result.items[1].developer == "Beta Inc"
        assert result.items[1].name == ""

    @patch("ranktracker.serp.requests.get")
    def test_falls_back_to_links_in_html(self, mock_get, client):
        body = (
            '<a href="https://apps.apple.com/us/app/step-counter/id333">x</a>'
            '<a href="https://apps.apple.com/us/app/run-club/id444">y</a>'
            '<a href="https://apps.apple.com/us/app/step-counter/id333">again</a>'
        )
        mock_get.return_value = ok(body)

        result = client.fetch_ranking("steps", "ios", "us")

        assert result.strategy == "itunes_pattern"
        assert [(i.position, i.app_id, i.name) for i in result.items] == [
            (1, "333", "Step Counter"),
            (2, "444", "Run Club"),
        ]

    @patch("ranktracker.serp.requests.get")
    def test_no_strategy_yields_results(self, mock_get, client):
        mock_get.return_value = ok('{"resultCount":0,"results":[]}')

        with pytest.raises(ParseFailure):
            client.fetch_ranking("zzzz", "ios", "us")

    @patch("ranktracker.serp.requests.get")
    def test_lookup_app(self, mock_get, client):
        response = ok("")
        response.json.return_value = {
            "results": [{
                "trackId": 1234567890,
                "trackName": "FitTrack - Step Counter",
                "description": "Track workouts.",
                "primaryGenreName": "Health & Fitness",
                "sellerName": "FitCo",
                "bundleId": "com.fitco.fittrack",
                "userRatingCount": 3000,
            }]
        }
        mock_get.return_value = response

        listing = client.lookup_app("1234567890", "ios", "us")

        assert mock_get.call_args.args[0] == "https://itunes.apple.com/lookup"
        assert listing["name"] == "FitTrack - Step Counter"
        assert listing["subtitle"] == "Step Counter"
        assert listing["category"] == "Health & Fitness"
        assert listing["rating_count"] == 3000

    @patch("ranktracker.serp.requests.get")
    def test_lookup_not_supported_on_android(self, mock_get, client):
        assert client.lookup_app("com.fit.tracker", "android") is None
        mock_get.assert_not_called()


# =============================================================================
# Android
# =============================================================================


class TestPlayStore:

    @patch("ranktracker.serp.requests.get")
    def test_structured_parse(self, mock_get, client):
        mock_get.return_value = ok(PLAY_HTML)

        result = client.fetch_ranking("fitness tracker", "android", "us")

        assert result.strategy == "play_html"
        assert [i.app_id for i in result.items] == ["com.fit.tracker", "com.steps.counter"]
        first = result.items[0]
        assert first.name == "Fit Tracker Pro"
        assert first.rating == 4.6
        assert first.rating_count == 12_000
        assert result.items[1].name == "Step Counter"

        params = mock_get.call_args.kwargs["params"]
        assert params == {"q": "fitness tracker", "c": "apps", "gl": "us", "hl": "en"}

    @patch("ranktracker.serp.requests.get")
    def test_falls_back_to_pattern(self, mock_get, client):
        mock_get.return_value = ok(PLAY_SCRIPT_ONLY)

        result = client.fetch_ranking("alpha", "android", "us")

        assert result.strategy == "play_pattern"
        assert [i.app_id for i in result.items] == ["com.alpha.app", "com.beta.app"]
        assert result.position_of("com.beta.app") == 2

    @patch("ranktracker.serp.requests.get")
    def test_empty_page_is_failure(self, mock_get, client):
        mock_get.return_value = ok("<html><body><p>No results</p></body></html>")

        with pytest.raises(ParseFailure):
            client.fetch_ranking("zzzz", "android", "us")


# =============================================================================
# Failure classification
# =============================================================================


class TestFailures:

    @pytest.mark.parametrize("code", [429, 503])
    @patch("ranktracker.serp.requests.get")
    def test_throttled(self, mock_get, code, client):
        mock_get.return_value = status(code)
        with pytest.raises(RateLimited) as exc:
            client.fetch_ranking("fitness", "ios", "us")
        assert exc.value.transient
        assert exc.value.surface == "ios"

    @patch("ranktracker.serp.requests.get")
    def test_not_found_is_permanent(self, mock_get, client):
        mock_get.return_value = status(404)
        with pytest.raises(NotFound) as exc:
            client.fetch_ranking("fitness", "ios", "us")
        assert not exc.value.transient

    @patch("ranktracker.serp.requests.get")
    def test_server_error(self, mock_get, client):
        mock_get.return_value = status(500)
        with pytest.raises(NetworkUnreachable):
            client.fetch_ranking("fitness", "android", "us")

    @patch("ranktracker.serp.requests.get")
    def test_timeout(self, mock_get, client):
        mock_get.side_effect = requests.Timeout("read timed out")
        with pytest.raises(NetworkTimeout):
            client.fetch_ranking("fitness", "ios", "us")

    @patch("ranktracker.serp.requests.get")
    def test_trickling_body_hits_total_deadline(self, mock_get):
        ticks = iter([0.0, 2.0, 4.0, 6.0])
        client = SerpClient(
            {"ios": RateLimiter(600_000, name="ios-test")}, timeout=5, clock=lambda: next(ticks)
        )
        response = ok("")
        response.iter_content.return_value = [b'{"resultCount":1,', b'"results":', b"[]}"]
        mock_get.return_value = response

        with pytest.raises(NetworkTimeout) as exc:
            client.fetch_ranking("fitness", "ios", "us")

        assert exc.value.transient
        response.close.assert_called_once()

    @patch("ranktracker.serp.requests.get")
    def test_connection_error(self, mock_get, client):
        mock_get.side_effect = requests.ConnectionError("refused")
        with pytest.raises(NetworkUnreachable):
            client.fetch_ranking("fitness", "ios", "us")

    @patch("ranktracker.serp.requests.get")
    def test_empty_keyword(self, mock_get, client):
        with pytest.raises(NotFound):
            client.fetch_ranking("   ", "ios", "us")
        mock_get.assert_not_called()

    def test_unknown_platform(self, client):
        with pytest.raises(ValueError):
            client.fetch_ranking("fitness", "windows", "us")


@patch("ranktracker.serp.requests.get")
def test_requests_go_through_the_surface_limiter(mock_get):
    mock_get.return_value = ok(itunes_body(3))
    ios_limiter = MagicMock()
    ios_limiter.execute.side_effect = lambda target, fn, *args, cancel_event=None, **kw: fn(*args, **kw)
    android_limiter = MagicMock()
    client = SerpClient({"ios": ios_limiter, "android": android_limiter})

    client.fetch_ranking("fitness", "ios", "us")

    assert ios_limiter.execute.call_count == 1
    assert ios_limiter.execute.call_args.args[0] == "ios"
    android_limiter.execute.assert_not_called()


class TestStrategiesDirectly:

    def test_pattern_strategy_unescapes_names(self):
        body = '{"trackId": 5, "trackName": "Caf\\u00e9 \\"Run\\""}'
        entries, _ = ItunesPatternStrategy().parse(body)
        assert entries[0]["name"] == 'Café "Run"'

    def test_play_html_ignores_foreign_links(self):
        entries, _ = PlayHtmlStrategy().parse('<a href="/store/books/details?id=b1">Book</a>')
        assert entries == []
