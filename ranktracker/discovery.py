"""
Keyword discovery.

Builds keyword candidates for an app from two sources and keeps the ones
the app already ranks for:

  - its own listing text (name, subtitle, first sentences of the
    description): meaningful words and 2/3-word phrases, confidence "high"
  - a static seed list for its store category, confidence "medium"

Every candidate is checked with the shared SerpClient, so discovery draws
from the same per-surface request budget as scheduled refreshes.  Nothing
is written; callers decide which results become TrackedKeyword rows.
"""

import logging
import re
from dataclasses import asdict, dataclass

from .conf import get_config
from .exceptions import NotFound, RankTrackingError, RequestCancelled

logger = logging.getLogger(__name__)

CONFIDENCE_HIGH = "high"
CONFIDENCE_MEDIUM = "medium"
_CONFIDENCE_RANK = {CONFIDENCE_HIGH: 0, CONFIDENCE_MEDIUM: 1}

SOURCE_LISTING = "listing"
SOURCE_CATEGORY = "category"

STOP_WORDS = {
    "a", "an", "the", "and", "or", "but", "in", "on", "at", "to", "for",
    "of", "with", "by", "from", "your", "you", "are", "can", "will", "is",
    "it", "its", "this", "that", "our", "all", "any", "more", "into", "as",
    "be", "we", "us", "my", "me", "so", "up", "out", "no", "not", "now",
    "just", "than", "then", "every", "each", "also", "get", "use",
}

# Words that carry no search intent on their own.
GENERIC_WORDS = {
    "app", "apps", "mobile", "free", "download", "best", "top", "new",
    "platform", "solution", "easy", "simple", "ultimate", "official",
    "version", "pro", "plus", "premium", "lite", "one", "way", "help",
    "make", "love", "daily", "today", "first",
}

LOW_VALUE_PHRASES = {
    "app store", "google play", "in app", "in-app purchases", "terms of use",
    "privacy policy", "free trial", "subscription auto", "auto renew",
    "apple watch", "per month", "per year", "contact us", "feel free",
}

# Store category -> seed keywords.  Keys are lower-cased store genres.
CATEGORY_SEEDS = {
    "productivity": [
        "task management", "time tracking", "project planning", "workflow automation",
        "team collaboration", "to do list", "habit tracker", "note taking",
    ],
    "health & fitness": [
        "fitness tracker", "workout planner", "health monitoring", "step counter",
        "nutrition guide", "exercise routine", "healthy habits", "calorie counter",
    ],
    "education": [
        "online learning", "study planner", "language learning", "flash cards",
        "skill development", "homework help", "math practice", "course creation",
    ],
    "entertainment": [
        "streaming", "movie tracker", "video editor", "live events",
        "trivia", "fan community", "tv guide", "podcasts",
    ],
    "games": [
        "puzzle games", "casual games", "strategy games", "word games",
        "offline games", "brain games", "multiplayer games", "idle games",
    ],
    "finance": [
        "budget planner", "expense tracker", "money manager", "bill reminder",
        "savings goals", "stock tracker", "personal finance", "invoice maker",
    ],
    "lifestyle": [
        "daily planner", "journal", "recipe organizer", "home organization",
        "meal planner", "gratitude journal", "mood tracker", "self care",
    ],
    "photo & video": [
        "photo editor", "video editor", "collage maker", "filters",
        "background remover", "slideshow maker", "photo filters", "video maker",
    ],
    "medical": [
        "symptom checker", "medication reminder", "pill reminder", "blood pressure",
        "period tracker", "health records", "telehealth", "sleep tracker",
    ],
    "travel": [
        "trip planner", "flight tracker", "travel guide", "packing list",
        "hotel booking", "offline maps", "itinerary", "currency converter",
    ],
}
CATEGORY_ALIASES = {
    "health and fitness": "health & fitness",
    "health_and_fitness": "health & fitness",
    "photography": "photo & video",
    "photo and video": "photo & video",
    "game": "games",
    "travel & local": "travel",
    "travel and local": "travel",
}

_TOKEN = re.compile(r"[a-z0-9]+(?:'[a-z0-9]+)*")
_SEGMENT_BREAK = re.compile(r"[.!?:;|,&()\[\]\n–—•]| - ")
_SENTENCE_END = re.compile(r"(?<=[.!?])\s+")


@dataclass
class Candidate:
    keyword: str
    confidence: str
    source: str


@dataclass
class DiscoveredKeyword:
    keyword: str
    position: int
    confidence: str
    source: str

    def as_dict(self) -> dict:
        return asdict(self)


def _is_meaningful(word: str) -> bool:
    return (
        len(word) >= 3
        and not word.isdigit()
        and word not in STOP_WORDS
        and word not in GENERIC_WORDS
    )


def _phrases(tokens: list[str], size: int) -> list[str]:
    found = []
    for i in range(len(tokens) - size + 1):
        window = tokens[i:i + size]
        if window[0] in STOP_WORDS or window[-1] in STOP_WORDS:
            continue
        if window[0] in GENERIC_WORDS or window[-1] in GENERIC_WORDS:
            continue
        if not any(_is_meaningful(w) for w in window):
            continue
        phrase = " ".join(window)
        if phrase not in LOW_VALUE_PHRASES:
            found.append(phrase)
    return found


def extract_listing_keywords(name: str = "", subtitle: str = "", description: str = "",
                             max_sentences: int = 3) -> list[str]:
    """
    Keyword candidates from listing text, most specific first.

    Phrases never span punctuation, so "Tracker: Steps" gives no
    "tracker steps".
    """
    lead = " ".join(_SENTENCE_END.split((description or "").strip())[:max_sentences])
    texts = [name or "", subtitle or "", lead]

    phrases, words = [], []
    for text in texts:
        for segment in _SEGMENT_BREAK.split(text.lower()):
            tokens = _TOKEN.findall(segment)
            phrases.extend(_phrases(tokens, 2))
            phrases.extend(_phrases(tokens, 3))
            words.extend(t for t in tokens if _is_meaningful(t))

    ordered, seen = [], set()
    for keyword in phrases + words:
        if keyword not in seen:
            seen.add(keyword)
            ordered.append(keyword)
    return ordered


def category_keywords(category: str) -> list[str]:
    key = (category or "").strip().lower()
    key = CATEGORY_ALIASES.get(key, key)
    return list(CATEGORY_SEEDS.get(key, []))


def build_candidates(name="", subtitle="", description="", category="",
                     max_candidates: int = 30) -> list[Candidate]:
    """
    Listing candidates first, then category seeds; at least a quarter of
    the slots stay open for category seeds when the category has any.
    """
    listing = extract_listing_keywords(name, subtitle, description)
    seeds = [kw for kw in category_keywords(category) if kw not in set(listing)]
    seed_slots = min(len(seeds), max(1, max_candidates // 4)) if seeds else 0
    listing = listing[: max_candidates - seed_slots]
    seeds = seeds[: max_candidates - len(listing)]
    return (
        [Candidate(kw, CONFIDENCE_HIGH, SOURCE_LISTING) for kw in listing]
        + [Candidate(kw, CONFIDENCE_MEDIUM, SOURCE_CATEGORY) for kw in seeds]
    )


def _listing_fields(app) -> dict:
    if isinstance(app, dict):
        get = app.get
    else:
        def get(key, default=""):
            return getattr(app, key, default)
    return {
        "name": get("name", "") or "",
        "subtitle": get("subtitle", "") or "",
        "description": get("description", "") or "",
        "category": get("category", "") or "",
        "store_id": str(get("store_id", "") or get("app_id", "") or ""),
        "platform": get("platform", "") or "",
    }


class KeywordDiscovery:
    """
    Tests listing/category candidates against live search results.

    Args:
        client: A SerpClient sharing the scheduler's rate limiters.
    """

    def __init__(self, client, config: dict | None = None):
        self.client = client
        self.config = config or get_config()

    def _enrich(self, fields: dict, platform: str, region: str, cancel_event=None) -> dict:
        """Fill a sparse listing from the storefront lookup when possible."""
        if fields["description"] and fields["category"]:
            return fields
        try:
            listing = self.client.lookup_app(
                fields["store_id"], platform, region, cancel_event=cancel_event
            )
        except RequestCancelled:
            raise
        except RankTrackingError as e:
            logger.warning(f"Listing lookup failed for {fields['store_id']}: {e}")
            return fields
        if not listing:
            return fields
        for key in ("name", "subtitle", "description", "category"):
            if not fields[key]:
                fields[key] = listing.get(key, "")
        return fields

    def discover(self, app, platform: str | None = None, region: str = "us",
                 max_candidates: int | None = None, depth: int | None = None,
                 cancel_event=None, progress=None) -> list[DiscoveredKeyword]:
        """
        Candidates the app currently ranks for within ``depth``.

        Args:
            app: App instance or dict with name/subtitle/description/
                category/store_id.
            progress: Optional ``callable(done, total, keyword)``.

        Returns results ordered by confidence, then position.
        """
        fields = _listing_fields(app)
        platform = platform or fields["platform"] or "ios"
        if not fields["store_id"]:
            raise NotFound("App has no store id to match against search results")
        max_candidates = max_candidates or self.config["DISCOVERY_MAX_CANDIDATES"]
        depth = depth or self.config["TRACKED_DEPTH"]

        fields = self._enrich(fields, platform, region, cancel_event=cancel_event)
        candidates = build_candidates(
            fields["name"],
            fields["subtitle"],
            fields["description"],
            fields["category"],
            max_candidates=max_candidates,
        )
        logger.info(
            f"Discovery for {fields['store_id']} ({platform}/{region}): "
            f"testing {len(candidates)} candidates"
        )

        found = []
        for i, candidate in enumerate(candidates):
            if progress:
                progress(i, len(candidates), candidate.keyword)
            try:
                serp = self.client.fetch_ranking(
                    candidate.keyword, platform, region, depth, cancel_event=cancel_event
                )
            except RequestCancelled:
                raise
            except RankTrackingError as e:
                logger.warning(f"Discovery candidate '{candidate.keyword}' skipped: {e}")
                continue
            position = serp.position_of(fields["store_id"])
            if position is not None and position <= depth:
                found.append(
                    DiscoveredKeyword(
                        keyword=candidate.keyword,
                        position=position,
                        confidence=candidate.confidence,
                        source=candidate.source,
                    )
                )
        if progress:
            progress(len(candidates), len(candidates), "")

        found.sort(key=lambda d: (_CONFIDENCE_RANK[d.confidence], d.position))
        logger.info(
            f"Discovery for {fields['store_id']}: {len(found)} of {len(candidates)} candidates rank"
        )
        return found
