"""
Storefront search client.

Fetches one ranked search page per call from the iOS App Store (iTunes
Search API) or Google Play (search page) and normalizes it into an ordered
list of SerpItem.  Every request goes through the surface's RateLimiter.

Parsing is a ranked list of strategies per surface: a structured parse
first, then a pattern-based fallback over the raw body.  The first strategy
that yields items wins and its name travels with the result, so a drift in
upstream response shape shows up as a strategy change instead of an outage.

No authentication required.
"""

import json
import logging
import random
import re
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from urllib.parse import parse_qs, urlparse

import requests
from bs4 import BeautifulSoup

from .conf import get_config
from .exceptions import (
    NetworkTimeout,
    NetworkUnreachable,
    NotFound,
    ParseFailure,
    RateLimited,
)

logger = logging.getLogger(__name__)

# Rotated per request so traffic doesn't carry a single fingerprint.
USER_AGENTS = [
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.4 Safari/605.1.15",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_4 like Mac OS X) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.4 Mobile/15E148 Safari/604.1",
    "Mozilla/5.0 (Linux; Android 14; Pixel 8) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Mobile Safari/537.36",
]

THROTTLE_STATUSES = {403, 429, 503}
NOT_FOUND_STATUSES = {400, 404}


# --------------------------------------------------------------------------- #
# Result types
# --------------------------------------------------------------------------- #


@dataclass(frozen=True)
class SerpItem:
    """One ranked search result."""

    position: int
    app_id: str
    name: str
    developer: str = ""
    rating: float | None = None
    rating_count: int = 0
    category: str = ""

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class SerpResult:
    """An ordered search page plus the strategy that produced it."""

    keyword: str
    platform: str
    region: str
    items: list[SerpItem]
    strategy: str
    total_results: int = 0
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def position_of(self, app_id) -> int | None:
        """1-based position of ``app_id`` within the fetched depth, else None."""
        if app_id in (None, ""):
            return None
        wanted = str(app_id)
        for item in self.items:
            if item.app_id == wanted:
                return item.position
        return None

    def competitors(self, exclude_app_id=None, limit: int | None = None) -> list[SerpItem]:
        """Items other than ``exclude_app_id``, in rank order."""
        excluded = str(exclude_app_id) if exclude_app_id not in (None, "") else None
        others = [item for item in self.items if item.app_id != excluded]
        return others[:limit] if limit is not None else others

    def as_snapshot(self) -> list[dict]:
        return [item.as_dict() for item in self.items]


# --------------------------------------------------------------------------- #
# Parser strategies
# --------------------------------------------------------------------------- #


class ParserStrategy:
    """
    Turns a raw response body into ordered entries.

    ``parse`` returns ``(entries, total_results)`` where entries are dicts
    with SerpItem fields minus ``position``.  Empty entries means "this
    strategy could not read the body"; the client then tries the next one.
    """

    name = "base"

    def parse(self, body: str) -> tuple[list[dict], int | None]:
        raise NotImplementedError


def _to_int(value) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _to_float(value) -> float | None:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _compact_count(text: str) -> int:
    """Parse counts like '1.2M', '15K', '3,401'."""
    text = text.strip().upper().replace(",", "")
    multiplier = 1
    if text.endswith("K"):
        multiplier, text = 1_000, text[:-1]
    elif text.endswith("M"):
        multiplier, text = 1_000_000, text[:-1]
    elif text.endswith("B"):
        multiplier, text = 1_000_000_000, text[:-1]
    try:
        return int(float(text) * multiplier)
    except ValueError:
        return 0


def _first_per_app(entries: list[dict]) -> list[dict]:
    """Keep the first (highest) listing of each app."""
    seen = set()
    unique = []
    for entry in entries:
        if entry["app_id"] in seen:
            continue
        seen.add(entry["app_id"])
        unique.append(entry)
    return unique


class ItunesJsonStrategy(ParserStrategy):
    """Structured parse of the iTunes Search API JSON payload."""

    name = "itunes_json"

    def parse(self, body):
        data = json.loads(body)
        entries, seen = [], set()
        for result in data.get("results", []):
            track_id = result.get("trackId")
            if not track_id or str(track_id) in seen:
                continue
            seen.add(str(track_id))
            entries.append(
                {
                    "app_id": str(track_id),
                    "name": result.get("trackName", ""),
                    "developer": result.get("artistName") or result.get("sellerName", ""),
                    "rating": _to_float(result.get("averageUserRating")),
                    "rating_count": _to_int(result.get("userRatingCount")),
                    "category": result.get("primaryGenreName", ""),
                }
            )
        return entries, data.get("resultCount")


class ItunesPatternStrategy(ParserStrategy):
    """
    Pattern fallback for iOS bodies the JSON parse can't read.

    Handles truncated/reshaped JSON (scans ``"trackId": 123`` pairs) and
    App Store HTML (scans ``/app/<slug>/id123`` links).
    """

    name = "itunes_pattern"

    _TRACK_ID = re.compile(r'"trackId"\s*:\s*(\d+)')
    _TRACK_NAME = re.compile(r'"trackName"\s*:\s*"((?:[^"\\]|\\.)*)"')
    _ARTIST = re.compile(r'"artistName"\s*:\s*"((?:[^"\\]|\\.)*)"')
    _RATING_COUNT = re.compile(r'"userRatingCount"\s*:\s*(\d+)')
    _APP_LINK = re.compile(r"/app/([a-z0-9\-%]+)/id(\d+)", re.IGNORECASE)

    def parse(self, body):
        entries = self._from_json_fragments(body)
        if not entries:
            entries = self._from_links(body)
        return entries, None

    @staticmethod
    def _unescape(value: str) -> str:
        try:
            return json.loads(f'"{value}"')
        except ValueError:
            return value

    def _from_json_fragments(self, body):
        matches = list(self._TRACK_ID.finditer(body))
        entries, seen = [], set()
        for i, match in enumerate(matches):
            app_id = match.group(1)
            if app_id in seen:
                continue
            seen.add(app_id)
            seg_end = matches[i + 1].start() if i + 1 < len(matches) else len(body)
            seg_start = matches[i - 1].end() if i > 0 else 0
            forward = body[match.end():seg_end]
            backward = body[seg_start:match.start()]
            # Stay inside this result's own object.
            if "}" in forward:
                forward = forward[:forward.index("}")]
            backward = backward[backward.rfind("{") + 1:]

            def find(pattern):
                hit = pattern.search(forward) or pattern.search(backward)
                return hit.group(1) if hit else None

            name = find(self._TRACK_NAME)
            artist = find(self._ARTIST)
            entries.append(
                {
                    "app_id": app_id,
                    "name": self._unescape(name) if name else "",
                    "developer": self._unescape(artist) if artist else "",
                    "rating": None,
                    "rating_count": _to_int(find(self._RATING_COUNT)),
                    "category": "",
                }
            )
        return entries

    def _from_links(self, body):
        entries, seen = [], set()
        for match in self._APP_LINK.finditer(body):
            slug, app_id = match.groups()
            if app_id in seen:
                continue
            seen.add(app_id)
            entries.append(
                {
                    "app_id": app_id,
                    "name": slug.replace("-", " ").title(),
                    "developer": "",
                    "rating": None,
                    "rating_count": 0,
                    "category": "",
                }
            )
        return entries


class PlayHtmlStrategy(ParserStrategy):
    """Structured parse of Play Store search result cards."""

    name = "play_html"

    _RATED = re.compile(r"Rated\s+([\d.]+)\s+stars?", re.IGNORECASE)
    _REVIEWS = re.compile(r"([\d.,]+\s*[KMB]?)\s+reviews", re.IGNORECASE)

    def parse(self, body):
        soup = BeautifulSoup(body, "html.parser")
        entries, by_id = [], {}
        for anchor in soup.select('a[href*="/store/apps/details"]'):
            query = parse_qs(urlparse(anchor.get("href", "")).query)
            app_id = (query.get("id") or [""])[0]
            if not app_id:
                continue
            card = anchor.parent if anchor.parent is not None else anchor
            card_text = " ".join(card.stripped_strings)
            labels = " ".join(
                el.get("aria-label", "") for el in card.find_all(attrs={"aria-label": True})
            )
            name = anchor.get("aria-label") or next(iter(anchor.stripped_strings), "")
            entry = by_id.get(app_id)
            if entry is None:
                entry = {
                    "app_id": app_id,
                    "name": "",
                    "developer": "",
                    "rating": None,
                    "rating_count": 0,
                    "category": "",
                }
                by_id[app_id] = entry
                entries.append(entry)
            if name and not entry["name"]:
                entry["name"] = name.strip()
            rated = self._RATED.search(labels) or self._RATED.search(card_text)
            if rated and entry["rating"] is None:
                entry["rating"] = _to_float(rated.group(1))
            reviews = self._REVIEWS.search(labels) or self._REVIEWS.search(card_text)
            if reviews and not entry["rating_count"]:
                entry["rating_count"] = _compact_count(reviews.group(1))
            developer = card.find(attrs={"data-developer": True})
            if developer is not None and not entry["developer"]:
                entry["developer"] = developer["data-developer"]
        for entry in entries:
            if not entry["name"]:
                entry["name"] = entry["app_id"]
        return entries, len(entries)


class PlayPatternStrategy(ParserStrategy):
    """Pattern fallback: ordered ``details?id=`` package names in raw markup."""

    name = "play_pattern"

    _DETAILS_LINK = re.compile(r"details\?id(?:=|\\u003d)([A-Za-z][\w.]*\w)")

    def parse(self, body):
        entries, seen = [], set()
        for match in self._DETAILS_LINK.finditer(body):
            app_id = match.group(1)
            if app_id in seen:
                continue
            seen.add(app_id)
            entries.append(
                {
                    "app_id": app_id,
                    "name": app_id,
                    "developer": "",
                    "rating": None,
                    "rating_count": 0,
                    "category": "",
                }
            )
        return entries, None


# --------------------------------------------------------------------------- #
# Surfaces
# --------------------------------------------------------------------------- #


class StorefrontSurface:
    """Where and how to ask one storefront for a ranked search page."""

    platform = ""
    search_url = ""
    accept = "*/*"
    strategies: tuple = ()

    def search_params(self, keyword: str, region: str, depth: int) -> dict:
        raise NotImplementedError


class ITunesSearchSurface(StorefrontSurface):
    platform = "ios"
    search_url = "https://itunes.apple.com/search"
    lookup_url = "https://itunes.apple.com/lookup"
    accept = "application/json"
    strategies = (ItunesJsonStrategy(), ItunesPatternStrategy())

    def search_params(self, keyword, region, depth):
        return {
            "term": keyword,
            "country": region,
            "media": "software",
            "entity": "software",
            "limit": depth,
        }


class PlayStoreSurface(StorefrontSurface):
    platform = "android"
    search_url = "https://play.google.com/store/search"
    accept = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
    strategies = (PlayHtmlStrategy(), PlayPatternStrategy())

    def search_params(self, keyword, region, depth):
        return {"q": keyword, "c": "apps", "gl": region, "hl": "en"}


DEFAULT_SURFACES = {
    "ios": ITunesSearchSurface(),
    "android": PlayStoreSurface(),
}


# --------------------------------------------------------------------------- #
# Client
# --------------------------------------------------------------------------- #


class SerpClient:
    """
    Rate-limited storefront search.

    Args:
        limiters: Mapping of platform -> RateLimiter (shared with every
            other caller of the same surface).
        timeout: Hard per-request timeout in seconds.  It bounds the whole
            transfer, body included, not only connect and each socket read.
        depth_cap: Maximum tracked depth; deeper positions count as absent.
        clock: Monotonic time source for the request deadline.
    """

    # Body read size while the deadline is checked.
    CHUNK_SIZE = 16 * 1024

    def __init__(self, limiters: dict, timeout: float | None = None,
                 depth_cap: int | None = None, surfaces: dict | None = None,
                 clock=time.monotonic):
        config = get_config()
        self.limiters = limiters
        self.timeout = timeout if timeout is not None else config["REQUEST_TIMEOUT_SECONDS"]
        self.depth_cap = depth_cap or config["TRACKED_DEPTH"]
        self.surfaces = surfaces or DEFAULT_SURFACES
        self.clock = clock

    def _surface(self, platform: str) -> StorefrontSurface:
        try:
            return self.surfaces[platform]
        except KeyError:
            raise ValueError(f"Unsupported platform: {platform!r}") from None

    def _headers(self, surface: StorefrontSurface) -> dict:
        return {
            "User-Agent": random.choice(USER_AGENTS),
            "Accept": surface.accept,
            "Accept-Language": "en-US,en;q=0.9",
        }

    def _get(self, platform: str, url: str, params: dict, headers: dict) -> requests.Response:
        """One outbound GET, with failures mapped onto the pipeline taxonomy."""
        deadline = self.clock() + self.timeout
        try:
            response = requests.get(
                url, params=params, headers=headers, timeout=self.timeout, stream=True
            )
            # requests' timeout is per socket read; a trickling body is cut off here.
            chunks = []
            for chunk in response.iter_content(chunk_size=self.CHUNK_SIZE):
                if self.clock() > deadline:
                    response.close()
                    raise NetworkTimeout(
                        f"{platform} response exceeded {self.timeout}s", surface=platform
                    )
                chunks.append(chunk)
            response._content = b"".join(chunks)
        except requests.Timeout as e:
            raise NetworkTimeout(f"{platform} request timed out: {e}", surface=platform) from e
        except requests.ConnectionError as e:
            raise NetworkUnreachable(f"{platform} unreachable: {e}", surface=platform) from e
        except requests.RequestException as e:
            raise NetworkUnreachable(f"{platform} request failed: {e}", surface=platform) from e

        status = response.status_code
        if status in THROTTLE_STATUSES:
            raise RateLimited(f"{platform} throttled the request (HTTP {status})", surface=platform)
        if status in NOT_FOUND_STATUSES:
            raise NotFound(f"{platform} rejected the query (HTTP {status})", surface=platform)
        if status >= 400:
            raise NetworkUnreachable(f"{platform} answered HTTP {status}", surface=platform)
        return response

    def _request(self, platform, url, params, surface, cancel_event=None):
        limiter = self.limiters[platform]
        return limiter.execute(
            platform,
            self._get,
            platform,
            url,
            params,
            self._headers(surface),
            cancel_event=cancel_event,
        )

    def fetch_ranking(self, keyword: str, platform: str, region: str = "us",
                      depth: int | None = None, cancel_event=None) -> SerpResult:
        """
        Fetch the ranked search page for ``keyword``.

        Returns at most ``depth`` items (capped at the tracked depth).
        Raises ParseFailure when no strategy can read the response.
        """
        keyword = (keyword or "").strip()
        if not keyword:
            raise NotFound("Empty keyword", surface=platform)
        region = (region or "us").lower()
        depth = max(1, min(depth or self.depth_cap, self.depth_cap))

        surface = self._surface(platform)
        response = self._request(
            platform,
            surface.search_url,
            surface.search_params(keyword, region, depth),
            surface,
            cancel_event=cancel_event,
        )
        body = response.text

        for strategy in surface.strategies:
            try:
                entries, total = strategy.parse(body)
            except (ValueError, TypeError, KeyError, AttributeError) as e:
                logger.debug(f"{strategy.name} could not parse '{keyword}' ({platform}/{region}): {e}")
                continue
            entries = _first_per_app(entries)
            if not entries:
                continue
            items = [
                SerpItem(position=i + 1, **entry)
                for i, entry in enumerate(entries[:depth])
            ]
            if strategy is not surface.strategies[0]:
                logger.warning(
                    f"SERP for '{keyword}' ({platform}/{region}) parsed by fallback "
                    f"strategy {strategy.name}"
                )
            return SerpResult(
                keyword=keyword,
                platform=platform,
                region=region,
                items=items,
                strategy=strategy.name,
                total_results=total if total is not None else len(entries),
            )

        raise ParseFailure(
            f"No parser strategy produced results for '{keyword}' ({platform}/{region})",
            surface=platform,
        )

    def lookup_app(self, app_id, platform: str, region: str = "us", cancel_event=None) -> dict | None:
        """
        Fetch listing metadata for one app.

        Only the iTunes lookup endpoint is supported; other platforms
        return None.
        """
        surface = self._surface(platform)
        lookup_url = getattr(surface, "lookup_url", None)
        if not lookup_url:
            return None
        response = self._request(
            platform,
            lookup_url,
            {"id": app_id, "country": (region or "us").lower()},
            surface,
            cancel_event=cancel_event,
        )
        try:
            results = response.json().get("results", [])
        except ValueError:
            logger.warning(f"iTunes lookup for {app_id} returned a non-JSON body")
            return None
        if not results:
            return None
        return self._parse_listing(results[0])

    @staticmethod
    def _parse_listing(result: dict) -> dict:
        """Parse an iTunes lookup result into the fields discovery uses."""
        name = result.get("trackName", "")
        subtitle = ""
        for separator in (" - ", ": "):
            if separator in name:
                subtitle = name.split(separator, 1)[1]
                break
        return {
            "app_id": str(result.get("trackId", "")),
            "name": name,
            "subtitle": subtitle,
            "description": result.get("description", ""),
            "category": result.get("primaryGenreName", ""),
            "developer": result.get("sellerName", ""),
            "bundle_id": result.get("bundleId", ""),
            "rating_count": _to_int(result.get("userRatingCount")),
        }
