"""
Location resolution: store lookup, then an ordered chain of live discovery
strategies. A location identifier returned from here always came from the
store or from a discovery response, never from the caller's free text.
"""

from __future__ import annotations

import json
import logging
import re
import threading
import urllib.parse
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from geo_store import GeoIdStore, GeoSource, location_key_variants, parse_location_id
from pipeline_core import (
    AdmissionDenied,
    ProviderError,
    RetryPolicy,
    _http_request,
    normalize_location_text,
    parse_location_to_city_state,
    rapidapi_headers,
    US_STATE_ABBREVIATIONS,
)

SEARCH_PROVIDER = "search"


@dataclass(frozen=True)
class DiscoveryCandidate:
    location_id: str
    display_name: str
    strategy: str


@dataclass(frozen=True)
class ResolvedLocation:
    location_id: str
    display_name: str
    source: GeoSource
    requested_text: str = ""

    @property
    def urn(self) -> str:
        return f"urn:li:fs_geo:{self.location_id}"


@dataclass(frozen=True)
class Suggestion:
    id: str
    display_text: str


# ---------------------------------------------------------------------------
# Response parsing helpers
# ---------------------------------------------------------------------------

def _first_list(payload: Any, paths: Sequence[Tuple[str, ...]]) -> List[Any]:
    """Return the first non-empty list found along ``paths`` (empty path = payload itself)."""
    for path in paths:
        node = payload
        for part in path:
            if not isinstance(node, dict):
                node = None
                break
            node = node.get(part)
        if isinstance(node, list) and node:
            return node
    return []


SUGGESTION_PATHS: Tuple[Tuple[str, ...], ...] = (
    ("data",),
    ("data", "data"),
    ("suggestions",),
    ("results",),
    (),
)


def parse_suggestions(payload: Any) -> List[Suggestion]:
    suggestions: List[Suggestion] = []
    for item in _first_list(payload, SUGGESTION_PATHS):
        if not isinstance(item, dict):
            continue
        raw_id = item.get("fullId") or item.get("id")
        text = item.get("displayValue") or item.get("displayText") or item.get("text") or item.get("name") or ""
        if raw_id in (None, ""):
            continue
        suggestions.append(Suggestion(id=str(raw_id), display_text=str(text)))
    return suggestions


_URL_ID_PATTERNS = (
    re.compile(r"urn:li:fs_geo:(\d+)"),
    re.compile(r"geo[=:](\d+)"),
    re.compile(r"(\d{8,})"),
)


def extract_location_id_from_url(url: Optional[str]) -> Optional[str]:
    """Pull a geo id out of a generated search URL (query params, encoded filters, path)."""
    if not url or not isinstance(url, str):
        return None
    parsed = urllib.parse.urlparse(url)
    query = urllib.parse.parse_qs(parsed.query)

    for param in ("geo", "location", "filters", "f", "loc"):
        for value in query.get(param, []):
            for pattern in _URL_ID_PATTERNS:
                match = pattern.search(value)
                if match:
                    return match.group(1)

    for value in query.get("filters", []):
        try:
            filters = json.loads(value)
        except ValueError:
            continue
        if not isinstance(filters, list):
            continue
        for entry in filters:
            if not isinstance(entry, dict) or entry.get("type") not in {"LOCATION", "REGION"}:
                continue
            for item in entry.get("values") or []:
                location_id = parse_location_id(item.get("id") if isinstance(item, dict) else None)
                if location_id:
                    return location_id

    path_match = re.search(r"[/=:]geo[/=:](\d+)|location[/=:](\d+)|urn:li:fs_geo:(\d+)", url, re.IGNORECASE)
    if path_match:
        return next(group for group in path_match.groups() if group)

    decoded = urllib.parse.unquote(url)
    global_match = re.search(r"urn:li:fs_geo:(\d{8,})", decoded)
    if global_match:
        return global_match.group(1)
    return None


GEO_ID_FIELDS = (
    "geoId",
    "geo_id",
    "locationId",
    "location_id",
    "geoUrn",
    "geo_urn",
    "geoLocationId",
    "geo_location_id",
)
GEO_NAME_FIELDS = ("geoRegion", "location", "locationName")
NESTED_PROFILE_FIELDS = ("profile", "data", "locationInfo")


def extract_geo_from_record(record: Any, _depth: int = 0) -> Optional[Tuple[str, str]]:
    """Return ``(location_id, location_name)`` self-reported by a profile or lead record."""
    if not isinstance(record, dict) or _depth > 3:
        return None

    location_id = None
    for name in GEO_ID_FIELDS:
        location_id = parse_location_id(record.get(name))
        if location_id:
            break

    if location_id:
        location_name = ""
        for name in GEO_NAME_FIELDS:
            value = record.get(name)
            if isinstance(value, str) and value.strip():
                location_name = value.strip()
                break
        if location_name:
            return location_id, location_name

    for name in NESTED_PROFILE_FIELDS:
        nested = extract_geo_from_record(record.get(name), _depth + 1)
        if nested:
            return nested
    return None


# ---------------------------------------------------------------------------
# Discovery strategies
# ---------------------------------------------------------------------------

class SuggestionClient:
    """POST ``{"query": text}`` to a suggestion/autocomplete endpoint."""

    def __init__(
        self,
        url: str,
        api_key: str = "",
        *,
        timeout: float = 30.0,
        policy: Optional[RetryPolicy] = None,
        provider: str = SEARCH_PROVIDER,
    ):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self.policy = policy
        self.provider = provider

    def lookup(self, query: str) -> List[Suggestion]:
        payload = _http_request(
            "POST",
            self.url,
            headers=rapidapi_headers(self.api_key, self.url),
            json_body={"query": query},
            timeout=self.timeout,
            policy=self.policy,
            provider=self.provider,
        )
        return parse_suggestions(payload)


class DiscoveryStrategy(ABC):
    """One live source able to turn location text into an identifier."""

    name = "discovery"
    provider = SEARCH_PROVIDER
    governor: Any = None

    @abstractmethod
    def attempt(self, text: str) -> Optional[DiscoveryCandidate]:
        """Return a candidate, or None when this source has nothing usable."""

    def _call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run one external request, admitted by the governor when one is bound."""
        if self.governor is not None:
            return self.governor.call(self.provider, func, *args, **kwargs)
        return func(*args, **kwargs)


class SuggestionApiDiscovery(DiscoveryStrategy):
    name = "suggestions"

    def __init__(self, client: SuggestionClient):
        self.client = client
        self.provider = client.provider

    def attempt(self, text: str) -> Optional[DiscoveryCandidate]:
        for suggestion in self._call(self.client.lookup, text):
            location_id = parse_location_id(suggestion.id)
            if location_id:
                return DiscoveryCandidate(location_id, suggestion.display_text or text, self.name)
        return None


class JsonToUrlDiscovery(DiscoveryStrategy):
    """Generate a search URL for the location and read the geo id back out of it."""

    name = "json_to_url"

    def __init__(
        self,
        url: str,
        api_key: str = "",
        *,
        timeout: float = 30.0,
        policy: Optional[RetryPolicy] = None,
        provider: str = SEARCH_PROVIDER,
    ):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self.policy = policy
        self.provider = provider

    @staticmethod
    def id_formats(text: str) -> List[str]:
        formats = [text, re.sub(r"\s+", "_", text.lower()), f"us:{text}"]
        _, state = parse_location_to_city_state(text)
        if state:
            formats.append(f"us:{state}")
        seen: List[str] = []
        for value in formats:
            if value not in seen:
                seen.append(value)
        return seen

    def attempt(self, text: str) -> Optional[DiscoveryCandidate]:
        last_error: Optional[ProviderError] = None
        for format_id in self.id_formats(text):
            body = {
                "filters": [
                    {
                        "type": "LOCATION",
                        "values": [{"id": format_id, "text": text, "selectionType": "INCLUDED"}],
                    }
                ],
                "keywords": "",
            }
            try:
                payload = self._call(
                    _http_request,
                    "POST",
                    self.url,
                    headers=rapidapi_headers(self.api_key, self.url),
                    json_body=body,
                    timeout=self.timeout,
                    policy=self.policy,
                    provider=self.provider,
                )
            except ProviderError as exc:
                if exc.status == 429:
                    raise
                last_error = exc
                continue
            location_id = extract_location_id_from_url(_url_from_payload(payload))
            if location_id:
                return DiscoveryCandidate(location_id, text, self.name)
        if last_error is not None:
            raise last_error
        return None


def _url_from_payload(payload: Any) -> Optional[str]:
    if isinstance(payload, str):
        return payload
    if isinstance(payload, dict):
        data = payload.get("data")
        for value in (payload.get("url"), data.get("url") if isinstance(data, dict) else data):
            if isinstance(value, str) and value:
                return value
    return None


class ProfileSearchDiscovery(DiscoveryStrategy):
    """Search profiles by location text and read the geo id off a matching profile."""

    name = "profile_search"

    def __init__(
        self,
        url: str,
        api_key: str = "",
        *,
        timeout: float = 30.0,
        policy: Optional[RetryPolicy] = None,
        provider: str = SEARCH_PROVIDER,
    ):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self.policy = policy
        self.provider = provider

    def attempt(self, text: str) -> Optional[DiscoveryCandidate]:
        payload = self._call(
            _http_request,
            "POST",
            self.url,
            headers=rapidapi_headers(self.api_key, self.url),
            json_body={"query": text, "limit": 10},
            timeout=self.timeout,
            policy=self.policy,
            provider=self.provider,
        )
        profiles = _first_list(payload, (("results",), ("data", "results"), ("data",), ()))
        for profile in profiles:
            found = extract_geo_from_record(profile)
            if found and location_text_matches(text, found[1]):
                return DiscoveryCandidate(found[0], found[1], self.name)
        return None


def location_text_matches(requested: str, reported: str) -> bool:
    """Loose check that a profile's location names the requested place."""
    want = normalize_location_text(requested)
    have = normalize_location_text(reported)
    if not want or not have:
        return False
    if want in have:
        return True
    _, state = parse_location_to_city_state(requested)
    if state:
        return normalize_location_text(US_STATE_ABBREVIATIONS[state]) in have
    return False


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------

class LocationResolver:
    """Store lookup, then discovery strategies in order, writing hits back to the store."""

    def __init__(
        self,
        store: GeoIdStore,
        strategies: Optional[Iterable[DiscoveryStrategy]] = None,
        governor: Any = None,
    ):
        self.store = store
        self.strategies: List[DiscoveryStrategy] = list(strategies or [])
        self.governor = governor
        # Strategies admit each request they make, not each attempt.
        for strategy in self.strategies:
            if strategy.governor is None:
                strategy.governor = governor
        self._inflight: Dict[str, threading.Lock] = {}
        self._inflight_guard = threading.Lock()
        self._metrics_lock = threading.Lock()
        self.metrics: Dict[str, int] = {
            "store_hits": 0,
            "discovery_calls": 0,
            "discovered": 0,
            "misses": 0,
            "extracted": 0,
        }

    def _track(self, name: str, count: int = 1) -> None:
        with self._metrics_lock:
            self.metrics[name] += count

    def _lock_for(self, key: str) -> threading.Lock:
        with self._inflight_guard:
            lock = self._inflight.get(key)
            if lock is None:
                lock = threading.Lock()
                self._inflight[key] = lock
            return lock

    def _from_store(self, text: str) -> Optional[ResolvedLocation]:
        entry = self.store.lookup(text)
        if entry is None:
            return None
        self._track("store_hits")
        return ResolvedLocation(entry.location_id, entry.display_name, entry.source, text)

    def resolve(self, text: Optional[str], allow_discovery: bool = True) -> Optional[ResolvedLocation]:
        """Return the identifier for ``text`` or None; never echoes the text as an id."""
        text = (text or "").strip()
        variants = location_key_variants(text)
        if not variants:
            return None

        resolved = self._from_store(text)
        if resolved or not allow_discovery or not self.strategies:
            if resolved is None:
                self._track("misses")
            return resolved

        # One discovery per key even when several workers miss at once.
        with self._lock_for(variants[0]):
            resolved = self._from_store(text)
            if resolved:
                return resolved

            for strategy in self.strategies:
                candidate = self._attempt(strategy, text)
                if candidate is None:
                    continue
                location_id = parse_location_id(candidate.location_id)
                if not location_id:
                    logging.warning(
                        "Discovery strategy %s returned non-identifier %r for %s",
                        strategy.name,
                        candidate.location_id,
                        text,
                    )
                    continue
                entry = self.store.upsert(
                    text,
                    location_id,
                    display_name=candidate.display_name or text,
                    source=GeoSource.DISCOVERED,
                )
                self._track("discovered")
                logging.info("Discovered location id %s for %r via %s", entry.location_id, text, strategy.name)
                return ResolvedLocation(entry.location_id, entry.display_name, entry.source, text)

        self._track("misses")
        logging.warning("No location id found for %r; caller must fall back to keywords", text)
        return None

    def _attempt(self, strategy: DiscoveryStrategy, text: str) -> Optional[DiscoveryCandidate]:
        self._track("discovery_calls")
        try:
            return strategy.attempt(text)
        except AdmissionDenied as exc:
            logging.warning("Skipping %s discovery for %r: %s", strategy.name, text, exc)
        except ProviderError as exc:
            logging.warning("Discovery strategy %s failed for %r: %s", strategy.name, text, exc)
        return None

    def resolve_hierarchical(
        self, text: Optional[str], allow_discovery: bool = True
    ) -> Optional[ResolvedLocation]:
        """Resolve ``text``; on a city-level miss retry with its state segment."""
        resolved = self.resolve(text, allow_discovery)
        if resolved or not text:
            return resolved
        city, state = parse_location_to_city_state(text)
        if city and state:
            state_name = US_STATE_ABBREVIATIONS[state]
            logging.info("Falling back from %r to state-level location %s", text, state_name)
            return self.resolve(state_name, allow_discovery)
        return None

    def extract_from_records(self, records: Iterable[Any]) -> int:
        """Upsert any self-reported geo ids found in search result records."""
        count = 0
        for record in records:
            found = extract_geo_from_record(record)
            if not found:
                continue
            location_id, location_name = found
            self.store.upsert(location_name, location_id, display_name=location_name, source=GeoSource.EXTRACTED)
            count += 1
        if count:
            self._track("extracted", count)
            logging.debug("Extracted %d geo ids from search results", count)
        return count


