"""
Post-filter validation of search results against the requested location.

The upstream search provider sometimes ignores its location filter, so every
returned lead is re-checked here. When in doubt a lead is excluded.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from pipeline_core import (
    CANADIAN_PROVINCES,
    COUNTRY_ALIASES,
    COUNTRY_ALIASES_BY_LENGTH,
    STATE_NAME_TO_ABBR,
    STATE_NAMES_BY_LENGTH,
    US_STATE_ABBREVIATIONS,
    normalize_location_text,
)


class MatchConfidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(frozen=True)
class LocationMatch:
    accept: bool
    confidence: MatchConfidence
    reason: str


@dataclass
class ValidationPolicy:
    """Tunable knobs for the substring (medium confidence) rule."""

    accept_medium: bool = True
    min_substring_length: int = 3


@dataclass
class RemovedLead:
    lead: Any
    reason: str
    confidence: MatchConfidence


@dataclass
class FilterOutcome:
    kept: List[Any] = field(default_factory=list)
    removed: List[RemovedLead] = field(default_factory=list)
    stats: Dict[str, Any] = field(default_factory=dict)


_TRAILING_ABBR_RE = re.compile(r"(?:^|\s)([A-Za-z]{2})$")

LEAD_LOCATION_FIELDS = (
    "raw_location_text",
    "location",
    "geoRegion",
    "locationName",
    "currentLocation",
    "geoLocation",
    "address",
)


def _segments(text: str) -> List[str]:
    return [seg.strip() for seg in text.split(",") if seg.strip()]


def _word_search(phrase: str, text: str) -> bool:
    return re.search(rf"\b{re.escape(phrase)}\b", text) is not None


CANADIAN_PROVINCE_CODES = frozenset(CANADIAN_PROVINCES.values())


def _is_foreign_region(segment: str) -> bool:
    """True for a Canadian province (name or code) or a non-US country."""
    normalized = normalize_location_text(segment)
    if normalized in CANADIAN_PROVINCES or segment.strip(".").upper() in CANADIAN_PROVINCE_CODES:
        return True
    return COUNTRY_ALIASES.get(normalized, "us") != "us"


def extract_region(location_text: Optional[str]) -> Optional[str]:
    """Return the two-letter US state a location string names, if any."""
    if not location_text:
        return None
    segments = _segments(location_text)
    # "Toronto, ON, CA": a trailing code after a foreign region is a country, not a state.
    abbr_segments = segments
    if len(segments) > 1 and any(_is_foreign_region(segment) for segment in segments[:-1]):
        abbr_segments = segments[:-1]

    # Whole segment: "Texas" / "TX"
    for segment in reversed(segments):
        normalized = normalize_location_text(segment)
        if normalized in STATE_NAME_TO_ABBR:
            return STATE_NAME_TO_ABBR[normalized]
        upper = segment.strip(".").upper()
        if upper in US_STATE_ABBREVIATIONS and segment in abbr_segments:
            return upper

    # Trailing abbreviation inside a segment: "Dallas TX"
    for segment in reversed(abbr_segments):
        match = _TRAILING_ABBR_RE.search(segment.strip())
        if match and match.group(1).upper() in US_STATE_ABBREVIATIONS and match.group(1).isupper():
            return match.group(1).upper()

    # Full state name anywhere: "Greater Houston, Texas Area" / "New York City Metropolitan Area"
    normalized_text = normalize_location_text(location_text)
    for name in STATE_NAMES_BY_LENGTH:
        if _word_search(name, normalized_text):
            return STATE_NAME_TO_ABBR[name]
    return None


def extract_country(location_text: Optional[str]) -> Optional[str]:
    """Return a lowercase country code for a location string, if one can be inferred."""
    if not location_text:
        return None
    segments = _segments(location_text)
    if segments:
        last = segments[-1].strip().lower()
        if last in COUNTRY_ALIASES:
            return COUNTRY_ALIASES[last]

    lowered = location_text.lower()
    for alias in COUNTRY_ALIASES_BY_LENGTH:
        if len(alias) <= 2:
            continue
        if _word_search(alias, lowered):
            return COUNTRY_ALIASES[alias]

    normalized = normalize_location_text(location_text)
    for province in CANADIAN_PROVINCES:
        if _word_search(province, normalized):
            return "ca"

    if extract_region(location_text):
        return "us"
    return None


def _strip_country_segments(text: str) -> str:
    kept = [seg for seg in _segments(text) if seg.lower() not in COUNTRY_ALIASES]
    return ", ".join(kept)


def lead_location_text(lead: Any) -> str:
    """Location string a lead reports about itself, from a record or a raw dict."""
    if lead is None:
        return ""
    value = getattr(lead, "raw_location_text", None)
    if value:
        return str(value)
    if isinstance(lead, dict):
        for name in LEAD_LOCATION_FIELDS:
            if lead.get(name):
                return str(lead[name])
        profile = lead.get("profile")
        if isinstance(profile, dict):
            return str(profile.get("location") or profile.get("geoRegion") or "")
    return ""


class LeadValidator:
    """Decides whether a lead's self-reported location matches a requested one."""

    def __init__(self, policy: Optional[ValidationPolicy] = None):
        self.policy = policy or ValidationPolicy()

    def matches(self, lead: Any, requested_location: Optional[str]) -> LocationMatch:
        requested = (requested_location or "").strip()
        lead_text = lead_location_text(lead).strip()
        if not requested:
            return LocationMatch(False, MatchConfidence.LOW, "No requested location")
        if not lead_text:
            return LocationMatch(False, MatchConfidence.LOW, "Lead has no location data")

        requested_region = extract_region(requested)
        requested_country = extract_country(requested)
        lead_region = extract_region(lead_text)
        lead_country = extract_country(lead_text)

        if requested_region and lead_region == requested_region:
            return LocationMatch(True, MatchConfidence.HIGH, f"Region match: {requested_region}")

        expected_country = requested_country or ("us" if requested_region else None)
        if expected_country and lead_country and lead_country != expected_country:
            return LocationMatch(
                False,
                MatchConfidence.HIGH,
                f"Country mismatch: requested {expected_country}, lead is from {lead_country}",
            )

        if not requested_region and expected_country and lead_country == expected_country:
            if not _strip_country_segments(requested):
                return LocationMatch(True, MatchConfidence.HIGH, f"Country match: {expected_country}")

        if requested_region and lead_region and lead_region != requested_region:
            return LocationMatch(
                False,
                MatchConfidence.HIGH,
                f"Region mismatch: requested {requested_region}, lead is from {lead_region}",
            )

        if self.policy.accept_medium:
            needle = normalize_location_text(_strip_country_segments(requested))
            haystack = normalize_location_text(lead_text)
            if len(needle) >= self.policy.min_substring_length and _word_search(needle, haystack):
                return LocationMatch(True, MatchConfidence.MEDIUM, f"Location text contains {needle!r}")

        return LocationMatch(False, MatchConfidence.LOW, "Location does not match requested location")

    def filter_batch(self, leads: List[Any], requested_location: Optional[str]) -> FilterOutcome:
        """Split ``leads`` into kept/removed and report removal stats."""
        outcome = FilterOutcome()
        for lead in leads:
            decision = self.matches(lead, requested_location)
            if decision.accept:
                outcome.kept.append(lead)
            else:
                outcome.removed.append(RemovedLead(lead, decision.reason, decision.confidence))

        total = len(leads)
        removed = len(outcome.removed)
        reasons: Dict[str, int] = {}
        for item in outcome.removed:
            label = item.reason.split(":", 1)[0]
            reasons[label] = reasons.get(label, 0) + 1
        outcome.stats = {
            "total": total,
            "kept": len(outcome.kept),
            "removed": removed,
            "removal_rate": (removed / total) if total else 0.0,
            "removal_reasons": reasons,
        }
        if removed:
            logging.warning(
                "Location post-filter removed %d/%d leads (%.0f%%) for %r",
                removed,
                total,
                outcome.stats["removal_rate"] * 100,
                requested_location,
            )
        return outcome
