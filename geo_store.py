"""
Geo-ID store: normalized location text -> provider location identifier.

Entries are append-only. Every mutation is written through the injected
DurableTable immediately.
"""

from __future__ import annotations

import csv
import json
import logging
import re
import threading
from collections import Counter
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pipeline_core import (
    COUNTRY_ALIASES,
    DurableTable,
    StorageError,
    US_STATE_ABBREVIATIONS,
    parse_location_to_city_state,
    utc_now_iso,
)


class GeoSource(str, Enum):
    STATIC = "static"
    DISCOVERED = "discovered"
    EXTRACTED = "extracted"

    @property
    def rank(self) -> int:
        return _SOURCE_RANK[self]

    @classmethod
    def coerce(cls, value: Any) -> "GeoSource":
        if isinstance(value, GeoSource):
            return value
        text = str(value or "").strip().lower()
        if text in {"static", "manual", "verified", "seed"}:
            return cls.STATIC
        if text in {"extracted", "profile", "result", "results"}:
            return cls.EXTRACTED
        return cls.DISCOVERED


_SOURCE_RANK = {GeoSource.STATIC: 3, GeoSource.DISCOVERED: 2, GeoSource.EXTRACTED: 1}

# Manually verified state-level identifiers.
STATIC_LOCATIONS: Dict[str, str] = {
    "United States": "103644278",
    "Alabama": "102240587",
    "Arkansas": "102790221",
    "Colorado": "105763813",
    "Delaware": "105375497",
    "Florida": "101318387",
    "Georgia": "106315325",
    "Illinois": "101949407",
    "Indiana": "103336534",
    "Iowa": "103078544",
    "Kansas": "104403803",
    "Kentucky": "106470801",
    "Louisiana": "101822552",
    "Maryland": "100809221",
    "Michigan": "103051080",
    "Mississippi": "106899551",
    "Missouri": "101486475",
    "Montana": "101758306",
    "Nebraska": "101197782",
    "Nevada": "101690912",
    "North Carolina": "103255397",
    "Ohio": "106981407",
    "Oklahoma": "101343299",
    "South Carolina": "102687171",
    "South Dakota": "100115110",
    "Tennessee": "104629187",
    "Texas": "102748797",
    "Utah": "104102239",
    "Virginia": "101630962",
    "Wisconsin": "104454774",
    "West Virginia": "106420769",
}

_URN_RE = re.compile(r"^urn:li:(?:fs_)?geo:(\d+)$", re.IGNORECASE)
_DIGITS_RE = re.compile(r"^\d+$")

KEY_PREFIX = "geo:"


def normalize_geo_key(text: Optional[str]) -> str:
    """Lowercase, drop commas, join words with "_" and collapse repeats."""
    if not text:
        return ""
    key = str(text).lower().strip().replace(",", "")
    key = re.sub(r"\s+", "_", key)
    key = re.sub(r"_+", "_", key)
    return key.strip("_")


def parse_location_id(value: Any) -> Optional[str]:
    """Return the numeric identifier for an id or URN; None for anything else."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value) if value > 0 else None
    text = str(value).strip()
    if _DIGITS_RE.match(text):
        return text
    match = _URN_RE.match(text)
    if match:
        return match.group(1)
    return None


def location_key_variants(text: Optional[str]) -> List[str]:
    """All keys a location text may be stored under.

    The first element is the canonical (full state name) form when a US
    state can be parsed from the text; abbreviation forms follow.
    """
    key = normalize_geo_key(text)
    if not key:
        return []
    city, state = parse_location_to_city_state(text)
    variants: List[str] = []
    if state and state in US_STATE_ABBREVIATIONS:
        for region in (US_STATE_ABBREVIATIONS[state], state):
            candidate = normalize_geo_key(f"{city}, {region}" if city else region)
            if candidate and candidate not in variants:
                variants.append(candidate)
    if key not in variants:
        variants.append(key)
    return variants


def split_region_country(display_name: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Best-effort (region, country) from a display name like "Austin, Texas, United States"."""
    if not display_name:
        return None, None
    _, state = parse_location_to_city_state(display_name)
    region = US_STATE_ABBREVIATIONS.get(state) if state else None
    country = None
    segments = [seg.strip().lower() for seg in display_name.split(",") if seg.strip()]
    if segments and segments[-1] in COUNTRY_ALIASES:
        country = COUNTRY_ALIASES[segments[-1]].upper()
    elif region:
        country = "US"
    return region, country


@dataclass
class GeoLocationEntry:
    key: str
    location_id: str
    display_name: str
    source: GeoSource = GeoSource.DISCOVERED
    region: Optional[str] = None
    country: Optional[str] = None
    discovered_at: str = field(default_factory=utc_now_iso)
    usage_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["source"] = self.source.value
        return data

    @classmethod
    def from_dict(cls, key: str, data: Dict[str, Any]) -> "GeoLocationEntry":
        """Build an entry, accepting the legacy ``id``/``name``/``timestamp`` shape."""
        location_id = parse_location_id(data.get("location_id", data.get("locationId", data.get("id"))))
        if not location_id:
            raise StorageError(f"Geo entry {key!r} has no usable location id")
        display_name = data.get("display_name") or data.get("displayName") or data.get("name") or key
        region = data.get("region")
        country = data.get("country")
        if region is None and country is None:
            region, country = split_region_country(display_name)
        usage = data.get("usage_count", data.get("usageCount", 0))
        return cls(
            key=key,
            location_id=location_id,
            display_name=str(display_name),
            source=GeoSource.coerce(data.get("source")),
            region=region,
            country=country,
            discovered_at=str(data.get("discovered_at") or data.get("discoveredAt") or data.get("timestamp") or utc_now_iso()),
            usage_count=int(usage or 0),
        )


class GeoIdStore:
    """Lookup/upsert facade over a durable table of GeoLocationEntry rows."""

    def __init__(self, table: DurableTable):
        self.table = table
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def _read(self, key: str) -> Optional[GeoLocationEntry]:
        row = self.table.get(KEY_PREFIX + key)
        if row is None:
            return None
        return GeoLocationEntry.from_dict(key, row)

    def _write(self, entry: GeoLocationEntry) -> None:
        self.table.put(KEY_PREFIX + entry.key, entry.to_dict())

    def lookup(self, text: Optional[str], *, touch: bool = True) -> Optional[GeoLocationEntry]:
        """Find an entry by normalized text, then by its abbreviation/full-name alias."""
        variants = location_key_variants(text)
        if not variants:
            return None
        for key in _lookup_order(text, variants):
            entry = self._read(key)
            if entry is None:
                continue
            if touch:
                with self._lock_for(variants[0]):
                    current = self._read(key) or entry
                    current.usage_count += 1
                    self._write(current)
                    entry = current
            return entry
        return None

    def upsert(
        self,
        text: str,
        location_id: Any,
        *,
        display_name: Optional[str] = None,
        source: GeoSource = GeoSource.DISCOVERED,
        region: Optional[str] = None,
        country: Optional[str] = None,
    ) -> GeoLocationEntry:
        """Insert or refresh the entry for ``text`` (and its aliases).

        Static ids never change. Other ids are replaced only by a source of
        equal or higher rank.
        """
        parsed_id = parse_location_id(location_id)
        if not parsed_id:
            raise ValueError(f"Refusing to store non-identifier {location_id!r} for {text!r}")
        variants = location_key_variants(text)
        if not variants:
            raise ValueError("Cannot store an empty location text")
        source = GeoSource.coerce(source)
        label = display_name or text.strip()
        if region is None and country is None:
            region, country = split_region_country(label)

        result: Optional[GeoLocationEntry] = None
        with self._lock_for(variants[0]):
            for key in variants:
                existing = self._read(key)
                if existing is None:
                    entry = GeoLocationEntry(
                        key=key,
                        location_id=parsed_id,
                        display_name=label,
                        source=source,
                        region=region,
                        country=country,
                    )
                else:
                    entry = existing
                    entry.display_name = label
                    entry.usage_count += 1
                    if existing.source is GeoSource.STATIC:
                        if existing.location_id != parsed_id:
                            logging.warning(
                                "Ignoring %s id %s for static location %s (keeps %s)",
                                source.value,
                                parsed_id,
                                key,
                                existing.location_id,
                            )
                    elif source.rank >= existing.source.rank:
                        entry.location_id = parsed_id
                        entry.source = source
                        entry.region = region or existing.region
                        entry.country = country or existing.country
                self._write(entry)
                if result is None:
                    result = entry
        logging.debug("Geo store upsert %s -> %s (%s)", variants[0], result.location_id, result.source.value)
        return result

    def seed_static(self, locations: Optional[Dict[str, str]] = None, path: Optional[Path] = None) -> int:
        """Write the verified table (plus an optional JSON file) as static entries."""
        merged: Dict[str, str] = dict(STATIC_LOCATIONS if locations is None else locations)
        if path:
            merged.update(load_static_file(Path(path)))
        count = 0
        for name, location_id in merged.items():
            existing = self._read(location_key_variants(name)[0])
            if existing is not None and existing.source is GeoSource.STATIC:
                continue
            self.upsert(name, location_id, display_name=name, source=GeoSource.STATIC)
            count += 1
        if count:
            logging.info("Seeded %d static geo entries", count)
        return count

    def entries(self) -> List[GeoLocationEntry]:
        results = []
        for key, row in self.table.items(KEY_PREFIX):
            try:
                results.append(GeoLocationEntry.from_dict(key[len(KEY_PREFIX):], row))
            except StorageError as exc:
                logging.warning("Skipping unreadable geo entry: %s", exc)
        return results

    def stats(self, top: int = 10) -> Dict[str, Any]:
        entries = self.entries()
        by_id: Dict[str, GeoLocationEntry] = {}
        for entry in entries:
            current = by_id.get(entry.location_id)
            if current is None or entry.usage_count > current.usage_count:
                by_id[entry.location_id] = entry
        unique = list(by_id.values())
        return {
            "total_keys": len(entries),
            "total_locations": len(unique),
            "by_source": dict(Counter(entry.source.value for entry in unique)),
            "by_country": dict(Counter(entry.country or "unknown" for entry in unique)),
            "by_region": dict(Counter(entry.region or "unknown" for entry in unique)),
            "most_used": [
                {"display_name": e.display_name, "location_id": e.location_id, "usage_count": e.usage_count}
                for e in sorted(unique, key=lambda e: e.usage_count, reverse=True)[:top]
            ],
            "recently_added": [
                {"display_name": e.display_name, "location_id": e.location_id, "discovered_at": e.discovered_at}
                for e in sorted(unique, key=lambda e: e.discovered_at, reverse=True)[:top]
            ],
        }

    def export_csv(self, path: Path) -> int:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        entries = sorted(self.entries(), key=lambda e: e.key)
        fieldnames = ["key", "location_id", "display_name", "region", "country", "source", "discovered_at", "usage_count"]
        with path.open("w", newline="", encoding="utf-8") as handle:
            writer = csv.DictWriter(handle, fieldnames=fieldnames)
            writer.writeheader()
            for entry in entries:
                writer.writerow(entry.to_dict())
        logging.info("Exported %d geo entries to %s", len(entries), path)
        return len(entries)


def _lookup_order(text: Optional[str], variants: List[str]) -> Iterable[str]:
    # Exact normalized text first, then aliases.
    exact = normalize_geo_key(text)
    yield exact
    for key in variants:
        if key != exact:
            yield key


def load_static_file(path: Path) -> Dict[str, str]:
    """Read ``{"Name": "id"}`` or ``[{"name": ..., "id": ...}]`` from disk."""
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise StorageError(f"Cannot read static geo file {path}: {exc}") from exc
    mapping: Dict[str, str] = {}
    if isinstance(raw, dict):
        items = raw.items()
    elif isinstance(raw, list):
        items = ((item.get("name"), item.get("id")) for item in raw if isinstance(item, dict))
    else:
        items = ()
    for name, value in items:
        location_id = parse_location_id(value)
        if name and location_id:
            mapping[str(name)] = location_id
    return mapping
