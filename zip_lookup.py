"""Offline city/state -> ZIP lookup (no external calls)."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, Optional, Tuple

from pipeline_core import normalize_location_text, normalize_state_token

# One representative ZIP per state, used when the city is not in the table.
STATE_ZIP_CENTROIDS: Dict[str, str] = {
    "AL": "35201", "AK": "99501", "AZ": "85001", "AR": "72201",
    "CA": "90001", "CO": "80201", "CT": "06101", "DE": "19901",
    "FL": "33101", "GA": "30301", "HI": "96801", "ID": "83701",
    "IL": "60601", "IN": "46201", "IA": "50301", "KS": "66101",
    "KY": "40201", "LA": "70101", "ME": "04101", "MD": "21201",
    "MA": "02101", "MI": "48201", "MN": "55401", "MS": "39201",
    "MO": "63101", "MT": "59101", "NE": "68101", "NV": "89101",
    "NH": "03101", "NJ": "07001", "NM": "87101", "NY": "10001",
    "NC": "28201", "ND": "58101", "OH": "44101", "OK": "73101",
    "OR": "97201", "PA": "19101", "RI": "02901", "SC": "29201",
    "SD": "57101", "TN": "37201", "TX": "75201", "UT": "84101",
    "VT": "05401", "VA": "23201", "WA": "98101", "WV": "25301",
    "WI": "53201", "WY": "82001", "DC": "20001",
}


class ZipLookup:
    """City table from ``zip-lookup-table.json`` with state centroid fallback."""

    def __init__(self, table_path: Optional[Path] = None):
        self.table_path = Path(table_path) if table_path else None
        self._table: Optional[Dict[Tuple[str, str], str]] = None

    def _load(self) -> Dict[Tuple[str, str], str]:
        if self._table is not None:
            return self._table
        table: Dict[Tuple[str, str], str] = {}
        if self.table_path and self.table_path.exists():
            try:
                rows = json.loads(self.table_path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as exc:
                logging.warning("Ignoring unreadable ZIP table %s: %s", self.table_path, exc)
                rows = []
            for row in rows if isinstance(rows, list) else []:
                if not isinstance(row, dict):
                    continue
                state = normalize_state_token(str(row.get("stateAbbr") or row.get("state") or ""))
                city = normalize_location_text(str(row.get("city") or ""))
                zipcode = str(row.get("zipcode") or row.get("zip") or "").strip()
                if state and city and zipcode:
                    table[(city, state.upper())] = zipcode
            logging.debug("Loaded %d city ZIP rows from %s", len(table), self.table_path)
        self._table = table
        return table

    def lookup(self, city: Optional[str], state: Optional[str]) -> Optional[str]:
        state_abbr = normalize_state_token(state)
        if not state_abbr:
            return None
        state_abbr = state_abbr.upper()
        if city:
            match = self._load().get((normalize_location_text(city), state_abbr))
            if match:
                return match
        return STATE_ZIP_CENTROIDS.get(state_abbr)
