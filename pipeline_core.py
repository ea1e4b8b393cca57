"""
Shared foundations for the lead resolution and enrichment pipeline.

- US state / country reference tables and location normalizers
- Error taxonomy shared by every component
- HTTP utility with a single retry/backoff policy
- Durable key-value tables (JSON file with atomic replace, in-memory)
- Environment-driven configuration
"""

from __future__ import annotations

import json
import logging
import os
import random
import re
import socket
import sys
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, Tuple

US_STATE_ABBREVIATIONS: Dict[str, str] = {
    "AL": "Alabama",
    "AK": "Alaska",
    "AZ": "Arizona",
    "AR": "Arkansas",
    "CA": "California",
    "CO": "Colorado",
    "CT": "Connecticut",
    "DE": "Delaware",
    "FL": "Florida",
    "GA": "Georgia",
    "HI": "Hawaii",
    "ID": "Idaho",
    "IL": "Illinois",
    "IN": "Indiana",
    "IA": "Iowa",
    "KS": "Kansas",
    "KY": "Kentucky",
    "LA": "Louisiana",
    "ME": "Maine",
    "MD": "Maryland",
    "MA": "Massachusetts",
    "MI": "Michigan",
    "MN": "Minnesota",
    "MS": "Mississippi",
    "MO": "Missouri",
    "MT": "Montana",
    "NE": "Nebraska",
    "NV": "Nevada",
    "NH": "New Hampshire",
    "NJ": "New Jersey",
    "NM": "New Mexico",
    "NY": "New York",
    "NC": "North Carolina",
    "ND": "North Dakota",
    "OH": "Ohio",
    "OK": "Oklahoma",
    "OR": "Oregon",
    "PA": "Pennsylvania",
    "RI": "Rhode Island",
    "SC": "South Carolina",
    "SD": "South Dakota",
    "TN": "Tennessee",
    "TX": "Texas",
    "UT": "Utah",
    "VT": "Vermont",
    "VA": "Virginia",
    "WA": "Washington",
    "WV": "West Virginia",
    "WI": "Wisconsin",
    "WY": "Wyoming",
    "DC": "District of Columbia",
}

STATE_NAME_TO_ABBR: Dict[str, str] = {name.lower(): abbr for abbr, name in US_STATE_ABBREVIATIONS.items()}

# Longest names first so "west virginia" wins over "virginia".
STATE_NAMES_BY_LENGTH: List[str] = sorted(STATE_NAME_TO_ABBR, key=len, reverse=True)

CANADIAN_PROVINCES: Dict[str, str] = {
    "alberta": "AB",
    "british columbia": "BC",
    "manitoba": "MB",
    "new brunswick": "NB",
    "newfoundland and labrador": "NL",
    "nova scotia": "NS",
    "ontario": "ON",
    "prince edward island": "PE",
    "quebec": "QC",
    "saskatchewan": "SK",
}

COUNTRY_ALIASES: Dict[str, str] = {
    "united states of america": "us",
    "united states": "us",
    "usa": "us",
    "u.s.a.": "us",
    "u.s.": "us",
    "us": "us",
    "america": "us",
    "canada": "ca",
    "mexico": "mx",
    "united kingdom": "uk",
    "great britain": "uk",
    "england": "uk",
    "scotland": "uk",
    "uk": "uk",
    "ireland": "ie",
    "australia": "au",
    "new zealand": "nz",
    "germany": "de",
    "france": "fr",
    "spain": "es",
    "italy": "it",
    "netherlands": "nl",
    "india": "in",
    "china": "cn",
    "japan": "jp",
    "brazil": "br",
    "philippines": "ph",
    "south africa": "za",
}

COUNTRY_ALIASES_BY_LENGTH: List[str] = sorted(COUNTRY_ALIASES, key=len, reverse=True)


def normalize_location_text(value: Optional[str]) -> str:
    """Normalize free-form location text for fuzzy comparisons."""
    if not value:
        return ""
    text = value.strip().lower()
    if not text:
        return ""
    return re.sub(r"[^a-z0-9]+", " ", text).strip()


def normalize_state_token(value: Optional[str]) -> Optional[str]:
    """Normalize potential state string to its two-letter abbreviation (lowercase)."""
    if not value:
        return None
    token = value.strip().strip(".")
    if not token:
        return None

    upper = token.upper()
    if len(upper) == 2 and upper in US_STATE_ABBREVIATIONS:
        return upper.lower()

    lower = normalize_location_text(token)
    if lower in STATE_NAME_TO_ABBR:
        return STATE_NAME_TO_ABBR[lower].lower()
    return None


def split_location_tokens(value: str) -> List[str]:
    """Split compound location strings into comparable tokens."""
    return [token.strip() for token in re.split(r"[,/;|]", value) if token.strip()]


def parse_location_to_city_state(location: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Attempt to derive city/state components from a free-form location string."""
    if not location:
        return None, None
    text = location.strip()
    if not text:
        return None, None

    # Handle format "City ST"
    match = re.match(r"^(?P<city>.+?)[,\s]+(?P<state>[A-Za-z]{2})$", text)
    if match:
        state = match.group("state").upper()
        if state in US_STATE_ABBREVIATIONS:
            city = match.group("city").rstrip(", ").strip()
            return city or None, state

    parts = split_location_tokens(text)
    if not parts:
        return None, None

    derived_city: Optional[str] = None
    derived_state: Optional[str] = None
    for part in parts:
        if part.lower() in COUNTRY_ALIASES:
            continue
        state_token = normalize_state_token(part)
        if state_token and not derived_state:
            derived_state = state_token.upper()
            continue
        if not derived_city and not derived_state:
            derived_city = part

    return derived_city, derived_state


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Error taxonomy
# ---------------------------------------------------------------------------

class PipelineError(Exception):
    """Base class for pipeline failures."""


class ProviderError(PipelineError):
    """An external collaborator failed (timeout, non-2xx, network, malformed body)."""

    def __init__(self, message: str, *, provider: str = "", status: Optional[int] = None, retryable: bool = False):
        super().__init__(message)
        self.provider = provider
        self.status = status
        self.retryable = retryable


class RateLimitedError(ProviderError):
    """HTTP 429. Never retried locally; routed to the usage governor cooldown."""

    def __init__(self, message: str, *, provider: str = "", retry_after: Optional[float] = None):
        super().__init__(message, provider=provider, status=429, retryable=False)
        self.retry_after = retry_after


class AuthenticationError(ProviderError):
    """Every token refresh strategy failed, or the provider rejected the credentials."""

    def __init__(self, message: str, *, provider: str = ""):
        super().__init__(message, provider=provider, status=401, retryable=False)


class AdmissionDenied(PipelineError):
    """The usage governor refused an external call."""

    reason = "denied"

    def __init__(self, provider: str, message: str = ""):
        super().__init__(message or f"Admission denied for {provider}: {self.reason}")
        self.provider = provider


class CooldownActiveError(AdmissionDenied):
    """Transient: retry after ``paused_until``."""

    reason = "cooldown"

    def __init__(self, provider: str, paused_until: float):
        self.paused_until = paused_until
        super().__init__(provider, f"Provider {provider} cooling down until {paused_until:.0f}")


class QuotaExceededError(AdmissionDenied):
    """Terminal for the rest of the period; not retryable until the period rolls over."""

    reason = "quota_exceeded"

    def __init__(self, provider: str, period: str, limit: int):
        self.period = period
        self.limit = limit
        super().__init__(provider, f"Provider {provider} reached its {period} limit of {limit}")


class StorageError(PipelineError):
    """Durable storage is unavailable or corrupted. Always escalated."""


# ---------------------------------------------------------------------------
# HTTP utilities
# ---------------------------------------------------------------------------

@dataclass
class RetryPolicy:
    """Retry/backoff policy shared by every external call."""

    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0
    retryable_statuses: Tuple[int, ...] = (500, 502, 503, 504)
    jitter: bool = True

    def is_retryable_status(self, status: int) -> bool:
        # 429 never retries here; the governor handles it.
        return status in self.retryable_statuses

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (1-based), capped at ``max_delay``."""
        base = self.initial_delay * (self.backoff_multiplier ** max(0, attempt - 1))
        base = min(base, self.max_delay)
        if self.jitter:
            base *= 0.5 + random.random()
        return min(base, self.max_delay)

    @property
    def total_attempts(self) -> int:
        return max(1, self.max_retries + 1)


DEFAULT_RETRY_POLICY = RetryPolicy()


def _http_request(
    method: str,
    url: str,
    *,
    headers: Optional[Dict[str, str]] = None,
    json_body: Optional[Any] = None,
    params: Optional[Dict[str, Any]] = None,
    timeout: float = 30.0,
    policy: Optional[RetryPolicy] = None,
    provider: str = "",
) -> Any:
    """
    Perform an HTTP request with JSON support and the shared retry policy.

    Args:
        method: HTTP method (GET/POST/PATCH/etc.)
        url: Base URL (without query params)
        headers: Optional request headers
        json_body: Optional payload; serialized to JSON if provided
        params: Optional dict appended as query string
        timeout: Request timeout in seconds
        policy: Retry policy (defaults to DEFAULT_RETRY_POLICY)
        provider: Provider name attached to raised errors

    Returns:
        Parsed JSON response (dict/list) when possible, else decoded text.

    Raises:
        RateLimitedError on HTTP 429 (never retried here).
        ProviderError once retries are exhausted or for non-retryable statuses.
    """
    policy = policy or DEFAULT_RETRY_POLICY
    headers = dict(headers or {})
    data: Optional[bytes] = None

    if json_body is not None:
        headers.setdefault("Content-Type", "application/json")
        data = json.dumps(json_body).encode("utf-8")

    if params:
        encoded = urllib.parse.urlencode({k: v for k, v in params.items() if v is not None})
        url = f"{url}?{encoded}"

    attempt = 0
    while True:
        attempt += 1
        req = urllib.request.Request(url, data=data, headers=headers, method=method.upper())
        try:
            with urllib.request.urlopen(req, timeout=timeout) as resp:
                raw = resp.read()
                if not raw:
                    return {}

                text = raw.decode("utf-8", errors="ignore")
                try:
                    return json.loads(text)
                except json.JSONDecodeError:
                    content_type = resp.headers.get("Content-Type", "") or ""
                    if "application/json" in content_type.lower():
                        raise ProviderError(
                            f"Malformed JSON body from {url}", provider=provider, retryable=False
                        )
                return text

        except urllib.error.HTTPError as exc:
            if exc.code == 429:
                wait_hint = _retry_after_delay(exc)
                logging.warning("HTTP 429 from %s; not retrying (provider=%s)", url, provider or "n/a")
                raise RateLimitedError(f"Rate limited by {url}", provider=provider, retry_after=wait_hint) from exc
            if policy.is_retryable_status(exc.code) and attempt < policy.total_attempts:
                wait_for = policy.delay_for(attempt)
                logging.warning(
                    "Server error %s from %s; retrying in %.1fs (attempt %d/%d)",
                    exc.code,
                    url,
                    wait_for,
                    attempt,
                    policy.total_attempts,
                )
                time.sleep(wait_for)
                continue
            raise ProviderError(
                f"HTTP {exc.code} from {url}",
                provider=provider,
                status=exc.code,
                retryable=policy.is_retryable_status(exc.code),
            ) from exc

        except (urllib.error.URLError, socket.timeout, TimeoutError, ConnectionError) as exc:
            # Timeouts are treated exactly like a 5xx.
            if attempt < policy.total_attempts:
                wait_for = policy.delay_for(attempt)
                logging.warning("Network error %s; retrying in %.1fs (attempt %d/%d)", exc, wait_for, attempt, policy.total_attempts)
                time.sleep(wait_for)
                continue
            raise ProviderError(f"Network error calling {url}: {exc}", provider=provider, retryable=True) from exc


def _retry_after_delay(error: urllib.error.HTTPError) -> Optional[float]:
    """Helper to parse Retry-After header."""
    retry_after = error.headers.get("Retry-After") if getattr(error, "headers", None) else None
    if not retry_after:
        return None
    try:
        return float(retry_after)
    except ValueError:
        try:
            parsed = datetime.strptime(retry_after, "%a, %d %b %Y %H:%M:%S %Z")
            delta = parsed.replace(tzinfo=timezone.utc) - datetime.now(timezone.utc)
            return max(delta.total_seconds(), 0.0)
        except ValueError:
            return None


# ---------------------------------------------------------------------------
# Durable key-value tables
# ---------------------------------------------------------------------------

def atomic_write_json(path: Path, payload: Any) -> None:
    """Write JSON to ``path`` through a temp file and an atomic rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_file = path.with_suffix(path.suffix + ".tmp")
    with temp_file.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=2, sort_keys=True)
        handle.flush()
        os.fsync(handle.fileno())
    temp_file.replace(path)


class DurableTable(ABC):
    """Minimal durable key -> JSON-object table.

    The geo store, usage governor and checkpoint store only talk to this
    interface so the backing persistence can be swapped without touching
    call sites.
    """

    @abstractmethod
    def get(self, key: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def put(self, key: str, value: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...

    @abstractmethod
    def items(self, prefix: str = "") -> Iterator[Tuple[str, Dict[str, Any]]]:
        ...

    def keys(self, prefix: str = "") -> List[str]:
        return [key for key, _ in self.items(prefix)]

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.get(key) is not None


class InMemoryTable(DurableTable):
    """Volatile table for tests and dry runs."""

    def __init__(self, initial: Optional[Dict[str, Dict[str, Any]]] = None):
        self._rows: Dict[str, Dict[str, Any]] = {k: dict(v) for k, v in (initial or {}).items()}
        self._lock = threading.RLock()
        self.writes = 0

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._rows.get(key)
            return dict(row) if row is not None else None

    def put(self, key: str, value: Dict[str, Any]) -> None:
        with self._lock:
            self._rows[key] = dict(value)
            self.writes += 1

    def delete(self, key: str) -> None:
        with self._lock:
            self._rows.pop(key, None)
            self.writes += 1

    def items(self, prefix: str = "") -> Iterator[Tuple[str, Dict[str, Any]]]:
        with self._lock:
            snapshot = [(k, dict(v)) for k, v in self._rows.items() if k.startswith(prefix)]
        return iter(snapshot)


class JsonFileTable(DurableTable):
    """JSON-file table; every mutation is persisted immediately via temp file + rename."""

    def __init__(self, path: Path, *, name: str = ""):
        self.path = Path(path)
        self.name = name or self.path.stem
        self._lock = threading.RLock()
        self._rows: Dict[str, Dict[str, Any]] = self._load()

    def _load(self) -> Dict[str, Dict[str, Any]]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except (OSError, json.JSONDecodeError) as exc:
            raise StorageError(f"Cannot read {self.name} table at {self.path}: {exc}") from exc
        rows = raw.get("rows", raw) if isinstance(raw, dict) else None
        if not isinstance(rows, dict):
            raise StorageError(f"Unexpected layout in {self.path}")
        logging.debug("Loaded %d rows from %s", len(rows), self.path)
        return {str(k): v for k, v in rows.items() if isinstance(v, dict)}

    def _flush(self) -> None:
        try:
            atomic_write_json(self.path, {"updated_at": utc_now_iso(), "rows": self._rows})
        except OSError as exc:
            raise StorageError(f"Cannot persist {self.name} table to {self.path}: {exc}") from exc

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._rows.get(key)
            return dict(row) if row is not None else None

    def put(self, key: str, value: Dict[str, Any]) -> None:
        with self._lock:
            previous = self._rows.get(key)
            self._rows[key] = dict(value)
            try:
                self._flush()
            except StorageError:
                # Keep memory consistent with disk.
                if previous is None:
                    self._rows.pop(key, None)
                else:
                    self._rows[key] = previous
                raise

    def delete(self, key: str) -> None:
        with self._lock:
            if key not in self._rows:
                return
            previous = self._rows.pop(key)
            try:
                self._flush()
            except StorageError:
                self._rows[key] = previous
                raise

    def items(self, prefix: str = "") -> Iterator[Tuple[str, Dict[str, Any]]]:
        with self._lock:
            snapshot = [(k, dict(v)) for k, v in self._rows.items() if k.startswith(prefix)]
        return iter(snapshot)


# ---------------------------------------------------------------------------
# Environment loading
# ---------------------------------------------------------------------------

def _load_env_file(path: str = ".env.local") -> None:
    """
    Load environment variables from a simple KEY=VALUE file if present.

    Existing environment variables take precedence.

    The loader searches the following locations in order until a file is found:
    1. Explicit override via LEAD_PIPELINE_ENV_FILE environment variable.
    2. The provided `path` relative to the current working directory.
    3. The same path relative to this script's directory.
    """
    if not path:
        return

    candidates: List[Path] = []
    override = os.getenv("LEAD_PIPELINE_ENV_FILE")
    if override:
        candidates.append(Path(override).expanduser())

    raw_path = Path(path)
    if raw_path.is_absolute():
        candidates.append(raw_path)
    else:
        candidates.append(Path.cwd() / raw_path)
        candidates.append(Path(__file__).resolve().parent / raw_path)

    seen: Set[Path] = set()
    for candidate in candidates:
        try:
            resolved = candidate.resolve()
        except FileNotFoundError:
            continue
        if resolved in seen or not resolved.exists():
            continue
        seen.add(resolved)

        try:
            with resolved.open("r", encoding="utf-8") as handle:
                for raw_line in handle:
                    line = raw_line.strip()
                    if not line or line.startswith("#") or "=" not in line:
                        continue
                    key, value = line.split("=", 1)
                    key = key.strip()
                    value = value.strip()
                    if not key:
                        continue
                    if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
                        value = value[1:-1]
                    os.environ.setdefault(key, value)
            return
        except OSError as exc:
            print(f"Warning: failed to load environment file {resolved}: {exc}", file=sys.stderr)


def parse_limit_map(value: Optional[str]) -> Dict[str, int]:
    """Parse ``"people_data:500,phone_intel:1000"`` into a dict."""
    limits: Dict[str, int] = {}
    if not value:
        return limits
    for chunk in value.split(","):
        chunk = chunk.strip()
        if not chunk or ":" not in chunk:
            continue
        name, raw = chunk.split(":", 1)
        name = name.strip()
        try:
            limits[name] = int(raw.strip())
        except ValueError:
            logging.warning("Ignoring malformed usage limit entry %r", chunk)
    return limits


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

THROTTLE_TIERS = ("conservative", "normal", "aggressive")


@dataclass
class Config:
    """Environment-driven configuration container with validation."""

    data_dir: Path = field(default_factory=lambda: Path(os.getenv("DATA_DIR", "data")).expanduser())
    geo_static_file: str = field(default_factory=lambda: os.getenv("GEO_STATIC_FILE", ""))
    zip_table_file: str = field(default_factory=lambda: os.getenv("ZIP_LOOKUP_TABLE", ""))

    # Search + discovery collaborators
    rapidapi_key: str = field(default_factory=lambda: os.getenv("RAPIDAPI_KEY", ""))
    search_api_url: str = field(
        default_factory=lambda: os.getenv(
            "SEARCH_API_URL",
            "https://realtime-linkedin-sales-navigator-data.p.rapidapi.com/premium_search_person",
        )
    )
    location_suggestions_url: str = field(
        default_factory=lambda: os.getenv(
            "LOCATION_SUGGESTIONS_URL",
            "https://realtime-linkedin-sales-navigator-data.p.rapidapi.com/filter_geography_location_region_suggestions",
        )
    )
    json_to_url_endpoint: str = field(
        default_factory=lambda: os.getenv(
            "JSON_TO_URL_ENDPOINT",
            "https://realtime-linkedin-sales-navigator-data.p.rapidapi.com/json_to_url",
        )
    )
    profile_search_url: str = field(default_factory=lambda: os.getenv("PROFILE_SEARCH_URL", ""))
    company_suggestions_url: str = field(
        default_factory=lambda: os.getenv(
            "COMPANY_SUGGESTIONS_URL",
            "https://realtime-linkedin-sales-navigator-data.p.rapidapi.com/filter_company_suggestions",
        )
    )
    industry_suggestions_url: str = field(
        default_factory=lambda: os.getenv(
            "INDUSTRY_SUGGESTIONS_URL",
            "https://realtime-linkedin-sales-navigator-data.p.rapidapi.com/filter_industry_suggestions",
        )
    )
    location_discovery_enabled: bool = field(default_factory=lambda: _env_bool("LOCATION_DISCOVERY_ENABLED", "true"))

    # Enrichment collaborators
    people_data_url: str = field(
        default_factory=lambda: os.getenv("PEOPLE_DATA_URL", "https://skip-tracing-working-api.p.rapidapi.com")
    )
    phone_intel_url: str = field(
        default_factory=lambda: os.getenv("PHONE_INTEL_URL", "https://api.telnyx.com/v2/number_lookup")
    )
    phone_intel_api_key: str = field(default_factory=lambda: os.getenv("PHONE_INTEL_API_KEY", ""))

    # Compliance registry + token chain
    compliance_api_url: str = field(
        default_factory=lambda: os.getenv(
            "COMPLIANCE_API_URL",
            "https://api-business-agent.ushadvisors.com/Leads/api/leads/scrubphonenumber",
        )
    )
    compliance_agent_number: str = field(default_factory=lambda: os.getenv("COMPLIANCE_AGENT_NUMBER", ""))
    compliance_jwt_token: str = field(default_factory=lambda: os.getenv("COMPLIANCE_JWT_TOKEN", ""))
    compliance_refresh_url: str = field(default_factory=lambda: os.getenv("COMPLIANCE_REFRESH_URL", ""))
    compliance_token_url: str = field(default_factory=lambda: os.getenv("COMPLIANCE_TOKEN_URL", ""))
    compliance_username: str = field(default_factory=lambda: os.getenv("COMPLIANCE_USERNAME", ""))
    compliance_password: str = field(default_factory=lambda: os.getenv("COMPLIANCE_PASSWORD", ""))

    # Timeouts + retries
    request_timeout: float = field(default_factory=lambda: float(os.getenv("REQUEST_TIMEOUT", "30")))
    max_retries: int = field(default_factory=lambda: int(os.getenv("MAX_RETRIES", "3")))
    retry_initial_delay: float = field(default_factory=lambda: float(os.getenv("RETRY_INITIAL_DELAY", "1.0")))
    retry_max_delay: float = field(default_factory=lambda: float(os.getenv("RETRY_MAX_DELAY", "10.0")))
    retry_backoff_multiplier: float = field(default_factory=lambda: float(os.getenv("RETRY_BACKOFF_MULTIPLIER", "2.0")))

    # Usage governance
    daily_limits: Dict[str, int] = field(default_factory=lambda: parse_limit_map(os.getenv("USAGE_DAILY_LIMITS", "")))
    monthly_limits: Dict[str, int] = field(default_factory=lambda: parse_limit_map(os.getenv("USAGE_MONTHLY_LIMITS", "")))
    cooldown_enabled: bool = field(default_factory=lambda: _env_bool("COOLDOWN_ENABLED", "true"))
    cooldown_error_threshold: int = field(default_factory=lambda: int(os.getenv("COOLDOWN_ERROR_THRESHOLD", "5")))
    cooldown_window_seconds: float = field(default_factory=lambda: float(os.getenv("COOLDOWN_WINDOW_SECONDS", "60")))
    cooldown_duration_seconds: float = field(default_factory=lambda: float(os.getenv("COOLDOWN_DURATION_SECONDS", "300")))
    throttle_tier: str = field(default_factory=lambda: os.getenv("THROTTLE_TIER", "normal").strip().lower())

    # Orchestration
    enrichment_concurrency: int = field(default_factory=lambda: int(os.getenv("ENRICHMENT_CONCURRENCY", "3")))
    search_max_pages: int = field(default_factory=lambda: int(os.getenv("SEARCH_MAX_PAGES", "1")))

    # Lead validator policy
    validator_accept_medium: bool = field(default_factory=lambda: _env_bool("VALIDATOR_ACCEPT_MEDIUM", "true"))
    validator_min_substring_length: int = field(
        default_factory=lambda: int(os.getenv("VALIDATOR_MIN_SUBSTRING_LENGTH", "3"))
    )

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.max_retries,
            initial_delay=self.retry_initial_delay,
            max_delay=self.retry_max_delay,
            backoff_multiplier=self.retry_backoff_multiplier,
        )

    def validate(self) -> None:
        """Ensure critical configuration exists and is valid."""
        missing = []
        invalid = []

        if not self.search_api_url:
            missing.append("SEARCH_API_URL")

        if self.request_timeout <= 0:
            invalid.append(f"REQUEST_TIMEOUT must be positive (got {self.request_timeout})")
        if self.max_retries < 0:
            invalid.append(f"MAX_RETRIES cannot be negative (got {self.max_retries})")
        if self.retry_initial_delay < 0 or self.retry_max_delay < self.retry_initial_delay:
            invalid.append(
                f"RETRY_MAX_DELAY ({self.retry_max_delay}) must be >= RETRY_INITIAL_DELAY ({self.retry_initial_delay}) >= 0"
            )
        if self.retry_backoff_multiplier < 1:
            invalid.append(f"RETRY_BACKOFF_MULTIPLIER must be >= 1 (got {self.retry_backoff_multiplier})")

        if self.enrichment_concurrency < 1 or self.enrichment_concurrency > 20:
            invalid.append(f"ENRICHMENT_CONCURRENCY out of range: {self.enrichment_concurrency} (1-20)")
        if self.search_max_pages < 1:
            invalid.append(f"SEARCH_MAX_PAGES too low: {self.search_max_pages}")

        for label, limits in (("USAGE_DAILY_LIMITS", self.daily_limits), ("USAGE_MONTHLY_LIMITS", self.monthly_limits)):
            for provider, value in limits.items():
                if value < 0:
                    invalid.append(f"{label} for {provider} cannot be negative (got {value})")

        if self.cooldown_error_threshold < 1:
            invalid.append(f"COOLDOWN_ERROR_THRESHOLD must be >= 1 (got {self.cooldown_error_threshold})")
        if self.cooldown_window_seconds <= 0:
            invalid.append(f"COOLDOWN_WINDOW_SECONDS must be positive (got {self.cooldown_window_seconds})")
        if self.cooldown_duration_seconds < 0:
            invalid.append(f"COOLDOWN_DURATION_SECONDS cannot be negative (got {self.cooldown_duration_seconds})")
        if self.throttle_tier not in THROTTLE_TIERS:
            invalid.append(f"THROTTLE_TIER must be one of {', '.join(THROTTLE_TIERS)} (got {self.throttle_tier!r})")

        if self.validator_min_substring_length < 1:
            invalid.append(
                f"VALIDATOR_MIN_SUBSTRING_LENGTH must be >= 1 (got {self.validator_min_substring_length})"
            )

        if missing:
            raise ValueError(f"Missing required configuration: {', '.join(missing)}")
        if invalid:
            raise ValueError(f"Invalid configuration: {'; '.join(invalid)}")

    def table_path(self, name: str) -> Path:
        return self.data_dir / f"{name}.json"


def rapidapi_headers(api_key: str, url: str) -> Dict[str, str]:
    """RapidAPI style auth headers derived from the endpoint host."""
    host = urllib.parse.urlparse(url).netloc
    headers = {"Accept": "application/json"}
    if api_key:
        headers["x-rapidapi-key"] = api_key
        if host:
            headers["x-rapidapi-host"] = host
    return headers


Clock = Callable[[], float]
