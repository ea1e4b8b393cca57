"""
Clients for the enrichment collaborators.

Every client goes through ``_http_request`` and returns a ProviderResult
(success / partial / failure) or raises ProviderError. Admission control is
applied by the caller through the usage governor, except for the compliance
registry, whose token retry admits each request itself.
"""

from __future__ import annotations

import base64
import json
import logging
import re
import threading
import time
import urllib.parse
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from pipeline_core import (
    AuthenticationError,
    Clock,
    Config,
    ProviderError,
    RetryPolicy,
    _http_request,
    atomic_write_json,
    rapidapi_headers,
)

PEOPLE_DATA = "people_data"
PHONE_INTEL = "phone_intel"
COMPLIANCE = "compliance"


class ResultStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILURE = "failure"


@dataclass
class ProviderResult:
    status: ResultStatus
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is not ResultStatus.FAILURE


def clean_phone(value: Any) -> Optional[str]:
    """Digits only, US country code dropped; None when fewer than 10 digits remain."""
    if value is None:
        return None
    digits = re.sub(r"\D", "", str(value))
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    return digits if len(digits) >= 10 else None


def _parse_date(value: Any) -> datetime:
    if not value:
        return datetime.min
    for fmt in ("%m/%d/%Y", "%Y-%m-%d", "%b %Y", "%m/%Y"):
        try:
            return datetime.strptime(str(value).strip(), fmt)
        except ValueError:
            continue
    return datetime.min


def pick_best_phone(phone_details: Any) -> Optional[str]:
    """Prefer wireless numbers, then the most recently reported."""
    if not isinstance(phone_details, list):
        return None
    candidates = [item for item in phone_details if isinstance(item, dict) and item.get("phone_number")]
    candidates.sort(
        key=lambda item: (item.get("phone_type") == "Wireless", _parse_date(item.get("last_reported"))),
        reverse=True,
    )
    for item in candidates:
        phone = clean_phone(item["phone_number"])
        if phone:
            return phone
    return None


def _collect_emails(record: Dict[str, Any]) -> List[str]:
    emails: List[str] = []
    for name in ("Email", "email", "Emails", "emails", "Email Addresses", "All Emails"):
        value = record.get(name)
        values = value if isinstance(value, list) else [value]
        for item in values:
            if isinstance(item, dict):
                item = item.get("email") or item.get("Email")
            if isinstance(item, str) and "@" in item and item.strip().lower() not in emails:
                emails.append(item.strip().lower())
    return emails


def _age_value(record: Dict[str, Any]) -> Optional[str]:
    value = record.get("Age") or record.get("age")
    if value in (None, ""):
        return None
    return str(value).strip()


def normalize_person(record: Dict[str, Any]) -> Dict[str, Any]:
    """Project a people-data record onto the fields the orchestrator consumes."""
    phone = None
    for name in ("Telephone", "phone", "phone_number", "Phone Number", "Phone"):
        phone = clean_phone(record.get(name))
        if phone:
            break
    if not phone:
        phone = pick_best_phone(record.get("All Phone Details"))
    return {
        "person_id": str(record["Person ID"]) if record.get("Person ID") else None,
        "phone": phone,
        "emails": _collect_emails(record),
        "age": _age_value(record),
        "dob": record.get("DOB") or record.get("dob") or None,
        "city": record.get("City") or record.get("city") or None,
        "state": record.get("State") or record.get("state") or None,
        "address": record.get("Address") or record.get("address") or record.get("addressLine1") or None,
        "income": record.get("Income") or record.get("Estimated Income") or record.get("income") or None,
    }


# ---------------------------------------------------------------------------
# People-data (skip tracing)
# ---------------------------------------------------------------------------

class PeopleDataClient:
    """Find-by-identifying-fields and find-by-person-id against the people-data API."""

    provider = PEOPLE_DATA

    def __init__(self, base_url: str, api_key: str = "", *, timeout: float = 30.0, policy: Optional[RetryPolicy] = None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.policy = policy

    @classmethod
    def from_config(cls, config: Config) -> "PeopleDataClient":
        return cls(config.people_data_url, config.rapidapi_key, timeout=config.request_timeout, policy=config.retry_policy())

    def _get(self, path: str, params: Dict[str, Any]) -> Any:
        url = f"{self.base_url}{path}"
        return _http_request(
            "GET",
            url,
            headers=rapidapi_headers(self.api_key, url),
            params=params,
            timeout=self.timeout,
            policy=self.policy,
            provider=self.provider,
        )

    def search(
        self,
        name: Optional[str] = None,
        *,
        citystatezip: Optional[str] = None,
        email: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> ProviderResult:
        if email and not name:
            payload = self._get("/search/byemail", {"email": email, "page": 1})
        elif citystatezip:
            payload = self._get("/search/bynameaddress", {"name": name, "citystatezip": citystatezip, "page": 1})
        elif name:
            payload = self._get("/search/byname", {"name": name, "page": 1})
        elif phone:
            payload = self._get("/search/byphone", {"phoneno": phone, "page": 1})
        else:
            raise ValueError("search needs a name, email or phone")

        people = _people_list(payload)
        if not people:
            return ProviderResult(ResultStatus.FAILURE, {"people": []}, "No matching person")
        best = normalize_person(people[0])
        best["people"] = people
        status = ResultStatus.SUCCESS if best["phone"] else ResultStatus.PARTIAL
        return ProviderResult(status, best)

    def person_details(self, person_id: str) -> ProviderResult:
        payload = self._get("/search/detailsbyID", {"peo_id": person_id})
        details = payload.get("data", payload) if isinstance(payload, dict) else {}
        if not isinstance(details, dict) or not details:
            return ProviderResult(ResultStatus.FAILURE, {}, "Empty person details")

        summary_rows = details.get("Person Details")
        summary = summary_rows[0] if isinstance(summary_rows, list) and summary_rows else {}
        merged = dict(summary) if isinstance(summary, dict) else {}
        merged.setdefault("Person ID", person_id)
        if details.get("All Phone Details"):
            merged["All Phone Details"] = details["All Phone Details"]
        for name in ("Email Addresses", "All Emails"):
            if details.get(name):
                merged[name] = details[name]

        record = normalize_person(merged)
        best_phone = pick_best_phone(details.get("All Phone Details"))
        if best_phone:
            record["phone"] = best_phone
        status = ResultStatus.SUCCESS if record["phone"] or record["age"] else ResultStatus.PARTIAL
        return ProviderResult(status, record)


def _people_list(payload: Any) -> List[Dict[str, Any]]:
    node = payload
    if isinstance(node, dict) and isinstance(node.get("data"), (dict, list)):
        node = node["data"]
    if isinstance(node, dict):
        for name in ("PeopleDetails", "people", "results"):
            if isinstance(node.get(name), list):
                node = node[name]
                break
    if isinstance(node, list):
        return [item for item in node if isinstance(item, dict)]
    return []


# ---------------------------------------------------------------------------
# Phone intelligence
# ---------------------------------------------------------------------------

class PhoneIntelligenceClient:
    """Line type + carrier lookup for a phone number."""

    provider = PHONE_INTEL

    def __init__(self, url: str, api_key: str = "", *, timeout: float = 30.0, policy: Optional[RetryPolicy] = None):
        self.url = url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.policy = policy

    @classmethod
    def from_config(cls, config: Config) -> "PhoneIntelligenceClient":
        return cls(config.phone_intel_url, config.phone_intel_api_key, timeout=config.request_timeout, policy=config.retry_policy())

    def lookup(self, phone: str) -> ProviderResult:
        digits = clean_phone(phone)
        if not digits:
            return ProviderResult(ResultStatus.FAILURE, {}, f"Not a dialable number: {phone!r}")
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        payload = _http_request(
            "GET",
            f"{self.url}/{urllib.parse.quote('+1' + digits)}",
            headers=headers,
            params={"type": "carrier"},
            timeout=self.timeout,
            policy=self.policy,
            provider=self.provider,
        )
        body = _unwrap_data(payload)
        portability = body.get("portability") or {}
        carrier = body.get("carrier") or {}
        data = {
            "line_type": portability.get("line_type") or carrier.get("type"),
            "carrier_name": carrier.get("name"),
            "carrier_type": carrier.get("type"),
            "normalized_carrier": carrier.get("normalized_carrier"),
        }
        if not any(data.values()):
            return ProviderResult(ResultStatus.FAILURE, data, "No line type or carrier in response")
        status = ResultStatus.SUCCESS if data["line_type"] and data["carrier_name"] else ResultStatus.PARTIAL
        return ProviderResult(status, data)


def _unwrap_data(payload: Any) -> Dict[str, Any]:
    node = payload if isinstance(payload, dict) else {}
    for _ in range(2):
        inner = node.get("data")
        if isinstance(inner, dict):
            node = inner
        else:
            break
    return node


# ---------------------------------------------------------------------------
# Compliance registry auth
# ---------------------------------------------------------------------------

def is_jwt_shaped(token: Optional[str]) -> bool:
    return bool(token) and len(token) >= 50 and len(token.split(".")) == 3


def jwt_expiry(token: str) -> Optional[float]:
    """The ``exp`` claim of a JWT, if it can be decoded."""
    try:
        payload = token.split(".")[1]
        padded = payload + "=" * (-len(payload) % 4)
        claims = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
    except (IndexError, ValueError, UnicodeDecodeError):
        return None
    exp = claims.get("exp") if isinstance(claims, dict) else None
    return float(exp) if isinstance(exp, (int, float)) else None


def _token_from_payload(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    nested = payload.get("tokenResult") or payload.get("data") or {}
    for source in (nested if isinstance(nested, dict) else {}, payload):
        for name in ("access_token", "accessToken", "token", "jwt"):
            value = source.get(name)
            if isinstance(value, str) and value:
                return value
    return None


class TokenProvider:
    """Bearer token for the compliance registry.

    Order: environment token, in-memory cache, persisted token file,
    refresh-token exchange, credential login. Only when every source fails
    is AuthenticationError raised.
    """

    EXPIRY_SKEW_SECONDS = 60.0
    DEFAULT_LIFETIME_SECONDS = 3600.0

    def __init__(
        self,
        *,
        env_token: str = "",
        token_file: Optional[Path] = None,
        refresh_url: str = "",
        token_url: str = "",
        username: str = "",
        password: str = "",
        timeout: float = 30.0,
        policy: Optional[RetryPolicy] = None,
        clock: Clock = time.time,
    ):
        self.env_token = env_token.strip()
        self.token_file = Path(token_file) if token_file else None
        self.refresh_url = refresh_url
        self.token_url = token_url
        self.username = username
        self.password = password
        self.timeout = timeout
        self.policy = policy
        self.clock = clock
        self._cached: Optional[str] = None
        self._cached_expires_at: float = 0.0
        self._rejected: set = set()
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: Config) -> "TokenProvider":
        return cls(
            env_token=config.compliance_jwt_token,
            token_file=config.data_dir / "compliance-token.json",
            refresh_url=config.compliance_refresh_url,
            token_url=config.compliance_token_url,
            username=config.compliance_username,
            password=config.compliance_password,
            timeout=config.request_timeout,
            policy=config.retry_policy(),
        )

    def _expires_at(self, token: str) -> float:
        return jwt_expiry(token) or (self.clock() + self.DEFAULT_LIFETIME_SECONDS)

    def _usable(self, token: Optional[str], expires_at: Optional[float] = None) -> bool:
        if not is_jwt_shaped(token) or token in self._rejected:
            return False
        expiry = expires_at if expires_at is not None else jwt_expiry(token)
        return expiry is None or expiry - self.EXPIRY_SKEW_SECONDS > self.clock()

    def _remember(self, token: str, persist: bool = True) -> str:
        self._cached = token
        self._cached_expires_at = self._expires_at(token)
        if persist and self.token_file is not None:
            try:
                atomic_write_json(
                    self.token_file,
                    {"token": token, "expires_at": self._cached_expires_at, "fetched_at": self.clock()},
                )
            except OSError as exc:
                logging.warning("Could not persist compliance token: %s", exc)
        return token

    def _read_file(self) -> Optional[Dict[str, Any]]:
        if self.token_file is None or not self.token_file.exists():
            return None
        try:
            data = json.loads(self.token_file.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logging.warning("Ignoring unreadable token file %s: %s", self.token_file, exc)
            return None
        return data if isinstance(data, dict) else None

    def invalidate(self) -> None:
        """Mark the current token as rejected so the next call walks the chain again."""
        with self._lock:
            if self._cached:
                self._rejected.add(self._cached)
            if self.env_token:
                self._rejected.add(self.env_token)
            self._cached = None
            self._cached_expires_at = 0.0

    def get_token(self, force_refresh: bool = False) -> str:
        with self._lock:
            if not force_refresh:
                if self._usable(self.env_token):
                    return self.env_token
                if self._cached and self._usable(self._cached, self._cached_expires_at):
                    return self._cached
                stored = self._read_file()
                if stored and self._usable(stored.get("token"), stored.get("expires_at")):
                    return self._remember(stored["token"], persist=False)

            previous = self._cached or self.env_token or ((self._read_file() or {}).get("token"))
            refreshed = self._refresh(previous) if previous else None
            if refreshed:
                return self._remember(refreshed)

            logged_in = self._login()
            if logged_in:
                return self._remember(logged_in)

        raise AuthenticationError("No valid compliance token: every refresh strategy failed", provider=COMPLIANCE)

    def _refresh(self, token: str) -> Optional[str]:
        if not self.refresh_url:
            return None
        try:
            payload = _http_request(
                "POST",
                self.refresh_url,
                headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
                json_body={},
                timeout=self.timeout,
                policy=self.policy,
                provider=COMPLIANCE,
            )
        except ProviderError as exc:
            logging.warning("Compliance token refresh failed: %s", exc)
            return None
        new_token = _token_from_payload(payload)
        if not is_jwt_shaped(new_token):
            logging.warning("Compliance token refresh returned no usable token")
            return None
        logging.info("Compliance token refreshed")
        return new_token

    def _login(self) -> Optional[str]:
        if not (self.token_url and self.username and self.password):
            return None
        try:
            payload = _http_request(
                "POST",
                self.token_url,
                headers={"Accept": "application/json"},
                json_body={"username": self.username, "password": self.password},
                timeout=self.timeout,
                policy=self.policy,
                provider=COMPLIANCE,
            )
        except ProviderError as exc:
            logging.warning("Compliance credential login failed: %s", exc)
            return None
        token = _token_from_payload(payload)
        return token if is_jwt_shaped(token) else None


# ---------------------------------------------------------------------------
# Compliance registry (do-not-call)
# ---------------------------------------------------------------------------

@dataclass
class DncStatus:
    phone: str
    status: str  # OK | DNC | INVALID | ERROR
    is_dnc: bool = False
    can_contact: Optional[bool] = None
    reason: Optional[str] = None


def parse_dnc_response(phone: str, payload: Any) -> DncStatus:
    result = payload if isinstance(payload, dict) else {}
    data = result.get("data") if isinstance(result.get("data"), dict) else result
    contact_status = data.get("contactStatus") if isinstance(data.get("contactStatus"), dict) else {}
    is_dnc = (
        data.get("isDoNotCall") is True
        or contact_status.get("canContact") is False
        or data.get("isDNC") is True
        or result.get("isDoNotCall") is True
        or result.get("status") in ("DNC", "Do Not Call")
    )
    reason = contact_status.get("reason") or data.get("reason") or ("Do Not Call" if is_dnc else None)
    return DncStatus(
        phone=phone,
        status="DNC" if is_dnc else "OK",
        is_dnc=is_dnc,
        can_contact=not is_dnc,
        reason=reason,
    )


class ComplianceRegistryClient:
    """Read-only, idempotent do-not-call check; safe to rerun on a schedule."""

    provider = COMPLIANCE

    def __init__(
        self,
        url: str,
        agent_number: str,
        tokens: TokenProvider,
        *,
        timeout: float = 30.0,
        policy: Optional[RetryPolicy] = None,
        governor: Any = None,
    ):
        self.url = url
        self.agent_number = agent_number
        self.tokens = tokens
        self.timeout = timeout
        self.policy = policy
        self.governor = governor

    @classmethod
    def from_config(cls, config: Config, tokens: Optional[TokenProvider] = None) -> "ComplianceRegistryClient":
        return cls(
            config.compliance_api_url,
            config.compliance_agent_number,
            tokens or TokenProvider.from_config(config),
            timeout=config.request_timeout,
            policy=config.retry_policy(),
        )

    def _request(self, digits: str, token: str) -> Any:
        if self.governor is not None:
            return self.governor.call(self.provider, self._send, digits, token)
        return self._send(digits, token)

    def _send(self, digits: str, token: str) -> Any:
        return _http_request(
            "GET",
            self.url,
            headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
            params={"currentContextAgentNumber": self.agent_number, "phone": digits},
            timeout=self.timeout,
            policy=self.policy,
            provider=self.provider,
        )

    def needs_call(self, phone: Optional[str]) -> bool:
        return len(re.sub(r"\D", "", phone or "")) >= 10

    def check(self, phone: str) -> DncStatus:
        digits = re.sub(r"\D", "", phone or "")
        if len(digits) < 10:
            return DncStatus(phone=digits or (phone or ""), status="INVALID", reason="Phone number has fewer than 10 digits")
        try:
            payload = self._request(digits, self.tokens.get_token())
        except ProviderError as exc:
            if exc.status != 401:
                raise
            logging.info("Compliance registry rejected token; refreshing once")
            self.tokens.invalidate()
            try:
                payload = self._request(digits, self.tokens.get_token(force_refresh=True))
            except ProviderError as retry_exc:
                if retry_exc.status == 401:
                    raise AuthenticationError("Compliance registry rejected refreshed token", provider=self.provider) from retry_exc
                raise
        return parse_dnc_response(digits, payload)
