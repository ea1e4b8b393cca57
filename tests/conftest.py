import os
import sys
from typing import Dict, List, Optional

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from enrichment import CheckpointStore, LeadRecord  # noqa: E402
from geo_store import GeoIdStore  # noqa: E402
from location_resolver import DiscoveryCandidate, DiscoveryStrategy  # noqa: E402
from pipeline_core import InMemoryTable, ProviderError  # noqa: E402
from providers import DncStatus, ProviderResult, ResultStatus  # noqa: E402
from usage_governor import CooldownPolicy, ProviderLimits, ThrottleTier, UsageGovernor  # noqa: E402


@pytest.fixture(autouse=True)
def _test_env(monkeypatch, tmp_path):
    # Ensure project root on sys.path for imports
    if ROOT not in sys.path:
        sys.path.insert(0, ROOT)
    # Keep tests offline and never pick up a developer's .env.local
    monkeypatch.setenv("LEAD_PIPELINE_ENV_FILE", str(tmp_path / "missing.env"))
    monkeypatch.setenv("DATA_DIR", str(tmp_path / "data"))
    for name in (
        "RAPIDAPI_KEY",
        "PHONE_INTEL_API_KEY",
        "COMPLIANCE_AGENT_NUMBER",
        "COMPLIANCE_JWT_TOKEN",
        "PROFILE_SEARCH_URL",
        "USAGE_DAILY_LIMITS",
        "USAGE_MONTHLY_LIMITS",
        "GEO_STATIC_FILE",
        "ZIP_LOOKUP_TABLE",
    ):
        monkeypatch.delenv(name, raising=False)
    # Small timeouts, no retry sleeps
    monkeypatch.setenv("REQUEST_TIMEOUT", "5")
    monkeypatch.setenv("MAX_RETRIES", "0")
    monkeypatch.setenv("RETRY_INITIAL_DELAY", "0")
    monkeypatch.setenv("RETRY_MAX_DELAY", "0")


class FakeClock:
    """Manually advanced clock; starts at 2026-03-15T12:00:00Z."""

    def __init__(self, start: float = 1773576000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_table():
    return InMemoryTable()


@pytest.fixture
def geo_store():
    store = GeoIdStore(InMemoryTable())
    store.seed_static()
    return store


@pytest.fixture
def make_governor(clock):
    """Governor factory with a fake clock and no pacing sleeps."""

    def _make(
        daily: Optional[Dict[str, int]] = None,
        monthly: Optional[Dict[str, int]] = None,
        table: Optional[InMemoryTable] = None,
        **cooldown_kwargs,
    ) -> UsageGovernor:
        daily = daily or {}
        monthly = monthly or {}
        limits = {
            name: ProviderLimits(daily=daily.get(name), monthly=monthly.get(name))
            for name in set(daily) | set(monthly)
        }
        return UsageGovernor(
            table if table is not None else InMemoryTable(),
            limits,
            CooldownPolicy(**cooldown_kwargs),
            ThrottleTier.NORMAL,
            clock=clock,
            sleep=lambda seconds: None,
        )

    return _make


@pytest.fixture
def governor(make_governor):
    return make_governor()


@pytest.fixture
def checkpoints():
    return CheckpointStore(InMemoryTable())


class FakeStrategy(DiscoveryStrategy):
    """Discovery strategy answering from a dict and counting attempts."""

    name = "fake"

    def __init__(self, answers: Optional[Dict[str, str]] = None, error: Optional[Exception] = None):
        self.answers = {key.lower(): value for key, value in (answers or {}).items()}
        self.error = error
        self.calls: List[str] = []

    def attempt(self, text: str) -> Optional[DiscoveryCandidate]:
        return self._call(self._answer, text)

    def _answer(self, text: str) -> Optional[DiscoveryCandidate]:
        self.calls.append(text)
        if self.error is not None:
            raise self.error
        location_id = self.answers.get(text.lower())
        if location_id is None:
            return None
        return DiscoveryCandidate(location_id, text, self.name)


class FakePeopleData:
    """People-data client returning canned results and counting calls."""

    provider = "people_data"

    def __init__(
        self,
        search_result: Optional[ProviderResult] = None,
        details_result: Optional[ProviderResult] = None,
        error: Optional[Exception] = None,
    ):
        self.search_result = search_result or ProviderResult(ResultStatus.FAILURE, {"people": []}, "No matching person")
        self.details_result = details_result or ProviderResult(ResultStatus.FAILURE, {}, "Empty person details")
        self.error = error
        self.search_calls: List[Dict] = []
        self.details_calls: List[str] = []

    def search(self, name=None, *, citystatezip=None, email=None, phone=None):
        self.search_calls.append({"name": name, "citystatezip": citystatezip, "email": email})
        if self.error is not None:
            raise self.error
        return self.search_result

    def person_details(self, person_id):
        self.details_calls.append(person_id)
        if self.error is not None:
            raise self.error
        return self.details_result


class FakePhoneIntel:
    provider = "phone_intel"

    def __init__(self, line_type: str = "mobile", carrier: str = "Verizon Wireless"):
        self.line_type = line_type
        self.carrier = carrier
        self.calls: List[str] = []

    def lookup(self, phone):
        self.calls.append(phone)
        return ProviderResult(
            ResultStatus.SUCCESS,
            {
                "line_type": self.line_type,
                "carrier_name": self.carrier,
                "carrier_type": self.line_type,
                "normalized_carrier": self.carrier.lower(),
            },
        )


class FakeCompliance:
    provider = "compliance"

    def __init__(self, dnc_numbers=(), failing_numbers=()):
        self.dnc_numbers = set(dnc_numbers)
        self.failing_numbers = set(failing_numbers)
        self.calls: List[str] = []
        self.governor = None

    def needs_call(self, phone):
        return len("".join(ch for ch in (phone or "") if ch.isdigit())) >= 10

    def check(self, phone):
        digits = "".join(ch for ch in (phone or "") if ch.isdigit())
        if len(digits) < 10:
            return DncStatus(phone=digits, status="INVALID", reason="Phone number has fewer than 10 digits")
        if self.governor is not None:
            return self.governor.call(self.provider, self._lookup, digits)
        return self._lookup(digits)

    def _lookup(self, digits):
        self.calls.append(digits)
        if digits in self.failing_numbers:
            raise ProviderError("HTTP 500 from registry", provider="compliance", status=500)
        if digits in self.dnc_numbers:
            return DncStatus(phone=digits, status="DNC", is_dnc=True, can_contact=False, reason="Do Not Call")
        return DncStatus(phone=digits, status="OK", can_contact=True)


def person_found(phone: Optional[str] = "5125550100", person_id: str = "P-1", age: Optional[str] = None, city="Austin", state="TX"):
    data = {
        "person_id": person_id,
        "phone": phone,
        "emails": ["jane@example.com"],
        "age": age,
        "dob": None,
        "city": city,
        "state": state,
        "address": "1 Main St",
        "income": None,
    }
    status = ResultStatus.SUCCESS if phone else ResultStatus.PARTIAL
    return ProviderResult(status, data)


def make_lead(name="Jane Doe", location="Austin, TX", **kwargs) -> LeadRecord:
    defaults = {
        "title": "Operations Manager",
        "company": "Acme Corp",
        "profile_url": f"https://www.linkedin.com/in/{name.lower().replace(' ', '-')}",
    }
    defaults.update(kwargs)
    return LeadRecord(name=name, raw_location_text=location, **defaults)
