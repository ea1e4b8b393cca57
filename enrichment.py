"""
Per-lead enrichment pipeline with durable checkpoints, plus batch jobs and
the compliance scrub.

Stages run in a fixed order. A stage is skipped when the lead's checkpoint
already covers it, and the checkpoint is persisted after every stage so an
interrupted batch only re-processes the lead that was in flight.
"""

from __future__ import annotations

import logging
import re
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass, field
from enum import IntEnum
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from log_capture import JobLogCapture
from pipeline_core import (
    AuthenticationError,
    CooldownActiveError,
    DurableTable,
    PipelineError,
    ProviderError,
    QuotaExceededError,
    RateLimitedError,
    StorageError,
    normalize_state_token,
    parse_location_to_city_state,
    utc_now_iso,
)
from providers import (
    COMPLIANCE,
    PEOPLE_DATA,
    PHONE_INTEL,
    ComplianceRegistryClient,
    DncStatus,
    PeopleDataClient,
    PhoneIntelligenceClient,
    ProviderResult,
    ResultStatus,
    clean_phone,
)
from usage_governor import UsageGovernor
from zip_lookup import ZipLookup


class Stage(IntEnum):
    NONE = 0
    LOCAL_EXTRACTION = 1
    LOCAL_LOOKUP = 2
    CONTACT_DISCOVERY = 3
    CONTACT_DETAILS = 4
    PHONE_VALIDATION = 5
    GATEKEEP = 6
    DEMOGRAPHICS = 7


TERMINAL_STAGE = Stage.DEMOGRAPHICS

JUNK_CARRIERS = ("google voice", "textnow", "burner", "hushed", "line2", "bandwidth", "twilio")

DNC_BATCH_SIZE = 10

_PHONE_RE = re.compile(r"(?<!\d)(?:\+?1[\s.-]?)?\(?\d{3}\)?[\s.-]?\d{3}[\s.-]?\d{4}(?!\d)")
_CONTACT_KEY_RE = re.compile(r"phone|mobile|cell|email", re.IGNORECASE)
FREE_TEXT_KEYS = ("summary", "headline", "about", "description")
_EMAIL_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
_EMOJI_RE = re.compile("[\U0001F300-\U0001FAFF\U00002600-\U000027BF\U0001F000-\U0001F2FF]")
_CREDENTIAL_RE = re.compile(
    r"\b(MD|M\.D\.|DO|PharmD|Pharm\.\s*D|CPA|JD|MPH|MBA|PsyD|RN|NP|DDS|DMD|LCSW|LMFT|PhD|Ph\.D|CFP|CLU|ChFC|PMP|SHRM-?[A-Z]*)\b\.?",
)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LeadRecord:
    """A search result as received; never mutated after intake."""

    name: str
    title: str = ""
    company: str = ""
    raw_location_text: str = ""
    profile_url: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LeadRecord":
        name = (
            data.get("name")
            or data.get("fullName")
            or data.get("full_name")
            or " ".join(part for part in (data.get("firstName"), data.get("lastName")) if part)
            or ""
        )
        title = data.get("title") or data.get("jobTitle") or data.get("currentTitle") or data.get("headline") or ""
        company = data.get("company") or data.get("companyName") or data.get("currentCompany") or ""
        if isinstance(company, dict):
            company = company.get("name") or ""
        location = (
            data.get("raw_location_text")
            or data.get("location")
            or data.get("geoRegion")
            or data.get("locationName")
            or ""
        )
        profile_url = (
            data.get("profile_url")
            or data.get("linkedin_url")
            or data.get("linkedinUrl")
            or data.get("profileUrl")
            or data.get("navigationUrl")
            or None
        )
        return cls(
            name=str(name).strip(),
            title=str(title).strip(),
            company=str(company).strip(),
            raw_location_text=str(location).strip(),
            profile_url=str(profile_url).strip() if profile_url else None,
            email=(data.get("email") or None),
            phone=(data.get("phone") or data.get("phone_number") or None),
            extra=dict(data),
        )

    @property
    def identity(self) -> str:
        """Stable key used for cross-batch deduplication."""
        if self.profile_url:
            return f"profile:{self.profile_url.strip().lower().rstrip('/')}"
        name = self.name.strip().lower()
        company = self.company.strip().lower()
        if name and company:
            return f"name:{name}@{company}"
        contact = (self.email or self.phone or "").strip().lower()
        if name and contact:
            return f"name:{name}:{contact}"
        return f"name:{name}"

    @property
    def city_state(self) -> Tuple[Optional[str], Optional[str]]:
        return parse_location_to_city_state(self.raw_location_text)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class EnrichmentResult:
    """LeadRecord plus everything learned about it; fields are only ever added."""

    lead: LeadRecord
    checkpoint: Stage = Stage.NONE
    phone: Optional[str] = None
    email: Optional[str] = None
    emails: List[str] = field(default_factory=list)
    zip_code: Optional[str] = None
    person_id: Optional[str] = None
    age: Optional[str] = None
    date_of_birth: Optional[str] = None
    income: Optional[str] = None
    line_type: Optional[str] = None
    carrier_name: Optional[str] = None
    carrier_type: Optional[str] = None
    normalized_carrier: Optional[str] = None
    gatekeep_passed: Optional[bool] = None
    gatekeep_reason: Optional[str] = None
    dnc_status: Optional[str] = None
    dnc_reason: Optional[str] = None
    can_contact: Optional[bool] = None
    dnc_checked: bool = False
    enriched: bool = False
    people_search: Optional[Dict[str, Any]] = None
    person_details: Optional[Dict[str, Any]] = None
    unknown_fields: Dict[str, str] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    outcome: str = "pending"
    updated_at: str = field(default_factory=utc_now_iso)

    @classmethod
    def start(cls, lead: LeadRecord) -> "EnrichmentResult":
        return cls(lead=lead)

    @property
    def identity(self) -> str:
        return self.lead.identity

    def mark_unknown(self, name: str, reason: str) -> None:
        self.unknown_fields.setdefault(name, reason)

    def mark_known(self, name: str) -> None:
        self.unknown_fields.pop(name, None)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["checkpoint"] = int(self.checkpoint)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EnrichmentResult":
        payload = dict(data)
        lead = LeadRecord(**payload.pop("lead"))
        payload["checkpoint"] = Stage(int(payload.get("checkpoint", 0)))
        known = set(cls.__dataclass_fields__)
        return cls(lead=lead, **{k: v for k, v in payload.items() if k in known and k != "lead"})

    def to_row(self) -> Dict[str, Any]:
        """Flat view for CSV/JSON delivery."""
        city, state = self.lead.city_state
        return {
            "name": self.lead.name,
            "title": self.lead.title,
            "company": self.lead.company,
            "location": self.lead.raw_location_text,
            "city": city or "",
            "state": state or "",
            "profile_url": self.lead.profile_url or "",
            "email": self.email or "",
            "phone": self.phone or "",
            "zip_code": self.zip_code or "",
            "age": self.age or "",
            "date_of_birth": self.date_of_birth or "",
            "income": self.income or "",
            "line_type": self.line_type or "",
            "carrier": self.carrier_name or "",
            "dnc_status": self.dnc_status or "",
            "can_contact": "" if self.can_contact is None else str(self.can_contact).lower(),
            "enriched": str(self.enriched).lower(),
            "checkpoint": self.checkpoint.name.lower(),
            "unknown_fields": ";".join(f"{k}={v}" for k, v in sorted(self.unknown_fields.items())),
        }


class CheckpointStore:
    """Persist EnrichmentResult rows keyed by lead identity."""

    PREFIX = "lead:"

    def __init__(self, table: DurableTable):
        self.table = table

    def load(self, identity: str) -> Optional[EnrichmentResult]:
        row = self.table.get(self.PREFIX + identity)
        if row is None:
            return None
        try:
            return EnrichmentResult.from_dict(row)
        except (KeyError, TypeError, ValueError) as exc:
            raise StorageError(f"Corrupt checkpoint for {identity}: {exc}") from exc

    def save(self, result: EnrichmentResult) -> None:
        result.updated_at = utc_now_iso()
        self.table.put(self.PREFIX + result.identity, result.to_dict())


class LeadDeduplicator:
    """Ensure leads are not processed multiple times within a batch."""

    def __init__(self):
        self.seen_keys: Set[str] = set()
        self._lock = threading.Lock()

    def claim(self, lead: LeadRecord) -> bool:
        """Mark lead as seen; False when it was already claimed."""
        key = lead.identity
        with self._lock:
            if key in self.seen_keys:
                return False
            self.seen_keys.add(key)
            return True


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def normalize_person_name(name: Optional[str]) -> str:
    """Strip emojis, credentials and parentheticals so people-data search matches."""
    if not name:
        return ""
    cleaned = _EMOJI_RE.sub("", name)
    cleaned = re.sub(r"\([^)]*\)|\[[^\]]*\]", " ", cleaned)
    cleaned = cleaned.split(",")[0] if "," in cleaned else cleaned
    cleaned = re.sub(r"\b[A-Z]{2,}(?:/[A-Z]{2,})+\b", " ", cleaned)
    cleaned = _CREDENTIAL_RE.sub(" ", cleaned)
    cleaned = re.sub(r"[^A-Za-z\s'.-]", " ", cleaned)
    return re.sub(r"\s+", " ", cleaned).strip(" .-")


def extract_contacts_from_text(*values: Any) -> Tuple[Optional[str], Optional[str]]:
    """Find a phone and an email already present in free text."""
    phone = None
    email = None
    for value in values:
        if not isinstance(value, str) or not value:
            continue
        if phone is None:
            for match in _PHONE_RE.finditer(value):
                phone = clean_phone(match.group(0))
                if phone:
                    break
        if email is None:
            match = _EMAIL_RE.search(value)
            if match:
                email = match.group(0).lower()
    return phone, email


def should_continue_enrichment(
    phone: Optional[str],
    line_type: Optional[str],
    carrier_name: Optional[str],
    city: Optional[str],
    state: Optional[str],
    people_city: Optional[str] = None,
    people_state: Optional[str] = None,
) -> Tuple[bool, str]:
    """Gatekeeping decision for demographic enrichment."""
    if not phone:
        return False, "no_phone"
    if (line_type or "").strip().lower() == "voip":
        return False, "voip"
    carrier = (carrier_name or "").lower()
    if carrier and any(junk in carrier for junk in JUNK_CARRIERS):
        return False, "junk_carrier"
    if people_city and people_state and city and state:
        lead_state = normalize_state_token(state) or state.strip().lower()
        found_state = normalize_state_token(people_state) or people_state.strip().lower()
        if lead_state != found_state:
            return False, "geo_mismatch"
        lead_city = city.strip().lower()
        found_city = people_city.strip().lower()
        if lead_city and found_city and lead_city not in found_city and found_city not in lead_city:
            return False, "geo_mismatch"
    return True, "ok"


# ---------------------------------------------------------------------------
# Batch jobs
# ---------------------------------------------------------------------------

@dataclass
class EnrichmentJob:
    job_id: str
    total: int
    current: int = 0
    status: str = "pending"
    results: List[EnrichmentResult] = field(default_factory=list)
    summary: Dict[str, Any] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    stop_event: threading.Event = field(default_factory=threading.Event, repr=False)
    done_event: threading.Event = field(default_factory=threading.Event, repr=False)

    def progress(self) -> Dict[str, Any]:
        percentage = round(100.0 * self.current / self.total, 1) if self.total else 100.0
        return {"current": self.current, "total": self.total, "percentage": percentage}

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self.done_event.wait(timeout)


class _LeadDeferred(Exception):
    def __init__(self, provider: str, reason: str):
        super().__init__(f"{provider}: {reason}")
        self.provider = provider
        self.reason = reason


ProgressCallback = Callable[[str, Stage, EnrichmentResult], None]


class EnrichmentOrchestrator:
    """Run leads through the fixed enrichment stages under admission control."""

    def __init__(
        self,
        governor: UsageGovernor,
        checkpoints: CheckpointStore,
        *,
        people: Optional[PeopleDataClient] = None,
        phone_intel: Optional[PhoneIntelligenceClient] = None,
        compliance: Optional[ComplianceRegistryClient] = None,
        zip_lookup: Optional[ZipLookup] = None,
        concurrency: int = 3,
        progress_callback: Optional[ProgressCallback] = None,
    ):
        self.governor = governor
        self.checkpoints = checkpoints
        self.people = people
        self.phone_intel = phone_intel
        self.compliance = compliance
        if compliance is not None and compliance.governor is None:
            compliance.governor = governor
        self.zip_lookup = zip_lookup or ZipLookup()
        self.concurrency = max(1, concurrency)
        self.progress_callback = progress_callback
        self.jobs: Dict[str, EnrichmentJob] = {}
        self._metrics_lock = threading.Lock()
        self.metrics: Dict[str, Any] = {
            "api_calls": {},
            "unknown_fields": {},
            "errors": [],
        }

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def _track_api_call(self, service: str, success: bool = True) -> None:
        """Track API call metrics."""
        with self._metrics_lock:
            calls = self.metrics["api_calls"].setdefault(service, {"success": 0, "failure": 0})
            calls["success" if success else "failure"] += 1

    def _track_error(self, error: str, context: Dict[str, Any]) -> None:
        """Track error with context."""
        with self._metrics_lock:
            self.metrics["errors"].append({"timestamp": utc_now_iso(), "error": error, "context": context})
        logging.error("Error: %s | Context: %s", error, context)

    # ------------------------------------------------------------------
    # Guarded external calls
    # ------------------------------------------------------------------

    def _guarded(
        self,
        result: EnrichmentResult,
        provider: str,
        fields: Iterable[str],
        func: Callable[..., ProviderResult],
        *args: Any,
        **kwargs: Any,
    ) -> Optional[ProviderResult]:
        """Call ``func`` through the governor; degrade ``fields`` to unknown on failure."""
        fields = list(fields)
        try:
            outcome = self.governor.call(provider, func, *args, **kwargs)
        except CooldownActiveError as exc:
            raise _LeadDeferred(provider, "cooldown") from exc
        except RateLimitedError as exc:
            self._track_api_call(provider, success=False)
            raise _LeadDeferred(provider, "rate_limited") from exc
        except QuotaExceededError as exc:
            logging.warning("Skipping %s call for %s: %s", provider, result.identity, exc)
            for name in fields:
                result.mark_unknown(name, f"quota_exceeded:{exc.period}")
            return None
        except AuthenticationError as exc:
            self._track_api_call(provider, success=False)
            result.errors.append(f"{provider}: {exc}")
            for name in fields:
                result.mark_unknown(name, "auth_failed")
            return None
        except ProviderError as exc:
            self._track_api_call(provider, success=False)
            logging.warning("%s call failed for %s: %s", provider, result.identity, exc)
            result.errors.append(f"{provider}: {exc}")
            for name in fields:
                result.mark_unknown(name, "provider_error")
            return None

        self._track_api_call(provider, success=True)
        if outcome.status is ResultStatus.FAILURE:
            for name in fields:
                result.mark_unknown(name, "not_found")
        return outcome

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _stage_local_extraction(self, result: EnrichmentResult) -> None:
        lead = result.lead
        phone = clean_phone(lead.phone) if lead.phone else None
        email = lead.email.strip().lower() if lead.email else None
        if not phone or not email:
            # Identifier fields (urns, member ids) hold digit runs that look like phones.
            texts = [lead.raw_location_text, lead.title] + [
                value
                for key, value in lead.extra.items()
                if isinstance(value, str) and (key in FREE_TEXT_KEYS or _CONTACT_KEY_RE.search(key))
            ]
            found_phone, found_email = extract_contacts_from_text(*texts)
            phone = phone or found_phone
            email = email or found_email
        result.phone = result.phone or phone
        if email and not result.email:
            result.email = email
        if email and email not in result.emails:
            result.emails.append(email)

    def _stage_local_lookup(self, result: EnrichmentResult) -> None:
        if result.zip_code:
            return
        city, state = result.lead.city_state
        result.zip_code = self.zip_lookup.lookup(city, state)
        if not result.zip_code:
            result.mark_unknown("zip_code", "no_city_state")

    def _apply_person(self, result: EnrichmentResult, data: Dict[str, Any]) -> None:
        if data.get("phone") and not result.phone:
            result.phone = data["phone"]
            result.mark_known("phone")
        for email in data.get("emails") or []:
            if email not in result.emails:
                result.emails.append(email)
        if result.emails and not result.email:
            result.email = result.emails[0]
            result.mark_known("email")
        if data.get("person_id") and not result.person_id:
            result.person_id = data["person_id"]
        if data.get("income") and not result.income:
            result.income = str(data["income"])

    def _search_people(self, result: EnrichmentResult, fields: List[str]) -> Optional[ProviderResult]:
        name = normalize_person_name(result.lead.name)
        if not name and not result.email:
            for field_name in fields:
                result.mark_unknown(field_name, "insufficient_identity")
            return None
        city, state = result.lead.city_state
        citystatezip = ", ".join(part for part in (city, state) if part)
        if citystatezip and result.zip_code:
            citystatezip = f"{citystatezip} {result.zip_code}"
        outcome = self._guarded(
            result,
            PEOPLE_DATA,
            fields,
            self.people.search,
            name or None,
            citystatezip=citystatezip or None,
            email=None if name else result.email,
        )
        if outcome is not None and outcome.ok:
            stored = {k: v for k, v in outcome.data.items() if k != "people"}
            result.people_search = stored
            self._apply_person(result, stored)
        return outcome

    def _stage_contact_discovery(self, result: EnrichmentResult) -> None:
        if result.phone:
            return
        if self.people is None:
            result.mark_unknown("phone", "no_provider")
            return
        self._search_people(result, ["phone"])
        if not result.phone:
            result.mark_unknown("phone", "not_found")

    def _stage_contact_details(self, result: EnrichmentResult) -> None:
        # Reuses the person id from the discovery search; never re-searches.
        if result.phone or not result.person_id or self.people is None:
            return
        outcome = self._guarded(result, PEOPLE_DATA, ["phone"], self.people.person_details, result.person_id)
        if outcome is not None and outcome.ok:
            result.person_details = dict(outcome.data)
            self._apply_person(result, outcome.data)
        if not result.phone:
            result.mark_unknown("phone", "not_found")

    def _stage_phone_validation(self, result: EnrichmentResult) -> None:
        if not result.phone:
            result.mark_unknown("line_type", "no_phone")
            return
        if self.phone_intel is None:
            result.mark_unknown("line_type", "no_provider")
            return
        outcome = self._guarded(result, PHONE_INTEL, ["line_type"], self.phone_intel.lookup, result.phone)
        if outcome is not None and outcome.ok:
            data = outcome.data
            result.line_type = data.get("line_type")
            result.carrier_name = data.get("carrier_name")
            result.carrier_type = data.get("carrier_type")
            result.normalized_carrier = data.get("normalized_carrier")
            result.mark_known("line_type")

    def _stage_gatekeep(self, result: EnrichmentResult) -> None:
        city, state = result.lead.city_state
        people = result.people_search or {}
        passed, reason = should_continue_enrichment(
            result.phone,
            result.line_type,
            result.carrier_name,
            city,
            state,
            people.get("city"),
            people.get("state"),
        )
        result.gatekeep_passed = passed
        result.gatekeep_reason = reason
        if not passed:
            logging.info("Gatekeep stopped %s before demographics: %s", result.identity, reason)

    def _take_demographics(self, result: EnrichmentResult, data: Optional[Dict[str, Any]]) -> bool:
        if not data:
            return False
        if data.get("age"):
            result.age = str(data["age"])
        if data.get("dob"):
            result.date_of_birth = str(data["dob"])
        if data.get("income") and not result.income:
            result.income = str(data["income"])
        return bool(result.age or result.date_of_birth)

    def _stage_demographics(self, result: EnrichmentResult) -> None:
        if result.age or result.date_of_birth:
            return
        if not result.gatekeep_passed:
            result.mark_unknown("age", f"gatekeep:{result.gatekeep_reason or 'not_run'}")
            return
        # Reuse what earlier stages already fetched before spending a call.
        if self._take_demographics(result, result.people_search) or self._take_demographics(result, result.person_details):
            result.mark_known("age")
            return
        if self.people is None:
            result.mark_unknown("age", "no_provider")
            return

        if result.person_id and result.person_details is None:
            outcome = self._guarded(result, PEOPLE_DATA, ["age"], self.people.person_details, result.person_id)
            if outcome is not None and outcome.ok:
                result.person_details = dict(outcome.data)
                self._take_demographics(result, outcome.data)
        elif result.people_search is None and not result.person_id:
            self._search_people(result, ["age"])
            self._take_demographics(result, result.people_search)

        if result.age or result.date_of_birth:
            result.mark_known("age")
        else:
            result.mark_unknown("age", "not_available")

    def _stages(self) -> List[Tuple[Stage, Callable[[EnrichmentResult], None]]]:
        return [
            (Stage.LOCAL_EXTRACTION, self._stage_local_extraction),
            (Stage.LOCAL_LOOKUP, self._stage_local_lookup),
            (Stage.CONTACT_DISCOVERY, self._stage_contact_discovery),
            (Stage.CONTACT_DETAILS, self._stage_contact_details),
            (Stage.PHONE_VALIDATION, self._stage_phone_validation),
            (Stage.GATEKEEP, self._stage_gatekeep),
            (Stage.DEMOGRAPHICS, self._stage_demographics),
        ]

    # ------------------------------------------------------------------
    # Single lead
    # ------------------------------------------------------------------

    def enrich_lead(self, lead: LeadRecord) -> EnrichmentResult:
        """Advance ``lead`` through every stage its checkpoint does not cover yet."""
        result = self.checkpoints.load(lead.identity)
        if result is None:
            result = EnrichmentResult.start(lead)
        if result.checkpoint >= TERMINAL_STAGE:
            result.outcome = "skipped_complete"
            logging.debug("Lead %s already enriched; skipping", lead.identity)
            return result

        try:
            for stage, handler in self._stages():
                if result.checkpoint >= stage:
                    continue
                handler(result)
                result.checkpoint = stage
                if stage == TERMINAL_STAGE:
                    result.enriched = True
                    result.outcome = "enriched"
                self.checkpoints.save(result)
                if self.progress_callback is not None:
                    self.progress_callback(result.identity, stage, result)
        except _LeadDeferred as exc:
            result.outcome = "deferred"
            result.errors.append(f"deferred: {exc}")
            logging.warning(
                "Deferred %s at %s: %s is %s",
                lead.identity,
                Stage(result.checkpoint + 1).name.lower(),
                exc.provider,
                exc.reason,
            )
        return result

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    def run_batch(
        self,
        leads: Iterable[LeadRecord],
        *,
        background: bool = False,
        job_id: Optional[str] = None,
    ) -> EnrichmentJob:
        """Enrich ``leads`` with K workers; returns the job handle.

        With ``background=True`` the job runs on its own thread and the
        caller polls ``get_progress``.
        """
        lead_list = list(leads)
        job = EnrichmentJob(job_id=job_id or uuid.uuid4().hex[:12], total=len(lead_list))
        self.jobs[job.job_id] = job
        if background:
            thread = threading.Thread(
                target=self._run_job_safely, args=(job, lead_list), name=f"enrich-{job.job_id}", daemon=True
            )
            thread.start()
        else:
            self._run_job(job, lead_list)
        return job

    def _run_job_safely(self, job: EnrichmentJob, leads: List[LeadRecord]) -> None:
        try:
            self._run_job(job, leads)
        except StorageError as exc:
            logging.error("Background job %s aborted: %s", job.job_id, exc)

    def _run_job(self, job: EnrichmentJob, leads: List[LeadRecord]) -> None:
        job.status = "running"
        job.started_at = time.time()
        dedupe = LeadDeduplicator()
        counters = {
            "enriched": 0,
            "skipped_complete": 0,
            "skipped_duplicate": 0,
            "deferred": 0,
            "failed": 0,
            "not_started": 0,
        }
        progress_lock = threading.Lock()

        def _process(lead: LeadRecord) -> Optional[EnrichmentResult]:
            # Stop is honoured between leads only.
            if job.stop_event.is_set():
                outcome: Optional[EnrichmentResult] = None
                key = "not_started"
            elif not dedupe.claim(lead):
                outcome = None
                key = "skipped_duplicate"
            else:
                outcome = self.enrich_lead(lead)
                key = outcome.outcome if outcome.outcome in counters else "failed"
            with progress_lock:
                counters[key] += 1
                job.current += 1
            return outcome

        try:
            with JobLogCapture(job.job_id, thread_prefix=f"enrich-{job.job_id}") as capture:
                with ThreadPoolExecutor(
                    max_workers=self.concurrency, thread_name_prefix=f"enrich-{job.job_id}"
                ) as pool:
                    futures = {pool.submit(_process, lead): lead for lead in leads}
                    for future in as_completed(futures):
                        lead = futures[future]
                        try:
                            outcome = future.result()
                        except StorageError:
                            job.stop_event.set()
                            raise
                        except Exception as exc:
                            self._track_error(str(exc), {"lead": lead.identity, "job": job.job_id})
                            with progress_lock:
                                counters["failed"] += 1
                                job.current += 1
                            continue
                        if outcome is not None:
                            job.results.append(outcome)
                job.warnings = list(capture.messages)
        except StorageError as exc:
            job.status = "failed"
            job.error = str(exc)
            raise
        else:
            job.status = "stopped" if job.stop_event.is_set() and counters["not_started"] else "completed"
        finally:
            job.finished_at = time.time()
            job.summary = self._summarize(job, counters)
            job.done_event.set()

        logging.info(
            "Job %s %s: %d enriched, %d already complete, %d deferred, %d failed",
            job.job_id,
            job.status,
            counters["enriched"],
            counters["skipped_complete"],
            counters["deferred"],
            counters["failed"],
        )

    def _summarize(self, job: EnrichmentJob, counters: Dict[str, int]) -> Dict[str, Any]:
        unknown: Dict[str, Dict[str, int]] = {}
        for result in job.results:
            for name, reason in result.unknown_fields.items():
                bucket = unknown.setdefault(name, {})
                bucket[reason] = bucket.get(reason, 0) + 1
        with self._metrics_lock:
            api_calls = {k: dict(v) for k, v in self.metrics["api_calls"].items()}
        duration = (job.finished_at or time.time()) - (job.started_at or time.time())
        return {
            "job_id": job.job_id,
            "status": job.status,
            "total": job.total,
            "processed": job.current,
            **counters,
            "unknown_fields": unknown,
            "api_calls": api_calls,
            "warnings": len(job.warnings),
            "duration_seconds": round(duration, 2),
        }

    def get_progress(self, job_id: str) -> Dict[str, Any]:
        job = self.jobs.get(job_id)
        if job is None:
            raise KeyError(f"Unknown job: {job_id}")
        progress = job.progress()
        progress["status"] = job.status
        return progress

    def request_stop(self, job_id: str) -> None:
        job = self.jobs.get(job_id)
        if job is None:
            raise KeyError(f"Unknown job: {job_id}")
        job.stop_event.set()
        logging.info("Stop requested for job %s", job_id)

    # ------------------------------------------------------------------
    # Compliance scrub
    # ------------------------------------------------------------------

    def _apply_dnc(self, result: EnrichmentResult, status: DncStatus) -> None:
        result.dnc_status = status.status
        result.dnc_reason = status.reason
        if status.status in ("OK", "DNC"):
            result.can_contact = status.can_contact
            result.dnc_checked = True
        elif status.status == "INVALID":
            result.can_contact = False
            result.dnc_checked = True

    def scrub_batch(self, results: List[EnrichmentResult], *, recheck: bool = False) -> Dict[str, Any]:
        """Check do-not-call status for every result with a phone.

        Idempotent: already-checked results are skipped unless ``recheck``.
        """
        if self.compliance is None:
            raise PipelineError("No compliance registry client configured")

        summary = {"total": len(results), "checked": 0, "dnc": 0, "ok": 0, "invalid": 0, "error": 0, "skipped": 0, "deferred": 0}
        pending: List[EnrichmentResult] = []
        for result in results:
            if not result.phone or (result.dnc_checked and not recheck):
                summary["skipped"] += 1
            elif not self.compliance.needs_call(result.phone):
                self._apply_dnc(result, self.compliance.check(result.phone))
                self.checkpoints.save(result)
                summary["invalid"] += 1
            else:
                pending.append(result)

        halted: Optional[str] = None

        def _check(result: EnrichmentResult) -> Tuple[EnrichmentResult, Optional[DncStatus], Optional[str]]:
            try:
                return result, self.compliance.check(result.phone), None
            except QuotaExceededError as exc:
                return result, None, f"quota_exceeded:{exc.period}"
            except (CooldownActiveError, RateLimitedError):
                return result, None, "cooldown"
            except ProviderError as exc:
                logging.warning("DNC check failed for %s: %s", result.identity, exc)
                return result, DncStatus(phone=result.phone or "", status="ERROR", reason=str(exc)), None

        for start in range(0, len(pending), DNC_BATCH_SIZE):
            if halted:
                summary["deferred"] += len(pending) - start
                break
            chunk = pending[start:start + DNC_BATCH_SIZE]
            with ThreadPoolExecutor(max_workers=len(chunk), thread_name_prefix="dnc") as pool:
                checks = [future.result() for future in [pool.submit(_check, item) for item in chunk]]
            for result, status, denial in checks:
                if denial:
                    halted = halted or denial
                    summary["deferred"] += 1
                    continue
                self._track_api_call(COMPLIANCE, success=status.status != "ERROR")
                self._apply_dnc(result, status)
                self.checkpoints.save(result)
                summary["checked"] += 1
                summary[status.status.lower()] += 1

        if halted:
            logging.warning("DNC scrub halted early: %s", halted)
            summary["halted_reason"] = halted
        logging.info(
            "DNC scrub: %d checked, %d DNC, %d OK, %d invalid, %d errors",
            summary["checked"],
            summary["dnc"],
            summary["ok"],
            summary["invalid"],
            summary["error"],
        )
        return summary
