"""
Tests for the staged enrichment pipeline: checkpoints, graceful degradation
under admission control, gatekeeping, batch jobs and the compliance scrub.
"""

import pytest

from conftest import (
    FakeCompliance,
    FakePeopleData,
    FakePhoneIntel,
    make_lead,
    person_found,
)
from enrichment import (
    CheckpointStore,
    EnrichmentOrchestrator,
    EnrichmentResult,
    LeadRecord,
    Stage,
    extract_contacts_from_text,
    normalize_person_name,
    should_continue_enrichment,
)
from pipeline_core import (
    InMemoryTable,
    PipelineError,
    ProviderError,
    RateLimitedError,
    StorageError,
)
from providers import ProviderResult, ResultStatus


class Interrupted(Exception):
    pass


class FailingTable(InMemoryTable):
    def put(self, key, value):
        raise StorageError("disk full")


def build(governor, checkpoints, people=None, phone_intel=None, **kwargs):
    return EnrichmentOrchestrator(
        governor,
        checkpoints,
        people=people,
        phone_intel=phone_intel,
        **kwargs,
    )


@pytest.mark.unit
@pytest.mark.enrichment
class TestLeadRecord:
    def test_from_search_dict(self):
        lead = LeadRecord.from_dict(
            {
                "fullName": "Jane Doe",
                "geoRegion": "Austin, Texas",
                "linkedinUrl": "https://www.LinkedIn.com/in/JaneDoe/",
                "company": {"name": "Acme Corp"},
            }
        )

        assert lead.name == "Jane Doe"
        assert lead.raw_location_text == "Austin, Texas"
        assert lead.company == "Acme Corp"
        assert lead.identity == "profile:https://www.linkedin.com/in/janedoe"

    def test_identity_without_profile_url(self):
        lead = LeadRecord(name="Jane Doe", company="Acme Corp")

        assert lead.identity == "name:jane doe@acme corp"

    def test_result_row(self):
        row = EnrichmentResult(lead=make_lead(), phone="5125550100").to_row()

        assert row["city"] == "Austin"
        assert row["state"] == "TX"
        assert row["phone"] == "5125550100"
        assert row["can_contact"] == ""
        assert row["checkpoint"] == "none"


@pytest.mark.unit
@pytest.mark.enrichment
class TestHelpers:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("Jane Doe, MBA", "Jane Doe"),
            ("John Smith (He/Him) \U0001F680", "John Smith"),
            ("Jane Doe MBA", "Jane Doe"),
            (None, ""),
        ],
    )
    def test_normalize_person_name(self, raw, expected):
        assert normalize_person_name(raw) == expected

    def test_extract_contacts_from_text(self):
        phone, email = extract_contacts_from_text("Call 512-555-0100", "or Jane@Example.com")

        assert phone == "5125550100"
        assert email == "jane@example.com"

    def test_longer_digit_runs_are_not_phones(self):
        assert extract_contacts_from_text("member 51255501001") == (None, None)

    @pytest.mark.parametrize(
        "args, expected",
        [
            ((None, "mobile", "Verizon", "Austin", "TX"), (False, "no_phone")),
            (("5125550100", "VOIP", "Verizon", "Austin", "TX"), (False, "voip")),
            (("5125550100", "mobile", "Google Voice", "Austin", "TX"), (False, "junk_carrier")),
            (("5125550100", "mobile", "Verizon", "Austin", "TX", "Denver", "CO"), (False, "geo_mismatch")),
            (("5125550100", "mobile", "Verizon", "Austin", "Texas", "Austin", "TX"), (True, "ok")),
            (("5125550100", "mobile", "Verizon", None, None), (True, "ok")),
        ],
    )
    def test_gatekeep_decision(self, args, expected):
        assert should_continue_enrichment(*args) == expected


@pytest.mark.unit
@pytest.mark.enrichment
class TestEnrichLead:
    def test_full_pipeline(self, governor, checkpoints):
        people = FakePeopleData(search_result=person_found(age="45"))
        phone_intel = FakePhoneIntel()
        stages = []
        orchestrator = build(
            governor,
            checkpoints,
            people,
            phone_intel,
            progress_callback=lambda identity, stage, result: stages.append(stage),
        )

        result = orchestrator.enrich_lead(make_lead())

        assert result.enriched
        assert result.outcome == "enriched"
        assert result.checkpoint is Stage.DEMOGRAPHICS
        assert result.phone == "5125550100"
        assert result.zip_code == "75201"
        assert result.line_type == "mobile"
        assert result.gatekeep_passed
        assert result.age == "45"
        assert result.unknown_fields == {}
        assert stages == list(Stage)[1:]
        assert people.search_calls[0]["citystatezip"] == "Austin, TX 75201"
        assert people.details_calls == []
        assert phone_intel.calls == ["5125550100"]

    def test_completed_lead_makes_zero_provider_calls(self, governor, checkpoints):
        """A lead at the terminal checkpoint is returned without any external call."""
        build(governor, checkpoints, FakePeopleData(search_result=person_found(age="45")), FakePhoneIntel()).enrich_lead(
            make_lead()
        )
        people = FakePeopleData()
        phone_intel = FakePhoneIntel()

        result = build(governor, checkpoints, people, phone_intel).enrich_lead(make_lead())

        assert result.outcome == "skipped_complete"
        assert result.age == "45"
        assert people.search_calls == [] and people.details_calls == []
        assert phone_intel.calls == []

    def test_lead_phone_skips_contact_discovery(self, governor, checkpoints):
        people = FakePeopleData(search_result=person_found(phone="5125559999", age="50"))

        result = build(governor, checkpoints, people, FakePhoneIntel()).enrich_lead(make_lead(phone="(512) 555-0100"))

        assert result.phone == "5125550100"
        assert result.age == "50"
        assert len(people.search_calls) == 1

    def test_phone_found_in_free_text(self, governor, checkpoints):
        lead = make_lead(extra={"summary": "Reach me at 512.555.0142 or jane@acme.com"})

        result = build(governor, checkpoints, None, FakePhoneIntel()).enrich_lead(lead)

        assert result.phone == "5125550142"
        assert result.email == "jane@acme.com"
        assert result.unknown_fields == {"age": "no_provider"}

    def test_identifier_fields_are_not_scanned_for_phones(self, governor, checkpoints):
        lead = LeadRecord.from_dict(
            {
                "fullName": "Jane Doe",
                "company": "Acme Corp",
                "location": "Austin, TX",
                "objectUrn": "urn:li:member:1234567890",
                "entityId": "9876543210",
            }
        )
        people = FakePeopleData(search_result=person_found(age="45"))
        phone_intel = FakePhoneIntel()

        result = build(governor, checkpoints, people, phone_intel).enrich_lead(lead)

        assert result.phone == "5125550100"
        assert len(people.search_calls) == 1
        assert phone_intel.calls == ["5125550100"]

    def test_phone_named_column_is_read(self, governor, checkpoints):
        lead = LeadRecord.from_dict(
            {"fullName": "Jane Doe", "company": "Acme Corp", "location": "Austin, TX", "mobilePhone": "512-555-0177"}
        )
        people = FakePeopleData(search_result=person_found(age="45"))

        result = build(governor, checkpoints, people, FakePhoneIntel()).enrich_lead(lead)

        assert result.phone == "5125550177"

    def test_no_phone_makes_no_phone_validation_call(self, governor, checkpoints):
        people = FakePeopleData()
        phone_intel = FakePhoneIntel()

        result = build(governor, checkpoints, people, phone_intel).enrich_lead(make_lead())

        assert result.enriched
        assert phone_intel.calls == []
        assert result.unknown_fields["phone"] == "not_found"
        assert result.unknown_fields["line_type"] == "no_phone"
        assert result.gatekeep_reason == "no_phone"
        assert result.unknown_fields["age"] == "gatekeep:no_phone"

    def test_missing_people_provider_marks_phone_unknown(self, governor, checkpoints):
        result = build(governor, checkpoints, None, FakePhoneIntel()).enrich_lead(make_lead())

        assert result.unknown_fields["phone"] == "no_provider"
        assert result.checkpoint is Stage.DEMOGRAPHICS

    def test_details_lookup_reuses_person_id(self, governor, checkpoints):
        details = ProviderResult(
            ResultStatus.SUCCESS,
            {"person_id": "P-1", "phone": "5125550199", "emails": [], "age": "52", "dob": "Jan 1974"},
        )
        people = FakePeopleData(search_result=person_found(phone=None), details_result=details)

        result = build(governor, checkpoints, people, FakePhoneIntel()).enrich_lead(make_lead())

        assert result.phone == "5125550199"
        assert "phone" not in result.unknown_fields
        assert result.age == "52"
        assert result.date_of_birth == "Jan 1974"
        assert len(people.search_calls) == 1
        assert people.details_calls == ["P-1"]

    def test_provider_error_degrades_field(self, governor, checkpoints):
        people = FakePeopleData(error=ProviderError("HTTP 500", provider="people_data", status=500))

        result = build(governor, checkpoints, people, FakePhoneIntel()).enrich_lead(make_lead())

        assert result.enriched
        assert result.unknown_fields["phone"] == "provider_error"
        assert any("people_data" in error for error in result.errors)


@pytest.mark.unit
@pytest.mark.enrichment
@pytest.mark.governor
class TestAdmission:
    def test_quota_marks_field_unknown_and_advances(self, make_governor, checkpoints):
        governor = make_governor(daily={"people_data": 0})
        people = FakePeopleData(search_result=person_found())

        result = build(governor, checkpoints, people, FakePhoneIntel()).enrich_lead(make_lead())

        assert people.search_calls == []
        assert result.unknown_fields["phone"] == "quota_exceeded:daily"
        assert result.checkpoint is Stage.DEMOGRAPHICS
        assert checkpoints.load(result.identity).checkpoint is Stage.DEMOGRAPHICS

    def test_rate_limit_defers_lead(self, governor, checkpoints):
        people = FakePeopleData(error=RateLimitedError("429", provider="people_data", retry_after=60))

        result = build(governor, checkpoints, people, FakePhoneIntel()).enrich_lead(make_lead())

        assert result.outcome == "deferred"
        assert not result.enriched
        assert checkpoints.load(result.identity).checkpoint is Stage.LOCAL_LOOKUP
        assert "phone" not in result.unknown_fields

    def test_cooldown_defers_and_resumes_later(self, governor, checkpoints, clock):
        build(
            governor,
            checkpoints,
            FakePeopleData(error=RateLimitedError("429", provider="people_data")),
            FakePhoneIntel(),
        ).enrich_lead(make_lead())
        people = FakePeopleData(search_result=person_found(age="45"))
        orchestrator = build(governor, checkpoints, people, FakePhoneIntel())

        deferred = orchestrator.enrich_lead(make_lead())
        assert deferred.outcome == "deferred"
        assert people.search_calls == []

        clock.advance(3600)
        resumed = orchestrator.enrich_lead(make_lead())

        assert resumed.outcome == "enriched"
        assert resumed.age == "45"
        assert len(people.search_calls) == 1


@pytest.mark.unit
@pytest.mark.enrichment
class TestResume:
    def test_interrupted_lead_resumes_after_last_completed_stage(self, governor, checkpoints):
        def interrupt(identity, stage, result):
            if stage is Stage.PHONE_VALIDATION:
                raise Interrupted()

        first_people = FakePeopleData(search_result=person_found(age="45"))
        with pytest.raises(Interrupted):
            build(governor, checkpoints, first_people, FakePhoneIntel(), progress_callback=interrupt).enrich_lead(
                make_lead()
            )
        assert checkpoints.load(make_lead().identity).checkpoint is Stage.PHONE_VALIDATION

        people = FakePeopleData()
        phone_intel = FakePhoneIntel()
        result = build(governor, checkpoints, people, phone_intel).enrich_lead(make_lead())

        assert result.enriched
        assert result.age == "45"
        assert people.search_calls == []
        assert phone_intel.calls == []

    def test_corrupt_checkpoint_raises_storage_error(self):
        table = InMemoryTable({"lead:profile:x": {"checkpoint": 3}})

        with pytest.raises(StorageError):
            CheckpointStore(table).load("profile:x")


@pytest.mark.unit
@pytest.mark.enrichment
class TestBatch:
    def test_batch_summary(self, governor, checkpoints):
        done = make_lead(name="Done Already")
        build(governor, checkpoints, FakePeopleData(search_result=person_found(age="40")), FakePhoneIntel()).enrich_lead(
            done
        )
        orchestrator = build(governor, checkpoints, FakePeopleData(search_result=person_found(age="45")), FakePhoneIntel())
        leads = [make_lead(name="Jane Doe"), make_lead(name="John Roe"), done, make_lead(name="Jane Doe")]

        job = orchestrator.run_batch(leads, job_id="job-1")

        assert job.status == "completed"
        assert job.summary["total"] == 4
        assert job.summary["processed"] == 4
        assert job.summary["enriched"] == 2
        assert job.summary["skipped_complete"] == 1
        assert job.summary["skipped_duplicate"] == 1
        assert job.summary["api_calls"]["people_data"]["success"] == 2
        assert len(job.results) == 3
        assert orchestrator.get_progress("job-1") == {"current": 4, "total": 4, "percentage": 100.0, "status": "completed"}

    def test_unknown_field_counts(self, governor, checkpoints):
        orchestrator = build(governor, checkpoints, FakePeopleData(), FakePhoneIntel())

        job = orchestrator.run_batch([make_lead(name="A B"), make_lead(name="C D")])

        assert job.summary["unknown_fields"]["phone"] == {"not_found": 2}
        assert job.summary["unknown_fields"]["line_type"] == {"no_phone": 2}

    def test_job_collects_warnings(self, governor, checkpoints):
        people = FakePeopleData(error=ProviderError("HTTP 500", provider="people_data", status=500))
        orchestrator = build(governor, checkpoints, people, FakePhoneIntel())

        job = orchestrator.run_batch([make_lead()])

        assert any("people_data call failed" in message for message in job.warnings)
        assert job.summary["warnings"] == len(job.warnings)

    def test_background_job_reports_progress(self, governor, checkpoints):
        orchestrator = build(governor, checkpoints, FakePeopleData(search_result=person_found()), FakePhoneIntel())

        job = orchestrator.run_batch([make_lead(name=f"Lead {i}") for i in range(5)], background=True, job_id="bg")

        assert job.wait(10)
        progress = orchestrator.get_progress("bg")
        assert progress["current"] == 5
        assert progress["percentage"] == 100.0
        assert progress["status"] == "completed"

    def test_stop_is_honoured_between_leads(self, governor, checkpoints):
        orchestrator = None

        def stop_after_first(identity, stage, result):
            if stage is Stage.DEMOGRAPHICS:
                orchestrator.request_stop("stop-job")

        orchestrator = build(
            governor,
            checkpoints,
            FakePeopleData(search_result=person_found()),
            FakePhoneIntel(),
            concurrency=1,
            progress_callback=stop_after_first,
        )

        job = orchestrator.run_batch([make_lead(name=f"Lead {i}") for i in range(3)], job_id="stop-job")

        assert job.status == "stopped"
        assert job.summary["enriched"] == 1
        assert job.summary["not_started"] == 2

    def test_unknown_job(self, governor, checkpoints):
        with pytest.raises(KeyError):
            build(governor, checkpoints).get_progress("nope")

    def test_storage_failure_aborts_batch(self, governor):
        orchestrator = build(governor, CheckpointStore(FailingTable()), FakePeopleData(), FakePhoneIntel())

        with pytest.raises(StorageError):
            orchestrator.run_batch([make_lead()], job_id="broken")

        assert orchestrator.jobs["broken"].status == "failed"


@pytest.mark.unit
@pytest.mark.enrichment
class TestScrub:
    def _results(self):
        return [
            EnrichmentResult(lead=make_lead(name="A A"), phone="5125550100"),
            EnrichmentResult(lead=make_lead(name="B B"), phone="5125550101"),
            EnrichmentResult(lead=make_lead(name="C C")),
            EnrichmentResult(lead=make_lead(name="D D"), phone="555"),
        ]

    def test_scrub_marks_dnc_and_ok(self, governor, checkpoints):
        compliance = FakeCompliance(dnc_numbers={"5125550100"})
        orchestrator = build(governor, checkpoints, compliance=compliance)
        results = self._results()

        summary = orchestrator.scrub_batch(results)

        assert summary["total"] == 4
        assert summary["checked"] == 2
        assert summary["dnc"] == 1
        assert summary["ok"] == 1
        assert summary["invalid"] == 1
        assert summary["skipped"] == 1
        assert results[0].can_contact is False
        assert results[1].can_contact is True
        assert results[3].dnc_status == "INVALID"
        assert checkpoints.load(results[0].identity).dnc_status == "DNC"

    def test_scrub_is_idempotent(self, governor, checkpoints):
        compliance = FakeCompliance()
        orchestrator = build(governor, checkpoints, compliance=compliance)
        results = self._results()
        orchestrator.scrub_batch(results)

        summary = orchestrator.scrub_batch(results)

        assert summary["skipped"] == 4
        assert summary["checked"] == 0
        assert len(compliance.calls) == 2

    def test_recheck_calls_again(self, governor, checkpoints):
        compliance = FakeCompliance()
        orchestrator = build(governor, checkpoints, compliance=compliance)
        results = self._results()
        orchestrator.scrub_batch(results)

        orchestrator.scrub_batch(results, recheck=True)

        assert len(compliance.calls) == 4

    def test_registry_error_leaves_result_unchecked(self, governor, checkpoints):
        orchestrator = build(governor, checkpoints, compliance=FakeCompliance(failing_numbers={"5125550101"}))
        results = self._results()

        summary = orchestrator.scrub_batch(results)

        assert summary["error"] == 1
        assert results[1].dnc_status == "ERROR"
        assert not results[1].dnc_checked

    def test_usage_counts_each_registry_request(self, governor, checkpoints):
        compliance = FakeCompliance()

        build(governor, checkpoints, compliance=compliance).scrub_batch(self._results())

        assert governor.status("compliance")["compliance"]["daily_count"] == len(compliance.calls) == 2

    def test_quota_halts_scrub(self, make_governor, checkpoints):
        governor = make_governor(daily={"compliance": 1})
        orchestrator = build(governor, checkpoints, compliance=FakeCompliance())
        results = [EnrichmentResult(lead=make_lead(name=f"L {i}"), phone=f"51255501{i:02d}") for i in range(3)]

        summary = orchestrator.scrub_batch(results)

        assert summary["checked"] == 1
        assert summary["deferred"] == 2
        assert summary["halted_reason"] == "quota_exceeded:daily"

    def test_scrub_requires_client(self, governor, checkpoints):
        with pytest.raises(PipelineError):
            build(governor, checkpoints).scrub_batch([])
