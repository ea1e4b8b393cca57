"""
Tests for post-filter location validation of search results.
"""

import pytest

from conftest import make_lead
from lead_validator import (
    LeadValidator,
    MatchConfidence,
    ValidationPolicy,
    extract_country,
    extract_region,
    lead_location_text,
)

TEXAS_LEADS = [
    "Austin, Texas, United States",
    "Dallas, TX",
    "Houston, Texas",
    "San Antonio, Texas, United States",
    "Greater Houston, Texas Area",
    "Plano TX",
    "Fort Worth, Texas",
    "El Paso, TX, USA",
    "Round Rock, Texas",
    "Frisco, TX",
    "Waco, Texas, United States",
    "Lubbock, TX",
    "Texas, United States",
    "Irving, Texas",
    "Arlington, TX",
    "Corpus Christi, Texas",
    "McKinney, TX",
    "Sugar Land, Texas",
]

OTHER_LEADS = [
    "Oklahoma City, OK",
    "Toronto, Ontario, Canada",
    "London, England, United Kingdom",
    "Miami, Florida",
    "Denver, CO",
    "Texarkana, AR",
    "Remote",
]


@pytest.mark.unit
@pytest.mark.validator
class TestExtraction:
    @pytest.mark.parametrize(
        "text, expected",
        [
            ("Austin, Texas, United States", "TX"),
            ("Dallas TX", "TX"),
            ("Greater Houston, Texas Area", "TX"),
            ("New York City Metropolitan Area", "NY"),
            ("Toronto, Ontario, Canada", None),
            ("Toronto, ON, CA", None),
            ("Vancouver, British Columbia, CA", None),
            ("Wilmington, DE", "DE"),
            ("Remote", None),
            ("", None),
        ],
    )
    def test_extract_region(self, text, expected):
        assert extract_region(text) == expected

    @pytest.mark.parametrize(
        "text, expected",
        [
            ("London, England, United Kingdom", "uk"),
            ("Toronto, Ontario", "ca"),
            ("Austin, TX", "us"),
            ("Remote", None),
        ],
    )
    def test_extract_country(self, text, expected):
        assert extract_country(text) == expected

    def test_lead_location_text_from_dict_and_record(self):
        assert lead_location_text({"geoRegion": "Austin, Texas"}) == "Austin, Texas"
        assert lead_location_text({"profile": {"location": "Denver, CO"}}) == "Denver, CO"
        assert lead_location_text(make_lead(location="Waco, TX")) == "Waco, TX"
        assert lead_location_text(None) == ""


@pytest.mark.unit
@pytest.mark.validator
class TestMatches:
    def test_region_match_is_high_confidence(self):
        decision = LeadValidator().matches(make_lead(location="Dallas, Texas"), "TX")

        assert decision.accept
        assert decision.confidence is MatchConfidence.HIGH

    def test_country_mismatch_rejected(self):
        decision = LeadValidator().matches(make_lead(location="Toronto, Ontario, Canada"), "Texas")

        assert not decision.accept
        assert decision.confidence is MatchConfidence.HIGH
        assert "Country mismatch" in decision.reason

    def test_country_only_request(self):
        validator = LeadValidator()

        assert validator.matches(make_lead(location="Austin, TX"), "United States").accept
        assert not validator.matches(make_lead(location="London, England"), "United States").accept

    def test_region_mismatch_rejected(self):
        decision = LeadValidator().matches(make_lead(location="Denver, CO"), "Austin, TX")

        assert not decision.accept
        assert "Region mismatch" in decision.reason

    @pytest.mark.parametrize(
        "location, requested",
        [
            ("Charleston, West Virginia, United States", "Virginia"),
            ("Kansas City, Missouri, United States", "Kansas"),
            ("Kansas City, MO", "Kansas"),
        ],
    )
    def test_state_name_inside_other_state_rejected(self, location, requested):
        decision = LeadValidator().matches({"location": location}, requested)

        assert not decision.accept
        assert decision.confidence is MatchConfidence.HIGH
        assert "Region mismatch" in decision.reason

    def test_trailing_country_code_is_not_a_state(self):
        decision = LeadValidator().matches(make_lead(location="Toronto, ON, CA"), "California")

        assert not decision.accept

    def test_substring_match_is_medium(self):
        decision = LeadValidator().matches(make_lead(location="Greater Paris Metropolitan Region"), "Paris")

        assert decision.accept
        assert decision.confidence is MatchConfidence.MEDIUM

    def test_substring_rule_can_be_disabled(self):
        validator = LeadValidator(ValidationPolicy(accept_medium=False))

        assert not validator.matches(make_lead(location="Greater Paris Metropolitan Region"), "Paris").accept

    def test_substring_requires_minimum_length(self):
        validator = LeadValidator(ValidationPolicy(min_substring_length=6))

        assert not validator.matches(make_lead(location="Paris, Ile-de-France"), "Paris").accept

    def test_substring_is_word_bounded(self):
        assert not LeadValidator().matches(make_lead(location="Yorkshire"), "York").accept

    def test_unknown_location_excluded(self):
        decision = LeadValidator().matches(make_lead(location=""), "Texas")

        assert not decision.accept
        assert decision.confidence is MatchConfidence.LOW

    def test_no_requested_location_excluded(self):
        assert not LeadValidator().matches(make_lead(), "").accept


@pytest.mark.unit
@pytest.mark.validator
class TestFilterBatch:
    def test_texas_batch_removes_out_of_state_leads(self):
        """18 Texas leads are kept and 7 contradicting leads removed."""
        leads = [make_lead(name=f"Lead {i}", location=text) for i, text in enumerate(TEXAS_LEADS + OTHER_LEADS)]

        outcome = LeadValidator().filter_batch(leads, "Texas")

        assert len(outcome.kept) == 18
        assert len(outcome.removed) == 7
        assert outcome.stats["removal_rate"] == pytest.approx(0.28)
        assert {item.lead.raw_location_text for item in outcome.removed} == set(OTHER_LEADS)

    def test_filter_is_idempotent(self):
        leads = [make_lead(name=f"Lead {i}", location=text) for i, text in enumerate(TEXAS_LEADS + OTHER_LEADS)]
        validator = LeadValidator()

        first = validator.filter_batch(leads, "TX")
        second = validator.filter_batch(first.kept, "TX")

        assert second.kept == first.kept
        assert second.removed == []
        assert second.stats["removal_rate"] == 0.0

    def test_reason_counts(self):
        leads = [make_lead(name="a", location="Denver, CO"), make_lead(name="b", location="Toronto, Ontario, Canada")]

        stats = LeadValidator().filter_batch(leads, "Texas").stats

        assert stats["removal_reasons"] == {"Region mismatch": 1, "Country mismatch": 1}

    def test_accepts_raw_search_dicts(self):
        leads = [{"fullName": "A", "geoRegion": "Austin, Texas"}, {"fullName": "B", "location": "Miami, FL"}]

        outcome = LeadValidator().filter_batch(leads, "Texas")

        assert [lead["fullName"] for lead in outcome.kept] == ["A"]

    def test_empty_batch(self):
        assert LeadValidator().filter_batch([], "Texas").stats["removal_rate"] == 0.0
