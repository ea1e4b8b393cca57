"""
Tests for the geo-ID store: static seeding, alias keys, upsert precedence,
legacy rows, stats and CSV export.
"""

import csv
import json

import pytest

from geo_store import (
    STATIC_LOCATIONS,
    GeoIdStore,
    GeoLocationEntry,
    GeoSource,
    location_key_variants,
    normalize_geo_key,
    parse_location_id,
    split_region_country,
)
from pipeline_core import InMemoryTable, JsonFileTable, StorageError


@pytest.mark.unit
@pytest.mark.geo
class TestKeyNormalization:
    def test_normalize_geo_key(self):
        assert normalize_geo_key("  Austin,  TX ") == "austin_tx"
        assert normalize_geo_key("North   Carolina") == "north_carolina"
        assert normalize_geo_key(None) == ""

    def test_state_variants_share_canonical_key(self):
        """Abbreviation and full name normalize to the same canonical key."""
        assert location_key_variants("NC")[0] == "north_carolina"
        assert location_key_variants("North Carolina")[0] == "north_carolina"
        assert "nc" in location_key_variants("North Carolina")

    def test_city_variants(self):
        assert location_key_variants("Austin, TX") == ["austin_texas", "austin_tx"]

    def test_non_us_text_has_single_key(self):
        assert location_key_variants("London, England") == ["london_england"]

    @pytest.mark.parametrize(
        "value, expected",
        [
            ("102748797", "102748797"),
            ("urn:li:fs_geo:102748797", "102748797"),
            ("urn:li:geo:103644278", "103644278"),
            (102748797, "102748797"),
            ("Texas", None),
            ("", None),
            (None, None),
            (True, None),
        ],
    )
    def test_parse_location_id(self, value, expected):
        assert parse_location_id(value) == expected

    def test_split_region_country(self):
        assert split_region_country("Austin, Texas, United States") == ("Texas", "US")
        assert split_region_country("Toronto, Ontario, Canada") == (None, "CA")
        assert split_region_country(None) == (None, None)


@pytest.mark.unit
@pytest.mark.geo
class TestStaticSeeding:
    def test_seed_static_loads_verified_table(self, geo_store):
        entry = geo_store.lookup("Texas")

        assert entry.location_id == "102748797"
        assert entry.source is GeoSource.STATIC
        assert len({e.location_id for e in geo_store.entries()}) == len(STATIC_LOCATIONS)

    def test_abbreviation_and_full_name_resolve_identically(self, geo_store):
        assert geo_store.lookup("NC").location_id == geo_store.lookup("North Carolina").location_id == "103255397"

    def test_reseeding_is_a_no_op(self, geo_store):
        writes_before = geo_store.table.writes

        assert geo_store.seed_static() == 0
        assert geo_store.table.writes == writes_before

    def test_seed_from_file(self, tmp_path):
        path = tmp_path / "static.json"
        path.write_text(json.dumps([{"name": "Austin, TX", "id": "urn:li:fs_geo:90000064"}, {"name": "Bad", "id": "x"}]))
        store = GeoIdStore(InMemoryTable())

        store.seed_static(locations={}, path=path)

        assert store.lookup("Austin, Texas").location_id == "90000064"
        assert store.lookup("Bad") is None

    def test_unreadable_static_file_raises(self, tmp_path):
        path = tmp_path / "static.json"
        path.write_text("{oops")

        with pytest.raises(StorageError):
            GeoIdStore(InMemoryTable()).seed_static(path=path)


@pytest.mark.unit
@pytest.mark.geo
class TestUpsert:
    def test_static_entry_is_immutable(self, geo_store):
        """A discovered id never replaces a static one."""
        entry = geo_store.upsert("Texas", "999999", source=GeoSource.DISCOVERED)

        assert entry.location_id == "102748797"
        assert entry.source is GeoSource.STATIC
        assert geo_store.lookup("TX").location_id == "102748797"

    def test_static_entry_ignores_later_static_attempt(self, geo_store):
        geo_store.upsert("Ohio", "111", source=GeoSource.STATIC)

        assert geo_store.lookup("Ohio").location_id == "106981407"

    def test_refuses_non_identifier(self, geo_store):
        with pytest.raises(ValueError):
            geo_store.upsert("Austin, TX", "Austin, TX")

    def test_discovered_beats_extracted(self):
        store = GeoIdStore(InMemoryTable())
        store.upsert("Austin, TX", "111", source=GeoSource.EXTRACTED)
        store.upsert("Austin, TX", "222", source=GeoSource.DISCOVERED)

        entry = store.lookup("Austin, TX", touch=False)
        assert entry.location_id == "222"
        assert entry.source is GeoSource.DISCOVERED

    def test_extracted_does_not_replace_discovered(self):
        store = GeoIdStore(InMemoryTable())
        store.upsert("Austin, TX", "222", source=GeoSource.DISCOVERED)
        store.upsert("Austin, TX", "111", source=GeoSource.EXTRACTED)

        assert store.lookup("Austin, TX", touch=False).location_id == "222"

    def test_reinsert_increments_usage(self):
        store = GeoIdStore(InMemoryTable())
        store.upsert("Austin, TX", "222")
        entry = store.upsert("Austin, TX", "222", display_name="Austin, Texas, United States")

        assert entry.usage_count == 1
        assert entry.display_name == "Austin, Texas, United States"

    def test_lookup_touch_counts_usage(self, geo_store):
        geo_store.lookup("Florida")
        geo_store.lookup("Florida")

        assert geo_store.lookup("Florida", touch=False).usage_count == 2

    def test_upsert_writes_alias_keys(self):
        store = GeoIdStore(InMemoryTable())
        store.upsert("Austin, Texas", "90000064")

        assert store.lookup("Austin TX", touch=False).location_id == "90000064"

    def test_region_and_country_from_display_name(self):
        store = GeoIdStore(InMemoryTable())
        entry = store.upsert("Austin, TX", "90000064", display_name="Austin, Texas, United States")

        assert entry.region == "Texas"
        assert entry.country == "US"


@pytest.mark.unit
@pytest.mark.geo
class TestPersistence:
    def test_entries_survive_reopen(self, tmp_path):
        path = tmp_path / "geo.json"
        GeoIdStore(JsonFileTable(path)).upsert("Austin, TX", "90000064")

        reopened = GeoIdStore(JsonFileTable(path))

        assert reopened.lookup("Austin, TX").location_id == "90000064"

    def test_legacy_row_shape_is_normalized(self):
        table = InMemoryTable({"geo:denver_co": {"id": "urn:li:fs_geo:105763813", "name": "Denver, CO", "timestamp": "2024-01-01T00:00:00"}})
        store = GeoIdStore(table)

        entry = store.lookup("denver co", touch=False)

        assert entry.location_id == "105763813"
        assert entry.discovered_at == "2024-01-01T00:00:00"
        assert entry.source is GeoSource.DISCOVERED

    def test_row_without_id_is_corrupt(self):
        with pytest.raises(StorageError):
            GeoLocationEntry.from_dict("broken", {"name": "Nowhere"})

    def test_entries_skip_unreadable_rows(self, geo_store):
        geo_store.table.put("geo:broken", {"name": "Nowhere"})

        assert all(entry.key != "broken" for entry in geo_store.entries())


@pytest.mark.unit
@pytest.mark.geo
class TestReporting:
    def test_stats(self, geo_store):
        geo_store.upsert("Austin, TX", "90000064", display_name="Austin, Texas, United States")
        geo_store.lookup("Austin, TX")

        stats = geo_store.stats(top=3)

        assert stats["total_locations"] == len(STATIC_LOCATIONS) + 1
        assert stats["by_source"]["discovered"] == 1
        assert stats["by_source"]["static"] == len(STATIC_LOCATIONS)
        assert stats["most_used"][0]["location_id"] == "90000064"
        assert len(stats["recently_added"]) == 3

    def test_export_csv(self, geo_store, tmp_path):
        path = tmp_path / "out" / "geo.csv"

        count = geo_store.export_csv(path)

        with path.open(newline="", encoding="utf-8") as handle:
            rows = list(csv.DictReader(handle))
        assert count == len(rows)
        texas = next(row for row in rows if row["key"] == "texas")
        assert texas["location_id"] == "102748797"
        assert texas["source"] == "static"
