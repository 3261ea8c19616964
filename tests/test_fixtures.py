"""
tests/test_fixtures.py — Fixture store loading, normalisation and lookups.

Covers:
    - Country resolution from country/Country/origin/Origin
    - Dropping records without a resolvable country
    - summarize() totals, empty-collection guard, flag counting
    - Case-insensitive country_stats() and sorted list_countries()
    - Fatal load errors for missing / malformed documents
    - The bundled data directory

Requires: pytest
"""

from __future__ import annotations

import itertools
import json
from pathlib import Path

import pytest

from biasdash.config import DEFAULT_DATA_DIR
from biasdash.fixtures import (
    FixtureLoadError,
    FixtureStore,
    normalize_candidates,
    resolve_country,
)

STATS = {
    "France": {"female_low_education": 19.2, "male_low_education": 21.6},
    "Germany": {"female_low_education": 14.9, "male_low_education": 12.7},
    "spain": {"female_low_education": 34.1, "male_low_education": 39.8},
}


def _candidate(name: str, score: float = 60, flags: list[str] | None = None, **country) -> dict:
    return {
        "name": name,
        "years_experience": 3,
        "education": "Bachelors",
        "qualification_score": score,
        "bias_flags": flags if flags is not None else [],
        **country,
    }


def _write(tmp_path: Path, candidates, stats) -> Path:
    (tmp_path / "bias_data.json").write_text(json.dumps(candidates), encoding="utf-8")
    (tmp_path / "country_stats.json").write_text(json.dumps(stats), encoding="utf-8")
    return tmp_path


# ---------------------------------------------------------------------------
# Normalisation
# ---------------------------------------------------------------------------

class TestCountryResolution:
    def test_first_non_empty_field_wins(self):
        assert resolve_country({"country": "", "Country": "  Spain ", "origin": "France"}) == "spain"

    def test_origin_fallback(self):
        assert resolve_country({"Origin": "NIGERIA"}) == "nigeria"

    def test_unresolvable(self):
        assert resolve_country({"country": "   ", "origin": None}) == ""
        assert resolve_country({}) == ""

    def test_non_string_values_are_ignored(self):
        assert resolve_country({"country": 42, "origin": "India"}) == "india"

    def test_unresolvable_records_dropped(self):
        records = normalize_candidates([
            _candidate("A", country="France"),
            _candidate("B", origin=""),
            _candidate("C"),
            _candidate("D", Origin="Spain"),
        ])
        assert [r["name"] for r in records] == ["A", "D"]

    def test_every_served_country_non_empty_lowercase(self):
        records = normalize_candidates([
            _candidate("A", Country="FRANCE"),
            _candidate("B", origin=" Germany "),
        ])
        for r in records:
            assert r["country"]
            assert r["country"] == r["country"].lower()
            assert r["country"] == r["country"].strip()

    def test_source_country_fields_folded(self):
        (record,) = normalize_candidates([_candidate("A", origin="Spain")])
        assert "origin" not in record
        assert record["country"] == "spain"

    def test_non_object_records_dropped(self):
        records = normalize_candidates(["not a record", _candidate("A", country="France")])
        assert len(records) == 1

    def test_missing_bias_flags_become_empty_list(self):
        raw = _candidate("A", country="France")
        del raw["bias_flags"]
        (record,) = normalize_candidates([raw])
        assert record["bias_flags"] == []

    def test_insertion_order_preserved(self):
        names = [f"C{i}" for i in range(20)]
        records = normalize_candidates([_candidate(n, country="France") for n in names])
        assert [r["name"] for r in records] == names


# ---------------------------------------------------------------------------
# summarize()
# ---------------------------------------------------------------------------

class TestSummary:
    def test_empty_collection(self):
        summary = FixtureStore([], STATS).summarize()
        assert summary == {
            "totalCandidates": 0,
            "averageQualificationScore": 0,
            "biasDistribution": {},
        }

    def test_total_matches_get_all(self):
        store = FixtureStore.from_raw(
            [_candidate("A", country="France"), _candidate("B"), _candidate("C", origin="Spain")],
            STATS,
        )
        assert store.summarize()["totalCandidates"] == len(store.get_all()) == 2

    def test_average(self):
        store = FixtureStore.from_raw(
            [_candidate("A", 50, country="France"), _candidate("B", 70, country="Spain")],
            STATS,
        )
        assert store.summarize()["averageQualificationScore"] == pytest.approx(60.0)

    def test_flags_lowercased_and_counted(self):
        store = FixtureStore.from_raw(
            [
                _candidate("A", flags=["Gender", "migrant"], country="France"),
                _candidate("B", flags=["gender"], country="Spain"),
                _candidate("C", flags=["AGE"], country="Germany"),
            ],
            STATS,
        )
        assert store.summarize()["biasDistribution"] == {"gender": 2, "migrant": 1, "age": 1}


# ---------------------------------------------------------------------------
# Country lookups
# ---------------------------------------------------------------------------

class TestCountryLookup:
    @pytest.fixture
    def store(self) -> FixtureStore:
        return FixtureStore([], STATS)

    def test_case_insensitive(self, store: FixtureStore):
        assert store.country_stats("France") == store.country_stats("france")
        assert store.country_stats("FRANCE") is not None
        assert store.country_stats("Spain") == STATS["spain"]

    def test_not_found(self, store: FixtureStore):
        assert store.country_stats("Nowhereland") is None

    def test_lookup_returns_copy(self, store: FixtureStore):
        store.country_stats("france")["female_low_education"] = -1
        assert store.country_stats("france")["female_low_education"] == 19.2

    def test_list_countries_sorted_for_any_key_order(self):
        items = list(STATS.items())
        expected = ["france", "germany", "spain"]
        for perm in itertools.permutations(items):
            assert FixtureStore([], dict(perm)).list_countries() == expected

    def test_case_variant_keys_collapse(self):
        store = FixtureStore([], {"France": {"a": 1}, "FRANCE": {"a": 2}})
        countries = store.list_countries()
        assert countries == ["france"]
        assert len(countries) == len(set(countries))


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

class TestLoad:
    def test_load_from_directory(self, tmp_path: Path):
        data_dir = _write(tmp_path, [_candidate("A", country="France"), _candidate("B")], STATS)
        store = FixtureStore.load(data_dir)
        assert len(store) == 1
        assert store.country_count == 3

    def test_missing_candidates_file(self, tmp_path: Path):
        (tmp_path / "country_stats.json").write_text("{}", encoding="utf-8")
        with pytest.raises(FixtureLoadError) as exc_info:
            FixtureStore.load(tmp_path)
        assert exc_info.value.path.name == "bias_data.json"

    def test_missing_stats_file(self, tmp_path: Path):
        (tmp_path / "bias_data.json").write_text("[]", encoding="utf-8")
        with pytest.raises(FixtureLoadError):
            FixtureStore.load(tmp_path)

    def test_malformed_json(self, tmp_path: Path):
        (tmp_path / "bias_data.json").write_text("[{", encoding="utf-8")
        (tmp_path / "country_stats.json").write_text("{}", encoding="utf-8")
        with pytest.raises(FixtureLoadError) as exc_info:
            FixtureStore.load(tmp_path)
        assert "invalid JSON" in exc_info.value.detail

    def test_wrong_document_shapes(self, tmp_path: Path):
        _write(tmp_path, {"not": "a list"}, STATS)
        with pytest.raises(FixtureLoadError):
            FixtureStore.load(tmp_path)
        _write(tmp_path, [], ["not", "a", "mapping"])
        with pytest.raises(FixtureLoadError):
            FixtureStore.load(tmp_path)

    def test_bundled_data(self):
        store = FixtureStore.load(DEFAULT_DATA_DIR)
        assert len(store) == 11
        assert all(c["country"] for c in store.get_all())
        assert "Unknown Applicant" not in {c["name"] for c in store.get_all()}
        assert store.list_countries() == sorted(store.list_countries())
