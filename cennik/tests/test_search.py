"""Tests for cross-producer search."""

import json

import pytest

from cennik.search import NO_MATCH, SearchIndex, fuzzy_match, match_score


class TestScoring:
    @pytest.mark.parametrize(
        "text, query, expected",
        [
            ("Fotel Nidzica", "fot", 0),
            ("Fotel Nidzica", "nidz", 1),
            ("Fotel Nidzica", "ftn", 2),
            ("Fotel Nidzica", "xyz", NO_MATCH),
            (None, "fot", NO_MATCH),
        ],
    )
    def test_match_score(self, text, query, expected):
        assert match_score(text, query) == expected

    def test_fuzzy_match_is_case_insensitive(self):
        assert fuzzy_match("BOSTON", "bsn") is True


class TestSearchIndex:
    def test_indexes_all_layouts(self, catalog_store):
        names = {entry.name for entry in SearchIndex(catalog_store).entries()}
        assert {"TRIM", "Łukasz", "Kora", "Fotel Nidzica", "Pufa", "BOSTON", "MILANO"} <= names

    def test_prefix_beats_substring(self, catalog_store):
        results = SearchIndex(catalog_store).search("o", limit=10)
        scores = [min(match_score(r.name, "o"), match_score(r.previous_name, "o")) for r in results]
        assert scores == sorted(scores)

    def test_result_carries_anchor(self, catalog_store):
        result = SearchIndex(catalog_store).search("fotel")[0]
        assert result.to_dict() == {
            "name": "Fotel Nidzica",
            "producerSlug": "mp-nidzica",
            "producerName": "MP Nidzica",
            "productId": "product-fotel-nidzica",
        }

    def test_matches_previous_name(self, catalog_store):
        results = SearchIndex(catalog_store).search("puf mały")
        assert [r.name for r in results] == ["Pufa"]

    def test_limit(self, catalog_store):
        assert len(SearchIndex(catalog_store).search("a", limit=2)) == 2

    def test_blank_query(self, catalog_store):
        assert SearchIndex(catalog_store).search("   ") == []

    def test_index_is_cached_until_ttl(self, catalog_store, data_dir):
        index = SearchIndex(catalog_store, ttl=300)
        assert index.search("roma") == []

        rows = json.loads((data_dir / "puszman.json").read_text(encoding="utf-8"))
        rows["Arkusz1"].append({"MODEL": "ROMA"})
        (data_dir / "puszman.json").write_text(json.dumps(rows), encoding="utf-8")

        assert index.search("roma") == []
        assert [r.name for r in SearchIndex(catalog_store, ttl=0).search("roma")] == ["ROMA"]

    def test_missing_catalog_is_skipped(self, catalog_store, data_dir):
        (data_dir / "Bomar.json").unlink()
        names = {entry.producer_slug for entry in SearchIndex(catalog_store).entries()}
        assert "bomar" not in names

    @pytest.mark.parametrize("broken", [{"categories": {"Stoły": ["broken"]}}, ["not", "a", "catalog"]])
    def test_malformed_catalog_is_skipped(self, catalog_store, data_dir, broken):
        (data_dir / "puszman.json").write_text(json.dumps(broken), encoding="utf-8")
        index = SearchIndex(catalog_store)
        assert "puszman" not in {entry.producer_slug for entry in index.entries()}
        assert [r.name for r in index.search("trim")] == ["TRIM"]

    def test_whitespace_is_part_of_query(self, catalog_store):
        index = SearchIndex(catalog_store)
        assert index.search("trim ") == []
        assert [r.name for r in index.search("fotel ")] == ["Fotel Nidzica"]
