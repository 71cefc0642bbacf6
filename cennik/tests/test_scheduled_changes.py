"""Tests for the scheduled-change log and its price diffing."""

import re
from datetime import date

import pytest

from cennik.errors import InvalidTransitionError, NotFoundError, ValidationError
from cennik.scheduled_changes import (
    KIND_FACTOR,
    ScheduledChangeStore,
    apply_changes_to_data,
    calculate_changes_from_data,
    generate_change_id,
    summarize_changes,
)
from cennik.storage import read_json, write_json


@pytest.fixture
def store(data_dir, catalog_store):
    return ScheduledChangeStore(data_dir / "scheduled-changes.json", catalog_store, cache_ttl=60)


def _bomar_change(new_price=1100):
    return {
        "id": "Stoły-TRIM-Grupa I",
        "product": "TRIM",
        "category": "Stoły",
        "priceGroup": "Grupa I",
        "oldPrice": 1000,
        "newPrice": new_price,
        "percentChange": 10,
    }


class TestHelpers:
    def test_change_id_format(self):
        assert re.fullmatch(r"sc_\d+_[a-z0-9]{9}", generate_change_id())

    def test_summary(self):
        summary = summarize_changes(
            [{"percentChange": 10}, {"percentChange": -5}, {"percentChange": 0}]
        )
        assert summary == {
            "totalChanges": 3,
            "priceIncrease": 1,
            "priceDecrease": 1,
            "avgChangePercent": 1.7,
        }

    def test_empty_summary(self):
        assert summarize_changes([])["totalChanges"] == 0


class TestCalculateChanges:
    def test_categories_prices_and_sizes(self, catalog_store):
        current = catalog_store.load_catalog("bomar")
        updated = read_json(catalog_store.resolve_data_file("bomar"))
        updated["categories"]["Stoły"]["TRIM"]["prices"]["Grupa II"] = 1320
        updated["categories"]["Krzesła"]["Kora"]["sizes"][0]["prices"] = 380
        updated["categories"]["Stoły"]["NOWY"] = {"prices": {"Grupa I": 1}}

        result = calculate_changes_from_data(current, updated)
        ids = sorted(c["id"] for c in result["changes"])

        assert ids == ["Krzesła-Kora-45x50", "Stoły-TRIM-Grupa II"]
        size_change = next(c for c in result["changes"] if c.get("dimension"))
        assert size_change["percentChange"] == -5.0
        assert result["summary"]["totalChanges"] == 2

    def test_products_element_groups(self, catalog_store):
        current = catalog_store.load_catalog("mp-nidzica")
        updated = read_json(catalog_store.resolve_data_file("mp-nidzica"))
        updated["products"][0]["elements"][1]["prices"]["B"] = 3000
        updated["products"][1]["elements"][0]["price"] = 330

        changes = calculate_changes_from_data(current, updated)["changes"]
        by_id = {c["id"]: c for c in changes}

        assert by_id["Fotel Nidzica-2F-B"]["priceGroup"] == "2F (B)"
        assert "category" not in by_id["Fotel Nidzica-2F-B"]
        assert by_id["Pufa-PF"]["newPrice"] == 330

    def test_table_rows(self, catalog_store):
        current = catalog_store.load_catalog("puszman")
        updated = read_json(catalog_store.resolve_data_file("puszman"))
        updated["Arkusz1"][1]["grupa II"] = 3630

        changes = calculate_changes_from_data(current, updated)["changes"]
        assert [c["id"] for c in changes] == ["MILANO-grupa II"]
        assert changes[0]["percentChange"] == 10.0

    def test_identical_documents(self, catalog_store):
        data = catalog_store.load_catalog("bomar")
        assert calculate_changes_from_data(data, data)["changes"] == []


class TestApplyChangesToData:
    def test_writes_new_prices_without_touching_input(self, catalog_store):
        data = catalog_store.load_catalog("bomar")
        result = apply_changes_to_data(data, [_bomar_change(1111)])
        assert result["categories"]["Stoły"]["TRIM"]["prices"]["Grupa I"] == 1111
        assert data["categories"]["Stoły"]["TRIM"]["prices"]["Grupa I"] == 1000

    def test_element_group_encoding(self, catalog_store):
        data = catalog_store.load_catalog("mp-nidzica")
        change = {"product": "Fotel Nidzica", "priceGroup": "1F (A)", "oldPrice": 1500, "newPrice": 1600}
        result = apply_changes_to_data(data, [change])
        assert result["products"][0]["elements"][0]["prices"]["A"] == 1600

    def test_table_row(self, catalog_store):
        data = catalog_store.load_catalog("puszman")
        change = {"product": "BOSTON", "priceGroup": "grupa I", "oldPrice": 2000, "newPrice": 2100}
        assert apply_changes_to_data(data, [change])["Arkusz1"][0]["grupa I"] == 2100

    def test_stale_items_are_skipped(self, catalog_store):
        data = catalog_store.load_catalog("bomar")
        stale = {**_bomar_change(), "product": "USUNIĘTY"}
        assert apply_changes_to_data(data, [stale]) == data


class TestCreateAndList:
    def test_create_price_change(self, store):
        change = store.create_price_change("bomar", "Bomar", "2030-01-01", [_bomar_change()])
        assert change["status"] == "pending"
        assert change["summary"]["totalChanges"] == 1

        listed = store.list_changes()
        assert [c["id"] for c in listed["changes"]] == [change["id"]]
        assert listed["factorChanges"] == []

    def test_create_requires_items(self, store):
        with pytest.raises(ValidationError):
            store.create_price_change("bomar", "Bomar", "2030-01-01", [])

    def test_create_requires_date(self, store):
        with pytest.raises(ValidationError):
            store.create_price_change("bomar", "Bomar", "", [_bomar_change()])

    def test_list_filters(self, store):
        store.create_price_change("bomar", "Bomar", "2030-02-01", [_bomar_change()])
        other = store.create_price_change("puszman", "Puszman", "2030-01-01", [_bomar_change()])
        store.cancel(other["id"])

        assert len(store.list_changes()["changes"]) == 1
        assert len(store.list_changes(status="all")["changes"]) == 2
        assert len(store.list_changes(status="cancelled")["changes"]) == 1
        assert store.list_changes(producer="puszman")["changes"] == []

    def test_list_sorted_by_date(self, store):
        later = store.create_price_change("bomar", "Bomar", "2030-03-01", [_bomar_change()])
        sooner = store.create_price_change("bomar", "Bomar", "2030-01-01", [_bomar_change()])
        ids = [c["id"] for c in store.list_changes()["changes"]]
        assert ids == [sooner["id"], later["id"]]

    def test_factor_change_replaces_pending_one(self, store):
        first, replaced = store.create_factor_change("bomar", "Bomar", "2030-01-01", 1.0, 1.1)
        assert replaced is False
        assert first["percentChange"] == 10.0

        second, replaced = store.create_factor_change("bomar", "Bomar", "2030-02-01", 1.0, 1.2)
        assert replaced is True
        assert second["id"] == first["id"]
        factor_changes = store.list_changes(kind=KIND_FACTOR)["factorChanges"]
        assert len(factor_changes) == 1
        assert factor_changes[0]["newFactor"] == 1.2

    def test_factor_change_rejects_zero_old_factor(self, store):
        with pytest.raises(ValidationError):
            store.create_factor_change("bomar", "Bomar", "2030-01-01", 0, 1.1)


class TestTransitions:
    def test_apply_writes_catalog(self, store, data_dir):
        change = store.create_price_change("bomar", "Bomar", "2030-01-01", [_bomar_change(1234)])
        store.apply(change["id"])

        assert read_json(data_dir / "Bomar.json")["categories"]["Stoły"]["TRIM"]["prices"]["Grupa I"] == 1234
        assert store.list_changes(status="applied")["changes"][0]["id"] == change["id"]

    def test_applied_change_cannot_move(self, store):
        change = store.create_price_change("bomar", "Bomar", "2030-01-01", [_bomar_change()])
        store.apply(change["id"])
        with pytest.raises(InvalidTransitionError):
            store.cancel(change["id"])
        with pytest.raises(InvalidTransitionError):
            store.reschedule(change["id"], "2031-01-01")
        with pytest.raises(InvalidTransitionError):
            store.apply(change["id"])

    def test_reschedule(self, store):
        change = store.create_price_change("bomar", "Bomar", "2030-01-01", [_bomar_change()])
        store.reschedule(change["id"], "2030-06-01")
        assert store.list_changes()["changes"][0]["scheduledDate"] == "2030-06-01"

    def test_delete_returns_slug(self, store):
        change = store.create_price_change("bomar", "Bomar", "2030-01-01", [_bomar_change()])
        assert store.delete(change["id"]) == "bomar"
        assert store.list_changes(status="all")["changes"] == []

    def test_unknown_id(self, store):
        with pytest.raises(NotFoundError):
            store.cancel("sc_0_missing")

    def test_apply_factor_change_updates_registry(self, store, catalog_store):
        entry, _ = store.create_factor_change("bomar", "Bomar", "2030-01-01", 1.0, 1.15)
        store.apply(entry["id"], KIND_FACTOR)
        assert catalog_store.get_producer("bomar")["priceFactor"] == 1.15

    def test_legacy_updated_data_is_applied(self, store, data_dir):
        legacy = {
            "id": "sc_1_legacy0000",
            "producerSlug": "puszman",
            "producerName": "Puszman",
            "scheduledDate": "2020-01-01",
            "status": "pending",
            "updatedData": {"Arkusz1": [{"MODEL": "NOWY"}]},
        }
        write_json(store.path, {"scheduledChanges": [legacy], "scheduledFactorChanges": []})
        store.apply(legacy["id"])
        assert read_json(data_dir / "puszman.json") == {"Arkusz1": [{"MODEL": "NOWY"}]}
        assert "updatedData" not in store.list_changes(status="all")["changes"][0]


class TestApplyDue:
    def test_only_due_changes_are_applied(self, store, data_dir):
        due = store.create_price_change("bomar", "Bomar", "2024-05-01", [_bomar_change(1500)])
        future = store.create_price_change("bomar", "Bomar", "2024-06-01", [_bomar_change(9999)])
        store.create_factor_change("puszman", "Puszman", "2024-05-01", 1.0, 1.2)

        result = store.apply_due(today=date(2024, 5, 1))

        assert len(result["applied"]) == 2
        assert result["errors"] == []
        assert len(result["appliedFactorChanges"]) == 1
        statuses = {c["id"]: c["status"] for c in store.list_changes(status="all")["changes"]}
        assert statuses == {due["id"]: "applied", future["id"]: "pending"}
        assert read_json(data_dir / "Bomar.json")["categories"]["Stoły"]["TRIM"]["prices"]["Grupa I"] == 1500

    def test_failed_entry_stays_pending(self, store, data_dir):
        (data_dir / "mp.json").unlink()
        change = store.create_price_change(
            "mp-nidzica", "MP Nidzica", "2024-01-01",
            [{"product": "Pufa", "priceGroup": "PF", "oldPrice": 300, "newPrice": 310}],
        )
        result = store.apply_due(today=date(2024, 5, 1))
        assert result["applied"] == []
        assert len(result["errors"]) == 1
        assert store.list_changes()["changes"][0]["id"] == change["id"]

    def test_nothing_due(self, store):
        result = store.apply_due(today=date(2024, 5, 1))
        assert result["message"] == "Brak zmian do zastosowania"
        assert not store.path.exists()

    def test_applicable_changes(self, store):
        store.create_price_change("bomar", "Bomar", "2024-05-01", [_bomar_change()])
        store.create_price_change("bomar", "Bomar", "2024-05-02", [_bomar_change()])
        assert len(store.applicable_changes(today=date(2024, 5, 1))) == 1


class TestPageHelpers:
    def test_banner_data_counts_days(self, store):
        store.create_price_change("bomar", "Bomar", "2024-05-11", [_bomar_change()])
        store.create_price_change("bomar", "Bomar", "2024-04-01", [_bomar_change()])
        banners = store.banner_data("bomar", today=date(2024, 5, 1), use_cache=False)
        assert len(banners) == 1
        assert banners[0]["daysUntil"] == 10
        assert banners[0]["summary"]["totalChanges"] == 1

    def test_product_changes_map_keys(self, store):
        store.create_price_change("bomar", "Bomar", "2030-01-01", [_bomar_change()])
        store.create_price_change(
            "mp-nidzica", "MP Nidzica", "2030-01-01",
            [{"product": "Pufa", "priceGroup": "PF", "oldPrice": 300, "newPrice": 310}],
        )
        assert list(store.product_changes_map("bomar", use_cache=False)) == ["Stoły__TRIM"]
        assert list(store.product_changes_map("mp-nidzica", use_cache=False)) == ["Pufa"]

    def test_cached_reads_lag_writes(self, store):
        assert store.producers_with_pending(use_cache=True) == []
        store.create_price_change("bomar", "Bomar", "2030-01-01", [_bomar_change()])
        assert store.producers_with_pending(use_cache=True) == []
        assert store.producers_with_pending(use_cache=False) == ["bomar"]
