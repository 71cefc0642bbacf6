"""Scheduled price and factor changes.

All entries live in one JSON file next to the catalogs. A change is
created ``pending`` and moves exactly once, to ``applied`` or
``cancelled``. Nothing runs on a timer here: the pages poll the apply
endpoint and :meth:`ScheduledChangeStore.apply_due` does the work.
"""

import copy
import logging
import random
import re
import string
import threading
import time
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from .config import SCHEDULED_CACHE_TTL, TABLE_PRICE_GROUPS
from .errors import InvalidTransitionError, NotFoundError, ValidationError
from .logging_config import log_event
from .models import (
    STATUS_APPLIED,
    STATUS_CANCELLED,
    STATUS_PENDING,
    ChangeItem,
    ChangeSummary,
    ScheduledChange,
    ScheduledFactorChange,
)
from .pricing import percent_change, round_price
from .storage import CatalogStore, read_json, write_json

__all__ = [
    "KIND_PRICE",
    "KIND_FACTOR",
    "ScheduledChangeStore",
    "apply_changes_to_data",
    "calculate_changes_from_data",
    "summarize_changes",
    "generate_change_id",
    "clear_read_cache",
]

logger = logging.getLogger(__name__)

KIND_PRICE = "price"
KIND_FACTOR = "factor"

_ELEMENT_GROUP = re.compile(r"^(.+?)\s*\((.+?)\)$")

# path -> (loaded_at, document); shared by every store in the process
_read_cache: Dict[str, Tuple[float, Dict[str, Any]]] = {}
_cache_lock = threading.Lock()


def clear_read_cache() -> None:
    with _cache_lock:
        _read_cache.clear()


def generate_change_id() -> str:
    """``sc_<millis>_<9 random base36 chars>``."""
    alphabet = string.ascii_lowercase + string.digits
    suffix = "".join(random.choice(alphabet) for _ in range(9))
    return f"sc_{int(time.time() * 1000)}_{suffix}"


def summarize_changes(changes: List[Dict[str, Any]]) -> Dict[str, Any]:
    percents = [c.get("percentChange") or 0 for c in changes]
    average = round_price(sum(percents) / len(percents) * 10) / 10 if percents else 0
    return ChangeSummary(
        total_changes=len(changes),
        price_increase=sum(1 for p in percents if p > 0),
        price_decrease=sum(1 for p in percents if p < 0),
        avg_change_percent=average,
    ).to_dict()


def _as_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


# ---------- applying and diffing catalog documents ----------


def apply_changes_to_data(data: Dict[str, Any], changes: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Return a copy of ``data`` with every change item's new price written in.

    Items that no longer match the document (renamed product, dropped
    group) are skipped.
    """
    new_data = copy.deepcopy(data)

    for change in changes:
        product_name = change.get("product")
        price_group = change.get("priceGroup")
        new_price = change.get("newPrice")

        if isinstance(new_data.get("categories"), dict) and change.get("category"):
            product = (new_data["categories"].get(change["category"]) or {}).get(product_name)
            if product:
                if price_group and isinstance(product.get("prices"), dict):
                    product["prices"][price_group] = new_price
                if change.get("dimension") and isinstance(product.get("sizes"), list):
                    for size in product["sizes"]:
                        if size.get("dimension") != change["dimension"]:
                            continue
                        if isinstance(size.get("prices"), dict) and price_group:
                            size["prices"][price_group] = new_price
                        else:
                            size["prices"] = new_price
                        break

        if isinstance(new_data.get("products"), list) and not change.get("category"):
            product = next((p for p in new_data["products"] if p.get("name") == product_name), None)
            if product and isinstance(product.get("elements"), list):
                element_key, group_key = price_group, None
                match = _ELEMENT_GROUP.match(price_group or "")
                if match:
                    element_key, group_key = match.group(1), match.group(2)
                element = next(
                    (e for e in product["elements"] if (e.get("code") or e.get("name")) == element_key),
                    None,
                )
                if element is not None:
                    if group_key and isinstance(element.get("prices"), dict):
                        element["prices"][group_key] = new_price
                    elif "price" in element:
                        element["price"] = new_price

        if isinstance(new_data.get("Arkusz1"), list) and price_group:
            row = next((r for r in new_data["Arkusz1"] if r.get("MODEL") == product_name), None)
            if row is not None:
                row[price_group] = new_price

    return new_data


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return value
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _item(item_id: str, product: str, old: Any, new: Any, **fields: Any) -> Dict[str, Any]:
    old_price, new_price = _number(old) or 0, _number(new) or 0
    return ChangeItem(
        id=item_id,
        product=product,
        old_price=old_price,
        new_price=new_price,
        percent_change=percent_change(old_price, new_price),
        **fields,
    ).to_dict()


def _diff_categories(current: Dict[str, Any], updated: Dict[str, Any], out: List[Dict[str, Any]]) -> None:
    if not isinstance(current.get("categories"), dict) or not isinstance(updated.get("categories"), dict):
        return
    for category, products in updated["categories"].items():
        for name, product in (products or {}).items():
            existing = (current["categories"].get(category) or {}).get(name)
            if not existing:
                continue

            if isinstance(product.get("prices"), dict) and isinstance(existing.get("prices"), dict):
                for group, price in product["prices"].items():
                    if group in existing["prices"] and existing["prices"][group] != price:
                        out.append(_item(f"{category}-{name}-{group}", name, existing["prices"][group], price,
                                         category=category, price_group=group))

            if isinstance(product.get("sizes"), list) and isinstance(existing.get("sizes"), list):
                for size in product["sizes"]:
                    old_size = next((s for s in existing["sizes"] if s.get("dimension") == size.get("dimension")), None)
                    if old_size is None:
                        continue
                    if isinstance(size.get("prices"), dict) or isinstance(old_size.get("prices"), dict):
                        continue
                    new_price, old_price = _number(size.get("prices")), _number(old_size.get("prices"))
                    if new_price and old_price and new_price != old_price:
                        out.append(_item(f"{category}-{name}-{size['dimension']}", name, old_price, new_price,
                                         category=category, dimension=size["dimension"]))


def _diff_products(current: Dict[str, Any], updated: Dict[str, Any], out: List[Dict[str, Any]]) -> None:
    if not isinstance(current.get("products"), list) or not isinstance(updated.get("products"), list):
        return
    for product in updated["products"]:
        existing = next((p for p in current["products"] if p.get("name") == product.get("name")), None)
        if not existing or not isinstance(product.get("elements"), list) or not isinstance(existing.get("elements"), list):
            continue
        name = product["name"]
        for element in product["elements"]:
            key = element.get("code") or element.get("name")
            old_element = next((e for e in existing["elements"] if (e.get("code") or e.get("name")) == key), None)
            if old_element is None:
                continue
            if isinstance(element.get("prices"), dict):
                old_prices = old_element.get("prices") or {}
                for group, price in element["prices"].items():
                    if group in old_prices and old_prices[group] != price:
                        out.append(_item(f"{name}-{key}-{group}", name, old_prices[group], price,
                                         price_group=f"{key} ({group})"))
            elif "price" in element and "price" in old_element and element["price"] != old_element["price"]:
                out.append(_item(f"{name}-{key}", name, old_element["price"], element["price"], price_group=key))


def _diff_table(current: Dict[str, Any], updated: Dict[str, Any], out: List[Dict[str, Any]]) -> None:
    if not isinstance(current.get("Arkusz1"), list) or not isinstance(updated.get("Arkusz1"), list):
        return
    for row in updated["Arkusz1"]:
        existing = next((r for r in current["Arkusz1"] if r.get("MODEL") == row.get("MODEL")), None)
        if existing is None:
            continue
        for group in TABLE_PRICE_GROUPS:
            if group in row and group in existing and row[group] != existing[group]:
                out.append(_item(f"{row['MODEL']}-{group}", row["MODEL"], existing[group], row[group],
                                 price_group=group))


def calculate_changes_from_data(current: Dict[str, Any], updated: Dict[str, Any]) -> Dict[str, Any]:
    """Diff two versions of a catalog into change items plus a summary.

    Only prices present in both versions are compared; added or removed
    products are not price changes.
    """
    changes: List[Dict[str, Any]] = []
    current, updated = current or {}, updated or {}
    _diff_categories(current, updated, changes)
    _diff_products(current, updated, changes)
    _diff_table(current, updated, changes)
    return {"changes": changes, "summary": summarize_changes(changes)}


# ---------- the change log ----------


class ScheduledChangeStore:
    """The scheduled-changes.json document plus the transitions on it."""

    def __init__(self, path: Union[Path, str], catalog_store: CatalogStore, cache_ttl: float = SCHEDULED_CACHE_TTL):
        self.path = Path(path)
        self.catalog_store = catalog_store
        self.cache_ttl = cache_ttl

    # ----- file access -----

    def _read_file(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {"scheduledChanges": [], "scheduledFactorChanges": []}
        try:
            document = read_json(self.path)
        except (OSError, ValueError) as e:
            logger.warning(f"Unreadable {self.path.name}, treating as empty: {e}")
            return {"scheduledChanges": [], "scheduledFactorChanges": []}
        return {
            "scheduledChanges": document.get("scheduledChanges") or [],
            "scheduledFactorChanges": document.get("scheduledFactorChanges") or [],
        }

    def read(self, use_cache: bool = False) -> Dict[str, Any]:
        """Load the log. Pages pass ``use_cache``; the API always reads fresh.

        Cached reads may lag a write by up to the TTL.
        """
        if not use_cache:
            return self._read_file()
        key = str(self.path)
        now = time.monotonic()
        with _cache_lock:
            cached = _read_cache.get(key)
            if cached and now - cached[0] < self.cache_ttl:
                return copy.deepcopy(cached[1])
        document = self._read_file()
        with _cache_lock:
            _read_cache[key] = (now, document)
        return copy.deepcopy(document)

    def write(self, document: Dict[str, Any]) -> None:
        write_json(self.path, document)

    @staticmethod
    def _collection(kind: str) -> str:
        if kind == KIND_FACTOR:
            return "scheduledFactorChanges"
        if kind == KIND_PRICE or not kind:
            return "scheduledChanges"
        raise ValidationError(f"Unknown change type: {kind}")

    def _find(self, document: Dict[str, Any], change_id: str, kind: str) -> Dict[str, Any]:
        if not change_id:
            raise ValidationError("Missing change id")
        for entry in document[self._collection(kind)]:
            if entry.get("id") == change_id:
                return entry
        raise NotFoundError(f"Scheduled change not found: {change_id}")

    @staticmethod
    def _require_pending(entry: Dict[str, Any]) -> None:
        if entry.get("status", STATUS_PENDING) != STATUS_PENDING:
            raise InvalidTransitionError(
                f"Change {entry.get('id')} is already {entry.get('status')}"
            )

    # ----- queries -----

    def list_changes(
        self,
        producer: Optional[str] = None,
        status: str = STATUS_PENDING,
        kind: Optional[str] = None,
    ) -> Dict[str, List[Dict[str, Any]]]:
        document = self.read()
        changes = document["scheduledChanges"]
        factor_changes = document["scheduledFactorChanges"]

        status = status or STATUS_PENDING
        if status != "all":
            changes = [c for c in changes if c.get("status") == status]
            factor_changes = [c for c in factor_changes if c.get("status") == status]
        if producer:
            changes = [c for c in changes if c.get("producerSlug") == producer]
            factor_changes = [c for c in factor_changes if c.get("producerSlug") == producer]

        listed = []
        for change in changes:
            entry = {k: v for k, v in change.items() if k != "updatedData"}
            if entry.get("changes"):
                entry["summary"] = summarize_changes(entry["changes"])
            listed.append(entry)

        listed.sort(key=lambda c: str(c.get("scheduledDate", "")))
        factor_changes = sorted(factor_changes, key=lambda c: str(c.get("scheduledDate", "")))

        if kind == KIND_PRICE:
            factor_changes = []
        elif kind == KIND_FACTOR:
            listed = []
        return {"changes": listed, "factorChanges": factor_changes}

    def applicable_changes(self, today: Optional[date] = None) -> List[Dict[str, Any]]:
        """Pending price changes whose date is today or earlier."""
        today = today or date.today()
        due = []
        for change in self.read()["scheduledChanges"]:
            if change.get("status") != STATUS_PENDING:
                continue
            scheduled = _as_date(change.get("scheduledDate"))
            if scheduled is not None and scheduled <= today:
                due.append(change)
        return due

    def product_changes_map(self, producer_slug: str, use_cache: bool = True) -> Dict[str, List[Dict[str, Any]]]:
        """Pending change items keyed ``category__product`` (or ``product``)."""
        result: Dict[str, List[Dict[str, Any]]] = {}
        for change in self.read(use_cache=use_cache)["scheduledChanges"]:
            if change.get("status") != STATUS_PENDING or change.get("producerSlug") != producer_slug:
                continue
            for item in change.get("changes") or []:
                key = f"{item['category']}__{item['product']}" if item.get("category") else item.get("product")
                result.setdefault(key, []).append(
                    {
                        "scheduledDate": change.get("scheduledDate"),
                        "percentChange": item.get("percentChange"),
                        "oldPrice": item.get("oldPrice"),
                        "newPrice": item.get("newPrice"),
                        "priceGroup": item.get("priceGroup"),
                        "dimension": item.get("dimension"),
                    }
                )
        return result

    def banner_data(
        self,
        producer_slug: Optional[str] = None,
        today: Optional[date] = None,
        use_cache: bool = True,
    ) -> List[Dict[str, Any]]:
        """Pending changes dated today or later, with days until each."""
        today = today or date.today()
        banners = []
        for change in self.read(use_cache=use_cache)["scheduledChanges"]:
            if change.get("status") != STATUS_PENDING:
                continue
            if producer_slug and change.get("producerSlug") != producer_slug:
                continue
            scheduled = _as_date(change.get("scheduledDate"))
            if scheduled is None or scheduled < today:
                continue
            summary = summarize_changes(change["changes"]) if change.get("changes") else change.get("summary") or {}
            banners.append(
                {
                    "id": change.get("id"),
                    "producerSlug": change.get("producerSlug"),
                    "producerName": change.get("producerName"),
                    "scheduledDate": change.get("scheduledDate"),
                    "daysUntil": (scheduled - today).days,
                    "summary": summary,
                }
            )
        banners.sort(key=lambda b: b["scheduledDate"])
        return banners

    def producers_with_pending(self, use_cache: bool = True) -> List[str]:
        document = self.read(use_cache=use_cache)
        slugs = {
            c.get("producerSlug")
            for c in document["scheduledChanges"] + document["scheduledFactorChanges"]
            if c.get("status") == STATUS_PENDING
        }
        return sorted(s for s in slugs if s)

    # ----- creation -----

    def create_price_change(
        self,
        producer_slug: str,
        producer_name: Optional[str],
        scheduled_date: str,
        changes: List[Dict[str, Any]],
        summary: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        if not producer_slug or not scheduled_date:
            raise ValidationError("Missing required fields (producerSlug, scheduledDate)")
        if not isinstance(changes, list) or not changes:
            raise ValidationError("No price changes to schedule")

        try:
            items = [ChangeItem.from_dict(c) for c in changes]
        except (TypeError, ValueError, AttributeError) as e:
            raise ValidationError(f"Malformed change item: {e}")
        item_dicts = [i.to_dict() for i in items]

        change = ScheduledChange(
            id=generate_change_id(),
            producer_slug=producer_slug,
            producer_name=producer_name or producer_slug,
            scheduled_date=scheduled_date,
            created_at=datetime.now().isoformat(),
            changes=items,
            summary=summary or summarize_changes(item_dicts),
        ).to_dict()

        document = self.read()
        document["scheduledChanges"].append(change)
        self.write(document)
        log_event(
            "scheduled_change_created",
            {"id": change["id"], "producer": producer_slug, "date": scheduled_date, "items": len(items)},
        )
        return change

    def create_factor_change(
        self,
        producer_slug: str,
        producer_name: Optional[str],
        scheduled_date: str,
        old_factor: Any,
        new_factor: Any,
    ) -> Tuple[Dict[str, Any], bool]:
        """Schedule a factor change; returns (entry, replaced_existing).

        A producer has at most one pending factor change; a new request
        overwrites it.
        """
        if not producer_slug or not scheduled_date or old_factor is None or new_factor is None:
            raise ValidationError("Missing required fields (producerSlug, scheduledDate, oldFactor, newFactor)")
        try:
            old_factor, new_factor = float(old_factor), float(new_factor)
        except (TypeError, ValueError):
            raise ValidationError("oldFactor and newFactor must be numbers")
        if old_factor == 0:
            raise ValidationError("oldFactor must not be zero")
        change_percent = round_price((new_factor - old_factor) / old_factor * 1000) / 10

        document = self.read()
        for entry in document["scheduledFactorChanges"]:
            if entry.get("producerSlug") == producer_slug and entry.get("status") == STATUS_PENDING:
                entry.update(
                    {
                        "scheduledDate": scheduled_date,
                        "oldFactor": old_factor,
                        "newFactor": new_factor,
                        "percentChange": change_percent,
                    }
                )
                self.write(document)
                log_event("factor_change_rescheduled", {"id": entry["id"], "producer": producer_slug})
                return entry, True

        entry = ScheduledFactorChange(
            id=generate_change_id(),
            producer_slug=producer_slug,
            producer_name=producer_name or producer_slug,
            scheduled_date=scheduled_date,
            created_at=datetime.now().isoformat(),
            old_factor=old_factor,
            new_factor=new_factor,
            percent_change=change_percent,
        ).to_dict()
        document["scheduledFactorChanges"].append(entry)
        self.write(document)
        log_event("factor_change_created", {"id": entry["id"], "producer": producer_slug, "date": scheduled_date})
        return entry, False

    # ----- transitions -----

    def reschedule(self, change_id: str, scheduled_date: str, kind: str = KIND_PRICE) -> Dict[str, Any]:
        document = self.read()
        entry = self._find(document, change_id, kind)
        self._require_pending(entry)
        entry["scheduledDate"] = scheduled_date
        self.write(document)
        log_event("scheduled_change_rescheduled", {"id": change_id, "date": scheduled_date})
        return entry

    def cancel(self, change_id: str, kind: str = KIND_PRICE) -> Dict[str, Any]:
        document = self.read()
        entry = self._find(document, change_id, kind)
        self._require_pending(entry)
        entry["status"] = STATUS_CANCELLED
        self.write(document)
        log_event("scheduled_change_cancelled", {"id": change_id, "kind": kind})
        return entry

    def delete(self, change_id: str, kind: str = KIND_PRICE) -> str:
        """Remove an entry entirely; returns its producer slug."""
        document = self.read()
        entry = self._find(document, change_id, kind)
        document[self._collection(kind)].remove(entry)
        self.write(document)
        log_event("scheduled_change_deleted", {"id": change_id, "kind": kind})
        return entry.get("producerSlug", "")

    def apply(self, change_id: str, kind: str = KIND_PRICE) -> Dict[str, Any]:
        document = self.read()
        entry = self._find(document, change_id, kind)
        self._require_pending(entry)
        if kind == KIND_FACTOR:
            self._write_factor(entry)
        else:
            self._write_prices(entry)
        entry["status"] = STATUS_APPLIED
        self.write(document)
        log_event("scheduled_change_applied", {"id": change_id, "kind": kind, "producer": entry.get("producerSlug")})
        return entry

    def _data_path(self, producer_slug: str) -> Path:
        producer = self.catalog_store.get_producer(producer_slug)
        data_file = (producer or {}).get("dataFile") or f"{producer_slug}.json"
        path = self.catalog_store.data_dir / data_file
        if not path.exists():
            raise NotFoundError(f"Data file not found for {producer_slug}")
        return path

    def _write_prices(self, entry: Dict[str, Any]) -> None:
        path = self._data_path(entry.get("producerSlug", ""))
        if entry.get("changes"):
            new_data = apply_changes_to_data(read_json(path), entry["changes"])
        elif entry.get("updatedData"):
            # entries written before only the item list was stored
            new_data = entry["updatedData"]
        else:
            raise ValidationError("Nothing to apply (no changes or updatedData)")
        write_json(path, new_data)

    def _write_factor(self, entry: Dict[str, Any]) -> None:
        producers = self.catalog_store.load_producers()
        for producer in producers:
            if producer.get("slug") == entry.get("producerSlug"):
                producer["priceFactor"] = entry.get("newFactor")
                self.catalog_store.save_producers(producers)
                return
        raise NotFoundError(f"Producer not found: {entry.get('producerSlug')}")

    def apply_due(self, today: Optional[date] = None) -> Dict[str, Any]:
        """Apply every pending change dated today or earlier.

        Each entry is marked applied only after its write succeeded; a
        failing entry stays pending and is retried on the next check.
        """
        today = today or date.today()
        document = self.read()
        applied: List[str] = []
        applied_factors: List[Dict[str, Any]] = []
        errors: List[str] = []

        for kind, collection in ((KIND_PRICE, "scheduledChanges"), (KIND_FACTOR, "scheduledFactorChanges")):
            for entry in document[collection]:
                if entry.get("status") != STATUS_PENDING:
                    continue
                scheduled = _as_date(entry.get("scheduledDate"))
                if scheduled is None or scheduled > today:
                    continue
                name = entry.get("producerName") or entry.get("producerSlug")
                try:
                    if kind == KIND_FACTOR:
                        self._write_factor(entry)
                    else:
                        self._write_prices(entry)
                except Exception as e:
                    logger.error(f"Failed to apply scheduled change {entry.get('id')}: {e}")
                    errors.append(f"{name}: {e}")
                    continue
                entry["status"] = STATUS_APPLIED
                if kind == KIND_FACTOR:
                    applied.append(f"{name}: faktor {entry.get('oldFactor')} -> {entry.get('newFactor')}")
                    applied_factors.append(entry)
                else:
                    total = len(entry.get("changes") or []) or (entry.get("summary") or {}).get("totalChanges", 0)
                    applied.append(f"{name}: {total} zmian")
                log_event("scheduled_change_applied", {"id": entry.get("id"), "kind": kind, "producer": entry.get("producerSlug")})

        if applied:
            self.write(document)

        return {
            "applied": applied,
            "appliedFactorChanges": applied_factors,
            "errors": errors,
            "message": (
                f"Zastosowano {len(applied)} zaplanowanych zmian" if applied else "Brak zmian do zastosowania"
            ),
        }
