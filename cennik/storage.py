"""JSON file store for the producer registry and per-manufacturer catalogs.

Every write rewrites the whole file. There is no locking: two requests
writing the same catalog interleave and the last writer wins.
"""

import copy
import json
import logging
import re
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from .config import (
    CREDENTIALS_FILE,
    PRODUCERS_FILE,
    SCHEDULED_CHANGES_FILE,
    TABLE_PRICE_GROUPS,
)
from .errors import ConfigurationError, NotFoundError, ValidationError
from .logging_config import log_event
from .pricing import percent_change

__all__ = [
    "CatalogStore",
    "DEFAULT_PRODUCERS",
    "LAYOUT_CATEGORIES",
    "LAYOUT_PRODUCTS",
    "LAYOUT_TABLE",
    "empty_data_for_layout",
    "read_json",
    "write_json",
]

logger = logging.getLogger(__name__)

LAYOUT_CATEGORIES = "bomar"
LAYOUT_PRODUCTS = "mpnidzica"
LAYOUT_TABLE = "puszman"

_RESERVED_FILES = {PRODUCERS_FILE, SCHEDULED_CHANGES_FILE, CREDENTIALS_FILE}

DEFAULT_PRODUCERS: List[Dict[str, Any]] = [
    {
        "slug": "bomar",
        "displayName": "Bomar",
        "dataFile": "Bomar.json",
        "layoutType": LAYOUT_CATEGORIES,
        "title": "Cennik Bomar",
        "color": "#7a4b18",
    },
    {
        "slug": "mp-nidzica",
        "displayName": "MP Nidzica",
        "dataFile": "mp.json",
        "layoutType": LAYOUT_PRODUCTS,
        "title": "Cennik MP Nidzica",
        "color": "#7a1822",
    },
    {
        "slug": "puszman",
        "displayName": "Puszman",
        "dataFile": "puszman.json",
        "layoutType": LAYOUT_TABLE,
        "title": "Cennik Puszman",
        "color": "#7a3318",
        "priceGroups": list(TABLE_PRICE_GROUPS),
    },
]


def read_json(path: Union[Path, str]) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def write_json(path: Union[Path, str], data: Any, indent: int = 2) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, ensure_ascii=False, indent=indent)


def empty_data_for_layout(layout_type: str) -> Dict[str, Any]:
    """Skeleton catalog written when a producer is added."""
    if layout_type == LAYOUT_PRODUCTS:
        return {
            "meta_data": {
                "company": "",
                "valid_from": "",
                "contact_orders": "",
                "contact_claims": "",
            },
            "products": [],
        }
    if layout_type == LAYOUT_TABLE:
        return {"Arkusz1": []}
    return {"title": "Nowy cennik", "categories": {}}


def _normalize_name(name: str) -> str:
    return re.sub(r"[^a-z0-9]", "", name.lower())


def _capitalize(name: str) -> str:
    return name[:1].upper() + name[1:]


class CatalogStore:
    """Registry and catalog files inside one data directory."""

    def __init__(self, data_dir: Union[Path, str]):
        self.data_dir = Path(data_dir)

    @property
    def producers_path(self) -> Path:
        return self.data_dir / PRODUCERS_FILE

    # ---------- producers registry ----------

    def load_producers(self) -> List[Dict[str, Any]]:
        """Read producers.json, seeding it with the defaults when missing."""
        if not self.producers_path.exists():
            write_json(self.producers_path, DEFAULT_PRODUCERS)
            return copy.deepcopy(DEFAULT_PRODUCERS)
        producers = read_json(self.producers_path)
        return producers if isinstance(producers, list) else []

    def save_producers(self, producers: List[Dict[str, Any]]) -> None:
        write_json(self.producers_path, producers)

    def get_producer(self, slug: str) -> Optional[Dict[str, Any]]:
        for producer in self.load_producers():
            if producer.get("slug") == slug:
                return producer
        return None

    def require_producer(self, slug: str) -> Dict[str, Any]:
        producer = self.get_producer(slug)
        if producer is None:
            raise NotFoundError(f"Producer not found: {slug}")
        return producer

    def add_producer(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        slug = fields.get("slug")
        display_name = fields.get("displayName")
        layout_type = fields.get("layoutType")
        if not slug or not display_name or not layout_type:
            raise ValidationError("Missing required fields: slug, displayName, layoutType")

        producers = self.load_producers()
        if any(p.get("slug") == slug for p in producers):
            raise ValidationError(f"Producer with slug '{slug}' already exists")

        data_file = f"{slug}.json"
        write_json(self.data_dir / data_file, empty_data_for_layout(layout_type))

        producer = {
            "slug": slug,
            "displayName": display_name,
            "dataFile": data_file,
            "layoutType": layout_type,
            "title": fields.get("title") or f"Cennik {display_name}",
            "color": fields.get("color") or "#6b7280",
        }
        for optional in ("priceFactor", "promotion", "fabrics", "priceGroups"):
            if fields.get(optional) is not None:
                producer[optional] = fields[optional]

        producers.append(producer)
        self.save_producers(producers)
        log_event("producer_added", {"slug": slug, "layoutType": layout_type})
        return producer

    def update_producer(self, slug: str, updates: Dict[str, Any]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        """Merge updates into one record; slug and dataFile never change."""
        producers = self.load_producers()
        for index, producer in enumerate(producers):
            if producer.get("slug") == slug:
                old = dict(producer)
                new = {**producer, **updates, "slug": producer["slug"], "dataFile": producer.get("dataFile")}
                producers[index] = new
                self.save_producers(producers)
                return old, new
        raise NotFoundError(f"Producer not found: {slug}")

    def delete_producer(self, slug: str) -> None:
        """Remove the registry record; the catalog file stays on disk."""
        producers = self.load_producers()
        remaining = [p for p in producers if p.get("slug") != slug]
        if len(remaining) == len(producers):
            raise NotFoundError(f"Producer not found: {slug}")
        self.save_producers(remaining)
        log_event("producer_deleted", {"slug": slug})

    def bulk_update_producers(
        self,
        producers: List[Dict[str, Any]],
        today: Optional[date] = None,
    ) -> List[Dict[str, Any]]:
        """Replace the registry wholesale.

        Expired promotions are saved disabled. Returns the factor changes
        between the old and the new registry for notification.
        """
        if not isinstance(producers, list):
            raise ValidationError("Expected array of producers")

        try:
            old_producers = self.load_producers() if self.producers_path.exists() else []
        except (OSError, ValueError):
            old_producers = []

        today_iso = (today or date.today()).isoformat()
        updated = []
        for producer in producers:
            promotion = producer.get("promotion")
            if promotion and promotion.get("enabled") and promotion.get("to") and promotion["to"] < today_iso:
                producer = {**producer, "promotion": {**promotion, "enabled": False}}
            updated.append(producer)

        self.save_producers(updated)

        old_by_slug = {p.get("slug"): p for p in old_producers}
        factor_changes = []
        for producer in updated:
            old = old_by_slug.get(producer.get("slug"))
            if not old:
                continue
            old_factor = old.get("priceFactor")
            new_factor = producer.get("priceFactor")
            if old_factor is None or new_factor is None or old_factor == new_factor:
                continue
            factor_changes.append(
                {
                    "producer": producer,
                    "oldFactor": old_factor,
                    "newFactor": new_factor,
                    "percentChange": percent_change(old_factor, new_factor) if old_factor > 0 else 0,
                }
            )
        log_event("producers_bulk_updated", {"count": len(updated), "factorChanges": len(factor_changes)})
        return factor_changes

    # ---------- catalog files ----------

    def list_manufacturers(self) -> List[str]:
        if not self.data_dir.exists():
            return []
        return sorted(
            path.stem
            for path in self.data_dir.glob("*.json")
            if path.name not in _RESERVED_FILES
        )

    def resolve_data_file(self, manufacturer: str) -> Path:
        """Find the catalog file for a slug or manufacturer name."""
        if not manufacturer:
            raise ValidationError("Manufacturer is required")

        for producer in self.load_producers():
            if str(producer.get("slug", "")).lower() == manufacturer.lower() and producer.get("dataFile"):
                path = self.data_dir / producer["dataFile"]
                if path.exists():
                    return path

        capitalized = self.data_dir / f"{_capitalize(manufacturer)}.json"
        if capitalized.exists():
            return capitalized

        wanted = _normalize_name(manufacturer)
        for name in self.list_manufacturers():
            if _normalize_name(name) == wanted:
                return self.data_dir / f"{name}.json"

        raise NotFoundError(f"Catalog not found: {manufacturer}")

    def load_catalog(self, manufacturer: str) -> Dict[str, Any]:
        return read_json(self.resolve_data_file(manufacturer))

    def save_catalog(self, manufacturer: str, data: Dict[str, Any]) -> Path:
        path = self.resolve_data_file(manufacturer)
        write_json(path, data)
        log_event("catalog_saved", {"file": path.name})
        return path

    def load_credentials(self) -> List[Dict[str, Any]]:
        """Users from credentials.json; a single object counts as one user."""
        path = self.data_dir / CREDENTIALS_FILE
        if not path.exists():
            raise ConfigurationError("Credentials file not found")
        credentials = read_json(path)
        if isinstance(credentials, dict):
            return [credentials]
        return credentials if isinstance(credentials, list) else []

    def load_producer_data(self, producer: Dict[str, Any]) -> Dict[str, Any]:
        path = self.data_dir / producer.get("dataFile", f"{producer.get('slug')}.json")
        if not path.exists():
            raise NotFoundError(f"Data file does not exist: {path.name}")
        return read_json(path)

    def save_producer_data(self, producer: Dict[str, Any], data: Dict[str, Any]) -> Dict[str, Any]:
        """Write the whole catalog; returns the previous content (or {})."""
        path = self.data_dir / producer.get("dataFile", f"{producer.get('slug')}.json")
        old_data: Dict[str, Any] = {}
        if path.exists():
            old_data = read_json(path)
        write_json(path, data)
        log_event("catalog_saved", {"slug": producer.get("slug"), "file": path.name})
        return old_data

    def approve_catalog(self, manufacturer: str, data: Dict[str, Any]) -> str:
        """Save an accepted import as <Manufacturer>.json."""
        if not manufacturer or not data:
            raise ValidationError("manufacturer and data are required")
        file_name = f"{manufacturer[:1].upper()}{manufacturer[1:].lower()}.json"
        write_json(self.data_dir / file_name, data)
        log_event("catalog_approved", {"file": file_name})
        return f"data/{file_name}"

    def patch_producer_data(self, slug: str, action: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        producer = self.require_producer(slug)
        data = self.load_producer_data(producer)
        apply_catalog_action(producer.get("layoutType", LAYOUT_CATEGORIES), data, action, payload)
        self.save_producer_data(producer, data)
        return data

    def update_product(
        self,
        manufacturer: str,
        category: str,
        product_name: str,
        updates: Dict[str, Any],
    ) -> str:
        """Edit one product of a categories-layout catalog in place.

        customName renames the product: the old key is removed and the new
        key inserted with identical nested data.
        """
        if not manufacturer or not category or not product_name:
            raise ValidationError("manufacturer, category and productName are required")

        path = self.resolve_data_file(manufacturer)
        data = read_json(path)
        categories = data.get("categories") or {}
        if category not in categories:
            raise NotFoundError(f"Category not found: {category}")
        if product_name not in categories[category]:
            raise NotFoundError(f"Product not found: {product_name}")

        product = categories[category][product_name]
        updates = updates or {}

        if updates.get("customImage") is not None:
            product["image"] = updates["customImage"]

        if updates.get("customPreviousName") is not None:
            product["previousName"] = updates["customPreviousName"]

        custom_price = updates.get("customPrice")
        if custom_price is not None:
            if isinstance(product.get("prices"), dict):
                for group in product["prices"]:
                    product["prices"][group] = custom_price
            elif isinstance(product.get("sizes"), list):
                for size in product["sizes"]:
                    size["prices"] = custom_price

        custom_name = updates.get("customName")
        if custom_name and custom_name != product_name:
            del categories[category][product_name]
            categories[category][custom_name] = product

        write_json(path, data)
        log_event(
            "product_updated",
            {"file": path.name, "category": category, "product": product_name, "fields": sorted(updates)},
        )
        return f"data/{path.name}"


# ---------- partial edit actions ----------


def apply_catalog_action(layout_type: str, data: Dict[str, Any], action: str, payload: Dict[str, Any]) -> None:
    """Apply one admin editor action to a catalog document in place."""
    try:
        if layout_type == LAYOUT_PRODUCTS:
            _products_action(data, action, payload)
        elif layout_type == LAYOUT_TABLE:
            _table_action(data, action, payload)
        else:
            _categories_action(data, action, payload)
    except KeyError as e:
        raise ValidationError(f"Missing field for {action}: {e.args[0]}")


def _categories_action(data: Dict[str, Any], action: str, payload: Dict[str, Any]) -> None:
    categories = data.setdefault("categories", {})

    if action == "addCategory":
        categories.setdefault(payload["categoryName"], {})
    elif action == "deleteCategory":
        categories.pop(payload["categoryName"], None)
    elif action == "renameCategory":
        old_name, new_name = payload["oldName"], payload["newName"]
        if old_name in categories:
            categories[new_name] = categories.pop(old_name)
    elif action == "addProduct":
        category = categories.setdefault(payload["categoryName"], {})
        category[payload["productName"]] = payload.get("productData") or {
            "image": None,
            "material": "",
            "prices": {},
            "options": [],
            "description": [],
        }
    elif action == "updateProduct":
        if payload["categoryName"] in categories:
            categories[payload["categoryName"]][payload["productName"]] = payload["productData"]
    elif action == "deleteProduct":
        if payload["categoryName"] in categories:
            categories[payload["categoryName"]].pop(payload["productName"], None)
    elif action == "renameProduct":
        category = categories.get(payload["categoryName"])
        if category and payload["oldName"] in category:
            category[payload["newName"]] = category.pop(payload["oldName"])
    elif action == "updateTitle":
        data["title"] = payload.get("title")
    else:
        raise ValidationError(f"Unknown action: {action}")


def _in_range(items: List[Any], index: Any) -> bool:
    return isinstance(index, int) and 0 <= index < len(items)


def _products_action(data: Dict[str, Any], action: str, payload: Dict[str, Any]) -> None:
    products = data.setdefault("products", [])
    data.setdefault("meta_data", {})

    if action == "updateMeta":
        data["meta_data"] = {**data["meta_data"], **(payload.get("meta") or {})}
    elif action == "addProduct":
        product = payload.get("product") or {}
        products.append(
            {
                "name": product.get("name") or "Nowy produkt",
                "image": product.get("image"),
                "technicalImage": product.get("technicalImage"),
                "elements": product.get("elements") or [],
            }
        )
    elif action == "updateProduct":
        if _in_range(products, payload.get("index")):
            products[payload["index"]] = payload["product"]
    elif action == "deleteProduct":
        if _in_range(products, payload.get("index")):
            del products[payload["index"]]
    elif action in ("addElement", "updateElement", "deleteElement"):
        if not _in_range(products, payload.get("productIndex")):
            return
        product = products[payload["productIndex"]]
        if action == "addElement":
            if not isinstance(product.get("elements"), list):
                product["elements"] = []
            product["elements"].append(payload["element"])
            return
        elements = product.get("elements")
        if not isinstance(elements, list) or not _in_range(elements, payload.get("elementIndex")):
            return
        if action == "updateElement":
            elements[payload["elementIndex"]] = payload["element"]
        else:
            del elements[payload["elementIndex"]]
    else:
        raise ValidationError(f"Unknown action: {action}")


def _table_action(data: Dict[str, Any], action: str, payload: Dict[str, Any]) -> None:
    rows = data.setdefault("Arkusz1", [])

    if action == "addProduct":
        product = payload.get("product") or {}
        row: Dict[str, Any] = {"MODEL": product.get("MODEL") or "Nowy model"}
        for group in TABLE_PRICE_GROUPS:
            row[group] = product.get(group) or 0
        row["KOLOR NOGI"] = product.get("KOLOR NOGI") or ""
        rows.append(row)
    elif action == "updateProduct":
        if _in_range(rows, payload.get("index")):
            rows[payload["index"]] = payload["product"]
    elif action == "deleteProduct":
        if _in_range(rows, payload.get("index")):
            del rows[payload["index"]]
    else:
        raise ValidationError(f"Unknown action: {action}")
