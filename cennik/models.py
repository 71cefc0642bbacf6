"""Data models shared by the stores and the API.

On disk and on the wire everything is camelCase JSON; these dataclasses
keep snake_case attributes and convert at the edges with to_dict/from_dict.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

__all__ = [
    "PriceResult",
    "SurchargeResult",
    "ChangeItem",
    "ChangeSummary",
    "ScheduledChange",
    "ScheduledFactorChange",
    "ProductOverride",
    "SearchEntry",
    "PdfExtractionResult",
    "STATUS_PENDING",
    "STATUS_APPLIED",
    "STATUS_CANCELLED",
]

STATUS_PENDING = "pending"
STATUS_APPLIED = "applied"
STATUS_CANCELLED = "cancelled"


@dataclass
class PriceResult:
    """Final price plus the pre-discount price for a strikethrough."""

    final_price: int
    has_discount: bool
    original_price: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "finalPrice": self.final_price,
            "hasDiscount": self.has_discount,
        }
        if self.original_price is not None:
            result["originalPrice"] = self.original_price
        return result


@dataclass
class SurchargeResult:
    surcharge_price: int
    original_surcharge_price: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "surchargePrice": self.surcharge_price,
            "originalSurchargePrice": self.original_surcharge_price,
        }


@dataclass
class ChangeItem:
    """One price delta inside a scheduled change.

    Identity is (category, product, priceGroup | dimension); items of the
    products-with-elements layout carry no category and encode the element
    in priceGroup as "<element> (<group>)".
    """

    id: str
    product: str
    old_price: float
    new_price: float
    percent_change: float
    category: Optional[str] = None
    element: Optional[str] = None
    dimension: Optional[str] = None
    price_group: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChangeItem":
        return cls(
            id=str(data.get("id") or ""),
            product=str(data.get("product") or ""),
            old_price=_to_number(data.get("oldPrice")),
            new_price=_to_number(data.get("newPrice")),
            percent_change=_to_number(data.get("percentChange")),
            category=data.get("category"),
            element=data.get("element"),
            dimension=data.get("dimension"),
            price_group=data.get("priceGroup"),
        )

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "id": self.id,
            "product": self.product,
            "oldPrice": self.old_price,
            "newPrice": self.new_price,
            "percentChange": self.percent_change,
        }
        for key, value in (
            ("category", self.category),
            ("element", self.element),
            ("dimension", self.dimension),
            ("priceGroup", self.price_group),
        ):
            if value is not None:
                result[key] = value
        return result


@dataclass
class ChangeSummary:
    total_changes: int = 0
    price_increase: int = 0
    price_decrease: int = 0
    avg_change_percent: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalChanges": self.total_changes,
            "priceIncrease": self.price_increase,
            "priceDecrease": self.price_decrease,
            "avgChangePercent": self.avg_change_percent,
        }


@dataclass
class ScheduledChange:
    id: str
    producer_slug: str
    producer_name: str
    scheduled_date: str
    created_at: str
    changes: List[ChangeItem] = field(default_factory=list)
    summary: Dict[str, Any] = field(default_factory=dict)
    status: str = STATUS_PENDING

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScheduledChange":
        return cls(
            id=data["id"],
            producer_slug=data.get("producerSlug", ""),
            producer_name=data.get("producerName") or data.get("producerSlug", ""),
            scheduled_date=data.get("scheduledDate", ""),
            created_at=data.get("createdAt", ""),
            changes=[ChangeItem.from_dict(c) for c in data.get("changes") or []],
            summary=dict(data.get("summary") or {}),
            status=data.get("status", STATUS_PENDING),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "producerSlug": self.producer_slug,
            "producerName": self.producer_name,
            "scheduledDate": self.scheduled_date,
            "createdAt": self.created_at,
            "changes": [c.to_dict() for c in self.changes],
            "summary": self.summary,
            "status": self.status,
        }


@dataclass
class ScheduledFactorChange:
    id: str
    producer_slug: str
    producer_name: str
    scheduled_date: str
    created_at: str
    old_factor: float
    new_factor: float
    percent_change: float
    status: str = STATUS_PENDING

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScheduledFactorChange":
        return cls(
            id=data["id"],
            producer_slug=data.get("producerSlug", ""),
            producer_name=data.get("producerName") or data.get("producerSlug", ""),
            scheduled_date=data.get("scheduledDate", ""),
            created_at=data.get("createdAt", ""),
            old_factor=_to_number(data.get("oldFactor")),
            new_factor=_to_number(data.get("newFactor")),
            percent_change=_to_number(data.get("percentChange")),
            status=data.get("status", STATUS_PENDING),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "producerSlug": self.producer_slug,
            "producerName": self.producer_name,
            "scheduledDate": self.scheduled_date,
            "createdAt": self.created_at,
            "oldFactor": self.old_factor,
            "newFactor": self.new_factor,
            "percentChange": self.percent_change,
            "status": self.status,
        }


@dataclass
class ProductOverride:
    """Manual correction layered on top of catalog data at render time."""

    id: str
    manufacturer: str
    category: str
    product_name: str
    custom_name: Optional[str] = None
    price_factor: float = 1.0
    discount: Optional[float] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "manufacturer": self.manufacturer,
            "category": self.category,
            "productName": self.product_name,
            "customName": self.custom_name,
            "priceFactor": self.price_factor,
            "discount": self.discount,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class SearchEntry:
    name: str
    producer_slug: str
    producer_name: str
    product_id: str
    previous_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "name": self.name,
            "producerSlug": self.producer_slug,
            "producerName": self.producer_name,
            "productId": self.product_id,
        }
        if self.previous_name:
            result["previousName"] = self.previous_name
        return result


@dataclass
class PdfExtractionResult:
    raw_text: str
    ocr_used: bool
    tables: List[List[List[str]]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"rawText": self.raw_text, "ocrUsed": self.ocr_used}
        if self.tables:
            result["tables"] = self.tables
        return result


def _to_number(value: Any) -> float:
    """Coerce JSON numbers or numeric strings; ints stay ints."""
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    text = str(value).replace(" ", "").replace(",", ".")
    number = float(text)
    return int(number) if number.is_integer() else number
