"""Price computation.

Pure functions combining a manufacturer factor, a product factor and an
override factor (the largest multiplier wins) with a discount (override
first, then product, then zero). Rounding is half-up, the way the price
lists have always been rounded, not Python's banker's rounding.
"""

import math
from datetime import date
from typing import Any, Dict, List, Optional, Tuple

from .models import PriceResult, SurchargeResult

__all__ = [
    "round_price",
    "get_effective_factor",
    "get_effective_discount",
    "calculate_price",
    "calculate_surcharge",
    "calculate_product_price",
    "percent_change",
    "is_promotion_active",
    "price_catalog",
    "price_products",
    "price_table",
]


def round_price(value: float) -> int:
    """Round half up (2.5 -> 3, -2.5 -> -2)."""
    return int(math.floor(value + 0.5))


def get_effective_factor(
    global_factor: Optional[float] = 1,
    product_factor: Optional[float] = 1,
    override_factor: Optional[float] = 1,
) -> float:
    """Largest multiplier wins; factors are not composed."""
    return max(
        1 if global_factor is None else global_factor,
        1 if product_factor is None else product_factor,
        1 if override_factor is None else override_factor,
    )


def get_effective_discount(
    global_discount: Optional[float] = 0,
    product_discount: Optional[float] = 0,
    override_discount: Optional[float] = None,
) -> float:
    """First defined of override, product, global; never summed."""
    for value in (override_discount, product_discount, global_discount):
        if value is not None:
            return value
    return 0


def calculate_price(base: float, factor: float = 1, discount: float = 0) -> PriceResult:
    """Apply factor, round, then take the discount percentage off.

    >>> calculate_price(100, 1.2, 10).to_dict()
    {'finalPrice': 108, 'hasDiscount': True, 'originalPrice': 120}
    """
    with_factor = round_price(base * factor)
    if discount and discount > 0:
        return PriceResult(
            final_price=round_price(with_factor * (1 - discount / 100)),
            has_discount=True,
            original_price=with_factor,
        )
    return PriceResult(final_price=with_factor, has_discount=False)


def calculate_surcharge(
    final_price: float,
    original_price: Optional[float],
    percent: float,
    has_discount: bool,
) -> SurchargeResult:
    """Add-on price over an already computed (and possibly discounted) price.

    The original surcharge is only reported while a discount is active so
    the promotional and regular views reconcile.
    """
    multiplier = 1 + percent / 100
    original = None
    if has_discount and original_price:
        original = round_price(original_price * multiplier)
    return SurchargeResult(
        surcharge_price=round_price(final_price * multiplier),
        original_surcharge_price=original,
    )


def calculate_product_price(
    base_price: float,
    global_factor: Optional[float] = 1,
    product_factor: Optional[float] = 1,
    override_factor: Optional[float] = 1,
    product_discount: Optional[float] = 0,
    override_discount: Optional[float] = None,
    custom_price: Optional[float] = None,
) -> PriceResult:
    """Full price of one product.

    An absolute custom price replaces the factor computation entirely;
    only the discount is applied on top of it.
    """
    discount = get_effective_discount(0, product_discount, override_discount)

    if custom_price and custom_price > 0:
        if discount > 0:
            return PriceResult(
                final_price=round_price(custom_price * (1 - discount / 100)),
                has_discount=True,
                original_price=round_price(custom_price),
            )
        return PriceResult(final_price=round_price(custom_price), has_discount=False)

    factor = get_effective_factor(global_factor, product_factor, override_factor)
    return calculate_price(base_price, factor, discount)


def percent_change(old_value: float, new_value: float) -> float:
    """Percentage delta rounded to one decimal."""
    if old_value == 0:
        return 100 if new_value > 0 else 0
    return round_price((new_value - old_value) / old_value * 1000) / 10


def is_promotion_active(promotion: Optional[Dict[str, Any]], today: Optional[date] = None) -> bool:
    """A promotion shows when not disabled and today is inside from/to."""
    if not promotion or not promotion.get("text"):
        return False
    if promotion.get("enabled") is False:
        return False
    today_iso = (today or date.today()).isoformat()
    start = promotion.get("from")
    end = promotion.get("to")
    if start and today_iso < start[:10]:
        return False
    if end and today_iso > end[:10]:
        return False
    return True


def _to_price(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        cleaned = value.replace(" ", "").replace("zł", "").replace(",", ".")
        try:
            return float(cleaned)
        except ValueError:
            return None
    return None


def _priced(base: Any, factors: Tuple[float, float, float], discounts: Tuple[float, Optional[float]]) -> Optional[Dict[str, Any]]:
    price = _to_price(base)
    if price is None:
        return None
    result = calculate_product_price(
        price,
        global_factor=factors[0],
        product_factor=factors[1],
        override_factor=factors[2],
        product_discount=discounts[0],
        override_discount=discounts[1],
    )
    return result.to_dict()


def price_catalog(
    producer: Dict[str, Any],
    data: Dict[str, Any],
    overrides: Optional[Dict[Tuple[str, str], Any]] = None,
    surcharges: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Decorate a categories-layout catalog with computed prices.

    Returns {category: [{key, name, data, prices, sizes, surcharges}]}
    where ``name`` already reflects an override's custom name.
    """
    overrides = overrides or {}
    global_factor = producer.get("priceFactor") or 1
    rendered: Dict[str, Any] = {}

    for category, products in (data.get("categories") or {}).items():
        items = []
        for product_name, product in (products or {}).items():
            product = product or {}
            override = overrides.get((category, product_name))
            override_factor = getattr(override, "price_factor", None) or 1
            override_discount = getattr(override, "discount", None)
            factors = (global_factor, product.get("priceFactor") or 1, override_factor)
            discounts = (product.get("discount") or 0, override_discount)

            prices = {}
            for group, base in (product.get("prices") or {}).items():
                priced = _priced(base, factors, discounts)
                if priced is not None:
                    prices[group] = priced

            sizes = []
            for size in product.get("sizes") or []:
                base = size.get("prices")
                if isinstance(base, dict):
                    groups = {g: _priced(v, factors, discounts) for g, v in base.items()}
                    sizes.append({"dimension": size.get("dimension"), "groups": groups})
                else:
                    sizes.append({"dimension": size.get("dimension"), "price": _priced(base, factors, discounts)})

            product_surcharges = []
            for surcharge in (surcharges or {}).get(category) or product.get("surcharges") or []:
                percent = _to_price(surcharge.get("percent"))
                if percent is None:
                    continue
                first = next(iter(prices.values()), None)
                if first is None:
                    continue
                result = calculate_surcharge(
                    first["finalPrice"], first.get("originalPrice"), percent, first["hasDiscount"]
                )
                product_surcharges.append({"label": surcharge.get("label", ""), **result.to_dict()})

            items.append(
                {
                    "key": product_name,
                    "name": getattr(override, "custom_name", None) or product_name,
                    "data": product,
                    "prices": prices,
                    "sizes": sizes,
                    "surcharges": product_surcharges,
                }
            )
        rendered[category] = items

    return rendered


def _element_list(elements: Any) -> List[Tuple[str, Dict[str, Any]]]:
    if isinstance(elements, dict):
        return [(str(key), value or {}) for key, value in elements.items()]
    if isinstance(elements, list):
        return [(str(e.get("code") or e.get("name") or i), e) for i, e in enumerate(elements) if isinstance(e, dict)]
    return []


def price_products(producer: Dict[str, Any], data: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Decorate a products-layout catalog (products with priced elements).

    Elements are either a list or a mapping keyed by element code; each has
    ``prices`` per group or a single ``price``.
    """
    global_factor = producer.get("priceFactor") or 1
    rendered = []
    for product in data.get("products") or []:
        factors = (global_factor, product.get("priceFactor") or 1, 1)
        discounts = (product.get("discount") or 0, None)
        groups: List[str] = []
        elements = []
        for key, element in _element_list(product.get("elements")):
            if isinstance(element.get("prices"), dict):
                prices = {g: _priced(v, factors, discounts) for g, v in element["prices"].items()}
                groups.extend(g for g in prices if g not in groups)
                elements.append({"key": key, "data": element, "prices": prices})
            else:
                elements.append({"key": key, "data": element, "price": _priced(element.get("price"), factors, discounts)})
        rendered.append({"name": product.get("name", ""), "data": product, "groups": groups, "elements": elements})
    return rendered


def price_table(producer: Dict[str, Any], data: Dict[str, Any], groups: List[str]) -> List[Dict[str, Any]]:
    """Decorate a flat table catalog: one row per MODEL, one price per group."""
    global_factor = producer.get("priceFactor") or 1
    rows = []
    for row in data.get("Arkusz1") or []:
        if not isinstance(row, dict) or not isinstance(row.get("MODEL"), str):
            continue
        factors = (global_factor, row.get("priceFactor") or 1, 1)
        discounts = (row.get("discount") or 0, None)
        rows.append(
            {
                "model": row["MODEL"],
                "data": row,
                "prices": {g: _priced(row.get(g), factors, discounts) for g in groups},
            }
        )
    return rows
