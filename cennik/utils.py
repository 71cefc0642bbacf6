"""Small text helpers shared by search, pages and uploads."""

import re
import unicodedata

__all__ = ["fold_diacritics", "normalize_to_id", "product_anchor"]

_POLISH = str.maketrans({"ł": "l", "Ł": "L"})


def fold_diacritics(text: str) -> str:
    """Strip accents; ł has no decomposition so it is mapped by hand.

    >>> fold_diacritics("Łóżko Żółć")
    'Lozko Zolc'
    """
    decomposed = unicodedata.normalize("NFD", (text or "").translate(_POLISH))
    return "".join(c for c in decomposed if not unicodedata.combining(c))


def normalize_to_id(name: str) -> str:
    folded = fold_diacritics(name).lower()
    return re.sub(r"[^a-z0-9]+", "-", folded).strip("-")


def product_anchor(name: str) -> str:
    """HTML id a product card renders with; search results link to it."""
    return f"product-{normalize_to_id(name)}"
