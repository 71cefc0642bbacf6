"""Cross-producer product search.

The index is every product name (and its previous name) of every
registered producer. It is rebuilt at most once per SEARCH_CACHE_TTL per
data directory, so catalog edits show up in search with that delay.
"""

import logging
import threading
import time
from typing import Dict, List, Optional, Tuple

from .config import SEARCH_CACHE_TTL, SEARCH_RESULT_LIMIT
from .models import SearchEntry
from .storage import CatalogStore, read_json
from .utils import product_anchor

__all__ = [
    "fuzzy_match",
    "match_score",
    "SearchIndex",
    "clear_search_cache",
    "NO_MATCH",
]

logger = logging.getLogger(__name__)

NO_MATCH = 999

# data dir -> (built_at, entries)
_index_cache: Dict[str, Tuple[float, List[SearchEntry]]] = {}
_index_lock = threading.Lock()


def clear_search_cache() -> None:
    with _index_lock:
        _index_cache.clear()


def fuzzy_match(text: str, query: str) -> bool:
    """True when the query's characters appear in order in the text.

    >>> fuzzy_match("Fotel Nidzica", "ftlnz")
    True
    >>> fuzzy_match("Fotel", "xyz")
    False
    """
    text, query = text.lower(), query.lower()
    position = 0
    for char in text:
        if position < len(query) and char == query[position]:
            position += 1
    return position == len(query)


def match_score(text: Optional[str], query: str) -> int:
    """0 prefix, 1 substring, 2 subsequence, NO_MATCH otherwise."""
    if not text:
        return NO_MATCH
    text, query = text.lower(), query.lower()
    if text.startswith(query):
        return 0
    if query in text:
        return 1
    if fuzzy_match(text, query):
        return 2
    return NO_MATCH


def _catalog_names(data) -> List[Tuple[str, Optional[str]]]:
    """(name, previousName) pairs of one catalog, whatever its layout."""
    names = []
    if isinstance(data.get("categories"), dict):
        for products in data["categories"].values():
            for name, product in (products or {}).items():
                names.append((name, (product or {}).get("previousName")))
    if isinstance(data.get("products"), list):
        for product in data["products"]:
            if product.get("name"):
                names.append((product["name"], product.get("previousName")))
    if isinstance(data.get("Arkusz1"), list):
        for row in data["Arkusz1"]:
            if row.get("MODEL"):
                names.append((str(row["MODEL"]), row.get("previousName")))
    return names


class SearchIndex:
    def __init__(self, catalog_store: CatalogStore, ttl: float = SEARCH_CACHE_TTL):
        self.catalog_store = catalog_store
        self.ttl = ttl

    def _build(self) -> List[SearchEntry]:
        entries: List[SearchEntry] = []
        for producer in self.catalog_store.load_producers():
            slug = producer.get("slug", "")
            display_name = producer.get("displayName", slug)
            path = self.catalog_store.data_dir / producer.get("dataFile", f"{slug}.json")
            if not path.exists():
                continue
            try:
                names = _catalog_names(read_json(path))
            except (OSError, ValueError, AttributeError, TypeError) as e:
                logger.warning(f"Skipping unreadable catalog {path.name}: {e}")
                continue

            for name, previous_name in names:
                entries.append(
                    SearchEntry(
                        name=name,
                        previous_name=previous_name,
                        producer_slug=slug,
                        producer_name=display_name,
                        product_id=product_anchor(name),
                    )
                )

        logger.debug(f"Search index built with {len(entries)} entries")
        return entries

    def entries(self) -> List[SearchEntry]:
        key = str(self.catalog_store.data_dir.resolve())
        now = time.monotonic()
        with _index_lock:
            cached = _index_cache.get(key)
            if cached and now - cached[0] < self.ttl:
                return cached[1]
        entries = self._build()
        with _index_lock:
            _index_cache[key] = (now, entries)
        return entries

    def search(self, query: str, limit: int = SEARCH_RESULT_LIMIT) -> List[SearchEntry]:
        query = (query or "").lower()
        if not query.strip():
            return []
        scored = []
        for entry in self.entries():
            score = min(match_score(entry.name, query), match_score(entry.previous_name, query))
            if score < NO_MATCH:
                scored.append((score, entry))
        scored.sort(key=lambda pair: pair[0])
        return [entry for _, entry in scored[:limit]]
