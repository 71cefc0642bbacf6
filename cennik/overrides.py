"""SQLite store for per-product overrides (custom name, factor, discount)."""

import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Generator, List, Optional, Tuple, Union

from .config import DB_PATH
from .errors import NotFoundError, ValidationError
from .logging_config import log_event
from .models import ProductOverride

__all__ = [
    "get_connection",
    "init_db",
    "upsert_override",
    "list_overrides",
    "get_override",
    "overrides_map",
    "delete_override",
]

PathLike = Union[Path, str]


@contextmanager
def get_connection(db_path: PathLike = DB_PATH) -> Generator[sqlite3.Connection, None, None]:
    """Context manager for database connections."""
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()


def init_db(db_path: PathLike = DB_PATH) -> None:
    """Initialize the overrides schema."""
    with get_connection(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS product_overrides (
                id TEXT PRIMARY KEY,
                manufacturer TEXT NOT NULL,
                category TEXT NOT NULL,
                product_name TEXT NOT NULL,
                custom_name TEXT,
                price_factor REAL DEFAULT 1.0,
                discount REAL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE (manufacturer, category, product_name)
            )
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_overrides_manufacturer
            ON product_overrides(manufacturer)
        """)
        conn.commit()


def _row_to_override(row: sqlite3.Row) -> ProductOverride:
    return ProductOverride(
        id=row["id"],
        manufacturer=row["manufacturer"],
        category=row["category"],
        product_name=row["product_name"],
        custom_name=row["custom_name"],
        price_factor=row["price_factor"] if row["price_factor"] is not None else 1.0,
        discount=row["discount"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def get_override(
    manufacturer: str,
    category: str,
    product_name: str,
    db_path: PathLike = DB_PATH,
) -> Optional[ProductOverride]:
    with get_connection(db_path) as conn:
        row = conn.execute(
            """
            SELECT * FROM product_overrides
            WHERE manufacturer = ? AND category = ? AND product_name = ?
            """,
            (manufacturer.lower(), category, product_name),
        ).fetchone()
    return _row_to_override(row) if row else None


def upsert_override(
    manufacturer: str,
    category: str,
    product_name: str,
    custom_name: Optional[str] = None,
    price_factor: Optional[float] = None,
    discount: Optional[float] = None,
    db_path: PathLike = DB_PATH,
) -> ProductOverride:
    """Insert or update the override for (manufacturer, category, product).

    A blank custom name is stored as NULL; a missing factor as 1.0.
    """
    if not manufacturer or not category or not product_name:
        raise ValidationError("manufacturer, category and productName are required")

    manufacturer = manufacturer.lower()
    custom_name = custom_name or None
    price_factor = 1.0 if price_factor is None else float(price_factor)
    discount = None if discount is None else float(discount)
    now = datetime.now().isoformat()

    with get_connection(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute(
            """
            SELECT id FROM product_overrides
            WHERE manufacturer = ? AND category = ? AND product_name = ?
            """,
            (manufacturer, category, product_name),
        )
        existing = cursor.fetchone()

        if existing:
            override_id = existing["id"]
            cursor.execute(
                """
                UPDATE product_overrides
                SET custom_name = ?, price_factor = ?, discount = ?, updated_at = ?
                WHERE id = ?
                """,
                (custom_name, price_factor, discount, now, override_id),
            )
        else:
            override_id = str(uuid.uuid4())
            cursor.execute(
                """
                INSERT INTO product_overrides (
                    id, manufacturer, category, product_name,
                    custom_name, price_factor, discount, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (override_id, manufacturer, category, product_name,
                 custom_name, price_factor, discount, now, now),
            )
        conn.commit()

        row = cursor.execute(
            "SELECT * FROM product_overrides WHERE id = ?", (override_id,)
        ).fetchone()

    log_event(
        "override_upserted",
        {"manufacturer": manufacturer, "category": category, "product": product_name},
    )
    return _row_to_override(row)


def list_overrides(
    manufacturer: str,
    category: Optional[str] = None,
    db_path: PathLike = DB_PATH,
) -> List[ProductOverride]:
    if not manufacturer:
        raise ValidationError("manufacturer is required")

    query = "SELECT * FROM product_overrides WHERE manufacturer = ?"
    params: List[Any] = [manufacturer.lower()]
    if category:
        query += " AND category = ?"
        params.append(category)
    query += " ORDER BY category, product_name"

    with get_connection(db_path) as conn:
        rows = conn.execute(query, params).fetchall()
    return [_row_to_override(row) for row in rows]


def overrides_map(
    manufacturer: str,
    db_path: PathLike = DB_PATH,
) -> Dict[Tuple[str, str], ProductOverride]:
    """All overrides of a manufacturer keyed by (category, product_name)."""
    return {
        (o.category, o.product_name): o
        for o in list_overrides(manufacturer, db_path=db_path)
    }


def delete_override(override_id: str, db_path: PathLike = DB_PATH) -> None:
    if not override_id:
        raise ValidationError("id is required")
    with get_connection(db_path) as conn:
        cursor = conn.execute("DELETE FROM product_overrides WHERE id = ?", (override_id,))
        conn.commit()
        if cursor.rowcount == 0:
            raise NotFoundError(f"Override not found: {override_id}")
    log_event("override_deleted", {"id": override_id})
