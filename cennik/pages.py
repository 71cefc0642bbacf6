"""Server-rendered pages: producer index, price-list pages and the back office."""

import logging
from pathlib import Path
from typing import Any

from flask import Blueprint, abort, current_app, render_template, send_from_directory

from .config import SCHEDULED_CHANGES_FILE, TABLE_PRICE_GROUPS
from .errors import NotFoundError
from .overrides import overrides_map
from .pricing import is_promotion_active, price_catalog, price_products, price_table
from .scheduled_changes import ScheduledChangeStore
from .storage import LAYOUT_PRODUCTS, LAYOUT_TABLE, CatalogStore
from .utils import product_anchor

__all__ = ["pages"]

logger = logging.getLogger(__name__)

pages = Blueprint("pages", __name__)


def _stores():
    catalog = CatalogStore(current_app.config["DATA_DIR"])
    changes = ScheduledChangeStore(
        Path(current_app.config["DATA_DIR"]) / SCHEDULED_CHANGES_FILE,
        catalog,
        cache_ttl=current_app.config.get("SCHEDULED_CACHE_TTL", 1),
    )
    return catalog, changes


@pages.app_template_filter("anchor")
def anchor_filter(name: str) -> str:
    return product_anchor(name)


@pages.app_template_filter("zl")
def price_filter(value: Any) -> str:
    """1234 -> '1 234 zł'"""
    if value is None or value == "":
        return "-"
    if isinstance(value, (int, float)):
        return f"{int(value):,}".replace(",", " ") + " zł"
    return str(value)


@pages.route("/", methods=["GET"])
def index() -> str:
    catalog, changes = _stores()
    return render_template(
        "index.html",
        producers=catalog.load_producers(),
        pending=set(changes.producers_with_pending()),
    )


@pages.route("/p/<slug>", methods=["GET"])
def producer_page(slug: str) -> str:
    catalog, changes = _stores()
    producer = catalog.get_producer(slug)
    if producer is None:
        abort(404)
    try:
        data = catalog.load_producer_data(producer)
    except NotFoundError:
        logger.warning(f"Producer {slug} has no catalog file")
        abort(404)

    promotion = producer.get("promotion")
    context = {
        "producer": producer,
        "title": data.get("title") or producer.get("title") or producer.get("displayName"),
        "promotion": promotion if is_promotion_active(promotion) else None,
        "banners": changes.banner_data(slug),
        "product_changes": changes.product_changes_map(slug),
    }

    layout_type = producer.get("layoutType")
    if layout_type == LAYOUT_PRODUCTS:
        return render_template(
            "layouts/products.html",
            meta=data.get("meta_data") or {},
            products=price_products(producer, data),
            **context,
        )
    if layout_type == LAYOUT_TABLE:
        groups = producer.get("priceGroups") or TABLE_PRICE_GROUPS
        return render_template(
            "layouts/table.html",
            groups=groups,
            rows=price_table(producer, data, groups),
            **context,
        )

    overrides = overrides_map(slug, db_path=current_app.config["DB_PATH"])
    surcharges = {
        category: (settings or {}).get("surcharges")
        for category, settings in (data.get("categorySettings") or {}).items()
    }
    return render_template(
        "layouts/categories.html",
        categories=price_catalog(producer, data, overrides, surcharges),
        **context,
    )


@pages.route("/admin", methods=["GET"])
def admin() -> str:
    catalog, _ = _stores()
    return render_template("admin.html", producers=catalog.load_producers())


# Uploaded files are written under PUBLIC_DIR and linked by these URLs.


@pages.route("/images/<path:filename>", methods=["GET"])
def public_image(filename: str):
    return send_from_directory(Path(current_app.config["PUBLIC_DIR"]) / "images", filename)


@pages.route("/pdf/<path:filename>", methods=["GET"])
def public_pdf(filename: str):
    return send_from_directory(Path(current_app.config["PUBLIC_DIR"]) / "pdf", filename)
