"""JSON API for the catalog, the back office and the scheduled-change log.

Every route returns JSON. Domain errors raised below are turned into
``{"success": false, "error": ...}`` with their status code by the
blueprint's error handlers, and persisted to the error log.
"""

import logging
import uuid
from pathlib import Path
from typing import Any, Dict, Optional

from flask import Blueprint, Response, current_app, g, jsonify, request
from werkzeug.exceptions import HTTPException

from .auth import login
from .config import SCHEDULED_CHANGES_FILE
from .error_logging import ErrorLogger, log_unexpected_error, log_validation_error
from .errors import CennikError, ValidationError
from .images import (
    delete_fabric_pdf,
    list_images,
    save_fabric_pdf,
    save_product_image,
    save_raw_image,
)
from .ingest import analyze_pdf, extract_pdf_data, match_import_rows, parse_excel
from .mail import Mailer, notify_safely
from .overrides import delete_override, get_override, list_overrides, upsert_override
from .pricing import percent_change
from .scheduled_changes import (
    KIND_FACTOR,
    KIND_PRICE,
    ScheduledChangeStore,
    calculate_changes_from_data,
)
from .search import SearchIndex
from .storage import CatalogStore

__all__ = ["api"]

logger = logging.getLogger(__name__)

api = Blueprint("api", __name__, url_prefix="/api")


# ---------- helpers ----------


def _catalog() -> CatalogStore:
    return CatalogStore(current_app.config["DATA_DIR"])


def _changes() -> ScheduledChangeStore:
    return ScheduledChangeStore(
        Path(current_app.config["DATA_DIR"]) / SCHEDULED_CHANGES_FILE,
        _catalog(),
        cache_ttl=current_app.config.get("SCHEDULED_CACHE_TTL", 1),
    )


def _mailer() -> Mailer:
    return current_app.extensions["mailer"]


def _openai_client() -> Any:
    return current_app.extensions.get("openai_client")


def _db_path() -> Path:
    return current_app.config["DB_PATH"]


def _json_body(expect=dict) -> Any:
    """Parsed request body; malformed or wrongly shaped JSON is a 400."""
    body = request.get_json(silent=True)
    if body is None:
        raise ValidationError("Invalid JSON body")
    if expect is not None and not isinstance(body, expect):
        raise ValidationError(f"Expected JSON {'object' if expect is dict else 'array'}")
    return body


def _uploaded(field: str = "file") -> Optional[Any]:
    upload = request.files.get(field)
    if upload is None or not upload.filename:
        return None
    return upload


def _notify_factor_change(producer: Dict[str, Any], old_factor: Any, new_factor: Any) -> None:
    change = percent_change(old_factor, new_factor) if old_factor and old_factor > 0 else 0
    notify_safely(
        _mailer().send_producer_update,
        producer.get("displayName") or producer.get("slug"),
        {"oldFactor": old_factor, "newFactor": new_factor, "percentChange": change},
    )


@api.before_request
def _assign_request_id() -> None:
    g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]


# ---------- error handlers ----------


@api.errorhandler(CennikError)
def _handle_domain_error(e: CennikError):
    request_id = g.get("request_id")
    context = {"path": request.path, "method": request.method}
    if isinstance(e, ValidationError):
        logger.warning(f"[{request_id}] {request.method} {request.path}: {e.message}")
        log_validation_error(e.message, request_id=request_id, operation=request.endpoint, context=context)
    else:
        log_fn = logger.warning if e.status_code < 500 else logger.error
        log_fn(f"[{request_id}] {request.method} {request.path}: {e.message}")
        log_unexpected_error(
            e.message,
            request_id=request_id,
            operation=request.endpoint,
            context=context,
            status_code=e.status_code,
            error_type=e.error_type,
        )
    return jsonify(e.to_dict()), e.status_code


@api.errorhandler(Exception)
def _handle_unexpected_error(e: Exception):
    if isinstance(e, HTTPException):
        return jsonify({"success": False, "error": e.description}), e.code
    request_id = g.get("request_id")
    logger.exception(f"[{request_id}] Unhandled error in {request.method} {request.path}")
    log_unexpected_error(
        str(e),
        request_id=request_id,
        operation=request.endpoint,
        context={"path": request.path, "method": request.method},
        error_type=type(e).__name__,
    )
    return jsonify({"success": False, "error": "Internal server error"}), 500


# ---------- catalogs ----------


@api.route("/manufacturers", methods=["GET"])
def manufacturers() -> Response:
    return jsonify({"manufacturers": _catalog().list_manufacturers()})


@api.route("/cennik/<manufacturer>", methods=["GET"])
def get_cennik(manufacturer: str) -> Response:
    return jsonify(_catalog().load_catalog(manufacturer))


@api.route("/approve-changes", methods=["POST"])
def approve_changes() -> Response:
    body = _json_body()
    file_path = _catalog().approve_catalog(body.get("manufacturer"), body.get("data"))
    return jsonify({"success": True, "message": "Zmiany zostały zapisane", "filePath": file_path})


@api.route("/update-product-json", methods=["POST"])
def update_product_json() -> Response:
    body = _json_body()
    file_path = _catalog().update_product(
        body.get("manufacturer"),
        body.get("category"),
        body.get("productName"),
        {
            key: body.get(key)
            for key in ("customName", "customPrice", "customImage", "customPreviousName")
            if key in body
        },
    )
    return jsonify({"success": True, "message": "Produkt zaktualizowany", "filePath": file_path})


# ---------- producers ----------


@api.route("/producers", methods=["GET"])
def get_producers() -> Response:
    return jsonify(_catalog().load_producers())


@api.route("/producers", methods=["POST"])
def add_producer():
    producer = _catalog().add_producer(_json_body())
    return jsonify(producer), 201


@api.route("/producers", methods=["PUT"])
def update_producer() -> Response:
    body = _json_body()
    slug = body.get("slug")
    if not slug:
        raise ValidationError("Missing slug")

    old, new = _catalog().update_producer(slug, {k: v for k, v in body.items() if k != "slug"})
    if "priceFactor" in body and old.get("priceFactor") != new.get("priceFactor"):
        _notify_factor_change(new, old.get("priceFactor"), new.get("priceFactor"))
    return jsonify(new)


@api.route("/producers", methods=["DELETE"])
def delete_producer() -> Response:
    slug = request.args.get("slug")
    if not slug:
        raise ValidationError("Missing slug")
    _catalog().delete_producer(slug)
    return jsonify({"success": True})


@api.route("/producers/bulk", methods=["PUT"])
def bulk_update_producers() -> Response:
    body = request.get_json(silent=True)
    if not isinstance(body, list):
        raise ValidationError("Expected array of producers")
    for change in _catalog().bulk_update_producers(body):
        _notify_factor_change(change["producer"], change["oldFactor"], change["newFactor"])
    return jsonify({"success": True})


@api.route("/producers/<slug>/data", methods=["GET"])
def get_producer_data(slug: str) -> Response:
    store = _catalog()
    producer = store.require_producer(slug)
    return jsonify({"producer": producer, "data": store.load_producer_data(producer)})


@api.route("/producers/<slug>/data", methods=["PUT"])
def put_producer_data(slug: str) -> Response:
    store = _catalog()
    producer = store.require_producer(slug)
    data = _json_body()
    old_data = store.save_producer_data(producer, data)
    notify_safely(
        _mailer().send_changes_notification,
        producer.get("displayName") or slug,
        old_data,
        data,
    )
    return jsonify({"success": True, "message": "Dane zapisane"})


@api.route("/producers/<slug>/data", methods=["PATCH"])
def patch_producer_data(slug: str) -> Response:
    body = _json_body()
    action = body.get("action")
    if not action:
        raise ValidationError("Missing action")
    payload = {k: v for k, v in body.items() if k != "action"}
    data = _catalog().patch_producer_data(slug, action, payload)
    return jsonify({"success": True, "data": data})


# ---------- overrides ----------


@api.route("/overrides", methods=["GET"])
def get_overrides() -> Response:
    manufacturer = request.args.get("manufacturer", "")
    product_name = request.args.get("productName")
    if product_name:
        override = get_override(manufacturer, request.args.get("category", ""), product_name, db_path=_db_path())
        return jsonify({"override": override.to_dict() if override else None})

    overrides = list_overrides(
        manufacturer,
        request.args.get("category") or None,
        db_path=_db_path(),
    )
    return jsonify({"overrides": [o.to_dict() for o in overrides]})


@api.route("/overrides", methods=["POST"])
def post_override() -> Response:
    body = _json_body()
    override = upsert_override(
        body.get("manufacturer"),
        body.get("category"),
        body.get("productName"),
        custom_name=body.get("customName"),
        price_factor=body.get("priceFactor"),
        discount=body.get("discount"),
        db_path=_db_path(),
    )
    return jsonify({"override": override.to_dict()})


@api.route("/overrides", methods=["DELETE"])
def remove_override() -> Response:
    override_id = request.args.get("id")
    if not override_id:
        raise ValidationError("Missing id")
    delete_override(override_id, db_path=_db_path())
    return jsonify({"success": True})


# ---------- scheduled changes ----------


@api.route("/scheduled-changes", methods=["GET"])
def get_scheduled_changes() -> Response:
    listed = _changes().list_changes(
        producer=request.args.get("producer") or None,
        status=request.args.get("status") or "pending",
        kind=request.args.get("type") or None,
    )
    return jsonify({"success": True, **listed})


@api.route("/scheduled-changes", methods=["POST"])
def create_scheduled_change() -> Response:
    body = _json_body()
    store = _changes()

    if body.get("type") == KIND_FACTOR:
        entry, replaced = store.create_factor_change(
            body.get("producerSlug"),
            body.get("producerName"),
            body.get("scheduledDate"),
            body.get("oldFactor"),
            body.get("newFactor"),
        )
        response: Dict[str, Any] = {"success": True, "factorChange": entry}
        if replaced:
            response["message"] = "Zaktualizowano istniejącą zaplanowaną zmianę faktora"
        return jsonify(response)

    change = store.create_price_change(
        body.get("producerSlug"),
        body.get("producerName"),
        body.get("scheduledDate"),
        body.get("changes"),
        body.get("summary"),
    )
    return jsonify({"success": True, "change": change})


@api.route("/scheduled-changes", methods=["PATCH"])
def update_scheduled_change() -> Response:
    body = _json_body()
    change_id = body.get("id")
    if not change_id:
        raise ValidationError("Missing id")
    kind = KIND_FACTOR if body.get("type") == KIND_FACTOR else KIND_PRICE
    store = _changes()
    action = body.get("action")

    if body.get("scheduledDate"):
        entry = store.reschedule(change_id, body["scheduledDate"], kind)
        message = "Zmieniono datę zaplanowanej zmiany"
    elif body.get("applyNow") or action == "apply":
        entry = store.apply(change_id, kind)
        if kind == KIND_FACTOR:
            _notify_factor_change(
                {"slug": entry.get("producerSlug"), "displayName": entry.get("producerName")},
                entry.get("oldFactor"),
                entry.get("newFactor"),
            )
        message = "Zmiana została zastosowana"
    elif action == "cancel":
        entry = store.cancel(change_id, kind)
        message = "Zmiana została anulowana"
    else:
        raise ValidationError("Unknown action")

    return jsonify({"success": True, "message": message, "producerSlug": entry.get("producerSlug")})


@api.route("/scheduled-changes", methods=["DELETE"])
def delete_scheduled_change() -> Response:
    change_id = request.args.get("id")
    if not change_id:
        raise ValidationError("Missing id")
    kind = KIND_FACTOR if request.args.get("type") == KIND_FACTOR else KIND_PRICE
    slug = _changes().delete(change_id, kind)
    return jsonify({"success": True, "producerSlug": slug})


@api.route("/scheduled-changes/apply", methods=["GET"])
def pending_to_apply() -> Response:
    due = _changes().applicable_changes()
    return jsonify(
        {
            "success": True,
            "pendingCount": len(due),
            "pending": [
                {
                    "id": c.get("id"),
                    "producer": c.get("producerName") or c.get("producerSlug"),
                    "scheduledDate": c.get("scheduledDate"),
                    "changes": len(c.get("changes") or []),
                }
                for c in due
            ],
        }
    )


@api.route("/scheduled-changes/apply", methods=["POST"])
def apply_due_changes() -> Response:
    result = _changes().apply_due()
    for entry in result.pop("appliedFactorChanges"):
        _notify_factor_change(
            {"slug": entry.get("producerSlug"), "displayName": entry.get("producerName")},
            entry.get("oldFactor"),
            entry.get("newFactor"),
        )
    return jsonify({"success": True, **result})


@api.route("/scheduled-changes/calculate", methods=["POST"])
def calculate_changes() -> Response:
    body = _json_body()
    slug = body.get("producerSlug")
    updated = body.get("updatedData")
    if not slug or not isinstance(updated, dict):
        raise ValidationError("Missing required fields (producerSlug, updatedData)")
    store = _catalog()
    current = store.load_producer_data(store.require_producer(slug))
    return jsonify({"success": True, **calculate_changes_from_data(current, updated)})


# ---------- uploads ----------


@api.route("/upload-image", methods=["POST"])
def upload_image() -> Response:
    upload = _uploaded()
    manufacturer = request.form.get("manufacturer")
    if upload is None or not manufacturer:
        raise ValidationError("Missing required data: file, manufacturer")
    url = save_product_image(
        current_app.config["PUBLIC_DIR"],
        upload.read(),
        manufacturer,
        request.form.get("category"),
        request.form.get("productName"),
    )
    return jsonify({"success": True, "path": url, "imageUrl": url, "message": "Zdjęcie zapisane"})


@api.route("/upload", methods=["POST"])
def upload_file() -> Response:
    upload = _uploaded()
    if upload is None:
        raise ValidationError("Missing file")
    saved = save_raw_image(
        current_app.config["PUBLIC_DIR"],
        upload.read(),
        upload.filename,
        request.form.get("producer", ""),
        request.form.get("folder") or None,
    )
    return jsonify({"success": True, **saved})


@api.route("/upload", methods=["GET"])
def uploaded_images() -> Response:
    return jsonify({"images": list_images(current_app.config["PUBLIC_DIR"], request.args.get("producer", ""))})


@api.route("/upload-pdf", methods=["POST"])
def upload_pdf() -> Response:
    upload = _uploaded()
    if upload is None:
        raise ValidationError("Missing file")
    saved = save_fabric_pdf(
        current_app.config["PUBLIC_DIR"],
        upload.read(),
        upload.filename,
        request.form.get("producer", ""),
    )
    return jsonify({"success": True, **saved})


@api.route("/delete-pdf", methods=["DELETE"])
def delete_pdf() -> Response:
    body = _json_body()
    deleted = delete_fabric_pdf(current_app.config["PUBLIC_DIR"], body.get("url"))
    return jsonify({"success": True, "deleted": deleted})


# ---------- ingestion ----------


@api.route("/parse-pdf", methods=["POST"])
def parse_pdf() -> Response:
    upload = _uploaded("file") or _uploaded("pdf")
    if upload is None:
        raise ValidationError("No PDF file provided")
    result = extract_pdf_data(
        upload.read(),
        client=_openai_client(),
        min_text_length=current_app.config.get("OCR_MIN_TEXT_LENGTH", 30),
    )
    return jsonify({"success": True, **result.to_dict()})


@api.route("/analyze-pdf", methods=["POST"])
def analyze_pdf_route() -> Response:
    upload = _uploaded("pdf") or _uploaded("file")
    slug = request.form.get("producer")
    if upload is None or not slug:
        raise ValidationError("Missing PDF file or producer")

    store = _catalog()
    producer = store.require_producer(slug)
    layout_type = request.form.get("layoutType") or producer.get("layoutType", "bomar")
    current_data = store.load_producer_data(producer)

    result = analyze_pdf(upload.read(), current_data, layout_type, client=_openai_client())
    return jsonify({"success": True, **result})


@api.route("/parse-excel", methods=["POST"])
def parse_excel_route() -> Response:
    upload = _uploaded()
    if upload is None:
        raise ValidationError("No file provided")
    rows = parse_excel(upload.read())
    slug = request.form.get("producer")
    if not slug:
        return jsonify({"success": True, "rows": rows})

    store = _catalog()
    current_data = store.load_producer_data(store.require_producer(slug))
    return jsonify({"success": True, "rows": rows, **match_import_rows(rows, current_data)})


# ---------- search ----------


@api.route("/search", methods=["GET"])
def search() -> Response:
    query = request.args.get("q", "")
    index = SearchIndex(_catalog(), ttl=current_app.config.get("SEARCH_CACHE_TTL", 300))
    results = index.search(query, limit=current_app.config.get("SEARCH_RESULT_LIMIT", 5))
    return jsonify({"results": [entry.to_dict() for entry in results]})


# ---------- mail ----------


@api.route("/notify-factor", methods=["POST"])
def notify_factor() -> Response:
    body = _json_body()
    _mailer().send_factor_proposal(
        body.get("producerName"),
        body.get("currentFactor"),
        body.get("newFactor"),
        body.get("percentChange"),
    )
    return jsonify({"success": True, "message": "Powiadomienie wysłane"})


@api.route("/report", methods=["POST"])
def report_price_error() -> Response:
    body = _json_body()
    _mailer().send_price_error_report(
        body.get("producerName"),
        body.get("productName"),
        body.get("description"),
        body.get("contactEmail"),
    )
    return jsonify({"success": True, "message": "Zgłoszenie wysłane"})


# ---------- auth ----------


@api.route("/auth/login", methods=["POST"])
def auth_login() -> Response:
    body = _json_body()
    username, password = body.get("username"), body.get("password")
    if not username or not password:
        raise ValidationError("Missing username or password")
    session = login(_catalog().load_credentials(), username, password)
    return jsonify({"success": True, "message": "Zalogowano", **session})


# ---------- error log ----------


@api.route("/errors", methods=["GET"])
def list_errors() -> Response:
    """Newest error-log rows plus per-type counts."""
    try:
        limit = int(request.args.get("limit", 50))
        offset = int(request.args.get("offset", 0))
    except ValueError:
        raise ValidationError("limit and offset must be integers")
    error_log = ErrorLogger(db_path=_db_path())
    return jsonify({
        "errors": error_log.get_errors(request.args.get("type") or None, limit=limit, offset=offset),
        "summary": error_log.get_error_summary(),
    })
