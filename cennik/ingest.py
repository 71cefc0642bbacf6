"""PDF and Excel ingestion for price-list imports.

Native PDF text comes from pdfminer.six. Scanned PDFs (little or no text
layer) are sent to an OpenAI vision model. Excel sheets are read with
pandas. Nothing here writes to the catalog; the admin UI reviews the
extracted data and saves it through the approve endpoint.
"""

import base64
import io
import json
import logging
import re
from typing import Any, BinaryIO, Dict, List, Optional, Union

import pandas as pd
from pdfminer.high_level import extract_text
from rapidfuzz import process
from rapidfuzz.distance import Levenshtein

from .config import OCR_MIN_TEXT_LENGTH, OCR_MODEL, TABLE_PRICE_GROUPS
from .errors import CennikError, ValidationError
from .error_logging import log_ocr_error, log_processing_error
from .logging_config import log_event
from .models import PdfExtractionResult

__all__ = [
    "extract_pdf_data",
    "extract_native_text",
    "ocr_pdf",
    "detect_tables_from_text",
    "parse_excel",
    "find_best_match",
    "detect_conflicts",
    "catalog_products",
    "match_import_rows",
    "extract_json_block",
    "analyze_pdf",
    "compare_extracted_data",
]

logger = logging.getLogger(__name__)

OCR_PROMPT = "Extract ALL text from this scanned document. Return plain text only."

ANALYZE_PROMPT = """Przeanalizuj dokładnie ten cennik PDF i wyodrębnij wszystkie informacje o produktach.

WAŻNE INSTRUKCJE:
- Wyodrębnij WSZYSTKIE produkty z cennika
- Zachowaj dokładne nazwy produktów
- Ceny zapisuj jako liczby (bez "zł", bez spacji)
- Zwróć wyłącznie JSON w formacie takim jak aktualne dane poniżej

Aktualne dane do porównania:
{current}
"""


def _get_client():
    """Get OpenAI client (lazy initialization)."""
    from openai import OpenAI
    return OpenAI()


def _response_text(resp: Any) -> str:
    """First text block of a Responses API result."""
    text = getattr(resp, "output_text", None)
    if text:
        return text
    for item in getattr(resp, "output", None) or []:
        content = getattr(item, "content", None)
        if content:
            return getattr(content[0], "text", "") or ""
    return ""


def _pdf_input(pdf_bytes: bytes, prompt: str, filename: str = "document.pdf") -> List[Dict[str, Any]]:
    encoded = base64.b64encode(pdf_bytes).decode("ascii")
    return [
        {
            "role": "user",
            "content": [
                {
                    "type": "input_file",
                    "filename": filename,
                    "file_data": f"data:application/pdf;base64,{encoded}",
                },
                {"type": "input_text", "text": prompt},
            ],
        }
    ]


def extract_native_text(pdf_bytes: bytes) -> str:
    """Text layer of the PDF, or "" when pdfminer cannot parse it."""
    try:
        return (extract_text(io.BytesIO(pdf_bytes)) or "").strip()
    except Exception as e:
        logger.warning(f"Native PDF parse failed, switching to OCR: {e}")
        log_processing_error(str(e), operation="pdf_text", context={"bytes": len(pdf_bytes)})
        return ""


def ocr_pdf(pdf_bytes: bytes, client: Any = None, model: str = OCR_MODEL) -> str:
    client = client or _get_client()
    try:
        resp = client.responses.create(model=model, input=_pdf_input(pdf_bytes, OCR_PROMPT))
    except Exception as e:
        logger.exception("Error calling vision model for OCR")
        log_ocr_error(str(e), context={"model": model, "bytes": len(pdf_bytes)})
        raise CennikError(f"OCR failed: {e}")
    text = _response_text(resp)
    log_event("ocr_used", {"model": model, "chars": len(text)})
    return text


def detect_tables_from_text(text: str) -> List[List[List[str]]]:
    """Very small table detector for delimited or column-aligned text.

    >>> detect_tables_from_text("a;b\\nc;d")
    [[['a', 'b'], ['c', 'd']]]
    """
    lines = [line.strip() for line in (text or "").split("\n")]
    candidates = [
        line for line in lines
        if ";" in line or "," in line or re.search(r"\s{3,}", line)
    ]
    if len(candidates) < 2:
        return []

    table = []
    for row in candidates:
        if ";" in row:
            cells = row.split(";")
        elif "," in row:
            cells = row.split(",")
        else:
            cells = re.split(r"\s{3,}", row)
        table.append([cell.strip() for cell in cells])
    return [table]


def extract_pdf_data(
    pdf_bytes: bytes,
    client: Any = None,
    min_text_length: int = OCR_MIN_TEXT_LENGTH,
) -> PdfExtractionResult:
    """Text and naive tables of a PDF, falling back to OCR for scans."""
    text = extract_native_text(pdf_bytes)
    ocr_used = False

    if len(text) < min_text_length:
        ocr_used = True
        text = ocr_pdf(pdf_bytes, client=client)

    return PdfExtractionResult(
        raw_text=text,
        ocr_used=ocr_used,
        tables=detect_tables_from_text(text),
    )


def parse_excel(source: Union[bytes, BinaryIO, str]) -> List[Dict[str, Any]]:
    """Rows of the first worksheet as dicts keyed by header text."""
    if isinstance(source, (bytes, bytearray)):
        source = io.BytesIO(source)
    try:
        df = pd.read_excel(source, sheet_name=0, dtype=object)
    except ValueError as e:
        log_processing_error(str(e), operation="parse_excel")
        raise ValidationError(f"Cannot read spreadsheet: {e}")

    df.columns = [str(c) for c in df.columns]
    df = df.astype(object).where(pd.notna(df), "")
    return df.to_dict(orient="records")


# ---------- fuzzy matching for imports ----------


def find_best_match(term: str, candidates: List[str], threshold: float = 0.6) -> Dict[str, Any]:
    """Closest candidate by normalised Levenshtein similarity.

    ``match`` is set only when the similarity reaches ``threshold``;
    ``suggestions`` lists up to three candidates above 70% of it.

    >>> find_best_match("Fotel Nidzca", ["Pufa", "Fotel Nidzica"])["match"]
    'Fotel Nidzica'
    """
    scored = process.extract(
        term or "",
        candidates,
        scorer=Levenshtein.normalized_similarity,
        processor=lambda s: s.lower().strip(),
        limit=None,
    )
    best = scored[0] if scored else None
    return {
        "match": best[0] if best and best[1] >= threshold else None,
        "score": best[1] if best else 0,
        "suggestions": [c for c, s, _ in scored if s >= threshold * 0.7][:3],
    }


def detect_conflicts(
    existing: List[Dict[str, Any]],
    imported: List[Dict[str, Any]],
    name_field: str = "name",
    has_elements: bool = False,
) -> List[Dict[str, Any]]:
    """Imported products that collide with existing ones by name or previousName."""
    by_name: Dict[str, Dict[str, Any]] = {}
    for product in existing:
        name = product.get(name_field) or product.get("name")
        if name:
            by_name[str(name).lower()] = product
        if product.get("previousName"):
            by_name[str(product["previousName"]).lower()] = product

    conflicts = []
    for product in imported:
        name = product.get("name")
        if not name:
            continue
        match = by_name.get(str(name).lower())
        if match is None:
            continue
        conflict_type = "exists"
        if has_elements and len(match.get("elements") or []) != len(product.get("elements") or []):
            conflict_type = "different_elements"
        conflicts.append(
            {"type": conflict_type, "productName": name, "existingData": match, "newData": product}
        )
    return conflicts


NAME_COLUMNS = ("name", "MODEL", "Model", "NAZWA", "Nazwa", "nazwa")


def catalog_products(data: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Flat product list of a catalog in any of the three layouts, each with a ``name``."""
    if isinstance(data.get("categories"), dict):
        return [
            {**(product or {}), "name": name, "category": category}
            for category, products in data["categories"].items()
            for name, product in (products or {}).items()
        ]
    if isinstance(data.get("products"), list):
        return [p for p in data["products"] if p.get("name")]
    return [{**row, "name": str(row["MODEL"])} for row in data.get("Arkusz1") or [] if row.get("MODEL")]


def _row_name(row: Dict[str, Any]) -> str:
    for column in NAME_COLUMNS:
        if row.get(column):
            return str(row[column]).strip()
    return ""


def match_import_rows(
    rows: List[Dict[str, Any]],
    current_data: Dict[str, Any],
    threshold: float = 0.6,
) -> Dict[str, Any]:
    """Pair spreadsheet rows with catalog products.

    Exact names (current or previous, case-insensitive) match first; the
    rest go through :func:`find_best_match`. Rows with no candidate above
    the suggestion cut end up in ``notFound``.
    """
    products = catalog_products(current_data)
    by_name: Dict[str, str] = {}
    for product in products:
        by_name[product["name"].lower()] = product["name"]
        if product.get("previousName"):
            by_name[str(product["previousName"]).lower()] = product["name"]
    names = [p["name"] for p in products]

    matched, suggestions, not_found = [], [], []
    for row in rows:
        name = _row_name(row)
        if not name:
            continue
        exact = by_name.get(name.lower())
        if exact:
            matched.append({"excelName": name, "product": exact, "score": 1.0})
            continue
        best = find_best_match(name, names, threshold)
        if best["suggestions"]:
            suggestions.append({
                "name": name,
                "bestMatch": best["match"],
                "score": best["score"],
                "allSuggestions": best["suggestions"],
            })
        else:
            not_found.append(name)

    imported = [{**row, "name": _row_name(row)} for row in rows if _row_name(row)]
    return {
        "matched": matched,
        "suggestions": suggestions,
        "notFound": not_found,
        "conflicts": detect_conflicts(products, imported),
    }


def extract_json_block(text: str) -> Any:
    """Parse JSON from a model answer, with or without ``` fences."""
    match = re.search(r"```json\s*([\s\S]*?)\s*```", text or "") or re.search(r"```\s*([\s\S]*?)\s*```", text or "")
    payload = match.group(1) if match else (text or "")
    try:
        return json.loads(payload.strip())
    except json.JSONDecodeError as e:
        raise CennikError(f"Could not parse model response: {e}")


# ---------- PDF analysis against the current catalog ----------


def _parse_price(value: Any) -> float:
    if isinstance(value, bool) or value is None:
        return 0
    if isinstance(value, (int, float)):
        return value
    cleaned = re.sub(r"[^\d,.\-]", "", str(value)).replace(",", ".")
    try:
        return float(cleaned)
    except ValueError:
        return 0


def _price_change(product: str, old: Any, new: Any, **fields: Any) -> Optional[Dict[str, Any]]:
    old_price, new_price = _parse_price(old), _parse_price(new)
    if old_price == new_price:
        return None
    change = {
        "type": "price_change",
        "product": product,
        "oldPrice": old_price,
        "newPrice": new_price,
        "percentChange": round((new_price - old_price) / old_price * 100) if old_price > 0 else 0,
    }
    change.update({k: v for k, v in fields.items() if v is not None})
    return change


def _compare_categories(current: Dict[str, Any], new: Dict[str, Any], out: List[Dict[str, Any]]) -> None:
    if new.get("title") and current.get("title") != new.get("title"):
        out.append({"type": "data_change", "product": "Cennik", "field": "title",
                    "oldValue": current.get("title"), "newValue": new["title"]})

    current_categories = current.get("categories") or {}
    new_categories = new.get("categories") or {}
    for category in dict.fromkeys(list(current_categories) + list(new_categories)):
        old_products = current_categories.get(category) or {}
        new_products = new_categories.get(category) or {}
        for name in dict.fromkeys(list(old_products) + list(new_products)):
            old, fresh = old_products.get(name), new_products.get(name)
            if old is None:
                out.append({"type": "new_product", "product": name, "category": category, "data": fresh})
                continue
            if fresh is None:
                out.append({"type": "removed_product", "product": name, "category": category})
                continue
            for size in fresh.get("sizes") or []:
                old_size = next((s for s in old.get("sizes") or [] if s.get("dimension") == size.get("dimension")), None)
                if old_size is None:
                    out.append({"type": "new_product", "product": f"{name} ({size.get('dimension')})",
                                "category": category, "data": size})
                    continue
                change = _price_change(name, old_size.get("prices"), size.get("prices"),
                                       category=category, dimension=size.get("dimension"))
                if change:
                    out.append(change)
            for group, price in (fresh.get("prices") or {}).items():
                if group in (old.get("prices") or {}):
                    change = _price_change(name, old["prices"][group], price, category=category, priceGroup=group)
                    if change:
                        out.append(change)


def _compare_list(
    current: List[Dict[str, Any]],
    new: List[Dict[str, Any]],
    key: str,
    out: List[Dict[str, Any]],
    price_fields: Optional[List[str]] = None,
) -> None:
    old_by_key = {row.get(key): row for row in current if row.get(key)}
    new_by_key = {row.get(key): row for row in new if row.get(key)}
    for name, row in new_by_key.items():
        old = old_by_key.get(name)
        if old is None:
            out.append({"type": "new_product", "product": name, "data": row})
            continue
        for field in price_fields or []:
            if field in row and field in old:
                change = _price_change(name, old[field], row[field], priceGroup=field)
                if change:
                    out.append(change)
    for name in old_by_key:
        if name not in new_by_key:
            out.append({"type": "removed_product", "product": name})


def compare_extracted_data(current: Dict[str, Any], extracted: Dict[str, Any], layout_type: str) -> List[Dict[str, Any]]:
    """Describe how an extracted catalog differs from the stored one."""
    changes: List[Dict[str, Any]] = []
    if layout_type == "mpnidzica":
        _compare_list(current.get("products") or [], extracted.get("products") or [], "name", changes)
    elif layout_type == "puszman":
        _compare_list(current.get("Arkusz1") or [], extracted.get("Arkusz1") or [], "MODEL", changes,
                      price_fields=TABLE_PRICE_GROUPS)
    else:
        _compare_categories(current, extracted, changes)
    return changes


def analyze_pdf(
    pdf_bytes: bytes,
    current_data: Dict[str, Any],
    layout_type: str,
    client: Any = None,
    model: str = OCR_MODEL,
) -> Dict[str, Any]:
    """Ask the model to read a price-list PDF into the catalog's shape and diff it."""
    client = client or _get_client()
    prompt = ANALYZE_PROMPT.format(current=json.dumps(current_data, ensure_ascii=False, indent=2))
    try:
        resp = client.responses.create(model=model, input=_pdf_input(pdf_bytes, prompt))
    except Exception as e:
        logger.exception("Error calling model for PDF analysis")
        log_ocr_error(str(e), context={"model": model, "stage": "analyze", "layout": layout_type})
        raise CennikError(f"PDF analysis failed: {e}")

    extracted = extract_json_block(_response_text(resp))
    if not isinstance(extracted, dict):
        log_processing_error(
            "Model response is not a JSON object", operation="analyze_pdf", context={"layout": layout_type}
        )
        raise CennikError("Model response is not a JSON object")

    changes = compare_extracted_data(current_data, extracted, layout_type)
    summary = {
        "totalChanges": len(changes),
        "priceChanges": sum(1 for c in changes if c["type"] == "price_change"),
        "newProducts": sum(1 for c in changes if c["type"] == "new_product"),
        "removedProducts": sum(1 for c in changes if c["type"] == "removed_product"),
        "dataChanges": sum(1 for c in changes if c["type"] == "data_change"),
    }
    log_event("pdf_analyzed", {"layout": layout_type, **summary})
    return {"changes": changes, "summary": summary, "extractedData": extracted}
