"""Product images and fabric PDFs stored under the public directory.

Product photos are converted to WebP and fitted inside 1200x1200; raw
uploads and PDFs are stored as sent.
"""

import logging
import re
import time
from io import BytesIO
from pathlib import Path
from typing import Dict, List, Optional, Union

from PIL import Image, UnidentifiedImageError

from .error_logging import log_processing_error
from .errors import CennikError, ValidationError
from .logging_config import log_event
from .utils import fold_diacritics

__all__ = [
    "MAX_IMAGE_DIMENSION",
    "WEBP_QUALITY",
    "safe_file_stem",
    "convert_to_webp",
    "save_product_image",
    "save_raw_image",
    "list_images",
    "save_fabric_pdf",
    "delete_fabric_pdf",
]

logger = logging.getLogger(__name__)

MAX_IMAGE_DIMENSION = 1200
WEBP_QUALITY = 85
IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".webp", ".svg"}

# Register HEIF/HEIC support for Pillow (phone photos)
try:
    from pillow_heif import register_heif_opener
    register_heif_opener()
except ImportError:
    pass  # pillow-heif not installed, HEIC support disabled


def safe_file_stem(name: str) -> str:
    """File name stem for a product photo.

    >>> safe_file_stem("Stół Łukasz 2")
    'stol_lukasz_2'
    """
    folded = fold_diacritics(name or "").lower()
    return re.sub(r"[^a-z0-9]+", "_", folded).strip("_")


def _folder(name: str) -> str:
    return re.sub(r"\s+", "-", name.lower())


def convert_to_webp(data: bytes) -> bytes:
    try:
        img = Image.open(BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError) as e:
        log_processing_error(str(e), operation="convert_to_webp", context={"bytes": len(data)})
        raise ValidationError(f"Unsupported image: {e}")

    if img.mode not in ("RGB", "RGBA"):
        img = img.convert("RGBA" if "A" in img.getbands() or img.mode == "P" else "RGB")

    # thumbnail only ever shrinks
    img.thumbnail((MAX_IMAGE_DIMENSION, MAX_IMAGE_DIMENSION), Image.Resampling.LANCZOS)

    output = BytesIO()
    img.save(output, format="WEBP", quality=WEBP_QUALITY)
    return output.getvalue()


def save_product_image(
    public_dir: Union[Path, str],
    data: bytes,
    manufacturer: str,
    category: Optional[str] = None,
    product_name: Optional[str] = None,
) -> str:
    """Store a product photo as WebP and return its public URL."""
    if not data or not manufacturer:
        raise ValidationError("Missing required data: file, manufacturer")

    stem = safe_file_stem(product_name or "") or f"image-{int(time.time() * 1000)}"
    manufacturer_folder = _folder(manufacturer)
    category_folder = _folder(category) if category else "general"

    target_dir = Path(public_dir) / "images" / manufacturer_folder / category_folder
    target_dir.mkdir(parents=True, exist_ok=True)
    file_name = f"{stem}.webp"
    (target_dir / file_name).write_bytes(convert_to_webp(data))

    url = f"/images/{manufacturer_folder}/{category_folder}/{file_name}"
    log_event("image_saved", {"url": url, "bytes": len(data)})
    return url


def save_raw_image(
    public_dir: Union[Path, str],
    data: bytes,
    filename: str,
    producer: str,
    folder: Optional[str] = None,
) -> Dict[str, str]:
    """Store an upload untouched under a timestamped name."""
    if not data:
        raise ValidationError("Missing file")
    if not producer:
        raise ValidationError("Missing producer")

    target_dir = Path(public_dir) / "images" / producer
    if folder:
        target_dir = target_dir / folder
    target_dir.mkdir(parents=True, exist_ok=True)

    original = re.sub(r"[^a-zA-Z0-9.-]", "_", filename or "upload")
    file_name = f"{int(time.time() * 1000)}-{original}"
    (target_dir / file_name).write_bytes(data)

    public_path = f"/images/{producer}{'/' + folder if folder else ''}/{file_name}"
    return {"path": public_path, "fileName": file_name}


def list_images(public_dir: Union[Path, str], producer: str) -> List[str]:
    if not producer:
        raise ValidationError("Missing producer")
    root = Path(public_dir) / "images" / producer
    if not root.is_dir():
        return []
    images = []
    for path in sorted(root.rglob("*")):
        if path.is_file() and path.suffix.lower() in IMAGE_EXTENSIONS:
            images.append(f"/images/{producer}/{path.relative_to(root).as_posix()}")
    return images


def save_fabric_pdf(
    public_dir: Union[Path, str],
    data: bytes,
    filename: str,
    producer: str,
) -> Dict[str, str]:
    if not data:
        raise ValidationError("Missing file")
    if not (filename or "").lower().endswith(".pdf"):
        raise ValidationError("Only PDF files are accepted")
    if not producer:
        raise ValidationError("Missing producer")

    safe_name = re.sub(r"-+", "-", re.sub(r"[^a-z0-9.-]", "-", filename.lower()))
    target_dir = Path(public_dir) / "pdf" / "tkaniny" / producer
    target_dir.mkdir(parents=True, exist_ok=True)
    (target_dir / safe_name).write_bytes(data)

    display_name = re.sub(r"\.pdf$", "", safe_name).replace("-", " ").title()
    local_path = f"/pdf/tkaniny/{producer}/{safe_name}"
    log_event("fabric_pdf_saved", {"path": local_path})
    return {"url": local_path, "localPath": local_path, "name": display_name}


def delete_fabric_pdf(public_dir: Union[Path, str], url: str) -> bool:
    """Delete a locally stored PDF; external links are left alone.

    Returns whether a file was removed.
    """
    if not url:
        raise ValidationError("Missing file URL")
    if not url.startswith("/pdf/"):
        return False

    pdf_root = (Path(public_dir) / "pdf").resolve()
    target = (Path(public_dir) / url.lstrip("/")).resolve()
    if pdf_root not in target.parents:
        raise ValidationError("Invalid file URL")
    try:
        target.unlink()
    except FileNotFoundError:
        return False
    except OSError as e:
        raise CennikError(f"Could not delete file: {e}")
    log_event("fabric_pdf_deleted", {"path": url})
    return True
