"""Tests for image conversion and upload storage."""

import io
from unittest.mock import patch

import pytest
from PIL import Image

from cennik.errors import ValidationError
from cennik.images import (
    MAX_IMAGE_DIMENSION,
    convert_to_webp,
    delete_fabric_pdf,
    list_images,
    save_fabric_pdf,
    save_product_image,
    save_raw_image,
)


def _png_bytes(size=(2400, 1200), mode="RGB"):
    buffer = io.BytesIO()
    Image.new(mode, size, color=(200, 100, 50) if mode == "RGB" else 1).save(buffer, format="PNG")
    return buffer.getvalue()


class TestConvertToWebp:
    def test_downscales_and_keeps_aspect(self):
        webp = convert_to_webp(_png_bytes((2400, 1200)))
        img = Image.open(io.BytesIO(webp))
        assert img.format == "WEBP"
        assert img.size == (MAX_IMAGE_DIMENSION, 600)

    def test_small_image_not_enlarged(self):
        img = Image.open(io.BytesIO(convert_to_webp(_png_bytes((300, 200)))))
        assert img.size == (300, 200)

    def test_palette_image(self):
        assert convert_to_webp(_png_bytes((50, 50), mode="P"))

    def test_rejects_non_image(self):
        with pytest.raises(ValidationError):
            convert_to_webp(b"not an image")

    def test_rejection_is_logged(self):
        with patch("cennik.images.log_processing_error") as log_error:
            with pytest.raises(ValidationError):
                convert_to_webp(b"not an image")
        assert log_error.call_args.kwargs["operation"] == "convert_to_webp"


class TestProductImage:
    def test_saved_under_manufacturer_and_category(self, public_dir):
        url = save_product_image(public_dir, _png_bytes(), "Bomar", "Stoły Okrągłe", "Stół Łukasz")
        assert url == "/images/bomar/stoły-okrągłe/stol_lukasz.webp"
        assert (public_dir / "images" / "bomar" / "stoły-okrągłe" / "stol_lukasz.webp").exists()

    def test_general_folder_without_category(self, public_dir):
        url = save_product_image(public_dir, _png_bytes(), "Bomar", None, "TRIM")
        assert url == "/images/bomar/general/trim.webp"

    def test_requires_manufacturer(self, public_dir):
        with pytest.raises(ValidationError):
            save_product_image(public_dir, _png_bytes(), "", "Stoły", "TRIM")


class TestRawUploads:
    def test_save_and_list(self, public_dir):
        saved = save_raw_image(public_dir, b"\x89PNG fake", "zdjęcie 1.png", "bomar", "stoly")
        assert saved["path"].startswith("/images/bomar/stoly/")
        assert saved["fileName"].endswith("-zdj_cie_1.png")
        assert list_images(public_dir, "bomar") == [saved["path"]]

    def test_list_ignores_non_images(self, public_dir):
        folder = public_dir / "images" / "bomar"
        folder.mkdir(parents=True)
        (folder / "notes.txt").write_text("x")
        assert list_images(public_dir, "bomar") == []

    def test_list_unknown_producer(self, public_dir):
        assert list_images(public_dir, "nikt") == []

    def test_requires_producer(self, public_dir):
        with pytest.raises(ValidationError):
            save_raw_image(public_dir, b"data", "a.png", "")


class TestFabricPdf:
    def test_save_and_delete(self, public_dir):
        saved = save_fabric_pdf(public_dir, b"%PDF-1.4", "Tkaniny Grupa_A.pdf", "bomar")
        assert saved["url"] == "/pdf/tkaniny/bomar/tkaniny-grupa-a.pdf"
        assert saved["name"] == "Tkaniny Grupa A"
        assert delete_fabric_pdf(public_dir, saved["url"]) is True
        assert not (public_dir / "pdf" / "tkaniny" / "bomar" / "tkaniny-grupa-a.pdf").exists()

    def test_only_pdf_accepted(self, public_dir):
        with pytest.raises(ValidationError):
            save_fabric_pdf(public_dir, b"data", "tkaniny.docx", "bomar")

    def test_external_url_is_left_alone(self, public_dir):
        assert delete_fabric_pdf(public_dir, "https://example.com/a.pdf") is False

    def test_missing_file(self, public_dir):
        assert delete_fabric_pdf(public_dir, "/pdf/tkaniny/bomar/none.pdf") is False

    def test_path_traversal_rejected(self, public_dir):
        with pytest.raises(ValidationError):
            delete_fabric_pdf(public_dir, "/pdf/../../etc/passwd")
