"""Tests for PDF/Excel ingestion and import matching."""

import io
import json
from unittest.mock import MagicMock, patch

import pytest
from openpyxl import Workbook

from cennik.errors import CennikError, ValidationError
from cennik.ingest import (
    analyze_pdf,
    compare_extracted_data,
    detect_conflicts,
    detect_tables_from_text,
    extract_json_block,
    extract_pdf_data,
    find_best_match,
    match_import_rows,
    parse_excel,
)

LONG_TEXT = "CENNIK BOMAR 2024\nTRIM;Grupa I;1000\nOSLO;Grupa I;2000\n"


def _xlsx_bytes(rows):
    workbook = Workbook()
    sheet = workbook.active
    for row in rows:
        sheet.append(row)
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


class TestExtractPdfData:
    def test_native_text_skips_ocr(self, mock_openai_client):
        with patch("cennik.ingest.extract_text", return_value=LONG_TEXT):
            result = extract_pdf_data(b"%PDF-1.4", client=mock_openai_client)

        assert result.ocr_used is False
        assert result.raw_text.startswith("CENNIK BOMAR")
        assert result.tables[0][0] == ["TRIM", "Grupa I", "1000"]
        mock_openai_client.responses.create.assert_not_called()

    def test_scanned_pdf_falls_back_to_ocr(self, mock_openai_client):
        mock_openai_client.responses.create.return_value = MagicMock(output_text="TRIM   1000\nOSLO   2000")
        with patch("cennik.ingest.extract_text", return_value=""):
            result = extract_pdf_data(b"%PDF-1.4", client=mock_openai_client)

        assert result.ocr_used is True
        assert result.to_dict()["ocrUsed"] is True
        assert result.tables == [[["TRIM", "1000"], ["OSLO", "2000"]]]
        call = mock_openai_client.responses.create.call_args
        content = call.kwargs["input"][0]["content"]
        assert content[0]["type"] == "input_file"
        assert content[0]["file_data"].startswith("data:application/pdf;base64,")

    def test_unparseable_pdf_goes_to_ocr(self, mock_openai_client):
        mock_openai_client.responses.create.return_value = MagicMock(output_text="tekst")
        with patch("cennik.ingest.extract_text", side_effect=ValueError("broken xref")):
            result = extract_pdf_data(b"garbage", client=mock_openai_client)
        assert result.ocr_used is True
        assert result.raw_text == "tekst"

    def test_unparseable_pdf_is_logged(self, mock_openai_client):
        mock_openai_client.responses.create.return_value = MagicMock(output_text="tekst")
        with patch("cennik.ingest.extract_text", side_effect=ValueError("broken xref")), \
                patch("cennik.ingest.log_processing_error") as log_error:
            extract_pdf_data(b"garbage", client=mock_openai_client)
        log_error.assert_called_once()
        assert log_error.call_args.kwargs["operation"] == "pdf_text"

    def test_ocr_failure_raises(self, mock_openai_client):
        mock_openai_client.responses.create.side_effect = RuntimeError("rate limited")
        with patch("cennik.ingest.extract_text", return_value=""):
            with pytest.raises(CennikError, match="OCR failed"):
                extract_pdf_data(b"%PDF-1.4", client=mock_openai_client)

    def test_output_list_response_shape(self, mock_openai_client):
        block = MagicMock()
        block.content = [MagicMock(text="z output")]
        mock_openai_client.responses.create.return_value = MagicMock(output_text=None, output=[block])
        with patch("cennik.ingest.extract_text", return_value=""):
            result = extract_pdf_data(b"%PDF-1.4", client=mock_openai_client)
        assert result.raw_text == "z output"


class TestDetectTables:
    def test_single_candidate_is_not_a_table(self):
        assert detect_tables_from_text("a;b\nzwykły tekst") == []

    def test_comma_rows(self):
        assert detect_tables_from_text("x,1\ny,2") == [[["x", "1"], ["y", "2"]]]

    def test_column_aligned_rows(self):
        assert detect_tables_from_text("a   b\nc   d") == [[["a", "b"], ["c", "d"]]]

    def test_two_spaces_do_not_split(self):
        assert detect_tables_from_text("a  b\nc  d") == []


class TestParseExcel:
    def test_first_sheet_rows_keyed_by_header(self):
        data = _xlsx_bytes([["MODEL", "grupa I", "KOLOR"], ["BOSTON", 2000, None], ["MILANO", 3000, "biały"]])
        rows = parse_excel(data)
        assert rows == [
            {"MODEL": "BOSTON", "grupa I": 2000, "KOLOR": ""},
            {"MODEL": "MILANO", "grupa I": 3000, "KOLOR": "biały"},
        ]

    def test_not_a_spreadsheet(self):
        with pytest.raises(ValidationError):
            parse_excel(b"definitely not xlsx")

    def test_unreadable_spreadsheet_is_logged(self):
        with patch("cennik.ingest.log_processing_error") as log_error:
            with pytest.raises(ValidationError):
                parse_excel(b"definitely not xlsx")
        assert log_error.call_args.kwargs["operation"] == "parse_excel"


class TestMatching:
    def test_case_and_whitespace_ignored(self):
        result = find_best_match("  fotel nidzica ", ["Fotel Nidzica"])
        assert result["match"] == "Fotel Nidzica"
        assert result["score"] == 1.0

    def test_score_is_normalised_edit_distance(self):
        # kitten -> sitting: 3 edits over 7 characters
        result = find_best_match("kitten", ["sitting"], threshold=0.5)
        assert result["score"] == pytest.approx(4 / 7)
        assert result["match"] == "sitting"

    def test_best_match_above_threshold(self):
        result = find_best_match("Fotel Nidzca", ["Fotel Nidzica", "Pufa", "Sofa"])
        assert result["match"] == "Fotel Nidzica"
        assert result["suggestions"][0] == "Fotel Nidzica"

    def test_no_match_below_threshold(self):
        result = find_best_match("Szafa", ["Fotel Nidzica"])
        assert result["match"] is None

    def test_no_candidates(self):
        assert find_best_match("x", []) == {"match": None, "score": 0, "suggestions": []}

    def test_conflicts_by_previous_name(self):
        existing = [{"name": "Pufa", "previousName": "Puf Mały", "elements": [{}]}]
        conflicts = detect_conflicts(existing, [{"name": "puf mały", "elements": [{}, {}]}], has_elements=True)
        assert len(conflicts) == 1
        assert conflicts[0]["type"] == "different_elements"

    def test_conflicts_by_table_key(self):
        existing = [{"MODEL": "BOSTON"}]
        conflicts = detect_conflicts(existing, [{"name": "boston"}, {"name": "ROMA"}], name_field="MODEL")
        assert [c["productName"] for c in conflicts] == ["boston"]
        assert conflicts[0]["type"] == "exists"


class TestMatchImportRows:
    CATALOG = {
        "products": [
            {"name": "Fotel Nidzica", "elements": [{"code": "1F"}]},
            {"name": "Pufa", "previousName": "Puf Mały", "elements": [{"code": "PF"}]},
        ]
    }

    def test_exact_fuzzy_and_unknown_rows(self):
        rows = [{"name": "PUF MAŁY"}, {"name": "Fotel Nidzca"}, {"name": "Komoda Wysoka"}, {"name": ""}]
        result = match_import_rows(rows, self.CATALOG)

        assert result["matched"] == [{"excelName": "PUF MAŁY", "product": "Pufa", "score": 1.0}]
        assert result["suggestions"][0]["name"] == "Fotel Nidzca"
        assert result["suggestions"][0]["bestMatch"] == "Fotel Nidzica"
        assert result["notFound"] == ["Komoda Wysoka"]
        assert [c["productName"] for c in result["conflicts"]] == ["PUF MAŁY"]

    def test_table_layout_reads_model_column(self):
        catalog = {"Arkusz1": [{"MODEL": "BOSTON", "grupa I": 2000}]}
        result = match_import_rows([{"MODEL": "boston", "grupa I": 2100}], catalog)
        assert result["matched"][0]["product"] == "BOSTON"
        assert result["conflicts"][0]["type"] == "exists"

    def test_categories_layout(self):
        catalog = {"categories": {"Stoły": {"TRIM": {"prices": {"Grupa I": 1000}}}}}
        result = match_import_rows([{"Nazwa": "Trimm"}], catalog)
        assert result["matched"] == []
        assert result["suggestions"][0]["bestMatch"] == "TRIM"


class TestExtractJsonBlock:
    def test_fenced_json(self):
        assert extract_json_block('Oto dane:\n```json\n{"a": 1}\n```') == {"a": 1}

    def test_bare_json(self):
        assert extract_json_block('{"a": [1, 2]}') == {"a": [1, 2]}

    def test_invalid(self):
        with pytest.raises(CennikError):
            extract_json_block("nie wiem")


class TestCompareAndAnalyze:
    def test_categories_comparison(self):
        current = {"title": "A", "categories": {"Stoły": {"TRIM": {"prices": {"Grupa I": 1000}}, "OSLO": {}}}}
        extracted = {"title": "B", "categories": {"Stoły": {"TRIM": {"prices": {"Grupa I": "1 100 zł"}}, "NOWY": {}}}}

        changes = compare_extracted_data(current, extracted, "bomar")
        types = [c["type"] for c in changes]

        assert types.count("data_change") == 1
        assert types.count("new_product") == 1
        assert types.count("removed_product") == 1
        price = next(c for c in changes if c["type"] == "price_change")
        assert price["newPrice"] == 1100
        assert price["percentChange"] == 10
        assert price["priceGroup"] == "Grupa I"

    def test_table_comparison(self):
        current = {"Arkusz1": [{"MODEL": "BOSTON", "grupa I": 2000}]}
        extracted = {"Arkusz1": [{"MODEL": "BOSTON", "grupa I": 2100}, {"MODEL": "ROMA"}]}
        changes = compare_extracted_data(current, extracted, "puszman")
        assert {c["type"] for c in changes} == {"price_change", "new_product"}

    def test_analyze_pdf(self, mock_openai_client):
        current = {"Arkusz1": [{"MODEL": "BOSTON", "grupa I": 2000}]}
        answer = {"Arkusz1": [{"MODEL": "BOSTON", "grupa I": 2200}]}
        mock_openai_client.responses.create.return_value = MagicMock(
            output_text="```json\n" + json.dumps(answer) + "\n```"
        )

        result = analyze_pdf(b"%PDF-1.4", current, "puszman", client=mock_openai_client)

        assert result["extractedData"] == answer
        assert result["summary"]["priceChanges"] == 1
        assert result["summary"]["totalChanges"] == 1
        prompt = mock_openai_client.responses.create.call_args.kwargs["input"][0]["content"][1]["text"]
        assert "BOSTON" in prompt

    def test_analyze_pdf_non_object_answer(self, mock_openai_client):
        mock_openai_client.responses.create.return_value = MagicMock(output_text="[1, 2]")
        with pytest.raises(CennikError):
            analyze_pdf(b"%PDF-1.4", {}, "bomar", client=mock_openai_client)
