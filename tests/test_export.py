import glob
import io
from datetime import datetime

import pytest
from openpyxl import load_workbook

from medreport import export
from medreport.errors import ExportError
from medreport.schema import normalize_analysis

FONT_GLOBS = (
    "/usr/share/fonts/**/DejaVuSans.ttf",
    "/usr/share/fonts/**/LiberationSans-Regular.ttf",
    "/usr/share/fonts/**/Noto*-Regular.ttf",
    "/Library/Fonts/*.ttf",
)


@pytest.fixture
def result(extraction_payload, coding_payload):
    return normalize_analysis({**extraction_payload, **coding_payload, "warnings": ["Check the exam date."]})


def test_text_export_has_all_sections(result):
    text = export.to_text(result, generated_at=datetime(2024, 3, 2, 9, 30))

    for heading in (
        "[ Patient Information ]",
        "[ Examination Information ]",
        "[ Impression ]",
        "[ Detailed Findings ]",
        "[ Diagnostic Codes (ICD-10) ]",
        "[ Medical Terms ]",
        "[ Recommendations ]",
    ):
        assert heading in text
    assert "Name: Jane Doe" in text
    assert "I63.9 - Cerebral infarction, unspecified [primary, HIGH]" in text
    assert "   - Diffusion restriction: Recent damage to brain tissue." in text
    assert "Status: Abnormal (moderate)" in text
    assert "- Test: Carotid ultrasound [HIGH]" in text
    assert "Note: Check the exam date." in text
    assert "IMPORTANT DISCLAIMER" in text
    assert "Report generated: 2024-03-02 09:30:00" in text


def test_text_export_skips_empty_fields(result):
    result["patientInfo"]["birthDate"] = ""
    result["medicalTerms"] = []
    text = export.to_text(result)

    assert "Birth Date:" not in text
    assert "[ Medical Terms ]" not in text


def test_xlsx_export_sheets(result):
    wb = load_workbook(io.BytesIO(export.to_xlsx(result)))

    assert wb.sheetnames == [
        "Patient", "Exam", "Findings", "Impression", "Medical Terms", "Diagnoses", "Tests", "Recommendations", "Visit Plan",
    ]
    findings = wb["Findings"]
    assert [c.value for c in findings[1]] == ["#", "Category", "Description", "Status", "Severity"]
    assert findings["B2"].value == "Brain parenchyma"
    assert wb["Diagnoses"]["B2"].value == "I63.9"


def test_xlsx_export_omits_terms_sheet_when_empty(result):
    result["medicalTerms"] = []
    wb = load_workbook(io.BytesIO(export.to_xlsx(result)))
    assert "Medical Terms" not in wb.sheetnames


def test_pdf_export_renders(result):
    data = export.to_pdf(result)
    assert data.startswith(b"%PDF")


def test_pdf_export_handles_korean_without_a_font(result):
    result["impression"]["summary"] = "급성 뇌경색"
    result["findings"][0]["description"] = "좌측 중대뇌동맥 영역의 급성 경색"
    assert export.to_pdf(result).startswith(b"%PDF")


def test_pdf_export_with_missing_font_falls_back(result):
    assert export.to_pdf(result, font_path="/nonexistent/font.ttf").startswith(b"%PDF")


def test_latin1_safe():
    assert export.latin1_safe("Left – “MCA” territory") == 'Left - "MCA" territory'
    assert export.latin1_safe("급성 뇌경색") == export.NON_LATIN_PLACEHOLDER
    assert export.latin1_safe("CT 급성 scan") == "CT scan"
    assert export.latin1_safe("") == ""


def test_render_dispatches_on_format(result):
    assert export.render(result, "text").decode("utf-8").startswith("=" * 60)
    assert export.render(result, "excel")[:2] == b"PK"
    assert export.render(result, "pdf")[:4] == b"%PDF"
    with pytest.raises(ExportError):
        export.render(result, "docx")


def test_export_filename():
    assert export.export_filename("brain scan.png", "pdf") == "brain_scan_analysis.pdf"
    assert export.export_filename(None, "excel") == "medical_report_analysis.xlsx"
    assert export.export_filename("../../etc/passwd", "text") == "passwd_analysis.txt"


def test_text_export_includes_visit_plan(result):
    text = export.to_text(result)

    assert "[ Visit Planning ]" in text
    assert "When to Go:\n  - Sudden weakness or speech trouble" in text
    assert "  - MRI CD: required - For comparison - Imaging desk" in text
    assert "  - Week 1 - Neurology visit" in text
    assert "  - Total: About 200,000 KRW" in text


def test_xlsx_visit_plan_sheet(result):
    wb = load_workbook(io.BytesIO(export.to_xlsx(result)))
    rows = [tuple(c.value for c in row) for row in wb["Visit Plan"].iter_rows(min_row=2)]

    assert ("When to Go", "Sudden weakness or speech trouble", None) in rows
    assert ("Estimated Cost", "Total", "About 200,000 KRW") in rows


def test_xlsx_omits_visit_plan_when_empty(result):
    result["recommendations"] = normalize_analysis({})["recommendations"]
    wb = load_workbook(io.BytesIO(export.to_xlsx(result)))
    assert "Visit Plan" not in wb.sheetnames


def test_pdf_export_handles_very_long_text(result):
    result["findings"][0]["description"] = "Diffuse restricted diffusion is noted. " * 150
    result["impression"]["summary"] = "Summary sentence of the impression. " * 400
    result["impression"]["diagnosis"] = "Possible infarction " * 100
    result["recommendations"]["requiredTests"][0]["reason"] = "Further evaluation is needed. " * 200
    result["recommendations"]["notes"] = "Keep monitoring. " * 300

    data = export.to_pdf(result)

    assert data.startswith(b"%PDF")


def test_pdf_export_with_unicode_font(result):
    fonts = [p for pattern in FONT_GLOBS for p in glob.glob(pattern, recursive=True)]
    if not fonts:
        pytest.skip("no TrueType font installed")

    pdf = export.ReportPDF(font_path=fonts[0])
    assert pdf.unicode_font
    assert pdf.safe("Naïve – “quoted”") == "Naïve – “quoted”"
    assert export.to_pdf(result, font_path=fonts[0]).startswith(b"%PDF")
