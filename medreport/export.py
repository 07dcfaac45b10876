"""Render an analysis result as plain text, an Excel workbook or a PDF.

All three take the normalised result produced by ``schema.normalize_analysis``
and lay it out in fixed sections; fields the model left empty are skipped.
"""

from __future__ import annotations

import io
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import pandas as pd
from fpdf import FPDF, XPos, YPos
from openpyxl.utils import get_column_letter
from werkzeug.utils import secure_filename

from .errors import ExportError

logger = logging.getLogger("medreport.export")

# alias -> (kind, mimetype, extension)
EXPORT_FORMATS = {
    "text": ("text", "text/plain; charset=utf-8", "txt"),
    "txt": ("text", "text/plain; charset=utf-8", "txt"),
    "excel": ("xlsx", "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet", "xlsx"),
    "xlsx": ("xlsx", "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet", "xlsx"),
    "pdf": ("pdf", "application/pdf", "pdf"),
}

PATIENT_LABELS = (
    ("patientId", "Patient ID"),
    ("name", "Name"),
    ("age", "Age"),
    ("gender", "Gender"),
    ("birthDate", "Birth Date"),
)
EXAM_LABELS = (
    ("examType", "Exam Type"),
    ("examPart", "Exam Part"),
    ("examDate", "Exam Date"),
    ("modality", "Modality"),
    ("hospital", "Hospital"),
    ("referringPhysician", "Referring Physician"),
    ("readingPhysician", "Reading Physician"),
)
RECOMMENDATION_LABELS = (
    ("urgency", "Urgency"),
    ("followUp", "Follow-up"),
    ("department", "Department"),
    ("notes", "Notes"),
)

PDF_DISCLAIMER = (
    "This AI-assisted analysis is for reference only.",
    "Final diagnosis must be confirmed by a board-certified radiologist.",
    "This report cannot be used as a basis for treatment decisions.",
    "Always consult with qualified medical professionals.",
)
COST_LABELS = (
    ("required", "Required tests"),
    ("additional", "Additional tests"),
    ("total", "Total"),
    ("withInsurance", "With insurance"),
)
PDF_MAX_TERMS = 5
# fpdf2 cannot split a table row across pages
PDF_CELL_MAX_CHARS = 300
RULE = "=" * 60
THIN_RULE = "-" * 60


def export_filename(base: Optional[str], fmt: str) -> str:
    if fmt not in EXPORT_FORMATS:
        raise ExportError(f"Unknown export format: {fmt}")
    stem = secure_filename(Path(base or "").stem) or "medical_report"
    return f"{stem}_analysis.{EXPORT_FORMATS[fmt][2]}"


def _status(finding: Dict[str, Any]) -> str:
    return "Normal" if finding.get("isNormal") else "Abnormal"


def _pairs(section: Dict[str, Any], labels: Sequence[Tuple[str, str]]) -> List[Tuple[str, str]]:
    return [(label, section.get(key, "")) for key, label in labels if section.get(key)]


def _all_diseases(result: Dict[str, Any]) -> Iterable[Tuple[str, Dict[str, Any]]]:
    codes = result.get("diseaseCodes", {})
    for tier in ("primary", "secondary"):
        for disease in codes.get(tier, []):
            yield tier, disease


def _join(*parts: str) -> str:
    return " - ".join(p for p in parts if p)


def _plan_rows(recs: Dict[str, Any]) -> List[Tuple[str, str, str]]:
    """Flatten the visit plan to ``(section, item, details)`` rows."""
    rows: List[Tuple[str, str, str]] = []
    rows.extend(("When to Go", w, "") for w in recs.get("whenToGo", []))
    rows.extend(
        ("Departments", d["department"], _join(d["priority"], d["reason"]))
        for d in recs.get("recommendedDepartments", [])
    )
    rows.extend(
        ("Preparation Checklist", c["item"], _join(c["importance"], c["reason"], c["howToGet"]))
        for c in recs.get("preparationChecklist", [])
    )
    rows.extend(("Timeline", _join(t["when"], t["action"]), t["details"]) for t in recs.get("timeline", []))
    cost = recs.get("costSummary", {})
    rows.extend(("Estimated Cost", label, cost[key]) for key, label in COST_LABELS if cost.get(key))
    rows.extend(
        ("Documents to Bring", d["document"], _join(d["importance"], d["reason"], d["howToGet"]))
        for d in recs.get("additionalDocuments", [])
    )
    rows.extend(("Insurance Tips", t["tip"], t["benefit"]) for t in recs.get("insuranceTips", []))
    return rows


# -----------------------
# plain text
# -----------------------
def to_text(result: Dict[str, Any], generated_at: Optional[datetime] = None) -> str:
    generated_at = generated_at or datetime.now()
    out: List[str] = [RULE, "MEDICAL IMAGE REPORT ANALYSIS", RULE, ""]

    def section(title: str) -> None:
        out.append(f"[ {title} ]")
        out.append(THIN_RULE)

    section("Patient Information")
    out.extend(f"{label}: {value}" for label, value in _pairs(result["patientInfo"], PATIENT_LABELS))
    out.append("")

    section("Examination Information")
    out.extend(f"{label}: {value}" for label, value in _pairs(result["examInfo"], EXAM_LABELS))
    out.append("")

    impression = result["impression"]
    section("Impression")
    if impression.get("overallSeverity"):
        out.append(f"Severity: {impression['overallSeverity']}")
    if impression.get("diagnosis"):
        out.append(f"Diagnosis: {impression['diagnosis']}")
    out.append(f"Summary: {impression.get('summary', '')}")
    out.append("")

    section("Detailed Findings")
    for i, finding in enumerate(result["findings"], 1):
        out.append("")
        out.append(f"{i}. {finding['category']}")
        severity = f" ({finding['severity']})" if finding.get("severity") else ""
        out.append(f"   Status: {_status(finding)}{severity}")
        out.append(f"   Details: {finding['description']}")
    out.append("")

    diseases = list(_all_diseases(result))
    if diseases:
        section("Diagnostic Codes (ICD-10)")
        for tier, disease in diseases:
            out.append("")
            out.append(f"{disease['code'] or 'N/A'} - {disease['englishName'] or disease['name']} [{tier}, {disease['priority']}]")
            if disease.get("description"):
                out.append(f"   {disease['description']}")
            for feature in disease.get("observedFeatures", []):
                meaning = f": {feature['whatItMeans']}" if feature.get("whatItMeans") else ""
                out.append(f"   - {feature['technicalTerm']}{meaning}")
                if feature.get("analogy"):
                    out.append(f"     Like: {feature['analogy']}")
            for step in disease.get("nextSteps", []):
                out.append(f"   > {step}")
            for ref in disease.get("references", []):
                out.append(f"   Ref: {ref}")
        out.append("")

    if result["medicalTerms"]:
        section("Medical Terms")
        for i, term in enumerate(result["medicalTerms"], 1):
            out.append("")
            out.append(f"{i}. {term['term']}")
            if term.get("explanation"):
                out.append(f"   {term['explanation']}")
        out.append("")

    recs = result["recommendations"]
    section("Recommendations")
    out.extend(f"{label}: {value}" for label, value in _pairs(recs, RECOMMENDATION_LABELS))
    for test in recs.get("requiredTests", []):
        name = test["name"]
        if test.get("englishName") and test["englishName"] != name:
            name = f"{name} ({test['englishName']})"
        out.append(f"- Test: {name} [{test['priority']}]")
        if test.get("reason"):
            out.append(f"  Reason: {test['reason']}")
        if test.get("fastingRequired"):
            out.append("  Fasting required")
        if test.get("estimatedCost"):
            out.append(f"  Estimated cost: {test['estimatedCost']}")
    if recs.get("questionsToAsk"):
        out.append("Questions to ask your doctor:")
        out.extend(f"  * {q}" for q in recs["questionsToAsk"])
    out.append("")

    plan = _plan_rows(recs)
    if plan:
        section("Visit Planning")
        current = None
        for title, item, details in plan:
            if title != current:
                out.append(f"{title}:")
                current = title
            out.append(f"  - {item}: {details}" if details else f"  - {item}")
        out.append("")

    for warning in result.get("warnings", []):
        out.append(f"Note: {warning}")

    out.append("")
    out.append(result.get("disclaimer", {}).get("english", ""))
    out.append("")
    out.append(RULE)
    out.append(f"Report generated: {generated_at:%Y-%m-%d %H:%M:%S}")
    out.append(RULE)
    return "\n".join(out) + "\n"


# -----------------------
# spreadsheet
# -----------------------
def _sheets(result: Dict[str, Any]) -> List[Tuple[str, pd.DataFrame, Sequence[int]]]:
    kv = ["Field", "Value"]
    sheets = [
        ("Patient", pd.DataFrame([(l, result["patientInfo"].get(k, "")) for k, l in PATIENT_LABELS], columns=kv), (15, 30)),
        ("Exam", pd.DataFrame([(l, result["examInfo"].get(k, "")) for k, l in EXAM_LABELS], columns=kv), (20, 40)),
        (
            "Findings",
            pd.DataFrame(
                [(i, f["category"], f["description"], _status(f), f["severity"]) for i, f in enumerate(result["findings"], 1)],
                columns=["#", "Category", "Description", "Status", "Severity"],
            ),
            (8, 15, 50, 10, 10),
        ),
        (
            "Impression",
            pd.DataFrame(
                [
                    ("Overall Severity", result["impression"].get("overallSeverity", "")),
                    ("Diagnosis", result["impression"].get("diagnosis", "")),
                    ("Summary", result["impression"].get("summary", "")),
                ],
                columns=kv,
            ),
            (15, 60),
        ),
    ]
    if result["medicalTerms"]:
        sheets.append((
            "Medical Terms",
            pd.DataFrame(
                [(i, t["term"], t["explanation"]) for i, t in enumerate(result["medicalTerms"], 1)],
                columns=["#", "Term", "Explanation"],
            ),
            (8, 25, 60),
        ))
    sheets.append((
        "Diagnoses",
        pd.DataFrame(
            [
                (
                    tier,
                    d["code"],
                    d["name"],
                    d["englishName"],
                    d["priority"],
                    d["description"],
                    "; ".join(f["technicalTerm"] for f in d["observedFeatures"]),
                    "; ".join(d["nextSteps"]),
                )
                for tier, d in _all_diseases(result)
            ],
            columns=["Tier", "ICD-10", "Name", "English Name", "Priority", "Description", "Evidence", "Next Steps"],
        ),
        (10, 10, 25, 25, 10, 50, 40, 40),
    ))
    recs = result["recommendations"]
    sheets.append((
        "Tests",
        pd.DataFrame(
            [
                (
                    t["name"],
                    t["englishName"],
                    t["priority"],
                    t["reason"],
                    t["whatItChecks"],
                    "Yes" if t["fastingRequired"] else "No",
                    t["estimatedCost"],
                )
                for t in recs["requiredTests"]
            ],
            columns=["Test", "English Name", "Priority", "Reason", "What It Checks", "Fasting", "Estimated Cost"],
        ),
        (25, 25, 10, 50, 40, 8, 18),
    ))
    rec_rows = [(l, recs.get(k, "")) for k, l in RECOMMENDATION_LABELS]
    rec_rows.extend(("Question", q) for q in recs.get("questionsToAsk", []))
    sheets.append(("Recommendations", pd.DataFrame(rec_rows, columns=kv), (15, 60)))
    plan = _plan_rows(recs)
    if plan:
        sheets.append(("Visit Plan", pd.DataFrame(plan, columns=["Section", "Item", "Details"]), (22, 45, 60)))
    return sheets


def to_xlsx(result: Dict[str, Any]) -> bytes:
    buf = io.BytesIO()
    with pd.ExcelWriter(buf, engine="openpyxl") as writer:
        for name, frame, widths in _sheets(result):
            frame.to_excel(writer, sheet_name=name, index=False)
            sheet = writer.sheets[name]
            for i, width in enumerate(widths, 1):
                sheet.column_dimensions[get_column_letter(i)].width = width
    return buf.getvalue()


# -----------------------
# PDF
# -----------------------
_LATIN1_FOLD = {
    "–": "-", "—": "-", "−": "-",
    "‘": "'", "’": "'", "“": '"', "”": '"',
    "…": "...", "•": "-", " ": " ", "≤": "<=", "≥": ">=",
}
NON_LATIN_PLACEHOLDER = "[non-Latin text omitted]"


def latin1_safe(text: Any) -> str:
    """Fold text to what the PDF core fonts can draw."""
    raw = "" if text is None else str(text)
    folded = "".join(_LATIN1_FOLD.get(ch, ch) for ch in raw)
    kept = "".join(ch for ch in folded if ord(ch) < 256)
    kept = re.sub(r"[ \t]{2,}", " ", kept).strip()
    if raw.strip() and not kept:
        return NON_LATIN_PLACEHOLDER
    return kept


def _clip(value: Any, limit: int = PDF_CELL_MAX_CHARS) -> str:
    text = "" if value is None else str(value)
    return text if len(text) <= limit else text[: limit - 3].rstrip() + "..."


class ReportPDF(FPDF):
    def __init__(self, font_path: Optional[str] = None, generated_at: Optional[datetime] = None):
        super().__init__(format="A4")
        self.generated_at = generated_at or datetime.now()
        self.report_id = f"MRA-{int(self.generated_at.timestamp())}"
        self.report_font = "helvetica"
        self.unicode_font = False
        if font_path and Path(font_path).is_file():
            self.add_font("ReportSans", "", font_path)
            self.add_font("ReportSans", "B", font_path)
            self.report_font = "ReportSans"
            self.unicode_font = True
        elif font_path:
            logger.warning("PDF font %s not found; falling back to Helvetica", font_path)
        self.set_auto_page_break(auto=True, margin=18)

    def safe(self, value: Any) -> str:
        if self.unicode_font:
            return "" if value is None else str(value).strip()
        return latin1_safe(value)

    def footer(self):
        self.set_y(-12)
        self.set_font(self.report_font, size=8)
        self.cell(
            0, 5,
            f"Generated: {self.generated_at:%Y-%m-%d} | Report ID: {self.report_id} | Page {self.page_no()} of {{nb}}",
            align="C",
        )

    def section_heading(self, title: str) -> None:
        if self.get_y() > self.h - 50:
            self.add_page()
        self.ln(4)
        self.set_font(self.report_font, "B", 13)
        self.cell(0, 8, title, new_x=XPos.LMARGIN, new_y=YPos.NEXT)
        self.line(self.l_margin, self.get_y(), self.w - self.r_margin, self.get_y())
        self.ln(2)
        self.set_font(self.report_font, size=10)

    def text_block(self, text: str, size: int = 10, bold: bool = False, indent: float = 0) -> None:
        self.set_font(self.report_font, "B" if bold else "", size)
        self.set_x(self.l_margin + indent)
        self.multi_cell(0, 5, self.safe(text), new_x=XPos.LMARGIN, new_y=YPos.NEXT)

    def grid(self, headings: Sequence[str], rows: Sequence[Sequence[Any]], widths: Sequence[int], size: int = 9) -> None:
        self.set_font(self.report_font, size=size)
        with self.table(col_widths=tuple(widths)) as table:
            head = table.row()
            for h in headings:
                head.cell(h)
            for values in rows:
                row = table.row()
                for value in values:
                    row.cell(self.safe(_clip(value)))
        self.set_font(self.report_font, size=10)


def to_pdf(result: Dict[str, Any], font_path: Optional[str] = None, generated_at: Optional[datetime] = None) -> bytes:
    pdf = ReportPDF(font_path=font_path, generated_at=generated_at)
    pdf.add_page()

    pdf.set_font(pdf.report_font, "B", 18)
    pdf.cell(0, 10, "MEDICAL IMAGE ANALYSIS REPORT", align="C", new_x=XPos.LMARGIN, new_y=YPos.NEXT)
    pdf.set_font(pdf.report_font, size=10)
    pdf.cell(0, 6, "AI-assisted analysis", align="C", new_x=XPos.LMARGIN, new_y=YPos.NEXT)

    patient = _pairs(result["patientInfo"], PATIENT_LABELS)
    if patient:
        pdf.section_heading("PATIENT INFORMATION")
        pdf.grid(("Field", "Value"), patient, (45, 135), size=10)

    exam = _pairs(result["examInfo"], EXAM_LABELS)
    if exam:
        pdf.section_heading("EXAMINATION DETAILS")
        pdf.grid(("Field", "Value"), exam, (45, 135), size=10)

    impression = result["impression"]
    pdf.section_heading("IMPRESSION")
    pdf.text_block(f"Overall Severity: {impression.get('overallSeverity') or 'N/A'}", bold=True)
    for label, key in (("Diagnosis", "diagnosis"), ("Summary", "summary")):
        pdf.text_block(label, bold=True)
        pdf.text_block(impression.get(key) or "N/A", indent=4)

    if result["findings"]:
        pdf.section_heading("FINDINGS")
        for i, finding in enumerate(result["findings"], 1):
            severity = f" ({finding['severity']})" if finding.get("severity") else ""
            pdf.text_block(f"{i}. {finding['category']} - {_status(finding)}{severity}", bold=True)
            pdf.text_block(finding["description"], size=9, indent=4)

    pdf.section_heading("DIAGNOSIS (ICD-10 CODES)")
    diseases = list(_all_diseases(result))
    if not diseases:
        pdf.text_block("No diagnostic codes were generated.")
    for tier, disease in diseases:
        name = disease["englishName"] or disease["name"]
        pdf.text_block(f"{disease['code'] or 'N/A'} - {name}", bold=True)
        pdf.text_block(f"{tier.capitalize()} | Priority: {disease['priority']}", size=9, indent=4)
        if disease.get("description"):
            pdf.text_block(disease["description"], size=9, indent=4)
        features = disease.get("observedFeatures", [])
        if features:
            pdf.text_block("Evidence:", size=9, bold=True, indent=4)
            for feature in features:
                pdf.text_block(f"- {feature['technicalTerm']}", size=9, indent=8)
        pdf.ln(2)

    recs = result["recommendations"]
    pairs = _pairs(recs, RECOMMENDATION_LABELS)
    if pairs or recs.get("requiredTests"):
        pdf.section_heading("RECOMMENDATIONS")
        for label, value in pairs:
            pdf.text_block(f"{label}: {value}")
        if recs.get("requiredTests"):
            pdf.ln(2)
            pdf.grid(
                ("Test", "Priority", "Reason"),
                [(t["englishName"] or t["name"], t["priority"], t["reason"]) for t in recs["requiredTests"]],
                (50, 25, 105),
            )

    plan = _plan_rows(recs)
    if plan:
        pdf.section_heading("VISIT PLANNING")
        current = None
        for title, item, details in plan:
            if title != current:
                pdf.text_block(title, bold=True)
                current = title
            pdf.text_block(f"- {_join(item, details)}", size=9, indent=4)

    terms = result["medicalTerms"][:PDF_MAX_TERMS]
    if terms:
        pdf.section_heading("MEDICAL TERMINOLOGY")
        for term in terms:
            pdf.text_block(term["term"], bold=True)
            if term.get("explanation"):
                pdf.text_block(term["explanation"], size=9, indent=4)

    pdf.section_heading("IMPORTANT DISCLAIMER")
    for line in PDF_DISCLAIMER:
        pdf.text_block(line, size=9)

    return bytes(pdf.output())


def render(result: Dict[str, Any], fmt: str, *, font_path: Optional[str] = None) -> bytes:
    """Render ``result`` in the export format named by ``fmt``."""
    if fmt not in EXPORT_FORMATS:
        raise ExportError(f"Unknown export format: {fmt}", details=f"Use one of {', '.join(sorted(EXPORT_FORMATS))}.")
    kind = EXPORT_FORMATS[fmt][0]
    if kind == "text":
        return to_text(result).encode("utf-8")
    if kind == "xlsx":
        return to_xlsx(result)
    return to_pdf(result, font_path=font_path)
