"""Coerce model output into the stable analysis shape.

The model does not always honour the requested schema: sections go missing,
``findings`` comes back as a paragraph, booleans arrive as strings, evidence
lists contain bare strings. Everything downstream (the HTTP response and the
exporters) relies on the shape produced here.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional

logger = logging.getLogger("medreport.schema")

PATIENT_FIELDS = ("patientId", "name", "age", "gender", "birthDate")
EXAM_FIELDS = ("examType", "examPart", "examDate", "hospital", "referringPhysician", "readingPhysician", "modality")
_EXAM_ALIASES = {"hospital": ("institution",), "examType": ("studyType",)}

SEVERITIES = ("normal", "mild", "moderate", "severe")
PRIORITIES = ("HIGH", "MODERATE", "LOW")
URGENCIES = ("low", "medium", "high")

_SEVERITY_WORDS = {
    "normal": "normal", "none": "normal", "unremarkable": "normal", "within normal limits": "normal",
    "정상": "normal",
    "mild": "mild", "minimal": "mild", "slight": "mild", "minor": "mild", "경증": "mild",
    "moderate": "moderate", "medium": "moderate", "중등도": "moderate",
    "severe": "severe", "marked": "severe", "critical": "severe", "serious": "severe", "중증": "severe",
}
_PRIORITY_WORDS = {
    "high": "HIGH", "urgent": "HIGH", "높음": "HIGH",
    "moderate": "MODERATE", "medium": "MODERATE", "중간": "MODERATE",
    "low": "LOW", "낮음": "LOW",
}
_URGENCY_WORDS = {
    "low": "low", "routine": "low", "낮음": "low",
    "medium": "medium", "moderate": "medium", "soon": "medium", "중간": "medium",
    "high": "high", "urgent": "high", "emergency": "high", "immediate": "high", "높음": "high",
}
_TRUE_WORDS = {"true", "yes", "y", "1", "normal", "정상"}
_FALSE_WORDS = {"false", "no", "n", "0", "abnormal", "이상"}

ICD10_RX = re.compile(r"^[A-Z][0-9][0-9A-Z](?:\.[0-9A-Z]{1,4})?$")
_ICD_PREFIX_RX = re.compile(r"^\s*ICD[\s-]*10(?:[\s-]*CM)?\s*[:#]?\s*", re.IGNORECASE)

DISCLAIMER = {
    "korean": (
        "⚠️ 중요 고지사항\n\n"
        "이 분석 결과는 AI 보조 분석 도구로 생성된 예비 관찰 소견입니다.\n\n"
        "• 최종 진단이 아닌 참고 자료입니다\n"
        "• 실제 진단은 영상의학과 전문의의 공식 판독이 필요합니다\n"
        "• 치료 결정의 근거로 사용할 수 없습니다\n"
        "• 의료진 판독을 대체할 수 없습니다\n\n"
        "반드시 영상의학과 전문의의 판독을 받으시기 바랍니다."
    ),
    "english": (
        "IMPORTANT DISCLAIMER\n\n"
        "This analysis is a preliminary observation generated by an AI-assisted analysis tool.\n\n"
        "• This is reference material, not a final diagnosis\n"
        "• Actual diagnosis requires official interpretation by a board-certified radiologist\n"
        "• Cannot be used as basis for treatment decisions\n"
        "• Cannot replace physician interpretation\n\n"
        "Please ensure you receive an official reading from a radiologist."
    ),
}


# -----------------------
# scalar coercion
# -----------------------
def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, (list, tuple)):
        return ", ".join(t for t in (_text(v) for v in value) if t)
    if isinstance(value, dict):
        return ", ".join(t for t in (_text(v) for v in value.values()) if t)
    return str(value)


def _dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _list(value: Any) -> List[Any]:
    if value is None or value == "":
        return []
    if isinstance(value, list):
        return value
    return [value]


def _strings(value: Any) -> List[str]:
    return [t for t in (_text(v) for v in _list(value)) if t]


def _lookup(value: Any, table: Dict[str, str]) -> str:
    word = _text(value).lower()
    if not word:
        return ""
    if word in table:
        return table[word]
    for key, canon in table.items():
        if re.search(rf"\b{re.escape(key)}\b", word):
            return canon
    return ""


def normalize_severity(value: Any) -> str:
    return _lookup(value, _SEVERITY_WORDS)


def normalize_priority(value: Any, default: str = "MODERATE") -> str:
    return _lookup(value, _PRIORITY_WORDS) or default


def normalize_urgency(value: Any) -> str:
    return _lookup(value, _URGENCY_WORDS)


def coerce_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    word = _text(value).lower()
    if word in _TRUE_WORDS:
        return True
    if word in _FALSE_WORDS:
        return False
    return None


def normalize_icd10(code: Any) -> str:
    text = _ICD_PREFIX_RX.sub("", _text(code)).upper().replace(" ", "")
    return text


def is_valid_icd10(code: str) -> bool:
    return bool(ICD10_RX.match(code or ""))


# -----------------------
# stage 1: extraction
# -----------------------
def _finding(item: Any) -> Optional[Dict[str, Any]]:
    if isinstance(item, dict):
        description = _text(item.get("description") or item.get("finding") or item.get("text"))
        category = _text(item.get("category") or item.get("location")) or "General"
        severity = normalize_severity(item.get("severity"))
        is_normal = coerce_bool(item.get("isNormal"))
    else:
        description = _text(item)
        category = "General"
        severity = ""
        is_normal = None
    if not description:
        return None
    if is_normal is None:
        is_normal = severity == "normal"
    if not severity and is_normal:
        severity = "normal"
    return {"category": category, "description": description, "isNormal": is_normal, "severity": severity}


def _worst_severity(findings: List[Dict[str, Any]]) -> str:
    ranked = [SEVERITIES.index(f["severity"]) for f in findings if f.get("severity") in SEVERITIES]
    return SEVERITIES[max(ranked)] if ranked else ""


def _medical_term(item: Any) -> Optional[Dict[str, str]]:
    if isinstance(item, dict):
        term = _text(item.get("term") or item.get("koreanTerm"))
        explanation = _text(
            item.get("explanation") or item.get("simpleExplanation") or item.get("detailedExplanation")
        )
    else:
        term, explanation = _text(item), ""
    if not term:
        return None
    return {"term": term, "explanation": explanation}


def normalize_extraction(obj: Dict[str, Any]) -> Dict[str, Any]:
    obj = _dict(obj)
    raw_patient = _dict(obj.get("patientInfo"))
    patient = {k: _text(raw_patient.get(k)) for k in PATIENT_FIELDS}

    raw_exam = _dict(obj.get("examInfo"))
    exam = {}
    for key in EXAM_FIELDS:
        value = raw_exam.get(key)
        for alias in _EXAM_ALIASES.get(key, ()):
            value = value or raw_exam.get(alias)
        exam[key] = _text(value)

    findings = [f for f in (_finding(i) for i in _list(obj.get("findings"))) if f]

    raw_impression = obj.get("impression")
    if isinstance(raw_impression, dict):
        impression = {
            "summary": _text(raw_impression.get("summary")),
            "diagnosis": _text(raw_impression.get("diagnosis")),
            "overallSeverity": normalize_severity(raw_impression.get("overallSeverity")),
        }
    else:
        impression = {"summary": _text(raw_impression), "diagnosis": "", "overallSeverity": ""}
    if not impression["overallSeverity"]:
        impression["overallSeverity"] = _worst_severity(findings)

    terms = [t for t in (_medical_term(i) for i in _list(obj.get("medicalTerms"))) if t]

    return {
        "patientInfo": patient,
        "examInfo": exam,
        "findings": findings,
        "impression": impression,
        "medicalTerms": terms,
    }


# -----------------------
# stage 2: coding + plan
# -----------------------
def _feature(item: Any) -> Optional[Dict[str, str]]:
    if isinstance(item, dict):
        feature = {
            "technicalTerm": _text(item.get("technicalTerm") or item.get("term")),
            "simpleName": _text(item.get("simpleName")),
            "whatItMeans": _text(item.get("whatItMeans")),
            "locationInImage": _text(item.get("locationInImage") or item.get("location")),
            "analogy": _text(item.get("analogy")),
            "whyImportant": _text(item.get("whyImportant")),
        }
        if not feature["technicalTerm"]:
            feature["technicalTerm"] = feature["simpleName"]
        if not feature["simpleName"]:
            feature["simpleName"] = feature["technicalTerm"]
        return feature if feature["technicalTerm"] else None
    text = _text(item)
    if not text:
        return None
    return {
        "technicalTerm": text,
        "simpleName": text,
        "whatItMeans": "Observed on the image.",
        "locationInImage": "",
        "analogy": "",
        "whyImportant": "",
    }


def _disease(item: Any, warnings: List[str]) -> Optional[Dict[str, Any]]:
    if not isinstance(item, dict):
        name = _text(item)
        item = {"name": name} if name else {}
    code = normalize_icd10(item.get("code"))
    name = _text(item.get("name"))
    english = _text(item.get("englishName"))
    if not (code or name or english):
        return None
    if code and not is_valid_icd10(code):
        logger.warning("model emitted an invalid ICD-10 code %r", code)
        warnings.append(f"'{code}' does not look like a valid ICD-10 code.")
    return {
        "code": code,
        "name": name or english,
        "englishName": english or name,
        "description": _text(item.get("description")),
        "priority": normalize_priority(item.get("priority")),
        "observedFeatures": [f for f in (_feature(i) for i in _list(item.get("observedFeatures"))) if f],
        "nextSteps": _strings(item.get("nextSteps")),
        "references": _strings(item.get("references")),
    }


def _test(item: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(item, dict):
        name = _text(item)
        item = {"name": name} if name else {}
    name = _text(item.get("name"))
    english = _text(item.get("englishName"))
    if not (name or english):
        return None
    return {
        "name": name or english,
        "englishName": english,
        "reason": _text(item.get("reason")),
        "whatItChecks": _text(item.get("whatItChecks")),
        "fastingRequired": bool(coerce_bool(item.get("fastingRequired"))),
        "estimatedCost": _text(item.get("estimatedCost") or item.get("cost")),
        "priority": normalize_priority(item.get("priority")),
    }


# Older prompt revisions nested the plan under these two blocks.
_STRATEGY_BLOCKS = ("clinicStrategy", "universityHospitalStrategy")

CHECKLIST_FIELDS = ("item", "importance", "reason", "howToGet")
TIMELINE_FIELDS = ("when", "action", "details")
DEPARTMENT_FIELDS = ("department", "priority", "reason")
DOCUMENT_FIELDS = ("document", "importance", "reason", "howToGet")
INSURANCE_FIELDS = ("tip", "benefit")
COST_FIELDS = ("required", "additional", "total", "withInsurance")


def _strategy_value(recs: Dict[str, Any], key: str) -> Any:
    value = recs.get(key)
    if value:
        return value
    for block in _STRATEGY_BLOCKS:
        value = _dict(recs.get(block)).get(key)
        if value:
            return value
    return None


def _record(item: Any, fields, key: str, aliases: Optional[Dict[str, tuple]] = None) -> Optional[Dict[str, str]]:
    """Coerce one plan entry to ``fields``; a bare string fills ``key``."""
    if not isinstance(item, dict):
        text = _text(item)
        item = {key: text} if text else {}
    record = {}
    for name in fields:
        value = item.get(name)
        for alias in (aliases or {}).get(name, ()):
            value = value or item.get(alias)
        record[name] = _text(value)
    return record if record[key] else None


def _records(value: Any, fields, key: str, aliases: Optional[Dict[str, tuple]] = None) -> List[Dict[str, str]]:
    return [r for r in (_record(i, fields, key, aliases) for i in _list(value)) if r]


def _timeline(recs: Dict[str, Any]) -> List[Dict[str, str]]:
    raw = list(_list(recs.get("timeline")))
    if not raw:
        for block in _STRATEGY_BLOCKS:
            raw.extend(_list(_dict(recs.get(block)).get("timeline")))
    return _records(raw, TIMELINE_FIELDS, "action", {"when": ("day", "week")})


def _cost_summary(value: Any) -> Dict[str, str]:
    if isinstance(value, dict):
        return {name: _text(value.get(name)) for name in COST_FIELDS}
    summary = dict.fromkeys(COST_FIELDS, "")
    summary["total"] = _text(value)
    return summary


def _required_tests(recs: Dict[str, Any]) -> List[Dict[str, Any]]:
    items: List[Any] = []
    for entry in _list(_strategy_value(recs, "requiredTests")):
        # tests may be grouped by category
        if isinstance(entry, dict) and isinstance(entry.get("tests"), list):
            items.extend(entry["tests"])
        else:
            items.append(entry)
    return [t for t in (_test(i) for i in items) if t]


def empty_coding() -> Dict[str, Any]:
    return normalize_coding({})


def normalize_coding(obj: Dict[str, Any], warnings: Optional[List[str]] = None) -> Dict[str, Any]:
    warnings = warnings if warnings is not None else []
    obj = _dict(obj)
    raw_codes = obj.get("diseaseCodes")
    if isinstance(raw_codes, list):
        raw_codes = {"primary": raw_codes}
    raw_codes = _dict(raw_codes)
    codes = {
        tier: [d for d in (_disease(i, warnings) for i in _list(raw_codes.get(tier))) if d]
        for tier in ("primary", "secondary")
    }

    recs = _dict(obj.get("recommendations"))
    recommendations = {
        "urgency": normalize_urgency(recs.get("urgency")),
        "followUp": _text(recs.get("followUp")),
        "department": _text(recs.get("department")),
        "notes": _text(recs.get("notes")),
        "requiredTests": _required_tests(recs),
        "questionsToAsk": _strings(_strategy_value(recs, "questionsToAsk")),
        "whenToGo": _strings(_strategy_value(recs, "whenToGo")),
        "recommendedDepartments": _records(
            _strategy_value(recs, "recommendedDepartments"), DEPARTMENT_FIELDS, "department"
        ),
        "preparationChecklist": _records(_strategy_value(recs, "preparationChecklist"), CHECKLIST_FIELDS, "item"),
        "timeline": _timeline(recs),
        "costSummary": _cost_summary(_strategy_value(recs, "costSummary")),
        "additionalDocuments": _records(_strategy_value(recs, "additionalDocuments"), DOCUMENT_FIELDS, "document"),
        "insuranceTips": _records(_strategy_value(recs, "insuranceTips"), INSURANCE_FIELDS, "tip"),
    }
    return {"diseaseCodes": codes, "recommendations": recommendations}


# -----------------------
# merged result
# -----------------------
def merge_analysis(extraction: Dict[str, Any], coding: Dict[str, Any], warnings: List[str]) -> Dict[str, Any]:
    result = dict(extraction)
    result["diseaseCodes"] = coding["diseaseCodes"]
    result["recommendations"] = coding["recommendations"]
    result["disclaimer"] = dict(DISCLAIMER)
    result["warnings"] = list(dict.fromkeys(warnings))
    return result


def normalize_analysis(obj: Dict[str, Any]) -> Dict[str, Any]:
    """Normalise a complete result, e.g. one posted back by a client for export."""
    obj = _dict(obj)
    warnings = _strings(obj.get("warnings"))
    return merge_analysis(normalize_extraction(obj), normalize_coding(obj, warnings), warnings)
