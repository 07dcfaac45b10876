"""Prompt templates for the two analysis stages.

Stage 1 reads the report image (or PDF text) and extracts structured facts.
Stage 2 only sees the stage-1 findings, never the image or any patient
identifiers, and proposes ICD-10 codes and a follow-up test plan.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

EXTRACTION_SCHEMA = """{
  "patientInfo": {
    "patientId": "patient ID as printed, or empty string",
    "name": "patient name, or empty string",
    "age": "age (e.g. 70), or empty string",
    "gender": "M/F, or empty string",
    "birthDate": "date of birth, or empty string"
  },
  "examInfo": {
    "examType": "type of exam (e.g. Brain MRI)",
    "examPart": "body part examined",
    "examDate": "exam date in YYYY-MM-DD format",
    "hospital": "hospital or institution name",
    "referringPhysician": "referring physician",
    "readingPhysician": "reading radiologist",
    "modality": "imaging modality (CT, MRI, X-ray, US, ...)"
  },
  "findings": [
    {
      "category": "finding category (e.g. brain parenchyma, vessels, bones)",
      "description": "detailed description of the finding",
      "isNormal": true,
      "severity": "normal/mild/moderate/severe"
    }
  ],
  "impression": {
    "summary": "summary of the radiologist's impression",
    "diagnosis": "main diagnosis, if stated",
    "overallSeverity": "normal/mild/moderate/severe"
  },
  "medicalTerms": [
    {
      "term": "medical term as written in the report",
      "explanation": "plain-language explanation"
    }
  ]
}"""

CODING_SCHEMA = """{
  "diseaseCodes": {
    "primary": [
      {
        "code": "ICD-10 code (e.g. I63.9)",
        "name": "disease name",
        "englishName": "disease name in English",
        "description": "short explanation of the condition",
        "priority": "HIGH/MODERATE/LOW",
        "observedFeatures": [
          {
            "technicalTerm": "medical term for the observed feature",
            "simpleName": "plain name",
            "whatItMeans": "what this means, 2-3 sentences",
            "locationInImage": "where it was described",
            "analogy": "everyday comparison that makes it easier to understand",
            "whyImportant": "why this matters for the patient"
          }
        ],
        "nextSteps": ["concrete next step", "..."],
        "references": ["guideline or reference the code is based on"]
      }
    ],
    "secondary": []
  },
  "recommendations": {
    "urgency": "low/medium/high",
    "followUp": "recommended follow-up",
    "department": "recommended clinical department",
    "notes": "other precautions",
    "requiredTests": [
      {
        "name": "test name",
        "englishName": "test name in English",
        "reason": "why it is needed, 2-3 sentences",
        "whatItChecks": "what it checks",
        "fastingRequired": false,
        "estimatedCost": "approximate cost range, or empty string",
        "priority": "HIGH/MODERATE/LOW"
      }
    ],
    "questionsToAsk": ["question for the doctor", "..."],
    "whenToGo": ["situation in which to go to a university hospital", "..."],
    "recommendedDepartments": [
      {"department": "department name", "priority": "HIGH/MODERATE/LOW", "reason": "why"}
    ],
    "preparationChecklist": [
      {"item": "what to bring", "importance": "required/recommended", "reason": "why", "howToGet": "where to get it"}
    ],
    "timeline": [
      {"when": "e.g. Day 1 or Week 2", "action": "what to do", "details": "details"}
    ],
    "costSummary": {
      "required": "cost of required tests",
      "additional": "cost of possible additional tests",
      "total": "estimated total",
      "withInsurance": "estimated out-of-pocket with national insurance"
    },
    "additionalDocuments": [
      {"document": "document name", "importance": "required/recommended", "reason": "why", "howToGet": "where to get it"}
    ],
    "insuranceTips": [
      {"tip": "insurance tip", "benefit": "what it saves"}
    ]
  }
}"""

SAFETY_RULES = """Never:
- state unverified figures such as "87% confidence"
- use definitive language such as "this is certainly the diagnosis"
- decide on treatment
- present the output as a replacement for a specialist's reading"""


def extraction_system_prompt(language: str) -> str:
    return (
        "You are an AI system that assists with reading medical imaging reports.\n"
        "The document is provided for education, research or review by a medical professional. "
        "Your output is reference material that helps a patient prepare for a hospital visit; "
        "it is not a diagnostic tool.\n\n"
        f"{SAFETY_RULES}\n\n"
        "Respond ONLY with a JSON object in exactly this format:\n\n"
        f"{EXTRACTION_SCHEMA}\n\n"
        "Rules:\n"
        "1. Extract only information that is visible in the document. Do not imagine findings.\n"
        '2. Use an empty string ("") for anything that cannot be found.\n'
        "3. Explain medical terms so a layperson can understand them.\n"
        "4. Judge severity reasonably from the findings; severity is one of normal/mild/moderate/severe.\n"
        f"5. Write every free-text value in {language}; keep the JSON keys in English.\n"
        "6. The JSON must be complete and valid, starting with { and ending with }."
    )


def _hints_block(hints: Optional[Dict[str, str]]) -> str:
    hints = hints or {}
    return (
        "Anonymised case information:\n"
        f"- Case ID: {hints.get('patientId') or 'Anonymous'}\n"
        f"- Study Date: {hints.get('examDate') or 'Not specified'}\n"
        f"- Modality: {hints.get('examType') or 'Not specified'}"
    )


def extraction_messages(
    images: List[str],
    text: str,
    language: str,
    hints: Optional[Dict[str, str]] = None,
) -> List[Dict[str, Any]]:
    """Build the chat messages for stage 1.

    ``images`` are data URLs; ``text`` is the PDF text layer when there is one.
    """
    intro = (
        "The following is an anonymised medical report provided for review by a medical professional. "
        "Personal identifiers are handled in line with HIPAA and GDPR.\n\n"
        f"{_hints_block(hints)}\n\n"
        "Provide the analysis in the JSON format above. Include every field and make sure the JSON is complete."
    )
    if text and not images:
        content: Any = f"{intro}\n\nREPORT TEXT:\n{text}"
    else:
        parts: List[Dict[str, Any]] = [{"type": "text", "text": intro}]
        if text:
            parts.append({"type": "text", "text": f"Text found in the document:\n{text}"})
        for url in images:
            parts.append({"type": "image_url", "image_url": {"url": url}})
        content = parts
    return [
        {"role": "system", "content": extraction_system_prompt(language)},
        {"role": "user", "content": content},
    ]


def coding_system_prompt(language: str) -> str:
    return (
        "You are a medical coding assistant. You receive structured findings extracted from an imaging report "
        "and map them to ICD-10 codes, then outline the follow-up tests and questions a patient should bring "
        "to their doctor.\n\n"
        f"{SAFETY_RULES}\n\n"
        "Respond ONLY with a JSON object in exactly this format:\n\n"
        f"{CODING_SCHEMA}\n\n"
        "Rules:\n"
        "1. Base every code on the findings given; do not add conditions that are not supported by them.\n"
        "2. priority is one of HIGH/MODERATE/LOW; urgency is one of low/medium/high.\n"
        "3. observedFeatures must be an array of objects, never plain strings.\n"
        "4. If every finding is normal, return empty primary and secondary lists.\n"
        f"5. Write every free-text value in {language}; keep the JSON keys and ICD-10 codes as they are.\n"
        "6. The JSON must be complete and valid, starting with { and ending with }."
    )


def coding_messages(extraction: Dict[str, Any], language: str) -> List[Dict[str, Any]]:
    """Build the chat messages for stage 2 from normalised stage-1 output."""
    payload = {
        "examInfo": {
            k: v for k, v in extraction.get("examInfo", {}).items()
            if k in ("examType", "examPart", "modality") and v
        },
        "findings": extraction.get("findings", []),
        "impression": extraction.get("impression", {}),
    }
    user = (
        "Structured findings from the imaging report:\n"
        f"{json.dumps(payload, ensure_ascii=False, indent=2)}\n\n"
        "Provide the diagnostic codes and recommendations in the JSON format above."
    )
    return [
        {"role": "system", "content": coding_system_prompt(language)},
        {"role": "user", "content": user},
    ]
