import io
import json
import os
import sys

import pytest
from PIL import Image

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from medreport.config import Settings
from medreport.llm import Completion


class FakeVisionClient:
    """Returns queued completions in order and records the messages it was sent."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls = []

    def complete(self, messages, *, max_tokens, model=None):
        self.calls.append({"messages": messages, "max_tokens": max_tokens, "model": model})
        if not self.replies:
            raise AssertionError("unexpected model call")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, Completion):
            return reply
        return Completion(text=reply, finish_reason="stop", model=model or "gpt-4o")


def _sample_extraction() -> dict:
    return {
        "patientInfo": {"patientId": "12345", "name": "Jane Doe", "age": "70", "gender": "F", "birthDate": ""},
        "examInfo": {
            "examType": "Brain MRI",
            "examPart": "Brain",
            "examDate": "2024-03-01",
            "hospital": "General Hospital",
            "modality": "MRI",
        },
        "findings": [
            {
                "category": "Brain parenchyma",
                "description": "Acute infarction in the left MCA territory.",
                "isNormal": False,
                "severity": "moderate",
            },
            {
                "category": "Ventricles",
                "description": "No hydrocephalus.",
                "isNormal": True,
                "severity": "normal",
            },
        ],
        "impression": {"summary": "Acute left MCA infarction.", "diagnosis": "Cerebral infarction", "overallSeverity": "moderate"},
        "medicalTerms": [{"term": "Infarction", "explanation": "Tissue damage caused by a blocked blood supply."}],
    }


def _sample_coding() -> dict:
    return {
        "diseaseCodes": {
            "primary": [
                {
                    "code": "I63.9",
                    "name": "Cerebral infarction",
                    "englishName": "Cerebral infarction, unspecified",
                    "description": "A stroke caused by a blocked artery.",
                    "priority": "HIGH",
                    "observedFeatures": [
                        {
                            "technicalTerm": "Diffusion restriction",
                            "simpleName": "Bright spot on DWI",
                            "whatItMeans": "Recent damage to brain tissue.",
                            "locationInImage": "Left MCA territory",
                        }
                    ],
                    "nextSteps": ["See a neurologist"],
                }
            ],
            "secondary": [],
        },
        "recommendations": {
            "urgency": "high",
            "followUp": "Neurology visit within a week",
            "department": "Neurology",
            "notes": "",
            "requiredTests": [
                {
                    "name": "Carotid ultrasound",
                    "englishName": "Carotid ultrasound",
                    "reason": "Check for narrowed neck arteries.",
                    "whatItChecks": "Carotid stenosis",
                    "fastingRequired": False,
                    "estimatedCost": "",
                    "priority": "HIGH",
                }
            ],
            "questionsToAsk": ["Do I need blood thinners?"],
            "whenToGo": ["Sudden weakness or speech trouble"],
            "preparationChecklist": [
                {"item": "MRI CD", "importance": "required", "reason": "For comparison", "howToGet": "Imaging desk"}
            ],
            "timeline": [{"when": "Week 1", "action": "Neurology visit", "details": ""}],
            "costSummary": {"required": "", "additional": "", "total": "About 200,000 KRW", "withInsurance": ""},
        },
    }


@pytest.fixture
def extraction_payload():
    return _sample_extraction()


@pytest.fixture
def coding_payload():
    return _sample_coding()


@pytest.fixture
def extraction_json():
    return "```json\n" + json.dumps(_sample_extraction()) + "\n```"


@pytest.fixture
def coding_json():
    return json.dumps(_sample_coding())


@pytest.fixture
def settings():
    return Settings(openai_api_key="test-key", rate_limit_requests=0)


@pytest.fixture
def png_bytes():
    buf = io.BytesIO()
    Image.new("RGB", (64, 48), "white").save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def fake_client():
    return FakeVisionClient
