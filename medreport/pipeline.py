"""
Two-stage report analysis.

Stage 1 sends the report image (or PDF text) to the vision model with the
extraction prompt and normalises the JSON it returns. Stage 2 feeds those
findings into the coding prompt for ICD-10 codes and a follow-up test plan.
The two payloads are merged into one result.

A failed stage 1 fails the request. A failed stage 2 does not: the result is
returned without codes and carries a warning instead.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional, Protocol, Tuple

from . import prompts
from .config import LANGUAGES, Settings
from .errors import ModelRefusalError, ReportAnalysisError, UploadError
from .extract import ReportUpload, prepare_model_input
from .llm import Completion
from .repair import extract_json_object, looks_like_refusal
from .schema import empty_coding, merge_analysis, normalize_coding, normalize_extraction

logger = logging.getLogger("medreport.pipeline")

REFUSAL_HINT = "Alternatively, try a public sample medical image."


class CompletionClient(Protocol):
    def complete(self, messages: List[Dict[str, Any]], *, max_tokens: int, model: Optional[str] = None) -> Completion:
        ...


def now() -> float:
    return time.perf_counter()


def _stage_info(completion: Completion, repaired: bool, elapsed: float) -> Dict[str, Any]:
    return {
        "model": completion.model,
        "finishReason": completion.finish_reason,
        "repaired": repaired,
        "usage": completion.usage,
        "seconds": round(elapsed, 2),
    }


def run_extraction(
    client: CompletionClient,
    settings: Settings,
    messages: List[Dict[str, Any]],
) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    t0 = now()
    completion = client.complete(messages, max_tokens=settings.extraction_max_tokens, model=settings.model)
    if looks_like_refusal(completion.text):
        logger.error("stage 1 refused: %r", completion.text[:300])
        raise ModelRefusalError(
            details=(
                "The uploaded image may contain personal information (name, date of birth, ...). "
                "Remove personal information and try again."
            ),
            hint=REFUSAL_HINT,
        )
    obj, repaired = extract_json_object(completion.text)
    return normalize_extraction(obj), _stage_info(completion, repaired, now() - t0)


def run_coding(
    client: CompletionClient,
    settings: Settings,
    extraction: Dict[str, Any],
    language: str,
    warnings: List[str],
) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    t0 = now()
    messages = prompts.coding_messages(extraction, language)
    try:
        completion = client.complete(messages, max_tokens=settings.coding_max_tokens, model=settings.coding_model)
        if looks_like_refusal(completion.text):
            raise ModelRefusalError(details="The coding step was declined by the model.")
        obj, repaired = extract_json_object(completion.text)
    except ReportAnalysisError as e:
        logger.warning("stage 2 failed; returning findings without codes: %s", e)
        warnings.append("Diagnostic codes and recommendations could not be generated for this report.")
        return empty_coding(), {"error": e.message, "seconds": round(now() - t0, 2)}
    return normalize_coding(obj, warnings), _stage_info(completion, repaired, now() - t0)


def analyze_report(
    upload: ReportUpload,
    client: CompletionClient,
    settings: Settings,
    *,
    hints: Optional[Dict[str, str]] = None,
    language: str = "English",
) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Run both stages and return ``(result, diagnostics)``."""
    if language not in LANGUAGES:
        raise UploadError(f"Unsupported language: {language}", details=f"Choose one of {', '.join(LANGUAGES)}.")

    t0 = now()
    model_input = prepare_model_input(upload, settings)
    t_prep = now() - t0
    logger.info(
        "analysing %s (%s, %d bytes, %d page(s), kind=%s, language=%s)",
        upload.filename, upload.content_type, upload.size, model_input.page_count, model_input.source_kind, language,
    )

    warnings: List[str] = []
    messages = prompts.extraction_messages(model_input.images, model_input.text, language, hints)
    extraction, stage1 = run_extraction(client, settings, messages)
    logger.info(
        "stage 1 done: %d finding(s), %d term(s), repaired=%s",
        len(extraction["findings"]), len(extraction["medicalTerms"]), stage1["repaired"],
    )
    if stage1["repaired"]:
        warnings.append("The model response was incomplete and has been repaired; some details may be missing.")

    coding, stage2 = run_coding(client, settings, extraction, language, warnings)

    result = merge_analysis(extraction, coding, warnings)
    total = now() - t0
    logger.info(
        "[TIMING] prep=%.2fs extraction=%.2fs coding=%.2fs total=%.2fs",
        t_prep, stage1["seconds"], stage2["seconds"], total,
    )
    diagnostics = {
        "sourceKind": model_input.source_kind,
        "pageCount": model_input.page_count,
        "language": language,
        "stages": {"extraction": stage1, "coding": stage2},
        "seconds": round(total, 2),
    }
    return result, diagnostics
