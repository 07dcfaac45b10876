"""Recover a JSON object from a free-text model completion.

Completions arrive wrapped in Markdown code fences, preceded by chatter, with
trailing commas, or cut off when the token budget runs out. The helpers here
find the first balanced ``{...}`` (string aware), and when the object never
closes they close open strings and containers, backing off to earlier commas
until something parses.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .errors import ResponseParseError

logger = logging.getLogger("medreport.repair")

_FENCE_RX = re.compile(r"```(?:json|JSON)?[ \t]*\r?\n?")

REFUSAL_PHRASES = (
    "i'm sorry",
    "i’m sorry",
    "i am sorry",
    "i can't assist",
    "i can’t assist",
    "i cannot",
    "i can't help",
    "i’m unable",
    "i'm unable",
    "i am unable",
)

MAX_START_CANDIDATES = 20
MAX_BACKOFF_STEPS = 200
SAMPLE_CHARS = 500

_CLOSERS = {"{": "}", "[": "]"}


@dataclass
class _Scan:
    end: Optional[int] = None
    stack: List[str] = field(default_factory=list)
    in_string: bool = False
    escaped: bool = False
    commas: List[int] = field(default_factory=list)


def strip_code_fences(text: str) -> str:
    return _FENCE_RX.sub("", text or "")


def looks_like_refusal(text: str) -> bool:
    """True when the model declined instead of answering.

    Only the prose before the first ``{`` counts, so a JSON answer whose
    values happen to contain "I cannot" is not mistaken for a refusal.
    """
    if not text or not text.strip():
        return False
    lowered = text.lower()
    brace = lowered.find("{")
    head = lowered if brace == -1 else lowered[:brace]
    return any(phrase in head for phrase in REFUSAL_PHRASES)


def _scan(text: str, start: int) -> _Scan:
    """Walk ``text`` from the opening brace at ``start``."""
    state = _Scan()
    for i in range(start, len(text)):
        ch = text[i]
        if state.in_string:
            if state.escaped:
                state.escaped = False
            elif ch == "\\":
                state.escaped = True
            elif ch == '"':
                state.in_string = False
            continue
        if ch == '"':
            state.in_string = True
        elif ch in "{[":
            state.stack.append(ch)
        elif ch in "}]":
            if state.stack:
                state.stack.pop()
            if not state.stack:
                state.end = i
                return state
        elif ch == ",":
            state.commas.append(i)
    return state


def remove_trailing_commas(text: str) -> str:
    """Drop commas that directly precede a closing bracket, outside strings."""
    out: List[str] = []
    in_string = False
    escaped = False
    n = len(text)
    for i, ch in enumerate(text):
        if in_string:
            out.append(ch)
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == ",":
            j = i + 1
            while j < n and text[j] in " \t\r\n":
                j += 1
            if j < n and text[j] in "}]":
                continue
        out.append(ch)
    return "".join(out)


def _close(fragment: str) -> str:
    """Terminate a truncated JSON fragment that starts with ``{``."""
    state = _scan(fragment, 0)
    if state.end is not None:
        return fragment[: state.end + 1]
    text = fragment
    if state.in_string:
        if state.escaped:
            text = text[:-1]
        text += '"'
    text = text.rstrip()
    while text.endswith(","):
        text = text[:-1].rstrip()
    return text + "".join(_CLOSERS[c] for c in reversed(state.stack))


def _loads(candidate: str) -> Optional[Dict[str, Any]]:
    try:
        obj = json.loads(candidate)
    except json.JSONDecodeError:
        return None
    return obj if isinstance(obj, dict) else None


def _sample(text: str) -> str:
    return (text or "")[:SAMPLE_CHARS]


def extract_json_object(text: str) -> Tuple[Dict[str, Any], bool]:
    """Return ``(object, repaired)`` for the first JSON object in ``text``.

    ``repaired`` is True when the object only parsed after fixing it up.
    Raises ResponseParseError when nothing can be recovered.
    """
    cleaned = strip_code_fences(text).strip()
    start = cleaned.find("{")
    if start == -1:
        logger.error("no JSON object in model response: %r", _sample(cleaned))
        raise ResponseParseError(
            details=f"No JSON object was found in the model response: {_sample(cleaned)!r}",
            hint="The response was not in JSON format or was incomplete.",
        )

    tried = 0
    while start != -1 and tried < MAX_START_CANDIDATES:
        tried += 1
        state = _scan(cleaned, start)

        if state.end is not None:
            candidate = cleaned[start : state.end + 1]
            obj = _loads(candidate)
            if obj is not None:
                return obj, False
            obj = _loads(remove_trailing_commas(candidate))
            if obj is not None:
                logger.info("model JSON parsed after removing trailing commas")
                return obj, True
            # Skip past the whole failed object; its nested objects are not the payload.
            start = cleaned.find("{", state.end + 1)
            continue

        # Never closed: the completion was cut off.
        fragment = cleaned[start:]
        logger.warning("model JSON truncated after %d chars; attempting repair", len(fragment))
        obj = _loads(remove_trailing_commas(_close(fragment)))
        if obj is not None:
            return obj, True
        for pos in list(reversed(state.commas))[:MAX_BACKOFF_STEPS]:
            obj = _loads(remove_trailing_commas(_close(fragment[: pos - start])))
            if obj is not None:
                logger.info("truncated JSON recovered by backing off to offset %d", pos - start)
                return obj, True
        break

    logger.error("unparseable model JSON (%d chars): %r", len(cleaned), _sample(cleaned))
    raise ResponseParseError(
        details=f"The model response contained malformed JSON: {_sample(cleaned)!r}",
        hint="The response was not in JSON format or was incomplete.",
    )
