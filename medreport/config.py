"""Runtime configuration read from the environment (and ``.env``)."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

DEFAULT_CORS_ORIGINS = [
    "http://localhost:5173",   # Vite dev
    "http://localhost:3000",
    r"https://.*\.vercel\.app",
]

ALLOWED_MIME_TYPES = (
    "image/jpeg",
    "image/png",
    "image/heic",
    "image/heif",
    "application/pdf",
)

LANGUAGES = ["English", "Korean"]


def _int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    return int(raw) if raw else default


def _float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    return float(raw) if raw else default


def _list(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name)
    if not raw:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    openai_api_key: str = ""
    model: str = "gpt-4o"
    coding_model: str = "gpt-4o"
    temperature: float = 0.3
    extraction_max_tokens: int = 4000
    coding_max_tokens: int = 4000
    timeout: float = 120.0
    max_attempts: int = 3
    max_upload_bytes: int = 10 * 1024 * 1024
    pdf_max_pages: int = 5
    image_max_side: int = 2048
    allowed_mime_types: Tuple[str, ...] = ALLOWED_MIME_TYPES
    cors_origins: List[str] = field(default_factory=lambda: list(DEFAULT_CORS_ORIGINS))
    rate_limit_requests: int = 10
    rate_limit_window: int = 60
    pdf_font_path: Optional[str] = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        model = (os.getenv("OPENAI_MODEL") or "gpt-4o").strip()
        return cls(
            openai_api_key=(os.getenv("OPENAI_API_KEY") or "").strip(),
            model=model,
            coding_model=(os.getenv("OPENAI_CODING_MODEL") or model).strip(),
            temperature=_float("OPENAI_TEMPERATURE", 0.3),
            extraction_max_tokens=_int("OPENAI_EXTRACTION_MAX_TOKENS", 4000),
            coding_max_tokens=_int("OPENAI_CODING_MAX_TOKENS", 4000),
            timeout=_float("OPENAI_TIMEOUT", 120.0),
            max_attempts=_int("OPENAI_MAX_ATTEMPTS", 3),
            max_upload_bytes=_int("MAX_UPLOAD_MB", 10) * 1024 * 1024,
            pdf_max_pages=_int("PDF_MAX_PAGES", 5),
            image_max_side=_int("IMAGE_MAX_SIDE", 2048),
            cors_origins=_list("CORS_ORIGINS", DEFAULT_CORS_ORIGINS),
            rate_limit_requests=_int("RATE_LIMIT_REQUESTS", 10),
            rate_limit_window=_int("RATE_LIMIT_WINDOW", 60),
            pdf_font_path=(os.getenv("REPORT_PDF_FONT") or "").strip() or None,
            log_level=(os.getenv("LOG_LEVEL") or "INFO").strip().upper(),
        )
