"""Validate uploaded report files and turn them into model input.

Images are sent to the vision model as base64 ``data:`` URLs. HEIC/HEIF phone
photos are converted to JPEG first and oversized images are downscaled. PDFs
are read with pdfplumber; when a PDF carries no usable text layer (a scan),
its pages are rendered to PNG and sent as images instead.
"""

from __future__ import annotations

import base64
import io
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from PIL import Image, UnidentifiedImageError

from .config import Settings
from .errors import FileTooLargeError, UploadError

logger = logging.getLogger("medreport.extract")

# Below this many characters a PDF is treated as a scanned image.
MIN_PDF_TEXT_CHARS = 80
PDF_RENDER_DPI = 150

_MIME_ALIASES = {
    "image/jpg": "image/jpeg",
    "image/pjpeg": "image/jpeg",
    "image/x-png": "image/png",
    "application/x-pdf": "application/pdf",
}

_EXT_MIME = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".heic": "image/heic",
    ".heif": "image/heif",
    ".pdf": "application/pdf",
}


@dataclass
class ReportUpload:
    filename: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def is_pdf(self) -> bool:
        return self.content_type == "application/pdf"


@dataclass
class ModelInput:
    images: List[str] = field(default_factory=list)
    text: str = ""
    source_kind: str = "image"
    page_count: int = 0


def _clean(s: str) -> str:
    """Strip trailing whitespace on each line and collapse runs of blank lines."""
    lines = [line.rstrip() for line in s.splitlines()]
    out: List[str] = []
    for line in lines:
        if not line and out and not out[-1]:
            continue
        out.append(line)
    return "\n".join(out).strip()


def normalize_mime(content_type: str, filename: str = "") -> str:
    """Lower-case a declared MIME type, drop parameters and resolve aliases.

    Browsers frequently send ``application/octet-stream`` for phone photos, so
    a blank or generic type falls back to the filename extension.
    """
    mime = (content_type or "").split(";", 1)[0].strip().lower()
    mime = _MIME_ALIASES.get(mime, mime)
    if mime in ("", "application/octet-stream", "binary/octet-stream"):
        mime = _EXT_MIME.get(Path(filename or "").suffix.lower(), mime)
    return mime


def sniff_mime(data: bytes) -> str:
    """Identify the file type from its leading bytes; '' when unknown."""
    head = data[:32]
    if head.startswith(b"%PDF"):
        return "application/pdf"
    if head.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if head.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if head[4:8] == b"ftyp" and head[8:12] in (b"heic", b"heix", b"hevc", b"heim", b"heis", b"mif1", b"msf1"):
        return "image/heic"
    return ""


def validate_upload(filename: str, content_type: str, data: bytes, settings: Settings) -> ReportUpload:
    if not data:
        raise UploadError("An image or PDF file is required.", details="The uploaded file is empty.")
    if len(data) > settings.max_upload_bytes:
        limit_mb = settings.max_upload_bytes // (1024 * 1024)
        raise FileTooLargeError(f"The file is larger than {limit_mb}MB.")

    mime = normalize_mime(content_type, filename)
    if mime not in settings.allowed_mime_types:
        raise UploadError(
            "Unsupported file type. Only JPG, PNG and PDF files can be uploaded.",
            details=f"Received {mime or 'unknown type'}.",
        )

    sniffed = sniff_mime(data)
    declared = "image/heic" if mime == "image/heif" else mime
    if sniffed != declared:
        raise UploadError(
            "The file content does not match its type.",
            details=f"Declared {mime}, content looks like {sniffed or 'unknown data'}.",
        )

    return ReportUpload(filename=filename or "report", content_type=mime, data=data)


def _data_url(data: bytes, mime: str) -> str:
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


def _encode_jpeg(image: Image.Image) -> bytes:
    buf = io.BytesIO()
    image.convert("RGB").save(buf, format="JPEG", quality=90)
    return buf.getvalue()


def from_image(upload: ReportUpload, settings: Settings) -> ModelInput:
    """Return the image as a data URL, converting or downscaling when needed."""
    if upload.content_type in ("image/heic", "image/heif"):
        from pillow_heif import register_heif_opener

        register_heif_opener()

    try:
        image = Image.open(io.BytesIO(upload.data))
        image.load()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as e:
        raise UploadError("The image could not be read.", details=str(e)) from e

    needs_convert = upload.content_type in ("image/heic", "image/heif")
    if max(image.size) > settings.image_max_side:
        logger.info("downscaling %s from %sx%s", upload.filename, *image.size)
        image.thumbnail((settings.image_max_side, settings.image_max_side))
        needs_convert = True

    if needs_convert:
        url = _data_url(_encode_jpeg(image), "image/jpeg")
    else:
        url = _data_url(upload.data, upload.content_type)
    return ModelInput(images=[url], source_kind="image", page_count=1)


def from_pdf(upload: ReportUpload, settings: Settings) -> ModelInput:
    """Extract the text layer of a PDF, or render its pages when it is a scan."""
    import pdfplumber

    try:
        with pdfplumber.open(io.BytesIO(upload.data)) as pdf:
            pages = pdf.pages[: settings.pdf_max_pages]
            if len(pdf.pages) > settings.pdf_max_pages:
                logger.warning("PDF has %d pages; only the first %d are analysed", len(pdf.pages), settings.pdf_max_pages)
            text = _clean("\n\n".join(page.extract_text() or "" for page in pages))
            if len(text) >= MIN_PDF_TEXT_CHARS:
                return ModelInput(text=text, source_kind="pdf-text", page_count=len(pages))

            logger.info("PDF text layer too short (%d chars); rendering pages", len(text))
            images = []
            for page in pages:
                rendered = page.to_image(resolution=PDF_RENDER_DPI).original
                if max(rendered.size) > settings.image_max_side:
                    rendered.thumbnail((settings.image_max_side, settings.image_max_side))
                buf = io.BytesIO()
                rendered.convert("RGB").save(buf, format="PNG")
                images.append(_data_url(buf.getvalue(), "image/png"))
    except UploadError:
        raise
    except Exception as e:
        logger.exception("PDF extraction failed for %s", upload.filename)
        raise UploadError("The PDF could not be read.", details=str(e)) from e

    if not images:
        raise UploadError("The PDF has no pages.")
    return ModelInput(images=images, text=text, source_kind="pdf-scan", page_count=len(images))


def prepare_model_input(upload: ReportUpload, settings: Settings) -> ModelInput:
    if upload.is_pdf:
        return from_pdf(upload, settings)
    return from_image(upload, settings)
