import base64
import io

import pytest
from fpdf import FPDF
from PIL import Image

from medreport.config import Settings
from medreport.errors import FileTooLargeError, UploadError
from medreport.extract import (
    ReportUpload,
    from_image,
    normalize_mime,
    prepare_model_input,
    sniff_mime,
    validate_upload,
)


def _text_pdf() -> bytes:
    pdf = FPDF()
    pdf.add_page()
    pdf.set_font("helvetica", size=11)
    pdf.multi_cell(
        0, 6,
        "MRI BRAIN WITH AND WITHOUT CONTRAST\n"
        "FINDINGS: Acute infarction in the left middle cerebral artery territory.\n"
        "IMPRESSION: Findings are consistent with an acute ischemic stroke.",
    )
    return bytes(pdf.output())


def _scanned_pdf() -> bytes:
    pdf = FPDF()
    pdf.add_page()
    pdf.image(Image.new("RGB", (200, 100), "gray"), x=10, y=10, w=100)
    return bytes(pdf.output())


def _jpeg(size) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, "black").save(buf, format="JPEG")
    return buf.getvalue()


def test_normalize_mime_resolves_aliases_and_extensions():
    assert normalize_mime("image/jpg") == "image/jpeg"
    assert normalize_mime("IMAGE/PNG; charset=binary") == "image/png"
    assert normalize_mime("application/octet-stream", "scan.HEIC") == "image/heic"
    assert normalize_mime("", "report.pdf") == "application/pdf"
    assert normalize_mime("text/plain", "notes.pdf") == "text/plain"


def test_sniff_mime(png_bytes):
    assert sniff_mime(png_bytes) == "image/png"
    assert sniff_mime(_jpeg((4, 4))) == "image/jpeg"
    assert sniff_mime(b"%PDF-1.7 ...") == "application/pdf"
    assert sniff_mime(b"\x00\x00\x00\x18ftypheic") == "image/heic"
    assert sniff_mime(b"hello") == ""


def test_validate_upload_accepts_png(settings, png_bytes):
    upload = validate_upload("scan.png", "image/png", png_bytes, settings)
    assert upload.content_type == "image/png"
    assert upload.size == len(png_bytes)
    assert not upload.is_pdf


def test_validate_upload_rejects_empty_file(settings):
    with pytest.raises(UploadError):
        validate_upload("scan.png", "image/png", b"", settings)


def test_validate_upload_rejects_large_file(png_bytes):
    settings = Settings(max_upload_bytes=10)
    with pytest.raises(FileTooLargeError) as exc:
        validate_upload("scan.png", "image/png", png_bytes, settings)
    assert exc.value.status_code == 413


def test_validate_upload_rejects_unsupported_type(settings):
    with pytest.raises(UploadError) as exc:
        validate_upload("notes.txt", "text/plain", b"hello", settings)
    assert "Unsupported file type" in exc.value.message


def test_validate_upload_rejects_mismatched_content(settings, png_bytes):
    with pytest.raises(UploadError) as exc:
        validate_upload("scan.pdf", "application/pdf", png_bytes, settings)
    assert "does not match" in exc.value.message


def test_small_image_is_sent_unchanged(settings, png_bytes):
    upload = ReportUpload("scan.png", "image/png", png_bytes)
    model_input = from_image(upload, settings)

    assert model_input.source_kind == "image"
    assert model_input.images == ["data:image/png;base64," + base64.b64encode(png_bytes).decode("ascii")]


def test_large_image_is_downscaled_to_jpeg():
    settings = Settings(image_max_side=100)
    upload = ReportUpload("big.jpg", "image/jpeg", _jpeg((400, 200)))

    model_input = from_image(upload, settings)
    url = model_input.images[0]
    assert url.startswith("data:image/jpeg;base64,")
    image = Image.open(io.BytesIO(base64.b64decode(url.split(",", 1)[1])))
    assert max(image.size) == 100


def test_corrupt_image_raises_upload_error(settings):
    upload = ReportUpload("scan.png", "image/png", b"\x89PNG\r\n\x1a\nnot really")
    with pytest.raises(UploadError):
        from_image(upload, settings)


def test_pdf_with_text_layer_is_sent_as_text(settings):
    upload = ReportUpload("report.pdf", "application/pdf", _text_pdf())
    model_input = prepare_model_input(upload, settings)

    assert model_input.source_kind == "pdf-text"
    assert model_input.images == []
    assert "infarction" in model_input.text
    assert model_input.page_count == 1


def test_scanned_pdf_is_rendered_to_images(settings):
    upload = ReportUpload("scan.pdf", "application/pdf", _scanned_pdf())
    model_input = prepare_model_input(upload, settings)

    assert model_input.source_kind == "pdf-scan"
    assert len(model_input.images) == 1
    assert model_input.images[0].startswith("data:image/png;base64,")


def test_broken_pdf_raises_upload_error(settings):
    upload = ReportUpload("report.pdf", "application/pdf", b"%PDF-1.4 garbage")
    with pytest.raises(UploadError):
        prepare_model_input(upload, settings)


def _heic() -> bytes:
    from pillow_heif import register_heif_opener

    register_heif_opener()
    buf = io.BytesIO()
    Image.new("RGB", (64, 48), "white").save(buf, format="HEIF")
    return buf.getvalue()


def test_heic_photo_is_accepted_and_converted_to_jpeg(settings):
    data = _heic()
    assert sniff_mime(data) == "image/heic"

    upload = validate_upload("IMG_0001.HEIC", "application/octet-stream", data, settings)
    assert upload.content_type == "image/heic"

    model_input = prepare_model_input(upload, settings)
    url = model_input.images[0]
    assert url.startswith("data:image/jpeg;base64,")
    assert Image.open(io.BytesIO(base64.b64decode(url.split(",", 1)[1]))).format == "JPEG"


def test_decompression_bomb_is_an_upload_error(settings, png_bytes, monkeypatch):
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 100)
    upload = ReportUpload("scan.png", "image/png", png_bytes)

    with pytest.raises(UploadError) as exc:
        from_image(upload, settings)
    assert exc.value.status_code == 400
