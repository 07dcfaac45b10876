# app.py
"""Flask entry point for the medical report analyzer.

Routes:
  GET  /health               liveness check
  POST /api/analyze          upload an image/PDF report and analyse it
  POST /api/export/<fmt>     download a result as text, xlsx or pdf
  POST /api/generate-pdf     PDF download (kept for older clients)
"""

import logging
from datetime import datetime, timezone

# load .env early
from dotenv import load_dotenv
load_dotenv(dotenv_path=".env")

from flask import Flask, current_app, jsonify, make_response, request
from flask_cors import CORS
from werkzeug.exceptions import HTTPException, RequestEntityTooLarge

from medreport import export, pipeline
from medreport.config import Settings
from medreport.errors import ExportError, ReportAnalysisError, UploadError
from medreport.extract import validate_upload
from medreport.llm import VisionClient
from medreport.ratelimit import SlidingWindowLimiter, client_key
from medreport.schema import normalize_analysis

# multipart boundaries and form fields on top of the file itself
MULTIPART_HEADROOM = 1024 * 1024
FILE_FIELDS = ("image", "file")
HINT_FIELDS = ("patientId", "examDate", "examType")


def _configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(message)s",
    )


def _error(message, status, **extra):
    body = {"error": message}
    body.update({k: v for k, v in extra.items() if v})
    return jsonify(body), status


def _download(data: bytes, fmt: str, base_name):
    _kind, mimetype, _ext = export.EXPORT_FORMATS[fmt]
    resp = make_response(data)
    resp.headers["Content-Type"] = mimetype
    resp.headers["Content-Disposition"] = f'attachment; filename="{export.export_filename(base_name, fmt)}"'
    return resp


def _export_payload():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ExportError("A JSON body is required.")
    result = data.get("analysisResult")
    if not isinstance(result, dict) or not result:
        raise ExportError("An analysis result is required.")
    return normalize_analysis(result), data.get("fileName")


def create_app(settings=None, client_factory=None):
    """Build the Flask app.

    ``client_factory(settings)`` returns the model client; tests pass a fake.
    """
    settings = settings or Settings.from_env()
    _configure_logging(settings)

    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = settings.max_upload_bytes + MULTIPART_HEADROOM
    app.json.ensure_ascii = False
    app.extensions["medreport.client_factory"] = client_factory or VisionClient
    app.extensions["medreport.limiter"] = SlidingWindowLimiter(
        settings.rate_limit_requests, settings.rate_limit_window
    )

    # CORS
    CORS(app, resources={r"/api/*": {"origins": settings.cors_origins}}, supports_credentials=True)

    logging.info("OPENAI_MODEL=%r coding=%r", settings.model, settings.coding_model)
    if not settings.openai_api_key:
        logging.warning("OPENAI_API_KEY is not set; /api/analyze will fail until it is configured")

    @app.errorhandler(ReportAnalysisError)
    def handle_report_error(e):
        if e.status_code >= 500:
            logging.error("analysis error: %s", e)
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(RequestEntityTooLarge)
    def handle_413(e):
        limit_mb = settings.max_upload_bytes // (1024 * 1024)
        return _error(f"The file is larger than {limit_mb}MB.", 413)

    @app.errorhandler(HTTPException)
    def handle_http(e):
        return _error(e.description or e.name, e.code)

    @app.errorhandler(Exception)
    def handle_unexpected(e):
        logging.exception("unhandled error")
        return _error("Analysis failed.", 500, details=str(e))

    @app.get("/health")
    def health():
        return jsonify({"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()})

    @app.post("/api/analyze")
    def analyze():
        limiter = current_app.extensions["medreport.limiter"]
        allowed, retry_after = limiter.hit(client_key(request))
        if not allowed:
            logging.warning("rate limit hit for %s", client_key(request))
            resp, status = _error(
                "Too many requests. Please try again later.", 429, details=f"Retry in {retry_after} seconds."
            )
            resp.headers["Retry-After"] = str(retry_after)
            return resp, status

        logging.info("analysis request received")
        file = next((request.files[f] for f in FILE_FIELDS if f in request.files), None)
        if file is None or not file.filename:
            raise UploadError("An image or PDF file is required.")

        upload = validate_upload(file.filename, file.mimetype or file.content_type or "", file.read(), settings)
        hints = {k: (request.form.get(k) or "").strip() for k in HINT_FIELDS}
        language = (request.form.get("language") or "English").strip()

        client = current_app.extensions["medreport.client_factory"](settings)
        result, diagnostics = pipeline.analyze_report(upload, client, settings, hints=hints, language=language)

        logging.info("analysis complete, sending result")
        return jsonify({
            "success": True,
            "data": result,
            "metadata": {
                "fileName": upload.filename,
                "fileSize": upload.size,
                "contentType": upload.content_type,
                "analyzedAt": datetime.now(timezone.utc).isoformat(),
                "model": diagnostics["stages"]["extraction"]["model"],
                "diagnostics": diagnostics,
            },
        })

    @app.post("/api/export/<fmt>")
    def export_result(fmt):
        fmt = fmt.lower()
        if fmt not in export.EXPORT_FORMATS:
            raise ExportError(f"Unknown export format: {fmt}", details="Use text, excel or pdf.")
        result, base_name = _export_payload()
        data = export.render(result, fmt, font_path=settings.pdf_font_path)
        logging.info("exported %s (%d bytes)", fmt, len(data))
        return _download(data, fmt, base_name)

    @app.post("/api/generate-pdf")
    def generate_pdf():
        result, base_name = _export_payload()
        data = export.to_pdf(result, font_path=settings.pdf_font_path)
        logging.info("PDF generated (%d bytes)", len(data))
        return _download(data, "pdf", base_name or "Medical_Report")

    return app


app = create_app()


if __name__ == "__main__":
    import os

    app.run(host="0.0.0.0", port=int(os.getenv("PORT", "3001")), debug=False)
