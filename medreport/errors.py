"""Exceptions raised while analysing and exporting reports.

Every error carries the HTTP status and the user-facing message the Flask
layer should answer with, so route handlers never build error bodies
themselves.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class ReportAnalysisError(Exception):
    status_code = 500
    default_message = "Analysis failed."

    def __init__(self, message: Optional[str] = None, *, details: Optional[str] = None, hint: Optional[str] = None):
        self.message = message or self.default_message
        self.details = details
        self.hint = hint
        super().__init__(self.message if not details else f"{self.message} ({details})")

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message}
        if self.details:
            body["details"] = self.details
        if self.hint:
            body["hint"] = self.hint
        return body


class UploadError(ReportAnalysisError):
    status_code = 400
    default_message = "The uploaded file could not be used."


class FileTooLargeError(UploadError):
    status_code = 413
    default_message = "The uploaded file is too large."


class ModelRefusalError(ReportAnalysisError):
    status_code = 400
    default_message = "The image analysis was declined by the model."


class ResponseParseError(ReportAnalysisError):
    default_message = "Could not read the model response. Please try again."


class UpstreamError(ReportAnalysisError):
    default_message = "The analysis service is unavailable."


class ConfigurationError(ReportAnalysisError):
    default_message = "The server is not configured for analysis."


class ExportError(ReportAnalysisError):
    status_code = 400
    default_message = "The export request is invalid."
