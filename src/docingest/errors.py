"""Exceptions and response helpers shared by all handlers."""

import json
from typing import Any, Optional


class IngestError(Exception):
    """Base class for pipeline errors."""


class ValidationFailure(IngestError):
    """Client input rejected before any side effect."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


class JobNotFound(IngestError):
    """No analysis job row for an external job id."""


class NotificationParseError(IngestError):
    """Completion notification could not be parsed, even with the fallback."""


class AnalysisResultError(IngestError):
    """The OCR service reported a non-successful result."""


def json_response(
    status_code: int,
    payload: dict[str, Any],
    request_id: Optional[str] = None,
    headers: Optional[dict[str, str]] = None,
) -> dict[str, Any]:
    """Build an HTTP-shaped Lambda response with a JSON body."""
    body = dict(payload)
    if request_id is not None:
        body["requestId"] = request_id
    response: dict[str, Any] = {
        "statusCode": status_code,
        "body": json.dumps(body, default=str),
    }
    if headers:
        response["headers"] = headers
    return response


def error_response(status_code: int, message: str, request_id: str) -> dict[str, Any]:
    """Build an error response carrying the request id."""
    return json_response(status_code, {"error": message}, request_id)
