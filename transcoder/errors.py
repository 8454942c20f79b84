from __future__ import annotations

from typing import Optional


class TranscoderError(Exception):
    """Base error for request/response transcoding failures."""

    status_code: int = 400
    error_type: str = "invalid_request_error"

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class SchemaConflictError(TranscoderError):
    """A tool schema cannot be expressed in the Cloud Code schema dialect."""


class CredentialError(TranscoderError):
    status_code = 401
    error_type = "authentication_error"


class UpstreamKindError(TranscoderError):
    status_code = 404
    error_type = "not_found_error"
