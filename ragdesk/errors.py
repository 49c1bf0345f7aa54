"""
Error taxonomy shared by every layer.

AppError carries a machine-readable code, a user-facing message and the HTTP
status it should surface as. Routes let it propagate; the handler installed in
main.py turns it into a JSON body. Inside a stream it becomes an error frame.
"""

from __future__ import annotations

import time
from enum import Enum


class ErrorCode(str, Enum):
    # Upstream chat API
    CONNECTION_FAILED = "connection_failed"
    INVALID_RESPONSE = "invalid_response"
    UPSTREAM_API_ERROR = "upstream_api_error"

    # Auth / session
    TOKEN_EXPIRED = "token_expired"
    INVALID_SESSION = "invalid_session"
    INVALID_TOKEN = "invalid_token"
    DEPARTMENT_NOT_FOUND = "department_not_found"
    DIRECTORY_ERROR = "directory_error"

    # Request
    VALIDATION_ERROR = "validation_error"
    NOT_FOUND = "not_found"

    INTERNAL_ERROR = "internal_error"


class AppError(Exception):
    """An expected, classified failure."""

    def __init__(self, code: ErrorCode, message: str, status_code: int = 500):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.timestamp = time.time()

    def to_dict(self) -> dict:
        return {"code": self.code.value, "message": self.message}

    def __repr__(self) -> str:
        return f"<AppError {self.code.value} status={self.status_code}: {self.message!r}>"
