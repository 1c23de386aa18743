# voting_portal/errors.py

import uuid
from enum import Enum


class ErrorCode(Enum):
    """Closed set of failure codes surfaced in responses and logs."""
    BAD_INPUT = "BAD_INPUT"
    BAD_TARGET = "BAD_TARGET"
    INVALID_AWARD_ID = "INVALID_AWARD_ID"
    NO_TOKEN = "NO_TOKEN"
    INVALID_TOKEN = "INVALID_TOKEN"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    TOKEN_REVOKED = "TOKEN_REVOKED"
    TOKEN_REUSE_DETECTED = "TOKEN_REUSE_DETECTED"
    TOKEN_FAMILY_REVOKED = "TOKEN_FAMILY_REVOKED"
    FORBIDDEN = "FORBIDDEN"
    SELF_MODIFICATION_DENIED = "SELF_MODIFICATION_DENIED"
    NOT_FOUND = "NOT_FOUND"
    ALREADY_VOTED = "ALREADY_VOTED"
    DUPLICATE_ENTRY = "DUPLICATE_ENTRY"
    BIOMETRIC_REQUIRED = "BIOMETRIC_REQUIRED"
    BIOMETRIC_SETUP_REQUIRED = "BIOMETRIC_SETUP_REQUIRED"
    RATE_LIMITED = "RATE_LIMITED"
    WINDOW_CLOSED = "WINDOW_CLOSED"
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"
    CACHE_UNAVAILABLE = "CACHE_UNAVAILABLE"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# code -> (http status, retryable, default message)
ERROR_POLICY = {
    ErrorCode.BAD_INPUT: (400, False, "Request input is invalid"),
    ErrorCode.BAD_TARGET: (400, False, "Nominee is not a valid target for this contest"),
    ErrorCode.INVALID_AWARD_ID: (400, False, "Invalid award ID format"),
    ErrorCode.NO_TOKEN: (401, False, "Access token is required"),
    ErrorCode.INVALID_TOKEN: (401, False, "Invalid authentication token"),
    ErrorCode.TOKEN_EXPIRED: (401, False, "Authentication token has expired"),
    ErrorCode.TOKEN_REVOKED: (401, False, "Token has been revoked"),
    ErrorCode.TOKEN_REUSE_DETECTED: (401, False, "Token reuse detected. Please re-authenticate."),
    ErrorCode.TOKEN_FAMILY_REVOKED: (401, False, "Token family revoked. Please re-authenticate."),
    ErrorCode.FORBIDDEN: (403, False, "Insufficient permissions"),
    ErrorCode.SELF_MODIFICATION_DENIED: (403, False, "You cannot modify your own account"),
    ErrorCode.NOT_FOUND: (404, False, "Resource not found"),
    ErrorCode.ALREADY_VOTED: (409, False, "You have already voted in this contest"),
    ErrorCode.DUPLICATE_ENTRY: (409, False, "Duplicate entry"),
    ErrorCode.BIOMETRIC_REQUIRED: (428, True, "Biometric verification is required"),
    ErrorCode.BIOMETRIC_SETUP_REQUIRED: (428, True, "Biometric authenticator setup is required"),
    ErrorCode.RATE_LIMITED: (429, True, "Too many requests"),
    ErrorCode.WINDOW_CLOSED: (400, False, "Voting is not open for this contest"),
    ErrorCode.STORE_UNAVAILABLE: (503, True, "Database service temporarily unavailable"),
    ErrorCode.CACHE_UNAVAILABLE: (503, True, "Cache service temporarily unavailable"),
    ErrorCode.SERVICE_UNAVAILABLE: (503, True, "Service temporarily unavailable"),
    ErrorCode.INTERNAL_ERROR: (500, True, "Something went wrong"),
}

SECURITY_CODES = frozenset({ErrorCode.TOKEN_REUSE_DETECTED, ErrorCode.TOKEN_FAMILY_REVOKED})

DEPENDENCY_CODES = frozenset({
    ErrorCode.STORE_UNAVAILABLE,
    ErrorCode.CACHE_UNAVAILABLE,
    ErrorCode.SERVICE_UNAVAILABLE,
})


class PortalError(Exception):
    """A failure tagged with a code from the closed taxonomy."""

    def __init__(self, code: ErrorCode, message: str = None, retry_after: int = None, details: dict = None):
        status, retryable, default_message = ERROR_POLICY[code]
        self.code = code
        self.message = message or default_message
        self.status = status
        self.retryable = retryable
        self.retry_after = retry_after
        self.details = details
        self.error_id = None
        super().__init__(f"{code.value}: {self.message}")

    @property
    def is_security_event(self) -> bool:
        return self.code in SECURITY_CODES

    def to_envelope(self, error_id: str = None) -> dict:
        # the first id assigned sticks, so a replayed response matches the logged one
        self.error_id = self.error_id or error_id or new_error_id()
        body = {
            "code": self.code.value,
            "message": self.message,
            "retryable": self.retryable,
            "error_id": self.error_id,
        }
        if self.retry_after is not None:
            body["retry_after"] = int(self.retry_after)
        if self.details:
            body["details"] = self.details
        return {"error": body}


def new_error_id() -> str:
    return f"err_{uuid.uuid4().hex[:16]}"
