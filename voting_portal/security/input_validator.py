# voting_portal/security/input_validator.py

import html
import re

import bleach

from voting_portal.database.models import Role
from voting_portal.errors import ErrorCode, PortalError

BIAS_MIN = 0
BIAS_MAX = 10000
REASON_MAX_LENGTH = 500


# Request input validation and free-text sanitization
class InputValidator:
    def __init__(self):
        self.allowed_html_tags = []
        self.allowed_html_attributes = {}

        self.patterns = {
            'object_id': re.compile(r'^[0-9a-f]{32}$'),
            'idempotency_key': re.compile(r'^[A-Za-z0-9_-]{16,255}$'),
            'xss_script': re.compile(r'<script[^>]*>.*?</script>', re.IGNORECASE | re.DOTALL),
            'xss_event': re.compile(r'\bon\w+\s*=', re.IGNORECASE),
        }

    def sanitize_string(self, input_str, max_length=255):
        if not isinstance(input_str, str):
            raise PortalError(ErrorCode.BAD_INPUT, "Expected a string")
        sanitized = re.sub(self.patterns['xss_script'], '', input_str)
        sanitized = re.sub(self.patterns['xss_event'], '', sanitized)
        sanitized = bleach.clean(sanitized, tags=self.allowed_html_tags,
                                 attributes=self.allowed_html_attributes, strip=True)
        # bleach escapes what it keeps; store plain text
        sanitized = html.unescape(sanitized).strip()
        return sanitized[:max_length]

    def is_object_id(self, value) -> bool:
        return isinstance(value, str) and bool(self.patterns['object_id'].match(value))

    def validate_contest_id(self, contest_id):
        if not self.is_object_id(contest_id):
            raise PortalError(ErrorCode.INVALID_AWARD_ID)
        return contest_id

    def validate_object_id(self, value, field='id'):
        if not self.is_object_id(value):
            raise PortalError(ErrorCode.BAD_INPUT, f"Invalid {field} format", details={'field': field})
        return value

    def validate_idempotency_key(self, key):
        if not isinstance(key, str) or not self.patterns['idempotency_key'].match(key):
            raise PortalError(
                ErrorCode.BAD_INPUT,
                "Idempotency key must be 16-255 characters of letters, digits, '-' or '_'",
                details={'field': 'Idempotency-Key'},
            )
        return key

    def validate_bias_amount(self, amount):
        # bool is an int subclass; reject it explicitly
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise PortalError(ErrorCode.BAD_INPUT, "Bias amount must be an integer",
                              details={'field': 'amount'})
        if not BIAS_MIN <= amount <= BIAS_MAX:
            raise PortalError(ErrorCode.BAD_INPUT,
                              f"Bias amount must be between {BIAS_MIN} and {BIAS_MAX}",
                              details={'field': 'amount'})
        return amount

    def validate_reason(self, reason, field='reason'):
        if not isinstance(reason, str):
            raise PortalError(ErrorCode.BAD_INPUT, f"{field} is required", details={'field': field})
        if len(reason.strip()) > REASON_MAX_LENGTH:
            raise PortalError(ErrorCode.BAD_INPUT,
                              f"{field} must be at most {REASON_MAX_LENGTH} characters",
                              details={'field': field})
        cleaned = self.sanitize_string(reason, max_length=REASON_MAX_LENGTH)
        if not cleaned:
            raise PortalError(ErrorCode.BAD_INPUT, f"{field} is required", details={'field': field})
        return cleaned

    def validate_role(self, role):
        try:
            return Role(role)
        except ValueError:
            raise PortalError(ErrorCode.BAD_INPUT, "Unknown role", details={'field': 'role'}) from None

    def require_json_object(self, payload):
        if not isinstance(payload, dict):
            raise PortalError(ErrorCode.BAD_INPUT, "Request body must be a JSON object")
        return payload
