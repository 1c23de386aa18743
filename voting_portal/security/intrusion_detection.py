# voting_portal/security/intrusion_detection.py

import hashlib
import logging

from voting_portal.cache.credential_store import CredentialStore, failed_auth_key
from voting_portal.errors import ErrorCode, PortalError

logger = logging.getLogger(__name__)


def hash_origin(origin: str, salt: str) -> str:
    """Salted SHA-256 of a network origin; raw addresses are never stored."""
    return hashlib.sha256(f"{salt}:{origin or 'unknown'}".encode()).hexdigest()


# Failed authentication tracking per origin, shared across workers via the credential store
class IntrusionDetection:
    def __init__(self, store: CredentialStore, envelope, max_attempts=5, window_seconds=900,
                 security_log=None):
        """
        max_attempts: failures within the window that lock the origin out
        window_seconds: lifetime of the counter, started by the first failure
        """
        self.store = store
        self.envelope = envelope
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.security_log = security_log

    def record_failed_attempt(self, origin_hash: str) -> int:
        """Count a failure; returns the number of failures in the current window."""
        try:
            count = self.envelope.credentials(
                lambda: self.store.increment(failed_auth_key(origin_hash), self.window_seconds))
        except PortalError as error:
            # tracking is advisory; the failure itself is still reported to the caller
            logger.warning("Failed-auth counter unavailable: %s", error.code.value)
            return 0
        if count == self.max_attempts:
            logger.warning("Origin %s locked out after %d failed authentications", origin_hash[:12], count)
            if self.security_log is not None:
                self.security_log.log_security_event(
                    'auth_lockout', {'origin_hash': origin_hash, 'attempts': count})
        return count

    def is_blocked(self, origin_hash: str) -> bool:
        try:
            value = self.envelope.credentials(lambda: self.store.get(failed_auth_key(origin_hash)))
        except PortalError:
            return False
        return value is not None and int(value) >= self.max_attempts

    def check(self, origin_hash: str) -> None:
        if self.is_blocked(origin_hash):
            raise PortalError(ErrorCode.RATE_LIMITED, "Too many failed authentication attempts",
                              retry_after=self.window_seconds)

    def clear(self, origin_hash: str) -> None:
        try:
            self.envelope.credentials(lambda: self.store.delete(failed_auth_key(origin_hash)))
        except PortalError as error:
            logger.warning("Could not clear failed-auth counter: %s", error.code.value)
