# voting_portal/api/idempotency.py

"""Replay protection for mutating endpoints.

The first completion for (caller, endpoint, key) is stored with its status
and body; later requests with the same key get that response back. While
the first request is still running its slot holds a pending marker and a
duplicate is refused with DUPLICATE_ENTRY. Retryable outcomes (5xx, 428,
429) are not stored, so the caller can retry under the same key.
"""

import json
import logging
from typing import NamedTuple, Optional

from voting_portal.cache.credential_store import INSTALLED, CredentialStore, idempotency_key
from voting_portal.errors import ERROR_POLICY, ErrorCode, PortalError

logger = logging.getLogger(__name__)

PENDING = "__pending__"
HEADER = "Idempotency-Key"


class StoredResponse(NamedTuple):
    status: int
    body: Optional[dict]


def is_recordable(status: int, body: Optional[dict] = None) -> bool:
    if status >= 500:
        return False
    if body and isinstance(body.get("error"), dict):
        return not body["error"].get("retryable", False)
    return True


class IdempotencyGuard:
    def __init__(self, store: CredentialStore, envelope, ttl: int = 86400, pending_ttl: int = 60):
        self.store = store
        self.envelope = envelope
        self.ttl = int(ttl)
        self.pending_ttl = int(pending_ttl)

    def begin(self, caller: str, endpoint: str, key: str) -> Optional[StoredResponse]:
        """Claim the slot. Returns a stored response to replay, or None to proceed.

        Raises DUPLICATE_ENTRY when the same key is still being processed.
        Store outages fail open: the request proceeds without protection.
        """
        slot = idempotency_key(caller, endpoint, key)
        try:
            outcome = self.envelope.credentials(
                lambda: self.store.set_if_absent(slot, PENDING, self.pending_ttl))
            if outcome == INSTALLED:
                return None
            stored = self.envelope.credentials(lambda: self.store.get(slot))
        except PortalError as error:
            logger.warning("Idempotency store unavailable, proceeding without replay protection: %s",
                           error.code.value)
            return None
        if stored is None:
            # expired between the two calls; treat as a fresh request
            return None
        if stored == PENDING:
            raise PortalError(ErrorCode.DUPLICATE_ENTRY,
                              "A request with this idempotency key is already in progress")
        record = json.loads(stored)
        return StoredResponse(int(record["status"]), record.get("body"))

    def complete(self, caller: str, endpoint: str, key: str, status: int, body: Optional[dict]):
        slot = idempotency_key(caller, endpoint, key)
        try:
            if is_recordable(status, body):
                record = json.dumps({"status": status, "body": body})
                self.envelope.credentials(lambda: self.store.set(slot, record, self.ttl))
            else:
                self.envelope.credentials(lambda: self.store.delete(slot))
        except PortalError as error:
            logger.warning("Could not record idempotent response for %s: %s", endpoint, error.code.value)

    def fail(self, caller: str, endpoint: str, key: str, error: PortalError):
        status = ERROR_POLICY[error.code][0]
        self.complete(caller, endpoint, key, status, error.to_envelope())
