# voting_portal/security/token_manager.py

import logging
import time
import uuid
from typing import Callable, NamedTuple, Optional

import jwt

from voting_portal.cache.credential_store import (
    ALREADY_PRESENT, CredentialStore, blacklist_key, revoked_family_key, used_refresh_key,
)
from voting_portal.errors import DEPENDENCY_CODES, ErrorCode, PortalError
from voting_portal.resilience.envelope import CREDENTIAL_STORE, ResilienceEnvelope

logger = logging.getLogger(__name__)

ACCESS = "access"
REFRESH = "refresh"
ALGORITHM = "HS256"

_REQUIRED_CLAIMS = ["sub", "jti", "fam", "kind", "iat", "exp", "iss", "aud"]


class TokenPair(NamedTuple):
    access: str
    refresh: str
    family_id: str


# Short-lived access and rotating refresh credentials with replay detection
class SessionEngine:
    """Mints, verifies, rotates and revokes session credentials.

    Access and refresh tokens are signed with different secrets. Both carry
    the family id (`fam`) shared by every generation of a refresh lineage, so
    revoking a family invalidates all of its outstanding credentials.
    """

    def __init__(self, store: CredentialStore, envelope: ResilienceEnvelope,
                 access_secret: str, refresh_secret: str,
                 access_ttl: int = 900, refresh_ttl: int = 7 * 24 * 3600,
                 issuer: str = "voting-portal", audience: str = "voting-portal-api",
                 security_log=None, clock: Callable[[], float] = time.time):
        if access_secret == refresh_secret:
            raise ValueError("Access and refresh secrets must differ")
        self.store = store
        self.envelope = envelope
        self._secrets = {ACCESS: access_secret, REFRESH: refresh_secret}
        self.access_ttl = int(access_ttl)
        self.refresh_ttl = int(refresh_ttl)
        self.issuer = issuer
        self.audience = audience
        self.security_log = security_log
        self._clock = clock

    # --- minting ---------------------------------------------------------

    def _encode(self, kind: str, claims: dict) -> str:
        now = int(self._clock())
        ttl = self.access_ttl if kind == ACCESS else self.refresh_ttl
        payload = dict(claims)
        payload.update({
            "jti": uuid.uuid4().hex,
            "kind": kind,
            "iat": now,
            "exp": now + ttl,
            "iss": self.issuer,
            "aud": self.audience,
        })
        return jwt.encode(payload, self._secrets[kind], algorithm=ALGORITHM)

    def mint_pair(self, voter, family_id: Optional[str] = None) -> TokenPair:
        family_id = family_id or uuid.uuid4().hex  # 128 random bits
        access = self._encode(ACCESS, {"sub": voter.id, "role": voter.role.value, "fam": family_id})
        refresh = self._encode(REFRESH, {"sub": voter.id, "fam": family_id})
        return TokenPair(access, refresh, family_id)

    # --- verification ----------------------------------------------------

    def decode(self, token: str, kind: str) -> dict:
        """Check signature, issuer, audience, kind and expiry. No store reads."""
        if not token or not isinstance(token, str):
            raise PortalError(ErrorCode.INVALID_TOKEN)
        try:
            payload = jwt.decode(
                token,
                self._secrets[kind],
                algorithms=[ALGORITHM],
                audience=self.audience,
                issuer=self.issuer,
                # expiry is checked below against the engine clock
                options={"require": _REQUIRED_CLAIMS, "verify_exp": False, "verify_iat": False},
            )
        except jwt.InvalidTokenError as error:
            logger.debug("Rejected %s token: %s", kind, error)
            raise PortalError(ErrorCode.INVALID_TOKEN) from error
        if payload.get("kind") != kind:
            raise PortalError(ErrorCode.INVALID_TOKEN)
        if kind == ACCESS and "role" not in payload:
            raise PortalError(ErrorCode.INVALID_TOKEN)
        if int(payload["exp"]) <= self._clock():
            raise PortalError(ErrorCode.TOKEN_EXPIRED)
        return payload

    def verify_access(self, token: str) -> dict:
        payload = self.decode(token, ACCESS)

        def lookup():
            return (self.store.get(blacklist_key(payload["jti"])),
                    self.store.get(revoked_family_key(payload["fam"])))

        try:
            blacklisted, family_revoked = self.envelope.credentials(lookup)
        except PortalError as error:
            # fail closed
            logger.warning("Credential store unavailable during access check, rejecting token %s: %s",
                           payload["jti"], error.code.value)
            raise PortalError(ErrorCode.TOKEN_REVOKED) from error
        if blacklisted is not None or family_revoked is not None:
            raise PortalError(ErrorCode.TOKEN_REVOKED)
        return payload

    def verify_refresh(self, token: str) -> dict:
        payload = self.decode(token, REFRESH)
        family_revoked = self._rotation_call(lambda: self.store.get(revoked_family_key(payload["fam"])))
        if family_revoked is not None:
            raise PortalError(ErrorCode.TOKEN_FAMILY_REVOKED)
        return payload

    def remaining_ttl(self, payload: dict) -> int:
        return max(1, int(payload["exp"] - self._clock()))

    # --- rotation --------------------------------------------------------

    def _rotation_call(self, operation):
        try:
            return self.envelope.credentials(operation)
        except PortalError as error:
            if error.code in DEPENDENCY_CODES:
                raise PortalError(
                    ErrorCode.SERVICE_UNAVAILABLE,
                    "Session store temporarily unavailable",
                    retry_after=error.retry_after or self.envelope.breakers.get(CREDENTIAL_STORE).retry_after(),
                ) from error
            raise

    def rotate(self, old_refresh: str, voter, context: Optional[dict] = None) -> TokenPair:
        """Exchange a refresh token for a new pair in the same family.

        A second use of the same refresh token revokes the whole family and
        fails with TOKEN_REUSE_DETECTED.
        """
        context = context or {}
        payload = self.verify_refresh(old_refresh)
        if voter is None or voter.id != payload["sub"]:
            raise PortalError(ErrorCode.INVALID_TOKEN)
        token_id, family_id = payload["jti"], payload["fam"]

        outcome = self._rotation_call(
            lambda: self.store.set_if_absent(used_refresh_key(token_id), family_id, self.refresh_ttl))
        if outcome == ALREADY_PRESENT:
            self.revoke_family(family_id, "refresh_token_reuse")
            logger.warning("Refresh token reuse detected for voter %s family %s", payload["sub"], family_id)
            self._record("refresh_token_reuse", {
                "family_id": family_id,
                "token_id": token_id,
                "origin_hash": context.get("origin_hash"),
            }, payload["sub"])
            raise PortalError(ErrorCode.TOKEN_REUSE_DETECTED)

        pair = self.mint_pair(voter, family_id=family_id)
        try:
            self._rotation_call(lambda: self.store.set(
                blacklist_key(token_id), "rotated", self.remaining_ttl(payload)))
        except PortalError:
            # release the marker so the caller can retry with the same token
            try:
                self.store.delete(used_refresh_key(token_id))
            except Exception as error:
                logger.error("Could not release rotation marker for %s: %s", token_id, error)
            raise
        return pair

    # --- revocation ------------------------------------------------------

    def revoke_family(self, family_id: str, reason: str) -> None:
        self.envelope.credentials(
            lambda: self.store.set(revoked_family_key(family_id), reason, self.refresh_ttl))
        logger.info("Revoked credential family %s (%s)", family_id, reason)

    def revoke_individual(self, token_id: str, remaining_ttl: int, reason: str) -> None:
        ttl = min(max(1, int(remaining_ttl)), self.refresh_ttl)
        self.envelope.credentials(lambda: self.store.set(blacklist_key(token_id), reason, ttl))

    def revoke(self, token: str, reason: str = "logout") -> dict:
        """Revoke whichever kind of credential `token` is.

        Refresh credentials take their whole family with them.
        """
        try:
            payload = self.decode(token, ACCESS)
        except PortalError as access_error:
            if access_error.code is ErrorCode.TOKEN_EXPIRED:
                raise
            payload = self.decode(token, REFRESH)
        self.revoke_individual(payload["jti"], self.remaining_ttl(payload), reason)
        if payload["kind"] == REFRESH:
            self.revoke_family(payload["fam"], reason)
        self._record("credential_revoked", {"kind": payload["kind"], "reason": reason,
                                            "family_id": payload["fam"]}, payload["sub"])
        return payload

    def _record(self, event_type, data, user_id=None):
        if self.security_log is not None:
            self.security_log.log_security_event(event_type, data, user_id=user_id)
