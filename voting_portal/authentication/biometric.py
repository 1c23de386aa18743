# voting_portal/authentication/biometric.py

"""Platform-authenticator (biometric) verification.

Two verifiers, chosen by configuration:

- RemoteAuthenticatorVerifier posts the client's assertion to the
  authenticator verification service.
- TrustedHeaderVerifier accepts the `X-Biometric-Verified` flag set by a
  gateway that already verified the assertion.
"""

import logging

import requests

from voting_portal.resilience.envelope import AUTHENTICATOR

logger = logging.getLogger(__name__)

GATEWAY_HEADER = "X-Biometric-Verified"


class AssertionRejected(Exception):
    """The authenticator refused the assertion, or the user cancelled the prompt."""

    def __init__(self, message, cancelled=False):
        super().__init__(message)
        self.cancelled = cancelled


class RemoteAuthenticatorVerifier:
    def __init__(self, url: str, session: requests.Session = None):
        self.url = url
        self.session = session or requests

    def verify(self, voter, assertion=None, gateway_flag=None, timeout=5.0) -> bool:
        if not assertion:
            return False
        response = self.session.post(self.url, json={
            "voter_id": voter.id,
            "credential_ids": [cred.credential_id for cred in voter.authenticators],
            "assertion": assertion,
        }, timeout=timeout)
        if response.status_code in (400, 401, 403):
            body = response.json() if response.content else {}
            raise AssertionRejected(body.get("error", "assertion rejected"),
                                    cancelled=bool(body.get("cancelled")))
        response.raise_for_status()
        return bool(response.json().get("verified"))


class TrustedHeaderVerifier:
    def verify(self, voter, assertion=None, gateway_flag=None, timeout=5.0) -> bool:
        return str(gateway_flag or "").strip().lower() in ("1", "true", "yes")


class BiometricGate:
    """Runs a verifier behind the authenticator breaker.

    Rejected or cancelled assertions come back as False; an unreachable
    verifier surfaces as SERVICE_UNAVAILABLE from the envelope.
    """

    def __init__(self, verifier, envelope, enforced=True):
        self.verifier = verifier
        self.envelope = envelope
        self.enforced = enforced

    def check(self, voter, assertion=None, gateway_flag=None, deadline=None) -> bool:
        if voter is None or not self.envelope.store(lambda: voter.has_authenticator):
            return False
        breaker = self.envelope.breakers.get(AUTHENTICATOR)
        timeout = breaker.call_timeout
        if deadline is not None:
            timeout = deadline.bound(timeout)
        try:
            return self.envelope.authenticator(
                lambda: self.verifier.verify(voter, assertion=assertion,
                                             gateway_flag=gateway_flag, timeout=timeout))
        except AssertionRejected as rejected:
            logger.info("Biometric assertion for voter %s not accepted (cancelled=%s)",
                        voter.id, rejected.cancelled)
            return False
