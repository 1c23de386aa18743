from types import SimpleNamespace
from unittest.mock import patch

import pytest

from voting_portal.authentication.biometric import (
    AssertionRejected, BiometricGate, RemoteAuthenticatorVerifier, TrustedHeaderVerifier,
)
from voting_portal.authentication.identity import IdentityProviderClient
from voting_portal.errors import ErrorCode, PortalError
from voting_portal.registry import build_breakers
from voting_portal.resilience.envelope import ResilienceEnvelope

VERIFY_URL = "http://authenticator.test/verify"


@pytest.fixture
def envelope(clock):
    return ResilienceEnvelope(build_breakers({}, clock=clock))


@pytest.fixture
def voter():
    return SimpleNamespace(id="v" * 32, authenticators=[SimpleNamespace(credential_id="cred-1")],
                           has_authenticator=True)


@patch("voting_portal.authentication.biometric.requests.post")
def test_remote_verifier_posts_assertion(mock_post, voter):
    mock_post.return_value.status_code = 200
    mock_post.return_value.json.return_value = {"verified": True}
    assert RemoteAuthenticatorVerifier(VERIFY_URL).verify(voter, assertion="signed", timeout=2) is True
    args, kwargs = mock_post.call_args
    assert args[0] == VERIFY_URL
    assert kwargs["json"]["credential_ids"] == ["cred-1"]
    assert kwargs["timeout"] == 2


@patch("voting_portal.authentication.biometric.requests.post")
def test_remote_verifier_rejection(mock_post, voter):
    mock_post.return_value.status_code = 401
    mock_post.return_value.content = b'{"cancelled": true}'
    mock_post.return_value.json.return_value = {"error": "user cancelled", "cancelled": True}
    with pytest.raises(AssertionRejected) as excinfo:
        RemoteAuthenticatorVerifier(VERIFY_URL).verify(voter, assertion="signed")
    assert excinfo.value.cancelled is True


def test_remote_verifier_without_assertion(voter):
    assert RemoteAuthenticatorVerifier(VERIFY_URL).verify(voter, assertion=None) is False


@pytest.mark.parametrize("flag,expected", [("true", True), ("1", True), ("YES", True),
                                           ("false", False), (None, False), ("", False)])
def test_trusted_header(flag, expected, voter):
    assert TrustedHeaderVerifier().verify(voter, gateway_flag=flag) is expected


def test_gate_requires_registered_authenticator(envelope):
    gate = BiometricGate(TrustedHeaderVerifier(), envelope)
    bare = SimpleNamespace(id="x", has_authenticator=False)
    assert gate.check(bare, gateway_flag="true") is False
    assert gate.check(None, gateway_flag="true") is False


@patch("voting_portal.authentication.biometric.requests.post")
def test_gate_treats_rejection_as_unverified(mock_post, envelope, voter):
    mock_post.return_value.status_code = 403
    mock_post.return_value.content = b''
    gate = BiometricGate(RemoteAuthenticatorVerifier(VERIFY_URL), envelope)
    assert gate.check(voter, assertion="signed") is False
    assert envelope.breakers.get("authenticator").snapshot()["consecutive_failures"] == 0


@patch("voting_portal.authentication.biometric.requests.post")
def test_gate_reports_unreachable_verifier(mock_post, envelope, voter):
    mock_post.side_effect = ConnectionError("verifier down")
    gate = BiometricGate(RemoteAuthenticatorVerifier(VERIFY_URL), envelope)
    with pytest.raises(PortalError) as excinfo:
        gate.check(voter, assertion="signed")
    assert excinfo.value.code is ErrorCode.SERVICE_UNAVAILABLE


@patch("voting_portal.authentication.identity.requests.post")
def test_identity_exchange(mock_post):
    mock_post.return_value.status_code = 200
    mock_post.return_value.json.return_value = {"sub": "idp|42", "email": "x@example.com", "name": "X"}
    identity = IdentityProviderClient("http://identity.test").exchange("assertion", timeout=3)
    assert identity.subject == "idp|42"
    assert identity.display_name == "X"


@patch("voting_portal.authentication.identity.requests.post")
def test_identity_exchange_without_subject(mock_post):
    mock_post.return_value.status_code = 200
    mock_post.return_value.json.return_value = {"email": "x@example.com"}
    with pytest.raises(PortalError) as excinfo:
        IdentityProviderClient("http://identity.test").exchange("assertion")
    assert excinfo.value.code is ErrorCode.INVALID_TOKEN


def test_identity_exchange_requires_assertion():
    with pytest.raises(PortalError) as excinfo:
        IdentityProviderClient("http://identity.test").exchange("  ")
    assert excinfo.value.code is ErrorCode.BAD_INPUT
