from voting_portal.errors import ERROR_POLICY, ErrorCode, PortalError


def test_every_code_has_a_policy():
    assert set(ERROR_POLICY) == set(ErrorCode)


def test_envelope_shape():
    error = PortalError(ErrorCode.STORE_UNAVAILABLE, retry_after=30)
    body = error.to_envelope()["error"]
    assert body["code"] == "STORE_UNAVAILABLE"
    assert body["retryable"] is True
    assert body["retry_after"] == 30
    assert body["error_id"].startswith("err_")
    assert error.status == 503


def test_error_id_is_stable_once_assigned():
    error = PortalError(ErrorCode.BAD_INPUT, "nope", details={"field": "amount"})
    first = error.to_envelope()["error"]["error_id"]
    assert error.to_envelope()["error"]["error_id"] == first
    assert error.to_envelope()["error"]["details"] == {"field": "amount"}


def test_security_codes():
    assert PortalError(ErrorCode.TOKEN_REUSE_DETECTED).is_security_event
    assert PortalError(ErrorCode.TOKEN_FAMILY_REVOKED).is_security_event
    assert not PortalError(ErrorCode.TOKEN_REVOKED).is_security_event


def test_status_codes():
    assert PortalError(ErrorCode.ALREADY_VOTED).status == 409
    assert PortalError(ErrorCode.BIOMETRIC_REQUIRED).status == 428
    assert PortalError(ErrorCode.WINDOW_CLOSED).status == 400
    assert PortalError(ErrorCode.INVALID_AWARD_ID).status == 400
