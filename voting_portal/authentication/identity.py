# voting_portal/authentication/identity.py

import logging
from dataclasses import dataclass
from typing import Optional

import requests

from voting_portal.errors import ErrorCode, PortalError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    subject: str
    email: Optional[str] = None
    display_name: Optional[str] = None


class IdentityProviderClient:
    """Exchanges an opaque identity-provider assertion for a verified identity."""

    def __init__(self, url: str, session: requests.Session = None):
        self.url = url
        self.session = session or requests

    def exchange(self, assertion: str, timeout: float = 5.0) -> Identity:
        if not isinstance(assertion, str) or not assertion.strip():
            raise PortalError(ErrorCode.BAD_INPUT, "assertion is required", details={'field': 'assertion'})
        response = self.session.post(self.url, json={"assertion": assertion}, timeout=timeout)
        if response.status_code in (400, 401, 403):
            logger.info("Identity provider rejected assertion: HTTP %s", response.status_code)
            raise PortalError(ErrorCode.INVALID_TOKEN, "Identity assertion was rejected")
        response.raise_for_status()
        body = response.json()
        subject = body.get("sub")
        if not subject:
            raise PortalError(ErrorCode.INVALID_TOKEN, "Identity assertion carried no subject")
        return Identity(subject=str(subject), email=body.get("email"), display_name=body.get("name"))
