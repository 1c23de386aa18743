# voting_portal/operations/object_store.py

import requests


class ObjectStoreClient:
    """Minimal HTTP client for the object store holding nominee media."""

    def __init__(self, base_url: str, session: requests.Session = None):
        self.base_url = base_url.rstrip('/')
        self.session = session or requests

    def ping(self, timeout: float = 5.0) -> bool:
        response = self.session.head(self.base_url, timeout=timeout)
        # any answer below 500 means the service is reachable
        if response.status_code >= 500:
            response.raise_for_status()
        return True
