from unittest.mock import MagicMock

from sqlalchemy.exc import OperationalError

from voting_portal.operations.health_monitor import check_health
from voting_portal.operations.object_store import ObjectStoreClient


def test_health_reports_every_dependency(client):
    resp = client.get('/health')
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["overall_ok"] is True
    assert body["db"] == {"ok": True}
    assert body["cache"]["degraded"] is False
    assert body["object_store"] == {"ok": True, "configured": False}
    assert set(body["breakers"]) == {"tally_store", "cache", "credential_store", "object_store",
                                     "authenticator", "identity_provider"}
    assert body["biometric_enforced"] is True
    assert body["reconciler"]["runs"] == 0


def test_ready_fails_when_store_is_down(client, services, monkeypatch):
    def down():
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))

    monkeypatch.setattr(services.tally_store, "ping", down)
    resp = client.get('/ready')
    assert resp.status_code == 503
    body = resp.get_json()
    assert body["db"]["ok"] is False
    assert body["db"]["error"] == "STORE_UNAVAILABLE"
    assert body["credential_store"]["ok"] is True


def test_degraded_cache_does_not_fail_health(client, services, monkeypatch):
    def down():
        raise ConnectionError("redis down")

    monkeypatch.setattr(services.counter_cache, "ping", down)
    resp = client.get('/health')
    assert resp.status_code == 200
    assert resp.get_json()["cache"]["ok"] is False


def test_object_store_probe(services, monkeypatch):
    session = MagicMock()
    session.head.return_value.status_code = 503
    session.head.return_value.raise_for_status.side_effect = ConnectionError("bad gateway")
    monkeypatch.setattr(services, "object_store", ObjectStoreClient("http://objects.test/media", session=session))

    report = check_health(services)
    assert report["object_store"]["ok"] is False
    assert report["object_store"]["configured"] is True
    assert report["object_store"]["error"] == "SERVICE_UNAVAILABLE"
    # object storage is not part of readiness
    assert report["overall_ok"] is True


def test_object_store_answering_below_500_is_reachable(services, monkeypatch):
    session = MagicMock()
    session.head.return_value.status_code = 403
    monkeypatch.setattr(services, "object_store", ObjectStoreClient("http://objects.test/media/", session=session))

    assert check_health(services)["object_store"] == {"ok": True, "configured": True}
    assert session.head.call_args[0][0] == "http://objects.test/media"
    session.head.return_value.raise_for_status.assert_not_called()
