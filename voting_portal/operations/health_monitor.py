# voting_portal/operations/health_monitor.py

# Liveness/readiness checks: durable store, credential store, tally cache, object store, breakers

from typing import Callable, Dict

from flask import Blueprint, jsonify

from voting_portal.errors import PortalError
from voting_portal.registry import current_services

health_bp = Blueprint('health', __name__)


def _probe(run: Callable[[], object]) -> Dict:
    try:
        run()
        return {"ok": True}
    except PortalError as e:
        return {"ok": False, "error": e.code.value, "retry_after": e.retry_after}


def _check_db(services) -> Dict:
    return _probe(lambda: services.envelope.store(services.tally_store.ping))


def _check_credential_store(services) -> Dict:
    return _probe(lambda: services.envelope.credentials(services.credential_store.ping))


def _check_cache(services) -> Dict:
    res = _probe(lambda: services.envelope.cache(services.counter_cache.ping))
    res["degraded"] = services.envelope.cache_degraded()
    res["repair_hints"] = services.repair_hints.pending()
    return res


def _check_object_store(services) -> Dict:
    if services.object_store is None:
        return {"ok": True, "configured": False}
    breaker = services.breakers.get("object_store")
    res = _probe(lambda: services.envelope.object_store(
        lambda: services.object_store.ping(timeout=breaker.call_timeout)))
    res["configured"] = True
    return res


def check_readiness(services) -> Dict:
    db = _check_db(services)
    credentials = _check_credential_store(services)
    return {"db": db, "credential_store": credentials, "overall_ok": db["ok"] and credentials["ok"]}


def check_health(services) -> Dict:
    """Aggregate overall system health. A degraded cache does not fail the check."""
    res = check_readiness(services)
    res.update({
        "cache": _check_cache(services),
        "object_store": _check_object_store(services),
        "breakers": services.breakers.snapshot(),
        "reconciler": dict(services.reconciler.metrics),
        "biometric_enforced": services.biometric_enforced,
    })
    return res


@health_bp.get("/health")
def liveness():
    res = check_health(current_services())
    code = 200 if res["overall_ok"] else 503
    return jsonify(res), code


@health_bp.get("/ready")
def readiness():
    res = check_readiness(current_services())
    code = 200 if res["overall_ok"] else 503
    return jsonify(res), code
