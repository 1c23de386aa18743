# voting_portal/registry.py

"""Per-application service registry.

Built once by `create_app` and kept in `app.extensions['voting_portal']`;
request handlers reach it through the pipeline context. Nothing here is a
module-level singleton, so two apps in one process never share breakers,
caches or stores.
"""

import logging

import redis
from flask import current_app
from sqlalchemy.exc import IntegrityError

from voting_portal.api.idempotency import IdempotencyGuard
from voting_portal.audit.security_log import SecurityEventLog
from voting_portal.authentication.biometric import (
    AssertionRejected, BiometricGate, RemoteAuthenticatorVerifier, TrustedHeaderVerifier,
)
from voting_portal.authentication.identity import IdentityProviderClient
from voting_portal.authentication.rbac import RBACService
from voting_portal.cache.counter_cache import MemoryCounterCache, RedisCounterCache, RepairHints
from voting_portal.cache.credential_store import MemoryCredentialStore, RedisCredentialStore
from voting_portal.database.tally_store import TallyStore
from voting_portal.errors import PortalError
from voting_portal.operations.object_store import ObjectStoreClient
from voting_portal.operations.reconciler import ReconcilerWorker, TallyReconciler
from voting_portal.resilience.breaker import BreakerRegistry, CircuitBreaker
from voting_portal.resilience.envelope import (
    AUTHENTICATOR, CACHE, CREDENTIAL_STORE, IDENTITY_PROVIDER, OBJECT_STORE, TALLY_STORE,
    LastKnownGood, ResilienceEnvelope,
)
from voting_portal.security.input_validator import InputValidator
from voting_portal.security.intrusion_detection import IntrusionDetection
from voting_portal.security.token_manager import SessionEngine
from voting_portal.voting.bias import BiasService
from voting_portal.voting.vote_engine import VoteEngine

logger = logging.getLogger(__name__)

EXTENSION_KEY = 'voting_portal'


# Errors that mean "the dependency answered"; they never count against its breaker
EXPECTED_ERRORS = {
    TALLY_STORE: (PortalError, IntegrityError),
    CACHE: (PortalError,),
    CREDENTIAL_STORE: (PortalError,),
    OBJECT_STORE: (PortalError,),
    AUTHENTICATOR: (PortalError, AssertionRejected),
    IDENTITY_PROVIDER: (PortalError,),
}


def build_breakers(settings: dict, clock=None) -> BreakerRegistry:
    registry = BreakerRegistry()
    for name, expected in EXPECTED_ERRORS.items():
        options = dict(settings.get(name, {}))
        if clock is not None:
            options['clock'] = clock
        registry.register(CircuitBreaker(name, expected_errors=expected, **options))
    return registry


class PortalServices:
    def __init__(self, app):
        config = app.config
        self.config = config
        self.biometric_enforced = bool(config['BIOMETRIC_ENFORCED'])

        self.breakers = build_breakers(config['BREAKERS'])
        self.envelope = ResilienceEnvelope(self.breakers, LastKnownGood(config['LAST_KNOWN_GOOD_SIZE']))

        if config['CACHE_BACKEND'] == 'redis':
            self.credential_store = RedisCredentialStore(redis.Redis.from_url(
                config['REDIS_URL'],
                socket_timeout=self.breakers.get(CREDENTIAL_STORE).call_timeout,
                socket_connect_timeout=self.breakers.get(CREDENTIAL_STORE).call_timeout,
            ))
            self.counter_cache = RedisCounterCache(redis.Redis.from_url(
                config['REDIS_URL'],
                socket_timeout=self.breakers.get(CACHE).call_timeout,
                socket_connect_timeout=self.breakers.get(CACHE).call_timeout,
            ), ttl=config['TALLY_CACHE_TTL'])
        elif config['CACHE_BACKEND'] == 'memory':
            logger.warning("Using in-process credential store and tally cache; not for multi-worker deployments")
            self.credential_store = MemoryCredentialStore()
            self.counter_cache = MemoryCounterCache(ttl=config['TALLY_CACHE_TTL'])
        else:
            raise ValueError(f"Unknown CACHE_BACKEND {config['CACHE_BACKEND']!r}")

        self.repair_hints = RepairHints()
        self.security_log = SecurityEventLog(log_dir=config['SECURITY_LOG_DIR'])
        self.rbac = RBACService()
        self.validator = InputValidator()
        self.tally_store = TallyStore()

        self.sessions = SessionEngine(
            self.credential_store, self.envelope,
            access_secret=config['ACCESS_TOKEN_SECRET'],
            refresh_secret=config['REFRESH_TOKEN_SECRET'],
            access_ttl=int(config['ACCESS_TOKEN_TTL'].total_seconds()),
            refresh_ttl=int(config['REFRESH_TOKEN_TTL'].total_seconds()),
            issuer=config['TOKEN_ISSUER'],
            audience=config['TOKEN_AUDIENCE'],
            security_log=self.security_log,
        )
        self.intrusion = IntrusionDetection(
            self.credential_store, self.envelope,
            max_attempts=config['FAILED_AUTH_MAX_ATTEMPTS'],
            window_seconds=config['FAILED_AUTH_WINDOW'],
            security_log=self.security_log,
        )
        self.idempotency = IdempotencyGuard(self.credential_store, self.envelope, ttl=config['IDEMPOTENCY_TTL'])
        self.identity = IdentityProviderClient(config['IDENTITY_PROVIDER_URL'])

        if config.get('AUTHENTICATOR_VERIFY_URL'):
            verifier = RemoteAuthenticatorVerifier(config['AUTHENTICATOR_VERIFY_URL'])
        else:
            verifier = TrustedHeaderVerifier()
        self.biometric = BiometricGate(verifier, self.envelope, enforced=self.biometric_enforced)

        self.object_store = None
        if config.get('OBJECT_STORE_URL'):
            self.object_store = ObjectStoreClient(config['OBJECT_STORE_URL'])

        self.votes = VoteEngine(self.tally_store, self.counter_cache, self.envelope,
                                repair_hints=self.repair_hints, rbac=self.rbac,
                                biometric_enforced=self.biometric_enforced)
        self.biases = BiasService(self.tally_store, self.envelope, self.votes,
                                  rbac=self.rbac, validator=self.validator)
        self.reconciler = TallyReconciler(self.votes, self.envelope, self.repair_hints)
        self.worker = ReconcilerWorker(app, self.reconciler, interval=config['RECONCILER_INTERVAL'])

    def shutdown(self):
        self.worker.shutdown()


def current_services() -> PortalServices:
    return current_app.extensions[EXTENSION_KEY]
