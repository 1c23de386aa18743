# voting_portal/api/pipeline.py

"""Request pipeline: validate -> authenticate -> rate-limit -> idempotency -> handler.

Each stage declares the error codes it may short-circuit with. A stage stops
the request by raising PortalError; the idempotency stage can also answer
directly with a stored response.

    @api_bp.post('/contests/<contest_id>/votes')
    @pipeline(Validate(contest_id='contest', body=True),
              Authenticate(Permission.VOTE),
              RateLimit('vote'),
              Idempotent(required_flag='VOTE_REQUIRE_IDEMPOTENCY_KEY'))
    def submit_vote(ctx, contest_id):
        ...
"""

import ipaddress
import logging
import math
import time
from dataclasses import dataclass, field
from functools import wraps
from typing import Any, Dict, FrozenSet, Optional

from flask import current_app, g, jsonify, make_response, request
from flask_limiter.util import get_remote_address
from limits import parse

from voting_portal.api.idempotency import HEADER, StoredResponse
from voting_portal.errors import DEPENDENCY_CODES, ErrorCode, PortalError
from voting_portal.extensions import limiter
from voting_portal.registry import current_services
from voting_portal.resilience.envelope import Deadline
from voting_portal.security.intrusion_detection import hash_origin
from voting_portal.security.token_manager import REFRESH

logger = logging.getLogger(__name__)

RATE_CLASSES = {
    'auth': 'RATE_LIMIT_AUTH',
    'vote': 'RATE_LIMIT_VOTE',
    'read': 'RATE_LIMIT_READ',
}


@dataclass
class RequestContext:
    services: Any
    deadline: Deadline
    origin: str
    origin_hash: str
    body: Optional[dict] = None
    token: Optional[str] = None
    claims: Optional[dict] = None
    voter: Any = None
    idempotency_key: Optional[str] = None
    extras: Dict[str, Any] = field(default_factory=dict)

    @property
    def caller(self) -> str:
        return self.voter.id if self.voter is not None else f"anon:{self.origin_hash[:16]}"


class Stage:
    name = "stage"
    short_circuits: FrozenSet[ErrorCode] = frozenset()

    def before(self, ctx: RequestContext, view_args: dict):
        """Raise PortalError to stop, or return a response to answer directly."""
        return None

    def after(self, ctx: RequestContext, response):
        return response

    def on_error(self, ctx: RequestContext, error: PortalError):
        pass


def _request_context(services) -> RequestContext:
    deadline = getattr(g, 'deadline', None) or Deadline(current_app.config['REQUEST_DEADLINE'])
    origin = get_remote_address() or 'unknown'
    return RequestContext(
        services=services,
        deadline=deadline,
        origin=origin,
        origin_hash=hash_origin(origin, current_app.config['ORIGIN_HASH_SALT']),
    )


def pipeline(*stages: Stage):
    def decorator(view):
        @wraps(view)
        def wrapper(**view_args):
            ctx = _request_context(current_services())
            g.portal = ctx
            entered = []
            try:
                for stage in stages:
                    try:
                        early = stage.before(ctx, view_args)
                    except PortalError as error:
                        if error.code not in stage.short_circuits and error.code not in DEPENDENCY_CODES:
                            logger.error("Stage %s stopped the request with undeclared code %s",
                                         stage.name, error.code.value)
                        raise
                    entered.append(stage)
                    if early is not None:
                        response = make_response(early)
                        break
                else:
                    response = make_response(view(ctx, **view_args))
            except PortalError as error:
                for stage in reversed(entered):
                    stage.on_error(ctx, error)
                raise
            except Exception:
                internal = PortalError(ErrorCode.INTERNAL_ERROR)
                for stage in reversed(entered):
                    stage.on_error(ctx, internal)
                raise
            for stage in reversed(entered):
                response = stage.after(ctx, response)
            return response
        wrapper.stages = stages
        return wrapper
    return decorator


# --- validate --------------------------------------------------------------

class Validate(Stage):
    """Path identifiers must be 32-char hex; `contest` ids fail as INVALID_AWARD_ID."""
    name = "validate"
    short_circuits = frozenset({ErrorCode.BAD_INPUT, ErrorCode.INVALID_AWARD_ID})

    def __init__(self, body: bool = False, **id_fields):
        self.body = body
        self.id_fields = id_fields

    def before(self, ctx, view_args):
        validator = ctx.services.validator
        for arg, kind in self.id_fields.items():
            if kind == 'contest':
                validator.validate_contest_id(view_args.get(arg))
            else:
                validator.validate_object_id(view_args.get(arg), field=arg)
        if self.body:
            ctx.body = validator.require_json_object(request.get_json(silent=True))
        else:
            payload = request.get_json(silent=True)
            ctx.body = payload if isinstance(payload, dict) else {}


# --- authenticate ------------------------------------------------------------

def bearer_token() -> Optional[str]:
    header = request.headers.get('Authorization', '')
    if header:
        scheme, _, value = header.partition(' ')
        if scheme.lower() == 'bearer' and value.strip():
            return value.strip()
    return None


def _load_voter(ctx: RequestContext, voter_id: str):
    voter = ctx.services.envelope.store(lambda: ctx.services.tally_store.get_voter(voter_id))
    if voter is None:
        raise PortalError(ErrorCode.INVALID_TOKEN)
    return voter


class Authenticate(Stage):
    """Access credential from the Authorization header (preferred) or the access cookie."""
    name = "authenticate"
    short_circuits = frozenset({
        ErrorCode.NO_TOKEN, ErrorCode.INVALID_TOKEN, ErrorCode.TOKEN_EXPIRED,
        ErrorCode.TOKEN_REVOKED, ErrorCode.FORBIDDEN,
    })

    def __init__(self, permission=None):
        self.permission = permission

    def before(self, ctx, view_args):
        cookie_name = current_app.config.get('JWT_ACCESS_COOKIE_NAME', 'access_token_cookie')
        token = bearer_token() or request.cookies.get(cookie_name)
        if not token:
            raise PortalError(ErrorCode.NO_TOKEN)
        ctx.token = token
        ctx.claims = ctx.services.sessions.verify_access(token)
        ctx.voter = _load_voter(ctx, ctx.claims['sub'])
        # the stored role wins over the role baked into the token
        if self.permission is not None:
            ctx.services.rbac.require(ctx.voter.role, self.permission)


class AuthenticateRefresh(Stage):
    """Refresh credential from the header, the refresh cookie or the body (in that order)."""
    name = "authenticate_refresh"
    short_circuits = frozenset({ErrorCode.NO_TOKEN, ErrorCode.INVALID_TOKEN, ErrorCode.TOKEN_EXPIRED})

    def before(self, ctx, view_args):
        cookie_name = current_app.config.get('JWT_REFRESH_COOKIE_NAME', 'refresh_token_cookie')
        token = (bearer_token()
                 or request.cookies.get(cookie_name)
                 or (ctx.body or {}).get('refresh_token'))
        if not token:
            raise PortalError(ErrorCode.NO_TOKEN)
        ctx.token = token
        # signature and expiry only; the rotation protocol does the store checks
        ctx.claims = ctx.services.sessions.decode(token, REFRESH)
        ctx.voter = ctx.services.envelope.store(
            lambda: ctx.services.tally_store.get_voter(ctx.claims['sub']))


class AnyCredential(Stage):
    """Whichever credential the caller holds; used by revoke."""
    name = "any_credential"
    short_circuits = frozenset({ErrorCode.NO_TOKEN})

    def before(self, ctx, view_args):
        config = current_app.config
        token = (bearer_token()
                 or request.cookies.get(config.get('JWT_ACCESS_COOKIE_NAME', 'access_token_cookie'))
                 or request.cookies.get(config.get('JWT_REFRESH_COOKIE_NAME', 'refresh_token_cookie'))
                 or (ctx.body or {}).get('token'))
        if not token:
            raise PortalError(ErrorCode.NO_TOKEN)
        ctx.token = token


# --- rate limit --------------------------------------------------------------

def is_exempt(origin: str, networks) -> bool:
    try:
        address = ipaddress.ip_address(origin)
    except ValueError:
        return False
    for network in networks:
        try:
            if address in ipaddress.ip_network(network, strict=False):
                return True
        except ValueError:
            logger.warning("Ignoring malformed exempt network %r", network)
    return False


class RateLimit(Stage):
    """Per-origin window for a rate class, on Flask-Limiter's storage and strategy."""
    name = "rate_limit"
    short_circuits = frozenset({ErrorCode.RATE_LIMITED})

    def __init__(self, rate_class: str):
        if rate_class not in RATE_CLASSES:
            raise ValueError(f"Unknown rate class {rate_class!r}")
        self.rate_class = rate_class

    def before(self, ctx, view_args):
        config = current_app.config
        if is_exempt(ctx.origin, config.get('RATE_LIMIT_EXEMPT_NETWORKS', [])):
            return None
        item = parse(config[RATE_CLASSES[self.rate_class]])
        if not limiter.limiter.hit(item, self.rate_class, ctx.origin_hash):
            reset_at, _remaining = limiter.limiter.get_window_stats(item, self.rate_class, ctx.origin_hash)
            retry_after = max(1, math.ceil(reset_at - time.time()))
            raise PortalError(ErrorCode.RATE_LIMITED, retry_after=retry_after)


class AuthLockout(Stage):
    """Refuses origins with too many recent authentication failures."""
    name = "auth_lockout"
    short_circuits = frozenset({ErrorCode.RATE_LIMITED})

    def before(self, ctx, view_args):
        ctx.services.intrusion.check(ctx.origin_hash)


# --- idempotency -------------------------------------------------------------

class Idempotent(Stage):
    name = "idempotent"
    short_circuits = frozenset({ErrorCode.BAD_INPUT, ErrorCode.DUPLICATE_ENTRY})

    def __init__(self, required_flag: str = None):
        self.required_flag = required_flag

    def before(self, ctx, view_args):
        key = request.headers.get(HEADER)
        if not key:
            if self.required_flag and current_app.config.get(self.required_flag):
                raise PortalError(ErrorCode.BAD_INPUT, f"{HEADER} header is required",
                                  details={'field': HEADER})
            return None
        ctx.idempotency_key = ctx.services.validator.validate_idempotency_key(key)
        stored = ctx.services.idempotency.begin(ctx.caller, request.endpoint, key)
        if stored is None:
            return None
        ctx.extras['idempotent_replay'] = True
        return self._replay(stored)

    @staticmethod
    def _replay(stored: StoredResponse):
        if stored.body is None:
            response = make_response('', stored.status)
        else:
            response = make_response(jsonify(stored.body), stored.status)
        response.headers['Idempotent-Replayed'] = 'true'
        return response

    def after(self, ctx, response):
        if ctx.idempotency_key and not ctx.extras.get('idempotent_replay'):
            body = response.get_json(silent=True) if response.is_json else None
            ctx.services.idempotency.complete(ctx.caller, request.endpoint, ctx.idempotency_key,
                                              response.status_code, body)
        return response

    def on_error(self, ctx, error):
        if ctx.idempotency_key and not ctx.extras.get('idempotent_replay'):
            ctx.services.idempotency.fail(ctx.caller, request.endpoint, ctx.idempotency_key, error)
