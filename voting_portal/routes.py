# voting_portal/routes.py

# JSON API for voters and operators. Every endpoint runs through the explicit
# request pipeline; handlers receive the pipeline context and its services.

import logging

from flask import Blueprint, jsonify, make_response, request
from flask_jwt_extended import set_access_cookies, set_refresh_cookies, unset_jwt_cookies

from voting_portal.api.pipeline import (
    AnyCredential, Authenticate, AuthenticateRefresh, AuthLockout, Idempotent, RateLimit, Validate,
    pipeline,
)
from voting_portal.authentication.biometric import GATEWAY_HEADER
from voting_portal.authentication.rbac import Permission
from voting_portal.errors import ErrorCode, PortalError
from voting_portal.resilience.envelope import IDENTITY_PROVIDER

logger = logging.getLogger(__name__)

api_bp = Blueprint('api', __name__, url_prefix='/api')


def _tally_rows(tally):
    return [{'nominee_id': nominee_id, 'count': count} for nominee_id, count in tally]


def _session_response(services, pair, voter, status=200):
    body = {
        'access_token': pair.access,
        'refresh_token': pair.refresh,
        'family_id': pair.family_id,
        'token_type': 'Bearer',
        'expires_in': services.sessions.access_ttl,
        'voter': {'id': voter.id, 'role': voter.role.value, 'display_name': voter.display_name},
    }
    resp = make_response(jsonify(body), status)
    set_access_cookies(resp, pair.access, max_age=services.sessions.access_ttl)
    set_refresh_cookies(resp, pair.refresh, max_age=services.sessions.refresh_ttl)
    return resp


# --- sessions ----------------------------------------------------------------

@api_bp.post('/auth/exchange')
@pipeline(Validate(body=True), RateLimit('auth'), AuthLockout())
def exchange(ctx):
    services = ctx.services
    timeout = ctx.deadline.bound(services.breakers.get(IDENTITY_PROVIDER).call_timeout)
    try:
        identity = services.envelope.identity(
            lambda: services.identity.exchange(ctx.body.get('assertion'), timeout=timeout))
    except PortalError as error:
        if error.code in (ErrorCode.INVALID_TOKEN, ErrorCode.BAD_INPUT):
            services.intrusion.record_failed_attempt(ctx.origin_hash)
        raise

    voter = services.envelope.store(lambda: services.tally_store.get_or_create_voter(
        identity.subject, identity.email, identity.display_name))
    pair = services.sessions.mint_pair(voter)
    services.intrusion.clear(ctx.origin_hash)
    logger.info("Session family %s started for voter %s", pair.family_id, voter.id)
    return _session_response(services, pair, voter)


@api_bp.post('/auth/refresh')
@pipeline(Validate(), AuthenticateRefresh(), RateLimit('auth'))
def refresh(ctx):
    pair = ctx.services.sessions.rotate(ctx.token, ctx.voter, {'origin_hash': ctx.origin_hash})
    return _session_response(ctx.services, pair, ctx.voter)


@api_bp.post('/auth/revoke')
@pipeline(Validate(), AnyCredential(), RateLimit('auth'))
def revoke(ctx):
    ctx.services.sessions.revoke(ctx.token)
    resp = make_response('', 204)
    unset_jwt_cookies(resp)
    return resp


# --- votes -------------------------------------------------------------------

@api_bp.post('/contests/<contest_id>/votes')
@pipeline(Validate(body=True, contest_id='contest'),
          Authenticate(Permission.VOTE),
          RateLimit('vote'),
          Idempotent(required_flag='VOTE_REQUIRE_IDEMPOTENCY_KEY'))
def submit_vote(ctx, contest_id):
    services = ctx.services
    nominee_id = services.validator.validate_object_id(ctx.body.get('nominee_id'), field='nominee_id')
    verified = services.biometric.check(
        ctx.voter,
        assertion=ctx.body.get('biometric_assertion'),
        gateway_flag=request.headers.get(GATEWAY_HEADER),
        deadline=ctx.deadline,
    )
    vote = services.votes.submit_vote(ctx.voter, contest_id, nominee_id, verified, ctx.origin_hash)
    return jsonify({'vote_id': vote.id, 'cast_at': vote.cast_at.isoformat()}), 201


@api_bp.get('/contests/<contest_id>/vote')
@pipeline(Validate(contest_id='contest'), Authenticate(), RateLimit('read'))
def check_voted(ctx, contest_id):
    vote = ctx.services.votes.check_voted(ctx.voter, contest_id)
    if vote is None:
        return jsonify({'voted': False})
    return jsonify({'voted': True, 'vote': vote.summary()})


@api_bp.get('/votes/mine')
@pipeline(Validate(), Authenticate(Permission.VIEW_OWN_STATUS), RateLimit('read'))
def voting_history(ctx):
    votes = ctx.services.votes.voting_history(ctx.voter)
    return jsonify({'votes': [vote.summary() for vote in votes]})


@api_bp.delete('/votes/<vote_id>')
@pipeline(Validate(body=True, vote_id='object'),
          Authenticate(Permission.RETRACT_VOTES),
          RateLimit('read'),
          Idempotent())
def retract_vote(ctx, vote_id):
    services = ctx.services
    reason = services.validator.validate_reason(ctx.body.get('reason'))
    summary = services.votes.retract_vote(ctx.voter, vote_id, reason)
    return jsonify({'retracted': summary})


# --- tallies -----------------------------------------------------------------

@api_bp.get('/contests/<contest_id>/tally')
@pipeline(Validate(contest_id='contest'), RateLimit('read'))
def list_tally(ctx, contest_id):
    tally = ctx.services.votes.get_tally(contest_id)
    return jsonify({'contest_id': contest_id, 'tally': _tally_rows(tally)})


@api_bp.get('/results')
@pipeline(Validate(), RateLimit('read'))
def list_results(ctx):
    results = ctx.services.votes.list_results()
    return jsonify({'results': [
        {'contest_id': row['contest_id'], 'title': row['title'], 'tally': _tally_rows(row['tally'])}
        for row in results
    ]})


# --- biases ------------------------------------------------------------------

@api_bp.post('/contests/<contest_id>/biases')
@pipeline(Validate(body=True, contest_id='contest'),
          Authenticate(Permission.MANAGE_BIASES),
          RateLimit('read'),
          Idempotent())
def apply_bias(ctx, contest_id):
    services = ctx.services
    nominee_id = services.validator.validate_object_id(ctx.body.get('nominee_id'), field='nominee_id')
    bias = services.biases.apply_bias(contest_id, nominee_id, ctx.body.get('amount'),
                                      ctx.body.get('reason'), ctx.voter)
    return jsonify({'bias_id': bias.id}), 201


@api_bp.post('/biases/<bias_id>/deactivate')
@pipeline(Validate(body=True, bias_id='object'),
          Authenticate(Permission.MANAGE_BIASES),
          RateLimit('read'),
          Idempotent())
def deactivate_bias(ctx, bias_id):
    ctx.services.biases.deactivate_bias(bias_id, ctx.voter, ctx.body.get('reason'))
    return '', 204


@api_bp.get('/biases')
@pipeline(Validate(), Authenticate(Permission.MANAGE_BIASES), RateLimit('read'))
def list_biases(ctx):
    services = ctx.services
    contest_id = request.args.get('contest_id')
    if contest_id is not None:
        services.validator.validate_contest_id(contest_id)
    include_inactive = request.args.get('include_inactive', '').lower() in ('1', 'true', 'yes')
    biases = services.biases.list_biases(ctx.voter, contest_id, include_inactive)
    return jsonify({'biases': [bias.audit_view() for bias in biases]})


# --- voters ------------------------------------------------------------------

@api_bp.put('/voters/<voter_id>/role')
@pipeline(Validate(body=True, voter_id='object'),
          Authenticate(Permission.MANAGE_ROLES),
          RateLimit('read'),
          Idempotent())
def change_role(ctx, voter_id):
    services = ctx.services
    if voter_id == ctx.voter.id:
        raise PortalError(ErrorCode.SELF_MODIFICATION_DENIED)
    role = services.validator.validate_role(ctx.body.get('role'))

    def update():
        target = services.tally_store.get_voter(voter_id)
        if target is None:
            raise PortalError(ErrorCode.NOT_FOUND, "Voter not found")
        services.tally_store.set_role(target, role, ctx.voter.id)
        return target.id

    services.envelope.store(update)
    logger.warning("Voter %s role set to %s by %s", voter_id, role.value, ctx.voter.id)
    return jsonify({'voter_id': voter_id, 'role': role.value})


# --- tally cache administration -----------------------------------------------

@api_bp.post('/admin/tally-cache/reconcile')
@pipeline(Validate(), Authenticate(Permission.MANAGE_CACHE), RateLimit('read'))
def reconcile(ctx):
    force = bool((ctx.body or {}).get('force', False))
    report = ctx.services.reconciler.reconcile(force=force)
    return jsonify({'report': report, 'metrics': ctx.services.reconciler.metrics})


@api_bp.get('/admin/tally-cache/<contest_id>/consistency')
@pipeline(Validate(contest_id='contest'), Authenticate(Permission.MANAGE_CACHE), RateLimit('read'))
def consistency(ctx, contest_id):
    return jsonify(ctx.services.reconciler.verify_consistency(contest_id))


# --- audit -------------------------------------------------------------------

@api_bp.get('/admin/audit')
@pipeline(Validate(), Authenticate(Permission.VIEW_AUDIT_LOGS), RateLimit('read'))
def audit_trail(ctx):
    services = ctx.services
    target_id = request.args.get('target_id')
    if target_id is not None:
        services.validator.validate_object_id(target_id, field='target_id')
    entries = services.envelope.store(lambda: services.tally_store.audit_entries(target_id=target_id))
    return jsonify({'entries': [entry.view() for entry in entries]})


@api_bp.get('/admin/security-log/integrity')
@pipeline(Validate(), Authenticate(Permission.VIEW_AUDIT_LOGS), RateLimit('read'))
def security_log_integrity(ctx):
    intact = ctx.services.security_log.verify_log_integrity()
    if not intact:
        logger.error("Security event log failed integrity verification")
    return jsonify({'intact': intact})
