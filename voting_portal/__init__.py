# voting_portal/__init__.py

import logging
import logging.config

import click
from flask import Flask, g, jsonify, request
from flask_jwt_extended import unset_jwt_cookies
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from voting_portal.config import Config
from voting_portal.errors import ErrorCode, PortalError, new_error_id
from voting_portal.extensions import db, jwt, limiter, migrate
from voting_portal.resilience.envelope import Deadline

__version__ = "1.0.0"

logger = logging.getLogger(__name__)


def _configure_logging(level):
    logging.config.dictConfig({
        'version': 1,
        'disable_existing_loggers': False,
        'formatters': {
            'default': {'format': '%(asctime)s - %(name)s - %(levelname)s - %(message)s'},
        },
        'handlers': {
            'console': {'class': 'logging.StreamHandler', 'formatter': 'default'},
        },
        'root': {'level': level, 'handlers': ['console']},
    })


def _error_response(error: PortalError):
    body = error.to_envelope()
    resp = jsonify(body)
    resp.status_code = error.status
    if error.retry_after is not None:
        resp.headers['Retry-After'] = str(int(error.retry_after))
    return resp


def _register_error_handlers(app):

    @app.errorhandler(PortalError)
    def handle_portal_error(error):
        resp = _error_response(error)
        if error.is_security_event:
            # end the browser session whose lineage was just invalidated
            unset_jwt_cookies(resp)
            services = app.extensions.get('voting_portal')
            portal = getattr(g, 'portal', None)
            if services is not None:
                services.security_log.log_security_event('session_terminated', {
                    'code': error.code.value,
                    'path': request.path,
                    'origin_hash': portal.origin_hash if portal is not None else None,
                    'error_id': error.error_id,
                })
        level = logging.WARNING if error.status >= 500 or error.is_security_event else logging.INFO
        logger.log(level, "%s %s -> %s (%s)", request.method, request.path, error.code.value, error.error_id)
        return resp

    @app.errorhandler(HTTPException)
    def handle_http_error(error):
        if error.code == 404:
            code = ErrorCode.NOT_FOUND
        elif error.code == 405:
            code = ErrorCode.NOT_FOUND
        elif error.code == 429:
            code = ErrorCode.RATE_LIMITED
        elif error.code is not None and error.code >= 500:
            code = ErrorCode.INTERNAL_ERROR
        else:
            code = ErrorCode.BAD_INPUT
        return _error_response(PortalError(code, error.description if code is ErrorCode.BAD_INPUT else None))

    @app.errorhandler(Exception)
    def handle_unexpected(error):
        failure = PortalError(ErrorCode.INTERNAL_ERROR)
        failure.error_id = new_error_id()
        logger.exception("Unhandled error %s on %s %s", failure.error_id, request.method, request.path)
        return _error_response(failure)


def _register_cli(app):

    @app.cli.command('init-db')
    def init_db():
        """Create all tables."""
        db.create_all()
        click.echo('Database initialised.')

    @app.cli.command('reconcile')
    @click.option('--force', is_flag=True, help='Rewrite every contest, not only divergent ones.')
    def reconcile(force):
        """Repair the tally cache from the tally store."""
        report = app.extensions['voting_portal'].reconciler.reconcile(force=force)
        for contest_id, outcome in sorted(report.get('contests', {}).items()):
            click.echo(f'{contest_id}: {outcome}')
        if report.get('skipped'):
            click.echo(f"Skipped: {report.get('reason', 'already running')}")


def create_app(config_object=None, **overrides):
    """Application factory."""
    app = Flask(__name__)
    app.config.from_object(config_object or Config)
    app.config.update(overrides)

    _configure_logging(app.config['LOG_LEVEL'])

    if app.config['ACCESS_TOKEN_SECRET'] == app.config['REFRESH_TOKEN_SECRET']:
        raise RuntimeError("ACCESS_TOKEN_SECRET and REFRESH_TOKEN_SECRET must differ")
    app.config.setdefault('JWT_SECRET_KEY', app.config['ACCESS_TOKEN_SECRET'])

    # Fix proxy headers so the origin is the client, not the load balancer
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_port=1)

    db.init_app(app)
    migrate.init_app(app, db)
    jwt.init_app(app)
    limiter.init_app(app)

    # Ensure model modules are imported so SQLAlchemy metadata is populated
    from voting_portal.database import models  # noqa: F401
    from voting_portal.registry import EXTENSION_KEY, PortalServices

    services = PortalServices(app)
    app.extensions[EXTENSION_KEY] = services

    if not services.biometric_enforced:
        logger.warning("BIOMETRIC_ENFORCED is off: votes are accepted without biometric verification")

    @app.before_request
    def start_deadline():
        g.deadline = Deadline(app.config['REQUEST_DEADLINE'])

    from voting_portal.operations.health_monitor import health_bp
    from voting_portal.routes import api_bp
    app.register_blueprint(api_bp)
    app.register_blueprint(health_bp)

    _register_error_handlers(app)
    _register_cli(app)

    if app.config['RECONCILER_ENABLED']:
        services.worker.start()

    return app
