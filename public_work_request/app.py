import logging
import os
import secrets
from datetime import timedelta

import click
from dotenv import load_dotenv
from flask import Flask
from flask_migrate import Migrate
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from .errors import AppError, EncryptionError, ErrorCode, RateLimited
from .models import db
from .services.audit_service import log_audit
from .services.cmp_auth import TOKEN_ENDPOINT, TokenCache
from .services.cmp_client import BASE_URL
from .services.credential_service import CredentialCipher
from .services.rate_limiter import RateLimiter
from .services.submission_service import CmpClientFactory, SubmissionService
from .services.submission_store import SubmissionStore
from .utils import api_response, error_response

load_dotenv() # Load env vars before anything else

logger = logging.getLogger(__name__)


def load_config():
    """Configuration from environment variables."""
    database_url = os.environ.get('DATABASE_URL')
    if database_url and database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)
    if not database_url:
        database_url = 'sqlite:///' + os.path.join(os.getcwd(), 'public_work_request.db')

    return {
        'SECRET_KEY': os.environ.get('SECRET_KEY') or secrets.token_hex(32),
        'SQLALCHEMY_DATABASE_URI': database_url,
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'ENCRYPTION_KEY': os.environ.get('ENCRYPTION_KEY'),
        'INTERNAL_API_SECRET': os.environ.get('INTERNAL_API_SECRET'),
        'CMP_API_BASE_URL': os.environ.get('CMP_API_BASE_URL', BASE_URL),
        'CMP_TOKEN_URL': os.environ.get('CMP_TOKEN_URL', TOKEN_ENDPOINT),
        'CMP_REQUEST_TIMEOUT': float(os.environ.get('CMP_REQUEST_TIMEOUT', 30)),
        'RATE_LIMIT_WINDOW_MS': int(os.environ.get('RATE_LIMIT_WINDOW_MS', 60000)),
        'RATE_LIMIT_FORM_FETCH': int(os.environ.get('RATE_LIMIT_FORM_FETCH', 30)),
        'RATE_LIMIT_SUBMIT': int(os.environ.get('RATE_LIMIT_SUBMIT', 5)),
        'RETRY_LEASE_MINUTES': int(os.environ.get('RETRY_LEASE_MINUTES', 10)),
        'MAX_CONTENT_LENGTH': int(os.environ.get('MAX_CONTENT_LENGTH', 25 * 1024 * 1024)),
        'AUTO_CREATE_TABLES': os.environ.get('AUTO_CREATE_TABLES', '1') not in ('0', 'false', 'False'),
        'LOG_LEVEL': os.environ.get('LOG_LEVEL', 'INFO'),
    }


def create_app(config=None):
    app = Flask(__name__)
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_prefix=1)

    # --- CONFIGURATION ---
    app.config.update(load_config())
    if config:
        app.config.update(config)

    logging.basicConfig(
        level=app.config['LOG_LEVEL'],
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )

    # --- INITIALIZE EXTENSIONS ---
    db.init_app(app)
    Migrate(app, db)

    app.extensions['public_work_request'] = build_components(app)

    from .routes.jobs import jobs_bp
    from .routes.public import public_bp
    app.register_blueprint(public_bp)
    app.register_blueprint(jobs_bp)

    register_error_handlers(app)
    register_commands(app)

    @app.route('/api/health')
    def health():
        try:
            db.session.execute(text("SELECT 1"))
            database = 'ok'
        except SQLAlchemyError as e:
            app.logger.error(f"Health check database query failed: {e}")
            db.session.rollback()
            database = 'unavailable'
        status = 200 if database == 'ok' else 503
        return api_response({'status': 'ok' if status == 200 else 'degraded', 'database': database}, status=status)

    if app.config['AUTO_CREATE_TABLES']:
        with app.app_context():
            db.create_all()

    return app


def build_components(app):
    """Process-local collaborators shared across requests."""
    cipher = None
    if app.config.get('ENCRYPTION_KEY'):
        cipher = CredentialCipher.from_config(app.config)
    else:
        logger.warning("ENCRYPTION_KEY is not set; CMP deliveries will fail until it is configured.")

    token_cache = TokenCache()
    client_factory = CmpClientFactory(
        cipher,
        token_cache=token_cache,
        base_url=app.config['CMP_API_BASE_URL'],
        token_url=app.config['CMP_TOKEN_URL'],
        timeout=app.config['CMP_REQUEST_TIMEOUT'],
    )
    window_ms = app.config['RATE_LIMIT_WINDOW_MS']
    return {
        'cipher': cipher,
        'token_cache': token_cache,
        'form_fetch_limiter': RateLimiter(app.config['RATE_LIMIT_FORM_FETCH'], window_ms),
        'submit_limiter': RateLimiter(app.config['RATE_LIMIT_SUBMIT'], window_ms),
        'submission_service': SubmissionService(
            SubmissionStore(),
            client_factory,
            audit=log_audit,
            retry_lease=timedelta(minutes=app.config['RETRY_LEASE_MINUTES']),
        ),
    }


def register_error_handlers(app):
    # --- ERROR HANDLERS ---
    @app.errorhandler(RateLimited)
    def rate_limited(error):
        return error_response(error, headers={'Retry-After': str(error.retry_after or 60)})

    @app.errorhandler(EncryptionError)
    def encryption_error(error):
        app.logger.error(f"Credential encryption error: {error.message}")
        return error_response(AppError('An unexpected error occurred', 500, ErrorCode.INTERNAL_ERROR))

    @app.errorhandler(AppError)
    def app_error(error):
        if error.status_code >= 500:
            app.logger.error(f"{error.__class__.__name__}: {error.message}")
        return error_response(error)

    @app.errorhandler(HTTPException)
    def http_error(error):
        if error.code == 404:
            code = ErrorCode.NOT_FOUND
        elif error.code < 500:
            code = ErrorCode.VALIDATION_ERROR
        else:
            code = ErrorCode.INTERNAL_ERROR
        return api_response({'error': {'code': code, 'message': error.description}}, status=error.code)

    @app.errorhandler(Exception)
    def internal_error(error):
        app.logger.exception(f"Unhandled error: {error}")
        db.session.rollback()
        return error_response(AppError('An unexpected error occurred', 500, ErrorCode.INTERNAL_ERROR))


def register_commands(app):
    @app.cli.command('retry-submissions')
    def retry_submissions_command():
        """Replay failed CMP deliveries whose backoff has elapsed."""
        results = app.extensions['public_work_request']['submission_service'].retry_due()
        click.echo(results)

    @app.cli.command('cleanup')
    def cleanup_command():
        """Delete long-expired links and old audit entries."""
        results = app.extensions['public_work_request']['submission_service'].cleanup()
        click.echo(results)

    @app.cli.command('list-submissions')
    @click.option('--status', default=None, help='PENDING, SUBMITTED, FAILED or RETRYING')
    @click.option('--form-id', default=None)
    def list_submissions_command(status, form_id):
        """Operator view of submissions, e.g. exhausted FAILED rows."""
        store = app.extensions['public_work_request']['submission_service'].store
        for submission in store.list_submissions(form_id=form_id, status=status):
            data = submission.to_dict()
            click.echo(
                f"{data['id']} {data['status']} retries={data['retryCount']} "
                f"next={data['nextRetryAt'] or '-'} remote={data['remoteRequestId'] or '-'} "
                f"error={data['errorMessage'] or '-'}"
            )
