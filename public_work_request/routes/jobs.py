from flask import Blueprint, current_app, request
import hmac

from ..errors import AppError, ErrorCode
from ..utils import api_response, error_response, get_component

jobs_bp = Blueprint('jobs_bp', __name__)

@jobs_bp.before_request
def require_internal_secret():
    """Internal jobs are only reachable with the shared bearer secret."""
    secret = current_app.config.get('INTERNAL_API_SECRET')
    auth_header = request.headers.get('Authorization', '')
    if not secret or not hmac.compare_digest(auth_header.encode(), f'Bearer {secret}'.encode()):
        return error_response(AppError('Invalid internal auth', 401, ErrorCode.UNAUTHORIZED))

@jobs_bp.route('/api/v1/internal/retry-submissions', methods=['POST'])
def retry_submissions_job():
    """
    Cron job to replay failed CMP deliveries whose backoff has elapsed.
    Should be called every ~2 minutes by the process supervisor.
    """
    results = get_component('submission_service').retry_due()
    return api_response(results)

@jobs_bp.route('/api/v1/internal/cleanup', methods=['POST'])
def cleanup_job():
    """
    Daily job: drops long-expired links and audit entries older than 90 days.
    """
    results = get_component('submission_service').cleanup()
    return api_response(results)
