from flask import Blueprint, request, current_app
from werkzeug.utils import secure_filename
import json

from ..errors import AppError, ErrorCode, LinkUnavailable, RateLimited
from ..services.cmp_client import FileUpload
from ..services.conditional_logic import compute_visibility
from ..services.field_registry import is_known_kind, parse_fields
from ..utils import api_response, error_response, get_client_ip, get_component

public_bp = Blueprint('public', __name__)

FILE_FIELD_PREFIX = 'file_'

def enforce_rate_limit(limiter_name):
    result = get_component(limiter_name).check(get_client_ip())
    if not result.allowed:
        raise RateLimited(result.retry_after)

def invalid_submission():
    return error_response(AppError('Invalid submission.', 400, ErrorCode.VALIDATION_ERROR))

def parse_submission_request():
    """
    Accepts multipart (token, formData JSON string, file_<identifier> parts)
    or a JSON body {token, formData}. Returns (token, values, uploads) or None.
    """
    if request.is_json:
        body = request.get_json(silent=True) or {}
        token = body.get('token')
        form_data = body.get('formData')
    else:
        token = request.form.get('token')
        raw = request.form.get('formData')
        try:
            form_data = json.loads(raw) if raw is not None else None
        except ValueError:
            form_data = None

    if not isinstance(token, str) or not token or not isinstance(form_data, dict):
        return None

    uploads = []
    for key, storage in request.files.items(multi=True):
        if not key.startswith(FILE_FIELD_PREFIX) or not storage or not storage.filename:
            continue
        uploads.append(FileUpload(
            field_identifier=key[len(FILE_FIELD_PREFIX):],
            filename=secure_filename(storage.filename) or 'upload',
            content=storage.read(),
            content_type=storage.mimetype or 'application/octet-stream',
        ))
    return token, form_data, uploads

# ==========================================
# PUBLIC ROUTES
# ==========================================

@public_bp.route('/api/v1/public/forms/<token>', methods=['GET'])
def get_public_form(token):
    """
    Public Endpoint: form config for a shareable link.
    Not found, inactive, expired and spent links all answer the same 404.
    """
    enforce_rate_limit('form_fetch_limiter')

    form_url = get_component('submission_service').get_available_link(token)
    form = form_url.form

    # unrecognised kinds are neither rendered nor submitted
    fields = [f for f in parse_fields(form.form_fields_snapshot) if is_known_kind(f)]

    return api_response({
        'id': form.id,
        'title': form.title,
        'description': form.description,
        'templateName': form.cmp_template_name,
        'fields': [f.raw for f in fields],
        'visibility': compute_visibility(fields, {}).to_dict(),
    })

@public_bp.route('/api/v1/public/submissions', methods=['POST'])
def submit_form():
    """
    Public Endpoint: Submit Form
    200 {submissionId}, 400 invalid/validation map, 502 upstream failure.
    """
    enforce_rate_limit('submit_limiter')

    parsed = parse_submission_request()
    if parsed is None:
        return invalid_submission()
    token, form_data, uploads = parsed

    service = get_component('submission_service')
    try:
        submission = service.submit(token, form_data, uploads, ip_address=get_client_ip())
    except LinkUnavailable:
        current_app.logger.info("Submission rejected: link unavailable")
        return invalid_submission()

    return api_response({'submissionId': submission.id, 'message': 'Submission received'})
