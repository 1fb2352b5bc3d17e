"""Application error taxonomy.

Every error raised across a service boundary derives from ``AppError`` so the
HTTP layer can render it with a status code and a machine-readable code.
"""


class ErrorCode:
    VALIDATION_ERROR = 'VALIDATION_ERROR'
    NOT_FOUND = 'NOT_FOUND'
    UNAUTHORIZED = 'UNAUTHORIZED'
    CMP_API_ERROR = 'CMP_API_ERROR'
    INTERNAL_ERROR = 'INTERNAL_ERROR'
    RATE_LIMITED = 'RATE_LIMITED'


class AppError(Exception):
    status_code = 500
    code = ErrorCode.INTERNAL_ERROR

    def __init__(self, message, status_code=None, code=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code

    def to_dict(self):
        return {'code': self.code, 'message': self.message}


class ValidationError(AppError):
    """Per-field, user-correctable errors. Never persisted."""

    status_code = 400
    code = ErrorCode.VALIDATION_ERROR

    def __init__(self, errors, message='Invalid submission.'):
        super().__init__(message)
        self.errors = dict(errors)

    def to_dict(self):
        data = super().to_dict()
        data['details'] = self.errors
        return data


class LinkUnavailable(AppError):
    """Link not found, inactive, expired or spent. The cases are never distinguished to guests."""

    status_code = 404
    code = ErrorCode.NOT_FOUND

    def __init__(self, message='This form is not available.'):
        super().__init__(message)


class RemoteApiError(AppError):
    status_code = 502
    code = ErrorCode.CMP_API_ERROR

    def __init__(self, method, path, status=None, body=None, message=None):
        self.method = method
        self.path = path
        self.status = status
        self.body = body
        if message is None:
            message = f"CMP API error. {method} {path} returned {status}. {body or ''}".strip()
        super().__init__(message)


class RemoteAuthError(RemoteApiError):
    """401 that survived one token refresh, or a failed token fetch."""


class CredentialUnavailable(RemoteApiError):
    def __init__(self, message='No active CMP credentials available for this form.'):
        super().__init__('-', '-', message=message)


class UpstreamFailure(AppError):
    """Guest-facing wrapper for a failed synchronous delivery. Carries no remote detail."""

    status_code = 502
    code = ErrorCode.CMP_API_ERROR

    def __init__(self, submission_id, message='Failed to submit your request. Please try again later.'):
        super().__init__(message)
        self.submission_id = submission_id


class RateLimited(AppError):
    status_code = 429
    code = ErrorCode.RATE_LIMITED

    def __init__(self, retry_after, message='Too many requests. Please try again later.'):
        super().__init__(message)
        self.retry_after = retry_after


class PersistenceError(AppError):
    status_code = 500
    code = ErrorCode.INTERNAL_ERROR


class EncryptionError(AppError):
    status_code = 500
    code = ErrorCode.INTERNAL_ERROR
