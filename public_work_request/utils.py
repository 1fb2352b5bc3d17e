from flask import current_app, jsonify, request
import functools
import logging
import time
import requests

logger = logging.getLogger(__name__)

def api_response(data=None, status=200, headers=None):
    """Standardized JSON response for API routes."""
    response = jsonify(data if data is not None else {})
    response.status_code = status
    for key, value in (headers or {}).items():
        response.headers[key] = value
    return response

def error_response(error, headers=None):
    """Renders an AppError as {"error": {"code", "message", "details"?}}."""
    return api_response({'error': error.to_dict()}, status=error.status_code, headers=headers)

def get_client_ip():
    """Caller IP. ProxyFix already rewrote remote_addr from X-Forwarded-For."""
    return request.remote_addr or 'unknown'

def retry_request(retries=2, backoff_factor=0.3, status_codes=(500, 502, 503, 504)):
    """
    Decorator for retrying requests with exponential backoff.
    Retries transport failures and HTTPErrors whose status is in status_codes;
    the wrapped call raises the latter with response.raise_for_status().
    """
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            last_exception = None
            for i in range(retries + 1):
                try:
                    return func(*args, **kwargs)
                except requests.exceptions.RequestException as e:
                    last_exception = e
                    is_retryable = False
                    if getattr(e, 'response', None) is not None:
                        if e.response.status_code in status_codes:
                            is_retryable = True
                    elif isinstance(e, (requests.exceptions.Timeout, requests.exceptions.ConnectionError)):
                        is_retryable = True

                    if not is_retryable or i == retries:
                        raise

                    wait_time = backoff_factor * (2 ** i)
                    logger.warning(f"Request failed ({e}); retrying in {wait_time:.1f}s")
                    time.sleep(wait_time)
            raise last_exception
        return wrapper
    return decorator

def get_component(name):
    """Process-wide collaborator registered by create_app (limiters, services)."""
    return current_app.extensions['public_work_request'][name]
