"""
Client for the Optimizely CMP REST API.

Every call carries a bearer token from the credential's ``CmpTokenManager``.
A 401 invalidates the token and the call is replayed exactly once. List
endpoints follow ``pagination.next``. Attachments use a presigned upload:
fetch an upload descriptor, POST the bytes to object storage, then
register the uploaded key on the work request.
"""

from dataclasses import dataclass
from urllib.parse import urlsplit
import logging

import requests

from ..errors import RemoteApiError, RemoteAuthError
from ..utils import retry_request

logger = logging.getLogger(__name__)

BASE_URL = "https://api.cmp.optimizely.com"

# Upper bound on items collected from one paginated listing
MAX_PAGINATED_ITEMS = 5000

# Gateway and availability failures are replayed by _send before surfacing
RETRY_STATUS_CODES = (502, 503, 504)


@dataclass
class FileUpload:
    field_identifier: str
    filename: str
    content: bytes
    content_type: str = 'application/octet-stream'

    def to_reference(self):
        """JSON-safe reference stored in the submission's form data."""
        return {'name': self.filename, 'contentType': self.content_type, 'size': len(self.content)}


def _display_path(url):
    # the query string carries the presigned signature
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}{parts.path}" if parts.netloc else parts.path


class CmpClient:
    def __init__(self, token_manager, base_url=BASE_URL, session=None, timeout=30):
        self.token_manager = token_manager
        self.base_url = base_url.rstrip('/')
        self.session = session or requests.Session()
        self.timeout = timeout

    # --- transport ---

    @retry_request(status_codes=RETRY_STATUS_CODES)
    def _send(self, method, url, **kwargs):
        response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        if response.status_code in RETRY_STATUS_CODES:
            # raised so retry_request backs off and replays the call
            response.raise_for_status()
        return response

    def _url(self, path_or_url):
        if path_or_url.startswith('http://') or path_or_url.startswith('https://'):
            return path_or_url
        return f"{self.base_url}{path_or_url}"

    def _attempt(self, method, url, json=None, params=None):
        token = self.token_manager.get_token()
        headers = {'Authorization': f'Bearer {token}', 'Accept': 'application/json'}
        try:
            return self._send(method, url, headers=headers, json=json, params=params)
        except requests.exceptions.HTTPError as e:
            # still failing after the replays; the caller maps the status
            return e.response
        except requests.exceptions.RequestException as e:
            raise RemoteApiError(method, _display_path(url), None, str(e)) from e

    def request(self, method, path, json=None, params=None):
        """Authenticated call returning the decoded JSON body ({} for empty bodies)."""
        url = self._url(path)
        response = self._attempt(method, url, json=json, params=params)

        if response.status_code == 401:
            logger.info(f"CMP returned 401 for {method} {_display_path(url)}; refreshing token")
            self.token_manager.invalidate()
            response = self._attempt(method, url, json=json, params=params)
            if response.status_code == 401:
                raise RemoteAuthError(method, _display_path(url), 401, response.text)

        if not response.ok:
            raise RemoteApiError(method, _display_path(url), response.status_code, response.text)

        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    def paginate(self, path):
        """Collects items across pages until ``pagination.next`` runs out, repeats, or the cap is hit."""
        items = []
        seen = set()
        url = path
        while url:
            if url in seen:
                logger.warning(f"Pagination cycle detected at {_display_path(url)}; stopping")
                break
            seen.add(url)

            page = self.request('GET', url)
            items.extend(page.get('data') or page.get('items') or [])
            if len(items) >= MAX_PAGINATED_ITEMS:
                logger.warning(f"Pagination for {path} hit the {MAX_PAGINATED_ITEMS} item cap")
                return items[:MAX_PAGINATED_ITEMS]

            url = (page.get('pagination') or {}).get('next')
        return items

    # --- templates & workflows ---

    def get_templates(self):
        return self.paginate('/v3/templates')

    def get_template(self, template_id):
        return self.request('GET', f'/v3/templates/{template_id}')

    def get_workflows(self):
        return self.paginate('/v3/workflows')

    def verify(self):
        """Round-trips the OAuth grant; raises RemoteAuthError on bad credentials."""
        self.token_manager.invalidate()
        self.token_manager.get_token()
        return True

    # --- work requests ---

    def create_work_request(self, template_id, form_fields, workflow_id=None):
        body = {'template_id': template_id, 'form_fields': form_fields}
        if workflow_id:
            body['workflow_id'] = workflow_id
        return self.request('POST', '/v3/work-requests', json=body)

    def get_upload_descriptor(self):
        """Step 1: presigned upload target ``(url, meta_fields)``."""
        data = self.request('GET', '/v3/upload-url')
        url = data.get('url')
        meta_fields = data.get('upload_meta_fields') or data.get('uploadMetaFields') or {}
        if not url:
            raise RemoteApiError('GET', '/v3/upload-url', 200, 'Upload descriptor is missing a url.')
        return url, meta_fields

    def upload_to_storage(self, url, meta_fields, upload):
        """Step 2: multipart POST to the presigned url. Meta fields must precede the file part."""
        parts = [(name, (None, str(value))) for name, value in meta_fields.items()]
        parts.append(('file', (upload.filename, upload.content, upload.content_type)))
        try:
            response = self._send('POST', url, files=parts)
        except requests.exceptions.HTTPError as e:
            response = e.response
        except requests.exceptions.RequestException as e:
            raise RemoteApiError('POST', _display_path(url), None, str(e)) from e

        # object stores commonly answer 204 with no body
        if response.status_code != 204 and not response.ok:
            raise RemoteApiError('POST', _display_path(url), response.status_code, response.text)

    def attach_file(self, work_request_id, upload):
        """Uploads one file and registers it as an attachment of the work request."""
        url, meta_fields = self.get_upload_descriptor()
        key = meta_fields.get('key')
        if not key:
            raise RemoteApiError('GET', '/v3/upload-url', 200, 'Upload descriptor is missing a key.')
        self.upload_to_storage(url, meta_fields, upload)

        key = key.replace('${filename}', upload.filename)
        # Step 3
        return self.request(
            'POST',
            f'/v3/work-requests/{work_request_id}/attachments',
            json={'key': key, 'name': upload.filename},
        )
