import logging
import threading
import time

import requests

from ..errors import RemoteAuthError

logger = logging.getLogger(__name__)

TOKEN_ENDPOINT = "https://accounts.cmp.optimizely.com/o/oauth2/v1/token"

# Refresh this long before the declared expiry
EXPIRY_BUFFER_SECONDS = 5 * 60


class CmpTokenManager:
    """
    Client-credentials token for one CMP credential.

    NO_TOKEN -> fetch -> VALID -> (inside expiry buffer or invalidated) -> NO_TOKEN.
    Concurrent callers may both fetch; the last fetched token wins.
    """

    def __init__(self, client_id, client_secret, token_url=TOKEN_ENDPOINT, session=None, timeout=30, clock=time.time):
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_url = token_url
        self.session = session or requests.Session()
        self.timeout = timeout
        self.clock = clock
        self._lock = threading.Lock()
        self._access_token = None
        self._expires_at = 0.0

    def get_token(self):
        """Cached token while it is outside the expiry buffer, otherwise a fresh one."""
        with self._lock:
            if self._access_token and self.clock() < self._expires_at - EXPIRY_BUFFER_SECONDS:
                return self._access_token

        access_token, expires_at = self._fetch_token()
        with self._lock:
            self._access_token = access_token
            self._expires_at = expires_at
        return access_token

    def invalidate(self):
        with self._lock:
            self._access_token = None
            self._expires_at = 0.0

    def _fetch_token(self):
        try:
            response = self.session.post(
                self.token_url,
                data={
                    'grant_type': 'client_credentials',
                    'client_id': self.client_id,
                    'client_secret': self.client_secret,
                },
                headers={'Content-Type': 'application/x-www-form-urlencoded'},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise RemoteAuthError('POST', self.token_url, None, str(e)) from e

        if not response.ok:
            raise RemoteAuthError('POST', self.token_url, response.status_code, response.text)

        data = response.json()
        logger.info(f"Fetched CMP access token (expires in {data.get('expires_in')}s)")
        return data['access_token'], self.clock() + float(data.get('expires_in', 0))


class TokenCache:
    """
    Process-local registry of token managers, one per credential.

    Keyed by credential id and version so a credential whose secret was
    rotated (new ``updated_at``) gets a fresh manager.
    """

    def __init__(self, manager_factory=CmpTokenManager):
        self.manager_factory = manager_factory
        self._lock = threading.Lock()
        self._managers = {}

    def manager_for(self, credential_id, version, client_id, client_secret, **kwargs):
        with self._lock:
            entry = self._managers.get(credential_id)
            if entry is not None and entry[0] == version:
                return entry[1]
            manager = self.manager_factory(client_id, client_secret, **kwargs)
            self._managers[credential_id] = (version, manager)
            return manager

    def invalidate(self, credential_id):
        with self._lock:
            entry = self._managers.pop(credential_id, None)
        if entry is not None:
            entry[1].invalidate()

    def __len__(self):
        with self._lock:
            return len(self._managers)
