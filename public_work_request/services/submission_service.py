"""
Guest submission pipeline and its scheduled retries.

    submit: link check -> validate -> one-time flip -> PENDING row -> deliver
            -> SUBMITTED, or FAILED with next_retry_at = now + 1m
    retry:  RETRYING -> deliver -> SUBMITTED, or FAILED with the next backoff
            tier; the fifth failed retry leaves FAILED with no next_retry_at

The PENDING row is committed before any remote call, so guest intent
survives a remote outage or a crash mid-delivery.
"""

from datetime import timedelta
import logging

import requests

from ..errors import EncryptionError, LinkUnavailable, PersistenceError, UpstreamFailure, ValidationError
from ..models import get_now
from .cmp_client import CmpClient
from .cmp_auth import TokenCache
from .credential_service import resolve_credential
from .field_registry import FILE, parse_fields
from .form_validator import all_identifiers, validate_all
from .payload_serializer import serialize_form

logger = logging.getLogger(__name__)

MAX_RETRIES = 5

# Indexed by retry count: index 0 follows the initial failure
RETRY_BACKOFF = [
    timedelta(minutes=1),
    timedelta(minutes=5),
    timedelta(minutes=15),
    timedelta(hours=1),
    timedelta(hours=4),
]

DEFAULT_RETRY_LEASE = timedelta(minutes=10)

EXPIRED_LINK_RETENTION = timedelta(days=30)
AUDIT_LOG_RETENTION = timedelta(days=90)


class CmpClientFactory:
    """
    Builds a CmpClient for a form's credential, sharing tokens through the
    TokenCache and one pooled requests.Session across every client it builds.
    """

    def __init__(self, cipher, token_cache=None, base_url=None, token_url=None, timeout=30, session=None):
        self.cipher = cipher
        self.token_cache = token_cache or TokenCache()
        self.base_url = base_url
        self.token_url = token_url
        self.timeout = timeout
        self.session = session or requests.Session()

    def __call__(self, form):
        if self.cipher is None:
            raise EncryptionError("ENCRYPTION_KEY is not configured; cannot decrypt CMP credentials.")
        client_id, client_secret = resolve_credential(form, self.cipher)
        credential = form.credential
        manager_kwargs = {'timeout': self.timeout, 'session': self.session}
        if self.token_url:
            manager_kwargs['token_url'] = self.token_url
        manager = self.token_cache.manager_for(
            credential.id, credential.updated_at, client_id, client_secret, **manager_kwargs
        )
        client_kwargs = {'timeout': self.timeout, 'session': self.session}
        if self.base_url:
            client_kwargs['base_url'] = self.base_url
        return CmpClient(manager, **client_kwargs)


class SubmissionService:
    def __init__(self, store, client_factory, clock=get_now, audit=None, retry_lease=DEFAULT_RETRY_LEASE):
        self.store = store
        self.client_factory = client_factory
        self.clock = clock
        self.audit = audit
        self.retry_lease = retry_lease

    # --- public entry points ---

    def get_available_link(self, token):
        """FormUrl for a usable link; LinkUnavailable for every other case alike."""
        form_url = self.store.find_form_url_by_token(token) if token else None
        if form_url is None or not form_url.is_available(self.clock()):
            raise LinkUnavailable()
        return form_url

    def submit(self, token, raw_values, files=(), ip_address=None):
        """Validates, persists and delivers one guest submission. Returns the Submission."""
        form_url = self.get_available_link(token)
        form = form_url.form
        fields = parse_fields(form.form_fields_snapshot)

        identifiers = all_identifiers(fields)
        values = {key: value for key, value in (raw_values or {}).items() if key in identifiers}
        # uploads only bind to file fields
        file_fields = {f.identifier for f in fields if f.type == FILE}
        files = [upload for upload in files if upload.field_identifier in file_fields]
        for upload in files:
            values[upload.field_identifier] = upload.to_reference()

        # server side trusts no client visibility: every field counts as visible
        errors = validate_all(fields, values, identifiers)
        if errors:
            raise ValidationError(errors)

        now = self.clock()
        if form.is_one_time and not self.store.mark_link_used(form_url, now):
            logger.info(f"One-time link {form_url.id} was spent by a concurrent request")
            raise LinkUnavailable()

        submission = self.store.create_submission(form_url, values, now)
        logger.info(f"Submission {submission.id} saved as PENDING for form {form.id}")

        try:
            remote_request_id = self._deliver(submission, form, fields, self._ordered_files(fields, files))
        except PersistenceError:
            raise
        except Exception as e:
            error_message = str(e) or e.__class__.__name__
            logger.error(f"Failed to create CMP work request for submission {submission.id}: {error_message}")
            self.store.mark_failed(submission, error_message, 0, self.clock() + RETRY_BACKOFF[0])
            raise UpstreamFailure(submission.id) from e

        self.store.mark_submitted(submission, remote_request_id, self.clock())
        logger.info(f"Submission {submission.id} created CMP work request {remote_request_id}")

        if self.audit:
            self.audit(
                'submission.create', 'Submission', submission.id,
                details={'formId': form.id, 'urlId': form_url.id},
                ip_address=ip_address if ip_address and ip_address != 'unknown' else None,
            )
        return submission

    # --- scheduled retries ---

    def retry(self, submission):
        """Replays delivery for one FAILED/RETRYING submission. Returns True on success."""
        self.store.mark_retrying(submission, self.clock() + self.retry_lease)
        form = submission.form
        try:
            fields = parse_fields(form.form_fields_snapshot)
            remote_request_id = self._deliver(submission, form, fields, ())
        except PersistenceError:
            raise
        except Exception as e:
            error_message = str(e) or e.__class__.__name__
            retry_count = submission.retry_count + 1
            next_retry_at = None
            if retry_count < MAX_RETRIES:
                next_retry_at = self.clock() + RETRY_BACKOFF[retry_count]
            self.store.mark_failed(submission, error_message, retry_count, next_retry_at)
            if next_retry_at is None:
                logger.error(f"Submission {submission.id} exhausted {MAX_RETRIES} retries: {error_message}")
            else:
                logger.warning(f"Retry {retry_count} failed for submission {submission.id}: {error_message}")
            return False

        self.store.mark_submitted(submission, remote_request_id, self.clock())
        logger.info(f"Retry succeeded for submission {submission.id} (work request {remote_request_id})")
        return True

    def retry_due(self, limit=None):
        """Retries every eligible submission independently. Returns aggregate counts."""
        candidates = self.store.find_retry_candidates(self.clock(), MAX_RETRIES, limit=limit)
        results = {'processed': len(candidates), 'succeeded': 0, 'failed': 0}

        for submission in candidates:
            try:
                ok = self.retry(submission)
            except Exception as e:
                # Log but continue
                logger.exception(f"Retry crashed for submission {submission.id}: {e}")
                ok = False
            results['succeeded' if ok else 'failed'] += 1

        logger.info(f"Retry batch finished: {results}")
        return results

    def cleanup(self):
        now = self.clock()
        results = {
            'expiredUrls': self.store.delete_expired_links(now - EXPIRED_LINK_RETENTION),
            'oldAuditLogs': self.store.delete_audit_logs_before(now - AUDIT_LOG_RETENTION),
        }
        logger.info(f"Cleanup completed: {results}")
        return results

    # --- delivery ---

    def _deliver(self, submission, form, fields, files):
        remote_request_id = submission.remote_request_id
        if remote_request_id and not files:
            # a prior attempt already created the work request
            return remote_request_id

        client = self.client_factory(form)
        if not remote_request_id:
            payload = serialize_form(fields, submission.form_data or {}, all_identifiers(fields))
            created = client.create_work_request(form.cmp_template_id, payload, form.cmp_workflow_id)
            remote_request_id = created['id']
            self.store.record_remote_request(submission, remote_request_id)

        for upload in files:
            client.attach_file(remote_request_id, upload)
        return remote_request_id

    @staticmethod
    def _ordered_files(fields, files):
        """Uploads in file-field declaration order."""
        positions = {f.identifier: index for index, f in enumerate(fields) if f.type == FILE}
        return sorted(files, key=lambda u: positions[u.field_identifier])
