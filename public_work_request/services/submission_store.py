"""
Persistence for links and submissions.

Only ``mark_link_used`` is conditional; every other write is a
last-writer-wins update keyed by submission id.
"""

import functools
import logging

from sqlalchemy.exc import SQLAlchemyError

from ..errors import PersistenceError
from ..models import (
    db, AuditLog, FormUrl, Submission,
    STATUS_FAILED, STATUS_PENDING, STATUS_RETRYING, STATUS_SUBMITTED,
)

logger = logging.getLogger(__name__)


def _persistence(func):
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"{func.__name__} failed: {e}")
            raise PersistenceError(f"Database error in {func.__name__}.") from e
    return wrapper


class SubmissionStore:
    def __init__(self, session=None):
        self._session = session

    @property
    def session(self):
        return self._session or db.session

    # --- links ---

    @_persistence
    def find_form_url_by_token(self, token):
        return self.session.query(FormUrl).filter_by(token=token).first()

    @_persistence
    def mark_link_used(self, form_url, now):
        """Flips a one-time link to used. False when another request already spent it."""
        updated = (
            self.session.query(FormUrl)
            .filter(FormUrl.id == form_url.id, FormUrl.is_used.is_(False))
            .update({'is_used': True, 'used_at': now}, synchronize_session=False)
        )
        self.session.commit()
        return updated == 1

    @_persistence
    def delete_expired_links(self, before):
        """Deletes links expired before ``before`` that no submission references."""
        ids = [
            row.id for row in self.session.query(FormUrl.id)
            .filter(FormUrl.expires_at.isnot(None), FormUrl.expires_at < before, ~FormUrl.submissions.any())
            .all()
        ]
        if not ids:
            return 0
        deleted = self.session.query(FormUrl).filter(FormUrl.id.in_(ids)).delete(synchronize_session=False)
        self.session.commit()
        return deleted

    @_persistence
    def delete_audit_logs_before(self, before):
        deleted = self.session.query(AuditLog).filter(AuditLog.created_at < before).delete(synchronize_session=False)
        self.session.commit()
        return deleted

    # --- submissions ---

    @_persistence
    def create_submission(self, form_url, form_data, now):
        submission = Submission(
            form_id=form_url.form_id,
            url_id=form_url.id,
            form_data=form_data,
            status=STATUS_PENDING,
            retry_count=0,
            submitted_at=now,
        )
        self.session.add(submission)
        self.session.commit()
        return submission

    @_persistence
    def record_remote_request(self, submission, remote_request_id):
        """Stores the created work request id before attachments, so a retry never recreates it."""
        submission.remote_request_id = remote_request_id
        self.session.commit()

    @_persistence
    def mark_submitted(self, submission, remote_request_id, now):
        submission.status = STATUS_SUBMITTED
        submission.remote_request_id = remote_request_id
        submission.error_message = None
        submission.next_retry_at = None
        submission.completed_at = now
        self.session.commit()

    @_persistence
    def mark_failed(self, submission, error_message, retry_count, next_retry_at):
        submission.status = STATUS_FAILED
        submission.error_message = error_message
        submission.retry_count = retry_count
        submission.next_retry_at = next_retry_at
        self.session.commit()

    @_persistence
    def mark_retrying(self, submission, lease_until):
        submission.status = STATUS_RETRYING
        submission.next_retry_at = lease_until
        self.session.commit()

    @_persistence
    def find_retry_candidates(self, now, max_retries, limit=None):
        query = (
            self.session.query(Submission)
            .filter(
                Submission.status.in_([STATUS_FAILED, STATUS_RETRYING]),
                Submission.next_retry_at.isnot(None),
                Submission.next_retry_at <= now,
                Submission.retry_count < max_retries,
            )
            .order_by(Submission.next_retry_at)
        )
        if limit:
            query = query.limit(limit)
        return query.all()

    @_persistence
    def list_submissions(self, form_id=None, status=None):
        query = self.session.query(Submission)
        if form_id:
            query = query.filter(Submission.form_id == form_id)
        if status:
            query = query.filter(Submission.status == status)
        return query.order_by(Submission.submitted_at.desc()).all()
