from datetime import datetime, timezone
from flask_sqlalchemy import SQLAlchemy
import secrets
import uuid

def get_now():
    """Current UTC time as a naive datetime (all columns store naive UTC)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)

def new_id():
    return str(uuid.uuid4())

db = SQLAlchemy()

# Enums (plain strings for SQLite/Postgres portability)
ACCESS_OPEN_URL = 'OPEN_URL'
ACCESS_ONE_TIME_URL = 'ONE_TIME_URL'

STATUS_PENDING = 'PENDING'
STATUS_SUBMITTED = 'SUBMITTED'
STATUS_FAILED = 'FAILED'
STATUS_RETRYING = 'RETRYING'


class CmpCredential(db.Model):
    __tablename__ = 'cmp_credentials'
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    client_id_encrypted = db.Column(db.Text, nullable=False) # iv:authTag:ciphertext
    client_secret_encrypted = db.Column(db.Text, nullable=False)
    label = db.Column(db.String(100), default='Default', nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    last_tested_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=get_now)
    updated_at = db.Column(db.DateTime, default=get_now, onupdate=get_now)

    forms = db.relationship('PublicForm', backref='credential', lazy=True)


class PublicForm(db.Model):
    __tablename__ = 'public_forms'
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)

    cmp_template_id = db.Column(db.String(100), nullable=False)
    cmp_template_name = db.Column(db.String(200), nullable=False)
    cmp_workflow_id = db.Column(db.String(100), nullable=True)
    cmp_workflow_name = db.Column(db.String(200), nullable=True)

    # Template fields frozen at form creation: [{"identifier": ..., "type": ..., "order": ...}]
    form_fields_snapshot = db.Column(db.JSON, nullable=False)

    access_type = db.Column(db.String(20), default=ACCESS_OPEN_URL, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_by_id = db.Column(db.String(36), nullable=True) # admin users live outside this service
    credential_id = db.Column(db.String(36), db.ForeignKey('cmp_credentials.id'), nullable=False)
    created_at = db.Column(db.DateTime, default=get_now)
    updated_at = db.Column(db.DateTime, default=get_now, onupdate=get_now)

    urls = db.relationship('FormUrl', backref='form', lazy=True, cascade="all, delete-orphan")
    submissions = db.relationship('Submission', backref='form', lazy=True)

    @property
    def is_one_time(self):
        return self.access_type == ACCESS_ONE_TIME_URL


class FormUrl(db.Model):
    __tablename__ = 'form_urls'
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    token = db.Column(db.String(100), unique=True, nullable=False, index=True)
    form_id = db.Column(db.String(36), db.ForeignKey('public_forms.id', ondelete='CASCADE'), nullable=False)
    is_used = db.Column(db.Boolean, default=False, nullable=False)
    used_at = db.Column(db.DateTime, nullable=True)
    expires_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=get_now)

    submissions = db.relationship('Submission', backref='form_url', lazy=True)

    @classmethod
    def issue(cls, form, expires_at=None):
        """Mints a shareable link with a 256-bit URL-safe token. Caller commits."""
        url = cls(token=secrets.token_urlsafe(32), form=form, expires_at=expires_at)
        db.session.add(url)
        return url

    def is_available(self, now=None):
        """A link is usable when its form is active, it is unspent and unexpired."""
        now = now or get_now()
        if self.form is None or not self.form.is_active:
            return False
        if self.form.is_one_time and self.is_used:
            return False
        if self.expires_at and now > self.expires_at:
            return False
        return True


class Submission(db.Model):
    __tablename__ = 'submissions'
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    form_id = db.Column(db.String(36), db.ForeignKey('public_forms.id'), nullable=False)
    url_id = db.Column(db.String(36), db.ForeignKey('form_urls.id'), nullable=False)

    form_data = db.Column(db.JSON, nullable=False) # raw guest values

    # ENUM: PENDING, SUBMITTED, FAILED, RETRYING
    status = db.Column(db.String(20), default=STATUS_PENDING, nullable=False)
    remote_request_id = db.Column('cmp_work_request_id', db.String(100), nullable=True)
    error_message = db.Column(db.Text, nullable=True)
    retry_count = db.Column(db.Integer, default=0, nullable=False)
    next_retry_at = db.Column(db.DateTime, nullable=True)

    submitted_at = db.Column(db.DateTime, default=get_now, nullable=False)
    completed_at = db.Column(db.DateTime, nullable=True)

    __table_args__ = (db.Index('submissions_status_next_retry_at_idx', 'status', 'next_retry_at'),)

    def to_dict(self):
        return {
            'id': self.id,
            'formId': self.form_id,
            'urlId': self.url_id,
            'status': self.status,
            'remoteRequestId': self.remote_request_id,
            'errorMessage': self.error_message,
            'retryCount': self.retry_count,
            'nextRetryAt': self.next_retry_at.isoformat() if self.next_retry_at else None,
            'submittedAt': self.submitted_at.isoformat() if self.submitted_at else None,
            'completedAt': self.completed_at.isoformat() if self.completed_at else None,
        }


class AuditLog(db.Model):
    __tablename__ = 'audit_logs'
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    action = db.Column(db.String(100), nullable=False) # e.g. 'submission.create'
    entity = db.Column(db.String(100), nullable=False)
    entity_id = db.Column(db.String(100), nullable=True)
    details = db.Column(db.JSON, nullable=True)
    admin_id = db.Column(db.String(36), nullable=True)
    ip_address = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime, default=get_now, index=True)

    __table_args__ = (db.Index('audit_logs_entity_entity_id_idx', 'entity', 'entity_id'),)
