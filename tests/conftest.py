"""
Pytest fixtures: a Flask app on in-memory SQLite with seeded CMP
credential, form and link factories. CMP itself is always faked.
"""

import base64
from datetime import datetime

import pytest

from public_work_request.app import create_app
from public_work_request.models import db, ACCESS_OPEN_URL, CmpCredential, FormUrl, PublicForm
from public_work_request.services.audit_service import log_audit
from public_work_request.services.submission_service import SubmissionService
from public_work_request.services.submission_store import SubmissionStore

from helpers import INTERNAL_SECRET, FakeCmpClient, FrozenClock, SAMPLE_FIELDS

TEST_ENCRYPTION_KEY = base64.b64encode(b'0123456789abcdef0123456789abcdef').decode()


@pytest.fixture
def app():
    app = create_app({
        'TESTING': True,
        'SECRET_KEY': 'test',
        'SQLALCHEMY_DATABASE_URI': 'sqlite://',
        'ENCRYPTION_KEY': TEST_ENCRYPTION_KEY,
        'INTERNAL_API_SECRET': INTERNAL_SECRET,
    })
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def cipher(app):
    return app.extensions['public_work_request']['cipher']


@pytest.fixture
def credential(app, cipher):
    cred = CmpCredential(
        client_id_encrypted=cipher.encrypt('client-id'),
        client_secret_encrypted=cipher.encrypt('client-secret'),
    )
    db.session.add(cred)
    db.session.commit()
    return cred


@pytest.fixture
def make_form(credential):
    def _make(fields=None, access_type=ACCESS_OPEN_URL, is_active=True, workflow_id=None):
        form = PublicForm(
            title='Creative request',
            description='Ask the studio for work',
            cmp_template_id='tpl-1',
            cmp_template_name='Creative Brief',
            cmp_workflow_id=workflow_id,
            form_fields_snapshot=fields if fields is not None else SAMPLE_FIELDS,
            access_type=access_type,
            is_active=is_active,
            credential=credential,
        )
        db.session.add(form)
        db.session.commit()
        return form
    return _make


@pytest.fixture
def make_link():
    def _make(form, expires_at=None):
        url = FormUrl.issue(form, expires_at=expires_at)
        db.session.commit()
        return url
    return _make


@pytest.fixture
def fake_cmp(app):
    """Replaces the app's CMP client factory with a recording fake."""
    fake = FakeCmpClient()
    app.extensions['public_work_request']['submission_service'].client_factory = lambda form: fake
    return fake


@pytest.fixture
def clock():
    return FrozenClock(datetime(2026, 2, 18, 12, 0, 0))


@pytest.fixture
def service(app, fake_cmp, clock):
    return SubmissionService(SubmissionStore(), lambda form: fake_cmp, clock=clock, audit=log_audit)
