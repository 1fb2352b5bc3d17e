"""Shared fakes for CMP interactions."""

import json
from datetime import timedelta

import requests


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=None):
        self.status_code = status_code
        self._payload = payload
        if text is None:
            text = json.dumps(payload) if payload is not None else ''
        self.text = text
        self.content = text.encode()

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code} Error", response=self)


class FakeTokenManager:
    def __init__(self, tokens=('token-1', 'token-2', 'token-3')):
        self.tokens = list(tokens)
        self.current = self.tokens.pop(0)
        self.invalidations = 0

    def get_token(self):
        return self.current

    def invalidate(self):
        self.invalidations += 1
        if self.tokens:
            self.current = self.tokens.pop(0)


class FakeCmpClient:
    """Records work requests and attachments instead of calling CMP."""

    def __init__(self, fail_create=None, fail_attach=None):
        self.fail_create = fail_create
        self.fail_attach = fail_attach
        self.created = []
        self.attached = []

    def create_work_request(self, template_id, form_fields, workflow_id=None):
        if self.fail_create:
            raise self.fail_create
        self.created.append({'template_id': template_id, 'form_fields': form_fields, 'workflow_id': workflow_id})
        return {'id': f"wr-{len(self.created)}"}

    def attach_file(self, work_request_id, upload):
        if self.fail_attach:
            raise self.fail_attach
        self.attached.append((work_request_id, upload.field_identifier, upload.filename))
        return {}


class FrozenClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


INTERNAL_SECRET = 'internal-test-secret'

SAMPLE_FIELDS = [
    {'identifier': 'title', 'name': 'Title', 'type': 'text', 'required': True, 'order': 1},
    {
        'identifier': 'channel', 'name': 'Channel', 'type': 'dropdown', 'required': False, 'order': 2,
        'type_specific_meta': {
            'is_multi_select': False,
            'choices': [{'id': 'c-web', 'name': 'Web'}, {'id': 'c-print', 'name': 'Print', 'color': '#ff0000'}],
        },
        'logic_rules': [{
            'action': 'jump_to',
            'target_identifier': 'budget',
            'conditions': [{'field_identifier': 'channel', 'operator': 'equal', 'values': ['c-print']}],
        }],
    },
    {'identifier': 'details', 'name': 'Details', 'type': 'richtext', 'required': False, 'order': 3},
    {
        'identifier': 'budget', 'name': 'Budget', 'type': 'currency_number', 'required': False, 'order': 4,
        'type_specific_meta': {'currency_code': 'USD', 'decimal_places': 2},
    },
    {'identifier': 'due', 'name': 'Due date', 'type': 'date', 'required': False, 'order': 5},
    {'identifier': 'brief_file', 'name': 'Brief', 'type': 'file', 'required': False, 'order': 6},
    {'identifier': 'moodboard', 'name': 'Moodboard', 'type': 'file', 'required': False, 'order': 7},
    {'identifier': 'note', 'name': 'Note', 'type': 'instruction', 'required': False, 'order': 8},
    {'identifier': 'hologram', 'name': 'Hologram', 'type': 'hologram', 'required': True, 'order': 9},
]
