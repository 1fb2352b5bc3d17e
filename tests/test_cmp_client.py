"""Tests for the CMP token manager and REST client, with the HTTP session mocked."""

from unittest.mock import MagicMock, patch

import pytest
import requests

from public_work_request.errors import RemoteApiError, RemoteAuthError
from public_work_request.services import cmp_client as cmp_client_module
from public_work_request.services.cmp_auth import CmpTokenManager, TokenCache
from public_work_request.services.cmp_client import CmpClient, FileUpload

from helpers import FakeResponse, FakeTokenManager


def make_client(*responses, token_manager=None):
    session = MagicMock()
    session.request.side_effect = list(responses)
    return CmpClient(token_manager or FakeTokenManager(), base_url='https://cmp.test', session=session), session


class TestCmpTokenManager:
    def make_manager(self, clock, response=None):
        session = MagicMock()
        session.post.return_value = response or FakeResponse(200, {'access_token': 'abc', 'expires_in': 3600})
        return CmpTokenManager('id', 'secret', token_url='https://auth.test/token', session=session, clock=clock), session

    def test_token_is_cached_until_the_expiry_buffer(self):
        now = [0.0]
        manager, session = self.make_manager(lambda: now[0])

        assert manager.get_token() == 'abc'
        now[0] = 3299.0
        assert manager.get_token() == 'abc'
        assert session.post.call_count == 1

        now[0] = 3300.0
        manager.get_token()
        assert session.post.call_count == 2

    def test_client_credentials_grant_is_form_encoded(self):
        manager, session = self.make_manager(lambda: 0.0)
        manager.get_token()

        args, kwargs = session.post.call_args
        assert args[0] == 'https://auth.test/token'
        assert kwargs['data'] == {'grant_type': 'client_credentials', 'client_id': 'id', 'client_secret': 'secret'}

    def test_invalidate_forces_a_refetch(self):
        manager, session = self.make_manager(lambda: 0.0)
        manager.get_token()
        manager.invalidate()
        manager.get_token()
        assert session.post.call_count == 2

    def test_rejected_grant_raises_auth_error(self):
        manager, _ = self.make_manager(lambda: 0.0, FakeResponse(400, text='invalid_client'))
        with pytest.raises(RemoteAuthError) as exc:
            manager.get_token()
        assert exc.value.status == 400

    def test_transport_failure_raises_auth_error(self):
        manager, session = self.make_manager(lambda: 0.0)
        session.post.side_effect = requests.exceptions.ConnectionError('down')
        with pytest.raises(RemoteAuthError):
            manager.get_token()


class TestTokenCache:
    def test_manager_is_reused_per_credential_version(self):
        factory = MagicMock(side_effect=lambda *args, **kwargs: MagicMock())
        cache = TokenCache(manager_factory=factory)

        first = cache.manager_for('cred-1', 'v1', 'id', 'secret')
        assert cache.manager_for('cred-1', 'v1', 'id', 'secret') is first
        assert cache.manager_for('cred-1', 'v2', 'id', 'rotated') is not first
        assert factory.call_count == 2
        assert len(cache) == 1

    def test_invalidate_drops_the_manager(self):
        cache = TokenCache(manager_factory=lambda *args, **kwargs: MagicMock())
        manager = cache.manager_for('cred-1', 'v1', 'id', 'secret')
        cache.invalidate('cred-1')
        manager.invalidate.assert_called_once()
        assert len(cache) == 0


class TestRequest:
    def test_sends_bearer_token(self):
        client, session = make_client(FakeResponse(200, {'id': 'tpl-1'}))
        assert client.get_template('tpl-1') == {'id': 'tpl-1'}

        args, kwargs = session.request.call_args
        assert args == ('GET', 'https://cmp.test/v3/templates/tpl-1')
        assert kwargs['headers']['Authorization'] == 'Bearer token-1'

    def test_401_refreshes_the_token_once(self):
        tokens = FakeTokenManager()
        client, session = make_client(
            FakeResponse(401, text='expired'),
            FakeResponse(201, {'id': 'wr-1'}),
            token_manager=tokens,
        )
        assert client.create_work_request('tpl-1', []) == {'id': 'wr-1'}
        assert tokens.invalidations == 1
        assert session.request.call_args_list[1].kwargs['headers']['Authorization'] == 'Bearer token-2'

    def test_second_401_raises_auth_error(self):
        tokens = FakeTokenManager()
        client, session = make_client(FakeResponse(401), FakeResponse(401), token_manager=tokens)
        with pytest.raises(RemoteAuthError):
            client.get_template('tpl-1')
        assert session.request.call_count == 2
        assert tokens.invalidations == 1

    def test_error_status_carries_request_details(self):
        client, _ = make_client(FakeResponse(422, text='bad field'))
        with pytest.raises(RemoteApiError) as exc:
            client.create_work_request('tpl-1', [])
        assert exc.value.method == 'POST'
        assert exc.value.path == 'https://cmp.test/v3/work-requests'
        assert exc.value.status == 422
        assert exc.value.body == 'bad field'

    def test_empty_body_decodes_to_empty_dict(self):
        client, _ = make_client(FakeResponse(204, text=''))
        assert client.request('DELETE', '/v3/things/1') == {}

    @patch('public_work_request.utils.time.sleep')
    def test_transport_errors_are_retried(self, mock_sleep):
        client, session = make_client(
            requests.exceptions.ConnectionError('reset'),
            FakeResponse(200, {'id': 'tpl-1'}),
        )
        assert client.get_template('tpl-1') == {'id': 'tpl-1'}
        assert session.request.call_count == 2
        mock_sleep.assert_called_once()

    @patch('public_work_request.utils.time.sleep')
    def test_exhausted_transport_retries_raise_remote_error(self, mock_sleep):
        client, _ = make_client(*[requests.exceptions.Timeout('slow')] * 3)
        with pytest.raises(RemoteApiError):
            client.get_template('tpl-1')

    @patch('public_work_request.utils.time.sleep')
    def test_gateway_errors_are_replayed(self, mock_sleep):
        client, session = make_client(FakeResponse(503, text='busy'), FakeResponse(200, {'id': 'tpl-1'}))
        assert client.get_template('tpl-1') == {'id': 'tpl-1'}
        assert session.request.call_count == 2
        mock_sleep.assert_called_once()

    @patch('public_work_request.utils.time.sleep')
    def test_persistent_gateway_error_keeps_its_status(self, mock_sleep):
        client, session = make_client(*[FakeResponse(502, text='bad gateway') for _ in range(3)])
        with pytest.raises(RemoteApiError) as exc:
            client.create_work_request('tpl-1', [])
        assert exc.value.status == 502
        assert exc.value.body == 'bad gateway'
        assert session.request.call_count == 3

    @patch('public_work_request.utils.time.sleep')
    def test_internal_server_error_is_not_replayed(self, mock_sleep):
        client, session = make_client(FakeResponse(500, text='boom'))
        with pytest.raises(RemoteApiError) as exc:
            client.create_work_request('tpl-1', [])
        assert exc.value.status == 500
        assert session.request.call_count == 1
        mock_sleep.assert_not_called()

    def test_workflow_is_only_sent_when_given(self):
        client, session = make_client(FakeResponse(201, {'id': 'a'}), FakeResponse(201, {'id': 'b'}))
        client.create_work_request('tpl-1', [{'identifier': 'x'}])
        client.create_work_request('tpl-1', [], workflow_id='wf-9')

        first, second = session.request.call_args_list
        assert first.kwargs['json'] == {'template_id': 'tpl-1', 'form_fields': [{'identifier': 'x'}]}
        assert second.kwargs['json']['workflow_id'] == 'wf-9'

    def test_verify_round_trips_the_grant(self):
        tokens = MagicMock()
        client = CmpClient(tokens, session=MagicMock())
        assert client.verify() is True
        tokens.invalidate.assert_called_once()
        tokens.get_token.assert_called_once()


class TestPagination:
    def test_follows_next_links(self):
        client, session = make_client(
            FakeResponse(200, {'data': [1, 2], 'pagination': {'next': 'https://cmp.test/v3/templates?page=2'}}),
            FakeResponse(200, {'data': [3], 'pagination': {'next': None}}),
        )
        assert client.get_templates() == [1, 2, 3]
        assert session.request.call_args_list[1].args[1] == 'https://cmp.test/v3/templates?page=2'

    def test_stops_at_item_cap(self, monkeypatch):
        monkeypatch.setattr(cmp_client_module, 'MAX_PAGINATED_ITEMS', 3)
        client, session = make_client(
            FakeResponse(200, {'data': [1, 2], 'pagination': {'next': '/v3/workflows?page=2'}}),
            FakeResponse(200, {'data': [3, 4], 'pagination': {'next': '/v3/workflows?page=3'}}),
        )
        assert client.get_workflows() == [1, 2, 3]
        assert session.request.call_count == 2

    def test_stops_on_repeated_next_link(self):
        client, session = make_client(
            FakeResponse(200, {'data': [1], 'pagination': {'next': '/v3/templates?page=2'}}),
            FakeResponse(200, {'data': [2], 'pagination': {'next': '/v3/templates'}}),
        )
        assert client.get_templates() == [1, 2]
        assert session.request.call_count == 2


class TestAttachFile:
    UPLOAD = FileUpload('brief_file', 'brief.pdf', b'%PDF-1.4', 'application/pdf')

    def descriptor(self):
        return FakeResponse(200, {
            'url': 'https://storage.test/bucket?X-Signature=secret',
            'upload_meta_fields': {'key': 'uploads/abc/${filename}', 'policy': 'p0l1cy'},
        })

    def test_three_step_upload(self):
        client, session = make_client(
            self.descriptor(),
            FakeResponse(204, text=''),
            FakeResponse(201, {'id': 'att-1'}),
        )
        assert client.attach_file('wr-1', self.UPLOAD) == {'id': 'att-1'}

        descriptor_call, storage_call, register_call = session.request.call_args_list
        assert descriptor_call.args == ('GET', 'https://cmp.test/v3/upload-url')

        assert storage_call.args == ('POST', 'https://storage.test/bucket?X-Signature=secret')
        assert 'headers' not in storage_call.kwargs
        assert [name for name, _ in storage_call.kwargs['files']] == ['key', 'policy', 'file']
        assert storage_call.kwargs['files'][-1] == ('file', ('brief.pdf', b'%PDF-1.4', 'application/pdf'))

        assert register_call.args == ('POST', 'https://cmp.test/v3/work-requests/wr-1/attachments')
        assert register_call.kwargs['json'] == {'key': 'uploads/abc/brief.pdf', 'name': 'brief.pdf'}

    @patch('public_work_request.utils.time.sleep')
    def test_storage_unavailability_is_replayed(self, mock_sleep):
        client, session = make_client(
            self.descriptor(),
            FakeResponse(503, text='slow down'),
            FakeResponse(204, text=''),
            FakeResponse(201, {'id': 'att-1'}),
        )
        assert client.attach_file('wr-1', self.UPLOAD) == {'id': 'att-1'}
        assert session.request.call_count == 4

    def test_storage_rejection_hides_the_presigned_query(self):
        client, _ = make_client(self.descriptor(), FakeResponse(403, text='denied'))
        with pytest.raises(RemoteApiError) as exc:
            client.attach_file('wr-1', self.UPLOAD)
        assert exc.value.path == 'https://storage.test/bucket'
        assert 'secret' not in exc.value.message

    def test_descriptor_without_key_is_an_error(self):
        client, _ = make_client(FakeResponse(200, {'url': 'https://storage.test/bucket', 'upload_meta_fields': {}}))
        with pytest.raises(RemoteApiError):
            client.attach_file('wr-1', self.UPLOAD)

    def test_file_reference(self):
        assert self.UPLOAD.to_reference() == {'name': 'brief.pdf', 'contentType': 'application/pdf', 'size': 8}
