"""Tests for resource_opr.rest_adapter module."""

import os
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import requests

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from config import ConfigError, EngineConfig, ProviderSettings
from resource_opr.errors import (
    PermanentProviderError,
    PreconditionError,
    ResourceNotFoundError,
    TransientProviderError,
)
from resource_opr.providers import BUILTIN_KINDS
from resource_opr.rest_adapter import RestProviderAdapter, build_registry

ENDPOINT = 'https://provisioner.test/api'


def _response(status_code=200, body=None, text=''):
    resp = MagicMock()
    resp.status_code = status_code
    resp.ok = status_code < 400
    resp.content = b'x' if body is not None or text else b''
    if body is None:
        resp.json.side_effect = ValueError('no json')
    else:
        resp.json.return_value = body
    resp.text = text
    return resp


def _adapter(kind='Database', token='secret'):
    return RestProviderAdapter(BUILTIN_KINDS[kind], ENDPOINT + '/', token=token, timeout=5)


class TestRestProviderAdapter:
    """Tests for request mapping and error classification."""

    def test_kind_metadata(self):
        adapter = _adapter()
        assert adapter.kind == 'Database'
        assert adapter.base_url == f'{ENDPOINT}/databases'
        assert 'identifier' in adapter.immutable_attributes

    @patch('resource_opr.rest_adapter.requests.request')
    def test_create_posts_attributes(self, mock_request):
        mock_request.return_value = _response(201, {'id': 'db-1', 'address': 'db.internal'})
        result = _adapter().create({'identifier': 'app-db'})

        assert result == {'id': 'db-1', 'address': 'db.internal'}
        args, kwargs = mock_request.call_args
        assert args == ('POST', f'{ENDPOINT}/databases')
        assert kwargs['json'] == {'identifier': 'app-db'}
        assert kwargs['headers']['Authorization'] == 'Bearer secret'
        assert kwargs['timeout'] == 5
        assert kwargs['verify'] is True

    @patch('resource_opr.rest_adapter.requests.request')
    def test_no_token_no_auth_header(self, mock_request):
        mock_request.return_value = _response(200, {'id': 'db-1'})
        _adapter(token='').read('db-1')
        assert 'Authorization' not in mock_request.call_args.kwargs['headers']

    @patch('resource_opr.rest_adapter.requests.request')
    def test_create_without_id(self, mock_request):
        mock_request.return_value = _response(201, {'status': 'ok'})
        with pytest.raises(PermanentProviderError, match='did not return an id'):
            _adapter().create({'identifier': 'app-db'})

    @patch('resource_opr.rest_adapter.requests.request')
    def test_update_patches_changed(self, mock_request):
        mock_request.return_value = _response(200, {'id': 'db-1'})
        _adapter().update('db-1', {'engine_version': '17'})
        args, kwargs = mock_request.call_args
        assert args == ('PATCH', f'{ENDPOINT}/databases/db-1')
        assert kwargs['json'] == {'engine_version': '17'}

    @patch('resource_opr.rest_adapter.requests.request')
    def test_delete_no_content(self, mock_request):
        mock_request.return_value = _response(204)
        assert _adapter().delete('db-1') is None
        assert mock_request.call_args.args == ('DELETE', f'{ENDPOINT}/databases/db-1')

    @pytest.mark.parametrize('status', [429, 502, 503, 504])
    @patch('resource_opr.rest_adapter.requests.request')
    def test_transient_status(self, mock_request, status):
        mock_request.return_value = _response(status, {'message': 'slow down'})
        with pytest.raises(TransientProviderError, match='slow down'):
            _adapter().create({})

    @patch('resource_opr.rest_adapter.requests.request')
    def test_connection_error_is_transient(self, mock_request):
        mock_request.side_effect = requests.exceptions.ConnectionError('refused')
        with pytest.raises(TransientProviderError, match='Cannot connect'):
            _adapter().read('db-1')

    @patch('resource_opr.rest_adapter.requests.request')
    def test_timeout_is_transient(self, mock_request):
        mock_request.side_effect = requests.exceptions.Timeout()
        with pytest.raises(TransientProviderError, match='Timeout'):
            _adapter().read('db-1')

    @pytest.mark.parametrize('error', [
        requests.exceptions.ChunkedEncodingError('connection broken mid-body'),
        requests.exceptions.ContentDecodingError('bad gzip'),
    ])
    @patch('resource_opr.rest_adapter.requests.request')
    def test_broken_body_is_transient(self, mock_request, error):
        mock_request.side_effect = error
        with pytest.raises(TransientProviderError, match='Incomplete response'):
            _adapter().create({})

    @pytest.mark.parametrize('error', [
        requests.exceptions.TooManyRedirects('redirect loop'),
        requests.exceptions.InvalidURL('bad url'),
    ])
    @patch('resource_opr.rest_adapter.requests.request')
    def test_other_request_errors_are_permanent(self, mock_request, error):
        mock_request.side_effect = error
        with pytest.raises(PermanentProviderError) as exc_info:
            _adapter().read('db-1')
        assert not isinstance(exc_info.value, ResourceNotFoundError)

    @patch('resource_opr.rest_adapter.requests.request')
    def test_validation_error_is_permanent(self, mock_request):
        mock_request.return_value = _response(400, {'message': "engine 'oracle' not supported"})
        with pytest.raises(PermanentProviderError) as exc_info:
            _adapter().create({'engine': 'oracle'})
        assert str(exc_info.value) == "engine 'oracle' not supported"
        assert not exc_info.value.transient

    @patch('resource_opr.rest_adapter.requests.request')
    def test_nested_error_body(self, mock_request):
        mock_request.return_value = _response(422, {'error': {'message': 'quota exceeded'}})
        with pytest.raises(PermanentProviderError, match='quota exceeded'):
            _adapter().create({})

    @patch('resource_opr.rest_adapter.requests.request')
    def test_plain_text_error(self, mock_request):
        mock_request.return_value = _response(500, text='internal error')
        with pytest.raises(PermanentProviderError, match='internal error'):
            _adapter().create({})

    @patch('resource_opr.rest_adapter.requests.request')
    def test_precondition_refusal(self, mock_request):
        mock_request.return_value = _response(409, {
            'message': 'final snapshot required',
            'precondition': 'final_snapshot',
        })
        with pytest.raises(PreconditionError) as exc_info:
            _adapter().delete('db-1')
        assert exc_info.value.precondition == 'final_snapshot'

    @patch('resource_opr.rest_adapter.requests.request')
    def test_conflict_without_precondition_is_permanent(self, mock_request):
        mock_request.return_value = _response(409, {'message': 'name taken'})
        with pytest.raises(PermanentProviderError) as exc_info:
            _adapter().create({})
        assert not isinstance(exc_info.value, PreconditionError)

    @patch('resource_opr.rest_adapter.requests.request')
    def test_read_not_found(self, mock_request):
        mock_request.return_value = _response(404, {'message': 'no such database'})
        with pytest.raises(ResourceNotFoundError):
            _adapter().read('db-1')

    @patch('resource_opr.rest_adapter.requests.request')
    def test_update_not_found_is_plain_permanent(self, mock_request):
        mock_request.return_value = _response(404, {'message': 'no such database'})
        with pytest.raises(PermanentProviderError) as exc_info:
            _adapter().update('db-1', {'engine_version': '17'})
        assert not isinstance(exc_info.value, ResourceNotFoundError)

    @patch('resource_opr.rest_adapter.requests.request')
    def test_invalid_json_success(self, mock_request):
        mock_request.return_value = _response(200, text='<html>')
        with pytest.raises(PermanentProviderError, match='Invalid JSON'):
            _adapter().read('db-1')


class TestBuildRegistry:
    """Tests for build_registry."""

    def test_requires_endpoint(self):
        with pytest.raises(ConfigError, match='endpoint'):
            build_registry(EngineConfig())

    def test_registers_every_builtin_kind(self):
        config = EngineConfig(provider=ProviderSettings(endpoint=ENDPOINT, token_env='TEST_TOKEN'))
        with patch.dict(os.environ, {'TEST_TOKEN': 'abc'}):
            registry = build_registry(config)
        assert registry.kinds == sorted(BUILTIN_KINDS)
        adapter = registry.get('Subnet')
        assert adapter.token == 'abc'
        assert adapter.base_url == f'{ENDPOINT}/subnets'

    def test_insecure_tls_disables_warnings(self):
        config = EngineConfig(provider=ProviderSettings(endpoint=ENDPOINT, verify_tls=False))
        with patch('resource_opr.rest_adapter.urllib3.disable_warnings') as mock_disable:
            registry = build_registry(config)
        mock_disable.assert_called_once()
        assert registry.get('Bucket').verify_tls is False

    def test_missing_token_warns(self, caplog):
        config = EngineConfig(provider=ProviderSettings(endpoint=ENDPOINT, token_env='UNSET_TOKEN_VAR'))
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop('UNSET_TOKEN_VAR', None)
            build_registry(config)
        assert 'UNSET_TOKEN_VAR' in caplog.text
