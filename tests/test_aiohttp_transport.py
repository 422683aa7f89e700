"""
Tests for the aiohttp transport against a local test server.
"""

import asyncio

import aiohttp
import pytest
from aiohttp import web
from aiohttp import test_utils

from authpipe import __version__
from authpipe.api_client import AuthenticatedAPIClient
from authpipe.auth.token_refresh import HTTPTokenExchange, TokenRefreshCoordinator
from authpipe.auth.token_storage import InMemoryCredentialStore
from authpipe.failure_router import FailureRouter
from authpipe.shared.exceptions import NetworkUnreachableError
from authpipe.shared.models import Credentials, FailureClass
from authpipe.transport import AiohttpTransport, build_url, classify_exception, is_textual

PNG_BYTES = b"\x89PNG\r\n\x1a\n\x00\x00\x00\rIHDR\xff\xfe"
GARBLED_BYTES = b"denied \xff\xfe\xc3("


class TestHelpers:
    """Test URL joining and exception classification."""

    @pytest.mark.parametrize("base,path,expected", [
        ('http://api.test', '/users', 'http://api.test/users'),
        ('http://api.test/', 'users', 'http://api.test/users'),
        ('http://api.test/v1', '/users', 'http://api.test/v1/users'),
        ('http://api.test/v1/', '/users', 'http://api.test/v1/users'),
        ('http://api.test', 'https://other.test/x', 'https://other.test/x'),
    ])
    def test_build_url(self, base, path, expected):
        assert build_url(base, path) == expected

    @pytest.mark.parametrize("error,expected", [
        (aiohttp.ClientConnectionError(), FailureClass.NETWORK_UNREACHABLE),
        (asyncio.TimeoutError(), FailureClass.NETWORK_UNREACHABLE),
        (ConnectionRefusedError(), FailureClass.NETWORK_UNREACHABLE),
        (OSError("network is unreachable"), FailureClass.NETWORK_UNREACHABLE),
        (PermissionError(), FailureClass.OTHER),
        (ValueError(), FailureClass.OTHER),
    ])
    def test_classify_exception(self, error, expected):
        assert classify_exception(error) == expected

    @pytest.mark.parametrize("content_type,expected", [
        ('application/json', True),
        ('application/problem+json', True),
        ('text/html', True),
        ('image/png', False),
        ('application/octet-stream', False),
    ])
    def test_is_textual(self, content_type, expected):
        assert is_textual(content_type) is expected


def make_app(state):
    async def profile(request):
        state['seen'].append(request.headers.get('Authorization'))
        if request.headers.get('Authorization') != f"Bearer {state['valid']}":
            return web.json_response({'message': 'Token expired'}, status=401)
        return web.json_response({'user': 'alice', 'agent': request.headers.get('User-Agent')})

    async def refresh(request):
        body = await request.json()
        state['refreshes'].append(body)
        state['valid'] = 'access-2'
        return web.json_response({'accessToken': 'access-2', 'refresh_token': 'refresh-2'})

    async def echo(request):
        return web.json_response({
            'method': request.method,
            'query': dict(request.query),
            'body': await request.json() if request.can_read_body else None,
        })

    async def plain(request):
        return web.Response(text='pong')

    async def slow(request):
        await asyncio.sleep(1)
        return web.json_response({})

    async def image(request):
        if request.headers.get('Authorization') != f"Bearer {state['valid']}":
            return web.Response(status=401, body=GARBLED_BYTES,
                                headers={'Content-Type': 'text/plain; charset=utf-8'})
        return web.Response(body=PNG_BYTES, content_type='image/png')

    app = web.Application()
    app.router.add_get('/api/profile', profile)
    app.router.add_post('/api/auth/refresh', refresh)
    app.router.add_route('*', '/api/echo', echo)
    app.router.add_get('/api/plain', plain)
    app.router.add_get('/api/slow', slow)
    app.router.add_get('/api/image', image)
    return app


@pytest.fixture
def state():
    return {'valid': 'access-1', 'seen': [], 'refreshes': []}


@pytest.fixture
async def server(state):
    test_server = test_utils.TestServer(make_app(state))
    await test_server.start_server()
    yield test_server
    await test_server.close()


@pytest.fixture
async def transport():
    aiohttp_transport = AiohttpTransport(timeout=5.0)
    yield aiohttp_transport
    await aiohttp_transport.close()


class TestAiohttpTransport:
    """Test the real transport end to end."""

    @pytest.mark.asyncio
    async def test_json_response_and_user_agent(self, server, transport):
        response = await transport.execute(
            'GET', str(server.make_url('/api/profile')), headers={'Authorization': 'Bearer access-1'}
        )

        assert response.status == 200
        assert response.ok
        assert response.data == {'user': 'alice', 'agent': f'authpipe/{__version__}'}

    @pytest.mark.asyncio
    async def test_body_and_params_are_sent(self, server, transport):
        response = await transport.execute(
            'PATCH', str(server.make_url('/api/echo')), headers={},
            body={'name': 'x'}, params={'page': '2'}
        )

        assert response.data == {'method': 'PATCH', 'query': {'page': '2'}, 'body': {'name': 'x'}}

    @pytest.mark.asyncio
    async def test_non_json_body_kept_as_text(self, server, transport):
        response = await transport.execute('GET', str(server.make_url('/api/plain')), headers={})

        assert response.data is None
        assert response.text == 'pong'

    @pytest.mark.asyncio
    async def test_binary_body_is_returned_raw(self, server, transport):
        response = await transport.execute(
            'GET', str(server.make_url('/api/image')), headers={'Authorization': 'Bearer access-1'}
        )

        assert response.status == 200
        assert response.content == PNG_BYTES
        assert response.text == ''
        assert response.data is None

    @pytest.mark.asyncio
    async def test_undecodable_text_keeps_status(self, server, transport):
        response = await transport.execute('GET', str(server.make_url('/api/image')), headers={})

        assert response.status == 401
        assert response.content == GARBLED_BYTES
        assert response.text.startswith('denied ')
        assert '\ufffd' in response.text

    @pytest.mark.asyncio
    async def test_error_status_is_returned_not_raised(self, server, transport):
        response = await transport.execute('GET', str(server.make_url('/api/profile')), headers={})

        assert response.status == 401
        assert response.error_detail() == 'Token expired'

    @pytest.mark.asyncio
    async def test_per_call_timeout(self, server, transport):
        with pytest.raises(asyncio.TimeoutError):
            await transport.execute('GET', str(server.make_url('/api/slow')), headers={}, timeout=0.1)

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, transport):
        await transport.close()
        await transport.close()


class TestPipelineOverHTTP:
    """Test the full pipeline with the aiohttp transport."""

    @pytest.mark.asyncio
    async def test_refresh_and_replay_over_http(self, server, transport, state):
        base_url = str(server.make_url('/api'))
        store = InMemoryCredentialStore(Credentials('access-1', 'refresh-1'))
        state['valid'] = 'rotated-elsewhere'
        coordinator = TokenRefreshCoordinator(store, HTTPTokenExchange(transport, base_url))
        client = AuthenticatedAPIClient(base_url, store, coordinator, FailureRouter(store), transport)

        response = await client.get('/profile')

        assert response.data['user'] == 'alice'
        assert state['seen'] == ['Bearer access-1', 'Bearer access-2']
        assert state['refreshes'] == [{'refreshToken': 'refresh-1'}]
        assert store.get() == Credentials('access-2', 'refresh-2')

    @pytest.mark.asyncio
    async def test_unreachable_server(self, transport):
        store = InMemoryCredentialStore(Credentials('access-1', 'refresh-1'))
        base_url = 'http://127.0.0.1:9'
        coordinator = TokenRefreshCoordinator(store, HTTPTokenExchange(transport, base_url))
        client = AuthenticatedAPIClient(base_url, store, coordinator, FailureRouter(store), transport)

        with pytest.raises(NetworkUnreachableError):
            await client.get('/profile')

        assert coordinator.exchange_count == 0

    @pytest.mark.asyncio
    async def test_binary_resource_after_undecodable_401(self, server, transport, state):
        base_url = str(server.make_url('/api'))
        store = InMemoryCredentialStore(Credentials('access-1', 'refresh-1'))
        state['valid'] = 'rotated-elsewhere'
        coordinator = TokenRefreshCoordinator(store, HTTPTokenExchange(transport, base_url))
        client = AuthenticatedAPIClient(base_url, store, coordinator, FailureRouter(store), transport)

        response = await client.get('/image')

        assert response.status == 200
        assert response.content == PNG_BYTES
        assert coordinator.exchange_count == 1
        assert store.get() == Credentials('access-2', 'refresh-2')
