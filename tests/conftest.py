"""
Shared fixtures and fakes for the authpipe test suite.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

import pytest

from authpipe.api_client import AuthenticatedAPIClient
from authpipe.auth.token_refresh import TokenRefreshCoordinator
from authpipe.auth.token_storage import InMemoryCredentialStore
from authpipe.failure_router import FailureRouter
from authpipe.shared.interfaces import ITokenExchange, ITransport, ITelemetrySink
from authpipe.shared.models import APIResponse, Credentials

BASE_URL = "http://api.test"


@dataclass
class RecordedRequest:
    method: str
    url: str
    headers: Dict[str, str]
    body: Any = None
    params: Any = None
    timeout: Optional[float] = None

    @property
    def bearer(self) -> Optional[str]:
        value = self.headers.get('Authorization')
        return value[len('Bearer '):] if value else None


Handler = Callable[[RecordedRequest], Union[APIResponse, BaseException]]


class FakeTransport(ITransport):
    """Transport answering from a handler function and recording every call."""

    def __init__(self, handler: Optional[Handler] = None):
        self.handler = handler or (lambda request: APIResponse(200, data={}))
        self.requests: List[RecordedRequest] = []
        self.closed = False

    @classmethod
    def scripted(cls, *results: Union[APIResponse, BaseException]) -> 'FakeTransport':
        """Answer calls with the given results in order."""
        queue = list(results)
        return cls(lambda request: queue.pop(0))

    @classmethod
    def accepting(cls, valid_token: str, body: Any = None) -> 'FakeTransport':
        """Return 200 for the valid bearer token and 401 for anything else."""
        def handler(request: RecordedRequest) -> APIResponse:
            if request.bearer == valid_token:
                return APIResponse(200, data=body if body is not None else {'ok': True})
            return APIResponse(401, data={'message': 'Token expired'})
        return cls(handler)

    async def execute(self, method, url, headers, body=None, params=None, timeout=None):
        await asyncio.sleep(0)
        request = RecordedRequest(method, url, dict(headers), body, params, timeout)
        self.requests.append(request)
        result = self.handler(request)
        if isinstance(result, BaseException):
            raise result
        return result

    async def close(self):
        self.closed = True


class FakeExchange(ITokenExchange):
    """Token exchange returning a fixed result after an optional delay."""

    def __init__(self, result: Union[Credentials, BaseException, None] = None, delay: float = 0.01):
        self.result = result or Credentials('access-2', 'refresh-2')
        self.delay = delay
        self.calls: List[str] = []

    async def exchange(self, refresh_token: str) -> Credentials:
        self.calls.append(refresh_token)
        await asyncio.sleep(self.delay)
        if isinstance(self.result, BaseException):
            raise self.result
        return self.result


@dataclass
class RecordingSink(ITelemetrySink):
    events: List[Dict[str, Any]] = field(default_factory=list)

    def record(self, level, message, context):
        self.events.append({'level': level, 'message': message, 'context': context})

    def classes(self) -> List[str]:
        return [event['context']['failure_class'] for event in self.events]


@pytest.fixture
def store():
    return InMemoryCredentialStore(Credentials('access-1', 'refresh-1'))


@pytest.fixture
def exchange():
    return FakeExchange()


@pytest.fixture
def transport():
    return FakeTransport.accepting('access-2')


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def coordinator(store, exchange):
    return TokenRefreshCoordinator(store, exchange)


@pytest.fixture
def router(store, sink):
    return FailureRouter(store, sinks=[sink])


@pytest.fixture
def logouts(router):
    signals = []
    router.add_logout_callback(lambda: signals.append(True))
    return signals


@pytest.fixture
def client(store, coordinator, router, transport):
    return AuthenticatedAPIClient(
        base_url=BASE_URL,
        store=store,
        refresh_coordinator=coordinator,
        failure_router=router,
        transport=transport
    )
