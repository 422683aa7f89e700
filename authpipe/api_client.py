"""
Authenticated HTTP API client for authpipe.

This module provides the request pipeline: bearer credential injection,
response and error classification, and the single refresh-and-retry cycle
permitted for each logical call.
"""

import logging
import time
from typing import Optional, Dict, Any, Mapping, Tuple

from authpipe.auth.token_refresh import TokenRefreshCoordinator, HTTPTokenExchange
from authpipe.auth.token_storage import SecureCredentialStore
from authpipe.config import ClientConfiguration
from authpipe.failure_router import FailureRouter, AuditTelemetrySink
from authpipe.shared.exceptions import (
    REQUEST_ERROR_TYPES, RequestError, SessionExpiredError, ClientRequestError, RefreshError,
    handle_exception
)
from authpipe.shared.interfaces import ICredentialStore, ITransport
from authpipe.shared.models import APIResponse, FailureClass, RequestDescriptor
from authpipe.transport import AiohttpTransport, build_url, classify_exception

logger = logging.getLogger(__name__)

def classify_status(status: int) -> Optional[FailureClass]:
    """
    Classify an HTTP status code.

    Args:
        status: HTTP status of the response

    Returns:
        None for a 2xx response, otherwise the failure class
    """
    if 200 <= status < 300:
        return None
    if status == 401:
        return FailureClass.AUTH_EXPIRED
    if 400 <= status < 500:
        return FailureClass.CLIENT_ERROR
    if 500 <= status < 600:
        return FailureClass.SERVER_ERROR
    return FailureClass.OTHER


class AuthenticatedAPIClient:
    """
    HTTP client that attaches bearer credentials and recovers expired sessions.

    A 401 on the first attempt of a call triggers one refresh through the
    coordinator and one replay of the call with the new access token. A 401
    on the replay, or a failed refresh, ends the session through the failure
    router's logout path.
    """

    def __init__(
        self,
        base_url: str,
        store: ICredentialStore,
        refresh_coordinator: TokenRefreshCoordinator,
        failure_router: Optional[FailureRouter] = None,
        transport: Optional[ITransport] = None,
        timeout: float = 10.0,
        default_headers: Optional[Mapping[str, str]] = None
    ):
        self.base_url = base_url.rstrip('/')
        self.store = store
        self.refresh_coordinator = refresh_coordinator
        self.failure_router = failure_router or FailureRouter(store)
        self.transport = transport or AiohttpTransport(timeout=timeout)
        self.default_headers = {'Content-Type': 'application/json'}
        self.default_headers.update(default_headers or {})

        logger.info(f"API client initialized for server: {self.base_url}")

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    async def close(self) -> None:
        """Close the underlying transport."""
        await self.transport.close()

    async def send(self, descriptor: RequestDescriptor) -> APIResponse:
        """
        Issue one logical call.

        Args:
            descriptor: The request to issue

        Returns:
            The successful (2xx) response

        Raises:
            SessionExpiredError: The session could not be recovered; logout was triggered
            RequestError: Any other classified failure
            CredentialStoreError: The credential store failed; raised unchanged and never retried
        """
        response, access_token = await self._attempt(descriptor)
        failure = classify_status(response.status)
        if failure is None:
            return response

        if failure != FailureClass.AUTH_EXPIRED or not descriptor.authenticated:
            raise self._request_error(failure, descriptor, response)

        if descriptor.retried:
            raise self._end_session(descriptor, "Request was rejected again after token refresh")

        retry = descriptor.mark_retried()
        self.failure_router.report(FailureClass.AUTH_EXPIRED, self._details(retry, response))

        try:
            await self.refresh_coordinator.refresh(stale_access_token=access_token)
        except RefreshError as e:
            raise self._end_session(retry, f"Token refresh failed: {e.message}", cause=e) from e

        return await self.send(retry)

    async def _attempt(self, descriptor: RequestDescriptor) -> Tuple[APIResponse, Optional[str]]:
        """Execute one transport call with the current access token attached."""
        headers = dict(self.default_headers)
        headers.update(descriptor.headers)

        access_token = None
        if descriptor.authenticated:
            access_token = self.store.get().access_token
            if access_token:
                headers['Authorization'] = f'Bearer {access_token}'

        url = build_url(self.base_url, descriptor.path)
        attempt = 2 if descriptor.retried else 1
        logger.debug(f"Making {descriptor.method} request to {url} (attempt {attempt})")
        started = time.monotonic()

        try:
            response = await self.transport.execute(
                descriptor.method,
                url,
                headers=headers,
                body=descriptor.body,
                params=descriptor.params,
                timeout=descriptor.timeout
            )
        except Exception as e:
            failure = classify_exception(e)
            error = handle_exception(
                e,
                failure,
                message=f"{descriptor.method} {descriptor.path} failed: {str(e) or type(e).__name__}",
                method=descriptor.method,
                path=descriptor.path
            )
            details = self._details(descriptor)
            details['detail'] = getattr(error, 'detail', None) or str(e)
            self.failure_router.report(failure, details)
            raise error from e

        elapsed_ms = (time.monotonic() - started) * 1000
        logger.debug(f"{descriptor.method} {url} -> {response.status} ({elapsed_ms:.1f} ms)")
        return response, access_token

    def _request_error(self, failure: FailureClass, descriptor: RequestDescriptor,
                       response: APIResponse) -> RequestError:
        """Report a non-recoverable HTTP failure and build its error."""
        details = self._details(descriptor, response)
        self.failure_router.report(failure, details)

        # A 401 on a call that carries no session is an ordinary client error
        error_type = REQUEST_ERROR_TYPES.get(failure, ClientRequestError)
        return error_type(
            f"Request failed ({response.status}): {details['detail']}",
            status=response.status,
            detail=details['detail'],
            method=descriptor.method,
            path=descriptor.path
        )

    def _end_session(self, descriptor: RequestDescriptor, reason: str,
                     cause: Optional[Exception] = None) -> SessionExpiredError:
        """Route an unrecoverable auth failure to logout."""
        details = self._details(descriptor)
        details['detail'] = reason
        self.failure_router.report(FailureClass.AUTH_INVALID, details)
        self.failure_router.trigger_logout()

        return SessionExpiredError(
            f"Session expired: {reason}",
            status=401,
            detail=reason,
            method=descriptor.method,
            path=descriptor.path,
            cause=cause
        )

    @staticmethod
    def _details(descriptor: RequestDescriptor, response: Optional[APIResponse] = None) -> Dict[str, Any]:
        details: Dict[str, Any] = {
            'method': descriptor.method,
            'path': descriptor.path,
            'retried': descriptor.retried,
        }
        if response is not None:
            details['status'] = response.status
            details['detail'] = response.error_detail()
        return details

    async def request(
        self,
        method: str,
        path: str,
        data: Any = None,
        params: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
        authenticated: bool = True
    ) -> APIResponse:
        """
        Build a descriptor and send it.

        Args:
            method: HTTP method (GET, POST, PUT, PATCH, DELETE)
            path: API path relative to the base URL
            data: JSON request body
            params: Query parameters
            headers: Extra request headers
            timeout: Per-call timeout override in seconds
            authenticated: Whether to attach credentials and run the refresh protocol

        Returns:
            The successful response
        """
        descriptor = RequestDescriptor(
            method=method,
            path=path,
            headers=dict(headers or {}),
            body=data,
            params=params,
            timeout=timeout,
            authenticated=authenticated
        )
        return await self.send(descriptor)

    async def get(self, path: str, params: Optional[Mapping[str, Any]] = None, **kwargs) -> APIResponse:
        return await self.request('GET', path, params=params, **kwargs)

    async def post(self, path: str, data: Any = None, **kwargs) -> APIResponse:
        return await self.request('POST', path, data=data, **kwargs)

    async def put(self, path: str, data: Any = None, **kwargs) -> APIResponse:
        return await self.request('PUT', path, data=data, **kwargs)

    async def patch(self, path: str, data: Any = None, **kwargs) -> APIResponse:
        return await self.request('PATCH', path, data=data, **kwargs)

    async def delete(self, path: str, **kwargs) -> APIResponse:
        return await self.request('DELETE', path, **kwargs)


def build_client(config: ClientConfiguration, store: Optional[ICredentialStore] = None,
                 transport: Optional[ITransport] = None) -> AuthenticatedAPIClient:
    """
    Wire a client from configuration.

    Args:
        config: Loaded client configuration
        store: Credential store override (defaults to SecureCredentialStore)
        transport: Transport override (defaults to AiohttpTransport)

    Returns:
        Ready-to-use AuthenticatedAPIClient
    """
    store = store or SecureCredentialStore(
        service_name=config.get_service_name(),
        storage_dir=config.get_storage_dir(),
        use_keyring=config.use_keyring()
    )
    transport = transport or AiohttpTransport(
        timeout=config.get_server_timeout(),
        verify_ssl=config.get_verify_ssl()
    )

    exchange = HTTPTokenExchange(
        transport,
        base_url=config.get_server_url(),
        refresh_path=config.get_refresh_path(),
        timeout=config.get_server_timeout()
    )
    coordinator = TokenRefreshCoordinator(store, exchange)
    router = FailureRouter(store, sinks=[AuditTelemetrySink()])

    return AuthenticatedAPIClient(
        base_url=config.get_server_url(),
        store=store,
        refresh_coordinator=coordinator,
        failure_router=router,
        transport=transport,
        timeout=config.get_server_timeout()
    )
