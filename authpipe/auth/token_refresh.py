"""
Token refresh for the authpipe client.

This module redeems the stored refresh token for a new access token and
coordinates concurrent callers so that at most one exchange is in flight.
"""

import asyncio
import logging
from typing import Optional, Callable, List

from authpipe.shared.exceptions import RefreshError, RefreshReason
from authpipe.shared.interfaces import ICredentialStore, ITokenExchange, ITransport
from authpipe.shared.logging_config import AuditLogger
from authpipe.shared.models import Credentials, FailureClass
from authpipe.transport import build_url, classify_exception

logger = logging.getLogger(__name__)


class HTTPTokenExchange(ITokenExchange):
    """
    Redeems a refresh token against the backend's refresh endpoint.

    The call bypasses the authenticated pipeline: no bearer header is
    attached and a failure is never retried.
    """

    def __init__(
        self,
        transport: ITransport,
        base_url: str,
        refresh_path: str = '/auth/refresh',
        timeout: Optional[float] = None
    ):
        self.transport = transport
        self.url = build_url(base_url, refresh_path)
        self.timeout = timeout

    async def exchange(self, refresh_token: str) -> Credentials:
        """
        Exchange the refresh token for new credentials.

        Args:
            refresh_token: Current refresh token

        Returns:
            New credentials; refresh_token is None when the backend did not rotate it

        Raises:
            RefreshError: On network failure, non-success status or malformed body
        """
        try:
            response = await self.transport.execute(
                'POST',
                self.url,
                headers={'Content-Type': 'application/json'},
                body={'refreshToken': refresh_token},
                timeout=self.timeout
            )
        except Exception as e:
            if classify_exception(e) == FailureClass.NETWORK_UNREACHABLE:
                reason = RefreshReason.NETWORK
            else:
                reason = RefreshReason.REJECTED
            raise RefreshError(f"Token exchange failed: {e}", reason=reason, cause=e) from e

        if not response.ok:
            raise RefreshError(
                f"Token exchange rejected ({response.status}): {response.error_detail()}",
                reason=RefreshReason.REJECTED,
                status=response.status
            )

        data = response.data if isinstance(response.data, dict) else {}
        access_token = data.get('accessToken') or data.get('access_token')
        if not access_token:
            raise RefreshError(
                "Token exchange response did not contain an access token",
                reason=RefreshReason.REJECTED,
                status=response.status
            )

        return Credentials(
            access_token=access_token,
            refresh_token=data.get('refresh_token') or data.get('refreshToken')
        )


class TokenRefreshCoordinator:
    """
    Single-flight refresh of the stored credentials.

    Concurrent callers join the flight that is already running and receive
    its result. The flight runs as its own task, so a caller that stops
    waiting does not cancel it for the others.
    """

    def __init__(
        self,
        store: ICredentialStore,
        exchange: ITokenExchange,
        audit_logger: Optional[AuditLogger] = None
    ):
        self.store = store
        self.exchange = exchange
        self.audit_logger = audit_logger or AuditLogger()

        self._flight: Optional[asyncio.Task] = None
        self._refresh_callbacks: List[Callable[[Credentials], None]] = []
        self.exchange_count = 0

    @property
    def in_flight(self) -> bool:
        return self._flight is not None

    def add_refresh_callback(self, callback: Callable[[Credentials], None]) -> None:
        """
        Add callback for successful refreshes.

        Args:
            callback: Function called with the new credentials
        """
        self._refresh_callbacks.append(callback)

    def _notify_refresh(self, credentials: Credentials) -> None:
        """Notify callbacks of a token refresh."""
        for callback in self._refresh_callbacks:
            try:
                callback(credentials)
            except Exception as e:
                logger.error(f"Error in token refresh callback: {e}")

    async def refresh(self, stale_access_token: Optional[str] = None) -> Credentials:
        """
        Refresh the stored credentials, joining any flight in progress.

        Args:
            stale_access_token: Access token the caller was rejected with. When
                the store already holds a different access token, the session
                was refreshed after that attempt and no new exchange is made.

        Returns:
            Current credentials after the refresh

        Raises:
            RefreshError: If no refresh token is stored or the exchange failed
        """
        if self._flight is None:
            if stale_access_token is not None:
                current = self.store.get()
                if current.access_token and current.access_token != stale_access_token:
                    logger.debug("Access token already rotated since the attempt, skipping exchange")
                    return current

            self._flight = asyncio.ensure_future(self._run_flight())
            self._flight.add_done_callback(self._consume_result)
            logger.debug("Started token refresh flight")
        else:
            logger.debug("Joining token refresh flight in progress")

        return await asyncio.shield(self._flight)

    @staticmethod
    def _consume_result(task: asyncio.Task) -> None:
        # Keeps asyncio quiet when every waiter was cancelled
        if not task.cancelled():
            task.exception()

    async def _run_flight(self) -> Credentials:
        try:
            return await self._exchange_and_store()
        finally:
            self._flight = None

    async def _exchange_and_store(self) -> Credentials:
        credentials = self.store.get()
        if not credentials.refresh_token:
            logger.warning("Cannot refresh token: no refresh token stored")
            self.audit_logger.log_token_refresh(False, failure_reason=RefreshReason.NO_TOKEN.value)
            raise RefreshError("No refresh token available.", reason=RefreshReason.NO_TOKEN)

        self.exchange_count += 1
        logger.info("Refreshing access token")

        try:
            new_credentials = await self.exchange.exchange(credentials.refresh_token)
        except RefreshError as e:
            self._fail_flight(e)
            raise
        except Exception as e:
            error = RefreshError(f"Token exchange failed: {e}", reason=RefreshReason.REJECTED, cause=e)
            self._fail_flight(error)
            raise error from e

        if not new_credentials.refresh_token:
            new_credentials = Credentials(
                access_token=new_credentials.access_token,
                refresh_token=credentials.refresh_token
            )

        self.store.set(new_credentials)

        expires_at = new_credentials.access_expires_at
        self.audit_logger.log_token_refresh(True, expires_at=expires_at)
        logger.info("Token refresh successful" + (f", expires at {expires_at.isoformat()}" if expires_at else ""))

        self._notify_refresh(new_credentials)
        return new_credentials

    def _fail_flight(self, error: RefreshError) -> None:
        """Drop the unusable session after a failed exchange."""
        logger.error(f"Token refresh error: {error.message}")
        self.store.clear()
        self.audit_logger.log_token_refresh(False, failure_reason=error.reason.value)
