"""
Core interfaces for authpipe.

This module defines the abstract seams between the request pipeline and its
collaborators so that each one can be replaced with a fake in tests.
"""

from abc import ABC, abstractmethod
from typing import Optional, Dict, Any, Mapping

from .models import Credentials, APIResponse


class ICredentialStore(ABC):
    """Interface for durable access/refresh token storage."""

    @abstractmethod
    def get(self) -> Credentials:
        """Return the current credentials (absent tokens are None)."""
        pass

    @abstractmethod
    def set(self, credentials: Credentials) -> None:
        """Replace the stored credentials."""
        pass

    @abstractmethod
    def clear(self) -> None:
        """Remove both tokens from storage."""
        pass


class ITransport(ABC):
    """Interface for executing a single HTTP request."""

    @abstractmethod
    async def execute(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str],
        body: Any = None,
        params: Optional[Mapping[str, Any]] = None,
        timeout: Optional[float] = None
    ) -> APIResponse:
        """
        Execute the request and return the response for any HTTP status.

        Raises the underlying transport exception when no response
        was received.
        """
        pass

    async def close(self) -> None:
        """Release transport resources."""
        pass


class ITokenExchange(ABC):
    """Interface for redeeming a refresh token."""

    @abstractmethod
    async def exchange(self, refresh_token: str) -> Credentials:
        """
        Redeem the refresh token for new credentials.

        Raises RefreshError when the exchange is rejected or fails.
        """
        pass


class ITelemetrySink(ABC):
    """Interface for logging/telemetry consumers of failure reports."""

    @abstractmethod
    def record(self, level: int, message: str, context: Dict[str, Any]) -> None:
        """Record one event. May be a coroutine function."""
        pass
