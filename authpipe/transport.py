"""
HTTP transport for authpipe.

This module executes single HTTP requests with aiohttp and classifies the
exceptions a transport call can raise when no response was received.
"""

import asyncio
import json
import logging
from typing import Optional, Dict, Any, Mapping

import aiohttp
from aiohttp import ClientSession, ClientTimeout

from authpipe import __version__
from authpipe.shared.interfaces import ITransport
from authpipe.shared.models import APIResponse, FailureClass

logger = logging.getLogger(__name__)

# Exceptions that mean the server was never reached or did not answer in time
NETWORK_ERRORS = (
    aiohttp.ClientConnectionError,
    asyncio.TimeoutError,
    TimeoutError,
    ConnectionError,
)

TEXT_CONTENT_TYPES = (
    'application/json',
    'application/xml',
    'application/javascript',
    'application/x-www-form-urlencoded',
)


def build_url(base_url: str, path: str) -> str:
    """Join a request path onto the configured base URL."""
    if path.startswith(('http://', 'https://')):
        return path
    return f"{base_url.rstrip('/')}/{path.lstrip('/')}"


def is_textual(content_type: str) -> bool:
    """Whether a response content type carries text rather than binary data."""
    return (
        content_type.startswith('text/')
        or content_type in TEXT_CONTENT_TYPES
        or content_type.endswith(('+json', '+xml'))
    )


def classify_exception(error: BaseException) -> FailureClass:
    """
    Classify a transport exception raised before any response arrived.

    Args:
        error: Exception raised by the transport

    Returns:
        NETWORK_UNREACHABLE for connectivity or timeout failures, else OTHER
    """
    if isinstance(error, NETWORK_ERRORS):
        return FailureClass.NETWORK_UNREACHABLE
    if isinstance(error, OSError) and not isinstance(error, PermissionError):
        return FailureClass.NETWORK_UNREACHABLE
    return FailureClass.OTHER


class AiohttpTransport(ITransport):
    """
    aiohttp-backed transport sharing one client session across requests.

    Returns an APIResponse for every HTTP status; only failures where no
    response was received are raised.
    """

    def __init__(
        self,
        timeout: float = 10.0,
        session: Optional[ClientSession] = None,
        verify_ssl: bool = True
    ):
        self.timeout = ClientTimeout(total=timeout)
        self.verify_ssl = verify_ssl
        self._session = session
        self._owns_session = session is None

    async def _ensure_session(self) -> ClientSession:
        """Ensure HTTP session is available."""
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(
                limit=10,
                limit_per_host=5,
                keepalive_timeout=30,
                ssl=self.verify_ssl
            )
            self._session = ClientSession(
                connector=connector,
                timeout=self.timeout,
                headers={'User-Agent': f'authpipe/{__version__}'}
            )
            self._owns_session = True
        return self._session

    async def execute(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str],
        body: Any = None,
        params: Optional[Mapping[str, Any]] = None,
        timeout: Optional[float] = None
    ) -> APIResponse:
        session = await self._ensure_session()
        extra: Dict[str, Any] = {}
        if timeout is not None:
            extra['timeout'] = ClientTimeout(total=timeout)

        async with session.request(
            method=method,
            url=url,
            json=body,
            params=params,
            headers=dict(headers),
            **extra
        ) as response:
            content = await response.read()
            text = self._decode_text(content, response.content_type, response.charset)
            return APIResponse(
                status=response.status,
                headers=dict(response.headers),
                data=self._parse_body(text, response.content_type),
                text=text,
                content=content
            )

    @staticmethod
    def _decode_text(content: bytes, content_type: str, charset: Optional[str]) -> str:
        """Decode a textual body; undecodable bytes are replaced, binary bodies stay in content."""
        if not content or not is_textual(content_type):
            return ""
        try:
            return content.decode(charset or 'utf-8', errors='replace')
        except LookupError:
            logger.warning(f"Unknown response charset {charset!r}, decoding as UTF-8")
            return content.decode('utf-8', errors='replace')

    @staticmethod
    def _parse_body(text: str, content_type: str) -> Any:
        """Decode a JSON body; other content stays in APIResponse.text."""
        if not text:
            return None
        if content_type == 'application/json' or content_type.endswith('+json'):
            try:
                return json.loads(text)
            except json.JSONDecodeError:
                logger.warning("Response declared JSON but could not be decoded")
                return None
        return None

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None
