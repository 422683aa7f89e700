"""
authpipe - authenticated HTTP request pipeline with single-flight token refresh.
"""

__version__ = "1.0.0"

from authpipe.api_client import AuthenticatedAPIClient, build_client  # noqa: E402
from authpipe.auth.token_refresh import TokenRefreshCoordinator, HTTPTokenExchange  # noqa: E402
from authpipe.auth.token_storage import SecureCredentialStore, InMemoryCredentialStore  # noqa: E402
from authpipe.config import ClientConfiguration  # noqa: E402
from authpipe.failure_router import FailureRouter  # noqa: E402
from authpipe.shared.exceptions import (  # noqa: E402
    AuthPipeError, RequestError, SessionExpiredError, NetworkUnreachableError, RefreshError
)
from authpipe.shared.models import Credentials, RequestDescriptor, APIResponse, FailureClass  # noqa: E402

__all__ = [
    '__version__',
    'AuthenticatedAPIClient',
    'build_client',
    'TokenRefreshCoordinator',
    'HTTPTokenExchange',
    'SecureCredentialStore',
    'InMemoryCredentialStore',
    'ClientConfiguration',
    'FailureRouter',
    'AuthPipeError',
    'RequestError',
    'SessionExpiredError',
    'NetworkUnreachableError',
    'RefreshError',
    'Credentials',
    'RequestDescriptor',
    'APIResponse',
    'FailureClass',
]
