"""
Core data models for authpipe.

This module defines the data structures passed between the credential store,
the refresh coordinator, the request pipeline and the resource APIs.
"""

from dataclasses import dataclass, field, replace, asdict
from datetime import datetime, timezone
from typing import List, Optional, Dict, Any, Mapping
from enum import Enum
import logging

from jose import jwt, JWTError

logger = logging.getLogger(__name__)


class FailureClass(Enum):
    """Classification of a failed request attempt."""
    NETWORK_UNREACHABLE = "network_unreachable"
    AUTH_EXPIRED = "auth_expired"
    AUTH_INVALID = "auth_invalid"
    CLIENT_ERROR = "client_error"
    SERVER_ERROR = "server_error"
    OTHER = "other"


def parse_token_expiration(token: Optional[str]) -> Optional[datetime]:
    """
    Parse expiration time from a JWT access token.

    Args:
        token: Token string, JWT or opaque

    Returns:
        Expiration datetime (UTC) or None if not available
    """
    if not token or token.count('.') != 2:
        return None

    try:
        # Decode without verification; the server owns validation
        payload = jwt.get_unverified_claims(token)
    except JWTError as e:
        logger.debug(f"Token is not a readable JWT: {e}")
        return None

    exp = payload.get('exp')
    if isinstance(exp, (int, float)):
        return datetime.fromtimestamp(exp, tz=timezone.utc)
    return None


@dataclass(frozen=True)
class Credentials:
    """Access/refresh token pair owned by the credential store."""
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.access_token and not self.refresh_token

    @property
    def access_expires_at(self) -> Optional[datetime]:
        return parse_token_expiration(self.access_token)

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            'access_token': self.access_token,
            'refresh_token': self.refresh_token
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'Credentials':
        return cls(
            access_token=data.get('access_token') or None,
            refresh_token=data.get('refresh_token') or None
        )

    def __repr__(self) -> str:
        # Tokens are secrets; never render them
        return (
            f"Credentials(access_token={'<set>' if self.access_token else None}, "
            f"refresh_token={'<set>' if self.refresh_token else None})"
        )


@dataclass(frozen=True)
class RequestDescriptor:
    """
    One logical call issued through the request pipeline.

    Treated as an immutable value. The second attempt of a call is issued
    with the descriptor returned by ``mark_retried()``.
    """
    method: str
    path: str
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Any = None
    params: Optional[Mapping[str, Any]] = None
    timeout: Optional[float] = None
    authenticated: bool = True
    retried: bool = False

    def __post_init__(self):
        if not self.method:
            raise ValueError("Request method cannot be empty")
        object.__setattr__(self, 'method', self.method.upper())

    def mark_retried(self) -> 'RequestDescriptor':
        """Return the descriptor for the single permitted second attempt."""
        if self.retried:
            raise ValueError(f"{self.method} {self.path} has already been retried")
        return replace(self, retried=True)


@dataclass
class APIResponse:
    """
    Response returned by a transport call.

    `content` holds the raw body. `text` is its decoded form for textual
    content types and is empty for binary bodies.
    """
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    data: Any = None
    text: str = ""
    content: bytes = b""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def error_detail(self) -> str:
        """Extract a human-readable error message from the body."""
        if isinstance(self.data, dict):
            for key in ('message', 'detail', 'error'):
                value = self.data.get(key)
                if value:
                    return str(value)
        return self.text[:200] if self.text else 'An unexpected error occurred.'


@dataclass
class Product:
    """A product exposed by the product resource API."""
    id: str
    name: str
    description: str = ""
    price: float = 0.0
    image_url: str = ""
    category: str = ""
    in_stock: bool = True
    rating: float = 0.0
    review_count: int = 0

    def __post_init__(self):
        if not self.id:
            raise ValueError("Product ID cannot be empty")

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> 'Product':
        return cls(
            id=str(data['id']),
            name=data.get('name', ''),
            description=data.get('description', ''),
            price=float(data.get('price', 0.0)),
            image_url=data.get('imageUrl', ''),
            category=data.get('category', ''),
            in_stock=bool(data.get('inStock', True)),
            rating=float(data.get('rating', 0.0)),
            review_count=int(data.get('reviewCount', 0))
        )


@dataclass
class ProductListResponse:
    """One page of products."""
    products: List[Product]
    total: int
    page: int
    limit: int

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> 'ProductListResponse':
        return cls(
            products=[Product.from_api(item) for item in data.get('products', [])],
            total=int(data.get('total', 0)),
            page=int(data.get('page', 1)),
            limit=int(data.get('limit', 0))
        )

    @property
    def has_next_page(self) -> bool:
        if self.limit <= 0:
            return False
        return self.page * self.limit < self.total


@dataclass
class CreateProductRequest:
    """Payload for creating a product."""
    name: str
    description: str
    price: float
    category: str

    def __post_init__(self):
        if not self.name:
            raise ValueError("Product name cannot be empty")
        if self.price < 0:
            raise ValueError("Product price cannot be negative")

    def to_api(self) -> Dict[str, Any]:
        return asdict(self)
