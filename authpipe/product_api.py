"""
Product resource API for authpipe.

Typed wrappers for the product endpoints, built on the authenticated
request pipeline.
"""

import logging
from dataclasses import fields
from typing import Any, Dict
from urllib.parse import quote

from authpipe.api_client import AuthenticatedAPIClient
from authpipe.shared.exceptions import UnclassifiedRequestError
from authpipe.shared.models import APIResponse, Product, ProductListResponse, CreateProductRequest

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = frozenset(f.name for f in fields(CreateProductRequest))


class ProductAPI:
    """Client for the /products resource."""

    def __init__(self, client: AuthenticatedAPIClient):
        self.client = client

    async def get_products(self, page: int = 1, limit: int = 20) -> ProductListResponse:
        """
        Get one page of products.

        Args:
            page: 1-based page number
            limit: Page size

        Returns:
            ProductListResponse for the requested page
        """
        if page < 1 or limit < 1:
            raise ValueError("page and limit must be positive")

        response = await self.client.get('/products', params={'page': page, 'limit': limit})
        return ProductListResponse.from_api(self._json_object(response))

    async def get_product(self, product_id: str) -> Product:
        response = await self.client.get(f'/products/{quote(str(product_id), safe="")}')
        return Product.from_api(self._json_object(response))

    async def create_product(self, request: CreateProductRequest) -> Product:
        """
        Create a product.

        Args:
            request: Validated creation payload

        Returns:
            The created product as returned by the server
        """
        response = await self.client.post('/products', data=request.to_api())
        product = Product.from_api(self._json_object(response))
        logger.info(f"Created product {product.id}")
        return product

    async def update_product(self, product_id: str, **changes: Any) -> Product:
        """
        Update some fields of a product.

        Args:
            product_id: ID of the product to update
            **changes: Subset of name, description, price, category

        Returns:
            The updated product
        """
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown product fields: {', '.join(sorted(unknown))}")
        if not changes:
            raise ValueError("No product fields to update")

        response = await self.client.put(f'/products/{quote(str(product_id), safe="")}', data=changes)
        return Product.from_api(self._json_object(response))

    async def delete_product(self, product_id: str) -> None:
        await self.client.delete(f'/products/{quote(str(product_id), safe="")}')
        logger.info(f"Deleted product {product_id}")

    async def search_products(self, query: str) -> ProductListResponse:
        """Search products by free-text query."""
        response = await self.client.get('/products/search', params={'q': query})
        return ProductListResponse.from_api(self._json_object(response))

    @staticmethod
    def _json_object(response: APIResponse) -> Dict[str, Any]:
        """Return the decoded JSON object body of a successful response."""
        if not isinstance(response.data, dict):
            raise UnclassifiedRequestError(
                "Expected a JSON object in the response body",
                status=response.status,
                detail=response.text[:200] if response.text else None
            )
        return response.data
