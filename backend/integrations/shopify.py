"""
Shopify Admin GraphQL Media Adapter

Publishes control/test image sets on a product for the rotation engine.
Uses the offline Admin API token stored (encrypted) on the shops table.

Product-wide swaps replace the whole gallery (delete all, then create in order),
so re-sending the same set converges on the same gallery. Product-variant swaps
reuse an already uploaded hero when its marker alt text matches.
"""

import hashlib
from typing import Any

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.config import get_settings
from core.security import decrypt
from db.models import Shop
from integrations.base import MediaProvider, MediaSwapAdapter, SwapResult, SwapStatus, register_adapter

PRODUCT_GID_PREFIX = "gid://shopify/Product/"
VARIANT_GID_PREFIX = "gid://shopify/ProductVariant/"

PRODUCT_MEDIA_QUERY = """
query ProductMedia($productId: ID!) {
  product(id: $productId) {
    id
    media(first: 250) {
      nodes {
        ... on MediaImage { id alt }
      }
    }
  }
}
"""

DELETE_MEDIA_MUTATION = """
mutation DeleteProductMedia($productId: ID!, $mediaIds: [ID!]!) {
  productDeleteMedia(productId: $productId, mediaIds: $mediaIds) {
    deletedMediaIds
    mediaUserErrors { field message }
  }
}
"""

CREATE_MEDIA_MUTATION = """
mutation CreateProductMedia($productId: ID!, $media: [CreateMediaInput!]!) {
  productCreateMedia(productId: $productId, media: $media) {
    media { ... on MediaImage { id } }
    mediaUserErrors { field message }
  }
}
"""

ATTACH_VARIANT_MEDIA_MUTATION = """
mutation AttachVariantMedia($productId: ID!, $variants: [ProductVariantsBulkInput!]!) {
  productVariantsBulkUpdate(productId: $productId, variants: $variants) {
    userErrors { field message }
  }
}
"""

SHOP_QUERY = "query { shop { id } }"


class ShopifyGraphQLError(RuntimeError):
    """Shopify accepted the request but reported user/top-level errors."""


def normalize_product_id(product_id: str | int | None) -> str | None:
    """Numeric ids become Product GIDs; anything else passes through."""
    if product_id is None or product_id == "":
        return None
    value = str(product_id).strip()
    if value.startswith(PRODUCT_GID_PREFIX):
        return value
    if value.isdigit():
        return f"{PRODUCT_GID_PREFIX}{value}"
    return value


def normalize_variant_id(variant_id: str | int | None) -> str | None:
    """Numeric ids become ProductVariant GIDs; anything else passes through."""
    if variant_id is None or variant_id == "":
        return None
    value = str(variant_id).strip()
    if value.startswith(VARIANT_GID_PREFIX):
        return value
    if value.isdigit():
        return f"{VARIANT_GID_PREFIX}{value}"
    return value


def _hero_marker(url: str) -> str:
    return f"modelswap-hero:{hashlib.sha1(url.encode()).hexdigest()[:16]}"


def _first_error(errors: list[dict] | None) -> str | None:
    if not errors:
        return None
    return "; ".join(str(err.get("message", err)) for err in errors)


@register_adapter
class ShopifyMediaAdapter(MediaSwapAdapter):
    """Shopify Admin API connector for product media rotation."""

    @property
    def provider(self) -> MediaProvider:
        return MediaProvider.SHOPIFY

    def __init__(self, shop: str, config: dict[str, Any]):
        super().__init__(shop, config)
        api_version = config.get("api_version") or get_settings().shopify_api_version
        self.endpoint = f"https://{shop}/admin/api/{api_version}/graphql.json"
        self.headers = {
            "Content-Type": "application/json",
            "X-Shopify-Access-Token": config["access_token"],
        }
        self.timeout = float(config.get("timeout_seconds", 20.0))

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=1, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _graphql(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                self.endpoint,
                headers=self.headers,
                json={"query": query, "variables": variables or {}},
            )
            response.raise_for_status()
            body = response.json()
        if body.get("errors"):
            raise ShopifyGraphQLError(_first_error(body["errors"]) or "GraphQL error")
        return body.get("data") or {}

    async def test_connection(self) -> bool:
        try:
            data = await self._graphql(SHOP_QUERY)
        except (httpx.HTTPError, ShopifyGraphQLError) as exc:
            self.logger.warning("shopify.connection_failed", error=str(exc))
            return False
        return bool(data.get("shop"))

    async def _current_media(self, product_id: str) -> list[dict[str, Any]]:
        data = await self._graphql(PRODUCT_MEDIA_QUERY, {"productId": product_id})
        product = data.get("product") or {}
        return [node for node in (product.get("media") or {}).get("nodes", []) if node.get("id")]

    async def _create_media(self, product_id: str, media: list[dict[str, Any]]) -> list[str]:
        data = await self._graphql(CREATE_MEDIA_MUTATION, {"productId": product_id, "media": media})
        payload = data.get("productCreateMedia") or {}
        error = _first_error(payload.get("mediaUserErrors"))
        if error:
            raise ShopifyGraphQLError(f"Failed to upload media: {error}")
        return [node["id"] for node in payload.get("media") or [] if node and node.get("id")]

    async def _replace_gallery(self, product_id: str, image_set: list[str]) -> int:
        existing = await self._current_media(product_id)
        if existing:
            data = await self._graphql(
                DELETE_MEDIA_MUTATION,
                {"productId": product_id, "mediaIds": [node["id"] for node in existing]},
            )
            error = _first_error((data.get("productDeleteMedia") or {}).get("mediaUserErrors"))
            if error:
                raise ShopifyGraphQLError(f"Failed to delete media: {error}")

        created = await self._create_media(
            product_id,
            [{"originalSource": url, "mediaContentType": "IMAGE", "alt": ""} for url in image_set],
        )
        if len(created) != len(image_set):
            raise ShopifyGraphQLError(f"Uploaded {len(created)} of {len(image_set)} images")
        return len(created)

    async def _replace_variant_hero(self, product_id: str, variant_id: str, hero_url: str) -> int:
        marker = _hero_marker(hero_url)
        existing = await self._current_media(product_id)
        media_id = next((node["id"] for node in existing if node.get("alt") == marker), None)
        if media_id is None:
            created = await self._create_media(
                product_id,
                [{"originalSource": hero_url, "mediaContentType": "IMAGE", "alt": marker}],
            )
            if not created:
                raise ShopifyGraphQLError("No media ID returned from upload")
            media_id = created[0]

        data = await self._graphql(
            ATTACH_VARIANT_MEDIA_MUTATION,
            {"productId": product_id, "variants": [{"id": variant_id, "mediaId": media_id}]},
        )
        error = _first_error((data.get("productVariantsBulkUpdate") or {}).get("userErrors"))
        if error:
            raise ShopifyGraphQLError(f"Failed to attach media to variant: {error}")
        return 1

    async def swap_product_media(
        self,
        product_id: str,
        shopify_variant_id: str | None,
        image_set: list[str],
    ) -> SwapResult:
        product_gid = normalize_product_id(product_id)
        variant_gid = normalize_variant_id(shopify_variant_id)
        if not image_set:
            return SwapResult.failure(product_id, shopify_variant_id, "No media defined for target variant")

        try:
            if variant_gid:
                published = await self._replace_variant_hero(product_gid, variant_gid, image_set[0])
            else:
                published = await self._replace_gallery(product_gid, image_set)
        except (httpx.HTTPError, ShopifyGraphQLError) as exc:
            self.logger.error(
                "shopify.swap_failed",
                product_id=product_gid,
                shopify_variant_id=variant_gid,
                error=str(exc),
            )
            return SwapResult.failure(product_id, shopify_variant_id, str(exc))

        self.logger.info(
            "shopify.swap_complete",
            product_id=product_gid,
            shopify_variant_id=variant_gid,
            images_published=published,
        )
        return SwapResult(
            status=SwapStatus.SUCCESS,
            product_id=product_id,
            shopify_variant_id=shopify_variant_id,
            images_published=published,
        )


async def load_shop_adapter(db: AsyncSession, shop: str) -> ShopifyMediaAdapter:
    """Build an adapter from the shop's stored offline token."""
    result = await db.execute(select(Shop).where(Shop.shop_domain == shop))
    record = result.scalar_one_or_none()
    if record is None or not record.access_token_encrypted or record.status != "installed":
        raise LookupError(f"No stored access token for shop {shop}")
    return ShopifyMediaAdapter(shop=shop, config={"access_token": decrypt(record.access_token_encrypted)})
