"""
Commerce platform adapters package.

The rotation engine publishes control/test image sets through a
MediaSwapAdapter so the state machine stays platform-agnostic.

Usage:
    from integrations.base import get_adapter, MediaProvider

    adapter = get_adapter(
        provider=MediaProvider.SHOPIFY,
        shop="example.myshopify.com",
        config={"access_token": "..."},
    )
    result = await adapter.swap_product_media(product_id, None, image_urls)
"""

from integrations.base import (
    MediaProvider,
    MediaSwapAdapter,
    SwapResult,
    SwapStatus,
    get_adapter,
    register_adapter,
)
from integrations.shopify import ShopifyMediaAdapter

__all__ = [
    "MediaProvider",
    "MediaSwapAdapter",
    "SwapResult",
    "SwapStatus",
    "get_adapter",
    "register_adapter",
    "ShopifyMediaAdapter",
]
