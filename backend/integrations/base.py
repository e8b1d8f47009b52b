"""
Commerce Platform Media Adapter — Abstract Base Class

The rotation engine never talks to a storefront platform directly. It asks an
adapter to make a product (or one product-variant) display a given ordered image
set, and treats anything other than a clean success as a failed swap.

Adapters must be idempotent from the caller's point of view: re-sending the same
image set leaves the product showing exactly that set, never duplicates.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

import structlog

logger = structlog.get_logger()


class MediaProvider(str, Enum):
    """Supported commerce platforms."""

    SHOPIFY = "shopify"


class SwapStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class SwapResult:
    """Standardized return from every adapter swap."""

    status: SwapStatus
    product_id: str
    shopify_variant_id: str | None = None
    images_published: int = 0
    error: str | None = None
    context: dict[str, Any] = field(default_factory=dict)
    completed_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def ok(self) -> bool:
        return self.status == SwapStatus.SUCCESS

    @classmethod
    def failure(cls, product_id: str, shopify_variant_id: str | None, error: str) -> "SwapResult":
        return cls(
            status=SwapStatus.FAILED,
            product_id=product_id,
            shopify_variant_id=shopify_variant_id,
            error=error,
        )


class MediaSwapAdapter(ABC):
    """
    Base class for storefront media connectors.

    Lifecycle:
        1. __init__(shop, config)   — credentials / API version
        2. test_connection()        — validate connectivity
        3. swap_product_media()     — publish an image set (rotation, pause, complete)
    """

    def __init__(self, shop: str, config: dict[str, Any]):
        self.shop = shop
        self.config = config
        self.logger = logger.bind(provider=self.provider.value, shop=shop)

    @property
    @abstractmethod
    def provider(self) -> MediaProvider:
        """Return the platform this adapter handles."""
        ...

    @abstractmethod
    async def test_connection(self) -> bool:
        """Validate that the adapter can reach the platform."""
        ...

    @abstractmethod
    async def swap_product_media(
        self,
        product_id: str,
        shopify_variant_id: str | None,
        image_set: list[str],
    ) -> SwapResult:
        """
        Make ``product_id`` display ``image_set`` in order. With a
        ``shopify_variant_id`` only that product-variant's image is replaced.
        """
        ...


# ── Adapter registry ──────────────────────────────────────────────────────

_ADAPTER_REGISTRY: dict[MediaProvider, type[MediaSwapAdapter]] = {}


def register_adapter(adapter_cls: type[MediaSwapAdapter]):
    """Decorator: register an adapter class for its provider."""
    _ADAPTER_REGISTRY[adapter_cls.provider.fget(None)] = adapter_cls  # type: ignore
    return adapter_cls


def get_adapter(provider: MediaProvider, shop: str, config: dict[str, Any]) -> MediaSwapAdapter:
    """Factory: return the right adapter instance for the given provider."""
    adapter_cls = _ADAPTER_REGISTRY.get(provider)
    if adapter_cls is None:
        raise ValueError(f"No adapter registered for provider: {provider.value}")
    return adapter_cls(shop=shop, config=config)
