"""Shared test doubles and fixture data."""

from integrations.base import MediaProvider, MediaSwapAdapter, SwapResult, SwapStatus

SHOP = "test-shop.myshopify.com"
PRODUCT_ID = "gid://shopify/Product/1001"
BASE_IMAGES = ["https://cdn.example.com/base-1.jpg", "https://cdn.example.com/base-2.jpg"]
TEST_IMAGES = ["https://cdn.example.com/model-1.jpg", "https://cdn.example.com/model-2.jpg"]


class FakeMediaAdapter(MediaSwapAdapter):
    """Records every swap; can be told to fail or to run a hook mid-swap."""

    @property
    def provider(self) -> MediaProvider:
        return MediaProvider.SHOPIFY

    def __init__(self, shop: str = SHOP):
        super().__init__(shop, {})
        self.calls: list[tuple[str, str | None, list[str]]] = []
        self.fail_on_call: set[int] = set()
        self.on_swap = None

    @property
    def published(self) -> list[list[str]]:
        return [images for _, _, images in self.calls]

    async def test_connection(self) -> bool:
        return True

    async def swap_product_media(self, product_id, shopify_variant_id, image_set):
        self.calls.append((product_id, shopify_variant_id, list(image_set)))
        if self.on_swap is not None:
            hook, self.on_swap = self.on_swap, None
            await hook()
        if len(self.calls) in self.fail_on_call:
            return SwapResult.failure(product_id, shopify_variant_id, "Shopify API unavailable")
        return SwapResult(
            status=SwapStatus.SUCCESS,
            product_id=product_id,
            shopify_variant_id=shopify_variant_id,
            images_published=len(image_set),
        )


class SequenceRandom:
    """Deterministic random source returning the given values in order, cycling."""

    def __init__(self, values):
        self.values = list(values)
        self.index = 0

    def random(self) -> float:
        value = self.values[self.index % len(self.values)]
        self.index += 1
        return value
