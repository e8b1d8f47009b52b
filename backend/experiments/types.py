"""
Domain vocabulary shared by the binder, rotation engine, ingest and statistics.

Two label systems coexist on purpose:
  - ActiveCase (BASE/TEST) and the A/B variant tag live on the test itself.
  - RotationVariant (CONTROL/TEST) lives on rotation slots, so one slot can
    serve successive tests whose variant records are labelled differently.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError


class ABTestStatus(str, Enum):
    DRAFT = "DRAFT"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    ARCHIVED = "ARCHIVED"

    @classmethod
    def parse(cls, value: str) -> "ABTestStatus":
        """Accept the legacy ACTIVE alias for RUNNING."""
        normalized = value.strip().upper()
        if normalized == "ACTIVE":
            return cls.RUNNING
        return cls(normalized)


LIVE_STATUSES = (ABTestStatus.RUNNING, ABTestStatus.PAUSED)


class ActiveCase(str, Enum):
    BASE = "BASE"
    TEST = "TEST"

    def toggled(self) -> "ActiveCase":
        return ActiveCase.TEST if self is ActiveCase.BASE else ActiveCase.BASE


class VariantTag(str, Enum):
    A = "A"  # control / BASE images
    B = "B"  # challenger / TEST images


class VariantScope(str, Enum):
    PRODUCT = "PRODUCT"
    VARIANT = "VARIANT"


class RotationVariant(str, Enum):
    CONTROL = "CONTROL"
    TEST = "TEST"


class RotationTrigger(str, Enum):
    MANUAL = "MANUAL"
    CRON = "CRON"
    SYSTEM = "SYSTEM"


class SlotStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class EventType(str, Enum):
    IMPRESSION = "IMPRESSION"
    ADD_TO_CART = "ADD_TO_CART"
    PURCHASE = "PURCHASE"


class EventSource(str, Enum):
    PIXEL = "pixel"
    WEBHOOK = "webhook"
    STOREFRONT = "storefront"
    SYSTEM = "system"


# ── Label mapping ──────────────────────────────────────────────────────────

CASE_TO_TAG = {ActiveCase.BASE: VariantTag.A, ActiveCase.TEST: VariantTag.B}
TAG_TO_CASE = {tag: case for case, tag in CASE_TO_TAG.items()}
CASE_TO_ROTATION = {ActiveCase.BASE: RotationVariant.CONTROL, ActiveCase.TEST: RotationVariant.TEST}
ROTATION_TO_CASE = {rv: case for case, rv in CASE_TO_ROTATION.items()}


def parse_declared_variant(value: str | None) -> VariantTag | None:
    """
    Storefront scripts declare a variant as A/B or BASE/TEST (any case).
    Anything else is treated as undeclared.
    """
    if not value or not isinstance(value, str):
        return None
    normalized = value.strip().upper()
    if normalized in ("A", "B"):
        return VariantTag(normalized)
    if normalized in ("BASE", "CONTROL"):
        return VariantTag.A
    if normalized == "TEST":
        return VariantTag.B
    return None


# ── Event metadata ─────────────────────────────────────────────────────────


_KNOWN_METADATA_KEYS = {
    "orderId", "order_id", "orderNumber", "order_number", "source",
    "enrichedByWebhook", "enriched_by_webhook", "webhookReceivedAt",
    "webhook_received_at", "lineItemCount", "line_item_count", "retroactive", "extra",
}

_ID_METADATA_KEYS = {"orderId", "order_id", "orderNumber", "order_number"}


class EventMetadata(BaseModel):
    """
    Typed view of the JSON metadata stored on an event.

    The dedup/enrichment path only reads the named fields; anything else a
    caller sends is kept verbatim in ``extra``.
    """

    model_config = ConfigDict(populate_by_name=True)

    order_id: str | None = Field(default=None, alias="orderId")
    order_number: str | None = Field(default=None, alias="orderNumber")
    source: EventSource | None = None
    enriched_by_webhook: bool = Field(default=False, alias="enrichedByWebhook")
    webhook_received_at: str | None = Field(default=None, alias="webhookReceivedAt")
    line_item_count: int | None = Field(default=None, alias="lineItemCount")
    retroactive: bool = False
    extra: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_raw(cls, raw: dict[str, Any] | None) -> "EventMetadata":
        """
        Lenient parse of client or stored metadata.

        Numeric order ids and numbers are stringified. A named field whose value
        does not validate is moved to ``extra`` rather than failing the event.
        """
        raw = dict(raw or {})
        stored_extra = raw.get("extra")
        extra = dict(stored_extra) if isinstance(stored_extra, dict) else {}
        if stored_extra is not None and not isinstance(stored_extra, dict):
            extra["extra"] = stored_extra
        extra.update({k: v for k, v in raw.items() if k not in _KNOWN_METADATA_KEYS})

        clean: dict[str, Any] = {}
        for key, value in raw.items():
            if key not in _KNOWN_METADATA_KEYS or key == "extra" or value is None:
                continue
            if key in _ID_METADATA_KEYS and isinstance(value, (int, float)) and not isinstance(value, bool):
                value = str(value)
            try:
                cls.model_validate({key: value})
            except PydanticValidationError:
                extra[key] = value
                continue
            clean[key] = value
        return cls(**clean, extra=extra)

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")
