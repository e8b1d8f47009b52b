"""
ModelSwap Database Models

8 tables for server-side product image A/B testing.
Scoped per shop domain on every table.

Tables:
  1. shops              - Installed shops + encrypted Admin API tokens
  2. ab_tests           - Experiments (status machine, current case, rotation schedule)
  3. ab_test_variants   - A/B image sets, optionally scoped to one product-variant
  4. rotation_slots     - Durable "what is displayed" per (shop, product, product-variant)
  5. rotation_history   - Slot switch timeline for point-in-time attribution
  6. ab_test_events     - Impressions / add-to-carts / purchases (deduplicated)
  7. rotation_events    - Append-only rotation attempt log per test
  8. audit_logs         - Status changes and admin actions
"""

import json
import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    types,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value) if isinstance(value, uuid.UUID) else value

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


# Alias so Column(UUID(as_uuid=True)) calls read like the PostgreSQL type
def UUID(as_uuid=True):
    return GUID()


from sqlalchemy.orm import relationship

from db.session import Base

# Slot / variant-group key used where shopify_variant_id is NULL (product-wide).
PRODUCT_WIDE_SCOPE = "*"


def scope_key_for(shopify_variant_id: str | None) -> str:
    return shopify_variant_id or PRODUCT_WIDE_SCOPE


# ─── 1. Shops ───────────────────────────────────────────────────────────────


class Shop(Base):
    __tablename__ = "shops"

    shop_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    shop_domain = Column(String(255), nullable=False, unique=True)
    access_token_encrypted = Column(Text)
    status = Column(String(20), nullable=False, default="installed")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (CheckConstraint("status IN ('installed', 'uninstalled')", name="ck_shop_status"),)


# ─── 2. A/B Tests ───────────────────────────────────────────────────────────


class ABTest(Base):
    __tablename__ = "ab_tests"

    test_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    shop = Column(String(255), nullable=False)
    product_id = Column(String(255), nullable=False)
    name = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, default="DRAFT")
    current_case = Column(String(10), nullable=False, default="BASE")
    traffic_split = Column(Integer, nullable=False, default=50)  # % of sessions to A/BASE
    rotation_hours = Column(Float, nullable=True)  # NULL = manual rotation only
    variant_scope = Column(String(10), nullable=False, default="PRODUCT")
    next_rotation_at = Column(DateTime)
    last_rotation_at = Column(DateTime)
    start_date = Column(DateTime)
    end_date = Column(DateTime)

    # Concurrency control for rotations: CAS on version + time-boxed lease
    version = Column(Integer, nullable=False, default=0)
    rotation_lease_until = Column(DateTime)
    # "<shop>|<product_id>" while RUNNING/PAUSED, NULL otherwise
    live_product_key = Column(String(600), unique=True)

    created_by = Column(String(255))
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_ab_tests_shop_product", "shop", "product_id"),
        Index("ix_ab_tests_due", "status", "next_rotation_at"),
        CheckConstraint(
            "status IN ('DRAFT', 'RUNNING', 'PAUSED', 'COMPLETED', 'ARCHIVED')",
            name="ck_ab_test_status",
        ),
        CheckConstraint("current_case IN ('BASE', 'TEST')", name="ck_ab_test_current_case"),
        CheckConstraint("traffic_split >= 0 AND traffic_split <= 100", name="ck_ab_test_traffic_split_range"),
        CheckConstraint("rotation_hours IS NULL OR rotation_hours > 0", name="ck_ab_test_rotation_hours_positive"),
        CheckConstraint("variant_scope IN ('PRODUCT', 'VARIANT')", name="ck_ab_test_variant_scope"),
    )

    variants = relationship(
        "ABTestVariant",
        back_populates="test",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    events = relationship("ABTestEvent", back_populates="test", cascade="all, delete-orphan", passive_deletes=True)
    rotation_events = relationship(
        "RotationEvent",
        back_populates="test",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


# ─── 3. Variants (image sets) ───────────────────────────────────────────────


class ABTestVariant(Base):
    __tablename__ = "ab_test_variants"

    variant_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    test_id = Column(UUID(as_uuid=True), ForeignKey("ab_tests.test_id", ondelete="CASCADE"), nullable=False)
    variant = Column(String(1), nullable=False)  # A = BASE/control, B = TEST/challenger
    image_urls = Column(Text, nullable=False, default="[]")  # JSON-serialized ordered list
    shopify_variant_id = Column(String(255))  # NULL = product-wide
    scope_key = Column(String(255), nullable=False, default=PRODUCT_WIDE_SCOPE)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("test_id", "scope_key", "variant", name="uq_variant_per_scope"),
        Index("ix_ab_test_variants_test", "test_id"),
        CheckConstraint("variant IN ('A', 'B')", name="ck_variant_tag"),
    )

    test = relationship("ABTest", back_populates="variants")

    @property
    def image_list(self) -> list[str]:
        try:
            parsed = json.loads(self.image_urls or "[]")
        except (TypeError, ValueError):
            # Legacy rows stored a bare URL
            return [self.image_urls] if self.image_urls else []
        if isinstance(parsed, str):
            return [parsed]
        return [str(url) for url in parsed]


# ─── 4. Rotation Slots ──────────────────────────────────────────────────────


class RotationSlot(Base):
    __tablename__ = "rotation_slots"

    slot_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    shop = Column(String(255), nullable=False)
    product_id = Column(String(255), nullable=False)
    shopify_variant_id = Column(String(255))
    scope_key = Column(String(255), nullable=False, default=PRODUCT_WIDE_SCOPE)
    test_id = Column(UUID(as_uuid=True), ForeignKey("ab_tests.test_id", ondelete="SET NULL"))
    active_variant = Column(String(10), nullable=False, default="CONTROL")
    status = Column(String(10), nullable=False, default="ACTIVE")
    last_switch_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("shop", "product_id", "scope_key", name="uq_rotation_slot_scope"),
        Index("ix_rotation_slots_test", "test_id"),
        CheckConstraint("active_variant IN ('CONTROL', 'TEST')", name="ck_slot_active_variant"),
        CheckConstraint("status IN ('ACTIVE', 'INACTIVE')", name="ck_slot_status"),
    )

    history = relationship(
        "RotationHistory",
        back_populates="slot",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="RotationHistory.switched_at",
    )


# ─── 5. Rotation History ────────────────────────────────────────────────────


class RotationHistory(Base):
    __tablename__ = "rotation_history"

    history_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    slot_id = Column(UUID(as_uuid=True), ForeignKey("rotation_slots.slot_id", ondelete="CASCADE"), nullable=False)
    test_id = Column(UUID(as_uuid=True))
    switched_variant = Column(String(10), nullable=False)
    triggered_by = Column(String(10), nullable=False)
    switched_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    context = Column(JSON, default=dict)

    __table_args__ = (
        Index("ix_rotation_history_slot_time", "slot_id", "switched_at"),
        CheckConstraint("switched_variant IN ('CONTROL', 'TEST')", name="ck_history_variant"),
        CheckConstraint("triggered_by IN ('MANUAL', 'CRON', 'SYSTEM')", name="ck_history_trigger"),
    )

    slot = relationship("RotationSlot", back_populates="history")


# ─── 6. Events ──────────────────────────────────────────────────────────────


class ABTestEvent(Base):
    __tablename__ = "ab_test_events"

    event_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    shop = Column(String(255))
    test_id = Column(UUID(as_uuid=True), ForeignKey("ab_tests.test_id", ondelete="CASCADE"))
    session_id = Column(String(255), nullable=False)
    event_type = Column(String(20), nullable=False)
    variant = Column(String(1))  # A/B tag at attribution time
    active_case = Column(String(10))  # BASE/TEST
    product_id = Column(String(255), nullable=False)
    shopify_variant_id = Column(String(255))
    revenue = Column(Float)
    quantity = Column(Integer)
    order_id = Column(String(255))
    source = Column(String(20), nullable=False, default="pixel")
    # Event type, or "PURCHASE:<order_id>" for purchases correlated to an order
    dedup_key = Column(String(300), nullable=False)
    event_metadata = Column("metadata", JSON, default=dict)
    occurred_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("test_id", "session_id", "dedup_key", name="uq_event_dedup"),
        UniqueConstraint("event_type", "order_id", name="uq_event_order"),
        Index("ix_events_test_session_time", "test_id", "session_id", "occurred_at"),
        Index("ix_events_test_type", "test_id", "event_type"),
        CheckConstraint("event_type IN ('IMPRESSION', 'ADD_TO_CART', 'PURCHASE')", name="ck_event_type"),
        CheckConstraint("variant IS NULL OR variant IN ('A', 'B')", name="ck_event_variant"),
    )

    test = relationship("ABTest", back_populates="events")


# ─── 7. Rotation Events (audit trail) ───────────────────────────────────────


class RotationEvent(Base):
    __tablename__ = "rotation_events"

    rotation_event_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    test_id = Column(UUID(as_uuid=True), ForeignKey("ab_tests.test_id", ondelete="CASCADE"), nullable=False)
    from_case = Column(String(10), nullable=False)
    to_case = Column(String(10), nullable=False)
    triggered_by = Column(String(10), nullable=False)
    success = Column(Boolean, nullable=False)
    duration_ms = Column(Integer, nullable=False, default=0)
    error_message = Column(Text)
    user_id = Column(String(255))
    context = Column(JSON, default=dict)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_rotation_events_test_time", "test_id", "created_at"),
        CheckConstraint("triggered_by IN ('MANUAL', 'CRON', 'SYSTEM')", name="ck_rotation_event_trigger"),
    )

    test = relationship("ABTest", back_populates="rotation_events")


# ─── 8. Audit Log ───────────────────────────────────────────────────────────


class AuditLog(Base):
    __tablename__ = "audit_logs"

    audit_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    shop = Column(String(255), nullable=False)
    test_id = Column(UUID(as_uuid=True))  # no FK: audit rows outlive deleted tests
    action = Column(String(50), nullable=False)
    actor = Column(String(255))
    details = Column(JSON, default=dict)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (Index("ix_audit_logs_shop_time", "shop", "created_at"),)
