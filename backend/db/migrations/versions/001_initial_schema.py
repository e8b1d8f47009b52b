"""
Initial schema - 8 tables

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import UUID

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # 1. Shops
    op.create_table(
        "shops",
        sa.Column("shop_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("shop_domain", sa.String(255), nullable=False, unique=True),
        sa.Column("access_token_encrypted", sa.Text),
        sa.Column("status", sa.String(20), nullable=False, server_default="installed"),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("status IN ('installed', 'uninstalled')", name="ck_shop_status"),
    )

    # 2. A/B tests
    op.create_table(
        "ab_tests",
        sa.Column("test_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("shop", sa.String(255), nullable=False),
        sa.Column("product_id", sa.String(255), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="DRAFT"),
        sa.Column("current_case", sa.String(10), nullable=False, server_default="BASE"),
        sa.Column("traffic_split", sa.Integer, nullable=False, server_default="50"),
        sa.Column("rotation_hours", sa.Float),
        sa.Column("variant_scope", sa.String(10), nullable=False, server_default="PRODUCT"),
        sa.Column("next_rotation_at", sa.DateTime),
        sa.Column("last_rotation_at", sa.DateTime),
        sa.Column("start_date", sa.DateTime),
        sa.Column("end_date", sa.DateTime),
        sa.Column("version", sa.Integer, nullable=False, server_default="0"),
        sa.Column("rotation_lease_until", sa.DateTime),
        sa.Column("live_product_key", sa.String(600), unique=True),
        sa.Column("created_by", sa.String(255)),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            "status IN ('DRAFT', 'RUNNING', 'PAUSED', 'COMPLETED', 'ARCHIVED')",
            name="ck_ab_test_status",
        ),
        sa.CheckConstraint("current_case IN ('BASE', 'TEST')", name="ck_ab_test_current_case"),
        sa.CheckConstraint("traffic_split >= 0 AND traffic_split <= 100", name="ck_ab_test_traffic_split_range"),
        sa.CheckConstraint("rotation_hours IS NULL OR rotation_hours > 0", name="ck_ab_test_rotation_hours_positive"),
        sa.CheckConstraint("variant_scope IN ('PRODUCT', 'VARIANT')", name="ck_ab_test_variant_scope"),
    )
    op.create_index("ix_ab_tests_shop_product", "ab_tests", ["shop", "product_id"])
    op.create_index("ix_ab_tests_due", "ab_tests", ["status", "next_rotation_at"])

    # 3. Variant image sets
    op.create_table(
        "ab_test_variants",
        sa.Column("variant_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column(
            "test_id",
            UUID(as_uuid=True),
            sa.ForeignKey("ab_tests.test_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("variant", sa.String(1), nullable=False),
        sa.Column("image_urls", sa.Text, nullable=False, server_default="[]"),
        sa.Column("shopify_variant_id", sa.String(255)),
        sa.Column("scope_key", sa.String(255), nullable=False, server_default="*"),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("test_id", "scope_key", "variant", name="uq_variant_per_scope"),
        sa.CheckConstraint("variant IN ('A', 'B')", name="ck_variant_tag"),
    )
    op.create_index("ix_ab_test_variants_test", "ab_test_variants", ["test_id"])

    # 4. Rotation slots
    op.create_table(
        "rotation_slots",
        sa.Column("slot_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("shop", sa.String(255), nullable=False),
        sa.Column("product_id", sa.String(255), nullable=False),
        sa.Column("shopify_variant_id", sa.String(255)),
        sa.Column("scope_key", sa.String(255), nullable=False, server_default="*"),
        sa.Column("test_id", UUID(as_uuid=True), sa.ForeignKey("ab_tests.test_id", ondelete="SET NULL")),
        sa.Column("active_variant", sa.String(10), nullable=False, server_default="CONTROL"),
        sa.Column("status", sa.String(10), nullable=False, server_default="ACTIVE"),
        sa.Column("last_switch_at", sa.DateTime),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("shop", "product_id", "scope_key", name="uq_rotation_slot_scope"),
        sa.CheckConstraint("active_variant IN ('CONTROL', 'TEST')", name="ck_slot_active_variant"),
        sa.CheckConstraint("status IN ('ACTIVE', 'INACTIVE')", name="ck_slot_status"),
    )
    op.create_index("ix_rotation_slots_test", "rotation_slots", ["test_id"])

    # 5. Rotation history
    op.create_table(
        "rotation_history",
        sa.Column("history_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column(
            "slot_id",
            UUID(as_uuid=True),
            sa.ForeignKey("rotation_slots.slot_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("test_id", UUID(as_uuid=True)),
        sa.Column("switched_variant", sa.String(10), nullable=False),
        sa.Column("triggered_by", sa.String(10), nullable=False),
        sa.Column("switched_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("context", sa.JSON),
        sa.CheckConstraint("switched_variant IN ('CONTROL', 'TEST')", name="ck_history_variant"),
        sa.CheckConstraint("triggered_by IN ('MANUAL', 'CRON', 'SYSTEM')", name="ck_history_trigger"),
    )
    op.create_index("ix_rotation_history_slot_time", "rotation_history", ["slot_id", "switched_at"])

    # 6. Events
    op.create_table(
        "ab_test_events",
        sa.Column("event_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("shop", sa.String(255)),
        sa.Column("test_id", UUID(as_uuid=True), sa.ForeignKey("ab_tests.test_id", ondelete="CASCADE")),
        sa.Column("session_id", sa.String(255), nullable=False),
        sa.Column("event_type", sa.String(20), nullable=False),
        sa.Column("variant", sa.String(1)),
        sa.Column("active_case", sa.String(10)),
        sa.Column("product_id", sa.String(255), nullable=False),
        sa.Column("shopify_variant_id", sa.String(255)),
        sa.Column("revenue", sa.Float),
        sa.Column("quantity", sa.Integer),
        sa.Column("order_id", sa.String(255)),
        sa.Column("source", sa.String(20), nullable=False, server_default="pixel"),
        sa.Column("dedup_key", sa.String(300), nullable=False),
        sa.Column("metadata", sa.JSON),
        sa.Column("occurred_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("test_id", "session_id", "dedup_key", name="uq_event_dedup"),
        sa.UniqueConstraint("event_type", "order_id", name="uq_event_order"),
        sa.CheckConstraint("event_type IN ('IMPRESSION', 'ADD_TO_CART', 'PURCHASE')", name="ck_event_type"),
        sa.CheckConstraint("variant IS NULL OR variant IN ('A', 'B')", name="ck_event_variant"),
    )
    op.create_index("ix_events_test_session_time", "ab_test_events", ["test_id", "session_id", "occurred_at"])
    op.create_index("ix_events_test_type", "ab_test_events", ["test_id", "event_type"])

    # 7. Rotation attempt log
    op.create_table(
        "rotation_events",
        sa.Column(
            "rotation_event_id",
            UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column(
            "test_id",
            UUID(as_uuid=True),
            sa.ForeignKey("ab_tests.test_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("from_case", sa.String(10), nullable=False),
        sa.Column("to_case", sa.String(10), nullable=False),
        sa.Column("triggered_by", sa.String(10), nullable=False),
        sa.Column("success", sa.Boolean, nullable=False),
        sa.Column("duration_ms", sa.Integer, nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text),
        sa.Column("user_id", sa.String(255)),
        sa.Column("context", sa.JSON),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("triggered_by IN ('MANUAL', 'CRON', 'SYSTEM')", name="ck_rotation_event_trigger"),
    )
    op.create_index("ix_rotation_events_test_time", "rotation_events", ["test_id", "created_at"])

    # 8. Audit log
    op.create_table(
        "audit_logs",
        sa.Column("audit_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("shop", sa.String(255), nullable=False),
        sa.Column("test_id", UUID(as_uuid=True)),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("actor", sa.String(255)),
        sa.Column("details", sa.JSON),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_audit_logs_shop_time", "audit_logs", ["shop", "created_at"])


def downgrade() -> None:
    tables = [
        "audit_logs",
        "rotation_events",
        "ab_test_events",
        "rotation_history",
        "rotation_slots",
        "ab_test_variants",
        "ab_tests",
        "shops",
    ]
    for table in tables:
        op.drop_table(table)
