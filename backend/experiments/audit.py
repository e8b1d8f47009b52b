"""Append-only audit trail for test status changes and rotation outcomes."""

from __future__ import annotations

import uuid
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import AuditLog

logger = structlog.get_logger()


def record_audit(
    db: AsyncSession,
    *,
    shop: str,
    action: str,
    test_id: uuid.UUID | None = None,
    actor: str | None = None,
    details: dict[str, Any] | None = None,
) -> AuditLog:
    """Stage an audit row on the caller's session; the caller owns the commit."""
    row = AuditLog(
        shop=shop,
        test_id=test_id,
        action=action,
        actor=actor,
        details=details or {},
    )
    db.add(row)
    logger.info("audit.recorded", action=action, shop=shop, test_id=str(test_id) if test_id else None)
    return row
