"""
Rotation Scheduler — rotates every RUNNING test whose next_rotation_at has passed.

Shared by the Celery beat sweep and the HTTP cron ingress. Each due test is
rotated in its own session with triggered_by=CRON; one failing test never blocks
or rolls back the others. A test another caller already rotated in this window
loses the lease CAS and is reported as skipped.

Schedule: crontab(minute="*/<rotation_sweep_minutes>")
Queue: rotation
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from db.models import ABTest
from experiments.errors import ABTestError, InvalidTransitionError, RotationConflictError
from experiments.rotation import AdapterFactory, RotationEngine
from experiments.types import ABTestStatus, RotationTrigger
from workers.celery_app import celery_app

logger = structlog.get_logger()


async def find_due_tests(db: AsyncSession, now: datetime | None = None) -> list[ABTest]:
    now = now or datetime.utcnow()
    result = await db.execute(
        select(ABTest)
        .where(
            ABTest.status == ABTestStatus.RUNNING.value,
            ABTest.rotation_hours.is_not(None),
            ABTest.next_rotation_at.is_not(None),
            ABTest.next_rotation_at <= now,
        )
        .order_by(ABTest.next_rotation_at)
    )
    return list(result.scalars().all())


async def run_due_rotations(
    session_factory: async_sessionmaker,
    adapter_factory: AdapterFactory,
    *,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Rotate every due test; returns {processed, successful, failed, skipped, durationMs, results}."""
    now = now or datetime.utcnow()
    started = time.perf_counter()

    async with session_factory() as db:
        due = [(test.test_id, test.product_id) for test in await find_due_tests(db, now)]

    results: list[dict[str, Any]] = []
    for test_id, product_id in due:
        entry: dict[str, Any] = {"testId": str(test_id), "productId": product_id}
        async with session_factory() as db:
            engine = RotationEngine(db, adapter_factory)
            try:
                outcome = await engine.rotate(test_id, triggered_by=RotationTrigger.CRON, now=now)
            except (RotationConflictError, InvalidTransitionError) as exc:
                entry.update(status="skipped", error=str(exc))
            except ABTestError as exc:
                entry.update(status="failed", error=str(exc))
                logger.error("scheduler.rotation_failed", test_id=str(test_id), error=str(exc))
            except Exception as exc:  # noqa: BLE001
                entry.update(status="failed", error=str(exc))
                logger.error("scheduler.rotation_crashed", test_id=str(test_id), error=str(exc), exc_info=True)
            else:
                entry.update(
                    status="success",
                    fromCase=outcome.from_case.value,
                    toCase=outcome.to_case.value,
                    nextRotationAt=outcome.next_rotation_at.isoformat() if outcome.next_rotation_at else None,
                )
        results.append(entry)

    summary = {
        "processed": len(results),
        "successful": sum(1 for r in results if r["status"] == "success"),
        "failed": sum(1 for r in results if r["status"] == "failed"),
        "skipped": sum(1 for r in results if r["status"] == "skipped"),
        "durationMs": int((time.perf_counter() - started) * 1000),
        "results": results,
    }
    logger.info(
        "scheduler.sweep_complete",
        processed=summary["processed"],
        successful=summary["successful"],
        failed=summary["failed"],
        skipped=summary["skipped"],
    )
    return summary


@celery_app.task(
    name="workers.rotation.rotate_due_tests",
    bind=True,
    max_retries=2,
    default_retry_delay=60,
    acks_late=True,
)
def rotate_due_tests(self):
    """Beat entry point: one sweep over all due tests."""
    run_id = self.request.id or "manual"

    async def _sweep():
        from core.config import get_settings
        from db.session import build_engine, build_session_factory
        from integrations.shopify import load_shop_adapter

        engine = build_engine(get_settings().database_url)
        try:
            session_factory = build_session_factory(engine)
            summary = await run_due_rotations(session_factory, load_shop_adapter)
            summary["run_id"] = run_id
            summary["triggered_at"] = datetime.now(timezone.utc).isoformat()
            return summary
        finally:
            await engine.dispose()

    try:
        return asyncio.run(_sweep())
    except Exception as exc:  # noqa: BLE001
        logger.error("scheduler.sweep_failed", run_id=run_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)
