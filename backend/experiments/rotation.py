"""
Rotation Engine — A/B test state machine.

    DRAFT ──start──▶ RUNNING ──pause──▶ PAUSED ──start──▶ RUNNING
                      │  ▲                 │
                      └──┘ rotate          │
                      │                    │
                      └──────complete──────┴──▶ COMPLETED
    any non-archived ──archive──▶ ARCHIVED,   any ──delete──▶ (gone)

Every transition that changes what shoppers see (rotate, pause, complete) is
serialized per test with a compare-and-swap lease on ``ab_tests.version``:

  1. read the test at version v
  2. UPDATE ... SET version=v+1, lease=now+N WHERE version=v AND lease expired
     (rowcount 0 means another caller is mid-transition: RotationConflictError)
  3. push image sets through the media adapter, outside any DB transaction
  4. on success commit the new state with a second CAS on v+1; on failure undo
     the swaps already made, release the lease and leave the state untouched

A swap that fails still produces a RotationEvent(success=False) and an audit row.
"""

from __future__ import annotations

import json
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_settings
from db.models import ABTest, ABTestEvent, ABTestVariant, RotationEvent, RotationSlot, scope_key_for
from experiments import rotation_store
from experiments.audit import record_audit
from experiments.binder import complete_pairs, load_variants
from experiments.errors import (
    ConflictError,
    ExternalDependencyError,
    InvalidTransitionError,
    NotFoundError,
    RotationConflictError,
    ValidationError,
)
from experiments.types import (
    CASE_TO_ROTATION,
    CASE_TO_TAG,
    LIVE_STATUSES,
    ABTestStatus,
    ActiveCase,
    RotationTrigger,
    SlotStatus,
    VariantScope,
    VariantTag,
)
from integrations.base import MediaSwapAdapter, SwapResult
from integrations.shopify import normalize_product_id, normalize_variant_id

logger = structlog.get_logger()

AdapterFactory = Callable[[AsyncSession, str], Awaitable[MediaSwapAdapter]]


@dataclass
class VariantInput:
    variant: VariantTag
    image_urls: list[str]
    shopify_variant_id: str | None = None


@dataclass
class RotationOutcome:
    test_id: uuid.UUID
    from_case: ActiveCase
    to_case: ActiveCase
    triggered_by: RotationTrigger
    success: bool
    duration_ms: int
    next_rotation_at: datetime | None = None
    error: str | None = None
    swaps: list[SwapResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "testId": str(self.test_id),
            "fromCase": self.from_case.value,
            "toCase": self.to_case.value,
            "triggeredBy": self.triggered_by.value,
            "success": self.success,
            "durationMs": self.duration_ms,
            "nextRotationAt": self.next_rotation_at.isoformat() if self.next_rotation_at else None,
            "error": self.error,
        }


def live_product_key(shop: str, product_id: str) -> str:
    return f"{shop}|{product_id}"


class RotationEngine:
    """Per-request engine bound to one DB session and a media adapter factory."""

    def __init__(
        self,
        db: AsyncSession,
        adapter_factory: AdapterFactory,
        *,
        lease_minutes: int | None = None,
    ):
        self.db = db
        self.adapter_factory = adapter_factory
        self.lease = timedelta(minutes=lease_minutes or get_settings().rotation_lease_minutes)

    # ── Lookups ──────────────────────────────────────────────────────────

    async def get_test(self, test_id: uuid.UUID | str, shop: str | None = None) -> ABTest:
        try:
            key = test_id if isinstance(test_id, uuid.UUID) else uuid.UUID(str(test_id))
        except ValueError as exc:
            raise ValidationError(f"Malformed test id: {test_id}") from exc
        query = select(ABTest).where(ABTest.test_id == key).execution_options(populate_existing=True)
        if shop is not None:
            query = query.where(ABTest.shop == shop)
        result = await self.db.execute(query)
        test = result.scalar_one_or_none()
        if test is None:
            raise NotFoundError(f"A/B test {test_id} not found")
        return test

    async def find_live_test(self, shop: str, product_id: str) -> ABTest | None:
        result = await self.db.execute(
            select(ABTest).where(ABTest.live_product_key == live_product_key(shop, product_id))
        )
        return result.scalar_one_or_none()

    # ── Create / start ───────────────────────────────────────────────────

    async def create_test(
        self,
        *,
        shop: str,
        product_id: str,
        name: str,
        variants: list[VariantInput],
        traffic_split: int = 50,
        rotation_hours: float | None = None,
        variant_scope: VariantScope = VariantScope.PRODUCT,
        created_by: str | None = None,
    ) -> ABTest:
        product_gid = normalize_product_id(product_id)
        if not product_gid:
            raise ValidationError("productId is required")
        if not name or not name.strip():
            raise ValidationError("name is required")
        if not 0 <= traffic_split <= 100:
            raise ValidationError("trafficSplit must be between 0 and 100")
        if rotation_hours is not None and rotation_hours <= 0:
            raise ValidationError("rotationHours must be positive when set")

        records = self._build_variant_records(variants, variant_scope)
        if not complete_pairs(records):
            raise ValidationError("At least one complete A/B image-set pair is required")

        blocking = await self.find_live_test(shop, product_gid)
        if blocking is not None:
            raise ConflictError(
                f"Product already has a live test: {blocking.name} ({blocking.test_id})",
                blocking_id=str(blocking.test_id),
            )

        test = ABTest(
            shop=shop,
            product_id=product_gid,
            name=name.strip(),
            status=ABTestStatus.DRAFT.value,
            current_case=ActiveCase.BASE.value,
            traffic_split=traffic_split,
            rotation_hours=rotation_hours,
            variant_scope=variant_scope.value,
            created_by=created_by,
            version=0,
        )
        self.db.add(test)
        await self.db.flush()
        for record in records:
            record.test_id = test.test_id
            self.db.add(record)

        record_audit(
            self.db,
            shop=shop,
            action="test.created",
            test_id=test.test_id,
            actor=created_by,
            details={"productId": product_gid, "variantScope": variant_scope.value, "trafficSplit": traffic_split},
        )
        await self.db.commit()
        logger.info("ab_test.created", test_id=str(test.test_id), shop=shop, product_id=product_gid)
        return test

    @staticmethod
    def _build_variant_records(variants: list[VariantInput], scope: VariantScope) -> list[ABTestVariant]:
        records = []
        seen: set[tuple[str, str]] = set()
        for item in variants:
            urls = [str(url) for url in item.image_urls if url]
            if not urls:
                raise ValidationError(f"Variant {item.variant.value} has no images")
            shopify_variant_id = normalize_variant_id(item.shopify_variant_id)
            if scope is VariantScope.PRODUCT and shopify_variant_id:
                raise ValidationError("Product-scoped tests cannot target a product variant")
            if scope is VariantScope.VARIANT and not shopify_variant_id:
                raise ValidationError("Variant-scoped tests need shopifyVariantId on every image set")
            scope_key = scope_key_for(shopify_variant_id)
            if (scope_key, item.variant.value) in seen:
                raise ValidationError(f"Duplicate image set for variant {item.variant.value} on {scope_key}")
            seen.add((scope_key, item.variant.value))
            records.append(
                ABTestVariant(
                    variant=item.variant.value,
                    image_urls=json.dumps(urls),
                    shopify_variant_id=shopify_variant_id,
                    scope_key=scope_key,
                )
            )
        return records

    async def start(self, test_id: uuid.UUID | str, *, user_id: str | None = None, shop: str | None = None) -> ABTest:
        """DRAFT → RUNNING, or resume PAUSED → RUNNING from BASE."""
        test = await self.get_test(test_id, shop)
        status = ABTestStatus(test.status)
        if status not in (ABTestStatus.DRAFT, ABTestStatus.PAUSED):
            raise InvalidTransitionError(f"Cannot start a test in status {status.value}")

        pairs = complete_pairs(await load_variants(self.db, test.test_id))
        if not pairs:
            raise ValidationError("Test has no complete A/B image-set pair")

        key = live_product_key(test.shop, test.product_id)
        blocking = await self.find_live_test(test.shop, test.product_id)
        if blocking is not None and blocking.test_id != test.test_id:
            raise ConflictError(
                f"Another test is already live for this product: {blocking.name} ({blocking.test_id})",
                blocking_id=str(blocking.test_id),
            )

        now = datetime.utcnow()
        test.status = ABTestStatus.RUNNING.value
        test.current_case = ActiveCase.BASE.value
        test.live_product_key = key
        test.start_date = test.start_date or now
        test.next_rotation_at = now + timedelta(hours=test.rotation_hours) if test.rotation_hours else None
        test.rotation_lease_until = None
        test.version = (test.version or 0) + 1
        try:
            await self.db.flush()
        except IntegrityError as exc:
            await self.db.rollback()
            raise ConflictError("Another test went live for this product concurrently") from exc

        for pair in pairs.values():
            if test.variant_scope == VariantScope.PRODUCT.value and pair.shopify_variant_id:
                continue
            await rotation_store.attach_slot(
                self.db,
                test,
                pair.shopify_variant_id,
                at=now,
                triggered_by=RotationTrigger.MANUAL if user_id else RotationTrigger.SYSTEM,
            )

        record_audit(
            self.db,
            shop=test.shop,
            action="test.resumed" if status is ABTestStatus.PAUSED else "test.started",
            test_id=test.test_id,
            actor=user_id,
            details={"slots": len(pairs), "nextRotationAt": _iso(test.next_rotation_at)},
        )
        await self.db.commit()
        logger.info("ab_test.started", test_id=str(test.test_id), resumed=status is ABTestStatus.PAUSED)
        return test

    # ── Rotation ─────────────────────────────────────────────────────────

    async def rotate(
        self,
        test_id: uuid.UUID | str,
        *,
        triggered_by: RotationTrigger = RotationTrigger.MANUAL,
        user_id: str | None = None,
        expected_case: ActiveCase | None = None,
        shop: str | None = None,
        now: datetime | None = None,
    ) -> RotationOutcome:
        """
        Toggle BASE↔TEST and publish the new case's images.

        CRON rotations additionally require ``next_rotation_at <= now`` inside the
        lease CAS, so overlapping sweeps rotate a due test once.
        """
        now = now or datetime.utcnow()
        test = await self.get_test(test_id, shop)
        if test.status != ABTestStatus.RUNNING.value:
            raise InvalidTransitionError(f"Cannot rotate a test in status {test.status}")

        from_case = ActiveCase(test.current_case)
        if expected_case is not None and expected_case is not from_case:
            raise RotationConflictError(
                f"Test {test.test_id} is showing {from_case.value}, not {expected_case.value}",
                blocking_id=str(test.test_id),
            )
        to_case = from_case.toggled()

        snapshot = await self._snapshot(test)
        version = await self._acquire_lease(test, now, require_due=triggered_by is RotationTrigger.CRON)

        started = time.perf_counter()
        swaps, error = await self._swap_slots(snapshot, to_case, compensate_to=from_case)
        duration_ms = int((time.perf_counter() - started) * 1000)

        if error is not None:
            await self._fail_transition(snapshot, version, from_case, to_case, triggered_by, user_id, duration_ms, error)
            raise ExternalDependencyError(f"Media swap failed for test {snapshot.test_id}: {error}")

        next_rotation_at = now + timedelta(hours=snapshot.rotation_hours) if snapshot.rotation_hours else None
        await self._commit_transition(
            snapshot,
            version,
            values={
                "current_case": to_case.value,
                "last_rotation_at": now,
                "next_rotation_at": next_rotation_at,
            },
        )
        await self._record_switches(snapshot, to_case, triggered_by, now)
        self._log_rotation(snapshot, from_case, to_case, triggered_by, user_id, duration_ms, success=True)
        record_audit(
            self.db,
            shop=snapshot.shop,
            action="test.rotated",
            test_id=snapshot.test_id,
            actor=user_id,
            details={"from": from_case.value, "to": to_case.value, "triggeredBy": triggered_by.value},
        )
        await self.db.commit()
        await self._reload(snapshot.test_id)

        logger.info(
            "rotation.completed",
            test_id=str(snapshot.test_id),
            from_case=from_case.value,
            to_case=to_case.value,
            triggered_by=triggered_by.value,
            duration_ms=duration_ms,
        )
        return RotationOutcome(
            test_id=snapshot.test_id,
            from_case=from_case,
            to_case=to_case,
            triggered_by=triggered_by,
            success=True,
            duration_ms=duration_ms,
            next_rotation_at=next_rotation_at,
            swaps=swaps,
        )

    # ── Pause / complete / archive / delete ──────────────────────────────

    async def pause(self, test_id: uuid.UUID | str, *, user_id: str | None = None, shop: str | None = None) -> ABTest:
        """RUNNING → PAUSED; the BASE set is always re-published."""
        test = await self.get_test(test_id, shop)
        if test.status != ABTestStatus.RUNNING.value:
            raise InvalidTransitionError(f"Cannot pause a test in status {test.status}")
        return await self._restore_base_and_set(
            test,
            action="test.paused",
            user_id=user_id,
            values={"status": ABTestStatus.PAUSED.value, "next_rotation_at": None},
        )

    async def complete(
        self, test_id: uuid.UUID | str, *, user_id: str | None = None, shop: str | None = None
    ) -> ABTest:
        """RUNNING|PAUSED → COMPLETED; BASE re-published, end date set, slots released."""
        test = await self.get_test(test_id, shop)
        if ABTestStatus(test.status) not in LIVE_STATUSES:
            raise InvalidTransitionError(f"Cannot complete a test in status {test.status}")
        return await self._restore_base_and_set(
            test,
            action="test.completed",
            user_id=user_id,
            values={
                "status": ABTestStatus.COMPLETED.value,
                "end_date": datetime.utcnow(),
                "next_rotation_at": None,
                "live_product_key": None,
            },
            deactivate=True,
        )

    async def archive(self, test_id: uuid.UUID | str, *, user_id: str | None = None, shop: str | None = None) -> ABTest:
        test = await self.get_test(test_id, shop)
        status = ABTestStatus(test.status)
        if status is ABTestStatus.ARCHIVED:
            raise InvalidTransitionError("Test is already archived")
        values = {"status": ABTestStatus.ARCHIVED.value, "next_rotation_at": None, "live_product_key": None}
        if status is ABTestStatus.RUNNING:
            return await self._restore_base_and_set(
                test, action="test.archived", user_id=user_id, values=values, deactivate=True
            )

        for column, value in values.items():
            setattr(test, column, value)
        test.version = (test.version or 0) + 1
        await rotation_store.deactivate_slots(self.db, test.test_id)
        record_audit(self.db, shop=test.shop, action="test.archived", test_id=test.test_id, actor=user_id)
        await self.db.commit()
        logger.info("ab_test.archived", test_id=str(test.test_id))
        return test

    async def delete(self, test_id: uuid.UUID | str, *, user_id: str | None = None, shop: str | None = None) -> None:
        """Remove a test with its variants, events and rotation log. A RUNNING test is restored to BASE first."""
        test = await self.get_test(test_id, shop)
        if test.status == ABTestStatus.RUNNING.value:
            test = await self._restore_base_and_set(
                test,
                action="test.stopped_for_delete",
                user_id=user_id,
                values={"status": ABTestStatus.PAUSED.value, "next_rotation_at": None},
            )

        key, test_shop = test.test_id, test.shop
        await rotation_store.release_slots(self.db, key)
        await self.db.execute(delete(ABTestEvent).where(ABTestEvent.test_id == key))
        await self.db.execute(delete(RotationEvent).where(RotationEvent.test_id == key))
        await self.db.execute(delete(ABTestVariant).where(ABTestVariant.test_id == key))
        await self.db.execute(delete(ABTest).where(ABTest.test_id == key))
        record_audit(self.db, shop=test_shop, action="test.deleted", test_id=key, actor=user_id)
        await self.db.commit()
        self.db.expunge_all()
        logger.info("ab_test.deleted", test_id=str(key), shop=test_shop)

    # ── Internals ────────────────────────────────────────────────────────

    async def _snapshot(self, test: ABTest) -> "_TestSnapshot":
        pairs = complete_pairs(await load_variants(self.db, test.test_id))
        slots = [
            slot
            for slot in await rotation_store.slots_for_test(self.db, test.test_id)
            if slot.status == SlotStatus.ACTIVE.value
        ]
        targets = []
        for slot in slots:
            pair = pairs.get(slot.scope_key)
            if pair is None:
                logger.warning("rotation.slot_without_pair", test_id=str(test.test_id), scope_key=slot.scope_key)
                continue
            targets.append(
                _SlotTarget(
                    slot_id=slot.slot_id,
                    shopify_variant_id=pair.shopify_variant_id,
                    images={VariantTag.A: pair.images_for(VariantTag.A), VariantTag.B: pair.images_for(VariantTag.B)},
                )
            )
        if not targets:
            raise NotFoundError(f"Test {test.test_id} has no active rotation slot with a complete A/B pair")
        return _TestSnapshot(
            test_id=test.test_id,
            shop=test.shop,
            product_id=test.product_id,
            version=test.version or 0,
            rotation_hours=test.rotation_hours,
            current_case=ActiveCase(test.current_case),
            targets=targets,
        )

    async def _acquire_lease(self, test: ABTest, now: datetime, *, require_due: bool = False) -> int:
        """CAS the lease onto the test; returns the version the lease holder owns."""
        test_id = test.test_id
        version = test.version or 0
        stmt = (
            update(ABTest)
            .where(
                ABTest.test_id == test_id,
                ABTest.version == version,
                ABTest.status == test.status,
                or_(ABTest.rotation_lease_until.is_(None), ABTest.rotation_lease_until < now),
            )
            .values(version=version + 1, rotation_lease_until=now + self.lease)
            .execution_options(synchronize_session=False)
        )
        if require_due:
            stmt = stmt.where(ABTest.next_rotation_at.is_not(None), ABTest.next_rotation_at <= now)

        result = await self.db.execute(stmt)
        if result.rowcount != 1:
            await self.db.rollback()
            logger.info("rotation.lease_conflict", test_id=str(test_id), version=version, require_due=require_due)
            raise RotationConflictError(
                f"Test {test_id} is being transitioned by another request or is not due",
                blocking_id=str(test_id),
            )
        # The media swap runs outside any open transaction
        await self.db.commit()
        return version + 1

    async def _swap_slots(
        self,
        snapshot: "_TestSnapshot",
        case: ActiveCase,
        *,
        compensate_to: ActiveCase | None = None,
    ) -> tuple[list[SwapResult], str | None]:
        try:
            adapter = await self.adapter_factory(self.db, snapshot.shop)
        except Exception as exc:  # noqa: BLE001
            logger.error("rotation.adapter_unavailable", shop=snapshot.shop, error=str(exc), exc_info=True)
            return [], f"Media adapter unavailable: {exc}"

        tag = CASE_TO_TAG[case]
        done: list[tuple[_SlotTarget, SwapResult]] = []
        error = None
        for target in snapshot.targets:
            result = await _call_adapter(adapter, snapshot.product_id, target, tag)
            if not result.ok:
                error = result.error or "swap failed"
                break
            done.append((target, result))

        if error is not None and compensate_to is not None and done:
            back = CASE_TO_TAG[compensate_to]
            for target, _ in reversed(done):
                undo = await _call_adapter(adapter, snapshot.product_id, target, back)
                if not undo.ok:
                    logger.error(
                        "rotation.compensation_failed",
                        test_id=str(snapshot.test_id),
                        shopify_variant_id=target.shopify_variant_id,
                        error=undo.error,
                    )
        return [result for _, result in done], error

    async def _commit_transition(self, snapshot: "_TestSnapshot", version: int, values: dict[str, Any]) -> None:
        result = await self.db.execute(
            update(ABTest)
            .where(ABTest.test_id == snapshot.test_id, ABTest.version == version)
            .values(version=version + 1, rotation_lease_until=None, updated_at=datetime.utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            raise RotationConflictError(
                f"Lease on test {snapshot.test_id} expired before the transition committed",
                blocking_id=str(snapshot.test_id),
            )

    async def _fail_transition(
        self,
        snapshot: "_TestSnapshot",
        version: int,
        from_case: ActiveCase,
        to_case: ActiveCase,
        triggered_by: RotationTrigger,
        user_id: str | None,
        duration_ms: int,
        error: str,
    ) -> None:
        await self.db.execute(
            update(ABTest)
            .where(ABTest.test_id == snapshot.test_id, ABTest.version == version)
            .values(version=version + 1, rotation_lease_until=None)
            .execution_options(synchronize_session=False)
        )
        self._log_rotation(snapshot, from_case, to_case, triggered_by, user_id, duration_ms, success=False, error=error)
        record_audit(
            self.db,
            shop=snapshot.shop,
            action="rotation.failed",
            test_id=snapshot.test_id,
            actor=user_id,
            details={"from": from_case.value, "to": to_case.value, "error": error},
        )
        await self.db.commit()
        await self._reload(snapshot.test_id)
        logger.error(
            "rotation.failed",
            test_id=str(snapshot.test_id),
            from_case=from_case.value,
            to_case=to_case.value,
            triggered_by=triggered_by.value,
            error=error,
        )

    def _log_rotation(
        self,
        snapshot: "_TestSnapshot",
        from_case: ActiveCase,
        to_case: ActiveCase,
        triggered_by: RotationTrigger,
        user_id: str | None,
        duration_ms: int,
        *,
        success: bool,
        error: str | None = None,
    ) -> None:
        self.db.add(
            RotationEvent(
                test_id=snapshot.test_id,
                from_case=from_case.value,
                to_case=to_case.value,
                triggered_by=triggered_by.value,
                success=success,
                duration_ms=duration_ms,
                error_message=error,
                user_id=user_id,
                context={"slots": len(snapshot.targets)},
            )
        )

    async def _record_switches(
        self,
        snapshot: "_TestSnapshot",
        case: ActiveCase,
        triggered_by: RotationTrigger,
        at: datetime,
    ) -> None:
        slot_ids = [target.slot_id for target in snapshot.targets]
        result = await self.db.execute(select(RotationSlot).where(RotationSlot.slot_id.in_(slot_ids)))
        for slot in result.scalars().all():
            await rotation_store.record_switch(
                self.db,
                slot,
                CASE_TO_ROTATION[case],
                triggered_by=triggered_by,
                at=at,
                context={"testId": str(snapshot.test_id)},
            )

    async def _restore_base_and_set(
        self,
        test: ABTest,
        *,
        action: str,
        user_id: str | None,
        values: dict[str, Any],
        deactivate: bool = False,
    ) -> ABTest:
        """Publish BASE on every slot, then apply ``values`` with the lease CAS."""
        now = datetime.utcnow()
        snapshot = await self._snapshot_or_none(test)
        if snapshot is None:
            # DRAFT-like tests with no slots: nothing to restore
            for column, value in values.items():
                setattr(test, column, value)
            test.current_case = ActiveCase.BASE.value
            test.version = (test.version or 0) + 1
            record_audit(self.db, shop=test.shop, action=action, test_id=test.test_id, actor=user_id)
            await self.db.commit()
            return test

        version = await self._acquire_lease(test, now)
        from_case = snapshot.current_case
        trigger = RotationTrigger.MANUAL if user_id else RotationTrigger.SYSTEM

        started = time.perf_counter()
        _, error = await self._swap_slots(snapshot, ActiveCase.BASE)
        duration_ms = int((time.perf_counter() - started) * 1000)
        if error is not None:
            await self._fail_transition(
                snapshot, version, from_case, ActiveCase.BASE, trigger, user_id, duration_ms, error
            )
            raise ExternalDependencyError(f"Could not restore BASE images for test {snapshot.test_id}: {error}")

        await self._commit_transition(snapshot, version, values={"current_case": ActiveCase.BASE.value, **values})
        if from_case is not ActiveCase.BASE:
            await self._record_switches(snapshot, ActiveCase.BASE, trigger, now)
            self._log_rotation(snapshot, from_case, ActiveCase.BASE, trigger, user_id, duration_ms, success=True)
        if deactivate:
            await rotation_store.deactivate_slots(self.db, snapshot.test_id)
        record_audit(
            self.db,
            shop=snapshot.shop,
            action=action,
            test_id=snapshot.test_id,
            actor=user_id,
            details={"previousCase": from_case.value},
        )
        await self.db.commit()
        logger.info(action.replace("test.", "ab_test."), test_id=str(snapshot.test_id), previous_case=from_case.value)
        return await self.get_test(snapshot.test_id)

    async def _snapshot_or_none(self, test: ABTest) -> "_TestSnapshot | None":
        try:
            return await self._snapshot(test)
        except NotFoundError:
            return None

    async def _reload(self, test_id: uuid.UUID) -> None:
        """Refresh the identity-mapped test after the core UPDATEs of a transition."""
        await self.db.execute(
            select(ABTest).where(ABTest.test_id == test_id).execution_options(populate_existing=True)
        )


@dataclass(frozen=True)
class _SlotTarget:
    slot_id: uuid.UUID
    shopify_variant_id: str | None
    images: dict[VariantTag, list[str]]


@dataclass
class _TestSnapshot:
    """Plain copy of what a transition needs, so nothing lazy-loads mid-swap."""

    test_id: uuid.UUID
    shop: str
    product_id: str
    version: int
    rotation_hours: float | None
    current_case: ActiveCase
    targets: list[_SlotTarget]


async def _call_adapter(
    adapter: MediaSwapAdapter, product_id: str, target: _SlotTarget, tag: VariantTag
) -> SwapResult:
    try:
        return await adapter.swap_product_media(product_id, target.shopify_variant_id, target.images[tag])
    except Exception as exc:  # noqa: BLE001
        logger.error(
            "rotation.adapter_error",
            product_id=product_id,
            shopify_variant_id=target.shopify_variant_id,
            error=str(exc),
            exc_info=True,
        )
        return SwapResult.failure(product_id, target.shopify_variant_id, str(exc))


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None
