"""Detect and repair drift between enrollments, cards, and the points ledger."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import and_, exists, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_api.core.settings import settings
from loyalty_api.models.enrollment import ApprovalRequest, ApprovalRequestStatus, Enrollment, EnrollmentStatus
from loyalty_api.models.loyalty import LoyaltyCard, PointsActivity, tier_for_points
from loyalty_api.models.notification import NotificationType, RecipientRole
from loyalty_api.observability.ledger import EngineObservabilityStore, get_engine_store
from loyalty_api.services.cards import CardProvisioner
from loyalty_api.services.errors import CardProvisioningError, EngineErrorCode
from loyalty_api.services.ledger import signed_activity_sum
from loyalty_api.services.notifications import NotificationDispatcher, NotificationDraft
from loyalty_api.services.notifications.templates import render_consistency_repair


class AnomalyKind(str, Enum):
    MISSING_CARD = "MISSING_CARD"
    DUPLICATE_ACTIVE_CARDS = "DUPLICATE_ACTIVE_CARDS"
    BALANCE_DRIFT = "BALANCE_DRIFT"
    MISSING_ENROLLMENT = "MISSING_ENROLLMENT"


class RepairAction(str, Enum):
    CARD_CREATED = "CARD_CREATED"
    DUPLICATES_DEACTIVATED = "DUPLICATES_DEACTIVATED"
    BALANCE_RECOMPUTED = "BALANCE_RECOMPUTED"
    ENROLLMENT_CREATED = "ENROLLMENT_CREATED"
    NO_OP = "NO_OP"
    MANUAL_REVIEW = "MANUAL_REVIEW"
    FAILED = "FAILED"


@dataclass(frozen=True)
class Anomaly:
    kind: AnomalyKind
    customer_id: UUID
    program_id: UUID
    business_id: UUID | None = None
    card_id: UUID | None = None
    card_ids: tuple[UUID, ...] = ()
    recorded_points: int | None = None
    ledger_points: int | None = None
    request_id: UUID | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "customerId": str(self.customer_id),
            "programId": str(self.program_id),
            "businessId": str(self.business_id) if self.business_id else None,
            "cardId": str(self.card_id) if self.card_id else None,
            "cardIds": [str(card_id) for card_id in self.card_ids],
            "recordedPoints": self.recorded_points,
            "ledgerPoints": self.ledger_points,
            "requestId": str(self.request_id) if self.request_id else None,
        }


@dataclass
class RepairResult:
    anomaly: Anomaly
    action: RepairAction
    success: bool
    detail: str
    card_id: UUID | None = None
    deactivated_card_ids: list[UUID] = field(default_factory=list)

    @property
    def repaired(self) -> bool:
        return self.success and self.action not in {RepairAction.NO_OP, RepairAction.MANUAL_REVIEW}


@dataclass
class AuditSummary:
    anomalies: list[Anomaly] = field(default_factory=list)
    repairs: list[RepairResult] = field(default_factory=list)

    @property
    def repairs_applied(self) -> int:
        return sum(1 for repair in self.repairs if repair.repaired)

    @property
    def manual_review(self) -> int:
        return sum(1 for repair in self.repairs if repair.action == RepairAction.MANUAL_REVIEW)

    def counts_by_kind(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for anomaly in self.anomalies:
            counts[anomaly.kind.value] = counts.get(anomaly.kind.value, 0) + 1
        return counts


class ConsistencyAuditor:
    """Single sanctioned repair path for enrollment, card, and balance drift.

    Scans are read-only. Repairs re-check their anomaly, only add or deactivate
    rows, never delete points activity, and announce themselves through a
    ``CONSISTENCY_REPAIR`` notification.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        provisioner: CardProvisioner | None = None,
        dispatcher: NotificationDispatcher | None = None,
        store: EngineObservabilityStore | None = None,
        tolerance: int | None = None,
    ) -> None:
        self._db = db_session
        self._provisioner = provisioner or CardProvisioner(db_session)
        self._dispatcher = dispatcher or NotificationDispatcher(db_session)
        self._store = store or get_engine_store()
        self._tolerance = settings.drift_tolerance_points if tolerance is None else tolerance

    async def scan_for_drift(self) -> list[Anomaly]:
        anomalies: list[Anomaly] = []
        anomalies.extend(await self._scan_missing_cards())
        anomalies.extend(await self._scan_duplicate_cards())
        anomalies.extend(await self._scan_balance_drift())
        anomalies.extend(await self._scan_missing_enrollments())
        await self._db.commit()

        for anomaly in anomalies:
            self._store.record_anomaly(anomaly.kind.value)
            logger.warning(
                "Consistency anomaly detected",
                error_code=EngineErrorCode.DRIFT_DETECTED.value,
                **{key: value for key, value in anomaly.as_dict().items() if value not in (None, [])},
            )
        return anomalies

    async def repair(self, anomaly: Anomaly) -> RepairResult:
        handlers = {
            AnomalyKind.MISSING_CARD: self._repair_missing_card,
            AnomalyKind.DUPLICATE_ACTIVE_CARDS: self._repair_duplicates,
            AnomalyKind.BALANCE_DRIFT: self._repair_balance,
            AnomalyKind.MISSING_ENROLLMENT: self._repair_missing_enrollment,
        }
        handler = handlers[anomaly.kind]
        try:
            result = await handler(anomaly)
        except (SQLAlchemyError, CardProvisioningError) as exc:
            await self._db.rollback()
            logger.error(
                "Consistency repair failed",
                kind=anomaly.kind.value,
                customer_id=str(anomaly.customer_id),
                program_id=str(anomaly.program_id),
                error=str(exc),
            )
            result = RepairResult(anomaly=anomaly, action=RepairAction.FAILED, success=False, detail=str(exc))

        self._store.record_repair(result.action.value)
        if result.repaired:
            logger.info(
                "Consistency repair applied",
                kind=anomaly.kind.value,
                action=result.action.value,
                customer_id=str(anomaly.customer_id),
                program_id=str(anomaly.program_id),
                card_id=str(result.card_id) if result.card_id else None,
                detail=result.detail,
            )
        return result

    async def run_sweep(self, *, repair: bool = False) -> AuditSummary:
        summary = AuditSummary(anomalies=await self.scan_for_drift())
        if repair:
            for anomaly in summary.anomalies:
                summary.repairs.append(await self.repair(anomaly))
        logger.info(
            "Consistency sweep finished",
            anomalies=len(summary.anomalies),
            by_kind=summary.counts_by_kind(),
            repairs_applied=summary.repairs_applied,
            manual_review=summary.manual_review,
        )
        return summary

    # scans

    async def _scan_missing_cards(self) -> list[Anomaly]:
        active_card = exists().where(
            LoyaltyCard.customer_id == Enrollment.customer_id,
            LoyaltyCard.program_id == Enrollment.program_id,
            LoyaltyCard.is_active.is_(True),
        )
        stmt = select(Enrollment).where(Enrollment.status == EnrollmentStatus.ACTIVE, ~active_card)
        enrollments = (await self._db.execute(stmt)).scalars().all()
        return [
            Anomaly(
                kind=AnomalyKind.MISSING_CARD,
                customer_id=enrollment.customer_id,
                program_id=enrollment.program_id,
                business_id=enrollment.business_id,
            )
            for enrollment in enrollments
        ]

    async def _scan_duplicate_cards(self) -> list[Anomaly]:
        stmt = (
            select(LoyaltyCard.customer_id, LoyaltyCard.program_id)
            .where(LoyaltyCard.is_active.is_(True))
            .group_by(LoyaltyCard.customer_id, LoyaltyCard.program_id)
            .having(func.count(LoyaltyCard.id) > 1)
        )
        anomalies: list[Anomaly] = []
        for customer_id, program_id in (await self._db.execute(stmt)).all():
            cards = await self._active_cards(customer_id, program_id)
            anomalies.append(
                Anomaly(
                    kind=AnomalyKind.DUPLICATE_ACTIVE_CARDS,
                    customer_id=customer_id,
                    program_id=program_id,
                    business_id=cards[0].business_id if cards else None,
                    card_id=cards[0].id if cards else None,
                    card_ids=tuple(card.id for card in cards),
                )
            )
        return anomalies

    async def _scan_balance_drift(self) -> list[Anomaly]:
        totals = (
            select(PointsActivity.card_id.label("card_id"), signed_activity_sum().label("ledger_points"))
            .group_by(PointsActivity.card_id)
            .subquery()
        )
        ledger_points = func.coalesce(totals.c.ledger_points, 0)
        stmt = (
            select(LoyaltyCard, ledger_points)
            .outerjoin(totals, totals.c.card_id == LoyaltyCard.id)
            .where(func.abs(LoyaltyCard.points - ledger_points) > self._tolerance)
        )
        return [
            Anomaly(
                kind=AnomalyKind.BALANCE_DRIFT,
                customer_id=card.customer_id,
                program_id=card.program_id,
                business_id=card.business_id,
                card_id=card.id,
                recorded_points=int(card.points or 0),
                ledger_points=int(ledger_total),
            )
            for card, ledger_total in (await self._db.execute(stmt)).all()
        ]

    async def _scan_missing_enrollments(self) -> list[Anomaly]:
        enrollment_row = exists().where(
            Enrollment.customer_id == ApprovalRequest.customer_id,
            Enrollment.program_id == ApprovalRequest.program_id,
        )
        stmt = (
            select(ApprovalRequest)
            .where(ApprovalRequest.status == ApprovalRequestStatus.APPROVED, ~enrollment_row)
            .order_by(ApprovalRequest.responded_at.desc())
        )
        seen: set[tuple[UUID, UUID]] = set()
        anomalies: list[Anomaly] = []
        for request in (await self._db.execute(stmt)).scalars().all():
            key = (request.customer_id, request.program_id)
            if key in seen:
                continue
            seen.add(key)
            anomalies.append(
                Anomaly(
                    kind=AnomalyKind.MISSING_ENROLLMENT,
                    customer_id=request.customer_id,
                    program_id=request.program_id,
                    business_id=request.business_id,
                    request_id=request.id,
                )
            )
        return anomalies

    # repairs

    async def _repair_missing_card(self, anomaly: Anomaly) -> RepairResult:
        stmt = (
            select(Enrollment)
            .where(
                Enrollment.customer_id == anomaly.customer_id,
                Enrollment.program_id == anomaly.program_id,
                Enrollment.status == EnrollmentStatus.ACTIVE,
            )
            .with_for_update()
        )
        enrollment = (await self._db.execute(stmt)).scalar_one_or_none()
        existing = await self._provisioner.find_active_card(anomaly.customer_id, anomaly.program_id)
        if enrollment is None or existing is not None:
            await self._db.commit()
            return self._no_op(anomaly, "Enrollment inactive or card already present")

        card, _ = await self._provisioner.get_or_create_card(
            anomaly.customer_id,
            enrollment.business_id,
            anomaly.program_id,
        )
        enrollment.current_points = int(card.points or 0)
        enrollment.last_activity = datetime.now(timezone.utc)
        await self._db.flush()
        detail = f"Created card {card.card_number} for active enrollment"
        await self._announce(enrollment.business_id, anomaly, RepairAction.CARD_CREATED, detail, card.id)
        await self._db.commit()
        return RepairResult(anomaly=anomaly, action=RepairAction.CARD_CREATED, success=True, detail=detail, card_id=card.id)

    async def _repair_duplicates(self, anomaly: Anomaly) -> RepairResult:
        cards = await self._active_cards(anomaly.customer_id, anomaly.program_id, lock=True)
        if len(cards) <= 1:
            await self._db.commit()
            return self._no_op(anomaly, "At most one active card remains")

        keeper, extras = cards[0], cards[1:]
        for card in extras:
            await self._provisioner.deactivate_card(card)
        deactivated = [card.id for card in extras]
        detail = (
            f"Kept card {keeper.card_number}; deactivated "
            + ", ".join(f"{card.card_number} ({card.points} pts)" for card in extras)
        )
        await self._announce(keeper.business_id, anomaly, RepairAction.DUPLICATES_DEACTIVATED, detail, keeper.id)
        await self._db.commit()
        return RepairResult(
            anomaly=anomaly,
            action=RepairAction.DUPLICATES_DEACTIVATED,
            success=True,
            detail=detail,
            card_id=keeper.id,
            deactivated_card_ids=deactivated,
        )

    async def _repair_balance(self, anomaly: Anomaly) -> RepairResult:
        if anomaly.card_id is None:
            return self._no_op(anomaly, "Anomaly does not reference a card")

        stmt = (
            select(LoyaltyCard)
            .where(LoyaltyCard.id == anomaly.card_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        card = (await self._db.execute(stmt)).scalar_one_or_none()
        if card is None:
            await self._db.commit()
            return self._no_op(anomaly, "Card no longer exists")

        ledger_total = int(
            (
                await self._db.execute(
                    select(signed_activity_sum()).where(PointsActivity.card_id == card.id)
                )
            ).scalar_one()
        )
        recorded = int(card.points or 0)
        if abs(recorded - ledger_total) <= self._tolerance:
            await self._db.commit()
            return self._no_op(anomaly, "Balance already matches activity history")
        if ledger_total < 0:
            await self._db.commit()
            detail = f"Activity history sums to {ledger_total}; balance {recorded} left for manual review"
            logger.warning(
                "Balance drift requires manual review",
                card_id=str(card.id),
                recorded_points=recorded,
                ledger_points=ledger_total,
            )
            return RepairResult(
                anomaly=anomaly,
                action=RepairAction.MANUAL_REVIEW,
                success=False,
                detail=detail,
                card_id=card.id,
            )

        card.points = ledger_total
        card.tier = tier_for_points(ledger_total)
        if card.is_active:
            enrollment = (
                await self._db.execute(
                    select(Enrollment).where(
                        Enrollment.customer_id == card.customer_id,
                        Enrollment.program_id == card.program_id,
                        Enrollment.status == EnrollmentStatus.ACTIVE,
                    )
                )
            ).scalar_one_or_none()
            if enrollment is not None:
                enrollment.current_points = ledger_total
        await self._db.flush()

        detail = f"Card {card.card_number} balance recomputed from {recorded} to {ledger_total}"
        await self._announce(card.business_id, anomaly, RepairAction.BALANCE_RECOMPUTED, detail, card.id)
        await self._db.commit()
        return RepairResult(
            anomaly=anomaly,
            action=RepairAction.BALANCE_RECOMPUTED,
            success=True,
            detail=detail,
            card_id=card.id,
        )

    async def _repair_missing_enrollment(self, anomaly: Anomaly) -> RepairResult:
        stmt = select(Enrollment).where(
            Enrollment.customer_id == anomaly.customer_id,
            Enrollment.program_id == anomaly.program_id,
        )
        if (await self._db.execute(stmt)).scalar_one_or_none() is not None:
            await self._db.commit()
            return self._no_op(anomaly, "Enrollment row already exists")

        request = await self._approved_request(anomaly)
        if request is None:
            await self._db.commit()
            return self._no_op(anomaly, "No approved request backs this enrollment")

        now = datetime.now(timezone.utc)
        card, created = await self._provisioner.get_or_create_card(
            request.customer_id,
            request.business_id,
            request.program_id,
        )
        self._db.add(
            Enrollment(
                customer_id=request.customer_id,
                program_id=request.program_id,
                business_id=request.business_id,
                status=EnrollmentStatus.ACTIVE,
                current_points=int(card.points or 0),
                enrolled_at=now,
                last_activity=now,
            )
        )
        await self._db.flush()
        detail = f"Created enrollment for approved request {request.id}" + (
            f" and card {card.card_number}" if created else f"; kept card {card.card_number}"
        )
        await self._announce(request.business_id, anomaly, RepairAction.ENROLLMENT_CREATED, detail, card.id)
        await self._db.commit()
        return RepairResult(
            anomaly=anomaly,
            action=RepairAction.ENROLLMENT_CREATED,
            success=True,
            detail=detail,
            card_id=card.id,
        )

    # helpers

    async def _approved_request(self, anomaly: Anomaly) -> ApprovalRequest | None:
        stmt = select(ApprovalRequest).where(
            ApprovalRequest.customer_id == anomaly.customer_id,
            ApprovalRequest.program_id == anomaly.program_id,
            ApprovalRequest.status == ApprovalRequestStatus.APPROVED,
        )
        if anomaly.request_id is not None:
            stmt = stmt.where(ApprovalRequest.id == anomaly.request_id)
        stmt = stmt.order_by(ApprovalRequest.responded_at.desc()).limit(1)
        return (await self._db.execute(stmt)).scalar_one_or_none()

    async def _active_cards(
        self,
        customer_id: UUID,
        program_id: UUID,
        *,
        lock: bool = False,
    ) -> Sequence[LoyaltyCard]:
        stmt = (
            select(LoyaltyCard)
            .where(
                and_(
                    LoyaltyCard.customer_id == customer_id,
                    LoyaltyCard.program_id == program_id,
                    LoyaltyCard.is_active.is_(True),
                )
            )
            .order_by(LoyaltyCard.created_at.asc(), LoyaltyCard.id.asc())
            .execution_options(populate_existing=True)
        )
        if lock:
            stmt = stmt.with_for_update()
        return (await self._db.execute(stmt)).scalars().all()

    async def _announce(
        self,
        business_id: UUID | None,
        anomaly: Anomaly,
        action: RepairAction,
        detail: str,
        card_id: UUID | None,
    ) -> None:
        if business_id is None:
            return
        rendered = render_consistency_repair(action.value, detail)
        await self._dispatcher.emit_guarded(
            NotificationDraft(
                recipient_id=business_id,
                role=RecipientRole.BUSINESS,
                notification_type=NotificationType.CONSISTENCY_REPAIR,
                title=rendered.title,
                message=rendered.message,
                data={
                    "action": action.value,
                    "anomaly": anomaly.as_dict(),
                    "cardId": card_id,
                    "detail": detail,
                },
                reference_id=str(card_id) if card_id else None,
            )
        )

    def _no_op(self, anomaly: Anomaly, detail: str) -> RepairResult:
        return RepairResult(anomaly=anomaly, action=RepairAction.NO_OP, success=True, detail=detail)


__all__ = [
    "Anomaly",
    "AnomalyKind",
    "AuditSummary",
    "ConsistencyAuditor",
    "RepairAction",
    "RepairResult",
]
