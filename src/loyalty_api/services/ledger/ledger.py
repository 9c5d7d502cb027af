"""Points ledger: validation, idempotency, and the fallback strategy chain."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Sequence
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import case, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_api.core.settings import settings
from loyalty_api.models.enrollment import Enrollment, EnrollmentStatus
from loyalty_api.models.loyalty import (
    ActivityType,
    CardStatus,
    CardTier,
    LoyaltyCard,
    PointsActivity,
    PointsSource,
    tier_for_points,
)
from loyalty_api.models.notification import NotificationType, RecipientRole
from loyalty_api.observability.ledger import EngineObservabilityStore, get_engine_store
from loyalty_api.observability.tracing import get_tracer
from loyalty_api.services.errors import EngineErrorCode, LedgerValidationError, NotificationError
from loyalty_api.services.notifications import NotificationDispatcher, NotificationDraft
from loyalty_api.services.notifications.templates import render_points_movement, render_tier_change

from .strategies import (
    LedgerOperation,
    LedgerStrategy,
    StrategyOutcome,
    build_strategy_chain,
    current_balance,
    find_activity,
    is_recoverable,
)


@dataclass
class LedgerResult:
    success: bool
    new_balance: int | None = None
    error_code: EngineErrorCode | None = None
    strategy: str | None = None
    idempotent: bool = False
    applied_points: int = 0
    transaction_ref: str | None = None
    errors: list[str] = field(default_factory=list)


def signed_activity_sum():
    """SQL expression summing credits minus debits."""

    return func.coalesce(
        func.sum(
            case(
                (PointsActivity.activity_type == ActivityType.CREDIT, PointsActivity.points),
                else_=-PointsActivity.points,
            )
        ),
        0,
    )


class PointsLedger:
    """Award and deduct card points through an ordered chain of write strategies.

    The ledger owns transaction boundaries: every strategy commits or rolls back
    its own unit of work, so callers must hand over a session with no pending
    changes.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        strategies: Sequence[LedgerStrategy] | None = None,
        dispatcher: NotificationDispatcher | None = None,
        store: EngineObservabilityStore | None = None,
        notify: bool = True,
    ) -> None:
        self._db = db_session
        self._strategies = list(strategies) if strategies else build_strategy_chain(settings.ledger_strategy_chain)
        self._dispatcher = dispatcher or NotificationDispatcher(db_session)
        self._store = store or get_engine_store()
        self._notify = notify

    @property
    def strategy_names(self) -> list[str]:
        return [strategy.name for strategy in self._strategies]

    async def award_points(
        self,
        card_id: UUID,
        points: int,
        source: PointsSource | str = PointsSource.OTHER,
        description: str | None = None,
        ref: str | None = None,
    ) -> LedgerResult:
        return await self._execute(card_id, points, ActivityType.CREDIT, source, description, ref)

    async def deduct_points(
        self,
        card_id: UUID,
        points: int,
        source: PointsSource | str = PointsSource.OTHER,
        description: str | None = None,
        ref: str | None = None,
    ) -> LedgerResult:
        return await self._execute(card_id, points, ActivityType.DEBIT, source, description, ref)

    async def resolve_card_id(
        self,
        customer_id: UUID,
        business_id: UUID,
        program_id: UUID,
    ) -> tuple[UUID | None, EngineErrorCode | None]:
        """Find the active card for a (customer, business, program) triple."""

        stmt = (
            select(LoyaltyCard.id)
            .where(
                LoyaltyCard.customer_id == customer_id,
                LoyaltyCard.business_id == business_id,
                LoyaltyCard.program_id == program_id,
                LoyaltyCard.is_active.is_(True),
            )
            .order_by(LoyaltyCard.created_at.asc(), LoyaltyCard.id.asc())
            .limit(1)
        )
        card_id = (await self._db.execute(stmt)).scalar_one_or_none()
        if card_id is not None:
            await self._db.commit()
            return card_id, None

        enrollment = await self._active_enrollment(customer_id, program_id)
        await self._db.commit()
        if enrollment is None:
            return None, EngineErrorCode.NOT_ENROLLED
        return None, EngineErrorCode.CARD_NOT_FOUND

    async def award_points_for_customer(
        self,
        customer_id: UUID,
        business_id: UUID,
        program_id: UUID,
        points: int,
        source: PointsSource | str = PointsSource.OTHER,
        description: str | None = None,
        ref: str | None = None,
    ) -> LedgerResult:
        card_id, error_code = await self.resolve_card_id(customer_id, business_id, program_id)
        if card_id is None:
            self._store.record_ledger_failure(error_code.value)
            return LedgerResult(success=False, error_code=error_code, transaction_ref=ref)
        return await self.award_points(card_id, points, source, description, ref)

    async def get_card(self, card_id: UUID) -> LoyaltyCard | None:
        stmt = (
            select(LoyaltyCard)
            .where(LoyaltyCard.id == card_id)
            .execution_options(populate_existing=True)
        )
        return (await self._db.execute(stmt)).scalar_one_or_none()

    async def list_activities(self, card_id: UUID, *, limit: int = 50) -> Sequence[PointsActivity]:
        stmt = (
            select(PointsActivity)
            .where(PointsActivity.card_id == card_id)
            .order_by(PointsActivity.created_at.desc(), PointsActivity.id.desc())
            .limit(limit)
        )
        return (await self._db.execute(stmt)).scalars().all()

    async def activity_sum(self, card_id: UUID) -> int:
        stmt = select(signed_activity_sum()).where(PointsActivity.card_id == card_id)
        return int((await self._db.execute(stmt)).scalar_one())

    async def _execute(
        self,
        card_id: UUID,
        points: int,
        activity_type: ActivityType,
        source: PointsSource | str,
        description: str | None,
        ref: str | None,
    ) -> LedgerResult:
        with get_tracer().start_as_current_span(f"ledger.{activity_type.value.lower()}") as span:
            span.set_attribute("loyalty.card_id", str(card_id))
            span.set_attribute("loyalty.points", points if isinstance(points, int) else 0)
            result = await self._run(card_id, points, activity_type, source, description, ref)
            span.set_attribute("loyalty.success", result.success)
            if result.strategy:
                span.set_attribute("loyalty.strategy", result.strategy)
            if result.error_code:
                span.set_attribute("loyalty.error_code", result.error_code.value)
            return result

    async def _run(
        self,
        card_id: UUID,
        points: int,
        activity_type: ActivityType,
        source: PointsSource | str,
        description: str | None,
        ref: str | None,
    ) -> LedgerResult:
        verb = "award" if activity_type == ActivityType.CREDIT else "deduct"
        try:
            resolved_source = PointsSource(source)
        except ValueError:
            return self._failure(EngineErrorCode.INVALID_POINTS, ref, [f"Unsupported source: {source}"])

        if isinstance(points, bool) or not isinstance(points, int) or points <= 0:
            return self._failure(EngineErrorCode.INVALID_POINTS, ref, ["Points must be a positive integer"])

        operation = LedgerOperation(
            card_id=card_id,
            points=points,
            activity_type=activity_type,
            source=resolved_source,
            description=description,
            ref=ref or f"{resolved_source.value.lower()}:{uuid4().hex}",
        )

        try:
            replay = await self._precheck(operation)
        except LedgerValidationError as exc:
            await self._db.rollback()
            return self._failure(exc.code, operation.ref, [str(exc)])
        except SQLAlchemyError as exc:
            # Prechecks are advisory; the first strategy re-validates under lock.
            await self._db.rollback()
            logger.warning("Ledger precheck failed", card_id=str(card_id), error=str(exc))
            replay = None
        if replay is not None:
            self._store.record_ledger_write(strategy="precheck", operation=verb, idempotent=True)
            return replay

        errors: list[str] = []
        for strategy in self._strategies:
            try:
                outcome = await strategy.apply(self._db, operation)
            except LedgerValidationError as exc:
                await self._db.rollback()
                errors.append(f"{strategy.name}: {exc}")
                return self._failure(exc.code, operation.ref, errors)
            except IntegrityError as exc:
                await self._db.rollback()
                replay = await self._replay(operation, strategy.name)
                if replay is not None:
                    logger.info(
                        "Duplicate transaction ref absorbed",
                        card_id=str(card_id),
                        transaction_ref=operation.ref,
                        strategy=strategy.name,
                    )
                    return replay
                errors.append(f"{strategy.name}: {exc}")
                logger.error(
                    "Ledger strategy hit a non-recoverable integrity error",
                    card_id=str(card_id),
                    strategy=strategy.name,
                    error=str(exc),
                )
                break
            except (SQLAlchemyError, TimeoutError) as exc:
                await self._db.rollback()
                errors.append(f"{strategy.name}: {exc}")
                if not is_recoverable(exc):
                    logger.error(
                        "Ledger strategy failed with a non-recoverable error",
                        card_id=str(card_id),
                        strategy=strategy.name,
                        error=str(exc),
                    )
                    break
                self._store.record_strategy_fallback(strategy.name)
                logger.warning(
                    "Ledger strategy failed; falling through",
                    card_id=str(card_id),
                    strategy=strategy.name,
                    operation=verb,
                    transaction_ref=operation.ref,
                    error=str(exc),
                )
                continue

            return await self._finalize(operation, outcome)

        logger.error(
            "Ledger strategy chain exhausted",
            card_id=str(card_id),
            operation=verb,
            points=points,
            transaction_ref=operation.ref,
            errors=errors,
        )
        return self._failure(EngineErrorCode.POINTS_AWARD_FAILED, operation.ref, errors)

    async def _precheck(self, operation: LedgerOperation) -> LedgerResult | None:
        """Return an idempotent replay, raise on validation failure, else ``None``."""

        existing = await find_activity(self._db, operation.ref)
        if existing is not None:
            balance = await current_balance(self._db, existing.card_id)
            await self._db.commit()
            return LedgerResult(
                success=True,
                new_balance=balance,
                idempotent=True,
                strategy="precheck",
                transaction_ref=operation.ref,
            )

        card = await self.get_card(operation.card_id)
        if card is None:
            raise LedgerValidationError("Card not found", code=EngineErrorCode.CARD_NOT_FOUND)
        if not card.is_active or card.status != CardStatus.ACTIVE:
            raise LedgerValidationError("Card is not active", code=EngineErrorCode.CARD_INACTIVE)
        if operation.source.program_scoped:
            enrollment = await self._active_enrollment(card.customer_id, card.program_id)
            if enrollment is None:
                raise LedgerValidationError(
                    "Customer is not enrolled in the card's program",
                    code=EngineErrorCode.NOT_ENROLLED,
                )
        await self._db.commit()
        return None

    async def _replay(self, operation: LedgerOperation, strategy: str) -> LedgerResult | None:
        existing = await find_activity(self._db, operation.ref)
        if existing is None:
            await self._db.commit()
            return None
        balance = await current_balance(self._db, existing.card_id)
        await self._db.commit()
        self._store.record_ledger_write(strategy=strategy, operation="replay", idempotent=True)
        return LedgerResult(
            success=True,
            new_balance=balance,
            idempotent=True,
            strategy=strategy,
            transaction_ref=operation.ref,
        )

    async def _finalize(self, operation: LedgerOperation, outcome: StrategyOutcome) -> LedgerResult:
        self._store.record_ledger_write(
            strategy=outcome.strategy,
            operation=operation.verb,
            idempotent=outcome.idempotent,
        )
        result = LedgerResult(
            success=True,
            new_balance=outcome.new_balance,
            strategy=outcome.strategy,
            idempotent=outcome.idempotent,
            applied_points=outcome.applied_points,
            transaction_ref=operation.ref,
        )
        if outcome.idempotent:
            return result

        logger.info(
            "Ledger write committed",
            card_id=str(operation.card_id),
            operation=operation.verb,
            points=operation.points,
            applied_points=outcome.applied_points,
            new_balance=outcome.new_balance,
            source=operation.source.value,
            strategy=outcome.strategy,
            transaction_ref=operation.ref,
        )

        if not outcome.derived_state_synced:
            await self._sync_derived_state(operation.card_id, outcome)
        if self._notify:
            await self._emit_notifications(operation, outcome)
        return result

    async def _sync_derived_state(self, card_id: UUID, outcome: StrategyOutcome) -> None:
        """Best-effort tier and enrollment refresh after a fallback strategy."""

        try:
            card = await self.get_card(card_id)
            if card is None:
                return
            outcome.previous_tier = card.tier
            card.tier = tier_for_points(int(card.points or 0))
            outcome.tier = card.tier
            enrollment = await self._active_enrollment(card.customer_id, card.program_id)
            if enrollment is not None:
                enrollment.current_points = card.points
                enrollment.last_activity = datetime.now(timezone.utc)
            await self._db.commit()
        except SQLAlchemyError as exc:
            await self._db.rollback()
            logger.warning(
                "Derived card state refresh skipped",
                card_id=str(card_id),
                strategy=outcome.strategy,
                error=str(exc),
            )

    async def _emit_notifications(self, operation: LedgerOperation, outcome: StrategyOutcome) -> None:
        try:
            card = await self.get_card(operation.card_id)
            if card is None:
                return
            drafts = [self._movement_draft(card, operation, outcome)]
            if outcome.tier is not None and outcome.previous_tier is not None and outcome.tier != outcome.previous_tier:
                drafts.append(self._tier_draft(card, outcome.previous_tier, outcome.tier))
            for draft in drafts:
                await self._dispatcher.emit(draft)
            await self._db.commit()
        except (NotificationError, SQLAlchemyError) as exc:
            await self._db.rollback()
            self._store.record_notification("failed")
            logger.warning(
                "Points notification skipped",
                error_code=EngineErrorCode.NOTIFICATION_FAILED.value,
                card_id=str(operation.card_id),
                error=str(exc),
            )

    def _movement_draft(
        self,
        card: LoyaltyCard,
        operation: LedgerOperation,
        outcome: StrategyOutcome,
    ) -> NotificationDraft:
        rendered = render_points_movement(
            outcome.applied_points,
            credited=operation.is_credit,
            new_balance=outcome.new_balance,
            description=operation.description,
        )
        return NotificationDraft(
            recipient_id=card.customer_id,
            role=RecipientRole.CUSTOMER,
            notification_type=(
                NotificationType.POINTS_ADDED if operation.is_credit else NotificationType.POINTS_DEDUCTED
            ),
            title=rendered.title,
            message=rendered.message,
            data={
                "cardId": card.id,
                "programId": card.program_id,
                "points": outcome.applied_points,
                "newBalance": outcome.new_balance,
                "source": operation.source.value,
                "transactionRef": operation.ref,
            },
            reference_id=str(card.id),
        )

    def _tier_draft(self, card: LoyaltyCard, previous: CardTier, current: CardTier) -> NotificationDraft:
        rendered = render_tier_change(previous, current)
        return NotificationDraft(
            recipient_id=card.customer_id,
            role=RecipientRole.CUSTOMER,
            notification_type=NotificationType.TIER_CHANGED,
            title=rendered.title,
            message=rendered.message,
            data={"cardId": card.id, "previousTier": previous.value, "tier": current.value},
            reference_id=str(card.id),
        )

    async def _active_enrollment(self, customer_id: UUID, program_id: UUID) -> Enrollment | None:
        stmt = select(Enrollment).where(
            Enrollment.customer_id == customer_id,
            Enrollment.program_id == program_id,
            Enrollment.status == EnrollmentStatus.ACTIVE,
        )
        return (await self._db.execute(stmt)).scalar_one_or_none()

    def _failure(self, code: EngineErrorCode, ref: str | None, errors: list[str]) -> LedgerResult:
        self._store.record_ledger_failure(code.value)
        return LedgerResult(success=False, error_code=code, transaction_ref=ref, errors=list(errors))


__all__ = ["LedgerResult", "PointsLedger", "signed_activity_sum"]
