"""Ordered write strategies for the points ledger.

Each strategy applies one ``LedgerOperation`` inside its own transaction and
either returns a ``StrategyOutcome`` or raises. The ledger decides whether an
exception lets the next strategy run.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import ClassVar
from uuid import UUID

from loguru import logger
from sqlalchemy import case, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

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
from loyalty_api.services.errors import EngineErrorCode, LedgerValidationError


@dataclass(frozen=True)
class LedgerOperation:
    card_id: UUID
    points: int
    activity_type: ActivityType
    source: PointsSource
    description: str | None
    ref: str

    @property
    def is_credit(self) -> bool:
        return self.activity_type == ActivityType.CREDIT

    @property
    def verb(self) -> str:
        return "award" if self.is_credit else "deduct"


@dataclass
class StrategyOutcome:
    strategy: str
    new_balance: int
    applied_points: int = 0
    idempotent: bool = False
    activity_recorded: bool = True
    previous_tier: CardTier | None = None
    tier: CardTier | None = None
    derived_state_synced: bool = False


def is_recoverable(exc: BaseException) -> bool:
    """Errors that justify falling through to the next strategy."""

    if isinstance(exc, (OperationalError, asyncio.TimeoutError, TimeoutError)):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return False


async def find_activity(db: AsyncSession, ref: str) -> PointsActivity | None:
    stmt = select(PointsActivity).where(PointsActivity.transaction_ref == ref)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def current_balance(db: AsyncSession, card_id: UUID) -> int | None:
    result = await db.execute(select(LoyaltyCard.points).where(LoyaltyCard.id == card_id))
    return result.scalar_one_or_none()


def _signed_delta(operation: LedgerOperation):
    """SQL expression for the new balance, floored at zero for debits."""

    if operation.is_credit:
        return LoyaltyCard.points + operation.points
    return case(
        (LoyaltyCard.points > operation.points, LoyaltyCard.points - operation.points),
        else_=0,
    )


def _activity(operation: LedgerOperation, applied: int) -> PointsActivity:
    return PointsActivity(
        card_id=operation.card_id,
        activity_type=operation.activity_type,
        points=applied,
        source=operation.source,
        description=operation.description,
        transaction_ref=operation.ref,
    )


class LedgerStrategy(ABC):
    name: ClassVar[str]

    @abstractmethod
    async def apply(self, db: AsyncSession, operation: LedgerOperation) -> StrategyOutcome:
        """Apply ``operation`` and commit, or raise leaving rollback to the caller."""

    async def _replay(self, db: AsyncSession, operation: LedgerOperation) -> StrategyOutcome:
        balance = await current_balance(db, operation.card_id)
        await db.commit()
        return StrategyOutcome(strategy=self.name, new_balance=int(balance or 0), idempotent=True)


class PrimaryLedgerStrategy(LedgerStrategy):
    """Locked read-modify-write that also keeps enrollment and tier in step."""

    name = "primary"

    async def apply(self, db: AsyncSession, operation: LedgerOperation) -> StrategyOutcome:
        stmt = (
            select(LoyaltyCard)
            .where(LoyaltyCard.id == operation.card_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        card = (await db.execute(stmt)).scalar_one_or_none()
        if card is None:
            raise LedgerValidationError("Card not found", code=EngineErrorCode.CARD_NOT_FOUND)
        if not card.is_active or card.status != CardStatus.ACTIVE:
            raise LedgerValidationError("Card is not active", code=EngineErrorCode.CARD_INACTIVE)

        if await find_activity(db, operation.ref) is not None:
            await db.commit()
            return StrategyOutcome(strategy=self.name, new_balance=card.points, idempotent=True)

        enrollment_stmt = (
            select(Enrollment)
            .where(
                Enrollment.customer_id == card.customer_id,
                Enrollment.program_id == card.program_id,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        enrollment = (await db.execute(enrollment_stmt)).scalar_one_or_none()
        enrolled = enrollment is not None and enrollment.status == EnrollmentStatus.ACTIVE
        if operation.source.program_scoped and not enrolled:
            raise LedgerValidationError(
                "Customer is not enrolled in the card's program",
                code=EngineErrorCode.NOT_ENROLLED,
            )

        prior = int(card.points or 0)
        if operation.is_credit:
            new_balance = prior + operation.points
            applied = operation.points
            card.total_points_earned = int(card.total_points_earned or 0) + applied
        else:
            new_balance = max(0, prior - operation.points)
            applied = prior - new_balance

        previous_tier = card.tier
        card.points = new_balance
        card.tier = tier_for_points(new_balance)
        db.add(_activity(operation, applied))

        if enrolled:
            enrollment.current_points = new_balance
            enrollment.last_activity = datetime.now(timezone.utc)

        await db.flush()
        await db.commit()
        return StrategyOutcome(
            strategy=self.name,
            new_balance=new_balance,
            applied_points=applied,
            previous_tier=previous_tier,
            tier=card.tier,
            derived_state_synced=True,
        )


class AtomicLedgerStrategy(LedgerStrategy):
    """Database-side increment plus activity insert, skipping enrollment bookkeeping."""

    name = "secondary"

    async def apply(self, db: AsyncSession, operation: LedgerOperation) -> StrategyOutcome:
        if await find_activity(db, operation.ref) is not None:
            return await self._replay(db, operation)

        row = (
            await db.execute(
                select(LoyaltyCard.points, LoyaltyCard.is_active)
                .where(LoyaltyCard.id == operation.card_id)
                .with_for_update()
            )
        ).one_or_none()
        if row is None:
            raise LedgerValidationError("Card not found", code=EngineErrorCode.CARD_NOT_FOUND)
        prior, active = int(row.points or 0), bool(row.is_active)
        if not active:
            raise LedgerValidationError("Card is not active", code=EngineErrorCode.CARD_INACTIVE)

        values: dict[str, object] = {
            "points": _signed_delta(operation),
            "updated_at": datetime.now(timezone.utc),
        }
        if operation.is_credit:
            values["total_points_earned"] = LoyaltyCard.total_points_earned + operation.points
        await db.execute(
            update(LoyaltyCard)
            .where(LoyaltyCard.id == operation.card_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        new_balance = int(await current_balance(db, operation.card_id) or 0)
        applied = operation.points if operation.is_credit else prior - new_balance

        db.add(_activity(operation, applied))
        await db.flush()
        await db.commit()
        return StrategyOutcome(strategy=self.name, new_balance=new_balance, applied_points=applied)


class EmergencyLedgerStrategy(LedgerStrategy):
    """Unconditional balance update; a failed activity insert does not block the balance.

    The activity row is written in a savepoint of the same transaction. A
    duplicate ``transaction_ref`` there rolls the balance back with it and is
    reported as a replay.
    """

    name = "emergency"

    async def apply(self, db: AsyncSession, operation: LedgerOperation) -> StrategyOutcome:
        if await find_activity(db, operation.ref) is not None:
            return await self._replay(db, operation)

        prior = await current_balance(db, operation.card_id)
        if prior is None:
            raise LedgerValidationError("Card not found", code=EngineErrorCode.CARD_NOT_FOUND)

        await db.execute(
            update(LoyaltyCard)
            .where(LoyaltyCard.id == operation.card_id)
            .values(points=_signed_delta(operation), updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        new_balance = int(await current_balance(db, operation.card_id) or 0)
        applied = operation.points if operation.is_credit else max(0, int(prior) - new_balance)

        activity_recorded = True
        try:
            async with db.begin_nested():
                db.add(_activity(operation, applied))
                await db.flush()
        except IntegrityError:
            await db.rollback()
            logger.info(
                "Degraded-mode ledger write found a committed duplicate ref",
                card_id=str(operation.card_id),
                transaction_ref=operation.ref,
            )
            return await self._replay(db, operation)
        except SQLAlchemyError as exc:
            activity_recorded = False
            logger.error(
                "Degraded-mode ledger write left no activity row",
                card_id=str(operation.card_id),
                transaction_ref=operation.ref,
                error=str(exc),
            )
        await db.commit()

        logger.warning(
            "Degraded-mode ledger write applied",
            card_id=str(operation.card_id),
            operation=operation.verb,
            points=operation.points,
            applied_points=applied,
            new_balance=new_balance,
            transaction_ref=operation.ref,
        )
        return StrategyOutcome(
            strategy=self.name,
            new_balance=new_balance,
            applied_points=applied,
            activity_recorded=activity_recorded,
        )


STRATEGY_REGISTRY: dict[str, type[LedgerStrategy]] = {
    PrimaryLedgerStrategy.name: PrimaryLedgerStrategy,
    AtomicLedgerStrategy.name: AtomicLedgerStrategy,
    EmergencyLedgerStrategy.name: EmergencyLedgerStrategy,
}


def build_strategy_chain(names: list[str]) -> list[LedgerStrategy]:
    chain: list[LedgerStrategy] = []
    for name in names:
        strategy_cls = STRATEGY_REGISTRY.get(name)
        if strategy_cls is None:
            raise ValueError(f"Unknown ledger strategy: {name}")
        chain.append(strategy_cls())
    if not chain:
        raise ValueError("Ledger strategy chain must not be empty")
    return chain


__all__ = [
    "AtomicLedgerStrategy",
    "EmergencyLedgerStrategy",
    "LedgerOperation",
    "LedgerStrategy",
    "PrimaryLedgerStrategy",
    "STRATEGY_REGISTRY",
    "StrategyOutcome",
    "build_strategy_chain",
    "current_balance",
    "find_activity",
    "is_recoverable",
]
