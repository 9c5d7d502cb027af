"""Idempotent loyalty card provisioning."""

from __future__ import annotations

import secrets
from datetime import datetime, timezone
from typing import Callable
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_api.core.settings import settings
from loyalty_api.models.loyalty import CardStatus, CardTier, LoyaltyCard
from loyalty_api.services.errors import CardProvisioningError


CardNumberGenerator = Callable[[], str]


def generate_card_number(prefix: str | None = None, *, now: datetime | None = None) -> str:
    """Return ``PREFIX-YYMMDD-HHMMSS-NNNN`` using a UTC timestamp and random suffix."""

    stamp = (now or datetime.now(timezone.utc)).strftime("%y%m%d-%H%M%S")
    suffix = f"{secrets.randbelow(10_000):04d}"
    return f"{prefix or settings.card_number_prefix}-{stamp}-{suffix}"


class CardProvisioner:
    """Look up or create the single active card for a customer in a program.

    Never commits: card creation is part of the caller's transaction.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        number_generator: CardNumberGenerator | None = None,
        max_attempts: int | None = None,
    ) -> None:
        self._db = db_session
        self._generate = number_generator or generate_card_number
        self._max_attempts = max_attempts or settings.card_number_max_attempts

    async def find_active_card(self, customer_id: UUID, program_id: UUID) -> LoyaltyCard | None:
        stmt = (
            select(LoyaltyCard)
            .where(
                LoyaltyCard.customer_id == customer_id,
                LoyaltyCard.program_id == program_id,
                LoyaltyCard.is_active.is_(True),
            )
            .order_by(LoyaltyCard.created_at.asc(), LoyaltyCard.id.asc())
            .limit(1)
        )
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_or_create_card(
        self,
        customer_id: UUID,
        business_id: UUID,
        program_id: UUID,
    ) -> tuple[LoyaltyCard, bool]:
        """Return ``(card, created)`` for the triple."""

        existing = await self.find_active_card(customer_id, program_id)
        if existing is not None:
            return existing, False

        for attempt in range(1, self._max_attempts + 1):
            card_number = self._generate()
            if await self._card_number_taken(card_number):
                logger.warning("Card number collision", card_number=card_number, attempt=attempt)
                continue

            card = LoyaltyCard(
                customer_id=customer_id,
                business_id=business_id,
                program_id=program_id,
                card_number=card_number,
                points=0,
                total_points_earned=0,
                tier=CardTier.STANDARD,
                status=CardStatus.ACTIVE,
                is_active=True,
            )
            try:
                async with self._db.begin_nested():
                    self._db.add(card)
                    await self._db.flush()
            except IntegrityError:
                logger.warning(
                    "Card number collided on insert",
                    card_number=card_number,
                    attempt=attempt,
                )
                continue

            logger.info(
                "Provisioned loyalty card",
                card_id=str(card.id),
                card_number=card_number,
                customer_id=str(customer_id),
                program_id=str(program_id),
            )
            return card, True

        raise CardProvisioningError(
            f"Could not allocate a unique card number after {self._max_attempts} attempts"
        )

    async def deactivate_card(self, card: LoyaltyCard) -> None:
        card.is_active = False
        card.status = CardStatus.INACTIVE
        await self._db.flush()
        logger.info("Deactivated loyalty card", card_id=str(card.id), card_number=card.card_number)

    async def _card_number_taken(self, card_number: str) -> bool:
        stmt = select(LoyaltyCard.id).where(LoyaltyCard.card_number == card_number)
        result = await self._db.execute(stmt)
        return result.first() is not None


__all__ = ["CardNumberGenerator", "CardProvisioner", "generate_card_number"]
