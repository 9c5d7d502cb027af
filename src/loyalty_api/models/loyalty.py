"""Loyalty card and points ledger models."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    func,
)
from sqlalchemy.dialects.postgresql import UUID

from loyalty_api.db.base import Base
from loyalty_api.models.enrollment import utcnow


class CardStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class CardTier(str, Enum):
    """Card tiers ordered by the balance required to reach them."""

    STANDARD = "STANDARD"
    SILVER = "SILVER"
    GOLD = "GOLD"
    PLATINUM = "PLATINUM"


TIER_THRESHOLDS: tuple[tuple[CardTier, int], ...] = (
    (CardTier.PLATINUM, 5000),
    (CardTier.GOLD, 2500),
    (CardTier.SILVER, 1000),
    (CardTier.STANDARD, 0),
)


def tier_for_points(points: int) -> CardTier:
    for tier, threshold in TIER_THRESHOLDS:
        if points >= threshold:
            return tier
    return CardTier.STANDARD


class ActivityType(str, Enum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


class PointsSource(str, Enum):
    """Origin of a points movement."""

    SCAN = "SCAN"
    PURCHASE = "PURCHASE"
    PROMOTION = "PROMOTION"
    WELCOME = "WELCOME"
    MANUAL = "MANUAL"
    REPAIR = "REPAIR"
    OTHER = "OTHER"

    @property
    def program_scoped(self) -> bool:
        return self in PROGRAM_SCOPED_SOURCES


PROGRAM_SCOPED_SOURCES = frozenset(
    {PointsSource.SCAN, PointsSource.PURCHASE, PointsSource.PROMOTION, PointsSource.WELCOME}
)


class LoyaltyCard(Base):
    """Points-bearing card for one customer in one program."""

    __tablename__ = "loyalty_cards"
    __table_args__ = (
        Index("ix_loyalty_cards_customer_program", "customer_id", "program_id"),
        CheckConstraint("points >= 0", name="ck_loyalty_cards_points_non_negative"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    customer_id = Column(UUID(as_uuid=True), nullable=False)
    business_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    program_id = Column(UUID(as_uuid=True), nullable=False)
    card_number = Column(String, nullable=False, unique=True)
    points = Column(Integer, nullable=False, default=0, server_default="0")
    total_points_earned = Column(Integer, nullable=False, default=0, server_default="0")
    tier = Column(
        SqlEnum(CardTier, name="loyalty_card_tier"),
        nullable=False,
        default=CardTier.STANDARD,
        server_default=CardTier.STANDARD.value,
    )
    status = Column(
        SqlEnum(CardStatus, name="loyalty_card_status"),
        nullable=False,
        default=CardStatus.ACTIVE,
        server_default=CardStatus.ACTIVE.value,
    )
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
        nullable=False,
    )


class PointsActivity(Base):
    """Immutable ledger entry recording one credit or debit against a card."""

    __tablename__ = "points_activities"
    __table_args__ = (
        CheckConstraint("points >= 0", name="ck_points_activities_points_magnitude"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    card_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_cards.id", ondelete="CASCADE"), nullable=False, index=True)
    activity_type = Column("type", SqlEnum(ActivityType, name="points_activity_type"), nullable=False)
    points = Column(Integer, nullable=False)
    source = Column(SqlEnum(PointsSource, name="points_source"), nullable=False)
    description = Column(String, nullable=True)
    transaction_ref = Column(String, nullable=False, unique=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    @property
    def signed_points(self) -> int:
        return self.points if self.activity_type == ActivityType.CREDIT else -self.points
