"""Enrollment invitation, program membership, and relationship models."""

from __future__ import annotations

from datetime import datetime, timezone
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
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID

from loyalty_api.db.base import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ApprovalRequestStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class EnrollmentStatus(str, Enum):
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"


class RelationshipStatus(str, Enum):
    ACTIVE = "ACTIVE"
    DECLINED = "DECLINED"


class LoyaltyProgram(Base):
    """Business-owned loyalty program; read-only to the engine."""

    __tablename__ = "loyalty_programs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    business_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    name = Column(String, nullable=False)
    welcome_points = Column(Integer, nullable=False, default=0, server_default="0")
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    __table_args__ = (CheckConstraint("welcome_points >= 0", name="ck_loyalty_programs_welcome_points"),)


class ApprovalRequest(Base):
    """Invitation for a customer to join a program, resolved exactly once."""

    __tablename__ = "approval_requests"
    __table_args__ = (
        Index("ix_approval_requests_customer_status", "customer_id", "status"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    customer_id = Column(UUID(as_uuid=True), nullable=False)
    business_id = Column(UUID(as_uuid=True), nullable=False)
    program_id = Column(UUID(as_uuid=True), nullable=False)
    notification_id = Column(
        UUID(as_uuid=True),
        ForeignKey("notifications.id", ondelete="SET NULL"),
        nullable=True,
    )
    status = Column(
        SqlEnum(ApprovalRequestStatus, name="approval_request_status"),
        nullable=False,
        default=ApprovalRequestStatus.PENDING,
        server_default=ApprovalRequestStatus.PENDING.value,
    )
    requested_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    responded_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)


class Enrollment(Base):
    """A customer's participation in a loyalty program."""

    __tablename__ = "program_enrollments"
    __table_args__ = (
        UniqueConstraint("customer_id", "program_id", name="uq_program_enrollments_customer_program"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    customer_id = Column(UUID(as_uuid=True), nullable=False)
    program_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    business_id = Column(UUID(as_uuid=True), nullable=False)
    status = Column(
        SqlEnum(EnrollmentStatus, name="enrollment_status"),
        nullable=False,
        default=EnrollmentStatus.ACTIVE,
        server_default=EnrollmentStatus.ACTIVE.value,
    )
    current_points = Column(Integer, nullable=False, default=0, server_default="0")
    enrolled_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    last_activity = Column(DateTime(timezone=True), nullable=True)


class CustomerBusinessRelationship(Base):
    __tablename__ = "customer_business_relationships"
    __table_args__ = (
        UniqueConstraint("customer_id", "business_id", name="uq_customer_business_relationships_pair"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    customer_id = Column(UUID(as_uuid=True), nullable=False)
    business_id = Column(UUID(as_uuid=True), nullable=False)
    status = Column(SqlEnum(RelationshipStatus, name="relationship_status"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
        nullable=False,
    )
