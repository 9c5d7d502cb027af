from enum import Enum
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, Enum as SqlEnum, Index, JSON, String, Text, func
from sqlalchemy.dialects.postgresql import UUID

from loyalty_api.db.base import Base
from loyalty_api.models.enrollment import utcnow


class RecipientRole(str, Enum):
    CUSTOMER = "CUSTOMER"
    BUSINESS = "BUSINESS"


class NotificationType(str, Enum):
    ENROLLMENT_REQUEST = "ENROLLMENT_REQUEST"
    ENROLLMENT_ACCEPTED = "ENROLLMENT_ACCEPTED"
    ENROLLMENT_REJECTED = "ENROLLMENT_REJECTED"
    ENROLLMENT_SUCCESS = "ENROLLMENT_SUCCESS"
    ENROLLMENT_DECLINED = "ENROLLMENT_DECLINED"
    CARD_CREATED = "CARD_CREATED"
    POINTS_ADDED = "POINTS_ADDED"
    POINTS_DEDUCTED = "POINTS_DEDUCTED"
    TIER_CHANGED = "TIER_CHANGED"
    CONSISTENCY_REPAIR = "CONSISTENCY_REPAIR"


class NotificationState(str, Enum):
    """Lifecycle derived from the notification flags."""

    PENDING_ACTION = "PENDING_ACTION"
    DELIVERED = "DELIVERED"
    ACTIONED = "ACTIONED"
    READ = "READ"


class Notification(Base):
    __tablename__ = "notifications"
    __table_args__ = (
        Index("ix_notifications_recipient_created", "recipient_id", "created_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    recipient_id = Column(UUID(as_uuid=True), nullable=False)
    recipient_role = Column(SqlEnum(RecipientRole, name="notification_recipient_role"), nullable=False)
    notification_type = Column("type", SqlEnum(NotificationType, name="notification_type"), nullable=False)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    reference_id = Column(String, nullable=True)
    requires_action = Column(Boolean, nullable=False, default=False, server_default="false")
    action_taken = Column(Boolean, nullable=False, default=False, server_default="false")
    is_read = Column(Boolean, nullable=False, default=False, server_default="false")
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    read_at = Column(DateTime(timezone=True), nullable=True)
    actioned_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def state(self) -> NotificationState:
        if self.requires_action:
            if self.action_taken:
                return NotificationState.ACTIONED
            return NotificationState.PENDING_ACTION
        if self.is_read:
            return NotificationState.READ
        return NotificationState.DELIVERED
