"""Notification inbox endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel

from loyalty_api.api.dependencies.engine import get_notification_dispatcher
from loyalty_api.models.notification import Notification
from loyalty_api.services.notifications import NotificationDispatcher


router = APIRouter(prefix="/notifications", tags=["notifications"])


class NotificationResponse(BaseModel):
    id: UUID
    recipientId: UUID
    recipientRole: str
    type: str
    title: str
    message: str
    data: dict[str, Any]
    state: str
    requiresAction: bool
    actionTaken: bool
    isRead: bool
    createdAt: datetime
    readAt: Optional[datetime]


def _serialize(notification: Notification) -> NotificationResponse:
    return NotificationResponse(
        id=notification.id,
        recipientId=notification.recipient_id,
        recipientRole=notification.recipient_role.value,
        type=notification.notification_type.value,
        title=notification.title,
        message=notification.message,
        data=dict(notification.payload or {}),
        state=notification.state.value,
        requiresAction=bool(notification.requires_action),
        actionTaken=bool(notification.action_taken),
        isRead=bool(notification.is_read),
        createdAt=notification.created_at,
        readAt=notification.read_at,
    )


@router.get("/{recipient_id}", response_model=List[NotificationResponse])
async def list_notifications(
    recipient_id: UUID,
    unread_only: bool = Query(False, alias="unreadOnly"),
    limit: int = Query(50, ge=1, le=200),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
) -> List[NotificationResponse]:
    notifications = await dispatcher.list_for_recipient(recipient_id, unread_only=unread_only, limit=limit)
    return [_serialize(notification) for notification in notifications]


@router.post("/{notification_id}/read", response_model=NotificationResponse)
async def mark_notification_read(
    notification_id: UUID,
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
) -> NotificationResponse:
    notification = await dispatcher.mark_read(notification_id)
    if notification is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
    return _serialize(notification)
