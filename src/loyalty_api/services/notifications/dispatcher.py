"""Persisted notifications tied to enrollment and ledger state transitions."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_api.models.notification import Notification, NotificationType, RecipientRole
from loyalty_api.observability.ledger import EngineObservabilityStore, get_engine_store
from loyalty_api.services.errors import EngineErrorCode, NotificationError


@dataclass
class NotificationDraft:
    """A notification that has not been written yet."""

    recipient_id: UUID
    role: RecipientRole
    notification_type: NotificationType
    title: str
    message: str
    data: dict[str, Any] = field(default_factory=dict)
    requires_action: bool = False
    reference_id: str | None = None


class NotificationDispatcher:
    """Create and resolve notification records.

    Writes join the caller's transaction. ``emit_guarded`` isolates a write in
    a SAVEPOINT so a failed notification never aborts the surrounding
    enrollment or ledger transaction.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        store: EngineObservabilityStore | None = None,
    ) -> None:
        self._db = db_session
        self._store = store or get_engine_store()

    async def notify(
        self,
        recipient_id: UUID,
        role: RecipientRole,
        notification_type: NotificationType,
        title: str,
        message: str,
        data: dict[str, Any] | None = None,
        requires_action: bool = False,
        *,
        reference_id: str | None = None,
    ) -> UUID:
        draft = NotificationDraft(
            recipient_id=recipient_id,
            role=role,
            notification_type=notification_type,
            title=title,
            message=message,
            data=data or {},
            requires_action=requires_action,
            reference_id=reference_id,
        )
        notification = await self.emit(draft)
        return notification.id

    async def emit(self, draft: NotificationDraft) -> Notification:
        """Write ``draft`` in the current transaction, raising ``NotificationError`` on failure."""

        try:
            notification = await self._persist(draft)
        except SQLAlchemyError as exc:
            raise NotificationError(
                f"Failed to record {draft.notification_type.value} notification"
            ) from exc
        self._store.record_notification(draft.notification_type.value)
        logger.debug(
            "Recorded notification",
            notification_id=str(notification.id),
            recipient_id=str(draft.recipient_id),
            notification_type=draft.notification_type.value,
        )
        return notification

    async def emit_guarded(self, draft: NotificationDraft) -> bool:
        """Emit inside a SAVEPOINT; failures are logged and reported as ``False``."""

        try:
            async with self._db.begin_nested():
                await self.emit(draft)
        except (NotificationError, SQLAlchemyError) as exc:
            self._store.record_notification("failed")
            logger.warning(
                "Notification emission failed",
                error_code=EngineErrorCode.NOTIFICATION_FAILED.value,
                recipient_id=str(draft.recipient_id),
                notification_type=draft.notification_type.value,
                error=str(exc),
            )
            return False
        return True

    async def deliver_deferred(self, drafts: Iterable[NotificationDraft]) -> int:
        """Retry drafts that failed during a committed transaction, one commit each."""

        delivered = 0
        for draft in drafts:
            try:
                await self.emit(draft)
                await self._db.commit()
            except (NotificationError, SQLAlchemyError) as exc:
                await self._db.rollback()
                self._store.record_notification("retry_failed")
                logger.error(
                    "Deferred notification retry failed",
                    error_code=EngineErrorCode.NOTIFICATION_FAILED.value,
                    recipient_id=str(draft.recipient_id),
                    notification_type=draft.notification_type.value,
                    error=str(exc),
                )
                continue
            delivered += 1
            self._store.record_notification("retried")
        return delivered

    async def mark_actioned(self, notification_id: UUID | None) -> Notification | None:
        """Resolve an action-required notification; joins the caller's transaction."""

        if notification_id is None:
            return None
        notification = await self._db.get(Notification, notification_id)
        if notification is None:
            logger.warning("Originating notification missing", notification_id=str(notification_id))
            return None
        now = datetime.now(timezone.utc)
        notification.action_taken = True
        notification.actioned_at = now
        if not notification.is_read:
            notification.is_read = True
            notification.read_at = now
        return notification

    async def mark_read(self, notification_id: UUID) -> Notification | None:
        notification = await self._db.get(Notification, notification_id)
        if notification is None:
            return None
        if not notification.is_read:
            notification.is_read = True
            notification.read_at = datetime.now(timezone.utc)
            await self._db.commit()
        return notification

    async def list_for_recipient(
        self,
        recipient_id: UUID,
        *,
        unread_only: bool = False,
        limit: int = 50,
    ) -> Sequence[Notification]:
        stmt = select(Notification).where(Notification.recipient_id == recipient_id)
        if unread_only:
            stmt = stmt.where(Notification.is_read.is_(False))
        stmt = stmt.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit)
        result = await self._db.execute(stmt)
        return result.scalars().all()

    async def _persist(self, draft: NotificationDraft) -> Notification:
        notification = Notification(
            recipient_id=draft.recipient_id,
            recipient_role=draft.role,
            notification_type=draft.notification_type,
            title=draft.title,
            message=draft.message,
            payload=_json_safe(draft.data),
            requires_action=draft.requires_action,
            reference_id=draft.reference_id,
        )
        self._db.add(notification)
        await self._db.flush()
        return notification


def _json_safe(data: dict[str, Any]) -> dict[str, Any]:
    safe: dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, UUID):
            safe[key] = str(value)
        elif isinstance(value, datetime):
            safe[key] = value.isoformat()
        else:
            safe[key] = value
    return safe


__all__ = ["NotificationDispatcher", "NotificationDraft"]
