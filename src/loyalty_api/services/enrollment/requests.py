"""Approval request persistence and lazy expiry."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_api.core.settings import settings
from loyalty_api.db.capabilities import SchemaCapabilities
from loyalty_api.models.enrollment import ApprovalRequest, ApprovalRequestStatus, LoyaltyProgram
from loyalty_api.models.notification import NotificationType, RecipientRole
from loyalty_api.services.notifications import NotificationDispatcher, NotificationDraft
from loyalty_api.services.notifications.templates import render_enrollment_request


def ensure_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def is_expired(request: ApprovalRequest, now: datetime | None = None) -> bool:
    """PENDING requests past ``expires_at`` count as implicitly rejected."""

    if request.status != ApprovalRequestStatus.PENDING or request.expires_at is None:
        return False
    current = now or datetime.now(timezone.utc)
    return ensure_aware(request.expires_at) <= current


class ApprovalRequestStore:
    def __init__(
        self,
        db_session: AsyncSession,
        *,
        dispatcher: NotificationDispatcher | None = None,
        capabilities: SchemaCapabilities | None = None,
        ttl_days: int | None = None,
    ) -> None:
        self._db = db_session
        self._dispatcher = dispatcher or NotificationDispatcher(db_session)
        self._capabilities = capabilities or SchemaCapabilities()
        self._ttl = timedelta(days=ttl_days if ttl_days is not None else settings.approval_request_ttl_days)

    async def get(self, request_id: UUID, *, for_update: bool = False) -> ApprovalRequest | None:
        stmt = select(ApprovalRequest).where(ApprovalRequest.id == request_id)
        if for_update:
            stmt = stmt.with_for_update()
        stmt = stmt.execution_options(populate_existing=True)
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def program_name(self, program_id: UUID) -> str | None:
        if not self._capabilities.has_program_table:
            return None
        program = await self._db.get(LoyaltyProgram, program_id)
        return program.name if program else None

    async def create_request(
        self,
        customer_id: UUID,
        business_id: UUID,
        program_id: UUID,
    ) -> ApprovalRequest:
        """Invite a customer into a program, reusing a live pending invitation."""

        now = datetime.now(timezone.utc)
        stmt = select(ApprovalRequest).where(
            ApprovalRequest.customer_id == customer_id,
            ApprovalRequest.program_id == program_id,
            ApprovalRequest.status == ApprovalRequestStatus.PENDING,
        )
        for pending in (await self._db.execute(stmt)).scalars().all():
            if is_expired(pending, now):
                await self.expire(pending, now=now)
                continue
            logger.info(
                "Reusing pending approval request",
                request_id=str(pending.id),
                customer_id=str(customer_id),
                program_id=str(program_id),
            )
            await self._db.commit()
            return pending

        program_name = await self.program_name(program_id)
        rendered = render_enrollment_request(program_name)
        notification = await self._dispatcher.emit(
            NotificationDraft(
                recipient_id=customer_id,
                role=RecipientRole.CUSTOMER,
                notification_type=NotificationType.ENROLLMENT_REQUEST,
                title=rendered.title,
                message=rendered.message,
                data={
                    "businessId": business_id,
                    "programId": program_id,
                    "programName": program_name,
                },
                requires_action=True,
                reference_id=str(program_id),
            )
        )
        request = ApprovalRequest(
            customer_id=customer_id,
            business_id=business_id,
            program_id=program_id,
            notification_id=notification.id,
            status=ApprovalRequestStatus.PENDING,
            requested_at=now,
            expires_at=now + self._ttl,
        )
        self._db.add(request)
        await self._db.flush()
        notification.payload = {**(notification.payload or {}), "approvalRequestId": str(request.id)}
        await self._db.commit()
        logger.info(
            "Created approval request",
            request_id=str(request.id),
            customer_id=str(customer_id),
            business_id=str(business_id),
            program_id=str(program_id),
            expires_at=request.expires_at.isoformat(),
        )
        return request

    async def expire(self, request: ApprovalRequest, *, now: datetime | None = None) -> None:
        """Transition an expired PENDING request to REJECTED in the caller's transaction."""

        current = now or datetime.now(timezone.utc)
        request.status = ApprovalRequestStatus.REJECTED
        request.responded_at = current
        await self._dispatcher.mark_actioned(request.notification_id)
        await self._db.flush()
        logger.info(
            "Approval request expired",
            request_id=str(request.id),
            customer_id=str(request.customer_id),
            expires_at=ensure_aware(request.expires_at).isoformat() if request.expires_at else None,
        )

    async def list_pending(self, customer_id: UUID) -> Sequence[ApprovalRequest]:
        """Return live pending requests, expiring stale ones on the way."""

        now = datetime.now(timezone.utc)
        stmt = (
            select(ApprovalRequest)
            .where(
                ApprovalRequest.customer_id == customer_id,
                ApprovalRequest.status == ApprovalRequestStatus.PENDING,
            )
            .order_by(ApprovalRequest.requested_at.desc())
        )
        requests = (await self._db.execute(stmt)).scalars().all()
        live: list[ApprovalRequest] = []
        expired = 0
        for request in requests:
            if is_expired(request, now):
                await self.expire(request, now=now)
                expired += 1
            else:
                live.append(request)
        if expired:
            await self._db.commit()
        return live

    async def expire_stale(self, *, limit: int = 500) -> int:
        """Sweep expired PENDING requests; returns how many were rejected."""

        now = datetime.now(timezone.utc)
        stmt = (
            select(ApprovalRequest)
            .where(
                ApprovalRequest.status == ApprovalRequestStatus.PENDING,
                ApprovalRequest.expires_at.is_not(None),
                ApprovalRequest.expires_at <= now,
            )
            .limit(limit)
        )
        requests = (await self._db.execute(stmt)).scalars().all()
        for request in requests:
            await self.expire(request, now=now)
        await self._db.commit()
        return len(requests)


__all__ = ["ApprovalRequestStore", "ensure_aware", "is_expired"]
