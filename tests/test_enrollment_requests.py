from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy import select

from loyalty_api.models.enrollment import ApprovalRequest, ApprovalRequestStatus, LoyaltyProgram
from loyalty_api.models.notification import Notification, NotificationState, NotificationType
from loyalty_api.services.enrollment import ApprovalRequestStore, EnrollmentProcessor, is_expired


@pytest.mark.asyncio
async def test_create_request_emits_action_notification(session_factory):
    customer_id, business_id = uuid4(), uuid4()
    async with session_factory() as session:
        program = LoyaltyProgram(business_id=business_id, name="Bakery Rewards")
        session.add(program)
        await session.commit()

        store = ApprovalRequestStore(session, ttl_days=3)
        request = await store.create_request(customer_id, business_id, program.id)
        reused = await store.create_request(customer_id, business_id, program.id)

    assert reused.id == request.id
    assert request.status == ApprovalRequestStatus.PENDING
    assert request.notification_id is not None

    async with session_factory() as session:
        notification = await session.get(Notification, request.notification_id)
        assert notification.notification_type == NotificationType.ENROLLMENT_REQUEST
        assert notification.recipient_id == customer_id
        assert notification.state == NotificationState.PENDING_ACTION
        assert "Bakery Rewards" in notification.message
        assert notification.payload["approvalRequestId"] == str(request.id)
        notifications = (await session.execute(select(Notification))).scalars().all()
        assert len(notifications) == 1


@pytest.mark.asyncio
async def test_processing_resolves_originating_notification(session_factory):
    customer_id, business_id = uuid4(), uuid4()
    async with session_factory() as session:
        program = LoyaltyProgram(business_id=business_id, name="Bakery Rewards")
        session.add(program)
        await session.commit()
        request = await ApprovalRequestStore(session).create_request(customer_id, business_id, program.id)

    async with session_factory() as session:
        result = await EnrollmentProcessor(session).process_approval(request.id, True)
    assert result.success is True

    async with session_factory() as session:
        notification = await session.get(Notification, request.notification_id)
        assert notification.action_taken is True
        assert notification.is_read is True
        assert notification.state == NotificationState.ACTIONED


@pytest.mark.asyncio
async def test_list_pending_expires_stale_requests(session_factory):
    customer_id = uuid4()
    now = datetime.now(timezone.utc)
    async with session_factory() as session:
        live = ApprovalRequest(
            customer_id=customer_id,
            business_id=uuid4(),
            program_id=uuid4(),
            status=ApprovalRequestStatus.PENDING,
            requested_at=now,
            expires_at=now + timedelta(days=2),
        )
        stale = ApprovalRequest(
            customer_id=customer_id,
            business_id=uuid4(),
            program_id=uuid4(),
            status=ApprovalRequestStatus.PENDING,
            requested_at=now - timedelta(days=10),
            expires_at=now - timedelta(days=3),
        )
        session.add_all([live, stale])
        await session.commit()

    async with session_factory() as session:
        pending = await ApprovalRequestStore(session).list_pending(customer_id)
        assert [request.id for request in pending] == [live.id]
        await session.commit()

    async with session_factory() as session:
        assert (await session.get(ApprovalRequest, stale.id)).status == ApprovalRequestStatus.REJECTED


def test_is_expired_handles_naive_timestamps() -> None:
    request = ApprovalRequest(
        status=ApprovalRequestStatus.PENDING,
        expires_at=datetime(2024, 1, 1, 12, 0, 0),
    )
    assert is_expired(request, now=datetime(2024, 1, 1, 12, 0, 1, tzinfo=timezone.utc)) is True
    assert is_expired(request, now=datetime(2024, 1, 1, 11, 59, 59, tzinfo=timezone.utc)) is False

    request.status = ApprovalRequestStatus.APPROVED
    assert is_expired(request, now=datetime(2025, 1, 1, tzinfo=timezone.utc)) is False
