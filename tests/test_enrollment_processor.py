import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from loyalty_api.models.enrollment import (
    ApprovalRequest,
    ApprovalRequestStatus,
    CustomerBusinessRelationship,
    Enrollment,
    EnrollmentStatus,
    LoyaltyProgram,
    RelationshipStatus,
)
from loyalty_api.models.loyalty import LoyaltyCard, PointsActivity, PointsSource
from loyalty_api.models.notification import Notification, NotificationState, NotificationType, RecipientRole
from loyalty_api.services.cards import CardProvisioner
from loyalty_api.services.enrollment import ApprovalRequestStore, EnrollmentProcessor
from loyalty_api.services.errors import CardProvisioningError, EngineErrorCode
from loyalty_api.services.notifications import NotificationDispatcher


class FlakyDispatcher(NotificationDispatcher):
    """Fails the first ``failures`` writes of the given notification types."""

    def __init__(self, db_session, *, fail_types, failures=1):
        super().__init__(db_session)
        self._fail_types = set(fail_types)
        self._remaining = failures

    async def _persist(self, draft):
        if draft.notification_type in self._fail_types and self._remaining > 0:
            self._remaining -= 1
            raise OperationalError("INSERT INTO notifications", {}, Exception("database is locked"))
        return await super()._persist(draft)


class ExhaustedProvisioner(CardProvisioner):
    async def get_or_create_card(self, customer_id, business_id, program_id):
        raise CardProvisioningError("Could not allocate a unique card number after 5 attempts")


class LockedEnrollmentProcessor(EnrollmentProcessor):
    async def _ensure_enrollment(self, context, now):
        raise OperationalError("INSERT INTO program_enrollments", {}, Exception("database is locked"))


async def _seed_invitation(factory):
    customer_id, business_id = uuid4(), uuid4()
    async with factory() as session:
        program = LoyaltyProgram(business_id=business_id, name="Coffee Club")
        session.add(program)
        await session.commit()
        return await ApprovalRequestStore(session).create_request(customer_id, business_id, program.id)


async def _assert_untouched(factory, request):
    async with factory() as session:
        stored = await session.get(ApprovalRequest, request.id)
        assert stored.status == ApprovalRequestStatus.PENDING
        assert stored.responded_at is None
        assert (await session.execute(select(Enrollment))).scalars().all() == []
        assert (await session.execute(select(LoyaltyCard))).scalars().all() == []
        notification = await session.get(Notification, request.notification_id)
        assert notification.action_taken is False
        assert notification.state == NotificationState.PENDING_ACTION


async def _active_cards(session, request):
    stmt = select(LoyaltyCard).where(
        LoyaltyCard.customer_id == request.customer_id,
        LoyaltyCard.program_id == request.program_id,
        LoyaltyCard.is_active.is_(True),
    )
    return (await session.execute(stmt)).scalars().all()


async def _notification_types(session, recipient_id):
    stmt = select(Notification.notification_type).where(Notification.recipient_id == recipient_id)
    return sorted(value.value for value in (await session.execute(stmt)).scalars().all())


@pytest.mark.asyncio
async def test_approval_creates_enrollment_card_and_notifications(session_factory, seed_request, engine_store):
    request = await seed_request(session_factory)

    async with session_factory() as session:
        result = await EnrollmentProcessor(session).process_approval(request.id, True)

    assert result.success is True
    assert result.error_code is None
    assert result.card_created is True
    assert result.card_id is not None
    assert result.warnings == []

    async with session_factory() as session:
        stored = await session.get(ApprovalRequest, request.id)
        assert stored.status == ApprovalRequestStatus.APPROVED
        assert stored.responded_at is not None

        enrollment = (
            await session.execute(
                select(Enrollment).where(
                    Enrollment.customer_id == request.customer_id,
                    Enrollment.program_id == request.program_id,
                )
            )
        ).scalar_one()
        assert enrollment.status == EnrollmentStatus.ACTIVE
        assert enrollment.current_points == 0

        cards = await _active_cards(session, request)
        assert [card.id for card in cards] == [result.card_id]
        assert cards[0].points == 0
        assert cards[0].card_number.startswith("GC-")

        assert await _notification_types(session, request.business_id) == ["ENROLLMENT_ACCEPTED"]
        assert await _notification_types(session, request.customer_id) == ["CARD_CREATED", "ENROLLMENT_SUCCESS"]

        relationship = (
            await session.execute(
                select(CustomerBusinessRelationship).where(
                    CustomerBusinessRelationship.customer_id == request.customer_id,
                    CustomerBusinessRelationship.business_id == request.business_id,
                )
            )
        ).scalar_one()
        assert relationship.status == RelationshipStatus.ACTIVE

    assert engine_store.snapshot().approvals == {"approved": 1}


@pytest.mark.asyncio
async def test_repeated_approval_returns_cached_card(session_factory, seed_request):
    request = await seed_request(session_factory)

    async with session_factory() as session:
        first = await EnrollmentProcessor(session).process_approval(request.id, True)
    async with session_factory() as session:
        second = await EnrollmentProcessor(session).process_approval(request.id, True)

    assert second.success is True
    assert second.error_code == EngineErrorCode.ALREADY_PROCESSED
    assert second.card_id == first.card_id
    assert second.card_created is False

    async with session_factory() as session:
        assert len(await _active_cards(session, request)) == 1
        notifications = (await session.execute(select(func.count(Notification.id)))).scalar_one()
        assert notifications == 3


@pytest.mark.asyncio
async def test_reject_after_approval_is_already_processed(session_factory, seed_request):
    request = await seed_request(session_factory)

    async with session_factory() as session:
        approved = await EnrollmentProcessor(session).process_approval(request.id, True)
    async with session_factory() as session:
        rejected = await EnrollmentProcessor(session).process_approval(request.id, False)

    assert rejected.success is True
    assert rejected.error_code == EngineErrorCode.ALREADY_PROCESSED
    assert rejected.approved is True
    assert rejected.card_id == approved.card_id

    async with session_factory() as session:
        stored = await session.get(ApprovalRequest, request.id)
        assert stored.status == ApprovalRequestStatus.APPROVED
        assert len(await _active_cards(session, request)) == 1


@pytest.mark.asyncio
async def test_decline_creates_no_enrollment_and_notifies_both_parties(session_factory, seed_request):
    request = await seed_request(session_factory)

    async with session_factory() as session:
        result = await EnrollmentProcessor(session).process_approval(request.id, False)

    assert result.success is True
    assert result.approved is False
    assert result.card_id is None

    async with session_factory() as session:
        stored = await session.get(ApprovalRequest, request.id)
        assert stored.status == ApprovalRequestStatus.REJECTED
        enrollments = (await session.execute(select(func.count(Enrollment.id)))).scalar_one()
        cards = (await session.execute(select(func.count(LoyaltyCard.id)))).scalar_one()
        assert enrollments == 0
        assert cards == 0
        assert await _notification_types(session, request.business_id) == ["ENROLLMENT_REJECTED"]
        assert await _notification_types(session, request.customer_id) == ["ENROLLMENT_DECLINED"]
        relationships = (await session.execute(select(func.count(CustomerBusinessRelationship.id)))).scalar_one()
        assert relationships == 0


@pytest.mark.asyncio
async def test_decline_records_relationship_when_enabled(session_factory, seed_request):
    request = await seed_request(session_factory)

    async with session_factory() as session:
        processor = EnrollmentProcessor(session, record_declined_relationships=True)
        result = await processor.process_approval(request.id, False)

    assert result.success is True
    async with session_factory() as session:
        relationship = (await session.execute(select(CustomerBusinessRelationship))).scalar_one()
        assert relationship.status == RelationshipStatus.DECLINED


@pytest.mark.asyncio
async def test_unknown_request_is_reported(session_factory):
    async with session_factory() as session:
        result = await EnrollmentProcessor(session).process_approval(uuid4(), True)

    assert result.success is False
    assert result.error_code == EngineErrorCode.REQUEST_NOT_FOUND


@pytest.mark.asyncio
async def test_expired_request_is_rejected_lazily(session_factory, seed_request):
    request = await seed_request(session_factory, expires_in=timedelta(minutes=-5))

    async with session_factory() as session:
        result = await EnrollmentProcessor(session).process_approval(request.id, True)

    assert result.success is False
    assert result.error_code == EngineErrorCode.REQUEST_EXPIRED

    async with session_factory() as session:
        stored = await session.get(ApprovalRequest, request.id)
        assert stored.status == ApprovalRequestStatus.REJECTED
        assert (await session.execute(select(func.count(LoyaltyCard.id)))).scalar_one() == 0

    async with session_factory() as session:
        again = await EnrollmentProcessor(session).process_approval(request.id, True)
    assert again.error_code == EngineErrorCode.ALREADY_PROCESSED
    assert again.approved is False


@pytest.mark.asyncio
async def test_approval_reactivates_cancelled_enrollment(session_factory, seed_request):
    request = await seed_request(session_factory)
    async with session_factory() as session:
        cancelled = Enrollment(
            customer_id=request.customer_id,
            program_id=request.program_id,
            business_id=request.business_id,
            status=EnrollmentStatus.CANCELLED,
            current_points=0,
        )
        session.add(cancelled)
        await session.commit()

    async with session_factory() as session:
        result = await EnrollmentProcessor(session).process_approval(request.id, True)

    assert result.success is True
    assert result.enrollment_id == cancelled.id
    async with session_factory() as session:
        enrollment = await session.get(Enrollment, cancelled.id)
        assert enrollment.status == EnrollmentStatus.ACTIVE


@pytest.mark.asyncio
async def test_welcome_points_credited_once(session_factory, seed_request):
    request = await seed_request(session_factory, welcome_points=50)

    async with session_factory() as session:
        result = await EnrollmentProcessor(session).process_approval(request.id, True)

    assert result.success is True
    assert result.welcome_points_awarded == 50

    async with session_factory() as session:
        card = await session.get(LoyaltyCard, result.card_id)
        assert card.points == 50
        activity = (
            await session.execute(select(PointsActivity).where(PointsActivity.card_id == card.id))
        ).scalar_one()
        assert activity.source == PointsSource.WELCOME
        assert activity.transaction_ref == f"welcome:{card.id}"
        assert "POINTS_ADDED" in await _notification_types(session, request.customer_id)


@pytest.mark.asyncio
async def test_failed_notification_does_not_roll_back_enrollment(session_factory, seed_request, engine_store):
    request = await seed_request(session_factory)

    async with session_factory() as session:
        dispatcher = FlakyDispatcher(session, fail_types={NotificationType.CARD_CREATED})
        result = await EnrollmentProcessor(session, dispatcher=dispatcher).process_approval(request.id, True)

    assert result.success is True
    assert EngineErrorCode.NOTIFICATION_FAILED.value in result.warnings

    async with session_factory() as session:
        assert len(await _active_cards(session, request)) == 1
        # the deferred retry delivered the card notification after commit
        assert await _notification_types(session, request.customer_id) == ["CARD_CREATED", "ENROLLMENT_SUCCESS"]

    notifications = engine_store.snapshot().notifications
    assert notifications["failed"] == 1
    assert notifications["retried"] == 1


@pytest.mark.asyncio
async def test_failed_notification_without_retry_is_dropped(session_factory, seed_request):
    request = await seed_request(session_factory)

    async with session_factory() as session:
        dispatcher = FlakyDispatcher(session, fail_types={NotificationType.ENROLLMENT_ACCEPTED})
        processor = EnrollmentProcessor(session, dispatcher=dispatcher, retry_notifications=False)
        result = await processor.process_approval(request.id, True)

    assert result.success is True
    async with session_factory() as session:
        assert await _notification_types(session, request.business_id) == []
        assert len(await _active_cards(session, request)) == 1
        roles = (
            await session.execute(select(Notification.recipient_role).where(Notification.recipient_id == request.customer_id))
        ).scalars().all()
        assert set(roles) == {RecipientRole.CUSTOMER}


@pytest.mark.asyncio
async def test_card_failure_rolls_back_the_whole_approval(session_factory, engine_store):
    request = await _seed_invitation(session_factory)

    async with session_factory() as session:
        processor = EnrollmentProcessor(session, provisioner=ExhaustedProvisioner(session))
        result = await processor.process_approval(request.id, True)

    assert result.success is False
    assert result.error_code == EngineErrorCode.CARD_CREATION_FAILED
    assert result.card_id is None
    await _assert_untouched(session_factory, request)
    assert engine_store.snapshot().approvals == {"failed": 1}


@pytest.mark.asyncio
async def test_enrollment_failure_rolls_back_the_whole_approval(session_factory):
    request = await _seed_invitation(session_factory)

    async with session_factory() as session:
        result = await LockedEnrollmentProcessor(session).process_approval(request.id, True)

    assert result.success is False
    assert result.error_code == EngineErrorCode.ENROLLMENT_CREATION_FAILED
    await _assert_untouched(session_factory, request)

    async with session_factory() as session:
        retried = await EnrollmentProcessor(session).process_approval(request.id, True)
    assert retried.success is True
    assert retried.error_code is None


@pytest.mark.asyncio
async def test_concurrent_approvals_create_a_single_card(file_session_factory, seed_request):
    request = await seed_request(file_session_factory)

    async def _approve():
        async with file_session_factory() as session:
            return await EnrollmentProcessor(session).process_approval(request.id, True)

    first, second = await asyncio.gather(_approve(), _approve())

    assert first.success and second.success
    assert first.card_id == second.card_id
    codes = [first.error_code, second.error_code]
    assert codes.count(EngineErrorCode.ALREADY_PROCESSED) == 1
    assert codes.count(None) == 1

    async with file_session_factory() as session:
        assert len(await _active_cards(session, request)) == 1
        enrollments = (
            await session.execute(
                select(Enrollment).where(
                    Enrollment.customer_id == request.customer_id,
                    Enrollment.program_id == request.program_id,
                )
            )
        ).scalars().all()
        assert len(enrollments) == 1


@pytest.mark.asyncio
async def test_already_processed_lookup_takes_no_enrollment_lock(session_factory, seed_request, monkeypatch):
    request = await seed_request(session_factory)
    async with session_factory() as session:
        approved = await EnrollmentProcessor(session).process_approval(request.id, True)

    lookups = []
    original = EnrollmentProcessor._find_enrollment

    async def _recording_lookup(self, customer_id, program_id, *, lock=True):
        lookups.append(lock)
        return await original(self, customer_id, program_id, lock=lock)

    monkeypatch.setattr(EnrollmentProcessor, "_find_enrollment", _recording_lookup)

    async with session_factory() as session:
        repeat = await EnrollmentProcessor(session).process_approval(request.id, True)

    assert repeat.error_code == EngineErrorCode.ALREADY_PROCESSED
    assert repeat.enrollment_id == approved.enrollment_id
    assert lookups == [False]
