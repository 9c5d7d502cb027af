from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy import select

from loyalty_api.models.enrollment import ApprovalRequest, ApprovalRequestStatus, Enrollment, EnrollmentStatus
from loyalty_api.models.loyalty import ActivityType, CardTier, LoyaltyCard, PointsActivity, PointsSource
from loyalty_api.models.notification import Notification, NotificationType
from loyalty_api.services.consistency import Anomaly, AnomalyKind, ConsistencyAuditor, RepairAction


async def _seed_enrollment_without_card(factory):
    customer_id, business_id, program_id = uuid4(), uuid4(), uuid4()
    async with factory() as session:
        session.add(
            ApprovalRequest(
                customer_id=customer_id,
                business_id=business_id,
                program_id=program_id,
                status=ApprovalRequestStatus.APPROVED,
                responded_at=datetime.now(timezone.utc),
            )
        )
        session.add(
            Enrollment(
                customer_id=customer_id,
                business_id=business_id,
                program_id=program_id,
                status=EnrollmentStatus.ACTIVE,
            )
        )
        await session.commit()
    return customer_id, business_id, program_id


def _activity(card_id, activity_type, points, ref):
    return PointsActivity(
        card_id=card_id,
        activity_type=activity_type,
        points=points,
        source=PointsSource.MANUAL,
        transaction_ref=ref,
    )


@pytest.mark.asyncio
async def test_missing_card_is_detected_and_repaired_once(session_factory):
    customer_id, business_id, program_id = await _seed_enrollment_without_card(session_factory)

    async with session_factory() as session:
        auditor = ConsistencyAuditor(session)
        anomalies = await auditor.scan_for_drift()
        assert [anomaly.kind for anomaly in anomalies] == [AnomalyKind.MISSING_CARD]

        result = await auditor.repair(anomalies[0])
        assert result.action == RepairAction.CARD_CREATED
        assert result.repaired is True

        assert await auditor.scan_for_drift() == []
        repeat = await auditor.repair(anomalies[0])
        assert repeat.action == RepairAction.NO_OP

    async with session_factory() as session:
        cards = (
            await session.execute(
                select(LoyaltyCard).where(LoyaltyCard.customer_id == customer_id, LoyaltyCard.program_id == program_id)
            )
        ).scalars().all()
        assert len(cards) == 1
        assert cards[0].id == result.card_id
        repairs = (
            await session.execute(
                select(Notification).where(
                    Notification.recipient_id == business_id,
                    Notification.notification_type == NotificationType.CONSISTENCY_REPAIR,
                )
            )
        ).scalars().all()
        assert len(repairs) == 1
        assert repairs[0].payload["action"] == "CARD_CREATED"


@pytest.mark.asyncio
async def test_duplicate_active_cards_keep_the_oldest(session_factory, engine_store):
    customer_id, business_id, program_id = uuid4(), uuid4(), uuid4()
    created = datetime.now(timezone.utc) - timedelta(days=2)
    async with session_factory() as session:
        session.add(
            Enrollment(customer_id=customer_id, business_id=business_id, program_id=program_id)
        )
        oldest = LoyaltyCard(
            customer_id=customer_id,
            business_id=business_id,
            program_id=program_id,
            card_number="GC-OLDEST",
            created_at=created,
        )
        newer = LoyaltyCard(
            customer_id=customer_id,
            business_id=business_id,
            program_id=program_id,
            card_number="GC-NEWER",
            created_at=created + timedelta(hours=1),
        )
        session.add_all([oldest, newer])
        await session.commit()

    async with session_factory() as session:
        auditor = ConsistencyAuditor(session)
        anomalies = await auditor.scan_for_drift()
        assert [anomaly.kind for anomaly in anomalies] == [AnomalyKind.DUPLICATE_ACTIVE_CARDS]
        assert set(anomalies[0].card_ids) == {oldest.id, newer.id}

        result = await auditor.repair(anomalies[0])

    assert result.action == RepairAction.DUPLICATES_DEACTIVATED
    assert result.card_id == oldest.id
    assert result.deactivated_card_ids == [newer.id]

    async with session_factory() as session:
        assert (await session.get(LoyaltyCard, oldest.id)).is_active is True
        assert (await session.get(LoyaltyCard, newer.id)).is_active is False

    consistency = engine_store.snapshot().consistency
    assert consistency["anomalies"] == {"DUPLICATE_ACTIVE_CARDS": 1}
    assert consistency["repairs"] == {"DUPLICATES_DEACTIVATED": 1}


@pytest.mark.asyncio
async def test_balance_drift_is_recomputed_from_activity(session_factory, seed_card):
    card = await seed_card(session_factory, points=3000)
    async with session_factory() as session:
        session.add_all(
            [
                _activity(card.id, ActivityType.CREDIT, 80, "drift-credit"),
                _activity(card.id, ActivityType.DEBIT, 20, "drift-debit"),
            ]
        )
        await session.commit()

    async with session_factory() as session:
        auditor = ConsistencyAuditor(session)
        anomalies = await auditor.scan_for_drift()
        assert len(anomalies) == 1
        drift = anomalies[0]
        assert drift.kind == AnomalyKind.BALANCE_DRIFT
        assert drift.recorded_points == 3000
        assert drift.ledger_points == 60

        result = await auditor.repair(drift)
        assert result.action == RepairAction.BALANCE_RECOMPUTED
        assert await auditor.scan_for_drift() == []

    async with session_factory() as session:
        stored = await session.get(LoyaltyCard, card.id)
        assert stored.points == 60
        assert stored.tier == CardTier.STANDARD
        enrollment = (
            await session.execute(select(Enrollment).where(Enrollment.customer_id == card.customer_id))
        ).scalar_one()
        assert enrollment.current_points == 60
        activities = (
            await session.execute(select(PointsActivity).where(PointsActivity.card_id == card.id))
        ).scalars().all()
        assert len(activities) == 2


@pytest.mark.asyncio
async def test_drift_within_tolerance_is_ignored(session_factory, seed_card):
    card = await seed_card(session_factory, points=12)
    async with session_factory() as session:
        session.add(_activity(card.id, ActivityType.CREDIT, 10, "tolerance"))
        await session.commit()

    async with session_factory() as session:
        assert await ConsistencyAuditor(session, tolerance=5).scan_for_drift() == []
        assert len(await ConsistencyAuditor(session, tolerance=0).scan_for_drift()) == 1


@pytest.mark.asyncio
async def test_negative_history_requires_manual_review(session_factory, seed_card):
    card = await seed_card(session_factory, points=10)
    async with session_factory() as session:
        session.add(_activity(card.id, ActivityType.DEBIT, 30, "orphan-debit"))
        await session.commit()

    async with session_factory() as session:
        auditor = ConsistencyAuditor(session)
        summary = await auditor.run_sweep(repair=True)

    assert summary.manual_review == 1
    assert summary.repairs_applied == 0
    assert summary.repairs[0].action == RepairAction.MANUAL_REVIEW
    assert summary.repairs[0].success is False

    async with session_factory() as session:
        assert (await session.get(LoyaltyCard, card.id)).points == 10


@pytest.mark.asyncio
async def test_approved_request_without_enrollment_is_backfilled(session_factory):
    customer_id, business_id, program_id = uuid4(), uuid4(), uuid4()
    async with session_factory() as session:
        session.add(
            ApprovalRequest(
                customer_id=customer_id,
                business_id=business_id,
                program_id=program_id,
                status=ApprovalRequestStatus.APPROVED,
                responded_at=datetime.now(timezone.utc),
            )
        )
        await session.commit()

    async with session_factory() as session:
        auditor = ConsistencyAuditor(session)
        summary = await auditor.run_sweep(repair=True)
        assert summary.counts_by_kind() == {"MISSING_ENROLLMENT": 1}
        assert summary.repairs_applied == 1
        assert summary.repairs[0].action == RepairAction.ENROLLMENT_CREATED
        assert await auditor.scan_for_drift() == []

    async with session_factory() as session:
        enrollment = (
            await session.execute(
                select(Enrollment).where(Enrollment.customer_id == customer_id, Enrollment.program_id == program_id)
            )
        ).scalar_one()
        assert enrollment.status == EnrollmentStatus.ACTIVE
        card = (
            await session.execute(select(LoyaltyCard).where(LoyaltyCard.customer_id == customer_id))
        ).scalar_one()
        assert card.is_active is True


@pytest.mark.asyncio
async def test_missing_enrollment_without_approved_request_is_left_alone(session_factory):
    customer_id, program_id = uuid4(), uuid4()
    async with session_factory() as session:
        session.add(
            ApprovalRequest(
                customer_id=customer_id,
                business_id=uuid4(),
                program_id=program_id,
                status=ApprovalRequestStatus.REJECTED,
                responded_at=datetime.now(timezone.utc),
            )
        )
        await session.commit()

    anomaly = Anomaly(
        kind=AnomalyKind.MISSING_ENROLLMENT,
        customer_id=customer_id,
        program_id=program_id,
        business_id=uuid4(),
    )
    async with session_factory() as session:
        result = await ConsistencyAuditor(session).repair(anomaly)

    assert result.action == RepairAction.NO_OP
    assert result.repaired is False

    async with session_factory() as session:
        assert (await session.execute(select(Enrollment))).scalars().all() == []
        assert (await session.execute(select(LoyaltyCard))).scalars().all() == []


@pytest.mark.asyncio
async def test_missing_enrollment_repair_uses_the_approved_request_business(session_factory):
    customer_id, business_id, program_id = uuid4(), uuid4(), uuid4()
    async with session_factory() as session:
        session.add(
            ApprovalRequest(
                customer_id=customer_id,
                business_id=business_id,
                program_id=program_id,
                status=ApprovalRequestStatus.APPROVED,
                responded_at=datetime.now(timezone.utc),
            )
        )
        await session.commit()

    anomaly = Anomaly(
        kind=AnomalyKind.MISSING_ENROLLMENT,
        customer_id=customer_id,
        program_id=program_id,
        business_id=uuid4(),
    )
    async with session_factory() as session:
        result = await ConsistencyAuditor(session).repair(anomaly)

    assert result.action == RepairAction.ENROLLMENT_CREATED

    async with session_factory() as session:
        enrollment = (await session.execute(select(Enrollment))).scalar_one()
        card = (await session.execute(select(LoyaltyCard))).scalar_one()
    assert enrollment.business_id == business_id
    assert card.business_id == business_id
    assert card.id == result.card_id


@pytest.mark.asyncio
async def test_missing_card_repair_resets_enrollment_points(session_factory):
    customer_id, business_id, program_id = uuid4(), uuid4(), uuid4()
    async with session_factory() as session:
        session.add(
            Enrollment(
                customer_id=customer_id,
                business_id=business_id,
                program_id=program_id,
                status=EnrollmentStatus.ACTIVE,
                current_points=40,
            )
        )
        await session.commit()

    anomaly = Anomaly(kind=AnomalyKind.MISSING_CARD, customer_id=customer_id, program_id=program_id)
    async with session_factory() as session:
        result = await ConsistencyAuditor(session).repair(anomaly)

    assert result.action == RepairAction.CARD_CREATED

    async with session_factory() as session:
        enrollment = (await session.execute(select(Enrollment))).scalar_one()
        card = await session.get(LoyaltyCard, result.card_id)
    assert card.points == 0
    assert enrollment.current_points == 0
