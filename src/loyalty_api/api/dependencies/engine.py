"""Request-scoped wiring for engine services."""

from __future__ import annotations

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_api.db.capabilities import SchemaCapabilities
from loyalty_api.db.session import get_session
from loyalty_api.services.consistency import ConsistencyAuditor
from loyalty_api.services.enrollment import ApprovalRequestStore, EnrollmentProcessor
from loyalty_api.services.ledger import PointsLedger
from loyalty_api.services.notifications import NotificationDispatcher


def get_capabilities(request: Request) -> SchemaCapabilities:
    """Capabilities resolved at startup; full schema assumed when detection never ran."""

    capabilities = getattr(request.app.state, "schema_capabilities", None)
    return capabilities if isinstance(capabilities, SchemaCapabilities) else SchemaCapabilities()


async def get_enrollment_processor(
    db: AsyncSession = Depends(get_session),
    capabilities: SchemaCapabilities = Depends(get_capabilities),
) -> EnrollmentProcessor:
    return EnrollmentProcessor(db, capabilities=capabilities)


async def get_request_store(
    db: AsyncSession = Depends(get_session),
    capabilities: SchemaCapabilities = Depends(get_capabilities),
) -> ApprovalRequestStore:
    return ApprovalRequestStore(db, capabilities=capabilities)


async def get_points_ledger(db: AsyncSession = Depends(get_session)) -> PointsLedger:
    return PointsLedger(db)


async def get_notification_dispatcher(db: AsyncSession = Depends(get_session)) -> NotificationDispatcher:
    return NotificationDispatcher(db)


async def get_consistency_auditor(db: AsyncSession = Depends(get_session)) -> ConsistencyAuditor:
    return ConsistencyAuditor(db)
