"""Turn an accept/decline decision into enrollment, card, and notification state."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_api.core.settings import settings
from loyalty_api.db.capabilities import SchemaCapabilities
from loyalty_api.models.enrollment import (
    ApprovalRequest,
    ApprovalRequestStatus,
    CustomerBusinessRelationship,
    Enrollment,
    EnrollmentStatus,
    LoyaltyProgram,
    RelationshipStatus,
)
from loyalty_api.models.loyalty import LoyaltyCard, PointsSource
from loyalty_api.models.notification import NotificationType, RecipientRole
from loyalty_api.observability.ledger import EngineObservabilityStore, get_engine_store
from loyalty_api.services.cards import CardProvisioner
from loyalty_api.services.errors import CardProvisioningError, EngineErrorCode, EnrollmentStepError
from loyalty_api.services.ledger import PointsLedger
from loyalty_api.services.notifications import NotificationDispatcher, NotificationDraft
from loyalty_api.services.notifications.templates import (
    render_business_decision,
    render_card_created,
    render_customer_decision,
)

from .requests import ApprovalRequestStore, is_expired


_STEP_ERROR_CODES = {
    "request": EngineErrorCode.REQUEST_UPDATE_FAILED,
    "enrollment": EngineErrorCode.ENROLLMENT_CREATION_FAILED,
    "card": EngineErrorCode.CARD_CREATION_FAILED,
    "commit": EngineErrorCode.REQUEST_UPDATE_FAILED,
}


@dataclass
class ApprovalResult:
    success: bool
    card_id: UUID | None = None
    error_code: EngineErrorCode | None = None
    approved: bool | None = None
    enrollment_id: UUID | None = None
    card_created: bool = False
    welcome_points_awarded: int = 0
    warnings: list[str] = field(default_factory=list)


@dataclass
class _RequestContext:
    request_id: UUID
    customer_id: UUID
    business_id: UUID
    program_id: UUID
    notification_id: UUID | None


class EnrollmentProcessor:
    """State machine resolving a pending approval request exactly once.

    The request row is locked first, so duplicate submissions serialize and
    the later caller takes the idempotent ``ALREADY_PROCESSED`` branch.
    Request, enrollment, and card writes share one transaction. Notification
    writes are isolated in savepoints and retried after commit when they fail.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        capabilities: SchemaCapabilities | None = None,
        dispatcher: NotificationDispatcher | None = None,
        provisioner: CardProvisioner | None = None,
        ledger: PointsLedger | None = None,
        store: EngineObservabilityStore | None = None,
        record_declined_relationships: bool | None = None,
        retry_notifications: bool | None = None,
    ) -> None:
        self._db = db_session
        self._capabilities = capabilities or SchemaCapabilities()
        self._dispatcher = dispatcher or NotificationDispatcher(db_session)
        self._provisioner = provisioner or CardProvisioner(db_session)
        self._ledger = ledger or PointsLedger(db_session, dispatcher=self._dispatcher)
        self._store = store or get_engine_store()
        self._requests = ApprovalRequestStore(
            db_session,
            dispatcher=self._dispatcher,
            capabilities=self._capabilities,
        )
        self._record_declined = (
            settings.record_declined_relationships
            if record_declined_relationships is None
            else record_declined_relationships
        )
        self._retry_notifications = (
            settings.notification_retry_enabled if retry_notifications is None else retry_notifications
        )

    async def process_approval(self, request_id: UUID, approved: bool) -> ApprovalResult:
        try:
            request = await self._requests.get(request_id, for_update=True)
        except SQLAlchemyError as exc:
            await self._db.rollback()
            logger.exception("Approval request lookup failed", request_id=str(request_id), error=str(exc))
            return self._finish("failed", ApprovalResult(success=False, error_code=EngineErrorCode.REQUEST_UPDATE_FAILED))

        if request is None:
            await self._db.commit()
            logger.warning("Approval request not found", request_id=str(request_id))
            return self._finish("not_found", ApprovalResult(success=False, error_code=EngineErrorCode.REQUEST_NOT_FOUND))

        if request.status != ApprovalRequestStatus.PENDING:
            result = await self._already_processed(request)
            await self._db.commit()
            logger.info(
                "Approval request already processed",
                request_id=str(request_id),
                status=request.status.value,
                requested_decision=approved,
                card_id=str(result.card_id) if result.card_id else None,
            )
            return self._finish("already_processed", result)

        if is_expired(request):
            await self._requests.expire(request)
            await self._db.commit()
            return self._finish(
                "expired",
                ApprovalResult(success=False, approved=False, error_code=EngineErrorCode.REQUEST_EXPIRED),
            )

        context = _RequestContext(
            request_id=request.id,
            customer_id=request.customer_id,
            business_id=request.business_id,
            program_id=request.program_id,
            notification_id=request.notification_id,
        )
        return await self._resolve(request, context, approved)

    async def _resolve(
        self,
        request: ApprovalRequest,
        context: _RequestContext,
        approved: bool,
    ) -> ApprovalResult:
        result = ApprovalResult(success=True, approved=approved)
        deferred: list[NotificationDraft] = []
        welcome_points = 0
        step = "request"

        try:
            now = datetime.now(timezone.utc)
            request.status = ApprovalRequestStatus.APPROVED if approved else ApprovalRequestStatus.REJECTED
            request.responded_at = now
            await self._dispatcher.mark_actioned(context.notification_id)
            await self._db.flush()

            program = await self._program(context.program_id)
            program_name = program.name if program is not None else None

            card: LoyaltyCard | None = None
            if approved:
                step = "enrollment"
                enrollment = await self._ensure_enrollment(context, now)
                result.enrollment_id = enrollment.id

                step = "card"
                card, created = await self._provisioner.get_or_create_card(
                    context.customer_id,
                    context.business_id,
                    context.program_id,
                )
                result.card_id = card.id
                result.card_created = created
                if created and program is not None:
                    welcome_points = int(program.welcome_points or 0)

            step = "relationship"
            if not await self._record_relationship(context, approved):
                result.warnings.append("RELATIONSHIP_NOT_RECORDED")

            step = "notifications"
            for draft in self._decision_drafts(context, approved, program_name, card):
                if not await self._dispatcher.emit_guarded(draft):
                    deferred.append(draft)
                    result.warnings.append(EngineErrorCode.NOTIFICATION_FAILED.value)

            step = "commit"
            await self._db.commit()
        except (CardProvisioningError, EnrollmentStepError) as exc:
            await self._db.rollback()
            return self._core_failure(context, approved, step, exc.code, exc)
        except SQLAlchemyError as exc:
            await self._db.rollback()
            return self._core_failure(context, approved, step, _STEP_ERROR_CODES.get(step, EngineErrorCode.REQUEST_UPDATE_FAILED), exc)

        logger.info(
            "Approval request resolved",
            request_id=str(context.request_id),
            approved=approved,
            customer_id=str(context.customer_id),
            program_id=str(context.program_id),
            card_id=str(result.card_id) if result.card_id else None,
            card_created=result.card_created,
            deferred_notifications=len(deferred),
        )

        if deferred and self._retry_notifications:
            delivered = await self._dispatcher.deliver_deferred(deferred)
            logger.info(
                "Deferred approval notifications retried",
                request_id=str(context.request_id),
                delivered=delivered,
                pending=len(deferred) - delivered,
            )

        if welcome_points > 0 and result.card_id is not None:
            await self._award_welcome_points(result, welcome_points)

        return self._finish("approved" if approved else "declined", result)

    async def _already_processed(self, request: ApprovalRequest) -> ApprovalResult:
        approved = request.status == ApprovalRequestStatus.APPROVED
        result = ApprovalResult(
            success=True,
            approved=approved,
            error_code=EngineErrorCode.ALREADY_PROCESSED,
        )
        if approved:
            card = await self._provisioner.find_active_card(request.customer_id, request.program_id)
            result.card_id = card.id if card is not None else None
            enrollment = await self._find_enrollment(request.customer_id, request.program_id, lock=False)
            result.enrollment_id = enrollment.id if enrollment is not None else None
        return result

    async def _program(self, program_id: UUID) -> LoyaltyProgram | None:
        if not self._capabilities.has_program_table:
            return None
        return await self._db.get(LoyaltyProgram, program_id)

    async def _find_enrollment(
        self,
        customer_id: UUID,
        program_id: UUID,
        *,
        lock: bool = True,
    ) -> Enrollment | None:
        stmt = (
            select(Enrollment)
            .where(Enrollment.customer_id == customer_id, Enrollment.program_id == program_id)
            .execution_options(populate_existing=True)
        )
        if lock:
            stmt = stmt.with_for_update()
        return (await self._db.execute(stmt)).scalar_one_or_none()

    async def _ensure_enrollment(self, context: _RequestContext, now: datetime) -> Enrollment:
        """Create the enrollment, or reactivate a cancelled one."""

        enrollment = await self._find_enrollment(context.customer_id, context.program_id)
        if enrollment is None:
            candidate = Enrollment(
                customer_id=context.customer_id,
                program_id=context.program_id,
                business_id=context.business_id,
                status=EnrollmentStatus.ACTIVE,
                current_points=0,
                enrolled_at=now,
                last_activity=now,
            )
            try:
                async with self._db.begin_nested():
                    self._db.add(candidate)
                    await self._db.flush()
            except IntegrityError:
                logger.warning(
                    "Detected race when creating enrollment",
                    customer_id=str(context.customer_id),
                    program_id=str(context.program_id),
                )
                enrollment = await self._find_enrollment(context.customer_id, context.program_id)
                if enrollment is None:
                    raise EnrollmentStepError("Enrollment insert conflicted but no row was found")
            else:
                logger.info(
                    "Created enrollment",
                    enrollment_id=str(candidate.id),
                    customer_id=str(context.customer_id),
                    program_id=str(context.program_id),
                )
                return candidate

        if enrollment.status != EnrollmentStatus.ACTIVE:
            enrollment.status = EnrollmentStatus.ACTIVE
            enrollment.last_activity = now
            await self._db.flush()
            logger.info(
                "Reactivated enrollment",
                enrollment_id=str(enrollment.id),
                customer_id=str(context.customer_id),
                program_id=str(context.program_id),
            )
        return enrollment

    async def _record_relationship(self, context: _RequestContext, approved: bool) -> bool:
        """Upsert the customer-business relationship; ``False`` if the write failed."""

        if not self._capabilities.has_relationship_table:
            return True
        if not approved and not self._record_declined:
            return True

        try:
            async with self._db.begin_nested():
                stmt = select(CustomerBusinessRelationship).where(
                    CustomerBusinessRelationship.customer_id == context.customer_id,
                    CustomerBusinessRelationship.business_id == context.business_id,
                )
                relationship = (await self._db.execute(stmt)).scalar_one_or_none()
                if relationship is None:
                    self._db.add(
                        CustomerBusinessRelationship(
                            customer_id=context.customer_id,
                            business_id=context.business_id,
                            status=RelationshipStatus.ACTIVE if approved else RelationshipStatus.DECLINED,
                        )
                    )
                elif approved:
                    relationship.status = RelationshipStatus.ACTIVE
                elif relationship.status != RelationshipStatus.ACTIVE:
                    # a decline never downgrades a live relationship
                    relationship.status = RelationshipStatus.DECLINED
                await self._db.flush()
        except SQLAlchemyError as exc:
            logger.warning(
                "Customer relationship upsert failed",
                customer_id=str(context.customer_id),
                business_id=str(context.business_id),
                error=str(exc),
            )
            return False
        return True

    def _decision_drafts(
        self,
        context: _RequestContext,
        approved: bool,
        program_name: str | None,
        card: LoyaltyCard | None,
    ) -> list[NotificationDraft]:
        data = {
            "approvalRequestId": context.request_id,
            "programId": context.program_id,
            "programName": program_name,
            "customerId": context.customer_id,
            "approved": approved,
        }
        business_copy = render_business_decision(program_name, approved=approved)
        customer_copy = render_customer_decision(program_name, approved=approved)
        drafts = [
            NotificationDraft(
                recipient_id=context.business_id,
                role=RecipientRole.BUSINESS,
                notification_type=(
                    NotificationType.ENROLLMENT_ACCEPTED if approved else NotificationType.ENROLLMENT_REJECTED
                ),
                title=business_copy.title,
                message=business_copy.message,
                data=data,
                reference_id=str(context.request_id),
            ),
            NotificationDraft(
                recipient_id=context.customer_id,
                role=RecipientRole.CUSTOMER,
                notification_type=(
                    NotificationType.ENROLLMENT_SUCCESS if approved else NotificationType.ENROLLMENT_DECLINED
                ),
                title=customer_copy.title,
                message=customer_copy.message,
                data={**data, "businessId": context.business_id},
                reference_id=str(context.request_id),
            ),
        ]
        if approved and card is not None:
            card_copy = render_card_created(program_name, card.card_number)
            drafts.append(
                NotificationDraft(
                    recipient_id=context.customer_id,
                    role=RecipientRole.CUSTOMER,
                    notification_type=NotificationType.CARD_CREATED,
                    title=card_copy.title,
                    message=card_copy.message,
                    data={
                        "cardId": card.id,
                        "cardNumber": card.card_number,
                        "programId": context.program_id,
                        "programName": program_name,
                        "businessId": context.business_id,
                    },
                    reference_id=str(card.id),
                )
            )
        return drafts

    async def _award_welcome_points(self, result: ApprovalResult, points: int) -> None:
        card_id = result.card_id
        award = await self._ledger.award_points(
            card_id,
            points,
            PointsSource.WELCOME,
            "Welcome bonus",
            ref=f"welcome:{card_id}",
        )
        if award.success:
            result.welcome_points_awarded = award.applied_points or (points if award.idempotent else 0)
            return
        result.warnings.append(f"WELCOME_POINTS_{award.error_code.value}")
        logger.warning(
            "Welcome points not awarded",
            card_id=str(card_id),
            points=points,
            error_code=award.error_code.value,
            errors=award.errors,
        )

    def _core_failure(
        self,
        context: _RequestContext,
        approved: bool,
        step: str,
        code: EngineErrorCode,
        exc: Exception,
    ) -> ApprovalResult:
        logger.error(
            "Approval transaction rolled back",
            request_id=str(context.request_id),
            approved=approved,
            step=step,
            error_code=code.value,
            error=str(exc),
        )
        return self._finish("failed", ApprovalResult(success=False, approved=approved, error_code=code))

    def _finish(self, outcome: str, result: ApprovalResult) -> ApprovalResult:
        self._store.record_approval(outcome)
        return result


__all__ = ["ApprovalResult", "EnrollmentProcessor"]
