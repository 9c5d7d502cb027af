"""API endpoints for enrollment invitations and approval decisions."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from loyalty_api.api.dependencies.engine import get_enrollment_processor, get_request_store
from loyalty_api.services.enrollment import ApprovalRequestStore, ApprovalResult, EnrollmentProcessor
from loyalty_api.services.errors import TRANSIENT_CODES, EngineErrorCode


router = APIRouter(prefix="/enrollment", tags=["enrollment"])


class ProcessApprovalRequest(BaseModel):
    requestId: UUID = Field(..., description="Approval request being answered")
    approved: bool = Field(..., description="True to accept the invitation, false to decline")


class ProcessApprovalResponse(BaseModel):
    success: bool
    cardId: Optional[UUID] = None
    errorCode: Optional[str] = None
    approved: Optional[bool] = None
    cardCreated: bool = False
    welcomePoints: int = 0
    warnings: List[str] = Field(default_factory=list)


class EnrollmentInviteRequest(BaseModel):
    customerId: UUID
    businessId: UUID
    programId: UUID


class ApprovalRequestResponse(BaseModel):
    id: UUID
    customerId: UUID
    businessId: UUID
    programId: UUID
    notificationId: Optional[UUID]
    status: str
    requestedAt: datetime
    respondedAt: Optional[datetime]
    expiresAt: Optional[datetime]


def _approval_payload(result: ApprovalResult) -> ProcessApprovalResponse:
    return ProcessApprovalResponse(
        success=result.success,
        cardId=result.card_id,
        errorCode=result.error_code.value if result.error_code else None,
        approved=result.approved,
        cardCreated=result.card_created,
        welcomePoints=result.welcome_points_awarded,
        warnings=list(result.warnings),
    )


def _request_payload(request) -> ApprovalRequestResponse:
    return ApprovalRequestResponse(
        id=request.id,
        customerId=request.customer_id,
        businessId=request.business_id,
        programId=request.program_id,
        notificationId=request.notification_id,
        status=request.status.value,
        requestedAt=request.requested_at,
        respondedAt=request.responded_at,
        expiresAt=request.expires_at,
    )


@router.post("/process-approval", response_model=ProcessApprovalResponse)
async def process_approval(
    payload: ProcessApprovalRequest,
    processor: EnrollmentProcessor = Depends(get_enrollment_processor),
) -> ProcessApprovalResponse:
    """Accept or decline an enrollment invitation."""

    result = await processor.process_approval(payload.requestId, payload.approved)
    body = _approval_payload(result)
    if result.success:
        return body

    if result.error_code == EngineErrorCode.REQUEST_NOT_FOUND:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=body.model_dump(mode="json"))
    if result.error_code == EngineErrorCode.REQUEST_EXPIRED:
        raise HTTPException(status_code=status.HTTP_410_GONE, detail=body.model_dump(mode="json"))
    if result.error_code in TRANSIENT_CODES:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=body.model_dump(mode="json"))
    raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=body.model_dump(mode="json"))


@router.post("/requests", response_model=ApprovalRequestResponse, status_code=status.HTTP_201_CREATED)
async def create_enrollment_request(
    payload: EnrollmentInviteRequest,
    store: ApprovalRequestStore = Depends(get_request_store),
) -> ApprovalRequestResponse:
    """Invite a customer into a program."""

    request = await store.create_request(payload.customerId, payload.businessId, payload.programId)
    return _request_payload(request)


@router.get("/customers/{customer_id}/pending", response_model=List[ApprovalRequestResponse])
async def list_pending_requests(
    customer_id: UUID,
    store: ApprovalRequestStore = Depends(get_request_store),
) -> List[ApprovalRequestResponse]:
    """List unexpired pending invitations for a customer."""

    requests = await store.list_pending(customer_id)
    return [_request_payload(request) for request in requests]
