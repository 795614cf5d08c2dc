"""Milestone release REST API routes.

A release walks request -> receipts -> verification -> approval -> payout.
The approval endpoint is the only one that talks to the payment provider.

Routes:
    GET    /api/v1/milestones/{id}/release-eligibility
    POST   /api/v1/milestones/{id}/releases
    GET    /api/v1/transactions/{id}
    GET    /api/v1/transactions/{id}/release-status
    POST   /api/v1/transactions/{id}/receipts
    GET    /api/v1/transactions/{id}/receipts
    GET    /api/v1/transactions/{id}/verification
    POST   /api/v1/transactions/{id}/approve
    POST   /api/v1/transactions/{id}/reject
    POST   /api/v1/receipts/{id}/verify
"""

from __future__ import annotations

import uuid  # noqa: TC003 - FastAPI resolves path parameter types at runtime

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession  # noqa: TC002 - used by Depends

from milestone_escrow.api.deps import get_current_actor, get_db_session, get_payment_provider
from milestone_escrow.domain.exceptions import ExternalProviderError
from milestone_escrow.domain.identity import Actor  # noqa: TC001 - used by Depends
from milestone_escrow.domain.payment_protocol import PaymentProvider  # noqa: TC001
from milestone_escrow.logging_config import get_logger
from milestone_escrow.schemas.escrow import (
    ApproveReleaseRequest,
    AttachReceiptRequest,
    ReceiptResponse,
    RejectReleaseRequest,
    RequestReleaseRequest,
    TransactionResponse,
    VerificationStatusResponse,
    VerifyReceiptRequest,
)
from milestone_escrow.schemas.workflow import PreconditionResponse, ReleaseStatusResponse
from milestone_escrow.services.precondition_service import PreconditionEvaluator
from milestone_escrow.services.receipt_gate import ReceiptData, ReceiptVerificationGate
from milestone_escrow.services.release_orchestrator import ReleaseOrchestrator

router = APIRouter(prefix="/api/v1", tags=["Releases"])
logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Milestones
# ---------------------------------------------------------------------------


@router.get(
    "/milestones/{milestone_id}/release-eligibility",
    response_model=PreconditionResponse,
    summary="Check whether a release can be requested",
)
async def get_release_eligibility(
    milestone_id: uuid.UUID,
    session: AsyncSession = Depends(get_db_session),
) -> PreconditionResponse:
    result = await PreconditionEvaluator(session).can_request_release(milestone_id)
    return PreconditionResponse.model_validate(result.to_dict())


@router.post(
    "/milestones/{milestone_id}/releases",
    response_model=TransactionResponse,
    status_code=201,
    summary="Request a milestone release",
)
async def request_release(
    milestone_id: uuid.UUID,
    request: RequestReleaseRequest,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> TransactionResponse:
    """Open a RELEASE for the milestone amount; it waits for verified receipts."""
    orchestrator = ReleaseOrchestrator(session, provider)
    transaction = await orchestrator.request_release(milestone_id, actor, notes=request.notes)
    return TransactionResponse.model_validate(transaction)


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


@router.get(
    "/transactions/{transaction_id}",
    response_model=TransactionResponse,
    summary="Get a release transaction",
)
async def get_release(
    transaction_id: uuid.UUID,
    session: AsyncSession = Depends(get_db_session),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> TransactionResponse:
    transaction = await ReleaseOrchestrator(session, provider).get_release(transaction_id)
    return TransactionResponse.model_validate(transaction)


@router.get(
    "/transactions/{transaction_id}/release-status",
    response_model=ReleaseStatusResponse,
    summary="Get release status and the approval gate",
)
async def get_release_status(
    transaction_id: uuid.UUID,
    session: AsyncSession = Depends(get_db_session),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> ReleaseStatusResponse:
    status = await ReleaseOrchestrator(session, provider).get_release_status(transaction_id)
    return ReleaseStatusResponse.model_validate(status)


@router.post(
    "/transactions/{transaction_id}/receipts",
    response_model=ReceiptResponse,
    status_code=201,
    summary="Attach a receipt to a release",
)
async def attach_receipt(
    transaction_id: uuid.UUID,
    request: AttachReceiptRequest,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
) -> ReceiptResponse:
    receipt = await ReceiptVerificationGate(session).attach_receipt(
        transaction_id,
        ReceiptData(**request.model_dump()),
        actor,
    )
    return ReceiptResponse.model_validate(receipt)


@router.get(
    "/transactions/{transaction_id}/receipts",
    response_model=list[ReceiptResponse],
    summary="List a release's receipts",
)
async def list_receipts(
    transaction_id: uuid.UUID,
    session: AsyncSession = Depends(get_db_session),
) -> list[ReceiptResponse]:
    receipts = await ReceiptVerificationGate(session).list_receipts(transaction_id)
    return [ReceiptResponse.model_validate(r) for r in receipts]


@router.get(
    "/transactions/{transaction_id}/verification",
    response_model=VerificationStatusResponse,
    summary="Receipt verification progress",
)
async def get_verification_status(
    transaction_id: uuid.UUID,
    session: AsyncSession = Depends(get_db_session),
) -> VerificationStatusResponse:
    status = await ReceiptVerificationGate(session).get_verification_status(transaction_id)
    return VerificationStatusResponse.model_validate(status.to_dict())


@router.post(
    "/transactions/{transaction_id}/approve",
    response_model=TransactionResponse,
    summary="Approve a release and pay out",
)
async def approve_release(
    transaction_id: uuid.UUID,
    request: ApproveReleaseRequest,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> TransactionResponse:
    """Transfer the release amount to the payee. PENDING_APPROVAL -> APPROVED -> COMPLETED.

    A failed or timed-out transfer hands the release back to PENDING_APPROVAL;
    the failure audit event is committed before the error is returned so the
    attempt stays on record. Retrying is safe.
    """
    orchestrator = ReleaseOrchestrator(session, provider)
    try:
        transaction = await orchestrator.approve(transaction_id, actor, notes=request.notes)
    except ExternalProviderError:
        await session.commit()
        raise
    return TransactionResponse.model_validate(transaction)


@router.post(
    "/transactions/{transaction_id}/reject",
    response_model=TransactionResponse,
    summary="Reject a release",
)
async def reject_release(
    transaction_id: uuid.UUID,
    request: RejectReleaseRequest,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> TransactionResponse:
    """Terminal. The amount returns to the available balance."""
    transaction = await ReleaseOrchestrator(session, provider).reject(
        transaction_id, actor, reason=request.reason
    )
    return TransactionResponse.model_validate(transaction)


# ---------------------------------------------------------------------------
# Receipts
# ---------------------------------------------------------------------------


@router.post(
    "/receipts/{receipt_id}/verify",
    response_model=ReceiptResponse,
    summary="Verify or reject a receipt",
)
async def verify_receipt(
    receipt_id: uuid.UUID,
    request: VerifyReceiptRequest,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
) -> ReceiptResponse:
    receipt = await ReceiptVerificationGate(session).verify(
        receipt_id, request.verified, actor, notes=request.notes
    )
    return ReceiptResponse.model_validate(receipt)
