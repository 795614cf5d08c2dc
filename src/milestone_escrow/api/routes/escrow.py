"""Escrow agreement REST API routes.

These endpoints provide the HTTP interface for the agreement lifecycle and
the ledger. Every mutating call identifies the acting user through the
X-User-Id / X-User-Role headers.

Routes:
    POST   /api/v1/agreements                       Create an agreement (DRAFT)
    GET    /api/v1/agreements/{id}                  Get agreement details
    GET    /api/v1/agreements/{id}/status           Lightweight status check
    GET    /api/v1/agreements/{id}/balance          Ledger balance
    GET    /api/v1/agreements/{id}/transactions     All ledger transactions
    GET    /api/v1/agreements/{id}/completion       Completion gate
    POST   /api/v1/agreements/{id}/request-funding  DRAFT -> PENDING_FUNDING
    POST   /api/v1/agreements/{id}/fund             Charge or verify the deposit
    POST   /api/v1/agreements/{id}/refund           Record a refund
    POST   /api/v1/agreements/{id}/complete         ACTIVE -> COMPLETED
    POST   /api/v1/agreements/{id}/cancel           Cancel
    POST   /api/v1/agreements/{id}/dispute          Freeze releases
"""

from __future__ import annotations

import uuid  # noqa: TC003 - FastAPI resolves path parameter types at runtime

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession  # noqa: TC002 - used by Depends

from milestone_escrow.api.deps import get_current_actor, get_db_session, get_payment_provider
from milestone_escrow.domain.identity import Actor  # noqa: TC001 - used by Depends
from milestone_escrow.domain.payment_protocol import PaymentProvider  # noqa: TC001
from milestone_escrow.logging_config import get_logger
from milestone_escrow.schemas.escrow import (
    AgreementResponse,
    AgreementStatusResponse,
    BalanceResponse,
    CreateAgreementRequest,
    FundAgreementRequest,
    ReasonRequest,
    RefundRequest,
    TransactionResponse,
)
from milestone_escrow.schemas.workflow import PreconditionResponse
from milestone_escrow.services.escrow_funding import EscrowFundingService
from milestone_escrow.services.escrow_ledger import EscrowLedger
from milestone_escrow.services.precondition_service import PreconditionEvaluator

router = APIRouter(prefix="/api/v1/agreements", tags=["Agreements"])
logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------


@router.post(
    "",
    response_model=AgreementResponse,
    status_code=201,
    summary="Create a new escrow agreement",
)
async def create_agreement(
    request: CreateAgreementRequest,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
) -> AgreementResponse:
    """Create a new escrow agreement in DRAFT state."""
    ledger = EscrowLedger(session)
    agreement = await ledger.create_agreement(
        project_id=request.project_id,
        payer_id=request.payer_id,
        payee_id=request.payee_id,
        total_amount=request.total_amount,
        actor=actor,
        currency=request.currency,
        contract_id=request.contract_id,
    )
    return AgreementResponse.model_validate(agreement)


# ---------------------------------------------------------------------------
# Funding
# ---------------------------------------------------------------------------


@router.post(
    "/{agreement_id}/request-funding",
    response_model=AgreementResponse,
    summary="Ask the payer to deposit",
)
async def request_funding(
    agreement_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
) -> AgreementResponse:
    agreement = await EscrowLedger(session).request_funding(agreement_id, actor)
    return AgreementResponse.model_validate(agreement)


@router.post(
    "/{agreement_id}/fund",
    response_model=AgreementResponse,
    summary="Take the payer's deposit",
)
async def fund_agreement(
    agreement_id: uuid.UUID,
    request: FundAgreementRequest,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> AgreementResponse:
    """Take or verify the full deposit. Transitions DRAFT/PENDING_FUNDING -> FUNDED.

    With payment_method_id the payer is charged here; with provider_payment_id
    the existing payment is checked with the provider first.
    """
    agreement = await EscrowFundingService(session, provider).fund(
        agreement_id,
        actor,
        provider_payment_id=request.provider_payment_id,
        payment_method_id=request.payment_method_id,
        amount=request.amount,
    )
    return AgreementResponse.model_validate(agreement)


@router.post(
    "/{agreement_id}/refund",
    response_model=TransactionResponse,
    status_code=201,
    summary="Return funds to the payer",
)
async def refund(
    agreement_id: uuid.UUID,
    request: RefundRequest,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
) -> TransactionResponse:
    transaction = await EscrowLedger(session).record_refund(
        agreement_id, request.amount, actor, reason=request.reason
    )
    return TransactionResponse.model_validate(transaction)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


@router.post(
    "/{agreement_id}/complete",
    response_model=AgreementResponse,
    summary="Complete the agreement",
)
async def complete_agreement(
    agreement_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
) -> AgreementResponse:
    """ACTIVE -> COMPLETED. Requires every milestone PAID and the closeout COMPLETED."""
    agreement = await EscrowLedger(session).complete_agreement(agreement_id, actor)
    return AgreementResponse.model_validate(agreement)


@router.post(
    "/{agreement_id}/cancel",
    response_model=AgreementResponse,
    summary="Cancel the agreement",
)
async def cancel_agreement(
    agreement_id: uuid.UUID,
    request: ReasonRequest,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
) -> AgreementResponse:
    agreement = await EscrowLedger(session).cancel_agreement(
        agreement_id, actor, reason=request.reason
    )
    return AgreementResponse.model_validate(agreement)


@router.post(
    "/{agreement_id}/dispute",
    response_model=AgreementResponse,
    summary="Raise a dispute",
)
async def dispute_agreement(
    agreement_id: uuid.UUID,
    request: ReasonRequest,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
) -> AgreementResponse:
    """Mark the agreement DISPUTED. No release can be approved until resolved."""
    agreement = await EscrowLedger(session).mark_disputed(
        agreement_id, actor, reason=request.reason or ""
    )
    return AgreementResponse.model_validate(agreement)


# ---------------------------------------------------------------------------
# Read endpoints
# ---------------------------------------------------------------------------


@router.get(
    "/{agreement_id}",
    response_model=AgreementResponse,
    summary="Get agreement details",
)
async def get_agreement(
    agreement_id: uuid.UUID,
    session: AsyncSession = Depends(get_db_session),
) -> AgreementResponse:
    agreement = await EscrowLedger(session).get_agreement(agreement_id)
    return AgreementResponse.model_validate(agreement)


@router.get(
    "/{agreement_id}/status",
    response_model=AgreementStatusResponse,
    summary="Get agreement status",
)
async def get_agreement_status(
    agreement_id: uuid.UUID,
    session: AsyncSession = Depends(get_db_session),
) -> AgreementStatusResponse:
    """Current status plus the lifecycle events that may fire next."""
    status = await EscrowLedger(session).get_status(agreement_id)
    return AgreementStatusResponse.model_validate(status)


@router.get(
    "/{agreement_id}/balance",
    response_model=BalanceResponse,
    summary="Get the escrow balance",
)
async def get_balance(
    agreement_id: uuid.UUID,
    session: AsyncSession = Depends(get_db_session),
) -> BalanceResponse:
    """Derived from the ledger on every call; open releases count against it."""
    balance = await EscrowLedger(session).get_balance(agreement_id)
    return BalanceResponse.model_validate(balance.to_dict())


@router.get(
    "/{agreement_id}/transactions",
    response_model=list[TransactionResponse],
    summary="List ledger transactions",
)
async def list_transactions(
    agreement_id: uuid.UUID,
    session: AsyncSession = Depends(get_db_session),
) -> list[TransactionResponse]:
    transactions = await EscrowLedger(session).list_transactions(agreement_id)
    return [TransactionResponse.model_validate(t) for t in transactions]


@router.get(
    "/{agreement_id}/completion",
    response_model=PreconditionResponse,
    summary="Check whether the agreement can be completed",
)
async def get_completion_gate(
    agreement_id: uuid.UUID,
    session: AsyncSession = Depends(get_db_session),
) -> PreconditionResponse:
    result = await PreconditionEvaluator(session).can_complete_agreement(agreement_id)
    return PreconditionResponse.model_validate(result.to_dict())
