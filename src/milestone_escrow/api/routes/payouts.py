"""Payee payout-account REST API routes.

A contractor opens their payout account once, then follows the returned
onboarding link to finish identity and bank details with the provider.
Approvals stay blocked (PAYOUT_ACCOUNT_MISSING / PAYOUTS_NOT_ENABLED)
until both are done.

Routes:
    POST   /api/v1/payout-accounts                   Open the caller's account
    POST   /api/v1/payout-accounts/onboarding-link   One-time hosted onboarding URL
    GET    /api/v1/payout-accounts/me                The caller's account
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession  # noqa: TC002 - used by Depends

from milestone_escrow.api.deps import get_current_actor, get_db_session, get_payment_provider
from milestone_escrow.domain.identity import Actor  # noqa: TC001 - used by Depends
from milestone_escrow.domain.payment_protocol import PaymentProvider  # noqa: TC001
from milestone_escrow.schemas.escrow import (
    CreatePayoutAccountRequest,
    OnboardingLinkRequest,
    OnboardingLinkResponse,
    PayoutAccountResponse,
)
from milestone_escrow.services.payout_onboarding import PayoutOnboardingService

router = APIRouter(prefix="/api/v1/payout-accounts", tags=["Payout accounts"])


@router.post(
    "",
    response_model=PayoutAccountResponse,
    status_code=201,
    summary="Open the caller's payout account",
)
async def create_payout_account(
    request: CreatePayoutAccountRequest,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> PayoutAccountResponse:
    """Idempotent: a payee who already has an account gets it back."""
    record = await PayoutOnboardingService(session, provider).create_account(
        actor, email=request.email
    )
    return PayoutAccountResponse.model_validate(record)


@router.post(
    "/onboarding-link",
    response_model=OnboardingLinkResponse,
    summary="Get a hosted onboarding link",
)
async def create_onboarding_link(
    request: OnboardingLinkRequest,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> OnboardingLinkResponse:
    url = await PayoutOnboardingService(session, provider).create_onboarding_link(
        actor, refresh_url=request.refresh_url, return_url=request.return_url
    )
    return OnboardingLinkResponse(url=url)


@router.get(
    "/me",
    response_model=PayoutAccountResponse,
    summary="Get the caller's payout account",
)
async def get_my_payout_account(
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> PayoutAccountResponse:
    record = await PayoutOnboardingService(session, provider).get_account(actor.user_id)
    return PayoutAccountResponse.model_validate(record)
