"""Payment provider webhook endpoint.

Authenticated by the Stripe-Signature header, not by the gateway's
X-User-Id headers. A bad signature is refused with 400; an event that
does not apply is still acknowledged so Stripe stops redelivering it.

Routes:
    POST   /api/v1/webhooks/stripe
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession  # noqa: TC002 - used by Depends

from milestone_escrow.api.deps import get_db_session
from milestone_escrow.schemas.escrow import WebhookAck
from milestone_escrow.services.provider_events import ProviderEventHandler, verify_event

router = APIRouter(prefix="/api/v1/webhooks", tags=["Webhooks"])


@router.post("/stripe", response_model=WebhookAck, summary="Receive a Stripe event")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None),
    session: AsyncSession = Depends(get_db_session),
) -> WebhookAck:
    event = verify_event(await request.body(), stripe_signature)
    outcome = await ProviderEventHandler(session).handle(event)
    return WebhookAck(outcome=outcome)
