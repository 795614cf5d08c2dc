"""Provider Events: signed Stripe webhooks applied to escrow state.

Handled event types:
    - account.updated            payout capability of a payee account changed
    - payment_intent.succeeded   a payer deposit settled outside the API call

Anything else is acknowledged and ignored. Stripe redelivers an event until
it gets a 2xx, so every handler is idempotent and an event that does not
apply (unknown account, agreement already funded) is acknowledged rather
than failed.
"""

from __future__ import annotations

import json
import uuid
from typing import TYPE_CHECKING

import stripe

from milestone_escrow.config import get_settings
from milestone_escrow.domain.enums import AgreementStatus, AuditAction, ResourceType, UserRole
from milestone_escrow.domain.exceptions import ProviderNotConfiguredError, WebhookVerificationError
from milestone_escrow.domain.identity import Actor
from milestone_escrow.infrastructure.database.repositories import (
    AgreementRepository,
    PayoutAccountRepository,
)
from milestone_escrow.logging_config import get_logger
from milestone_escrow.services.audit_trail import AuditTrail
from milestone_escrow.services.escrow_ledger import EscrowLedger
from milestone_escrow.services.payment_service import to_minor_units

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

# Deposits confirmed by webhook are recorded under this identity.
PROVIDER_ACTOR = Actor("payment-provider", UserRole.ADMIN)
FUNDABLE_STATUSES = frozenset({AgreementStatus.DRAFT, AgreementStatus.PENDING_FUNDING})

PROCESSED = "processed"
IGNORED = "ignored"


def verify_event(payload: bytes, signature_header: str | None) -> dict:
    """Check the Stripe-Signature header and return the parsed event.

    Raises:
        ProviderNotConfiguredError: No webhook secret is configured.
        WebhookVerificationError: Missing or bad signature, stale timestamp,
            or a body that is not a JSON event.
    """
    settings = get_settings()
    if not settings.stripe_webhook_secret:
        raise ProviderNotConfiguredError("STRIPE_WEBHOOK_SECRET")
    if not signature_header:
        raise WebhookVerificationError("missing Stripe-Signature header")

    try:
        body = payload.decode("utf-8")
        stripe.WebhookSignature.verify_header(
            body,
            signature_header,
            settings.stripe_webhook_secret,
            tolerance=settings.stripe_webhook_tolerance_seconds,
        )
        event = json.loads(body)
    except stripe.SignatureVerificationError as exc:
        raise WebhookVerificationError(str(exc)) from exc
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise WebhookVerificationError("body is not a JSON event") from exc

    if not isinstance(event, dict) or "type" not in event:
        raise WebhookVerificationError("body is not a JSON event")
    return event


class ProviderEventHandler:
    """Applies verified provider events."""

    def __init__(self, session: AsyncSession) -> None:
        self._accounts = PayoutAccountRepository(session)
        self._agreements = AgreementRepository(session)
        self._ledger = EscrowLedger(session)
        self._audit = AuditTrail(session)

    async def handle(self, event: dict) -> str:
        """Dispatch one event. Returns "processed" or "ignored"."""
        event_type = event.get("type")
        obj = event.get("data", {}).get("object", {})
        log = logger.bind(event_id=event.get("id"), event_type=event_type)

        match event_type:
            case "account.updated":
                outcome = await self._account_updated(obj)
            case "payment_intent.succeeded":
                outcome = await self._payment_succeeded(obj)
            case _:
                outcome = IGNORED

        log.info("webhook.handled", outcome=outcome)
        return outcome

    async def _account_updated(self, account: dict) -> str:
        record = await self._accounts.get_by_provider_account(account.get("id", ""))
        if record is None:
            return IGNORED

        payouts_enabled = bool(account.get("payouts_enabled"))
        if payouts_enabled == record.payouts_enabled:
            return IGNORED

        await self._accounts.upsert(record.user_id, record.provider_account_id, payouts_enabled)
        await self._audit.record(
            PROVIDER_ACTOR.user_id,
            AuditAction.PAYOUT_ACCOUNT_UPDATED,
            ResourceType.PAYOUT_ACCOUNT,
            record.user_id,
            {"provider_account_id": record.provider_account_id, "payouts_enabled": payouts_enabled},
        )
        logger.info(
            "payout.account_updated",
            user_id=record.user_id,
            payouts_enabled=payouts_enabled,
        )
        return PROCESSED

    async def _payment_succeeded(self, intent: dict) -> str:
        raw_id = (intent.get("metadata") or {}).get("agreement_id")
        try:
            agreement_id = uuid.UUID(raw_id)
        except (TypeError, ValueError):
            return IGNORED

        agreement = await self._agreements.get_for_update(agreement_id)
        if agreement is None or agreement.funded:
            return IGNORED
        if agreement.status not in FUNDABLE_STATUSES:
            logger.warning(
                "webhook.deposit_for_unfundable_agreement",
                agreement_id=str(agreement_id),
                status=agreement.status,
                payment_id=intent.get("id"),
            )
            return IGNORED

        received = intent.get("amount_received", intent.get("amount"))
        currency = (intent.get("currency") or "").upper()
        if received != to_minor_units(agreement.total_amount) or currency != agreement.currency:
            logger.error(
                "webhook.deposit_mismatch",
                agreement_id=str(agreement_id),
                payment_id=intent.get("id"),
                amount_received=received,
                currency=currency,
            )
            return IGNORED

        await self._ledger.fund_agreement(
            agreement_id, PROVIDER_ACTOR, provider_payment_id=intent["id"]
        )
        return PROCESSED
