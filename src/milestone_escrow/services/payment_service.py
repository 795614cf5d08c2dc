"""Payment Service: money into escrow, money out to the payee, payee onboarding.

Provides both a real Stripe Connect integration and a simulated mode
for development and tests without real money movement.

In simulation mode, deposits and transfers are recorded in memory and keyed
by idempotency key, so a retried call returns the original result.
In production mode, deposits are PaymentIntents and releases go through
stripe.Transfer.create with the same idempotency keys; Stripe deduplicates
on its side. Payees onboard through Express accounts and hosted AccountLinks.
"""

from __future__ import annotations

import asyncio
import uuid
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING

import stripe
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from milestone_escrow.domain.exceptions import ExternalProviderError, ProviderTimeoutError
from milestone_escrow.domain.payment_protocol import DepositResult, PayoutAccount, TransferResult
from milestone_escrow.infrastructure.database.repositories import PayoutAccountRepository
from milestone_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from milestone_escrow.config import Settings
    from milestone_escrow.domain.payment_protocol import PaymentProvider

logger = get_logger(__name__)


def to_minor_units(amount: Decimal) -> int:
    """Convert a 2-decimal amount to integer cents (Stripe's unit)."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def release_idempotency_key(transaction_id: uuid.UUID | str) -> str:
    """One transfer per release transaction, however many times approve is retried."""
    return f"escrow-release:{transaction_id}"


def deposit_idempotency_key(agreement_id: uuid.UUID | str) -> str:
    """One charge per agreement, however many times funding is retried."""
    return f"escrow-deposit:{agreement_id}"


class SimulatedPaymentProvider:
    """In-process provider with scriptable failures and latency.

    Process-scoped: the app keeps one instance on app.state so idempotency
    holds across requests.
    """

    def __init__(self, latency_seconds: float = 0.0) -> None:
        """Initialize the simulated provider.

        Args:
            latency_seconds: Delay applied after a transfer is recorded. A value
                above the provider timeout reproduces "the transfer happened but
                we never heard back".
        """
        self.latency_seconds = latency_seconds
        self.calls = 0
        self._accounts: dict[str, PayoutAccount] = {}
        self._transfers: dict[str, TransferResult] = {}
        self._deposits: dict[str, DepositResult] = {}
        self._declined_payments: set[str] = set()
        self._scripted_failures: list[ExternalProviderError] = []
        self._scripted_deposit_failures: list[ExternalProviderError] = []

    @property
    def transfers(self) -> list[TransferResult]:
        """Distinct transfers actually created (replays excluded)."""
        return list(self._transfers.values())

    @property
    def deposits(self) -> list[DepositResult]:
        return list(self._deposits.values())

    def register_payout_account(
        self,
        user_id: str,
        account_id: str | None = None,
        payouts_enabled: bool = True,
    ) -> PayoutAccount:
        account = PayoutAccount(
            user_id=user_id,
            account_id=account_id or f"acct_sim_{uuid.uuid4().hex[:16]}",
            payouts_enabled=payouts_enabled,
        )
        self._accounts[user_id] = account
        return account

    def fail_next_transfer(self, error: ExternalProviderError | None = None) -> None:
        """Make the next create_transfer call fail before any money moves."""
        self._scripted_failures.append(
            error or ExternalProviderError("Simulated transfer declined", provider_code="declined")
        )

    def fail_next_deposit(self, error: ExternalProviderError | None = None) -> None:
        self._scripted_deposit_failures.append(
            error or ExternalProviderError("Simulated card declined", provider_code="card_declined")
        )

    def decline_payment(self, payment_id: str) -> None:
        """Report payment_id as not succeeded from now on."""
        self._declined_payments.add(payment_id)

    async def get_payout_account(self, user_id: str) -> PayoutAccount | None:
        return self._accounts.get(user_id)

    async def create_transfer(
        self,
        amount: Decimal,
        currency: str,
        destination_account_id: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> TransferResult:
        self.calls += 1
        if self._scripted_failures:
            raise self._scripted_failures.pop(0)

        existing = self._transfers.get(idempotency_key)
        if existing is not None:
            logger.info(
                "payment.transfer_replayed",
                transfer_id=existing.transfer_id,
                idempotency_key=idempotency_key,
            )
            result = TransferResult(
                transfer_id=existing.transfer_id,
                idempotency_key=idempotency_key,
                replayed=True,
                raw=existing.raw,
            )
        else:
            result = TransferResult(
                transfer_id=f"tr_sim_{uuid.uuid4().hex[:24]}",
                idempotency_key=idempotency_key,
                raw={
                    "amount": to_minor_units(amount),
                    "currency": currency.lower(),
                    "destination": destination_account_id,
                    "metadata": dict(metadata),
                },
            )
            self._transfers[idempotency_key] = result
            logger.info(
                "payment.transfer_simulated",
                transfer_id=result.transfer_id,
                amount=str(amount),
                destination=destination_account_id,
            )

        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)
        return result

    async def collect_deposit(
        self,
        amount: Decimal,
        currency: str,
        payment_method_id: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> DepositResult:
        if self._scripted_deposit_failures:
            raise self._scripted_deposit_failures.pop(0)

        existing = self._deposits.get(idempotency_key)
        if existing is not None:
            return existing

        result = DepositResult(
            payment_id=f"pi_sim_{uuid.uuid4().hex[:24]}",
            amount_minor=to_minor_units(amount),
            currency=currency.lower(),
            raw={"payment_method": payment_method_id, "metadata": dict(metadata)},
        )
        self._deposits[idempotency_key] = result
        logger.info(
            "payment.deposit_simulated",
            payment_id=result.payment_id,
            amount=str(amount),
        )
        return result

    async def confirm_deposit(
        self, payment_id: str, amount: Decimal, currency: str
    ) -> DepositResult:
        # Payment ids the simulator never issued are accepted as-is, so
        # development clients can fund with any reference.
        if payment_id in self._declined_payments:
            raise ExternalProviderError(
                f"Payment {payment_id} has not succeeded", provider_code="requires_payment_method"
            )
        for deposit in self._deposits.values():
            if deposit.payment_id == payment_id and deposit.amount_minor != to_minor_units(amount):
                raise ExternalProviderError(
                    f"Payment {payment_id} does not match the escrow amount",
                    provider_code="amount_mismatch",
                )
        return DepositResult(
            payment_id=payment_id,
            amount_minor=to_minor_units(amount),
            currency=currency.lower(),
        )

    async def create_payout_account(self, user_id: str, email: str | None) -> PayoutAccount:
        existing = self._accounts.get(user_id)
        if existing is not None:
            return existing
        return self.register_payout_account(user_id)

    async def create_onboarding_link(
        self, account_id: str, refresh_url: str, return_url: str
    ) -> str:
        if not any(a.account_id == account_id for a in self._accounts.values()):
            raise ExternalProviderError(
                f"No such account: {account_id}", provider_code="resource_missing"
            )
        return f"https://onboarding.simulated.invalid/{account_id}"


class StripePaymentProvider:
    """Stripe Connect adapter.

    Deposits are PaymentIntents confirmed server-side and only accepted once
    they have succeeded for the exact escrow amount. Payee accounts come from
    the payout_accounts directory and are refreshed from stripe.Account.retrieve
    on every lookup, so a payee who lost payout capability is caught before
    the transfer.
    """

    def __init__(self, session: AsyncSession, api_key: str) -> None:
        self._accounts = PayoutAccountRepository(session)
        self._api_key = api_key

    async def get_payout_account(self, user_id: str) -> PayoutAccount | None:
        record = await self._accounts.get(user_id)
        if record is None:
            return None

        try:
            account = await self._retrieve_account(record.provider_account_id)
        except stripe.StripeError as exc:
            raise self._translate(exc, "account lookup") from exc

        payouts_enabled = bool(account.get("payouts_enabled"))
        if payouts_enabled != record.payouts_enabled:
            await self._accounts.upsert(user_id, record.provider_account_id, payouts_enabled)
            logger.info(
                "payment.payout_account_refreshed",
                user_id=user_id,
                payouts_enabled=payouts_enabled,
            )
        return PayoutAccount(
            user_id=user_id,
            account_id=record.provider_account_id,
            payouts_enabled=payouts_enabled,
        )

    async def create_transfer(
        self,
        amount: Decimal,
        currency: str,
        destination_account_id: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> TransferResult:
        try:
            transfer = await asyncio.to_thread(
                stripe.Transfer.create,
                amount=to_minor_units(amount),
                currency=currency.lower(),
                destination=destination_account_id,
                metadata=metadata,
                idempotency_key=idempotency_key,
                api_key=self._api_key,
            )
        except stripe.StripeError as exc:
            logger.error(
                "payment.transfer_failed",
                destination=destination_account_id,
                idempotency_key=idempotency_key,
                error=str(exc),
            )
            raise self._translate(exc, "transfer") from exc

        logger.info(
            "payment.transfer_created",
            transfer_id=transfer["id"],
            amount=str(amount),
            destination=destination_account_id,
        )
        return TransferResult(
            transfer_id=transfer["id"],
            idempotency_key=idempotency_key,
            raw=dict(transfer),
        )

    async def collect_deposit(
        self,
        amount: Decimal,
        currency: str,
        payment_method_id: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> DepositResult:
        try:
            intent = await asyncio.to_thread(
                stripe.PaymentIntent.create,
                amount=to_minor_units(amount),
                currency=currency.lower(),
                payment_method=payment_method_id,
                confirm=True,
                automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
                metadata=metadata,
                idempotency_key=idempotency_key,
                api_key=self._api_key,
            )
        except stripe.StripeError as exc:
            logger.error(
                "payment.deposit_failed",
                idempotency_key=idempotency_key,
                error=str(exc),
            )
            raise self._translate(exc, "deposit") from exc

        result = self._succeeded_deposit(intent, amount, currency)
        logger.info("payment.deposit_collected", payment_id=result.payment_id, amount=str(amount))
        return result

    async def confirm_deposit(
        self, payment_id: str, amount: Decimal, currency: str
    ) -> DepositResult:
        try:
            intent = await self._retrieve_payment_intent(payment_id)
        except stripe.StripeError as exc:
            raise self._translate(exc, "payment lookup") from exc
        return self._succeeded_deposit(intent, amount, currency)

    async def create_payout_account(self, user_id: str, email: str | None) -> PayoutAccount:
        try:
            account = await asyncio.to_thread(
                stripe.Account.create,
                type="express",
                email=email,
                capabilities={"transfers": {"requested": True}},
                business_type="individual",
                metadata={"user_id": user_id},
                idempotency_key=f"payout-account:{user_id}",
                api_key=self._api_key,
            )
        except stripe.StripeError as exc:
            raise self._translate(exc, "account creation") from exc

        logger.info("payment.payout_account_created", user_id=user_id, account_id=account["id"])
        return PayoutAccount(
            user_id=user_id,
            account_id=account["id"],
            payouts_enabled=bool(account.get("payouts_enabled")),
        )

    async def create_onboarding_link(
        self, account_id: str, refresh_url: str, return_url: str
    ) -> str:
        try:
            link = await asyncio.to_thread(
                stripe.AccountLink.create,
                account=account_id,
                refresh_url=refresh_url,
                return_url=return_url,
                type="account_onboarding",
                api_key=self._api_key,
            )
        except stripe.StripeError as exc:
            raise self._translate(exc, "onboarding link") from exc
        return link["url"]

    @staticmethod
    def _succeeded_deposit(intent, amount: Decimal, currency: str) -> DepositResult:  # noqa: ANN001
        """Accept the PaymentIntent only if it settled for exactly the escrow amount."""
        status = intent.get("status")
        if status != "succeeded":
            raise ExternalProviderError(
                f"Payment {intent['id']} has not succeeded (status {status})",
                provider_code=status,
            )
        received = intent.get("amount_received", intent.get("amount"))
        if received != to_minor_units(amount) or intent.get("currency") != currency.lower():
            raise ExternalProviderError(
                f"Payment {intent['id']} does not match the escrow amount",
                provider_code="amount_mismatch",
            )
        return DepositResult(
            payment_id=intent["id"],
            amount_minor=received,
            currency=intent["currency"],
            raw=dict(intent),
        )

    @retry(
        retry=retry_if_exception_type(stripe.APIConnectionError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def _retrieve_payment_intent(self, payment_id: str):  # noqa: ANN202
        return await asyncio.to_thread(
            stripe.PaymentIntent.retrieve, payment_id, api_key=self._api_key
        )

    @retry(
        retry=retry_if_exception_type(stripe.APIConnectionError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def _retrieve_account(self, account_id: str):  # noqa: ANN202
        """Fetch the connected account, retrying transient network failures."""
        return await asyncio.to_thread(stripe.Account.retrieve, account_id, api_key=self._api_key)

    @staticmethod
    def _translate(exc: stripe.StripeError, operation: str) -> ExternalProviderError:
        # A dropped connection leaves the outcome unknown; anything Stripe
        # answered is a confirmed failure.
        if isinstance(exc, stripe.APIConnectionError):
            return ProviderTimeoutError(f"Stripe {operation} outcome unknown: {exc}")
        return ExternalProviderError(
            f"Stripe {operation} failed: {exc.user_message or exc}",
            provider_code=exc.code,
        )


def build_payment_provider(
    session: AsyncSession,
    settings: Settings,
    simulated: SimulatedPaymentProvider,
) -> PaymentProvider:
    """Pick the provider for this request: Stripe when configured, else the simulator."""
    if settings.stripe_enabled:
        return StripePaymentProvider(session, api_key=settings.stripe_secret_key)
    return simulated
