"""Payment Provider Protocol.

Defines the interface the service uses to move money into escrow (the
payer's deposit), out of it (release transfers) and to onboard payees.
This is a Protocol (structural subtyping) so concrete providers don't need
to inherit from a base class; they just need to match the shape.

The domain layer has ZERO imports from Stripe or any external service.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from decimal import Decimal


@dataclass(frozen=True)
class PayoutAccount:
    """A payee's account at the payment provider.

    Attributes:
        user_id: Platform user the account belongs to.
        account_id: Provider-side destination id (e.g. a Stripe Connect account).
        payouts_enabled: Whether the provider will accept transfers to it.
    """

    user_id: str
    account_id: str
    payouts_enabled: bool


@dataclass(frozen=True)
class TransferResult:
    """A transfer the provider has confirmed.

    Attributes:
        transfer_id: Provider reference stored on the COMPLETED transaction.
        idempotency_key: Key the transfer was created under.
        replayed: True when the provider returned an earlier transfer for the key.
    """

    transfer_id: str
    idempotency_key: str
    replayed: bool = False
    raw: dict = field(default_factory=dict)


@dataclass(frozen=True)
class DepositResult:
    """A payer deposit the provider reports as succeeded.

    Attributes:
        payment_id: Provider reference stored on the DEPOSIT transaction.
        amount_minor: Amount received, in the currency's minor unit.
    """

    payment_id: str
    amount_minor: int
    currency: str
    raw: dict = field(default_factory=dict)


@runtime_checkable
class PaymentProvider(Protocol):
    """Protocol that all payment provider adapters must satisfy.

    Concrete implementations (services/payment_service.py):
        - SimulatedPaymentProvider (in-process, for development and tests)
        - StripePaymentProvider    (Stripe Connect transfers)

    create_transfer and collect_deposit must be idempotent per idempotency_key:
    a retried call after a timeout returns the original result instead of
    moving money twice. confirm_deposit raises ExternalProviderError when the
    payment has not succeeded or does not match the escrow amount.
    Confirmed failures raise ExternalProviderError; an unknown outcome raises
    ProviderTimeoutError.
    """

    async def get_payout_account(self, user_id: str) -> PayoutAccount | None:
        """Look up the payee's provider account, or None if they have none."""
        ...

    async def create_transfer(
        self,
        amount: Decimal,
        currency: str,
        destination_account_id: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> TransferResult:
        """Move funds from the platform escrow balance to the destination account."""
        ...

    async def collect_deposit(
        self,
        amount: Decimal,
        currency: str,
        payment_method_id: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> DepositResult:
        """Charge the payer's payment method for the full escrow amount."""
        ...

    async def confirm_deposit(
        self, payment_id: str, amount: Decimal, currency: str
    ) -> DepositResult:
        """Check that an existing payment succeeded for exactly amount/currency."""
        ...

    async def create_payout_account(self, user_id: str, email: str | None) -> PayoutAccount:
        """Open a provider account the payee can receive transfers on."""
        ...

    async def create_onboarding_link(
        self, account_id: str, refresh_url: str, return_url: str
    ) -> str:
        """Return a one-time URL for the provider's hosted onboarding flow."""
        ...
