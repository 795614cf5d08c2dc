"""Tests for the payment providers.

Stripe calls are patched at the SDK boundary; nothing here talks to the
network.
"""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import patch

import pytest
import stripe

from milestone_escrow.config import Settings
from milestone_escrow.domain.exceptions import ExternalProviderError, ProviderTimeoutError
from milestone_escrow.domain.payment_protocol import PaymentProvider
from milestone_escrow.infrastructure.database.repositories import PayoutAccountRepository
from milestone_escrow.services.payment_service import (
    SimulatedPaymentProvider,
    StripePaymentProvider,
    build_payment_provider,
    deposit_idempotency_key,
    release_idempotency_key,
    to_minor_units,
)


class TestHelpers:
    def test_minor_units(self) -> None:
        assert to_minor_units(Decimal("3000.00")) == 300000
        assert to_minor_units(Decimal("0.01")) == 1
        assert to_minor_units(Decimal("19.995")) == 2000

    def test_idempotency_key_is_stable(self) -> None:
        assert release_idempotency_key("abc") == "escrow-release:abc"
        assert release_idempotency_key("abc") == release_idempotency_key("abc")
        assert deposit_idempotency_key("abc") == "escrow-deposit:abc"


class TestSimulatedProvider:
    def test_satisfies_protocol(self) -> None:
        assert isinstance(SimulatedPaymentProvider(), PaymentProvider)

    @pytest.mark.asyncio
    async def test_replay_returns_original_transfer(self) -> None:
        provider = SimulatedPaymentProvider()
        first = await provider.create_transfer(
            Decimal("10.00"), "USD", "acct_1", {"k": "v"}, "key-1"
        )
        again = await provider.create_transfer(
            Decimal("10.00"), "USD", "acct_1", {"k": "v"}, "key-1"
        )

        assert again.transfer_id == first.transfer_id
        assert again.replayed is True
        assert first.raw == {
            "amount": 1000,
            "currency": "usd",
            "destination": "acct_1",
            "metadata": {"k": "v"},
        }
        assert provider.calls == 2
        assert len(provider.transfers) == 1

    @pytest.mark.asyncio
    async def test_scripted_failure_moves_no_money(self) -> None:
        provider = SimulatedPaymentProvider()
        provider.fail_next_transfer()

        with pytest.raises(ExternalProviderError) as exc_info:
            await provider.create_transfer(Decimal("5.00"), "USD", "acct_1", {}, "key-2")
        assert exc_info.value.provider_code == "declined"
        assert provider.transfers == []

        result = await provider.create_transfer(Decimal("5.00"), "USD", "acct_1", {}, "key-2")
        assert result.replayed is False

    @pytest.mark.asyncio
    async def test_payout_accounts(self) -> None:
        provider = SimulatedPaymentProvider()
        registered = provider.register_payout_account("c-1", payouts_enabled=False)

        assert registered.account_id.startswith("acct_sim_")
        assert await provider.get_payout_account("c-1") == registered
        assert await provider.get_payout_account("nobody") is None

    @pytest.mark.asyncio
    async def test_deposit_replays_per_key_and_is_not_a_transfer(self) -> None:
        provider = SimulatedPaymentProvider()
        first = await provider.collect_deposit(
            Decimal("10000.00"), "USD", "pm_card_visa", {"agreement_id": "a-1"}, "escrow-deposit:a-1"
        )
        again = await provider.collect_deposit(
            Decimal("10000.00"), "USD", "pm_card_visa", {"agreement_id": "a-1"}, "escrow-deposit:a-1"
        )

        assert first.payment_id.startswith("pi_sim_")
        assert again == first
        assert first.amount_minor == 1000000
        assert len(provider.deposits) == 1
        assert provider.calls == 0
        assert provider.transfers == []

    @pytest.mark.asyncio
    async def test_confirm_deposit_checks_decline_and_amount(self) -> None:
        provider = SimulatedPaymentProvider()
        deposit = await provider.collect_deposit(Decimal("50.00"), "USD", "pm_1", {}, "k")

        confirmed = await provider.confirm_deposit(deposit.payment_id, Decimal("50.00"), "USD")
        assert confirmed.payment_id == deposit.payment_id

        with pytest.raises(ExternalProviderError) as exc_info:
            await provider.confirm_deposit(deposit.payment_id, Decimal("60.00"), "USD")
        assert exc_info.value.provider_code == "amount_mismatch"

        provider.decline_payment("pi_client_1")
        with pytest.raises(ExternalProviderError) as exc_info:
            await provider.confirm_deposit("pi_client_1", Decimal("50.00"), "USD")
        assert exc_info.value.provider_code == "requires_payment_method"

    @pytest.mark.asyncio
    async def test_onboarding_account_and_link(self) -> None:
        provider = SimulatedPaymentProvider()
        account = await provider.create_payout_account("c-2", "c2@example.com")

        assert await provider.create_payout_account("c-2", None) == account
        link = await provider.create_onboarding_link(account.account_id, "r", "b")
        assert link.endswith(account.account_id)
        with pytest.raises(ExternalProviderError):
            await provider.create_onboarding_link("acct_unknown", "r", "b")


class TestStripeProvider:
    @pytest.mark.asyncio
    async def test_transfer_in_cents_with_idempotency_key(self, session) -> None:
        provider = StripePaymentProvider(session, api_key="sk_test_123")

        with patch("stripe.Transfer.create", return_value={"id": "tr_123", "amount": 300000}) as create:
            result = await provider.create_transfer(
                Decimal("3000.00"), "USD", "acct_c", {"milestone_id": "m-1"}, "escrow-release:t-1"
            )

        assert result.transfer_id == "tr_123"
        assert result.replayed is False
        create.assert_called_once_with(
            amount=300000,
            currency="usd",
            destination="acct_c",
            metadata={"milestone_id": "m-1"},
            idempotency_key="escrow-release:t-1",
            api_key="sk_test_123",
        )

    @pytest.mark.asyncio
    async def test_connection_error_is_unknown_outcome(self, session) -> None:
        provider = StripePaymentProvider(session, api_key="sk_test_123")

        with (
            patch("stripe.Transfer.create", side_effect=stripe.APIConnectionError("reset")),
            pytest.raises(ProviderTimeoutError),
        ):
            await provider.create_transfer(Decimal("1.00"), "USD", "acct_c", {}, "k")

    @pytest.mark.asyncio
    async def test_stripe_refusal_is_confirmed_failure(self, session) -> None:
        provider = StripePaymentProvider(session, api_key="sk_test_123")
        error = stripe.InvalidRequestError(
            "No such destination", param="destination", code="resource_missing"
        )

        with (
            patch("stripe.Transfer.create", side_effect=error),
            pytest.raises(ExternalProviderError) as exc_info,
        ):
            await provider.create_transfer(Decimal("1.00"), "USD", "acct_c", {}, "k")

        assert not isinstance(exc_info.value, ProviderTimeoutError)
        assert exc_info.value.provider_code == "resource_missing"

    @pytest.mark.asyncio
    async def test_payout_account_refreshed_from_stripe(self, session) -> None:
        await PayoutAccountRepository(session).upsert("c-1", "acct_c", payouts_enabled=True)
        provider = StripePaymentProvider(session, api_key="sk_test_123")

        with patch("stripe.Account.retrieve", return_value={"payouts_enabled": False}):
            account = await provider.get_payout_account("c-1")

        assert account.account_id == "acct_c"
        assert account.payouts_enabled is False
        record = await PayoutAccountRepository(session).get("c-1")
        assert record.payouts_enabled is False

    @pytest.mark.asyncio
    async def test_unknown_payee_has_no_account(self, session) -> None:
        provider = StripePaymentProvider(session, api_key="sk_test_123")
        with patch("stripe.Account.retrieve") as retrieve:
            assert await provider.get_payout_account("nobody") is None
        retrieve.assert_not_called()

    @pytest.mark.asyncio
    async def test_deposit_confirms_payment_intent_in_cents(self, session) -> None:
        provider = StripePaymentProvider(session, api_key="sk_test_123")
        intent = {"id": "pi_1", "status": "succeeded", "amount_received": 1000000, "currency": "usd"}

        with patch("stripe.PaymentIntent.create", return_value=intent) as create:
            result = await provider.collect_deposit(
                Decimal("10000.00"), "USD", "pm_card_visa", {"agreement_id": "a-1"}, "escrow-deposit:a-1"
            )

        assert result.payment_id == "pi_1"
        assert result.amount_minor == 1000000
        create.assert_called_once_with(
            amount=1000000,
            currency="usd",
            payment_method="pm_card_visa",
            confirm=True,
            automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
            metadata={"agreement_id": "a-1"},
            idempotency_key="escrow-deposit:a-1",
            api_key="sk_test_123",
        )

    @pytest.mark.asyncio
    async def test_deposit_needing_action_is_refused(self, session) -> None:
        provider = StripePaymentProvider(session, api_key="sk_test_123")
        intent = {"id": "pi_2", "status": "requires_action", "amount": 5000, "currency": "usd"}

        with (
            patch("stripe.PaymentIntent.create", return_value=intent),
            pytest.raises(ExternalProviderError) as exc_info,
        ):
            await provider.collect_deposit(Decimal("50.00"), "USD", "pm_1", {}, "k")
        assert exc_info.value.provider_code == "requires_action"

    @pytest.mark.asyncio
    async def test_client_payment_must_match_escrow_amount(self, session) -> None:
        provider = StripePaymentProvider(session, api_key="sk_test_123")
        intent = {"id": "pi_3", "status": "succeeded", "amount_received": 4000, "currency": "usd"}

        with patch("stripe.PaymentIntent.retrieve", return_value=intent) as retrieve:
            with pytest.raises(ExternalProviderError) as exc_info:
                await provider.confirm_deposit("pi_3", Decimal("50.00"), "USD")
            confirmed = await provider.confirm_deposit("pi_3", Decimal("40.00"), "USD")

        assert exc_info.value.provider_code == "amount_mismatch"
        assert confirmed.payment_id == "pi_3"
        retrieve.assert_called_with("pi_3", api_key="sk_test_123")

    @pytest.mark.asyncio
    async def test_express_account_and_onboarding_link(self, session) -> None:
        provider = StripePaymentProvider(session, api_key="sk_test_123")

        with (
            patch(
                "stripe.Account.create", return_value={"id": "acct_new", "payouts_enabled": False}
            ) as create,
            patch(
                "stripe.AccountLink.create", return_value={"url": "https://connect.stripe.com/x"}
            ) as link,
        ):
            account = await provider.create_payout_account("c-1", "c1@example.com")
            url = await provider.create_onboarding_link("acct_new", "https://r", "https://b")

        assert account.account_id == "acct_new"
        assert account.payouts_enabled is False
        assert create.call_args.kwargs["type"] == "express"
        assert create.call_args.kwargs["idempotency_key"] == "payout-account:c-1"
        assert url == "https://connect.stripe.com/x"
        link.assert_called_once_with(
            account="acct_new",
            refresh_url="https://r",
            return_url="https://b",
            type="account_onboarding",
            api_key="sk_test_123",
        )


class TestBuildProvider:
    def test_simulated_by_default(self, session) -> None:
        simulated = SimulatedPaymentProvider()
        settings = Settings(_env_file=None)
        assert build_payment_provider(session, settings, simulated) is simulated

    def test_stripe_when_configured(self, session) -> None:
        settings = Settings(_env_file=None, payment_simulate=False, stripe_secret_key="sk_live_x")
        provider = build_payment_provider(session, settings, SimulatedPaymentProvider())
        assert isinstance(provider, StripePaymentProvider)
