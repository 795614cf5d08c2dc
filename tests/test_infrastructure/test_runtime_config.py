"""Tests for settings, engine options and the log redaction processor."""

from __future__ import annotations

import pytest
from pydantic import ValidationError as SettingsError

from milestone_escrow.config import Settings
from milestone_escrow.infrastructure.database.engine import engine_options
from milestone_escrow.logging_config import redact_payment_fields


class TestSettings:
    def test_defaults_simulate_payouts(self) -> None:
        settings = Settings(_env_file=None)
        assert settings.payment_simulate is True
        assert settings.stripe_enabled is False
        assert settings.default_currency == "USD"

    def test_stripe_needs_key_and_simulation_off(self) -> None:
        assert not Settings(_env_file=None, stripe_secret_key="sk_test_1").stripe_enabled
        assert Settings(
            _env_file=None, stripe_secret_key="sk_test_1", payment_simulate=False
        ).stripe_enabled

    def test_currency_is_normalized(self) -> None:
        assert Settings(_env_file=None, default_currency="eur").default_currency == "EUR"

    def test_provider_timeout_must_be_positive(self) -> None:
        with pytest.raises(SettingsError):
            Settings(_env_file=None, payment_provider_timeout_seconds=0)


class TestEngineOptions:
    def test_postgres_gets_pool_and_isolation(self) -> None:
        options = engine_options(Settings(_env_file=None, db_pool_size=5))
        assert options["pool_size"] == 5
        assert options["isolation_level"] == "READ COMMITTED"
        assert options["pool_pre_ping"] is True

    def test_sqlite_has_no_pool_tuning(self) -> None:
        options = engine_options(Settings(_env_file=None, database_url="sqlite+aiosqlite:///x.db"))
        assert options == {"echo": False}


class TestRedaction:
    def test_secrets_and_destinations_are_hidden(self) -> None:
        event = redact_payment_fields(
            None,
            "info",
            {
                "event": "payment.transfer_created",
                "api_key": "sk_live_abcdef",
                "destination": "acct_1234567890",
                "amount": "3000.00",
            },
        )
        assert event["api_key"] == "[redacted]"
        assert event["destination"] == "***7890"
        assert event["amount"] == "3000.00"

    def test_short_values_left_alone(self) -> None:
        event = redact_payment_fields(None, "info", {"event": "x", "account_id": "a1"})
        assert event["account_id"] == "a1"
