"""Configuration loading and validation tests."""

from decimal import Decimal

import pytest

from config import Config, ConfigurationError, SupabaseConfig


class TestDefaults:

    def test_defaults(self, config):
        assert config.pricing.currency == "GHS"
        assert config.pricing.delivery_fee == Decimal("2.00")
        assert config.pricing.min_order_amount == Decimal("5.00")
        assert config.cart.max_item_quantity == 99
        assert config.cart.max_cart_items == 50
        assert config.sync.poll_interval_seconds == 15
        assert config.checkout.item_attach_retries == 2

    def test_safe_summary_has_no_secrets(self, config, monkeypatch):
        monkeypatch.setenv("SUPABASE_URL", "https://example.supabase.co")
        monkeypatch.setenv("SUPABASE_KEY", "secret-key")

        summary = Config().get_safe_summary()

        assert summary["supabase_configured"] is True
        assert "secret-key" not in str(summary)


class TestValidation:

    @pytest.mark.parametrize("key, value", [
        ("DELIVERY_FEE", "-1"),
        ("DELIVERY_FEE", "free"),
        ("SERVICE_FEE_RATE", "1.5"),
        ("MAX_CART_ITEMS", "0"),
        ("MAX_ITEM_QUANTITY", "many"),
        ("ORDER_POLL_INTERVAL", "0"),
        ("ORDER_POLL_INTERVAL", "301"),
        ("ITEM_ATTACH_RETRIES", "-1"),
        ("LOG_LEVEL", "LOUD"),
    ])
    def test_invalid_values(self, config, monkeypatch, key, value):
        monkeypatch.setenv(key, value)

        with pytest.raises(ConfigurationError):
            Config()

    def test_overrides(self, config, monkeypatch):
        monkeypatch.setenv("DELIVERY_FEE", "3.50")
        monkeypatch.setenv("ORDER_POLL_INTERVAL", "30")

        reloaded = Config()

        assert reloaded.pricing.delivery_fee == Decimal("3.50")
        assert reloaded.sync.poll_interval_seconds == 30

    def test_supabase_url_must_be_https(self, monkeypatch):
        monkeypatch.setenv("SUPABASE_URL", "http://example.supabase.co")
        monkeypatch.setenv("SUPABASE_KEY", "key")

        with pytest.raises(ConfigurationError):
            SupabaseConfig()

    def test_missing_supabase_is_a_warning(self, config, monkeypatch):
        monkeypatch.delenv("SUPABASE_URL", raising=False)
        monkeypatch.delenv("SUPABASE_KEY", raising=False)

        warnings = Config().validate_runtime_dependencies()

        assert any("SUPABASE_URL" in warning for warning in warnings)


class TestLoggingSetup:

    @pytest.mark.parametrize("json_logs", ["true", "false"])
    def test_configure_logging(self, config, monkeypatch, json_logs):
        import structlog

        from config import configure_logging

        monkeypatch.setenv("LOG_JSON", json_logs)
        try:
            configure_logging(Config())
            assert structlog.is_configured()
        finally:
            structlog.reset_defaults()
