"""
Configuration Module
====================
Centralized environment variable loading, validation, and access.
Validates configuration at startup to fail fast.

Every setting has a working default except the Supabase credentials,
which are only required once a database client is actually built.
"""

import os
import logging
import sys
from decimal import Decimal, InvalidOperation
from typing import Optional, Dict, Any, List
from pathlib import Path

import structlog
from dotenv import load_dotenv


# ============================================================================
# LOGGING
# ============================================================================

logger = logging.getLogger(__name__)


# ============================================================================
# ENVIRONMENT LOADING
# ============================================================================

def load_environment():
    """
    Load environment variables from .env file if present.
    Safe to call multiple times.
    """
    env_path = Path(".env")
    if env_path.exists():
        load_dotenv(env_path)
        logger.info("Loaded environment from .env file")
    else:
        logger.debug("No .env file found, using system environment variables")


# Load on module import
load_environment()


# ============================================================================
# CONFIGURATION EXCEPTION
# ============================================================================

class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


# ============================================================================
# VALIDATION HELPERS
# ============================================================================

def _get_optional_env(key: str, default: str = None) -> Optional[str]:
    """Stripped value of ``key``; blank counts as unset."""
    value = (os.getenv(key) or "").strip()
    return value or default


def _get_bool_env(key: str, default: bool = False) -> bool:
    value = os.getenv(key)
    if value is None:
        return default
    return value.strip().lower() in ("true", "1", "yes", "on")


def _get_int_env(key: str, default: int = None) -> Optional[int]:
    """
    Get integer environment variable.

    Raises:
        ConfigurationError: If value is not a valid integer
    """
    value = os.getenv(key)

    if not value:
        return default

    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(
            f"Invalid integer value for {key}: {value}"
        )


def _get_decimal_env(key: str, default: str) -> Decimal:
    """
    Get decimal environment variable (money and rates).

    Raises:
        ConfigurationError: If value is not a valid decimal
    """
    value = os.getenv(key) or default

    try:
        return Decimal(value.strip())
    except (InvalidOperation, AttributeError):
        raise ConfigurationError(
            f"Invalid decimal value for {key}: {value}"
        )


# ============================================================================
# SUPABASE CONFIGURATION
# ============================================================================

class SupabaseConfig:
    """Supabase database configuration."""

    def __init__(self):
        self.url = _get_optional_env("SUPABASE_URL")
        self.key = _get_optional_env("SUPABASE_KEY")

        # Validate URL format
        if self.url and not self.url.startswith("https://"):
            raise ConfigurationError(
                f"SUPABASE_URL must start with https://: {self.url}"
            )

        # Connection settings
        self.request_timeout = _get_int_env("SUPABASE_TIMEOUT", 30)

    @property
    def is_configured(self) -> bool:
        """True when both URL and key are present."""
        return bool(self.url and self.key)


# ============================================================================
# PRICING CONFIGURATION
# ============================================================================

class PricingConfig:
    """Fee policy and order amount limits."""

    def __init__(self):
        self.currency = _get_optional_env("CURRENCY", "GHS")
        self.delivery_fee = _get_decimal_env("DELIVERY_FEE", "2.00")
        self.service_fee_rate = _get_decimal_env("SERVICE_FEE_RATE", "0.05")

        # Extra rate charged on electronic payment methods (momo, card)
        self.processing_fee_rate = _get_decimal_env("PROCESSING_FEE_RATE", "0.025")

        self.min_order_amount = _get_decimal_env("MIN_ORDER_AMOUNT", "5.00")

        if self.delivery_fee < 0:
            raise ConfigurationError(
                f"DELIVERY_FEE cannot be negative: {self.delivery_fee}"
            )

        for name, rate in (
            ("SERVICE_FEE_RATE", self.service_fee_rate),
            ("PROCESSING_FEE_RATE", self.processing_fee_rate),
        ):
            if not Decimal("0") <= rate < Decimal("1"):
                raise ConfigurationError(
                    f"{name} must be between 0 and 1: {rate}"
                )


# ============================================================================
# CART CONFIGURATION
# ============================================================================

class CartConfig:
    """Cart limits and custom item validation rules."""

    def __init__(self):
        self.max_item_quantity = _get_int_env("MAX_ITEM_QUANTITY", 99)
        self.max_cart_items = _get_int_env("MAX_CART_ITEMS", 50)
        self.custom_item_min_name_length = _get_int_env(
            "CUSTOM_ITEM_MIN_NAME_LENGTH",
            3
        )
        self.custom_item_max_budget = _get_decimal_env(
            "CUSTOM_ITEM_MAX_BUDGET",
            "1000"
        )

        if self.max_item_quantity < 1:
            raise ConfigurationError(
                f"MAX_ITEM_QUANTITY must be at least 1: {self.max_item_quantity}"
            )

        if self.max_cart_items < 1:
            raise ConfigurationError(
                f"MAX_CART_ITEMS must be at least 1: {self.max_cart_items}"
            )

        if self.custom_item_max_budget <= 0:
            raise ConfigurationError(
                f"CUSTOM_ITEM_MAX_BUDGET must be positive: {self.custom_item_max_budget}"
            )


# ============================================================================
# SYNC CONFIGURATION
# ============================================================================

class SyncConfig:
    """Order polling configuration."""

    def __init__(self):
        self.poll_interval_seconds = _get_int_env("ORDER_POLL_INTERVAL", 15)
        self.fetch_timeout_seconds = _get_int_env("ORDER_FETCH_TIMEOUT", 10)

        if not 1 <= self.poll_interval_seconds <= 300:
            raise ConfigurationError(
                f"ORDER_POLL_INTERVAL must be between 1 and 300: "
                f"{self.poll_interval_seconds}"
            )


# ============================================================================
# CHECKOUT CONFIGURATION
# ============================================================================

class CheckoutConfig:
    """Checkout validation and partial-failure handling."""

    def __init__(self):
        # Regional phone format (Ghana by default)
        self.phone_pattern = _get_optional_env(
            "PHONE_PATTERN",
            r"^(\+233|0)[0-9]{9}$"
        )

        self.item_attach_retries = _get_int_env("ITEM_ATTACH_RETRIES", 2)

        self.cache_path = _get_optional_env(
            "CHECKOUT_CACHE_PATH",
            "data/checkout_form.json"
        )

        if self.item_attach_retries < 0:
            raise ConfigurationError(
                f"ITEM_ATTACH_RETRIES cannot be negative: {self.item_attach_retries}"
            )


# ============================================================================
# LOGGING CONFIGURATION
# ============================================================================

class LoggingConfig:
    """Log output configuration."""

    def __init__(self):
        self.log_level = _get_optional_env("LOG_LEVEL", "INFO").upper()
        self.json_logs = _get_bool_env("LOG_JSON", False)

        if self.log_level not in ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
            raise ConfigurationError(
                f"Invalid LOG_LEVEL: {self.log_level}"
            )


# ============================================================================
# MAIN CONFIGURATION CLASS
# ============================================================================

class Config:
    """All settings, read from the environment and validated eagerly."""

    def __init__(self):
        try:
            self.supabase = SupabaseConfig()
            self.pricing = PricingConfig()
            self.cart = CartConfig()
            self.sync = SyncConfig()
            self.checkout = CheckoutConfig()
            self.logging = LoggingConfig()

            logger.debug("Configuration loaded and validated successfully")

        except ConfigurationError as e:
            logger.error(f"Configuration error: {str(e)}")
            raise
        except Exception as e:
            logger.error(f"Unexpected error loading configuration: {str(e)}")
            raise ConfigurationError(f"Configuration initialization failed: {str(e)}")

    def get_safe_summary(self) -> Dict[str, Any]:
        """
        Get safe configuration summary (no secrets).

        Returns:
            Dictionary with non-sensitive configuration
        """
        return {
            "supabase_configured": self.supabase.is_configured,
            "pricing": {
                "currency": self.pricing.currency,
                "delivery_fee": str(self.pricing.delivery_fee),
                "service_fee_rate": str(self.pricing.service_fee_rate),
                "processing_fee_rate": str(self.pricing.processing_fee_rate),
                "min_order_amount": str(self.pricing.min_order_amount),
            },
            "cart": {
                "max_item_quantity": self.cart.max_item_quantity,
                "max_cart_items": self.cart.max_cart_items,
                "custom_item_max_budget": str(self.cart.custom_item_max_budget),
            },
            "sync": {
                "poll_interval_seconds": self.sync.poll_interval_seconds,
            },
            "checkout": {
                "item_attach_retries": self.checkout.item_attach_retries,
            },
            "log_level": self.logging.log_level,
        }

    def validate_runtime_dependencies(self) -> List[str]:
        """
        Validate that runtime dependencies are accessible.

        Returns:
            List of warnings (empty if all OK)
        """
        warnings = []

        if not self.supabase.is_configured:
            warnings.append(
                "SUPABASE_URL and SUPABASE_KEY not set; remote persistence disabled"
            )

        cache_dir = Path(self.checkout.cache_path).parent
        if cache_dir.exists() and not os.access(cache_dir, os.W_OK):
            warnings.append(f"Checkout cache directory not writable: {cache_dir}")

        return warnings


# ============================================================================
# SINGLETON INSTANCE
# ============================================================================

_config: Optional[Config] = None


def get_config() -> Config:
    """
    Get global configuration instance.
    Initializes on first call.

    Raises:
        ConfigurationError: If configuration is invalid
    """
    global _config

    if _config is None:
        _config = Config()

    return _config


def reload_config() -> Config:
    """
    Reload configuration from environment.
    Useful for testing or dynamic reconfiguration.
    """
    global _config
    load_environment()
    _config = Config()
    logger.info("Configuration reloaded")
    return _config


# ============================================================================
# LOGGING SETUP
# ============================================================================

def configure_logging(config: Optional[Config] = None):
    """
    Configure stdlib logging and structlog from LoggingConfig.

    Data modules log through ``logging``; orchestration modules log
    through ``structlog``. Both write to stdout.
    """
    config = config or get_config()
    level = getattr(logging, config.logging.log_level)

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        stream=sys.stdout
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if config.logging.json_logs:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ============================================================================
# VALIDATION FUNCTION
# ============================================================================

def validate_configuration():
    """
    Log the effective settings and any runtime warnings.

    Raises:
        ConfigurationError: If configuration is invalid
    """
    config = get_config()
    summary = config.get_safe_summary()
    pricing = summary["pricing"]

    logger.info(
        "Marketplace core configured: fees %s %s + %s, minimum %s, polling every %ss",
        pricing["delivery_fee"], pricing["currency"], pricing["service_fee_rate"],
        pricing["min_order_amount"], summary["sync"]["poll_interval_seconds"]
    )

    for warning in config.validate_runtime_dependencies():
        logger.warning("Configuration warning: %s", warning)


if __name__ == "__main__":
    configure_logging()

    try:
        validate_configuration()
    except ConfigurationError as e:
        print(f"\n✗ Configuration Error: {e}")
        sys.exit(1)
