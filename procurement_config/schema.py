"""
Engine Configuration Schema.

Defines the structure and defaults for the procurement engine's settings.
Actual values are loaded from YAML at startup through
``procurement_config.get_active_config()``.
"""

from dataclasses import asdict, dataclass, fields
from typing import Any, Self

from procurement_kernel.logging_config import get_logger

logger = get_logger("config.schema")

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class EngineConfig:
    """
    Configuration schema for the purchase order engine.

    Field defaults suit a single-node deployment on SQLite.  Override at
    instantiation or through YAML:

        config = EngineConfig(
            database_url="postgresql://procurement@db/procurement",
            gateway_timeout_seconds=5.0,
        )
    """

    # Money
    currency: str = "USD"

    # Concurrency
    gateway_timeout_seconds: float = 10.0
    lock_timeout_seconds: float = 30.0

    # Persistence
    database_url: str = "sqlite:///procurement.db"
    echo_sql: bool = False

    # Logging
    log_level: str = "INFO"

    # Queries
    default_page_size: int = 50
    max_page_size: int = 200

    # Payment processor (Stripe); unset means the in-memory gateway
    stripe_api_key: str | None = None
    stripe_webhook_secret: str | None = None

    def __post_init__(self):
        self.currency = self.currency.upper()
        self.log_level = self.log_level.upper()
        if len(self.currency) != 3 or not self.currency.isalpha():
            raise ValueError(f"currency must be a 3-letter ISO code, got {self.currency!r}")
        if self.gateway_timeout_seconds <= 0:
            raise ValueError("gateway_timeout_seconds must be positive")
        if self.lock_timeout_seconds <= 0:
            raise ValueError("lock_timeout_seconds must be positive")
        if self.log_level not in _LOG_LEVELS:
            raise ValueError(f"log_level must be one of {_LOG_LEVELS}, got {self.log_level!r}")
        if not 0 < self.default_page_size <= self.max_page_size:
            raise ValueError("default_page_size must be in (0, max_page_size]")

        logger.info(
            "engine_config_initialized",
            extra={
                "currency": self.currency,
                "gateway_timeout_seconds": self.gateway_timeout_seconds,
                "lock_timeout_seconds": self.lock_timeout_seconds,
                "database_dialect": self.database_url.split(":", 1)[0],
                "log_level": self.log_level,
                "stripe_enabled": self.stripe_api_key is not None,
            },
        )

    @classmethod
    def with_defaults(cls) -> Self:
        """Create config with the built-in defaults."""
        logger.info("engine_config_created_with_defaults")
        return cls()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        """Create config from a dictionary (e.g., parsed YAML).

        Raises:
            ValueError: On keys the schema does not define.
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown engine config keys: {', '.join(unknown)}")
        logger.info(
            "engine_config_loading_from_dict",
            extra={"keys": sorted(data.keys())},
        )
        return cls(**data)

    def to_dict(self, redact_secrets: bool = True) -> dict[str, Any]:
        data = asdict(self)
        if redact_secrets:
            for key in ("stripe_api_key", "stripe_webhook_secret"):
                if data[key] is not None:
                    data[key] = "***"
        return data

    def clamp_page_size(self, limit: int | None) -> int:
        """Requested page size bounded to [1, max_page_size]."""
        if limit is None:
            return self.default_page_size
        return max(1, min(int(limit), self.max_page_size))
