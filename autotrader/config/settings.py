# autotrader/config/settings.py - Engine configuration
from functools import lru_cache
from typing import Literal, Optional

from pydantic import ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from autotrader.models.trading import RiskLimits
from autotrader.utils.exceptions import ConfigurationError


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="AUTOTRADER_",
        env_file="vars.env",
        extra="ignore",
    )

    # Run mode
    RUN_MODE: Literal["backtest", "live"] = "backtest"
    REPLAY_PACING: Literal["full_speed", "wall_clock"] = "full_speed"
    REPLAY_SPEED: float = 1.0  # wall-clock multiplier, 2.0 replays twice as fast

    # Account
    ACCOUNT_ID: str = "default"
    INITIAL_CASH: float = 100000.0

    # Risk limits
    MAX_POSITION_SIZE: float = float("inf")  # quantity units per symbol
    MAX_EXPOSURE: float = float("inf")  # aggregate absolute notional
    STOP_LOSS_PCT: float = 0.05
    MAX_ORDER_RATE: int = 10
    ORDER_RATE_WINDOW: float = 1.0  # seconds
    QUANTITY_STEP: Optional[float] = None
    MAX_OPEN_POSITIONS: Optional[int] = None

    # Order lifecycle
    LIMIT_ORDER_EXPIRY: float = 900.0  # seconds
    DRAIN_TIMEOUT: float = 30.0  # seconds

    # Event bus
    OUT_OF_ORDER_HORIZON: float = 0.25  # seconds

    # Simulated execution
    SLIPPAGE_BPS: float = 5.0
    COMMISSION_BPS: float = 0.0
    LIQUIDITY_FRACTION: Optional[float] = None  # max share of event volume per fill
    REJECT_INSUFFICIENT_FUNDS: bool = False

    # Persistence
    DATABASE_URL: str = "sqlite:///:memory:"
    DEBUG: bool = False

    # Logging configuration
    LOG_TO_FILE: bool = False
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "log"
    LOG_FILE: str = "app.log"
    LOG_BACKUP_COUNT: int = 14

    @field_validator(
        "REPLAY_SPEED", "ORDER_RATE_WINDOW", "MAX_POSITION_SIZE", "MAX_EXPOSURE",
        "LIMIT_ORDER_EXPIRY",
    )
    @classmethod
    def _positive(cls, value: float, info):
        if value <= 0:
            raise ValueError(f"{info.field_name} must be positive, got {value}")
        return value

    @field_validator("STOP_LOSS_PCT", "SLIPPAGE_BPS", "COMMISSION_BPS", "OUT_OF_ORDER_HORIZON",
                     "DRAIN_TIMEOUT", "INITIAL_CASH")
    @classmethod
    def _non_negative(cls, value: float, info):
        if value < 0:
            raise ValueError(f"{info.field_name} must not be negative, got {value}")
        return value

    @field_validator("MAX_ORDER_RATE")
    @classmethod
    def _rate(cls, value: int):
        if value < 1:
            raise ValueError(f"MAX_ORDER_RATE must be at least 1, got {value}")
        return value

    @field_validator("LIQUIDITY_FRACTION")
    @classmethod
    def _fraction(cls, value: Optional[float]):
        if value is not None and not 0 < value <= 1:
            raise ValueError(f"LIQUIDITY_FRACTION must be in (0, 1], got {value}")
        return value

    @field_validator("LOG_LEVEL")
    @classmethod
    def _level(cls, value: str):
        value = value.upper()
        if value not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid LOG_LEVEL: {value}")
        return value

    def risk_limits(self) -> RiskLimits:
        """Build the read-only risk limits for a run."""
        return RiskLimits(
            max_position_size=self.MAX_POSITION_SIZE,
            max_exposure=self.MAX_EXPOSURE,
            stop_loss_pct=self.STOP_LOSS_PCT,
            max_order_rate=self.MAX_ORDER_RATE,
            order_rate_window=self.ORDER_RATE_WINDOW,
            quantity_step=self.QUANTITY_STEP,
            max_open_positions=self.MAX_OPEN_POSITIONS,
        )

    def is_backtest(self) -> bool:
        return self.RUN_MODE == "backtest"


def load_settings(**overrides) -> Settings:
    """Build settings from environment plus explicit overrides.

    Raises:
        ConfigurationError: If any value fails validation
    """
    try:
        return Settings(**overrides)
    except ValidationError as e:
        raise ConfigurationError(
            "Invalid engine configuration",
            details={'errors': [
                {'field': '.'.join(str(p) for p in err['loc']), 'message': err['msg']}
                for err in e.errors()
            ]},
        ) from e


@lru_cache()
def get_settings() -> Settings:
    """Process-wide settings loaded from the environment."""
    return load_settings()
