"""Configuration models and loader."""

from decimal import Decimal
from pathlib import Path

import yaml
from pydantic import BaseModel, field_validator
from pydantic_settings import BaseSettings

from ai_portfolio.exceptions import ConfigurationError

MIN_TRADE_VALUE = Decimal("500")
# Remaining share counts at or below this are treated as a closed position.
SHARE_EPSILON = Decimal("0.0001")

MARKET_PROVIDERS = ("alpaca", "finnhub", "open", "closed")


class TradingRules(BaseModel):
    min_trade_value: Decimal = MIN_TRADE_VALUE  # anti-noise floor for buys
    share_epsilon: Decimal = SHARE_EPSILON


class MarketConfig(BaseModel):
    provider: str = "alpaca"
    timeout_seconds: float = 10.0

    @field_validator("provider")
    @classmethod
    def _known_provider(cls, value: str) -> str:
        value = value.lower()
        if value not in MARKET_PROVIDERS:
            raise ValueError(f"unknown market provider {value!r}")
        return value


class SnapshotConfig(BaseModel):
    timezone: str | None = None  # owner's calendar; host local date when unset


class PortfolioDefaults(BaseModel):
    starting_capital: Decimal = Decimal("100000")
    rebalance_months: int = 1


class AppConfig(BaseModel):
    trading: TradingRules = TradingRules()
    market: MarketConfig = MarketConfig()
    snapshots: SnapshotConfig = SnapshotConfig()
    portfolio: PortfolioDefaults = PortfolioDefaults()


class Secrets(BaseSettings):
    alpaca_api_key: str = ""
    alpaca_secret_key: str = ""
    finnhub_api_key: str = ""

    model_config = {"env_prefix": "", "case_sensitive": False}


def load_config(path: str | Path = "config.yaml") -> AppConfig:
    """Load application config from YAML file."""
    config_path = Path(path)
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        try:
            return AppConfig(**data)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid config in {config_path}: {e}") from e
    return AppConfig()
