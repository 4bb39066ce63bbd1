import logging
from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    PROJECT_NAME: str = "Store Ledger"

    backend: Literal["memory", "sql"] = "memory"
    database_url: str = "sqlite:///./ledger.db"
    sql_echo: bool = False

    platform_fee_rate: Decimal = Decimal("0.01")
    fee_tax_rate: Decimal = Decimal("0.05")
    default_cancel_hours: int = 24
    default_currency: str = "twd"

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
