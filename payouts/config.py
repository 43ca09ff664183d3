import logging
from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .tds import TdsRateTable, TdsSlab


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="PAYOUT_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    service_name: str = "payout-engine"
    currency: str = "INR"

    # Withholding applied when no slab matches
    tds_rate: Decimal = Decimal("0.10")
    tds_slabs: list[TdsSlab] = Field(default_factory=list)

    gateway_timeout_seconds: float = 30.0
    transition_timeout_seconds: float = 5.0

    default_page_size: int = 20
    max_page_size: int = 100

    batch_number_prefix: str = "BATCH"
    log_level: str = "INFO"

    def rate_table(self) -> TdsRateTable:
        return TdsRateTable(default_rate=self.tds_rate, slabs=self.tds_slabs)


@lru_cache
def get_settings() -> Settings:
    return Settings()


LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(settings: Optional[Settings] = None) -> None:
    settings = settings or get_settings()
    logger = logging.getLogger("payouts")
    logger.setLevel(settings.log_level.upper())
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
