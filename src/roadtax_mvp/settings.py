from __future__ import annotations
import logging
from pydantic_settings import BaseSettings
from pydantic import Field

logger = logging.getLogger("roadtax-api")

class Settings(BaseSettings):
    # Alternative rate registry; the packaged rates_registry.json is used when unset.
    ved_rates_path: str | None = Field(default=None, alias="VED_RATES_PATH")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    api_title: str = Field(default="Road Tax Pricing API", alias="API_TITLE")

    model_config = {"env_file": ".env", "extra": "ignore"}

    @property
    def logging_level(self) -> int:
        level = logging.getLevelName(self.log_level.upper())
        if isinstance(level, int):
            return level
        logger.warning("Unknown LOG_LEVEL %r; falling back to INFO", self.log_level)
        return logging.INFO

settings = Settings()
