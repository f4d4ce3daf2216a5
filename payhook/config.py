import logging
import sys

from pydantic_settings import BaseSettings, SettingsConfigDict

from payhook.signature import DEFAULT_SIGNATURE_HEADER


class Settings(BaseSettings):
    PROJECT_NAME: str = "Payhook Webhook Receiver"
    WEBHOOK_SECRET: str = ""  # Must be set via environment variable
    SIGNATURE_HEADER: str = DEFAULT_SIGNATURE_HEADER
    DATABASE_URL: str = "sqlite:///./payhook.db"

    # Plan id -> days of access granted per successful payment
    PLAN_DURATIONS_DAYS: dict[str, int] = {"monthly": 30, "yearly": 365}

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(case_sensitive=True, env_file=".env", extra="ignore")


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper(), logging.INFO),
    )
    # Reduce noise from chatty libraries
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
