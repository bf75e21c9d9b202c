from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, AliasChoices
from typing import Optional
import logging


class Settings(BaseSettings):
    """Engine configuration using Pydantic v2 settings.

    - Reads environment from APP_ENV or ENVIRONMENT
    - Falls back to the app secret for hash masking when MASKING_SECRET is unset
    - Ignores unknown env keys
    """

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True)

    app_name: str = "SentinelConnect Sync Engine"
    environment: str = Field(default="dev", validation_alias=AliasChoices("APP_ENV", "ENVIRONMENT"))

    # Secrets
    secret_key: str = Field(default="SentinelConnectSecretKey")
    masking_secret: Optional[str] = Field(default=None, validation_alias=AliasChoices("MASKING_SECRET"))

    # Metadata store (configs, jobs, audit)
    metadata_db_url: str = Field(default="sqlite+pysqlite:///.data/sentinel.sqlite")

    # Scheduler
    scheduler_timezone: str = Field(default="UTC", validation_alias=AliasChoices("SCHEDULER_TIMEZONE"))
    run_scheduler: bool = Field(default=True, validation_alias=AliasChoices("RUN_SCHEDULER"))
    worker_pool_size: int = Field(default=4, ge=1)

    # Extraction
    fetch_batch_size: int = Field(default=5000, ge=1)
    default_output_path: str = Field(default="./output")
    default_row_limit: Optional[int] = Field(
        default=None,
        description="Row cap applied to tables without their own limit (None or 0 = unlimited)",
    )
    connect_timeout: int = Field(default=30, description="Driver connect/login timeout in seconds")

    # Masking policy for primary keys configured with a non-deterministic rule
    allow_nondeterministic_pk_masking: bool = Field(
        default=False,
        validation_alias=AliasChoices("ALLOW_NONDETERMINISTIC_PK_MASKING"),
    )

    log_level: str = Field(default="INFO", validation_alias=AliasChoices("LOG_LEVEL"))

    @property
    def effective_masking_secret(self) -> str:
        return (self.masking_secret or "").strip() or self.secret_key


settings = Settings()


_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str | None = None) -> logging.Logger:
    """Attach a single stream handler to the package logger (idempotent)."""
    log = logging.getLogger("sentinelconnect")
    if not log.handlers:
        h = logging.StreamHandler()
        h.setFormatter(logging.Formatter(_LOG_FORMAT))
        log.addHandler(h)
    log.setLevel((level or settings.log_level or "INFO").upper())
    log.propagate = False
    return log
