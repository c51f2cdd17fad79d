from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Strongly-typed settings model loaded from env / .env.

    Notes:
        - Every variable is read with the ``ATTEMPTS_`` prefix, e.g. ``ATTEMPTS_DATABASE_URL``.
        - Without ``DATABASE_URL`` the service keeps attempts in process memory.
        - The Kafka sink fails fast at startup if no bootstrap servers are configured.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="ATTEMPTS_",
        extra="ignore",
        protected_namespaces=()
    )

    ENV: Literal["dev", "staging", "prod"] = Field(default="dev", description="Deployment environment")
    SERVICE_NAME: str = Field(default="attempt-engine", description="Service name")

    DATABASE_URL: Optional[str] = Field(default=None, description="SQLAlchemy URL for the attempt store")
    CATALOG_PATH: Optional[str] = Field(default=None, description="YAML file with tests and answer keys")

    EVENT_SINK: Literal["log", "kafka"] = Field(default="log", description="Where attempt events go")
    KAFKA_BOOTSTRAP: Optional[str] = Field(default=None, description="Kafka bootstrap servers")
    EVENT_TOPIC_PREFIX: str = Field(default="attempt", description="Topic prefix for attempt events")
    EVENT_QUEUE_SIZE: int = Field(default=10_000, ge=1, description="Pending events before new ones are dropped")

    WRITE_RETRIES: int = Field(default=3, ge=0, description="Retries on optimistic-concurrency conflicts")

    LOG_LEVEL: str = Field(default="INFO")
    JSON_LOGS: bool = Field(default=True)

    @model_validator(mode="after")
    def _kafka_needs_bootstrap(self) -> "Settings":
        if self.EVENT_SINK == "kafka" and not (self.KAFKA_BOOTSTRAP or "").strip():
            raise ValueError("ATTEMPTS_KAFKA_BOOTSTRAP must be set when ATTEMPTS_EVENT_SINK=kafka.")
        return self


@lru_cache()
def get_settings() -> Settings:
    """Return a cached singleton `Settings` instance."""
    return Settings()
