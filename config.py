from enum import Enum

from pydantic_settings import BaseSettings, SettingsConfigDict

from domain.retry import RetryPolicy


class Env(Enum):
    local = "local"
    dev = "dev"
    prod = "prod"


class Config(BaseSettings):
    env: Env = Env.local
    log_level: str = "INFO"

    # No connection string means the in-memory store.
    cosmos_connection_string: str | None = None
    cosmos_database: str = "recipes"
    cosmos_container: str = "recipes"
    partition_key: str = "recipe"
    partition_key_path: str = "/pk"

    # Seconds.
    operation_timeout: float | None = 10.0
    retry_max_attempts: int = 3
    retry_base_delay: float = 0.1
    retry_max_jitter: float = 0.05
    rate_limit_default_wait: float = 1.0
    rate_limit_max_retries: int = 3

    model_config = SettingsConfigDict(
        env_prefix="RECIPES_", env_file=".env", extra="ignore"
    )

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry_max_attempts,
            base_delay=self.retry_base_delay,
            max_jitter=self.retry_max_jitter,
            rate_limit_wait=self.rate_limit_default_wait,
            max_rate_limit_retries=self.rate_limit_max_retries,
            timeout=self.operation_timeout,
        )
