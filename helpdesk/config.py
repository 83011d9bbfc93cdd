from pydantic import AnyUrl
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from typing import Literal


def _split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    ENV: str = "dev"
    SERVICE_NAME: str = "ticket"
    SERVICE_PORT: int = 8080
    LOG_JSON: bool = True
    LOG_LEVEL: str = "INFO"

    # Broker selection: "memory" (single process) or "redis" (Redis Streams)
    BROKER_ADAPTER: Literal["memory", "redis"] = "memory"
    REDIS_URL: AnyUrl | None = None
    REDIS_STREAM_PREFIX: str = "helpdesk"
    REDIS_STREAM_MAXLEN: int = 10000

    # Request/reply
    RPC_TIMEOUT_MS: int = 5000
    REPLY_CACHE_SIZE: int = 1024

    # Startup connection retries
    BROKER_CONNECT_RETRIES: int = 8
    BROKER_BACKOFF_INITIAL_MS: int = 100
    BROKER_BACKOFF_MAX_MS: int = 5000

    # Fan-out subscribers (comma-separated service names)
    STATUS_CHANGED_SUBSCRIBERS: str = "notification,satisfaction"
    TICKET_CREATED_SUBSCRIBERS: str = "notification"
    TICKET_ASSIGNED_SUBSCRIBERS: str = "notification"

    # Workflow
    SUPPORTER_ROLE_IDS: str = "5,6,7,8,9,10,13"
    OPEN_STATUS_ID: int = 1
    CLOSED_STATUS_ID: int = 5

    # Email delivery
    EMAIL_TRANSPORT: Literal["log", "smtp"] = "log"
    SMTP_HOST: str = "localhost"
    SMTP_PORT: int = 25
    SMTP_SENDER: str = "support@helpdesk.local"
    FRONTEND_URL: str = "http://localhost:3000"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @property
    def rpc_timeout(self) -> float:
        """Default request/reply deadline in seconds."""
        return self.RPC_TIMEOUT_MS / 1000

    @property
    def status_changed_subscribers(self) -> list[str]:
        return _split_csv(self.STATUS_CHANGED_SUBSCRIBERS)

    @property
    def ticket_created_subscribers(self) -> list[str]:
        return _split_csv(self.TICKET_CREATED_SUBSCRIBERS)

    @property
    def ticket_assigned_subscribers(self) -> list[str]:
        return _split_csv(self.TICKET_ASSIGNED_SUBSCRIBERS)

    @property
    def supporter_role_ids(self) -> list[int]:
        return [int(role_id) for role_id in _split_csv(self.SUPPORTER_ROLE_IDS)]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
