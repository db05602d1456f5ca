from urllib.parse import quote

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Management API (HTTP)
    RABBITMQ_HOST: str = "localhost"
    RABBITMQ_PORT: int = 15672
    RABBITMQ_SCHEME: str = "http"
    RABBITMQ_USER: str = "gasolinera_user"
    RABBITMQ_PASS: str = "gasolinera_pass"
    RABBITMQ_VHOST: str = "/gasolinera"

    # AMQP, only used by the dead-letter probe
    RABBITMQ_AMQP_PORT: int = 5672

    HTTP_TIMEOUT: float = 10.0
    HTTP_RETRIES: int = Field(3, ge=0)
    HTTP_BACKOFF: float = 0.5

    READY_TIMEOUT: float = Field(60.0, ge=0)
    READY_POLL_INTERVAL: float = Field(5.0, gt=0)

    APPLY_WORKERS: int = Field(1, ge=1)
    TOPOLOGY_FILE: str = ""
    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def management_url(self) -> str:
        return f"{self.RABBITMQ_SCHEME}://{self.RABBITMQ_HOST}:{self.RABBITMQ_PORT}/api"

    @property
    def amqp_url(self) -> str:
        user = quote(self.RABBITMQ_USER, safe="")
        pw = quote(self.RABBITMQ_PASS, safe="")
        vhost = quote(self.RABBITMQ_VHOST, safe="")
        return f"amqp://{user}:{pw}@{self.RABBITMQ_HOST}:{self.RABBITMQ_AMQP_PORT}/{vhost}"
