from urllib.parse import quote, urlsplit

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from qms_adapter.app.constants import AckMode
from qms_adapter.app.core.logging import normalize_level
from qms_adapter.app.domain.models import QueueBinding


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)

    broker_host: str = Field(..., validation_alias="BROKER_HOST")
    broker_port: int = Field(..., validation_alias="BROKER_PORT")
    broker_user: str = Field(..., validation_alias="BROKER_USER")
    broker_password: str = Field(..., validation_alias="BROKER_PASSWORD")
    broker_vhost: str = Field("/", validation_alias="BROKER_VHOST")

    exchange_name: str = Field(..., min_length=1, validation_alias="AMQP_EXCHANGE_NAME")
    exchange_type: str = Field(..., min_length=1, validation_alias="AMQP_EXCHANGE_TYPE")
    queue_name: str = Field("qms-adapter", validation_alias="QUEUE_NAME")
    routing_key: str = Field("qms.usages", validation_alias="ROUTING_KEY")
    # 0 lets the broker push without limit.
    prefetch_count: int = Field(0, ge=0, validation_alias="PREFETCH_COUNT")
    reconnect: bool = Field(False, validation_alias="AMQP_RECONNECT")
    consumer_backend: str = Field("rabbitmq", validation_alias="CONSUMER_BACKEND")

    initial_backoff_seconds: float = Field(1.0, validation_alias="INITIAL_BACKOFF_SECONDS")
    max_backoff_seconds: float = Field(30.0, validation_alias="MAX_BACKOFF_SECONDS")
    max_connection_attempts: int = Field(5, ge=1, validation_alias="MAX_CONNECTION_ATTEMPTS")
    backoff_multiplier: float = Field(2.0, validation_alias="BACKOFF_MULTIPLIER")

    user_domain: str = Field(..., validation_alias="USERS_DOMAIN")

    qms_enabled: bool = Field(False, validation_alias="QMS_ENABLED")
    qms_base: str = Field("", validation_alias="QMS_BASE")
    qms_usage: str = Field("", validation_alias="QMS_USAGE")
    qms_connect_timeout_seconds: float = Field(5.0, validation_alias="QMS_CONNECT_TIMEOUT_SECONDS")
    qms_read_timeout_seconds: float = Field(15.0, validation_alias="QMS_READ_TIMEOUT_SECONDS")

    ack_mode: AckMode = Field(AckMode.ACK_FIRST, validation_alias="ACK_MODE")
    # 0 disables the per-delivery handler deadline.
    handler_timeout_seconds: float = Field(0.0, ge=0, validation_alias="HANDLER_TIMEOUT_SECONDS")

    log_level: str = Field("INFO", validation_alias="LOG_LEVEL")
    log_json: bool = Field(False, validation_alias="LOG_JSON")

    @field_validator("log_level")
    @classmethod
    def _valid_log_level(cls, value: str) -> str:
        return normalize_level(value)

    @model_validator(mode="after")
    def _required_when_enabled(self) -> "Settings":
        if not self.user_domain.strip():
            raise ValueError("USERS_DOMAIN must be set")
        if self.qms_enabled and not self.qms_base:
            raise ValueError("QMS_BASE must be set if QMS_ENABLED is true")
        if self.qms_enabled and not self.qms_usage:
            raise ValueError("QMS_USAGE must be set if QMS_ENABLED is true")
        return self

    @property
    def amqp_url(self) -> str:
        return (
            f"amqp://{quote(self.broker_user, safe='')}:{quote(self.broker_password, safe='')}"
            f"@{self.broker_host}:{self.broker_port}/{quote(self.broker_vhost, safe='')}"
        )

    @property
    def qms_endpoint(self) -> str:
        """QMS base URL with its path replaced by the usage path."""
        parts = urlsplit(self.qms_base)
        path = "/" + self.qms_usage.lstrip("/") if self.qms_usage else parts.path
        return parts._replace(path=path).geturl()

    @property
    def queue_binding(self) -> QueueBinding:
        return QueueBinding(
            exchange_name=self.exchange_name,
            exchange_type=self.exchange_type,
            queue_name=self.queue_name,
            routing_key=self.routing_key,
        )
