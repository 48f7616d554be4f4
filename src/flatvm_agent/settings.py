"""Runtime configuration from environment variables."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from flatvm_agent import constants


class AgentSettings(BaseSettings):
    """Agent channel configuration.

    All settings can be overridden via environment variables with the
    FLATVM_AGENT_ prefix.
    Example: FLATVM_AGENT_REQUEST_TIMEOUT=30
    """

    model_config = SettingsConfigDict(
        env_prefix="FLATVM_AGENT_",
        extra="ignore",
    )

    # Connection establishment
    connect_retries: int = Field(default=constants.CONNECT_RETRIES, ge=0)
    connect_retry_interval: float = Field(default=constants.CONNECT_RETRY_INTERVAL_SECONDS, ge=0)

    # Deadline for handshake and command/ack round trips (None = wait forever)
    request_timeout: float | None = Field(default=None, gt=0)

    # Buffering
    stream_buffer_limit: int = Field(default=constants.STREAM_BUFFER_LIMIT, ge=1024)
    event_queue_depth: int = Field(default=constants.EVENT_QUEUE_DEPTH, ge=1)

    protocol_version: str = constants.PROTOCOL_VERSION

    # Endpoints
    host_socket_path: Path | None = None
    guest_port_path: Path = Path(constants.DEFAULT_GUEST_PORT_PATH)
