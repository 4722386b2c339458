from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from iotscape.core.transport.interfaces import (
    DEFAULT_MAX_PACKET_SIZE,
    DEFAULT_RECEIVE_POLL_INTERVAL,
    parse_address,
)
from iotscape.datastructures.type_aliases import PeerAddress

type SchedulingModel = Literal["thread", "cooperative"]
type AnnounceTransport = Literal["native", "http"]
type AnnounceFormat = Literal["envelope", "legacy"]
type EventTarget = Literal["server", "clients"]


class IoTScapeSettings(BaseSettings):
    """Service runtime configuration settings.

    Every field can be set from the environment with the ``IOTSCAPE_`` prefix
    (``IOTSCAPE_SERVER_ADDRESS=10.0.0.5:1978``) or from a ``.env`` file.
    """

    model_config = SettingsConfigDict(
        env_prefix="IOTSCAPE_", env_file=".env", extra="ignore"
    )

    server_address: str = Field(
        "127.0.0.1:1978",
        description="host:port of the NetsBlox server's IoTScape UDP endpoint.",
    )
    bind_address: str = Field(
        "0.0.0.0:0", description="Local host:port to bind the UDP socket to."
    )
    announce_interval: float = Field(
        30.0, gt=0, description="Seconds between re-announcements once registered."
    )
    announce_retry_interval: float | None = Field(
        None,
        gt=0,
        description="Seconds before retrying a failed announce. Defaults to announce_interval.",
    )
    announce_ack_timeout: float | None = Field(
        None,
        gt=0,
        description="Wait this long for an announce-ack. None treats a sent announce as registered.",
    )
    announce_transport: AnnounceTransport = Field(
        "native", description="Announce over the UDP socket or over HTTP."
    )
    announce_format: AnnounceFormat = Field(
        "envelope",
        description="Send announce envelopes, or the legacy {name: definition} body.",
    )
    http_announce_url: str | None = Field(
        None, description="Registration endpoint used when announce_transport is http."
    )
    request_timeout: float = Field(
        5.0, gt=0, description="Default seconds to wait for a response to our requests."
    )
    client_idle_timeout: float = Field(
        300.0, gt=0, description="Forget clients that have been silent this long."
    )
    scheduling_model: SchedulingModel = Field(
        "thread", description="Run loops on OS threads or as asyncio tasks."
    )
    event_target: EventTarget = Field(
        "server", description="Send events to the server or to every known client."
    )
    duplicate_cache_size: int = Field(
        256, ge=0, description="Completed requests remembered for duplicate suppression."
    )
    max_packet_size: int = Field(
        DEFAULT_MAX_PACKET_SIZE, gt=0, description="Receive buffer size in bytes."
    )
    receive_poll_interval: float = Field(
        DEFAULT_RECEIVE_POLL_INTERVAL,
        gt=0,
        description="Socket timeout used by the blocking transport to notice close().",
    )
    stop_timeout: float = Field(
        10.0, gt=0, description="Seconds stop() waits for in-flight handlers."
    )
    debug_lock_order: bool = Field(
        False, description="Check lock acquisition order at runtime (slow)."
    )
    log_level: str = Field("INFO", description="Log level for configure_logging().")
    log_debug_scopes: list[str] = Field(
        default_factory=list,
        description=(
            "Modules logged at DEBUG regardless of log_level, e.g. "
            "IOTSCAPE_LOG_DEBUG_SCOPES='[\"dispatch\", \"announcer\"]'."
        ),
    )
    log_colorize: bool = Field(False, description="Colour log output.")

    @field_validator("server_address", "bind_address")
    @classmethod
    def _check_address(cls, value: str) -> str:
        parse_address(value)
        return value

    @field_validator("http_announce_url")
    @classmethod
    def _check_url(cls, value: str | None) -> str | None:
        if value is not None and not value.startswith(("http://", "https://")):
            raise ValueError("http_announce_url must be an http(s) URL")
        return value

    @model_validator(mode="after")
    def _check_http_announce(self) -> "IoTScapeSettings":
        if self.announce_transport == "http" and not self.http_announce_url:
            raise ValueError("http_announce_url is required for http announces")
        return self

    @property
    def server(self) -> PeerAddress:
        return parse_address(self.server_address)

    @property
    def bind(self) -> PeerAddress:
        return parse_address(self.bind_address, default_port=0)

    @property
    def retry_interval(self) -> float:
        if self.announce_retry_interval is None:
            return self.announce_interval
        return self.announce_retry_interval
