from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .. import constants

CHANNEL_PREFIXES = "#&+!"


def normalize_channel(name: str) -> str:
    """Strip whitespace and add a '#' when the name carries no channel prefix."""
    stripped = name.strip()
    if stripped and stripped[0] not in CHANNEL_PREFIXES:
        stripped = f"#{stripped}"
    return stripped


class ServerConfig(BaseModel):
    """Where to connect and how.

    Attributes:
        host: Server hostname or address.
        port: TCP port; defaults to 6697 with TLS and 6667 without.
        tls: Wrap the connection in TLS.
        tls_verify: Validate the server certificate chain and hostname.
        connect_timeout: Seconds allowed for TCP connect plus TLS handshake.
    """

    model_config = ConfigDict(frozen=True)

    host: str = Field(min_length=1)
    port: int | None = Field(default=None, ge=1, le=65535)
    tls: bool = False
    tls_verify: bool = True
    connect_timeout: float = Field(default=constants.CONNECT_TIMEOUT, gt=0)
    connect_attempts: int = Field(default=constants.CONNECT_ATTEMPTS, ge=1)

    @property
    def effective_port(self) -> int:
        if self.port is not None:
            return self.port
        return constants.DEFAULT_TLS_PORT if self.tls else constants.DEFAULT_PORT


class RateLimitConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    interval: float = Field(default=constants.RATE_LIMIT_INTERVAL, ge=0)
    burst: int = Field(default=constants.RATE_LIMIT_BURST, ge=1)


class ReconnectConfig(BaseModel):
    """Reconnect backoff policy.

    ``max_attempts=None`` retries forever.
    """

    model_config = ConfigDict(frozen=True)

    base_delay: float = Field(default=constants.RECONNECT_BASE_DELAY, ge=0)
    max_delay: float = Field(default=constants.RECONNECT_MAX_DELAY, ge=0)
    max_attempts: int | None = Field(default=None, ge=0)
    jitter: float = Field(default=constants.RECONNECT_JITTER, ge=0, le=1)

    @model_validator(mode="after")
    def validate_bounds(self) -> ReconnectConfig:
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        return self


class SaslConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    mechanism: str = "PLAIN"
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)


class EngineConfig(BaseModel):
    """Everything the protocol engine needs for one logical connection.

    Attributes:
        nickname: Preferred nickname; alternatives are derived from it on collision.
        username: USER name, defaults to the nickname.
        realname: Real name sent with USER, defaults to the nickname.
        password: Optional server password sent with PASS.
        channels: Channels joined after every successful registration.
        requested_capabilities: IRCv3 capabilities requested when offered.
        server: Default server for an autoconnect; ``Connect`` commands override it.
    """

    model_config = ConfigDict(frozen=True)

    nickname: str = Field(min_length=1, max_length=64)
    username: str | None = None
    realname: str | None = None
    password: str | None = None
    channels: tuple[str, ...] = ()
    requested_capabilities: frozenset[str] = frozenset(constants.DEFAULT_CAPABILITIES)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    keepalive_timeout: float = Field(default=constants.KEEPALIVE_TIMEOUT, gt=0)
    keepalive_grace: float = Field(default=constants.KEEPALIVE_GRACE, gt=0)
    registration_timeout: float = Field(default=constants.REGISTRATION_TIMEOUT, gt=0)
    cap_timeout: float = Field(default=constants.CAP_NEGOTIATION_TIMEOUT, gt=0)
    quit_grace: float = Field(default=constants.QUIT_GRACE_PERIOD, ge=0)
    reconnect: ReconnectConfig = Field(default_factory=ReconnectConfig)
    nick_retry_limit: int = Field(default=constants.NICK_RETRY_LIMIT, ge=0)
    server: ServerConfig | None = None
    sasl: SaslConfig | None = None
    service_nicks: frozenset[str] = frozenset(constants.SERVICE_NICKS)

    @field_validator("nickname", "username")
    @classmethod
    def validate_token(cls, v: str | None) -> str | None:
        if v is None:
            return v
        v = v.strip()
        if not v or any(c in v for c in " \r\n\0") or v.startswith((":", "#")):
            raise ValueError("must be a single non-empty IRC token")
        return v

    @field_validator("channels", mode="before")
    @classmethod
    def validate_channels(cls, v: Any) -> tuple[str, ...]:
        """Normalize channel names, drop empties and duplicates, keep order."""
        if isinstance(v, str):
            v = [v]
        if not isinstance(v, list | tuple | set | frozenset):
            raise ValueError("channels must be a list")
        seen: dict[str, None] = {}
        for c in v:
            if isinstance(c, str):
                name = normalize_channel(c)
                if name and " " not in name and "," not in name:
                    seen.setdefault(name, None)
        return tuple(seen)

    @field_validator("requested_capabilities", "service_nicks", mode="before")
    @classmethod
    def validate_name_set(cls, v: Any) -> frozenset[str]:
        if isinstance(v, str):
            v = v.split()
        return frozenset(s.strip() for s in v if isinstance(s, str) and s.strip())

    @property
    def effective_username(self) -> str:
        return self.username or self.nickname

    @property
    def effective_realname(self) -> str:
        return self.realname or self.nickname

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> EngineConfig:
        """Create an EngineConfig from an already parsed mapping."""
        return cls.model_validate(dict(data))

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)
