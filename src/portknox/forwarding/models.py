"""Tunnel models for SSH port forwards.

``TunnelConfig`` is the identity and intent of a forward. It is immutable;
state changes produce copies through :meth:`TunnelConfig.with_status` and
:meth:`TunnelConfig.with_updates`. ``TunnelRecord`` is the persisted shape.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from ..common.utils import (
    LOOPBACK_ADDRESS,
    MAX_PORT,
    MIN_PORT,
    WILDCARD_ADDRESS,
    generate_tunnel_id,
    model_api_base,
    normalize_tags,
)

MODEL_TAG = "llm"


class TunnelStatus(str, Enum):
    """Persisted tunnel status."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    ERROR = "error"


class SupervisorState(str, Enum):
    """Supervision state of a registered forward."""

    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    ERRORED = "errored"

    @property
    def status(self) -> TunnelStatus:
        """Status persisted for this state."""
        return _STATE_STATUS[self]


_STATE_STATUS = {
    SupervisorState.CONNECTED: TunnelStatus.ACTIVE,
    SupervisorState.RECONNECTING: TunnelStatus.INACTIVE,
    SupervisorState.ERRORED: TunnelStatus.ERROR,
}


class TunnelConfig(BaseModel):
    """Configuration of a single local-to-remote forward through a jump host.

    Accepts both snake_case and camelCase keys so request payloads such as
    ``{"remoteHost": "db.internal", "localPort": 15432}`` validate directly.
    """

    model_config = ConfigDict(
        frozen=True,
        str_strip_whitespace=True,
        alias_generator=to_camel,
        populate_by_name=True,
        protected_namespaces=(),
        extra="ignore",
    )

    id: str = Field(default_factory=generate_tunnel_id, min_length=1)
    name: str = Field(min_length=1, description="Display name")
    remote_host: str = Field(
        min_length=1, description="Destination host as seen from the jump host"
    )
    remote_port: int = Field(ge=MIN_PORT, le=MAX_PORT)
    local_bind_address: str = Field(
        default=LOOPBACK_ADDRESS,
        min_length=1,
        description="127.0.0.1 for local-only, 0.0.0.0 for all interfaces",
    )
    local_port: int = Field(ge=MIN_PORT, le=MAX_PORT)
    ssh_user: str = Field(min_length=1)
    ssh_host: str = Field(min_length=1)
    ssh_port: int = Field(default=22, ge=MIN_PORT, le=MAX_PORT)
    status: TunnelStatus = Field(default=TunnelStatus.INACTIVE)
    author: str | None = None
    tags: list[str] = Field(default_factory=list)

    model_registration_enabled: bool = False
    model_name: str | None = None
    model_api_key: str | None = Field(default=None, repr=False)
    model_id: str | None = None
    model_api_base: str | None = None

    @field_validator("id", mode="before")
    @classmethod
    def default_blank_id(cls, v: Any) -> Any:
        """Treat an empty or null id as absent."""
        if v is None or (isinstance(v, str) and not v.strip()):
            return generate_tunnel_id()
        return v

    @field_validator("local_bind_address", mode="before")
    @classmethod
    def default_blank_bind_address(cls, v: Any) -> Any:
        if v is None or (isinstance(v, str) and not v.strip()):
            return LOOPBACK_ADDRESS
        return v

    @field_validator("tags", mode="before")
    @classmethod
    def validate_tags(cls, v: Any) -> list[str]:
        """Accept a list of tags, dropping blanks and duplicates."""
        if v is None:
            return []
        if not isinstance(v, list | tuple):
            raise ValueError("Tags must be a list of strings")
        return normalize_tags(list(v))

    @field_validator("author", "model_name", "model_api_key", mode="before")
    @classmethod
    def blank_to_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @property
    def wants_model_registration(self) -> bool:
        """True when the tunnel opted in and named the model to register."""
        return self.model_registration_enabled and bool(self.model_name)

    @property
    def api_base(self) -> str:
        """OpenAI-compatible base URL served by this forward."""
        return model_api_base(self.local_bind_address, self.local_port)

    @property
    def endpoint(self) -> str:
        """Human readable ``bind:port -> remote:port`` description."""
        return (
            f"{self.local_bind_address}:{self.local_port} -> "
            f"{self.remote_host}:{self.remote_port}"
        )

    @property
    def externally_reachable(self) -> bool:
        return self.local_bind_address == WILDCARD_ADDRESS

    def with_status(self, status: TunnelStatus) -> "TunnelConfig":
        """Create new config instance with updated status (immutable pattern).

        Args:
            status: New tunnel status

        Returns:
            New config instance with updated status
        """
        if status == self.status:
            return self
        return self.model_copy(update={"status": status})

    def with_updates(self, **changes: Any) -> "TunnelConfig":
        """Create a copy with arbitrary field changes."""
        return self.model_copy(update=changes)

    def to_record(self) -> "TunnelRecord":
        """Build the persisted representation of this config.

        The API key is never persisted. When model registration is enabled the
        ``llm`` tag is added and the API base is recorded.
        """
        tags = list(self.tags)
        if self.model_registration_enabled and MODEL_TAG not in tags:
            tags.append(MODEL_TAG)

        return TunnelRecord(
            id=self.id,
            name=self.name,
            remote_host=self.remote_host,
            remote_port=self.remote_port,
            local_port=self.local_port,
            local_bind_address=self.local_bind_address,
            ssh_user=self.ssh_user,
            ssh_host=self.ssh_host,
            ssh_port=self.ssh_port,
            status=self.status,
            author=self.author,
            tags=tags or None,
            description=f"SSH Tunnel: {self.name}",
            model_registration_enabled=self.model_registration_enabled,
            model_id=self.model_id,
            model_name=self.model_name,
            model_api_base=self.api_base if self.model_registration_enabled else None,
        )

    @classmethod
    def from_record(cls, record: "TunnelRecord") -> "TunnelConfig":
        """Rebuild a config from its persisted representation."""
        return cls(
            id=record.id,
            name=record.name,
            remote_host=record.remote_host,
            remote_port=record.remote_port,
            local_port=record.local_port,
            local_bind_address=record.local_bind_address,
            ssh_user=record.ssh_user,
            ssh_host=record.ssh_host,
            ssh_port=record.ssh_port,
            status=record.status,
            author=record.author,
            tags=record.tags or [],
            model_registration_enabled=record.model_registration_enabled,
            model_id=record.model_id,
            model_name=record.model_name,
            model_api_base=record.model_api_base,
        )


class TunnelRecord(BaseModel):
    """Row shape exchanged with the tunnel store."""

    model_config = ConfigDict(from_attributes=True, protected_namespaces=())

    id: str
    name: str
    remote_host: str
    remote_port: int
    local_port: int
    local_bind_address: str = LOOPBACK_ADDRESS
    ssh_user: str
    ssh_host: str
    ssh_port: int = 22
    status: TunnelStatus = TunnelStatus.ACTIVE
    author: str | None = None
    tags: list[str] | None = None
    description: str | None = None
    model_registration_enabled: bool = False
    model_id: str | None = None
    model_name: str | None = None
    model_api_base: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ForwardResult(BaseModel):
    """Outcome of a public create/stop call. Never raised, always returned."""

    success: bool
    message: str
    config: TunnelConfig | None = None
    error_type: str | None = Field(
        default=None, description="Exception class name when success is False"
    )

    @classmethod
    def ok(cls, message: str, config: TunnelConfig | None = None) -> "ForwardResult":
        return cls(success=True, message=message, config=config)

    @classmethod
    def failed(
        cls, message: str, error: BaseException | None = None
    ) -> "ForwardResult":
        return cls(
            success=False,
            message=message,
            error_type=type(error).__name__ if error is not None else None,
        )
