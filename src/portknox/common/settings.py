"""Runtime configuration: timing policy and environment-driven settings."""

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ForwardingPolicy(BaseModel):
    """Timing and retry bounds for establishment, supervision and restoration."""

    model_config = ConfigDict(validate_assignment=True, extra="forbid")

    probe_interval: float = Field(
        default=0.5, gt=0, le=5.0, description="Seconds between readiness probes"
    )
    probe_max_attempts: int = Field(
        default=20, ge=1, le=120, description="Readiness probes before giving up"
    )
    probe_connect_timeout: float = Field(
        default=1.0, gt=0, le=10.0, description="Timeout of a single probe connect"
    )
    reconnect_delay: float = Field(
        default=3.0, ge=0, le=300.0, description="Delay before each reconnect attempt"
    )
    max_reconnect_attempts: int = Field(
        default=5, ge=1, le=100, description="Reconnect attempts per supervision cycle"
    )
    restore_max_attempts: int = Field(
        default=3, ge=1, le=20, description="Establishment attempts per restored tunnel"
    )
    restore_retry_delay: float = Field(
        default=2.0, ge=0, le=60.0, description="Delay between restoration attempts"
    )
    restore_stagger: float = Field(
        default=0.5, ge=0, le=60.0, description="Pause between restored tunnels"
    )

    @property
    def probe_window(self) -> float:
        """Upper bound of the readiness probe phase in seconds."""
        return self.probe_interval * self.probe_max_attempts


class Settings(BaseSettings):
    """Process settings read from ``PORTKNOX_*`` variables and ``.env``."""

    model_config = SettingsConfigDict(
        env_prefix="PORTKNOX_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    database_url: str = "sqlite:///data/portknox.db"
    log_level: str = "INFO"
    log_json: bool = False
    log_file: str | None = None

    litellm_enabled: bool = True
    litellm_base_url: str = Field(
        default="http://localhost:4000",
        validation_alias=AliasChoices("PORTKNOX_LITELLM_BASE_URL", "LITELLM_BASE_URL"),
    )
    litellm_master_key: str = Field(
        default="sk-1234",
        validation_alias=AliasChoices(
            "PORTKNOX_LITELLM_MASTER_KEY", "LITELLM_MASTER_KEY"
        ),
    )
    litellm_timeout: float = Field(default=10.0, gt=0)

    ssh_client_keys: list[str] = Field(
        default_factory=list, description="Private key files; empty uses agent/defaults"
    )
    ssh_known_hosts: str | None = Field(
        default=None, description="known_hosts file; None disables host key checks"
    )
    ssh_connect_timeout: float = Field(default=10.0, gt=0)
    ssh_keepalive_interval: float = Field(default=10.0, ge=0)
    ssh_keepalive_count_max: int = Field(default=3, ge=1)

    policy: ForwardingPolicy = Field(default_factory=ForwardingPolicy)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level name."""
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level '{v}'")
        return level
