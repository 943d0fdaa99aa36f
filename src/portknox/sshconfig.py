"""Managed host block of the user's OpenSSH client config.

Host entries maintained by portknox live between two marker comments in
``~/.ssh/config``. Lines outside the markers belong to the user and are
written back unchanged; lines inside are regenerated on every save.
"""

from collections.abc import Iterable, Mapping
from itertools import dropwhile
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from .common.exceptions import SSHConfigError
from .common.logging import get_logger
from .common.utils import (
    LOOPBACK_ADDRESS,
    MAX_PORT,
    MIN_PORT,
    validate_non_empty_string,
)

logger = get_logger(__name__)

MANAGED_START = "# portknox managed start"
MANAGED_END = "# portknox managed end"
EMPTY_BLOCK_COMMENT = "# (no managed hosts yet)"

# keywords stored verbatim on the entry
_TEXT_KEYWORDS = {
    "hostname": "host_name",
    "user": "user",
    "identityfile": "identity_file",
    "proxyjump": "proxy_jump",
}


def _blank_to_none(v: Any) -> Any:
    if isinstance(v, str) and not v.strip():
        return None
    return v


class _SSHConfigModel(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        str_strip_whitespace=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


class SSHLocalForward(_SSHConfigModel):
    """A ``LocalForward [local_host:]local_port remote_host:remote_port`` line."""

    local_host: str | None = None
    local_port: int = Field(ge=MIN_PORT, le=MAX_PORT)
    remote_host: str = Field(min_length=1)
    remote_port: int = Field(ge=MIN_PORT, le=MAX_PORT)

    @field_validator("local_host", mode="before")
    @classmethod
    def default_blank_local_host(cls, v: Any) -> Any:
        return _blank_to_none(v)

    @classmethod
    def parse(cls, value: str) -> "SSHLocalForward | None":
        """Parse the argument of a LocalForward keyword.

        Returns:
            The forward, or None if the value is not a valid forward definition
        """
        parts = value.split()
        if len(parts) < 2:
            return None

        local_host, _, local_port = parts[0].rpartition(":")
        remote_host, _, remote_port = parts[1].rpartition(":")
        try:
            return cls(
                local_host=local_host,
                local_port=local_port,
                remote_host=remote_host,
                remote_port=remote_port,
            )
        except ValidationError:
            return None

    def render(self) -> str:
        local_host = self.local_host or LOOPBACK_ADDRESS
        return (
            f"{local_host}:{self.local_port} {self.remote_host}:{self.remote_port}"
        )


class SSHConfigOption(_SSHConfigModel):
    """Any keyword portknox does not model, kept as written."""

    key: str = Field(min_length=1)
    value: str = ""


class SSHConfigEntry(_SSHConfigModel):
    """One ``Host`` section of the managed block.

    ``forward_agent`` is None when the section does not mention ForwardAgent;
    such sections are written back without the keyword.
    """

    alias: str = Field(min_length=1, description="Host pattern used by ssh")
    host_name: str = Field(min_length=1)
    user: str | None = None
    port: int | None = Field(default=None, ge=MIN_PORT, le=MAX_PORT)
    identity_file: str | None = None
    proxy_jump: str | None = None
    forward_agent: bool | None = None
    local_forwards: list[SSHLocalForward] = Field(default_factory=list)
    extras: list[SSHConfigOption] = Field(default_factory=list)

    @field_validator("user", "identity_file", "proxy_jump", "port", mode="before")
    @classmethod
    def default_blank_optional(cls, v: Any) -> Any:
        return _blank_to_none(v)

    @property
    def key(self) -> str:
        """Case-insensitive identity of the entry."""
        return self.alias.lower()

    def render(self) -> list[str]:
        """Serialize the entry as an indented Host section."""
        lines = [f"Host {self.alias}", f"  HostName {self.host_name}"]
        if self.user:
            lines.append(f"  User {self.user}")
        if self.port:
            lines.append(f"  Port {self.port}")
        if self.identity_file:
            lines.append(f"  IdentityFile {self.identity_file}")
        if self.proxy_jump:
            lines.append(f"  ProxyJump {self.proxy_jump}")
        if self.forward_agent is not None:
            lines.append(f"  ForwardAgent {'yes' if self.forward_agent else 'no'}")
        lines.extend(f"  LocalForward {f.render()}" for f in self.local_forwards)
        lines.extend(f"  {opt.key} {opt.value}".rstrip() for opt in self.extras)
        return lines


def parse_managed_entries(lines: Iterable[str]) -> list[SSHConfigEntry]:
    """Parse Host sections; sections without a HostName are dropped.

    Args:
        lines: Lines between the managed markers

    Returns:
        Entries in file order
    """
    entries: list[SSHConfigEntry] = []
    current: dict[str, Any] | None = None

    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#"):
            continue

        key, *rest = line.split(None, 1)
        value = rest[0].strip() if rest else ""
        keyword = key.lower()

        if keyword == "host":
            _collect(entries, current)
            current = {"alias": value, "local_forwards": [], "extras": []}
            continue
        if current is None:
            continue

        if keyword in _TEXT_KEYWORDS:
            current[_TEXT_KEYWORDS[keyword]] = value
        elif keyword == "port":
            if value.isdigit() and MIN_PORT <= int(value) <= MAX_PORT:
                current["port"] = int(value)
        elif keyword == "forwardagent":
            current["forward_agent"] = value.lower() == "yes"
        elif keyword == "localforward":
            forward = SSHLocalForward.parse(value)
            if forward is not None:
                current["local_forwards"].append(forward)
        else:
            current["extras"].append(SSHConfigOption(key=key, value=value))

    _collect(entries, current)
    return entries


def _collect(entries: list[SSHConfigEntry], values: dict[str, Any] | None) -> None:
    if not values or not values.get("alias") or not values.get("host_name"):
        return
    try:
        entries.append(SSHConfigEntry.model_validate(values))
    except ValidationError as e:
        logger.warning(
            "Skipping unreadable managed host", alias=values["alias"], error=str(e)
        )


def _trim_trailing_blank(lines: list[str]) -> list[str]:
    end = len(lines)
    while end > 0 and not lines[end - 1].strip():
        end -= 1
    return lines[:end]


def _trim_blank(lines: list[str]) -> list[str]:
    return list(dropwhile(lambda line: not line.strip(), _trim_trailing_blank(lines)))


def _split_sections(lines: list[str]) -> tuple[list[str], list[str], list[str]]:
    """Split file lines into (before, managed, after) the marker block.

    A file without a complete block is entirely "before".
    """
    stripped = [line.strip() for line in lines]
    if MANAGED_START in stripped:
        start = stripped.index(MANAGED_START)
        if MANAGED_END in stripped[start + 1 :]:
            end = stripped.index(MANAGED_END, start + 1)
            return (
                _trim_trailing_blank(lines[:start]),
                lines[start + 1 : end],
                _trim_blank(lines[end + 1 :]),
            )
    return _trim_trailing_blank(lines), [], []


def _build_managed_block(entries: list[SSHConfigEntry]) -> list[str]:
    block = [MANAGED_START]
    if not entries:
        block.append(EMPTY_BLOCK_COMMENT)
    for index, entry in enumerate(entries):
        if index:
            block.append("")
        block.extend(entry.render())
    block.append(MANAGED_END)
    return block


class SSHConfigManager:
    """Reads and rewrites the portknox-managed block of an OpenSSH config file.

    Aliases are compared case-insensitively, matching how ssh resolves them.
    """

    def __init__(self, path: Path | str | None = None):
        """Initialize manager.

        Args:
            path: Config file to manage (defaults to ``~/.ssh/config``)
        """
        self.path = Path(path) if path is not None else Path.home() / ".ssh" / "config"

    def get_managed_entries(self) -> list[SSHConfigEntry]:
        """Return the entries of the managed block; empty if there is none."""
        _, managed, _ = _split_sections(self._read_lines())
        return parse_managed_entries(managed)

    def save_entries(self, entries: list[SSHConfigEntry]) -> list[SSHConfigEntry]:
        """Replace the managed block, keeping every line outside it.

        The block is appended to the end of the file when it does not exist
        yet.

        Args:
            entries: Complete new content of the managed block

        Returns:
            The saved entries

        Raises:
            SSHConfigError: If the file cannot be read or written
        """
        before, _, after = _split_sections(self._read_lines())

        output = list(before)
        if output:
            output.append("")
        output.extend(_build_managed_block(entries))
        if after:
            output.append("")
            output.extend(after)

        self._write_lines(_trim_trailing_blank(output))
        logger.info("SSH config saved", path=str(self.path), hosts=len(entries))
        return list(entries)

    def upsert_entry(
        self,
        entry: SSHConfigEntry | Mapping[str, Any],
        previous_alias: str | None = None,
    ) -> list[SSHConfigEntry]:
        """Add or replace a managed host.

        An entry with the same alias is replaced. Passing ``previous_alias``
        renames: the entry under the old alias is removed as well. Agent
        forwarding is enabled unless the entry says otherwise.

        Args:
            entry: Entry or a mapping that validates into one
            previous_alias: Alias the entry was known under before this edit

        Returns:
            Managed entries after the change, the upserted one last

        Raises:
            pydantic.ValidationError: If alias or host name is missing
            SSHConfigError: If the file cannot be read or written
        """
        if not isinstance(entry, SSHConfigEntry):
            entry = SSHConfigEntry.model_validate(dict(entry))
        if entry.forward_agent is None:
            entry = entry.model_copy(update={"forward_agent": True})

        replaced = {entry.key}
        if previous_alias and previous_alias.strip():
            replaced.add(previous_alias.strip().lower())

        entries = [e for e in self.get_managed_entries() if e.key not in replaced]
        entries.append(entry)
        logger.info("Upserting managed SSH host", alias=entry.alias)
        return self.save_entries(entries)

    def delete_entry(self, alias: str) -> list[SSHConfigEntry]:
        """Remove a managed host by alias.

        Returns:
            Managed entries after the change

        Raises:
            ValueError: If alias is blank
            SSHConfigError: If the file cannot be read or written
        """
        key = validate_non_empty_string(alias, "Alias").lower()
        entries = self.get_managed_entries()
        remaining = [e for e in entries if e.key != key]
        if len(remaining) == len(entries):
            logger.info("No managed SSH host with this alias", alias=alias)
        return self.save_entries(remaining)

    def _read_lines(self) -> list[str]:
        try:
            content = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except OSError as e:
            raise SSHConfigError(f"Cannot read SSH config {self.path}: {e}") from e
        return content.splitlines()

    def _write_lines(self, lines: list[str]) -> None:
        try:
            self.path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
            self.path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        except OSError as e:
            raise SSHConfigError(f"Cannot write SSH config {self.path}: {e}") from e
