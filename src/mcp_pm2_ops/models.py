"""Data models for sessions, host fingerprints and managed processes.

Every record dumps to camelCase keys so the persisted settings document keeps
the layout it has always had (``savedFingerprints`` entries with ``hashAlgorithm``,
``keyType``, ``addedAt`` ...).
"""

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Record(BaseModel):
    """Base model: snake_case attributes, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self) -> dict:
        """Dump to a JSON-ready dict using the camelCase layout."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def _check_port(v: int) -> int:
    if v < 1 or v > 65535:
        raise ValueError(f"Invalid port {v}: must be between 1 and 65535")
    return v


class HostFingerprint(Record):
    """Pinned identity of a remote host key. Unique per (host, port)."""

    host: str
    port: int = 22
    hash: str
    hash_algorithm: str = "sha256"
    key_type: str = "unknown"
    verified: bool = False
    added_at: datetime = Field(default_factory=utcnow)
    last_seen: Optional[datetime] = None

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        return _check_port(v)

    @property
    def identity(self) -> tuple[str, int]:
        return (self.host, self.port)

    def display(self) -> str:
        """OpenSSH-style one-liner, e.g. ``ssh-ed25519 SHA256:abc...``."""
        return f"{self.key_type} {self.hash_algorithm.upper()}:{self.hash}"


class ErrorInfo(Record):
    message: str
    details: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class ConnectionState(Record):
    """The one process-wide view of the remote session."""

    connected: bool = False
    host: str = ""
    username: str = ""
    connection_time: Optional[datetime] = None
    last_error: Optional[ErrorInfo] = None

    def snapshot(self) -> "ConnectionState":
        return self.model_copy(deep=True)


class PendingFingerprint(Record):
    """A host key seen during a handshake that still needs an operator decision."""

    fingerprint: HostFingerprint
    is_changed: bool = False


class ProcessStatus(str, Enum):
    ONLINE = "online"
    STOPPED = "stopped"
    STOPPING = "stopping"
    ERRORED = "errored"
    UNKNOWN = "unknown"

    @classmethod
    def from_raw(cls, value) -> "ProcessStatus":
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.UNKNOWN


class RemoteProcessRecord(Record):
    """Normalized view of one PM2-managed process."""

    name: str
    id: int = 0
    status: ProcessStatus = ProcessStatus.UNKNOWN
    memory_bytes: int = 0
    cpu_percent: float = 0.0
    uptime_seconds: int = 0
    restart_count: int = 0
    pid: Optional[int] = None


class CommandResult(Record):
    stdout: str = ""
    stderr: str = ""
    exit_status: Optional[int] = None


class ConnectionConfig(Record):
    """Parameters for one connection attempt."""

    host: str
    port: int = 22
    username: str
    password: Optional[str] = Field(default=None, repr=False)
    private_key: Optional[str] = Field(default=None, repr=False)
    private_key_path: Optional[Path] = None
    passphrase: Optional[str] = Field(default=None, repr=False)
    allow_unverified_host_keys: bool = False
    name: Optional[str] = None

    @field_validator("host", "username")
    @classmethod
    def validate_non_empty(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be empty")
        return v

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        return _check_port(v)

    @model_validator(mode="after")
    def validate_credentials(self) -> "ConnectionConfig":
        has_key = self.private_key is not None or self.private_key_path is not None
        if self.private_key is not None and self.private_key_path is not None:
            raise ValueError("Provide either private_key or private_key_path, not both")
        if self.password is None and not has_key:
            raise ValueError("A password or a private key is required")
        if self.password is not None and has_key:
            raise ValueError("Provide either a password or a private key, not both")
        return self

    @property
    def label(self) -> str:
        return self.name or f"{self.username}@{self.host}:{self.port}"


class ListResult(Record):
    success: bool
    processes: list[RemoteProcessRecord] = Field(default_factory=list)
    message: str = ""
    manager_installed: bool = True
    from_cache: bool = False
    strategy: Optional[str] = None


class ActionResult(Record):
    success: bool
    message: str = ""
    output: str = ""


class LogsResult(Record):
    success: bool
    logs: str = ""
    lines: list[str] = Field(default_factory=list)
    message: str = ""
