"""Service settings loaded from a YAML file."""

from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent.parent / "pm2ops.yaml"
DEFAULT_STORE_PATH = Path.home() / ".config" / "mcp-pm2-ops" / "settings.json"


class ServiceSettings(BaseModel):
    """Timeouts, cache TTLs and policy switches. All durations are seconds."""

    command_timeout: float = 30.0
    connect_timeout: float = 30.0
    keepalive_interval: float = 10.0
    liveness_probe_interval: float = 30.0
    process_list_ttl: float = 10.0
    manager_probe_ttl: float = 60.0
    log_lines: int = 200

    # Policy switches for the two behaviours that are deliberately opt-in.
    auto_accept_changed_host_keys: bool = False
    invalidate_list_on_mutation: bool = False

    store_path: Path = DEFAULT_STORE_PATH
    recap_dir: Optional[Path] = None
    log_level: str = "INFO"
    log_file: Optional[Path] = None

    @field_validator(
        "command_timeout",
        "connect_timeout",
        "keepalive_interval",
        "liveness_probe_interval",
        "process_list_ttl",
        "manager_probe_ttl",
    )
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("durations must not be negative")
        return v

    @field_validator("log_lines")
    @classmethod
    def validate_log_lines(cls, v: int) -> int:
        if v < 1:
            raise ValueError("log_lines must be at least 1")
        return v

    @field_validator("store_path", "recap_dir", "log_file")
    @classmethod
    def expand_user(cls, v: Optional[Path]) -> Optional[Path]:
        return v.expanduser() if v is not None else None


def load_settings(config_path: Optional[Path] = None) -> ServiceSettings:
    """Load settings from the ``settings`` mapping of a YAML file.

    A missing default file yields the built-in defaults; an explicitly given
    path must exist.
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH
        if not config_path.exists():
            return ServiceSettings()

    with open(config_path) as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError(f"{config_path}: expected a mapping at the top level")

    return ServiceSettings(**(data.get("settings") or {}))
