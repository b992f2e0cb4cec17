"""PM2 command construction with validated, shell-quoted arguments."""

import re
import shlex
from typing import Literal, Optional

from pydantic import BaseModel, field_validator

PM2 = "pm2"

PRESENCE_COMMAND = 'command -v pm2 || echo "not installed"'
PRESENCE_ABSENT_MARKER = "not installed"

JLIST_COMMAND = "pm2 jlist --silent"
JLIST_NOISY_COMMAND = "pm2 jlist"
TABLE_COMMAND = "pm2 list --no-color"

DEFAULT_LOG_LINES = 200
MAX_LOG_LINES = 10000
MAX_TARGET_LENGTH = 128

CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")

Action = Literal["start", "stop", "restart", "delete", "logs"]


class ProcessCommand(BaseModel):
    """One PM2 action against a process name, id, or ``all``."""

    action: Action
    target: str
    lines: Optional[int] = None

    @field_validator("target")
    @classmethod
    def validate_target(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Process name must not be empty")
        if len(v) > MAX_TARGET_LENGTH:
            raise ValueError(f"Process name is longer than {MAX_TARGET_LENGTH} characters")
        if CONTROL_CHARS.search(v):
            raise ValueError(f"Invalid process name {v!r}: control characters are not allowed")
        if v.startswith("-"):
            raise ValueError(f"Invalid process name '{v}': must not start with '-'")
        return v

    @field_validator("lines")
    @classmethod
    def validate_lines(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and not 1 <= v <= MAX_LOG_LINES:
            raise ValueError(f"lines must be between 1 and {MAX_LOG_LINES}")
        return v


def build_pm2_command(command: ProcessCommand) -> str:
    """Construct the shell command for a ProcessCommand.

    The target is shlex.quote()'d; everything else is fixed vocabulary.
    """
    parts = [PM2, command.action, shlex.quote(command.target)]
    if command.action == "logs":
        parts += ["--lines", str(command.lines or DEFAULT_LOG_LINES), "--nostream"]
    return " ".join(parts)
