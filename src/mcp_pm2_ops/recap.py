"""Optional on-disk recaps of remote command executions."""

import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Optional

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]+")


class RecapLogger:
    """Writes one recap file per executed command, grouped by day.

    Directory layout::

        recap_dir/
            2026-02-01/
                153045_123456_web-1.log
            2026-02-02/
                ...

    A write failure is logged and otherwise ignored; recaps never affect the
    command that produced them.
    """

    def __init__(self, recap_dir: Optional[Path] = None):
        self._dir = recap_dir
        self.logger = logging.getLogger(__name__)

    @property
    def enabled(self) -> bool:
        return self._dir is not None

    def save(self, host: str, command: str, output: str) -> Optional[Path]:
        """Save a recap and return its path. No-op if recap_dir was not configured."""
        if self._dir is None:
            return None

        now = datetime.now()
        host_tag = _UNSAFE_CHARS.sub("_", host) or "unknown"
        filepath = self._dir / now.strftime("%Y-%m-%d") / f"{now.strftime('%H%M%S_%f')}_{host_tag}.log"

        try:
            filepath.parent.mkdir(parents=True, exist_ok=True)
            with open(filepath, "w", encoding="utf-8") as f:
                f.write(f"Host: {host}\n")
                f.write(f"Timestamp: {now.isoformat()}\n")
                f.write(f"Command: {command}\n")
                f.write(f"\n{output}")
        except OSError as e:
            self.logger.warning(f"Could not write command recap: {e}")
            return None
        return filepath
