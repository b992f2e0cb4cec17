"""JSON settings document shared with the configuration layer."""

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Callable

from .errors import PersistenceError


class DocumentStore:
    """Reads and atomically rewrites a single JSON document.

    Writes go to a temporary file in the same directory which then replaces
    the document, so a concurrent reader sees either the old or the new
    content, never a partial one.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.logger = logging.getLogger(__name__)
        self._lock = threading.RLock()

    def load(self) -> dict:
        """Return the whole document. A missing file is an empty document."""
        with self._lock:
            try:
                with open(self.path, encoding="utf-8") as f:
                    data = json.load(f)
            except FileNotFoundError:
                return {}
            except (OSError, ValueError) as e:
                raise PersistenceError(f"Could not read {self.path}: {e}") from e

        if not isinstance(data, dict):
            raise PersistenceError(f"{self.path}: expected a JSON object at the top level")
        return data

    def update(self, mutate: Callable[[dict], None]) -> dict:
        """Read, apply ``mutate`` in place, and write back atomically."""
        with self._lock:
            document = self.load()
            mutate(document)
            self._write(document)
            return document

    def _write(self, document: dict) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
            )
        except OSError as e:
            raise PersistenceError(f"Could not write {self.path}: {e}") from e

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except (OSError, TypeError, ValueError) as e:
            try:
                os.unlink(tmp_name)
            except OSError:
                self.logger.debug(f"Temporary file {tmp_name} already gone")
            raise PersistenceError(f"Could not write {self.path}: {e}") from e
