"""Pinned host fingerprints, keyed by (host, port)."""

import logging
from typing import Optional

from pydantic import ValidationError

from .models import HostFingerprint, utcnow
from .store import DocumentStore

FINGERPRINTS_KEY = "savedFingerprints"


class TrustStore:
    """get/put/delete access to the ``savedFingerprints`` list of the settings document."""

    def __init__(self, store: DocumentStore):
        self._store = store
        self.logger = logging.getLogger(__name__)

    def list(self) -> list[HostFingerprint]:
        """Return every stored fingerprint. Malformed entries are skipped."""
        entries = self._store.load().get(FINGERPRINTS_KEY) or []
        fingerprints = []
        for entry in entries:
            try:
                fingerprints.append(HostFingerprint.model_validate(entry))
            except ValidationError as e:
                self.logger.warning(f"Skipping malformed fingerprint entry: {e}")
        return fingerprints

    def get(self, host: str, port: int) -> Optional[HostFingerprint]:
        for fingerprint in self.list():
            if fingerprint.identity == (host, port):
                return fingerprint
        return None

    def put(self, fingerprint: HostFingerprint) -> None:
        """Insert or replace the fingerprint for its (host, port)."""
        record = fingerprint.to_document()

        def mutate(document: dict) -> None:
            entries = _entries(document)
            for i, entry in enumerate(entries):
                if _matches(entry, fingerprint.host, fingerprint.port):
                    entries[i] = record
                    break
            else:
                entries.append(record)

        self._store.update(mutate)

    def delete(self, host: str, port: int) -> bool:
        """Remove the fingerprint for (host, port). Returns whether one existed."""
        removed = False

        def mutate(document: dict) -> None:
            nonlocal removed
            entries = _entries(document)
            kept = [e for e in entries if not _matches(e, host, port)]
            removed = len(kept) != len(entries)
            document[FINGERPRINTS_KEY] = kept

        self._store.update(mutate)
        return removed

    def touch(self, host: str, port: int) -> Optional[HostFingerprint]:
        """Refresh ``lastSeen`` on the stored fingerprint, if any."""
        fingerprint = self.get(host, port)
        if fingerprint is None:
            return None
        fingerprint = fingerprint.model_copy(update={"last_seen": utcnow()})
        self.put(fingerprint)
        return fingerprint


def _entries(document: dict) -> list:
    entries = document.get(FINGERPRINTS_KEY)
    if not isinstance(entries, list):
        entries = []
        document[FINGERPRINTS_KEY] = entries
    return entries


def _matches(entry, host: str, port: int) -> bool:
    if not isinstance(entry, dict):
        return False
    try:
        return entry.get("host") == host and int(entry.get("port", 22)) == port
    except (TypeError, ValueError):
        return False
