"""Host key fingerprinting and trust-on-first-use verification."""

import base64
import hashlib
import logging
import struct
from dataclasses import dataclass
from enum import Enum

from .errors import PersistenceError
from .models import HostFingerprint
from .trust_store import TrustStore

HASH_ALGORITHM = "sha256"

# Checked in order against the raw blob when the leading type string is unreadable.
_KNOWN_KEY_TYPES = ("ssh-rsa", "ssh-dss", "ecdsa", "ssh-ed25519")


class VerificationStatus(str, Enum):
    NEW = "new"
    MATCH = "match"
    CHANGED = "changed"


@dataclass(frozen=True)
class VerificationResult:
    status: VerificationStatus
    fingerprint: HostFingerprint

    @property
    def is_changed(self) -> bool:
        return self.status is VerificationStatus.CHANGED


def fingerprint_hash(key_data: bytes) -> str:
    """SHA-256 of the key blob, base64 without padding (OpenSSH ``SHA256:`` form)."""
    digest = hashlib.sha256(key_data).digest()
    return base64.b64encode(digest).decode("ascii").rstrip("=")


def extract_key_type(key_data: bytes) -> str:
    """Read the key type from an SSH wire-format public key blob.

    The blob starts with a length-prefixed string naming the algorithm
    (``ssh-ed25519``, ``ecdsa-sha2-nistp256`` ...).
    """
    if len(key_data) >= 4:
        (length,) = struct.unpack(">I", key_data[:4])
        if 0 < length <= 64 and len(key_data) >= 4 + length:
            try:
                name = key_data[4:4 + length].decode("ascii")
            except UnicodeDecodeError:
                name = ""
            if name and name.isprintable() and " " not in name:
                return name

    text = key_data.decode("latin-1")
    for key_type in _KNOWN_KEY_TYPES:
        if key_type in text:
            return key_type
    return "unknown"


def compute_fingerprint(host: str, port: int, key_data: bytes) -> HostFingerprint:
    """Build an unverified fingerprint record for a presented host key."""
    return HostFingerprint(
        host=host,
        port=port,
        hash=fingerprint_hash(key_data),
        hash_algorithm=HASH_ALGORITHM,
        key_type=extract_key_type(key_data),
        verified=False,
    )


def _same_hash(a: str, b: str) -> bool:
    # Older documents kept the base64 padding.
    return a.rstrip("=") == b.rstrip("=")


class FingerprintVerifier:
    """Decides NEW / MATCH / CHANGED for a presented key against the trust store."""

    def __init__(self, trust_store: TrustStore):
        self._trust_store = trust_store
        self.logger = logging.getLogger(__name__)

    def verify(self, host: str, port: int, key_data: bytes) -> VerificationResult:
        presented = compute_fingerprint(host, port, key_data)
        self.logger.debug(f"Presented key for {host}:{port}: {presented.display()}")

        try:
            stored = self._trust_store.get(host, port)
        except PersistenceError as e:
            self.logger.warning(f"Trust store unavailable, treating {host}:{port} as new: {e}")
            stored = None

        if stored is None:
            return VerificationResult(VerificationStatus.NEW, presented)

        if _same_hash(stored.hash, presented.hash) and stored.key_type == presented.key_type:
            return VerificationResult(VerificationStatus.MATCH, stored)

        return VerificationResult(VerificationStatus.CHANGED, presented)
