"""Lifecycle of the single managed SSH session.

The session manager owns the live transport, the connection state, and the
pending host key decision. Host keys are checked synchronously inside the
handshake; a key that needs an operator decision rejects the handshake and
is parked as the pending fingerprint until accepted or rejected.
"""

import asyncio
import logging
import time
import traceback
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

import asyncssh

from .config import ServiceSettings
from .errors import (
    AuthenticationError,
    ConnectFailed,
    HostKeyRejected,
    PersistenceError,
    Pm2OpsError,
)
from .fingerprint import FingerprintVerifier, VerificationResult, VerificationStatus
from .log import log_host_key_changed, log_host_key_decision
from .models import (
    CommandResult,
    ConnectionConfig,
    ConnectionState,
    ErrorInfo,
    HostFingerprint,
    PendingFingerprint,
    utcnow,
)
from .notifier import ConnectionStateNotifier
from .ssh_client import Connector, SSHClient
from .trust_store import TrustStore

PROBE_COMMAND = 'echo "connection_test"'
PROBE_MARKER = "connection_test"
CLOSE_TIMEOUT = 5.0

TRANSPORT_ERRORS = (asyncssh.Error, OSError, asyncio.TimeoutError)


class SessionPhase(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass
class _Handshake:
    """Host key outcome of one connection attempt."""

    rejected: Optional[VerificationResult] = None


class SessionManager:
    """Owns the one live SSH connection and its state."""

    def __init__(
        self,
        trust_store: TrustStore,
        notifier: ConnectionStateNotifier,
        settings: Optional[ServiceSettings] = None,
        connector: Optional[Connector] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._trust_store = trust_store
        self._verifier = FingerprintVerifier(trust_store)
        self._notifier = notifier
        self._settings = settings or ServiceSettings()
        self._connector = connector
        self._clock = clock
        self.logger = logging.getLogger(__name__)

        self._client: Optional[SSHClient] = None
        self._phase = SessionPhase.DISCONNECTED
        self._state = ConnectionState()

        self._pending: Optional[PendingFingerprint] = None
        self._decision: Optional[asyncio.Event] = None
        self._decision_accepted: Optional[bool] = None

        self._connect_lock = asyncio.Lock()
        self._probe_lock = asyncio.Lock()
        # Serializes every remote round trip on the live transport.
        self.channel_lock = asyncio.Lock()
        self._last_probe_at: Optional[float] = None
        self._last_probe_result = False

    # --- Read access ---

    @property
    def phase(self) -> SessionPhase:
        return self._phase

    @property
    def is_connected(self) -> bool:
        return self._phase is SessionPhase.CONNECTED and self._client is not None

    @property
    def client(self) -> Optional[SSHClient]:
        return self._client

    def state(self) -> ConnectionState:
        """Copy of the current connection state."""
        return self._state.snapshot()

    def pending_fingerprint(self) -> Optional[PendingFingerprint]:
        return self._pending.model_copy(deep=True) if self._pending else None

    # --- Connect / disconnect ---

    async def connect(self, config: ConnectionConfig) -> ConnectionState:
        """Open the session, replacing any existing one.

        Raises:
            HostKeyRejected: the host key needs an operator decision.
            AuthenticationError: credentials or key material were rejected.
            ConnectFailed: any other transport failure.
        """
        async with self._connect_lock:
            if self._phase is not SessionPhase.DISCONNECTED or self._client is not None:
                self.logger.info("Closing existing SSH connection before connecting...")
                await self.disconnect()

            self.logger.info(f"SSH connect requested: {config.label}")
            self._phase = SessionPhase.CONNECTING
            self._state = ConnectionState(host=config.host, username=config.username)

            handshake = _Handshake()
            client: Optional[SSHClient] = None

            def on_lost(exc: Exception) -> None:
                self._on_transport_lost(client, exc)

            client = self._make_client(config, handshake, on_lost)
            try:
                await client.connect()
            except (Pm2OpsError, *TRANSPORT_ERRORS) as e:
                error = self._classify_connect_error(e, handshake)
                self._fail(error, e)
                raise error from e

            self._client = client
            self._phase = SessionPhase.CONNECTED
            self._state = ConnectionState(
                connected=True,
                host=config.host,
                username=config.username,
                connection_time=utcnow(),
            )
            self._record_probe(True)
            self.logger.info(f"SSH connection established to {config.label}")
            self._notifier.publish_connection(True)
            return self._state.snapshot()

    async def disconnect(self, reason: Optional[str] = None) -> ConnectionState:
        """Tear the session down. Safe to call when already disconnected."""
        client, self._client = self._client, None
        if client is not None:
            try:
                await asyncio.wait_for(client.aclose(), timeout=CLOSE_TIMEOUT)
            except TRANSPORT_ERRORS as e:
                self.logger.warning(f"Error while closing SSH connection: {e}")
            self.logger.info("SSH connection has been closed")

        self._phase = SessionPhase.DISCONNECTED
        self._state.connected = False
        self._state.connection_time = None
        self._record_probe(False)
        self._notifier.publish_connection(False, reason)
        return self._state.snapshot()

    async def run_detached(
        self, config: ConnectionConfig, command: str, timeout: Optional[float] = None
    ) -> CommandResult:
        """Connect with ``config``, run one command, and close again.

        Uses the same host key policy as :meth:`connect` but leaves the
        managed session and its state untouched.
        """
        handshake = _Handshake()
        client = self._make_client(config, handshake, on_lost=None)
        try:
            async with client:
                return await client.execute(
                    command, timeout=timeout or self._settings.command_timeout
                )
        except (Pm2OpsError, *TRANSPORT_ERRORS) as e:
            raise self._classify_connect_error(e, handshake) from e

    def _make_client(
        self,
        config: ConnectionConfig,
        handshake: _Handshake,
        on_lost: Optional[Callable[[Exception], None]],
    ) -> SSHClient:
        def validator(host: str, port: int, key_data: bytes) -> bool:
            return self._check_host_key(config, handshake, host, port, key_data)

        return SSHClient(
            config,
            validator,
            connect_timeout=self._settings.connect_timeout,
            keepalive_interval=self._settings.keepalive_interval,
            connector=self._connector,
            on_connection_lost=on_lost,
        )

    def _classify_connect_error(self, exc: Exception, handshake: _Handshake) -> Pm2OpsError:
        if isinstance(exc, Pm2OpsError):
            return exc
        if isinstance(exc, asyncssh.HostKeyNotVerifiable):
            rejected = handshake.rejected
            if rejected is not None and rejected.is_changed:
                return HostKeyRejected(
                    f"Host key for {rejected.fingerprint.host}:{rejected.fingerprint.port} "
                    "has CHANGED since it was pinned; verify it before reconnecting",
                    is_changed=True,
                )
            if rejected is not None:
                return HostKeyRejected(
                    f"New host key for {rejected.fingerprint.host}:{rejected.fingerprint.port} "
                    "awaiting verification"
                )
            return HostKeyRejected(f"Host key verification failed: {exc}")
        if isinstance(exc, asyncssh.PermissionDenied):
            return AuthenticationError(f"Authentication failed: {exc}")
        if isinstance(exc, asyncio.TimeoutError):
            return ConnectFailed("Connection timed out")
        return ConnectFailed(f"Connection failed: {exc}")

    def _fail(self, error: Pm2OpsError, exc: Exception) -> None:
        self.logger.error(f"SSH connection error: {error}")
        self._client = None
        self._phase = SessionPhase.DISCONNECTED
        self._state.connected = False
        self._state.connection_time = None
        self._state.last_error = ErrorInfo(
            message=str(error),
            details="".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
        )
        self._record_probe(False)
        self._notifier.publish_connection(False, str(error))

    def _on_transport_lost(self, client: Optional[SSHClient], exc: Exception) -> None:
        if client is None or client is not self._client:
            return
        self.logger.warning(f"SSH connection lost: {exc}")
        self._client = None
        self._phase = SessionPhase.DISCONNECTED
        self._state.connected = False
        self._state.connection_time = None
        self._state.last_error = ErrorInfo(message=f"SSH connection lost: {exc}")
        self._record_probe(False)
        self._notifier.publish_connection(False, str(exc))

    # --- Host key verification ---

    def _check_host_key(
        self,
        config: ConnectionConfig,
        handshake: _Handshake,
        host: str,
        port: int,
        key_data: bytes,
    ) -> bool:
        result = self._verifier.verify(host, port, key_data)
        fingerprint = result.fingerprint

        if result.status is VerificationStatus.MATCH:
            log_host_key_decision(self.logger, host, port, fingerprint.display(), "MATCH")
            self._persist(lambda: self._trust_store.touch(host, port))
            return True

        auto_accept = config.allow_unverified_host_keys and (
            result.status is VerificationStatus.NEW
            or self._settings.auto_accept_changed_host_keys
        )
        if auto_accept:
            accepted = fingerprint.model_copy(update={"verified": True, "last_seen": utcnow()})
            log_host_key_decision(
                self.logger, host, port, fingerprint.display(),
                f"{result.status.value.upper()} auto-accepted",
            )
            self._persist(lambda: self._trust_store.put(accepted))
            return True

        if result.is_changed:
            log_host_key_changed(self.logger, host, port, fingerprint.display())
        else:
            log_host_key_decision(
                self.logger, host, port, fingerprint.display(), "NEW, awaiting verification"
            )
        handshake.rejected = result
        self._set_pending(fingerprint, result.is_changed)
        return False

    def _persist(self, write: Callable[[], object]) -> None:
        try:
            write()
        except PersistenceError as e:
            self.logger.warning(f"Could not persist host fingerprint: {e}")

    def _set_pending(self, fingerprint: HostFingerprint, is_changed: bool) -> None:
        self._pending = PendingFingerprint(fingerprint=fingerprint, is_changed=is_changed)
        self._decision = asyncio.Event()
        self._decision_accepted = None
        self._notifier.publish_host_key(fingerprint, is_changed)

    def _resolve_pending(self, accepted: bool) -> None:
        self._pending = None
        self._decision_accepted = accepted
        if self._decision is not None:
            self._decision.set()

    def accept_pending_fingerprint(self) -> Optional[HostFingerprint]:
        """Pin the pending fingerprint as verified. Returns it, or None if nothing was pending.

        Raises:
            PersistenceError: the fingerprint could not be stored; it stays pending.
        """
        pending = self._pending
        if pending is None:
            return None

        fingerprint = pending.fingerprint.model_copy(
            update={"verified": True, "last_seen": utcnow()}
        )
        self._trust_store.put(fingerprint)
        log_host_key_decision(
            self.logger, fingerprint.host, fingerprint.port, fingerprint.display(),
            "accepted by operator",
        )
        self._resolve_pending(True)
        return fingerprint

    def reject_pending_fingerprint(self) -> bool:
        """Discard the pending fingerprint without storing it."""
        pending = self._pending
        if pending is None:
            return False
        fingerprint = pending.fingerprint
        log_host_key_decision(
            self.logger, fingerprint.host, fingerprint.port, fingerprint.display(),
            "rejected by operator",
        )
        self._resolve_pending(False)
        return True

    async def wait_for_fingerprint_decision(self, timeout: Optional[float] = None) -> Optional[bool]:
        """Wait for the operator to accept (True) or reject (False) the pending key.

        Returns None when nothing is pending or the wait timed out.
        """
        if self._pending is None or self._decision is None:
            return None
        decision = self._decision
        try:
            await asyncio.wait_for(decision.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        return self._decision_accepted

    # --- Liveness ---

    def _record_probe(self, alive: bool) -> None:
        self._last_probe_at = self._clock()
        self._last_probe_result = alive

    def record_liveness(self, alive: bool) -> None:
        """Count a completed command as a fresh liveness observation."""
        if alive and not self.is_connected:
            return
        self._record_probe(alive)

    def _probe_is_fresh(self) -> bool:
        if self._last_probe_at is None:
            return False
        return self._clock() - self._last_probe_at < self._settings.liveness_probe_interval

    @property
    def probe_is_fresh(self) -> bool:
        return self._probe_is_fresh()

    async def verify_active(self) -> bool:
        """Round-trip a trivial command to confirm the session is alive.

        At most one probe runs per ``liveness_probe_interval``; callers inside
        that window, including concurrent ones, get the last verdict. A failed
        probe forces a full disconnect.
        """
        async with self._probe_lock:
            if self._probe_is_fresh():
                return self._last_probe_result

            try:
                async with self.channel_lock:
                    client = self._client
                    if client is None or self._phase is not SessionPhase.CONNECTED:
                        self._record_probe(False)
                        return False
                    result = await client.execute(
                        PROBE_COMMAND, timeout=self._settings.command_timeout
                    )
                alive = PROBE_MARKER in result.stdout
            except TRANSPORT_ERRORS as e:
                self.logger.warning(f"SSH liveness probe failed: {e}")
                alive = False

            if alive:
                self.logger.debug("SSH connection is active")
                self._record_probe(True)
            else:
                await self.disconnect("SSH liveness probe failed")
            return alive
