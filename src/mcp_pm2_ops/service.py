"""Request/response boundary consumed by the presentation layer.

One :class:`RemoteSessionService` is built at process start and handed to
every caller. Each operation returns a plain dict with a ``success`` flag and,
on failure, a human-readable ``message`` plus an ``error`` kind; transport
exceptions never cross this boundary.
"""

import logging
import time
from typing import Callable, Optional, Union

from pydantic import ValidationError

from .config import ServiceSettings
from .errors import HostKeyRejected, PersistenceError, Pm2OpsError
from .executor import CommandExecutor
from .models import ActionResult, ConnectionConfig, HostFingerprint, utcnow
from .notifier import ConnectionChanged, ConnectionStateNotifier, Event, Listener
from .pm2 import RemoteProcessController
from .recap import RecapLogger
from .session import SessionManager
from .ssh_client import Connector
from .store import DocumentStore
from .system_stats import SystemStatsCollector
from .trust_store import TrustStore

TEST_COMMAND = 'echo "Connection successful" && command -v pm2 || echo "PM2 not found"'
TEST_ABSENT_MARKER = "PM2 not found"

ConfigInput = Union[ConnectionConfig, dict]


def _failure(error: Pm2OpsError, **extra) -> dict:
    return {"success": False, "message": str(error), "error": error.kind, **extra}


def _invalid(e: ValidationError, **extra) -> dict:
    details = "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'input'}: {err['msg']}" for err in e.errors()
    )
    return {"success": False, "message": f"Invalid input: {details}", "error": "invalid_input", **extra}


def _action_response(result: ActionResult) -> dict:
    return {"success": result.success, "message": result.message, "output": result.output}


class RemoteSessionService:
    """Owns the session, executor, process controller and trust store."""

    def __init__(
        self,
        settings: Optional[ServiceSettings] = None,
        store: Optional[DocumentStore] = None,
        connector: Optional[Connector] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or ServiceSettings()
        self.logger = logging.getLogger(__name__)

        self.store = store or DocumentStore(self.settings.store_path)
        self.trust_store = TrustStore(self.store)
        self.notifier = ConnectionStateNotifier()
        self.session = SessionManager(
            self.trust_store, self.notifier, self.settings, connector=connector, clock=clock
        )
        self.executor = CommandExecutor(
            self.session,
            default_timeout=self.settings.command_timeout,
            recap=RecapLogger(self.settings.recap_dir),
        )
        self.processes = RemoteProcessController(self.executor, self.settings, clock=clock)
        self.system_stats = SystemStatsCollector(self.executor)

        self.notifier.subscribe(self._on_event)

    def _on_event(self, event: Event) -> None:
        # Cached answers belong to the host they were fetched from.
        if isinstance(event, ConnectionChanged):
            self.processes.invalidate()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Receive connection and host key events; returns the unsubscribe handle."""
        return self.notifier.subscribe(listener)

    def _state(self) -> dict:
        return self.session.state().to_document()

    # --- Session ---

    async def connect(self, config: ConfigInput) -> dict:
        try:
            config = ConnectionConfig.model_validate(config)
        except ValidationError as e:
            return _invalid(e, connectionState=self._state())

        try:
            state = await self.session.connect(config)
        except HostKeyRejected as e:
            pending = self.session.pending_fingerprint()
            return _failure(
                e,
                isChanged=e.is_changed,
                pendingFingerprint=pending.fingerprint.to_document() if pending else None,
                connectionState=self._state(),
            )
        except Pm2OpsError as e:
            return _failure(e, connectionState=self._state())

        return {"success": True, "connectionState": state.to_document()}

    async def disconnect(self) -> dict:
        self.logger.info("SSH disconnect requested")
        state = await self.session.disconnect()
        return {"success": True, "message": "Disconnected successfully", "connectionState": state.to_document()}

    async def test_connection(self, config: ConfigInput) -> dict:
        """Connect with ``config``, look for pm2, and disconnect; the managed session is untouched."""
        try:
            config = ConnectionConfig.model_validate(config)
        except ValidationError as e:
            return _invalid(e, hasRemoteManager=False)

        self.logger.info(f"SSH test connection requested for host: {config.host}")
        try:
            result = await self.session.run_detached(config, TEST_COMMAND)
        except Pm2OpsError as e:
            return _failure(e, hasRemoteManager=False)

        return {
            "success": True,
            "message": "Test connection successful",
            "hasRemoteManager": TEST_ABSENT_MARKER not in result.stdout,
            "output": result.stdout,
        }

    async def get_status(self) -> dict:
        """Current connection state, re-probed at most once per liveness interval."""
        if self.session.is_connected:
            await self.session.verify_active()
        return {"success": True, "connectionState": self._state()}

    async def execute_command(self, command: str, timeout: Optional[float] = None) -> dict:
        try:
            result = await self.executor.execute(command, timeout=timeout)
        except Pm2OpsError as e:
            return _failure(e, stdout="", stderr="", connectionState=self._state())

        self.session.record_liveness(True)
        return {
            "success": True,
            "stdout": result.stdout,
            "stderr": result.stderr,
            "exitStatus": result.exit_status,
            "connectionState": self._state(),
        }

    # --- Processes ---

    async def list_processes(self) -> dict:
        try:
            result = await self.processes.list()
        except Pm2OpsError as e:
            return _failure(e, processes=[])

        response = {
            "success": result.success,
            "processes": [p.to_document() for p in result.processes],
            "message": result.message,
        }
        if not result.manager_installed:
            response["error"] = "manager_not_installed"
        return response

    async def _process_action(self, action, name: str) -> dict:
        try:
            result = await action(name)
        except Pm2OpsError as e:
            return _failure(e, connectionState=self._state())
        return _action_response(result)

    async def start_process(self, name: str) -> dict:
        return await self._process_action(self.processes.start, name)

    async def stop_process(self, name: str) -> dict:
        return await self._process_action(self.processes.stop, name)

    async def restart_process(self, name: str) -> dict:
        return await self._process_action(self.processes.restart, name)

    async def delete_process(self, name: str) -> dict:
        return await self._process_action(self.processes.delete, name)

    async def get_process_logs(self, name: str, lines: Optional[int] = None) -> dict:
        try:
            result = await self.processes.logs(name, lines)
        except Pm2OpsError as e:
            return _failure(e, logs="")
        return {
            "success": result.success,
            "logs": result.logs,
            "lines": result.lines,
            "message": result.message,
        }

    async def get_system_stats(self) -> dict:
        try:
            stats = await self.system_stats.collect()
        except Pm2OpsError as e:
            return _failure(e)
        return {"success": True, "stats": stats.model_dump(mode="json")}

    # --- Host fingerprints ---

    async def save_host_fingerprint(self, fingerprint: Union[HostFingerprint, dict]) -> dict:
        try:
            fingerprint = HostFingerprint.model_validate(fingerprint)
        except ValidationError as e:
            return _invalid(e)

        fingerprint = fingerprint.model_copy(update={"last_seen": utcnow()})
        try:
            self.trust_store.put(fingerprint)
        except PersistenceError as e:
            self.logger.warning(f"Error saving host fingerprint: {e}")
            return _failure(e)
        self.logger.info(f"Saved host fingerprint for {fingerprint.host}:{fingerprint.port}")
        return {"success": True}

    async def get_host_fingerprints(self) -> dict:
        try:
            fingerprints = self.trust_store.list()
        except PersistenceError as e:
            self.logger.warning(f"Error reading host fingerprints: {e}")
            return _failure(e, fingerprints=[])
        return {"success": True, "fingerprints": [f.to_document() for f in fingerprints]}

    async def delete_host_fingerprint(self, host: str, port: int = 22) -> dict:
        try:
            removed = self.trust_store.delete(host, int(port))
        except PersistenceError as e:
            self.logger.warning(f"Error deleting host fingerprint: {e}")
            return _failure(e)
        return {"success": True, "removed": removed}

    async def get_pending_fingerprint(self) -> dict:
        pending = self.session.pending_fingerprint()
        return {"success": True, "pending": pending.to_document() if pending else None}

    async def accept_pending_fingerprint(self) -> dict:
        try:
            fingerprint = self.session.accept_pending_fingerprint()
        except PersistenceError as e:
            return _failure(e)
        if fingerprint is None:
            return {"success": False, "message": "No host key is awaiting verification", "error": "no_pending"}
        return {"success": True, "fingerprint": fingerprint.to_document()}

    async def reject_pending_fingerprint(self) -> dict:
        rejected = self.session.reject_pending_fingerprint()
        return {"success": True, "rejected": rejected}

    async def wait_for_fingerprint_decision(self, timeout: Optional[float] = None) -> dict:
        """Block until the pending host key is accepted or rejected, or ``timeout`` passes."""
        accepted = await self.session.wait_for_fingerprint_decision(timeout)
        if accepted is None:
            decision = None
        else:
            decision = "accepted" if accepted else "rejected"
        return {"success": True, "decision": decision}

    async def close(self) -> None:
        await self.session.disconnect()
