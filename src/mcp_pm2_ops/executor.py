"""Command execution over the managed session."""

import asyncio
import logging
from typing import Optional

import asyncssh

from .errors import ChannelFatal, CommandTimeout, NotConnected
from .models import CommandResult
from .recap import RecapLogger
from .session import SessionManager
from .ssh_client import SSHClient

# Errors that mean the transport itself is gone.
FATAL_ERRORS = (
    asyncssh.ChannelOpenError,
    asyncssh.ConnectionLost,
    asyncssh.DisconnectError,
    BrokenPipeError,
    ConnectionResetError,
    EOFError,
)


def is_channel_fatal(exc: BaseException) -> bool:
    """Classify an execution error as transport-fatal."""
    if isinstance(exc, FATAL_ERRORS):
        return True
    return "channel" in str(exc).lower()


class CommandExecutor:
    """Runs one command at a time on the live session with a deadline.

    A transport-fatal error tears the session down through
    :meth:`SessionManager.disconnect` before :class:`ChannelFatal` is raised,
    so a broken connection shows up as a state change right away.
    """

    def __init__(
        self,
        session: SessionManager,
        default_timeout: float = 30.0,
        recap: Optional[RecapLogger] = None,
    ):
        self._session = session
        self._default_timeout = default_timeout
        self._recap = recap or RecapLogger()
        self.logger = logging.getLogger(__name__)

    async def execute(self, command: str, timeout: Optional[float] = None) -> CommandResult:
        """
        Execute ``command`` and return its output.

        Non-zero exit statuses and stderr output are returned as data.

        Raises:
            NotConnected: there is no live session.
            CommandTimeout: the deadline passed; the session is left as is.
            ChannelFatal: the transport failed; the session was disconnected.
        """
        deadline = timeout if timeout is not None else self._default_timeout
        self.logger.debug(f"Executing remote command: {command}")

        try:
            async with self._session.channel_lock:
                # Read under the lock: a disconnect may land while queued.
                client = self.ensure_connected()
                result = await client.execute(command, timeout=deadline)
        except asyncio.TimeoutError as e:
            self.logger.warning(f"Command timed out after {deadline}s: {command}")
            self._recap.save(self._host(), command, f"ERROR: timed out after {deadline}s")
            raise CommandTimeout(f"Command execution timeout after {deadline}s") from e
        except (asyncssh.Error, OSError, EOFError) as e:
            if is_channel_fatal(e):
                self.logger.warning(
                    f"SSH channel error detected, connection appears to be broken: {e}"
                )
                self._recap.save(self._host(), command, f"ERROR: {e}")
                await self._session.disconnect("SSH connection lost due to channel error")
                raise ChannelFatal(f"SSH connection lost: {e}") from e

            self.logger.info(f"Remote command failed: {command}: {e}")
            result = CommandResult(stdout="", stderr=str(e) or type(e).__name__)

        self._recap.save(self._host(), command, _format_recap(result))
        return result

    def ensure_connected(self) -> SSHClient:
        """Return the live transport or raise NotConnected."""
        client = self._session.client
        if client is None or not self._session.is_connected:
            self.logger.warning("Attempted to execute command when not connected")
            raise NotConnected("SSH connection not established")
        return client

    def _host(self) -> str:
        return self._session.state().host


def _format_recap(result: CommandResult) -> str:
    output = f"Exit code: {result.exit_status}\n\n"
    if result.stdout:
        output += f"STDOUT:\n{result.stdout}\n"
    if result.stderr:
        output += f"STDERR:\n{result.stderr}\n"
    return output
