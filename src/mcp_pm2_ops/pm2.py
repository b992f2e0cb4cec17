"""PM2 process control over the managed session."""

import logging
import time
from typing import Callable, Optional

from pydantic import ValidationError

from .cache import TTLCache
from .commands import (
    DEFAULT_LOG_LINES,
    PRESENCE_ABSENT_MARKER,
    PRESENCE_COMMAND,
    ProcessCommand,
    build_pm2_command,
)
from .config import ServiceSettings
from .errors import ProcessParseError
from .executor import CommandExecutor
from .models import ActionResult, ListResult, LogsResult, RemoteProcessRecord
from .parsers import ParserChain

NOT_INSTALLED_MESSAGE = "PM2 is not installed on the remote server"
LISTED_MESSAGE = "Processes retrieved successfully"

_PAST_TENSE = {
    "start": "started",
    "stop": "stopped",
    "restart": "restarted",
    "delete": "deleted",
}


def _invalid_request_message(e: ValidationError) -> str:
    errors = e.errors()
    detail = errors[0]["msg"] if errors else str(e)
    return f"Invalid request: {detail}"


class RemoteProcessController:
    """Issues PM2 commands through the executor and normalizes their output.

    Two caches with independent TTLs sit in front of the remote host: the
    process list and the "is pm2 installed" probe. A fresh negative probe
    answers :meth:`list` without any remote call.
    """

    def __init__(
        self,
        executor: CommandExecutor,
        settings: Optional[ServiceSettings] = None,
        chain: Optional[ParserChain] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._executor = executor
        self._settings = settings or ServiceSettings()
        self._chain = chain or ParserChain()
        self._list_cache: TTLCache[list[RemoteProcessRecord]] = TTLCache(
            self._settings.process_list_ttl, clock
        )
        self._presence_cache: TTLCache[bool] = TTLCache(self._settings.manager_probe_ttl, clock)
        self.logger = logging.getLogger(__name__)

    def invalidate(self) -> None:
        """Drop both caches, e.g. when the session moves to another host."""
        self._list_cache.invalidate()
        self._presence_cache.invalidate()

    async def is_installed(self) -> bool:
        """Whether pm2 is on the remote PATH, cached for ``manager_probe_ttl``."""
        entry = self._presence_cache.get()
        if entry is not None:
            self.logger.debug(f"Using cached PM2 check result: installed={entry.value}")
            return entry.value

        self.logger.info("Checking if PM2 is installed on remote server")
        result = await self._executor.execute(PRESENCE_COMMAND)
        installed = PRESENCE_ABSENT_MARKER not in result.stdout
        self._presence_cache.put(installed)
        if not installed:
            self.logger.info(NOT_INSTALLED_MESSAGE)
        return installed

    async def list(self) -> ListResult:
        """List managed processes.

        Raises:
            NotConnected, CommandTimeout, ChannelFatal: from the executor.
        """
        self._executor.ensure_connected()

        presence = self._presence_cache.get()
        if presence is not None and not presence.value:
            return ListResult(success=False, message=NOT_INSTALLED_MESSAGE, manager_installed=False)

        cached = self._list_cache.get()
        if cached is not None:
            self.logger.debug(
                f"Using cached process list (age: {self._list_cache.age():.1f}s, "
                f"count: {len(cached.value)})"
            )
            return ListResult(
                success=True,
                processes=[p.model_copy() for p in cached.value],
                message=LISTED_MESSAGE,
                from_cache=True,
            )

        if not await self.is_installed():
            return ListResult(success=False, message=NOT_INSTALLED_MESSAGE, manager_installed=False)

        try:
            records, strategy = await self._chain.run(self._executor.execute)
        except ProcessParseError as e:
            self.logger.error(str(e))
            return ListResult(success=False, message=str(e))

        self._list_cache.put(records)
        if strategy != self._chain.strategies[0].name:
            self.logger.info(f"Process list parsed with fallback strategy '{strategy}'")
        return ListResult(
            success=True,
            processes=[p.model_copy() for p in records],
            message=LISTED_MESSAGE,
            strategy=strategy,
        )

    async def _run_action(self, action: str, name: str) -> ActionResult:
        try:
            command = build_pm2_command(ProcessCommand(action=action, target=name))
        except ValidationError as e:
            return ActionResult(success=False, message=_invalid_request_message(e))

        result = await self._executor.execute(command)
        if self._settings.invalidate_list_on_mutation:
            self._list_cache.invalidate()

        error = result.stderr.strip()
        return ActionResult(
            success=not error,
            message=error or f"Process {_PAST_TENSE[action]} successfully",
            output=result.stdout,
        )

    async def start(self, name: str) -> ActionResult:
        return await self._run_action("start", name)

    async def stop(self, name: str) -> ActionResult:
        return await self._run_action("stop", name)

    async def restart(self, name: str) -> ActionResult:
        return await self._run_action("restart", name)

    async def delete(self, name: str) -> ActionResult:
        return await self._run_action("delete", name)

    async def logs(self, name: str, max_lines: Optional[int] = None) -> LogsResult:
        """Fetch the most recent ``max_lines`` of log output (not a live stream)."""
        lines = max_lines or self._settings.log_lines or DEFAULT_LOG_LINES
        try:
            command = build_pm2_command(ProcessCommand(action="logs", target=name, lines=lines))
        except ValidationError as e:
            return LogsResult(success=False, message=_invalid_request_message(e))

        result = await self._executor.execute(command)
        # stderr never fails the call.
        return LogsResult(
            success=True,
            logs=result.stdout,
            lines=result.stdout.splitlines(),
            message=result.stderr.strip(),
        )
