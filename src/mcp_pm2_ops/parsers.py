"""Parsing and normalization of PM2 process listings.

Listings are parsed by an ordered chain of strategies. Each strategy pairs
the command it needs with a parser that either returns normalized records or
raises :class:`ProcessParseError`; the chain moves on to the next strategy
only when the previous one failed.
"""

import json
import logging
import re
import time
from typing import Awaitable, Callable, Optional

from .commands import JLIST_COMMAND, JLIST_NOISY_COMMAND, TABLE_COMMAND
from .errors import ProcessParseError
from .models import CommandResult, ProcessStatus, RemoteProcessRecord

logger = logging.getLogger(__name__)

_MEMORY = re.compile(r"^\s*([0-9]*\.?[0-9]+)\s*([kmgt]?)(?:i?b)?\s*$", re.IGNORECASE)
_MEMORY_UNITS = {"": 1, "k": 1024, "m": 1024 ** 2, "g": 1024 ** 3, "t": 1024 ** 4}
_UPTIME_PART = re.compile(r"(\d+(?:\.\d+)?)\s*([dhms])(?![a-z])", re.IGNORECASE)
_UPTIME_UNITS = {"d": 86400, "h": 3600, "m": 60, "s": 1}


# --- Numeric normalization ---


def parse_memory(value) -> int:
    """Memory in bytes from a number or a string like ``15.5 MB`` / ``45.2mb`` / ``1G``."""
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value) if value > 0 else 0
    if not isinstance(value, str):
        return 0
    m = _MEMORY.match(value)
    if not m:
        return 0
    return int(float(m.group(1)) * _MEMORY_UNITS[m.group(2).lower()])


def parse_uptime(value) -> int:
    """Seconds from a number or a string like ``2d 3h`` / ``45m`` / ``2D``."""
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value) if value > 0 else 0
    if not isinstance(value, str):
        return 0
    text = value.strip()
    try:
        return max(int(float(text)), 0)
    except ValueError:
        pass
    total = 0.0
    for amount, unit in _UPTIME_PART.findall(text):
        total += float(amount) * _UPTIME_UNITS[unit.lower()]
    return int(total)


def _to_float(value, default: float = 0.0) -> float:
    if isinstance(value, bool) or value is None:
        return default
    try:
        return float(str(value).strip().rstrip("%"))
    except ValueError:
        return default


def _to_int(value, default: int = 0) -> int:
    return int(_to_float(value, default))


def _uptime_seconds(raw: dict, env: dict, now_ms: float) -> int:
    started = env.get("pm_uptime")
    if isinstance(started, (int, float)) and not isinstance(started, bool) and started > 0:
        if ProcessStatus.from_raw(env.get("status", raw.get("status"))) is not ProcessStatus.ONLINE:
            return 0
        return max(int((now_ms - started) / 1000), 0)
    return parse_uptime(env.get("uptime", raw.get("uptime", 0)))


def normalize_process(raw: dict, now_ms: Optional[float] = None) -> RemoteProcessRecord:
    """Build a RemoteProcessRecord from a ``pm2 jlist`` entry or a table row.

    Missing or unparseable numbers become zero; they never fail the record.
    """
    if now_ms is None:
        now_ms = time.time() * 1000
    env = raw.get("pm2_env") if isinstance(raw.get("pm2_env"), dict) else {}
    monit = raw.get("monit") if isinstance(raw.get("monit"), dict) else {}

    pid = _to_int(raw.get("pid", env.get("pid")))
    return RemoteProcessRecord(
        name=str(raw.get("name") or env.get("name") or "unknown"),
        id=_to_int(raw.get("pm_id", env.get("pm_id", raw.get("id")))),
        status=ProcessStatus.from_raw(env.get("status") or raw.get("status")),
        memory_bytes=parse_memory(monit.get("memory", raw.get("memory", 0))),
        cpu_percent=_to_float(monit.get("cpu", raw.get("cpu", 0))),
        uptime_seconds=_uptime_seconds(raw, env, now_ms),
        restart_count=_to_int(
            env.get("restart_time", env.get("restart", raw.get("restarts", raw.get("restart"))))
        ),
        pid=pid if pid > 0 else None,
    )


def _normalize_all(entries: list, now_ms: Optional[float]) -> list[RemoteProcessRecord]:
    records = []
    for entry in entries:
        if not isinstance(entry, dict):
            raise ProcessParseError(f"Expected a process object, got {type(entry).__name__}")
        records.append(normalize_process(entry, now_ms))
    return records


# --- Strategies ---


class JsonListParser:
    """Strict ``pm2 jlist --silent``: the whole output is one JSON array."""

    name = "jlist"
    command = JLIST_COMMAND
    tolerate_stderr = False

    def parse(self, stdout: str, now_ms: Optional[float] = None) -> list[RemoteProcessRecord]:
        text = stdout.strip()
        if not text:
            raise ProcessParseError("Empty PM2 process list output")
        try:
            data = json.loads(text)
        except ValueError as e:
            raise ProcessParseError(f"Invalid JSON from pm2 jlist: {e}") from e
        if not isinstance(data, list):
            raise ProcessParseError("pm2 jlist output is not a JSON array")
        return _normalize_all(data, now_ms)


class LooseJsonParser:
    """JSON buried in banner noise (``>>>> In-memory PM2 is out-of-date`` ...).

    Accepts an array, an object with a ``processes`` array, or a single
    process object.
    """

    name = "jlist-loose"
    command = JLIST_NOISY_COMMAND
    tolerate_stderr = True

    def parse(self, stdout: str, now_ms: Optional[float] = None) -> list[RemoteProcessRecord]:
        candidate = self._extract(stdout)
        try:
            data = json.loads(candidate)
        except ValueError as e:
            raise ProcessParseError(f"No parseable JSON in pm2 output: {e}") from e

        if isinstance(data, dict):
            processes = data.get("processes")
            data = processes if isinstance(processes, list) else [data]
        if not isinstance(data, list):
            raise ProcessParseError("pm2 output is not a JSON array or object")
        return _normalize_all(data, now_ms)

    @staticmethod
    def _extract(stdout: str) -> str:
        lines = [line.strip() for line in stdout.strip().splitlines()]
        json_lines = [
            line for line in lines
            if line[:1] in ("[", "{") and line[-1:] in ("]", "}")
        ]
        if json_lines:
            return "\n".join(json_lines)

        starts = [i for i in (stdout.find("["), stdout.find("{")) if i >= 0]
        if not starts:
            raise ProcessParseError("PM2 output is not a valid JSON array or object")
        start = min(starts)
        end = max(stdout.rfind("]"), stdout.rfind("}"))
        if end <= start:
            raise ProcessParseError("PM2 output is not a valid JSON array or object")
        return stdout[start:end + 1]


class TableParser:
    """Human-readable ``pm2 list`` box table, mapped through its header row."""

    name = "table"
    command = TABLE_COMMAND
    tolerate_stderr = True

    _SEPARATOR = re.compile(r"[│|]")
    _COLUMNS = {
        "id": "pm_id",
        "name": "name",
        "app name": "name",
        "pid": "pid",
        "uptime": "uptime",
        "↺": "restarts",
        "restart": "restarts",
        "restarts": "restarts",
        "status": "status",
        "cpu": "cpu",
        "mem": "memory",
        "memory": "memory",
    }

    def parse(self, stdout: str, now_ms: Optional[float] = None) -> list[RemoteProcessRecord]:
        header: Optional[list[Optional[str]]] = None
        rows: list[dict] = []

        for line in stdout.splitlines():
            if not self._SEPARATOR.search(line):
                continue
            cells = [c.strip() for c in self._SEPARATOR.split(line.strip())[1:-1]]
            if not cells:
                continue
            lowered = [c.lower() for c in cells]
            if header is None:
                if "name" in lowered or "app name" in lowered:
                    header = [self._COLUMNS.get(c) for c in lowered]
                continue
            if len(cells) != len(header):
                continue
            row = {key: value for key, value in zip(header, cells) if key}
            if row.get("name"):
                rows.append(row)

        if header is None:
            raise ProcessParseError("No process table header found in pm2 list output")
        return _normalize_all(rows, now_ms)


DEFAULT_STRATEGIES = (JsonListParser(), LooseJsonParser(), TableParser())

RunCommand = Callable[[str], Awaitable[CommandResult]]


class ParserChain:
    """Tries each strategy's command and parser in order until one succeeds."""

    def __init__(self, strategies=DEFAULT_STRATEGIES, clock: Callable[[], float] = time.time):
        self.strategies = tuple(strategies)
        self._clock = clock

    async def run(self, run_command: RunCommand) -> tuple[list[RemoteProcessRecord], str]:
        """Return the records and the name of the strategy that produced them.

        Execution errors from ``run_command`` propagate unchanged; only parse
        failures move the chain along.

        Raises:
            ProcessParseError: every strategy failed.
        """
        failures = []
        for strategy in self.strategies:
            result = await run_command(strategy.command)
            try:
                if result.stderr.strip() and not strategy.tolerate_stderr:
                    raise ProcessParseError(f"stderr: {result.stderr.strip()}")
                records = strategy.parse(result.stdout, now_ms=self._clock() * 1000)
            except ProcessParseError as e:
                logger.info(f"PM2 list strategy '{strategy.name}' failed: {e}")
                failures.append(f"{strategy.name}: {e}")
                continue
            return records, strategy.name

        raise ProcessParseError("Failed to parse PM2 process list (" + "; ".join(failures) + ")")
