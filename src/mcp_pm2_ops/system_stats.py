"""Host resource summary gathered with standard Linux tools."""

import logging
import re
from typing import Optional

from pydantic import BaseModel, Field

from .executor import CommandExecutor

logger = logging.getLogger(__name__)

MEMORY_COMMAND = "free -m"
CPU_COUNT_COMMAND = "nproc 2>/dev/null || grep -c processor /proc/cpuinfo"
LOADAVG_COMMAND = "cat /proc/loadavg"
UPTIME_COMMAND = "cat /proc/uptime"
DISK_COMMAND = "df -h /"
NODE_VERSION_COMMAND = "node --version"
NPM_VERSION_COMMAND = "npm --version"

_SIZE = re.compile(r"^\s*([0-9]*\.?[0-9]+)\s*([KMGTP]?)i?B?\s*$", re.IGNORECASE)
# Megabytes per unit, matching `df -h` (powers of 1024).
_SIZE_UNITS_MB = {"": 1 / 1024 ** 2, "k": 1 / 1024, "m": 1, "g": 1024, "t": 1024 ** 2, "p": 1024 ** 3}


class MemoryStats(BaseModel):
    total: int = 0
    used: int = 0
    free: int = 0


class CpuStats(BaseModel):
    cores: int = 0
    load: list[float] = Field(default_factory=lambda: [0.0, 0.0, 0.0])


class DiskStats(BaseModel):
    total: float = 0.0
    used: float = 0.0
    free: float = 0.0
    used_percent: int = 0


class NodeStats(BaseModel):
    version: str = "unknown"
    npm_version: str = "unknown"


class SystemStats(BaseModel):
    """Memory and disk figures are in megabytes."""

    memory: MemoryStats = Field(default_factory=MemoryStats)
    cpu: CpuStats = Field(default_factory=CpuStats)
    uptime_seconds: float = 0.0
    disk: DiskStats = Field(default_factory=DiskStats)
    node: NodeStats = Field(default_factory=NodeStats)


def parse_free_output(stdout: str) -> MemoryStats:
    """Parse the ``Mem:`` row of ``free -m``."""
    for line in stdout.splitlines():
        parts = line.split()
        if parts and parts[0].lower().startswith("mem"):
            try:
                return MemoryStats(total=int(parts[1]), used=int(parts[2]), free=int(parts[3]))
            except (IndexError, ValueError):
                break
    logger.debug(f"Could not parse memory info: {stdout!r}")
    return MemoryStats()


def parse_cpu_count(stdout: str) -> int:
    try:
        return int(stdout.strip().splitlines()[0])
    except (IndexError, ValueError):
        return 0


def parse_loadavg(stdout: str) -> list[float]:
    """First three fields of ``/proc/loadavg``."""
    parts = stdout.split()
    loads = []
    for i in range(3):
        try:
            loads.append(float(parts[i]))
        except (IndexError, ValueError):
            loads.append(0.0)
    return loads


def parse_proc_uptime(stdout: str) -> float:
    try:
        return float(stdout.split()[0])
    except (IndexError, ValueError):
        return 0.0


def parse_size(value: str) -> float:
    """Megabytes from a ``df -h`` size such as ``50G`` or ``512M``."""
    m = _SIZE.match(value)
    if not m:
        return 0.0
    return float(m.group(1)) * _SIZE_UNITS_MB[m.group(2).lower()]


def parse_df_output(stdout: str) -> DiskStats:
    """Parse the data row of ``df -h /``, which may wrap onto a second line."""
    lines = [line for line in stdout.splitlines() if line.strip()]
    if len(lines) < 2:
        return DiskStats()
    parts = " ".join(lines[1:]).split()
    # Filesystem Size Used Avail Use% Mounted-on
    if len(parts) < 5:
        return DiskStats()
    try:
        used_percent = int(parts[4].rstrip("%"))
    except ValueError:
        used_percent = 0
    return DiskStats(
        total=parse_size(parts[1]),
        used=parse_size(parts[2]),
        free=parse_size(parts[3]),
        used_percent=used_percent,
    )


def _version(stdout: str) -> str:
    text = stdout.strip()
    return text.splitlines()[0] if text else "unknown"


class SystemStatsCollector:
    """Runs the stat commands one by one; a failed command only blanks its own field."""

    def __init__(self, executor: CommandExecutor):
        self._executor = executor

    async def _stdout(self, command: str) -> Optional[str]:
        result = await self._executor.execute(command)
        if result.exit_status not in (0, None) and not result.stdout.strip():
            logger.debug(f"'{command}' failed: {result.stderr.strip()}")
            return None
        return result.stdout

    async def collect(self) -> SystemStats:
        """Gather memory, CPU, uptime, disk and Node.js details.

        Raises:
            NotConnected, CommandTimeout, ChannelFatal: from the executor.
        """
        self._executor.ensure_connected()

        stats = SystemStats()
        memory = await self._stdout(MEMORY_COMMAND)
        if memory is not None:
            stats.memory = parse_free_output(memory)

        cores = await self._stdout(CPU_COUNT_COMMAND)
        loadavg = await self._stdout(LOADAVG_COMMAND)
        stats.cpu = CpuStats(
            cores=parse_cpu_count(cores) if cores is not None else 0,
            load=parse_loadavg(loadavg) if loadavg is not None else [0.0, 0.0, 0.0],
        )

        uptime = await self._stdout(UPTIME_COMMAND)
        if uptime is not None:
            stats.uptime_seconds = parse_proc_uptime(uptime)

        disk = await self._stdout(DISK_COMMAND)
        if disk is not None:
            stats.disk = parse_df_output(disk)

        node = await self._stdout(NODE_VERSION_COMMAND)
        npm = await self._stdout(NPM_VERSION_COMMAND)
        stats.node = NodeStats(
            version=_version(node) if node is not None else "unknown",
            npm_version=_version(npm) if npm is not None else "unknown",
        )
        return stats
