"""MCP server for managing PM2 processes on a remote host over SSH."""

import argparse
import asyncio
import logging
from pathlib import Path

from mcp.server.fastmcp import FastMCP

from .config import load_settings
from .log import setup_logging
from .notifier import ConnectionChanged, Event, HostKeyVerificationRequired
from .service import RemoteSessionService


mcp = FastMCP("PM2 Operations")
service: RemoteSessionService = None  # type: ignore[assignment]
events: "asyncio.Queue[Event]" = None  # type: ignore[assignment]
logger = logging.getLogger(__name__)


def _connection_config(
    hostname: str,
    username: str,
    password: str = None,
    key_file: str = None,
    port: int = 22,
    accept_new_host_key: bool = False,
) -> dict:
    config = {
        "host": hostname,
        "port": port,
        "username": username,
        "allow_unverified_host_keys": accept_new_host_key,
    }
    if password is not None:
        config["password"] = password
    if key_file is not None:
        config["private_key_path"] = key_file
    return config


@mcp.tool()
async def ssh_connect(
    hostname: str,
    username: str,
    password: str = None,
    key_file: str = None,
    port: int = 22,
    accept_new_host_key: bool = False,
) -> dict:
    """
    Open the managed SSH session, replacing any existing one.

    Host keys are pinned on first use. An unknown key is only accepted when
    accept_new_host_key is true; otherwise it is parked as the pending
    fingerprint for accept_host_key / reject_host_key. A key that differs
    from the pinned one is never accepted automatically.

    Args:
        hostname: SSH server hostname or IP
        username: SSH username
        password: SSH password (give either this or key_file)
        key_file: Path to SSH private key
        port: SSH port (default: 22)
        accept_new_host_key: Pin an unknown host key without asking

    Returns:
        success flag, connection state, and the pending fingerprint on rejection
    """
    return await service.connect(
        _connection_config(hostname, username, password, key_file, port, accept_new_host_key)
    )


@mcp.tool()
async def ssh_disconnect() -> dict:
    """Close the managed SSH session. Safe to call when already disconnected."""
    return await service.disconnect()


@mcp.tool()
async def ssh_test_connection(
    hostname: str,
    username: str,
    password: str = None,
    key_file: str = None,
    port: int = 22,
    accept_new_host_key: bool = False,
) -> dict:
    """
    Connect, check whether pm2 is installed, and disconnect again.

    The managed session is not touched.

    Returns:
        success flag and hasRemoteManager
    """
    return await service.test_connection(
        _connection_config(hostname, username, password, key_file, port, accept_new_host_key)
    )


@mcp.tool()
async def ssh_status() -> dict:
    """Current connection state; a live session is re-probed at most every liveness interval."""
    return await service.get_status()


@mcp.tool()
async def ssh_exec(command: str, timeout: float = None) -> dict:
    """
    Execute a shell command on the connected host.

    Args:
        command: Command line to run
        timeout: Deadline in seconds (default: command_timeout setting)

    Returns:
        stdout, stderr and exit status
    """
    return await service.execute_command(command, timeout)


@mcp.tool()
async def pm2_list() -> dict:
    """List PM2 processes with status, memory, CPU, uptime and restart count."""
    return await service.list_processes()


@mcp.tool()
async def pm2_start(name: str) -> dict:
    """Start a PM2 process by name, id, or "all"."""
    return await service.start_process(name)


@mcp.tool()
async def pm2_stop(name: str) -> dict:
    """Stop a PM2 process by name, id, or "all"."""
    return await service.stop_process(name)


@mcp.tool()
async def pm2_restart(name: str) -> dict:
    """Restart a PM2 process by name, id, or "all"."""
    return await service.restart_process(name)


@mcp.tool()
async def pm2_delete(name: str) -> dict:
    """Delete a PM2 process by name, id, or "all"."""
    return await service.delete_process(name)


@mcp.tool()
async def pm2_logs(name: str, lines: int = None) -> dict:
    """
    Fetch the most recent log lines of a PM2 process.

    Args:
        name: Process name or id
        lines: Number of lines (default: log_lines setting)
    """
    return await service.get_process_logs(name, lines)


@mcp.tool()
async def system_stats() -> dict:
    """Memory, CPU load, uptime, root disk usage and Node.js versions of the connected host."""
    return await service.get_system_stats()


@mcp.tool()
async def host_keys() -> dict:
    """List pinned host key fingerprints."""
    return await service.get_host_fingerprints()


@mcp.tool()
async def forget_host_key(hostname: str, port: int = 22) -> dict:
    """Remove the pinned fingerprint for hostname:port."""
    return await service.delete_host_fingerprint(hostname, port)


@mcp.tool()
async def pending_host_key() -> dict:
    """Show the host key awaiting an accept/reject decision, if any."""
    return await service.get_pending_fingerprint()


@mcp.tool()
async def accept_host_key() -> dict:
    """Pin the pending host key as verified. Reconnect afterwards."""
    return await service.accept_pending_fingerprint()


@mcp.tool()
async def reject_host_key() -> dict:
    """Discard the pending host key without pinning it."""
    return await service.reject_pending_fingerprint()


@mcp.tool()
async def wait_host_key_decision(timeout: float = 30) -> dict:
    """
    Wait until the pending host key is accepted or rejected.

    Args:
        timeout: Seconds to wait (default: 30)

    Returns:
        decision: "accepted", "rejected", or null when nothing is pending or
        the wait timed out
    """
    return await service.wait_for_fingerprint_decision(timeout)


@mcp.tool()
async def poll_events() -> list[dict]:
    """Drain connection and host key events received since the last call."""
    drained = []
    while not events.empty():
        drained.append(_format_event(events.get_nowait()))
    return drained


def _format_event(event: Event) -> dict:
    if isinstance(event, ConnectionChanged):
        return {"type": "connectionChanged", "connected": event.connected, "error": event.error}
    if isinstance(event, HostKeyVerificationRequired):
        return {
            "type": "hostKeyVerificationRequired",
            "fingerprint": event.fingerprint.to_document(),
            "isChanged": event.is_changed,
        }
    return {"type": type(event).__name__}


def main():
    """Run the MCP server."""
    global service, events

    parser = argparse.ArgumentParser(description="MCP PM2 Operations server")
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to pm2ops.yaml (default: pm2ops.yaml next to the package)",
    )
    parser.add_argument(
        "--store-path",
        type=Path,
        default=None,
        help="Settings document holding pinned host keys (overrides store_path)",
    )
    parser.add_argument(
        "--recap-dir",
        type=Path,
        default=None,
        help="Directory for saving command recaps (omit to disable)",
    )
    args = parser.parse_args()

    settings = load_settings(config_path=args.config)
    overrides = {}
    if args.store_path is not None:
        overrides["store_path"] = args.store_path.expanduser()
    if args.recap_dir is not None:
        overrides["recap_dir"] = args.recap_dir.expanduser()
    if overrides:
        settings = settings.model_copy(update=overrides)

    setup_logging(settings.log_level, settings.log_file)
    logger.info(f"Using settings document {settings.store_path}")

    service = RemoteSessionService(settings)
    events, _ = service.notifier.subscribe_queue(maxsize=100)

    mcp.run()


if __name__ == "__main__":
    main()
