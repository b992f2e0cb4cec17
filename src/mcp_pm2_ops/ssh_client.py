"""SSH transport for the managed session."""

import asyncio
from typing import Awaitable, Callable, Optional

import asyncssh

from .errors import AuthenticationError, NotConnected
from .models import CommandResult, ConnectionConfig

# (host, port, raw public key blob) -> allow handshake?
HostKeyValidator = Callable[[str, int, bytes], bool]
Connector = Callable[..., Awaitable[asyncssh.SSHClientConnection]]


class HostKeyCheckingClient(asyncssh.SSHClient):
    """asyncssh client hooks: host key validation and transport loss.

    Verification is always keyed on the configured host and port rather than
    the resolved address, so pins survive DNS changes.
    """

    def __init__(
        self,
        host: str,
        port: int,
        validator: HostKeyValidator,
        on_lost: Optional[Callable[[Exception], None]] = None,
    ):
        self._host = host
        self._port = port
        self._validator = validator
        self._on_lost = on_lost

    def validate_host_public_key(self, host, addr, port, key) -> bool:
        return self._validator(self._host, self._port, key.public_data)

    def connection_lost(self, exc: Optional[Exception]) -> None:
        if exc is not None and self._on_lost is not None:
            self._on_lost(exc)


def load_client_key(config: ConnectionConfig) -> asyncssh.SSHKey:
    """Import the private key given inline or by path."""
    try:
        if config.private_key is not None:
            return asyncssh.import_private_key(config.private_key, config.passphrase)
        return asyncssh.read_private_key(str(config.private_key_path), config.passphrase)
    except (OSError, asyncssh.KeyImportError, asyncssh.KeyEncryptionError) as e:
        raise AuthenticationError(f"Failed to load SSH key: {e}") from e


class SSHClient:
    """Async SSH connection wrapper using asyncssh.

    ``~/.ssh/config`` is still applied by asyncssh for anything not given
    explicitly. Host keys are never trusted from ``known_hosts`` files: the
    trusted, CA and revoked key lists are passed in empty, so every key goes
    through ``host_key_validator``.
    """

    def __init__(
        self,
        config: ConnectionConfig,
        host_key_validator: HostKeyValidator,
        connect_timeout: float = 30,
        keepalive_interval: float = 10,
        connector: Optional[Connector] = None,
        on_connection_lost: Optional[Callable[[Exception], None]] = None,
    ):
        self.config = config
        self._validator = host_key_validator
        self._connect_timeout = connect_timeout
        self._keepalive_interval = keepalive_interval
        self._connector = connector or asyncssh.connect
        self._on_connection_lost = on_connection_lost
        self._conn: Optional[asyncssh.SSHClientConnection] = None

    def _client_factory(self) -> HostKeyCheckingClient:
        return HostKeyCheckingClient(
            self.config.host,
            self.config.port,
            self._validator,
            on_lost=self._on_connection_lost,
        )

    async def connect(self):
        """Establish the SSH connection. Host key checks run inside the handshake."""
        if self._conn is not None:
            return

        connect_kwargs: dict = {
            "host": self.config.host,
            "port": self.config.port,
            "username": self.config.username,
            "known_hosts": ([], [], []),
            "client_factory": self._client_factory,
            "agent_path": None,
            "connect_timeout": self._connect_timeout,
            "keepalive_interval": self._keepalive_interval,
        }

        if self.config.password is not None:
            connect_kwargs["password"] = self.config.password
            connect_kwargs["client_keys"] = []
        else:
            connect_kwargs["client_keys"] = [load_client_key(self.config)]

        self._conn = await self._connector(**connect_kwargs)

    async def execute(self, command: str, timeout: Optional[float] = None) -> CommandResult:
        """
        Execute a command on the remote host.

        A non-zero exit status is returned as data, not raised.
        """
        if self._conn is None:
            raise NotConnected("SSH connection is not open")

        result = await asyncio.wait_for(self._conn.run(command, check=False), timeout=timeout)

        return CommandResult(
            stdout=_as_text(result.stdout),
            stderr=_as_text(result.stderr),
            exit_status=result.exit_status,
        )

    async def aclose(self):
        """Close the connection and wait for asyncssh to release it."""
        conn, self._conn = self._conn, None
        if conn is not None:
            conn.close()
            await conn.wait_closed()

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()


def _as_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)
