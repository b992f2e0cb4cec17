"""Shared fixtures: an in-memory stand-in for asyncssh.connect and a manual clock."""

import struct
from types import SimpleNamespace

import asyncssh
import pytest

from mcp_pm2_ops.config import ServiceSettings
from mcp_pm2_ops.models import ConnectionConfig
from mcp_pm2_ops.session import PROBE_COMMAND
from mcp_pm2_ops.store import DocumentStore
from mcp_pm2_ops.trust_store import TrustStore


def key_blob(key_type: str = "ssh-ed25519", body: bytes = b"\x01" * 32) -> bytes:
    """SSH wire-format public key: length-prefixed type name, then key material."""
    name = key_type.encode("ascii")
    return struct.pack(">I", len(name)) + name + struct.pack(">I", len(body)) + body


class FakeKey:
    def __init__(self, public_data: bytes):
        self.public_data = public_data


class FakeConnection:
    """Scripted remote shell.

    ``responses`` maps a command to ``(stdout, stderr, exit_status)``, an
    exception instance to raise, or an async callable returning the tuple.
    Unknown commands succeed with empty output.
    """

    def __init__(self, responses: dict):
        self.responses = responses
        self.calls: list[str] = []
        self.closed = False

    async def run(self, command, check=False):
        self.calls.append(command)
        response = self.responses.get(command, ("", "", 0))
        if isinstance(response, BaseException):
            raise response
        if callable(response):
            response = await response()
        stdout, stderr, exit_status = response
        return SimpleNamespace(stdout=stdout, stderr=stderr, exit_status=exit_status)

    def close(self):
        self.closed = True

    async def wait_closed(self):
        return None


class FakeHost:
    """Plays the remote sshd: presents ``key``, checks ``password``, hands out connections.

    ``listed_in_known_hosts`` puts the key in the user's ``known_hosts`` file.
    Like asyncssh, that file is only read when ``known_hosts`` is left at its
    default ``()``, and a listed key skips ``validate_host_public_key``.
    """

    def __init__(
        self,
        key: bytes = None,
        password: str = "secret",
        responses: dict = None,
        listed_in_known_hosts: bool = False,
    ):
        self.key = key if key is not None else key_blob()
        self.listed_in_known_hosts = listed_in_known_hosts
        self.password = password
        self.responses = {PROBE_COMMAND: ("connection_test\n", "", 0)}
        self.responses.update(responses or {})
        self.connections: list[FakeConnection] = []
        self.clients = []
        self.connect_kwargs: list[dict] = []

    @property
    def connection(self) -> FakeConnection:
        return self.connections[-1]

    @property
    def calls(self) -> list[str]:
        return [c for conn in self.connections for c in conn.calls]

    async def connect(self, **kwargs):
        self.connect_kwargs.append(kwargs)
        client = kwargs["client_factory"]()
        self.clients.append(client)
        host, port = kwargs["host"], kwargs["port"]
        known_hosts = kwargs.get("known_hosts", ())
        if known_hosts is None:
            trusted = True
        elif known_hosts == ():
            trusted = self.listed_in_known_hosts
        else:
            trusted = self.key in known_hosts[0]
        if not trusted and not client.validate_host_public_key(host, (host, port), port, FakeKey(self.key)):
            raise asyncssh.HostKeyNotVerifiable("Host key is not trusted")
        if kwargs.get("password") != self.password:
            raise asyncssh.PermissionDenied("Permission denied")
        conn = FakeConnection(self.responses)
        self.connections.append(conn)
        return conn


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def make_config(allow_unverified_host_keys: bool = False, **overrides) -> ConnectionConfig:
    fields = {
        "host": "web-1",
        "port": 22,
        "username": "deploy",
        "password": "secret",
        "allow_unverified_host_keys": allow_unverified_host_keys,
    }
    fields.update(overrides)
    return ConnectionConfig(**fields)


@pytest.fixture
def store(tmp_path):
    return DocumentStore(tmp_path / "settings.json")


@pytest.fixture
def trust_store(store):
    return TrustStore(store)


@pytest.fixture
def fake_host():
    return FakeHost()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return ServiceSettings(store_path=tmp_path / "settings.json")
