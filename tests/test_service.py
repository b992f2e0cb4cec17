"""Tests for the request/response boundary."""

import asyncio
import json

from mcp_pm2_ops.commands import JLIST_COMMAND, PRESENCE_COMMAND
from mcp_pm2_ops.config import ServiceSettings
from mcp_pm2_ops.notifier import ConnectionChanged, HostKeyVerificationRequired
from mcp_pm2_ops.service import TEST_COMMAND, RemoteSessionService

CONFIG = {"host": "web-1", "username": "deploy", "password": "secret"}
TRUSTING_CONFIG = {**CONFIG, "allowUnverifiedHostKeys": True}

PROCESSES = [
    {"name": "api", "pm_id": 0, "pid": 4242, "monit": {"memory": 1024, "cpu": 3},
     "pm2_env": {"status": "online", "restart_time": 1}},
]


def _service(tmp_path, fake_host, clock, **settings) -> RemoteSessionService:
    settings = ServiceSettings(store_path=tmp_path / "settings.json", **settings)
    return RemoteSessionService(settings, connector=fake_host.connect, clock=clock)


# --- Session ---


class TestConnect:
    def test_pending_host_key_flow(self, tmp_path, fake_host, clock):
        async def scenario():
            service = _service(tmp_path, fake_host, clock)
            events = []
            service.subscribe(events.append)
            rejected = await service.connect(CONFIG)
            pending = await service.get_pending_fingerprint()
            accepted = await service.accept_pending_fingerprint()
            connected = await service.connect(CONFIG)
            return events, rejected, pending, accepted, connected

        events, rejected, pending, accepted, connected = asyncio.run(scenario())
        assert not rejected["success"]
        assert rejected["error"] == "host_key_rejected"
        assert rejected["isChanged"] is False
        assert rejected["pendingFingerprint"]["host"] == "web-1"
        assert not rejected["connectionState"]["connected"]

        assert pending["pending"]["fingerprint"]["keyType"] == "ssh-ed25519"
        assert accepted["success"]
        assert accepted["fingerprint"]["verified"] is True

        assert connected["success"]
        assert connected["connectionState"]["connected"]
        assert connected["connectionState"]["host"] == "web-1"
        assert isinstance(events[0], HostKeyVerificationRequired)
        assert events[-1] == ConnectionChanged(connected=True)

    def test_invalid_config(self, tmp_path, fake_host, clock):
        response = asyncio.run(_service(tmp_path, fake_host, clock).connect({"host": "web-1"}))
        assert not response["success"]
        assert response["error"] == "invalid_input"
        assert fake_host.connect_kwargs == []

    def test_bad_password(self, tmp_path, fake_host, clock):
        response = asyncio.run(
            _service(tmp_path, fake_host, clock).connect({**TRUSTING_CONFIG, "password": "nope"})
        )
        assert not response["success"]
        assert response["error"] == "authentication"
        assert "Authentication failed" in response["connectionState"]["lastError"]["message"]

    def test_disconnect_twice(self, tmp_path, fake_host, clock):
        async def scenario():
            service = _service(tmp_path, fake_host, clock)
            await service.connect(TRUSTING_CONFIG)
            return await service.disconnect(), await service.disconnect()

        first, second = asyncio.run(scenario())
        assert first["success"] and second["success"]
        assert not second["connectionState"]["connected"]

    def test_accept_without_pending(self, tmp_path, fake_host, clock):
        response = asyncio.run(_service(tmp_path, fake_host, clock).accept_pending_fingerprint())
        assert not response["success"]
        assert response["error"] == "no_pending"

    def test_reject_pending(self, tmp_path, fake_host, clock):
        async def scenario():
            service = _service(tmp_path, fake_host, clock)
            await service.connect(CONFIG)
            rejected = await service.reject_pending_fingerprint()
            return rejected, await service.get_pending_fingerprint(), await service.get_host_fingerprints()

        rejected, pending, stored = asyncio.run(scenario())
        assert rejected == {"success": True, "rejected": True}
        assert pending["pending"] is None
        assert stored["fingerprints"] == []

    def test_wait_for_decision(self, tmp_path, fake_host, clock):
        async def scenario():
            service = _service(tmp_path, fake_host, clock)
            idle = await service.wait_for_fingerprint_decision(timeout=0.01)
            await service.connect(CONFIG)
            waiter = asyncio.create_task(service.wait_for_fingerprint_decision(timeout=1))
            await asyncio.sleep(0)
            await service.reject_pending_fingerprint()
            return idle, await waiter

        idle, decided = asyncio.run(scenario())
        assert idle == {"success": True, "decision": None}
        assert decided == {"success": True, "decision": "rejected"}


class TestTestConnection:
    def test_reports_manager(self, tmp_path, fake_host, clock):
        fake_host.responses[TEST_COMMAND] = ("Connection successful\n/usr/bin/pm2\n", "", 0)

        async def scenario():
            service = _service(tmp_path, fake_host, clock)
            return service, await service.test_connection(TRUSTING_CONFIG)

        service, response = asyncio.run(scenario())
        assert response["success"]
        assert response["hasRemoteManager"] is True
        assert not service.session.is_connected

    def test_reports_missing_manager(self, tmp_path, fake_host, clock):
        fake_host.responses[TEST_COMMAND] = ("Connection successful\nPM2 not found\n", "", 0)
        response = asyncio.run(_service(tmp_path, fake_host, clock).test_connection(TRUSTING_CONFIG))
        assert response["success"]
        assert response["hasRemoteManager"] is False


class TestStatusAndCommands:
    def test_status_when_disconnected(self, tmp_path, fake_host, clock):
        response = asyncio.run(_service(tmp_path, fake_host, clock).get_status())
        assert response["success"]
        assert not response["connectionState"]["connected"]

    def test_status_probe_throttled(self, tmp_path, fake_host, clock):
        async def scenario():
            service = _service(tmp_path, fake_host, clock)
            await service.connect(TRUSTING_CONFIG)
            clock.advance(31)
            first = await service.get_status()
            second = await service.get_status()
            return first, second

        first, second = asyncio.run(scenario())
        assert first["connectionState"]["connected"]
        assert second["connectionState"]["connected"]
        assert fake_host.calls.count('echo "connection_test"') == 1

    def test_execute_command(self, tmp_path, fake_host, clock):
        fake_host.responses["uname -s"] = ("Linux\n", "", 0)

        async def scenario():
            service = _service(tmp_path, fake_host, clock)
            await service.connect(TRUSTING_CONFIG)
            return await service.execute_command("uname -s")

        response = asyncio.run(scenario())
        assert response["success"]
        assert response["stdout"] == "Linux\n"
        assert response["exitStatus"] == 0

    def test_execute_when_disconnected(self, tmp_path, fake_host, clock):
        response = asyncio.run(_service(tmp_path, fake_host, clock).execute_command("uptime"))
        assert not response["success"]
        assert response["error"] == "not_connected"
        assert response["message"] == "SSH connection not established"

    def test_command_queued_behind_disconnect(self, tmp_path, fake_host, clock):
        fake_host.responses[PRESENCE_COMMAND] = ("/usr/bin/pm2\n", "", 0)

        async def scenario():
            release = asyncio.Event()

            async def held():
                await release.wait()
                return ("done\n", "", 0)

            fake_host.responses["first"] = held
            service = _service(tmp_path, fake_host, clock)
            await service.connect(TRUSTING_CONFIG)
            first = asyncio.create_task(service.execute_command("first"))
            queued = asyncio.create_task(service.list_processes())
            for _ in range(5):
                await asyncio.sleep(0)
            await service.disconnect()
            release.set()
            return await asyncio.gather(first, queued)

        first, queued = asyncio.run(scenario())
        assert first["success"]
        assert not queued["success"]
        assert queued["error"] == "not_connected"
        assert queued["processes"] == []


# --- Processes ---


class TestProcesses:
    def test_repeated_list_is_identical(self, tmp_path, fake_host, clock):
        fake_host.responses[PRESENCE_COMMAND] = ("/usr/bin/pm2\n", "", 0)
        fake_host.responses[JLIST_COMMAND] = (json.dumps(PROCESSES), "", 0)

        async def scenario():
            service = _service(tmp_path, fake_host, clock)
            await service.connect(TRUSTING_CONFIG)
            return await service.list_processes(), await service.list_processes()

        first, second = asyncio.run(scenario())
        assert first == second
        assert first["success"]
        assert first["processes"][0]["name"] == "api"
        assert first["processes"][0]["memoryBytes"] == 1024
        assert fake_host.calls.count(JLIST_COMMAND) == 1

    def test_cache_dropped_on_reconnect(self, tmp_path, fake_host, clock):
        fake_host.responses[PRESENCE_COMMAND] = ("/usr/bin/pm2\n", "", 0)
        fake_host.responses[JLIST_COMMAND] = (json.dumps(PROCESSES), "", 0)

        async def scenario():
            service = _service(tmp_path, fake_host, clock)
            await service.connect(TRUSTING_CONFIG)
            await service.list_processes()
            await service.disconnect()
            await service.connect(TRUSTING_CONFIG)
            await service.list_processes()

        asyncio.run(scenario())
        assert fake_host.calls.count(JLIST_COMMAND) == 2
        assert fake_host.calls.count(PRESENCE_COMMAND) == 2

    def test_manager_missing(self, tmp_path, fake_host, clock):
        fake_host.responses[PRESENCE_COMMAND] = ("not installed\n", "", 0)

        async def scenario():
            service = _service(tmp_path, fake_host, clock)
            await service.connect(TRUSTING_CONFIG)
            return await service.list_processes()

        response = asyncio.run(scenario())
        assert not response["success"]
        assert response["processes"] == []
        assert response["error"] == "manager_not_installed"

    def test_list_when_disconnected(self, tmp_path, fake_host, clock):
        response = asyncio.run(_service(tmp_path, fake_host, clock).list_processes())
        assert not response["success"]
        assert response["error"] == "not_connected"

    def test_restart_and_logs(self, tmp_path, fake_host, clock):
        fake_host.responses["pm2 logs api --lines 5 --nostream"] = ("a\nb\n", "", 0)

        async def scenario():
            service = _service(tmp_path, fake_host, clock)
            await service.connect(TRUSTING_CONFIG)
            return await service.restart_process("api"), await service.get_process_logs("api", 5)

        restarted, logs = asyncio.run(scenario())
        assert restarted["success"]
        assert logs == {"success": True, "logs": "a\nb\n", "lines": ["a", "b"], "message": ""}

    def test_logs_with_only_stderr(self, tmp_path, fake_host, clock):
        fake_host.responses["pm2 logs api --lines 5 --nostream"] = ("", "[PM2] no logs\n", 0)

        async def scenario():
            service = _service(tmp_path, fake_host, clock)
            await service.connect(TRUSTING_CONFIG)
            return await service.get_process_logs("api", 5)

        assert asyncio.run(scenario()) == {"success": True, "logs": "", "lines": [], "message": "[PM2] no logs"}

    def test_system_stats(self, tmp_path, fake_host, clock):
        async def scenario():
            service = _service(tmp_path, fake_host, clock)
            await service.connect(TRUSTING_CONFIG)
            return await service.get_system_stats()

        response = asyncio.run(scenario())
        assert response["success"]
        assert response["stats"]["node"]["version"] == "unknown"


# --- Fingerprints ---


class TestFingerprints:
    def test_save_list_delete(self, tmp_path, fake_host, clock):
        async def scenario():
            service = _service(tmp_path, fake_host, clock)
            saved = await service.save_host_fingerprint(
                {"host": "db-1", "port": 2222, "hash": "xyz", "keyType": "ssh-rsa", "verified": True}
            )
            listed = await service.get_host_fingerprints()
            deleted = await service.delete_host_fingerprint("db-1", 2222)
            missing = await service.delete_host_fingerprint("db-1", 2222)
            return saved, listed, deleted, missing

        saved, listed, deleted, missing = asyncio.run(scenario())
        assert saved == {"success": True}
        (entry,) = listed["fingerprints"]
        assert entry["host"] == "db-1"
        assert entry["port"] == 2222
        assert "lastSeen" in entry
        assert deleted["removed"] is True
        assert missing["removed"] is False

    def test_save_invalid(self, tmp_path, fake_host, clock):
        response = asyncio.run(
            _service(tmp_path, fake_host, clock).save_host_fingerprint({"host": "db-1", "port": 0, "hash": "x"})
        )
        assert not response["success"]
        assert response["error"] == "invalid_input"

    def test_unreadable_store(self, tmp_path, fake_host, clock):
        (tmp_path / "settings.json").write_text("{broken")
        response = asyncio.run(_service(tmp_path, fake_host, clock).get_host_fingerprints())
        assert not response["success"]
        assert response["error"] == "persistence"
        assert response["fingerprints"] == []
