# tests/test_supervisor.py
"""
Unit tests for the engine process supervisor.
Child processes are replaced by FakeProcess objects through the injectable spawner.
"""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import asyncio
import itertools
import json

import pytest

from bridge.exceptions import ConfigError, NoReadyDevicesError, UnknownDeviceError
from bridge.services.config_store import ConfigStore
from bridge.services.event_hub import EventHub
from bridge.services.supervisor import EngineState, Supervisor


class FakeStdout:
    def __init__(self):
        self._lines: asyncio.Queue = asyncio.Queue()

    def push(self, text: str):
        self._lines.put_nowait(text.encode() + b"\n")

    def close(self):
        self._lines.put_nowait(b"")

    def fail(self, error: Exception):
        self._lines.put_nowait(error)

    async def readline(self) -> bytes:
        item = await self._lines.get()
        if isinstance(item, Exception):
            raise item
        return item


class FakeProcess:
    _pids = itertools.count(1000)

    def __init__(self, ignore_terminate: bool = False):
        self.pid = next(self._pids)
        self.returncode = None
        self.stdout = FakeStdout()
        self.ignore_terminate = ignore_terminate
        self.terminated = False
        self.killed = False
        self._exited = asyncio.Event()

    def exit(self, code: int):
        if self.returncode is None:
            self.returncode = code
            self.stdout.close()
            self._exited.set()

    def terminate(self):
        self.terminated = True
        if not self.ignore_terminate:
            self.exit(0)

    def kill(self):
        self.killed = True
        self.exit(-9)

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode


class FakeSpawner:
    def __init__(self, ignore_terminate: bool = False):
        self.ignore_terminate = ignore_terminate
        self.spawned: list[tuple[str, FakeProcess]] = []

    async def __call__(self, device_id: str, config_path: str) -> FakeProcess:
        process = FakeProcess(self.ignore_terminate)
        self.spawned.append((device_id, process))
        return process

    def latest(self, device_id: str) -> FakeProcess:
        return [p for d, p in self.spawned if d == device_id][-1]

    def count(self, device_id: str) -> int:
        return sum(1 for d, _ in self.spawned if d == device_id)


READY = {"device_id": "dev-1", "device_key": "k1", "host": "10.0.0.5"}
READY_2 = {"device_id": "dev-2", "device_key": "k2", "host": "10.0.0.6"}
NOT_READY = {"device_id": "dev-3", "host": "10.0.0.7"}


def _supervisor(tmp_path, devices, spawner=None, hub=None, **kwargs):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"devices": devices}))
    spawner = spawner or FakeSpawner()
    kwargs.setdefault("restart_delay", 0.05)
    kwargs.setdefault("stop_timeout", 0.05)
    return Supervisor(ConfigStore(str(path)), hub or EventHub(), spawner=spawner, **kwargs), spawner


async def _settle():
    for _ in range(5):
        await asyncio.sleep(0)


class TestStart:

    @pytest.mark.asyncio
    async def test_start_all_skips_incomplete_devices(self, tmp_path):
        sup, spawner = _supervisor(tmp_path, [READY, NOT_READY, READY_2])
        state = await sup.start_all()
        assert state["running"] == 2
        assert state["total"] == 3
        assert sorted(state["running_ids"]) == ["dev-1", "dev-2"]
        assert [d for d, _ in spawner.spawned] == ["dev-1", "dev-2"]
        not_ready = [d for d in state["devices"] if d["device_id"] == "dev-3"][0]
        assert not_ready["ready"] is False
        assert not_ready["missing"] == ["device_key"]
        await sup.shutdown()

    @pytest.mark.asyncio
    async def test_nothing_ready_is_an_error(self, tmp_path):
        sup, spawner = _supervisor(tmp_path, [NOT_READY])
        with pytest.raises(NoReadyDevicesError):
            await sup.start_all()
        assert spawner.spawned == []

    @pytest.mark.asyncio
    async def test_start_running_engine_is_a_no_op(self, tmp_path):
        sup, spawner = _supervisor(tmp_path, [READY])
        await sup.start_device("dev-1")
        await sup.start_device("dev-1")
        assert spawner.count("dev-1") == 1
        await sup.shutdown()

    @pytest.mark.asyncio
    async def test_start_unknown_or_incomplete_device(self, tmp_path):
        sup, _ = _supervisor(tmp_path, [NOT_READY])
        with pytest.raises(UnknownDeviceError):
            await sup.start_device("nope")
        with pytest.raises(ConfigError):
            await sup.start_device("dev-3")

    @pytest.mark.asyncio
    async def test_spawn_failure_schedules_restart(self, tmp_path):
        calls = []

        async def flaky(device_id, config_path):
            calls.append(device_id)
            if len(calls) == 1:
                raise OSError("no python")
            return FakeProcess()

        sup, _ = _supervisor(tmp_path, [READY], spawner=flaky)
        await sup.start_device("dev-1")
        assert sup.engine("dev-1").state is EngineState.CRASHED
        await asyncio.sleep(0.15)
        assert sup.engine("dev-1").state is EngineState.RUNNING
        assert len(calls) == 2
        await sup.shutdown()


class TestCrashRecovery:

    @pytest.mark.asyncio
    async def test_crashed_engine_restarts_after_delay(self, tmp_path):
        sup, spawner = _supervisor(tmp_path, [READY, READY_2], restart_delay=0.05)
        await sup.start_all()
        first = spawner.latest("dev-1")
        other = spawner.latest("dev-2")

        first.exit(1)
        await _settle()
        entry = sup.engine("dev-1")
        assert entry.state is EngineState.CRASHED
        assert entry.last_exit_code == 1
        assert sup.engine("dev-2").state is EngineState.RUNNING

        await asyncio.sleep(0.15)
        assert entry.state is EngineState.RUNNING
        assert entry.restarts == 1
        assert spawner.latest("dev-1") is not first
        assert other.returncode is None
        await sup.shutdown()

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_restart(self, tmp_path):
        sup, spawner = _supervisor(tmp_path, [READY], restart_delay=0.05)
        await sup.start_device("dev-1")
        spawner.latest("dev-1").exit(1)
        await _settle()
        assert sup.engine("dev-1").restart_handle is not None

        await sup.stop_device("dev-1")
        await asyncio.sleep(0.15)
        assert spawner.count("dev-1") == 1
        assert sup.engine("dev-1").state is EngineState.STOPPED
        await sup.shutdown()

    @pytest.mark.asyncio
    async def test_requested_stop_is_not_a_crash(self, tmp_path):
        sup, spawner = _supervisor(tmp_path, [READY])
        await sup.start_device("dev-1")
        await sup.stop_device("dev-1")
        await asyncio.sleep(0.15)
        assert spawner.latest("dev-1").terminated
        assert spawner.count("dev-1") == 1
        assert sup.engine("dev-1").restarts == 0
        await sup.shutdown()


class TestStop:

    @pytest.mark.asyncio
    async def test_kill_after_timeout(self, tmp_path):
        sup, spawner = _supervisor(tmp_path, [READY], spawner=FakeSpawner(ignore_terminate=True))
        await sup.start_device("dev-1")
        await sup.stop_device("dev-1")
        process = spawner.latest("dev-1")
        assert process.terminated and process.killed
        assert sup.engine("dev-1").last_exit_code == -9
        await sup.shutdown()

    @pytest.mark.asyncio
    async def test_stop_unknown_device(self, tmp_path):
        sup, _ = _supervisor(tmp_path, [READY])
        with pytest.raises(UnknownDeviceError):
            await sup.stop_device("nope")

    @pytest.mark.asyncio
    async def test_stop_never_started_device(self, tmp_path):
        sup, _ = _supervisor(tmp_path, [READY])
        assert (await sup.stop_device("dev-1"))["state"] == "stopped"

    @pytest.mark.asyncio
    async def test_restart_replaces_process(self, tmp_path):
        sup, spawner = _supervisor(tmp_path, [READY])
        await sup.start_device("dev-1")
        first = spawner.latest("dev-1")
        row = await sup.restart_device("dev-1")
        assert first.terminated
        assert row["state"] == "running"
        assert spawner.count("dev-1") == 2
        await sup.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_stops_everything(self, tmp_path):
        sup, spawner = _supervisor(tmp_path, [READY, READY_2])
        await sup.start_all()
        await sup.shutdown()
        assert all(p.returncode is not None for _, p in spawner.spawned)
        assert sup.state()["running"] == 0


class TestOutput:

    @pytest.mark.asyncio
    async def test_child_output_reaches_the_hub(self, tmp_path):
        hub = EventHub()
        sub = hub.subscribe()
        sup, spawner = _supervisor(tmp_path, [READY], hub=hub)
        await sup.start_device("dev-1")
        spawner.latest("dev-1").stdout.push("📡 Connecting to alertStream")
        await _settle()

        assert [e["line"] for e in hub.recent("dev-1")] == ["📡 Connecting to alertStream"]
        events = []
        while not sub.queue.empty():
            events.append(sub.queue.get_nowait())
        assert {"state", "log"} <= {e["event_type"] for e in events}
        await sup.shutdown()

    @pytest.mark.asyncio
    async def test_oversized_line_does_not_stop_the_reader(self, tmp_path):
        hub = EventHub()
        sup, spawner = _supervisor(tmp_path, [READY], hub=hub)
        await sup.start_device("dev-1")
        stdout = spawner.latest("dev-1").stdout
        stdout.fail(ValueError("Separator is not found, and chunk exceed the limit"))
        stdout.push("✅ Still talking")
        await _settle()

        assert [e["line"] for e in hub.recent("dev-1")] == ["✅ Still talking"]
        assert sup.engine("dev-1").state is EngineState.RUNNING
        await sup.shutdown()
