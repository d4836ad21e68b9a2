# bridge/services/supervisor.py
"""
Process supervisor — one engine process per configured device.

Engines run as `python -m bridge.worker` children so a crash, hang or leak in
one device never touches another. Child output is re-logged under
bridge.engine.<device> and published to the event hub. A child that exits
without being asked to is restarted after a fixed delay, forever.

Control operations on one device are serialized by a per-device lock; a
pending restart timer is cancelled by any explicit start or stop.
"""

import asyncio
import os
import sys
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from fastapi import Request

from bridge.config import settings
from bridge.exceptions import ConfigError, NoReadyDevicesError, UnknownDeviceError
from bridge.schemas.access_event import utc_now_iso
from bridge.schemas.bridge_config import DeviceConfig, safe_name
from bridge.services.config_store import ConfigStore
from bridge.services.event_hub import EventHub
from bridge.utils.logger import get_logger

logger = get_logger(__name__)

Spawner = Callable[[str, str], Awaitable[Any]]

OUTPUT_LINE_LIMIT = 1024 * 1024     # longest child output line read in one piece


async def spawn_engine_process(device_id: str, config_path: str):
    """Launch one engine child. stderr is merged into stdout so one reader sees everything."""
    env = {**os.environ, "LOG_TO_FILE": "0", "PYTHONUNBUFFERED": "1"}
    return await asyncio.create_subprocess_exec(
        sys.executable, "-m", "bridge.worker",
        "--device-id", device_id,
        "--config", config_path,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
        stdin=asyncio.subprocess.DEVNULL,
        limit=OUTPUT_LINE_LIMIT,
        env=env,
    )


class EngineState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    CRASHED = "crashed"     # exited unexpectedly, restart pending


@dataclass
class EngineProcess:
    device_id: str
    label: str = ""
    state: EngineState = EngineState.STOPPED
    process: Any = None
    pid: Optional[int] = None
    started_at: Optional[str] = None
    restarts: int = 0
    last_exit_code: Optional[int] = None
    stop_requested: bool = False
    restart_handle: Optional[asyncio.TimerHandle] = None
    watcher: Optional[asyncio.Task] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def alive(self) -> bool:
        return self.process is not None and self.process.returncode is None

    def to_dict(self) -> dict:
        return {
            "device_id": self.device_id,
            "label": self.label,
            "state": self.state.value,
            "pid": self.pid,
            "started_at": self.started_at,
            "restarts": self.restarts,
            "last_exit_code": self.last_exit_code,
            "restart_pending": self.restart_handle is not None,
        }


class Supervisor:
    def __init__(self, store: ConfigStore, hub: Optional[EventHub] = None,
                 spawner: Spawner = spawn_engine_process,
                 restart_delay: float = settings.RESTART_DELAY_SECONDS,
                 stop_timeout: float = settings.STOP_TIMEOUT_SECONDS):
        self.store = store
        self.hub = hub or EventHub()
        self._spawner = spawner
        self.restart_delay = restart_delay
        self.stop_timeout = stop_timeout
        self._engines: dict[str, EngineProcess] = {}
        self._tasks: set[asyncio.Task] = set()
        self._shutting_down = False

    # ── State ─────────────────────────────────────────────────────────────

    def engine(self, device_id: str) -> Optional[EngineProcess]:
        return self._engines.get(device_id)

    def _entry(self, device: DeviceConfig) -> EngineProcess:
        entry = self._engines.get(device.device_id)
        if entry is None:
            entry = EngineProcess(device_id=device.device_id)
            self._engines[device.device_id] = entry
        entry.label = device.display_name
        return entry

    def state(self) -> dict:
        cfg = self.store.load()
        devices = []
        for device in cfg.devices:
            entry = self._engines.get(device.device_id) if device.device_id else None
            row = entry.to_dict() if entry else {
                "device_id": device.device_id, "label": device.display_name,
                "state": EngineState.STOPPED.value, "pid": None, "started_at": None,
                "restarts": 0, "last_exit_code": None, "restart_pending": False,
            }
            row["host"] = device.host
            row["ready"] = device.is_ready
            row["missing"] = device.missing_fields()
            devices.append(row)
        running_ids = [d for d, e in self._engines.items() if e.state is EngineState.RUNNING]
        return {
            "running": len(running_ids),
            "total": len(cfg.devices),
            "running_ids": running_ids,
            "devices": devices,
        }

    def _publish_state(self):
        try:
            self.hub.publish_state(self.state())
        except Exception as e:
            logger.warning(f"[SUPERVISOR] Could not publish state: {e}")

    def _ready_device(self, device_id: str) -> DeviceConfig:
        device = self.store.load().find_device(device_id) if device_id else None
        if device is None:
            raise UnknownDeviceError(device_id)
        missing = device.missing_fields()
        if missing:
            raise ConfigError(f"Device {device.display_name} is missing {', '.join(missing)}")
        return device

    # ── Start ─────────────────────────────────────────────────────────────

    async def start_all(self) -> dict:
        cfg = self.store.load()
        ready = []
        for device in cfg.devices:
            missing = device.missing_fields()
            if missing:
                logger.warning(f"⚠️  Skipping {device.display_name}: missing {', '.join(missing)}")
            else:
                ready.append(device)
        if not ready:
            raise NoReadyDevicesError(
                f"No device is ready to start (need device_id, device_key and host). Config: {self.store.path}"
            )
        self._shutting_down = False
        for device in ready:
            entry = self._entry(device)
            async with entry.lock:
                await self._start_locked(entry)
        logger.info(f"🚀 {self.state()['running']}/{len(cfg.devices)} engine(s) running")
        return self.state()

    async def start_device(self, device_id: str) -> dict:
        device = self._ready_device(device_id)
        self._shutting_down = False
        entry = self._entry(device)
        async with entry.lock:
            await self._start_locked(entry)
        return entry.to_dict()

    async def _start_locked(self, entry: EngineProcess):
        self._cancel_restart(entry)
        entry.stop_requested = False
        if entry.alive:
            entry.state = EngineState.RUNNING
            return
        try:
            process = await self._spawner(entry.device_id, self.store.path)
        except OSError as e:
            logger.error(f"❌ Could not launch engine for {entry.label}: {e}")
            entry.state = EngineState.CRASHED
            self._schedule_restart(entry)
            self._publish_state()
            return

        entry.process = process
        entry.pid = getattr(process, "pid", None)
        entry.started_at = utc_now_iso()
        entry.state = EngineState.RUNNING
        entry.watcher = asyncio.create_task(self._watch(entry, process), name=f"watch-{entry.device_id}")
        logger.info(f"▶️  Engine started for {entry.label} (pid={entry.pid})")
        self._publish_state()

    # ── Child monitoring ──────────────────────────────────────────────────

    async def _pump_output(self, entry: EngineProcess, process):
        stream = getattr(process, "stdout", None)
        if stream is None:
            return
        engine_logger = get_logger(f"bridge.engine.{safe_name(entry.device_id)}")
        while True:
            try:
                line = await stream.readline()
            except ValueError as e:
                # Over-long line: the reader already discarded it, keep draining the pipe
                logger.warning(f"[SUPERVISOR] Dropped an oversized output line from {entry.label}: {e}")
                continue
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                engine_logger.info(text)
                self.hub.publish_log(entry.device_id, text)

    async def _watch(self, entry: EngineProcess, process):
        try:
            await self._pump_output(entry, process)
        except Exception as e:
            logger.warning(f"[SUPERVISOR] Lost output of {entry.label}: {e}")
        code = await process.wait()
        if entry.process is not process:
            return      # already settled by stop
        entry.process = None
        entry.pid = None
        entry.last_exit_code = code
        if entry.stop_requested or self._shutting_down:
            entry.state = EngineState.STOPPED
            logger.info(f"⏹  Engine for {entry.label} exited (code {code})")
        else:
            entry.state = EngineState.CRASHED
            logger.warning(
                f"💥 Engine for {entry.label} exited unexpectedly (code {code}) — restarting in {self.restart_delay}s"
            )
            self._schedule_restart(entry)
        self._publish_state()

    # ── Restart after crash ───────────────────────────────────────────────

    def _schedule_restart(self, entry: EngineProcess):
        if self._shutting_down or entry.stop_requested:
            return
        self._cancel_restart(entry)
        loop = asyncio.get_running_loop()
        entry.restart_handle = loop.call_later(self.restart_delay, self._restart_due, entry.device_id)

    @staticmethod
    def _cancel_restart(entry: EngineProcess):
        if entry.restart_handle is not None:
            entry.restart_handle.cancel()
            entry.restart_handle = None

    def _restart_due(self, device_id: str):
        entry = self._engines.get(device_id)
        if entry is None:
            return
        entry.restart_handle = None
        if self._shutting_down or entry.stop_requested or entry.state is not EngineState.CRASHED:
            return
        task = asyncio.create_task(self._restart_crashed(entry), name=f"restart-{device_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _restart_crashed(self, entry: EngineProcess):
        try:
            device = self._ready_device(entry.device_id)
        except (UnknownDeviceError, ConfigError) as e:
            logger.warning(f"[SUPERVISOR] Not restarting {entry.label}: {e}")
            entry.state = EngineState.STOPPED
            self._publish_state()
            return
        entry.label = device.display_name
        async with entry.lock:
            if entry.state is EngineState.CRASHED and not entry.stop_requested:
                entry.restarts += 1
                await self._start_locked(entry)

    # ── Stop ──────────────────────────────────────────────────────────────

    async def _stop_locked(self, entry: EngineProcess):
        entry.stop_requested = True
        self._cancel_restart(entry)
        process = entry.process
        if process is not None and process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass
            try:
                code = await asyncio.wait_for(process.wait(), self.stop_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"⚠️  Engine for {entry.label} ignored terminate — killing")
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                code = await process.wait()
            entry.last_exit_code = code
        entry.process = None
        entry.pid = None
        if entry.state is not EngineState.STOPPED:
            entry.state = EngineState.STOPPED
            logger.info(f"⏹  Engine stopped for {entry.label}")
            self._publish_state()

    async def stop_device(self, device_id: str) -> dict:
        entry = self._engines.get(device_id)
        if entry is None:
            if self.store.load().find_device(device_id) is None:
                raise UnknownDeviceError(device_id)
            return EngineProcess(device_id=device_id).to_dict()
        async with entry.lock:
            await self._stop_locked(entry)
        return entry.to_dict()

    async def stop_all(self) -> dict:
        await asyncio.gather(*(self.stop_device(d) for d in list(self._engines)))
        return self.state()

    async def restart_device(self, device_id: str) -> dict:
        device = self._ready_device(device_id)
        entry = self._entry(device)
        async with entry.lock:
            await self._stop_locked(entry)
            await self._start_locked(entry)
        return entry.to_dict()

    async def restart_all(self) -> dict:
        await self.stop_all()
        return await self.start_all()

    def forget(self, device_id: str):
        """Drop bookkeeping for a device removed from the config (must already be stopped)."""
        entry = self._engines.pop(device_id, None)
        if entry is not None:
            self._cancel_restart(entry)
        self._publish_state()

    async def shutdown(self):
        self._shutting_down = True
        for entry in self._engines.values():
            self._cancel_restart(entry)
        await self.stop_all()
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        watchers = [e.watcher for e in self._engines.values() if e.watcher is not None]
        for w in watchers:
            w.cancel()
        await asyncio.gather(*watchers, return_exceptions=True)


def get_supervisor(request: Request) -> Supervisor:
    """FastAPI dependency — the supervisor created at startup."""
    return request.app.state.supervisor
