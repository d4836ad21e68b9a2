# bridge/worker.py
"""
Engine process entry point — one process per device.

    python -m bridge.worker --device-id <id> --config <path/to/config.json>

Started by the supervisor. Logs go to stdout; the supervisor captures them.
Exit codes: 0 on a requested stop, 2 when the device cannot run.
"""

import argparse
import asyncio
import signal
import sys

from bridge.schemas.bridge_config import EngineConfig
from bridge.services.config_store import ConfigStore
from bridge.services.engine import DeviceEngine
from bridge.utils.logger import get_logger

logger = get_logger("bridge.worker")

EXIT_CONFIG = 2


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the bridge engine for one device")
    parser.add_argument("--device-id", required=True, help="device_id from config.json")
    parser.add_argument("--config", required=True, help="path to config.json")
    return parser.parse_args(argv)


def build_engine_config(config_path: str, device_id: str) -> EngineConfig:
    store = ConfigStore(config_path)
    cfg = store.load()
    device = cfg.find_device(device_id)
    if device is None:
        raise LookupError(f"device {device_id} not found in {config_path}")
    missing = device.missing_fields()
    if missing:
        raise LookupError(f"device {device_id} is missing {', '.join(missing)}")
    if not cfg.ingest_url:
        raise LookupError("ingest_url is not configured")
    return EngineConfig.build(cfg, device, store.devices_dir)


async def run_engine(config: EngineConfig):
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # Windows: terminate() ends the process outright
            pass
    await DeviceEngine(config).run(stop_event)


def main(argv=None) -> int:
    args = parse_args(argv)
    try:
        config = build_engine_config(args.config, args.device_id)
    except LookupError as e:
        logger.error(f"Cannot start engine: {e}")
        return EXIT_CONFIG
    try:
        asyncio.run(run_engine(config))
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
