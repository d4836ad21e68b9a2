# bridge/services/config_store.py
"""
Persisted bridge configuration (<home>/config.json).

The file is hand-editable: comments, a BOM and trailing commas are tolerated
on read. A file that cannot be parsed or validated is copied aside as
config.broken.<timestamp>.json and defaults are used, so a typo never stops
the supervisor from starting. Writes are atomic (temp file + rename).
"""

import json
import os
import shutil
from datetime import datetime
from typing import Optional

from pydantic import ValidationError

from bridge.exceptions import UnknownDeviceError
from bridge.schemas.bridge_config import BridgeConfig, DeviceConfig
from bridge.utils.json_parser import parse_jsonc
from bridge.utils.logger import get_logger

logger = get_logger(__name__)


def devices_dir_for(config_path: str) -> str:
    """Per-device state lives next to the config file."""
    return os.path.join(os.path.dirname(os.path.abspath(config_path)), "devices")


class ConfigStore:
    def __init__(self, path: str):
        self.path = path
        self._broken: Optional[tuple] = None     # (signature, backup path) of the last broken file seen

    @property
    def devices_dir(self) -> str:
        return devices_dir_for(self.path)

    def exists(self) -> bool:
        return os.path.exists(self.path)

    def load(self) -> BridgeConfig:
        if not self.exists():
            return BridgeConfig()
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = parse_jsonc(f.read())
            if not isinstance(data, dict):
                raise ValueError("top level is not an object")
            return BridgeConfig.model_validate(data)
        except (ValueError, ValidationError, UnicodeDecodeError) as e:
            signature = self._signature()
            if self._broken is not None and self._broken[0] == signature:
                logger.debug(f"[CONFIG] Config {self.path} still unreadable, using defaults")
                return BridgeConfig()
            backup = self._backup_broken()
            self._broken = (signature, backup)
            logger.error(f"[CONFIG] Unreadable config {self.path}: {e} — using defaults (copy kept at {backup})")
            return BridgeConfig()

    def _signature(self) -> Optional[tuple]:
        try:
            st = os.stat(self.path)
        except OSError:
            return None
        return st.st_mtime_ns, st.st_size

    def _backup_broken(self) -> Optional[str]:
        stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        backup = os.path.join(os.path.dirname(os.path.abspath(self.path)), f"config.broken.{stamp}.json")
        try:
            shutil.copyfile(self.path, backup)
        except OSError as e:
            logger.warning(f"[CONFIG] Could not back up broken config: {e}")
            return None
        return backup

    def save(self, cfg: BridgeConfig) -> BridgeConfig:
        os.makedirs(os.path.dirname(os.path.abspath(self.path)), exist_ok=True)
        tmp = self.path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(cfg.model_dump(mode="json"), f, indent=2, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, self.path)
        return cfg

    def ensure(self) -> BridgeConfig:
        """Load, normalizing legacy layouts on disk. Creates the file with defaults when missing."""
        cfg = self.load()
        self.save(cfg)
        return cfg

    def get_device(self, device_id: str) -> DeviceConfig:
        device = self.load().find_device(device_id)
        if device is None:
            raise UnknownDeviceError(device_id)
        return device

    def update_device(self, device_id: str, **fields) -> DeviceConfig:
        """Patch one device entry in place and persist."""
        cfg = self.load()
        for i, device in enumerate(cfg.devices):
            if device.device_id == device_id:
                updated = DeviceConfig.model_validate({**device.model_dump(), **fields})
                cfg.devices[i] = updated
                self.save(cfg)
                return updated
        raise UnknownDeviceError(device_id)

    def put_device(self, device: DeviceConfig, index: Optional[int] = None) -> DeviceConfig:
        """Replace the entry at `index` (when valid) or append."""
        cfg = self.load()
        if index is not None and 0 <= index < len(cfg.devices):
            cfg.devices[index] = device
        else:
            cfg.devices.append(device)
        self.save(cfg)
        return device

    def remove_device(self, device_id: str) -> bool:
        cfg = self.load()
        kept = [d for d in cfg.devices if d.device_id != device_id]
        if len(kept) == len(cfg.devices):
            return False
        cfg.devices = kept
        self.save(cfg)
        return True
