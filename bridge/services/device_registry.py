# bridge/services/device_registry.py
"""
Device registry operations: enrollment, remote deletion and identity refresh.

These run in the supervisor process, independently of whether the device's
engine is running, and restart (or, for delete, stop) that engine on success.
"""

from typing import Callable, Optional

from bridge.exceptions import ConfigError, DeviceRequestError, RegistryError, UnknownDeviceError
from bridge.schemas.bridge_config import BridgeConfig, DeviceConfig
from bridge.services.config_store import ConfigStore
from bridge.services.device_client import DeviceClient
from bridge.services.ingest_client import IngestClient
from bridge.services.supervisor import Supervisor
from bridge.utils.json_parser import get_nested
from bridge.utils.logger import get_logger

logger = get_logger(__name__)

IngestFactory = Callable[[BridgeConfig, Optional[DeviceConfig]], IngestClient]
DeviceFactory = Callable[[DeviceConfig], DeviceClient]


def default_ingest_factory(cfg: BridgeConfig, device: Optional[DeviceConfig]) -> IngestClient:
    return IngestClient(
        cfg.ingest_url, cfg.ingest_api_key,
        device_id=device.device_id if device else "",
        device_key=device.device_key if device else "",
    )


def default_device_factory(device: DeviceConfig) -> DeviceClient:
    return DeviceClient(device.host, device.username, device.password)


def _enrolled_credentials(data: Optional[dict]) -> tuple[str, str]:
    """Accepts both flat and nested {device: {...}} enrollment answers."""
    data = data or {}
    device_id = data.get("device_id") or get_nested(data, "device", "id") or get_nested(data, "device", "device_id")
    device_key = data.get("device_key") or get_nested(data, "device", "device_key")
    return str(device_id or "").strip(), str(device_key or "").strip()


class DeviceRegistry:
    def __init__(self, store: ConfigStore, supervisor: Supervisor,
                 ingest_factory: IngestFactory = default_ingest_factory,
                 device_factory: DeviceFactory = default_device_factory):
        self.store = store
        self.supervisor = supervisor
        self._ingest_factory = ingest_factory
        self._device_factory = device_factory

    def _require_remote(self, cfg: BridgeConfig):
        if not cfg.ingest_url:
            raise RegistryError("ingest_url is not configured", status_code=400)

    async def enroll(self, enroll_token: str, host: str = "", label: str = "",
                     username: str = "", password: str = "", index: Optional[int] = None) -> DeviceConfig:
        """
        Exchange a one-time activation token for device credentials.
        Fields not given are taken from the entry at `index` (when it exists).
        The token is cleared from the config once the exchange succeeds.
        """
        cfg = self.store.load()
        self._require_remote(cfg)
        existing = cfg.devices[index] if index is not None and 0 <= index < len(cfg.devices) else None
        base = existing.model_dump() if existing else {}
        token = (enroll_token or base.get("enroll_token") or "").strip()
        if not token:
            raise RegistryError("enroll_token is required", status_code=400)
        host = host or base.get("host", "")
        label = label or base.get("label", "")

        client = self._ingest_factory(cfg, None)
        try:
            res = await client.enroll_device(token, cfg.bridge_id, host, label)
        finally:
            await client.aclose()
        if not res.ok:
            logger.error(f"[REGISTRY] Enrollment failed: {res.error}")
            raise RegistryError(f"enrollment failed: {res.error}")
        device_id, device_key = _enrolled_credentials(res.data)
        if not device_id or not device_key:
            raise RegistryError("enrollment answer did not include device credentials")

        device = DeviceConfig.model_validate({
            **base,
            "label": label,
            "host": host,
            "username": username or base.get("username") or "admin",
            "password": password or base.get("password", ""),
            "device_id": device_id,
            "device_key": device_key,
            "enroll_token": "",
        })
        old_id = existing.device_id if existing else ""
        if old_id and old_id != device_id:
            # The engine running under the previous identity must not outlive it
            await self.supervisor.stop_device(old_id)
        self.store.put_device(device, index if existing else None)
        if old_id and old_id != device_id:
            self.supervisor.forget(old_id)
            logger.info(f"[REGISTRY] Engine for previous id {old_id} stopped")
        logger.info(f"✅ Enrolled {device.display_name} as {device_id}")
        await self._restart_if_ready(device)
        return device

    async def refresh_identity(self, device_id: str) -> dict:
        """Read identity + clock settings from the device, persist them, push them upstream."""
        cfg = self.store.load()
        device = cfg.find_device(device_id)
        if device is None:
            raise UnknownDeviceError(device_id)
        if not device.host:
            raise RegistryError("device host is not configured", status_code=400)

        dev_client = self._device_factory(device)
        try:
            info = await dev_client.get_device_info()
            try:
                clock = await dev_client.get_time_info()
            except DeviceRequestError as e:
                logger.warning(f"[REGISTRY] Clock settings unavailable for {device.display_name}: {e}")
                clock = {}
        except DeviceRequestError as e:
            raise RegistryError(str(e)) from e
        finally:
            await dev_client.aclose()

        fields = {
            "model": info.get("model") or device.model,
            "serial": info.get("serial") or device.serial,
            "mac": info.get("mac") or device.mac,
            "time_zone": clock.get("time_zone") or device.time_zone,
            "time_mode": clock.get("time_mode") or device.time_mode,
            "local_time": clock.get("local_time") or device.local_time,
        }
        updated = self.store.update_device(device_id, **fields)

        pushed = False
        if cfg.ingest_url and updated.device_key:
            client = self._ingest_factory(cfg, updated)
            try:
                res = await client.push_device_info({**fields, "firmware": info.get("firmware"), "ip": updated.host})
            finally:
                await client.aclose()
            pushed = res.ok
            if not res.ok:
                logger.warning(f"[REGISTRY] Identity push failed for {updated.display_name}: {res.error}")
        logger.info(f"🔎 Identity refreshed for {updated.display_name}: model={updated.model} serial={updated.serial}")
        await self._restart_if_ready(updated)
        return {"device": updated.model_dump(), "firmware": info.get("firmware"), "pushed": pushed}

    async def delete(self, device_id: str, local_only: bool = False) -> dict:
        """Remove a device remotely (unless local_only) and from the local config."""
        cfg = self.store.load()
        device = cfg.find_device(device_id)
        if device is None:
            raise UnknownDeviceError(device_id)

        if not local_only:
            self._require_remote(cfg)
            if not device.device_id or not device.device_key:
                raise RegistryError("remote delete needs device_id and device_key", status_code=400)
            client = self._ingest_factory(cfg, device)
            try:
                res = await client.delete_device()
            finally:
                await client.aclose()
            if not res.ok:
                logger.error(f"[REGISTRY] Remote delete failed for {device.display_name}: {res.error}")
                raise RegistryError(f"remote delete failed: {res.error}")

        await self.supervisor.stop_device(device_id)
        self.store.remove_device(device_id)
        self.supervisor.forget(device_id)
        logger.info(f"🗑  Device {device.display_name} removed{' (local only)' if local_only else ''}")
        return {"device_id": device_id, "deleted": True, "local_only": local_only}

    async def _restart_if_ready(self, device: DeviceConfig):
        if not device.is_ready:
            return
        try:
            await self.supervisor.restart_device(device.device_id)
        except (UnknownDeviceError, ConfigError) as e:
            logger.warning(f"[REGISTRY] Engine restart skipped for {device.display_name}: {e}")
