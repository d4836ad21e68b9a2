# bridge/routers/devices.py
"""
Engine control and device registry endpoints.

POST /devices/start|stop|restart       — all configured devices
POST /devices/{id}/start|stop|restart  — one device
POST /devices/enroll                   — activation token → device credentials
POST /devices/{id}/refresh-info        — read identity from the device
DELETE /devices/{id}                   — remote + local removal
GET  /devices/{id}/deliveries          — local delivery journal
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request

from bridge.schemas.control import DeliveryOut, EngineStateOut, EnrollRequest, SupervisorStateOut
from bridge.schemas.bridge_config import EngineConfig
from bridge.services.config_store import ConfigStore
from bridge.services.delivery_journal import read_recent_deliveries
from bridge.services.device_registry import DeviceRegistry
from bridge.services.supervisor import Supervisor, get_supervisor
from bridge.routers.config import get_store
from bridge.exceptions import UnknownDeviceError

router = APIRouter()


def get_registry(request: Request) -> DeviceRegistry:
    return request.app.state.registry


@router.get("/state", response_model=SupervisorStateOut, summary="Supervisor state")
def read_state(supervisor: Supervisor = Depends(get_supervisor)):
    return supervisor.state()


@router.get("/devices", response_model=list[EngineStateOut], summary="Configured devices and engine states")
def list_devices(supervisor: Supervisor = Depends(get_supervisor)):
    return supervisor.state()["devices"]


@router.post("/devices/start", response_model=SupervisorStateOut, summary="Start every ready device")
async def start_all(supervisor: Supervisor = Depends(get_supervisor)):
    return await supervisor.start_all()


@router.post("/devices/stop", response_model=SupervisorStateOut, summary="Stop every engine")
async def stop_all(supervisor: Supervisor = Depends(get_supervisor)):
    return await supervisor.stop_all()


@router.post("/devices/restart", response_model=SupervisorStateOut, summary="Restart every engine")
async def restart_all(supervisor: Supervisor = Depends(get_supervisor)):
    return await supervisor.restart_all()


@router.post("/devices/enroll", summary="Enroll a device with an activation token")
async def enroll_device(body: EnrollRequest, registry: DeviceRegistry = Depends(get_registry)):
    device = await registry.enroll(
        body.enroll_token, host=body.host, label=body.label,
        username=body.username, password=body.password, index=body.index,
    )
    return {"ok": True, "device": device.model_dump(exclude={"password"})}


@router.post("/devices/{device_id}/start", response_model=EngineStateOut)
async def start_device(device_id: str, supervisor: Supervisor = Depends(get_supervisor)):
    return await supervisor.start_device(device_id)


@router.post("/devices/{device_id}/stop", response_model=EngineStateOut)
async def stop_device(device_id: str, supervisor: Supervisor = Depends(get_supervisor)):
    return await supervisor.stop_device(device_id)


@router.post("/devices/{device_id}/restart", response_model=EngineStateOut)
async def restart_device(device_id: str, supervisor: Supervisor = Depends(get_supervisor)):
    return await supervisor.restart_device(device_id)


@router.post("/devices/{device_id}/refresh-info", summary="Read model/serial/MAC/clock from the device")
async def refresh_device_info(device_id: str, registry: DeviceRegistry = Depends(get_registry)):
    result = await registry.refresh_identity(device_id)
    result["device"].pop("password", None)
    return {"ok": True, **result}


@router.delete("/devices/{device_id}", summary="Delete a device (remote + local)")
async def delete_device(device_id: str, local_only: bool = False,
                        registry: DeviceRegistry = Depends(get_registry)):
    return {"ok": True, **(await registry.delete(device_id, local_only=local_only))}


@router.get("/devices/{device_id}/deliveries", response_model=list[DeliveryOut],
            summary="Recently delivered / skipped events for one device")
def list_deliveries(device_id: str, limit: int = 50, outcome: Optional[str] = None,
                    store: ConfigStore = Depends(get_store)):
    cfg = store.load()
    device = cfg.find_device(device_id)
    if device is None:
        raise UnknownDeviceError(device_id)
    engine_cfg = EngineConfig.build(cfg, device, store.devices_dir)
    return read_recent_deliveries(engine_cfg.journal_path, device_id, limit=limit, outcome=outcome)
