# bridge/routers/health.py
"""
System health check endpoint.
Returns supervisor state + device reachability.
"""

from datetime import datetime

import requests
from requests.auth import HTTPDigestAuth
from fastapi import APIRouter, Request

from bridge.config import settings

router = APIRouter()


@router.get("/health", summary="System health check")
def health_check(request: Request):
    """
    Returns:
    - Supervisor status (engines running / configured)
    - Device reachability (ping ISAPI deviceInfo on each device)
    """
    supervisor = request.app.state.supervisor
    state = supervisor.state()
    result = {
        "status": "ok",
        "timestamp": datetime.utcnow().isoformat(),
        "bridge": "ok",
        "engines": {"running": state["running"], "total": state["total"]},
        "devices": {},
    }

    for device in supervisor.store.load().devices:
        key = device.device_id or device.display_name
        if not device.host:
            result["devices"][key] = "not_configured"
            continue
        try:
            resp = requests.get(
                f"http://{device.host}/ISAPI/System/deviceInfo",
                auth=HTTPDigestAuth(device.username, device.password),
                timeout=settings.DEVICE_REACHABILITY_TIMEOUT,
            )
            result["devices"][key] = "ok" if resp.status_code == 200 else f"http_{resp.status_code}"
        except requests.exceptions.ConnectionError:
            result["devices"][key] = "unreachable"
            result["status"] = "degraded"
        except requests.exceptions.RequestException as e:
            result["devices"][key] = f"error: {str(e)}"

    if state["total"] and state["running"] < state["total"]:
        result["status"] = "degraded"
    return result
