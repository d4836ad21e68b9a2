# bridge/routers/config.py
"""
Persisted configuration, as edited by the settings UI.
Saving does not restart engines; use the restart endpoints for that.
"""

from fastapi import APIRouter, Depends, Request

from bridge.schemas.bridge_config import BridgeConfig
from bridge.services.config_store import ConfigStore
from bridge.utils.logger import get_logger

router = APIRouter()
logger = get_logger(__name__)


def get_store(request: Request) -> ConfigStore:
    return request.app.state.store


@router.get("/config", response_model=BridgeConfig, summary="Current bridge configuration")
def read_config(store: ConfigStore = Depends(get_store)):
    return store.load()


@router.put("/config", response_model=BridgeConfig, summary="Replace bridge configuration")
def write_config(cfg: BridgeConfig, store: ConfigStore = Depends(get_store)):
    store.save(cfg)
    logger.info(f"[CONFIG] Saved {len(cfg.devices)} device(s) to {store.path}")
    return cfg
