# bridge/config.py
"""
Process-level configuration using Pydantic-Settings.
All settings can be overridden via environment variables or .env file.

Per-device and timing configuration lives in the persisted config file
(see services/config_store.py), not here.
"""

import os
from typing import Optional

from pydantic_settings import BaseSettings


def _default_home() -> str:
    base = os.environ.get("ProgramData") or os.path.expanduser("~")
    return os.path.join(base, "AccessBridge")


class Settings(BaseSettings):
    # ── Paths ─────────────────────────────────────────────────────────────
    BRIDGE_HOME: str = _default_home()
    CONFIG_PATH: Optional[str] = None   # defaults to <BRIDGE_HOME>/config.json

    # ── Control API ───────────────────────────────────────────────────────
    CONTROL_HOST: str = "127.0.0.1"
    CONTROL_PORT: int = 8765
    API_KEY: Optional[str] = None   # Set in .env to enable auth on control endpoints

    # ── Supervisor ────────────────────────────────────────────────────────
    RESTART_DELAY_SECONDS: float = 3.0    # fixed delay before restarting a crashed engine
    STOP_TIMEOUT_SECONDS: float = 5.0     # grace period before an engine is killed
    DEVICE_REACHABILITY_TIMEOUT: float = 3.0     # /health reachability check

    # ── Logging ───────────────────────────────────────────────────────────
    LOG_LEVEL: str = "INFO"
    LOG_TO_FILE: bool = True    # engine processes run with this off; the supervisor owns the file

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def config_path(self) -> str:
        return self.CONFIG_PATH or os.path.join(self.BRIDGE_HOME, "config.json")

    @property
    def home_dir(self) -> str:
        if self.CONFIG_PATH:
            return os.path.dirname(os.path.abspath(self.CONFIG_PATH))
        return self.BRIDGE_HOME

    @property
    def devices_dir(self) -> str:
        return os.path.join(self.home_dir, "devices")

    @property
    def log_dir(self) -> str:
        return os.path.join(self.home_dir, "logs")


settings = Settings()
