# bridge/main.py
"""
FastAPI control API — the surface the settings UI / tray shell talks to.
Includes security middleware, error handlers, all routers, and owns the
supervisor lifecycle (engines start with the API and stop with it).
"""

import time

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from bridge.config import settings
from bridge.exceptions import ConfigError, NoReadyDevicesError, RegistryError, UnknownDeviceError
from bridge.routers import config, devices, health, logs
from bridge.services.config_store import ConfigStore
from bridge.services.device_registry import DeviceRegistry
from bridge.services.event_hub import EventHub
from bridge.services.supervisor import Supervisor
from bridge.utils.logger import get_logger

logger = get_logger(__name__)

app = FastAPI(
    title="Access Bridge Control API",
    description="Edge bridge for access-control devices — engine supervision, enrollment, logs.",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

# ── CORS (the settings UI is served from a local origin) ───────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── API Key Middleware ───────────────────────────────────────────────────────
class APIKeyMiddleware(BaseHTTPMiddleware):
    """
    Optional lightweight API key auth for control endpoints.
    Set API_KEY in .env. Leave empty to disable auth.
    """
    async def dispatch(self, request: Request, call_next):
        open_paths = {"/api/v1/health", "/docs", "/redoc", "/openapi.json"}
        if request.url.path in open_paths or not settings.API_KEY:
            return await call_next(request)

        api_key = request.headers.get("X-API-Key") or request.query_params.get("api_key")
        if api_key != settings.API_KEY:
            return JSONResponse(
                status_code=status.HTTP_401_UNAUTHORIZED,
                content={"detail": "Invalid or missing API key"},
            )
        return await call_next(request)


if settings.API_KEY:
    app.add_middleware(APIKeyMiddleware)


# ── Request Timing Middleware ────────────────────────────────────────────────
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    duration = round((time.time() - start) * 1000, 2)
    logger.debug(f"{request.method} {request.url.path} → {response.status_code} ({duration}ms)")
    return response


# ── Exception Handlers ───────────────────────────────────────────────────────
@app.exception_handler(NoReadyDevicesError)
async def no_ready_devices_handler(request: Request, exc: NoReadyDevicesError):
    logger.error(f"❌ {exc}")
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})


@app.exception_handler(ConfigError)
async def config_error_handler(request: Request, exc: ConfigError):
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})


@app.exception_handler(UnknownDeviceError)
async def unknown_device_handler(request: Request, exc: UnknownDeviceError):
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


@app.exception_handler(RegistryError)
async def registry_error_handler(request: Request, exc: RegistryError):
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


# ── Routers ──────────────────────────────────────────────────────────────────
app.include_router(devices.router, prefix="/api/v1", tags=["🔌 Devices"])
app.include_router(config.router,  prefix="/api/v1", tags=["⚙️  Config"])
app.include_router(logs.router,    prefix="/api/v1", tags=["📜 Logs"])
app.include_router(health.router,  prefix="/api/v1", tags=["💚 Health"])


# ── Startup ───────────────────────────────────────────────────────────────────
@app.on_event("startup")
async def startup():
    logger.info("🚀 Access Bridge starting up...")
    store = ConfigStore(settings.config_path)
    cfg = store.ensure()
    hub = EventHub()
    supervisor = Supervisor(store, hub)
    app.state.store = store
    app.state.hub = hub
    app.state.supervisor = supervisor
    app.state.registry = DeviceRegistry(store, supervisor)
    logger.info(f"⚙️  Config: {store.path} ({len(cfg.devices)} device(s))")
    logger.info(f"🌐 Listening on http://{settings.CONTROL_HOST}:{settings.CONTROL_PORT}")

    try:
        await supervisor.start_all()
    except NoReadyDevicesError as e:
        logger.error(f"❌ {e} — open the settings and complete at least one device")


@app.on_event("shutdown")
async def shutdown():
    logger.info("🛑 Access Bridge shutting down...")
    supervisor = getattr(app.state, "supervisor", None)
    if supervisor is not None:
        await supervisor.shutdown()


def run():
    """Console entry point: serve the control API (and with it, every engine)."""
    uvicorn.run(app, host=settings.CONTROL_HOST, port=settings.CONTROL_PORT, log_level=settings.LOG_LEVEL.lower())


if __name__ == "__main__":
    run()
