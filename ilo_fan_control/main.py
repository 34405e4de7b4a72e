"""
iLO fan-control server

Features:
- Unified Redfish/SSH telemetry with last-good fallback
- Serialized fan actuation with readback verification
- Append-only history with gzip archival
- Temperature safety watchdog
- Scheduled fan actions with a persisted retry queue
"""

import asyncio
import logging
import socket
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .actuators.fan_controller import FanControlBusy, InvalidFanSpeed
from .config import load_settings, resolve_ilo_config
from .core.history_store import DEFAULT_PERIOD
from .logger_config import setup_logger
from .models import (
    AppLogEntry,
    AppLogRequest,
    FanActionResult,
    FanModeRequest,
    FanSpeedRequest,
    IloConfig,
    RetryQueueEntry,
    SafetyConfig,
    ScheduleItem,
    SessionHeartbeat,
)
from .services import AppServices

logger = logging.getLogger(__name__)

settings = load_settings()

# ============================================================================
# SERVICES
# ============================================================================

services: Optional[AppServices] = None


def get_services() -> AppServices:
    """Builds the shared services on first use"""
    global services
    if services is None:
        services = AppServices(settings)
    return services


def request_ilo_config(request: Request, svc: AppServices = Depends(get_services)) -> IloConfig:
    """Headers X-Ilo-Host/Username/Password, then config.json, then the environment"""
    return resolve_ilo_config(request.headers, svc.config_store.get_credentials(), svc.settings)


# ============================================================================
# BACKGROUND TASKS
# ============================================================================

async def monitor_loop(svc: AppServices):
    """Telemetry + history + watchdog at the adaptive cadence"""
    while True:
        started = time.monotonic()
        config = svc.ilo_config()
        if config.is_complete():
            try:
                await asyncio.to_thread(svc.monitor.poll, config)
            except Exception as e:
                logger.error(f"✗ Monitor poll failed: {e}")

        # Re-evaluated every second so a new session shortens a long wait
        while time.monotonic() - started < svc.cadence.interval():
            await asyncio.sleep(1)


async def schedule_loop(svc: AppServices):
    while True:
        config = svc.ilo_config()
        if config.is_complete():
            try:
                await asyncio.to_thread(svc.scheduler.tick, config)
            except Exception as e:
                logger.error(f"✗ Schedule tick failed: {e}")
        await asyncio.sleep(svc.settings.schedule.tick_s)


async def retry_loop(svc: AppServices):
    while True:
        await asyncio.sleep(svc.settings.schedule.retry_tick_s)
        config = svc.ilo_config()
        if not config.is_complete() or not svc.retry_queue.entries():
            continue
        try:
            await asyncio.to_thread(svc.scheduler.process_retries, config)
        except Exception as e:
            logger.error(f"✗ Retry queue processing failed: {e}")


async def apply_startup_speed(svc: AppServices):
    """Pins the fans to a quiet default shortly after boot"""
    percent = svc.settings.fan_control.startup_fan_percent
    if percent is None:
        return
    await asyncio.sleep(svc.settings.fan_control.startup_delay_s)
    config = svc.ilo_config()
    if not config.is_complete():
        logger.info("No iLO credentials configured, skipping startup fan speed")
        return
    try:
        result = await asyncio.to_thread(svc.fan_controller.set_speed, percent, config)
        svc.events.append(
            f"Startup fan speed {percent}%: {'applied' if result.accepted else result.error}",
            "info" if result.accepted else "error",
        )
    except Exception as e:
        logger.error(f"✗ Startup fan speed failed: {e}")


# ============================================================================
# FASTAPI APPLICATION
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle"""
    setup_logger(level=settings.server.log_level)
    svc = get_services()

    logger.info("=" * 60)
    logger.info("🚀 Starting iLO fan-control server")
    logger.info("=" * 60)

    tasks = []
    if svc.settings.server.background_tasks:
        tasks = [
            asyncio.create_task(monitor_loop(svc)),
            asyncio.create_task(schedule_loop(svc)),
            asyncio.create_task(retry_loop(svc)),
            asyncio.create_task(apply_startup_speed(svc)),
        ]
        logger.info(f"✓ {len(tasks)} background tasks started")

    yield

    logger.info("⏹️  Stopping server...")
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


app = FastAPI(
    title="iLO Fan Control",
    description="Telemetry, history and fan control for HPE iLO management controllers",
    version=__version__,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

router = APIRouter(prefix="/api")


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}


# ============================================================================
# TELEMETRY
# ============================================================================

@router.get("/sensors")
def get_sensors(config: IloConfig = Depends(request_ilo_config), svc: AppServices = Depends(get_services)):
    """
    Unified sensor snapshot

    Never fails: falls back to SSH, then the cached reading. Every fresh
    or cached snapshot is also appended to the history.
    """
    snapshot = svc.reader.read(config)
    if snapshot.source != "empty":
        svc.history.append(snapshot)
    return snapshot


@router.get("/fans")
def get_fans(config: IloConfig = Depends(request_ilo_config), svc: AppServices = Depends(get_services)):
    return svc.reader.read(config).fans


@router.get("/temperature")
def get_temperature(config: IloConfig = Depends(request_ilo_config), svc: AppServices = Depends(get_services)):
    return svc.reader.read(config).temps


@router.get("/redfish/thermal")
def get_redfish_thermal(config: IloConfig = Depends(request_ilo_config), svc: AppServices = Depends(get_services)):
    """Structured path only, no fallback"""
    try:
        return svc.reader.read_structured(config)
    except Exception as e:
        logger.warning(f"⚠ Redfish thermal read failed: {e}")
        raise HTTPException(status_code=502, detail=f"Failed to read Redfish thermal: {e}")


@router.get("/system/info")
def get_system_info(config: IloConfig = Depends(request_ilo_config), svc: AppServices = Depends(get_services)):
    return svc.reader.read_system_info(config)


# ============================================================================
# HISTORY
# ============================================================================

@router.get("/history")
def get_history(period: str = DEFAULT_PERIOD, svc: AppServices = Depends(get_services)):
    """Records for 1h, 24h, 7d, 1m, 1y or 5y (unknown periods mean 1h)"""
    return svc.history.query(period)


@router.get("/history/size")
def get_history_size(svc: AppServices = Depends(get_services)):
    return svc.history.size()


@router.post("/history/clear")
def clear_history(svc: AppServices = Depends(get_services)):
    if not svc.history.clear():
        raise HTTPException(status_code=500, detail="Failed to clear history")
    svc.reader.reset_cache()
    svc.events.append("History cleared", "info")
    return {"success": True}


# ============================================================================
# FAN CONTROL
# ============================================================================

def _fan_response(result: FanActionResult):
    """Hard failures carry the readback with a 409"""
    if not result.accepted:
        return JSONResponse(status_code=409, content=result.model_dump())
    return result


@router.post("/fan")
def set_fan_speed(
    request: FanSpeedRequest,
    config: IloConfig = Depends(request_ilo_config),
    svc: AppServices = Depends(get_services),
):
    """
    Pins all fans to one duty cycle

    - 200: accepted (check uncontrolled_fan_names for fans that did not follow)
    - 409: the controller rejected the commands
    - 429: another fan operation is in progress
    """
    try:
        result = svc.fan_controller.set_speed(request.speed, config)
    except FanControlBusy as e:
        raise HTTPException(status_code=429, detail=str(e))
    except InvalidFanSpeed as e:
        raise HTTPException(status_code=400, detail=str(e))

    svc.events.append(
        f"Fan speed {request.speed}%: {'applied' if result.accepted else result.error}",
        "info" if result.accepted else "error",
    )
    return _fan_response(result)


@router.post("/fan/auto")
def set_fan_auto(config: IloConfig = Depends(request_ilo_config), svc: AppServices = Depends(get_services)):
    """Hands fan control back to the iLO"""
    try:
        result = svc.fan_controller.set_auto(config)
    except FanControlBusy as e:
        raise HTTPException(status_code=429, detail=str(e))

    svc.events.append(
        f"Automatic fan control: {'restored' if result.accepted else result.error}",
        "info" if result.accepted else "error",
    )
    return _fan_response(result)


@router.get("/fan/mode")
async def get_fan_mode(svc: AppServices = Depends(get_services)):
    return {"mode": svc.config_store.get_fan_mode()}


@router.post("/fan/mode")
async def set_fan_mode(request: FanModeRequest, svc: AppServices = Depends(get_services)):
    """Records the advisory mode, nothing is sent to the controller"""
    mode = request.mode.strip().lower()
    if mode not in ("auto", "manual"):
        raise HTTPException(status_code=400, detail="Invalid mode, expected 'auto' or 'manual'")
    svc.config_store.set_fan_mode(mode)
    return {"success": True, "mode": mode}


@router.post("/fan/manual")
async def set_fan_manual(svc: AppServices = Depends(get_services)):
    svc.config_store.set_fan_mode("manual")
    return {"success": True, "mode": "manual"}


@router.get("/fan/cooldown")
async def get_fan_cooldown(svc: AppServices = Depends(get_services)):
    return svc.fan_controller.cooldown()


@router.post("/fan/{index}")
def set_fan_index_speed(
    index: str,
    request: FanSpeedRequest,
    config: IloConfig = Depends(request_ilo_config),
    svc: AppServices = Depends(get_services),
):
    try:
        result = svc.fan_controller.set_speed_for_index(int(index), request.speed, config)
    except InvalidFanSpeed as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Invalid index: {e}")
    except FanControlBusy as e:
        raise HTTPException(status_code=429, detail=str(e))
    return _fan_response(result)


# ============================================================================
# SAFETY, SCHEDULES, SESSIONS
# ============================================================================

@router.get("/safety")
async def get_safety(svc: AppServices = Depends(get_services)):
    return svc.safety_store.get()


@router.post("/safety")
async def set_safety(safety: SafetyConfig, svc: AppServices = Depends(get_services)):
    if not svc.safety_store.save(safety):
        raise HTTPException(status_code=500, detail="Failed to save safety settings")
    svc.events.append(
        f"Safety threshold {safety.threshold_celsius:.1f}°C -> {safety.response_speed_percent}%", "info"
    )
    return safety


@router.get("/schedules")
async def get_schedules(svc: AppServices = Depends(get_services)):
    return svc.schedule_store.load()


@router.put("/schedules")
async def set_schedules(items: List[ScheduleItem], svc: AppServices = Depends(get_services)):
    ids = [item.id for item in items]
    if len(ids) != len(set(ids)):
        raise HTTPException(status_code=400, detail="Schedule ids must be unique")
    if not svc.schedule_store.save(items):
        raise HTTPException(status_code=500, detail="Failed to save schedules")
    return {"success": True, "count": len(items)}


@router.get("/retry-queue", response_model=List[RetryQueueEntry])
async def get_retry_queue(svc: AppServices = Depends(get_services)):
    return svc.retry_queue.entries()


@router.post("/session/heartbeat")
async def session_heartbeat(heartbeat: SessionHeartbeat, svc: AppServices = Depends(get_services)):
    """Dashboard presence; drives the polling interval"""
    svc.sessions.heartbeat(heartbeat.active)
    return {"state": svc.sessions.state(), "interval_s": svc.cadence.interval()}


# ============================================================================
# CONFIGURATION AND OPERATOR LOG
# ============================================================================

@router.get("/config")
async def get_config(svc: AppServices = Depends(get_services)):
    return svc.ilo_config()


@router.post("/config")
async def set_config(config: IloConfig, svc: AppServices = Depends(get_services)):
    config = IloConfig(
        host=config.host.strip(),
        username=config.username.strip(),
        password=config.password.strip(),
    )
    if not config.is_complete():
        raise HTTPException(status_code=400, detail="host, username and password are required")
    if not svc.config_store.save_credentials(config):
        raise HTTPException(status_code=500, detail="Failed to save config")
    svc.reader.reset_cache()
    logger.info(f"✓ iLO credentials updated for {config.host}")
    return {"success": True}


@router.get("/app-log", response_model=List[AppLogEntry])
async def get_app_log(svc: AppServices = Depends(get_services)):
    return svc.events.recent()


@router.post("/app-log")
async def append_app_log(entry: AppLogRequest, svc: AppServices = Depends(get_services)):
    if not svc.events.append(entry.message, entry.type or "info"):
        raise HTTPException(status_code=500, detail="Failed to write app log")
    return {"success": True}


BACKUP_VERSION = 1


def _backup_documents(svc: AppServices):
    return {
        "config.json": svc.config_store.document,
        "schedules.json": svc.schedule_store.document,
        "safety.json": svc.safety_store.document,
    }


@router.get("/backup")
async def get_backup(svc: AppServices = Depends(get_services)):
    """JSON bundle with config, schedules and safety settings"""
    bundle = {
        "version": BACKUP_VERSION,
        "created_at": datetime.now(timezone.utc).isoformat(),
        "files": {name: doc.load(None) for name, doc in _backup_documents(svc).items()},
    }
    filename = f"ilo-backup-{int(time.time())}.json"
    return JSONResponse(content=bundle, headers={"Content-Disposition": f'attachment; filename="{filename}"'})


@router.post("/restore")
async def restore_backup(bundle: dict = Body(...), svc: AppServices = Depends(get_services)):
    files = bundle.get("files")
    if not isinstance(files, dict):
        raise HTTPException(status_code=400, detail="Invalid backup bundle")

    restored = []
    for name, doc in _backup_documents(svc).items():
        if files.get(name) is None:
            continue
        if not doc.save(files[name]):
            raise HTTPException(status_code=500, detail=f"Failed to restore {name}")
        restored.append(name)

    svc.reader.reset_cache()
    svc.events.append(f"Backup restored: {', '.join(restored) or 'nothing'}", "info")
    return {"success": True, "restored": restored}


app.include_router(router)

# ============================================================================
# SERVER STARTUP
# ============================================================================

def find_free_port(host: str, start_port: int, max_tries: int = 50) -> int:
    """Returns the first port from `start_port` that can be bound"""
    port = start_port
    for _ in range(max_tries):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            try:
                s.bind((host, port))
                return port
            except OSError:
                port += 1

    raise OSError(f"No free port in range {start_port}-{port}")


def main():
    import uvicorn

    setup_logger(level=settings.server.log_level)
    host = settings.server.host
    configured_port = settings.server.port

    try:
        port = find_free_port(host, configured_port, max_tries=100)
        if port != configured_port:
            logger.warning(f"⚠ Port {configured_port} is busy, using {port} instead")

        uvicorn.run(
            app,
            host=host,
            port=port,
            log_level=settings.server.log_level.lower()
        )

    except OSError as e:
        logger.error(f"✗ Could not start server: {e}")


if __name__ == "__main__":
    main()
