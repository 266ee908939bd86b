"""
Limen Local API
Loopback-only HTTP adapter over a LimenMonitor: snapshots, anomaly queries,
detection settings and the two-phase kill / port-close protocol.
"""
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from limen import __version__
from limen.agent.engine import LimenCore, LimenMonitor
from limen.core.anomaly import AnomalyCategory, AnomalyDetectionConfig, AnomalySeverity
from limen.core.config import Config
from limen.core.errors import AccessDeniedError, LimenError, NotFoundError
from limen.core.schemas import NetProtocol
from limen.utils.logger import Logger

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%H:%M:%S"
)
logger = logging.getLogger("LimenAPI")


class KillRequest(BaseModel):
    force: bool = False


class ConfirmedKillRequest(BaseModel):
    force_quit: bool = False


class PortRequest(BaseModel):
    protocol: NetProtocol = NetProtocol.TCP
    force: bool = False


class ConfirmedCloseRequest(BaseModel):
    protocol: NetProtocol = NetProtocol.TCP
    force_quit: bool = False


class BulkCloseRequest(BaseModel):
    force_quit: bool = False


class DetectionToggle(BaseModel):
    enabled: bool


def _parse_category(value: Optional[str]) -> Optional[AnomalyCategory]:
    if value is None:
        return None
    for category in AnomalyCategory:
        if category.value.lower() == value.lower():
            return category
    raise HTTPException(status_code=400, detail=f"Unknown category: {value}")


def _parse_severity(value: Optional[str]) -> Optional[AnomalySeverity]:
    if value is None:
        return None
    try:
        return AnomalySeverity[value.upper()]
    except KeyError:
        raise HTTPException(status_code=400, detail=f"Unknown severity: {value}")


def _dump(items: List[BaseModel]) -> List[Dict[str, Any]]:
    return [item.model_dump(mode="json") for item in items]


def create_app(monitor: LimenMonitor, interval: Optional[float] = None) -> FastAPI:
    """Build the API around an existing monitor.

    Args:
        monitor: Monitor whose core serves every request
        interval: When given, the polling loop runs for the app's lifetime
    """
    core: LimenCore = monitor.core

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        if interval is not None:
            monitor.start_monitoring(interval)
        yield
        if interval is not None:
            monitor.stop_monitoring(timeout=5)
        core.shutdown()

    app = FastAPI(
        title="Limen",
        version=__version__,
        description="Local process, network and port monitor",
        lifespan=lifespan,
    )

    @app.exception_handler(LimenError)
    async def provider_error(request: Request, exc: LimenError):
        if isinstance(exc, AccessDeniedError):
            status = 403
        elif isinstance(exc, NotFoundError):
            status = 404
        else:
            status = 503
        logger.warning(f"{request.url.path} failed: {exc}")
        return JSONResponse(status_code=status, content={"detail": str(exc)})

    # --- Status / snapshot ---

    @app.get("/api/v1/status")
    def status():
        return {
            "version": __version__,
            "monitoring": monitor.is_monitoring,
            "detection_enabled": monitor.anomaly_detection_enabled,
            "last_updated": monitor.last_updated.isoformat() if monitor.last_updated else None,
            "last_error": str(monitor.last_error) if monitor.last_error else None,
        }

    @app.get("/api/v1/snapshot")
    def snapshot():
        snap = core.get_system_snapshot()
        data = snap.model_dump(mode="json")
        data["process_count"] = snap.process_count
        data["connection_count"] = snap.connection_count
        data["listening_port_count"] = snap.listening_port_count
        return data

    # --- Processes ---

    @app.get("/api/v1/processes")
    def processes(sort: str = "cpu", limit: int = 10):
        if sort == "memory":
            return _dump(core.get_top_processes_by_memory(limit))
        if sort == "cpu":
            return _dump(core.get_top_processes_by_cpu(limit))
        raise HTTPException(status_code=400, detail="sort must be 'cpu' or 'memory'")

    @app.get("/api/v1/processes/{pid}")
    def process(pid: int):
        proc = core.processes.get_process(pid)
        if proc is None:
            raise HTTPException(status_code=404, detail="Process not found")
        return proc.model_dump(mode="json")

    @app.get("/api/v1/processes/{pid}/safety")
    def process_safety(pid: int):
        level = core.get_process_safety_level(pid)
        if level is None:
            raise HTTPException(status_code=404, detail="Process not found")
        return {"pid": pid, "level": level.name.lower(), "description": level.description}

    @app.get("/api/v1/processes/{pid}/anomalies")
    def process_anomalies(pid: int):
        return _dump(monitor.get_anomalies_for_pid(pid))

    @app.post("/api/v1/processes/{pid}/validate-kill")
    def validate_kill(pid: int, req: KillRequest):
        return monitor.validate_kill(pid, force=req.force).model_dump(mode="json")

    @app.post("/api/v1/processes/{pid}/kill")
    def execute_kill(pid: int, req: ConfirmedKillRequest):
        result = monitor.execute_kill(pid, force_quit=req.force_quit)
        logger.info(f"Kill PID {pid} (force_quit={req.force_quit}): {result.status.value}")
        return result.model_dump(mode="json")

    # --- Connections ---

    @app.get("/api/v1/connections")
    def connections(process: Optional[str] = None, active: bool = False):
        if process is not None:
            return _dump(core.get_connections_for_process(process))
        if active:
            return _dump(core.get_active_connections())
        return _dump(core.network.list_connections())

    # --- Ports ---

    @app.get("/api/v1/ports")
    def ports():
        return _dump(core.ports.list_listening_ports())

    @app.get("/api/v1/ports/closable")
    def closable_ports():
        return _dump(monitor.get_closable_ports())

    @app.post("/api/v1/ports/close-all")
    def close_all(req: BulkCloseRequest):
        result = monitor.close_all_non_critical_ports(force_quit=req.force_quit)
        data = result.model_dump(mode="json")
        data["total"] = result.total
        return data

    @app.get("/api/v1/ports/{port}/owner")
    def port_owner(port: int):
        owner = core.which_process_uses_port(port)
        if owner is None:
            raise HTTPException(status_code=404, detail="Port not in use")
        pid, name = owner
        return {"port": port, "pid": pid, "process_name": name}

    @app.get("/api/v1/ports/{port}/safety")
    def port_safety_level(port: int, protocol: NetProtocol = NetProtocol.TCP):
        level = core.get_port_safety_level(port, protocol)
        if level is None:
            raise HTTPException(status_code=404, detail="Port not in use")
        return {"port": port, "protocol": protocol.value, "level": level.name.lower(),
                "description": level.description}

    @app.get("/api/v1/ports/{port}/anomalies")
    def port_anomalies(port: int):
        return _dump(monitor.get_anomalies_for_port(port))

    @app.post("/api/v1/ports/{port}/validate-close")
    def validate_close(port: int, req: PortRequest):
        return monitor.validate_close_port(port, req.protocol, force=req.force).model_dump(mode="json")

    @app.post("/api/v1/ports/{port}/close")
    def execute_close(port: int, req: ConfirmedCloseRequest):
        result = monitor.execute_close_port(port, req.protocol, force_quit=req.force_quit)
        logger.info(f"Close {port}/{req.protocol.value} (force_quit={req.force_quit}): {result.status.value}")
        return result.model_dump(mode="json")

    # --- Anomalies ---

    @app.get("/api/v1/anomalies")
    def anomalies(category: Optional[str] = None, min_severity: Optional[str] = None):
        return _dump(monitor.get_anomalies(
            category=_parse_category(category),
            minimum_severity=_parse_severity(min_severity),
        ))

    @app.get("/api/v1/anomalies/summary")
    def anomaly_summary():
        summary = core.get_anomaly_summary()
        data = summary.model_dump(mode="json")
        data["has_critical"] = summary.has_critical
        data["has_high_or_above"] = summary.has_high_or_above
        return data

    @app.get("/api/v1/anomalies/history")
    def anomaly_history():
        return _dump(monitor.get_anomaly_history())

    @app.delete("/api/v1/anomalies/history")
    def clear_history():
        monitor.clear_anomaly_history()
        return {"status": "cleared"}

    @app.post("/api/v1/anomalies/reset")
    def reset_baselines():
        monitor.reset_anomaly_baselines()
        return {"status": "reset"}

    # --- Detection settings ---

    @app.get("/api/v1/detection/config")
    def get_config():
        return monitor.get_anomaly_config().model_dump(mode="json")

    @app.put("/api/v1/detection/config")
    def update_config(config: AnomalyDetectionConfig):
        monitor.update_anomaly_config(config)
        logger.info("Detection thresholds updated.")
        return config.model_dump(mode="json")

    @app.post("/api/v1/detection/enabled")
    def toggle_detection(req: DetectionToggle):
        monitor.set_anomaly_detection(req.enabled)
        return {"enabled": monitor.anomaly_detection_enabled}

    return app


def build_app() -> FastAPI:
    """uvicorn factory: OS-backed stack configured from config.yaml / LIMEN_* env."""
    config = Config()
    Logger().configure(log_file=config.log_file, level=config.log_level)
    monitor = LimenMonitor(LimenCore.from_config(config), detection_enabled=config.detection_enabled)
    return create_app(monitor, interval=config.refresh_interval)
