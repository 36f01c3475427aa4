from fastapi import FastAPI, APIRouter, HTTPException, Query, Request
from fastapi.responses import Response
from dataclasses import dataclass
from typing import Optional
import asyncio
import logging
import os

from config import (
    APP_NAME,
    APP_VERSION,
    LOG_LEVEL,
    LISTEN_PORT,
    FOUNDRY_CONTAINER_NAME,
    REGISTRY_TAGS_URL,
    VERSION_REFRESH_SECONDS,
    LOG_RETRY_SECONDS,
    LOG_FRAME_MAX_BYTES,
    UPGRADE_POLL_INTERVAL,
    UPGRADE_MAX_POLLS,
)
from docker_manager import DockerManager
from errors import (
    NotFound,
    RuntimeOperationFailed,
    UpgradeInProgress,
    ValidationError,
)
from log_session import LiveLogSession, normalize_tail
from realtime_routes import ConnectionManager, router as realtime_router
from upgrade import UpgradeOrchestrator, UpgradePhase
from version_catalog import VersionCatalog, VersionCatalogRefresher

logger = logging.getLogger(__name__)


@dataclass
class Services:
    docker_manager: object
    connections: ConnectionManager
    log_session: LiveLogSession
    orchestrator: UpgradeOrchestrator
    catalog: VersionCatalog
    refresher: Optional[VersionCatalogRefresher]
    max_frame_bytes: Optional[int] = LOG_FRAME_MAX_BYTES


def build_services(docker_manager=None, refresher: Optional[VersionCatalogRefresher] = None) -> Services:
    """Wire the dashboard components around one Docker manager."""
    dm = docker_manager or DockerManager(FOUNDRY_CONTAINER_NAME)
    connections = ConnectionManager()
    catalog = refresher.catalog if refresher else VersionCatalog()
    if refresher is None:
        refresher = VersionCatalogRefresher(catalog, REGISTRY_TAGS_URL, VERSION_REFRESH_SECONDS)
    return Services(
        docker_manager=dm,
        connections=connections,
        log_session=LiveLogSession(dm, connections, retry_delay=LOG_RETRY_SECONDS, max_frame_bytes=LOG_FRAME_MAX_BYTES),
        orchestrator=UpgradeOrchestrator(dm, poll_interval=UPGRADE_POLL_INTERVAL, max_polls=UPGRADE_MAX_POLLS),
        catalog=catalog,
        refresher=refresher,
    )


def _services(request: Request) -> Services:
    return request.app.state.services


router = APIRouter(tags=["dashboard"])


@router.get("/status")
async def get_status(request: Request):
    services = _services(request)
    try:
        status = await asyncio.to_thread(services.docker_manager.get_status)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except RuntimeOperationFailed as e:
        raise HTTPException(status_code=503, detail=f"Docker unavailable: {e.reason}")
    status["available_versions"] = services.catalog.available_upgrades(status.get("installed_version"))
    job = services.orchestrator.current
    status["upgrade"] = job.to_dict() if job else None
    return status


@router.api_route("/restart", methods=["GET", "POST"], status_code=204)
async def restart_server(request: Request):
    services = _services(request)
    try:
        await asyncio.to_thread(services.docker_manager.restart_server)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=f"Could not find server for restart: {e}")
    except RuntimeOperationFailed as e:
        raise HTTPException(status_code=502, detail=e.reason)
    return Response(status_code=204)


@router.get("/logs")
async def get_logs(request: Request, tail: Optional[int] = Query(None, description="Number of lines; omit or negative for all")):
    """Raw multiplexed log backlog, exactly as Docker returns it"""
    services = _services(request)
    try:
        raw = await asyncio.to_thread(services.docker_manager.read_logs, normalize_tail(tail))
    except NotFound as e:
        raise HTTPException(status_code=404, detail=f"Could not find server for logs: {e}")
    except RuntimeOperationFailed as e:
        raise HTTPException(status_code=502, detail=e.reason)
    return Response(content=raw, media_type="application/octet-stream")


@router.api_route("/update", methods=["GET", "POST"])
async def update_server(request: Request, version: Optional[str] = Query(None)):
    services = _services(request)
    try:
        job = await services.orchestrator.upgrade(version)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except UpgradeInProgress as e:
        raise HTTPException(status_code=409, detail=str(e))

    if job.phase == UpgradePhase.FAILED:
        raise HTTPException(status_code=504 if job.timed_out else 502, detail=job.to_dict())
    return job.to_dict()


@router.get("/versions")
async def list_versions(request: Request):
    catalog = _services(request).catalog
    return {
        "versions": catalog.versions,
        "updated_at": catalog.updated_at.isoformat() if catalog.updated_at else None,
    }


@router.get("/health")
async def health(request: Request):
    services = _services(request)
    docker_ok = await asyncio.to_thread(services.docker_manager.ping)
    return {
        "app": APP_NAME,
        "version": APP_VERSION,
        "docker": docker_ok,
        "container": services.docker_manager.container_name,
        "log_session": services.log_session.state.value,
        "log_viewers": len(services.connections),
        "upgrade_in_progress": services.orchestrator.busy,
    }


def _configure_cors(app: FastAPI) -> None:
    from fastapi.middleware.cors import CORSMiddleware
    _origins_env = os.getenv("ALLOWED_ORIGINS", "*")
    # Strip surrounding quotes that may appear due to docker-compose quoting (e.g. "http://a,http://b")
    if (_origins_env.startswith('"') and _origins_env.endswith('"')) or (_origins_env.startswith("'") and _origins_env.endswith("'")):
        _origins_env = _origins_env[1:-1]
    if _origins_env.strip() == "*":
        app.add_middleware(
            CORSMiddleware,
            allow_origin_regex=".*",
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
            max_age=600,
        )
        logger.info("[CORS] Configured with allow_origin_regex=.*")
    else:
        allow_list = [o.strip().strip('"').strip("'") for o in _origins_env.split(",") if o.strip()]
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allow_list,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
            max_age=600,
        )
        logger.info(f"[CORS] Configured with allow_origins={allow_list}")


def create_app(services: Optional[Services] = None, start_background: bool = True) -> FastAPI:
    app = FastAPI(title=APP_NAME, version=APP_VERSION)
    _configure_cors(app)
    app.state.services = services

    # /api aliases so the dashboard works behind a prefixing proxy
    for prefix in ("", "/api"):
        app.include_router(router, prefix=prefix)
        app.include_router(realtime_router, prefix=prefix)

    @app.on_event("startup")
    async def startup_event():
        """Wire the components and start the background loops."""
        logging.basicConfig(level=getattr(logging, LOG_LEVEL, logging.INFO))
        if app.state.services is None:
            app.state.services = build_services()
        if not start_background:
            return
        current = app.state.services
        current.log_session.start()
        if current.refresher is not None:
            current.refresher.start()
        logger.info(f"{APP_NAME} managing container {current.docker_manager.container_name}")

    @app.on_event("shutdown")
    async def shutdown_event():
        """Clean up when the application shuts down."""
        current = app.state.services
        if current is None:
            return
        try:
            if current.refresher is not None:
                current.refresher.stop()
            await current.log_session.stop()
        except Exception as e:
            logger.error(f"Error during shutdown: {e}")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=LISTEN_PORT)
