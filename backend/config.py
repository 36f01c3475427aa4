import os
from pathlib import Path


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


APP_NAME = os.getenv("APP_NAME", "Foundry Dashboard")
APP_VERSION = os.getenv("APP_VERSION", "1.0.0")
LOG_LEVEL = (os.getenv("LOG_LEVEL") or "INFO").strip().upper()
LISTEN_PORT = _env_int("LISTEN_PORT", 8080)

FOUNDRY_CONTAINER_NAME = (os.getenv("FOUNDRY_CONTAINER_NAME") or "foundry").strip()

# Deployment descriptor used for the stop/start compose runs
COMPOSE_FILE = Path(os.getenv("COMPOSE_FILE", "/deploy/docker-compose.yml"))
COMPOSE_PROJECT_NAME = (os.getenv("COMPOSE_PROJECT_NAME") or "").strip() or None
COMPOSE_IMAGE = (os.getenv("COMPOSE_IMAGE") or "docker:cli").strip()
DOCKER_SOCKET = os.getenv("DOCKER_SOCKET", "/var/run/docker.sock")

VERSION_ENV = (os.getenv("VERSION_ENV") or "FOUNDRY_VERSION").strip()
VERSION_LABEL = (os.getenv("VERSION_LABEL") or "com.foundryvtt.version").strip()

REGISTRY_TAGS_URL = os.getenv(
    "REGISTRY_TAGS_URL",
    "https://hub.docker.com/v2/repositories/felddy/foundryvtt/tags?page_size=100",
)
VERSION_REFRESH_SECONDS = _env_int("VERSION_REFRESH_SECONDS", 3600)

LOG_RETRY_SECONDS = _env_float("LOG_RETRY_SECONDS", 5.0)
LOG_FRAME_MAX_BYTES = _env_int("LOG_FRAME_MAX_BYTES", 16 * 1024 * 1024)

UPGRADE_POLL_INTERVAL = _env_float("UPGRADE_POLL_INTERVAL", 0.5)
UPGRADE_MAX_POLLS = _env_int("UPGRADE_MAX_POLLS", 30)
