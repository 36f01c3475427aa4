import os
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, List, Dict, Union

import docker
from docker.errors import DockerException, ContainerError, NotFound as DockerNotFound
from requests.exceptions import RequestException

from config import (
    FOUNDRY_CONTAINER_NAME,
    COMPOSE_FILE,
    COMPOSE_PROJECT_NAME,
    COMPOSE_IMAGE,
    DOCKER_SOCKET,
    VERSION_ENV,
    VERSION_LABEL,
)
from errors import NotFound, RuntimeOperationFailed

logger = logging.getLogger(__name__)

CONTAINER_STATES = ("created", "running", "restarting", "exited", "removed", "unknown")

_STATE_ALIASES = {
    "removing": "removed",
    "dead": "removed",
}


def _map_state(status: str | None) -> str:
    s = (status or "").strip().lower()
    if s in CONTAINER_STATES:
        return s
    return _STATE_ALIASES.get(s, "unknown")


@dataclass(frozen=True)
class ContainerRef:
    id: str
    name: str
    state: str


class LogStream:
    """A raw, still-multiplexed log response from the Docker API."""

    def __init__(self, response):
        self._response = response
        self._chunks = response.iter_content(chunk_size=None)

    def next_chunk(self) -> Optional[bytes]:
        """Block until the next chunk arrives; None once the stream ended."""
        return next(self._chunks, None)

    def close(self) -> None:
        try:
            self._response.close()
        except Exception as e:
            logger.debug(f"Closing log stream failed: {e}")


class DockerManager:
    def __init__(self, container_name: str = FOUNDRY_CONTAINER_NAME, client: docker.DockerClient | None = None):
        self.container_name = container_name
        self._client = client
        self._warned_ambiguous = False

    @property
    def client(self) -> docker.DockerClient:
        """Connect on first use; a daemon that is down at boot is retried on the next call."""
        if self._client is None:
            self._client = self._init_client()
        return self._client

    def _init_client(self) -> docker.DockerClient:
        docker_host = os.environ.get("DOCKER_HOST")
        try:
            if docker_host:
                return docker.DockerClient(base_url=docker_host)
            return docker.from_env()
        except (DockerException, RequestException) as exc:
            raise RuntimeOperationFailed(
                f"Cannot connect to Docker ({exc}). Mount /var/run/docker.sock or set DOCKER_HOST."
            ) from exc

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except (DockerException, RequestException, RuntimeOperationFailed):
            return False

    def _lookup(self):
        try:
            candidates = self.client.containers.list(all=True, filters={"name": self.container_name})
        except (DockerException, RequestException) as e:
            raise RuntimeOperationFailed(f"Failed to list containers: {e}") from e
        # Docker's name filter is a substring match
        matches = [c for c in candidates if (c.name or "").lstrip("/") == self.container_name]
        if not matches:
            return None
        if len(matches) > 1 and not self._warned_ambiguous:
            self._warned_ambiguous = True
            logger.warning(
                f"{len(matches)} containers are named {self.container_name!r}; using {matches[0].id[:12]}"
            )
        return matches[0]

    def _require(self):
        container = self._lookup()
        if container is None:
            raise NotFound(f"Container {self.container_name} not found")
        return container

    def find_container(self) -> Optional[ContainerRef]:
        """Resolve the managed container. Always queries Docker; upgrades recreate it."""
        container = self._lookup()
        if container is None:
            return None
        return ContainerRef(id=container.id, name=container.name, state=_map_state(container.status))

    def get_status(self) -> dict:
        container = self._require()
        attrs = container.attrs or {}
        state = attrs.get("State", {}) or {}
        labels = (attrs.get("Config", {}) or {}).get("Labels", {}) or {}
        return {
            "id": container.id,
            "name": container.name,
            "state": _map_state(state.get("Status") or container.status),
            "started_at": state.get("StartedAt") or None,
            "installed_version": labels.get(VERSION_LABEL),
        }

    def restart_server(self, timeout: int = 10) -> dict:
        container = self._require()
        try:
            container.restart(timeout=timeout)
            container.reload()
        except DockerNotFound as e:
            raise NotFound(f"Container {self.container_name} disappeared during restart") from e
        except (DockerException, RequestException) as e:
            logger.error(f"Failed to restart container {container.id}: {e}")
            raise RuntimeOperationFailed(str(e)) from e
        logger.info(f"Restarted {container.name}")
        return {"id": container.id, "name": container.name, "state": _map_state(container.status)}

    def open_log_stream(self, container_id: str, follow: bool = True, tail: Union[int, str] = "all") -> LogStream:
        """Open the combined stdout/stderr stream without demultiplexing it.

        The high level ``container.logs`` strips frame headers, so the request
        is issued directly against the API client.
        """
        api = self.client.api
        params = {
            "stdout": 1,
            "stderr": 1,
            "timestamps": 0,
            "follow": 1 if follow else 0,
            "tail": tail,
        }
        try:
            url = api._url("/containers/{0}/logs", container_id)
            response = api._get(url, params=params, stream=True, timeout=None if follow else api.timeout)
            api._raise_for_status(response)
        except DockerNotFound as e:
            raise NotFound(f"Container {container_id} not found") from e
        except (DockerException, RequestException) as e:
            raise RuntimeOperationFailed(f"Log request failed: {e}") from e
        return LogStream(response)

    def read_logs(self, tail: Union[int, str] = "all") -> bytes:
        """One-shot read of the raw multiplexed backlog."""
        container = self._require()
        stream = self.open_log_stream(container.id, follow=False, tail=tail)
        try:
            chunks: List[bytes] = []
            while True:
                chunk = stream.next_chunk()
                if chunk is None:
                    break
                chunks.append(chunk)
        except RequestException as e:
            raise RuntimeOperationFailed(f"Log read failed: {e}") from e
        finally:
            stream.close()
        return b"".join(chunks)

    def _run_compose(self, *args: str, environment: Dict[str, str] | None = None) -> str:
        """Run ``docker compose`` against the deployment descriptor in a throwaway container."""
        descriptor = Path(COMPOSE_FILE)
        workdir = str(descriptor.parent)
        command = ["docker", "compose", "-f", str(descriptor)]
        if COMPOSE_PROJECT_NAME:
            command += ["-p", COMPOSE_PROJECT_NAME]
        command += list(args)
        volumes = {
            DOCKER_SOCKET: {"bind": "/var/run/docker.sock", "mode": "rw"},
            workdir: {"bind": workdir, "mode": "rw"},
        }
        logger.info(f"Running compose: {' '.join(command)}")
        try:
            output = self.client.containers.run(
                COMPOSE_IMAGE,
                command=command,
                volumes=volumes,
                working_dir=workdir,
                environment=environment or {},
                remove=True,
                stdout=True,
                stderr=True,
            )
        except ContainerError as e:
            stderr = e.stderr.decode(errors="ignore").strip() if isinstance(e.stderr, bytes) else ""
            raise RuntimeOperationFailed(stderr or str(e)) from e
        except (DockerException, RequestException) as e:
            raise RuntimeOperationFailed(str(e)) from e
        if isinstance(output, bytes):
            return output.decode(errors="ignore")
        return str(output or "")

    def compose_down(self) -> str:
        return self._run_compose("down")

    def compose_up(self, version: str) -> str:
        return self._run_compose("up", "-d", environment={VERSION_ENV: version})
