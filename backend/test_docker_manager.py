import logging
import sys
from pathlib import Path

import pytest
from docker.errors import APIError, ContainerError, NotFound as DockerNotFound
from requests.exceptions import ConnectionError as RequestsConnectionError

here = Path(__file__).resolve()
backend_dir = here.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from config import VERSION_ENV, VERSION_LABEL
from docker_manager import ContainerRef, DockerManager, _map_state
from errors import NotFound, RuntimeOperationFailed


class FakeContainer:
    def __init__(self, cid, name, status="running", attrs=None, restart_error=None):
        self.id = cid
        self.name = name
        self.status = status
        self.attrs = attrs or {}
        self.restart_error = restart_error
        self.restarted = False

    def restart(self, timeout=10):
        if self.restart_error:
            raise self.restart_error
        self.restarted = True
        self.status = "restarting"

    def reload(self):
        pass


class FakeContainers:
    def __init__(self, containers, run_error=None):
        self._containers = containers
        self.list_calls = []
        self.run_calls = []
        self.run_error = run_error

    def list(self, all=False, filters=None):
        self.list_calls.append({"all": all, "filters": filters})
        needle = (filters or {}).get("name", "")
        return [c for c in self._containers if needle in c.name]

    def run(self, image, command=None, **kwargs):
        self.run_calls.append({"image": image, "command": command, **kwargs})
        if self.run_error:
            raise self.run_error
        return b"done\n"


class FakeResponse:
    def __init__(self, chunks, error=None):
        self._chunks = list(chunks)
        self._error = error
        self.closed = False

    def iter_content(self, chunk_size=1):
        assert chunk_size is None
        yield from self._chunks
        if self._error is not None:
            raise self._error

    def close(self):
        self.closed = True


class FakeApi:
    timeout = 60

    def __init__(self, chunks=(), get_error=None, status_error=None, read_error=None):
        self.chunks = chunks
        self.get_error = get_error
        self.status_error = status_error
        self.read_error = read_error
        self.get_calls = []
        self.responses = []

    def _url(self, pathfmt, *args):
        return pathfmt.format(*args)

    def _get(self, url, **kwargs):
        self.get_calls.append({"url": url, **kwargs})
        if self.get_error:
            raise self.get_error
        response = FakeResponse(self.chunks, error=self.read_error)
        self.responses.append(response)
        return response

    def _raise_for_status(self, response):
        if self.status_error:
            raise self.status_error


class FakeClient:
    def __init__(self, containers, run_error=None, api=None):
        self.containers = FakeContainers(containers, run_error=run_error)
        self.api = api or FakeApi()


def _manager(containers, run_error=None, api=None):
    return DockerManager("foundry", client=FakeClient(containers, run_error=run_error, api=api))


def test_locator_requires_exact_name_and_includes_stopped():
    dm = _manager([
        FakeContainer("aaa", "foundry-db"),
        FakeContainer("bbb", "foundry", status="exited"),
    ])
    ref = dm.find_container()
    assert ref == ContainerRef(id="bbb", name="foundry", state="exited")
    assert dm.client.containers.list_calls[0] == {"all": True, "filters": {"name": "foundry"}}


def test_locator_returns_none_without_match():
    dm = _manager([FakeContainer("aaa", "foundry-db")])
    assert dm.find_container() is None


def test_locator_requeries_every_call():
    dm = _manager([FakeContainer("bbb", "foundry")])
    dm.find_container()
    dm.find_container()
    assert len(dm.client.containers.list_calls) == 2


def test_ambiguous_match_takes_first_and_warns_once(caplog):
    dm = _manager([FakeContainer("first", "foundry"), FakeContainer("second", "foundry")])
    with caplog.at_level(logging.WARNING, logger="docker_manager"):
        assert dm.find_container().id == "first"
        assert dm.find_container().id == "first"
    warnings = [r for r in caplog.records if "containers are named" in r.getMessage()]
    assert len(warnings) == 1


@pytest.mark.parametrize("status, expected", [
    ("running", "running"),
    ("created", "created"),
    ("restarting", "restarting"),
    ("exited", "exited"),
    ("removing", "removed"),
    ("dead", "removed"),
    ("paused", "unknown"),
    (None, "unknown"),
])
def test_state_mapping(status, expected):
    assert _map_state(status) == expected


def test_status_reads_start_time_and_version_label():
    attrs = {
        "State": {"Status": "running", "StartedAt": "2026-10-19T08:00:00.123456789Z"},
        "Config": {"Labels": {VERSION_LABEL: "11.301"}},
    }
    dm = _manager([FakeContainer("bbb", "foundry", attrs=attrs)])
    status = dm.get_status()
    assert status == {
        "id": "bbb",
        "name": "foundry",
        "state": "running",
        "started_at": "2026-10-19T08:00:00.123456789Z",
        "installed_version": "11.301",
    }


def test_status_and_restart_raise_not_found():
    dm = _manager([])
    with pytest.raises(NotFound):
        dm.get_status()
    with pytest.raises(NotFound):
        dm.restart_server()


def test_restart_keeps_name():
    container = FakeContainer("bbb", "foundry")
    dm = _manager([container])
    result = dm.restart_server()
    assert container.restarted
    assert result["name"] == "foundry"
    assert result["state"] in ("restarting", "running")


def test_restart_failure_is_runtime_error():
    dm = _manager([FakeContainer("bbb", "foundry", restart_error=APIError("conflict"))])
    with pytest.raises(RuntimeOperationFailed):
        dm.restart_server()


def test_compose_up_injects_version_and_removes_runner():
    dm = _manager([])
    dm.compose_up("11.301")
    call = dm.client.containers.run_calls[0]
    assert call["command"][:2] == ["docker", "compose"]
    assert call["command"][-2:] == ["up", "-d"]
    assert call["environment"] == {VERSION_ENV: "11.301"}
    assert call["remove"] is True
    assert "/var/run/docker.sock" in [v["bind"] for v in call["volumes"].values()]


def test_compose_down_has_no_version_override():
    dm = _manager([])
    assert dm.compose_down() == "done\n"
    call = dm.client.containers.run_calls[0]
    assert call["command"][-1] == "down"
    assert call["environment"] == {}


def test_compose_failure_reports_stderr_verbatim():
    error = ContainerError(
        container="runner",
        exit_status=1,
        command="docker compose down",
        image="docker:cli",
        stderr=b"no configuration file provided: not found\n",
    )
    dm = _manager([], run_error=error)
    with pytest.raises(RuntimeOperationFailed) as excinfo:
        dm.compose_down()
    assert excinfo.value.reason == "no configuration file provided: not found"


def test_follow_stream_requests_new_lines_without_timeout():
    api = FakeApi(chunks=[b"\x01\x00\x00\x00", b"\x00\x00\x00\x03hi\n"])
    dm = _manager([], api=api)
    stream = dm.open_log_stream("bbb", follow=True, tail=0)

    call = api.get_calls[0]
    assert call["url"] == "/containers/bbb/logs"
    assert call["params"] == {"stdout": 1, "stderr": 1, "timestamps": 0, "follow": 1, "tail": 0}
    assert call["stream"] is True
    assert call["timeout"] is None

    assert stream.next_chunk() == b"\x01\x00\x00\x00"
    assert stream.next_chunk() == b"\x00\x00\x00\x03hi\n"
    assert stream.next_chunk() is None
    assert stream.next_chunk() is None
    stream.close()
    assert api.responses[0].closed


@pytest.mark.parametrize("tail", ["all", 25])
def test_snapshot_stream_uses_client_timeout(tail):
    api = FakeApi()
    dm = _manager([], api=api)
    dm.open_log_stream("bbb", follow=False, tail=tail)
    call = api.get_calls[0]
    assert call["params"]["follow"] == 0
    assert call["params"]["tail"] == tail
    assert call["timeout"] == 60


def test_log_stream_for_vanished_container_is_not_found():
    dm = _manager([], api=FakeApi(status_error=DockerNotFound("No such container: bbb")))
    with pytest.raises(NotFound):
        dm.open_log_stream("bbb")


def test_log_stream_transport_failure_is_runtime_error():
    dm = _manager([], api=FakeApi(get_error=RequestsConnectionError("connection refused")))
    with pytest.raises(RuntimeOperationFailed) as excinfo:
        dm.open_log_stream("bbb")
    assert "connection refused" in excinfo.value.reason


def test_read_logs_joins_chunks_and_closes_stream():
    api = FakeApi(chunks=[b"\x01\x00\x00\x00\x00\x00", b"\x00\x02ok"])
    dm = _manager([FakeContainer("bbb", "foundry")], api=api)

    assert dm.read_logs(10) == b"\x01\x00\x00\x00\x00\x00\x00\x02ok"
    assert api.get_calls[0]["params"]["tail"] == 10
    assert api.get_calls[0]["params"]["follow"] == 0
    assert api.responses[0].closed


def test_read_logs_interrupted_midway_is_runtime_error():
    api = FakeApi(chunks=[b"\x01\x00"], read_error=RequestsConnectionError("reset by peer"))
    dm = _manager([FakeContainer("bbb", "foundry")], api=api)
    with pytest.raises(RuntimeOperationFailed):
        dm.read_logs()
    assert api.responses[0].closed


def test_read_logs_without_container_is_not_found():
    api = FakeApi()
    dm = _manager([], api=api)
    with pytest.raises(NotFound):
        dm.read_logs()
    assert api.get_calls == []


def test_unreachable_daemon_is_reported_lazily(monkeypatch):
    monkeypatch.setenv("DOCKER_HOST", "unix:///nonexistent.sock")
    dm = DockerManager("foundry")
    assert dm.ping() is False
    with pytest.raises(RuntimeOperationFailed) as excinfo:
        dm.find_container()
    assert "Cannot connect to Docker" in excinfo.value.reason or "Failed to list containers" in excinfo.value.reason
