"""Shared fixtures for the AVS pipeline tests.

The Docker daemon and the checker sidecar are replaced at the transport
layer with httpx.MockTransport, so the real clients run unmodified.
"""

from __future__ import annotations

import itertools
import json
from pathlib import Path
from typing import Any, Optional

import httpx
import pytest

from avs_pipeline.containers.docker_client import DockerEngineClient
from avs_pipeline.core.config import AppConfig, DockerConfig, ReadinessConfig, load_config
from avs_pipeline.ledger.keystore import InMemoryKeystore, SigningCredential

FAST_READINESS = ReadinessConfig(
    initial_interval_seconds=0.001,
    max_interval_seconds=0.005,
    timeout_seconds=0.5,
)


class FakeDockerDaemon:
    """In-process stand-in for the Docker Engine API.

    Args:
        pull_lines: Progress messages streamed by /images/create.
        publish_after: Number of inspections that report no port mapping yet.
        fail: Maps an operation name ("pull", "create", "start", "remove",
            "inspect") to the HTTP status it should answer with.
    """

    def __init__(
        self,
        pull_lines: Optional[list[dict[str, Any]]] = None,
        publish_after: int = 0,
        fail: Optional[dict[str, int]] = None,
        state: str = "running",
        networks: tuple[str, ...] = ("eigenavs",),
    ):
        self.pull_lines = pull_lines if pull_lines is not None else [
            {"status": "Pulling from library/test"},
            {"status": "Status: Image is up to date"},
        ]
        self.publish_after = publish_after
        self.fail = fail or {}
        self.state = state
        self.networks = set(networks)
        self.requests: list[httpx.Request] = []
        self.containers: dict[str, dict[str, Any]] = {}
        self.removed: list[str] = []
        self._ids = itertools.count(1)

    # -- helpers -----------------------------------------------------------

    def client(self, config: Optional[DockerConfig] = None) -> DockerEngineClient:
        http = httpx.AsyncClient(transport=httpx.MockTransport(self.handler), base_url="http://docker")
        return DockerEngineClient(config or DockerConfig(), client=http)

    def _error(self, op: str) -> Optional[httpx.Response]:
        if op in self.fail:
            return httpx.Response(self.fail[op], json={"message": f"{op} refused"})
        return None

    # -- routing -----------------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        method = request.method

        if method == "POST" and path == "/images/create":
            return self._error("pull") or httpx.Response(
                200, content="\n".join(json.dumps(line) for line in self.pull_lines).encode()
            )
        if method == "POST" and path == "/containers/create":
            if error := self._error("create"):
                return error
            container_id = f"cid{next(self._ids)}"
            self.containers[container_id] = {
                "name": request.url.params["name"],
                "spec": json.loads(request.content),
                "inspections": 0,
                "host_port": str(49152 + len(self.containers) + 1),
            }
            return httpx.Response(201, json={"Id": container_id, "Warnings": []})
        if method == "GET" and path == "/_ping":
            return httpx.Response(200, text="OK")
        if path.startswith("/networks"):
            return self._networks(request)

        parts = path.strip("/").split("/")
        container_id = parts[1] if len(parts) > 1 else ""
        if container_id not in self.containers:
            return httpx.Response(404, json={"message": f"No such container: {container_id}"})
        if method == "POST" and path.endswith("/start"):
            return self._error("start") or httpx.Response(204)
        if method == "GET" and path.endswith("/json"):
            return self._error("inspect") or httpx.Response(200, json=self._inspect(container_id))
        if method == "DELETE":
            if error := self._error("remove"):
                return error
            self.containers.pop(container_id)
            self.removed.append(container_id)
            return httpx.Response(204)
        return httpx.Response(404, json={"message": "unknown route"})

    def _networks(self, request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            name = json.loads(request.content)["Name"]
            self.networks.add(name)
            return httpx.Response(201, json={"Id": f"net-{name}"})
        name = request.url.path.rsplit("/", 1)[-1]
        if name in self.networks:
            return httpx.Response(200, json={"Name": name})
        return httpx.Response(404, json={"message": f"network {name} not found"})

    def _inspect(self, container_id: str) -> dict[str, Any]:
        record = self.containers[container_id]
        record["inspections"] += 1
        port_key = next(iter(record["spec"]["ExposedPorts"]))
        bindings = None
        if record["inspections"] > self.publish_after:
            bindings = [{"HostIp": "0.0.0.0", "HostPort": record["host_port"]}]
        return {
            "Id": container_id,
            "Name": f"/{record['name']}",
            "State": {"Status": self.state, "Running": self.state == "running", "ExitCode": 1},
            "NetworkSettings": {"Ports": {port_key: bindings}},
        }


def envelope(items: list[dict[str, Any]], processed: Optional[int] = None) -> dict[str, Any]:
    """Checker response body in the sidecar's wire format."""
    return {
        "processed_files": len(items) if processed is None else processed,
        "results": items,
    }


def success_item(reference: str, prediction: str = "real", confidence: float = 0.9) -> dict[str, Any]:
    return {
        "url": reference,
        "status": "success",
        "inference_result": json.dumps(
            {"file": reference, "prediction": prediction, "confidence": confidence}
        ),
    }


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def config_dir() -> Path:
    return Path(__file__).parent.parent / "config"


@pytest.fixture
def app_config(config_dir: Path, monkeypatch) -> AppConfig:
    for var in ("DOCKER_HOST", "TASK_MANAGER_ADDRESS", "AVS_DEFAULT_REFERENCE", "AVS_LOG_LEVEL"):
        monkeypatch.delenv(var, raising=False)
    return load_config(config_dir=config_dir)


@pytest.fixture
def fast_readiness() -> ReadinessConfig:
    return FAST_READINESS.model_copy()


@pytest.fixture
def keystore() -> InMemoryKeystore:
    return InMemoryKeystore({SigningCredential("operator-1"): bytes.fromhex("11" * 32)})
