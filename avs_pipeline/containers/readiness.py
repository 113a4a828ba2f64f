"""Readiness prober for freshly started sidecars.

Port-mapping metadata and the service socket show up some time after the
container starts. The prober polls the daemon with exponential backoff until
the expected mapping carries a host port (and, when the sidecar declares a
health path, until that endpoint answers 2xx), bounded by a total timeout.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterator
from typing import Any, Optional

import httpx

from avs_pipeline.containers.docker_client import DockerEngineClient
from avs_pipeline.core.config import ReadinessConfig
from avs_pipeline.core.exceptions import ContainerNotReadyError, DockerAPIError
from avs_pipeline.core.models import ManagedContainer

logger = logging.getLogger("avs.containers.readiness")

_TERMINAL_STATES = ("exited", "dead")


def backoff_intervals(config: ReadinessConfig) -> Iterator[float]:
    """Exponential delays: 0.2s, 0.4s, 0.8s, ... capped at the ceiling."""
    delay = min(config.initial_interval_seconds, config.max_interval_seconds)
    while True:
        yield delay
        delay = min(delay * config.multiplier, config.max_interval_seconds)


def published_host_port(info: dict[str, Any], port_key: str) -> Optional[int]:
    """Read the host port bound to ``port_key`` from an inspect result."""
    ports = (info.get("NetworkSettings") or {}).get("Ports") or {}
    for binding in ports.get(port_key) or []:
        host_port = str(binding.get("HostPort") or "")
        if host_port.isdigit() and int(host_port) > 0:
            return int(host_port)
    return None


class ReadinessProber:
    """Bounded poll-with-backoff over container inspection.

    Injected dependencies:
        docker: Engine client used for inspection.
        config: Backoff and timeout policy.
        http_client: Client for the optional health endpoint.
    """

    def __init__(
        self,
        docker: DockerEngineClient,
        config: Optional[ReadinessConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.docker = docker
        self.config = config or ReadinessConfig()
        self._http = http_client

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient()
        return self._http

    async def aclose(self) -> None:
        if self._http:
            await self._http.aclose()
            self._http = None

    async def await_ready(self, container: ManagedContainer, timeout: Optional[float] = None) -> int:
        """Wait until ``container`` publishes its host port.

        Returns:
            The host port mapped to the container port.

        Raises:
            ContainerNotReadyError: If the timeout elapses first or the
                container exits while being probed.
        """
        timeout = self.config.timeout_seconds if timeout is None else timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        intervals = backoff_intervals(self.config)
        host_port: Optional[int] = None
        reason = f"no host port published for {container.port_key}"
        attempts = 0

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.warning(
                    "Container %s not ready after %d attempt(s): %s",
                    container.name, attempts, reason,
                )
                raise ContainerNotReadyError(container.id, timeout, reason)

            attempts += 1
            try:
                if host_port is None:
                    info = await asyncio.wait_for(
                        self.docker.inspect_container(container.id), remaining
                    )
                    self._check_state(container, info, timeout)
                    host_port = published_host_port(info, container.port_key)

                if host_port is not None:
                    if not container.health_path:
                        logger.debug(
                            "Container %s ready on port %d after %d attempt(s)",
                            container.name, host_port, attempts,
                        )
                        return host_port
                    healthy, reason = await self._probe_health(
                        host_port, container.health_path, deadline - loop.time()
                    )
                    if healthy:
                        return host_port
            except TimeoutError:
                reason = "inspection timed out"
            except DockerAPIError as e:
                reason = str(e)
                logger.debug("Inspect of %s failed (attempt %d): %s", container.name, attempts, e)

            delay = min(next(intervals), deadline - loop.time())
            if delay > 0:
                await asyncio.sleep(delay)

    def _check_state(self, container: ManagedContainer, info: dict[str, Any], timeout: float) -> None:
        state = info.get("State") or {}
        status = state.get("Status", "")
        if status in _TERMINAL_STATES:
            raise ContainerNotReadyError(
                container.id,
                timeout,
                f"container {status} with exit code {state.get('ExitCode')}",
            )

    async def _probe_health(self, host_port: int, path: str, remaining: float) -> tuple[bool, str]:
        url = f"http://{self.config.service_host}:{host_port}{path}"
        try:
            response = await self.http.get(url, timeout=max(0.01, min(remaining, 5.0)))
        except httpx.HTTPError as e:
            return False, f"health check {url} failed: {e}"
        if response.is_success:
            return True, ""
        return False, f"health check {url} returned HTTP {response.status_code}"
