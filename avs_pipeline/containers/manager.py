"""Container lifecycle manager for the inference and checker sidecars.

Pulls images, starts containers with ephemeral host-port mappings on the
shared service network, waits for readiness and tears everything down on
shutdown. Nothing here retries: callers decide whether to provision again
under a fresh name.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Optional

from avs_pipeline.containers.docker_client import DockerEngineClient
from avs_pipeline.containers.readiness import ReadinessProber
from avs_pipeline.core.config import DockerConfig, ReadinessConfig, SidecarConfig, SidecarsConfig
from avs_pipeline.core.exceptions import (
    ContainerCreateError,
    ContainerStartError,
    DockerAPIError,
    ImagePullError,
    ProvisioningError,
    TeardownError,
)
from avs_pipeline.core.models import ManagedContainer

logger = logging.getLogger("avs.containers.manager")

BIND_ALL = "0.0.0.0"
ANY_FREE_PORT = "0"


def instance_name(prefix: str) -> str:
    """Globally unique container name: ``<prefix>-<uuid4>``."""
    return f"{prefix}-{uuid.uuid4()}"


def container_spec(image_ref: str, container_port: int, network: str) -> dict[str, Any]:
    """Engine API create body with an ephemeral host port for ``container_port``."""
    port_key = f"{container_port}/tcp"
    return {
        "Image": image_ref,
        "ExposedPorts": {port_key: {}},
        "HostConfig": {
            "PortBindings": {port_key: [{"HostIp": BIND_ALL, "HostPort": ANY_FREE_PORT}]},
            "NetworkMode": network,
        },
    }


@dataclass
class Sidecars:
    inference: ManagedContainer
    checker: ManagedContainer

    def all(self) -> list[ManagedContainer]:
        return [self.inference, self.checker]

    def checker_address(self, host: str = "localhost") -> str:
        return self.checker.host_address(host)


class ContainerManager:
    """Provisions and supervises sidecar containers.

    Injected dependencies:
        docker: Engine client shared by every provisioning flow.
        config: Docker settings (service network).
        prober: Readiness prober; built from ``readiness_config`` if omitted.
    """

    def __init__(
        self,
        docker: DockerEngineClient,
        config: Optional[DockerConfig] = None,
        readiness_config: Optional[ReadinessConfig] = None,
        prober: Optional[ReadinessProber] = None,
    ):
        self.docker = docker
        self.config = config or docker.config
        self.prober = prober or ReadinessProber(docker, readiness_config)

    async def ensure_network(self) -> None:
        if not self.config.create_network:
            return
        if await self.docker.network_exists(self.config.network):
            return
        logger.info("Creating service network %s", self.config.network)
        try:
            await self.docker.create_network(self.config.network)
        except DockerAPIError as e:
            # 409: created concurrently by someone else
            if e.status_code != 409:
                raise ProvisioningError(f"Failed to create network {self.config.network}: {e}") from e

    async def provision(
        self,
        image_ref: str,
        container_port: int,
        name_prefix: str,
        role: Optional[str] = None,
        health_path: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> ManagedContainer:
        """Pull, create, start and await one sidecar.

        Raises:
            ValueError: On an empty image reference or invalid port.
            ImagePullError, ContainerCreateError, ContainerStartError,
            ContainerNotReadyError: One per failed stage.
        """
        if not image_ref or not image_ref.strip():
            raise ValueError("image_ref must be a non-empty image reference")
        if isinstance(container_port, bool) or not 0 < int(container_port) <= 65535:
            raise ValueError(f"container_port must be a valid port number, got {container_port!r}")

        logger.info("Attempting to pull the Docker image: %s", image_ref)
        try:
            messages = await self.docker.pull_image(image_ref)
        except DockerAPIError as e:
            raise ImagePullError(image_ref, str(e)) from e
        logger.info("Image pull successful for %s (%d progress messages)", image_ref, messages)

        name = instance_name(name_prefix)
        logger.info("Creating container %s on network %s", name, self.config.network)
        try:
            container_id = await self.docker.create_container(
                name, container_spec(image_ref, container_port, self.config.network)
            )
        except DockerAPIError as e:
            raise ContainerCreateError(name, str(e)) from e

        container = ManagedContainer(
            id=container_id,
            name=name,
            image_ref=image_ref,
            container_port=int(container_port),
            name_prefix=name_prefix,
            role=role,
            health_path=health_path,
        )

        # From here on every exit, cancellation included, removes the container.
        try:
            logger.info("Starting container %s", name)
            try:
                await self.docker.start_container(container_id)
            except DockerAPIError as e:
                raise ContainerStartError(container_id, str(e)) from e
            host_port = await self.prober.await_ready(container, timeout)
        except BaseException:
            await asyncio.shield(self._discard(container))
            raise
        container.assign_host_port(host_port)
        logger.info(
            "Docker container initialized and started - ID: %s, mapped to host port: %d",
            container_id, host_port,
        )
        return container

    async def provision_from(self, sidecar: SidecarConfig, role: str) -> ManagedContainer:
        return await self.provision(
            sidecar.image,
            sidecar.container_port,
            sidecar.name_prefix,
            role=role,
            health_path=sidecar.health_path,
        )

    async def provision_sidecars(self, sidecars: SidecarsConfig) -> Sidecars:
        """Provision inference and checker concurrently.

        If either fails, the one that came up is removed again and the first
        provisioning error is raised.
        """
        await self.ensure_network()
        results = await asyncio.gather(
            self.provision_from(sidecars.inference, "inference"),
            self.provision_from(sidecars.checker, "checker"),
            return_exceptions=True,
        )
        failures = [r for r in results if isinstance(r, BaseException)]
        if failures:
            started = [r for r in results if isinstance(r, ManagedContainer)]
            if started:
                logger.warning("Provisioning failed, removing %d started sidecar(s)", len(started))
                try:
                    await self.teardown_all(started)
                except TeardownError as e:
                    logger.error("Cleanup after failed provisioning incomplete: %s", e)
            raise failures[0]
        inference, checker = results
        return Sidecars(inference=inference, checker=checker)

    async def _discard(self, container: ManagedContainer) -> None:
        """Remove a container that never became ready; failures are only logged."""
        try:
            await self.docker.remove_container(container.id, force=True)
        except DockerAPIError as e:
            logger.warning("Could not discard failed container %s: %s", container.name, e)

    async def teardown(self, container: ManagedContainer) -> None:
        """Force-remove one container, running or not."""
        logger.info("Attempting to remove container %s", container.id)
        try:
            await self.docker.remove_container(container.id, force=True)
        except DockerAPIError as e:
            logger.warning("Failed to remove container %s: %s", container.name, e)
            raise TeardownError([(container, e)]) from e
        logger.info("Container %s removed successfully", container.id)

    async def teardown_all(self, containers: list[ManagedContainer]) -> None:
        """Remove every container concurrently and aggregate failures.

        Raises:
            TeardownError: Listing every container that could not be removed,
                after all removals were attempted.
        """
        results = await asyncio.gather(
            *(self.teardown(c) for c in containers),
            return_exceptions=True,
        )
        failures: list[tuple[Any, BaseException]] = []
        for container, result in zip(containers, results):
            if isinstance(result, TeardownError):
                failures.extend(result.failures)
            elif isinstance(result, BaseException):
                failures.append((container, result))
        if failures:
            raise TeardownError(failures)
