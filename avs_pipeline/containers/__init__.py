"""Sidecar container supervision."""

from avs_pipeline.containers.docker_client import DockerEngineClient
from avs_pipeline.containers.manager import ContainerManager, Sidecars
from avs_pipeline.containers.readiness import ReadinessProber

__all__ = [
    "ContainerManager",
    "DockerEngineClient",
    "ReadinessProber",
    "Sidecars",
]
