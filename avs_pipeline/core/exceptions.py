"""Custom exception hierarchy for the AVS sidecar pipeline.

All exceptions inherit from AvsError so callers can catch broadly
or narrowly as needed.
"""

from __future__ import annotations

from typing import Any, Optional


class AvsError(Exception):
    """Base exception for all AVS pipeline errors."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class ConfigError(AvsError):
    """Invalid or missing configuration."""


# ---------------------------------------------------------------------------
# Container runtime
# ---------------------------------------------------------------------------

class DockerAPIError(AvsError):
    """The Docker daemon rejected a request or could not be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class ProvisioningError(AvsError):
    """A sidecar container could not be brought up. Fatal to startup."""


class ImagePullError(ProvisioningError):
    """Image fetch failed or its progress stream ended early."""

    def __init__(self, image_ref: str, reason: str):
        self.image_ref = image_ref
        super().__init__(f"Failed to pull image {image_ref}: {reason}")


class ContainerCreateError(ProvisioningError):
    """Container creation was rejected by the daemon."""

    def __init__(self, name: str, reason: str):
        self.name = name
        super().__init__(f"Failed to create container {name}: {reason}")


class ContainerStartError(ProvisioningError):
    """Container was created but could not be started."""

    def __init__(self, container_id: str, reason: str):
        self.container_id = container_id
        super().__init__(f"Failed to start container {container_id}: {reason}")


class ContainerNotReadyError(ProvisioningError):
    """Readiness was not achieved within the configured bound."""

    def __init__(self, container_id: str, timeout: float, reason: str = ""):
        self.container_id = container_id
        self.timeout = timeout
        self.reason = reason
        message = f"Container {container_id} not ready after {timeout:.1f}s"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class TeardownError(AvsError):
    """One or more containers could not be removed.

    ``failures`` holds ``(container, error)`` pairs for every container that
    failed; the shutdown path still attempted all of them.
    """

    def __init__(self, failures: list[tuple[Any, BaseException]]):
        self.failures = failures
        details = "; ".join(
            f"{getattr(container, 'name', container)}: {error}" for container, error in failures
        )
        super().__init__(f"Failed to remove {len(failures)} container(s): {details}")


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------

class TaskError(AvsError):
    """A single task failed. Other tasks are unaffected."""


class CheckerTransportError(TaskError):
    """The checker sidecar could not be reached."""


class CheckerHTTPError(TaskError):
    """The checker sidecar answered with a non-success status."""

    def __init__(self, status_code: int, body: str):
        self.status_code = status_code
        self.body = body
        super().__init__(f"Request failed with status: {status_code}. Body: {body}")


class EnvelopeDecodeError(TaskError):
    """The checker response body is not a valid result envelope."""

    def __init__(self, reason: str, body: str = ""):
        self.body = body
        super().__init__(f"Invalid result envelope: {reason}")


class ItemFailedError(TaskError):
    """The checker reported an ``error`` item; the whole batch is rejected."""

    def __init__(self, reference: str, message: str):
        self.reference = reference
        self.item_message = message
        super().__init__(f"Inference error for {reference}: {message}")


# ---------------------------------------------------------------------------
# Keystore / ledger
# ---------------------------------------------------------------------------

class KeystoreError(AvsError):
    """Credential backend failure."""


class LedgerError(AvsError):
    """Failed ledger operation."""


class LedgerSubmissionError(LedgerError):
    """The ledger rejected or failed to include a submission."""

    def __init__(self, reference: str, reason: str):
        self.reference = reference
        super().__init__(f"Ledger submission failed for {reference}: {reason}")
