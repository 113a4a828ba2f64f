"""Data models for the AVS sidecar pipeline.

Defines the contracts shared by the container manager, the checker client
and the task pipeline: supervised containers, the checker's result envelope,
decoded inference payloads and the records sent to the ledger.
"""

from __future__ import annotations

import enum
import json
import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from fractions import Fraction
from typing import Any, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

CONFIDENCE_SCALE = 10**18
UNKNOWN = "unknown"

# Defaults applied when a payload field is absent or has the wrong type.
# A numeric confidence outside [0, 1] rejects the payload instead.
PAYLOAD_DEFAULTS: dict[str, Any] = {
    "subject": UNKNOWN,
    "label": UNKNOWN,
    "confidence": 0.0,
}

_SUBJECT_KEYS = ("file", "subject")
_LABEL_KEYS = ("prediction", "label")


# ---------------------------------------------------------------------------
# Containers
# ---------------------------------------------------------------------------

@dataclass
class ManagedContainer:
    """One supervised sidecar instance.

    ``host_port`` stays None until readiness has been observed and is never
    changed afterwards. A failed container is replaced, not restarted.
    """

    id: str
    name: str
    image_ref: str
    container_port: int
    name_prefix: str
    role: Optional[str] = None
    health_path: Optional[str] = None
    _host_port: Optional[int] = field(default=None, init=False, repr=False)

    @property
    def host_port(self) -> Optional[int]:
        return self._host_port

    @property
    def port_key(self) -> str:
        return f"{self.container_port}/tcp"

    @property
    def is_ready(self) -> bool:
        return self._host_port is not None

    def assign_host_port(self, port: int) -> None:
        if self._host_port is not None and self._host_port != port:
            raise ValueError(
                f"Host port for {self.name} already assigned ({self._host_port}), refusing {port}"
            )
        self._host_port = port

    def host_address(self, host: str = "localhost") -> str:
        """Address reachable from the host through the ephemeral port mapping."""
        if self._host_port is None:
            raise ValueError(f"Container {self.name} has no host port yet")
        return f"http://{host}:{self._host_port}"

    @property
    def network_address(self) -> str:
        """Address reachable from other containers on the service network."""
        return f"http://{self.name}:{self.container_port}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "image_ref": self.image_ref,
            "container_port": self.container_port,
            "name_prefix": self.name_prefix,
            "role": self.role,
            "host_port": self._host_port,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ManagedContainer:
        container = cls(
            id=data["id"],
            name=data["name"],
            image_ref=data["image_ref"],
            container_port=int(data["container_port"]),
            name_prefix=data["name_prefix"],
            role=data.get("role"),
        )
        if data.get("host_port") is not None:
            container.assign_host_port(int(data["host_port"]))
        return container


# ---------------------------------------------------------------------------
# Checker envelope
# ---------------------------------------------------------------------------

class ItemStatus(str, enum.Enum):
    SUCCESS = "success"
    ERROR = "error"


class TaskResultItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    reference: str = Field(validation_alias=AliasChoices("reference", "url"))
    status: str
    payload: Optional[Union[str, dict[str, Any]]] = Field(
        default=None,
        validation_alias=AliasChoices("payload", "inference_result"),
    )
    message: Optional[str] = None

    @field_validator("status")
    @classmethod
    def _normalize_status(cls, value: str) -> str:
        return value.strip().lower()

    @property
    def is_error(self) -> bool:
        return self.status == ItemStatus.ERROR.value

    @property
    def is_success(self) -> bool:
        return self.status == ItemStatus.SUCCESS.value


class TaskResultEnvelope(BaseModel):
    """One response of the checker sidecar.

    ``processed_count`` is advisory and need not match ``len(items)``.
    """

    model_config = ConfigDict(populate_by_name=True)

    processed_count: int = Field(
        ge=0,
        validation_alias=AliasChoices("processed_count", "processedCount", "processed_files"),
    )
    items: list[TaskResultItem] = Field(validation_alias=AliasChoices("items", "results"))

    def first_error(self) -> Optional[TaskResultItem]:
        for item in self.items:
            if item.is_error:
                return item
        return None


# ---------------------------------------------------------------------------
# Inference payload and ledger records
# ---------------------------------------------------------------------------

def _first_string(data: Mapping[str, Any], keys: tuple[str, ...], default: str) -> str:
    for key in keys:
        if key in data:
            value = data[key]
            return value if isinstance(value, str) else default
    return default


class InferencePayload(BaseModel):
    subject: str = PAYLOAD_DEFAULTS["subject"]
    label: str = PAYLOAD_DEFAULTS["label"]
    confidence: float = PAYLOAD_DEFAULTS["confidence"]

    @classmethod
    def parse(cls, raw: Union[str, bytes, Mapping[str, Any]]) -> InferencePayload:
        """Decode a payload given as a JSON string or an already-decoded mapping.

        Raises:
            ValueError: If the payload is not a JSON object or its numeric
                confidence is not finite or outside [0.0, 1.0].
        """
        if isinstance(raw, (str, bytes)):
            try:
                data = json.loads(raw)
            except json.JSONDecodeError as e:
                raise ValueError(f"payload is not valid JSON: {e}") from e
        else:
            data = raw

        if not isinstance(data, Mapping):
            raise ValueError(f"payload is not a JSON object: {type(data).__name__}")

        confidence = data.get("confidence", PAYLOAD_DEFAULTS["confidence"])
        if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
            confidence = PAYLOAD_DEFAULTS["confidence"]
        confidence = float(confidence)
        if not math.isfinite(confidence) or not 0.0 <= confidence <= 1.0:
            raise ValueError(f"confidence outside [0, 1]: {confidence!r}")

        return cls(
            subject=_first_string(data, _SUBJECT_KEYS, PAYLOAD_DEFAULTS["subject"]),
            label=_first_string(data, _LABEL_KEYS, PAYLOAD_DEFAULTS["label"]),
            confidence=confidence,
        )


def scale_confidence(confidence: float) -> int:
    """Scale a confidence in [0, 1] to an unsigned 1e18 fixed-point integer.

    Uses exact rational arithmetic so the result is ``round(confidence * 1e18)``
    without an intermediate float product.
    """
    if isinstance(confidence, bool) or not math.isfinite(confidence):
        raise ValueError(f"confidence must be a finite number: {confidence!r}")
    if not 0.0 <= confidence <= 1.0:
        raise ValueError(f"confidence outside [0, 1]: {confidence!r}")
    return round(Fraction(confidence) * CONFIDENCE_SCALE)


def unscale_confidence(value: int) -> Fraction:
    return Fraction(value, CONFIDENCE_SCALE)


class LedgerSubmission(BaseModel):
    model_config = ConfigDict(frozen=True)

    subject: str
    label: str
    confidence_fixed_point: int = Field(ge=0, le=CONFIDENCE_SCALE)

    @classmethod
    def from_payload(cls, payload: InferencePayload) -> LedgerSubmission:
        return cls(
            subject=payload.subject,
            label=payload.label,
            confidence_fixed_point=scale_confidence(payload.confidence),
        )


# ---------------------------------------------------------------------------
# Task outcome
# ---------------------------------------------------------------------------

@dataclass
class TaskSummary:
    file_reference: str
    processed_count: int
    submitted: int = 0
    skipped: int = 0
    no_work: bool = False
    transactions: list[tuple[str, str]] = field(default_factory=list)

    def describe(self) -> str:
        if self.no_work:
            return "No files to process"
        return f"Processed files: {self.processed_count} (submitted {self.submitted})"
