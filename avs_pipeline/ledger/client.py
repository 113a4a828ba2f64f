"""Ledger collaborators.

The pipeline submits ``LedgerSubmission`` records through anything that
implements ``Ledger``. Contract encoding and transport live in the concrete
ledger; ``DryRunLedger`` only logs and derives a deterministic transaction id.
"""

from __future__ import annotations

import hashlib
import importlib
import itertools
import logging
from typing import Protocol, runtime_checkable

from avs_pipeline.core.config import LedgerConfig
from avs_pipeline.core.exceptions import ConfigError
from avs_pipeline.core.models import LedgerSubmission
from avs_pipeline.ledger.keystore import Signer

logger = logging.getLogger("avs.ledger")


@runtime_checkable
class Ledger(Protocol):
    async def submit_inference_result(self, submission: LedgerSubmission, signer: Signer) -> str:
        """Submit one record, wait for inclusion and return its transaction id."""
        ...


class DryRunLedger:
    """Ledger that records submissions instead of sending them."""

    def __init__(self, config: LedgerConfig | None = None):
        self.config = config or LedgerConfig()
        self.submissions: list[tuple[LedgerSubmission, str]] = []
        self._nonce = itertools.count()

    async def submit_inference_result(self, submission: LedgerSubmission, signer: Signer) -> str:
        nonce = next(self._nonce)
        digest = hashlib.sha256(
            "|".join(
                [
                    self.config.task_manager_address.lower(),
                    signer.key_id,
                    submission.subject,
                    submission.label,
                    str(submission.confidence_fixed_point),
                    str(nonce),
                ]
            ).encode()
        ).hexdigest()
        tx_id = f"0x{digest}"
        self.submissions.append((submission, tx_id))
        logger.info(
            "Dry-run recordInferenceResult on %s: %s -> %s",
            self.config.task_manager_address, submission.subject, tx_id,
        )
        return tx_id


def load_ledger(config: LedgerConfig) -> Ledger:
    """Build the configured ledger.

    ``config.factory`` names a ``module:callable`` that receives the
    LedgerConfig; without one the dry-run ledger is used.
    """
    if not config.factory:
        return DryRunLedger(config)

    module_name, _, attr = config.factory.partition(":")
    if not module_name or not attr:
        raise ConfigError(f"Ledger factory must look like 'module:callable', got {config.factory!r}")
    try:
        module = importlib.import_module(module_name)
        factory = getattr(module, attr)
    except (ImportError, AttributeError) as e:
        raise ConfigError(f"Cannot load ledger factory {config.factory!r}: {e}") from e

    ledger = factory(config)
    if not isinstance(ledger, Ledger):
        raise ConfigError(f"Ledger factory {config.factory!r} did not return a Ledger")
    return ledger
