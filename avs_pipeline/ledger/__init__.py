"""Keystore and ledger collaborators."""

from avs_pipeline.ledger.client import DryRunLedger, Ledger, load_ledger
from avs_pipeline.ledger.keystore import (
    EnvironmentKeystore,
    InMemoryKeystore,
    Keystore,
    Signer,
    SigningCredential,
)

__all__ = [
    "DryRunLedger",
    "EnvironmentKeystore",
    "InMemoryKeystore",
    "Keystore",
    "Ledger",
    "Signer",
    "SigningCredential",
    "load_ledger",
]
