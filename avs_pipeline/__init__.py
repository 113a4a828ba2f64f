"""AVS sidecar pipeline: supervised inference/checker containers and ledger commits."""

__version__ = "0.1.0"
