"""Signing-credential sources.

The pipeline only needs two things from a keystore: list the credentials of
a scheme, and expose the secret of one of them. Key material always comes
from a keystore, never from code.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Optional, Protocol, runtime_checkable

from avs_pipeline.core.exceptions import KeystoreError

logger = logging.getLogger("avs.ledger.keystore")

SIGNER_KEYS_ENV = "AVS_SIGNER_KEYS"


@dataclass(frozen=True)
class SigningCredential:
    key_id: str
    scheme: str = "ecdsa"


@dataclass
class Signer:
    """A credential together with its exposed secret."""

    credential: SigningCredential
    secret: bytes = field(repr=False)

    @property
    def key_id(self) -> str:
        return self.credential.key_id


@runtime_checkable
class Keystore(Protocol):
    def list_credentials(self, scheme: str) -> list[SigningCredential]:
        """Credentials available for ``scheme``. Empty means none available."""
        ...

    def expose_secret(self, credential: SigningCredential) -> bytes:
        ...


class InMemoryKeystore:
    """Keystore backed by a dict of ``SigningCredential -> secret``."""

    def __init__(self, secrets: Optional[dict[SigningCredential, bytes]] = None):
        self._secrets: dict[SigningCredential, bytes] = dict(secrets or {})

    def add(self, credential: SigningCredential, secret: bytes) -> None:
        self._secrets[credential] = secret

    def list_credentials(self, scheme: str) -> list[SigningCredential]:
        return [c for c in self._secrets if c.scheme == scheme]

    def expose_secret(self, credential: SigningCredential) -> bytes:
        try:
            return self._secrets[credential]
        except KeyError:
            raise KeystoreError(f"Unknown credential: {credential.key_id}") from None


class EnvironmentKeystore(InMemoryKeystore):
    """Reads ``key_id=hexsecret`` pairs from AVS_SIGNER_KEYS (comma-separated).

    Malformed entries raise KeystoreError; an unset variable yields an empty
    keystore.
    """

    def __init__(self, scheme: str = "ecdsa", env_var: str = SIGNER_KEYS_ENV):
        super().__init__()
        raw = os.getenv(env_var, "").strip()
        for token in raw.split(","):
            token = token.strip()
            if not token:
                continue
            if "=" not in token:
                raise KeystoreError(f"Invalid {env_var} entry: expected '<key_id>=<hex>'")
            key_id, hex_secret = (part.strip() for part in token.split("=", 1))
            if hex_secret.startswith("0x"):
                hex_secret = hex_secret[2:]
            try:
                secret = bytes.fromhex(hex_secret)
            except ValueError as e:
                raise KeystoreError(f"Invalid {env_var} secret for {key_id!r}: not hex") from e
            self.add(SigningCredential(key_id=key_id, scheme=scheme), secret)
        logger.debug("Loaded %d signing credential(s) from %s", len(self._secrets), env_var)
