"""Tests for avs_pipeline/ledger: keystores and the ledger factory."""

from __future__ import annotations

import asyncio
import sys
import types

import pytest

from avs_pipeline.core.config import LedgerConfig
from avs_pipeline.core.exceptions import ConfigError, KeystoreError
from avs_pipeline.core.models import InferencePayload, LedgerSubmission
from avs_pipeline.ledger.client import DryRunLedger, Ledger, load_ledger
from avs_pipeline.ledger.keystore import (
    EnvironmentKeystore,
    InMemoryKeystore,
    Keystore,
    Signer,
    SigningCredential,
)

ADDRESS = "0x5FbDB2315678afecb367f032d93F642f64180aa3"


def _submission(subject: str = "a.wav") -> LedgerSubmission:
    return LedgerSubmission.from_payload(InferencePayload(subject=subject, label="real", confidence=0.5))


class TestInMemoryKeystore:
    def test_lists_by_scheme(self):
        ks = InMemoryKeystore({SigningCredential("e1"): b"\x01", SigningCredential("b1", scheme="bls"): b"\x02"})
        assert [c.key_id for c in ks.list_credentials("ecdsa")] == ["e1"]
        assert [c.key_id for c in ks.list_credentials("bls")] == ["b1"]
        assert ks.list_credentials("sr25519") == []

    def test_unknown_credential(self):
        with pytest.raises(KeystoreError, match="ghost"):
            InMemoryKeystore().expose_secret(SigningCredential("ghost"))

    def test_satisfies_protocol(self):
        assert isinstance(InMemoryKeystore(), Keystore)

    def test_signer_hides_secret(self):
        signer = Signer(SigningCredential("k"), b"\xde\xad")
        assert "dead" not in repr(signer)
        assert signer.key_id == "k"


class TestEnvironmentKeystore:
    def test_unset_is_empty(self, monkeypatch):
        monkeypatch.delenv("AVS_SIGNER_KEYS", raising=False)
        assert EnvironmentKeystore().list_credentials("ecdsa") == []

    def test_parses_pairs(self, monkeypatch):
        monkeypatch.setenv("AVS_SIGNER_KEYS", "op1=0x0a0b, op2=ff ,")
        ks = EnvironmentKeystore()
        creds = ks.list_credentials("ecdsa")
        assert [c.key_id for c in creds] == ["op1", "op2"]
        assert ks.expose_secret(creds[0]) == b"\x0a\x0b"
        assert ks.expose_secret(creds[1]) == b"\xff"

    def test_scheme_applies_to_all(self, monkeypatch):
        monkeypatch.setenv("AVS_SIGNER_KEYS", "op1=01")
        ks = EnvironmentKeystore(scheme="bls")
        assert ks.list_credentials("ecdsa") == []
        assert len(ks.list_credentials("bls")) == 1

    @pytest.mark.parametrize("raw", ["op1", "op1=zz", "op1=abc"])
    def test_malformed(self, monkeypatch, raw):
        monkeypatch.setenv("AVS_SIGNER_KEYS", raw)
        with pytest.raises(KeystoreError):
            EnvironmentKeystore()

    def test_custom_variable(self, monkeypatch):
        monkeypatch.setenv("MY_KEYS", "x=01")
        assert len(EnvironmentKeystore(env_var="MY_KEYS").list_credentials("ecdsa")) == 1


class TestDryRunLedger:
    def test_records_and_returns_tx_ids(self):
        ledger = DryRunLedger(LedgerConfig(task_manager_address=ADDRESS))
        signer = Signer(SigningCredential("k"), b"\x01")

        async def run():
            first = await ledger.submit_inference_result(_submission("a.wav"), signer)
            second = await ledger.submit_inference_result(_submission("a.wav"), signer)
            return first, second

        first, second = asyncio.run(run())
        assert first.startswith("0x") and len(first) == 66
        assert first != second
        assert [s.subject for s, _ in ledger.submissions] == ["a.wav", "a.wav"]

    def test_satisfies_protocol(self):
        assert isinstance(DryRunLedger(), Ledger)


class _StubLedger:
    def __init__(self, config):
        self.config = config

    async def submit_inference_result(self, submission, signer) -> str:
        return "0x1"


@pytest.fixture
def factory_module(monkeypatch):
    module = types.ModuleType("avs_test_ledger_factory")
    module.good = _StubLedger
    module.bad = lambda config: object()
    monkeypatch.setitem(sys.modules, module.__name__, module)
    return module.__name__


class TestLoadLedger:
    def test_default_is_dry_run(self):
        assert isinstance(load_ledger(LedgerConfig()), DryRunLedger)

    def test_factory(self, factory_module):
        config = LedgerConfig(factory=f"{factory_module}:good")
        ledger = load_ledger(config)
        assert isinstance(ledger, _StubLedger)
        assert ledger.config is config

    @pytest.mark.parametrize("factory", ["no_colon", ":attr", "module:"])
    def test_bad_format(self, factory):
        with pytest.raises(ConfigError, match="module:callable"):
            load_ledger(LedgerConfig(factory=factory))

    def test_missing_module(self):
        with pytest.raises(ConfigError, match="Cannot load"):
            load_ledger(LedgerConfig(factory="avs_no_such_module_xyz:make"))

    def test_missing_attribute(self, factory_module):
        with pytest.raises(ConfigError, match="Cannot load"):
            load_ledger(LedgerConfig(factory=f"{factory_module}:absent"))

    def test_factory_returning_non_ledger(self, factory_module):
        with pytest.raises(ConfigError, match="did not return a Ledger"):
            load_ledger(LedgerConfig(factory=f"{factory_module}:bad"))
