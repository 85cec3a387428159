"""Tests for the chain registry."""

import pytest

from yieldbridge.chains import DEFAULT_CHAINS, ChainRegistry
from yieldbridge.config import Settings
from yieldbridge.errors import ValidationError


class TestLookups:
    """Name, network id and domain lookups."""

    def test_domains_are_not_chain_ids(self, registry):
        assert registry.domain_for("ethereum") == 0
        assert registry.domain_for("optimism") == 2
        assert registry.domain_for("arbitrum") == 3
        assert registry.domain_for("base") == 6
        assert registry.domain_for("world") == 14

    def test_by_chain_id(self, registry):
        assert registry.by_chain_id(8453).name == "base"
        assert registry.by_chain_id(480).name == "world"

    def test_by_domain(self, registry):
        assert registry.by_domain(3).name == "arbitrum"

    def test_lookup_is_case_insensitive(self, registry):
        assert registry.get("Base").chain_id == 8453

    def test_unknown_chain_rejected(self, registry):
        with pytest.raises(ValidationError, match="Unsupported chain"):
            registry.get("solana")

    def test_unknown_chain_id_rejected(self, registry):
        with pytest.raises(ValidationError, match="Unsupported chainId"):
            registry.by_chain_id(56)

    def test_unknown_domain_rejected(self, registry):
        with pytest.raises(ValidationError, match="Unsupported domain"):
            registry.by_domain(99)


class TestVaultManagers:
    """YieldManager addresses are never defaulted."""

    def test_configured_address_returned(self, registry):
        assert registry.vault_manager_for("base") == "0x00000000000000000000000000000000000000e4"

    def test_zero_address_rejected(self):
        registry = ChainRegistry.from_settings(Settings(yield_manager_base="0x" + "0" * 40))
        with pytest.raises(ValidationError, match="not configured"):
            registry.vault_manager_for("base")

    def test_position_chains_exclude_settlement(self, registry):
        names = [c.name for c in registry.position_chains()]
        assert names == ["ethereum", "arbitrum", "base", "optimism"]
        assert registry.settlement_chain.name == "world"

    def test_position_chains_skip_unconfigured(self):
        registry = ChainRegistry.from_settings(
            Settings(yield_manager_arbitrum="0x00000000000000000000000000000000000000e3")
        )
        assert [c.name for c in registry.position_chains()] == ["arbitrum"]


def test_unknown_settlement_chain_rejected():
    with pytest.raises(ValidationError):
        ChainRegistry(DEFAULT_CHAINS, settlement_chain="polygon")


def test_rpc_urls_come_from_settings():
    registry = ChainRegistry.from_settings(Settings(base_rpc_url="http://base.local:8545"))
    assert registry.get("base").rpc_url == "http://base.local:8545"
