"""Chain registry for the CCTP-connected networks.

Maps a logical chain name to its EVM network id, RPC endpoint, the
YieldManager (vault-manager) contract and the CCTP domain id.

Network ids and CCTP domain ids are separate namespaces: Optimism is
network 10 but CCTP domain 2, World Chain is network 480 but domain 14.
"""

from dataclasses import dataclass, replace
from typing import Iterable, Optional

from yieldbridge.config import ZERO_ADDRESS, Settings
from yieldbridge.errors import ValidationError


@dataclass(frozen=True)
class ChainConfig:
    """Configuration for a CCTP-enabled chain."""

    name: str
    display_name: str
    chain_id: int
    cctp_domain: int
    rpc_url: str = ""
    vault_manager: str = ZERO_ADDRESS

    @property
    def has_vault_manager(self) -> bool:
        return bool(self.vault_manager) and int(self.vault_manager, 16) != 0


# ======================
# Chain Configurations
# ======================

# Order matters: this is the order positions are scanned in.
DEFAULT_CHAINS: tuple[ChainConfig, ...] = (
    ChainConfig(name="ethereum", display_name="Ethereum", chain_id=1, cctp_domain=0),
    ChainConfig(name="arbitrum", display_name="Arbitrum", chain_id=42161, cctp_domain=3),
    ChainConfig(name="base", display_name="Base", chain_id=8453, cctp_domain=6),
    ChainConfig(name="optimism", display_name="Optimism", chain_id=10, cctp_domain=2),
    ChainConfig(name="world", display_name="World Chain", chain_id=480, cctp_domain=14),
)


class ChainRegistry:
    """Lookup table over the configured chains.

    Unknown chains, network ids and domains raise ``ValidationError``; no
    lookup falls back to a default domain or contract.
    """

    def __init__(self, chains: Iterable[ChainConfig], settlement_chain: str = "world"):
        self._chains: dict[str, ChainConfig] = {}
        for chain in chains:
            self._chains[chain.name.lower()] = chain

        if settlement_chain.lower() not in self._chains:
            raise ValidationError(f"Settlement chain {settlement_chain} is not configured")
        self._settlement = settlement_chain.lower()

    @classmethod
    def from_settings(cls, settings: Settings) -> "ChainRegistry":
        """Build the registry with RPC URLs and contracts from settings."""
        chains = [
            replace(
                chain,
                rpc_url=settings.get_rpc_url(chain.name) or chain.rpc_url,
                vault_manager=settings.get_yield_manager(chain.name),
            )
            for chain in DEFAULT_CHAINS
        ]
        return cls(chains, settlement_chain=settings.settlement_chain)

    def names(self) -> list[str]:
        return list(self._chains)

    def all(self) -> list[ChainConfig]:
        return list(self._chains.values())

    def get(self, name: str) -> ChainConfig:
        """Get chain configuration by name."""
        chain = self._chains.get((name or "").lower())
        if chain is None:
            raise ValidationError(
                f"Unsupported chain: {name}. Supported chains: {', '.join(self._chains)}"
            )
        return chain

    def find(self, name: str) -> Optional[ChainConfig]:
        return self._chains.get((name or "").lower())

    def by_chain_id(self, chain_id: int) -> ChainConfig:
        """Get chain configuration by EVM network id."""
        for chain in self._chains.values():
            if chain.chain_id == chain_id:
                return chain
        supported = ", ".join(str(c.chain_id) for c in self._chains.values())
        raise ValidationError(f"Unsupported chainId: {chain_id}. Supported chains: {supported}")

    def by_domain(self, domain: int) -> ChainConfig:
        """Get chain configuration by CCTP domain id."""
        for chain in self._chains.values():
            if chain.cctp_domain == domain:
                return chain
        supported = ", ".join(str(c.cctp_domain) for c in self._chains.values())
        raise ValidationError(f"Unsupported domain: {domain}. Supported domains: {supported}")

    def domain_for(self, name: str) -> int:
        """CCTP domain id for a chain name."""
        return self.get(name).cctp_domain

    def vault_manager_for(self, name: str) -> str:
        """YieldManager address for a chain; unconfigured contracts are an error."""
        chain = self.get(name)
        if not chain.has_vault_manager:
            raise ValidationError(f"YieldManager contract not configured for chain: {chain.name}")
        return chain.vault_manager

    @property
    def settlement_chain(self) -> ChainConfig:
        """Chain every withdraw settles on."""
        return self._chains[self._settlement]

    def position_chains(self) -> list[ChainConfig]:
        """Chains that can hold a vault position, in scan order."""
        return [
            chain
            for chain in self._chains.values()
            if chain.name != self._settlement and chain.has_vault_manager
        ]
