"""Application configuration using pydantic-settings.

Chain RPC endpoints and YieldManager addresses are read per chain; the
attestation and scheduler cadence knobs live here too.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ======================
    # Database
    # ======================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/yieldbridge.db",
        description="Database connection URL",
    )

    # ======================
    # API
    # ======================
    api_host: str = Field(default="0.0.0.0", description="API server host")
    api_port: int = Field(default=3000, description="API server port")

    # ======================
    # Environment
    # ======================
    environment: str = Field(default="development", description="Runtime environment")
    debug: bool = Field(default=False, description="Enable debug mode")

    # ======================
    # Admin
    # ======================
    admin_token: str = Field(default="", description="Admin API token for protected endpoints")

    # ======================
    # Relayer
    # ======================
    relayer_private_key: Optional[str] = Field(
        default=None, description="Private key that signs vault-manager transactions"
    )
    dry_run: bool = Field(default=True, description="Enable dry-run mode (no real transactions)")

    # ======================
    # Chain RPC Endpoints
    # ======================
    ethereum_rpc_url: str = Field(
        default="https://ethereum-rpc.publicnode.com", description="Ethereum RPC URL"
    )
    optimism_rpc_url: str = Field(
        default="https://optimism-rpc.publicnode.com", description="Optimism RPC URL"
    )
    arbitrum_rpc_url: str = Field(
        default="https://arbitrum-one-rpc.publicnode.com", description="Arbitrum RPC URL"
    )
    base_rpc_url: str = Field(
        default="https://base-rpc.publicnode.com", description="Base RPC URL"
    )
    world_rpc_url: str = Field(
        default="https://worldchain-mainnet.g.alchemy.com/public", description="World Chain RPC URL"
    )

    # ======================
    # YieldManager contracts
    # ======================
    yield_manager_ethereum: str = Field(default=ZERO_ADDRESS)
    yield_manager_optimism: str = Field(default=ZERO_ADDRESS)
    yield_manager_arbitrum: str = Field(default=ZERO_ADDRESS)
    yield_manager_base: str = Field(default=ZERO_ADDRESS)
    yield_manager_world: str = Field(default=ZERO_ADDRESS)

    settlement_chain: str = Field(
        default="world", description="Chain where every withdraw is settled"
    )

    # ======================
    # CCTP attestation (Circle Iris)
    # ======================
    attestation_api_url: str = Field(
        default="https://iris-api.circle.com", description="Iris API base URL (mainnet)"
    )
    attestation_sandbox_api_url: str = Field(
        default="https://iris-api-sandbox.circle.com", description="Iris API base URL (testnet)"
    )
    attestation_http_timeout: float = Field(default=15.0)
    attestation_poll_attempts: int = Field(
        default=60, description="Polls per resume before giving up for this round"
    )
    attestation_poll_delay: float = Field(
        default=10.0, description="Seconds between attestation polls"
    )

    # ======================
    # Transactions
    # ======================
    tx_confirmation_timeout: float = Field(
        default=60.0, description="Seconds to wait for a receipt"
    )
    tx_poll_interval: float = Field(default=2.0, description="Seconds between receipt polls")
    rpc_timeout: float = Field(default=30.0)

    # ======================
    # Resumption scheduler
    # ======================
    scheduler_enabled: bool = Field(default=True)
    scheduler_interval: float = Field(
        default=120.0, description="Seconds between pending-attestation sweeps"
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    @property
    def attestation_base_url(self) -> str:
        """Iris API base URL for the current environment."""
        if self.is_production:
            return self.attestation_api_url
        return self.attestation_sandbox_api_url

    def get_rpc_url(self, chain: str) -> str:
        """Get RPC URL for a specific chain."""
        return getattr(self, f"{chain.lower()}_rpc_url", "")

    def get_yield_manager(self, chain: str) -> str:
        """Get the YieldManager contract address for a chain."""
        return getattr(self, f"yield_manager_{chain.lower()}", ZERO_ADDRESS)

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        return {
            "environment": self.environment,
            "debug": self.debug,
            "dry_run": self.dry_run,
            "api_host": self.api_host,
            "api_port": self.api_port,
            "database_url": self._redact_url(self.database_url),
            "relayer_key": "***" if self.relayer_private_key else "(not set)",
            "admin_token": "***" if self.admin_token else "(not set)",
            "settlement_chain": self.settlement_chain,
            "attestation": {
                "base_url": self.attestation_base_url,
                "poll_attempts": self.attestation_poll_attempts,
                "poll_delay": self.attestation_poll_delay,
            },
            "scheduler": {
                "enabled": self.scheduler_enabled,
                "interval": self.scheduler_interval,
            },
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact sensitive parts of database URL."""
        if "://" in url and "@" in url:
            proto, rest = url.split("://", 1)
            if "@" in rest:
                creds, host = rest.rsplit("@", 1)
                if ":" in creds:
                    user, _ = creds.split(":", 1)
                    return f"{proto}://{user}:***@{host}"
        return url


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
