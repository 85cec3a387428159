"""yieldbridge - cross-chain USDC vault deposits and withdraws over CCTP."""

__version__ = "0.1.0"
