"""Utility modules for yieldbridge."""

from yieldbridge.utils.locks import AddressLocks, LockTimeoutError

__all__ = ["AddressLocks", "LockTimeoutError"]
