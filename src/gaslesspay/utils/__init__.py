"""Utility modules for gaslesspay."""

from gaslesspay.utils.locks import KeyedLockRegistry

__all__ = ["KeyedLockRegistry"]
