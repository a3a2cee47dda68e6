"""Shared utilities."""

from signalgate.utils.locks import KeyedLocks

__all__ = ["KeyedLocks"]
