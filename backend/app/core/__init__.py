"""Core utilities for the Nexus backend."""

from .locks import KeyedLock
from .retry import run_with_retry

__all__ = ["KeyedLock", "run_with_retry"]
