"""Process-local metrics exported on ``/metrics``."""

from . import metrics, registry

__all__ = ["metrics", "registry"]
