"""Block detection and backoff pacing."""

from .backoff import BackoffPolicy
from .detector import BlockDetector

__all__ = ["BackoffPolicy", "BlockDetector"]
