"""
Core module - configuration, logging, errors, identity.

Components:
- config: Settings management via pydantic-settings
- logging: Structured logging setup
- errors: Exception taxonomy
- ids: Id generation and timestamps
"""

from engram.core.config import Settings
from engram.core.errors import EngramError, StorageError

__all__ = ["Settings", "EngramError", "StorageError"]
