"""HTTP server for the Companion Memory store."""

from .app import create_app, run_server
from .config import CompanionMemoryConfig

__all__ = ["create_app", "run_server", "CompanionMemoryConfig"]
