"""
StagePilot - Core Package
=========================

Configuration, persistence, schemas and the pipeline domain.
"""

from stagepilot.core.config import settings
from stagepilot.core.database import Base, get_db

__all__ = ["Base", "get_db", "settings"]
