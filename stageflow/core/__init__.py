"""
Stageflow - Core Package
========================

Configuration, storage, models, and schemas.
"""

from stageflow.core.config import settings
from stageflow.core.database import AppBase, DatabaseRegistry, ProjectBase, ProjectDatabase

__all__ = ["AppBase", "DatabaseRegistry", "ProjectBase", "ProjectDatabase", "settings"]
