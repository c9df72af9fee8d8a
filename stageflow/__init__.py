"""
Stageflow
=========

Staged, human-gated pipeline runner for AI coding agents.
"""

__version__ = "0.1.0"
