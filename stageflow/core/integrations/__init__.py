"""
Stageflow Integrations
======================

Clients for external services.
"""

from stageflow.core.integrations.issue_tracker import LinearIssueTracker, ViewerInfo

__all__ = ["LinearIssueTracker", "ViewerInfo"]
