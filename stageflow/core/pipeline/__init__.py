"""
Stageflow Pipeline
==================

A task moves through an ordered list of stages. Each stage renders a
prompt from accumulated context, runs the agent, parses the output and
waits at a gate for the user to approve or reject it.

Components:
- PipelineOrchestrator: task and stage state machine
- PipelineEvents: status-change notifications
- PrReviewTracker: per-comment fix tracking for PR review stages
- render: prompt template rendering
- validate_gate: approval gate rules
"""

from stageflow.core.pipeline.events import EventType, PipelineEvent, PipelineEvents
from stageflow.core.pipeline.gates import is_gate_satisfied, validate_gate
from stageflow.core.pipeline.orchestrator import PipelineOrchestrator
from stageflow.core.pipeline.pr_review import PrReviewTracker, ReviewComment
from stageflow.core.pipeline.prompt_renderer import PromptContext, render

__all__ = [
    "EventType",
    "PipelineEvent",
    "PipelineEvents",
    "PipelineOrchestrator",
    "PrReviewTracker",
    "PromptContext",
    "ReviewComment",
    "is_gate_satisfied",
    "render",
    "validate_gate",
]
