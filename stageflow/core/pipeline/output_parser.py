"""
Stage Output Parser
===================

Turns agent output into the pieces the pipeline stores:
- the JSON payload hidden in raw agent output (stream lines, fences, prose)
- a stage's own result text (what later stages see as previous_output)
- a short stage summary (what appended context and summaries carry)
"""

import json
import re
from typing import Any, Optional

import structlog

from stageflow.core.models import OutputFormat
from stageflow.core.schemas import resolve_format

logger = structlog.get_logger()


# ==========================================================================
# JSON Extraction
# ==========================================================================

def _is_json_object(text: str) -> bool:
    try:
        return isinstance(json.loads(text), dict)
    except (TypeError, ValueError):
        return False


def extract_json(text: Optional[str]) -> Optional[str]:
    """
    Find the JSON object in agent output.

    Tries, in order: the whole text; `result` events of a JSON-lines
    stream (structured_output, then result); the last agent_message
    item of a JSON-lines stream; the outermost {...} span; the first
    {...} span.

    Returns:
        The JSON text, or None when nothing parses
    """
    if not text:
        return None

    try:
        json.loads(text)
        return text
    except ValueError:
        pass

    last_agent_message: Optional[str] = None
    for line in text.split("\n"):
        try:
            event = json.loads(line)
        except ValueError:
            continue
        if not isinstance(event, dict):
            continue

        if event.get("type") == "result":
            output = event.get("structured_output")
            if output in (None, ""):
                output = event.get("result")
            if output not in (None, ""):
                candidate = output if isinstance(output, str) else json.dumps(output)
                if _is_json_object(candidate):
                    return candidate

        item = event.get("item") or {}
        if event.get("type") == "item.completed" and item.get("type") == "agent_message" and item.get("text"):
            last_agent_message = item["text"]

    if last_agent_message:
        return last_agent_message

    greedy = re.search(r"\{[\s\S]*\}", text)
    if greedy:
        if _is_json_object(greedy.group(0)):
            return greedy.group(0)
        lazy = re.search(r"\{[\s\S]*?\}", text)
        if lazy and _is_json_object(lazy.group(0)):
            return lazy.group(0)

    return None


def _load(raw: str) -> Any:
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return None


def decode_decision(decision: Any) -> Any:
    """User decisions arrive as JSON text or as already-decoded values."""
    if isinstance(decision, str):
        loaded = _load(decision)
        return decision if loaded is None else loaded
    return decision


# ==========================================================================
# Stage Result
# ==========================================================================

def format_selected_approach(decision: Any) -> str:
    """Render the selected option of an options stage as Markdown."""
    selected = decode_decision(decision)
    if not isinstance(selected, list) or not selected or not isinstance(selected[0], dict):
        return decision if isinstance(decision, str) else json.dumps(decision)

    approach = selected[0]
    text = f"## Selected Approach: {approach.get('title', '')}\n\n{approach.get('description', '')}"
    if approach.get("pros"):
        text += "\n\n**Pros:**\n" + "\n".join(f"- {p}" for p in approach["pros"])
    if approach.get("cons"):
        text += "\n\n**Cons:**\n" + "\n".join(f"- {c}" for c in approach["cons"])
    return text


def extract_stage_output(
    output_format: OutputFormat,
    output: Optional[str],
    decision: Any = None,
) -> str:
    """
    Clean, human-readable result of a stage.

    Args:
        output_format: Template output format (auto is resolved here)
        output: parsed_output if present, else raw_output
        decision: User decision captured at approval

    Returns:
        Text that later stages receive as this stage's output
    """
    raw = output or ""
    fmt = resolve_format(output_format, raw)
    data = _load(raw)
    data = data if isinstance(data, dict) else {}

    if fmt == OutputFormat.RESEARCH:
        return data.get("research") or raw
    if fmt == OutputFormat.PLAN:
        return data.get("plan") or raw
    if fmt == OutputFormat.OPTIONS:
        return format_selected_approach(decision) if decision else raw
    if fmt == OutputFormat.FINDINGS:
        return data.get("summary") or raw
    if fmt == OutputFormat.TASK_SPLITTING:
        return data.get("reasoning") or raw
    if fmt == OutputFormat.PR_REVIEW:
        return raw or "PR Review completed"
    if fmt == OutputFormat.MERGE:
        return raw or "Branch merged successfully"
    if fmt == OutputFormat.INTERACTIVE_TERMINAL:
        return raw or "Interactive session completed"
    return raw


# ==========================================================================
# Stage Summary
# ==========================================================================

_HEADER_LINE = re.compile(r"^#+\s+.*$", re.MULTILINE)
_SENTENCE = re.compile(r"[^.!?]*[.!?]+")
_SUMMARY_SECTION = re.compile(
    r"(?:^|\n)#+\s*(?:Summary|Changes Made|What (?:was|I) (?:changed|did))[^\n]*\n"
    r"([\s\S]{10,500}?)(?:\n#|\n---|\n\*\*|$)",
    re.IGNORECASE,
)


def truncate_to_sentences(text: str, n: int) -> str:
    """First `n` sentences of `text`, Markdown headers removed."""
    cleaned = _HEADER_LINE.sub("", text).strip()
    sentences = _SENTENCE.findall(cleaned)
    if not sentences:
        return cleaned[:300].strip()
    return "".join(sentences[:n]).strip()


def extract_implementation_summary(raw: str) -> Optional[str]:
    """Summary of free-text output: a Summary section, else the last paragraph."""
    if not raw.strip():
        return None

    match = _SUMMARY_SECTION.search(raw)
    if match:
        return truncate_to_sentences(match.group(1).strip(), 3)

    paragraphs = [p for p in re.split(r"\n\n+", raw) if len(p.strip()) > 20]
    if paragraphs:
        return truncate_to_sentences(paragraphs[-1].strip(), 3)

    return truncate_to_sentences(raw, 3)


def extract_stage_summary(
    output_format: OutputFormat,
    output: Optional[str],
    decision: Any = None,
) -> Optional[str]:
    """Short summary of a stage's output, None when there is nothing to say."""
    raw = output or ""
    if not raw.strip():
        return "Interactive session completed" if output_format == OutputFormat.INTERACTIVE_TERMINAL else None

    fmt = resolve_format(output_format, raw)
    data = _load(raw)
    data = data if isinstance(data, dict) else None

    if fmt == OutputFormat.RESEARCH and data and data.get("research"):
        return truncate_to_sentences(data["research"], 3)
    if fmt == OutputFormat.PLAN and data and data.get("plan"):
        return truncate_to_sentences(data["plan"], 3)
    if fmt == OutputFormat.OPTIONS and decision:
        selected = decode_decision(decision)
        if isinstance(selected, list) and selected and isinstance(selected[0], dict):
            approach = selected[0]
            return (
                f"Selected: {approach.get('title', '')} - "
                f"{truncate_to_sentences(approach.get('description', ''), 2)}"
            )
    if fmt == OutputFormat.FINDINGS and data and data.get("summary"):
        return data["summary"]
    if fmt == OutputFormat.TASK_SPLITTING and data is not None:
        count = len(data.get("proposed_tasks") or [])
        summary = f"Task split into {count} subtask{'s' if count != 1 else ''}."
        if data.get("reasoning"):
            return f"{summary} {truncate_to_sentences(data['reasoning'], 2)}"
        return summary
    if fmt == OutputFormat.TEXT:
        return extract_implementation_summary(raw)
    return truncate_to_sentences(raw, 3)
