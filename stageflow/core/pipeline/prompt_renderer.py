"""
Prompt Renderer
===============

Pure template substitution between stored stage prompts and the agent.

Supported markup:
- {{field}}                         value of a context field
- {{stages.<Name>.output|summary}}  output/summary of a completed stage
- {{#if field}}...{{/if}}
- {{#if field}}...{{else}}...{{/if}}

Absent fields render as "", except legacy fields that render a fixed
placeholder (old stored templates expect it). Tokens naming fields that
no longer exist are stripped. Output is trimmed.
"""

import re
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from typing import Any, Optional, Union


@dataclass(frozen=True)
class StageOutputEntry:
    """Output and summary of one completed stage, addressable by name."""
    output: str = ""
    summary: str = ""


@dataclass(frozen=True)
class PromptContext:
    """Named bag of optional values available to a prompt template."""
    task_description: str = ""
    previous_output: Optional[str] = None
    user_input: Optional[str] = None
    user_decision: Optional[str] = None
    prior_attempt_output: Optional[str] = None
    stage_summaries: Optional[str] = None
    all_stage_outputs: Optional[str] = None
    available_stages: Optional[str] = None
    stage_outputs: dict[str, StageOutputEntry] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "PromptContext":
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in values.items() if k in known}
        stage_outputs = kwargs.get("stage_outputs")
        if stage_outputs:
            kwargs["stage_outputs"] = {
                name: entry if isinstance(entry, StageOutputEntry) else StageOutputEntry(**entry)
                for name, entry in stage_outputs.items()
            }
        return cls(**kwargs)


# Rendered in place of absent legacy fields
LEGACY_DEFAULTS: dict[str, str] = {
    "previous_output": "(no previous output)",
}

SIMPLE_FIELDS = frozenset(
    f.name for f in fields(PromptContext) if f.name != "stage_outputs"
)

_TOKEN = re.compile(r"\{\{\s*([^{}]*?)\s*\}\}")
_STAGE_PATH = re.compile(r"^stages\.([^.{}]+)\.(output|summary)$")
# Innermost block only: the body may not open another #if
_IF_BLOCK = re.compile(
    r"\{\{#if\s+([\w.]+)\s*\}\}((?:(?!\{\{#if\s).)*?)\{\{/if\}\}",
    re.DOTALL,
)
_ELSE = re.compile(r"\{\{else\}\}")


def _lookup(context: PromptContext, name: str) -> Optional[str]:
    """Raw context value for a field or stage path, None when absent."""
    stage_match = _STAGE_PATH.match(name)
    if stage_match:
        entry = context.stage_outputs.get(stage_match.group(1))
        if entry is None:
            return None
        return entry.output if stage_match.group(2) == "output" else entry.summary
    if name in SIMPLE_FIELDS:
        return getattr(context, name)
    return None


def _resolve_conditionals(template: str, context: PromptContext) -> str:
    def replace(match: re.Match) -> str:
        value = _lookup(context, match.group(1))
        parts = _ELSE.split(match.group(2), maxsplit=1)
        if value:
            return parts[0]
        return parts[1] if len(parts) > 1 else ""

    previous = None
    result = template
    while previous != result:
        previous = result
        result = _IF_BLOCK.sub(replace, result)
    return result


def _substitute(template: str, context: PromptContext) -> str:
    def replace(match: re.Match) -> str:
        name = match.group(1)
        value = _lookup(context, name)
        if value is not None:
            return value
        return LEGACY_DEFAULTS.get(name, "")

    return _TOKEN.sub(replace, template)


def render(
    template: str,
    context: Union[PromptContext, Mapping[str, Any], None] = None,
) -> str:
    """
    Render a stage prompt template.

    Conditionals are resolved first, then every remaining token is
    substituted in a single pass, so values are never re-scanned for
    markup.

    Args:
        template: Stored prompt template
        context: PromptContext or a mapping of field names to values

    Returns:
        Rendered prompt with no {{...}} markup left from the template
    """
    if context is None:
        context = PromptContext()
    elif not isinstance(context, PromptContext):
        context = PromptContext.from_mapping(context)

    result = _resolve_conditionals(template, context)
    result = _substitute(result, context)
    return result.strip()
