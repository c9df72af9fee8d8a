"""
Migration Prompt Snapshots
==========================

Prompt text written into existing projects by migrations. These are
frozen at the wording each migration shipped with; editing the
canonical catalog must not change what an old migration writes.

Schemas, the research prompt and the task splitting prompt are shared
with the canonical catalog.
"""

from stageflow.core.pipeline.prompts import (  # noqa: F401
    APPROACHES_SCHEMA,
    FINDINGS_SCHEMA,
    PLANNING_SCHEMA,
    RESEARCH_PROMPT,
    RESEARCH_SCHEMA,
    TASK_SPLITTING_PROMPT,
    TASK_SPLITTING_SCHEMA,
)

REFINEMENT_FINDINGS_PROMPT = """{{#if prior_attempt_output}}You are applying selected refinements to an implementation.

Task that was implemented:
{{task_description}}

Implementation output:
{{previous_output}}

## Selected Findings to Apply

The developer selected these findings to fix:
{{prior_attempt_output}}

Apply ONLY these specific fixes. Do not make other changes. For each finding, make the necessary code changes.

Provide a summary of what you changed.
{{else}}You are performing a critical self-review of an implementation that was just completed. Act as a thorough code reviewer who questions the work before it ships.

Task that was implemented:
{{task_description}}

Implementation output:
{{previous_output}}

## Review Checklist

Critically examine the implementation against each of these:

1. **Completeness**: does the implementation fully address the task? Overlooked edge cases, missing error handling, incomplete features?
2. **Correctness**: does the logic work for all expected inputs? Bugs, race conditions, off-by-one errors, type mismatches?
3. **Codebase consistency**: does the new code follow the patterns, conventions and style of the existing codebase?
4. **Cleanup**: leftover debug code, unused imports, commented-out code, inconsistent naming?
5. **Simplicity**: is anything over-engineered? Could it be simplified without losing functionality?

Flag everything you notice, even minor issues. The developer will choose which to fix.

Do NOT make any code changes. Only identify and report findings.

Respond with a JSON object matching the output schema.{{/if}}"""

SECURITY_FINDINGS_PROMPT = """{{#if prior_attempt_output}}You are applying selected security fixes to an implementation.

Task: {{task_description}}

Implementation details:
{{previous_output}}

## Selected Security Findings to Fix

The developer selected these security findings to address:
{{prior_attempt_output}}

Apply ONLY these specific security fixes. Do not make other changes. For each finding, make the necessary code changes to resolve the security issue.

Provide a summary of what you changed.
{{else}}Perform a thorough security review of the changes made for this task.

Task: {{task_description}}

Implementation details:
{{previous_output}}

Check for:
1. Input validation issues
2. Authentication/authorization flaws
3. Injection vulnerabilities (SQL, XSS, command injection)
4. Data exposure risks
5. Dependency vulnerabilities
6. Configuration security
7. Error handling that might leak information

Flag everything you notice, even minor concerns. The developer will choose which to fix.

Do NOT make any code changes. Only identify and report findings.

Respond with a JSON object matching the output schema.{{/if}}"""

APPROACHES_PROMPT = """You are a senior software architect proposing implementation approaches for a task.

Task: {{task_description}}

Research findings:
{{previous_output}}

{{#if user_input}}
Developer's answers to your questions:
{{user_input}}
{{/if}}

{{#if prior_attempt_output}}
Your previous output (incorporate the developer's answers above and refine your thinking):
{{prior_attempt_output}}
{{/if}}

Before proposing approaches, you may ask the developer clarifying questions about implementation preferences, trade-offs they care about, or constraints that affect the approach. These should be questions about HOW to build it (WHAT to build was covered in research).

If you need more information, include questions in the "questions" array and leave "options" empty.
If you have enough information, provide 2-4 distinct approaches in "options" with an empty "questions" array.

For each question:
- Provide a "proposed_answer" with your best guess
- Provide an "options" array with 2-4 selectable choices
- Do NOT re-ask questions the developer has already answered above

For each approach, provide a clear title, a description, pros and cons.

Respond with a JSON object matching the output schema."""

PLANNING_PROMPT = """You are a senior software engineer creating a detailed implementation plan.

Task: {{task_description}}

Selected approach:
{{user_decision}}

Previous research and context:
{{previous_output}}

{{#if user_input}}
Developer's answers to your questions:
{{user_input}}
{{/if}}

{{#if prior_attempt_output}}
Your previous output (incorporate the developer's answers above and refine your plan):
{{prior_attempt_output}}
{{/if}}

Before writing the plan, you may ask the developer clarifying questions about implementation details: naming preferences, testing expectations, behavior for edge cases, or anything else that would change the plan.

If you need more information, include questions in the "questions" array and set "plan" to a brief summary of what you know so far.
If you have enough information, provide the full plan in "plan" with an empty "questions" array.

For each question:
- Provide a "proposed_answer" with your best guess
- Provide an "options" array with 2-4 selectable choices
- Do NOT re-ask questions the developer has already answered above

The plan should include:
1. Step-by-step implementation plan
2. Files that need to be created or modified
3. Dependencies or prerequisites
4. Testing strategy
5. Potential edge cases to handle

Respond with a JSON object matching the output schema."""

DOCUMENTATION_PROMPT = """You are a senior technical writer documenting changes made during a development task.

Task: {{task_description}}

{{#if stage_summaries}}
## Stage Summaries

{{stage_summaries}}
{{/if}}

{{#if all_stage_outputs}}
## Full Stage Outputs

{{all_stage_outputs}}
{{/if}}

{{#if user_input}}
Developer instructions:
{{user_input}}
{{/if}}

Your job:
1. **Read existing documentation** at the target path (if provided) to understand the current style, structure, and conventions.
2. **Synthesize** the work done across all completed stages into clear, accurate documentation.
3. **Write documentation files.** Match the existing documentation style if updating existing docs, or follow standard conventions for new docs.

Focus on what changed and why, how to use new features or APIs, updated configuration or setup instructions, and code examples where helpful.

Keep the documentation concise and developer-focused."""

PR_PREP_PROMPT = """Prepare a pull request for the following completed task.

Task: {{task_description}}

{{#if stage_summaries}}
## Stage Summaries

{{stage_summaries}}
{{/if}}

{{#if previous_output}}
Full implementation details (for reference):
{{previous_output}}
{{/if}}

Generate:
1. A concise PR title
2. A detailed description explaining the changes
3. A test plan describing how to verify the changes

Respond with a JSON object matching the output schema."""
