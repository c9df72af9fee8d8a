"""
Pipeline Orchestrator Tests
===========================

End-to-end behavior of the stage state machine against a real project
database, with a scripted agent and recorded version control.
"""

import json

import pytest
import pytest_asyncio

from stageflow.core.errors import (
    AgentExecutionError,
    GateViolationError,
    InvalidTransitionError,
    NotFoundError,
)
from stageflow.core.models import (
    ExecutionStatus,
    OutputFormat,
    StageExecution,
    StageTemplate,
    TaskStatus,
)
from stageflow.core.pipeline.collaborators import AgentResult, AgentTelemetry
from stageflow.core.pipeline.events import EventType
from stageflow.core.pipeline.orchestrator import (
    CONTEXT_SEPARATOR,
    FOLLOW_UP_HEADER,
    INTERRUPTED,
    STOPPED_BY_USER,
)
from stageflow.core.pipeline.templates import COMPLETION_STRATEGY_KEY, RESEARCH_TOOLS


RESEARCH_TEXT = "The auth module lives in auth.py. It issues JWT tokens."

RESEARCH_OUTPUT = json.dumps({
    "research": RESEARCH_TEXT,
    "questions": [],
    "suggested_stages": [
        {"name": "Planning", "reason": "Touches several modules"},
        {"name": "Implementation"},
    ],
})

APPROACHES_OUTPUT = json.dumps({
    "options": [
        {"id": "a", "title": "Middleware", "description": "Check tokens in middleware.", "pros": ["Central"]},
        {"id": "b", "title": "Decorator", "description": "Check tokens per route."},
    ],
    "questions": [],
})

PLAN_OUTPUT = json.dumps({"plan": "1. Add the route. 2. Add tests.", "questions": []})

IMPLEMENTATION_OUTPUT = (
    "Implemented login.\n\n"
    "## Summary\n"
    "Added a login endpoint with JWT tokens. Wrote tests."
)

FINDINGS = [
    {"id": "f1", "title": "SQL injection in login", "severity": "critical"},
    {"id": "f2", "title": "Unused import", "severity": "info"},
    {"id": "f3", "title": "Missing input validation", "severity": "warning"},
]

FINDINGS_OUTPUT = json.dumps({"summary": "Three issues found.", "findings": FINDINGS})

FIX_OUTPUT = "Fixed the SQL injection in login. Added input validation."

SPLIT_OUTPUT = json.dumps({
    "reasoning": "Backend and UI are independent.",
    "proposed_tasks": [
        {"id": "1", "title": "Login API", "description": "Endpoint and tokens"},
        {"id": "2", "title": "Login form"},
    ],
})

PR_OUTPUT = json.dumps({
    "fields": {
        "title": "Add login",
        "description": "Adds JWT login.",
        "test_plan": "Run pytest",
    },
})


@pytest_asyncio.fixture
async def task(orchestrator, project):
    return await orchestrator.create_task(
        project.id,
        "Add login",
        "Users need to log in",
        branch_name="feature/login",
        worktree_path="/work/login",
    )


async def _latest(orchestrator, task_id, template_id) -> StageExecution:
    return (await orchestrator.list_executions(task_id, template_id))[-1]


# ==========================================================================
# Task Creation
# ==========================================================================

class TestCreateTask:
    async def test_starts_pending_on_first_stage(self, orchestrator, task, stages, names):
        assert task.status == TaskStatus.PENDING
        assert task.current_stage_id == stages["Research"].id

        assert names(await orchestrator.get_task_stages(task.id)) == [
            "Research",
            "High-Level Approaches",
            "Planning",
            "Implementation",
            "Refinement",
            "Security Review",
            "Documentation",
            "PR Preparation",
            "PR Review",
        ]

    async def test_merge_strategy_ends_with_merge(self, orchestrator, projects, project, names):
        await projects.set_setting(COMPLETION_STRATEGY_KEY, "merge", project.id)

        task = await orchestrator.create_task(project.id, "Fix typo")

        stage_names = names(await orchestrator.get_task_stages(task.id))
        assert stage_names[-1] == "Merge"
        assert "PR Review" not in stage_names

    async def test_emits_task_created(self, task, events):
        _, received = events
        assert received[0].type == EventType.TASK_CREATED
        assert received[0].task_id == task.id

    async def test_list_tasks_hides_archived(self, orchestrator, project, task, vcs):
        other = await orchestrator.create_task(project.id, "Other")
        await orchestrator.archive_task(task.id)

        assert [t.id for t in await orchestrator.list_tasks(project.id)] == [other.id]
        assert len(await orchestrator.list_tasks(project.id, include_archived=True)) == 2
        assert vcs.removed == ["/work/login"]


# ==========================================================================
# Running Stages
# ==========================================================================

class TestRunStage:
    async def test_research_awaits_user(self, orchestrator, task, stages, agent):
        agent.queue(RESEARCH_OUTPUT)

        execution = await orchestrator.run_stage(task.id, stages["Research"].id, user_input="Use JWT")

        assert execution.status == ExecutionStatus.AWAITING_USER
        assert execution.attempt_number == 1
        assert json.loads(execution.parsed_output)["research"] == RESEARCH_TEXT
        assert (await orchestrator.get_task(task.id)).status == TaskStatus.IN_PROGRESS

        request = agent.requests[0]
        assert "Add login" in request.prompt
        assert "Use JWT" in request.prompt
        assert '- "Planning":' in request.prompt
        assert request.output_format == OutputFormat.RESEARCH.value
        assert request.allowed_tools == RESEARCH_TOOLS
        assert request.working_dir == "/work/login"
        assert execution.input_prompt == request.prompt

    async def test_records_telemetry(self, orchestrator, task, stages, agent):
        agent.queue(AgentResult(
            raw_output=RESEARCH_OUTPUT,
            session_id="sess-1",
            telemetry=AgentTelemetry(input_tokens=1200, output_tokens=300, total_cost_usd=0.02, num_turns=4),
        ))

        execution = await orchestrator.run_stage(task.id, stages["Research"].id)

        assert execution.session_id == "sess-1"
        assert execution.input_tokens == 1200
        assert execution.output_tokens == 300
        assert execution.total_cost_usd == 0.02
        assert execution.num_turns == 4
        assert execution.completed_at is not None

    async def test_active_attempt_blocks_new_run(self, orchestrator, task, stages, agent):
        agent.queue(RESEARCH_OUTPUT)
        await orchestrator.run_stage(task.id, stages["Research"].id)

        with pytest.raises(InvalidTransitionError):
            await orchestrator.run_stage(task.id, stages["Research"].id)

    async def test_requires_agent_runner(self, projects, project, task, stages):
        orchestrator = await projects.orchestrator(project.id)
        with pytest.raises(AgentExecutionError):
            await orchestrator.run_stage(task.id, stages["Research"].id)

    async def test_emits_status_changes(self, orchestrator, task, stages, agent, events):
        _, received = events
        agent.queue(RESEARCH_OUTPUT)

        await orchestrator.run_stage(task.id, stages["Research"].id)

        assert [(e.type, e.status) for e in received] == [
            (EventType.TASK_CREATED, "pending"),
            (EventType.TASK_STATUS_CHANGED, "in_progress"),
            (EventType.STAGE_STATUS_CHANGED, "running"),
            (EventType.STAGE_STATUS_CHANGED, "awaiting_user"),
        ]


class TestStageOrder:
    async def test_cannot_skip_ahead(self, orchestrator, task, stages, agent):
        with pytest.raises(InvalidTransitionError):
            await orchestrator.run_stage(task.id, stages["Implementation"].id)

        assert (await orchestrator.get_task(task.id)).current_stage_id == stages["Research"].id
        assert await orchestrator.list_executions(task.id) == []
        assert agent.requests == []

    async def test_cannot_rerun_an_approved_stage(self, orchestrator, task, stages, agent):
        agent.queue(RESEARCH_OUTPUT)
        await orchestrator.run_stage(task.id, stages["Research"].id)
        await orchestrator.approve_stage(task.id, stages["Research"].id)

        with pytest.raises(InvalidTransitionError):
            await orchestrator.run_stage(task.id, stages["Research"].id)

        assert (await orchestrator.get_task(task.id)).current_stage_id == stages["Planning"].id

    async def test_stage_outside_the_task_cannot_run(self, orchestrator, task, stages, place_task):
        await place_task(task.id, stages["Task Splitting"])

        with pytest.raises(InvalidTransitionError):
            await orchestrator.run_stage(task.id, stages["Task Splitting"].id)

    async def test_approval_advances_to_the_next_task_stage(self, orchestrator, task, stages, agent, place_task):
        await place_task(task.id, stages["Security Review"])
        agent.queue(json.dumps({"summary": "Clean.", "findings": []}))
        await orchestrator.run_stage(task.id, stages["Security Review"].id)

        await orchestrator.approve_stage(task.id, stages["Security Review"].id)

        assert (await orchestrator.get_task(task.id)).current_stage_id == stages["Documentation"].id


class TestFailures:
    async def test_non_zero_exit_fails_attempt_and_task(self, orchestrator, task, stages, agent, place_task):
        await place_task(task.id, stages["Implementation"])
        agent.queue(AgentResult(raw_output="partial", exit_code=1))

        execution = await orchestrator.run_stage(task.id, stages["Implementation"].id)

        assert execution.status == ExecutionStatus.FAILED
        assert execution.error_message == "Process exited with code 1"
        assert execution.raw_output == "partial"
        assert (await orchestrator.get_task(task.id)).status == TaskStatus.FAILED

    async def test_failed_stage_can_be_retried(self, orchestrator, task, stages, agent, place_task):
        await place_task(task.id, stages["Implementation"])
        agent.queue(AgentResult(raw_output="partial", exit_code=1), IMPLEMENTATION_OUTPUT)
        await orchestrator.run_stage(task.id, stages["Implementation"].id)

        retry = await orchestrator.run_stage(task.id, stages["Implementation"].id)

        assert retry.attempt_number == 2
        assert retry.status == ExecutionStatus.AWAITING_USER
        assert (await orchestrator.get_task(task.id)).status == TaskStatus.IN_PROGRESS

    async def test_agent_error_is_recorded(self, orchestrator, task, stages, agent, place_task):
        await place_task(task.id, stages["Implementation"])
        agent.queue(AgentExecutionError("agent binary not found", exit_code=127))

        execution = await orchestrator.run_stage(task.id, stages["Implementation"].id)

        assert execution.status == ExecutionStatus.FAILED
        assert execution.error_message == "agent binary not found"

    async def test_malformed_structured_output(self, orchestrator, task, stages, agent, place_task):
        await place_task(task.id, stages["Planning"])
        agent.queue("I think we should add a route.")

        execution = await orchestrator.run_stage(task.id, stages["Planning"].id)

        assert execution.status == ExecutionStatus.FAILED
        assert "No JSON output" in execution.error_message

    async def test_output_not_matching_format(self, orchestrator, task, stages, agent, place_task):
        await place_task(task.id, stages["Planning"])
        agent.queue(json.dumps({"steps": ["a"]}))

        execution = await orchestrator.run_stage(task.id, stages["Planning"].id)

        assert execution.status == ExecutionStatus.FAILED
        assert "plan" in execution.error_message

    async def test_cancel_while_running(self, orchestrator, task, stages, agent, place_task):
        await place_task(task.id, stages["Implementation"])

        async def cancel_midway(request):
            await orchestrator.cancel_execution(request.execution_id)
            return AgentResult(raw_output="late output")

        agent.queue(cancel_midway)

        execution = await orchestrator.run_stage(task.id, stages["Implementation"].id)

        assert execution.status == ExecutionStatus.FAILED
        assert execution.error_message == STOPPED_BY_USER
        assert execution.raw_output is None
        assert (await orchestrator.get_task(task.id)).status == TaskStatus.FAILED

    async def test_recover_interrupted(self, orchestrator, projects, project, task, stages):
        db = await projects.database(project.id)

        async def _stale(session):
            session.add(StageExecution(
                task_id=task.id,
                stage_template_id=stages["Implementation"].id,
                status=ExecutionStatus.RUNNING,
                input_prompt="Implement",
            ))

        await db.run(_stale)

        recovered = await orchestrator.recover_interrupted(task.id)

        assert len(recovered) == 1
        assert recovered[0].status == ExecutionStatus.FAILED
        assert recovered[0].error_message == INTERRUPTED


# ==========================================================================
# Gating
# ==========================================================================

class TestApproval:
    async def test_research_selects_suggested_stages(self, orchestrator, task, stages, agent, names):
        agent.queue(RESEARCH_OUTPUT)
        await orchestrator.run_stage(task.id, stages["Research"].id)

        execution = await orchestrator.approve_stage(task.id, stages["Research"].id)

        assert execution.status == ExecutionStatus.APPROVED
        assert execution.stage_result == RESEARCH_TEXT
        assert names(await orchestrator.get_task_stages(task.id)) == [
            "Research", "Planning", "Implementation", "PR Review",
        ]
        updated = await orchestrator.get_task(task.id)
        assert updated.current_stage_id == stages["Planning"].id
        assert updated.status == TaskStatus.IN_PROGRESS

    async def test_explicit_stage_selection(self, orchestrator, task, stages, agent, names):
        agent.queue(RESEARCH_OUTPUT)
        await orchestrator.run_stage(task.id, stages["Research"].id)

        await orchestrator.approve_stage(
            task.id,
            stages["Research"].id,
            selected_stages=["Task Splitting", "Implementation"],
        )

        assert names(await orchestrator.get_task_stages(task.id)) == [
            "Research", "Task Splitting", "Implementation", "PR Review",
        ]
        assert (await orchestrator.get_task(task.id)).current_stage_id == stages["Task Splitting"].id

    async def test_gate_violation_keeps_stage_waiting(self, orchestrator, task, stages, agent, place_task):
        options = json.loads(APPROACHES_OUTPUT)["options"]
        agent.queue(APPROACHES_OUTPUT)
        approaches = stages["High-Level Approaches"]
        await place_task(task.id, approaches)
        await orchestrator.run_stage(task.id, approaches.id)

        with pytest.raises(GateViolationError):
            await orchestrator.approve_stage(task.id, approaches.id, decision=options)

        assert (await _latest(orchestrator, task.id, approaches.id)).status == ExecutionStatus.AWAITING_USER

        execution = await orchestrator.approve_stage(task.id, approaches.id, decision=options[:1])
        assert execution.status == ExecutionStatus.APPROVED
        assert execution.stage_result.startswith("## Selected Approach: Middleware")

    async def test_selected_approach_reaches_planning(self, orchestrator, task, stages, agent, place_task):
        options = json.loads(APPROACHES_OUTPUT)["options"]
        agent.queue(APPROACHES_OUTPUT, PLAN_OUTPUT)
        approaches = stages["High-Level Approaches"]
        await place_task(task.id, approaches)
        await orchestrator.run_stage(task.id, approaches.id)
        await orchestrator.approve_stage(task.id, approaches.id, decision=options[:1])

        await orchestrator.run_stage(task.id, stages["Planning"].id)

        prompt = agent.last_prompt
        assert "## Selected Approach: Middleware" in prompt
        assert "Check tokens in middleware." in prompt

    async def test_cannot_approve_twice(self, orchestrator, task, stages, agent):
        agent.queue(RESEARCH_OUTPUT)
        await orchestrator.run_stage(task.id, stages["Research"].id)
        await orchestrator.approve_stage(task.id, stages["Research"].id)

        with pytest.raises(InvalidTransitionError):
            await orchestrator.approve_stage(task.id, stages["Research"].id)

    async def test_terminal_stage_completes_task(self, orchestrator, task, stages, agent, events, place_task):
        _, received = events
        await place_task(task.id, stages["PR Review"])
        agent.queue("Reviewed and addressed all comments.")
        await orchestrator.run_stage(task.id, stages["PR Review"].id)

        await orchestrator.approve_stage(task.id, stages["PR Review"].id)

        completed = await orchestrator.get_task(task.id)
        assert completed.status == TaskStatus.COMPLETED
        assert completed.current_stage_id is None
        assert (EventType.TASK_STATUS_CHANGED, "completed") in [(e.type, e.status) for e in received]

    async def test_interactive_stage_is_approved_directly(self, orchestrator, projects, project, agent, place_task):
        db = await projects.database(project.id)

        async def _add(session):
            template = StageTemplate(
                project_id=project.id,
                name="Pairing",
                sort_order=11,
                output_format=OutputFormat.INTERACTIVE_TERMINAL,
            )
            session.add(template)
            await session.flush()
            return template

        pairing = await db.run(_add)
        task = await orchestrator.create_task(project.id, "Pair on login")
        await place_task(task.id, pairing)
        agent.queue(AgentResult(raw_output=""))

        execution = await orchestrator.run_stage(task.id, pairing.id)

        assert execution.status == ExecutionStatus.APPROVED
        assert execution.stage_result == "Interactive session completed"
        assert (await orchestrator.get_task(task.id)).status == TaskStatus.COMPLETED


class TestRejection:
    async def test_reject_then_answer_follow_up(self, orchestrator, task, stages, agent):
        research = stages["Research"]
        agent.queue(AgentResult(raw_output=RESEARCH_OUTPUT, session_id="sess-1"), RESEARCH_OUTPUT)
        await orchestrator.run_stage(task.id, research.id, user_input="Use JWT")

        rejected = await orchestrator.reject_stage(task.id, research.id, feedback="Too shallow")

        assert rejected.status == ExecutionStatus.FAILED
        assert rejected.error_message == "Rejected by user: Too shallow"
        assert (await orchestrator.get_task(task.id)).status == TaskStatus.IN_PROGRESS

        retry = await orchestrator.run_stage(task.id, research.id, user_input="Sessions expire after 1h")

        assert retry.attempt_number == 2
        request = agent.requests[-1]
        assert request.session_id == "sess-1"
        assert f"Use JWT{CONTEXT_SEPARATOR}{FOLLOW_UP_HEADER}\nSessions expire after 1h" in request.prompt
        assert "Previous attempt failed: Rejected by user: Too shallow" in request.prompt

    async def test_only_awaiting_stage_can_be_rejected(self, orchestrator, task, stages):
        with pytest.raises(NotFoundError):
            await orchestrator.reject_stage(task.id, stages["Research"].id)


# ==========================================================================
# Findings
# ==========================================================================

class TestFindings:
    async def _implement(self, orchestrator, task, stages, agent, place_task):
        await place_task(task.id, stages["Implementation"])
        agent.queue(IMPLEMENTATION_OUTPUT)
        await orchestrator.run_stage(task.id, stages["Implementation"].id)
        await orchestrator.approve_stage(task.id, stages["Implementation"].id)

    async def test_selected_findings_drive_fix_phase(self, orchestrator, task, stages, agent, vcs, place_task):
        refinement = stages["Refinement"]
        await self._implement(orchestrator, task, stages, agent, place_task)
        agent.queue(FINDINGS_OUTPUT, FIX_OUTPUT)
        await orchestrator.run_stage(task.id, refinement.id)
        assert "You are performing a critical self-review" in agent.last_prompt

        selected = [FINDINGS[0], FINDINGS[2]]
        fix = await orchestrator.approve_stage(task.id, refinement.id, decision=selected)

        assert fix.attempt_number == 2
        assert fix.status == ExecutionStatus.AWAITING_USER
        review = (await orchestrator.list_executions(task.id, refinement.id))[0]
        assert review.status == ExecutionStatus.APPROVED
        assert review.user_decision == json.dumps(selected)
        assert "You are applying selected refinements" in agent.last_prompt
        assert json.dumps(selected) in agent.last_prompt

        approved = await orchestrator.approve_stage(task.id, refinement.id)

        assert approved.stage_result == f"{IMPLEMENTATION_OUTPUT}{CONTEXT_SEPARATOR}{FIX_OUTPUT}"
        assert await orchestrator.get_accumulated_context(task.id) == approved.stage_result
        assert vcs.commits == [("/work/login", "feat: Add login"), ("/work/login", "fix: Add login")]
        assert (await orchestrator.get_task(task.id)).current_stage_id == stages["Security Review"].id

    async def test_select_findings_requires_a_selection(self, orchestrator, task, stages, agent, place_task):
        await place_task(task.id, stages["Refinement"])
        agent.queue(FINDINGS_OUTPUT)
        await orchestrator.run_stage(task.id, stages["Refinement"].id)

        with pytest.raises(GateViolationError):
            await orchestrator.select_findings(task.id, stages["Refinement"].id, [])


# ==========================================================================
# Task Splitting
# ==========================================================================

class TestSplitTask:
    async def _select_splitting(self, orchestrator, task, stages, agent):
        agent.queue(RESEARCH_OUTPUT, SPLIT_OUTPUT)
        await orchestrator.run_stage(task.id, stages["Research"].id)
        await orchestrator.approve_stage(task.id, stages["Research"].id, selected_stages=["Task Splitting"])

    async def test_approving_a_split_creates_children(self, orchestrator, project, task, stages, agent, events):
        _, received = events
        splitting = stages["Task Splitting"]
        await self._select_splitting(orchestrator, task, stages, agent)
        await orchestrator.run_stage(task.id, splitting.id)
        proposed = json.loads(SPLIT_OUTPUT)["proposed_tasks"]

        execution = await orchestrator.approve_stage(task.id, splitting.id, decision=proposed)

        assert execution.status == ExecutionStatus.APPROVED
        parent = await orchestrator.get_task(task.id)
        assert parent.status == TaskStatus.SPLIT
        assert parent.current_stage_id is None

        children = [t for t in await orchestrator.list_tasks(project.id) if t.parent_task_id == task.id]
        assert sorted(c.title for c in children) == ["Login API", "Login form"]
        assert all(c.status == TaskStatus.PENDING for c in children)
        assert all(c.current_stage_id == stages["Research"].id for c in children)
        assert {c.description for c in children} == {"Endpoint and tokens", None}

        created = [e for e in received if e.type == EventType.TASK_CREATED and e.data.get("parent_task_id")]
        assert len(created) == 2

    async def test_split_requires_a_selection(self, orchestrator, task, stages, agent):
        await self._select_splitting(orchestrator, task, stages, agent)
        await orchestrator.run_stage(task.id, stages["Task Splitting"].id)

        with pytest.raises(GateViolationError):
            await orchestrator.approve_stage(task.id, stages["Task Splitting"].id, decision=[])

    async def test_split_task_is_final(self, orchestrator, task, stages, agent):
        await self._select_splitting(orchestrator, task, stages, agent)
        splitting = stages["Task Splitting"]
        await orchestrator.run_stage(task.id, splitting.id)
        await orchestrator.split_task(task.id, splitting.id, json.loads(SPLIT_OUTPUT)["proposed_tasks"][:1])

        with pytest.raises(InvalidTransitionError):
            await orchestrator.run_stage(task.id, stages["Research"].id)


# ==========================================================================
# Version Control Side Effects
# ==========================================================================

class TestSideEffects:
    async def test_pr_preparation_opens_pr(self, orchestrator, task, stages, agent, vcs, place_task):
        await place_task(task.id, stages["PR Preparation"])
        agent.queue(PR_OUTPUT)
        await orchestrator.run_stage(task.id, stages["PR Preparation"].id)

        await orchestrator.approve_stage(task.id, stages["PR Preparation"].id)

        assert vcs.prs == [(
            "/work/login",
            "feature/login",
            "Add login",
            "Adds JWT login.\n\n## Test Plan\n\nRun pytest",
        )]
        assert (await orchestrator.get_task(task.id)).pr_url == "https://github.com/acme/repo/pull/1"

    async def test_edited_pr_fields_win(self, orchestrator, task, stages, agent, vcs, place_task):
        await place_task(task.id, stages["PR Preparation"])
        agent.queue(PR_OUTPUT)
        await orchestrator.run_stage(task.id, stages["PR Preparation"].id)

        await orchestrator.approve_stage(
            task.id,
            stages["PR Preparation"].id,
            decision={"fields": {"title": "Login with JWT", "description": "Edited."}},
        )

        assert vcs.prs[0][2] == "Login with JWT"
        assert vcs.prs[0][3].startswith("Edited.")

    async def test_edited_test_plan_replaces_generated_one(self, orchestrator, task, stages, agent, vcs, place_task):
        await place_task(task.id, stages["PR Preparation"])
        agent.queue(PR_OUTPUT)
        await orchestrator.run_stage(task.id, stages["PR Preparation"].id)

        await orchestrator.approve_stage(
            task.id,
            stages["PR Preparation"].id,
            decision={"title": "Add login", "description": "Adds JWT login.", "test_plan": "Log in on staging"},
        )

        assert vcs.prs[0][3] == "Adds JWT login.\n\n## Test Plan\n\nLog in on staging"

    async def test_pr_fields_are_required(self, orchestrator, task, stages, agent, vcs, place_task):
        await place_task(task.id, stages["PR Preparation"])
        agent.queue(json.dumps({"fields": {"title": "Add login"}}))
        await orchestrator.run_stage(task.id, stages["PR Preparation"].id)

        with pytest.raises(GateViolationError, match="description"):
            await orchestrator.approve_stage(task.id, stages["PR Preparation"].id)
        assert vcs.prs == []

    async def test_commit_failure_blocks_approval(self, orchestrator, task, stages, agent, vcs, place_task):
        await place_task(task.id, stages["Implementation"])
        vcs.fail_commit = True
        agent.queue(IMPLEMENTATION_OUTPUT)
        await orchestrator.run_stage(task.id, stages["Implementation"].id)

        with pytest.raises(RuntimeError):
            await orchestrator.approve_stage(task.id, stages["Implementation"].id)

        execution = await _latest(orchestrator, task.id, stages["Implementation"].id)
        assert execution.status == ExecutionStatus.AWAITING_USER

    async def test_no_working_dir_skips_commit(self, orchestrator, project, stages, agent, vcs, place_task):
        task = await orchestrator.create_task(project.id, "No worktree")
        await place_task(task.id, stages["Implementation"])
        agent.queue(IMPLEMENTATION_OUTPUT)
        await orchestrator.run_stage(task.id, stages["Implementation"].id)

        execution = await orchestrator.approve_stage(task.id, stages["Implementation"].id)

        assert execution.status == ExecutionStatus.APPROVED
        assert vcs.commits == []


# ==========================================================================
# Accumulated Context
# ==========================================================================

class TestContext:
    async def test_stage_summaries_reach_later_stages(self, orchestrator, task, stages, agent):
        agent.queue(RESEARCH_OUTPUT, PR_OUTPUT)
        await orchestrator.run_stage(task.id, stages["Research"].id)
        await orchestrator.approve_stage(task.id, stages["Research"].id, selected_stages=["PR Preparation"])

        await orchestrator.run_stage(task.id, stages["PR Preparation"].id)

        prompt = agent.last_prompt
        assert "## Completed Stages" in prompt
        assert f"## Research\n{RESEARCH_TEXT}" in prompt

    async def test_no_approved_stage_means_no_context(self, orchestrator, task):
        assert await orchestrator.get_accumulated_context(task.id) is None

    async def test_previous_output_placeholder_without_history(self, orchestrator, task, stages, agent, place_task):
        await place_task(task.id, stages["Implementation"])
        agent.queue(IMPLEMENTATION_OUTPUT)
        await orchestrator.run_stage(task.id, stages["Implementation"].id)

        assert "Implementation plan:\n(no previous output)" in agent.last_prompt
