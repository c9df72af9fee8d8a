"""
Pipeline Orchestrator - Task & stage execution state machine.

Moves a task through its concrete stage list:

    pending → running → awaiting_user → approved   (advance / complete)
                      ↘ failed         ↘ failed    (new attempt)

Every status write goes through the transition tables. Database work
runs in short units on the project's queue; the agent runs between
units, outside the queue.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from stageflow.core.config import Settings, settings as default_settings
from stageflow.core.database import ProjectDatabase, utc_now
from stageflow.core.errors import (
    AgentExecutionError,
    GateViolationError,
    InvalidTransitionError,
    MalformedOutputError,
    NotFoundError,
)
from stageflow.core.models import (
    CompletionStrategy,
    ExecutionStatus,
    OutputFormat,
    ProjectSetting,
    ResultMode,
    StageExecution,
    StageTemplate,
    Task,
    TaskStage,
    TaskStatus,
)
from stageflow.core.pipeline.collaborators import (
    AgentRequest,
    AgentResult,
    AgentRunner,
    VersionControl,
)
from stageflow.core.pipeline.events import EventType, PipelineEvent, PipelineEvents
from stageflow.core.pipeline.gates import validate_gate
from stageflow.core.pipeline.output_parser import (
    decode_decision,
    extract_json,
    extract_stage_output,
    extract_stage_summary,
    format_selected_approach,
)
from stageflow.core.pipeline.prompt_renderer import PromptContext, StageOutputEntry, render
from stageflow.core.pipeline.templates import (
    COMPLETION_STRATEGY_KEY,
    available_stages_listing,
    default_task_stages,
    parse_completion_strategy,
    select_task_stages,
)
from stageflow.core.pipeline.transitions import ensure_execution_transition, ensure_task_transition
from stageflow.core.schemas import (
    BaseSchema,
    FindingsOutput,
    PrPreparationOutput,
    ResearchOutput,
    StructuredOutput,
    TEXT_FORMATS,
    parse_gate_rule,
    parse_stage_output,
    resolve_format,
)

logger = logging.getLogger(__name__)

CONTEXT_SEPARATOR = "\n\n---\n\n"
FOLLOW_UP_HEADER = "Answers to follow-up questions:"
STOPPED_BY_USER = "Stopped by user"
INTERRUPTED = "Process crashed or was interrupted"


@dataclass
class _ApprovalPlan:
    """What approve_stage learned inside the queue, for the side-effect phase."""
    execution_id: str
    task_title: str
    working_dir: Optional[str]
    branch_name: Optional[str]
    commit_message: Optional[str]
    pr_title: Optional[str] = None
    pr_body: Optional[str] = None


# ==========================================================================
# Queries
# ==========================================================================

async def _get_task(session: AsyncSession, task_id: str) -> Task:
    task = await session.get(Task, task_id)
    if task is None:
        raise NotFoundError(f"Task {task_id} not found")
    return task


async def _get_template(session: AsyncSession, template_id: str) -> StageTemplate:
    template = await session.get(StageTemplate, template_id)
    if template is None:
        raise NotFoundError(f"Stage template {template_id} not found")
    return template


async def _project_templates(session: AsyncSession, project_id: str) -> list[StageTemplate]:
    result = await session.execute(
        select(StageTemplate)
        .where(StageTemplate.project_id == project_id)
        .order_by(StageTemplate.sort_order)
    )
    return list(result.scalars().all())


async def _task_stage_templates(session: AsyncSession, task_id: str) -> list[StageTemplate]:
    result = await session.execute(
        select(StageTemplate)
        .join(TaskStage, TaskStage.stage_template_id == StageTemplate.id)
        .where(TaskStage.task_id == task_id)
        .order_by(TaskStage.sort_order)
    )
    return list(result.scalars().all())


async def _executions(session: AsyncSession, task_id: str) -> list[StageExecution]:
    result = await session.execute(
        select(StageExecution)
        .where(StageExecution.task_id == task_id)
        .order_by(StageExecution.attempt_number)
    )
    return list(result.scalars().all())


async def _latest_execution(
    session: AsyncSession,
    task_id: str,
    template_id: str,
) -> Optional[StageExecution]:
    result = await session.execute(
        select(StageExecution)
        .where(
            StageExecution.task_id == task_id,
            StageExecution.stage_template_id == template_id,
        )
        .order_by(StageExecution.attempt_number.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def _completion_strategy(session: AsyncSession, fallback: str) -> CompletionStrategy:
    value = await session.scalar(
        select(ProjectSetting.value).where(ProjectSetting.key == COMPLETION_STRATEGY_KEY)
    )
    return parse_completion_strategy(value, fallback)


def _latest_approved(executions: list[StageExecution]) -> dict[str, StageExecution]:
    """template id -> latest approved attempt"""
    approved: dict[str, StageExecution] = {}
    for execution in executions:
        if execution.status == ExecutionStatus.APPROVED:
            current = approved.get(execution.stage_template_id)
            if current is None or execution.attempt_number > current.attempt_number:
                approved[execution.stage_template_id] = execution
    return approved


def _execution_output(execution: StageExecution) -> str:
    return execution.stage_result or execution.parsed_output or execution.raw_output or ""


def _encode_decision(decision: Any) -> Optional[str]:
    if decision is None:
        return None
    if isinstance(decision, str):
        return decision
    return json.dumps(decision)


def _task_description(task: Task) -> str:
    if task.description:
        return f"{task.title}\n\n{task.description}"
    return task.title


class PipelineOrchestrator:
    """
    Stage execution state machine for one project database.

    Collaborators:
    - agent_runner: executes rendered prompts (required to run stages)
    - version_control: commits and PRs fired by behavior flags
    - events: receives task and stage status changes
    """

    def __init__(
        self,
        db: ProjectDatabase,
        agent_runner: Optional[AgentRunner] = None,
        version_control: Optional[VersionControl] = None,
        events: Optional[PipelineEvents] = None,
        config: Optional[Settings] = None,
    ):
        self.db = db
        self.agent_runner = agent_runner
        self.version_control = version_control
        self.events = events or PipelineEvents()
        self.config = config or default_settings

    # ======================================================================
    # Tasks
    # ======================================================================

    async def _new_task(
        self,
        session: AsyncSession,
        project_id: str,
        title: str,
        description: Optional[str],
        parent_task_id: Optional[str] = None,
        branch_name: Optional[str] = None,
        worktree_path: Optional[str] = None,
    ) -> Task:
        templates = await _project_templates(session, project_id)
        strategy = await _completion_strategy(session, self.config.DEFAULT_COMPLETION_STRATEGY)
        stages = default_task_stages(templates, strategy)

        task = Task(
            project_id=project_id,
            title=title,
            description=description,
            parent_task_id=parent_task_id,
            status=TaskStatus.PENDING,
            current_stage_id=stages[0].id if stages else None,
            branch_name=branch_name,
            worktree_path=worktree_path,
        )
        session.add(task)
        await session.flush()

        for template in stages:
            session.add(TaskStage(
                task_id=task.id,
                stage_template_id=template.id,
                sort_order=template.sort_order,
            ))
        await session.flush()
        return task

    async def create_task(
        self,
        project_id: str,
        title: str,
        description: Optional[str] = None,
        parent_task_id: Optional[str] = None,
        branch_name: Optional[str] = None,
        worktree_path: Optional[str] = None,
    ) -> Task:
        """
        Create a task positioned on the first of its default stages.

        Args:
            project_id: Owning project
            title: Task title
            description: Free-text description given to every stage
            parent_task_id: Set for subtasks produced by task splitting
            branch_name: Version-control branch the task works on
            worktree_path: Working directory for agent and commits

        Returns:
            Created Task (status pending)
        """
        async def _create(session: AsyncSession) -> Task:
            return await self._new_task(
                session, project_id, title, description,
                parent_task_id=parent_task_id,
                branch_name=branch_name,
                worktree_path=worktree_path,
            )

        task = await self.db.run(_create)
        logger.info(f"Created task {task.id} ({title})")
        await self._emit(EventType.TASK_CREATED, task.id, task.status.value)
        return task

    async def get_task(self, task_id: str) -> Task:
        async def _get(session: AsyncSession) -> Task:
            return await _get_task(session, task_id)

        return await self.db.run(_get)

    async def list_tasks(self, project_id: str, include_archived: bool = False) -> list[Task]:
        async def _list(session: AsyncSession) -> list[Task]:
            query = select(Task).where(Task.project_id == project_id)
            if not include_archived:
                query = query.where(Task.archived.is_(False))
            result = await session.execute(query.order_by(Task.created_at))
            return list(result.scalars().all())

        return await self.db.run(_list)

    async def get_task_stages(self, task_id: str) -> list[StageTemplate]:
        """The task's concrete stage list, ascending sort_order."""
        async def _get(session: AsyncSession) -> list[StageTemplate]:
            return await _task_stage_templates(session, task_id)

        return await self.db.run(_get)

    async def list_executions(self, task_id: str, template_id: Optional[str] = None) -> list[StageExecution]:
        async def _list(session: AsyncSession) -> list[StageExecution]:
            executions = await _executions(session, task_id)
            if template_id is not None:
                executions = [e for e in executions if e.stage_template_id == template_id]
            return executions

        return await self.db.run(_list)

    # ======================================================================
    # Context
    # ======================================================================

    def _previous_stage_execution(
        self,
        template: StageTemplate,
        task_stages: list[StageTemplate],
        approved: dict[str, StageExecution],
    ) -> Optional[tuple[StageTemplate, StageExecution]]:
        """Nearest earlier stage of the task that has an approved attempt."""
        earlier = [t for t in task_stages if t.sort_order < template.sort_order]
        for candidate in reversed(earlier):
            execution = approved.get(candidate.id)
            if execution is not None:
                return candidate, execution
        return None

    def _prior_attempt_output(self, template: StageTemplate, latest: Optional[StageExecution]) -> Optional[str]:
        if latest is None:
            return None

        if template.output_format == OutputFormat.FINDINGS:
            # Only a selection switches a findings prompt to its fix phase
            if latest.status == ExecutionStatus.APPROVED and latest.user_decision:
                return latest.user_decision
            return None

        text = latest.parsed_output or latest.raw_output or ""
        if latest.status == ExecutionStatus.FAILED and latest.error_message:
            failure = f"Previous attempt failed: {latest.error_message}"
            return f"{text}\n\n{failure}" if text else failure
        return text or None

    def _combined_user_input(
        self,
        user_input: Optional[str],
        previous_attempts: list[StageExecution],
    ) -> Optional[str]:
        first_input = next((e.user_input for e in previous_attempts if e.user_input), None)
        if first_input is None:
            return user_input
        if not user_input or user_input == first_input:
            return first_input
        return f"{first_input}{CONTEXT_SEPARATOR}{FOLLOW_UP_HEADER}\n{user_input}"

    def _build_context(
        self,
        task: Task,
        template: StageTemplate,
        task_stages: list[StageTemplate],
        project_templates: list[StageTemplate],
        executions: list[StageExecution],
        user_input: Optional[str],
    ) -> PromptContext:
        approved = _latest_approved(executions)
        attempts = [e for e in executions if e.stage_template_id == template.id]
        latest = attempts[-1] if attempts else None

        previous_output = None
        user_decision = None
        previous = self._previous_stage_execution(template, task_stages, approved)
        if previous is not None:
            prev_template, prev_execution = previous
            previous_output = _execution_output(prev_execution) or None
            if prev_execution.user_decision:
                if prev_template.output_format == OutputFormat.OPTIONS:
                    user_decision = format_selected_approach(prev_execution.user_decision)
                else:
                    user_decision = prev_execution.user_decision

        summaries = []
        outputs = []
        stage_outputs = {}
        for stage in task_stages:
            if stage.sort_order >= template.sort_order:
                continue
            execution = approved.get(stage.id)
            if execution is None:
                continue
            output = _execution_output(execution)
            if execution.stage_summary:
                summaries.append(f"## {stage.name}\n{execution.stage_summary}")
            if output:
                outputs.append(f"## {stage.name}\n{output}")
            stage_outputs[stage.name] = StageOutputEntry(
                output=output,
                summary=execution.stage_summary or "",
            )

        available = None
        if template.triggers_stage_selection:
            available = available_stages_listing(project_templates, template) or None

        return PromptContext(
            task_description=_task_description(task),
            previous_output=previous_output,
            user_input=self._combined_user_input(user_input, attempts),
            user_decision=user_decision,
            prior_attempt_output=self._prior_attempt_output(template, latest),
            stage_summaries="\n\n".join(summaries) or None,
            all_stage_outputs=CONTEXT_SEPARATOR.join(outputs) or None,
            available_stages=available,
            stage_outputs=stage_outputs,
        )

    async def get_accumulated_context(self, task_id: str) -> Optional[str]:
        """Result of the latest approved stage in the task's stage order."""
        async def _get(session: AsyncSession) -> Optional[str]:
            task_stages = await _task_stage_templates(session, task_id)
            approved = _latest_approved(await _executions(session, task_id))
            for stage in reversed(task_stages):
                execution = approved.get(stage.id)
                if execution is not None:
                    return _execution_output(execution) or None
            return None

        return await self.db.run(_get)

    # ======================================================================
    # Running
    # ======================================================================

    async def run_stage(
        self,
        task_id: str,
        template_id: str,
        user_input: Optional[str] = None,
    ) -> StageExecution:
        """
        Start a new attempt of a stage and run the agent on it.

        Args:
            task_id: Task to run
            template_id: Stage template to run
            user_input: Input or answers to the previous attempt's questions

        Returns:
            The attempt after the agent finished: awaiting_user, failed,
            or approved (interactive stages)

        Raises:
            InvalidTransitionError: the stage is not the task's current
                stage, an attempt of it is still active, or the task is
                completed or split
        """
        if self.agent_runner is None:
            raise AgentExecutionError("No agent runner configured")

        async def _start(session: AsyncSession) -> tuple[StageExecution, AgentRequest, TaskStatus]:
            task = await _get_task(session, task_id)
            template = await _get_template(session, template_id)
            previous_status = task.status
            ensure_task_transition(task.status, TaskStatus.IN_PROGRESS)

            # Only the current stage runs; approval is what advances it
            task_stages = await _task_stage_templates(session, task_id)
            if template_id != task.current_stage_id or template_id not in {t.id for t in task_stages}:
                raise InvalidTransitionError("task stage", task.current_stage_id or "none", template.name)

            latest = await _latest_execution(session, task_id, template_id)
            if latest is not None and not latest.status.is_terminal:
                raise InvalidTransitionError(
                    "stage execution", latest.status.value, ExecutionStatus.RUNNING.value,
                )

            context = self._build_context(
                task,
                template,
                task_stages,
                await _project_templates(session, task.project_id),
                await _executions(session, task_id),
                user_input,
            )
            prompt = render(template.prompt_template, context)

            execution = StageExecution(
                task_id=task_id,
                stage_template_id=template_id,
                attempt_number=(latest.attempt_number + 1) if latest else 1,
                status=ExecutionStatus.PENDING,
                input_prompt=prompt,
                user_input=user_input,
            )
            ensure_execution_transition(execution.status, ExecutionStatus.RUNNING)
            execution.status = ExecutionStatus.RUNNING
            execution.started_at = utc_now()
            session.add(execution)

            task.status = TaskStatus.IN_PROGRESS
            await session.flush()

            request = AgentRequest(
                execution_id=execution.id,
                prompt=prompt,
                output_format=template.output_format.value,
                output_schema=template.output_schema,
                allowed_tools=template.allowed_tools,
                session_id=latest.session_id if latest is not None else None,
                working_dir=task.worktree_path,
                system_prompt=template.persona_system_prompt,
                model=template.persona_model,
                agent=template.agent,
            )
            return execution, request, previous_status

        execution, request, previous_status = await self.db.run(_start)
        logger.info(f"Running stage {template_id} for task {task_id} (attempt {execution.attempt_number})")
        if previous_status != TaskStatus.IN_PROGRESS:
            await self._emit(EventType.TASK_STATUS_CHANGED, task_id, TaskStatus.IN_PROGRESS.value)
        await self._emit_stage(execution)

        try:
            result = await self.agent_runner.run(request)
        except AgentExecutionError as e:
            logger.error(f"Agent failed for stage {template_id} of task {task_id}: {e}")
            result = AgentResult(error=str(e), exit_code=e.exit_code or 0)

        return await self._finalize(execution.id, result)

    async def _finalize(self, execution_id: str, result: AgentResult) -> StageExecution:
        approve_directly = False

        async def _finish(session: AsyncSession) -> tuple[StageExecution, Optional[TaskStatus]]:
            nonlocal approve_directly
            execution = await session.get(StageExecution, execution_id)
            if execution is None:
                raise NotFoundError(f"Stage execution {execution_id} not found")
            if execution.status != ExecutionStatus.RUNNING:
                # Cancelled while the agent was running
                return execution, None

            template = await _get_template(session, execution.stage_template_id)
            task = await _get_task(session, execution.task_id)

            execution.raw_output = result.raw_output
            execution.thinking_output = result.thinking_output
            execution.session_id = result.session_id or execution.session_id
            telemetry = result.telemetry
            execution.input_tokens = telemetry.input_tokens
            execution.output_tokens = telemetry.output_tokens
            execution.cache_creation_input_tokens = telemetry.cache_creation_input_tokens
            execution.cache_read_input_tokens = telemetry.cache_read_input_tokens
            execution.total_cost_usd = telemetry.total_cost_usd
            execution.duration_ms = telemetry.duration_ms
            execution.num_turns = telemetry.num_turns
            execution.completed_at = utc_now()

            error = self._result_error(result)
            if error is None:
                try:
                    execution.parsed_output = self._parse_result(template, result)
                except MalformedOutputError as e:
                    error = str(e)

            if error is not None:
                ensure_execution_transition(execution.status, ExecutionStatus.FAILED)
                execution.status = ExecutionStatus.FAILED
                execution.error_message = error
                ensure_task_transition(task.status, TaskStatus.FAILED)
                task.status = TaskStatus.FAILED
                return execution, TaskStatus.FAILED

            if template.output_format == OutputFormat.INTERACTIVE_TERMINAL:
                approve_directly = True
                return execution, None

            ensure_execution_transition(execution.status, ExecutionStatus.AWAITING_USER)
            execution.status = ExecutionStatus.AWAITING_USER
            return execution, None

        execution, task_status = await self.db.run(_finish)

        if approve_directly:
            return await self._approve(execution.task_id, execution.stage_template_id, None, None)

        if execution.status == ExecutionStatus.FAILED:
            logger.warning(f"Stage execution {execution.id} failed: {execution.error_message}")
        await self._emit_stage(execution)
        if task_status is not None:
            await self._emit(EventType.TASK_STATUS_CHANGED, execution.task_id, task_status.value)
        return execution

    @staticmethod
    def _result_error(result: AgentResult) -> Optional[str]:
        if result.error:
            return result.error
        if result.killed:
            return STOPPED_BY_USER
        if result.exit_code != 0:
            return f"Process exited with code {result.exit_code}"
        return None

    @staticmethod
    def _parse_result(template: StageTemplate, result: AgentResult) -> Optional[str]:
        """JSON text of a structured result, validated against its format."""
        fmt = template.output_format
        if fmt in TEXT_FORMATS:
            return result.parsed_output

        candidate = result.parsed_output or extract_json(result.raw_output)
        if fmt == OutputFormat.AUTO:
            return candidate
        if candidate is None:
            if fmt == OutputFormat.FINDINGS:
                # Fix phase of a findings stage answers in prose
                return None
            raise MalformedOutputError(f"No JSON output found for {fmt.value} stage")

        parse_stage_output(fmt, candidate)
        return candidate

    async def cancel_execution(self, execution_id: str) -> StageExecution:
        """Mark a running attempt failed after its agent was stopped."""
        async def _cancel(session: AsyncSession) -> tuple[StageExecution, TaskStatus]:
            execution = await session.get(StageExecution, execution_id)
            if execution is None:
                raise NotFoundError(f"Stage execution {execution_id} not found")
            ensure_execution_transition(execution.status, ExecutionStatus.FAILED)
            execution.status = ExecutionStatus.FAILED
            execution.error_message = STOPPED_BY_USER
            execution.completed_at = utc_now()
            task = await _get_task(session, execution.task_id)
            ensure_task_transition(task.status, TaskStatus.FAILED)
            task.status = TaskStatus.FAILED
            return execution, task.status

        execution, task_status = await self.db.run(_cancel)
        logger.info(f"Cancelled stage execution {execution_id}")
        await self._emit_stage(execution)
        await self._emit(EventType.TASK_STATUS_CHANGED, execution.task_id, task_status.value)
        return execution

    async def recover_interrupted(self, task_id: str) -> list[StageExecution]:
        """Fail attempts left running by a crash or restart."""
        async def _recover(session: AsyncSession) -> list[StageExecution]:
            result = await session.execute(
                select(StageExecution).where(
                    StageExecution.task_id == task_id,
                    StageExecution.status == ExecutionStatus.RUNNING,
                )
            )
            stale = list(result.scalars().all())
            for execution in stale:
                ensure_execution_transition(execution.status, ExecutionStatus.FAILED)
                execution.status = ExecutionStatus.FAILED
                execution.error_message = INTERRUPTED
                execution.completed_at = utc_now()
            return stale

        recovered = await self.db.run(_recover)
        for execution in recovered:
            logger.warning(f"Recovered interrupted stage execution {execution.id}")
            await self._emit_stage(execution)
        return recovered

    # ======================================================================
    # Gating
    # ======================================================================

    async def approve_stage(
        self,
        task_id: str,
        template_id: str,
        decision: Any = None,
        selected_stages: Optional[list[str]] = None,
    ) -> StageExecution:
        """
        Approve the awaiting attempt of a stage and advance the task.

        A findings stage approved with a non-empty selection moves to its
        fix phase instead; a task splitting stage approved with a
        selection splits the task.

        Args:
            task_id: Task being gated
            template_id: Stage awaiting approval
            decision: User decision checked against the gate rule
            selected_stages: Stage names chosen on a stage-selection stage;
                defaults to the stage's own suggestions

        Raises:
            GateViolationError: the decision does not satisfy the gate rule
            InvalidTransitionError: the stage is not awaiting the user
        """
        async def _validate(session: AsyncSession) -> tuple[OutputFormat, Any]:
            execution = await self._awaiting_execution(session, task_id, template_id)
            template = await _get_template(session, template_id)
            parsed = self._parsed(template, execution)
            validate_gate(parse_gate_rule(template.gate_rules), decision, parsed)
            source = execution.parsed_output or execution.raw_output
            return resolve_format(template.output_format, source), parsed

        fmt, parsed = await self.db.run(_validate)
        selection = decode_decision(decision)

        if fmt == OutputFormat.FINDINGS and isinstance(parsed, FindingsOutput):
            if isinstance(selection, list) and selection:
                return await self.select_findings(task_id, template_id, selection)
        if fmt == OutputFormat.TASK_SPLITTING and isinstance(selection, list) and selection:
            await self.split_task(task_id, template_id, selection)
            return (await self.list_executions(task_id, template_id))[-1]

        return await self._approve(task_id, template_id, decision, selected_stages)

    async def _approve(
        self,
        task_id: str,
        template_id: str,
        decision: Any,
        selected_stages: Optional[list[str]],
    ) -> StageExecution:
        async def _plan(session: AsyncSession) -> _ApprovalPlan:
            task = await _get_task(session, task_id)
            template = await _get_template(session, template_id)
            execution = await _latest_execution(session, task_id, template_id)
            if execution is None:
                raise NotFoundError(f"No execution of stage {template_id} for task {task_id}")

            plan = _ApprovalPlan(
                execution_id=execution.id,
                task_title=task.title,
                working_dir=task.worktree_path,
                branch_name=task.branch_name,
                commit_message=None,
            )
            if template.commits_changes:
                plan.commit_message = (
                    f"{template.commit_prefix}: {task.title}" if template.commit_prefix else task.title
                )
            if template.creates_pr:
                plan.pr_title, plan.pr_body = self._pr_fields(template, execution, decision, task)
            return plan

        plan = await self.db.run(_plan)
        pr_url = await self._run_side_effects(plan)

        async def _record(session: AsyncSession) -> tuple[StageExecution, Task, bool]:
            task = await _get_task(session, task_id)
            template = await _get_template(session, template_id)
            execution = await session.get(StageExecution, plan.execution_id)
            if execution is None or execution.status not in (
                ExecutionStatus.AWAITING_USER, ExecutionStatus.RUNNING,
            ):
                raise InvalidTransitionError(
                    "stage execution",
                    execution.status.value if execution else "missing",
                    ExecutionStatus.APPROVED.value,
                )
            previous_status = task.status
            await self._record_approval(session, task, template, execution, decision, selected_stages)
            if pr_url:
                task.pr_url = pr_url
            return execution, task, previous_status != task.status

        execution, task, task_changed = await self.db.run(_record)
        logger.info(f"Approved stage {template_id} for task {task_id}")
        await self._emit_stage(execution)
        if task_changed:
            await self._emit(EventType.TASK_STATUS_CHANGED, task_id, task.status.value)
        return execution

    async def _run_side_effects(self, plan: _ApprovalPlan) -> Optional[str]:
        """Commit and PR creation. Failures propagate and block the approval."""
        if plan.commit_message is None and plan.pr_title is None:
            return None
        if self.version_control is None or not plan.working_dir:
            logger.warning(f"Skipping version control for {plan.task_title}: no working directory or client")
            return None

        if plan.commit_message is not None:
            commit_hash = await self.version_control.commit(plan.working_dir, plan.commit_message)
            logger.info(f"Committed {commit_hash or 'nothing'} for {plan.task_title}")

        if plan.pr_title is not None and plan.branch_name:
            pr_url = await self.version_control.create_pr(
                plan.working_dir, plan.branch_name, plan.pr_title, plan.pr_body or "",
            )
            logger.info(f"Opened PR {pr_url} for {plan.task_title}")
            return pr_url
        return None

    @staticmethod
    def _pr_fields(
        template: StageTemplate,
        execution: StageExecution,
        decision: Any,
        task: Task,
    ) -> tuple[str, str]:
        fields: dict[str, Any] = {}
        parsed = PipelineOrchestrator._parsed(template, execution)
        if isinstance(parsed, StructuredOutput):
            fields.update(parsed.fields)
        edited = decode_decision(decision)
        if isinstance(edited, dict):
            fields.update(edited["fields"] if isinstance(edited.get("fields"), dict) else edited)

        pr = PrPreparationOutput(fields={k: str(v) for k, v in fields.items() if v is not None})
        body = pr.description
        if pr.test_plan:
            body = f"{body}\n\n## Test Plan\n\n{pr.test_plan}".strip()
        return pr.title or task.title, body

    @staticmethod
    def _parsed(template: StageTemplate, execution: StageExecution) -> Optional[BaseSchema]:
        try:
            return parse_stage_output(template.output_format, execution.parsed_output)
        except MalformedOutputError:
            return None

    async def _awaiting_execution(self, session: AsyncSession, task_id: str, template_id: str) -> StageExecution:
        execution = await _latest_execution(session, task_id, template_id)
        if execution is None:
            raise NotFoundError(f"No execution of stage {template_id} for task {task_id}")
        if execution.status != ExecutionStatus.AWAITING_USER:
            raise InvalidTransitionError(
                "stage execution", execution.status.value, ExecutionStatus.APPROVED.value,
            )
        return execution

    async def _record_approval(
        self,
        session: AsyncSession,
        task: Task,
        template: StageTemplate,
        execution: StageExecution,
        decision: Any,
        selected_stages: Optional[list[str]],
    ) -> None:
        """Approve, compose the stage result, pick stages and advance."""
        ensure_execution_transition(execution.status, ExecutionStatus.APPROVED)
        execution.status = ExecutionStatus.APPROVED
        execution.completed_at = execution.completed_at or utc_now()
        if decision is not None:
            execution.user_decision = _encode_decision(decision)

        source = execution.parsed_output or execution.raw_output
        own = extract_stage_output(template.output_format, source, execution.user_decision)
        summary = extract_stage_summary(template.output_format, source, execution.user_decision)
        execution.stage_summary = summary

        task_stages = await _task_stage_templates(session, task.id)
        if template.result_mode == ResultMode.APPEND:
            approved = _latest_approved(await _executions(session, task.id))
            approved.pop(template.id, None)
            previous = self._previous_stage_execution(template, task_stages, approved)
            prior = _execution_output(previous[1]) if previous else ""
            addition = summary or own
            execution.stage_result = f"{prior}{CONTEXT_SEPARATOR}{addition}" if prior else own
        else:
            execution.stage_result = own

        if template.triggers_stage_selection:
            task_stages = await self._apply_stage_selection(
                session, task, template, execution, task_stages, selected_stages,
            )

        self._advance(task, template, task_stages)

    async def _apply_stage_selection(
        self,
        session: AsyncSession,
        task: Task,
        template: StageTemplate,
        execution: StageExecution,
        task_stages: list[StageTemplate],
        selected_stages: Optional[list[str]],
    ) -> list[StageTemplate]:
        names = selected_stages
        if names is None:
            parsed = self._parsed(template, execution)
            if isinstance(parsed, ResearchOutput) and parsed.suggested_stages:
                names = [s.name for s in parsed.suggested_stages]
        if not names:
            return task_stages

        templates = await _project_templates(session, task.project_id)
        strategy = await _completion_strategy(session, self.config.DEFAULT_COMPLETION_STRATEGY)
        chosen = select_task_stages(templates, task_stages, template, names, strategy)

        await session.execute(delete(TaskStage).where(TaskStage.task_id == task.id))
        for stage in chosen:
            session.add(TaskStage(task_id=task.id, stage_template_id=stage.id, sort_order=stage.sort_order))
        await session.flush()
        logger.info(f"Task {task.id} stages selected: {', '.join(s.name for s in chosen)}")
        return chosen

    @staticmethod
    def _advance(task: Task, template: StageTemplate, task_stages: list[StageTemplate]) -> None:
        following = [t for t in task_stages if t.sort_order > template.sort_order]
        if template.is_terminal or not following:
            ensure_task_transition(task.status, TaskStatus.COMPLETED)
            task.status = TaskStatus.COMPLETED
            task.current_stage_id = None
            return

        ensure_task_transition(task.status, TaskStatus.IN_PROGRESS)
        task.status = TaskStatus.IN_PROGRESS
        task.current_stage_id = following[0].id

    async def reject_stage(
        self,
        task_id: str,
        template_id: str,
        feedback: Optional[str] = None,
    ) -> StageExecution:
        """Reject the awaiting attempt. The next run_stage sees why."""
        async def _reject(session: AsyncSession) -> StageExecution:
            execution = await self._awaiting_execution(session, task_id, template_id)
            ensure_execution_transition(execution.status, ExecutionStatus.FAILED)
            execution.status = ExecutionStatus.FAILED
            execution.error_message = f"Rejected by user: {feedback}" if feedback else "Rejected by user"
            execution.completed_at = utc_now()
            return execution

        execution = await self.db.run(_reject)
        logger.info(f"Rejected stage {template_id} for task {task_id}")
        await self._emit_stage(execution)
        return execution

    async def select_findings(
        self,
        task_id: str,
        template_id: str,
        findings: list[dict[str, Any]],
    ) -> StageExecution:
        """
        Close the review phase of a findings stage and start its fix phase.

        The selected findings become the next attempt's
        prior_attempt_output, verbatim.

        Returns:
            The fix-phase attempt
        """
        if not findings:
            raise GateViolationError("Select at least one finding to fix")

        async def _select(session: AsyncSession) -> StageExecution:
            execution = await self._awaiting_execution(session, task_id, template_id)
            template = await _get_template(session, template_id)
            ensure_execution_transition(execution.status, ExecutionStatus.APPROVED)
            execution.status = ExecutionStatus.APPROVED
            execution.user_decision = json.dumps(findings)
            execution.stage_summary = extract_stage_summary(template.output_format, execution.parsed_output)
            return execution

        execution = await self.db.run(_select)
        logger.info(f"Selected {len(findings)} findings on stage {template_id} for task {task_id}")
        await self._emit_stage(execution)
        return await self.run_stage(task_id, template_id)

    async def split_task(
        self,
        task_id: str,
        template_id: str,
        subtasks: list[dict[str, Any]],
    ) -> list[Task]:
        """
        Approve a task splitting stage: the parent becomes `split` and one
        child task is created per selected subtask.

        Returns:
            The child tasks
        """
        async def _split(session: AsyncSession) -> list[Task]:
            execution = await self._awaiting_execution(session, task_id, template_id)
            template = await _get_template(session, template_id)
            validate_gate(parse_gate_rule(template.gate_rules), subtasks, self._parsed(template, execution))

            ensure_execution_transition(execution.status, ExecutionStatus.APPROVED)
            execution.status = ExecutionStatus.APPROVED
            execution.user_decision = json.dumps(subtasks)
            source = execution.parsed_output or execution.raw_output
            execution.stage_result = extract_stage_output(template.output_format, source)
            execution.stage_summary = extract_stage_summary(template.output_format, source)

            parent = await _get_task(session, task_id)
            ensure_task_transition(parent.status, TaskStatus.SPLIT)
            parent.status = TaskStatus.SPLIT
            parent.current_stage_id = None

            children = []
            for subtask in subtasks:
                children.append(await self._new_task(
                    session,
                    parent.project_id,
                    str(subtask.get("title") or "Untitled subtask"),
                    subtask.get("description") or None,
                    parent_task_id=parent.id,
                ))
            return children

        children = await self.db.run(_split)
        logger.info(f"Split task {task_id} into {len(children)} subtasks")
        await self._emit(EventType.TASK_STATUS_CHANGED, task_id, TaskStatus.SPLIT.value)
        for child in children:
            await self._emit(EventType.TASK_CREATED, child.id, child.status.value, parent_task_id=task_id)
        return children

    # ======================================================================
    # Archive
    # ======================================================================

    async def archive_task(self, task_id: str) -> Task:
        """Archive a task. Worktree removal is best effort."""
        async def _archive(session: AsyncSession) -> Task:
            task = await _get_task(session, task_id)
            task.archived = True
            return task

        task = await self.db.run(_archive)
        logger.info(f"Archived task {task_id}")

        if task.worktree_path and self.version_control is not None:
            try:
                await self.version_control.remove_worktree(task.worktree_path)
            except Exception as e:
                logger.warning(f"Failed to remove worktree {task.worktree_path} for task {task_id}: {e}")
        return task

    # ======================================================================
    # Events
    # ======================================================================

    async def _emit(self, event_type: EventType, task_id: str, status: str, **data: Any) -> None:
        await self.events.emit(PipelineEvent(type=event_type, task_id=task_id, status=status, data=data))

    async def _emit_stage(self, execution: StageExecution) -> None:
        await self.events.emit(PipelineEvent(
            type=EventType.STAGE_STATUS_CHANGED,
            task_id=execution.task_id,
            status=execution.status.value,
            execution_id=execution.id,
            stage_template_id=execution.stage_template_id,
            data={"attempt_number": execution.attempt_number},
        ))
