# backend/codemind/core/orchestrator.py
import asyncio
import logging
import threading
from typing import Callable, Dict, List, Optional

from . import prompts
from .approval import ApprovalSurface, AutoApprovalSurface
from .block_parser import parse_execution_plan, parse_task_analysis
from .command_executor import CommandExecutor
from .config_manager import PipelineSettings
from .delimiter_technician import (
    PLAN_BLOCK_STRUCTURE, PLAN_MARKDOWN_STRUCTURE, SPECIALIST_STRUCTURE, TASK_ANALYSIS_STRUCTURE,
    AgentRole, DelimiterTechnician, RepairContext,
)
from .exceptions import PlanEmptyError
from .lenient_extractor import extract_plan_leniently
from .llm_client import ChatMessage, GenerationConfig, LLMProvider
from .markdown_parser import parse_agent_response, parse_plan_markdown
from .plan_normalizer import create_fallback_plan, normalize_plan
from .project_models import (
    AgentAnalysis, ExecutionPlan, ExecutionReport, PlannedChange, ProgressUpdate, StepResult,
    TaskAnalysis, TaskAnalysisRecord, TaskType, TerminalCommand, WorkflowResult, WorkspaceContext,
)
from .recovery_orchestrator import ProgressCallback, RecoveryOrchestrator
from .tiered_parser import TierObserver, build_tiers, escalate, parse_with_repair
from .workspace import format_analysis_context, format_planning_context

logger = logging.getLogger(__name__)

# Applies a create/modify/delete/rename step to the workspace.
StepApplier = Callable[[PlannedChange], StepResult]

AGENTS_BY_TASK_TYPE: Dict[TaskType, List[AgentRole]] = {
    TaskType.CODE_GENERATION: ["architect", "engineer", "testing"],
    TaskType.REFACTORING: ["architect", "engineer", "performance", "testing"],
    TaskType.BUG_FIX: ["engineer", "testing", "security"],
    TaskType.FEATURE_ADD: ["architect", "engineer", "security", "testing", "documentation"],
    TaskType.DOCUMENTATION: ["documentation", "architect"],
    TaskType.TESTING: ["testing", "engineer"],
    TaskType.OPTIMIZATION: ["performance", "architect", "engineer"],
    TaskType.SECURITY: ["security", "engineer", "testing"],
    TaskType.GENERAL: ["architect", "engineer", "security", "performance", "testing", "documentation"],
}


def select_relevant_agents(task_type: TaskType) -> List[AgentRole]:
    return list(AGENTS_BY_TASK_TYPE.get(task_type, AGENTS_BY_TASK_TYPE[TaskType.GENERAL]))


class OrchestratorAgent:
    """
    Drives one request from text to executed plan.

    Phases:
    1.  **Analyze**: classify the request (task type, intent, scope, complexity).
    2.  **Plan**: produce an ExecutionPlan through the strict -> repair ->
        lenient -> fallback tiers, then normalize it.
    3.  **Execute**: run steps in priority order. Terminal steps need approval
        and go through the CommandExecutor; file steps go to the step applier.
    4.  **Recover**: failed commands are analyzed and a recovery plan is
        executed, up to ``max_recovery_cycles`` times.
    """
    def __init__(self,
                 llm: LLMProvider,
                 settings: Optional[PipelineSettings] = None,
                 executor: Optional[CommandExecutor] = None,
                 approval_surface: Optional[ApprovalSurface] = None,
                 step_applier: Optional[StepApplier] = None,
                 observer: Optional[TierObserver] = None,
                 technician: Optional[DelimiterTechnician] = None,
                 recovery: Optional[RecoveryOrchestrator] = None,
                 stop_event: Optional[threading.Event] = None):
        self.llm = llm
        self.settings = settings or PipelineSettings()
        self.executor = executor
        self.approval_surface: ApprovalSurface = approval_surface or AutoApprovalSurface()
        self.step_applier = step_applier
        self.observer = observer
        self.technician = technician or DelimiterTechnician(
            llm, temperature=self.settings.repair_temperature, min_retention=self.settings.repair_min_retention
        )
        self.recovery = recovery or RecoveryOrchestrator(llm, self.technician, self.settings, observer)
        self.stop_event = stop_event or (executor.stop_event if executor and executor.stop_event else threading.Event())
        if executor is not None and executor.stop_event is None:
            executor.stop_event = self.stop_event

    def request_stop(self) -> None:
        """Stops the running command (if any) and skips the remaining steps."""
        logger.warning("Stop requested.")
        self.stop_event.set()

    async def _generate(self, messages: List[ChatMessage], temperature: float, max_tokens: Optional[int] = None) -> str:
        config = GenerationConfig(temperature=temperature, max_tokens=max_tokens)
        response = await asyncio.to_thread(self.llm.generate, messages, config)
        return response.content

    @staticmethod
    def _report(progress_callback: Optional[ProgressCallback], phase: str, status: str, progress: int,
                current_file: Optional[str] = None) -> None:
        if progress_callback:
            progress_callback(ProgressUpdate(phase=phase, status=status, progress=progress, current_file=current_file))

    # --- Phase 1: analysis ---

    async def analyze_request(self, user_request: str, context: WorkspaceContext,
                              progress_callback: Optional[ProgressCallback] = None) -> TaskAnalysis:
        self._report(progress_callback, "analyzing", "Analyzing user request...", 10)
        prompt = prompts.ANALYSIS_USER_PROMPT.format(
            user_request=user_request,
            context=format_analysis_context(context, self.settings.max_project_files, self.settings.mentioned_file_chars),
            structure=TASK_ANALYSIS_STRUCTURE.describe(),
        )
        messages: List[ChatMessage] = [
            {"role": "system", "content": prompts.ANALYSIS_SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ]
        technician = self.technician
        try:
            content = await self._generate(messages, self.settings.analysis_temperature)
        except Exception as e:
            logger.error(f"Request analysis call failed: {e}. Using basic classification.")
            content, technician = "", None

        tiers = build_tiers(parse_task_analysis, technician, RepairContext.task_analysis(),
                            fallback=TaskAnalysisRecord)
        outcome = await escalate(tiers, content, pipeline="task analysis", observer=self.observer)
        analysis = outcome.data.to_analysis(user_request)
        logger.info(f"Task analysis ({outcome.tier_name}): type={analysis.task_type.value}, "
                    f"scope={analysis.scope}, complexity={analysis.complexity.value}")
        return analysis

    # --- Phase 2: planning ---

    def _planning_messages(self, user_request: str, analysis: TaskAnalysis, context: WorkspaceContext) -> List[ChatMessage]:
        markdown = self.settings.plan_format == "markdown"
        prompt = prompts.PLANNING_USER_PROMPT.format(
            user_request=user_request,
            task_type=analysis.task_type.value,
            intent=analysis.intent,
            scope=analysis.scope,
            complexity=analysis.complexity.value,
            context=format_planning_context(context, self.settings.mentioned_file_chars, self.settings.current_file_chars),
            workspace_root=context.workspace_root or "No workspace open",
            structure=(PLAN_MARKDOWN_STRUCTURE if markdown else PLAN_BLOCK_STRUCTURE).describe(),
            example=prompts.MARKDOWN_PLAN_EXAMPLE if markdown else prompts.BLOCK_PLAN_EXAMPLE,
        )
        format_rules = prompts.MARKDOWN_FORMAT_RULES if markdown else prompts.BLOCK_FORMAT_RULES
        return [
            {"role": "system", "content": prompts.PLANNING_SYSTEM_PROMPT.format(format_rules=format_rules)},
            {"role": "user", "content": prompt},
        ]

    async def plan_operations(self, user_request: str, analysis: TaskAnalysis, context: WorkspaceContext,
                              progress_callback: Optional[ProgressCallback] = None) -> ExecutionPlan:
        """
        Raises:
            PlanEmptyError: If every tier failed and the fallback has no file to work on.
        """
        self._report(progress_callback, "planning", "Planning file operations...", 30)
        messages = self._planning_messages(user_request, analysis, context)
        technician = self.technician
        try:
            content = await self._generate(messages, self.settings.planning_temperature)
            logger.debug(f"Raw planning response (first 300 chars): {content[:300]}")
        except Exception as e:
            logger.error(f"Planning call failed: {e}. Falling back to a basic plan.")
            content, technician = "", None

        strict = parse_plan_markdown if self.settings.plan_format == "markdown" else parse_execution_plan
        tiers = build_tiers(
            strict,
            technician,
            RepairContext.orchestrator_plan(self.settings.plan_format),
            lenient=extract_plan_leniently,
            fallback=lambda: create_fallback_plan(user_request, analysis, context),
        )
        outcome = await escalate(tiers, content, pipeline="execution plan", observer=self.observer)
        plan = normalize_plan(outcome.data, analysis, context.workspace_root)

        if outcome.tier_name == "fallback" and plan.is_empty:
            raise PlanEmptyError("No plan could be produced and there is no current file to fall back on.")
        logger.info(f"Plan ({outcome.tier_name}): {len(plan.steps)} step(s), confidence {plan.confidence:.2f}. {plan.summary}")
        for risk in plan.risks:
            logger.info(f"Plan risk: {risk}")
        return plan

    # --- Optional: specialist review ---

    async def gather_specialist_insights(self, plan: ExecutionPlan, context: WorkspaceContext,
                                         max_files: int = 3,
                                         progress_callback: Optional[ProgressCallback] = None) -> Dict[str, List[AgentAnalysis]]:
        """
        Asks the specialists relevant to the task type to review the first
        ``max_files`` affected files. Responses that cannot be parsed even
        after repair are skipped.
        """
        self._report(progress_callback, "planning", "Consulting specialist agents...", 50)
        roles = select_relevant_agents(plan.task_type)
        known_files = {f.path: f for f in context.mentioned_files}
        if context.current_file:
            known_files[context.current_file.path] = context.current_file
        steps_by_path = {s.file_path: s for s in plan.steps if not s.is_terminal}

        insights: Dict[str, List[AgentAnalysis]] = {}
        for file_path in plan.affected_files[:max_files]:
            self._report(progress_callback, "planning", f"Analyzing {file_path}...", 50, current_file=file_path)
            snapshot = known_files.get(file_path)
            step = steps_by_path.get(file_path)
            insights[file_path] = []
            for role in roles:
                messages: List[ChatMessage] = [
                    {"role": "system", "content": prompts.SPECIALIST_SYSTEM_PROMPT.format(
                        role=role, focus=prompts.AGENT_FOCUS[role])},
                    {"role": "user", "content": prompts.SPECIALIST_USER_PROMPT.format(
                        summary=plan.summary,
                        file_path=file_path,
                        operation=step.operation.type if step else "modify",
                        rationale=step.rationale if step else "",
                        language=snapshot.language if snapshot else "",
                        content=(snapshot.content[:self.settings.mentioned_file_chars] if snapshot else "(new file)"),
                        structure=SPECIALIST_STRUCTURE.describe(),
                        example=prompts.SPECIALIST_REPAIR_EXAMPLE,
                    )},
                ]
                try:
                    content = await self._generate(messages, self.settings.analysis_temperature)
                except Exception as e:
                    logger.warning(f"Specialist '{role}' failed for {file_path}: {e}")
                    continue
                analysis = await parse_with_repair(content, parse_agent_response, self.technician,
                                                   RepairContext.specialist_agent(role), self.observer)
                if analysis is not None:
                    insights[file_path].append(analysis)
        return insights

    # --- Phase 3: execution ---

    async def _run_terminal_step(self, step: PlannedChange) -> StepResult:
        op = step.operation
        if self.executor is None:
            return StepResult(step=step, status="skipped", message="No command executor configured.")
        command = TerminalCommand(command=op.command, cwd=op.working_directory, reason=op.reason or step.rationale,
                                  timeout=self.settings.command_timeout_ms)
        surface = self.approval_surface if op.requires_approval else None
        if surface is not None:
            approved = await asyncio.to_thread(surface.request_approval, command)
            if not approved:
                logger.warning(f"Command not approved: {op.command}")
                return StepResult(step=step, status="rejected", message="Command was not approved.")
            surface.mark_running()

        transcript = await asyncio.to_thread(self.executor.run_command, command,
                                             surface.add_output if surface else None)
        if surface is not None:
            surface.mark_complete(transcript.exit_code, transcript.duration_ms)
            await asyncio.to_thread(surface.wait_for_close, self.settings.approval_timeout_s)

        if transcript.failed:
            return StepResult(step=step, status="failed", transcript=transcript,
                              message=f"Command failed ({transcript.failure_kind}): exit code {transcript.exit_code}")
        return StepResult(step=step, status="completed", transcript=transcript, message="Command succeeded.")

    def _apply_file_step(self, step: PlannedChange) -> StepResult:
        if self.step_applier is None:
            return StepResult(step=step, status="delegated", message="No step applier configured.")
        try:
            return self.step_applier(step)
        except Exception as e:
            logger.exception(f"Step applier failed for {step.file_path}")
            return StepResult(step=step, status="failed", message=str(e))

    async def execute_plan(self, plan: ExecutionPlan,
                           progress_callback: Optional[ProgressCallback] = None) -> ExecutionReport:
        """
        Runs the steps in priority order, one at a time.

        A rejected command halts the plan. A failed command halts it when
        ``stop_on_failure`` is set. Steps after a halt are reported as skipped.
        """
        report = ExecutionReport(plan=plan)
        steps = sorted(plan.steps, key=lambda s: s.priority)
        if not steps:
            logger.info("Plan has no steps. Nothing to execute.")
            return report

        for index, step in enumerate(steps):
            if report.halted or self.stop_event.is_set():
                report.step_results.append(StepResult(step=step, status="skipped", message="Not run: plan halted."))
                report.halted = True
                continue

            progress = 60 + int(30 * index / len(steps))
            self._report(progress_callback, "executing", f"Step {index + 1}/{len(steps)}: {step.file_path}",
                         progress, current_file=step.file_path)
            if step.is_terminal:
                result = await self._run_terminal_step(step)
            else:
                result = self._apply_file_step(step)
            logger.info(f"Step {index + 1} ({step.operation.type} {step.file_path}): {result.status}")

            report.step_results.append(result)
            if result.transcript is not None:
                report.transcripts.append(result.transcript)
            if result.status == "rejected":
                report.halted = True
            elif result.status == "failed" and step.is_terminal and self.settings.stop_on_failure:
                report.halted = True
        return report

    # --- Full workflow ---

    async def run(self, user_request: str, context: WorkspaceContext,
                  progress_callback: Optional[ProgressCallback] = None) -> WorkflowResult:
        """Analyze, plan, execute and recover (bounded by ``max_recovery_cycles``)."""
        analysis = await self.analyze_request(user_request, context, progress_callback)
        plan = await self.plan_operations(user_request, analysis, context, progress_callback)
        result = WorkflowResult(analysis=analysis, plan=plan)

        current = plan
        for cycle in range(self.settings.max_recovery_cycles + 1):
            report = await self.execute_plan(current, progress_callback)
            result.reports.append(report)
            step_failed = any(r.status == "failed" for r in report.step_results)
            if report.was_rejected:
                logger.warning("A command was not approved. Stopping.")
                break
            if not report.has_failures and not step_failed:
                result.succeeded = not self.stop_event.is_set()
                break
            if not report.has_failures:
                # Only file steps failed; there is no transcript to recover from.
                break
            if cycle == self.settings.max_recovery_cycles:
                logger.warning(f"Recovery limit of {self.settings.max_recovery_cycles} cycle(s) reached.")
                break

            outcome = await self.recovery.analyze_terminal_failures(
                user_request, current, report.transcripts, context, progress_callback
            )
            result.recovery_outcomes.append(outcome)
            logger.info(f"Recovery analysis: {outcome.rationale}")
            if not outcome.is_recoverable or outcome.recovery_plan is None:
                break
            current = outcome.recovery_plan

        self._report(progress_callback, "complete", "Workflow complete." if result.succeeded else "Workflow finished with problems.", 100)
        return result
