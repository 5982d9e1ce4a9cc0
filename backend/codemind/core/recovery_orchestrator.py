# backend/codemind/core/recovery_orchestrator.py
import asyncio
import logging
from typing import Callable, List, Optional

from . import prompts
from .config_manager import PipelineSettings
from .delimiter_technician import DelimiterTechnician, RepairContext
from .exceptions import PipelineExhaustedError
from .llm_client import ChatMessage, GenerationConfig, LLMProvider
from .plan_normalizer import normalize_plan
from .project_models import (
    CommandTranscript, ExecutionPlan, ProgressUpdate, RecoveryOutcome, RecoveryRecord,
    RecoveryState, WorkspaceContext,
)
from .block_parser import parse_recovery_analysis
from .tiered_parser import TierObserver, build_tiers, escalate

logger = logging.getLogger(__name__)

RECOVERY_AGENT_INPUT = {"agent": "orchestrator", "contribution": "Terminal failure recovery"}
RECOVERY_VERIFICATION = ["Verify terminal commands execute successfully"]
UNPARSEABLE_ANALYSIS = "Could not parse the failure analysis."

ProgressCallback = Callable[[ProgressUpdate], None]


class RecoveryOrchestrator:
    """
    Turns failed terminal transcripts into a corrective plan.

    State moves from EVALUATING to NO_ACTION_NEEDED (every command succeeded,
    no model call is made) or RECOVERY_PRODUCED (with or without a plan).
    The failure analysis goes through the same tiers as any other block
    response: strict, then one repair, then a fixed "could not parse" record.
    """
    def __init__(self, llm: LLMProvider, technician: DelimiterTechnician,
                 settings: Optional[PipelineSettings] = None, observer: Optional[TierObserver] = None):
        self.llm = llm
        self.technician = technician
        self.settings = settings or PipelineSettings()
        self.observer = observer

    def _failure_summary(self, failed: List[CommandTranscript]) -> str:
        entries = []
        for transcript in failed:
            if transcript.failure_kind == "timeout":
                exit_code = "timed out"
            elif transcript.failure_kind == "spawn":
                exit_code = "could not start"
            else:
                exit_code = str(transcript.exit_code)
            entries.append(prompts.FAILURE_ENTRY.format(
                command=transcript.command,
                exit_code=exit_code,
                output=transcript.stderr or transcript.stdout or "(no output)",
            ))
        return "\n---\n".join(entries)

    def _context_files(self, context: WorkspaceContext) -> str:
        limit = self.settings.recovery_context_chars
        files = [
            f"File: {f.path}\nContent preview: {f.content[:limit]}..."
            for f in context.mentioned_files
        ]
        return "\n\n".join(files) or "No files loaded"

    def build_prompt(self, user_request: str, plan: ExecutionPlan, failed: List[CommandTranscript],
                     context: WorkspaceContext) -> str:
        recent = context.recent_files[:self.settings.max_recent_files]
        return prompts.RECOVERY_PROMPT.format(
            user_request=user_request,
            plan_summary=plan.summary,
            failure_summary=self._failure_summary(failed),
            context_files=self._context_files(context),
            workspace_root=context.workspace_root or "No workspace open",
            recent_files=", ".join(recent) or "none",
            structure=RepairContext.failure_analysis().expected_structure.describe(),
        )

    def _build_recovery_plan(self, record: RecoveryRecord, context: WorkspaceContext) -> Optional[ExecutionPlan]:
        if not (record.needs_retry and record.recovery_plan):
            return None
        raw = record.recovery_plan.model_copy(deep=True)
        for step in raw.steps:
            step["agent_inputs"] = [dict(RECOVERY_AGENT_INPUT)]
        raw.verification_steps = list(RECOVERY_VERIFICATION)
        plan = normalize_plan(raw, workspace_root=context.workspace_root)
        if plan.is_empty:
            logger.warning("Recovery plan had no usable steps.")
            return None
        return plan

    async def analyze_terminal_failures(self, user_request: str, plan: ExecutionPlan,
                                        transcripts: List[CommandTranscript], context: WorkspaceContext,
                                        progress_callback: Optional[ProgressCallback] = None) -> RecoveryOutcome:
        if progress_callback:
            progress_callback(ProgressUpdate(phase="recovering", status="Analyzing terminal failures...", progress=0))

        failed = [t for t in transcripts if t.failed]
        if not failed:
            logger.info("All terminal commands succeeded. No recovery needed.")
            return RecoveryOutcome(state=RecoveryState.NO_ACTION_NEEDED, no_action_needed=True,
                                   rationale="All terminal commands succeeded")

        logger.info(f"Analyzing {len(failed)} failed terminal command(s).")
        messages: List[ChatMessage] = [{"role": "user", "content": self.build_prompt(user_request, plan, failed, context)}]
        config = GenerationConfig(temperature=self.settings.recovery_temperature,
                                  max_tokens=self.settings.recovery_max_tokens)
        try:
            response = await asyncio.to_thread(self.llm.generate, messages, config)
        except Exception as e:
            logger.error(f"Failed to analyze terminal failures: {e}")
            return RecoveryOutcome(state=RecoveryState.RECOVERY_PRODUCED, no_action_needed=False,
                                   is_recoverable=False, rationale=f"Analysis failed: {e}")

        tiers = build_tiers(
            parse_recovery_analysis,
            self.technician,
            RepairContext.failure_analysis(),
            fallback=lambda: RecoveryRecord(needs_retry=False, analysis=UNPARSEABLE_ANALYSIS),
        )
        try:
            outcome = await escalate(tiers, response.content, pipeline="terminal failure analysis",
                                     observer=self.observer)
        except PipelineExhaustedError as e:
            return RecoveryOutcome(state=RecoveryState.RECOVERY_PRODUCED, no_action_needed=False,
                                   is_recoverable=False, rationale=f"Analysis failed: {e}")

        record: RecoveryRecord = outcome.data
        recovery_plan = self._build_recovery_plan(record, context)
        if recovery_plan:
            logger.info(f"Created recovery plan with {len(recovery_plan.steps)} step(s).")
        return RecoveryOutcome(
            state=RecoveryState.RECOVERY_PRODUCED,
            no_action_needed=False,
            is_recoverable=recovery_plan is not None,
            rationale=record.analysis or "Analysis failed",
            recovery_plan=recovery_plan,
        )
