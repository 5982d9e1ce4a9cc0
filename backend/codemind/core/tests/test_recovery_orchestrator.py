# backend/codemind/core/tests/test_recovery_orchestrator.py
import textwrap
from unittest.mock import MagicMock

import pytest

from codemind.core.delimiter_technician import DelimiterTechnician
from codemind.core.llm_client import GenerationResult
from codemind.core.project_models import (
    CommandTranscript, ExecutionPlan, FileSnapshot, ProgressUpdate, RecoveryState, WorkspaceContext,
)
from codemind.core.recovery_orchestrator import (
    RECOVERY_AGENT_INPUT,
    RECOVERY_VERIFICATION,
    UNPARSEABLE_ANALYSIS,
    RecoveryOrchestrator,
)
from codemind.core.tiered_parser import RecordingTierObserver

RETRY_RESPONSE = textwrap.dedent("""\
    needsRetry: true
    analysis: "Package 'requets' does not exist, the name is misspelled"
    recoveryPlan:
      taskType: bug_fix
      summary: Install the correct package
      steps:
        - filePath: install-requests
          operation:
            type: terminal
            filePath: install-requests
            command: pip install requests
          priority: 1
    """)


def _llm(*responses) -> MagicMock:
    llm = MagicMock()
    llm.generate.side_effect = [
        r if isinstance(r, Exception) else GenerationResult(content=r) for r in responses
    ]
    return llm


def _failed(command="pip install requets", **kwargs) -> CommandTranscript:
    defaults = {"exit_code": 1, "stderr": "ERROR: No matching distribution found for requets",
                "failure_kind": "exit"}
    defaults.update(kwargs)
    return CommandTranscript(command=command, **defaults)


@pytest.fixture
def plan() -> ExecutionPlan:
    return ExecutionPlan(summary="Install HTTP client")


@pytest.fixture
def context() -> WorkspaceContext:
    return WorkspaceContext(
        workspace_root="/work/app",
        recent_files=["a.py", "b.py"],
        mentioned_files=[FileSnapshot(path="requirements.txt", content="requets==2.0\n")],
    )


def _orchestrator(llm, observer=None) -> RecoveryOrchestrator:
    return RecoveryOrchestrator(llm, DelimiterTechnician(llm), observer=observer)


class TestAnalyzeTerminalFailures:

    @pytest.mark.asyncio
    async def test_no_failures_needs_no_model_call(self, plan, context):
        llm = _llm()
        ok = CommandTranscript(command="echo ok", exit_code=0, stdout="ok")

        outcome = await _orchestrator(llm).analyze_terminal_failures("req", plan, [ok], context)

        assert outcome.state == RecoveryState.NO_ACTION_NEEDED
        assert outcome.no_action_needed is True
        assert outcome.rationale == "All terminal commands succeeded"
        llm.generate.assert_not_called()

    @pytest.mark.asyncio
    async def test_retry_produces_recovery_plan(self, plan, context):
        llm = _llm(RETRY_RESPONSE)
        updates = []

        outcome = await _orchestrator(llm).analyze_terminal_failures(
            "Add requests", plan, [_failed()], context, progress_callback=updates.append
        )

        assert outcome.state == RecoveryState.RECOVERY_PRODUCED
        assert outcome.is_recoverable is True
        assert outcome.rationale == "Package 'requets' does not exist, the name is misspelled"
        recovery = outcome.recovery_plan
        assert len(recovery.steps) == 1
        assert recovery.steps[0].is_terminal
        assert recovery.steps[0].operation.command == "pip install requests"
        assert recovery.steps[0].agent_inputs == [RECOVERY_AGENT_INPUT]
        assert recovery.verification_steps == RECOVERY_VERIFICATION
        assert isinstance(updates[0], ProgressUpdate)
        assert updates[0].phase == "recovering"
        llm.generate.assert_called_once()

    @pytest.mark.asyncio
    async def test_no_retry_is_not_recoverable(self, plan, context):
        llm = _llm("needsRetry: false\nanalysis: The port is already in use.")

        outcome = await _orchestrator(llm).analyze_terminal_failures("req", plan, [_failed()], context)

        assert outcome.state == RecoveryState.RECOVERY_PRODUCED
        assert outcome.is_recoverable is False
        assert outcome.recovery_plan is None
        assert outcome.rationale == "The port is already in use."

    @pytest.mark.asyncio
    async def test_model_error_is_reported(self, plan, context):
        llm = _llm(RuntimeError("service unavailable"))

        outcome = await _orchestrator(llm).analyze_terminal_failures("req", plan, [_failed()], context)

        assert outcome.state == RecoveryState.RECOVERY_PRODUCED
        assert outcome.is_recoverable is False
        assert outcome.rationale == "Analysis failed: service unavailable"

    @pytest.mark.asyncio
    async def test_unparseable_analysis_after_failed_repair(self, plan, context):
        llm = _llm("Error: something", "I am not sure what went wrong here, sorry.")
        observer = RecordingTierObserver()

        outcome = await _orchestrator(llm, observer).analyze_terminal_failures("req", plan, [_failed()], context)

        assert outcome.is_recoverable is False
        assert outcome.rationale == UNPARSEABLE_ANALYSIS
        assert llm.generate.call_count == 2
        assert [tier for _, tier, _ in observer.events] == ["strict", "repair", "fallback"]

    @pytest.mark.asyncio
    async def test_repaired_analysis_is_used(self, plan, context):
        llm = _llm("needsRetry true, analysis Missing module", "needsRetry: false\nanalysis: Missing module")

        outcome = await _orchestrator(llm).analyze_terminal_failures("req", plan, [_failed()], context)

        assert outcome.rationale == "Missing module"
        assert llm.generate.call_count == 2


class TestBuildPrompt:

    def test_prompt_lists_failures_and_context(self, plan, context):
        prompt = _orchestrator(_llm()).build_prompt(
            "Add requests", plan,
            [_failed(), _failed(command="npm test", exit_code=None, stderr="", failure_kind="timeout")],
            context,
        )

        assert "Add requests" in prompt
        assert "Install HTTP client" in prompt
        assert "Command: pip install requets\nExit Code: 1" in prompt
        assert "Command: npm test\nExit Code: timed out" in prompt
        assert "File: requirements.txt" in prompt
        assert "- Root: /work/app" in prompt
        assert "a.py, b.py" in prompt

    def test_prompt_without_context(self, plan):
        prompt = _orchestrator(_llm()).build_prompt("req", plan, [_failed(stderr="", stdout="")], WorkspaceContext())

        assert "No files loaded" in prompt
        assert "No workspace open" in prompt
        assert "(no output)" in prompt
