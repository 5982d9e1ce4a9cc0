# backend/codemind/core/tests/test_approval.py
import threading
import time
from unittest.mock import MagicMock

import pytest

from codemind.core.approval import ApprovalSession, AutoApprovalSurface, format_duration
from codemind.core.project_models import ApprovalDecision, TerminalCommand
from codemind.ui.console_approval import ConsoleApprovalSurface


@pytest.fixture
def command() -> TerminalCommand:
    return TerminalCommand(command="npm install", cwd="web", reason="Install dependencies")


@pytest.mark.parametrize("ms, expected", [(None, "-"), (250, "250ms"), (1500, "1.5s"), (90000, "1.5m")])
def test_format_duration(ms, expected):
    assert format_duration(ms) == expected


class TestApprovalSession:

    def test_starts_pending(self, command):
        session = ApprovalSession(command)
        assert session.decision == ApprovalDecision.PENDING
        assert session.pending.command == "npm install"
        assert session.pending.reason == "Install dependencies"
        assert not session.approved

    def test_only_first_decision_counts(self, command):
        session = ApprovalSession(command)
        assert session.approve() is True
        assert session.reject() is False
        assert session.decision == ApprovalDecision.APPROVED

    def test_close_before_decision_abandons(self, command):
        session = ApprovalSession(command)
        session.close()
        assert session.decision == ApprovalDecision.ABANDONED
        assert session.wait_for_close(0) is True

    def test_close_while_running_keeps_decision(self, command):
        session = ApprovalSession(command)
        session.approve()
        session.mark_running()
        session.close()
        assert session.decision == ApprovalDecision.APPROVED

    def test_wait_timeout_abandons(self, command):
        session = ApprovalSession(command)
        assert session.wait(0.05) == ApprovalDecision.ABANDONED

    def test_wait_returns_decision_from_other_thread(self, command):
        session = ApprovalSession(command)
        threading.Timer(0.05, session.reject).start()
        assert session.wait(5) == ApprovalDecision.REJECTED

    def test_output_and_completion(self, command):
        session = ApprovalSession(command)
        session.approve()
        session.mark_running()
        session.add_output("stdout", "added 10 packages")
        session.add_output("stderr", "npm WARN deprecated")
        session.mark_complete(0, 1200)
        session.mark_complete(1, 9999)

        pending = session.pending
        assert [(line.stream, line.text) for line in pending.output_lines] == [
            ("stdout", "added 10 packages"), ("stderr", "npm WARN deprecated"),
        ]
        assert pending.is_complete
        assert not pending.is_running
        assert pending.exit_code == 0
        assert pending.duration_ms == 1200


class TestAutoApprovalSurface:

    def test_approves_and_records(self, command):
        surface = AutoApprovalSurface()
        assert surface.request_approval(command) is True
        surface.mark_running()
        surface.add_output("stdout", "ok")
        surface.mark_complete(0, 10)
        surface.wait_for_close(0)

        assert surface.session.approved
        assert surface.history[0].output_lines[0].text == "ok"
        assert surface.history[0].exit_code == 0

    def test_calls_without_session_are_ignored(self):
        surface = AutoApprovalSurface()
        surface.add_output("stdout", "nothing")
        surface.mark_complete(0, 1)
        assert surface.history == []


class TestConsoleApprovalSurface:

    def test_yes_approves(self, command):
        printed = MagicMock()
        surface = ConsoleApprovalSurface(input_fn=lambda prompt: " Y ", print_fn=printed, timeout_s=5)

        assert surface.request_approval(command) is True

        lines = [call.args[0] for call in printed.call_args_list]
        assert "  $ npm install" in lines
        assert "  in: web" in lines
        assert "  why: Install dependencies" in lines

    @pytest.mark.parametrize("answer", ["n", "", "maybe"])
    def test_anything_else_rejects(self, command, answer):
        printed = MagicMock()
        surface = ConsoleApprovalSurface(input_fn=lambda prompt: answer, print_fn=printed, timeout_s=5)

        assert surface.request_approval(command) is False
        assert surface.session.decision == ApprovalDecision.REJECTED
        printed.assert_any_call("Command rejected.")

    def test_end_of_input_abandons(self, command):
        def closed_stdin(prompt):
            raise EOFError

        surface = ConsoleApprovalSurface(input_fn=closed_stdin, print_fn=MagicMock(), timeout_s=5)
        assert surface.request_approval(command) is False
        assert surface.session.decision == ApprovalDecision.ABANDONED

    def test_unanswered_prompt_times_out(self, command):
        release = threading.Event()
        printed = MagicMock()

        def never_answers(prompt):
            release.wait(5)
            return "y"

        surface = ConsoleApprovalSurface(input_fn=never_answers, print_fn=printed, timeout_s=0.1)
        try:
            assert surface.request_approval(command) is False
            assert surface.session.decision == ApprovalDecision.ABANDONED
            printed.assert_any_call("No answer received. Command skipped.")
        finally:
            release.set()

    def test_late_answer_does_not_leak_into_next_prompt(self, command):
        release = threading.Event()
        answers = iter(["y", "n"])
        calls = []

        def slow_then_prompt(prompt):
            calls.append(prompt)
            if len(calls) == 1:
                release.wait(5)
            return next(answers)

        surface = ConsoleApprovalSurface(input_fn=slow_then_prompt, print_fn=MagicMock(), timeout_s=0.1)
        assert surface.request_approval(command) is False
        first_reader = surface._reader

        release.set()
        deadline = time.monotonic() + 5
        while surface._reading and time.monotonic() < deadline:
            time.sleep(0.01)

        second = TerminalCommand(command="rm -rf dist")
        assert surface.request_approval(second) is False
        assert surface.session.decision == ApprovalDecision.REJECTED
        assert surface.history[0].decision == ApprovalDecision.ABANDONED
        assert surface._reader is first_reader
        assert len(calls) == 2

    def test_streams_output_and_status(self, command):
        printed = MagicMock()
        surface = ConsoleApprovalSurface(input_fn=lambda prompt: "yes", print_fn=printed, timeout_s=5)
        surface.request_approval(command)
        surface.mark_running()
        surface.add_output("stdout", "building")
        surface.add_output("stderr", "warning: unused")
        surface.mark_complete(2, 2500)

        lines = [call.args[0] for call in printed.call_args_list]
        assert "  | building" in lines
        assert "  ! warning: unused" in lines
        assert "Failed (exit code 2, 2.5s)" in lines
        assert surface.session.pending.exit_code == 2
