# backend/codemind/core/approval.py
"""
Human approval of terminal commands.

Each command gets one ApprovalSession that moves from PENDING to exactly one
of APPROVED, REJECTED or ABANDONED. Closing the surface before deciding, or
letting the wait time out, counts as ABANDONED; callers treat it like a
rejection.
"""
import logging
import threading
from typing import List, Optional, Protocol

from .project_models import ApprovalDecision, OutputLine, PendingCommand, TerminalCommand

logger = logging.getLogger(__name__)


def format_duration(ms: Optional[int]) -> str:
    if ms is None:
        return "-"
    if ms < 1000:
        return f"{ms}ms"
    if ms < 60000:
        return f"{ms / 1000:.1f}s"
    return f"{ms / 60000:.1f}m"


class ApprovalSurface(Protocol):
    def request_approval(self, command: TerminalCommand) -> bool: ...

    def add_output(self, stream: str, text: str) -> None: ...

    def mark_running(self) -> None: ...

    def mark_complete(self, exit_code: Optional[int], duration_ms: int) -> None: ...

    def wait_for_close(self, timeout: Optional[float] = None) -> None: ...


class ApprovalSession:
    """State of one pending command. Safe to drive from another thread."""

    def __init__(self, command: TerminalCommand):
        self.pending = PendingCommand(command=command.command, reason=command.reason)
        self._lock = threading.Lock()
        self._decided = threading.Event()
        self._closed = threading.Event()

    @property
    def decision(self) -> ApprovalDecision:
        return self.pending.decision

    @property
    def approved(self) -> bool:
        return self.pending.decision == ApprovalDecision.APPROVED

    def _decide(self, decision: ApprovalDecision) -> bool:
        with self._lock:
            if self.pending.decision != ApprovalDecision.PENDING:
                return False
            self.pending.decision = decision
        logger.info(f"Command {self.pending.id} '{self.pending.command}': {decision.value}")
        self._decided.set()
        return True

    def approve(self) -> bool:
        return self._decide(ApprovalDecision.APPROVED)

    def reject(self) -> bool:
        return self._decide(ApprovalDecision.REJECTED)

    def close(self) -> None:
        """Closing an undecided, not-running session abandons it."""
        if not self.pending.is_running:
            self._decide(ApprovalDecision.ABANDONED)
        self._closed.set()

    def wait(self, timeout: Optional[float] = None) -> ApprovalDecision:
        """Blocks until a decision is made; a timeout abandons the session."""
        if not self._decided.wait(timeout):
            logger.warning(f"No decision for command '{self.pending.command}' within {timeout}s. Abandoning.")
            self._decide(ApprovalDecision.ABANDONED)
        return self.pending.decision

    def wait_for_close(self, timeout: Optional[float] = None) -> bool:
        return self._closed.wait(timeout)

    def add_output(self, stream: str, text: str) -> None:
        with self._lock:
            self.pending.output_lines.append(OutputLine(stream=stream, text=text))

    def mark_running(self) -> None:
        with self._lock:
            self.pending.is_running = True

    def mark_complete(self, exit_code: Optional[int], duration_ms: int) -> None:
        with self._lock:
            if self.pending.is_complete:
                return
            self.pending.is_running = False
            self.pending.exit_code = exit_code
            self.pending.duration_ms = duration_ms


class SessionApprovalSurface:
    """Base for surfaces that keep one ApprovalSession per requested command."""

    def __init__(self):
        self.session: Optional[ApprovalSession] = None
        self.history: List[PendingCommand] = []

    def _open_session(self, command: TerminalCommand) -> ApprovalSession:
        self.session = ApprovalSession(command)
        self.history.append(self.session.pending)
        return self.session

    def add_output(self, stream: str, text: str) -> None:
        if self.session:
            self.session.add_output(stream, text)

    def mark_running(self) -> None:
        if self.session:
            self.session.mark_running()

    def mark_complete(self, exit_code: Optional[int], duration_ms: int) -> None:
        if self.session:
            self.session.mark_complete(exit_code, duration_ms)

    def wait_for_close(self, timeout: Optional[float] = None) -> None:
        return None


class AutoApprovalSurface(SessionApprovalSurface):
    """Approves every command without asking (non-interactive runs)."""

    def request_approval(self, command: TerminalCommand) -> bool:
        session = self._open_session(command)
        logger.info(f"Auto-approving command: {command.command}")
        session.approve()
        return True
