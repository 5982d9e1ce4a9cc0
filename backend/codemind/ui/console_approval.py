# backend/codemind/ui/console_approval.py
import logging
import queue
import threading
from typing import Callable, Optional

from ..core.approval import SessionApprovalSurface, format_duration
from ..core.project_models import ApprovalDecision, TerminalCommand

logger = logging.getLogger(__name__)

APPROVE_ANSWERS = ("y", "yes")
QUESTION = "Run this command? [y/N]"
# Queued by the reader thread when input is closed (Ctrl-D).
_END_OF_INPUT = None


class ConsoleApprovalSurface(SessionApprovalSurface):
    """
    Terminal prompt that asks the user to approve each command and then
    echoes the command's output as it streams in.

    Answers are read by one long-lived reader thread so the wait can be
    bounded by ``timeout_s``; an unanswered prompt abandons the command.
    A read still pending from an abandoned prompt is reused for the next
    one, and answers that arrive while no prompt is open are discarded.
    End of input (Ctrl-D) closes the session, which also abandons it.
    """
    def __init__(self, input_fn: Callable[[str], str] = input, print_fn: Callable[..., None] = print,
                 timeout_s: Optional[float] = 120.0):
        super().__init__()
        self.input_fn = input_fn
        self.print_fn = print_fn
        self.timeout_s = timeout_s
        self._answers: "queue.Queue[Optional[str]]" = queue.Queue()
        self._wanted = threading.Event()
        self._lock = threading.Lock()
        self._reading = False
        self._reader: Optional[threading.Thread] = None

    def _read_loop(self) -> None:
        while True:
            self._wanted.wait()
            self._wanted.clear()
            try:
                answer = self.input_fn("> ")
            except EOFError:
                answer = _END_OF_INPUT
            with self._lock:
                self._reading = False
                self._answers.put(answer)
            if answer is _END_OF_INPUT:
                return

    def _request_answer(self) -> None:
        """Discards answers typed while no prompt was open, then makes sure a read is pending."""
        with self._lock:
            self._discard_stale_answers()
            if self._reader is None or not self._reader.is_alive():
                self._reader = threading.Thread(target=self._read_loop, name="ApprovalPrompt", daemon=True)
                self._reader.start()
            if not self._reading:
                self._reading = True
                self._wanted.set()

    def _discard_stale_answers(self) -> None:
        while True:
            try:
                stale = self._answers.get_nowait()
            except queue.Empty:
                return
            logger.debug(f"Discarding answer given after its prompt closed: {stale!r}")

    def request_approval(self, command: TerminalCommand) -> bool:
        session = self._open_session(command)
        self.print_fn("")
        self.print_fn("=== Terminal Command ===")
        self.print_fn(f"  $ {command.command}")
        if command.cwd and command.cwd != ".":
            self.print_fn(f"  in: {command.cwd}")
        if command.reason:
            self.print_fn(f"  why: {command.reason}")
        self.print_fn(QUESTION)

        self._request_answer()
        try:
            answer = self._answers.get(timeout=self.timeout_s)
        except queue.Empty:
            decision = session.wait(0)
        else:
            if answer is _END_OF_INPUT:
                session.close()
            elif answer.strip().lower() in APPROVE_ANSWERS:
                session.approve()
            else:
                session.reject()
            decision = session.decision

        if decision == ApprovalDecision.ABANDONED:
            self.print_fn("No answer received. Command skipped.")
        elif decision == ApprovalDecision.REJECTED:
            self.print_fn("Command rejected.")
        return decision == ApprovalDecision.APPROVED

    def add_output(self, stream: str, text: str) -> None:
        super().add_output(stream, text)
        prefix = "!" if stream == "stderr" else "|"
        self.print_fn(f"  {prefix} {text}")

    def mark_running(self) -> None:
        super().mark_running()
        self.print_fn("Running...")

    def mark_complete(self, exit_code: Optional[int], duration_ms: int) -> None:
        super().mark_complete(exit_code, duration_ms)
        status = "Success" if exit_code == 0 else "Failed"
        self.print_fn(f"{status} (exit code {exit_code}, {format_duration(duration_ms)})")
