# backend/codemind/core/exceptions.py
from typing import List, Optional

class CoreError(Exception):
    """Base exception for all custom errors raised within the Codemind core modules."""
    pass

class InterruptedError(CoreError):
    """
    Raised when a workflow is intentionally stopped, for example when the
    stop event is set while a command is still running.
    """
    pass

class MalformedOutputError(CoreError):
    """
    Raised when a strict parser finds no recognizable structure in a response.

    This never reaches the end user; the tier escalation driver turns it into
    a "try the next tier" signal.
    """
    pass

class RepairError(CoreError):
    """
    Raised by the DelimiterTechnician when the repair call itself fails
    (provider/network error) or when the repaired text dropped content.
    """
    pass

class PipelineExhaustedError(CoreError):
    """
    Raised when every tier of an escalation pipeline failed, including the
    deterministic fallback (if one was configured).
    """
    def __init__(self, message: str, attempts: Optional[List[str]] = None):
        super().__init__(message)
        self.attempts = attempts or []

class PlanningError(CoreError):
    """Base exception for errors raised while producing an execution plan."""
    pass

class PlanEmptyError(PlanningError):
    """
    Raised when even the deterministic fallback plan has zero steps, so the
    task fails without any partial plan.
    """
    pass

# Specific LLM client exceptions (RateLimitError, AuthenticationError) are in llm_client.py
class CommandExecutionError(RuntimeError):
    """
    Raised when a command executed via CommandExecutor fails (non-zero exit code).

    This exception is a structured way to pass the complete context of a command
    failure, including its output streams and exit code, to the recovery
    orchestrator.
    """
    def __init__(self, message: str, stdout: Optional[str] = None, stderr: Optional[str] = None,
                 exit_code: Optional[int] = None, output=None):
        super().__init__(message)
        self.message = message
        self.stdout = stdout
        self.stderr = stderr
        self.exit_code = exit_code
        # The full TerminalOutput record, when the executor produced one.
        self.output = output

class CommandTimeoutError(CoreError):
    """
    Raised when a command exceeded its configured timeout and was terminated.

    Deliberately not a CommandExecutionError: a timeout is not a non-zero exit.
    The message always includes the timeout so callers can decide whether to extend it.
    """
    def __init__(self, command: str, timeout_ms: int, output=None):
        super().__init__(f"Command timed out after {timeout_ms}ms: {command}")
        self.command = command
        self.timeout_ms = timeout_ms
        self.output = output

class CommandSpawnError(CoreError):
    """Raised when the operating system could not start the command at all."""
    def __init__(self, command: str, reason: str):
        super().__init__(f"Failed to start command '{command}': {reason}")
        self.command = command
        self.reason = reason
