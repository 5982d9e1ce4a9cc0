# backend/codemind/core/command_executor.py
import json
import logging
import os
import platform
import signal
import subprocess
import sys
import threading
import time
from pathlib import Path
from typing import Callable, List, Optional

from .exceptions import CommandExecutionError, CommandSpawnError, CommandTimeoutError, InterruptedError
from .project_models import CommandTranscript, TerminalCommand, TerminalOutput

logger = logging.getLogger(__name__)

# Receives ('stdout' | 'stderr', line) for every non-blank output line.
OutputCallback = Callable[[str, str], None]

POLL_INTERVAL_S = 0.05
THREAD_JOIN_TIMEOUT_S = 10.0


class CommandExecutor:
    """
    Runs shell commands inside the workspace with streamed output.

    Features:
    - Commands run through the platform shell in their own process group.
    - stdout/stderr are read on separate threads; every non-blank line is
      logged, collected and passed to an optional callback as it arrives.
    - A per-command timeout (milliseconds) terminates the whole process group,
      escalating to a kill after a grace period.
    - An optional stop event interrupts a running command.
    - Working directories are resolved against the workspace root and must
      stay inside it.
    """
    def __init__(self, workspace_root: str | Path, stop_event: Optional[threading.Event] = None,
                 default_timeout_ms: Optional[int] = None, grace_period_s: float = 5.0):
        """
        Raises:
            ValueError: If workspace_root is empty.
            FileNotFoundError: If the workspace root does not exist.
            NotADirectoryError: If the workspace root is not a directory.
        """
        if not workspace_root:
            raise ValueError("CommandExecutor requires a valid workspace_root.")
        self.workspace_root = Path(workspace_root).resolve(strict=True)
        if not self.workspace_root.is_dir():
            raise NotADirectoryError(f"Workspace root exists but is not a directory: {self.workspace_root}")
        self.stop_event = stop_event
        self.default_timeout_ms = default_timeout_ms
        self.grace_period_s = grace_period_s
        logger.info(f"CommandExecutor initialized. Workspace root: {self.workspace_root}")

    def _resolve_cwd(self, cwd: Optional[str]) -> Path:
        """Resolves a working directory against the workspace root; it must stay inside it."""
        candidate = Path(cwd or ".")
        if not candidate.is_absolute():
            candidate = self.workspace_root / candidate
        resolved = candidate.resolve()
        # Raises ValueError if outside the root.
        resolved.relative_to(self.workspace_root)
        return resolved

    def _popen_platform_args(self) -> dict:
        if platform.system() == "Windows":
            startupinfo = subprocess.STARTUPINFO()
            startupinfo.dwFlags |= subprocess.STARTF_USESHOWWINDOW
            startupinfo.wShowWindow = subprocess.SW_HIDE
            return {
                "startupinfo": startupinfo,
                "creationflags": subprocess.CREATE_NO_WINDOW | subprocess.CREATE_NEW_PROCESS_GROUP,
            }
        return {"start_new_session": True}

    def _terminate_group(self, process: subprocess.Popen) -> None:
        """SIGTERM the process group, then SIGKILL it if it outlives the grace period."""
        if process.poll() is not None:
            return
        try:
            if platform.system() == "Windows":
                process.terminate()
            else:
                os.killpg(process.pid, signal.SIGTERM)
        except (ProcessLookupError, PermissionError) as e:
            logger.debug(f"Process group {process.pid} already gone: {e}")
        try:
            process.wait(timeout=self.grace_period_s)
            logger.info(f"Process {process.pid} terminated gracefully.")
        except subprocess.TimeoutExpired:
            logger.warning(f"Process {process.pid} did not terminate gracefully. Killing.")
            try:
                if platform.system() == "Windows":
                    process.kill()
                else:
                    os.killpg(process.pid, signal.SIGKILL)
            except (ProcessLookupError, PermissionError):
                pass
            process.wait()

    def execute_command(self, cmd: TerminalCommand, on_output: Optional[OutputCallback] = None) -> TerminalOutput:
        """
        Runs one command to completion (or timeout).

        Returns:
            The collected output of a command that exited with code 0.

        Raises:
            CommandTimeoutError: The timeout elapsed; ``output.timed_out`` is True.
            CommandExecutionError: The command exited non-zero; carries the output.
            CommandSpawnError: The process could not be started.
            InterruptedError: The stop event was set while the command ran.
        """
        command = (cmd.command or "").strip()
        if not command:
            raise CommandSpawnError(cmd.command, "empty command")
        timeout_ms = cmd.timeout if cmd.timeout is not None else self.default_timeout_ms

        try:
            cwd = self._resolve_cwd(cmd.cwd)
        except ValueError:
            self.log_command_status(command, success=False, details=f"Working directory outside workspace: {cmd.cwd}")
            raise CommandSpawnError(command, f"working directory '{cmd.cwd}' is outside the workspace root") from None

        logger.info(f"Executing: {command}")
        logger.info(f"Working directory: {cwd}")
        stdout_lines: List[str] = []
        stderr_lines: List[str] = []
        discard_output = threading.Event()
        start = time.monotonic()
        process = None

        def elapsed_ms() -> int:
            return int((time.monotonic() - start) * 1000)

        def build_output(exit_code: Optional[int], timed_out: bool = False) -> TerminalOutput:
            return TerminalOutput(
                command=command, stdout=list(stdout_lines), stderr=list(stderr_lines),
                exit_code=exit_code, duration_ms=elapsed_ms(), timed_out=timed_out,
            )

        try:
            try:
                process = subprocess.Popen(
                    command, shell=True, cwd=str(cwd), env=dict(os.environ),
                    stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True,
                    encoding=sys.stdout.encoding or 'utf-8', errors='replace', bufsize=1,
                    **self._popen_platform_args()
                )
            except OSError as e:
                self.log_command_status(command, success=False, details=str(e))
                raise CommandSpawnError(command, str(e)) from e

            # Read stdout and stderr in separate threads to prevent deadlocks.
            def read_stream(stream, stream_name: str, output_list: List[str], log_level: int):
                try:
                    for line in iter(stream.readline, ''):
                        text = line.rstrip("\r\n")
                        if not text.strip() or discard_output.is_set():
                            continue
                        logger.log(log_level, f"[CMD {stream_name.upper()}] {text}")
                        output_list.append(text)
                        if on_output:
                            try:
                                on_output(stream_name, text)
                            except Exception as cb_e:
                                logger.error(f"Output callback failed: {cb_e}")
                    stream.close()
                except Exception as e_thread:
                    logger.error(f"Error reading stream ({stream_name}): {e_thread}", exc_info=False)

            stdout_thread = threading.Thread(target=read_stream, args=(process.stdout, "stdout", stdout_lines, logging.INFO), daemon=True)
            stderr_thread = threading.Thread(target=read_stream, args=(process.stderr, "stderr", stderr_lines, logging.WARNING), daemon=True)
            stdout_thread.start(); stderr_thread.start()

            # Polling loop: timeout and stop event.
            while process.poll() is None:
                if self.stop_event and self.stop_event.is_set():
                    logger.warning(f"Stop event received. Terminating process {process.pid} for command: '{command}'")
                    discard_output.set()
                    self._terminate_group(process)
                    raise InterruptedError(f"Command execution stopped by user: {command}")
                if timeout_ms is not None and elapsed_ms() >= timeout_ms:
                    logger.warning(f"Command '{command}' exceeded {timeout_ms}ms. Terminating process group {process.pid}.")
                    discard_output.set()
                    self._terminate_group(process)
                    output = build_output(process.returncode, timed_out=True)
                    self.log_command_status(command, success=False, details=f"Timed out after {timeout_ms}ms")
                    raise CommandTimeoutError(command, timeout_ms, output=output)
                time.sleep(POLL_INTERVAL_S)

            # The process has finished, join the threads to gather all output.
            stdout_thread.join(timeout=THREAD_JOIN_TIMEOUT_S)
            stderr_thread.join(timeout=THREAD_JOIN_TIMEOUT_S)
            if stdout_thread.is_alive() or stderr_thread.is_alive():
                logger.warning(f"Output readers for '{command}' still open after {THREAD_JOIN_TIMEOUT_S}s; output may be incomplete.")

            output = build_output(process.returncode)
            logger.info(f"Command completed with exit code: {output.exit_code} ({output.duration_ms}ms)")
            if output.exit_code != 0:
                stderr_full = "\n".join(output.stderr)
                stdout_full = "\n".join(output.stdout)
                error_msg = f"Command '{command}' failed with exit code {output.exit_code}."
                self.log_command_status(command, success=False, details=stderr_full or stdout_full or error_msg)
                raise CommandExecutionError(error_msg, stdout=stdout_full, stderr=stderr_full,
                                            exit_code=output.exit_code, output=output)

            self.log_command_status(command, success=True, details="\n".join(output.stdout) or "No output.")
            return output

        except InterruptedError:
            self.log_command_status(command, success=False, details="Cancelled by user.")
            raise
        finally:
            # Ensure the subprocess is terminated if it's still running.
            if process and process.poll() is None:
                try:
                    logger.warning(f"Command '{command}' process did not terminate cleanly. Attempting to kill.")
                    process.kill(); process.wait(timeout=2)
                except Exception as kill_e:
                    logger.error(f"Error trying to kill lingering process for command '{command}': {kill_e}")

    def run_command(self, cmd: TerminalCommand, on_output: Optional[OutputCallback] = None) -> CommandTranscript:
        """Like execute_command, but every failure shape becomes a transcript instead of an exception."""
        try:
            return CommandTranscript.from_output(self.execute_command(cmd, on_output))
        except CommandTimeoutError as e:
            if e.output is not None:
                return CommandTranscript.from_output(e.output, failure_kind="timeout")
            return CommandTranscript(command=cmd.command, timed_out=True, stderr=str(e), failure_kind="timeout")
        except CommandExecutionError as e:
            if e.output is not None:
                return CommandTranscript.from_output(e.output, failure_kind="exit")
            return CommandTranscript(command=cmd.command, exit_code=e.exit_code, stdout=e.stdout or "",
                                     stderr=e.stderr or "", failure_kind="exit")
        except CommandSpawnError as e:
            return CommandTranscript(command=cmd.command, stderr=str(e), failure_kind="spawn")

    def log_command_status(self, command: str, success: bool, details: Optional[str] = None):
        status_str = "SUCCESS" if success else "FAILED"
        log_level = logging.INFO if success else logging.ERROR
        max_details_len = 500
        details_str = (details[:max_details_len] + '...' if details and len(details) > max_details_len else details) or 'N/A'
        logger.log(log_level, f"COMMAND_STATUS: {status_str} | Command: '{command}' | Details: {details_str}")


def detect_setup_commands(workspace_path: str | Path) -> List[TerminalCommand]:
    """
    Suggests install/build/compile commands from a package.json.

    The package manager follows the lock file present (pnpm, yarn, else npm).
    Returns an empty list if there is no readable package.json.
    """
    root = Path(workspace_path)
    package_json = root / "package.json"
    commands: List[TerminalCommand] = []
    try:
        with open(package_json, 'r', encoding='utf-8') as f:
            package = json.load(f)
    except FileNotFoundError:
        return commands
    except (json.JSONDecodeError, OSError) as e:
        logger.error(f"Failed to detect setup commands: {e}")
        return commands
    if not isinstance(package, dict):
        return commands

    if (root / "pnpm-lock.yaml").exists():
        manager = "pnpm"
    elif (root / "yarn.lock").exists():
        manager = "yarn"
    else:
        manager = "npm"

    scripts = package.get("scripts") or {}
    if package.get("dependencies") or package.get("devDependencies"):
        commands.append(TerminalCommand(command=f"{manager} install", reason="Install project dependencies", timeout=300_000))
    if scripts.get("build"):
        commands.append(TerminalCommand(command=f"{manager} run build", reason="Build the project", timeout=180_000))
    if scripts.get("compile"):
        commands.append(TerminalCommand(command=f"{manager} run compile", reason="Compile TypeScript", timeout=120_000))
    return commands
