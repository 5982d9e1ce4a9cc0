# backend/codemind/core/workspace.py
import logging
import os
import re
import shutil
from pathlib import Path
from typing import Dict, List, Optional

from .project_models import (
    CurrentFile, FileSnapshot, PlannedChange, Selection, StepResult, WorkspaceContext,
)

logger = logging.getLogger(__name__)

EXCLUDED_DIRS = {".git", ".venv", "venv", "__pycache__", "node_modules", "out", "dist", "build", ".codemind"}
EXCLUDED_EXTENSIONS = {".pyc", ".pyo", ".pyd", ".log", ".bak", ".sqlite3", ".DS_Store"}

LANGUAGE_BY_SUFFIX: Dict[str, str] = {
    ".py": "python", ".js": "javascript", ".jsx": "javascript", ".ts": "typescript",
    ".tsx": "typescript", ".json": "json", ".md": "markdown", ".yaml": "yaml", ".yml": "yaml",
    ".toml": "toml", ".html": "html", ".css": "css", ".sh": "shell", ".rs": "rust",
    ".go": "go", ".java": "java", ".c": "c", ".h": "c", ".cpp": "cpp", ".rb": "ruby",
}

# @path or @"path with spaces"
MENTION_PATTERN = re.compile(r'@(?:"([^"]+)"|(\S+))')


def extract_mentions(text: str) -> List[str]:
    """Returns the file paths referenced with @ in a request, in order, without duplicates."""
    paths: List[str] = []
    for match in MENTION_PATTERN.finditer(text or ""):
        path = (match.group(1) or match.group(2) or "").strip().rstrip(",.;:")
        if path and path not in paths:
            paths.append(path)
    return paths


def strip_mentions(text: str) -> str:
    return re.sub(r"\s{2,}", " ", MENTION_PATTERN.sub("", text or "")).strip()


def detect_language(path: str) -> str:
    return LANGUAGE_BY_SUFFIX.get(Path(path).suffix.lower(), "")


def truncate_content(content: str, limit: int) -> str:
    """Cuts mentioned-file content, noting the original size."""
    if len(content) <= limit:
        return content
    return content[:limit] + f"\n\n... (truncated, total: {len(content)} chars) ..."


class WorkspaceReader:
    """
    Read-only view of the workspace used to build prompt context.

    All paths are resolved inside the workspace root; anything that escapes
    it is refused.
    """
    def __init__(self, workspace_root: str | Path):
        """
        Raises:
            ValueError: If workspace_root is empty.
            FileNotFoundError: If the resolved root does not exist.
            NotADirectoryError: If the resolved root is not a directory.
        """
        if not workspace_root:
            raise ValueError("WorkspaceReader requires a valid workspace_root.")
        try:
            self.root = Path(workspace_root).resolve(strict=True)
        except FileNotFoundError:
            logger.error(f"Workspace root does not exist: {Path(workspace_root).resolve()}")
            raise
        if not self.root.is_dir():
            raise NotADirectoryError(f"Workspace root exists but is not a directory: {self.root}")
        logger.info(f"WorkspaceReader initialized. Root: {self.root}")

    def _resolve_safe_path(self, relative_path: str | Path) -> Path:
        """Raises ValueError if the path resolves outside the workspace root."""
        candidate = Path(relative_path)
        if not candidate.is_absolute():
            candidate = self.root / candidate
        resolved = candidate.resolve()
        try:
            resolved.relative_to(self.root)
        except ValueError:
            raise ValueError(f"Path '{relative_path}' is outside the workspace root.") from None
        return resolved

    def relative(self, path: str | Path) -> str:
        return self._resolve_safe_path(path).relative_to(self.root).as_posix()

    def read_file(self, relative_path: str | Path, max_chars: Optional[int] = None) -> str:
        """
        Raises:
            ValueError: If the path is outside the workspace root.
            FileNotFoundError: If the file does not exist.
            RuntimeError: If the file cannot be read.
        """
        target = self._resolve_safe_path(relative_path)
        if not target.is_file():
            raise FileNotFoundError(f"File not found: '{relative_path}' (resolved to {target})")
        try:
            with open(target, 'r', encoding='utf-8', errors='replace') as f:
                content = f.read()
        except OSError as e:
            logger.exception(f"Error reading file '{relative_path}'")
            raise RuntimeError(f"Failed to read file '{relative_path}': {e}") from e
        logger.debug(f"Read {len(content)} chars from {target}")
        return content[:max_chars] if max_chars is not None else content

    def list_project_files(self, limit: Optional[int] = None) -> List[str]:
        """Relative POSIX paths of workspace files, sorted, skipping VCS, dependency and build folders."""
        files: List[str] = []
        for root, dirs, filenames in os.walk(self.root, topdown=True):
            # Modify dirs in-place to prevent recursion into excluded directories
            dirs[:] = sorted(d for d in dirs if d not in EXCLUDED_DIRS)
            for filename in sorted(filenames):
                if Path(filename).suffix in EXCLUDED_EXTENSIONS or filename in EXCLUDED_EXTENSIONS:
                    continue
                files.append((Path(root) / filename).relative_to(self.root).as_posix())
        files.sort()
        return files[:limit] if limit is not None else files

    def snapshot(self, relative_path: str) -> FileSnapshot:
        return FileSnapshot(path=self.relative(relative_path), language=detect_language(relative_path),
                            content=self.read_file(relative_path))

    def build_context(self, current_file: Optional[str] = None,
                      mentioned: Optional[List[str]] = None,
                      open_files: Optional[List[str]] = None,
                      recent_files: Optional[List[str]] = None,
                      selection: Optional[Selection] = None,
                      max_project_files: Optional[int] = None) -> WorkspaceContext:
        """Assembles the WorkspaceContext; unreadable mentioned files are skipped with a warning."""
        current: Optional[CurrentFile] = None
        if current_file:
            try:
                snap = self.snapshot(current_file)
                current = CurrentFile(path=snap.path, language=snap.language, content=snap.content, selection=selection)
            except (ValueError, FileNotFoundError, RuntimeError) as e:
                logger.warning(f"Current file '{current_file}' could not be read: {e}")
                current = CurrentFile(path=current_file.replace("\\", "/"), language=detect_language(current_file),
                                      selection=selection)

        mentioned_files: List[FileSnapshot] = []
        for path in mentioned or []:
            try:
                mentioned_files.append(self.snapshot(path))
            except (ValueError, FileNotFoundError, RuntimeError) as e:
                logger.warning(f"Skipping mentioned file '{path}': {e}")

        return WorkspaceContext(
            workspace_root=self.root.as_posix(),
            current_file=current,
            open_files=list(open_files or []),
            recent_files=list(recent_files or []),
            project_files=self.list_project_files(max_project_files),
            mentioned_files=mentioned_files,
        )


def format_analysis_context(context: WorkspaceContext, max_project_files: int = 50,
                            mentioned_chars: int = 3000) -> str:
    """Context block for the request-analysis prompt."""
    parts: List[str] = []
    current = context.current_file
    if current:
        parts.append(f"- Current file: {current.path} ({current.language or 'text'})\n")
        if current.selection:
            parts.append(f"- User has selected: lines {current.selection.start_line}-{current.selection.end_line}\n")
    if context.open_files:
        shown = context.open_files[:5]
        more = f" (+{len(context.open_files) - 5} more)" if len(context.open_files) > 5 else ""
        parts.append(f"- Open files: {', '.join(shown)}{more}\n")

    if context.project_files:
        relevant = [f for f in context.project_files
                    if not any(part in EXCLUDED_DIRS for part in f.split("/")[:-1])][:max_project_files]
        parts.append("\n## Workspace File Structure:\n")
        parts.append("\n".join(relevant) + "\n")
        if len(context.project_files) > len(relevant):
            parts.append(f"... ({len(context.project_files) - len(relevant)} more files)\n")

    if context.mentioned_files:
        parts.append("\n## User-Mentioned Files (CRITICAL CONTEXT):\n")
        parts.append("The user explicitly referenced these files with @ mentions. READ THEM CAREFULLY:\n\n")
        for index, file in enumerate(context.mentioned_files, start=1):
            parts.append(f"### File {index}: {file.path}\n```{file.language}\n"
                         f"{truncate_content(file.content, mentioned_chars)}\n```\n\n")
    return "".join(parts) or "(no workspace context)\n"


def format_planning_context(context: WorkspaceContext, mentioned_chars: int = 3000,
                            current_file_chars: int = 1000) -> str:
    """Context block for the planning prompt: mentioned files first, then the current file."""
    parts: List[str] = []
    if context.mentioned_files:
        parts.append("\n### USER-MENTIONED FILES (READ THESE FIRST):\n")
        for index, file in enumerate(context.mentioned_files, start=1):
            parts.append(f"#### Mentioned File {index}: {file.path}\n```{file.language}\n"
                         f"{truncate_content(file.content, mentioned_chars)}\n```\n\n")
    current = context.current_file
    if current:
        suffix = "\n... (truncated)" if len(current.content) > current_file_chars else ""
        parts.append(f"### Current File: {current.path}\n```{current.language}\n"
                     f"{current.content[:current_file_chars]}{suffix}\n```\n")
    return "".join(parts) or "(no workspace context)\n"


class FileStepApplier:
    """
    Applies file steps that carry everything they need.

    create/modify write ``operation.content`` when the plan supplies it,
    delete removes the file, rename moves it. A create/modify step without
    content is left to a code-generating agent and reported as delegated.
    """
    def __init__(self, workspace_root: str | Path):
        self.reader = WorkspaceReader(workspace_root)

    def __call__(self, step: PlannedChange) -> StepResult:
        op = step.operation
        try:
            target = self.reader._resolve_safe_path(step.file_path)
            if op.type in ("create", "modify"):
                if op.content is None:
                    return StepResult(step=step, status="delegated", message="No content supplied; left for code generation.")
                target.parent.mkdir(parents=True, exist_ok=True)
                with open(target, 'w', encoding='utf-8') as f:
                    f.write(op.content)
                logger.info(f"Wrote {len(op.content)} chars to {step.file_path}")
                return StepResult(step=step, status="completed", message=f"applied {op.type} to {step.file_path}")
            if op.type == "delete":
                if not target.is_file():
                    return StepResult(step=step, status="skipped", message=f"{step.file_path} does not exist.")
                target.unlink()
                logger.info(f"Deleted {step.file_path}")
                return StepResult(step=step, status="completed", message=f"deleted {step.file_path}")
            if op.type == "rename":
                destination = self.reader._resolve_safe_path(op.new_path)
                destination.parent.mkdir(parents=True, exist_ok=True)
                shutil.move(str(target), str(destination))
                logger.info(f"Renamed {step.file_path} -> {op.new_path}")
                return StepResult(step=step, status="completed", message=f"renamed to {op.new_path}")
        except (ValueError, OSError) as e:
            logger.error(f"Failed to apply {op.type} on {step.file_path}: {e}")
            return StepResult(step=step, status="failed", message=str(e))
        return StepResult(step=step, status="skipped", message=f"Unsupported operation '{op.type}'.")
