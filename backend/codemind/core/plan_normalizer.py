# backend/codemind/core/plan_normalizer.py
"""
Turns any parsed plan record into a canonical ExecutionPlan.

Everything here is a pure function of its inputs. Normalizing an already
normalized plan returns an equal plan.
"""
import logging
import math
import posixpath
import re
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from .project_models import (
    OPERATION_TYPES, Complexity, ExecutionPlan, FileChangeOperation, PlannedChange,
    PlanRecord, TaskAnalysis, TaskType, TerminalOperation, WorkspaceContext,
    coerce_bool, coerce_str_list,
)

logger = logging.getLogger(__name__)

DEFAULT_SUMMARY = "Execute user request"
DEFAULT_RATIONALE = "Required for user request"
DEFAULT_REASON = "User requested change"
DEFAULT_CONFIDENCE = 0.7

FALLBACK_CONFIDENCE = 0.5
FALLBACK_RISK = "Plan generation failed - using fallback single-file operation"

_DRIVE_RE = re.compile(r"^[A-Za-z]:/")


def _is_absolute(path: str) -> bool:
    return path.startswith("/") or bool(_DRIVE_RE.match(path))


def _strip_dot_prefix(path: str) -> str:
    while path.startswith("./"):
        path = path[2:]
    return path


def normalize_file_path(file_path: Optional[str], workspace_root: Optional[str] = None) -> str:
    """
    Makes a path workspace-relative with forward slashes.

    Absolute paths under the root are rewritten relative to it; absolute paths
    outside the root, or any path when no root is known, are reduced to the
    bare file name.
    """
    if not file_path:
        return ""
    path = str(file_path).strip().replace("\\", "/")
    path = _strip_dot_prefix(path)
    if not path:
        return ""

    if _is_absolute(path):
        path = posixpath.normpath(path)
        if workspace_root:
            root = posixpath.normpath(str(workspace_root).strip().replace("\\", "/")).rstrip("/")
            # Drive letters compare case-insensitively.
            same_root = path.lower().startswith(root.lower() + "/") if _DRIVE_RE.match(root) else path.startswith(root + "/")
            if root and same_root:
                relative = path[len(root) + 1:]
                logger.debug(f"Normalized {file_path} -> {relative}")
                return relative
        basename = posixpath.basename(path)
        logger.warning(f"Path '{file_path}' is not under the workspace root; using '{basename}'.")
        return basename

    path = posixpath.normpath(path)
    if path == "." or path.startswith("../") or path == "..":
        basename = posixpath.basename(path) if path not in (".", "..") else ""
        logger.warning(f"Path '{file_path}' escapes the workspace root; using '{basename}'.")
        return basename
    return path


def parse_task_type(value: Any) -> TaskType:
    return TaskType.parse(value)


def parse_complexity(value: Any, default: Optional[Complexity] = None) -> Complexity:
    return Complexity.parse(value, default=default)


def _dedupe(items: List[str]) -> List[str]:
    seen = set()
    result = []
    for item in items:
        if item and item not in seen:
            seen.add(item)
            result.append(item)
    return result


def _coerce_priority(value: Any, index: int) -> int:
    """Missing, boolean, non-numeric and non-finite priorities fall back to the step position."""
    if isinstance(value, bool):
        return index + 1
    if isinstance(value, float) and not math.isfinite(value):
        return index + 1
    if isinstance(value, (int, float)):
        return int(value)
    try:
        return int(str(value).strip())
    except (TypeError, ValueError, OverflowError):
        return index + 1


def _normalize_step(step: Dict[str, Any], index: int, root: Optional[str]) -> Optional[PlannedChange]:
    """Builds one PlannedChange, or returns None (with a log) if the step is unusable."""
    operation = step.get("operation")
    if not isinstance(operation, dict):
        logger.warning(f"Dropping step {index + 1}: no operation object.")
        return None

    op_type = str(operation.get("type") or "modify").strip().lower()
    if op_type not in OPERATION_TYPES:
        logger.warning(f"Dropping step {index + 1}: unknown operation type '{op_type}'.")
        return None

    raw_path = step.get("file_path") or operation.get("file_path") or f"unknown-{index}"
    file_path = normalize_file_path(raw_path, root) or f"unknown-{index}"
    reason = str(operation.get("reason") or DEFAULT_REASON).strip()

    try:
        if op_type == "terminal":
            command = str(operation.get("command") or "").strip()
            if not command:
                logger.warning(f"Dropping terminal step {index + 1} ('{file_path}'): no command.")
                return None
            op = TerminalOperation(
                file_path=file_path,
                command=command,
                working_directory=str(operation.get("working_directory") or ".").strip() or ".",
                requires_approval=coerce_bool(operation.get("requires_approval"), default=True),
                reason=reason,
            )
        else:
            new_path = normalize_file_path(operation.get("new_path"), root) or None
            if op_type == "rename" and not new_path:
                logger.warning(f"Dropping rename step {index + 1} ('{file_path}'): no new path.")
                return None
            content = operation.get("content")
            op = FileChangeOperation(
                type=op_type,
                file_path=file_path,
                new_path=new_path,
                content=None if content is None else str(content),
                reason=reason,
                dependencies=_dedupe([normalize_file_path(d, root) for d in coerce_str_list(operation.get("dependencies"))]),
            )
        agent_inputs = step.get("agent_inputs")
        return PlannedChange(
            file_path=file_path,
            operation=op,
            priority=_coerce_priority(step.get("priority"), index),
            rationale=str(step.get("rationale") or operation.get("reason") or DEFAULT_RATIONALE).strip(),
            risks=coerce_str_list(step.get("risks")),
            agent_inputs=[a for a in agent_inputs if isinstance(a, dict)] if isinstance(agent_inputs, list) else [],
        )
    except ValidationError as e:
        logger.warning(f"Dropping step {index + 1} ('{file_path}'): {e.error_count()} validation error(s).")
        return None


def normalize_plan(record: Union[PlanRecord, ExecutionPlan, Dict[str, Any]],
                   task_analysis: Optional[TaskAnalysis] = None,
                   workspace_root: Optional[str] = None) -> ExecutionPlan:
    """
    Canonicalizes a plan record.

    Steps are validated one at a time (bad steps are dropped, not the plan),
    sorted by priority (stable), and every non-terminal step path is added to
    ``affected_files``. Paths that belong only to terminal steps are removed
    from it.
    """
    if isinstance(record, ExecutionPlan):
        record = PlanRecord.model_validate(record.model_dump(mode="json"))
    elif isinstance(record, dict):
        record = PlanRecord.model_validate(record)

    analysis = task_analysis or TaskAnalysis()
    task_type = parse_task_type(record.task_type) if record.task_type else analysis.task_type
    complexity = parse_complexity(record.estimated_complexity, default=analysis.complexity)

    steps: List[PlannedChange] = []
    for index, raw_step in enumerate(record.steps):
        step = _normalize_step(raw_step, index, workspace_root)
        if step is not None:
            steps.append(step)
    # sorted() is stable: equal priorities keep their original order.
    steps = sorted(steps, key=lambda s: s.priority)

    file_paths = [s.file_path for s in steps if not s.is_terminal]
    terminal_only = {s.file_path for s in steps if s.is_terminal} - set(file_paths)
    affected = _dedupe([normalize_file_path(f, workspace_root) for f in record.affected_files] + file_paths)
    affected = [f for f in affected if f not in terminal_only]

    confidence = record.confidence if record.confidence is not None and not math.isnan(record.confidence) else DEFAULT_CONFIDENCE
    confidence = min(1.0, max(0.0, confidence))

    plan = ExecutionPlan(
        task_type=task_type,
        summary=(record.summary or "").strip() or DEFAULT_SUMMARY,
        steps=steps,
        required_files=_dedupe([normalize_file_path(f, workspace_root) for f in record.required_files]),
        affected_files=affected,
        estimated_complexity=complexity,
        risks=_dedupe(record.risks),
        verification_steps=_dedupe(record.verification_steps),
        confidence=confidence,
    )
    dropped = len(record.steps) - len(steps)
    if dropped:
        logger.warning(f"Normalized plan kept {len(steps)} of {len(record.steps)} steps ({dropped} dropped).")
    return plan


def create_fallback_plan(user_request: str, task_analysis: Optional[TaskAnalysis],
                         context: Optional[WorkspaceContext]) -> ExecutionPlan:
    """
    The deterministic last tier: a single modify step on the open file.

    Returns a plan with no steps when there is no current file; the caller
    decides whether that is an error.
    """
    analysis = task_analysis or TaskAnalysis()
    current = context.current_file if context else None
    root = context.workspace_root if context else None
    steps: List[PlannedChange] = []
    files: List[str] = []
    if current and current.path:
        path = normalize_file_path(current.path, root)
        files = [path]
        steps.append(PlannedChange(
            file_path=path,
            operation=FileChangeOperation(type="modify", file_path=path, reason=DEFAULT_REASON),
            priority=1,
            rationale="Modify current file based on user request",
            risks=["May need to verify changes"],
        ))
    else:
        logger.warning("Fallback plan has no current file to operate on.")

    return ExecutionPlan(
        task_type=analysis.task_type,
        summary=f"Apply user request: {(user_request or '')[:100]}",
        steps=steps,
        required_files=list(files),
        affected_files=list(files),
        estimated_complexity=analysis.complexity,
        risks=[FALLBACK_RISK],
        verification_steps=["Manually verify changes"],
        confidence=FALLBACK_CONFIDENCE,
    )
