# backend/codemind/core/lenient_extractor.py
"""
Last-resort plan recovery with loose patterns.

Used only for the execution-plan schema, after strict parsing and repair have
both failed. It trades completeness for availability: any line-anchored
``filePath:`` starts a step, and the few fields a step needs are pulled out of
the text between anchors independently of each other.
"""
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from .project_models import PlanRecord

logger = logging.getLogger(__name__)

DEFAULT_TASK_TYPE = "code_generation"
DEFAULT_SUMMARY = "Code generation"
DEFAULT_CONFIDENCE = 0.8
DEFAULT_RATIONALE = "Operation required"
DEFAULT_OPERATION = "create"
DEFAULT_VERIFICATION = ["Verify file creation", "Check for errors"]

# A filePath key at the start of a line, optionally as a list item.
_ANCHOR_RE = re.compile(r"^(?P<lead>[ \t]*)(?P<dash>-[ \t]*)?filePath[ \t]*:[ \t]*(?P<path>.*?)[ \t]*$", re.MULTILINE)
_TYPE_RE = re.compile(r"(?<![\w.])type[ \t]*:[ \t]*[\"']?(\w+)")
_TASK_TYPE_RE = re.compile(r"^[ \t]*taskType[ \t]*:[ \t]*[\"']?([\w\-]+)", re.MULTILINE)
_SUMMARY_RE = re.compile(r"^[ \t]*summary[ \t]*:[ \t]*(.+?)[ \t]*$", re.MULTILINE)
_CONFIDENCE_RE = re.compile(r"^[ \t]*confidence[ \t]*:[ \t]*[\"']?([0-9]*\.?[0-9]+)", re.MULTILINE)
_BLOCK_INDICATORS = ("|", ">", "|-", ">-", "|+", ">+")


def _strip_quotes(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1].strip()
    return value.strip("\"'").strip()


def _column(lead: str, dash: Optional[str]) -> int:
    """Column of the 'filePath' key with tabs expanded."""
    return len((lead + (dash or "")).expandtabs(4))


def _find_step_spans(text: str) -> List[Tuple[str, int]]:
    """
    Returns (file_path, start_offset) for every anchor that opens a step.

    A list-item anchor always opens a step. A plain anchor opens one only when
    it is not nested deeper than the current step's key and does not repeat
    the current step's path (the operation's own filePath).
    """
    spans: List[Tuple[str, int]] = []
    current_col = -1
    for match in _ANCHOR_RE.finditer(text):
        path = _strip_quotes(match.group("path"))
        if not path:
            continue
        col = _column(match.group("lead"), match.group("dash"))
        if not match.group("dash") and spans:
            if path == spans[-1][0] or col > current_col:
                continue
        spans.append((path, match.start()))
        current_col = col
    return spans


def _field(span: str, key: str) -> Optional[str]:
    """Value of `key:` in the span, following block scalars (| and >) by indentation."""
    match = re.search(rf"^(?P<lead>[ \t]*)(?:-[ \t]*)?{key}[ \t]*:[ \t]*(?P<value>.*)$", span, re.MULTILINE)
    if not match:
        return None
    inline = match.group("value").strip()
    if inline and inline not in _BLOCK_INDICATORS:
        return _strip_quotes(inline) or None

    key_indent = len(match.group("lead").expandtabs(4))
    collected: List[str] = []
    for line in span[match.end():].split("\n")[1:]:
        if not line.strip():
            collected.append("")
            continue
        if len(line.expandtabs(4)) - len(line.expandtabs(4).lstrip()) <= key_indent:
            break
        collected.append(line.strip())
    value = "\n".join(collected).strip()
    return value or None


def _extract_step(path: str, span: str, position: int) -> Dict[str, Any]:
    type_match = _TYPE_RE.search(span)
    op_type = type_match.group(1).lower() if type_match else DEFAULT_OPERATION
    operation: Dict[str, Any] = {"type": op_type, "file_path": path}
    if op_type == "terminal":
        command = _field(span, "command")
        if command:
            operation["command"] = command
        working_directory = _field(span, "workingDirectory")
        if working_directory:
            operation["working_directory"] = working_directory
    elif op_type == "rename":
        new_path = _field(span, "newPath")
        if new_path:
            operation["new_path"] = new_path
    return {
        "file_path": path,
        "operation": operation,
        "rationale": _field(span, "rationale") or DEFAULT_RATIONALE,
        "priority": position + 1,
        "risks": [],
    }


def _confidence(text: str) -> float:
    match = _CONFIDENCE_RE.search(text)
    if not match:
        return DEFAULT_CONFIDENCE
    try:
        return float(match.group(1))
    except ValueError:
        return DEFAULT_CONFIDENCE


def extract_plan_leniently(text: str) -> Optional[PlanRecord]:
    """
    Pulls a minimal plan out of text that no strict parser accepted.

    Returns:
        A PlanRecord with at least one step, or None if no step could be found.
        Never raises.
    """
    try:
        text = text or ""
        spans = _find_step_spans(text)
        if not spans:
            logger.warning("Lenient extraction found no steps.")
            return None

        steps: List[Dict[str, Any]] = []
        for index, (path, start) in enumerate(spans):
            end = spans[index + 1][1] if index + 1 < len(spans) else len(text)
            steps.append(_extract_step(path, text[start:end], index))

        task_type_match = _TASK_TYPE_RE.search(text)
        summary_match = _SUMMARY_RE.search(text)
        summary = _strip_quotes(summary_match.group(1)) if summary_match else ""
        record = PlanRecord(
            task_type=task_type_match.group(1) if task_type_match else DEFAULT_TASK_TYPE,
            summary=summary or DEFAULT_SUMMARY,
            steps=steps,
            affected_files=[s["file_path"] for s in steps if s["operation"]["type"] != "terminal"],
            estimated_complexity="medium",
            verification_steps=list(DEFAULT_VERIFICATION),
            confidence=_confidence(text),
        )
        logger.info(f"Lenient extraction recovered {len(steps)} steps (confidence {record.confidence}).")
        return record
    except Exception as e:
        logger.error(f"Lenient extraction failed: {e}")
        return None
