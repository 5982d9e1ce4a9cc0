# backend/codemind/core/markdown_parser.py
"""
Strict parsers for sectioned-markdown responses.

Agents answer in a markdown layout made of `##`/`###`/`####` section headers,
`- bullet` lists and `**Label:** value` fields. Nothing inside the values needs
escaping, which is the point of the format: colons, quotes and parentheses
are all plain text.

Every parser here follows the same rules:
  * sections are located by header and fields by label, in any order;
  * a missing field falls back to the schema default;
  * the parse only fails when no known section header is found at all;
  * nothing raises, failures come back as ``ParseResult.fail``.
"""
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from .parsing_utils import extract_structured_block
from .project_models import (
    AgentAnalysis,
    DistillSynthesis,
    Issue,
    IssueGroups,
    ObserveSynthesis,
    ParseResult,
    PlanRecord,
    coerce_bool,
    coerce_str_list,
)

logger = logging.getLogger(__name__)

_BULLET = re.compile(r"^\s*[-*]\s+(.+)$", re.MULTILINE)
_BLANK_LINE_SPLIT = re.compile(r"\n[ \t]*\n")
_NUMBER = re.compile(r"[-+]?\d*\.?\d+")
# Both "**Label:** value" and "**Label**: value" are accepted.
_LABEL_TEMPLATE = r"\*\*[ \t]*{label}[ \t]*(?::[ \t]*\*\*|\*\*[ \t]*:)[ \t]*"
_STEP_HEADING = re.compile(
    r"^[ \t]*#{3,4}[ \t]*STEP[ \t]*(\d+)?[ \t]*[:.\-]?[ \t]*(.*?)[ \t]*$", re.IGNORECASE | re.MULTILINE
)


class _SectionScanner:
    """Finds header-delimited sections in one document and remembers which were recognized."""

    def __init__(self, content: str):
        self.content = content
        self.recognized: List[str] = []

    def body(self, name: str, pattern: Optional[str] = None) -> Optional[str]:
        heading = re.compile(
            rf"^[ \t]*(#{{2,4}})[ \t]*(?:{pattern or re.escape(name)})[ \t]*:?[ \t]*$",
            re.IGNORECASE | re.MULTILINE,
        )
        match = heading.search(self.content)
        if not match:
            return None
        self.recognized.append(name)
        level = len(match.group(1))
        # The section runs until the next header of the same or a higher level.
        end = re.compile(rf"^[ \t]*#{{1,{level}}}(?!#)", re.MULTILINE).search(self.content, match.end())
        return self.content[match.end():end.start() if end else len(self.content)]

    def bullets(self, name: str, pattern: Optional[str] = None) -> List[str]:
        section = self.body(name, pattern)
        return bullet_items(section) if section is not None else []


def bullet_items(text: str) -> List[str]:
    return [item.strip() for item in _BULLET.findall(text) if item.strip()]


def field_value(text: str, label: str, multiline: bool = False) -> Optional[str]:
    """
    Returns the value following a bold field label, or None.

    Single-line values stop at the end of the line. Multi-line values run until
    the next bold label, the next header, or the end of the text.
    """
    prefix = _LABEL_TEMPLATE.format(label=label)
    if multiline:
        pattern = re.compile(prefix + r"(.+?)(?=\n[ \t]*\*\*|\n[ \t]*#|\Z)", re.IGNORECASE | re.DOTALL)
    else:
        pattern = re.compile(prefix + r"(.+?)[ \t]*$", re.IGNORECASE | re.MULTILINE)
    match = pattern.search(text)
    if not match:
        return None
    value = match.group(1).strip()
    return value or None


def number_field(text: str, label: str) -> Optional[float]:
    raw = field_value(text, label)
    if raw is None:
        return None
    number = _NUMBER.search(raw)
    return float(number.group(0)) if number else None


def extract_issue_blocks(section: str) -> List[Issue]:
    """
    Splits an issue section on blank lines and reads the labelled fields of each block.
    Blocks without a single recognized label are dropped.
    """
    issues: List[Issue] = []
    for block in _BLANK_LINE_SPLIT.split(section):
        if not block.strip():
            continue
        fields: Dict[str, Any] = {}
        issue_type = field_value(block, "Type")
        if issue_type:
            fields["type"] = issue_type
        description = field_value(block, "Description", multiline=True)
        if description:
            fields["description"] = description
        fix = field_value(block, "Fix", multiline=True)
        if fix:
            fields["fix"] = fix
        impact = field_value(block, "Impact")
        if impact:
            fields["impact"] = impact
        line = field_value(block, "Line")
        if line:
            digits = re.search(r"\d+", line)
            if digits:
                fields["line"] = int(digits.group(0))
        if fields:
            issues.append(Issue(**fields))
        else:
            logger.debug(f"Dropping issue block with no recognized labels: {block.strip()[:80]!r}")
    return issues


def _no_sections(kind: str, content: str) -> ParseResult:
    logger.debug(f"No {kind} sections recognized in response (first 120 chars): {content[:120]!r}")
    return ParseResult.fail(f"No recognizable {kind} sections found")


def parse_agent_response(markdown: str) -> ParseResult:
    """
    Parses a specialist agent (architect, engineer, security, ...) analysis.

    Expected layout::

        ## ANALYSIS
        ### INSIGHTS
        - Insight
        ### ISSUES
        #### CRITICAL
        **Type:** ...
        **Description:** ...
        #### WARNINGS
        #### SUGGESTIONS
        ### RECOMMENDATIONS
        - Recommendation
        ## METADATA
        **Confidence:** 0.9
        **Relevance:** 0.85
    """
    try:
        content = extract_structured_block(markdown, "markdown")
        scanner = _SectionScanner(content)
        scanner.body("ANALYSIS")
        insights = scanner.bullets("INSIGHTS", r"INSIGHTS?")
        scanner.body("ISSUES", r"ISSUES?")

        groups = IssueGroups()
        critical = scanner.body("CRITICAL")
        if critical is not None:
            groups.critical = extract_issue_blocks(critical)
        warnings = scanner.body("WARNINGS", r"WARNINGS?")
        if warnings is not None:
            groups.warnings = extract_issue_blocks(warnings)
        suggestions = scanner.body("SUGGESTIONS", r"SUGGESTIONS?")
        if suggestions is not None:
            groups.suggestions = extract_issue_blocks(suggestions)

        recommendations = scanner.bullets("RECOMMENDATIONS", r"RECOMMENDATIONS?")
        scanner.body("METADATA")

        if not scanner.recognized:
            return _no_sections("agent analysis", content)

        confidence = number_field(content, "Confidence")
        relevance = number_field(content, "Relevance")
        return ParseResult.ok(AgentAnalysis(
            insights=insights,
            issues=groups,
            recommendations=recommendations,
            confidence=confidence if confidence is not None else 0.8,
            relevance=relevance if relevance is not None else 0.8,
        ))
    except Exception as e:
        logger.exception("Unexpected error while parsing agent analysis markdown.")
        return ParseResult.fail(f"Agent analysis parse error: {e}")


def parse_observe_response(markdown: str) -> ParseResult:
    """Parses the OBSERVATIONS synthesis (patterns, conflicts, gaps, optional quality score)."""
    try:
        content = extract_structured_block(markdown, "markdown")
        scanner = _SectionScanner(content)
        scanner.body("OBSERVATIONS", r"OBSERVATIONS?")
        patterns = scanner.bullets("PATTERNS", r"PATTERNS?")
        conflicts = scanner.bullets("CONFLICTS", r"CONFLICTS?")
        gaps = scanner.bullets("GAPS", r"GAPS?")
        scanner.body("METADATA")
        if not scanner.recognized:
            return _no_sections("observation", content)
        return ParseResult.ok(ObserveSynthesis(
            patterns=patterns,
            conflicts=conflicts,
            gaps=gaps,
            quality_score=number_field(content, r"Quality[ \t]*Score"),
        ))
    except Exception as e:
        logger.exception("Unexpected error while parsing observation markdown.")
        return ParseResult.fail(f"Observation parse error: {e}")


def parse_distill_response(markdown: str) -> ParseResult:
    """Parses the SYNTHESIS produced by the distill phase."""
    try:
        content = extract_structured_block(markdown, "markdown")
        scanner = _SectionScanner(content)
        scanner.body("SYNTHESIS")
        requirements = scanner.bullets("CORE REQUIREMENTS", r"CORE[ \t]*REQUIREMENTS?")
        constraints = scanner.bullets("KEY CONSTRAINTS", r"KEY[ \t]*CONSTRAINTS?")
        principles = scanner.bullets("IMPLEMENTATION PRINCIPLES", r"IMPLEMENTATION[ \t]*PRINCIPLES?")
        scanner.body("METADATA")
        if not scanner.recognized:
            return _no_sections("synthesis", content)
        score = number_field(content, r"Quality[ \t]*Score")
        return ParseResult.ok(DistillSynthesis(
            core_requirements=requirements,
            key_constraints=constraints,
            implementation_principles=principles,
            quality_score=score if score is not None else 7.0,
            scoring_rationale=field_value(content, r"Scoring[ \t]*Rationale", multiline=True),
        ))
    except Exception as e:
        logger.exception("Unexpected error while parsing synthesis markdown.")
        return ParseResult.fail(f"Synthesis parse error: {e}")


def _split_step_blocks(steps_body: str) -> List[Tuple[Optional[str], str, str]]:
    """Returns (step number, heading text, block body) for every STEP heading."""
    headings = list(_STEP_HEADING.finditer(steps_body))
    blocks = []
    for index, heading in enumerate(headings):
        end = headings[index + 1].start() if index + 1 < len(headings) else len(steps_body)
        blocks.append((heading.group(1), heading.group(2), steps_body[heading.end():end]))
    return blocks


def _markdown_step(number: Optional[str], heading_text: str, block: str) -> Dict[str, Any]:
    file_path = field_value(block, r"File(?:[ \t]*Path)?") or heading_text.strip().strip("`'\"")
    operation: Dict[str, Any] = {
        "type": (field_value(block, "Operation") or "").strip("`").lower() or None,
        "file_path": file_path,
        "reason": field_value(block, "Reason", multiline=True),
    }
    command = field_value(block, "Command")
    if command:
        operation["command"] = command.strip("`")
    working_directory = field_value(block, r"Working[ \t]*Directory")
    if working_directory:
        operation["working_directory"] = working_directory.strip("`")
    new_path = field_value(block, r"New[ \t]*Path")
    if new_path:
        operation["new_path"] = new_path.strip("`")
    approval = field_value(block, r"Requires[ \t]*Approval")
    if approval is not None:
        operation["requires_approval"] = coerce_bool(approval, default=True)

    step: Dict[str, Any] = {
        "file_path": file_path,
        "operation": {k: v for k, v in operation.items() if v is not None},
        "rationale": field_value(block, "Rationale", multiline=True),
        "risks": coerce_str_list(field_value(block, "Risks")),
    }
    priority = number_field(block, "Priority")
    if priority is not None:
        step["priority"] = int(priority)
    elif number and number.isdigit():
        step["priority"] = int(number)
    return {k: v for k, v in step.items() if v is not None}


def parse_plan_markdown(markdown: str) -> ParseResult:
    """
    Parses an execution plan written in the sectioned-markdown layout::

        ## TASK
        code_generation
        ## SUMMARY
        Brief description
        ## STEPS
        ### STEP 1: src/app.py
        **Operation:** create
        **Rationale:** Why this is needed
        **Priority:** 1
        ## METADATA
        **Required Files:** a.py, b.py
        **Affected Files:** src/app.py
        **Complexity:** medium
        **Confidence:** 0.9

    Returns a raw PlanRecord; defaults and validation happen in the normalizer.
    """
    try:
        content = extract_structured_block(markdown, "markdown")
        scanner = _SectionScanner(content)
        task_body = scanner.body("TASK", r"TASK(?:[ \t]+TYPE)?")
        summary_body = scanner.body("SUMMARY")
        steps_body = scanner.body("STEPS")
        metadata = scanner.body("METADATA")
        if not scanner.recognized:
            return _no_sections("plan", content)

        task_type = None
        if task_body:
            first_line = next((line.strip() for line in task_body.splitlines() if line.strip()), "")
            task_type = first_line.strip("`*- ") or None

        steps = []
        if steps_body:
            steps = [_markdown_step(*block) for block in _split_step_blocks(steps_body)]

        meta = metadata if metadata is not None else content
        record = PlanRecord(
            task_type=task_type,
            summary=" ".join(summary_body.split()) if summary_body else None,
            steps=steps,
            required_files=coerce_str_list(field_value(meta, r"Required[ \t]*Files")),
            affected_files=coerce_str_list(field_value(meta, r"Affected[ \t]*Files")),
            estimated_complexity=field_value(meta, r"(?:Estimated[ \t]*)?Complexity"),
            risks=coerce_str_list(field_value(meta, "Risks")),
            verification_steps=coerce_str_list(field_value(meta, r"Verification(?:[ \t]*Steps)?")),
            confidence=number_field(meta, "Confidence"),
        )
        return ParseResult.ok(record)
    except Exception as e:
        logger.exception("Unexpected error while parsing plan markdown.")
        return ParseResult.fail(f"Plan markdown parse error: {e}")
