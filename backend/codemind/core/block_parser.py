# backend/codemind/core/block_parser.py
import json
import logging
from typing import Any, Dict, Iterable

import yaml
from json_repair import repair_json
from pydantic import ValidationError

from .exceptions import MalformedOutputError
from .parsing_utils import extract_structured_block
from .project_models import (
    ParseResult,
    PlanRecord,
    RecoveryRecord,
    TaskAnalysisRecord,
    snake_keys,
)

logger = logging.getLogger(__name__)

TASK_ANALYSIS_KEYS = ("task_type", "intent", "scope", "required_context", "complexity")
PLAN_KEYS = ("task_type", "summary", "steps", "required_files", "affected_files",
             "estimated_complexity", "complexity", "risks", "verification_steps", "confidence")
RECOVERY_KEYS = ("needs_retry", "analysis", "recovery_plan")


def load_block(text: str) -> Dict[str, Any]:
    """
    Loads an indented key/value block (YAML) into a mapping.

    JSON-looking payloads are accepted too: models asked for YAML regularly
    answer in JSON. Those go through the standard decoder first (lenient about
    control characters) and through json_repair when that fails.

    Raises:
        MalformedOutputError: If the payload is empty, unparseable, or not a mapping.
    """
    payload = extract_structured_block(text, "yaml")
    if not payload:
        raise MalformedOutputError("Response is empty.")

    if payload.lstrip().startswith("{"):
        try:
            data = json.loads(payload, strict=False)
        except json.JSONDecodeError:
            logger.warning("Block payload looked like JSON but did not decode, attempting repair.")
            try:
                data = json.loads(repair_json(payload))
            except (json.JSONDecodeError, ValueError, TypeError) as e:
                raise MalformedOutputError(f"JSON payload could not be repaired: {e}") from e
    else:
        try:
            data = yaml.safe_load(payload)
        except yaml.YAMLError as e:
            raise MalformedOutputError(f"Block payload is not valid YAML: {e}") from e

    if not isinstance(data, dict):
        raise MalformedOutputError(f"Block payload is a {type(data).__name__}, expected a mapping.")
    return snake_keys(data)


def _require_known_keys(data: Dict[str, Any], known: Iterable[str], kind: str) -> None:
    if not any(key in data for key in known):
        raise MalformedOutputError(f"No recognizable {kind} keys found (got: {sorted(data)[:8]}).")


def parse_task_analysis(text: str) -> ParseResult:
    """Parses the request-analysis block (taskType, intent, scope, requiredContext, complexity)."""
    try:
        data = load_block(text)
        _require_known_keys(data, TASK_ANALYSIS_KEYS, "task analysis")
        return ParseResult.ok(TaskAnalysisRecord.model_validate(data))
    except MalformedOutputError as e:
        return ParseResult.fail(str(e))
    except ValidationError as e:
        return ParseResult.fail(f"Task analysis failed validation: {e.error_count()} error(s)")


def parse_execution_plan(text: str) -> ParseResult:
    """
    Parses an execution plan block. Only the document shape is checked here;
    individual steps are validated (and possibly dropped) by the normalizer.
    """
    try:
        data = load_block(text)
        _require_known_keys(data, PLAN_KEYS, "execution plan")
        return ParseResult.ok(PlanRecord.model_validate(data))
    except MalformedOutputError as e:
        return ParseResult.fail(str(e))
    except ValidationError as e:
        return ParseResult.fail(f"Execution plan failed validation: {e.error_count()} error(s)")


def parse_recovery_analysis(text: str) -> ParseResult:
    """Parses a terminal-failure analysis block (needsRetry, analysis, recoveryPlan)."""
    try:
        data = load_block(text)
        _require_known_keys(data, RECOVERY_KEYS, "failure analysis")
        return ParseResult.ok(RecoveryRecord.model_validate(data))
    except MalformedOutputError as e:
        return ParseResult.fail(str(e))
    except ValidationError as e:
        return ParseResult.fail(f"Failure analysis failed validation: {e.error_count()} error(s)")
