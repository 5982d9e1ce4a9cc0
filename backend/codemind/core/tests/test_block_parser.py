# backend/codemind/core/tests/test_block_parser.py
import textwrap

import pytest

from codemind.core.block_parser import (
    load_block,
    parse_execution_plan,
    parse_recovery_analysis,
    parse_task_analysis,
)
from codemind.core.exceptions import MalformedOutputError
from codemind.core.project_models import Complexity, PlanRecord, TaskType


class TestLoadBlock:

    def test_yaml_keys_become_snake_case(self):
        assert load_block("taskType: bug_fix\nrequiredContext: []") == {"task_type": "bug_fix", "required_context": []}

    def test_json_payload(self):
        assert load_block('{"needsRetry": false, "analysis": "ok"}') == {"needs_retry": False, "analysis": "ok"}

    def test_broken_json_is_repaired(self):
        data = load_block('{"taskType": "testing", "intent": "add tests",}')
        assert data["task_type"] == "testing"
        assert data["intent"] == "add tests"

    def test_fenced_yaml_with_commentary(self):
        text = "Analysis below.\n```yaml\ntaskType: security\n```\nHope this helps."
        assert load_block(text) == {"task_type": "security"}

    @pytest.mark.parametrize("text, message", [
        ("", "empty"),
        ("- a\n- b", "expected a mapping"),
        ("taskType: [unclosed", "not valid YAML"),
    ])
    def test_malformed_payloads(self, text, message):
        with pytest.raises(MalformedOutputError, match=message):
            load_block(text)


class TestTaskAnalysis:

    def test_complete_block(self):
        text = textwrap.dedent("""\
            taskType: bug_fix
            intent: Fix the login crash
            scope: single-file
            requiredContext:
              - auth.py
            complexity: low
            """)
        result = parse_task_analysis(text)

        assert result.success
        analysis = result.data.to_analysis("original request")
        assert analysis.task_type == TaskType.BUG_FIX
        assert analysis.intent == "Fix the login crash"
        assert analysis.required_context == ["auth.py"]
        assert analysis.complexity == Complexity.LOW

    def test_partial_block_gets_defaults(self):
        result = parse_task_analysis("taskType: Feature-Add")
        analysis = result.data.to_analysis("add dark mode")
        assert analysis.task_type == TaskType.FEATURE_ADD
        assert analysis.intent == "add dark mode"
        assert analysis.scope == "single-file"
        assert analysis.complexity == Complexity.MEDIUM

    def test_unrelated_keys_fail(self):
        result = parse_task_analysis("greeting: hello")
        assert not result.success
        assert "No recognizable task analysis keys" in result.error

    def test_prose_fails(self):
        assert not parse_task_analysis("This is a bug fix for the login page.").success


class TestExecutionPlan:

    PLAN = textwrap.dedent("""\
        taskType: feature_add
        summary: "Add endpoint: /health"
        steps:
          - filePath: src/app.py
            operation:
              type: modify
              filePath: src/app.py
            rationale: Register route
            priority: 1
          - not a mapping
        affectedFiles: [src/app.py]
        complexity: low
        confidence: 0.9
        """)

    def test_plan_block(self):
        result = parse_execution_plan(self.PLAN)

        assert result.success
        record: PlanRecord = result.data
        assert record.summary == "Add endpoint: /health"
        assert record.affected_files == ["src/app.py"]
        assert record.estimated_complexity == "low"
        assert record.confidence == 0.9
        assert len(record.steps) == 1
        assert record.steps[0]["file_path"] == "src/app.py"
        assert record.steps[0]["operation"] == {"type": "modify", "file_path": "src/app.py"}

    def test_json_plan(self):
        result = parse_execution_plan('{"summary": "noop", "steps": []}')
        assert result.success
        assert result.data.steps == []

    def test_string_confidence_is_coerced(self):
        assert parse_execution_plan("summary: x\nconfidence: '0.75'").data.confidence == 0.75

    def test_unquoted_colon_in_value_fails(self):
        result = parse_execution_plan("summary: Fix: the thing\nsteps: []")
        assert not result.success


class TestRecoveryAnalysis:

    def test_recovery_with_plan(self):
        text = textwrap.dedent("""\
            needsRetry: true
            analysis: Missing dependency
            recoveryPlan:
              summary: Install deps
              steps:
                - filePath: install
                  operation:
                    type: terminal
                    filePath: install
                    command: npm install
            """)
        result = parse_recovery_analysis(text)

        assert result.success
        record = result.data
        assert record.needs_retry is True
        assert record.analysis == "Missing dependency"
        assert isinstance(record.recovery_plan, PlanRecord)
        assert record.recovery_plan.steps[0]["operation"]["command"] == "npm install"

    def test_no_retry(self):
        result = parse_recovery_analysis("needsRetry: 'no'\nanalysis: The port is in use by another process.")
        assert result.success
        assert result.data.needs_retry is False
        assert result.data.recovery_plan is None

    def test_non_mapping_plan_is_dropped(self):
        result = parse_recovery_analysis("needsRetry: true\nanalysis: x\nrecoveryPlan: none")
        assert result.data.recovery_plan is None

    def test_garbage_fails(self):
        assert not parse_recovery_analysis("Error: something").success
