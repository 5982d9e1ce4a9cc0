# backend/codemind/core/tests/test_lenient_extractor.py
import textwrap

import pytest

from codemind.core.lenient_extractor import (
    DEFAULT_CONFIDENCE,
    DEFAULT_RATIONALE,
    DEFAULT_SUMMARY,
    DEFAULT_TASK_TYPE,
    DEFAULT_VERIFICATION,
    extract_plan_leniently,
)

# Valid-looking YAML that a strict parser rejects because of the trailing junk.
BROKEN_PLAN = textwrap.dedent("""\
    taskType: feature_add
    summary: "Add auth: login + logout"
    steps:
      - filePath: src/auth.py
        operation:
          type: create
          filePath: src/auth.py
          content: |
            def login(user):
                filePath: not-a-step
        rationale: Auth module: new
        priority: 1
      - filePath: install
        operation:
          type: terminal
          command: npm install express
          workingDirectory: server
      - filePath: old.js
        operation:
          type: rename
          newPath: new.js
    confidence: 0.65
    broken: [
    """)


class TestExtractPlanLeniently:

    def test_recovers_steps_from_broken_plan(self):
        record = extract_plan_leniently(BROKEN_PLAN)

        assert record is not None
        assert [s["file_path"] for s in record.steps] == ["src/auth.py", "install", "old.js"]
        assert [s["priority"] for s in record.steps] == [1, 2, 3]
        assert record.task_type == "feature_add"
        assert record.summary == "Add auth: login + logout"
        assert record.confidence == 0.65
        assert record.estimated_complexity == "medium"

    def test_nested_and_embedded_file_paths_do_not_open_steps(self):
        record = extract_plan_leniently(BROKEN_PLAN)
        assert "not-a-step" not in [s["file_path"] for s in record.steps]
        assert len(record.steps) == 3

    def test_file_step_fields(self):
        step = extract_plan_leniently(BROKEN_PLAN).steps[0]
        assert step["operation"] == {"type": "create", "file_path": "src/auth.py"}
        assert step["rationale"] == "Auth module: new"

    def test_terminal_step_fields(self):
        step = extract_plan_leniently(BROKEN_PLAN).steps[1]
        assert step["operation"]["type"] == "terminal"
        assert step["operation"]["command"] == "npm install express"
        assert step["operation"]["working_directory"] == "server"
        assert step["rationale"] == DEFAULT_RATIONALE

    def test_rename_step_fields(self):
        step = extract_plan_leniently(BROKEN_PLAN).steps[2]
        assert step["operation"]["new_path"] == "new.js"

    def test_affected_files_exclude_terminal_steps(self):
        assert extract_plan_leniently(BROKEN_PLAN).affected_files == ["src/auth.py", "old.js"]

    def test_defaults_when_only_paths_survive(self):
        record = extract_plan_leniently("filePath: a.py\nsome noise\nfilePath: b.py\n")

        assert [s["file_path"] for s in record.steps] == ["a.py", "b.py"]
        assert record.steps[0]["operation"]["type"] == "create"
        assert record.task_type == DEFAULT_TASK_TYPE
        assert record.summary == DEFAULT_SUMMARY
        assert record.confidence == DEFAULT_CONFIDENCE
        assert record.verification_steps == DEFAULT_VERIFICATION

    def test_block_scalar_rationale(self):
        text = textwrap.dedent("""\
            - filePath: "a.py"
              rationale: >
                Needed because
                of reasons
              type: modify
            """)
        step = extract_plan_leniently(text).steps[0]
        assert step["file_path"] == "a.py"
        assert step["rationale"] == "Needed because\nof reasons"
        assert step["operation"]["type"] == "modify"

    @pytest.mark.parametrize("text", [
        "",
        None,
        "I could not produce a plan, sorry.",
        "The change touches filePath: src/a.py in the middle of a sentence.",
        "filePath:   \n",
    ])
    def test_nothing_usable_returns_none(self, text):
        assert extract_plan_leniently(text) is None
