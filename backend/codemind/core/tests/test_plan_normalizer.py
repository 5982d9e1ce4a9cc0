# backend/codemind/core/tests/test_plan_normalizer.py
import pytest

from codemind.core.block_parser import parse_execution_plan
from codemind.core.plan_normalizer import (
    DEFAULT_CONFIDENCE,
    DEFAULT_RATIONALE,
    DEFAULT_SUMMARY,
    FALLBACK_CONFIDENCE,
    FALLBACK_RISK,
    create_fallback_plan,
    normalize_file_path,
    normalize_plan,
)
from codemind.core.project_models import (
    Complexity, CurrentFile, PlanRecord, TaskAnalysis, TaskType, WorkspaceContext,
)

ROOT = "/home/dev/project"


def _step(path, op_type="modify", priority=None, **operation):
    step = {"file_path": path, "operation": {"type": op_type, "file_path": path, **operation}}
    if priority is not None:
        step["priority"] = priority
    return step


class TestNormalizeFilePath:

    @pytest.mark.parametrize("raw, expected", [
        ("src/app.py", "src/app.py"),
        ("./src/app.py", "src/app.py"),
        ("././src/app.py", "src/app.py"),
        ("src\\utils\\helpers.py", "src/utils/helpers.py"),
        ("src/../lib/a.py", "lib/a.py"),
        (f"{ROOT}/src/app.py", "src/app.py"),
        ("/elsewhere/secret.py", "secret.py"),
        ("../outside.py", "outside.py"),
        ("", ""),
        (None, ""),
    ])
    def test_paths_under_posix_root(self, raw, expected):
        assert normalize_file_path(raw, ROOT) == expected

    def test_windows_root_is_case_insensitive(self):
        assert normalize_file_path("c:\\Work\\Proj\\src\\a.ts", "C:\\work\\proj") == "src/a.ts"

    def test_absolute_path_without_root_becomes_basename(self):
        assert normalize_file_path("/tmp/build/out.js") == "out.js"

    def test_root_prefix_must_end_at_separator(self):
        assert normalize_file_path(f"{ROOT}-other/a.py", ROOT) == "a.py"


class TestNormalizePlan:

    def test_defaults_for_sparse_record(self):
        plan = normalize_plan(PlanRecord(steps=[{"file_path": "a.py", "operation": {}}]))

        assert plan.summary == DEFAULT_SUMMARY
        assert plan.confidence == DEFAULT_CONFIDENCE
        assert plan.task_type == TaskType.GENERAL
        step = plan.steps[0]
        assert step.operation.type == "modify"
        assert step.priority == 1
        assert step.rationale == DEFAULT_RATIONALE
        assert plan.affected_files == ["a.py"]

    def test_analysis_fills_task_type_and_complexity(self):
        analysis = TaskAnalysis(task_type="bug_fix", complexity="high")
        plan = normalize_plan(PlanRecord(summary="x"), analysis)
        assert plan.task_type == TaskType.BUG_FIX
        assert plan.estimated_complexity == Complexity.HIGH

    def test_invalid_steps_are_dropped_not_the_plan(self):
        record = PlanRecord(steps=[
            {"file_path": "no-op.py"},
            _step("weird.py", op_type="teleport"),
            _step("install", op_type="terminal"),
            _step("old.py", op_type="rename"),
            _step("good.py"),
        ])

        plan = normalize_plan(record)

        assert [s.file_path for s in plan.steps] == ["good.py"]
        assert plan.steps[0].priority == 5

    def test_stable_sort_by_priority(self):
        record = PlanRecord(steps=[
            _step("c.py", priority=2),
            _step("a.py", priority=1),
            _step("d.py", priority=2),
            _step("b.py", priority="1"),
        ])
        plan = normalize_plan(record)
        assert [s.file_path for s in plan.steps] == ["a.py", "b.py", "c.py", "d.py"]

    @pytest.mark.parametrize("priority", [float("inf"), float("-inf"), float("nan"), "1e999", "inf", True])
    def test_unusable_priority_falls_back_to_position(self, priority):
        record = PlanRecord(steps=[_step("a.py", priority=1), _step("b.py", priority=priority)])
        plan = normalize_plan(record)
        assert [(s.file_path, s.priority) for s in plan.steps] == [("a.py", 1), ("b.py", 2)]

    @pytest.mark.parametrize("text", [
        "steps:\n  - filePath: a.py\n    operation: {type: create}\n    priority: .inf",
        "steps:\n  - filePath: a.py\n    operation: {type: create}\n    priority: 1e999",
        '{"steps": [{"filePath": "a.py", "operation": {"type": "create"}, "priority": NaN}]}',
        '{"steps": [{"filePath": "a.py", "operation": {"type": "create"}, "priority": 1e999}]}',
    ])
    def test_non_finite_priority_from_model_output(self, text):
        parsed = parse_execution_plan(text)
        assert parsed.success

        plan = normalize_plan(parsed.data)

        assert [(s.file_path, s.priority) for s in plan.steps] == [("a.py", 1)]

    def test_nan_confidence_uses_default(self):
        plan = normalize_plan(PlanRecord(summary="x", confidence=float("nan")))
        assert plan.confidence == DEFAULT_CONFIDENCE

    def test_infinite_confidence_is_clamped(self):
        assert normalize_plan(PlanRecord(summary="x", confidence=float("inf"))).confidence == 1.0

    def test_terminal_step(self):
        record = PlanRecord(steps=[
            _step("install-deps", op_type="terminal", priority=1, command="npm install",
                  working_directory="web", requires_approval="false"),
        ])
        step = normalize_plan(record).steps[0]
        assert step.is_terminal
        assert step.operation.command == "npm install"
        assert step.operation.working_directory == "web"
        assert step.operation.requires_approval is False

    def test_terminal_step_requires_approval_by_default(self):
        step = normalize_plan(PlanRecord(steps=[_step("build", op_type="terminal", command="npm run build")])).steps[0]
        assert step.operation.requires_approval is True
        assert step.operation.working_directory == "."

    def test_affected_files_merge_and_exclude_terminal_paths(self):
        record = PlanRecord(
            affected_files=["docs/readme.md", "install-deps", f"{ROOT}/src/a.py"],
            steps=[
                _step("src/a.py", priority=1),
                _step("install-deps", op_type="terminal", priority=2, command="pip install -e ."),
                _step("src/b.py", op_type="create", priority=3),
            ],
        )
        plan = normalize_plan(record, workspace_root=ROOT)
        assert plan.affected_files == ["docs/readme.md", "src/a.py", "src/b.py"]

    def test_paths_made_relative_to_root(self):
        record = PlanRecord(steps=[_step(f"{ROOT}\\src\\x.py".replace("/", "\\"), op_type="create")])
        plan = normalize_plan(record, workspace_root=ROOT.replace("/", "\\"))
        assert plan.steps[0].file_path == "src/x.py"
        assert plan.steps[0].operation.file_path == "src/x.py"

    def test_rename_paths_normalized(self):
        record = PlanRecord(steps=[_step("./old.py", op_type="rename", new_path=f"{ROOT}/new.py")])
        step = normalize_plan(record, workspace_root=ROOT).steps[0]
        assert step.file_path == "old.py"
        assert step.operation.new_path == "new.py"

    @pytest.mark.parametrize("raw, expected", [(1.7, 1.0), (-0.2, 0.0), (0.42, 0.42)])
    def test_confidence_is_clamped(self, raw, expected):
        assert normalize_plan(PlanRecord(confidence=raw)).confidence == expected

    def test_rationale_falls_back_to_reason(self):
        step = normalize_plan(PlanRecord(steps=[_step("a.py", reason="Because the user asked")])).steps[0]
        assert step.rationale == "Because the user asked"
        assert step.operation.reason == "Because the user asked"

    def test_accepts_plain_dict(self):
        plan = normalize_plan({"taskType": "testing", "steps": [_step("tests/test_a.py", op_type="create")]})
        assert plan.task_type == TaskType.TESTING
        assert plan.steps[0].operation.type == "create"

    def test_zero_step_plan_is_valid(self):
        plan = normalize_plan(PlanRecord(summary="Nothing to change", steps=[]))
        assert plan.is_empty
        assert plan.summary == "Nothing to change"

    def test_idempotent(self):
        record = PlanRecord(
            task_type="feature_add",
            summary=" Add routes ",
            affected_files=["src/routes.py"],
            risks=["r1", "r1"],
            steps=[
                _step("src/routes.py", priority=2, content="print('hi')\n"),
                _step("install", op_type="terminal", priority=1, command="pip install flask"),
            ],
            confidence=0.9,
        )
        once = normalize_plan(record, workspace_root=ROOT)
        twice = normalize_plan(once, workspace_root=ROOT)
        assert twice == once
        assert once.risks == ["r1"]


class TestFallbackPlan:

    def test_single_modify_step_on_current_file(self):
        context = WorkspaceContext(workspace_root=ROOT, current_file=CurrentFile(path=f"{ROOT}/src/app.py"))
        analysis = TaskAnalysis(task_type="refactoring", complexity="low")

        plan = create_fallback_plan("Refactor the app " + "x" * 200, analysis, context)

        assert len(plan.steps) == 1
        step = plan.steps[0]
        assert step.file_path == "src/app.py"
        assert step.operation.type == "modify"
        assert step.priority == 1
        assert plan.summary == "Apply user request: " + ("Refactor the app " + "x" * 200)[:100]
        assert plan.confidence == FALLBACK_CONFIDENCE
        assert plan.risks == [FALLBACK_RISK]
        assert plan.task_type == TaskType.REFACTORING
        assert plan.estimated_complexity == Complexity.LOW
        assert plan.affected_files == ["src/app.py"]

    def test_no_current_file_gives_empty_plan(self):
        plan = create_fallback_plan("do it", None, WorkspaceContext())
        assert plan.is_empty
        assert plan.risks == [FALLBACK_RISK]
