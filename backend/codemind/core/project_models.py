# backend/codemind/core/project_models.py
import logging
import re
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, Generic, List, Literal, Optional, Tuple, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

# Every closed record produced by a parser carries this version so that stored
# transcripts can be told apart if the schemas ever change.
SCHEMA_VERSION = 1

T = TypeVar("T")


# --- Enumerations ---

class TaskType(str, Enum):
    """The category of work a request asks for."""
    CODE_GENERATION = "code_generation"
    REFACTORING = "refactoring"
    BUG_FIX = "bug_fix"
    FEATURE_ADD = "feature_add"
    DOCUMENTATION = "documentation"
    TESTING = "testing"
    OPTIMIZATION = "optimization"
    SECURITY = "security"
    GENERAL = "general"

    @classmethod
    def parse(cls, value: Any) -> "TaskType":
        """Case-insensitive lookup; '-' and spaces count as '_'. Unknown values become GENERAL."""
        if isinstance(value, TaskType):
            return value
        normalized = re.sub(r"[\s\-]+", "_", str(value or "").strip().lower())
        try:
            return cls(normalized)
        except ValueError:
            if normalized:
                logger.debug(f"Unknown task type '{value}', using 'general'.")
            return cls.GENERAL


class Complexity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @classmethod
    def parse(cls, value: Any, default: Optional["Complexity"] = None) -> "Complexity":
        if isinstance(value, Complexity):
            return value
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return default or cls.MEDIUM


class ApprovalDecision(str, Enum):
    """State of a single approval request. Only PENDING is non-final."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    ABANDONED = "abandoned"


class RecoveryState(str, Enum):
    EVALUATING = "evaluating"
    NO_ACTION_NEEDED = "no_action_needed"
    RECOVERY_PRODUCED = "recovery_produced"


# --- Key/value coercion helpers shared by the raw records ---

def _snake_case(key: str) -> str:
    """'filePath' -> 'file_path', 'Required Files' -> 'required_files'."""
    key = str(key).strip()
    if not key.isupper():
        key = re.sub(r"(?<=[a-z0-9])(?=[A-Z])", "_", key)
    return re.sub(r"[\s\-]+", "_", key).lower()


def snake_keys(value: Any) -> Any:
    """Recursively converts every mapping key to snake_case."""
    if isinstance(value, dict):
        return {_snake_case(k): snake_keys(v) for k, v in value.items()}
    if isinstance(value, list):
        return [snake_keys(v) for v in value]
    return value


def coerce_str_list(value: Any) -> List[str]:
    """Turns None, a scalar, or a comma separated string into a list of non-empty strings."""
    if value is None:
        return []
    if isinstance(value, str):
        value = value.strip()
        if not value or value.lower() in ("none", "[]", "n/a"):
            return []
        return [part.strip() for part in value.split(",") if part.strip()]
    if isinstance(value, (list, tuple, set)):
        return [str(item).strip() for item in value if item is not None and str(item).strip()]
    return [str(value).strip()]


def coerce_optional_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(str(value).strip())
    except (TypeError, ValueError):
        return None


def coerce_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    text = str(value).strip().lower()
    if text in ("true", "yes", "y", "1"):
        return True
    if text in ("false", "no", "n", "0"):
        return False
    return default


# --- Parse results and structure descriptors ---

class ParseResult(BaseModel, Generic[T]):
    """Tagged outcome of interpreting text as a schema record."""
    success: bool
    data: Optional[T] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, data: T) -> "ParseResult[T]":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str) -> "ParseResult[T]":
        return cls(success=False, error=error)


class ExpectedStructure(BaseModel):
    """
    Declares which sections and scalar fields a response must contain.

    Built once per call site and shared by the generation prompt and the
    repair prompt, so both describe the same target shape.
    """
    model_config = ConfigDict(frozen=True)

    sections: Tuple[str, ...]
    required_fields: Tuple[str, ...] = ()
    output_format: Literal["markdown", "block"] = "markdown"

    def describe(self) -> str:
        lines: List[str] = []
        if self.output_format == "markdown":
            lines.append("This response should have these sections:")
            lines.extend(f"- ## {section}" for section in self.sections)
            if self.required_fields:
                lines.append("")
                lines.append("Required fields in METADATA:")
                lines.extend(f"- **{_field_label(f)}:** <value>" for f in self.required_fields)
        else:
            lines.append("This response should be an indented key/value block with these top-level keys:")
            lines.extend(f"- {section}:" for section in self.sections)
            if self.required_fields:
                lines.append("")
                lines.append("Required scalar fields:")
                lines.extend(f"- {f}: <value>" for f in self.required_fields)
        return "\n".join(lines)


def _field_label(name: str) -> str:
    """'qualityScore' -> 'Quality Score'."""
    spaced = re.sub(r"(?<=[a-z])(?=[A-Z])", " ", name).replace("_", " ")
    return " ".join(word[:1].upper() + word[1:] for word in spaced.split())


# --- Raw records (any parsing tier) ---

class TaskAnalysisRecord(BaseModel):
    """Raw result of the request-analysis step, before defaults are applied."""
    schema_version: int = SCHEMA_VERSION
    task_type: Optional[str] = None
    intent: Optional[str] = None
    scope: Optional[str] = None
    required_context: List[str] = Field(default_factory=list)
    complexity: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _normalize_keys(cls, data: Any) -> Any:
        return snake_keys(data) if isinstance(data, dict) else data

    @field_validator("task_type", "intent", "scope", "complexity", mode="before")
    @classmethod
    def _scalar_to_str(cls, v):
        if v is None:
            return None
        text = str(v).strip()
        return text or None

    @field_validator("required_context", mode="before")
    @classmethod
    def _to_list(cls, v):
        return coerce_str_list(v)

    def to_analysis(self, request: str) -> "TaskAnalysis":
        return TaskAnalysis(
            task_type=self.task_type,
            intent=self.intent or request,
            scope=self.scope or "single-file",
            required_context=self.required_context,
            complexity=self.complexity,
        )


class PlanRecord(BaseModel):
    """
    Raw execution plan as recovered by any tier (strict, repaired, lenient).

    Step entries stay loosely typed dictionaries here; they are validated
    one by one in the normalizer so a bad step is dropped instead of the plan.
    """
    schema_version: int = SCHEMA_VERSION
    task_type: Optional[str] = None
    summary: Optional[str] = None
    steps: List[Dict[str, Any]] = Field(default_factory=list)
    required_files: List[str] = Field(default_factory=list)
    affected_files: List[str] = Field(default_factory=list)
    estimated_complexity: Optional[str] = None
    risks: List[str] = Field(default_factory=list)
    verification_steps: List[str] = Field(default_factory=list)
    confidence: Optional[float] = None

    @model_validator(mode="before")
    @classmethod
    def _normalize_keys(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = snake_keys(data)
        # Accept 'complexity' as an alias of 'estimated_complexity'.
        if "estimated_complexity" not in data and "complexity" in data:
            data["estimated_complexity"] = data.pop("complexity")
        return data

    @field_validator("task_type", "summary", "estimated_complexity", mode="before")
    @classmethod
    def _scalar_to_str(cls, v):
        if v is None:
            return None
        if isinstance(v, TaskType) or isinstance(v, Complexity):
            return v.value
        text = str(v).strip()
        return text or None

    @field_validator("steps", mode="before")
    @classmethod
    def _only_mapping_steps(cls, v):
        if not isinstance(v, list):
            return []
        return [step for step in v if isinstance(step, dict)]

    @field_validator("required_files", "affected_files", "risks", "verification_steps", mode="before")
    @classmethod
    def _to_list(cls, v):
        return coerce_str_list(v)

    @field_validator("confidence", mode="before")
    @classmethod
    def _to_float(cls, v):
        return coerce_optional_float(v)


class RecoveryRecord(BaseModel):
    """Raw result of a terminal-failure analysis."""
    schema_version: int = SCHEMA_VERSION
    needs_retry: bool = False
    analysis: str = ""
    recovery_plan: Optional[PlanRecord] = None

    @model_validator(mode="before")
    @classmethod
    def _normalize_keys(cls, data: Any) -> Any:
        return snake_keys(data) if isinstance(data, dict) else data

    @field_validator("needs_retry", mode="before")
    @classmethod
    def _to_bool(cls, v):
        return coerce_bool(v, default=False)

    @field_validator("analysis", mode="before")
    @classmethod
    def _to_str(cls, v):
        return "" if v is None else str(v).strip()

    @field_validator("recovery_plan", mode="before")
    @classmethod
    def _plan_or_none(cls, v):
        return v if isinstance(v, (dict, PlanRecord)) else None


# --- Sectioned markdown records ---

class Issue(BaseModel):
    type: Optional[str] = None
    description: Optional[str] = None
    fix: Optional[str] = None
    impact: Optional[str] = None
    line: Optional[int] = None


class IssueGroups(BaseModel):
    critical: List[Issue] = Field(default_factory=list)
    warnings: List[Issue] = Field(default_factory=list)
    suggestions: List[Issue] = Field(default_factory=list)


class AgentAnalysis(BaseModel):
    """A specialist agent's analysis (architect, engineer, security, ...)."""
    schema_version: int = SCHEMA_VERSION
    insights: List[str] = Field(default_factory=list)
    issues: IssueGroups = Field(default_factory=IssueGroups)
    recommendations: List[str] = Field(default_factory=list)
    confidence: float = 0.8
    relevance: float = 0.8


class ObserveSynthesis(BaseModel):
    schema_version: int = SCHEMA_VERSION
    patterns: List[str] = Field(default_factory=list)
    conflicts: List[str] = Field(default_factory=list)
    gaps: List[str] = Field(default_factory=list)
    quality_score: Optional[float] = None


class DistillSynthesis(BaseModel):
    schema_version: int = SCHEMA_VERSION
    core_requirements: List[str] = Field(default_factory=list)
    key_constraints: List[str] = Field(default_factory=list)
    implementation_principles: List[str] = Field(default_factory=list)
    quality_score: float = 7.0
    scoring_rationale: Optional[str] = None


# --- Canonical plan ---

class TaskAnalysis(BaseModel):
    task_type: TaskType = TaskType.GENERAL
    intent: str = ""
    scope: str = "single-file"
    required_context: List[str] = Field(default_factory=list)
    complexity: Complexity = Complexity.MEDIUM

    @field_validator("task_type", mode="before")
    @classmethod
    def _coerce_task_type(cls, v):
        return TaskType.parse(v)

    @field_validator("complexity", mode="before")
    @classmethod
    def _coerce_complexity(cls, v):
        return Complexity.parse(v)


class FileChangeOperation(BaseModel):
    type: Literal["create", "modify", "delete", "rename"]
    file_path: str
    new_path: Optional[str] = None
    content: Optional[str] = None
    reason: str = "User requested change"
    dependencies: List[str] = Field(default_factory=list)


class TerminalOperation(BaseModel):
    type: Literal["terminal"] = "terminal"
    # A descriptive name such as "install-dependencies", not a real file.
    file_path: str
    command: str
    working_directory: str = "."
    requires_approval: bool = True
    reason: str = "User requested change"


Operation = Annotated[Union[FileChangeOperation, TerminalOperation], Field(discriminator="type")]

FILE_OPERATION_TYPES = ("create", "modify", "delete", "rename")
OPERATION_TYPES = FILE_OPERATION_TYPES + ("terminal",)


class PlannedChange(BaseModel):
    file_path: str
    operation: Operation
    priority: int
    rationale: str = "Required for user request"
    risks: List[str] = Field(default_factory=list)
    agent_inputs: List[Dict[str, Any]] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.operation.type == "terminal"


class ExecutionPlan(BaseModel):
    """The canonical, validated plan. Steps are already in execution order."""
    schema_version: int = SCHEMA_VERSION
    task_type: TaskType = TaskType.GENERAL
    summary: str = "Execute user request"
    steps: List[PlannedChange] = Field(default_factory=list)
    required_files: List[str] = Field(default_factory=list)
    affected_files: List[str] = Field(default_factory=list)
    estimated_complexity: Complexity = Complexity.MEDIUM
    risks: List[str] = Field(default_factory=list)
    verification_steps: List[str] = Field(default_factory=list)
    confidence: float = Field(default=0.7, ge=0.0, le=1.0)

    @property
    def is_empty(self) -> bool:
        return not self.steps

    @property
    def terminal_steps(self) -> List[PlannedChange]:
        return [step for step in self.steps if step.is_terminal]


# --- Execution records ---

class TerminalCommand(BaseModel):
    command: str
    cwd: str = "."
    reason: str = ""
    timeout: Optional[int] = None  # milliseconds


class TerminalOutput(BaseModel):
    """Everything a finished (or terminated) command produced."""
    command: str
    stdout: List[str] = Field(default_factory=list)
    stderr: List[str] = Field(default_factory=list)
    exit_code: Optional[int] = None
    duration_ms: int = 0
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return not self.timed_out and self.exit_code == 0


FailureKind = Literal["exit", "timeout", "spawn"]


class CommandTranscript(BaseModel):
    """One executed terminal step, as handed to the recovery orchestrator."""
    command: str
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    timed_out: bool = False
    failure_kind: Optional[FailureKind] = None

    @property
    def failed(self) -> bool:
        return self.failure_kind is not None or self.exit_code != 0

    @classmethod
    def from_output(cls, output: TerminalOutput, failure_kind: Optional[FailureKind] = None) -> "CommandTranscript":
        if failure_kind is None and not output.success:
            failure_kind = "timeout" if output.timed_out else "exit"
        return cls(
            command=output.command,
            exit_code=output.exit_code,
            stdout="\n".join(output.stdout),
            stderr="\n".join(output.stderr),
            duration_ms=output.duration_ms,
            timed_out=output.timed_out,
            failure_kind=failure_kind,
        )


class OutputLine(BaseModel):
    stream: Literal["stdout", "stderr"]
    text: str


class PendingCommand(BaseModel):
    """A command waiting for (or past) a human decision, with its streamed output."""
    id: str = Field(default_factory=lambda: f"cmd_{int(time.time() * 1000)}")
    command: str
    reason: str = ""
    output_lines: List[OutputLine] = Field(default_factory=list)
    is_running: bool = False
    exit_code: Optional[int] = None
    duration_ms: Optional[int] = None
    decision: ApprovalDecision = ApprovalDecision.PENDING

    @property
    def is_complete(self) -> bool:
        return self.duration_ms is not None


StepStatus = Literal["completed", "failed", "skipped", "delegated", "rejected"]


class StepResult(BaseModel):
    step: PlannedChange
    status: StepStatus
    transcript: Optional[CommandTranscript] = None
    message: str = ""


class ExecutionReport(BaseModel):
    plan: ExecutionPlan
    step_results: List[StepResult] = Field(default_factory=list)
    transcripts: List[CommandTranscript] = Field(default_factory=list)
    # True when a rejection or failure stopped the remaining steps.
    halted: bool = False

    @property
    def has_failures(self) -> bool:
        return any(t.failed for t in self.transcripts)

    @property
    def was_rejected(self) -> bool:
        return any(r.status == "rejected" for r in self.step_results)


class RecoveryOutcome(BaseModel):
    state: RecoveryState
    no_action_needed: bool
    is_recoverable: bool = False
    rationale: str = ""
    recovery_plan: Optional[ExecutionPlan] = None


class WorkflowResult(BaseModel):
    analysis: TaskAnalysis
    plan: ExecutionPlan
    reports: List[ExecutionReport] = Field(default_factory=list)
    recovery_outcomes: List[RecoveryOutcome] = Field(default_factory=list)
    succeeded: bool = False


class ProgressUpdate(BaseModel):
    """Reported to an optional progress callback as the workflow moves between phases."""
    phase: Literal["analyzing", "planning", "executing", "recovering", "complete"]
    status: str
    progress: int = 0  # percent
    current_file: Optional[str] = None


# --- Workspace context ---

class FileSnapshot(BaseModel):
    path: str
    language: str = ""
    content: str = ""


class Selection(BaseModel):
    start_line: int
    end_line: int


class CurrentFile(FileSnapshot):
    selection: Optional[Selection] = None


class WorkspaceContext(BaseModel):
    workspace_root: Optional[str] = None
    current_file: Optional[CurrentFile] = None
    open_files: List[str] = Field(default_factory=list)
    recent_files: List[str] = Field(default_factory=list)
    project_files: List[str] = Field(default_factory=list)
    mentioned_files: List[FileSnapshot] = Field(default_factory=list)
