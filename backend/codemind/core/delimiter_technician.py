# backend/codemind/core/delimiter_technician.py
"""
Context-aware repair of malformed structured responses.

When a strict parser rejects a response, the DelimiterTechnician sends the
text back to the model together with a description of who produced it and
what shape it should have. The model is only allowed to fix structure; the
content must come back intact.
"""
import asyncio
import logging
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict

from . import prompts
from .exceptions import RepairError
from .llm_client import ChatMessage, GenerationConfig, LLMProvider
from .parsing_utils import extract_structured_block
from .project_models import ExpectedStructure

logger = logging.getLogger(__name__)

RepairSource = Literal[
    "specialist-agent",
    "odai-observe",
    "odai-distill",
    "orchestrator",
    "orchestrator-analysis",
    "orchestrator-recovery",
]
AgentRole = Literal["architect", "engineer", "security", "performance", "testing", "documentation"]

# Expected structures, one per call site.
SPECIALIST_STRUCTURE = ExpectedStructure(
    sections=("ANALYSIS", "INSIGHTS", "ISSUES", "RECOMMENDATIONS", "METADATA"),
    required_fields=("confidence", "relevance"),
)
OBSERVE_STRUCTURE = ExpectedStructure(
    sections=("OBSERVATIONS", "PATTERNS", "CONFLICTS", "GAPS", "METADATA"),
    required_fields=("qualityScore",),
)
DISTILL_STRUCTURE = ExpectedStructure(
    sections=("SYNTHESIS", "CORE REQUIREMENTS", "KEY CONSTRAINTS", "IMPLEMENTATION PRINCIPLES", "METADATA"),
    required_fields=("qualityScore", "scoringRationale"),
)
PLAN_MARKDOWN_STRUCTURE = ExpectedStructure(
    sections=("TASK", "SUMMARY", "STEPS", "METADATA"),
    required_fields=("confidence", "complexity"),
)
PLAN_BLOCK_STRUCTURE = ExpectedStructure(
    sections=("taskType", "summary", "steps", "requiredFiles", "affectedFiles",
              "estimatedComplexity", "risks", "verificationSteps", "confidence"),
    required_fields=("taskType", "summary", "confidence"),
    output_format="block",
)
TASK_ANALYSIS_STRUCTURE = ExpectedStructure(
    sections=("taskType", "intent", "scope", "requiredContext", "complexity"),
    required_fields=("taskType", "intent"),
    output_format="block",
)
RECOVERY_STRUCTURE = ExpectedStructure(
    sections=("needsRetry", "analysis", "recoveryPlan"),
    required_fields=("needsRetry", "analysis"),
    output_format="block",
)


class RepairContext(BaseModel):
    """Who produced the malformed text and what it should have looked like."""
    model_config = ConfigDict(frozen=True)

    source: RepairSource
    agent_role: Optional[AgentRole] = None
    expected_structure: ExpectedStructure
    additional_context: Optional[str] = None

    @property
    def output_format(self) -> str:
        return self.expected_structure.output_format

    @property
    def label(self) -> str:
        return f"{self.source} ({self.agent_role})" if self.agent_role else self.source

    # Predefined contexts for the pipeline's call sites.

    @classmethod
    def specialist_agent(cls, role: AgentRole) -> "RepairContext":
        return cls(source="specialist-agent", agent_role=role, expected_structure=SPECIALIST_STRUCTURE)

    @classmethod
    def odai_observe(cls) -> "RepairContext":
        return cls(source="odai-observe", expected_structure=OBSERVE_STRUCTURE)

    @classmethod
    def odai_distill(cls) -> "RepairContext":
        return cls(source="odai-distill", expected_structure=DISTILL_STRUCTURE)

    @classmethod
    def orchestrator_plan(cls, plan_format: str = "block") -> "RepairContext":
        structure = PLAN_MARKDOWN_STRUCTURE if plan_format == "markdown" else PLAN_BLOCK_STRUCTURE
        return cls(source="orchestrator", expected_structure=structure)

    @classmethod
    def task_analysis(cls) -> "RepairContext":
        return cls(source="orchestrator-analysis", expected_structure=TASK_ANALYSIS_STRUCTURE)

    @classmethod
    def failure_analysis(cls) -> "RepairContext":
        return cls(source="orchestrator-recovery", expected_structure=RECOVERY_STRUCTURE)


def example_for(context: RepairContext) -> Optional[str]:
    """Picks the worked example shown to the repair model for this caller."""
    if context.source == "specialist-agent":
        return prompts.SPECIALIST_REPAIR_EXAMPLE
    if context.source == "odai-observe":
        return prompts.OBSERVE_REPAIR_EXAMPLE
    if context.source == "odai-distill":
        return prompts.DISTILL_REPAIR_EXAMPLE
    if context.source == "orchestrator":
        if context.output_format == "markdown":
            return prompts.MARKDOWN_PLAN_EXAMPLE.replace("Example:\n", "", 1)
        return prompts.BLOCK_PLAN_EXAMPLE.replace("Example:\n", "", 1)
    if context.source == "orchestrator-analysis":
        return prompts.TASK_ANALYSIS_REPAIR_EXAMPLE
    if context.source == "orchestrator-recovery":
        return prompts.RECOVERY_REPAIR_EXAMPLE
    return None


class DelimiterTechnician:
    """
    Sends one corrective request per malformed response.

    The technician never retries and never repairs its own output: a failed
    call or a repair that drops content raises RepairError, and the caller
    moves on to its next tier.
    """
    def __init__(self, llm: LLMProvider, config: Optional[GenerationConfig] = None,
                 temperature: float = 0.1, min_retention: float = 0.5):
        self.llm = llm
        self.config = config or GenerationConfig()
        self.temperature = temperature
        self.min_retention = min_retention

    def build_repair_prompt(self, malformed: str, context: RepairContext) -> str:
        format_name = "Markdown" if context.output_format == "markdown" else "YAML"
        source = context.source + (f" ({context.agent_role} agent)" if context.agent_role else "")
        example = example_for(context)
        example_text = ""
        if example:
            fence = "markdown" if context.output_format == "markdown" else "yaml"
            example_text = f"\n## Expected Format ({context.label}):\n```{fence}\n{example}\n```\n"
        extra = f"\n## Additional Context\n{context.additional_context}\n" if context.additional_context else ""
        return prompts.REPAIR_USER_PROMPT.format(
            format_name=format_name,
            source=source,
            structure=context.expected_structure.describe(),
            example=example_text,
            additional_context=extra,
            malformed=malformed,
        )

    def _system_prompt(self, context: RepairContext) -> str:
        if context.output_format == "markdown":
            return prompts.REPAIR_SYSTEM_PROMPT_MARKDOWN
        return prompts.REPAIR_SYSTEM_PROMPT_BLOCK

    async def repair(self, malformed: str, context: RepairContext) -> str:
        """
        Asks the model to restore the expected structure of `malformed`.

        Returns:
            The repaired payload, already extracted from any code fence.

        Raises:
            RepairError: If the call fails, returns nothing, or returns text
                         shorter than ``min_retention`` of the original.
        """
        logger.info(f"Attempting to repair response for: {context.label} ({len(malformed or '')} chars)")
        messages: List[ChatMessage] = [
            {"role": "system", "content": self._system_prompt(context)},
            {"role": "user", "content": self.build_repair_prompt(malformed or "", context)},
        ]
        config = self.config.with_overrides(temperature=self.temperature)
        try:
            response = await asyncio.to_thread(self.llm.generate, messages, config)
        except Exception as e:
            logger.warning(f"Repair call failed for {context.label}: {e}")
            raise RepairError(f"Delimiter technician repair failed: {e}") from e

        fmt = "markdown" if context.output_format == "markdown" else "yaml"
        repaired = extract_structured_block(response.content, fmt)
        original = extract_structured_block(malformed, fmt)
        logger.info(f"Repaired length: {len(repaired)} chars (original {len(original)} chars)")

        if not repaired:
            raise RepairError("Delimiter technician returned an empty response.")
        if original and len(repaired) < self.min_retention * len(original):
            raise RepairError(
                f"Repair dropped content: {len(repaired)} of {len(original)} chars retained "
                f"(minimum ratio {self.min_retention})."
            )
        return repaired
