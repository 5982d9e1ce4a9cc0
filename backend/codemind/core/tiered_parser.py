# backend/codemind/core/tiered_parser.py
"""
Tier escalation for turning model output into validated records.

A pipeline is an explicit, ordered list of ``ParseTier`` objects. The driver
walks the list, stops at the first tier that succeeds and reports every
outcome to a ``TierObserver``. Tier exceptions are converted into failed
results here, so nothing but ``PipelineExhaustedError`` ever leaves the driver.

Standard order: strict -> repair -> lenient (plans only) -> fallback.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Protocol

from .delimiter_technician import DelimiterTechnician, RepairContext
from .exceptions import PipelineExhaustedError, RepairError
from .project_models import ParseResult

logger = logging.getLogger(__name__)

StrictParser = Callable[[str], ParseResult]
TierAttempt = Callable[[str], Awaitable[ParseResult]]


@dataclass(frozen=True)
class ParseTier:
    name: str
    attempt: TierAttempt


@dataclass
class TierOutcome:
    """The successful result plus which tier produced it."""
    result: ParseResult
    tier_name: str
    attempts: List[str] = field(default_factory=list)

    @property
    def data(self) -> Any:
        return self.result.data


class TierObserver(Protocol):
    def on_tier_result(self, pipeline: str, tier: str, result: ParseResult) -> None: ...

    def on_exhausted(self, pipeline: str, errors: List[str]) -> None: ...


class LoggingTierObserver:
    """Default observer: writes tier outcomes to the module logger."""

    def on_tier_result(self, pipeline: str, tier: str, result: ParseResult) -> None:
        if result.success:
            logger.info(f"[{pipeline}] Tier '{tier}' succeeded.")
        else:
            logger.warning(f"[{pipeline}] Tier '{tier}' failed: {result.error}")

    def on_exhausted(self, pipeline: str, errors: List[str]) -> None:
        logger.error(f"[{pipeline}] All parsing tiers failed: {'; '.join(errors)}")


class RecordingTierObserver:
    """Keeps (pipeline, tier, success) tuples; handy for progress reporting and tests."""

    def __init__(self):
        self.events: List[tuple] = []

    def on_tier_result(self, pipeline: str, tier: str, result: ParseResult) -> None:
        self.events.append((pipeline, tier, result.success))

    def on_exhausted(self, pipeline: str, errors: List[str]) -> None:
        self.events.append((pipeline, "exhausted", False))


async def escalate(tiers: List[ParseTier], text: str, pipeline: str = "parse",
                   observer: Optional[TierObserver] = None) -> TierOutcome:
    """
    Runs tiers in order until one succeeds.

    Raises:
        PipelineExhaustedError: If every tier failed.
    """
    observer = observer or LoggingTierObserver()
    attempts: List[str] = []
    errors: List[str] = []

    for tier in tiers:
        attempts.append(tier.name)
        try:
            result = await tier.attempt(text)
        except RepairError as e:
            result = ParseResult.fail(f"Repair unavailable: {e}")
        except Exception as e:
            logger.debug(f"[{pipeline}] Tier '{tier.name}' raised {type(e).__name__}.", exc_info=True)
            result = ParseResult.fail(f"{type(e).__name__}: {e}")
        if result is None:
            result = ParseResult.fail("Tier returned no result.")
        elif result.success and result.data is None:
            result = ParseResult.fail("Tier reported success without data.")

        observer.on_tier_result(pipeline, tier.name, result)
        if result.success:
            return TierOutcome(result=result, tier_name=tier.name, attempts=attempts)
        errors.append(f"{tier.name}: {result.error}")

    observer.on_exhausted(pipeline, errors)
    raise PipelineExhaustedError(f"All {len(tiers)} parsing tiers failed for {pipeline}.", attempts=attempts)


def strict_tier(parser: StrictParser, name: str = "strict") -> ParseTier:
    async def attempt(text: str) -> ParseResult:
        return parser(text)
    return ParseTier(name, attempt)


def repair_tier(parser: StrictParser, technician: DelimiterTechnician, context: RepairContext,
                name: str = "repair") -> ParseTier:
    """One repair call followed by exactly one strict re-parse."""
    async def attempt(text: str) -> ParseResult:
        repaired = await technician.repair(text, context)
        return parser(repaired)
    return ParseTier(name, attempt)


def lenient_tier(extractor: Callable[[str], Any], name: str = "lenient") -> ParseTier:
    async def attempt(text: str) -> ParseResult:
        data = extractor(text)
        if data is None:
            return ParseResult.fail("Lenient extraction found nothing usable.")
        return ParseResult.ok(data)
    return ParseTier(name, attempt)


def fallback_tier(factory: Callable[[], Any], name: str = "fallback") -> ParseTier:
    async def attempt(text: str) -> ParseResult:
        return ParseResult.ok(factory())
    return ParseTier(name, attempt)


def build_tiers(strict: StrictParser,
                technician: Optional[DelimiterTechnician] = None,
                context: Optional[RepairContext] = None,
                lenient: Optional[Callable[[str], Any]] = None,
                fallback: Optional[Callable[[], Any]] = None) -> List[ParseTier]:
    """Assembles the standard tier list, skipping tiers that have no implementation."""
    tiers = [strict_tier(strict)]
    if technician is not None and context is not None:
        tiers.append(repair_tier(strict, technician, context))
    if lenient is not None:
        tiers.append(lenient_tier(lenient))
    if fallback is not None:
        tiers.append(fallback_tier(fallback))
    return tiers


async def parse_with_repair(text: str, parser: StrictParser, technician: DelimiterTechnician,
                            context: RepairContext, observer: Optional[TierObserver] = None) -> Optional[Any]:
    """
    Strict parse with a single repair attempt, for schemas without a
    lenient or fallback tier (specialist analyses, syntheses).

    Returns:
        The parsed record, or None if both tiers failed.
    """
    tiers = build_tiers(parser, technician, context)
    try:
        outcome = await escalate(tiers, text, pipeline=context.label, observer=observer)
    except PipelineExhaustedError:
        return None
    return outcome.data
