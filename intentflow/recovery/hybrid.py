"""Hybrid Error Recovery - the per-failure recovery state machine.

    Categorize -> LibraryLookup -> (hit: LibraryExecution)
               -> BuiltInStrategies
               -> EscalationDecision -> AISynthesis -> SandboxedExecution
               -> RecordOutcome
    terminal: Recovered(source, strategy) | Exhausted(attempted)
"""
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union

from intentflow.errors import (
    AutomationError,
    RateLimitExceeded,
    RunCancelled,
    SandboxViolationError,
    SolutionParseError,
    StepTimeoutError,
)
from intentflow.models.solution import ErrorAnalysis, ErrorCategory
from intentflow.recovery.categorizer import ErrorCategorizer
from intentflow.recovery.context import RecoveryContext
from intentflow.recovery.sandbox import SolutionSandbox
from intentflow.recovery.solution_library import SolutionLibrary, fingerprint_for
from intentflow.recovery.strategies import NOT_APPLICABLE, BuiltInStrategies
from intentflow.recovery.synthesizer import AISolutionSynthesizer
from intentflow.utils.config import config
from intentflow.utils.logger import setup_logger


# Library hits below this observed success rate are not executed
MIN_HIT_SUCCESS_RATE = 0.2


class RecoveryStage(str, Enum):
    CATEGORIZE = "categorize"
    LIBRARY_LOOKUP = "library_lookup"
    LIBRARY_EXECUTION = "library_execution"
    BUILT_IN = "built_in_strategies"
    ESCALATION_DECISION = "escalation_decision"
    AI_SYNTHESIS = "ai_synthesis"
    SANDBOXED_EXECUTION = "sandboxed_execution"
    RECORD_OUTCOME = "record_outcome"


@dataclass(frozen=True)
class RecoveryTransition:
    stage: RecoveryStage
    category: str
    strategy: Optional[str]
    duration_ms: int
    outcome: str


@dataclass(frozen=True)
class Recovered:
    """Terminal: the step was recovered on its current path."""
    source: str                      # library, built_in or ai
    strategy: str
    analysis: ErrorAnalysis
    locator: Optional[str] = None
    solution_id: Optional[str] = None
    transitions: Tuple[RecoveryTransition, ...] = ()


@dataclass(frozen=True)
class Exhausted:
    """Terminal: every applicable stage failed."""
    attempted: Tuple[str, ...]
    analysis: ErrorAnalysis
    last_error: Optional[str] = None
    transitions: Tuple[RecoveryTransition, ...] = ()


RecoveryOutcome = Union[Recovered, Exhausted]


@dataclass
class _SessionCounters:
    attempts: int = 0
    recovered: int = 0
    exhausted: int = 0
    by_source: Counter = field(default_factory=Counter)
    by_category: Counter = field(default_factory=Counter)
    library_hits: int = 0
    ai_requests: int = 0
    ai_rejected: int = 0


class HybridErrorRecovery:
    """
    Runs the recovery pipeline for one failure at a time.

    Shared across runs; per-run state lives in the RecoveryContext and the
    per-session failure counters used for repeat-failure detection.

    Usage:
        recovery = HybridErrorRecovery(library, synthesizer=synth)
        outcome = recovery.recover(error, ctx)
        if isinstance(outcome, Recovered): ...
    """

    def __init__(
        self,
        library: Optional[SolutionLibrary] = None,
        strategies: Optional[BuiltInStrategies] = None,
        synthesizer: Optional[AISolutionSynthesizer] = None,
        sandbox: Optional[SolutionSandbox] = None,
        categorizer: Optional[ErrorCategorizer] = None
    ):
        self.library = library or SolutionLibrary()
        self.strategies = strategies or BuiltInStrategies()
        self.synthesizer = synthesizer
        self.sandbox = sandbox or SolutionSandbox()
        self.categorizer = categorizer or ErrorCategorizer()
        self.logger = setup_logger("HybridErrorRecovery")

        self._lock = threading.Lock()
        self._counters = _SessionCounters()
        self._session_failures: Dict[str, Counter] = {}

    # ----- pipeline --------------------------------------------------------

    def recover(self, error: BaseException, ctx: RecoveryContext) -> RecoveryOutcome:
        """
        Attempt to recover from a failure on the context's current path.

        Raises only StepTimeoutError and RunCancelled.
        """
        transitions: List[RecoveryTransition] = []
        t0 = time.monotonic()

        analysis = self.categorizer.categorize(error)
        ctx.error = error
        self._transition(transitions, RecoveryStage.CATEGORIZE, analysis.category, None, t0,
                         f"{analysis.category.value} ({analysis.confidence:.2f})")

        fingerprint = fingerprint_for(analysis.category, ctx.target_locator, ctx.url)
        ctx.repeated_in_session = self._note_failure(ctx.session_id, fingerprint.key)
        with self._lock:
            self._counters.attempts += 1
            self._counters.by_category[analysis.category.value] += 1

        last_error: Optional[str] = str(error)

        # Library
        t0 = time.monotonic()
        hits = [h for h in self.library.find(fingerprint) if h.solution.success_rate >= MIN_HIT_SUCCESS_RATE]
        self._transition(transitions, RecoveryStage.LIBRARY_LOOKUP, analysis.category, None, t0,
                         f"{len(hits)} hit(s)")
        if hits:
            hit = hits[0].solution
            with self._lock:
                self._counters.library_hits += 1
            ctx.attempted.append(f"library:{hit.strategy}")
            t0 = time.monotonic()
            ok, detail = self._run_in_sandbox(hit.code, ctx)
            if ok is not None:
                self.library.record_outcome(hit.id, ok)
            self._transition(transitions, RecoveryStage.LIBRARY_EXECUTION, analysis.category, hit.strategy, t0,
                             "success" if ok else f"failed: {detail}")
            if ok:
                return self._recovered("library", hit.strategy, analysis, transitions, solution_id=hit.id)
            ctx.retry_count += 1
            last_error = detail or last_error

        # Built-in strategies
        t0 = time.monotonic()
        result = self.strategies.attempt(analysis.category, ctx)
        if result is NOT_APPLICABLE:
            self._transition(transitions, RecoveryStage.BUILT_IN, analysis.category, None, t0, "not applicable")
        else:
            self._transition(transitions, RecoveryStage.BUILT_IN, analysis.category, result.strategy, t0,
                             "success" if result.success else f"failed: {', '.join(result.attempted)}")
            if result.success:
                return self._recovered("built_in", result.strategy, analysis, transitions, locator=result.locator)
            last_error = result.error or last_error

        # Escalation
        if self.synthesizer is None:
            return self._exhausted(ctx, analysis, last_error, transitions)

        t0 = time.monotonic()
        decision = self.synthesizer.should_escalate(analysis, ctx)
        self._transition(transitions, RecoveryStage.ESCALATION_DECISION, analysis.category, None, t0,
                         f"{'escalate' if decision.escalate else 'stop'} ({decision.reasoning})")
        if not decision.escalate:
            return self._exhausted(ctx, analysis, last_error, transitions)

        # AI synthesis
        t0 = time.monotonic()
        with self._lock:
            self._counters.ai_requests += 1
        try:
            solution = self.synthesizer.synthesize(analysis, ctx)
        except (StepTimeoutError, RunCancelled):
            raise
        except (SolutionParseError, RateLimitExceeded, AutomationError) as e:
            self._transition(transitions, RecoveryStage.AI_SYNTHESIS, analysis.category, None, t0, f"failed: {e}")
            return self._exhausted(ctx, analysis, str(e), transitions)
        except Exception as e:
            self.logger.exception(f"AI synthesis crashed for '{ctx.step.name}'")
            detail = f"{type(e).__name__}: {e}"
            self._transition(transitions, RecoveryStage.AI_SYNTHESIS, analysis.category, None, t0, f"failed: {detail}")
            return self._exhausted(ctx, analysis, detail, transitions)
        self._transition(transitions, RecoveryStage.AI_SYNTHESIS, analysis.category, solution.strategy, t0,
                         f"proposed (confidence {solution.confidence:.2f}, risk {solution.risk_level})")

        stored = self.library.store(solution)
        ctx.attempted.append(f"ai:{stored.strategy}")

        rejection = self._gate(stored.confidence, stored.risk_level)
        if rejection:
            with self._lock:
                self._counters.ai_rejected += 1
            self._transition(transitions, RecoveryStage.SANDBOXED_EXECUTION, analysis.category, stored.strategy,
                             time.monotonic(), f"not run: {rejection}")
            return self._exhausted(ctx, analysis, rejection, transitions)

        t0 = time.monotonic()
        ok, detail = self._run_in_sandbox(stored.code, ctx)
        self._transition(transitions, RecoveryStage.SANDBOXED_EXECUTION, analysis.category, stored.strategy, t0,
                         "success" if ok else f"failed: {detail}")

        t0 = time.monotonic()
        if ok is not None:
            self.library.record_outcome(stored.id, ok)
        self._transition(transitions, RecoveryStage.RECORD_OUTCOME, analysis.category, stored.strategy, t0,
                         "recorded" if ok is not None else "skipped")

        if ok:
            return self._recovered("ai", stored.strategy, analysis, transitions, solution_id=stored.id)
        return self._exhausted(ctx, analysis, detail or last_error, transitions)

    # ----- helpers ---------------------------------------------------------

    def _gate(self, confidence: float, risk_level: str) -> Optional[str]:
        if confidence < config.ai_confidence_threshold:
            return f"confidence {confidence:.2f} below {config.ai_confidence_threshold:.2f}"
        if risk_level == "high" and not config.allow_high_risk_solutions:
            return "high-risk solutions are disabled"
        return None

    def _run_in_sandbox(self, code: str, ctx: RecoveryContext) -> Tuple[Optional[bool], Optional[str]]:
        """Run code in the sandbox. Returns (outcome, detail); outcome None means it never ran."""
        try:
            self.sandbox.execute(
                code, ctx.browser, ctx.session_id, "hybrid_recovery",
                ctx.control.checkpoint, ctx.control.bounded_timeout
            )
        except StepTimeoutError:
            raise
        except RateLimitExceeded as e:
            return None, str(e)
        except (SandboxViolationError, AutomationError) as e:
            return False, str(e)
        return True, None

    def _note_failure(self, session_id: str, key: str) -> bool:
        """Count a failure fingerprint for the session; True if it was seen before."""
        with self._lock:
            seen = self._session_failures.setdefault(session_id, Counter())
            repeated = seen[key] > 0
            seen[key] += 1
            return repeated

    def end_session(self, session_id: str):
        with self._lock:
            self._session_failures.pop(session_id, None)

    def _transition(self, transitions: List[RecoveryTransition], stage: RecoveryStage,
                    category: ErrorCategory, strategy: Optional[str], started: float, outcome: str):
        duration = int((time.monotonic() - started) * 1000)
        transitions.append(RecoveryTransition(stage, category.value, strategy, duration, outcome))
        self.logger.info(
            f"  [{stage.value}] category={category.value} strategy={strategy or '-'} "
            f"duration={duration}ms outcome={outcome}"
        )

    def _recovered(self, source: str, strategy: str, analysis: ErrorAnalysis,
                   transitions: List[RecoveryTransition], **kwargs) -> Recovered:
        with self._lock:
            self._counters.recovered += 1
            self._counters.by_source[source] += 1
        self.logger.info(f"  ✅ Recovered via {source}: {strategy}")
        return Recovered(source=source, strategy=strategy, analysis=analysis,
                         transitions=tuple(transitions), **kwargs)

    def _exhausted(self, ctx: RecoveryContext, analysis: ErrorAnalysis, last_error: Optional[str],
                   transitions: List[RecoveryTransition]) -> Exhausted:
        with self._lock:
            self._counters.exhausted += 1
        self.logger.warning(f"  ❌ Recovery exhausted for {analysis.category.value} after {ctx.attempted or 'no attempts'}")
        return Exhausted(attempted=tuple(ctx.attempted), analysis=analysis, last_error=last_error,
                         transitions=tuple(transitions))

    # ----- reporting -------------------------------------------------------

    def get_statistics(self) -> Dict:
        with self._lock:
            c = self._counters
            stats = {
                "recovery_attempts": c.attempts,
                "recovered": c.recovered,
                "exhausted": c.exhausted,
                "success_rate": c.recovered / c.attempts if c.attempts else 0.0,
                "successes_by_source": dict(c.by_source),
                "failures_by_category": dict(c.by_category),
                "library_hits": c.library_hits,
                "ai_requests": c.ai_requests,
                "ai_solutions_not_run": c.ai_rejected,
            }
        stats["strategies"] = self.strategies.stats.get_statistics()
        stats["library"] = self.library.get_statistics()
        return stats

    def get_recommendations(self) -> List[str]:
        recommendations = self.strategies.stats.get_recommendations()
        with self._lock:
            c = self._counters
            ai_successes = c.by_source.get("ai", 0)
            if c.ai_requests > 5 and ai_successes / c.ai_requests < 0.3:
                recommendations.append(
                    "AI-synthesized solutions rarely succeed; review step instructions and selectors"
                )
            if c.attempts > 10 and c.exhausted / c.attempts > 0.5:
                recommendations.append(
                    "More than half of recoveries are exhausted; consider re-recording the affected steps"
                )
        return recommendations
