"""Execution results - per-step outcomes and the run-level report."""
from dataclasses import dataclass, field, asdict, replace
from typing import Optional, Dict, Any, List, Tuple, Callable
from enum import Enum
import threading

from intentflow.models.intent_spec import ExecutionPath


class RecoveryStatus(str, Enum):
    """How a step's outcome was reached."""
    NOT_NEEDED = "not_needed"                  # preferred path succeeded first time
    NOT_ATTEMPTED = "not_attempted"            # failed, fallback is none
    RECOVERED_IN_PATH = "recovered_in_path"    # hybrid recovery fixed the preferred path
    RECOVERED_VIA_FALLBACK = "recovered_via_fallback"
    EXHAUSTED = "exhausted"                    # recovery and fallback both failed
    SKIPPED = "skipped"                        # never ran (halt, cancel, run timeout)


@dataclass(frozen=True)
class StepExecutionResult:
    """Outcome of one step. Created once, never mutated."""
    name: str
    path_used: ExecutionPath
    success: bool
    fallback_occurred: bool = False
    error: Optional[str] = None
    duration_ms: int = 0
    screenshot: Optional[str] = None
    timestamp: str = ""
    recovery: RecoveryStatus = RecoveryStatus.NOT_NEEDED
    recovery_source: Optional[str] = None  # library, built_in, ai
    recovery_strategy: Optional[str] = None
    error_category: Optional[str] = None

    @property
    def skipped(self) -> bool:
        return self.recovery is RecoveryStatus.SKIPPED

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["path_used"] = self.path_used.value
        data["recovery"] = self.recovery.value
        return data


@dataclass(frozen=True)
class ExecutionReport:
    """
    Aggregated results of one execution.

    Produced by ReportBuilder.finalize(); immutable afterwards.
    """
    execution_id: str
    spec_name: str
    started_at: str
    steps: Tuple[StepExecutionResult, ...] = ()
    ai_usage_count: int = 0
    snippet_usage_count: int = 0
    fallback_count: int = 0
    overall_success: bool = False
    scores: Dict[str, float] = field(default_factory=dict)
    suggestions: Tuple[str, ...] = ()
    total_duration_ms: int = 0
    cancelled: bool = False
    finalized: bool = True

    # ----- derived counts -------------------------------------------------

    @property
    def total_steps(self) -> int:
        return len(self.steps)

    @property
    def success_count(self) -> int:
        return sum(1 for s in self.steps if s.success)

    @property
    def failed_count(self) -> int:
        return sum(1 for s in self.steps if not s.success and not s.skipped)

    @property
    def skipped_count(self) -> int:
        return sum(1 for s in self.steps if s.skipped)

    @property
    def recovered_fallback_count(self) -> int:
        return sum(1 for s in self.steps if s.fallback_occurred and s.success)

    def count_by_recovery(self, status: RecoveryStatus) -> int:
        return sum(1 for s in self.steps if s.recovery is status)

    # ----- rates (percent) ------------------------------------------------

    def _rate(self, count: int) -> float:
        return (count / self.total_steps) * 100 if self.total_steps else 0.0

    @property
    def success_rate(self) -> float:
        return self._rate(self.success_count)

    @property
    def fallback_rate(self) -> float:
        return self._rate(self.fallback_count)

    @property
    def ai_usage_rate(self) -> float:
        return self._rate(self.ai_usage_count)


class ReportBuilder:
    """
    Accumulates step results for one run and produces the final report.

    Usage:
        builder = ReportBuilder(execution_id, spec.name, started_at)
        builder.add(result)
        report = builder.finalize(total_duration_ms=1234)
    """

    def __init__(self, execution_id: str, spec_name: str, started_at: str):
        self.execution_id = execution_id
        self.spec_name = spec_name
        self.started_at = started_at
        self._steps: List[StepExecutionResult] = []
        self._suggestions: List[str] = []
        self._cancelled = False
        self._report: Optional[ExecutionReport] = None
        self._lock = threading.Lock()

    @property
    def steps(self) -> List[StepExecutionResult]:
        return list(self._steps)

    @property
    def finalized(self) -> bool:
        return self._report is not None

    def add(self, result: StepExecutionResult):
        """Append a step result. Raises once the report is finalized."""
        with self._lock:
            if self._report is not None:
                raise RuntimeError(f"Report {self.execution_id} is finalized; cannot add '{result.name}'")
            self._steps.append(result)

    def add_suggestion(self, suggestion: str):
        with self._lock:
            if self._report is not None:
                raise RuntimeError(f"Report {self.execution_id} is finalized")
            self._suggestions.append(suggestion)

    def mark_cancelled(self):
        self._cancelled = True

    def finalize(
        self,
        total_duration_ms: int,
        analyze: Optional[Callable[[ExecutionReport], Tuple[Dict[str, float], List[str]]]] = None
    ) -> ExecutionReport:
        """
        Freeze the accumulated results into an ExecutionReport.

        Args:
            total_duration_ms: Wall time of the run
            analyze: Optional callable returning (scores, suggestions) for the
                     draft report; its suggestions follow any added directly
        """
        with self._lock:
            if self._report is not None:
                return self._report

            executed = [s for s in self._steps if not s.skipped]
            report = ExecutionReport(
                execution_id=self.execution_id,
                spec_name=self.spec_name,
                started_at=self.started_at,
                steps=tuple(self._steps),
                ai_usage_count=sum(1 for s in executed if s.path_used is ExecutionPath.AI),
                snippet_usage_count=sum(1 for s in executed if s.path_used is ExecutionPath.SNIPPET),
                fallback_count=sum(1 for s in executed if s.fallback_occurred),
                overall_success=bool(self._steps) and all(s.success for s in self._steps) and not self._cancelled,
                suggestions=tuple(self._suggestions),
                total_duration_ms=total_duration_ms,
                cancelled=self._cancelled,
            )

            if analyze is not None:
                scores, suggestions = analyze(report)
                report = replace(
                    report,
                    scores=dict(scores),
                    suggestions=tuple(self._suggestions) + tuple(suggestions)
                )

            self._report = report
            return report
