"""Execution orchestrator - runs an Intent Spec step by step and builds the report."""
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from intentflow.errors import AutomationError, RunCancelled
from intentflow.executor.control import RUN_TIMEOUT, RunControl
from intentflow.executor.reasoning import ReasoningEngine, SemanticExecutor
from intentflow.executor.step_executor import DualPathStepExecutor
from intentflow.models.execution_report import (
    ExecutionReport,
    RecoveryStatus,
    ReportBuilder,
    StepExecutionResult,
)
from intentflow.models.intent_spec import ExecutionPath, IntentSpec, IntentStep, validate_spec
from intentflow.models.solution import ErrorCategory
from intentflow.recovery.hybrid import HybridErrorRecovery
from intentflow.recovery.solution_library import SolutionLibrary
from intentflow.recovery.synthesizer import AISolutionSynthesizer
from intentflow.reporting.reporter import analyze as analyze_report
from intentflow.utils.audit_log import AuditEntry, AuditLog, audit_log
from intentflow.utils.config import config
from intentflow.utils.logger import StepLogger, setup_logger
from intentflow.utils.rate_limiter import rate_limiters


# =============================================================================
# LIFECYCLE EVENTS
# =============================================================================

@dataclass(frozen=True)
class ExecutionStarted:
    execution_id: str
    spec_name: str
    total_steps: int
    timestamp: str


@dataclass(frozen=True)
class StepStarted:
    execution_id: str
    step_name: str
    step_index: int
    path: ExecutionPath


@dataclass(frozen=True)
class FallbackStarted:
    execution_id: str
    step_name: str
    step_index: int
    from_path: ExecutionPath
    to_path: ExecutionPath


@dataclass(frozen=True)
class FallbackCompleted:
    execution_id: str
    step_name: str
    step_index: int
    path: ExecutionPath
    success: bool


@dataclass(frozen=True)
class StepCompleted:
    execution_id: str
    step_index: int
    result: StepExecutionResult


@dataclass(frozen=True)
class ExecutionCompleted:
    execution_id: str
    report: ExecutionReport


ExecutionEvent = Union[
    ExecutionStarted, StepStarted, FallbackStarted, FallbackCompleted, StepCompleted, ExecutionCompleted
]
Listener = Callable[[ExecutionEvent], None]


def new_execution_id() -> str:
    """exec_<epoch ms>_<random>"""
    return f"exec_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


# =============================================================================
# ORCHESTRATOR
# =============================================================================

class ExecutionOrchestrator:
    """
    Executes Intent Specs against one browser.

    Key behavior:
    - Missing parameters fail fast, before any step runs
    - Steps run strictly in order; {{PARAM}} substitution right before each
    - Step failures are recorded and the run continues, unless halt_on_failure
    - cancel() and the run timeout take effect at the next primitive boundary

    Usage:
        orchestrator = ExecutionOrchestrator(browser, engine=LLMReasoningEngine())
        orchestrator.subscribe(lambda event: print(event))
        report = orchestrator.execute(spec, {"USERNAME": "alice"})
    """

    def __init__(
        self,
        browser,
        engine: Optional[ReasoningEngine] = None,
        library: Optional[SolutionLibrary] = None,
        recovery: Optional[HybridErrorRecovery] = None,
        step_executor: Optional[DualPathStepExecutor] = None,
        halt_on_failure: Optional[bool] = None,
        run_timeout_ms: Optional[int] = None,
        audit: Optional[AuditLog] = None,
        analyze: Optional[Callable] = analyze_report
    ):
        self.browser = browser
        self.logger = setup_logger("ExecutionOrchestrator")

        if recovery is None:
            synthesizer = AISolutionSynthesizer(engine) if engine is not None else None
            recovery = HybridErrorRecovery(library or SolutionLibrary(), synthesizer=synthesizer)
        self.recovery = recovery

        self.step_executor = step_executor or DualPathStepExecutor(
            browser,
            semantic=SemanticExecutor(engine) if engine is not None else None,
            recovery=recovery,
        )
        self.halt_on_failure = config.halt_on_failure if halt_on_failure is None else halt_on_failure
        self.run_timeout_ms = run_timeout_ms or config.run_timeout_ms
        self.audit = audit or audit_log
        self.analyze = analyze

        self._listeners: List[Listener] = []
        self._lock = threading.Lock()
        self._control: Optional[RunControl] = None

    # ----- events ----------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a lifecycle listener. Returns a function that unsubscribes it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: ExecutionEvent):
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                self.logger.exception(f"Listener failed on {type(event).__name__}")

    # ----- control ---------------------------------------------------------

    def cancel(self, reason: str = "cancelled") -> bool:
        """Cancel the running execution. Safe to call from another thread."""
        with self._lock:
            control = self._control
        if control is None:
            self.logger.warning("cancel() called with no execution running")
            return False
        self.logger.warning(f"Cancellation requested: {reason}")
        control.cancel(reason)
        return True

    # ----- execution -------------------------------------------------------

    def execute(self, spec: IntentSpec, variables: Optional[Dict[str, Any]] = None) -> ExecutionReport:
        """
        Run every step of the spec and return the finalized report.

        Never raises for step failures, cancellation or timeouts.
        """
        variables = dict(variables or {})
        execution_id = new_execution_id()
        builder = ReportBuilder(execution_id, spec.name, _utcnow())
        control = RunControl(run_timeout_ms=self.run_timeout_ms)
        with self._lock:
            self._control = control

        total = len(spec.steps)
        self.logger.info("=" * 60)
        self.logger.info(f"Executing Intent Spec: {spec.name} ({execution_id})")
        self.logger.info("=" * 60)

        self._emit(ExecutionStarted(execution_id, spec.name, total, builder.started_at))
        self.audit.start_execution(execution_id, spec.name, variables)

        status, status_error = "completed", None
        try:
            problems = validate_spec(spec).errors
            missing = spec.check_variables(variables)
            if problems:
                for problem in problems:
                    self.logger.error(f"Invalid spec: {problem}")
                    builder.add_suggestion(f"Fix the spec: {problem}")
                status, status_error = "failed", f"Invalid spec: {'; '.join(problems)}"
            elif missing:
                for name in missing:
                    self.logger.error(f"Missing required parameter: {name}")
                    builder.add_suggestion(
                        f"Provide a value for required parameter '{name}' (e.g. --param {name}=...)"
                    )
                status, status_error = "failed", f"Missing parameters: {', '.join(missing)}"
            else:
                status, status_error = self._run_steps(spec, variables, execution_id, builder, control)
        finally:
            with self._lock:
                self._control = None

        report = builder.finalize(control.elapsed_ms(), self.analyze)
        if status == "completed" and not report.overall_success:
            status = "failed"

        self.audit.end_execution(execution_id, status, status_error)
        self.recovery.end_session(execution_id)
        rate_limiters.release_session(execution_id)

        self.logger.info(
            f"Finished {spec.name}: {report.success_count}/{report.total_steps} steps succeeded "
            f"({report.total_duration_ms}ms, {status})"
        )
        self._emit(ExecutionCompleted(execution_id, report))
        return report

    def _run_steps(self, spec: IntentSpec, variables: Dict[str, Any], execution_id: str,
                   builder: ReportBuilder, control: RunControl):
        """Run steps in order. Returns (audit status, error)."""
        steps = spec.steps
        total = len(steps)
        index = 0

        try:
            if spec.url:
                control.checkpoint()
                try:
                    self.browser.goto(spec.url)
                except AutomationError as e:
                    self.logger.error(f"Initial navigation to {spec.url} failed: {e}")
                    builder.add_suggestion(f"Check that {spec.url} is reachable: {e}")
                    self._skip_from(builder, execution_id, steps, 0, f"Initial navigation failed: {e}")
                    return "failed", str(e)

            for index, step in enumerate(steps):
                concrete = step.substitute(variables)
                self._emit(StepStarted(execution_id, step.name, index, concrete.prefer))

                with StepLogger(self.logger, step.name, index + 1, total):
                    result = self.step_executor.execute(
                        concrete,
                        control,
                        session_id=execution_id,
                        on_fallback_started=lambda s, a, b, i=index: self._emit(
                            FallbackStarted(execution_id, s.name, i, a, b)),
                        on_fallback_completed=lambda s, p, ok, i=index: self._emit(
                            FallbackCompleted(execution_id, s.name, i, p, ok)),
                    )
                self._record(builder, execution_id, index, result)

                if not result.success and self.halt_on_failure:
                    self.logger.error("Halting: step failed and halt_on_failure is set")
                    builder.add_suggestion(f"Execution halted after '{step.name}' failed")
                    self._skip_from(builder, execution_id, steps, index + 1, "Halted after earlier failure")
                    return "failed", result.error
            return "completed", None

        except RunCancelled as e:
            builder.mark_cancelled()
            if e.reason == RUN_TIMEOUT:
                self.logger.error(f"Run timeout of {self.run_timeout_ms}ms reached")
                current = StepExecutionResult(
                    name=steps[index].name,
                    path_used=steps[index].prefer,
                    success=False,
                    error=f"Run timeout of {self.run_timeout_ms}ms exceeded",
                    timestamp=_utcnow(),
                    recovery=RecoveryStatus.NOT_ATTEMPTED,
                    error_category=ErrorCategory.TIMEOUT.value,
                )
                self._record(builder, execution_id, index, current)
                self._skip_from(builder, execution_id, steps, index + 1, "Run timeout")
                return "failed", "run timeout"

            self.logger.warning(f"Execution cancelled: {e.reason}")
            self._skip_from(builder, execution_id, steps, index, f"Cancelled: {e.reason}")
            return "cancelled", e.reason

    def _record(self, builder: ReportBuilder, execution_id: str, index: int, result: StepExecutionResult):
        builder.add(result)
        if result.skipped:
            outcome = "skipped"
        else:
            outcome = "success" if result.success else "failed"
        self.audit.log_step(AuditEntry(
            timestamp=result.timestamp or _utcnow(),
            execution_id=execution_id,
            step_name=result.name,
            step_index=index,
            path_used=result.path_used.value,
            result=outcome,
            fallback_occurred=result.fallback_occurred,
            recovery=result.recovery.value,
            recovery_source=result.recovery_source,
            duration_ms=result.duration_ms,
            error=result.error,
            error_category=result.error_category,
        ))
        self._emit(StepCompleted(execution_id, index, result))

    def _skip_from(self, builder: ReportBuilder, execution_id: str, steps: List[IntentStep],
                   start: int, reason: str):
        """Mark steps[start:] as skipped."""
        for index in range(start, len(steps)):
            step = steps[index]
            self._record(builder, execution_id, index, StepExecutionResult(
                name=step.name,
                path_used=step.prefer,
                success=False,
                error=reason,
                timestamp=_utcnow(),
                recovery=RecoveryStatus.SKIPPED,
            ))
