"""Dual-path step execution: preferred path, in-path recovery, then fallback."""
import re
import time
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional, Tuple

from intentflow.errors import (
    AutomationError,
    RunCancelled,
    SnippetParseError,
    StepTimeoutError,
)
from intentflow.executor.control import RunControl
from intentflow.executor.reasoning import SemanticExecutor
from intentflow.executor.snippet import SnippetExecutor
from intentflow.models.execution_report import RecoveryStatus, StepExecutionResult
from intentflow.models.intent_spec import ExecutionPath, IntentStep
from intentflow.models.solution import ErrorCategory
from intentflow.recovery.categorizer import ErrorCategorizer
from intentflow.recovery.context import RecoveryContext
from intentflow.recovery.hybrid import HybridErrorRecovery, Recovered
from intentflow.utils.config import config
from intentflow.utils.logger import setup_logger


FallbackListener = Callable[[IntentStep, ExecutionPath, ExecutionPath], None]
FallbackDoneListener = Callable[[IntentStep, ExecutionPath, bool], None]


class _StepState:
    """Where a step is, so a deadline hit at any point yields an accurate result."""

    def __init__(self, path: ExecutionPath):
        self.path = path
        self.fallback_occurred = False
        self.fallback_possible = False
        self.first_error: Optional[str] = None
        self.first_category: Optional[str] = None


class DualPathStepExecutor:
    """
    Runs one IntentStep against the browser.

    Order: preferred path -> (fallback configured) hybrid recovery on the
    same path -> switch to the fallback path. Step failures never raise;
    they become a StepExecutionResult. Only RunCancelled propagates.

    Usage:
        executor = DualPathStepExecutor(browser, semantic=SemanticExecutor(engine), recovery=recovery)
        result = executor.execute(step, control, session_id="exec_1")
    """

    def __init__(
        self,
        browser,
        semantic: Optional[SemanticExecutor] = None,
        snippet: Optional[SnippetExecutor] = None,
        recovery: Optional[HybridErrorRecovery] = None,
        categorizer: Optional[ErrorCategorizer] = None,
        save_screenshots: Optional[bool] = None
    ):
        self.browser = browser
        self.semantic = semantic
        self.snippet = snippet or SnippetExecutor()
        self.recovery = recovery
        self.categorizer = categorizer or ErrorCategorizer()
        self.save_screenshots = config.save_screenshots if save_screenshots is None else save_screenshots
        self.logger = setup_logger("DualPathStepExecutor")

    # ----- paths -----------------------------------------------------------

    def run_path(
        self,
        step: IntentStep,
        path: ExecutionPath,
        control: RunControl,
        replace_locator: Optional[Tuple[Optional[str], str]] = None,
        timeout_ms: Optional[int] = None
    ):
        """Run the step once on one path. Raises on failure."""
        if path is ExecutionPath.SNIPPET:
            if not step.snippet.strip():
                raise AutomationError(f"Step '{step.name}' has no snippet")
            self.snippet.run(step.snippet, self.browser, control,
                             replace_locator=replace_locator, timeout_ms=timeout_ms)
        else:
            if not step.ai_instruction.strip():
                raise AutomationError(f"Step '{step.name}' has no ai_instruction")
            if self.semantic is None:
                raise AutomationError("No reasoning engine configured for the ai path")
            locator = replace_locator[1] if replace_locator else None
            self.semantic.run(step, self.browser, control, locator=locator)

    def _attempt(self, step: IntentStep, path: ExecutionPath, control: RunControl) -> Optional[BaseException]:
        """Run a path, returning the failure instead of raising it."""
        try:
            self.run_path(step, path, control)
            return None
        except (StepTimeoutError, RunCancelled):
            raise
        except (AutomationError, SnippetParseError) as e:
            return e
        except Exception as e:
            return self._unexpected(step, path, e)

    def _unexpected(self, step: IntentStep, path: ExecutionPath, error: Exception) -> AutomationError:
        self.logger.exception(f"Unexpected error in '{step.name}' on {path.value} path")
        return AutomationError(f"Unexpected error: {type(error).__name__}: {error}")

    # ----- execution -------------------------------------------------------

    def execute(
        self,
        step: IntentStep,
        control: RunControl,
        session_id: str = "",
        on_fallback_started: Optional[FallbackListener] = None,
        on_fallback_completed: Optional[FallbackDoneListener] = None
    ) -> StepExecutionResult:
        """
        Execute a step with recovery and fallback.

        Raises:
            RunCancelled: Cancellation or run deadline reached
        """
        started = time.monotonic()
        timestamp = datetime.now(timezone.utc).isoformat()
        state = _StepState(step.prefer)

        try:
            with control.step_deadline(step.timeout_ms or config.step_timeout_ms):
                result = self._execute(step, control, session_id, state,
                                       on_fallback_started, on_fallback_completed)
        except StepTimeoutError as e:
            self.logger.warning(f"  ⏱ Step '{step.name}' timed out on {state.path.value} path")
            error = f"{state.first_error}; {e}" if state.first_error and state.fallback_occurred else str(e)
            result = self._result(
                step, state.path, False,
                fallback_occurred=state.fallback_occurred,
                error=error,
                recovery=RecoveryStatus.EXHAUSTED if state.fallback_possible else RecoveryStatus.NOT_ATTEMPTED,
                error_category=ErrorCategory.TIMEOUT.value,
            )

        duration = int((time.monotonic() - started) * 1000)
        screenshot = None if result.success else self._capture(step, session_id)
        return replace(result, duration_ms=duration, timestamp=timestamp, screenshot=screenshot)

    def _execute(
        self,
        step: IntentStep,
        control: RunControl,
        session_id: str,
        state: _StepState,
        on_fallback_started: Optional[FallbackListener],
        on_fallback_completed: Optional[FallbackDoneListener]
    ) -> StepExecutionResult:
        prefer = step.prefer
        self.logger.info(f"  ▶ {prefer.value} path")
        error = self._attempt(step, prefer, control)
        if error is None:
            return self._result(step, prefer, True)

        analysis = self.categorizer.categorize(error)
        state.first_error = str(error)
        state.first_category = analysis.category.value
        self.logger.warning(f"  ✗ {prefer.value} path failed [{analysis.category.value}]: {error}")

        fallback = step.fallback_path
        if fallback is None:
            return self._result(step, prefer, False, error=str(error),
                                recovery=RecoveryStatus.NOT_ATTEMPTED, error_category=analysis.category.value)
        state.fallback_possible = True

        # In-path recovery (an unparsable snippet cannot be repaired in place)
        last_error = str(error)
        if self.recovery is not None and not isinstance(error, SnippetParseError):
            ctx = self._recovery_context(step, prefer, control, error, session_id)
            try:
                outcome = self.recovery.recover(error, ctx)
            except (StepTimeoutError, RunCancelled):
                raise
            except Exception:
                self.logger.exception(f"Recovery failed unexpectedly for '{step.name}'")
                outcome = None
            if isinstance(outcome, Recovered):
                return self._result(
                    step, prefer, True,
                    recovery=RecoveryStatus.RECOVERED_IN_PATH,
                    recovery_source=outcome.source,
                    recovery_strategy=outcome.strategy,
                    error_category=analysis.category.value,
                )
            if outcome is not None:
                last_error = outcome.last_error or last_error

        # Path switch
        self.logger.info(f"  ↪ Falling back: {prefer.value} → {fallback.value}")
        state.path = fallback
        state.fallback_occurred = True
        _notify(self.logger, on_fallback_started, step, prefer, fallback)

        fallback_error = self._attempt(step, fallback, control)
        _notify(self.logger, on_fallback_completed, step, fallback, fallback_error is None)

        if fallback_error is None:
            self.logger.info(f"  ✓ Recovered via {fallback.value} fallback")
            return self._result(
                step, fallback, True,
                fallback_occurred=True,
                recovery=RecoveryStatus.RECOVERED_VIA_FALLBACK,
                error_category=analysis.category.value,
            )

        return self._result(
            step, fallback, False,
            fallback_occurred=True,
            error=f"{prefer.value}: {last_error}; {fallback.value}: {fallback_error}",
            recovery=RecoveryStatus.EXHAUSTED,
            error_category=analysis.category.value,
        )

    def _recovery_context(self, step: IntentStep, path: ExecutionPath, control: RunControl,
                          error: BaseException, session_id: str) -> RecoveryContext:
        failed_locator = getattr(error, "selector", None) or step.selector

        def retry(locator: Optional[str] = None, timeout_ms: Optional[int] = None):
            # Recipes treat AutomationError as "this fix did not work"
            try:
                self.run_path(
                    step, path, control,
                    replace_locator=(failed_locator, locator) if locator else None,
                    timeout_ms=timeout_ms,
                )
            except (AutomationError, StepTimeoutError, RunCancelled):
                raise
            except SnippetParseError as e:
                raise AutomationError(str(e)) from e
            except Exception as e:
                raise self._unexpected(step, path, e) from e

        return RecoveryContext(
            browser=self.browser,
            control=control,
            step=step,
            path=path,
            retry=retry,
            error=error,
            locator=failed_locator,
            action=getattr(error, "action", None),
            url=getattr(error, "url", None) or self.browser.current_url,
            session_id=session_id,
        )

    # ----- results ---------------------------------------------------------

    def _result(self, step: IntentStep, path: ExecutionPath, success: bool, **fields) -> StepExecutionResult:
        if success and "recovery" not in fields:
            fields["recovery"] = RecoveryStatus.NOT_NEEDED
        return StepExecutionResult(name=step.name, path_used=path, success=success, **fields)

    def _capture(self, step: IntentStep, session_id: str) -> Optional[str]:
        """Save a failure screenshot; best effort."""
        if not self.save_screenshots:
            return None
        try:
            data = self.browser.screenshot()
        except AutomationError as e:
            self.logger.debug(f"Screenshot failed: {e}")
            return None
        if not data:
            return None

        safe_name = re.sub(r"[^A-Za-z0-9_.-]+", "_", step.name)
        path = Path(config.screenshots_dir) / f"{session_id or 'run'}_{safe_name}.png"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as e:
            self.logger.warning(f"Could not save screenshot {path}: {e}")
            return None
        return str(path)


def _notify(logger, listener, *args):
    if listener is None:
        return
    try:
        listener(*args)
    except Exception:
        logger.exception("Fallback listener failed")
