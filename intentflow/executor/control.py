"""Deadlines and cooperative cancellation for a single run."""
import threading
import time
from contextlib import contextmanager
from typing import Optional

from intentflow.errors import RunCancelled, StepTimeoutError


RUN_TIMEOUT = "run_timeout"


class RunControl:
    """
    Cancellation flag plus run and step deadlines for one execution.

    `checkpoint()` is called at every primitive boundary (before each
    browser action, reasoning call and sandboxed call). It raises
    RunCancelled when the run was cancelled or ran past its deadline, and
    StepTimeoutError when only the current step's deadline has passed.

    Usage:
        control = RunControl(run_timeout_ms=900000)
        with control.step_deadline(90000):
            control.checkpoint()
            browser.click("#submit")
    """

    def __init__(self, run_timeout_ms: Optional[int] = None):
        self._cancel_event = threading.Event()
        self._reason: Optional[str] = None
        self._started = time.monotonic()
        self._run_deadline = self._started + run_timeout_ms / 1000 if run_timeout_ms else None
        self._step_deadline: Optional[float] = None
        self._step_timeout_ms: Optional[int] = None

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "cancelled"):
        """Request cancellation; takes effect at the next checkpoint. Safe from any thread."""
        if not self._cancel_event.is_set():
            self._reason = reason
            self._cancel_event.set()

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self._started) * 1000)

    def checkpoint(self):
        """Raise if the run or the current step may not continue."""
        if self._cancel_event.is_set():
            raise RunCancelled(self._reason or "cancelled")

        now = time.monotonic()
        if self._run_deadline is not None and now >= self._run_deadline:
            self.cancel(RUN_TIMEOUT)
            raise RunCancelled(RUN_TIMEOUT)

        if self._step_deadline is not None and now >= self._step_deadline:
            raise StepTimeoutError(f"Step timeout of {self._step_timeout_ms}ms exceeded")

    def remaining_ms(self) -> Optional[int]:
        """Time left before the nearest deadline, or None if unbounded."""
        deadlines = [d for d in (self._run_deadline, self._step_deadline) if d is not None]
        if not deadlines:
            return None
        return max(0, int((min(deadlines) - time.monotonic()) * 1000))

    def bounded_timeout(self, timeout_ms: int) -> int:
        """Clamp a primitive action timeout to the remaining step/run budget."""
        remaining = self.remaining_ms()
        if remaining is None:
            return timeout_ms
        return max(1, min(timeout_ms, remaining))

    def sleep(self, ms: float):
        """Wait up to `ms`, waking early on cancellation, then checkpoint."""
        remaining = self.remaining_ms()
        wait_ms = ms if remaining is None else min(ms, remaining)
        self._cancel_event.wait(max(0.0, wait_ms) / 1000)
        self.checkpoint()

    @contextmanager
    def step_deadline(self, timeout_ms: Optional[int]):
        """Apply a per-step deadline for the duration of the block."""
        previous = (self._step_deadline, self._step_timeout_ms)
        if timeout_ms:
            self._step_deadline = time.monotonic() + timeout_ms / 1000
            self._step_timeout_ms = timeout_ms
        try:
            yield self
        finally:
            self._step_deadline, self._step_timeout_ms = previous
