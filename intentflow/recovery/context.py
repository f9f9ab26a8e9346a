"""Per-failure context handed through the recovery pipeline."""
from dataclasses import dataclass, field
from typing import Callable, Optional

from intentflow.models.intent_spec import ExecutionPath, IntentStep


@dataclass
class RecoveryContext:
    """
    Everything a recovery stage needs to act on one failure.

    `retry(locator=None, timeout_ms=None)` re-runs the failed step on the
    same path, optionally with a replacement locator or a longer action
    timeout. It raises on failure like the original attempt did.
    """
    browser: object
    control: object
    step: IntentStep
    path: ExecutionPath
    retry: Callable[..., None]
    error: Optional[BaseException] = None
    locator: Optional[str] = None
    action: Optional[str] = None
    url: Optional[str] = None
    session_id: str = ""
    retry_count: int = 0
    repeated_in_session: bool = False
    attempted: list = field(default_factory=list)

    @property
    def value(self) -> Optional[str]:
        return self.step.value

    @property
    def target_locator(self) -> Optional[str]:
        """Failing locator, else the step's declared selector."""
        return self.locator or self.step.selector
