"""Exception taxonomy for intentflow.

Browser and reasoning failures are ``AutomationError`` subclasses carrying
the error category they map to, so the categorizer can classify them
without string matching.
"""
from typing import List, Optional


class IntentflowError(Exception):
    """Base class for all intentflow errors."""


# =============================================================================
# AUTOMATION FAILURES (raised by browser primitives and the reasoning engine)
# =============================================================================

class AutomationError(IntentflowError):
    """A primitive action or reasoning call failed."""

    category = "unknown"

    def __init__(
        self,
        message: str,
        selector: Optional[str] = None,
        url: Optional[str] = None,
        action: Optional[str] = None
    ):
        super().__init__(message)
        self.selector = selector
        self.url = url
        self.action = action


class ActionTimeoutError(AutomationError):
    category = "timeout"


class ElementNotFoundError(AutomationError):
    category = "element_not_found"


class NavigationFailedError(AutomationError):
    category = "navigation_failed"


class InteractionBlockedError(AutomationError):
    category = "interaction_blocked"


class NetworkError(AutomationError):
    category = "network_error"


class ScriptError(AutomationError):
    category = "javascript_error"


class ReasoningTimeoutError(AutomationError):
    """The reasoning engine did not respond in time."""
    category = "timeout"


class StepTimeoutError(AutomationError):
    """The per-step deadline passed at a primitive boundary."""
    category = "timeout"


# =============================================================================
# VALIDATION / CONTROL
# =============================================================================

class IntentSpecValidationError(IntentflowError):
    """An intent spec failed validation on load."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("Invalid intent spec: " + "; ".join(self.errors))


class SnippetParseError(IntentflowError):
    """A snippet could not be parsed into primitive calls."""


class SolutionParseError(IntentflowError):
    """The reasoning engine returned a malformed solution."""


class SandboxViolationError(IntentflowError):
    """Candidate code used something outside the sandbox allow-list."""


class RateLimitExceeded(IntentflowError):
    """A per-session rate limit was hit."""


class RunCancelled(IntentflowError):
    """The run was cancelled or ran past its deadline."""

    def __init__(self, reason: str = "cancelled"):
        self.reason = reason
        super().__init__(f"Run stopped: {reason}")
