"""Error categorization - maps a raw failure to a category and recovery suggestions."""
import re
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

from intentflow.errors import AutomationError
from intentflow.models.solution import ErrorAnalysis, ErrorCategory
from intentflow.utils.logger import setup_logger


@dataclass(frozen=True)
class ErrorPattern:
    """A known error signature."""
    id: str
    name: str
    patterns: Tuple[str, ...]
    category: ErrorCategory
    confidence: float


# Ordered: first match wins
KNOWN_PATTERNS: Tuple[ErrorPattern, ...] = (
    ErrorPattern(
        id="playwright_timeout",
        name="Playwright Timeout",
        patterns=(r"timeout.*exceeded", r"waiting for.*timed out", r"locator.*timeout", r"page\.waitFor.*timeout"),
        category=ErrorCategory.TIMEOUT,
        confidence=0.95,
    ),
    ErrorPattern(
        id="network_timeout",
        name="Network Timeout",
        patterns=(r"net::ERR_TIMED_OUT", r"net::ERR_CONNECTION_TIMED_OUT", r"request timeout", r"fetch.*timeout"),
        category=ErrorCategory.NETWORK_ERROR,
        confidence=0.9,
    ),
    ErrorPattern(
        id="element_not_found",
        name="Element Not Found",
        patterns=(r"no element matches", r"element not found", r"locator.*not found",
                  r"unable to locate element", r"querySelector.*null"),
        category=ErrorCategory.ELEMENT_NOT_FOUND,
        confidence=0.95,
    ),
    ErrorPattern(
        id="stale_element",
        name="Stale Element Reference",
        patterns=(r"stale element reference", r"element is not attached", r"node is detached",
                  r"element.*no longer attached"),
        category=ErrorCategory.STALE_ELEMENT,
        confidence=0.9,
    ),
    ErrorPattern(
        id="navigation_failed",
        name="Navigation Failed",
        patterns=(r"navigation.*failed", r"net::ERR_NAME_NOT_RESOLVED", r"net::ERR_CONNECTION_REFUSED",
                  r"page.*navigate.*failed"),
        category=ErrorCategory.NAVIGATION_FAILED,
        confidence=0.9,
    ),
    ErrorPattern(
        id="element_not_interactable",
        name="Element Not Interactable",
        patterns=(r"element not interactable", r"element.*not clickable", r"element.*obscured",
                  r"element.*disabled", r"pointer-events.*none", r"intercepts pointer events"),
        category=ErrorCategory.INTERACTION_BLOCKED,
        confidence=0.85,
    ),
    ErrorPattern(
        id="javascript_error",
        name="JavaScript Error",
        patterns=(r"uncaught.*error", r"javascript.*error", r"console.*error", r"TypeError.*undefined",
                  r"ReferenceError"),
        category=ErrorCategory.JAVASCRIPT_ERROR,
        confidence=0.8,
    ),
    ErrorPattern(
        id="form_validation",
        name="Form Validation Error",
        patterns=(r"validation.*failed", r"invalid.*input", r"required.*field", r"form.*error",
                  r"constraint validation"),
        category=ErrorCategory.VALIDATION_ERROR,
        confidence=0.8,
    ),
    ErrorPattern(
        id="permission_denied",
        name="Permission Denied",
        patterns=(r"permission denied", r"access denied", r"unauthorized", r"403.*forbidden",
                  r"authentication.*required"),
        category=ErrorCategory.PERMISSION_DENIED,
        confidence=0.9,
    ),
)

# Known recoverable signatures (static, independent of the solution library)
KNOWN_ISSUE_IDS = frozenset({
    "playwright_timeout",
    "network_timeout",
    "element_not_found",
    "stale_element",
    "navigation_failed",
    "element_not_interactable",
    "form_validation",
})

# Secondary keyword heuristics, checked in order
_KEYWORD_FALLBACKS: Tuple[Tuple[Tuple[str, ...], ErrorCategory], ...] = (
    (("timeout",), ErrorCategory.TIMEOUT),
    (("not found", "locate"), ErrorCategory.ELEMENT_NOT_FOUND),
    (("network", "fetch"), ErrorCategory.NETWORK_ERROR),
    (("navigate",), ErrorCategory.NAVIGATION_FAILED),
    (("click", "interact"), ErrorCategory.INTERACTION_BLOCKED),
    (("permission", "denied"), ErrorCategory.PERMISSION_DENIED),
    (("load",), ErrorCategory.PAGE_LOAD_ERROR),
    (("stale", "detached"), ErrorCategory.STALE_ELEMENT),
    (("javascript", "script"), ErrorCategory.JAVASCRIPT_ERROR),
    (("validation", "invalid"), ErrorCategory.VALIDATION_ERROR),
)

# Built-in strategy names per category, in priority order
CATEGORY_STRATEGIES = {
    ErrorCategory.TIMEOUT: ["extend_wait_and_retry"],
    ErrorCategory.ELEMENT_NOT_FOUND: ["wait_for_element", "alternative_locator"],
    ErrorCategory.INTERACTION_BLOCKED: ["wait_for_overlay_clearance", "scroll_into_view", "force_click"],
    ErrorCategory.NETWORK_ERROR: ["wait_for_network", "retry_with_backoff"],
    ErrorCategory.NAVIGATION_FAILED: ["retry_with_backoff", "reload_and_retry"],
    ErrorCategory.PAGE_LOAD_ERROR: ["reload_and_retry", "wait_for_network"],
    ErrorCategory.JAVASCRIPT_ERROR: ["wait_for_stable", "reload_and_retry"],
    ErrorCategory.STALE_ELEMENT: ["wait_for_stable", "reload_and_retry"],
    ErrorCategory.VALIDATION_ERROR: ["clear_and_retry"],
    ErrorCategory.PERMISSION_DENIED: [],
    ErrorCategory.UNKNOWN: ["retry_with_backoff"],
}

HEURISTIC_CONFIDENCE = 0.5
UNKNOWN_CONFIDENCE = 0.3


def error_message(error: Union[BaseException, str, None]) -> str:
    """Best-effort message text for an error of any shape."""
    if error is None:
        return "Unknown error"
    if isinstance(error, str):
        return error
    return str(error) or type(error).__name__


class ErrorCategorizer:
    """
    Deterministic, pattern-table driven error classification.

    Typed automation errors map directly to their category; everything
    else goes through the ordered regex table, then keyword heuristics.
    """

    def __init__(self, patterns: Tuple[ErrorPattern, ...] = KNOWN_PATTERNS):
        self.patterns = patterns
        self._compiled = [
            (pattern, [re.compile(p, re.IGNORECASE) for p in pattern.patterns])
            for pattern in patterns
        ]
        self.logger = setup_logger("ErrorCategorizer")

    def match_pattern(self, message: str) -> Optional[ErrorPattern]:
        """First known pattern matching the message, if any."""
        for pattern, regexes in self._compiled:
            if any(regex.search(message) for regex in regexes):
                return pattern
        return None

    def categorize(self, error: Union[BaseException, str, None]) -> ErrorAnalysis:
        """Classify a failure. Never raises."""
        message = error_message(error)
        known = self.is_known_issue(error)

        # Typed failures carry their category
        if isinstance(error, AutomationError) and type(error) is not AutomationError:
            category = ErrorCategory(error.category)
            pattern = self.match_pattern(message)
            return ErrorAnalysis(
                category=category,
                confidence=1.0,
                message=message,
                is_known_issue=known,
                pattern_id=pattern.id if pattern and pattern.category is category else None,
                suggested_strategies=list(CATEGORY_STRATEGIES[category]),
            )

        pattern = self.match_pattern(message)
        if pattern:
            return ErrorAnalysis(
                category=pattern.category,
                confidence=pattern.confidence,
                message=message,
                is_known_issue=known,
                pattern_id=pattern.id,
                suggested_strategies=list(CATEGORY_STRATEGIES[pattern.category]),
            )

        lower = message.lower()
        for keywords, category in _KEYWORD_FALLBACKS:
            if any(k in lower for k in keywords):
                return ErrorAnalysis(
                    category=category,
                    confidence=HEURISTIC_CONFIDENCE,
                    message=message,
                    is_known_issue=known,
                    suggested_strategies=list(CATEGORY_STRATEGIES[category]),
                )

        self.logger.debug(f"Uncategorized error: {message[:120]}")
        return ErrorAnalysis(
            category=ErrorCategory.UNKNOWN,
            confidence=UNKNOWN_CONFIDENCE,
            message=message,
            is_known_issue=known,
            suggested_strategies=list(CATEGORY_STRATEGIES[ErrorCategory.UNKNOWN]),
        )

    def is_known_issue(self, error: Union[BaseException, str, None]) -> bool:
        """True if the error matches a known recoverable signature."""
        pattern = self.match_pattern(error_message(error))
        return pattern is not None and pattern.id in KNOWN_ISSUE_IDS

    def suggested_strategies(self, category: ErrorCategory) -> List[str]:
        return list(CATEGORY_STRATEGIES.get(category, CATEGORY_STRATEGIES[ErrorCategory.UNKNOWN]))
