import pytest

from intentflow.errors import (
    AutomationError,
    ElementNotFoundError,
    InteractionBlockedError,
    NetworkError,
)
from intentflow.models.solution import ErrorCategory
from intentflow.recovery.categorizer import ErrorCategorizer


@pytest.fixture
def categorizer():
    return ErrorCategorizer()


@pytest.mark.parametrize("message, category", [
    ("Timeout 30000ms exceeded while waiting for event", ErrorCategory.TIMEOUT),
    ("net::ERR_CONNECTION_TIMED_OUT at https://example.com", ErrorCategory.NETWORK_ERROR),
    ("No element matches selector #submit", ErrorCategory.ELEMENT_NOT_FOUND),
    ("Element is not attached to the DOM", ErrorCategory.STALE_ELEMENT),
    ("net::ERR_NAME_NOT_RESOLVED", ErrorCategory.NAVIGATION_FAILED),
    ("<div class=overlay> intercepts pointer events", ErrorCategory.INTERACTION_BLOCKED),
    ("ReferenceError: foo is not defined", ErrorCategory.JAVASCRIPT_ERROR),
    ("Form validation failed: email", ErrorCategory.VALIDATION_ERROR),
    ("403 Forbidden", ErrorCategory.PERMISSION_DENIED),
])
def test_known_patterns(categorizer, message, category):
    analysis = categorizer.categorize(message)
    assert analysis.category is category
    assert analysis.pattern_id is not None
    assert analysis.confidence >= 0.8


def test_first_matching_pattern_wins(categorizer):
    # Matches both the timeout and the element patterns; timeout is listed first
    analysis = categorizer.categorize("locator timeout: no element matches #x")
    assert analysis.category is ErrorCategory.TIMEOUT


def test_keyword_heuristic_has_lower_confidence(categorizer):
    analysis = categorizer.categorize("page failed to load completely")
    assert analysis.category is ErrorCategory.PAGE_LOAD_ERROR
    assert analysis.confidence == 0.5
    assert analysis.pattern_id is None


def test_unknown_error(categorizer):
    analysis = categorizer.categorize("something odd happened")
    assert analysis.category is ErrorCategory.UNKNOWN
    assert analysis.suggested_strategies == ["retry_with_backoff"]


@pytest.mark.parametrize("error, category", [
    (ElementNotFoundError("gone"), ErrorCategory.ELEMENT_NOT_FOUND),
    (InteractionBlockedError("covered"), ErrorCategory.INTERACTION_BLOCKED),
    (NetworkError("offline"), ErrorCategory.NETWORK_ERROR),
])
def test_typed_errors_map_directly(categorizer, error, category):
    analysis = categorizer.categorize(error)
    assert analysis.category is category
    assert analysis.confidence == 1.0


def test_untyped_automation_error_uses_message(categorizer):
    analysis = categorizer.categorize(AutomationError("Unable to locate element #x"))
    assert analysis.category is ErrorCategory.ELEMENT_NOT_FOUND


def test_never_raises_on_odd_input(categorizer):
    assert categorizer.categorize(None).category is ErrorCategory.UNKNOWN
    assert categorizer.categorize(ValueError()).message == "ValueError"


def test_known_issue_flag(categorizer):
    assert categorizer.is_known_issue("No element matches selector #a")
    assert not categorizer.is_known_issue("ReferenceError: x")
    assert not categorizer.is_known_issue("weird")
