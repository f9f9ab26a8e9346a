import pytest

from intentflow.errors import ElementNotFoundError, InteractionBlockedError
from intentflow.executor.control import RunControl
from intentflow.executor.snippet import SnippetExecutor
from intentflow.models.intent_spec import ExecutionPath, IntentStep
from intentflow.models.solution import ErrorCategory
from intentflow.recovery.context import RecoveryContext
from intentflow.recovery.strategies import (
    NOT_APPLICABLE,
    BuiltInStrategies,
    RecoveryStatistics,
    StrategyStats,
    alternative_locators,
    effectiveness_score,
    extract_target,
    infer_role,
)

from conftest import FakeBrowser


def click_step(selector="#submit-btn", instruction="Click the Submit button", value=None):
    return IntentStep(
        name="click_button",
        ai_instruction=instruction,
        snippet=f"await page.click('{selector}');",
        selector=selector,
        value=value,
        prefer=ExecutionPath.SNIPPET,
        fallback="ai",
    )


def snippet_context(browser, step, error=None, control=None):
    """Context whose retry re-runs the step's snippet on the fake browser."""
    control = control or RunControl()
    executor = SnippetExecutor()

    def retry(locator=None, timeout_ms=None):
        executor.run(step.snippet, browser, control,
                     replace_locator=(step.selector, locator) if locator else None,
                     timeout_ms=timeout_ms)

    return RecoveryContext(
        browser=browser,
        control=control,
        step=step,
        path=ExecutionPath.SNIPPET,
        retry=retry,
        error=error,
        locator=step.selector,
        action="click",
        url=browser.url,
        session_id="exec_test",
    )


# ---------------------------------------------------------------------------
# Locator helpers
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("instruction, target", [
    ("Click the Submit button", "Submit"),
    ('Click on "Sign in"', "Sign in"),
    ("Fill the Email field", "Email"),
    ("Select the 'Country' option", "Country"),
])
def test_extract_target(instruction, target):
    assert extract_target(instruction) == target


def test_infer_role_last_keyword_wins():
    assert infer_role("Click the Submit button") == "button"
    assert infer_role("Open the Help link") == "link"
    assert infer_role("Type into the search input field") == "textbox"


def test_alternative_locators_order_and_exclusion():
    step = click_step()
    candidates = alternative_locators(step, failed_locator='text="Submit"')
    assert candidates[0] == "text=Submit"
    assert 'role=button[name="Submit"]' in candidates
    assert 'text="Submit"' not in candidates
    assert candidates[-1] == "xpath=//*[contains(text(), 'Submit')]"


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------

def test_first_record_uses_fixed_effectiveness():
    stats = RecoveryStatistics()
    stats.record("wait_for_element", ErrorCategory.ELEMENT_NOT_FOUND, True, 100)
    stats.record("force_click", ErrorCategory.INTERACTION_BLOCKED, False, 100)
    assert stats.get("wait_for_element", ErrorCategory.ELEMENT_NOT_FOUND).effectiveness == 0.5
    assert stats.get("force_click", ErrorCategory.INTERACTION_BLOCKED).effectiveness == 0.1


def test_effectiveness_formula():
    from datetime import datetime, timezone
    now = datetime.now(timezone.utc)
    s = StrategyStats("x", ErrorCategory.TIMEOUT, total_attempts=4, success_count=2,
                      average_duration_ms=5000, last_used=now)
    assert effectiveness_score(s, now) == pytest.approx(0.5 * 0.7 + 0.5 * 0.2 + 1.0 * 0.1)


def test_recommendations_for_poor_strategy():
    stats = RecoveryStatistics()
    for _ in range(6):
        stats.record("reload_and_retry", ErrorCategory.STALE_ELEMENT, False, 10)
    recs = stats.get_recommendations()
    assert any("reload_and_retry" in r for r in recs)


def test_history_is_bounded():
    stats = RecoveryStatistics(history_limit=3)
    for i in range(5):
        stats.record("s", ErrorCategory.UNKNOWN, True, 1, f"e{i}")
    assert [e.message for e in stats.recent_errors()] == ["e2", "e3", "e4"]


def test_ordering_follows_effectiveness_once_known():
    stats = RecoveryStatistics()
    strategies = BuiltInStrategies(stats=stats, settle_ms=0)
    assert strategies.strategies_for(ErrorCategory.ELEMENT_NOT_FOUND) == ["wait_for_element", "alternative_locator"]
    for _ in range(3):
        stats.record("wait_for_element", ErrorCategory.ELEMENT_NOT_FOUND, False, 9000)
    assert strategies.strategies_for(ErrorCategory.ELEMENT_NOT_FOUND)[0] == "alternative_locator"


# ---------------------------------------------------------------------------
# Recipes
# ---------------------------------------------------------------------------

def test_alternative_locator_recovers_step():
    browser = FakeBrowser(elements={"text=Submit"})
    step = click_step()
    ctx = snippet_context(browser, step, ElementNotFoundError("No element matches selector #submit-btn"))

    result = BuiltInStrategies(settle_ms=0).attempt(ErrorCategory.ELEMENT_NOT_FOUND, ctx)

    assert result.success
    assert result.strategy == "alternative_locator"
    assert result.locator == "text=Submit"
    assert result.attempted == ("wait_for_element", "alternative_locator")
    assert ("click", "text=Submit") in browser.calls
    assert ctx.retry_count == 1


def test_wait_for_element_recovers_when_element_appears():
    browser = FakeBrowser(elements={"#submit-btn"})
    step = click_step()
    ctx = snippet_context(browser, step)

    result = BuiltInStrategies(settle_ms=0).attempt(ErrorCategory.ELEMENT_NOT_FOUND, ctx)

    assert result.success
    assert result.strategy == "wait_for_element"


def test_all_strategies_fail():
    browser = FakeBrowser(elements=set())
    ctx = snippet_context(browser, click_step())
    result = BuiltInStrategies(settle_ms=0).attempt(ErrorCategory.ELEMENT_NOT_FOUND, ctx)
    assert not result.success
    assert result.applicable
    assert result.error
    assert ctx.retry_count == 2


def test_max_strategies_ceiling():
    browser = FakeBrowser(elements=set())
    ctx = snippet_context(browser, click_step())
    result = BuiltInStrategies(max_strategies=1, settle_ms=0).attempt(ErrorCategory.ELEMENT_NOT_FOUND, ctx)
    assert result.attempted == ("wait_for_element",)


def test_not_applicable_without_recipes():
    browser = FakeBrowser()
    ctx = snippet_context(browser, click_step())
    assert BuiltInStrategies().attempt(ErrorCategory.PERMISSION_DENIED, ctx) is NOT_APPLICABLE


def test_force_click_only_for_clicks():
    browser = FakeBrowser(elements={"#submit-btn"})
    step = click_step()
    browser.fail("wait_for_load_state", None, InteractionBlockedError("still covered"))
    browser.fail("scroll_into_view", "#submit-btn", InteractionBlockedError("still covered"))
    ctx = snippet_context(browser, step)

    result = BuiltInStrategies(settle_ms=0).attempt(ErrorCategory.INTERACTION_BLOCKED, ctx)
    assert result.success
    assert result.strategy == "force_click"
    assert ("force_click", "#submit-btn") in browser.calls

    ctx = snippet_context(browser, step)
    ctx.action = "fill"
    assert not BuiltInStrategies().is_applicable("force_click", ctx)


def test_clear_and_retry_needs_value():
    browser = FakeBrowser(elements={"#email"})
    step = click_step(selector="#email", instruction="Fill the Email field")
    assert not BuiltInStrategies().is_applicable("clear_and_retry", snippet_context(browser, step))
    step = click_step(selector="#email", instruction="Fill the Email field", value="a@b.c")
    assert BuiltInStrategies().is_applicable("clear_and_retry", snippet_context(browser, step))
