import json

import pytest

from intentflow.errors import ElementNotFoundError
from intentflow.executor.control import RunControl
from intentflow.executor.snippet import SnippetExecutor
from intentflow.models.intent_spec import ExecutionPath, IntentStep
from intentflow.models.solution import ErrorCategory, Solution
from intentflow.recovery.context import RecoveryContext
from intentflow.recovery.hybrid import Exhausted, Recovered, RecoveryStage
from intentflow.recovery.solution_library import fingerprint_for
from intentflow.utils.audit_log import AuditLog
from intentflow.utils.config import config

from conftest import SOLUTION_MARKER, FakeBrowser, FakeReasoningEngine


URL = "https://example.com/login"


def submit_step(name="click_button"):
    return IntentStep(
        name=name,
        ai_instruction="Click the Submit button",
        snippet="await page.click('#submit-btn');",
        selector="#submit-btn",
        prefer=ExecutionPath.SNIPPET,
        fallback="ai",
    )


def failing_context(browser, step=None, session_id="exec_hybrid"):
    step = step or submit_step()
    control = RunControl()
    executor = SnippetExecutor()

    def retry(locator=None, timeout_ms=None):
        executor.run(step.snippet, browser, control,
                     replace_locator=("#submit-btn", locator) if locator else None,
                     timeout_ms=timeout_ms)

    error = ElementNotFoundError("No element matches selector #submit-btn",
                                 selector="#submit-btn", url=URL, action="click")
    ctx = RecoveryContext(
        browser=browser, control=control, step=step, path=ExecutionPath.SNIPPET,
        retry=retry, error=error, locator="#submit-btn", action="click",
        url=URL, session_id=session_id,
    )
    return error, ctx


def ai_reply(code="await page.click('#checkout');", confidence=0.85, risk="low"):
    return json.dumps({
        "strategy": "click_checkout",
        "code": code,
        "explanation": "The submit button was renamed",
        "confidence": confidence,
        "riskLevel": risk,
    })


@pytest.fixture
def eager_escalation(monkeypatch):
    monkeypatch.setattr(config, "escalation_threshold", 0.1)


# ---------------------------------------------------------------------------
# Library
# ---------------------------------------------------------------------------

def test_library_hit_recovers_and_records_outcome(make_recovery, library):
    stored = library.store(Solution(
        fingerprint=fingerprint_for(ErrorCategory.ELEMENT_NOT_FOUND, "#submit-btn", URL),
        strategy="click_by_text",
        code="await page.click('text=Submit');",
        confidence=0.9,
    ))
    browser = FakeBrowser(elements={"text=Submit"})
    error, ctx = failing_context(browser)

    outcome = make_recovery().recover(error, ctx)

    assert isinstance(outcome, Recovered)
    assert outcome.source == "library"
    assert outcome.solution_id == stored.id
    assert library.get(stored.id).usage.success_count == 1
    stages = [t.stage for t in outcome.transitions]
    assert stages == [RecoveryStage.CATEGORIZE, RecoveryStage.LIBRARY_LOOKUP, RecoveryStage.LIBRARY_EXECUTION]


def test_failed_library_hit_falls_through_to_builtins(make_recovery, library):
    stored = library.store(Solution(
        fingerprint=fingerprint_for(ErrorCategory.ELEMENT_NOT_FOUND, "#submit-btn", URL),
        strategy="click_stale",
        code="await page.click('#nope');",
        confidence=0.9,
    ))
    browser = FakeBrowser(elements={"text=Submit"})
    error, ctx = failing_context(browser)

    outcome = make_recovery().recover(error, ctx)

    assert isinstance(outcome, Recovered)
    assert outcome.source == "built_in"
    assert library.get(stored.id).usage.failure_count == 1


def test_poor_library_hits_are_skipped(make_recovery, library):
    library.store(Solution(
        fingerprint=fingerprint_for(ErrorCategory.ELEMENT_NOT_FOUND, "#submit-btn", URL),
        strategy="bad",
        code="await page.click('#bad');",
        confidence=0.9,
        estimated_success_rate=0.1,
    ))
    browser = FakeBrowser(elements={"text=Submit"})
    error, ctx = failing_context(browser)

    make_recovery().recover(error, ctx)

    assert ("click", "#bad") not in browser.calls


# ---------------------------------------------------------------------------
# Built-in strategies
# ---------------------------------------------------------------------------

def test_builtin_recovery_is_not_stored(make_recovery, library):
    browser = FakeBrowser(elements={"text=Submit"})
    error, ctx = failing_context(browser)

    outcome = make_recovery().recover(error, ctx)

    assert isinstance(outcome, Recovered)
    assert outcome.source == "built_in"
    assert outcome.strategy == "alternative_locator"
    assert outcome.locator == "text=Submit"
    assert library.get_statistics()["total_solutions"] == 0


def test_no_synthesizer_means_exhausted(make_recovery):
    error, ctx = failing_context(FakeBrowser())
    outcome = make_recovery().recover(error, ctx)
    assert isinstance(outcome, Exhausted)
    assert outcome.attempted == ("wait_for_element", "alternative_locator")
    assert outcome.analysis.category is ErrorCategory.ELEMENT_NOT_FOUND


def test_below_threshold_does_not_call_engine(make_recovery):
    engine = FakeReasoningEngine().when(SOLUTION_MARKER, ai_reply())
    error, ctx = failing_context(FakeBrowser(elements={"#checkout"}))

    outcome = make_recovery(engine).recover(error, ctx)

    assert isinstance(outcome, Exhausted)
    assert engine.prompts == []
    assert RecoveryStage.ESCALATION_DECISION in [t.stage for t in outcome.transitions]


# ---------------------------------------------------------------------------
# AI synthesis
# ---------------------------------------------------------------------------

def test_ai_solution_runs_and_is_learned(make_recovery, library, eager_escalation):
    engine = FakeReasoningEngine().when(SOLUTION_MARKER, ai_reply())
    browser = FakeBrowser(elements={"#checkout"})
    error, ctx = failing_context(browser)

    outcome = make_recovery(engine).recover(error, ctx)

    assert isinstance(outcome, Recovered)
    assert outcome.source == "ai"
    assert ("click", "#checkout") in browser.calls
    learned = library.get(outcome.solution_id)
    assert learned.usage.success_count == 1
    assert learned.fingerprint.selector_signature == "#submit-btn"

    # The next identical failure is served from the library
    error, ctx = failing_context(browser, session_id="exec_other")
    again = make_recovery(engine).recover(error, ctx)
    assert again.source == "library"
    assert len(engine.prompts) == 1


@pytest.mark.parametrize("reply, reason", [
    (ai_reply(confidence=0.3), "confidence"),
    (ai_reply(risk="high"), "high-risk"),
])
def test_gated_ai_solutions_are_stored_but_not_run(make_recovery, library, eager_escalation, reply, reason):
    engine = FakeReasoningEngine().when(SOLUTION_MARKER, reply)
    browser = FakeBrowser(elements={"#checkout"})
    error, ctx = failing_context(browser)

    outcome = make_recovery(engine).recover(error, ctx)

    assert isinstance(outcome, Exhausted)
    assert reason in outcome.last_error
    assert ("click", "#checkout") not in browser.calls
    assert library.get_statistics()["total_solutions"] == 1


def test_high_risk_allowed_by_config(make_recovery, eager_escalation, monkeypatch):
    monkeypatch.setattr(config, "allow_high_risk_solutions", True)
    engine = FakeReasoningEngine().when(SOLUTION_MARKER, ai_reply(risk="high"))
    error, ctx = failing_context(FakeBrowser(elements={"#checkout"}))
    assert isinstance(make_recovery(engine).recover(error, ctx), Recovered)


def test_malformed_ai_reply_is_exhausted(make_recovery, library, eager_escalation):
    engine = FakeReasoningEngine(default="just click it")
    error, ctx = failing_context(FakeBrowser())

    outcome = make_recovery(engine).recover(error, ctx)

    assert isinstance(outcome, Exhausted)
    assert "Malformed" in outcome.last_error
    assert library.get_statistics()["total_solutions"] == 0


def test_unsafe_ai_code_is_recorded_as_failure(make_recovery, library, eager_escalation, audit):
    engine = FakeReasoningEngine().when(
        SOLUTION_MARKER, ai_reply(code="await page.evaluate(() => document.cookie);")
    )
    error, ctx = failing_context(FakeBrowser())

    outcome = make_recovery(engine).recover(error, ctx)

    assert isinstance(outcome, Exhausted)
    assert library.get_statistics()["total_failures"] == 1
    records = AuditLog.load_log(audit.log_dir / AuditLog.SANDBOX_LOG)
    assert records[-1]["outcome"] == "rejected"


def test_non_numeric_wait_in_ai_code_is_rejected(make_recovery, library, eager_escalation, audit):
    engine = FakeReasoningEngine().when(
        SOLUTION_MARKER, ai_reply(code="await page.waitForTimeout('soon'); await page.click('#checkout');")
    )
    browser = FakeBrowser(elements={"#checkout"})
    error, ctx = failing_context(browser)

    outcome = make_recovery(engine).recover(error, ctx)

    assert isinstance(outcome, Exhausted)
    assert not browser.actions("wait_for_timeout")
    records = AuditLog.load_log(audit.log_dir / AuditLog.SANDBOX_LOG)
    assert records[-1]["outcome"] == "rejected"


def test_engine_crash_during_synthesis_is_exhausted(make_recovery, eager_escalation):
    engine = FakeReasoningEngine().when(SOLUTION_MARKER, RuntimeError("connection reset by proxy"))
    error, ctx = failing_context(FakeBrowser())

    outcome = make_recovery(engine).recover(error, ctx)

    assert isinstance(outcome, Exhausted)
    assert "RuntimeError: connection reset by proxy" in outcome.last_error


# ---------------------------------------------------------------------------
# Session state
# ---------------------------------------------------------------------------

def test_repeat_failures_are_detected_per_session(make_recovery):
    recovery = make_recovery()
    browser = FakeBrowser()

    error, first = failing_context(browser)
    recovery.recover(error, first)
    error, second = failing_context(browser)
    recovery.recover(error, second)
    error, other = failing_context(browser, session_id="exec_elsewhere")
    recovery.recover(error, other)

    assert not first.repeated_in_session
    assert second.repeated_in_session
    assert not other.repeated_in_session

    recovery.end_session("exec_hybrid")
    error, fresh = failing_context(browser)
    recovery.recover(error, fresh)
    assert not fresh.repeated_in_session


def test_statistics(make_recovery):
    recovery = make_recovery()
    error, ctx = failing_context(FakeBrowser(elements={"text=Submit"}))
    recovery.recover(error, ctx)
    stats = recovery.get_statistics()
    assert stats["recovery_attempts"] == 1
    assert stats["successes_by_source"] == {"built_in": 1}
    assert stats["failures_by_category"] == {"element_not_found": 1}
