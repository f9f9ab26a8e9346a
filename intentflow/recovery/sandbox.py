"""Sandboxed execution of candidate recovery code.

Candidate code (stored or freshly synthesized) is never evaluated. It is
parsed into allow-listed page primitives with literal arguments, checked
by the safety guard, and dispatched one call at a time. Every run is
rate limited per session and written to the audit log, whatever happens.
"""
from typing import Callable, List, Optional

from intentflow.errors import (
    AutomationError,
    RateLimitExceeded,
    RunCancelled,
    SandboxViolationError,
    SnippetParseError,
)
from intentflow.executor.snippet import PRIMITIVES, PrimitiveCall, SnippetParser, run_calls
from intentflow.utils.audit_log import AuditLog, audit_log
from intentflow.utils.config import config
from intentflow.utils.logger import setup_logger
from intentflow.utils.rate_limiter import RateLimiterManager, rate_limiters
from intentflow.utils.safety_guard import SafetyGuard, safety_guard


class SolutionSandbox:
    """
    Validates and runs candidate code against a browser.

    Usage:
        sandbox = SolutionSandbox()
        calls = sandbox.validate("await page.click('#submit');")
        sandbox.execute(code, browser, session_id, "hybrid_recovery", control.checkpoint)
    """

    def __init__(
        self,
        parser: Optional[SnippetParser] = None,
        guard: Optional[SafetyGuard] = None,
        audit: Optional[AuditLog] = None,
        limiters: Optional[RateLimiterManager] = None,
        calls_per_minute: Optional[int] = None
    ):
        self.parser = parser or SnippetParser()
        self.guard = guard or safety_guard
        self.audit = audit or audit_log
        self.limiters = limiters or rate_limiters
        self.calls_per_minute = calls_per_minute or config.sandbox_executions_per_minute
        self.logger = setup_logger("SolutionSandbox")

    def validate(self, code: str) -> List[PrimitiveCall]:
        """
        Parse candidate code into primitive calls.

        Raises:
            SandboxViolationError: Dangerous fragment, non-primitive call,
                non-literal argument, or blocked URL / typed value
        """
        check = self.guard.check_code(code)
        if not check.allowed:
            raise SandboxViolationError(check.reason)

        try:
            calls = self.parser.parse(code)
        except SnippetParseError as e:
            raise SandboxViolationError(f"Not a sequence of page primitives: {e}") from e

        for call in calls:
            if call.action not in PRIMITIVES:
                raise SandboxViolationError(f"Primitive not allowed: {call.action}")
            if call.action == "goto":
                url_check = self.guard.check_url(str(call.args[0]))
                if not url_check.allowed:
                    raise SandboxViolationError(url_check.reason)
            if call.action == "fill":
                text_check = self.guard.check_typed_text(str(call.args[1]))
                if not text_check.allowed:
                    raise SandboxViolationError(text_check.reason)
        return calls

    def execute(
        self,
        code: str,
        browser,
        session_id: str,
        actor: str,
        checkpoint: Callable[[], None],
        timeout_ms: Optional[Callable[[int], int]] = None
    ) -> List[PrimitiveCall]:
        """
        Validate and run candidate code.

        Raises:
            RateLimitExceeded: The session's sandbox budget is spent
            SandboxViolationError: The code failed validation
            AutomationError: A primitive failed while running
            RunCancelled: The run stopped at a checkpoint
        """
        limiter = self.limiters.for_session(
            "sandbox", session_id, calls_per_minute=self.calls_per_minute
        )
        if not limiter.try_acquire():
            self.audit.log_sandbox_execution(session_id, actor, code, "rate_limited")
            raise RateLimitExceeded(
                f"Sandbox limit of {self.calls_per_minute}/min reached for session {session_id}"
            )

        try:
            calls = self.validate(code)
        except SandboxViolationError as e:
            self.logger.warning(f"🛑 Rejected candidate code from {actor}: {e}")
            self.audit.log_sandbox_execution(session_id, actor, code, "rejected", str(e))
            raise

        try:
            run_calls(calls, browser, checkpoint, timeout_ms, self.logger)
        except RunCancelled as e:
            self.audit.log_sandbox_execution(session_id, actor, code, "cancelled", e.reason)
            raise
        except AutomationError as e:
            self.audit.log_sandbox_execution(session_id, actor, code, "failed", str(e))
            raise
        except Exception as e:
            detail = f"Unexpected error: {type(e).__name__}: {e}"
            self.logger.exception(f"Candidate code from {actor} crashed")
            self.audit.log_sandbox_execution(session_id, actor, code, "failed", detail)
            raise AutomationError(detail) from e

        self.audit.log_sandbox_execution(session_id, actor, code, "success")
        self.logger.debug(f"Sandbox ran {len(calls)} call(s) for {actor}")
        return calls
