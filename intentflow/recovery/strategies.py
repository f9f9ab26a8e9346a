"""Built-in recovery strategies.

Each category has an ordered list of recipes (wait, scroll, reload, an
alternative locator, ...). A recipe performs its fix and then retries the
failed step through the context's `retry` callable; the first recipe whose
retry succeeds wins. Outcomes feed per-(strategy, category) effectiveness
statistics, which reorder the recipes once data exists.
"""
import json
import re
import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Deque, Dict, List, Optional, Tuple

from intentflow.errors import AutomationError, ElementNotFoundError, StepTimeoutError
from intentflow.models.intent_spec import IntentStep
from intentflow.models.solution import ErrorCategory
from intentflow.recovery.categorizer import CATEGORY_STRATEGIES
from intentflow.recovery.context import RecoveryContext
from intentflow.utils.config import config
from intentflow.utils.logger import setup_logger


# Prior success estimates, used for ordering until statistics exist
ESTIMATED_SUCCESS = {
    "extend_wait_and_retry": 0.7,
    "wait_for_element": 0.8,
    "alternative_locator": 0.85,
    "wait_for_overlay_clearance": 0.6,
    "scroll_into_view": 0.8,
    "force_click": 0.7,
    "wait_for_network": 0.7,
    "retry_with_backoff": 0.5,
    "reload_and_retry": 0.6,
    "wait_for_stable": 0.8,
    "clear_and_retry": 0.8,
}

PROBE_TIMEOUT_MS = 2000
RECENT_ERRORS_LIMIT = 1000
WEEK_SECONDS = 7 * 24 * 3600


@dataclass(frozen=True)
class RecoveryAttemptResult:
    """Outcome of running the built-in strategies for one failure."""
    success: bool
    strategy: Optional[str] = None
    attempted: Tuple[str, ...] = ()
    duration_ms: int = 0
    error: Optional[str] = None
    locator: Optional[str] = None
    applicable: bool = True


NOT_APPLICABLE = RecoveryAttemptResult(success=False, applicable=False)


# =============================================================================
# ALTERNATIVE LOCATORS
# =============================================================================

_ACTION_PREFIX = re.compile(r"^(click|select|fill|type|enter|tap|press)\s+(on\s+|the\s+)?", re.IGNORECASE)
_ELEMENT_SUFFIX = re.compile(r"\s+(button|field|link|tab|section|element|option)$", re.IGNORECASE)


def extract_target(instruction: str) -> str:
    """Pull the element's visible name out of an instruction like 'Click the "Sign in" button'."""
    cleaned = _ACTION_PREFIX.sub("", (instruction or "").strip())
    quoted = re.search(r"[\"']([^\"']+)[\"']", cleaned)
    if quoted:
        return quoted.group(1)
    return _ELEMENT_SUFFIX.sub("", cleaned).strip()


def infer_role(instruction: str) -> str:
    """ARIA role implied by the instruction wording; later keywords take precedence."""
    lower = (instruction or "").lower()
    role = "button"
    for keywords, candidate in (
        (("link",), "link"),
        (("input", "field"), "textbox"),
        (("dropdown", "select"), "combobox"),
        (("checkbox",), "checkbox"),
        (("radio",), "radio"),
        (("tab",), "tab"),
        (("menu",), "menu"),
    ):
        if any(k in lower for k in keywords):
            role = candidate
    return role


def alternative_locators(step: IntentStep, failed_locator: Optional[str] = None) -> List[str]:
    """
    Candidate locators for the step's target, in order:
    visible text (exact, then partial), role + name, then structural paths.
    """
    target = extract_target(step.ai_instruction)
    if not target:
        return []

    quoted = json.dumps(target)
    candidates = [
        f"text={quoted}",
        f"text={target}",
        f"role={infer_role(step.ai_instruction)}[name={quoted}]",
        f"[aria-label={quoted}]",
        f"[title={quoted}]",
        f"[placeholder={quoted}]",
    ]
    if "'" not in target:
        candidates.append(f"xpath=//*[contains(text(), '{target}')]")

    seen = {failed_locator}
    ordered = []
    for candidate in candidates:
        if candidate not in seen:
            seen.add(candidate)
            ordered.append(candidate)
    return ordered


# =============================================================================
# STATISTICS
# =============================================================================

@dataclass
class StrategyStats:
    """Running effectiveness numbers for one (strategy, category) pair."""
    strategy: str
    category: ErrorCategory
    total_attempts: int = 0
    success_count: int = 0
    average_duration_ms: float = 0.0
    last_used: Optional[datetime] = None
    effectiveness: float = 0.0

    @property
    def success_rate(self) -> float:
        return self.success_count / self.total_attempts if self.total_attempts else 0.0


def effectiveness_score(stats: StrategyStats, now: Optional[datetime] = None) -> float:
    """0.7 success + 0.2 speed (10s scale) + 0.1 recency (one-week decay)."""
    now = now or datetime.now(timezone.utc)
    speed = max(0.0, 1.0 - stats.average_duration_ms / 10000)
    age = (now - stats.last_used).total_seconds() if stats.last_used else WEEK_SECONDS
    recency = max(0.0, 1.0 - age / WEEK_SECONDS)
    return stats.success_rate * 0.7 + speed * 0.2 + recency * 0.1


@dataclass
class RecentError:
    timestamp: str
    message: str
    category: str
    recovery: str
    success: bool


class RecoveryStatistics:
    """Thread-safe per-(strategy, category) statistics plus a bounded error history."""

    def __init__(self, history_limit: int = RECENT_ERRORS_LIMIT):
        self._lock = threading.Lock()
        self._stats: Dict[Tuple[str, ErrorCategory], StrategyStats] = {}
        self._recent: Deque[RecentError] = deque(maxlen=history_limit)

    def record(self, strategy: str, category: ErrorCategory, success: bool,
               duration_ms: float, message: str = ""):
        now = datetime.now(timezone.utc)
        with self._lock:
            stats = self._stats.get((strategy, category))
            if stats is None:
                stats = StrategyStats(
                    strategy=strategy,
                    category=category,
                    total_attempts=1,
                    success_count=1 if success else 0,
                    average_duration_ms=float(duration_ms),
                    last_used=now,
                    effectiveness=0.5 if success else 0.1,
                )
                self._stats[(strategy, category)] = stats
            else:
                stats.total_attempts += 1
                if success:
                    stats.success_count += 1
                stats.average_duration_ms += (duration_ms - stats.average_duration_ms) / stats.total_attempts
                stats.last_used = now
                stats.effectiveness = effectiveness_score(stats, now)

            self._recent.append(RecentError(
                timestamp=now.isoformat(),
                message=message[:500],
                category=category.value,
                recovery=strategy,
                success=success,
            ))

    def get(self, strategy: str, category: ErrorCategory) -> Optional[StrategyStats]:
        with self._lock:
            return self._stats.get((strategy, category))

    def recent_errors(self) -> List[RecentError]:
        with self._lock:
            return list(self._recent)

    def get_statistics(self) -> Dict:
        with self._lock:
            stats = list(self._stats.values())
            recent = list(self._recent)

        total = sum(s.total_attempts for s in stats)
        successes = sum(s.success_count for s in stats)
        errors_by_category: Dict[str, int] = {}
        for e in recent:
            errors_by_category[e.category] = errors_by_category.get(e.category, 0) + 1

        top = sorted(stats, key=lambda s: s.effectiveness, reverse=True)[:10]
        return {
            "total_recovery_attempts": total,
            "successful_recoveries": successes,
            "overall_success_rate": successes / total if total else 0.0,
            "top_strategies": [
                {
                    "strategy": s.strategy,
                    "category": s.category.value,
                    "success_rate": round(s.success_rate, 3),
                    "effectiveness": round(s.effectiveness, 3),
                    "attempts": s.total_attempts,
                }
                for s in top
            ],
            "errors_by_category": errors_by_category,
        }

    def get_recommendations(self) -> List[str]:
        with self._lock:
            stats = list(self._stats.values())
            recent = list(self._recent)

        recommendations = []
        for s in stats:
            if s.success_rate < 0.3 and s.total_attempts > 5:
                recommendations.append(
                    f"Strategy '{s.strategy}' succeeds only {s.success_rate:.0%} of the time "
                    f"for {s.category.value} errors; consider disabling it for that category"
                )

        timeouts = [e for e in recent if e.category == ErrorCategory.TIMEOUT.value]
        if len(timeouts) > 10:
            rate = sum(1 for e in timeouts if e.success) / len(timeouts)
            if rate < 0.5:
                recommendations.append(
                    "Frequent timeout errors with low recovery rate; consider raising action_timeout_ms"
                )

        not_found = [e for e in recent if e.category == ErrorCategory.ELEMENT_NOT_FOUND.value]
        if len(not_found) > 15:
            recommendations.append(
                "Frequent element-not-found errors; prefer text or role locators in snippets"
            )
        return recommendations


# =============================================================================
# STRATEGIES
# =============================================================================

_NEEDS_LOCATOR = frozenset({"wait_for_element", "scroll_into_view", "force_click", "clear_and_retry"})


class BuiltInStrategies:
    """
    Deterministic recovery recipes.

    Usage:
        strategies = BuiltInStrategies()
        result = strategies.attempt(ErrorCategory.ELEMENT_NOT_FOUND, ctx)
        if result is NOT_APPLICABLE: ...
        elif result.success: ...
    """

    def __init__(
        self,
        stats: Optional[RecoveryStatistics] = None,
        max_strategies: Optional[int] = None,
        settle_ms: int = 500
    ):
        self.stats = stats or RecoveryStatistics()
        self.max_strategies = max_strategies or config.max_builtin_strategies
        self.settle_ms = settle_ms
        self.logger = setup_logger("BuiltInStrategies")

    def strategies_for(self, category: ErrorCategory) -> List[str]:
        """Recipes for a category, reordered by effectiveness once statistics exist."""
        names = list(CATEGORY_STRATEGIES.get(category, []))
        known = {n: self.stats.get(n, category) for n in names}
        if not any(known.values()):
            return names

        def score(name: str) -> float:
            stats = known[name]
            return stats.effectiveness if stats else ESTIMATED_SUCCESS.get(name, 0.5)

        return sorted(names, key=score, reverse=True)

    def is_applicable(self, name: str, ctx: RecoveryContext) -> bool:
        if name in _NEEDS_LOCATOR and not ctx.target_locator:
            return False
        if name == "force_click" and ctx.action not in (None, "click"):
            return False
        if name == "clear_and_retry" and not ctx.value:
            return False
        if name == "alternative_locator" and not alternative_locators(ctx.step, ctx.target_locator):
            return False
        return True

    def attempt(self, category: ErrorCategory, ctx: RecoveryContext) -> RecoveryAttemptResult:
        """
        Run applicable recipes in order, up to the configured ceiling.

        Returns NOT_APPLICABLE when no recipe applies. StepTimeoutError and
        RunCancelled propagate.
        """
        started = time.monotonic()
        attempted: List[str] = []
        last_error: Optional[str] = None

        for name in self.strategies_for(category):
            if len(attempted) >= self.max_strategies:
                break
            if not self.is_applicable(name, ctx):
                continue

            attempted.append(name)
            ctx.attempted.append(name)
            self.logger.info(f"  🔧 Trying {name} for {category.value}")
            t0 = time.monotonic()
            try:
                locator = getattr(self, f"_{name}")(ctx)
            except StepTimeoutError:
                self.stats.record(name, category, False, (time.monotonic() - t0) * 1000, "step timeout")
                raise
            except AutomationError as e:
                duration = (time.monotonic() - t0) * 1000
                last_error = str(e)
                ctx.retry_count += 1
                self.stats.record(name, category, False, duration, last_error)
                self.logger.debug(f"  {name} failed after {duration:.0f}ms: {last_error}")
                continue

            duration = (time.monotonic() - t0) * 1000
            self.stats.record(name, category, True, duration, str(ctx.error or ""))
            self.logger.info(f"  ✓ {name} recovered the step ({duration:.0f}ms)")
            return RecoveryAttemptResult(
                success=True,
                strategy=name,
                attempted=tuple(attempted),
                duration_ms=int((time.monotonic() - started) * 1000),
                locator=locator,
            )

        if not attempted:
            return NOT_APPLICABLE

        return RecoveryAttemptResult(
            success=False,
            attempted=tuple(attempted),
            duration_ms=int((time.monotonic() - started) * 1000),
            error=last_error,
        )

    # ----- recipes ---------------------------------------------------------
    # Each performs its fix, retries the step, and returns the locator used
    # (if it changed). Failure is an AutomationError.

    def _timeout(self, ctx: RecoveryContext, timeout_ms: Optional[int] = None) -> int:
        return ctx.control.bounded_timeout(timeout_ms or config.action_timeout_ms)

    def _extend_wait_and_retry(self, ctx: RecoveryContext) -> Optional[str]:
        ctx.retry(timeout_ms=self._timeout(ctx, config.action_timeout_ms * 2))
        return None

    def _wait_for_element(self, ctx: RecoveryContext) -> Optional[str]:
        ctx.control.checkpoint()
        ctx.browser.wait_for(ctx.target_locator, timeout_ms=self._timeout(ctx))
        ctx.retry()
        return None

    def _alternative_locator(self, ctx: RecoveryContext) -> Optional[str]:
        for candidate in alternative_locators(ctx.step, ctx.target_locator):
            ctx.control.checkpoint()
            try:
                ctx.browser.wait_for(candidate, timeout_ms=self._timeout(ctx, PROBE_TIMEOUT_MS))
            except StepTimeoutError:
                raise
            except AutomationError:
                continue
            self.logger.debug(f"  Alternative locator matched: {candidate}")
            ctx.retry(locator=candidate)
            return candidate
        raise ElementNotFoundError("No alternative locator matched", selector=ctx.target_locator)

    def _wait_for_overlay_clearance(self, ctx: RecoveryContext) -> Optional[str]:
        ctx.control.checkpoint()
        ctx.browser.wait_for_load_state("networkidle", timeout_ms=self._timeout(ctx))
        ctx.control.sleep(self.settle_ms)
        ctx.retry()
        return None

    def _scroll_into_view(self, ctx: RecoveryContext) -> Optional[str]:
        ctx.control.checkpoint()
        ctx.browser.scroll_into_view(ctx.target_locator, timeout_ms=self._timeout(ctx))
        ctx.control.sleep(self.settle_ms)
        ctx.retry()
        return None

    def _force_click(self, ctx: RecoveryContext) -> Optional[str]:
        ctx.control.checkpoint()
        ctx.browser.force_click(ctx.target_locator, timeout_ms=self._timeout(ctx))
        return None

    def _wait_for_network(self, ctx: RecoveryContext) -> Optional[str]:
        ctx.control.checkpoint()
        ctx.browser.wait_for_load_state("networkidle", timeout_ms=self._timeout(ctx))
        ctx.retry()
        return None

    def _retry_with_backoff(self, ctx: RecoveryContext) -> Optional[str]:
        delay = min(config.backoff_base_ms * (2 ** ctx.retry_count), config.backoff_max_ms)
        ctx.control.sleep(delay)
        ctx.retry()
        return None

    def _reload_and_retry(self, ctx: RecoveryContext) -> Optional[str]:
        ctx.control.checkpoint()
        ctx.browser.reload()
        ctx.browser.wait_for_load_state("domcontentloaded", timeout_ms=self._timeout(ctx))
        ctx.retry()
        return None

    def _wait_for_stable(self, ctx: RecoveryContext) -> Optional[str]:
        ctx.control.checkpoint()
        ctx.browser.wait_for_load_state("load", timeout_ms=self._timeout(ctx))
        ctx.control.sleep(self.settle_ms * 2)
        ctx.retry()
        return None

    def _clear_and_retry(self, ctx: RecoveryContext) -> Optional[str]:
        ctx.control.checkpoint()
        ctx.browser.clear(ctx.target_locator, timeout_ms=self._timeout(ctx))
        ctx.retry()
        return None
