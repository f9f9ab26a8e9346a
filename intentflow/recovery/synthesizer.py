"""AI Solution Synthesizer - escalation decision and structured solution requests.

The synthesizer decides whether a failure is worth a reasoning-engine call
and, if so, asks for a JSON solution. The reply is validated strictly; it
is never trusted partially and never run here (the sandbox runs it).
"""
import json
from dataclasses import dataclass, field
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from intentflow.errors import AutomationError, SolutionParseError
from intentflow.executor.reasoning import ReasoningEngine
from intentflow.models.solution import ErrorAnalysis, ErrorCategory, RiskLevel, Solution
from intentflow.recovery.context import RecoveryContext
from intentflow.recovery.solution_library import fingerprint_for
from intentflow.utils.config import config
from intentflow.utils.llm_client import strip_code_fences
from intentflow.utils.logger import setup_logger
from intentflow.utils.rate_limiter import RateLimiterManager, rate_limiters


# Base complexity per category (0-10)
CATEGORY_COMPLEXITY = {
    ErrorCategory.TIMEOUT: 3,
    ErrorCategory.ELEMENT_NOT_FOUND: 4,
    ErrorCategory.NAVIGATION_FAILED: 5,
    ErrorCategory.NETWORK_ERROR: 4,
    ErrorCategory.INTERACTION_BLOCKED: 6,
    ErrorCategory.VALIDATION_ERROR: 5,
    ErrorCategory.PERMISSION_DENIED: 8,
    ErrorCategory.PAGE_LOAD_ERROR: 4,
    ErrorCategory.STALE_ELEMENT: 6,
    ErrorCategory.JAVASCRIPT_ERROR: 7,
    ErrorCategory.UNKNOWN: 9,
}

CRITICAL_STEP_KEYWORDS = ("login", "auth", "payment", "submit", "confirm")

FACTOR_WEIGHTS = {
    "complexity": 0.3,
    "failures": 0.25,
    "known_issue": 0.15,
    "repeat_failure": 0.1,
    "time": 0.1,
    "critical": 0.1,
}


@dataclass(frozen=True)
class EscalationDecision:
    """Whether to ask the reasoning engine for a solution, and why."""
    escalate: bool
    reasoning: str
    confidence: float
    score: float = 0.0
    factors: Dict[str, float] = field(default_factory=dict)


class SynthesizedSolution(BaseModel):
    """Expected shape of the reasoning engine's JSON reply."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    strategy: str = Field(min_length=1)
    code: str = Field(min_length=1)
    explanation: str
    confidence: float = Field(ge=0.0, le=1.0)
    risk_level: RiskLevel = Field(alias="riskLevel")
    estimated_success_rate: Optional[float] = Field(default=None, ge=0.0, le=1.0, alias="estimatedSuccessRate")
    reasoning: str = ""


def parse_solution_response(text: Optional[str]) -> SynthesizedSolution:
    """
    Validate a raw reply.

    Raises:
        SolutionParseError: Empty, non-JSON, or schema-violating reply
    """
    if not text or not text.strip():
        raise SolutionParseError("Reasoning engine returned an empty solution")
    try:
        return SynthesizedSolution.model_validate_json(strip_code_fences(text), strict=True)
    except ValidationError as e:
        raise SolutionParseError(f"Malformed solution: {e.error_count()} validation error(s): {e}") from e


SOLUTION_PROMPT = """A browser automation step failed. Propose a fix.

ERROR DETAILS:
- Message: {message}
- Category: {category}
- Step: {step}
- Retry Count: {retry_count}
- Selector: {selector}
- Value: {value}

BROWSER STATE:
- URL: {url}
- Title: {title}

CONTEXT:
- Step instruction: {instruction}
- Path: {path}
- Strategies already attempted: {attempted}

REQUIREMENTS:
1. Provide Playwright statements that resolve this error and complete the step
2. Use only these calls with literal arguments: page.goto, page.click, page.fill,
   page.selectOption, page.waitForSelector, page.hover, page.keyboard.press,
   page.reload, page.waitForLoadState, page.waitForTimeout,
   page.getByRole/getByText/getByLabel/getByPlaceholder/getByTestId(...).click/fill/...
3. Never use page.evaluate, imports, cookies, storage or network requests
4. Include confidence (0-1) and an estimated success rate (0-1)
5. Assess risk level: low, medium, or high

Response must be valid JSON with this structure:
{{
  "strategy": "brief_strategy_name",
  "code": "await page.click('selector');",
  "explanation": "What the fix does",
  "confidence": 0.85,
  "estimatedSuccessRate": 0.9,
  "riskLevel": "low",
  "reasoning": "Why this should work"
}}"""


class AISolutionSynthesizer:
    """
    Escalation policy plus solution synthesis via the reasoning engine.

    Usage:
        synthesizer = AISolutionSynthesizer(engine)
        decision = synthesizer.should_escalate(analysis, ctx)
        if decision.escalate:
            solution = synthesizer.synthesize(analysis, ctx)
    """

    def __init__(
        self,
        engine: ReasoningEngine,
        limiters: Optional[RateLimiterManager] = None,
        requests_per_minute: Optional[int] = None,
        threshold: Optional[float] = None,
        retry_ceiling: Optional[int] = None
    ):
        self.engine = engine
        self.limiters = limiters or rate_limiters
        self.requests_per_minute = requests_per_minute or config.ai_requests_per_minute
        self.threshold = config.escalation_threshold if threshold is None else threshold
        self.retry_ceiling = retry_ceiling or config.retry_ceiling
        self.logger = setup_logger("AISolutionSynthesizer")

    # ----- escalation ------------------------------------------------------

    def complexity(self, analysis: ErrorAnalysis, ctx: RecoveryContext) -> int:
        score = CATEGORY_COMPLEXITY.get(analysis.category, 5)
        if ctx.retry_count > 2:
            score += 2
        if not ctx.target_locator:
            score += 1
        if "timeout" in analysis.message.lower():
            score += 1
        return min(score, 10)

    def should_escalate(self, analysis: ErrorAnalysis, ctx: RecoveryContext) -> EscalationDecision:
        """Weighted escalation score; escalate above the threshold or at the retry ceiling."""
        remaining = ctx.control.remaining_ms()
        step_name = ctx.step.name.lower()

        factors = {
            "complexity": min(self.complexity(analysis, ctx) / 10, 1.0),
            "failures": min(ctx.retry_count / self.retry_ceiling, 1.0),
            "known_issue": 0.2 if analysis.is_known_issue else 0.8,
            "repeat_failure": 1.0 if ctx.repeated_in_session else 0.3,
            "time": 1.0 if remaining is None or remaining > config.llm_timeout * 1000 else 0.3,
            "critical": 0.9 if any(k in step_name for k in CRITICAL_STEP_KEYWORDS) else 0.5,
        }
        score = sum(factors[name] * weight for name, weight in FACTOR_WEIGHTS.items())
        at_ceiling = ctx.retry_count >= self.retry_ceiling
        escalate = score > self.threshold or at_ceiling

        reasons = [f"score {score:.2f} vs threshold {self.threshold:.2f}"]
        if at_ceiling:
            reasons.append(f"retry ceiling {self.retry_ceiling} reached")
        if analysis.is_known_issue:
            reasons.append("known issue")
        if ctx.repeated_in_session:
            reasons.append("repeat failure in session")
        if factors["time"] < 1.0:
            reasons.append("little time left")

        return EscalationDecision(
            escalate=escalate,
            reasoning="; ".join(reasons),
            confidence=round(abs(score - 0.5) * 2, 3),
            score=round(score, 3),
            factors=factors,
        )

    # ----- synthesis -------------------------------------------------------

    def build_prompt(self, analysis: ErrorAnalysis, ctx: RecoveryContext, page: Dict[str, str]) -> str:
        return SOLUTION_PROMPT.format(
            message=analysis.message,
            category=analysis.category.value,
            step=ctx.step.name,
            retry_count=ctx.retry_count,
            selector=ctx.target_locator or "N/A",
            value=ctx.value or "N/A",
            url=page.get("url") or ctx.url or "Unknown",
            title=page.get("pageTitle") or "Unknown",
            instruction=ctx.step.ai_instruction or "N/A",
            path=ctx.path.value,
            attempted=json.dumps(list(ctx.attempted)),
        )

    def synthesize(self, analysis: ErrorAnalysis, ctx: RecoveryContext) -> Solution:
        """
        Ask the reasoning engine for a solution. The result is not validated for execution.

        Raises:
            RateLimitExceeded: Session AI budget spent
            SolutionParseError: Malformed reply
            AutomationError: The engine failed or timed out
        """
        self.limiters.for_session(
            "ai", ctx.session_id, calls_per_minute=self.requests_per_minute
        ).require()

        ctx.control.checkpoint()
        try:
            page = ctx.browser.page_context()
        except AutomationError as e:
            self.logger.debug(f"Page context unavailable for synthesis: {e}")
            page = {}

        prompt = self.build_prompt(analysis, ctx, page)
        self.logger.info(f"🤖 Requesting AI solution for {analysis.category.value} in '{ctx.step.name}'")
        ctx.control.checkpoint()
        response = self.engine.reason(prompt, page)
        ctx.control.checkpoint()

        parsed = parse_solution_response(response)
        solution = Solution(
            fingerprint=fingerprint_for(analysis.category, ctx.target_locator, page.get("url") or ctx.url),
            strategy=parsed.strategy,
            code=parsed.code,
            confidence=parsed.confidence,
            estimated_success_rate=(
                parsed.estimated_success_rate if parsed.estimated_success_rate is not None else parsed.confidence
            ),
            risk_level=parsed.risk_level,
            explanation=parsed.explanation,
            source="ai",
        )
        self.logger.info(
            f"  AI proposed '{solution.strategy}' (confidence {solution.confidence:.2f}, risk {solution.risk_level})"
        )
        return solution
