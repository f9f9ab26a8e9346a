"""Semantic (ai) path: a reasoning engine decides actions from live page state."""
from abc import ABC, abstractmethod
import json
from typing import Dict, List, Optional

from intentflow.errors import AutomationError, SnippetParseError
from intentflow.executor.snippet import PrimitiveCall, SnippetParser, run_calls
from intentflow.models.intent_spec import IntentStep
from intentflow.utils.llm_client import LLMClient, llm_client, strip_code_fences
from intentflow.utils.logger import setup_logger


class ReasoningEngine(ABC):
    """
    The reasoning collaborator.

    `reason(instruction, context)` returns an action description or code.
    `context` carries pageTitle, url and domSummary. Implementations raise
    ReasoningTimeoutError when no response arrives in time.
    """

    @abstractmethod
    def reason(self, instruction: str, context: Dict[str, str]) -> str: ...


SYSTEM_PROMPT = """You are the reasoning engine of a browser automation system.
You receive an instruction and the current state of a web page.
Follow the response format the instruction asks for exactly, with no commentary."""


class LLMReasoningEngine(ReasoningEngine):
    """Reasoning engine backed by the OpenAI chat completions API."""

    def __init__(self, client: Optional[LLMClient] = None):
        self.client = client or llm_client
        self.logger = setup_logger("LLMReasoningEngine")

    def reason(self, instruction: str, context: Dict[str, str]) -> str:
        if not self.client.is_available:
            raise AutomationError("Reasoning engine unavailable: OPENAI_API_KEY is not set")

        prompt = (
            f"{instruction}\n\n"
            f"PAGE CONTEXT:\n"
            f"Title: {context.get('pageTitle', '')}\n"
            f"URL: {context.get('url', '')}\n"
            f"DOM summary:\n{context.get('domSummary', '')}"
        )
        response = self.client.complete(prompt=prompt, system_prompt=SYSTEM_PROMPT)
        if not response:
            raise AutomationError("Reasoning engine returned no response")
        return response


ACTION_PROMPT = """Perform this browser task step: {instruction}
{hints}
Respond ONLY with Playwright statements, one per line, using these calls:
  await page.goto(url);
  await page.click(selector);
  await page.fill(selector, value);
  await page.selectOption(selector, value);
  await page.waitForSelector(selector);
  await page.hover(selector);
  await page.keyboard.press(key);
  await page.getByRole(role, {{ name: text }}).click();
  await page.getByText(text).click();
  await page.getByLabel(text).fill(value);
Use only string and number literals. Prefer visible text and roles over brittle CSS."""


class SemanticExecutor:
    """
    Runs a step on the ai path.

    Asks the reasoning engine for Playwright statements given the live page
    context, then runs them through the same allow-listed interpreter as
    snippets.
    """

    def __init__(self, engine: ReasoningEngine, parser: Optional[SnippetParser] = None):
        self.engine = engine
        self.parser = parser or SnippetParser()
        self.logger = setup_logger("SemanticExecutor")

    def build_instruction(self, step: IntentStep, locator: Optional[str] = None) -> str:
        hints = []
        if locator or step.selector:
            hints.append(f"Target element locator (may be stale): {locator or step.selector}")
        if step.value:
            hints.append(f"Value to use: {step.value}")
        return ACTION_PROMPT.format(
            instruction=step.ai_instruction,
            hints="\n".join(hints)
        )

    def run(self, step: IntentStep, browser, control, locator: Optional[str] = None) -> List[PrimitiveCall]:
        """
        Execute one step semantically.

        Raises:
            AutomationError: The engine failed, timed out, or its actions failed
        """
        control.checkpoint()
        context = browser.page_context()

        control.checkpoint()
        response = self.engine.reason(self.build_instruction(step, locator), context)
        control.checkpoint()

        try:
            calls = self.parser.parse(strip_code_fences(response))
        except SnippetParseError as e:
            raise AutomationError(f"Reasoning engine response not executable: {e}") from e

        self.logger.debug(f"Reasoning engine chose {len(calls)} action(s): {json.dumps([c.describe() for c in calls])}")
        run_calls(calls, browser, control.checkpoint, control.bounded_timeout, self.logger)
        return calls
