"""OpenAI chat client used by the reasoning engine."""
import re
from typing import Optional

import openai
from openai import OpenAI

from intentflow.errors import ReasoningTimeoutError
from intentflow.utils.logger import setup_logger
from intentflow.utils.config import config


# ```json / ```javascript / ```ts / bare ``` fences around a whole reply
_FENCE_RE = re.compile(r"^```(?:[\w+-]*\n)?(.*?)\n?```$", re.DOTALL)


class LLMClient:
    """Wrapper for OpenAI chat completions with timeout and error handling."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None
    ):
        self.api_key = api_key or config.openai_api_key
        self.model = model or config.llm_model
        self.timeout = timeout or config.llm_timeout
        self.logger = setup_logger("LLMClient")

        if not self.api_key:
            self.logger.warning("No OpenAI API key found. AI path and synthesis will be disabled.")
            self.client = None
        else:
            self.client = OpenAI(api_key=self.api_key, timeout=self.timeout, max_retries=1)
            self.logger.info(f"OpenAI client initialized (model: {self.model})")

    @property
    def is_available(self) -> bool:
        return self.client is not None

    def complete(self, prompt: str, system_prompt: Optional[str] = None) -> Optional[str]:
        """
        Single-turn completion.

        Returns:
            Response text, or None if the client is unavailable or the API failed

        Raises:
            ReasoningTimeoutError: No response within the configured timeout
        """
        if not self.client:
            return None

        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=config.llm_temperature,
                max_tokens=config.llm_max_tokens,
            )
        except openai.APITimeoutError as e:
            self.logger.error(f"LLM completion timed out after {self.timeout}s")
            raise ReasoningTimeoutError(f"Reasoning engine did not respond within {self.timeout}s") from e
        except openai.OpenAIError as e:
            self.logger.error(f"LLM completion failed: {e}")
            return None

        content = response.choices[0].message.content
        self.logger.debug(f"LLM replied with {len(content or '')} chars")
        return content


def strip_code_fences(text: str) -> str:
    """Remove a markdown code fence around a model response, if present."""
    cleaned = text.strip()
    match = _FENCE_RE.match(cleaned)
    if match:
        cleaned = match.group(1)
    return cleaned.strip()


# Global LLM client instance
llm_client = LLMClient()
