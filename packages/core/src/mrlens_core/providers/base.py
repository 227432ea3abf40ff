"""Base assistant implementing the Template Method pattern.

All providers share the same invocation algorithm:
    invoke() → _build_system_prompt()
             → _call_with_retry() → _call_api()   ← only this differs per provider

Subclasses implement two things only:
  - __init__: validate and store the SDK client (or locate the CLI binary)
  - _call_api: run one complete exchange with access to the checkout and
    return the final text response

Parsing the answer is not the provider's job: the pipeline hands the raw text
to mrlens_core.parsing so every provider degrades the same way on bad output.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod

logger = logging.getLogger(__name__)

# Shared defaults; subclasses may override as class attributes.
_MAX_RETRIES = 3
_MAX_TOKENS = 8192
_MAX_TOOL_ROUNDS = 25


class AssistantError(RuntimeError):
    """The assistant could not produce an answer."""


class BaseAssistant(ABC):
    MAX_RETRIES: int = _MAX_RETRIES
    MAX_TOKENS: int = _MAX_TOKENS

    def __init__(self, guidelines: str = "", max_tool_rounds: int = _MAX_TOOL_ROUNDS):
        self.guidelines = guidelines
        self.max_tool_rounds = max_tool_rounds

    # ------------------------------------------------------------------ #
    # Public interface                                                     #
    # ------------------------------------------------------------------ #

    async def invoke(self, prompt: str, root: str) -> str:
        """Send one review request and return the assistant's raw answer.

        ``root`` is the checkout the assistant may browse. Raises
        AssistantError when every attempt failed.
        """
        system = self._build_system_prompt(self.guidelines)
        return await self._call_with_retry(system, prompt, root)

    # ------------------------------------------------------------------ #
    # Abstract: implement in each provider                                #
    # ------------------------------------------------------------------ #

    @abstractmethod
    async def _call_api(self, system_prompt: str, user_prompt: str, root: str) -> str:
        """Run a single exchange and return the raw text response.

        It should raise on failure; _call_with_retry handles retries and logging.
        """

    # ------------------------------------------------------------------ #
    # Shared implementations                                               #
    # ------------------------------------------------------------------ #

    async def _call_with_retry(self, system_prompt: str, user_prompt: str, root: str) -> str:
        """Retry _call_api up to MAX_RETRIES times with exponential backoff."""
        for attempt in range(self.MAX_RETRIES):
            try:
                return await self._call_api(system_prompt, user_prompt, root)
            except Exception as e:
                if attempt == self.MAX_RETRIES - 1:
                    logger.error(
                        "%s failed after %d attempts: %s",
                        self.__class__.__name__,
                        self.MAX_RETRIES,
                        e,
                    )
                    raise AssistantError(f"{self.__class__.__name__} failed: {e}") from e
                delay = 2**attempt
                logger.warning(
                    "%s error (attempt %d/%d): %s. Retrying in %ds...",
                    self.__class__.__name__,
                    attempt + 1,
                    self.MAX_RETRIES,
                    e,
                    delay,
                )
                await asyncio.sleep(delay)
        raise AssistantError(f"{self.__class__.__name__} was not attempted")

    def _build_system_prompt(self, guidelines: str) -> str:
        """Build the reviewer persona, team guidelines and the output contract."""
        return f"""You are an expert code reviewer performing a review on a GitLab Merge Request.

You will be given the diff of the changes. The full repository source is available
to you: read related files, imports, type definitions, tests and project documentation
before drawing conclusions.

{guidelines}

## Output Format

When you have finished, respond with ONLY valid JSON matching this schema (no preamble):

{{
  "summary": "A 2-4 sentence overall assessment of the MR, including what it does and your confidence level.",
  "comments": [
    {{
      "file": "path/to/file.py",
      "line": <line number in the new file (integer)>,
      "body": "Description of the issue and suggested fix. GitLab-flavored markdown is allowed.",
      "severity": "info | warning | critical"
    }}
  ]
}}

Severity guide:
- critical: security vulnerability, data loss risk, crash
- warning: logic bug, missing error handling, significant performance issue
- info: code quality, naming, minor improvements

If there are no issues, return:
{{"summary": "The changes look good. No significant issues found.", "comments": []}}"""
