from __future__ import annotations

from mrlens_core.providers.base import BaseAssistant
from mrlens_core.utils.workspace import TOOL_SPECS, RepoBrowser


class AnthropicAssistant(BaseAssistant):
    MODEL = "claude-sonnet-4-20250514"
    # Low temperature keeps the final JSON answer stable across tool rounds.
    TEMPERATURE = 0.2

    def __init__(self, api_key: str, **kwargs):
        super().__init__(**kwargs)
        try:
            from anthropic import AsyncAnthropic
        except ImportError:
            raise ImportError(
                "The 'anthropic' package is required for this provider. "
                "Install it with: pip install anthropic"
            )
        self.client = AsyncAnthropic(api_key=api_key)

    async def _call_api(self, system_prompt: str, user_prompt: str, root: str) -> str:
        # Imported lazily like the client so this module loads without the SDK;
        # __init__ already validated it is installed before we reach here.
        from anthropic.types import TextBlock, ToolUseBlock

        browser = RepoBrowser(root)
        messages: list[dict] = [{"role": "user", "content": user_prompt}]

        for _ in range(self.max_tool_rounds):
            response = await self.client.messages.create(
                model=self.MODEL,
                system=system_prompt,
                messages=messages,
                tools=TOOL_SPECS,
                temperature=self.TEMPERATURE,
                max_tokens=self.MAX_TOKENS,
            )
            if response.stop_reason != "tool_use":
                text_blocks = [block.text for block in response.content if isinstance(block, TextBlock)]
                return "".join(text_blocks).strip()

            messages.append({"role": "assistant", "content": response.content})
            results = [
                {
                    "type": "tool_result",
                    "tool_use_id": block.id,
                    "content": browser.dispatch(block.name, block.input),
                }
                for block in response.content
                if isinstance(block, ToolUseBlock)
            ]
            messages.append({"role": "user", "content": results})

        raise RuntimeError(f"no final answer after {self.max_tool_rounds} tool rounds")
