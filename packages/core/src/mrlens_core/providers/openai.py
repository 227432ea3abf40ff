from __future__ import annotations

import json

try:
    from openai import AsyncOpenAI as _AsyncOpenAI
except ImportError:
    _AsyncOpenAI = None  # type: ignore[assignment,misc]

from mrlens_core.providers.base import BaseAssistant
from mrlens_core.utils.workspace import TOOL_SPECS, RepoBrowser

# Chat Completions wants the same tools wrapped as functions.
_FUNCTION_TOOLS = [
    {
        "type": "function",
        "function": {"name": t["name"], "description": t["description"], "parameters": t["input_schema"]},
    }
    for t in TOOL_SPECS
]


class OpenAIAssistant(BaseAssistant):
    MODEL = "gpt-4.1"
    TEMPERATURE = 0.2

    def __init__(self, api_key: str, **kwargs):
        super().__init__(**kwargs)
        if _AsyncOpenAI is None:
            raise ImportError(
                "The 'openai' package is required for this provider. " "Install it with: pip install openai"
            )
        self.client = _AsyncOpenAI(api_key=api_key)

    async def _call_api(self, system_prompt: str, user_prompt: str, root: str) -> str:
        browser = RepoBrowser(root)
        messages: list[dict] = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]

        for _ in range(self.max_tool_rounds):
            response = await self.client.chat.completions.create(
                model=self.MODEL,
                messages=messages,
                tools=_FUNCTION_TOOLS,
                temperature=self.TEMPERATURE,
                max_tokens=self.MAX_TOKENS,
            )
            message = response.choices[0].message
            if not message.tool_calls:
                return (message.content or "").strip()

            messages.append(
                {
                    "role": "assistant",
                    "content": message.content,
                    "tool_calls": [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {"name": call.function.name, "arguments": call.function.arguments},
                        }
                        for call in message.tool_calls
                    ],
                }
            )
            for call in message.tool_calls:
                try:
                    arguments = json.loads(call.function.arguments or "{}")
                except json.JSONDecodeError:
                    result = "Error: tool arguments are not valid JSON"
                else:
                    result = browser.dispatch(call.function.name, arguments)
                messages.append({"role": "tool", "tool_call_id": call.id, "content": result})

        raise RuntimeError(f"no final answer after {self.max_tool_rounds} tool rounds")
