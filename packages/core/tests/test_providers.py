"""Tests for assistant implementations.

Shared behaviour (_build_system_prompt, _call_with_retry) lives in
BaseAssistant and is tested once via a lightweight stub, not duplicated per
provider. Provider-specific tests cover only what differs between
implementations: the client setup and _call_api.
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from anthropic.types import TextBlock, ToolUseBlock

from mrlens_core.providers.anthropic import AnthropicAssistant
from mrlens_core.providers.base import AssistantError, BaseAssistant
from mrlens_core.providers.claude_cli import ClaudeCliAssistant
from mrlens_core.providers.openai import OpenAIAssistant

VALID_JSON = json.dumps({"summary": "ok", "comments": []})


class _StubAssistant(BaseAssistant):
    """Minimal concrete subclass used to test BaseAssistant shared methods."""

    async def _call_api(self, system_prompt: str, user_prompt: str, root: str) -> str:
        return VALID_JSON


@pytest.fixture
def repo(tmp_path):
    (tmp_path / "app.py").write_text("def main():\n    return 1\n")
    return tmp_path


# ---------------------------------------------------------------------------
# Shared behaviour
# ---------------------------------------------------------------------------


class TestBaseAssistantPrompts:
    def test_system_prompt_contains_guidelines(self):
        prompt = _StubAssistant()._build_system_prompt("## My Guidelines")
        assert "## My Guidelines" in prompt

    def test_system_prompt_describes_output_schema(self):
        prompt = _StubAssistant()._build_system_prompt("")
        assert '"summary"' in prompt
        assert '"comments"' in prompt
        assert "info | warning | critical" in prompt

    def test_invoke_returns_raw_answer(self):
        assert asyncio.run(_StubAssistant().invoke("review this", "/tmp")) == VALID_JSON

    def test_invoke_passes_guidelines_and_root(self):
        seen = {}

        class _Recording(BaseAssistant):
            async def _call_api(self, system_prompt, user_prompt, root):
                seen.update(system=system_prompt, user=user_prompt, root=root)
                return "x"

        asyncio.run(_Recording(guidelines="Be strict").invoke("the prompt", "/work/repo"))
        assert "Be strict" in seen["system"]
        assert seen["user"] == "the prompt"
        assert seen["root"] == "/work/repo"


class TestBaseAssistantRetry:
    def test_raises_after_max_retries(self):
        calls = 0

        class _AlwaysFail(BaseAssistant):
            async def _call_api(self, system_prompt, user_prompt, root):
                nonlocal calls
                calls += 1
                raise RuntimeError("network error")

        with patch("mrlens_core.providers.base.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(AssistantError, match="network error"):
                asyncio.run(_AlwaysFail().invoke("p", "/tmp"))
        assert calls == _AlwaysFail.MAX_RETRIES

    def test_retries_on_transient_failure(self):
        calls = 0

        class _FailOnceThenSucceed(BaseAssistant):
            async def _call_api(self, system_prompt, user_prompt, root):
                nonlocal calls
                calls += 1
                if calls == 1:
                    raise RuntimeError("transient")
                return VALID_JSON

        sleep = AsyncMock()
        with patch("mrlens_core.providers.base.asyncio.sleep", new=sleep):
            result = asyncio.run(_FailOnceThenSucceed().invoke("p", "/tmp"))
        assert result == VALID_JSON
        assert calls == 2
        sleep.assert_awaited_once_with(1)


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------


def _anthropic_response(stop_reason, content):
    response = MagicMock()
    response.stop_reason = stop_reason
    response.content = content
    return response


class TestAnthropicAssistant:
    def test_raises_import_error_without_sdk(self):
        with patch.dict("sys.modules", {"anthropic": None}):
            with pytest.raises(ImportError):
                AnthropicAssistant(api_key="key")

    def test_model_is_claude(self):
        assert "claude" in AnthropicAssistant.MODEL

    def test_returns_text_when_no_tool_use(self, repo):
        assistant = AnthropicAssistant(api_key="key")
        assistant.client = MagicMock()
        assistant.client.messages.create = AsyncMock(
            return_value=_anthropic_response("end_turn", [TextBlock(type="text", text=f"  {VALID_JSON}  ")])
        )
        assert asyncio.run(assistant._call_api("sys", "user", str(repo))) == VALID_JSON

    def test_runs_tool_and_feeds_result_back(self, repo):
        assistant = AnthropicAssistant(api_key="key")
        assistant.client = MagicMock()
        tool_call = ToolUseBlock(type="tool_use", id="tu_1", name="read_file", input={"path": "app.py"})
        assistant.client.messages.create = AsyncMock(
            side_effect=[
                _anthropic_response("tool_use", [tool_call]),
                _anthropic_response("end_turn", [TextBlock(type="text", text=VALID_JSON)]),
            ]
        )
        assert asyncio.run(assistant._call_api("sys", "user", str(repo))) == VALID_JSON

        second_call_messages = assistant.client.messages.create.await_args_list[1].kwargs["messages"]
        tool_result = second_call_messages[-1]["content"][0]
        assert tool_result["tool_use_id"] == "tu_1"
        assert "def main():" in tool_result["content"]

    def test_gives_up_after_max_tool_rounds(self, repo):
        assistant = AnthropicAssistant(api_key="key", max_tool_rounds=2)
        assistant.client = MagicMock()
        tool_call = ToolUseBlock(type="tool_use", id="tu_1", name="list_files", input={})
        assistant.client.messages.create = AsyncMock(return_value=_anthropic_response("tool_use", [tool_call]))
        with pytest.raises(RuntimeError, match="2 tool rounds"):
            asyncio.run(assistant._call_api("sys", "user", str(repo)))
        assert assistant.client.messages.create.await_count == 2


# ---------------------------------------------------------------------------
# OpenAI
# ---------------------------------------------------------------------------


def _openai_response(content=None, tool_calls=None):
    message = MagicMock()
    message.content = content
    message.tool_calls = tool_calls
    response = MagicMock()
    response.choices = [MagicMock(message=message)]
    return response


def _tool_call(call_id, name, arguments):
    call = MagicMock()
    call.id = call_id
    call.function.name = name
    call.function.arguments = arguments
    return call


class TestOpenAIAssistant:
    def test_raises_import_error_without_sdk(self):
        import mrlens_core.providers.openai as openai_mod

        real_openai = openai_mod._AsyncOpenAI
        openai_mod._AsyncOpenAI = None
        try:
            with pytest.raises(ImportError):
                OpenAIAssistant(api_key="key")
        finally:
            openai_mod._AsyncOpenAI = real_openai

    def test_model_is_gpt(self):
        assert "gpt" in OpenAIAssistant.MODEL

    def test_runs_function_call_then_returns_content(self, repo):
        assistant = OpenAIAssistant(api_key="key")
        assistant.client = MagicMock()
        assistant.client.chat.completions.create = AsyncMock(
            side_effect=[
                _openai_response(tool_calls=[_tool_call("call_1", "search_code", '{"pattern": "def main"}')]),
                _openai_response(content=VALID_JSON),
            ]
        )
        assert asyncio.run(assistant._call_api("sys", "user", str(repo))) == VALID_JSON

        messages = assistant.client.chat.completions.create.await_args_list[1].kwargs["messages"]
        assert messages[0] == {"role": "system", "content": "sys"}
        assert messages[-1]["role"] == "tool"
        assert messages[-1]["tool_call_id"] == "call_1"
        assert "app.py:1:" in messages[-1]["content"]

    def test_bad_tool_arguments_reported_to_model(self, repo):
        assistant = OpenAIAssistant(api_key="key")
        assistant.client = MagicMock()
        assistant.client.chat.completions.create = AsyncMock(
            side_effect=[
                _openai_response(tool_calls=[_tool_call("call_1", "read_file", "{not json")]),
                _openai_response(content=VALID_JSON),
            ]
        )
        asyncio.run(assistant._call_api("sys", "user", str(repo)))
        messages = assistant.client.chat.completions.create.await_args_list[1].kwargs["messages"]
        assert messages[-1]["content"].startswith("Error:")


# ---------------------------------------------------------------------------
# claude CLI
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_assistant():
    with patch("mrlens_core.providers.claude_cli.shutil.which", return_value="/usr/bin/claude"):
        yield ClaudeCliAssistant(guidelines="rules", max_tool_rounds=7)


class TestClaudeCliAssistant:
    def test_missing_binary_raises(self):
        with patch("mrlens_core.providers.claude_cli.shutil.which", return_value=None):
            with pytest.raises(FileNotFoundError):
                ClaudeCliAssistant()

    def test_args_restrict_tools_and_turns(self, cli_assistant):
        args = cli_assistant._get_args("SYSTEM")
        assert args[0] == "/usr/bin/claude"
        assert "--print" in args
        assert args[args.index("--output-format") + 1] == "json"
        assert args[args.index("--append-system-prompt") + 1] == "SYSTEM"
        assert args[args.index("--allowedTools") + 1] == "Read,Grep,Glob,LS"
        assert args[args.index("--max-turns") + 1] == "7"

    def test_parse_stdout_returns_result(self, cli_assistant):
        assert cli_assistant._parse_stdout(json.dumps({"result": f" {VALID_JSON}\n"})) == VALID_JSON

    def test_parse_stdout_rejects_non_json(self, cli_assistant):
        with pytest.raises(RuntimeError, match="did not print JSON"):
            cli_assistant._parse_stdout("Error: not logged in")

    def test_parse_stdout_rejects_missing_result(self, cli_assistant):
        with pytest.raises(RuntimeError, match="no string 'result'"):
            cli_assistant._parse_stdout(json.dumps({"type": "result"}))

    def test_parse_stdout_honours_is_error(self, cli_assistant):
        with pytest.raises(RuntimeError, match="reported an error"):
            cli_assistant._parse_stdout(json.dumps({"result": "Credit balance too low", "is_error": True}))

    def test_call_api_runs_in_checkout_with_prompt_on_stdin(self, cli_assistant):
        proc = MagicMock()
        proc.returncode = 0
        proc.communicate = AsyncMock(return_value=(json.dumps({"result": VALID_JSON}).encode(), b""))
        spawn = AsyncMock(return_value=proc)
        with patch("mrlens_core.providers.claude_cli.asyncio.create_subprocess_exec", new=spawn):
            result = asyncio.run(cli_assistant._call_api("SYSTEM", "the prompt", "/work/repo"))
        assert result == VALID_JSON
        assert spawn.await_args.kwargs["cwd"] == "/work/repo"
        proc.communicate.assert_awaited_once_with(b"the prompt")

    def test_call_api_nonzero_exit_raises(self, cli_assistant):
        proc = MagicMock()
        proc.returncode = 2
        proc.communicate = AsyncMock(return_value=(b"", b"boom"))
        with patch("mrlens_core.providers.claude_cli.asyncio.create_subprocess_exec", new=AsyncMock(return_value=proc)):
            with pytest.raises(RuntimeError, match="exited with 2: boom"):
                asyncio.run(cli_assistant._call_api("SYSTEM", "p", "/work/repo"))
