"""Assistant backed by the ``claude`` command-line agent.

The CLI runs with the checkout as its working directory and browses it with
its own read-only tools, so no tool loop is needed here. The prompt goes in
on stdin; ``--output-format json`` wraps the final answer in a ``result`` field.
"""

from __future__ import annotations

import asyncio
import json
import shutil

from mrlens_core.providers.base import BaseAssistant

_READ_ONLY_TOOLS = "Read,Grep,Glob,LS"


class ClaudeCliAssistant(BaseAssistant):
    # The CLI can browse for a while on large MRs.
    TIMEOUT = 900

    def __init__(self, executable: str = "claude", **kwargs):
        super().__init__(**kwargs)
        resolved = shutil.which(executable)
        if resolved is None:
            raise FileNotFoundError(f"'{executable}' not found on PATH; install the CLI or pick another model")
        self.executable = resolved

    def _get_args(self, system_prompt: str) -> list[str]:
        return [
            self.executable,
            "--print",
            "--output-format",
            "json",
            "--append-system-prompt",
            system_prompt,
            "--allowedTools",
            _READ_ONLY_TOOLS,
            "--max-turns",
            str(self.max_tool_rounds),
        ]

    async def _call_api(self, system_prompt: str, user_prompt: str, root: str) -> str:
        proc = await asyncio.create_subprocess_exec(
            *self._get_args(system_prompt),
            cwd=root,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(user_prompt.encode("utf-8")), self.TIMEOUT)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise RuntimeError(f"claude CLI timed out after {self.TIMEOUT}s")

        if proc.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace")[:2000] or "no stderr"
            raise RuntimeError(f"claude CLI exited with {proc.returncode}: {detail}")
        return self._parse_stdout(stdout.decode("utf-8", errors="replace"))

    def _parse_stdout(self, stdout: str) -> str:
        try:
            data = json.loads(stdout)
        except json.JSONDecodeError:
            raise RuntimeError("claude CLI did not print JSON")
        if not isinstance(data, dict) or not isinstance(data.get("result"), str):
            raise RuntimeError("claude CLI output has no string 'result'")
        if data.get("is_error"):
            raise RuntimeError(f"claude CLI reported an error: {data['result'][:500]}")
        return data["result"].strip()
