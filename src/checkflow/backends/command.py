from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

from checkflow.backends.base import AgentBackend, ExecutionError, ExecutionProcessError

BackendEventHook = Callable[[dict[str, Any]], None]


class CommandBackend(AgentBackend):
    """Runs an agent CLI that prints JSON lines and collects its text content."""

    PRESETS: dict[str, tuple[str, ...]] = {
        "claude": ("-p", "{prompt}", "--output-format", "stream-json", "--verbose"),
        "codex": ("exec", "--json", "{prompt}"),
    }

    def __init__(
        self,
        name: str,
        *,
        binary: str | None = None,
        args: tuple[str, ...] | None = None,
        working_directory: Path | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        if args is None and name not in self.PRESETS:
            raise ValueError(f"Unsupported backend: {name}")
        self.name = name
        self.binary = binary or name
        self.args = args if args is not None else self.PRESETS[name]
        self.working_directory = working_directory
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def build_command(self, system_prompt: str, user_prompt: str) -> list[str]:
        prompt = f"{system_prompt}\n\n{user_prompt}" if system_prompt else user_prompt
        return [self.binary, *(arg.replace("{prompt}", prompt) for arg in self.args)]

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        # The final summary event repeats text already streamed.
        if event.get("type") == "result":
            return ""
        content = event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            return "".join(
                item["text"]
                for item in content
                if isinstance(item, dict) and isinstance(item.get("text"), str)
            )
        delta = event.get("delta")
        if isinstance(delta, str):
            return delta
        message = event.get("message")
        if isinstance(message, str):
            return message
        if isinstance(message, dict):
            return CommandBackend._extract_content(message)
        item = event.get("item")
        if isinstance(item, dict) and isinstance(item.get("text"), str):
            return item["text"]
        return ""

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    async def execute(self, system_prompt: str, user_prompt: str) -> AsyncIterator[str]:
        command = self.build_command(system_prompt, user_prompt)
        self._emit({"event": "backend_process_start", "backend": self.name})
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise ExecutionProcessError(
                f"Agent binary not found: {self.binary}",
                backend=self.name,
                retriable=False,
            ) from exc

        if process.stdout is None:
            raise ExecutionProcessError(
                f"{self.name} backend did not expose stdout.", backend=self.name, retriable=False
            )

        parse_buffer = ""
        async for raw_line in process.stdout:
            line = raw_line.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            candidate = f"{parse_buffer}{line}" if parse_buffer else line
            try:
                event = json.loads(candidate)
                parse_buffer = ""
            except json.JSONDecodeError:
                if self._appears_partial_json(candidate):
                    parse_buffer = candidate
                    continue
                parse_buffer = ""
                yield line
                continue

            if not isinstance(event, dict):
                continue
            content = self._extract_content(event)
            if content:
                yield content

        if parse_buffer:
            yield parse_buffer

        return_code = await process.wait()
        stderr_output = ""
        if process.stderr is not None:
            stderr_output = (await process.stderr.read()).decode("utf-8", errors="replace").strip()
        self._emit({"event": "backend_process_exit", "backend": self.name, "exit_code": return_code})
        if return_code != 0:
            raise ExecutionError(
                f"{self.name} backend failed with exit code {return_code}: {stderr_output}",
                backend=self.name,
                exit_code=return_code,
                retriable=True,
            )
