from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from openai import OpenAI, OpenAIError

from taskswarm.backends.base import AgentBackend, BackendExecutionError, visible_context
from taskswarm.backends.codex import CodexBackend

logger = logging.getLogger(__name__)


class CodexSDKBackend(AgentBackend):
    """Direct-execution backend on the OpenAI Responses API.

    Detached workers and missing credentials both route to the Codex CLI.
    """

    name = "codex_sdk"

    def __init__(
        self,
        *,
        model: str = "gpt-5-codex",
        working_directory: Path | None = None,
    ) -> None:
        self.model = model
        self.working_directory = working_directory
        self.cli_fallback = CodexBackend(working_directory=working_directory)
        self._client: Any | None = None
        try:
            self._client = OpenAI()
        except OpenAIError as exc:
            logger.info("OpenAI client unavailable, using codex CLI: %s", exc)
            self._client = None

    def worker_command(self, *, model: str | None = None) -> list[str]:
        return self.cli_fallback.worker_command(model=model or self.model)

    @staticmethod
    def _build_user_input(user_prompt: str, context: dict[str, Any]) -> str:
        parts = [user_prompt]
        if context:
            parts.append("Context JSON:")
            parts.append(json.dumps(context, ensure_ascii=False, indent=2))
        return "\n\n".join(parts)

    @staticmethod
    def _extract_text(payload: Any) -> str:
        if payload is None:
            return ""
        output_text = getattr(payload, "output_text", None)
        if isinstance(output_text, str):
            return output_text
        if isinstance(payload, dict):
            value = payload.get("output_text")
            if isinstance(value, str):
                return value
        return str(output_text or "")

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        if self._client is None:
            async for chunk in self.cli_fallback.execute(system_prompt, user_prompt, context):
                yield chunk
            return

        requested_model = context.get("model")
        model_name = (
            requested_model.strip()
            if isinstance(requested_model, str) and requested_model.strip()
            else self.model
        )
        prompt = self._build_user_input(user_prompt, visible_context(context))
        client = self._client

        def _request() -> Any:
            return client.responses.create(
                model=model_name,
                input=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": prompt},
                ],
            )

        try:
            payload = await asyncio.to_thread(_request)
        except OpenAIError as exc:
            raise BackendExecutionError(
                f"Codex SDK execution failed: {exc}",
                backend="codex_sdk",
                retriable=True,
            ) from exc

        content = self._extract_text(payload).strip()
        if content:
            yield content
