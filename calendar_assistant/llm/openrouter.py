"""OpenRouter implementation of LLMProvider."""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from calendar_assistant.config import Settings
from calendar_assistant.errors import ModelServiceError
from calendar_assistant.llm.base import LLMProvider
from calendar_assistant.models import LLMResponse, ToolCallRequest

_LOGGER = logging.getLogger(__name__)


class OpenRouterProvider(LLMProvider):
    """LLM provider using OpenRouter's OpenAI-compatible chat endpoint.

    Failures are surfaced as ModelServiceError; retrying is left to the caller.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    async def generate(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        response_format: dict[str, Any] | None = None,
    ) -> LLMResponse:
        payload: dict[str, Any] = {
            "model": self._settings.openrouter_model,
            "messages": messages,
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"
        if response_format:
            payload["response_format"] = response_format

        timeout = httpx.Timeout(self._settings.request_timeout_seconds)
        try:
            async with httpx.AsyncClient(
                base_url=self._settings.openrouter_base_url,
                timeout=timeout,
            ) as client:
                response = await client.post(
                    "/chat/completions",
                    headers={
                        "Authorization": f"Bearer {self._settings.openrouter_api_key}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
        except httpx.HTTPError as exc:
            raise ModelServiceError(f"Model request failed: {exc}") from exc

        if response.status_code >= 400:
            _LOGGER.error("OpenRouter returned %s: %s", response.status_code, response.text[:500])
            raise ModelServiceError(f"Model service returned HTTP {response.status_code}")

        try:
            data = response.json()
            choice = data["choices"][0]["message"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise ModelServiceError("Model service returned an unreadable response") from exc

        finish_reason = data["choices"][0].get("finish_reason")
        content = choice.get("content") or ""
        _LOGGER.info(
            "LLM response: finish_reason=%r content=%r tool_calls=%r",
            finish_reason,
            content[:200] if content else "",
            choice.get("tool_calls"),
        )

        parsed_tool_calls: list[ToolCallRequest] = []
        for index, tool_call in enumerate(choice.get("tool_calls") or []):
            function_data = tool_call.get("function") or {}
            arguments = function_data.get("arguments")
            if isinstance(arguments, dict):
                # Some upstream models send already-decoded arguments.
                arguments = json.dumps(arguments)
            parsed_tool_calls.append(
                ToolCallRequest(
                    id=tool_call.get("id") or f"call_{index}",
                    name=function_data.get("name", ""),
                    raw_arguments=arguments or "{}",
                )
            )

        return LLMResponse(content=content or None, tool_calls=parsed_tool_calls, raw=data)
