"""
LLM Backend — Chat-completion client the agent runner talks to.

The runner only depends on the ``ModelBackend`` protocol; the default
implementation uses the OpenAI SDK against any OpenAI-compatible endpoint
(llama.cpp, vLLM, Ollama, …) selected by model discovery.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import httpx
from openai import APIConnectionError, AsyncOpenAI, RateLimitError

from idlehands.services.model_discovery import endpoint_base

logger = logging.getLogger(__name__)

MAX_RETRIES = 3


@dataclass
class ToolCall:
    """One tool invocation requested by the model."""
    id: str
    name: str
    args: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "args": self.args}


@dataclass
class ModelReply:
    """One assistant message: text and/or tool calls."""
    text: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    usage: Dict[str, int] = field(default_factory=dict)


class ModelBackend(Protocol):
    async def complete(
        self,
        messages: List[Dict[str, Any]],
        tools: List[Dict[str, Any]],
        model: str,
    ) -> ModelReply:
        ...


def _parse_arguments(raw: Optional[str]) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {"raw": raw}
    return parsed if isinstance(parsed, dict) else {"value": parsed}


class OpenAIChatBackend:
    """
    OpenAI-compatible chat completions with tool calling.

    Retries rate limits and connection errors with exponential backoff.
    """

    def __init__(
        self,
        endpoint: str,
        api_key: Optional[str] = None,
        *,
        max_tokens: int = 4096,
        temperature: float = 0.7,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.endpoint = endpoint
        self.max_tokens = max_tokens
        self.temperature = temperature
        # Local servers accept any key, the SDK refuses an empty one
        self.client = AsyncOpenAI(
            base_url=endpoint_base(endpoint),
            api_key=api_key or "not-needed",
            http_client=http_client,
        )

    async def complete(
        self,
        messages: List[Dict[str, Any]],
        tools: List[Dict[str, Any]],
        model: str,
    ) -> ModelReply:
        kwargs: Dict[str, Any] = dict(
            model=model,
            messages=messages,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        )
        if tools:
            kwargs["tools"] = tools

        for attempt in range(MAX_RETRIES):
            try:
                response = await self.client.chat.completions.create(**kwargs)
                break
            except (RateLimitError, APIConnectionError) as exc:
                if attempt >= MAX_RETRIES - 1:
                    raise
                wait = 2 ** attempt
                logger.warning("[AGENT] %s from %s, retrying in %ss", type(exc).__name__, self.endpoint, wait)
                await asyncio.sleep(wait)

        if not response.choices:
            return ModelReply()

        message = response.choices[0].message
        calls = [
            ToolCall(id=tc.id, name=tc.function.name, args=_parse_arguments(tc.function.arguments))
            for tc in (message.tool_calls or [])
        ]
        usage = {}
        if response.usage:
            usage = {
                "input_tokens": response.usage.prompt_tokens or 0,
                "output_tokens": response.usage.completion_tokens or 0,
            }
        return ModelReply(text=message.content or "", tool_calls=calls, usage=usage)
