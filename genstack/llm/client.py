"""
OpenAI-Compatible Client
========================

Client for OpenAI-compatible chat completion APIs (OpenAI, LMStudio,
llama.cpp, vLLM and others) with function calling.

``run_with_tools`` drives the multi-step tool loop used by the generation
capabilities: the model is called, any requested tools are executed against
the session sandbox, their results are appended to the conversation, and the
loop continues until the model answers without tool calls or the tool-call
budget is spent.
"""

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from genstack.llm.tools import SandboxTools
from genstack.utils.config import LLMConfig
from genstack.utils.errors import LLMRequestError
from genstack.utils.logging import get_logger

logger = get_logger(__name__)

TextCallback = Callable[[str], Awaitable[None]]
ToolCallCallback = Callable[[str, str, Dict[str, Any]], Awaitable[None]]
ToolResultCallback = Callable[[str, str, str], Awaitable[None]]


@dataclass
class TokenUsage:
    """Token counts reported by the API, summed across requests."""
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def add(self, usage: Optional[Dict[str, Any]]) -> None:
        if not usage:
            return
        self.input_tokens += int(usage.get("prompt_tokens") or 0)
        self.output_tokens += int(usage.get("completion_tokens") or 0)


@dataclass
class LLMResponse:
    content: str
    usage: TokenUsage = field(default_factory=TokenUsage)


@dataclass
class ToolLoopResult:
    """Outcome of a tool-calling loop."""
    content: str
    usage: TokenUsage
    tool_calls: int
    steps: int
    cancelled: bool = False


class LLMClient:
    """
    Client for OpenAI-compatible LLM APIs.

    Works with:
    - OpenAI (https://api.openai.com/v1)
    - LMStudio (http://localhost:1234/v1)
    - llama.cpp server (http://localhost:8080/v1)
    """

    def __init__(self, config: LLMConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Args:
            config: Endpoint, model, credentials and pricing
            transport: Optional httpx transport (tests pass httpx.MockTransport)
        """
        self.config = config
        self.base_url = config.base_url.rstrip("/")
        self.model = config.model
        self._transport = transport

        logger.info(
            "LLM client initialized",
            extra={"base_url": self.base_url, "model": self.model}
        )

    def _headers(self) -> Dict[str, str]:
        return {
            # Many local servers don't require real keys
            "Authorization": f"Bearer {self.config.api_key or 'dummy'}",
            "Content-Type": "application/json",
        }

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    async def _make_request(self, endpoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        POST to the API and return the decoded response.

        Raises:
            LLMRequestError: transport failure or non-2xx response
        """
        url = f"{self.base_url}{endpoint}"
        try:
            async with self._client(self.config.timeout) as client:
                response = await client.post(url, json=payload, headers=self._headers())
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as e:
            raise LLMRequestError(
                f"Model API returned {e.response.status_code}: {e.response.text[:500]}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise LLMRequestError(f"Model API request failed: {e}") from e

    async def chat(
        self,
        messages: List[Dict[str, Any]],
        temperature: float = 0.7,
        max_tokens: int = 4096,
        **kwargs
    ) -> LLMResponse:
        """
        Multi-turn chat completion without tools.

        Args:
            messages: OpenAI-format message dicts
            temperature: Sampling temperature
            max_tokens: Maximum tokens to generate
            **kwargs: Additional parameters

        Returns:
            Generated text and token usage
        """
        payload = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
            **kwargs
        }

        response = await self._make_request("/chat/completions", payload)
        usage = TokenUsage()
        usage.add(response.get("usage"))
        content = response["choices"][0]["message"].get("content") or ""

        logger.info(
            "Chat completion finished",
            extra={"model": self.model, "response_length": len(content), "total_tokens": usage.total_tokens}
        )
        return LLMResponse(content=content, usage=usage)

    async def complete(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        **kwargs
    ) -> LLMResponse:
        """Single prompt completion with an optional system prompt."""
        messages: List[Dict[str, Any]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        return await self.chat(messages, temperature=temperature, max_tokens=max_tokens, **kwargs)

    async def run_with_tools(
        self,
        messages: List[Dict[str, Any]],
        tools: SandboxTools,
        max_tool_calls: Optional[int] = None,
        on_text: Optional[TextCallback] = None,
        on_tool_call: Optional[ToolCallCallback] = None,
        on_tool_result: Optional[ToolResultCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
        temperature: float = 0.4,
    ) -> ToolLoopResult:
        """
        Run the model with tools until it stops calling them.

        Once ``max_tool_calls`` tool calls have been made the tools are
        withdrawn, so the next response is plain text and ends the loop.
        ``messages`` is extended in place with the whole exchange.

        Args:
            messages: Conversation so far (system + user prompt)
            tools: Tool dispatcher bound to the session sandbox
            max_tool_calls: Tool-call budget (defaults to config.max_tool_calls)
            on_text: Called with the assistant text of each step
            on_tool_call: Called with (call_id, name, arguments) before execution
            on_tool_result: Called with (call_id, name, result) after execution
            cancel_event: Checked before every request and tool call

        Returns:
            Final text, summed usage, tool calls made and request count
        """
        budget = self.config.max_tool_calls if max_tool_calls is None else max_tool_calls
        usage = TokenUsage()
        tool_calls = 0
        steps = 0
        final_text = ""

        while True:
            if cancel_event is not None and cancel_event.is_set():
                return ToolLoopResult(final_text, usage, tool_calls, steps, cancelled=True)

            payload: Dict[str, Any] = {
                "model": self.model,
                "messages": messages,
                "temperature": temperature,
            }
            if tool_calls < budget:
                payload["tools"] = tools.definitions
                payload["tool_choice"] = "auto"

            response = await self._make_request("/chat/completions", payload)
            steps += 1
            usage.add(response.get("usage"))

            message = response["choices"][0]["message"]
            text = message.get("content") or ""
            requested = message.get("tool_calls") or []

            if text:
                final_text = text
                if on_text is not None:
                    await on_text(text)

            if not requested:
                break

            messages.append({"role": "assistant", "content": text or None, "tool_calls": requested})

            for call in requested:
                call_id = call.get("id", "")
                name = call.get("function", {}).get("name", "")

                if cancel_event is not None and cancel_event.is_set():
                    return ToolLoopResult(final_text, usage, tool_calls, steps, cancelled=True)

                if tool_calls >= budget:
                    result = "Error: tool call budget exhausted. Summarize your work without calling tools."
                else:
                    tool_calls += 1
                    arguments = self._parse_arguments(call)
                    if arguments is None:
                        result = "Error: tool arguments were not valid JSON"
                    else:
                        if on_tool_call is not None:
                            await on_tool_call(call_id, name, arguments)
                        result = await tools.call(name, arguments)

                if on_tool_result is not None:
                    await on_tool_result(call_id, name, result)
                messages.append({"role": "tool", "tool_call_id": call_id, "content": result})

        logger.info(
            "Tool loop finished",
            extra={
                "model": self.model,
                "steps": steps,
                "tool_calls": tool_calls,
                "total_tokens": usage.total_tokens,
            }
        )
        return ToolLoopResult(final_text, usage, tool_calls, steps)

    @staticmethod
    def _parse_arguments(call: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        raw = call.get("function", {}).get("arguments") or "{}"
        if isinstance(raw, dict):
            return raw
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return parsed if isinstance(parsed, dict) else None

    def calculate_cost(self, usage: TokenUsage) -> float:
        """USD cost of ``usage`` at the configured per-million token prices."""
        return (
            usage.input_tokens * self.config.input_cost_per_million
            + usage.output_tokens * self.config.output_cost_per_million
        ) / 1_000_000

    async def health_check(self) -> bool:
        """
        Check if the API is available.

        Returns:
            True if healthy, False otherwise
        """
        try:
            async with self._client(5.0) as client:
                # Most OpenAI-compatible servers expose the models list
                response = await client.get(f"{self.base_url}/models", headers=self._headers())
                return response.status_code == 200
        except httpx.HTTPError as e:
            logger.warning(
                "LLM health check failed",
                extra={"error": str(e), "base_url": self.base_url}
            )
            return False
