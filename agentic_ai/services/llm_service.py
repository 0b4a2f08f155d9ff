"""
LLM Service - chat-completion wrapper over the injected LLM client

Provides:
- Chat completion with token tracking and tool calling
- Streaming support
- JSON-mode completions for structured extraction
- Retries for transient errors; everything else surfaces as ProviderError
"""

import asyncio
import json
import re
from dataclasses import dataclass, field
from typing import AsyncGenerator, List, Dict, Any, Optional

from openai import APIError, RateLimitError, APIConnectionError

from agentic_ai.config import Settings, settings as default_settings
from agentic_ai.errors import ProviderError
from agentic_ai.structured_logging import Subsystem, get_subsystem_logger

logger = get_subsystem_logger(Subsystem.LLM)


@dataclass
class ToolCall:
    """A function call requested by the model"""
    id: str
    name: str
    arguments: Dict[str, Any]

    def to_message(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": json.dumps(self.arguments)},
        }


@dataclass
class LLMResponse:
    """Response from LLM completion"""
    content: str
    model: str
    tokens_prompt: int = 0
    tokens_completion: int = 0
    tokens_total: int = 0
    finish_reason: Optional[str] = None
    tool_calls: List[ToolCall] = field(default_factory=list)


@dataclass
class StreamDelta:
    """Chunk from streaming response"""
    content: str
    is_final: bool
    finish_reason: Optional[str] = None


def _parse_tool_calls(message: Any) -> List[ToolCall]:
    calls = []
    for raw in getattr(message, "tool_calls", None) or []:
        function = raw.function
        try:
            arguments = json.loads(function.arguments or "{}")
        except (TypeError, json.JSONDecodeError):
            logger.warning(f"[LLM] Unparseable arguments for tool {function.name}")
            arguments = {}
        calls.append(ToolCall(id=raw.id, name=function.name, arguments=arguments))
    return calls


def parse_json_content(content: str) -> Any:
    """Parse a JSON object or array out of model output, tolerating code fences."""
    text = content.strip()
    if text.startswith("```"):
        text = re.sub(r"^```(?:json)?\s*", "", text)
        text = re.sub(r"\s*```$", "", text)
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        match = re.search(r"(\{.*\}|\[.*\])", text, re.DOTALL)
        if not match:
            raise
        return json.loads(match.group(1))


class LLMService:
    """
    Chat completions against an OpenAI-compatible async client.

    Handles:
    - Chat completions (streaming and non-streaming)
    - Token usage tracking
    - Retry logic for transient errors
    - Model configuration
    """

    def __init__(self, client: Any, settings: Optional[Settings] = None):
        self.settings = settings or default_settings
        self.client = client
        self.default_model = self.settings.default_model
        self.default_temperature = self.settings.temperature
        self.default_max_tokens = self.settings.max_tokens

    async def complete(
        self,
        messages: List[Dict[str, Any]],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        tools: Optional[List[Dict[str, Any]]] = None,
        **kwargs
    ) -> LLMResponse:
        """
        Generate a chat completion.

        Args:
            messages: List of message dicts with 'role' and 'content'
            model: Model to use (defaults to settings.default_model)
            temperature: Temperature for sampling (0-2)
            max_tokens: Maximum tokens to generate
            tools: OpenAI function-tool schemas the model may call
            **kwargs: Additional parameters passed to the client

        Returns:
            LLMResponse with content, tool calls and token usage

        Raises:
            ProviderError: the client failed after retries
        """
        model = model or self.default_model
        temperature = temperature if temperature is not None else self.default_temperature
        max_tokens = max_tokens or self.default_max_tokens

        params: Dict[str, Any] = dict(
            model=model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
            **kwargs
        )
        if tools:
            params["tools"] = tools

        max_retries = max(1, self.settings.llm_max_retries)
        retry_delay = self.settings.llm_retry_delay

        for attempt in range(max_retries):
            try:
                response = await self.client.chat.completions.create(**params)

                choice = response.choices[0]
                usage = getattr(response, "usage", None)

                return LLMResponse(
                    content=choice.message.content or "",
                    model=getattr(response, "model", None) or model,
                    tokens_prompt=getattr(usage, "prompt_tokens", 0) or 0,
                    tokens_completion=getattr(usage, "completion_tokens", 0) or 0,
                    tokens_total=getattr(usage, "total_tokens", 0) or 0,
                    finish_reason=getattr(choice, "finish_reason", None),
                    tool_calls=_parse_tool_calls(choice.message),
                )

            except (RateLimitError, APIConnectionError) as e:
                if attempt < max_retries - 1:
                    wait_time = retry_delay * (2 ** attempt)
                    logger.warning(f"[LLM] Transient error, retrying in {wait_time}s: {e}")
                    await asyncio.sleep(wait_time)
                else:
                    raise ProviderError("llm", f"LLM request failed after {max_retries} attempts", e) from e

            except APIError as e:
                logger.error(f"[LLM] API error: {e}")
                raise ProviderError("llm", "LLM API error", e) from e

            except Exception as e:
                logger.error(f"[LLM] Client error: {e}")
                raise ProviderError("llm", "LLM client error", e) from e

        raise ProviderError("llm", "LLM request was not attempted")

    async def stream(
        self,
        messages: List[Dict[str, Any]],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        **kwargs
    ) -> AsyncGenerator[StreamDelta, None]:
        """
        Generate a streaming chat completion.

        Yields:
            StreamDelta objects with content and finish metadata
        """
        model = model or self.default_model
        temperature = temperature if temperature is not None else self.default_temperature
        max_tokens = max_tokens or self.default_max_tokens

        try:
            stream = await self.client.chat.completions.create(
                model=model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
                stream=True,
                **kwargs
            )

            async for chunk in stream:
                if chunk.choices:
                    choice = chunk.choices[0]
                    delta = choice.delta

                    if getattr(delta, "content", None):
                        yield StreamDelta(content=delta.content, is_final=False)

                    if getattr(choice, "finish_reason", None):
                        yield StreamDelta(content="", is_final=True, finish_reason=choice.finish_reason)

        except Exception as e:
            logger.error(f"[LLM] Streaming error: {e}")
            raise ProviderError("llm", "LLM streaming failed", e) from e

    async def complete_with_json(
        self,
        messages: List[Dict[str, Any]],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        **kwargs
    ) -> LLMResponse:
        """
        Generate a completion with JSON response format.

        Useful for structured extraction tasks.
        """
        return await self.complete(
            messages=messages,
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            response_format={"type": "json_object"},
            **kwargs
        )
