"""Anthropic (Claude) provider.

The Messages API differs from the OpenAI protocol in two ways that matter for
canvases: system text is a top-level parameter rather than a message, and the
conversation must open with a user turn while a canvas opens with the
assistant's invitation.
"""

import time
from collections.abc import AsyncIterator, Iterator
from contextlib import contextmanager
from typing import Any

import anthropic
from anthropic import AsyncAnthropic

from forkchat.providers.base import (
    GenerationRequest,
    GenerationResult,
    LLMProvider,
    StreamChunk,
    StreamTransportError,
    UpstreamServiceError,
)

OPENING_USER_TURN = "(conversation start)"


@contextmanager
def translate_anthropic_errors() -> Iterator[None]:
    try:
        yield
    except anthropic.APIStatusError as e:
        raise UpstreamServiceError(str(e), status_code=e.status_code) from e
    except anthropic.APIConnectionError as e:
        raise StreamTransportError(str(e)) from e
    except anthropic.APIResponseValidationError as e:
        raise UpstreamServiceError(str(e), status_code=e.status_code) from e


class AnthropicProvider(LLMProvider):
    suggested_models = [
        "claude-sonnet-4-5-20250929",
        "claude-opus-4-1-20250805",
        "claude-haiku-4-5-20251001",
    ]

    def __init__(self, client: AsyncAnthropic) -> None:
        self._client = client

    @property
    def name(self) -> str:
        return "anthropic"

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        started = time.monotonic()
        with translate_anthropic_errors():
            message = await self._client.messages.create(**self._message_kwargs(request))

        return GenerationResult(
            content="".join(b.text for b in message.content if b.type == "text"),
            model=message.model,
            finish_reason=message.stop_reason,
            usage={
                "input_tokens": message.usage.input_tokens,
                "output_tokens": message.usage.output_tokens,
            },
            latency_ms=int((time.monotonic() - started) * 1000),
            raw_response=message.model_dump(),
        )

    async def generate_stream(
        self, request: GenerationRequest
    ) -> AsyncIterator[StreamChunk]:
        started = time.monotonic()
        parts: list[str] = []
        model = request.model
        stop_reason: str | None = None
        usage = {"input_tokens": 0, "output_tokens": 0}

        with translate_anthropic_errors():
            events = await self._client.messages.create(
                **self._message_kwargs(request), stream=True
            )
            async for event in events:
                if event.type == "message_start":
                    model = event.message.model
                    usage["input_tokens"] = event.message.usage.input_tokens
                elif event.type == "content_block_delta":
                    # Non-text deltas (e.g. tool input JSON) have no .text
                    text = getattr(event.delta, "text", None)
                    if text:
                        parts.append(text)
                        yield StreamChunk.delta(text)
                elif event.type == "message_delta":
                    stop_reason = event.delta.stop_reason
                    usage["output_tokens"] = event.usage.output_tokens

        yield StreamChunk.stop(
            GenerationResult(
                content="".join(parts),
                model=model,
                finish_reason=stop_reason,
                usage=usage,
                latency_ms=int((time.monotonic() - started) * 1000),
            )
        )

    @staticmethod
    def _message_kwargs(request: GenerationRequest) -> dict[str, Any]:
        """Keyword arguments for client.messages.create()."""
        system_parts = [request.system_prompt] if request.system_prompt else []
        turns: list[dict[str, str]] = []
        for m in request.messages:
            if m["role"] == "system":
                system_parts.append(m["content"])
            else:
                turns.append({"role": m["role"], "content": m["content"]})
        if turns and turns[0]["role"] != "user":
            turns.insert(0, {"role": "user", "content": OPENING_USER_TURN})

        sampling = request.sampling_params
        kwargs: dict[str, Any] = {
            "model": request.model,
            "max_tokens": sampling.max_tokens,
            "messages": turns,
        }
        if system_parts:
            kwargs["system"] = "\n\n".join(system_parts)
        for name in ("temperature", "top_p"):
            value = getattr(sampling, name)
            if value is not None:
                kwargs[name] = value
        return kwargs
