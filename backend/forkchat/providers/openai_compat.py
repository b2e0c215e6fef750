"""Base class for services that speak the OpenAI chat completions protocol.

OpenAIProvider and XAIProvider only differ in how their AsyncOpenAI client is
configured; request building, streaming and error translation live here.
"""

import time
from collections.abc import AsyncIterator, Iterator
from contextlib import contextmanager
from typing import Any

import openai
from openai import AsyncOpenAI

from forkchat.providers.base import (
    ChatMessage,
    GenerationRequest,
    GenerationResult,
    LLMProvider,
    StreamChunk,
    StreamTransportError,
    UpstreamServiceError,
)


@contextmanager
def translate_openai_errors() -> Iterator[None]:
    """Re-raise openai SDK failures as provider errors."""
    try:
        yield
    except openai.APIStatusError as e:
        raise UpstreamServiceError(str(e), status_code=e.status_code) from e
    except openai.APIConnectionError as e:
        raise StreamTransportError(str(e)) from e
    except openai.APIResponseValidationError as e:
        raise UpstreamServiceError(str(e), status_code=e.status_code) from e


def _token_usage(usage: Any) -> dict[str, int]:
    if usage is None:
        return {"input_tokens": 0, "output_tokens": 0}
    return {"input_tokens": usage.prompt_tokens, "output_tokens": usage.completion_tokens}


class OpenAICompatibleProvider(LLMProvider):
    def __init__(self, client: AsyncOpenAI) -> None:
        self._client = client

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        started = time.monotonic()
        with translate_openai_errors():
            response = await self._client.chat.completions.create(
                **self._completion_kwargs(request)
            )
        if not response.choices:
            raise UpstreamServiceError("Completion response has no choices")

        choice = response.choices[0]
        return GenerationResult(
            content=choice.message.content or "",
            model=response.model,
            finish_reason=choice.finish_reason,
            usage=_token_usage(response.usage),
            latency_ms=int((time.monotonic() - started) * 1000),
            raw_response=response.model_dump(),
        )

    async def generate_stream(
        self, request: GenerationRequest
    ) -> AsyncIterator[StreamChunk]:
        started = time.monotonic()
        kwargs = self._completion_kwargs(request)
        kwargs.update(stream=True, stream_options={"include_usage": True})

        parts: list[str] = []
        model = request.model
        finish_reason: str | None = None
        usage: dict[str, int] = _token_usage(None)

        with translate_openai_errors():
            async for event in await self._client.chat.completions.create(**kwargs):
                model = event.model or model
                # The usage-only event at the end carries no choices.
                if event.usage:
                    usage = _token_usage(event.usage)
                if not event.choices:
                    continue
                choice = event.choices[0]
                finish_reason = choice.finish_reason or finish_reason
                if choice.delta.content:
                    parts.append(choice.delta.content)
                    yield StreamChunk.delta(choice.delta.content)

        yield StreamChunk.stop(
            GenerationResult(
                content="".join(parts),
                model=model,
                finish_reason=finish_reason,
                usage=usage,
                latency_ms=int((time.monotonic() - started) * 1000),
            )
        )

    @staticmethod
    def _completion_kwargs(request: GenerationRequest) -> dict[str, Any]:
        """Keyword arguments for client.chat.completions.create()."""
        messages: list[ChatMessage] = []
        if request.system_prompt is not None:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.extend(request.messages)

        sampling = request.sampling_params
        kwargs: dict[str, Any] = {
            "model": request.model,
            "messages": messages,
            "max_tokens": sampling.max_tokens,
        }
        for name in ("temperature", "top_p"):
            value = getattr(sampling, name)
            if value is not None:
                kwargs[name] = value
        return kwargs
