"""Chat completion provider interface, its wire types and its error taxonomy."""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any, Literal

from pydantic import BaseModel, Field

from forkchat.models import SamplingParams


# {"role": "system" | "user" | "assistant", "content": str}
ChatMessage = dict[str, str]


class GenerationRequest(BaseModel):
    """One chat completion call: an ordered message list plus sampling settings."""

    model: str
    messages: list[ChatMessage]
    system_prompt: str | None = None
    sampling_params: SamplingParams = Field(default_factory=SamplingParams)


class GenerationResult(BaseModel):
    content: str
    model: str
    finish_reason: str | None = None
    usage: dict[str, int] | None = None
    latency_ms: int | None = None
    raw_response: dict[str, Any] | None = None


class StreamChunk(BaseModel):
    """One unit of a streamed reply.

    A stream is zero or more ``text_delta`` chunks followed by exactly one
    ``message_stop`` chunk whose ``result`` holds the whole reply.
    """

    type: Literal["text_delta", "message_stop"]
    text: str = ""
    is_final: bool = False
    result: GenerationResult | None = None

    @classmethod
    def delta(cls, text: str) -> "StreamChunk":
        return cls(type="text_delta", text=text)

    @classmethod
    def stop(cls, result: GenerationResult) -> "StreamChunk":
        return cls(type="message_stop", is_final=True, result=result)


class LLMProvider(ABC):
    """A chat completion service the coordinator and the relay can talk to."""

    suggested_models: list[str] = []

    @property
    @abstractmethod
    def name(self) -> str:
        """Registry key, e.g. 'xai'."""
        ...

    @property
    def default_model(self) -> str | None:
        return self.suggested_models[0] if self.suggested_models else None

    @abstractmethod
    async def generate(self, request: GenerationRequest) -> GenerationResult:
        ...

    @abstractmethod
    def generate_stream(
        self, request: GenerationRequest
    ) -> AsyncIterator[StreamChunk]:
        """Yield text deltas in arrival order, then one final message_stop chunk."""
        ...


class ProviderError(Exception):
    """Base for failures talking to a chat completion service."""


class UpstreamServiceError(ProviderError):
    """The service answered, but with a non-2xx status or a malformed body."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class StreamTransportError(ProviderError):
    """The connection or stream broke before end-of-data."""
