"""Thin HTTP relay: forwards a message array to the chat service.

POST /stream answers with the raw concatenated text deltas (or ``data:``
lines with ``?sse=1``); POST /generate answers with the whole reply. Upstream
failures before any text is produced become HTTP 500 with a plain-text body.
"""

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from pydantic import BaseModel

from forkchat.providers.base import GenerationRequest, LLMProvider, StreamChunk

logger = logging.getLogger(__name__)

router = APIRouter(tags=["relay"])

INTERNAL_ERROR_TEXT = "An internal server error occurred."


class RelayMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


@dataclass
class RelayTarget:
    """Provider and model the relay forwards to."""

    provider: LLMProvider
    model: str
    system_prompt: str | None = None

    def request(self, messages: list[RelayMessage]) -> GenerationRequest:
        return GenerationRequest(
            model=self.model,
            messages=[m.model_dump() for m in messages],
            system_prompt=self.system_prompt,
        )


def get_relay_target() -> RelayTarget:
    """Dependency placeholder, replaced at app startup when a provider is configured."""
    raise HTTPException(status_code=503, detail="No chat provider configured")


def _frame(text: str, sse: bool) -> str:
    if not sse:
        return text
    return "".join(f"data: {line}\n" for line in text.split("\n")) + "\n"


@router.post("/stream", response_model=None)
async def stream(
    messages: list[RelayMessage],
    sse: bool = False,
    target: RelayTarget = Depends(get_relay_target),
) -> StreamingResponse | PlainTextResponse:
    chunks = target.provider.generate_stream(target.request(messages))
    head: list[StreamChunk] = []
    try:
        # Hold the response until the first delta so early failures can still be a 500.
        async for chunk in chunks:
            head.append(chunk)
            if chunk.text or chunk.is_final:
                break
    except Exception:
        logger.exception("Stream error")
        return PlainTextResponse(INTERNAL_ERROR_TEXT, status_code=500)

    media_type = "text/event-stream" if sse else "text/plain; charset=utf-8"
    return StreamingResponse(_relay_body(head, chunks, sse), media_type=media_type)


async def _relay_body(
    head: list[StreamChunk],
    chunks: AsyncIterator[StreamChunk],
    sse: bool,
) -> AsyncIterator[str]:
    try:
        for chunk in head:
            if chunk.text:
                yield _frame(chunk.text, sse)
        if not head or not head[-1].is_final:
            async for chunk in chunks:
                if chunk.text:
                    yield _frame(chunk.text, sse)
        if sse:
            yield "data: [DONE]\n\n"
    except Exception:
        # Headers are already sent; ending the body is all that is left.
        logger.exception("Stream broke after the response started")
    finally:
        aclose = getattr(chunks, "aclose", None)
        if aclose is not None:
            await aclose()


@router.post("/generate", response_model=None)
async def generate(
    messages: list[RelayMessage],
    target: RelayTarget = Depends(get_relay_target),
) -> JSONResponse | PlainTextResponse:
    try:
        result = await target.provider.generate(target.request(messages))
    except Exception:
        logger.exception("AI response error")
        return PlainTextResponse(INTERNAL_ERROR_TEXT, status_code=500)
    return JSONResponse(result.content)
