"""Provider that talks to a Forkchat-style HTTP relay instead of a vendor SDK.

The relay accepts a JSON array of role/content messages. Its /stream
endpoint answers either with raw concatenated text deltas or, in the
edge-function variant, with ``data:``-prefixed event-stream lines; both are
accepted here. /generate returns the whole answer at once.
"""

import json
import logging
import time
from collections.abc import AsyncIterator

import httpx

from forkchat.providers.base import (
    GenerationRequest,
    GenerationResult,
    LLMProvider,
    StreamChunk,
    StreamTransportError,
    UpstreamServiceError,
)

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"


def strip_data_prefix(chunk: str) -> str:
    """Pull the payload out of any ``data:`` lines; fall back to the raw chunk."""
    data = [
        line[len("data:"):].removeprefix(" ")
        for line in chunk.split("\n")
        if line.startswith("data:")
    ]
    return "".join(data) if data else chunk


class RelayProvider(LLMProvider):
    """Chat completion over a relay's /stream and /generate endpoints."""

    def __init__(
        self,
        base_url: str,
        *,
        client: httpx.AsyncClient | None = None,
        model: str = "relay",
        timeout: float | None = 60.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self.suggested_models = [model]

    @property
    def name(self) -> str:
        return "relay"

    async def aclose(self) -> None:
        await self._client.aclose()

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        start = time.monotonic()
        try:
            response = await self._client.post(
                f"{self._base_url}/generate", json=request.messages
            )
        except httpx.TransportError as e:
            raise StreamTransportError(f"Relay unreachable: {e}") from e
        self._check_status(response.status_code, response.text)

        return GenerationResult(
            content=self._parse_generate_body(response),
            model=request.model,
            latency_ms=int((time.monotonic() - start) * 1000),
        )

    async def generate_stream(
        self, request: GenerationRequest
    ) -> AsyncIterator[StreamChunk]:
        start = time.monotonic()
        accumulated_text = ""
        try:
            async with self._client.stream(
                "POST", f"{self._base_url}/stream", json=request.messages
            ) as response:
                if response.status_code >= 300:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    self._check_status(response.status_code, body)

                content_type = response.headers.get("content-type", "")
                if content_type.startswith("text/event-stream"):
                    deltas = self._iter_event_stream(response)
                else:
                    deltas = self._iter_raw_text(response)
                async for text in deltas:
                    accumulated_text += text
                    yield StreamChunk.delta(text)
        except httpx.TransportError as e:
            raise StreamTransportError(f"Relay stream broke: {e}") from e

        yield StreamChunk.stop(
            GenerationResult(
                content=accumulated_text,
                model=request.model,
                finish_reason="stop",
                latency_ms=int((time.monotonic() - start) * 1000),
            )
        )

    @staticmethod
    async def _iter_raw_text(response: httpx.Response) -> AsyncIterator[str]:
        async for chunk in response.aiter_text():
            text = strip_data_prefix(chunk)
            if text:
                yield text

    @staticmethod
    async def _iter_event_stream(response: httpx.Response) -> AsyncIterator[str]:
        """Join the data lines of each event; a blank line ends an event."""
        pending: list[str] = []
        async for line in response.aiter_lines():
            if line.startswith("data:"):
                pending.append(line[len("data:"):].removeprefix(" "))
                continue
            if line == "" and pending:
                text = "\n".join(pending)
                pending = []
                if text == DONE_SENTINEL:
                    return
                if text:
                    yield text
        if pending:
            text = "\n".join(pending)
            if text and text != DONE_SENTINEL:
                yield text

    @staticmethod
    def _check_status(status_code: int, body: str) -> None:
        if status_code >= 300:
            logger.warning("Relay answered %d: %s", status_code, body[:200])
            raise UpstreamServiceError(
                body.strip() or f"Relay answered HTTP {status_code}",
                status_code=status_code,
            )

    @staticmethod
    def _parse_generate_body(response: httpx.Response) -> str:
        if not response.headers.get("content-type", "").startswith("application/json"):
            return response.text
        try:
            body = response.json()
        except json.JSONDecodeError:
            # Some relays label plain text as JSON.
            return response.text
        if isinstance(body, str):
            return body
        if isinstance(body, dict) and isinstance(body.get("content"), str):
            return body["content"]
        raise UpstreamServiceError("Malformed relay response: expected text content")
