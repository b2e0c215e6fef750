"""Shared test helpers. Grows with each subphase."""

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any

from forkchat.models import AnchorNode, Edge, MessageNode, Position
from forkchat.providers.base import (
    GenerationRequest,
    GenerationResult,
    LLMProvider,
    StreamChunk,
)
from forkchat.tree.store import ConversationTreeStore


class FakeProvider(LLMProvider):
    """Scripted provider: streams ``chunks`` in order, optionally failing or stalling.

    ``error`` is raised after ``fail_after`` chunks have been yielded. When
    ``release`` is given, every chunk waits for the event first; ``hang``
    makes every chunk wait forever.
    """

    suggested_models = ["fake-model"]

    def __init__(
        self,
        chunks: list[str] | None = None,
        *,
        error: Exception | None = None,
        fail_after: int = 0,
        release: asyncio.Event | None = None,
        hang: bool = False,
    ) -> None:
        self.chunks = ["Hel", "lo"] if chunks is None else chunks
        self.error = error
        self.fail_after = fail_after
        self.release = release
        self.hang = hang
        self.requests: list[GenerationRequest] = []

    @property
    def name(self) -> str:
        return "fake"

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return GenerationResult(content="".join(self.chunks), model=request.model)

    async def generate_stream(
        self, request: GenerationRequest
    ) -> AsyncIterator[StreamChunk]:
        self.requests.append(request)
        for i, text in enumerate(self.chunks):
            if self.error is not None and i == self.fail_after:
                raise self.error
            if self.release is not None:
                await self.release.wait()
            if self.hang:
                await asyncio.sleep(3600)
            yield StreamChunk.delta(text)
        if self.error is not None and self.fail_after >= len(self.chunks):
            raise self.error
        yield StreamChunk.stop(
            GenerationResult(content="".join(self.chunks), model=request.model)
        )


def make_message(node_id: str, **fields: Any) -> MessageNode:
    return MessageNode(id=node_id, **fields)


def link(store: ConversationTreeStore, source: str, target: str) -> Edge:
    """Add a plain parent -> child edge."""
    return store.create_edge(Edge(id=f"e{source}-{target}", source=source, target=target))


def add_child(
    store: ConversationTreeStore, parent_id: str, node_id: str, **fields: Any
) -> MessageNode:
    """Create a message node directly below parent_id."""
    node = store.create_node(make_message(node_id, **fields))
    link(store, parent_id, node_id)
    return node


def add_anchored_child(
    store: ConversationTreeStore, parent_id: str, node_id: str, **fields: Any
) -> tuple[AnchorNode, MessageNode]:
    """Create parent -> anchor -> child, the shape a selection branch produces."""
    anchor = store.create_node(
        AnchorNode(id=f"anchor-{node_id}", parent_id=parent_id, position=Position())
    )
    node = store.create_node(make_message(node_id, **fields))
    link(store, parent_id, anchor.id)
    link(store, anchor.id, node_id)
    return anchor, node


def make_store_with_root(assistant_message: str = "Hi") -> ConversationTreeStore:
    store = ConversationTreeStore("test-tree")
    store.create_node(
        make_message("root", assistant_message=assistant_message, is_root=True, stream_finished=True)
    )
    return store


def parse_sse(body: str) -> list[tuple[str, dict]]:
    """Split an event-stream body into (event name, JSON data) pairs."""
    events = []
    for block in body.strip().split("\n\n"):
        name = ""
        data = ""
        for line in block.split("\n"):
            if line.startswith("event: "):
                name = line[len("event: "):]
            elif line.startswith("data: "):
                data += line[len("data: "):]
        if name:
            events.append((name, json.loads(data)))
    return events


async def create_tree(client, **body: Any) -> dict:
    """Create a tree via the API and return the detail payload."""
    resp = await client.post("/api/trees", json=body)
    assert resp.status_code == 201, resp.text
    return resp.json()
