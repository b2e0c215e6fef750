"""Canonical data structures and change-notification types for Forkchat.

Defined once here, referenced everywhere else. Graph nodes and edges are the
canvas state; change payloads describe one mutation of that state, and the
TreeEvent envelope wraps them with metadata for subscribers.
"""

from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field

# Sentinel written into assistant_message while a response is in flight.
THINKING_PLACEHOLDER = "..."

# ---------------------------------------------------------------------------
# Canonical data structures
# ---------------------------------------------------------------------------


class SamplingParams(BaseModel):
    temperature: float | None = None
    top_p: float | None = None
    max_tokens: int = 4096


class Position(BaseModel):
    x: float = 0.0
    y: float = 0.0

    def offset(self, dx: float = 0.0, dy: float = 0.0) -> "Position":
        return Position(x=self.x + dx, y=self.y + dy)


class MessageNode(BaseModel):
    """One message exchange: the user's turn and the model's reply."""

    kind: Literal["message"] = "message"
    id: str
    user_message: str = ""
    assistant_message: str = ""
    context_text: str | None = None  # selection quoted from an ancestor
    is_isolated: bool = False  # history assembly stops here
    stream_finished: bool = False
    stream_error: str | None = None
    is_root: bool = False
    position: Position = Field(default_factory=Position)


class AnchorNode(BaseModel):
    """Structural marker for a branch's origin point on its parent. No content."""

    kind: Literal["anchor"] = "anchor"
    id: str
    parent_id: str
    position: Position = Field(default_factory=Position)


GraphNode = Annotated[MessageNode | AnchorNode, Field(discriminator="kind")]


class Edge(BaseModel):
    id: str
    source: str
    target: str
    source_handle: str | None = None  # presentation routing only
    target_handle: str | None = None


# ---------------------------------------------------------------------------
# Change payloads, one per event type
# ---------------------------------------------------------------------------


class NodeCreatedPayload(BaseModel):
    node: GraphNode


class EdgeCreatedPayload(BaseModel):
    edge: Edge


class NodePatchedPayload(BaseModel):
    node_id: str
    changes: list[str]  # names of the fields whose value changed
    node: GraphNode


class SubtreeDeletedPayload(BaseModel):
    root_id: str
    node_ids: list[str]
    edge_ids: list[str]


# ---------------------------------------------------------------------------
# Event type registry
# ---------------------------------------------------------------------------

EVENT_TYPES: dict[str, type[BaseModel]] = {
    "NodeCreated": NodeCreatedPayload,
    "EdgeCreated": EdgeCreatedPayload,
    "NodePatched": NodePatchedPayload,
    "SubtreeDeleted": SubtreeDeletedPayload,
}


# ---------------------------------------------------------------------------
# Event envelope
# ---------------------------------------------------------------------------


class TreeEvent(BaseModel):
    """Wraps every change notification with metadata."""

    event_id: str
    tree_id: str
    sequence_num: int
    timestamp: datetime
    event_type: str
    payload: dict[str, Any]

    def typed_payload(self) -> BaseModel:
        """Deserialize payload into the correct Pydantic model based on event_type."""
        payload_cls = EVENT_TYPES[self.event_type]
        return payload_cls.model_validate(self.payload)
