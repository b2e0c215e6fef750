"""Request and response schemas for canvas and node endpoints."""

from pydantic import BaseModel, Field

from forkchat.models import AnchorNode, Edge, GraphNode, MessageNode, Position

# -- Requests --


class CreateTreeRequest(BaseModel):
    title: str | None = None
    provider: str | None = None
    model: str | None = None


class PatchNodeRequest(BaseModel):
    """Fields to update on a node. Only fields present in the request body are changed."""

    user_message: str | None = None
    position: Position | None = None


class SendRequest(BaseModel):
    """Request body for POST /api/trees/{tree_id}/nodes/{node_id}/send."""

    text: str = ""
    stream: bool = False


class BranchRequest(BaseModel):
    """Request body for POST /api/trees/{tree_id}/nodes/{node_id}/branch."""

    selection: str
    isolated: bool = False
    position: Position | None = None
    use_anchor: bool = True


class LayoutRequest(BaseModel):
    """Rendered height of a completed node, reported by the canvas."""

    height: float = Field(ge=0)


# -- Responses --


class BranchResponse(BaseModel):
    node: MessageNode
    anchor: AnchorNode | None = None
    edges: list[Edge]


class DeleteNodeResponse(BaseModel):
    node_ids: list[str]
    edge_ids: list[str]


class HistoryResponse(BaseModel):
    node_id: str
    messages: list[dict[str, str]]


class TreeSummary(BaseModel):
    tree_id: str
    title: str | None = None
    provider: str
    model: str
    created_at: str


class TreeDetailResponse(TreeSummary):
    root_id: str
    nodes: list[GraphNode] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)
    streaming_node_ids: list[str] = Field(default_factory=list)
    pending_layout_node_ids: list[str] = Field(default_factory=list)
