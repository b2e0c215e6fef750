"""In-memory conversation tree store: the authoritative node and edge set.

Knows nothing about the LLM service. Every mutation is announced to
subscribers as a TreeEvent so presentation layers can follow along without
holding references into the store.
"""

import logging
from collections import deque
from collections.abc import Callable, Iterator, Mapping
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from pydantic import BaseModel

from forkchat.models import (
    AnchorNode,
    Edge,
    EdgeCreatedPayload,
    GraphNode,
    MessageNode,
    NodeCreatedPayload,
    NodePatchedPayload,
    SubtreeDeletedPayload,
    TreeEvent,
)

logger = logging.getLogger(__name__)

NodeUpdater = Mapping[str, Any] | Callable[[GraphNode], GraphNode]
Subscriber = Callable[[TreeEvent], None]

_IMMUTABLE_FIELDS = ("id", "kind")


class ConversationTreeStore:
    """Nodes and edges of one canvas, with indexed edge lookup.

    Assumes a single logical writer per call (one asyncio loop). The edge set
    is kept a forest: one incoming edge per node at most, no cycles.
    """

    def __init__(self, tree_id: str = "local", *, event_log_size: int = 1000) -> None:
        self.tree_id = tree_id
        self._nodes: dict[str, GraphNode] = {}
        self._edges: dict[str, Edge] = {}
        self._incoming: dict[str, str] = {}  # target id -> edge id
        self._outgoing: dict[str, list[str]] = {}  # source id -> edge ids
        self._subscribers: list[Subscriber] = []
        self._sequence = 0
        self._event_log: deque[TreeEvent] = deque(maxlen=event_log_size)

    # -- Queries --

    def get_node(self, node_id: str) -> GraphNode:
        try:
            return self._nodes[node_id]
        except KeyError:
            raise NotFoundError(node_id)

    def get_message_node(self, node_id: str) -> MessageNode:
        node = self.get_node(node_id)
        if not isinstance(node, MessageNode):
            raise NotFoundError(node_id, kind="message node")
        return node

    def get_edge(self, edge_id: str) -> Edge:
        try:
            return self._edges[edge_id]
        except KeyError:
            raise NotFoundError(edge_id, kind="edge")

    def has_node(self, node_id: str) -> bool:
        return node_id in self._nodes

    def nodes(self) -> list[GraphNode]:
        return list(self._nodes.values())

    def edges(self) -> list[Edge]:
        return list(self._edges.values())

    def __len__(self) -> int:
        return len(self._nodes)

    def find_incoming_edge(self, node_id: str) -> Edge | None:
        edge_id = self._incoming.get(node_id)
        return self._edges[edge_id] if edge_id is not None else None

    def find_outgoing_edges(self, node_id: str) -> list[Edge]:
        return [self._edges[eid] for eid in self._outgoing.get(node_id, [])]

    def parent_of(self, node_id: str) -> str | None:
        edge = self.find_incoming_edge(node_id)
        return edge.source if edge is not None else None

    def children(self, node_id: str) -> list[str]:
        return [e.target for e in self.find_outgoing_edges(node_id)]

    def descendants(self, node_id: str) -> list[str]:
        """All nodes reachable through outgoing edges, breadth-first. Excludes node_id."""
        found: list[str] = []
        seen = {node_id}
        queue = deque([node_id])
        while queue:
            current = queue.popleft()
            for child in self.children(current):
                if child in seen:
                    continue
                seen.add(child)
                found.append(child)
                queue.append(child)
        return found

    def root_ids(self) -> list[str]:
        return [nid for nid in self._nodes if nid not in self._incoming]

    def iter_ancestors(self, node_id: str) -> Iterator[str]:
        """Yield ids from node_id's parent up to its root, following edges only."""
        current = self.parent_of(node_id)
        seen = {node_id}
        while current is not None:
            if current in seen:
                raise TreeIntegrityError(f"Cycle detected at node: {current}")
            seen.add(current)
            yield current
            current = self.parent_of(current)

    # -- Mutations --

    def create_node(self, node: GraphNode) -> GraphNode:
        """Append a node. Raises DuplicateIdError if the id is taken."""
        if node.id in self._nodes:
            raise DuplicateIdError(node.id)
        self._nodes[node.id] = node
        self._emit("NodeCreated", NodeCreatedPayload(node=node))
        return node

    def create_edge(self, edge: Edge) -> Edge:
        """Append an edge between two existing nodes.

        Raises DanglingEdgeError if an endpoint is missing, DuplicateIdError if
        the edge id is taken, InvalidEdgeError if the edge would break the
        forest shape.
        """
        if edge.id in self._edges:
            raise DuplicateIdError(edge.id, kind="edge")
        for endpoint in (edge.source, edge.target):
            if endpoint not in self._nodes:
                raise DanglingEdgeError(edge.id, endpoint)
        if edge.source == edge.target:
            raise InvalidEdgeError(edge.id, "self-loop")
        if edge.target in self._incoming:
            raise InvalidEdgeError(
                edge.id, f"node {edge.target} already has an incoming edge"
            )
        target = self._nodes[edge.target]
        if isinstance(target, AnchorNode) and target.parent_id != edge.source:
            raise InvalidEdgeError(
                edge.id, f"anchor {target.id} belongs to {target.parent_id}"
            )
        source = self._nodes[edge.source]
        if isinstance(source, AnchorNode) and self._outgoing.get(edge.source):
            raise InvalidEdgeError(
                edge.id, f"anchor {source.id} already leads to a child"
            )
        if edge.target in self.iter_ancestors(edge.source):
            raise InvalidEdgeError(edge.id, "edge would close a cycle")

        self._edges[edge.id] = edge
        self._incoming[edge.target] = edge.id
        self._outgoing.setdefault(edge.source, []).append(edge.id)
        self._emit("EdgeCreated", EdgeCreatedPayload(edge=edge))
        return edge

    def patch_node(self, node_id: str, updater: NodeUpdater) -> GraphNode:
        """Apply a partial update to one node and return the new version.

        ``updater`` is either a mapping of field -> value or a callable taking
        the current node and returning the replacement. Touches no other node.
        """
        current = self.get_node(node_id)
        if callable(updater):
            updated = updater(current)
        else:
            unknown = sorted(set(updater) - set(type(current).model_fields))
            if unknown:
                raise ValueError(f"Unknown fields for node {node_id}: {', '.join(unknown)}")
            for field_name in _IMMUTABLE_FIELDS:
                if field_name in updater and updater[field_name] != getattr(current, field_name):
                    raise ValueError(f"Cannot change '{field_name}' of node {node_id}")
            updated = type(current).model_validate({**current.model_dump(), **updater})

        if updated.id != current.id or updated.kind != current.kind:
            raise ValueError(f"Updater changed the identity of node {node_id}")

        before = current.model_dump()
        after = updated.model_dump()
        changes = [name for name in after if after[name] != before.get(name)]
        if not changes:
            return current

        self._nodes[node_id] = updated
        self._emit(
            "NodePatched",
            NodePatchedPayload(node_id=node_id, changes=changes, node=updated),
        )
        return updated

    def delete_subtree(self, node_id: str) -> tuple[list[str], list[str]]:
        """Remove a node, its descendants and the anchor that led into it.

        Returns (removed node ids, removed edge ids). Deleting an id that is
        already gone removes nothing, so overlapping deletions compose as a
        union.
        """
        if node_id not in self._nodes:
            return [], []

        doomed = [node_id, *self.descendants(node_id)]
        incoming = self.find_incoming_edge(node_id)
        if incoming is not None and isinstance(self._nodes[incoming.source], AnchorNode):
            doomed.append(incoming.source)
        doomed_set = set(doomed)

        edge_ids = [
            eid
            for eid, edge in self._edges.items()
            if edge.source in doomed_set or edge.target in doomed_set
        ]
        for eid in edge_ids:
            self._remove_edge(eid)
        for nid in doomed:
            del self._nodes[nid]
            self._outgoing.pop(nid, None)

        self._emit(
            "SubtreeDeleted",
            SubtreeDeletedPayload(root_id=node_id, node_ids=doomed, edge_ids=edge_ids),
        )
        return doomed, edge_ids

    def _remove_edge(self, edge_id: str) -> None:
        edge = self._edges.pop(edge_id)
        if self._incoming.get(edge.target) == edge_id:
            del self._incoming[edge.target]
        siblings = self._outgoing.get(edge.source)
        if siblings is not None and edge_id in siblings:
            siblings.remove(edge_id)

    # -- Change notifications --

    def events_since(self, sequence_num: int = 0) -> list[TreeEvent]:
        """Recent change notifications with a sequence number above sequence_num."""
        return [e for e in self._event_log if e.sequence_num > sequence_num]

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a change listener. Returns a function that unregisters it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _emit(self, event_type: str, payload: BaseModel) -> None:
        self._sequence += 1
        event = TreeEvent(
            event_id=str(uuid4()),
            tree_id=self.tree_id,
            sequence_num=self._sequence,
            timestamp=datetime.now(UTC),
            event_type=event_type,
            payload=payload.model_dump(),
        )
        self._event_log.append(event)
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                logger.exception("Subscriber failed on %s #%d", event_type, event.sequence_num)


class TreeStoreError(Exception):
    pass


class DuplicateIdError(TreeStoreError):
    def __init__(self, item_id: str, kind: str = "node") -> None:
        self.item_id = item_id
        super().__init__(f"Duplicate {kind} id: {item_id}")


class DanglingEdgeError(TreeStoreError):
    def __init__(self, edge_id: str, missing_id: str) -> None:
        self.edge_id = edge_id
        self.missing_id = missing_id
        super().__init__(f"Edge {edge_id} references missing node: {missing_id}")


class NotFoundError(TreeStoreError):
    def __init__(self, item_id: str, kind: str = "node") -> None:
        self.item_id = item_id
        super().__init__(f"{kind.capitalize()} not found: {item_id}")


class InvalidEdgeError(TreeStoreError):
    def __init__(self, edge_id: str, reason: str) -> None:
        self.edge_id = edge_id
        super().__init__(f"Invalid edge {edge_id}: {reason}")


class TreeIntegrityError(TreeStoreError):
    pass
