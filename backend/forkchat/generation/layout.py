"""Follow-up placement for completed nodes.

When a stream completes, the node is marked pending. Once the presentation
layer knows how tall the finished node renders, place() appends one empty
message node below it. A pending mark is consumed by the first place() call.
"""

import logging
from uuid import uuid4

from forkchat.models import Edge, MessageNode
from forkchat.tree.store import ConversationTreeStore

logger = logging.getLogger(__name__)


class FollowUpPlacer:
    def __init__(self, store: ConversationTreeStore, *, vertical_gap: float = 28) -> None:
        self._store = store
        self._vertical_gap = vertical_gap
        self._pending: dict[str, None] = {}  # insertion-ordered set

    def request(self, node_id: str) -> None:
        self._pending[node_id] = None

    def pending(self) -> list[str]:
        return list(self._pending)

    def is_pending(self, node_id: str) -> bool:
        return node_id in self._pending

    def discard(self, node_ids: list[str]) -> None:
        for node_id in node_ids:
            self._pending.pop(node_id, None)

    def place(self, node_id: str, rendered_height: float) -> MessageNode | None:
        """Create the empty follow-up below node_id. Returns None if not pending."""
        if node_id not in self._pending:
            return None
        del self._pending[node_id]

        if not self._store.has_node(node_id):
            logger.info("Node %s is gone; skipping follow-up placement", node_id)
            return None
        parent = self._store.get_message_node(node_id)

        follow_up = MessageNode(
            id=str(uuid4()),
            position=parent.position.offset(dy=rendered_height + self._vertical_gap),
        )
        self._store.create_node(follow_up)
        self._store.create_edge(
            Edge(
                id=f"e{parent.id}-{follow_up.id}",
                source=parent.id,
                target=follow_up.id,
                source_handle="output",
                target_handle="input",
            )
        )
        return follow_up
