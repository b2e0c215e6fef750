"""History assembly for LLM requests.

HistoryAssembler walks from a target node up to its root (or to the nearest
isolation boundary) and turns the visited message nodes into the ordered
role/content list sent to the model. Anchor nodes are stepped over via their
owning parent and never contribute a message.
"""

from forkchat.models import THINKING_PLACEHOLDER, AnchorNode, MessageNode
from forkchat.tree.store import ConversationTreeStore, NotFoundError, TreeIntegrityError

CONTEXT_TEMPLATE = (
    "<context_attachment>\n{context}\n</context_attachment>\n\nUser follow-up: {follow_up}"
)


def format_user_content(context_text: str | None, user_message: str) -> str:
    """Wrap quoted context around a follow-up, or return the message as-is."""
    if context_text:
        return CONTEXT_TEMPLATE.format(context=context_text, follow_up=user_message)
    return user_message


class HistoryAssembler:
    """Builds the ordered message list for a send at a given node.

    Ordering is root-to-target. The target's own turn is not part of the
    history; build_request() appends it as the new user message.
    """

    def __init__(self, placeholder: str = THINKING_PLACEHOLDER) -> None:
        self._placeholder = placeholder

    def assemble(
        self, store: ConversationTreeStore, target_node_id: str
    ) -> list[dict[str, str]]:
        """Return the prior turns for target_node_id, oldest first.

        Raises:
            NotFoundError: If the target is missing or is not a message node.
            TreeIntegrityError: If the walk hits a cycle or a broken anchor.
        """
        messages: list[dict[str, str]] = []
        for node in self._walk_path(store, target_node_id):
            messages.extend(self._node_messages(node))
        return messages

    def build_request(
        self, store: ConversationTreeStore, target_node_id: str, follow_up: str
    ) -> list[dict[str, str]]:
        """History plus the target's own user turn, ready for a provider."""
        target = store.get_message_node(target_node_id)
        messages = self.assemble(store, target_node_id)
        messages.append(
            {"role": "user", "content": format_user_content(target.context_text, follow_up)}
        )
        return messages

    def _walk_path(
        self, store: ConversationTreeStore, target_node_id: str
    ) -> list[MessageNode]:
        """Collect the contributing ancestors of the target, root first."""
        target = store.get_message_node(target_node_id)
        if target.is_isolated:
            return []

        chain: list[MessageNode] = []
        visited: set[str] = {target_node_id}
        current_id = store.parent_of(target_node_id)

        while current_id is not None:
            if current_id in visited:
                raise TreeIntegrityError(f"Cycle detected at node: {current_id}")
            visited.add(current_id)
            try:
                node = store.get_node(current_id)
            except NotFoundError:
                raise TreeIntegrityError(f"Broken chain: node {current_id} not found")

            if isinstance(node, AnchorNode):
                current_id = node.parent_id
                continue

            chain.append(node)
            if node.is_isolated:
                break
            current_id = store.parent_of(current_id)

        chain.reverse()
        return chain

    def _node_messages(self, node: MessageNode) -> list[dict[str, str]]:
        messages = []
        if node.user_message or node.context_text:
            messages.append(
                {
                    "role": "user",
                    "content": format_user_content(node.context_text, node.user_message),
                }
            )
        if self._has_reply(node):
            messages.append({"role": "assistant", "content": node.assistant_message})
        return messages

    def _has_reply(self, node: MessageNode) -> bool:
        # Error text shown in a failed node is not something the model said.
        return (
            bool(node.assistant_message)
            and node.assistant_message != self._placeholder
            and node.stream_error is None
        )
