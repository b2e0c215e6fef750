"""Canvas: the command API over one conversation tree.

Send, branch, delete, edit and follow-up placement all go through here.
Presentation layers subscribe to the store's change notifications instead of
threading callbacks through every node.
"""

from dataclasses import dataclass, field
from uuid import uuid4

from forkchat.generation.coordinator import StreamCoordinator
from forkchat.generation.history import HistoryAssembler
from forkchat.generation.layout import FollowUpPlacer
from forkchat.models import AnchorNode, Edge, GraphNode, MessageNode, Position
from forkchat.providers.base import LLMProvider
from forkchat.settings import Settings
from forkchat.tree.store import ConversationTreeStore

ROOT_ID = "root"


@dataclass
class BranchResult:
    node: MessageNode
    anchor: AnchorNode | None = None
    edges: list[Edge] = field(default_factory=list)


class Canvas:
    def __init__(
        self,
        store: ConversationTreeStore,
        coordinator: StreamCoordinator,
        placer: FollowUpPlacer,
        *,
        invitation_message: str = "What are you curious about today?",
        root_position: Position | None = None,
        branch_offset: Position | None = None,
        assembler: HistoryAssembler | None = None,
    ) -> None:
        self.store = store
        self.coordinator = coordinator
        self.placer = placer
        self._assembler = assembler or HistoryAssembler(placeholder=coordinator.placeholder)
        self._invitation_message = invitation_message
        self._root_position = root_position or Position(x=400, y=200)
        self._branch_offset = branch_offset or Position(x=0, y=28)
        coordinator.add_completion_listener(placer.request)

    @classmethod
    def create(
        cls,
        tree_id: str,
        provider: LLMProvider,
        settings: Settings,
        *,
        model: str | None = None,
    ) -> "Canvas":
        """Wire a store, coordinator and placer from settings."""
        store = ConversationTreeStore(tree_id)
        assembler = HistoryAssembler(placeholder=settings.thinking_placeholder)
        coordinator = StreamCoordinator(
            store,
            provider,
            model=model or settings.model or provider.default_model or "default",
            system_prompt=settings.system_prompt,
            chunk_timeout=settings.chunk_timeout,
            placeholder=settings.thinking_placeholder,
            error_message=settings.error_message,
            assembler=assembler,
        )
        placer = FollowUpPlacer(store, vertical_gap=settings.layout.follow_up_gap)
        return cls(
            store,
            coordinator,
            placer,
            invitation_message=settings.invitation_message,
            root_position=settings.layout.root_position,
            branch_offset=settings.layout.branch_offset,
            assembler=assembler,
        )

    # -- Queries --

    @property
    def root_id(self) -> str:
        return ROOT_ID

    def snapshot(self) -> tuple[list[GraphNode], list[Edge]]:
        return self.store.nodes(), self.store.edges()

    def history(self, node_id: str, follow_up: str | None = None) -> list[dict[str, str]]:
        """Messages a send from node_id would submit; prior turns only without follow_up."""
        if follow_up is None:
            return self._assembler.assemble(self.store, node_id)
        return self._assembler.build_request(self.store, node_id, follow_up)

    # -- Commands --

    def ensure_root(self) -> MessageNode:
        """Create the invitation node if the canvas is empty."""
        if self.store.has_node(ROOT_ID):
            return self.store.get_message_node(ROOT_ID)
        root = MessageNode(
            id=ROOT_ID,
            assistant_message=self._invitation_message,
            stream_finished=True,
            is_root=True,
            position=self._root_position,
        )
        self.store.create_node(root)
        return root

    def start_send(self, node_id: str, text: str):
        """Start streaming a reply for node_id; returns the coordinator's task."""
        return self.coordinator.start(node_id, text)

    async def send(self, node_id: str, text: str) -> MessageNode | None:
        return await self.coordinator.send(node_id, text)

    def branch(
        self,
        source_id: str,
        selection: str,
        *,
        isolated: bool = False,
        position: Position | None = None,
        use_anchor: bool = True,
    ) -> BranchResult | None:
        """Spawn a child of source_id seeded with the selected text.

        Returns None when the selection is blank. The source node is never
        modified.
        """
        selected = selection.strip()
        if not selected:
            return None
        source = self.store.get_message_node(source_id)
        hint = position or source.position

        child = MessageNode(
            id=str(uuid4()),
            context_text=selected,
            is_isolated=isolated,
            position=hint.offset(self._branch_offset.x, self._branch_offset.y),
        )
        result = BranchResult(node=child)

        if use_anchor:
            anchor = AnchorNode(id=f"anchor-{child.id}", parent_id=source.id, position=hint)
            self.store.create_node(anchor)
            self.store.create_node(child)
            result.anchor = anchor
            result.edges.append(
                self.store.create_edge(
                    Edge(id=f"e{source.id}-{anchor.id}", source=source.id, target=anchor.id)
                )
            )
            result.edges.append(
                self.store.create_edge(
                    Edge(
                        id=f"e{anchor.id}-{child.id}",
                        source=anchor.id,
                        target=child.id,
                        target_handle="input",
                    )
                )
            )
        else:
            self.store.create_node(child)
            result.edges.append(
                self.store.create_edge(
                    Edge(
                        id=f"e{source.id}-{child.id}",
                        source=source.id,
                        target=child.id,
                        source_handle="output",
                        target_handle="input",
                    )
                )
            )
        return result

    def delete(self, node_id: str) -> tuple[list[str], list[str]]:
        """Delete node_id with its subtree (and its anchor). The root is protected."""
        node = self.store.get_node(node_id)
        if node_id == ROOT_ID or (isinstance(node, MessageNode) and node.is_root):
            raise RootDeletionError(node_id)
        node_ids, edge_ids = self.store.delete_subtree(node_id)
        self.placer.discard(node_ids)
        for removed in node_ids:
            self.coordinator.forget(removed)
        return node_ids, edge_ids

    def edit(
        self,
        node_id: str,
        *,
        user_message: str | None = None,
        position: Position | None = None,
    ) -> GraphNode:
        """Update the editable fields of a node: its input text and its position."""
        changes: dict = {}
        if user_message is not None:
            self.store.get_message_node(node_id)
            changes["user_message"] = user_message
        if position is not None:
            changes["position"] = position.model_dump()
        if not changes:
            return self.store.get_node(node_id)
        return self.store.patch_node(node_id, changes)

    def place_follow_up(self, node_id: str, rendered_height: float) -> MessageNode | None:
        return self.placer.place(node_id, rendered_height)

    async def close(self) -> None:
        await self.coordinator.shutdown()


class RootDeletionError(Exception):
    def __init__(self, node_id: str) -> None:
        self.node_id = node_id
        super().__init__(f"The root node cannot be deleted: {node_id}")
