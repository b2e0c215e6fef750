"""Tree service: keeps the live canvases of this process, keyed by tree id."""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from uuid import uuid4

from forkchat.providers.base import LLMProvider
from forkchat.providers.registry import get_provider
from forkchat.settings import Settings
from forkchat.trees.canvas import Canvas
from forkchat.trees.schemas import CreateTreeRequest, TreeDetailResponse, TreeSummary

logger = logging.getLogger(__name__)


@dataclass
class _TreeRecord:
    tree_id: str
    title: str | None
    created_at: str
    canvas: Canvas


class TreeService:
    """Creates canvases and looks them up. Nothing outlives the process."""

    def __init__(
        self,
        settings: Settings,
        provider_lookup: Callable[[str], LLMProvider] = get_provider,
    ) -> None:
        self._settings = settings
        self._provider_lookup = provider_lookup
        self._trees: dict[str, _TreeRecord] = {}

    def create_tree(self, request: CreateTreeRequest) -> TreeDetailResponse:
        """Create a canvas with its invitation node.

        Raises ProviderNotFoundError if the requested (or default) provider is
        not registered.
        """
        provider = self._provider_lookup(request.provider or self._settings.provider)
        tree_id = str(uuid4())
        canvas = Canvas.create(tree_id, provider, self._settings, model=request.model)
        canvas.ensure_root()

        record = _TreeRecord(
            tree_id=tree_id,
            title=request.title,
            created_at=datetime.now(UTC).isoformat(),
            canvas=canvas,
        )
        self._trees[tree_id] = record
        logger.info("Created tree %s (%s/%s)", tree_id, provider.name, canvas.coordinator.model)
        return self._detail(record)

    def list_trees(self) -> list[TreeSummary]:
        return [self._summary(r) for r in self._trees.values()]

    def get_tree(self, tree_id: str) -> TreeDetailResponse:
        return self._detail(self._record(tree_id))

    def get_canvas(self, tree_id: str) -> Canvas:
        return self._record(tree_id).canvas

    async def delete_tree(self, tree_id: str) -> None:
        record = self._record(tree_id)
        del self._trees[tree_id]
        await record.canvas.close()

    async def shutdown(self) -> None:
        for record in list(self._trees.values()):
            await record.canvas.close()
        self._trees.clear()

    def _record(self, tree_id: str) -> _TreeRecord:
        try:
            return self._trees[tree_id]
        except KeyError:
            raise TreeNotFoundError(tree_id)

    @staticmethod
    def _summary(record: _TreeRecord) -> TreeSummary:
        coordinator = record.canvas.coordinator
        return TreeSummary(
            tree_id=record.tree_id,
            title=record.title,
            provider=coordinator.provider.name,
            model=coordinator.model,
            created_at=record.created_at,
        )

    @staticmethod
    def _detail(record: _TreeRecord) -> TreeDetailResponse:
        canvas = record.canvas
        nodes, edges = canvas.snapshot()
        summary = TreeService._summary(record)
        return TreeDetailResponse(
            **summary.model_dump(),
            root_id=canvas.root_id,
            nodes=nodes,
            edges=edges,
            streaming_node_ids=canvas.coordinator.in_flight(),
            pending_layout_node_ids=canvas.placer.pending(),
        )


class TreeNotFoundError(Exception):
    def __init__(self, tree_id: str) -> None:
        self.tree_id = tree_id
        super().__init__(f"Tree not found: {tree_id}")
