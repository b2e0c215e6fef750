"""FastAPI routes for canvases: tree lookup, send, branch, delete, layout, events."""

import asyncio
import json as json_module
from collections.abc import AsyncIterator, Callable

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from fastapi.responses import StreamingResponse

from forkchat.generation.coordinator import EmptyMessageError, SendInProgressError
from forkchat.models import MessageNode, TreeEvent
from forkchat.providers.registry import ProviderNotFoundError
from forkchat.tree.store import NotFoundError, TreeStoreError
from forkchat.trees.canvas import Canvas, RootDeletionError
from forkchat.trees.schemas import (
    BranchRequest,
    BranchResponse,
    CreateTreeRequest,
    DeleteNodeResponse,
    HistoryResponse,
    LayoutRequest,
    PatchNodeRequest,
    SendRequest,
    TreeDetailResponse,
    TreeSummary,
)
from forkchat.trees.service import TreeNotFoundError, TreeService

router = APIRouter(prefix="/api/trees", tags=["trees"])

SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


def get_tree_service() -> TreeService:
    """Dependency placeholder, replaced at app startup."""
    raise RuntimeError("TreeService not initialized")


def _canvas(service: TreeService, tree_id: str) -> Canvas:
    try:
        return service.get_canvas(tree_id)
    except TreeNotFoundError:
        raise HTTPException(status_code=404, detail=f"Tree not found: {tree_id}")


def _sse(event: str, data: dict, event_id: int | None = None) -> str:
    prefix = f"id: {event_id}\n" if event_id is not None else ""
    return f"{prefix}event: {event}\ndata: {json_module.dumps(data)}\n\n"


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_tree(
    request: CreateTreeRequest,
    service: TreeService = Depends(get_tree_service),
) -> TreeDetailResponse:
    try:
        return service.create_tree(request)
    except ProviderNotFoundError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("")
async def list_trees(
    service: TreeService = Depends(get_tree_service),
) -> list[TreeSummary]:
    return service.list_trees()


@router.get("/{tree_id}")
async def get_tree(
    tree_id: str,
    service: TreeService = Depends(get_tree_service),
) -> TreeDetailResponse:
    try:
        return service.get_tree(tree_id)
    except TreeNotFoundError:
        raise HTTPException(status_code=404, detail=f"Tree not found: {tree_id}")


@router.delete("/{tree_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_tree(
    tree_id: str,
    service: TreeService = Depends(get_tree_service),
) -> Response:
    try:
        await service.delete_tree(tree_id)
    except TreeNotFoundError:
        raise HTTPException(status_code=404, detail=f"Tree not found: {tree_id}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{tree_id}/nodes/{node_id}/history")
async def get_history(
    tree_id: str,
    node_id: str,
    follow_up: str | None = None,
    service: TreeService = Depends(get_tree_service),
) -> HistoryResponse:
    canvas = _canvas(service, tree_id)
    try:
        messages = canvas.history(node_id, follow_up)
    except NotFoundError:
        raise HTTPException(status_code=404, detail=f"Node not found: {node_id}")
    except TreeStoreError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return HistoryResponse(node_id=node_id, messages=messages)


@router.patch("/{tree_id}/nodes/{node_id}", response_model=None)
async def edit_node(
    tree_id: str,
    node_id: str,
    request: PatchNodeRequest,
    service: TreeService = Depends(get_tree_service),
) -> dict:
    canvas = _canvas(service, tree_id)
    try:
        node = canvas.edit(
            node_id,
            user_message=request.user_message,
            position=request.position,
        )
    except NotFoundError:
        raise HTTPException(status_code=404, detail=f"Node not found: {node_id}")
    return node.model_dump()


@router.post("/{tree_id}/nodes/{node_id}/send", response_model=None)
async def send(
    tree_id: str,
    node_id: str,
    request: SendRequest,
    service: TreeService = Depends(get_tree_service),
) -> MessageNode | StreamingResponse:
    canvas = _canvas(service, tree_id)

    queue: asyncio.Queue[TreeEvent | None] = asyncio.Queue()
    unsubscribe = canvas.store.subscribe(queue.put_nowait) if request.stream else None
    try:
        task = canvas.start_send(node_id, request.text)
    except NotFoundError:
        _release(unsubscribe)
        raise HTTPException(status_code=404, detail=f"Node not found: {node_id}")
    except SendInProgressError as e:
        _release(unsubscribe)
        raise HTTPException(status_code=409, detail=str(e))
    except EmptyMessageError as e:
        _release(unsubscribe)
        raise HTTPException(status_code=400, detail=str(e))
    except TreeStoreError as e:
        _release(unsubscribe)
        raise HTTPException(status_code=400, detail=str(e))

    if unsubscribe is None:
        node = await task
        if node is None:
            raise HTTPException(status_code=404, detail=f"Node deleted while streaming: {node_id}")
        return node

    task.add_done_callback(lambda _: queue.put_nowait(None))
    return StreamingResponse(
        _stream_send_sse(
            node_id,
            queue,
            unsubscribe,
            placeholder=canvas.coordinator.placeholder,
        ),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.post("/{tree_id}/nodes/{node_id}/branch", response_model=None)
async def branch(
    tree_id: str,
    node_id: str,
    request: BranchRequest,
    service: TreeService = Depends(get_tree_service),
) -> Response | BranchResponse:
    canvas = _canvas(service, tree_id)
    try:
        result = canvas.branch(
            node_id,
            request.selection,
            isolated=request.isolated,
            position=request.position,
            use_anchor=request.use_anchor,
        )
    except NotFoundError:
        raise HTTPException(status_code=404, detail=f"Node not found: {node_id}")
    if result is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    body = BranchResponse(node=result.node, anchor=result.anchor, edges=result.edges)
    return Response(
        content=body.model_dump_json(),
        status_code=status.HTTP_201_CREATED,
        media_type="application/json",
    )


@router.delete("/{tree_id}/nodes/{node_id}")
async def delete_node(
    tree_id: str,
    node_id: str,
    service: TreeService = Depends(get_tree_service),
) -> DeleteNodeResponse:
    canvas = _canvas(service, tree_id)
    try:
        node_ids, edge_ids = canvas.delete(node_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail=f"Node not found: {node_id}")
    except RootDeletionError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return DeleteNodeResponse(node_ids=node_ids, edge_ids=edge_ids)


@router.post("/{tree_id}/nodes/{node_id}/layout", response_model=None)
async def place_follow_up(
    tree_id: str,
    node_id: str,
    request: LayoutRequest,
    service: TreeService = Depends(get_tree_service),
) -> Response:
    canvas = _canvas(service, tree_id)
    node = canvas.place_follow_up(node_id, request.height)
    if node is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    return Response(
        content=node.model_dump_json(),
        status_code=status.HTTP_201_CREATED,
        media_type="application/json",
    )


@router.get("/{tree_id}/events")
async def tree_events(
    tree_id: str,
    since: int = Query(default=0, ge=0),
    limit: int | None = Query(default=None, ge=1),
    service: TreeService = Depends(get_tree_service),
) -> StreamingResponse:
    """Change notifications as SSE: buffered events after ``since``, then live ones."""
    canvas = _canvas(service, tree_id)
    queue: asyncio.Queue[TreeEvent | None] = asyncio.Queue()
    unsubscribe = canvas.store.subscribe(queue.put_nowait)
    backlog = canvas.store.events_since(since)
    return StreamingResponse(
        _stream_tree_events(backlog, queue, unsubscribe, limit),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


def _release(unsubscribe: Callable[[], None] | None) -> None:
    if unsubscribe is not None:
        unsubscribe()


async def _stream_send_sse(
    node_id: str,
    queue: "asyncio.Queue[TreeEvent | None]",
    unsubscribe: Callable[[], None],
    *,
    placeholder: str,
) -> AsyncIterator[str]:
    """Turn the node's patches into text_delta / message_stop / error events."""
    streamed = ""
    try:
        while True:
            event = await queue.get()
            if event is None:
                break
            if event.event_type == "SubtreeDeleted" and node_id in event.payload["node_ids"]:
                yield _sse("error", {"error": f"Node deleted while streaming: {node_id}"})
                break
            if event.event_type != "NodePatched" or event.payload["node_id"] != node_id:
                continue

            node = event.payload["node"]
            text = node["assistant_message"]
            if node["stream_error"]:
                yield _sse("error", {"error": node["stream_error"], "content": text})
                break
            if node["stream_finished"]:
                if text.startswith(streamed) and len(text) > len(streamed):
                    yield _sse("text_delta", {"type": "text_delta", "text": text[len(streamed):]})
                data = {"type": "message_stop", "node_id": node_id, "content": text}
                yield _sse("message_stop", data)
                break
            if not streamed and text == placeholder:
                continue
            if text.startswith(streamed) and len(text) > len(streamed):
                yield _sse("text_delta", {"type": "text_delta", "text": text[len(streamed):]})
                streamed = text
    finally:
        unsubscribe()


async def _stream_tree_events(
    backlog: list[TreeEvent],
    queue: "asyncio.Queue[TreeEvent | None]",
    unsubscribe: Callable[[], None],
    limit: int | None,
) -> AsyncIterator[str]:
    sent = 0
    last_seq = 0
    try:
        for event in backlog:
            if limit is not None and sent >= limit:
                return
            yield _sse(event.event_type, event.model_dump(mode="json"), event.sequence_num)
            last_seq = event.sequence_num
            sent += 1
        while limit is None or sent < limit:
            event = await queue.get()
            if event is None:
                return
            if event.sequence_num <= last_seq:
                continue
            yield _sse(event.event_type, event.model_dump(mode="json"), event.sequence_num)
            last_seq = event.sequence_num
            sent += 1
    finally:
        unsubscribe()
