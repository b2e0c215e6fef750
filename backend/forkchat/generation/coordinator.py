"""Stream coordinator: one request/response cycle per send, patched into the tree.

Each send moves its node through IDLE -> SENDING -> STREAMING -> COMPLETED or
FAILED. The placeholder is written before any network I/O; every received
delta patches the node with the running total, in arrival order. Completion
flags the node finished and notifies listeners (follow-up placement); failure
writes a readable error into the node and never retries.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import aclosing
from enum import StrEnum

from forkchat.generation.history import HistoryAssembler
from forkchat.models import THINKING_PLACEHOLDER, MessageNode, SamplingParams
from forkchat.providers.base import (
    GenerationRequest,
    LLMProvider,
    ProviderError,
    StreamChunk,
    StreamTransportError,
)
from forkchat.tree.store import ConversationTreeStore, NotFoundError

logger = logging.getLogger(__name__)

DEFAULT_ERROR_MESSAGE = "Something went wrong while generating a response: {error}"

CompletionListener = Callable[[str], None]


class StreamState(StrEnum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"


class StreamCoordinator:
    """Drives sends for the message nodes of one tree store.

    The provider is injected so tests can pass a fake. Sends on different
    nodes run as independent tasks; a node with a send in flight rejects a
    second one.
    """

    def __init__(
        self,
        store: ConversationTreeStore,
        provider: LLMProvider,
        *,
        model: str,
        system_prompt: str | None = None,
        sampling_params: SamplingParams | None = None,
        chunk_timeout: float | None = None,
        placeholder: str = THINKING_PLACEHOLDER,
        error_message: str = DEFAULT_ERROR_MESSAGE,
        assembler: HistoryAssembler | None = None,
    ) -> None:
        self._store = store
        self._provider = provider
        self._model = model
        self._system_prompt = system_prompt
        self._sampling_params = sampling_params or SamplingParams()
        self._chunk_timeout = chunk_timeout
        self._placeholder = placeholder
        self._error_message = error_message
        self._assembler = assembler or HistoryAssembler(placeholder=placeholder)
        self._states: dict[str, StreamState] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._listeners: list[CompletionListener] = []

    @property
    def provider(self) -> LLMProvider:
        return self._provider

    @property
    def model(self) -> str:
        return self._model

    @property
    def placeholder(self) -> str:
        return self._placeholder

    def state(self, node_id: str) -> StreamState:
        return self._states.get(node_id, StreamState.IDLE)

    def in_flight(self) -> list[str]:
        return list(self._tasks)

    def add_completion_listener(self, listener: CompletionListener) -> None:
        self._listeners.append(listener)

    def forget(self, node_id: str) -> None:
        """Drop the recorded state of a node that no longer exists."""
        if node_id not in self._tasks:
            self._states.pop(node_id, None)

    def start(self, node_id: str, text: str) -> "asyncio.Task[MessageNode | None]":
        """Begin a send and return the task that streams it.

        The node shows the placeholder by the time this returns. Must be
        called from inside a running event loop.

        Raises:
            NotFoundError: If node_id is missing or is not a message node.
            SendInProgressError: If the node already has a send in flight.
            EmptyMessageError: If there is nothing to send.
        """
        node = self._store.get_message_node(node_id)
        if node_id in self._tasks:
            raise SendInProgressError(node_id)

        messages = self._assembler.build_request(self._store, node_id, text)
        if not messages[-1]["content"].strip():
            raise EmptyMessageError(node_id)

        self._store.patch_node(
            node.id,
            {
                "user_message": text,
                "assistant_message": self._placeholder,
                "stream_finished": False,
                "stream_error": None,
            },
        )
        self._states[node_id] = StreamState.SENDING
        logger.info(
            "Sending node %s to %s/%s with %d messages",
            node_id, self._provider.name, self._model, len(messages),
        )

        request = GenerationRequest(
            model=self._model,
            messages=messages,
            system_prompt=self._system_prompt,
            sampling_params=self._sampling_params,
        )
        task = asyncio.create_task(self._run(node_id, request), name=f"send-{node_id}")
        self._tasks[node_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(node_id, None))
        return task

    async def send(self, node_id: str, text: str) -> MessageNode | None:
        """Run a full send cycle. Returns the node as left by the stream."""
        return await self.start(node_id, text)

    async def wait_idle(self) -> None:
        """Wait until every in-flight send has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel in-flight sends."""
        for task in list(self._tasks.values()):
            task.cancel()
        await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def _run(self, node_id: str, request: GenerationRequest) -> MessageNode | None:
        accumulated = ""
        final_text: str | None = None
        try:
            async with aclosing(self._iter_chunks(request)) as chunks:
                async for chunk in chunks:
                    if chunk.is_final:
                        if not accumulated and chunk.result is not None:
                            final_text = chunk.result.content
                        continue
                    if not chunk.text:
                        continue
                    accumulated += chunk.text
                    self._states[node_id] = StreamState.STREAMING
                    self._store.patch_node(node_id, {"assistant_message": accumulated})
        except NotFoundError:
            # Deleted mid-stream: nothing left to update.
            self._states.pop(node_id, None)
            logger.info("Node %s was deleted while streaming; dropping the stream", node_id)
            return None
        except asyncio.CancelledError:
            self._states[node_id] = StreamState.FAILED
            raise
        except Exception as e:
            if isinstance(e, ProviderError):
                logger.warning("Stream for node %s failed: %s", node_id, e)
            else:
                logger.exception("Stream for node %s failed unexpectedly", node_id)
            return self._fail(node_id, e)

        if not self._store.has_node(node_id):
            self._states.pop(node_id, None)
            return None

        node = self._store.patch_node(
            node_id,
            {
                "assistant_message": final_text if final_text is not None else accumulated,
                "stream_finished": True,
            },
        )
        self._states[node_id] = StreamState.COMPLETED
        logger.info("Node %s finished streaming (%d chars)", node_id, len(node.assistant_message))
        self._notify_completed(node_id)
        return node

    async def _iter_chunks(self, request: GenerationRequest) -> AsyncIterator[StreamChunk]:
        """Provider chunks, one at a time, each bounded by the chunk timeout."""
        stream = self._provider.generate_stream(request)
        iterator = aiter(stream)
        try:
            while True:
                try:
                    async with asyncio.timeout(self._chunk_timeout):
                        chunk = await anext(iterator)
                except StopAsyncIteration:
                    return
                except TimeoutError as e:
                    raise StreamTransportError(
                        f"No data from {self._provider.name} for {self._chunk_timeout}s"
                    ) from e
                yield chunk
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    def _fail(self, node_id: str, error: Exception) -> MessageNode | None:
        if not self._store.has_node(node_id):
            self._states.pop(node_id, None)
            return None
        self._states[node_id] = StreamState.FAILED
        detail = str(error) or type(error).__name__
        return self._store.patch_node(
            node_id,
            {
                "assistant_message": self._error_message.format(error=detail),
                "stream_error": detail,
                "stream_finished": False,
            },
        )

    def _notify_completed(self, node_id: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(node_id)
            except Exception:
                logger.exception("Completion listener failed for node %s", node_id)


class SendInProgressError(Exception):
    def __init__(self, node_id: str) -> None:
        self.node_id = node_id
        super().__init__(f"Node {node_id} already has a response streaming")


class EmptyMessageError(Exception):
    def __init__(self, node_id: str) -> None:
        self.node_id = node_id
        super().__init__(f"Nothing to send from node {node_id}")
