"""Conversation tree storage: nodes, edges and change notifications."""

from forkchat.tree.store import (
    ConversationTreeStore,
    DanglingEdgeError,
    DuplicateIdError,
    InvalidEdgeError,
    NotFoundError,
    TreeIntegrityError,
    TreeStoreError,
)

__all__ = [
    "ConversationTreeStore",
    "DanglingEdgeError",
    "DuplicateIdError",
    "InvalidEdgeError",
    "NotFoundError",
    "TreeIntegrityError",
    "TreeStoreError",
]
