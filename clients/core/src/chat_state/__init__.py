"""Conversation state engine: messages, grouping, optimistic sends and scrolling."""

from .config import StoreConfig, load_store_config_from_env
from .grouping import DisplayEntry, format_date_label, format_time_label, group_messages
from .message import (
    Conversation,
    InvalidTransition,
    Message,
    MessageStatus,
    can_transition,
    status_rank,
    transition,
    transition_path,
)
from .presentation import Row, build_rows, format_row, rows_for
from .store import (
    ChangeKind,
    ConversationStore,
    IngestMode,
    StaleViewError,
    StoreChange,
    StoreSnapshot,
    Subscription,
)
from .transport import InMemoryTransport, SendReceipt, Transport, TransportFailure
from .view import ConversationView, RenderState
from .viewport import ScrollAction, ScrollController, ScrollKind, ViewState, anchor_key_at, visible_window

__all__ = [
    "ChangeKind",
    "Conversation",
    "ConversationStore",
    "ConversationView",
    "DisplayEntry",
    "IngestMode",
    "InMemoryTransport",
    "InvalidTransition",
    "Message",
    "MessageStatus",
    "RenderState",
    "Row",
    "ScrollAction",
    "ScrollController",
    "ScrollKind",
    "SendReceipt",
    "StaleViewError",
    "StoreChange",
    "StoreConfig",
    "StoreSnapshot",
    "Subscription",
    "Transport",
    "TransportFailure",
    "ViewState",
    "anchor_key_at",
    "build_rows",
    "can_transition",
    "format_date_label",
    "format_row",
    "format_time_label",
    "group_messages",
    "load_store_config_from_env",
    "rows_for",
    "status_rank",
    "transition",
    "transition_path",
    "visible_window",
]
