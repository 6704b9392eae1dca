"""Message value types and the status transition table."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict, FrozenSet, Optional, Tuple


class MessageStatus(str, enum.Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


_ALLOWED_EDGES: Dict[MessageStatus, FrozenSet[MessageStatus]] = {
    MessageStatus.PENDING: frozenset({MessageStatus.SENT, MessageStatus.FAILED}),
    MessageStatus.SENT: frozenset({MessageStatus.DELIVERED}),
    MessageStatus.DELIVERED: frozenset({MessageStatus.READ}),
    MessageStatus.READ: frozenset(),
    MessageStatus.FAILED: frozenset(),
}

_RANK: Dict[MessageStatus, int] = {
    MessageStatus.PENDING: 0,
    MessageStatus.FAILED: 1,
    MessageStatus.SENT: 2,
    MessageStatus.DELIVERED: 3,
    MessageStatus.READ: 4,
}


class InvalidTransition(Exception):
    def __init__(self, current: MessageStatus, requested: MessageStatus, message_id: str = ""):
        self.current = current
        self.requested = requested
        self.message_id = message_id
        target = f" for {message_id}" if message_id else ""
        super().__init__(f"Status {current.value} -> {requested.value} is not allowed{target}.")


def can_transition(current: MessageStatus, requested: MessageStatus) -> bool:
    return requested in _ALLOWED_EDGES[current]


def status_rank(status: MessageStatus) -> int:
    return _RANK[status]


def transition_path(current: MessageStatus, target: MessageStatus) -> Optional[Tuple[MessageStatus, ...]]:
    """Return the statuses visited when walking allowed edges from ``current`` to ``target``.

    The result excludes ``current`` and ends with ``target``. An empty tuple
    means the two are equal; ``None`` means ``target`` is not reachable, which
    covers every backwards move and anything leaving ``failed``.
    """

    if current == target:
        return ()
    for step in sorted(_ALLOWED_EDGES[current], key=status_rank):
        rest = transition_path(step, target)
        if rest is not None:
            return (step,) + rest
    return None


@dataclass(frozen=True)
class Message:
    id: str
    conversation_id: str
    author_id: str
    content: str
    created_at: datetime
    status: MessageStatus = MessageStatus.SENT
    client_id: str = ""
    retry_of: Optional[str] = None
    edited: bool = False
    updated_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("message id must be non-empty")
        if not self.conversation_id:
            raise ValueError("conversation_id must be non-empty")
        if self.created_at.tzinfo is None:
            raise ValueError("created_at must be timezone-aware")
        if not isinstance(self.status, MessageStatus):
            object.__setattr__(self, "status", MessageStatus(self.status))
        if not self.client_id:
            object.__setattr__(self, "client_id", self.id)

    @property
    def key(self) -> str:
        """Stable row identity that survives server id replacement."""

        return self.client_id

    def is_own(self, current_user_id: str) -> bool:
        return self.author_id == current_user_id

    def with_status(self, status: MessageStatus) -> "Message":
        return transition(self, status)

    def with_content(self, content: str, edited_at: Optional[datetime] = None) -> "Message":
        if self.status is not MessageStatus.PENDING:
            raise ValueError(f"content of {self.id} is immutable once {self.status.value}")
        return replace(self, content=content, edited=True, updated_at=edited_at or self.updated_at)


def transition(message: Message, status: MessageStatus) -> Message:
    """Return a copy of ``message`` moved along a single allowed edge."""

    if not can_transition(message.status, status):
        raise InvalidTransition(message.status, status, message.id)
    return replace(message, status=status)


@dataclass(frozen=True)
class Conversation:
    id: str
    participant_ids: FrozenSet[str] = field(default_factory=frozenset)
    is_group: Optional[bool] = None
    name: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "participant_ids", frozenset(self.participant_ids))
        if self.is_group is None:
            object.__setattr__(self, "is_group", len(self.participant_ids) > 2)

    def is_group_consistent(self) -> bool:
        return bool(self.is_group) == (len(self.participant_ids) > 2)
