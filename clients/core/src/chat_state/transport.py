"""Contract between the conversation store and the delivery collaborator."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Protocol, Sequence

from .message import Message, MessageStatus


class TransportFailure(Exception):
    def __init__(self, reason: str, *, cause: Optional[BaseException] = None):
        self.reason = reason
        self.cause = cause
        super().__init__(reason)

    @classmethod
    def wrap(cls, exc: BaseException) -> "TransportFailure":
        if isinstance(exc, TransportFailure):
            return exc
        return cls(f"{type(exc).__name__}: {exc}", cause=exc)


@dataclass(frozen=True)
class SendReceipt:
    id: str
    status: MessageStatus = MessageStatus.SENT


class Transport(Protocol):
    async def request_send(self, conversation_id: str, content: str, client_id: str) -> SendReceipt:
        ...

    async def request_older_page(
        self,
        conversation_id: str,
        before_id: Optional[str],
        before_timestamp: Optional[datetime],
        limit: int,
    ) -> Sequence[Message]:
        ...


class InMemoryTransport:
    """Loopback collaborator holding server-side history in memory.

    Sends complete immediately unless ``hold_sends`` is set, in which case each
    send waits on a future the caller completes with ``complete_send`` or
    ``fail_send``. ``fail_next_sends`` makes the next N sends raise.
    """

    def __init__(self, history: Sequence[Message] = (), *, hold_sends: bool = False) -> None:
        self.history: List[Message] = sorted(history, key=lambda m: m.created_at)
        self.hold_sends = hold_sends
        self.fail_next_sends = 0
        self.fail_next_pages = 0
        self.sent: List[Dict[str, str]] = []
        self.page_requests: List[Dict[str, object]] = []
        self._held: Dict[str, asyncio.Future] = {}
        self._counter = 0

    def _next_id(self) -> str:
        self._counter += 1
        return f"m{self._counter}"

    async def request_send(self, conversation_id: str, content: str, client_id: str) -> SendReceipt:
        self.sent.append({"conversation_id": conversation_id, "content": content, "client_id": client_id})
        if self.fail_next_sends > 0:
            self.fail_next_sends -= 1
            raise TransportFailure("send rejected")
        if self.hold_sends:
            future = asyncio.get_running_loop().create_future()
            self._held[client_id] = future
            return await future
        return SendReceipt(id=self._next_id())

    def complete_send(self, client_id: str, receipt: Optional[SendReceipt] = None) -> SendReceipt:
        receipt = receipt or SendReceipt(id=self._next_id())
        self._held.pop(client_id).set_result(receipt)
        return receipt

    def fail_send(self, client_id: str, exc: Optional[BaseException] = None) -> None:
        self._held.pop(client_id).set_exception(exc or TransportFailure("send failed"))

    def held_client_ids(self) -> List[str]:
        return list(self._held)

    async def request_older_page(
        self,
        conversation_id: str,
        before_id: Optional[str],
        before_timestamp: Optional[datetime],
        limit: int,
    ) -> Sequence[Message]:
        self.page_requests.append(
            {"conversation_id": conversation_id, "before_id": before_id, "before_timestamp": before_timestamp, "limit": limit}
        )
        if self.fail_next_pages > 0:
            self.fail_next_pages -= 1
            raise TransportFailure("page unavailable")
        candidates = [m for m in self.history if m.conversation_id == conversation_id]
        if before_id is not None:
            ids = [m.id for m in candidates]
            if before_id in ids:
                candidates = candidates[: ids.index(before_id)]
            elif before_timestamp is not None:
                candidates = [m for m in candidates if m.created_at < before_timestamp]
        elif before_timestamp is not None:
            candidates = [m for m in candidates if m.created_at < before_timestamp]
        return list(candidates[-limit:]) if limit > 0 else []
