"""Authoritative in-memory state for one open conversation."""

from __future__ import annotations

import asyncio
import enum
import itertools
import logging
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable, Deque, Dict, FrozenSet, Iterable, List, Optional, Set, Tuple, Union

from .config import StoreConfig
from .message import InvalidTransition, Message, MessageStatus, status_rank, transition, transition_path
from .transport import SendReceipt, Transport, TransportFailure

logger = logging.getLogger(__name__)

_LOCAL_ONLY = frozenset({MessageStatus.PENDING, MessageStatus.FAILED})


class StaleViewError(Exception):
    """Raised when an operation needs the latest window but it is not loaded."""


class IngestMode(str, enum.Enum):
    APPEND = "append"
    PREPEND = "prepend"


class ChangeKind(str, enum.Enum):
    OPEN = "open"
    SEND = "send"
    RESOLVE = "resolve"
    STATUS = "status"
    APPEND = "append"
    PREPEND = "prepend"
    LOADING = "loading"


@dataclass(frozen=True)
class StoreChange:
    kind: ChangeKind
    added: Tuple[str, ...] = ()
    updated: Tuple[str, ...] = ()
    removed: Tuple[str, ...] = ()


@dataclass(frozen=True)
class StoreSnapshot:
    conversation_id: str
    current_user_id: str
    messages: Tuple[Message, ...]
    change: StoreChange
    version: int = 0
    has_older: bool = True
    has_latest: bool = True
    is_loading_older: bool = False
    last_error: Optional[str] = None
    superseded: FrozenSet[str] = field(default_factory=frozenset)

    def find(self, key: str) -> Optional[Message]:
        for message in self.messages:
            if message.key == key:
                return message
        return None

    def keys(self) -> List[str]:
        return [message.key for message in self.messages]


Outcome = Union[SendReceipt, BaseException]
Callback = Callable[[StoreSnapshot], None]


@dataclass
class Subscription:
    callback: Callback

    def deliver(self, snapshot: StoreSnapshot) -> None:
        self.callback(snapshot)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ConversationStore:
    """Owns one conversation's messages, optimistic sends and pagination state.

    Every mutating method runs to completion on the event loop thread before
    returning, so operations are applied one at a time in call order. Results
    of transport calls re-enter through ``resolve_send`` and ``ingest`` the
    same way. Subscribers receive immutable snapshots; a mutation made from
    inside a subscriber callback is applied immediately but its snapshot is
    delivered after the current notification round finishes.
    """

    def __init__(
        self,
        conversation_id: str,
        current_user_id: str,
        transport: Transport,
        config: Optional[StoreConfig] = None,
        *,
        clock: Callable[[], datetime] = _utc_now,
        id_factory: Optional[Callable[[], str]] = None,
        has_latest: bool = True,
        has_older: bool = True,
    ) -> None:
        self.conversation_id = conversation_id
        self.current_user_id = current_user_id
        self.config = config or StoreConfig()
        self.has_latest = has_latest
        self.has_older = has_older
        self.is_loading_older = False
        self.last_error: Optional[str] = None
        self._transport = transport
        self._clock = clock
        if id_factory is None:
            counter = itertools.count(1)
            id_factory = lambda: f"{self.config.local_id_prefix}{next(counter)}"  # noqa: E731
        self._id_factory = id_factory
        self._messages: List[Message] = []
        self._history: Dict[str, List[MessageStatus]] = {}
        self._superseded: Set[str] = set()
        self._early_status: Dict[str, MessageStatus] = {}
        self._subscriptions: List[Subscription] = []
        self._outbox: Deque[StoreSnapshot] = deque()
        self._notifying = False
        self._tasks: Set[asyncio.Task] = set()
        self._load_lock = asyncio.Lock()
        self._closed = False
        self._version = 0
        self._snapshot = self._build_snapshot(StoreChange(ChangeKind.OPEN))

    # -- observer contract -------------------------------------------------

    def subscribe(self, callback: Callback) -> Subscription:
        subscription = Subscription(callback=callback)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        try:
            self._subscriptions.remove(subscription)
        except ValueError:
            return

    def snapshot(self) -> StoreSnapshot:
        return self._snapshot

    @property
    def closed(self) -> bool:
        return self._closed

    def status_history(self, key: str) -> Tuple[MessageStatus, ...]:
        return tuple(self._history.get(key, ()))

    # -- outbound ----------------------------------------------------------

    def send(self, content: str) -> str:
        """Insert an optimistic message and start delivering it; returns the local id."""

        self._ensure_open()
        if not content.strip():
            raise ValueError("cannot send an empty message")
        if not self.has_latest:
            raise StaleViewError(f"latest messages of {self.conversation_id} are not loaded")
        local_id = self._insert_optimistic(content, retry_of=None)
        self._publish(StoreChange(ChangeKind.SEND, added=(local_id,)))
        return local_id

    def retry(self, local_id: str) -> str:
        """Send the content of a failed message again as a new optimistic message.

        The failed message stays in the collection and is marked superseded.
        """

        self._ensure_open()
        index = self._index_of_key(local_id)
        if index is None:
            index = self._index_of_id(local_id)
        if index is None:
            raise KeyError(local_id)
        failed = self._messages[index]
        if failed.status is not MessageStatus.FAILED:
            raise InvalidTransition(failed.status, MessageStatus.PENDING, failed.id)
        if failed.key in self._superseded:
            raise ValueError(f"{failed.key} was already retried")
        if not self.has_latest:
            raise StaleViewError(f"latest messages of {self.conversation_id} are not loaded")
        new_id = self._insert_optimistic(failed.content, retry_of=failed.key)
        self._superseded.add(failed.key)
        self._publish(StoreChange(ChangeKind.SEND, added=(new_id,), updated=(failed.key,)))
        return new_id

    def resolve_send(self, local_id: str, outcome: Outcome) -> None:
        """Apply the transport outcome of a send. Never raises."""

        if self._closed:
            logger.debug("discarding send outcome for %s: store closed", local_id)
            return
        index = self._index_of_key(local_id)
        if index is None:
            logger.warning("send outcome for unknown message %s in %s", local_id, self.conversation_id)
            return
        current = self._messages[index]

        if isinstance(outcome, BaseException) or outcome.status is MessageStatus.FAILED:
            failure = TransportFailure.wrap(outcome) if isinstance(outcome, BaseException) else TransportFailure("rejected")
            if current.status is not MessageStatus.PENDING:
                logger.info("ignoring late failure for %s already %s", local_id, current.status.value)
                return
            logger.warning("send %s failed: %s", local_id, failure.reason)
            self._messages[index] = self._advance(current, MessageStatus.FAILED)
            self.last_error = failure.reason
            self._forget_early_status()
            self._publish(StoreChange(ChangeKind.RESOLVE, updated=(current.key,)))
            return

        if current.status is MessageStatus.FAILED:
            logger.info("ignoring late success for %s already failed", local_id)
            return
        target = outcome.status if outcome.status is not MessageStatus.PENDING else MessageStatus.SENT
        removed: Tuple[str, ...] = ()
        duplicate = self._index_of_id(outcome.id)
        if duplicate is not None and duplicate != index:
            # The server copy was ingested before this outcome arrived; fold it in.
            other = self._messages.pop(duplicate)
            if duplicate < index:
                index -= 1
            current = self._advance(current, other.status)
            self._history.pop(other.key, None)
            removed = (other.key,)
        updated = replace(self._advance(current, target), id=outcome.id)
        early = self._early_status.pop(outcome.id, None)
        if early is not None:
            updated = self._advance(updated, early)
        self._messages[index] = updated
        self._forget_early_status()
        self._publish(StoreChange(ChangeKind.RESOLVE, updated=(updated.key,), removed=removed))

    # -- inbound -----------------------------------------------------------

    def ingest(self, messages: Iterable[Message], mode: Union[IngestMode, str] = IngestMode.APPEND) -> Tuple[str, ...]:
        """Merge a batch of remote messages; returns the keys of newly added rows."""

        if self._closed:
            logger.debug("discarding ingest into closed store %s", self.conversation_id)
            return ()
        mode = IngestMode(mode)
        added, updated, removed = self._merge(messages, mode)
        if added or updated or removed:
            kind = ChangeKind.APPEND if mode is IngestMode.APPEND else ChangeKind.PREPEND
            self._publish(StoreChange(kind, added=added, updated=updated, removed=removed))
        return added

    def apply_status_event(self, message_id: str, status: Union[MessageStatus, str]) -> bool:
        """Move a message along one allowed edge.

        Returns ``False`` for unknown ids and repeated statuses. An event for an
        unknown id is held while sends are pending and applied when a receipt
        names that id. Disallowed edges raise ``InvalidTransition`` and leave
        the store unchanged.
        """

        if self._closed:
            return False
        status = MessageStatus(status)
        index = self._index_of_id(message_id)
        if index is None:
            if any(message.status is MessageStatus.PENDING for message in self._messages):
                # May belong to a send whose receipt has not arrived yet.
                early = self._early_status.get(message_id)
                if early is None or status_rank(status) > status_rank(early):
                    self._early_status[message_id] = status
                logger.debug("holding status %s for unresolved message %s", status.value, message_id)
            else:
                logger.info("status %s for unknown message %s", status.value, message_id)
            return False
        current = self._messages[index]
        if current.status is status:
            return False
        self._messages[index] = transition(current, status)
        self._history.setdefault(current.key, []).append(status)
        self._publish(StoreChange(ChangeKind.STATUS, updated=(current.key,)))
        return True

    def notify_message_created(self, message: Message) -> None:
        self.ingest([message], IngestMode.APPEND)

    def notify_status_changed(self, message_id: str, status: Union[MessageStatus, str]) -> None:
        try:
            self.apply_status_event(message_id, status)
        except (InvalidTransition, ValueError) as exc:
            logger.warning("rejected status event for %s: %s", message_id, exc)

    def notify_page_loaded(self, messages: Iterable[Message], direction: str) -> None:
        aliases = {"older": IngestMode.PREPEND, "newer": IngestMode.APPEND}
        self.ingest(messages, aliases.get(direction, direction))

    def mark_latest_loaded(self) -> None:
        if not self.has_latest:
            self.has_latest = True
            self._publish(StoreChange(ChangeKind.LOADING))

    async def load_more(self, limit: Optional[int] = None) -> int:
        """Fetch the page before the oldest loaded message and prepend it.

        Returns the number of rows added. Transport errors are recorded in
        ``last_error`` and yield 0.
        """

        self._ensure_open()
        if limit is None:
            limit = self.config.page_size
        if limit < 1:
            raise ValueError("limit must be positive")
        async with self._load_lock:
            if self._closed or not self.has_older:
                return 0
            before_id, before_ts = self._page_cursor()
            self.is_loading_older = True
            self._publish(StoreChange(ChangeKind.LOADING))
            try:
                page = await self._transport.request_older_page(self.conversation_id, before_id, before_ts, limit)
            except Exception as exc:
                failure = TransportFailure.wrap(exc)
                logger.warning("loading older page of %s failed: %s", self.conversation_id, failure.reason)
                if not self._closed:
                    self.is_loading_older = False
                    self.last_error = failure.reason
                    self._publish(StoreChange(ChangeKind.LOADING))
                return 0
            if self._closed:
                return 0
            self.is_loading_older = False
            if len(page) < limit:
                self.has_older = False
            added, updated, _ = self._merge(page, IngestMode.PREPEND)
            self._publish(StoreChange(ChangeKind.PREPEND, added=added, updated=updated))
            return len(added)

    # -- lifecycle ---------------------------------------------------------

    async def drain(self) -> None:
        """Wait until every in-flight delivery has been resolved."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._subscriptions.clear()
        self._outbox.clear()

    # -- internals ---------------------------------------------------------

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError(f"conversation store {self.conversation_id} is closed")

    def _index_of_key(self, key: str) -> Optional[int]:
        for index, message in enumerate(self._messages):
            if message.key == key:
                return index
        return None

    def _index_of_id(self, message_id: str) -> Optional[int]:
        for index, message in enumerate(self._messages):
            if message.id == message_id:
                return index
        return None

    def _tail_time(self) -> datetime:
        now = self._clock()
        if self._messages and now < self._messages[-1].created_at:
            return self._messages[-1].created_at
        return now

    def _insert_optimistic(self, content: str, retry_of: Optional[str]) -> str:
        # Raises before anything is inserted when no event loop is running.
        loop = asyncio.get_running_loop()
        local_id = self._id_factory()
        while self._index_of_key(local_id) is not None or self._index_of_id(local_id) is not None:
            local_id = self._id_factory()
        message = Message(
            id=local_id,
            conversation_id=self.conversation_id,
            author_id=self.current_user_id,
            content=content,
            created_at=self._tail_time(),
            status=MessageStatus.PENDING,
            client_id=local_id,
            retry_of=retry_of,
        )
        self._messages.append(message)
        self._history[local_id] = [MessageStatus.PENDING]
        task = loop.create_task(self._deliver(local_id, content))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return local_id

    async def _deliver(self, local_id: str, content: str) -> None:
        outcome: Outcome
        try:
            outcome = await self._transport.request_send(self.conversation_id, content, local_id)
        except Exception as exc:
            outcome = TransportFailure.wrap(exc)
        self.resolve_send(local_id, outcome)

    def _forget_early_status(self) -> None:
        if not any(message.status is MessageStatus.PENDING for message in self._messages):
            self._early_status.clear()

    def _advance(self, message: Message, target: MessageStatus) -> Message:
        path = transition_path(message.status, target)
        if not path:
            if path is None:
                logger.debug("keeping %s for %s over %s", message.status.value, message.id, target.value)
            return message
        self._history.setdefault(message.key, []).extend(path)
        return replace(message, status=target)

    def _merge(
        self, messages: Iterable[Message], mode: IngestMode
    ) -> Tuple[Tuple[str, ...], Tuple[str, ...], Tuple[str, ...]]:
        fresh: Dict[str, Message] = {}
        updated: List[str] = []
        for incoming in messages:
            if incoming.conversation_id != self.conversation_id:
                logger.warning("dropping message %s for conversation %s", incoming.id, incoming.conversation_id)
                continue
            index = self._index_of_id(incoming.id)
            if index is None and incoming.client_id != incoming.id:
                index = self._index_of_key(incoming.client_id)
                if index is not None and self._messages[index].status is MessageStatus.FAILED:
                    index = None
                    incoming = replace(incoming, client_id=incoming.id)
            if index is not None:
                current = self._messages[index]
                merged = self._advance(replace(current, id=incoming.id), incoming.status)
                if merged != current:
                    self._messages[index] = merged
                    updated.append(merged.key)
                else:
                    logger.debug("duplicate ingest of %s", incoming.id)
                continue
            seen = fresh.get(incoming.id)
            if seen is None and (
                self._index_of_key(incoming.key) is not None
                or any(other.key == incoming.key for other in fresh.values())
            ):
                incoming = replace(incoming, client_id=incoming.id)
            if seen is not None:
                if transition_path(seen.status, incoming.status):
                    fresh[incoming.id] = replace(seen, status=incoming.status)
                continue
            fresh[incoming.id] = incoming

        added = tuple(message.key for message in fresh.values())
        removed: Tuple[str, ...] = ()
        if fresh:
            if mode is IngestMode.APPEND:
                combined = self._messages + list(fresh.values())
            else:
                combined = list(fresh.values()) + self._messages
            # list.sort is stable, so equal timestamps keep batch/collection order.
            combined.sort(key=lambda message: message.created_at)
            self._messages = combined
            for message in fresh.values():
                self._history[message.key] = [message.status]
            if mode is IngestMode.APPEND:
                removed = self._evict_overflow()
        return added, tuple(updated), removed

    def _evict_overflow(self) -> Tuple[str, ...]:
        cap = self.config.max_messages
        if cap <= 0 or len(self._messages) <= cap:
            return ()
        overflow = len(self._messages) - cap
        # Local-only messages cannot be fetched again and are skipped. The newest
        # server message stays so the latest window remains loaded.
        refetchable = [index for index, message in enumerate(self._messages) if message.status not in _LOCAL_ONLY]
        doomed = set(refetchable[:-1][:overflow])
        if not doomed:
            return ()
        removed = [message for index, message in enumerate(self._messages) if index in doomed]
        self._messages = [message for index, message in enumerate(self._messages) if index not in doomed]
        count = len(removed)
        for message in removed:
            self._history.pop(message.key, None)
            self._superseded.discard(message.key)
        self.has_older = True
        logger.debug("evicted %d messages from %s", count, self.conversation_id)
        return tuple(message.key for message in removed)

    def _page_cursor(self) -> Tuple[Optional[str], Optional[datetime]]:
        if not self._messages:
            return None, None
        before_id = None
        for message in self._messages:
            if message.status not in _LOCAL_ONLY:
                before_id = message.id
                break
        return before_id, self._messages[0].created_at

    def _build_snapshot(self, change: StoreChange) -> StoreSnapshot:
        return StoreSnapshot(
            conversation_id=self.conversation_id,
            current_user_id=self.current_user_id,
            messages=tuple(self._messages),
            change=change,
            version=self._version,
            has_older=self.has_older,
            has_latest=self.has_latest,
            is_loading_older=self.is_loading_older,
            last_error=self.last_error,
            superseded=frozenset(self._superseded),
        )

    def _publish(self, change: StoreChange) -> None:
        self._version += 1
        self._snapshot = self._build_snapshot(change)
        self._outbox.append(self._snapshot)
        if self._notifying:
            return
        self._notifying = True
        try:
            while self._outbox:
                snapshot = self._outbox.popleft()
                for subscription in list(self._subscriptions):
                    try:
                        subscription.deliver(snapshot)
                    except Exception:
                        logger.exception("subscriber of %s failed", self.conversation_id)
        finally:
            self._notifying = False
