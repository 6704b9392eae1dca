"""Glue a conversation store to its rows and scroll decisions."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import tzinfo
from typing import List, Mapping, Optional

from .presentation import Row, format_row, rows_for
from .store import ConversationStore, StoreSnapshot, Subscription
from .viewport import ScrollAction, ScrollController, ScrollKind, ViewState, anchor_key_at, visible_window


@dataclass
class RenderState:
    conversation_id: str
    rows: List[Row]
    view_state: ViewState
    scroll_action: ScrollAction
    unseen_count: int
    has_older: bool
    last_error: Optional[str]


class ConversationView:
    """Keeps rows and scroll decisions current for one open conversation."""

    def __init__(
        self,
        store: ConversationStore,
        *,
        author_names: Optional[Mapping[str, str]] = None,
        tz: Optional[tzinfo] = None,
    ) -> None:
        self.store = store
        self.author_names = dict(author_names or {})
        self.tz = tz
        self.controller = ScrollController()
        self.controller.open()
        self.snapshot = store.snapshot()
        self.rows = rows_for(self.snapshot, author_names=self.author_names, tz=tz)
        self.last_action = ScrollAction(ScrollKind.SCROLL_TO_BOTTOM, target_index=len(self.rows) - 1 if self.rows else None)
        self._subscription: Optional[Subscription] = store.subscribe(self._on_snapshot)

    def _on_snapshot(self, snapshot: StoreSnapshot) -> None:
        self.snapshot = snapshot
        self.rows = rows_for(snapshot, author_names=self.author_names, tz=self.tz)
        self.last_action = self.controller.on_change(snapshot.change, self.rows)

    def scroll_to(self, top_index: int, at_bottom: bool) -> None:
        top_key = anchor_key_at(self.rows, top_index) if 0 <= top_index < len(self.rows) else None
        self.controller.user_scrolled(top_key, at_bottom)

    def render(self) -> RenderState:
        return RenderState(
            conversation_id=self.snapshot.conversation_id,
            rows=list(self.rows),
            view_state=self.controller.state,
            scroll_action=self.last_action,
            unseen_count=self.controller.unseen_count,
            has_older=self.snapshot.has_older,
            last_error=self.snapshot.last_error,
        )

    def lines(self, height: int, scroll: int = 0) -> List[str]:
        return [format_row(row) for row in visible_window(self.rows, height, scroll)]

    def detach(self) -> None:
        if self._subscription is not None:
            self.store.unsubscribe(self._subscription)
            self._subscription = None
