"""Decide whether the message view follows the tail or holds its position."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional, Sequence, TypeVar

from .presentation import ROW_MESSAGE, Row
from .store import ChangeKind, StoreChange

T = TypeVar("T")


class ViewState(str, enum.Enum):
    PINNED = "pinned_to_bottom"
    UNPINNED = "unpinned"


class ScrollKind(str, enum.Enum):
    SCROLL_TO_BOTTOM = "scroll_to_bottom"
    HOLD = "hold"
    NONE = "none"


@dataclass(frozen=True)
class ScrollAction:
    kind: ScrollKind
    target_index: Optional[int] = None
    anchor_key: Optional[str] = None
    unseen_count: int = 0


class ScrollController:
    """Two-state machine: pinned to the newest row, or unpinned while reading history."""

    def __init__(self) -> None:
        self.state = ViewState.PINNED
        self.anchor_key: Optional[str] = None
        self.unseen_count = 0

    @property
    def pinned(self) -> bool:
        return self.state is ViewState.PINNED

    def open(self) -> None:
        self.state = ViewState.PINNED
        self.anchor_key = None
        self.unseen_count = 0

    def user_scrolled(self, top_key: Optional[str], at_bottom: bool) -> None:
        """Record a manual scroll; ``top_key`` is the row at the top of the viewport."""

        self.anchor_key = top_key
        if at_bottom:
            self.state = ViewState.PINNED
            self.unseen_count = 0
        else:
            self.state = ViewState.UNPINNED

    def on_change(self, change: StoreChange, rows: Sequence[Row]) -> ScrollAction:
        if change.kind is ChangeKind.SEND:
            # Sending from the composer always brings the user back to the tail.
            self.open()
            return self._to_bottom(rows)
        if change.kind is ChangeKind.APPEND and change.added:
            if self.pinned:
                return self._to_bottom(rows)
            self.unseen_count += len(change.added)
            return self._hold(rows)
        if change.kind is ChangeKind.PREPEND:
            return self._hold(rows)
        return ScrollAction(ScrollKind.NONE, anchor_key=self.anchor_key, unseen_count=self.unseen_count)

    def _to_bottom(self, rows: Sequence[Row]) -> ScrollAction:
        target = len(rows) - 1 if rows else None
        return ScrollAction(ScrollKind.SCROLL_TO_BOTTOM, target_index=target)

    def _hold(self, rows: Sequence[Row]) -> ScrollAction:
        target = None
        if self.anchor_key is not None:
            for index, row in enumerate(rows):
                if row.key == self.anchor_key:
                    target = index
                    break
        return ScrollAction(
            ScrollKind.HOLD,
            target_index=target,
            anchor_key=self.anchor_key,
            unseen_count=self.unseen_count,
        )


def anchor_key_at(rows: Sequence[Row], top_index: int) -> Optional[str]:
    """Key of the message row at or below ``top_index``, else the nearest one above.

    Divider and loading rows are rebuilt when older pages arrive, so only
    message rows make stable anchors.
    """

    if not rows:
        return None
    top_index = min(max(top_index, 0), len(rows) - 1)
    for row in rows[top_index:]:
        if row.kind == ROW_MESSAGE:
            return row.key
    for row in reversed(rows[:top_index]):
        if row.kind == ROW_MESSAGE:
            return row.key
    return None


def visible_window(rows: Sequence[T], height: int, scroll: int) -> list[T]:
    """Return the rows shown in a pane of ``height`` lines scrolled ``scroll`` rows up from the bottom."""

    collected = list(rows)
    if height <= 0:
        return []
    end = max(0, len(collected) - scroll)
    start = max(0, end - height)
    return collected[start:end]
