"""Map store snapshots and display entries to renderable rows."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import tzinfo
from typing import Iterable, List, Mapping, Optional

from .grouping import DisplayEntry, format_time_label, group_messages
from .message import MessageStatus
from .store import StoreSnapshot

STATUS_GLYPHS = {
    MessageStatus.PENDING: "⏳",
    MessageStatus.SENT: "✓",
    MessageStatus.DELIVERED: "✓✓",
    MessageStatus.READ: "👁",
    MessageStatus.FAILED: "✗",
}

ROW_DIVIDER = "divider"
ROW_MESSAGE = "message"
ROW_LOADING = "loading"
ROW_EMPTY = "empty"

LOADING_TEXT = "Loading messages..."
EMPTY_TEXT = "No messages yet. Start the conversation!"


@dataclass(frozen=True)
class Row:
    kind: str
    key: str
    text: str = ""
    message_id: Optional[str] = None
    author_label: Optional[str] = None
    time_label: str = ""
    status: Optional[MessageStatus] = None
    status_glyph: str = ""
    is_own: bool = False
    dimmed: bool = False
    retryable: bool = False


def _author_label(author_id: str, author_names: Optional[Mapping[str, str]]) -> str:
    if author_names and author_id in author_names:
        return author_names[author_id]
    return author_id


def build_rows(
    snapshot: StoreSnapshot,
    entries: Iterable[DisplayEntry],
    *,
    author_names: Optional[Mapping[str, str]] = None,
    tz: Optional[tzinfo] = None,
) -> List[Row]:
    """Build rows for one render pass. Rows are keyed by the message's stable ``key``."""

    rows: List[Row] = []
    if snapshot.is_loading_older:
        rows.append(Row(kind=ROW_LOADING, key="loading", text=LOADING_TEXT))
    for entry in entries:
        message = entry.message
        if entry.divider_label is not None:
            rows.append(Row(kind=ROW_DIVIDER, key=f"divider:{message.key}", text=entry.divider_label))
        superseded = message.key in snapshot.superseded
        failed = message.status is MessageStatus.FAILED
        show_author = entry.is_first_of_author_run and not entry.is_own
        rows.append(
            Row(
                kind=ROW_MESSAGE,
                key=message.key,
                text=message.content,
                message_id=message.id,
                author_label=_author_label(message.author_id, author_names) if show_author else None,
                time_label=format_time_label(message.created_at, tz),
                status=message.status,
                status_glyph=STATUS_GLYPHS[message.status] if entry.is_own else "",
                is_own=entry.is_own,
                dimmed=failed and superseded,
                retryable=failed and not superseded,
            )
        )
    if not snapshot.messages and not snapshot.is_loading_older:
        rows.append(Row(kind=ROW_EMPTY, key="empty", text=EMPTY_TEXT))
    return rows


def format_row(row: Row) -> str:
    if row.kind == ROW_DIVIDER:
        return f"-- {row.text} --"
    if row.kind != ROW_MESSAGE:
        return row.text
    prefix = "me" if row.is_own else (row.author_label or "")
    head = f"{prefix}: " if prefix else "  "
    line = f"{head}{row.text} [{row.time_label}]"
    if row.status_glyph:
        line = f"{line} {row.status_glyph}"
    if row.retryable:
        line = f"{line} (R to retry)"
    return line


def rows_for(
    snapshot: StoreSnapshot,
    *,
    author_names: Optional[Mapping[str, str]] = None,
    tz: Optional[tzinfo] = None,
) -> List[Row]:
    entries = group_messages(snapshot.messages, snapshot.current_user_id, tz=tz)
    return build_rows(snapshot, entries, author_names=author_names, tz=tz)
