"""Turn an ordered message sequence into display entries (date dividers + author runs)."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, tzinfo
from typing import Iterable, Iterator, Optional

from .message import Message

_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


@dataclass(frozen=True)
class DisplayEntry:
    message: Message
    is_own: bool
    is_first_of_author_run: bool
    divider_label: Optional[str] = None

    @property
    def has_divider(self) -> bool:
        return self.divider_label is not None


def _local(dt: datetime, tz: Optional[tzinfo]) -> datetime:
    # astimezone(None) converts to the viewer's local zone.
    return dt.astimezone(tz)


def local_day(dt: datetime, tz: Optional[tzinfo] = None) -> date:
    return _local(dt, tz).date()


def format_date_label(dt: datetime, tz: Optional[tzinfo] = None) -> str:
    local = _local(dt, tz)
    return f"{_MONTHS[local.month - 1]} {local.day}"


def format_time_label(dt: datetime, tz: Optional[tzinfo] = None) -> str:
    local = _local(dt, tz)
    hour = local.hour % 12 or 12
    suffix = "AM" if local.hour < 12 else "PM"
    return f"{hour:02d}:{local.minute:02d} {suffix}"


def group_messages(
    messages: Iterable[Message],
    current_user_id: str,
    *,
    tz: Optional[tzinfo] = None,
) -> Iterator[DisplayEntry]:
    """Yield one ``DisplayEntry`` per message, in source order.

    The input is expected to be sorted by ``created_at`` already; equal
    timestamps keep their source order. A divider label is attached to the
    first message of each local day. Runs are broken by a new day or a change
    of author.
    """

    previous_day: Optional[date] = None
    previous_author: Optional[str] = None
    for message in messages:
        day = local_day(message.created_at, tz)
        divider = None
        if previous_day is None or day != previous_day:
            divider = format_date_label(message.created_at, tz)
        first_of_run = divider is not None or message.author_id != previous_author
        yield DisplayEntry(
            message=message,
            is_own=message.is_own(current_user_id),
            is_first_of_author_run=first_of_run,
            divider_label=divider,
        )
        previous_day = day
        previous_author = message.author_id
