import asyncio
import unittest
from datetime import datetime, timedelta, timezone

from chat_state.message import Message, MessageStatus
from chat_state.presentation import ROW_DIVIDER, ROW_MESSAGE
from chat_state.store import ConversationStore
from chat_state.transport import InMemoryTransport, SendReceipt
from chat_state.view import ConversationView
from chat_state.viewport import ScrollKind, ViewState

UTC = timezone.utc
T0 = datetime(2026, 1, 4, 8, 0, tzinfo=UTC)


def _remote(index: int, author: str = "bob") -> Message:
    return Message(
        id=f"h{index}",
        conversation_id="c1",
        author_id=author,
        content=f"message {index}",
        created_at=T0 + timedelta(minutes=index),
    )


class ConversationViewTests(unittest.IsolatedAsyncioTestCase):
    async def test_send_into_empty_conversation(self) -> None:
        transport = InMemoryTransport(hold_sends=True)
        store = ConversationStore("c1", "alice", transport, clock=lambda: T0, has_older=False)
        view = ConversationView(store, tz=UTC)
        self.assertEqual(view.lines(10), ["No messages yet. Start the conversation!"])

        local_id = store.send("hi")
        render = view.render()
        self.assertEqual([r.kind for r in render.rows], [ROW_DIVIDER, ROW_MESSAGE])
        self.assertEqual(render.rows[1].status, MessageStatus.PENDING)
        self.assertEqual(render.scroll_action.kind, ScrollKind.SCROLL_TO_BOTTOM)
        self.assertEqual(render.scroll_action.target_index, 1)

        for _ in range(5):
            await asyncio.sleep(0)
        transport.complete_send(local_id, SendReceipt(id="m1"))
        await store.drain()

        render = view.render()
        self.assertEqual(len(render.rows), 2)
        self.assertEqual(render.rows[1].key, local_id)
        self.assertEqual(render.rows[1].message_id, "m1")
        self.assertEqual(render.rows[1].status, MessageStatus.SENT)
        self.assertEqual(view.lines(10)[-1], "me: hi [08:00 AM] ✓")
        await store.close()

    async def test_load_more_keeps_top_row_in_place(self) -> None:
        history = [_remote(i) for i in range(1, 41)]
        store = ConversationStore("c1", "alice", InMemoryTransport(history), clock=lambda: T0 + timedelta(hours=2))
        store.ingest(history[20:])
        view = ConversationView(store, tz=UTC)

        view.scroll_to(5, at_bottom=False)
        top_key = view.rows[5].key
        self.assertEqual(view.render().view_state, ViewState.UNPINNED)

        added = await store.load_more()
        self.assertEqual(added, 20)

        render = view.render()
        self.assertEqual(render.scroll_action.kind, ScrollKind.HOLD)
        self.assertEqual(render.rows[render.scroll_action.target_index].key, top_key)
        self.assertEqual(render.view_state, ViewState.UNPINNED)
        self.assertEqual(render.rows[0].kind, ROW_DIVIDER)
        self.assertEqual(render.rows[1].key, "h1")

    async def test_load_more_with_divider_at_top_anchors_on_first_message(self) -> None:
        history = [_remote(i) for i in range(1, 41)]
        store = ConversationStore("c1", "alice", InMemoryTransport(history), clock=lambda: T0 + timedelta(hours=2))
        store.ingest(history[20:])
        view = ConversationView(store, tz=UTC)
        self.assertEqual(view.rows[0].kind, ROW_DIVIDER)

        view.scroll_to(0, at_bottom=False)
        await store.load_more()

        action = view.render().scroll_action
        self.assertEqual(action.kind, ScrollKind.HOLD)
        self.assertEqual(action.anchor_key, "h21")
        self.assertIsNotNone(action.target_index)
        self.assertEqual(view.rows[action.target_index].key, "h21")

    async def test_incoming_while_reading_history_counts_unseen(self) -> None:
        store = ConversationStore("c1", "alice", InMemoryTransport(), clock=lambda: T0, has_older=False)
        store.ingest([_remote(i) for i in range(1, 6)])
        view = ConversationView(store, tz=UTC)
        view.scroll_to(1, at_bottom=False)

        store.notify_message_created(_remote(6, author="carol"))
        render = view.render()
        self.assertEqual(render.scroll_action.kind, ScrollKind.HOLD)
        self.assertEqual(render.unseen_count, 1)

        view.scroll_to(len(view.rows) - 1, at_bottom=True)
        store.notify_message_created(_remote(7))
        self.assertEqual(view.render().scroll_action.kind, ScrollKind.SCROLL_TO_BOTTOM)
        self.assertEqual(view.render().unseen_count, 0)

    async def test_detach_stops_updates(self) -> None:
        store = ConversationStore("c1", "alice", InMemoryTransport(), has_older=False)
        view = ConversationView(store, tz=UTC)
        view.detach()
        view.detach()
        store.ingest([_remote(1)])
        self.assertEqual(len(view.rows), 1)


if __name__ == "__main__":
    unittest.main()
