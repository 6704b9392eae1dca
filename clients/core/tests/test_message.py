import unittest
from datetime import datetime, timezone

from chat_state.message import (
    Conversation,
    InvalidTransition,
    Message,
    MessageStatus,
    can_transition,
    status_rank,
    transition,
    transition_path,
)

T0 = datetime(2026, 1, 4, 9, 0, tzinfo=timezone.utc)


def _msg(status: MessageStatus = MessageStatus.PENDING, **overrides) -> Message:
    fields = {
        "id": "local-1",
        "conversation_id": "c1",
        "author_id": "alice",
        "content": "hi",
        "created_at": T0,
        "status": status,
    }
    fields.update(overrides)
    return Message(**fields)


class TransitionTableTests(unittest.TestCase):
    def test_only_listed_edges_are_allowed(self) -> None:
        allowed = {
            (MessageStatus.PENDING, MessageStatus.SENT),
            (MessageStatus.PENDING, MessageStatus.FAILED),
            (MessageStatus.SENT, MessageStatus.DELIVERED),
            (MessageStatus.DELIVERED, MessageStatus.READ),
        }
        for current in MessageStatus:
            for requested in MessageStatus:
                with self.subTest(current=current, requested=requested):
                    self.assertEqual(can_transition(current, requested), (current, requested) in allowed)

    def test_transition_returns_updated_copy(self) -> None:
        message = _msg()
        sent = transition(message, MessageStatus.SENT)
        self.assertEqual(sent.status, MessageStatus.SENT)
        self.assertEqual(message.status, MessageStatus.PENDING)

    def test_invalid_transition_raises_without_change(self) -> None:
        message = _msg(MessageStatus.READ, id="m1")
        with self.assertRaises(InvalidTransition) as ctx:
            transition(message, MessageStatus.SENT)
        self.assertEqual(ctx.exception.current, MessageStatus.READ)
        self.assertEqual(ctx.exception.requested, MessageStatus.SENT)
        self.assertIn("m1", str(ctx.exception))
        self.assertEqual(message.status, MessageStatus.READ)

    def test_failed_is_terminal(self) -> None:
        for requested in MessageStatus:
            self.assertFalse(can_transition(MessageStatus.FAILED, requested))
        self.assertIsNone(transition_path(MessageStatus.FAILED, MessageStatus.SENT))

    def test_transition_path_walks_forward_edges(self) -> None:
        self.assertEqual(
            transition_path(MessageStatus.PENDING, MessageStatus.READ),
            (MessageStatus.SENT, MessageStatus.DELIVERED, MessageStatus.READ),
        )
        self.assertEqual(transition_path(MessageStatus.PENDING, MessageStatus.FAILED), (MessageStatus.FAILED,))
        self.assertEqual(transition_path(MessageStatus.SENT, MessageStatus.SENT), ())
        self.assertIsNone(transition_path(MessageStatus.READ, MessageStatus.SENT))
        self.assertIsNone(transition_path(MessageStatus.SENT, MessageStatus.FAILED))

    def test_rank_orders_delivery_progress(self) -> None:
        ranks = [status_rank(s) for s in (MessageStatus.PENDING, MessageStatus.SENT, MessageStatus.DELIVERED, MessageStatus.READ)]
        self.assertEqual(ranks, sorted(ranks))


class MessageTests(unittest.TestCase):
    def test_client_id_defaults_to_id(self) -> None:
        message = _msg(MessageStatus.SENT, id="m7")
        self.assertEqual(message.client_id, "m7")
        self.assertEqual(message.key, "m7")

    def test_status_accepts_plain_strings(self) -> None:
        message = _msg("delivered", id="m7")
        self.assertIs(message.status, MessageStatus.DELIVERED)

    def test_naive_timestamps_rejected(self) -> None:
        with self.assertRaises(ValueError):
            _msg(created_at=datetime(2026, 1, 4, 9, 0))

    def test_empty_ids_rejected(self) -> None:
        with self.assertRaises(ValueError):
            _msg(id="")
        with self.assertRaises(ValueError):
            _msg(conversation_id="")

    def test_is_own_is_derived_from_author(self) -> None:
        message = _msg()
        self.assertTrue(message.is_own("alice"))
        self.assertFalse(message.is_own("bob"))

    def test_content_editable_only_while_pending(self) -> None:
        edited = _msg().with_content("hello", edited_at=T0)
        self.assertEqual(edited.content, "hello")
        self.assertTrue(edited.edited)
        with self.assertRaises(ValueError):
            _msg(MessageStatus.SENT).with_content("nope")


class ConversationTests(unittest.TestCase):
    def test_is_group_derived_from_participants(self) -> None:
        self.assertFalse(Conversation("c1", {"alice", "bob"}).is_group)
        self.assertTrue(Conversation("c2", ["alice", "bob", "carol"]).is_group)

    def test_explicit_group_flag_is_kept_but_reported(self) -> None:
        conversation = Conversation("c1", {"alice", "bob"}, is_group=True, name="pair")
        self.assertTrue(conversation.is_group)
        self.assertFalse(conversation.is_group_consistent())
        self.assertIsInstance(conversation.participant_ids, frozenset)


if __name__ == "__main__":
    unittest.main()
