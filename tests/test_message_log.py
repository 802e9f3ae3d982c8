"""Tests for the client-side ordered, de-duplicated message log."""

from datetime import datetime

from kinship.dm.log import MessageLog
from kinship.dm.schemas import MessageOut


def _message(message_id: str, seq: int, sender: str = "user_a", read: bool = False, conversation: str = "conv_1"):
    return MessageOut(
        id=message_id,
        conversation_id=conversation,
        seq=seq,
        sender_id=sender,
        content=f"content {message_id}",
        read=read,
        created_at=datetime(2026, 1, 1, 12, 0, seq),
    )


class TestMerge:
    def test_echo_then_push_keeps_one_entry(self):
        log = MessageLog("conv_1")
        echo = _message("m1", 1)

        assert log.merge(echo) is True
        assert log.merge(echo.model_copy()) is False

        assert [m.id for m in log.messages] == ["m1"]
        assert len(log) == 1
        assert "m1" in log

    def test_orders_by_seq_regardless_of_arrival(self):
        log = MessageLog("conv_1")
        log.merge(_message("m3", 3))
        log.merge(_message("m1", 1))
        log.merge(_message("m2", 2))

        assert [m.id for m in log] == ["m1", "m2", "m3"]

    def test_ignores_other_conversations(self):
        log = MessageLog("conv_1")

        assert log.merge(_message("m1", 1, conversation="conv_2")) is False
        assert len(log) == 0

    def test_merge_many_counts_new_entries(self):
        log = MessageLog("conv_1")
        log.merge(_message("m1", 1))

        added = log.merge_many([_message("m1", 1), _message("m2", 2)])

        assert added == 1


class TestUpdates:
    def test_apply_update_replaces_known_message(self):
        log = MessageLog("conv_1")
        log.merge(_message("m1", 1))

        assert log.apply_update(_message("m1", 1, read=True)) is True
        assert log.get("m1").read is True

    def test_apply_update_ignores_unknown_message(self):
        log = MessageLog("conv_1")

        assert log.apply_update(_message("m1", 1, read=True)) is False
        assert len(log) == 0

    def test_read_never_goes_back_to_unread(self):
        log = MessageLog("conv_1")
        log.merge(_message("m1", 1))
        log.apply_update(_message("m1", 1, read=True))

        log.apply_update(_message("m1", 1, read=False))

        assert log.get("m1").read is True

    def test_mark_read_and_unread_from(self):
        log = MessageLog("conv_1")
        log.merge(_message("m1", 1, sender="friend"))
        log.merge(_message("m2", 2, sender="friend"))
        log.merge(_message("m3", 3, sender="me"))

        assert log.unread_from("friend") == ["m1", "m2"]
        assert log.mark_read(["m1", "m1", "missing"]) == 1
        assert log.unread_from("friend") == ["m2"]
