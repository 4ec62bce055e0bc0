"""Unit tests for the bounded message log."""

import pytest

from roomrelay.chat.message_log import MessageLog
from roomrelay.chat.schemas import ChatMessage


def make(room="General", text="hi", sender="alice", sender_id="c1", **extra):
    return ChatMessage(sender=sender, senderId=sender_id, room=room, text=text, **extra)


def fill(log, room, count, prefix="m"):
    return [log.append(make(room=room, text=f"{prefix}{i}")) for i in range(count)]


class TestAppend:
    """Tests for id assignment and ordering."""

    def test_ids_are_monotonic_from_one(self):
        log = MessageLog()
        stored = fill(log, "General", 3)
        assert [m.id for m in stored] == [1, 2, 3]

    def test_append_replaces_id_and_keeps_original_untouched(self):
        log = MessageLog()
        original = make(id=99)
        stored = log.append(original)
        assert stored.id == 1
        assert original.id == 99
        assert log.get(1) is stored

    def test_timestamps_are_utc_and_non_decreasing(self):
        log = MessageLog()
        stored = fill(log, "General", 5)
        for a, b in zip(stored, stored[1:]):
            assert a.timestamp <= b.timestamp
        assert stored[0].timestamp.utcoffset().total_seconds() == 0

    def test_invalid_configuration(self):
        with pytest.raises(ValueError):
            MessageLog(capacity=0)
        with pytest.raises(ValueError):
            MessageLog(eviction="lru")


class TestEviction:
    """Tests for capacity enforcement."""

    def test_global_eviction_drops_oldest_overall(self):
        log = MessageLog(capacity=3)
        log.append(make(room="A", text="a1"))
        log.append(make(room="B", text="b1"))
        log.append(make(room="B", text="b2"))
        log.append(make(room="B", text="b3"))

        assert len(log) == 3
        assert log.room_messages("A") == []
        assert log.get(1) is None
        assert [m.text for m in log.room_messages("B")] == ["b1", "b2", "b3"]

    def test_capacity_one(self):
        log = MessageLog(capacity=1)
        fill(log, "General", 4)
        assert [m.id for m in log.snapshot()] == [4]

    def test_per_room_eviction_protects_quiet_rooms(self):
        log = MessageLog(capacity=2, eviction="per_room")
        log.append(make(room="A", text="a1"))
        fill(log, "B", 5)

        assert [m.text for m in log.room_messages("A")] == ["a1"]
        assert [m.text for m in log.room_messages("B")] == ["m3", "m4"]

    def test_private_messages_share_one_partition(self):
        log = MessageLog(capacity=1, eviction="per_room")
        log.append(make(room="A", text="room"))
        log.append(make(room="A", text="p1", isPrivate=True, recipientId="c2"))
        log.append(make(room="A", text="p2", isPrivate=True, recipientId="c2"))

        assert [m.text for m in log.room_messages("A")] == ["room"]
        assert [m.text for m in log.snapshot()] == ["room", "p2"]


class TestPage:
    """Tests for newest-first paging with skip/limit."""

    def test_first_page_is_newest_in_ascending_order(self):
        log = MessageLog()
        fill(log, "General", 25)
        page, has_more = log.page("General", skip=0, limit=20)
        assert [m.text for m in page] == [f"m{i}" for i in range(5, 25)]
        assert has_more is True

    def test_second_page_reaches_the_start(self):
        log = MessageLog()
        fill(log, "General", 25)
        page, has_more = log.page("General", skip=20, limit=20)
        assert [m.text for m in page] == [f"m{i}" for i in range(5)]
        assert has_more is False

    def test_pages_reconstruct_history_without_gaps(self):
        log = MessageLog()
        fill(log, "General", 47)
        collected = []
        skip, has_more = 0, True
        while has_more:
            page, has_more = log.page("General", skip=skip, limit=10)
            collected = page + collected
            skip += len(page)
        assert [m.id for m in collected] == list(range(1, 48))

    def test_skip_beyond_history_returns_empty(self):
        log = MessageLog()
        fill(log, "General", 3)
        assert log.page("General", skip=10, limit=5) == ([], False)

    def test_exact_fit_has_no_more(self):
        log = MessageLog()
        fill(log, "General", 20)
        page, has_more = log.page("General", skip=0, limit=20)
        assert len(page) == 20
        assert has_more is False

    def test_page_is_room_scoped_and_hides_private(self):
        log = MessageLog()
        log.append(make(room="A", text="a"))
        log.append(make(room="B", text="b"))
        log.append(make(room="A", text="secret", isPrivate=True, recipientId="c2"))
        page, _ = log.page("A")
        assert [m.text for m in page] == ["a"]

    def test_unknown_room_is_empty(self):
        assert MessageLog().page("nowhere") == ([], False)


class TestSearch:
    """Tests for case-insensitive room search."""

    def test_matches_text_or_sender(self):
        log = MessageLog()
        log.append(make(text="Hello World", sender="alice"))
        log.append(make(text="nothing here", sender="HELLOKITTY"))
        log.append(make(text="bye", sender="bob"))

        results = log.search("General", "hello")
        assert [m.sender for m in results] == ["alice", "HELLOKITTY"]

    def test_empty_query_returns_nothing(self):
        log = MessageLog()
        fill(log, "General", 3)
        assert log.search("General", "") == []
        assert log.search("General", "   ") == []

    def test_scoped_to_room_and_public(self):
        log = MessageLog()
        log.append(make(room="A", text="needle"))
        log.append(make(room="B", text="needle"))
        log.append(make(room="A", text="needle", isPrivate=True, recipientId="c2"))
        assert [m.id for m in log.search("A", "NEEDLE")] == [1]


class TestMutate:
    """Tests for in-place updates."""

    def test_mutate_updates_stored_message(self):
        log = MessageLog()
        stored = log.append(make())
        log.mutate(stored.id, lambda m: m.reactions.update({"c2": "👍"}))
        assert log.get(stored.id).reactions == {"c2": "👍"}

    def test_mutate_evicted_message_is_noop(self):
        log = MessageLog(capacity=1)
        first = log.append(make(text="old"))
        log.append(make(text="new"))
        called = []
        assert log.mutate(first.id, called.append) is None
        assert called == []

    def test_unread_private_filters_direction(self):
        log = MessageLog()
        log.append(make(sender_id="c1", isPrivate=True, recipientId="c2"))
        log.append(make(sender_id="c2", isPrivate=True, recipientId="c1"))
        log.append(make(sender_id="c1", isPrivate=True, recipientId="c2", read=True))
        assert [m.id for m in log.unread_private("c1", "c2")] == [1]
