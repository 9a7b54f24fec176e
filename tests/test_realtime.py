"""
Tests: realtime hub, presence channel and ORM change feed.

Covers:
    - deferred delivery order, wildcard subscribers, unsubscribe
    - failing subscriber does not block the others
    - thread worker delivers without an explicit drain
    - presence join/leave/sync
    - committed writes publish INSERT/UPDATE/DELETE; rollbacks publish nothing
"""

import threading

import pytest

from app.models import db as _db
from app.models.chat import ChatMessage
from app.models.directory import Sector
from app.realtime import DELETE, INSERT, UPDATE, ChangeEvent, PresenceChannel, RealtimeHub


# ═════════════════════════════════════════════════════════════════════════════
# HUB
# ═════════════════════════════════════════════════════════════════════════════

class TestRealtimeHub:
    def test_deferred_delivery_in_order(self):
        hub = RealtimeHub(delivery="deferred")
        seen = []
        hub.subscribe("chat_messages", lambda e: seen.append(e.new["id"]))

        for i in range(3):
            hub.publish(ChangeEvent("chat_messages", INSERT, new={"id": str(i)}))
        assert seen == []
        assert hub.pending() == 3

        assert hub.drain() == 3
        assert seen == ["0", "1", "2"]
        assert hub.pending() == 0

    def test_table_routing_and_wildcard(self):
        hub = RealtimeHub(delivery="deferred")
        chat, everything = [], []
        hub.subscribe("chat_messages", chat.append)
        hub.subscribe("*", everything.append)

        hub.publish(ChangeEvent("oficios", INSERT, new={"id": "o1"}))
        hub.publish(ChangeEvent("chat_messages", INSERT, new={"id": "m1"}))
        hub.drain()

        assert [e.table for e in chat] == ["chat_messages"]
        assert [e.table for e in everything] == ["oficios", "chat_messages"]

    def test_unsubscribe(self):
        hub = RealtimeHub(delivery="deferred")
        seen = []
        sub = hub.subscribe("chat_messages", seen.append)
        assert hub.subscriber_count("chat_messages") == 1
        sub.unsubscribe()
        sub.unsubscribe()
        assert hub.subscriber_count() == 0

        hub.publish(ChangeEvent("chat_messages", DELETE, old={"id": "x"}))
        hub.drain()
        assert seen == []

    def test_failing_subscriber_is_isolated(self):
        hub = RealtimeHub(delivery="deferred")
        seen = []

        def boom(event):
            raise RuntimeError("subscriber bug")

        hub.subscribe("chat_messages", boom)
        hub.subscribe("chat_messages", seen.append)
        hub.publish(ChangeEvent("chat_messages", INSERT, new={"id": "1"}))
        hub.drain()
        assert len(seen) == 1

    def test_events_published_while_draining_are_delivered(self):
        hub = RealtimeHub(delivery="deferred")
        seen = []

        def echo(event):
            seen.append(event.type)
            if event.type == INSERT:
                hub.publish(ChangeEvent("chat_messages", UPDATE, new=event.new, old=event.new))

        hub.subscribe("chat_messages", echo)
        hub.publish(ChangeEvent("chat_messages", INSERT, new={"id": "1"}))
        assert hub.drain() == 2
        assert seen == [INSERT, UPDATE]

    def test_clear_drops_pending(self):
        hub = RealtimeHub(delivery="deferred")
        hub.publish(ChangeEvent("chat_messages", INSERT, new={"id": "1"}))
        hub.publish(ChangeEvent("chat_messages", INSERT, new={"id": "2"}))
        assert hub.clear() == 2
        assert hub.drain() == 0

    def test_thread_delivery(self):
        hub = RealtimeHub(delivery="thread")
        delivered = threading.Event()
        hub.subscribe("chat_messages", lambda e: delivered.set())
        hub.start()
        try:
            assert hub.running
            hub.publish(ChangeEvent("chat_messages", INSERT, new={"id": "1"}))
            assert delivered.wait(timeout=5)
        finally:
            hub.stop()
        assert not hub.running

    def test_invalid_arguments(self):
        with pytest.raises(ValueError):
            RealtimeHub(delivery="websocket")
        with pytest.raises(ValueError):
            ChangeEvent("chat_messages", "UPSERT")


# ═════════════════════════════════════════════════════════════════════════════
# PRESENCE
# ═════════════════════════════════════════════════════════════════════════════

class TestPresenceChannel:
    def test_join_leave_sync(self):
        channel = PresenceChannel("online-users")
        events = []
        channel.on("join", lambda key, meta: events.append(("join", key)))
        channel.on("leave", lambda key, meta: events.append(("leave", key)))
        channel.on("sync", lambda state: events.append(("sync", sorted(state))))

        channel.track("u1", {"name": "Ana"})
        channel.track("u2")
        channel.untrack("u1")
        channel.untrack("missing")

        assert events == [
            ("join", "u1"), ("sync", ["u1"]),
            ("join", "u2"), ("sync", ["u1", "u2"]),
            ("leave", "u1"), ("sync", ["u2"]),
        ]
        assert channel.state() == {"u2": {}}

    def test_off_removes_listener(self):
        channel = PresenceChannel("online-users")
        seen = []
        off = channel.on("sync", seen.append)
        off()
        channel.track("u1")
        assert seen == []

    def test_hub_reuses_channel(self):
        hub = RealtimeHub(delivery="deferred")
        assert hub.presence("online-users") is hub.presence("online-users")

    def test_unknown_event(self):
        with pytest.raises(ValueError):
            PresenceChannel("x").on("typing", lambda *a: None)


# ═════════════════════════════════════════════════════════════════════════════
# CHANGE FEED
# ═════════════════════════════════════════════════════════════════════════════

class TestChangeFeed:
    @pytest.fixture()
    def recorded(self, hub):
        events = []
        sub = hub.subscribe("chat_messages", events.append)
        yield events
        sub.unsubscribe()

    def test_insert_update_delete_published_after_commit(self, hub, recorded):
        msg = ChatMessage(sender_id="u1", receiver_id="u2", message="Olá")
        _db.session.add(msg)
        _db.session.flush()
        assert hub.pending() == 0

        _db.session.commit()
        hub.drain()
        assert [e.type for e in recorded] == [INSERT]
        assert recorded[0].new["message"] == "Olá"
        assert recorded[0].old is None

        assert msg.read is False
        msg.read = True
        _db.session.commit()
        hub.drain()
        assert recorded[1].type == UPDATE
        assert recorded[1].new["read"] is True
        assert recorded[1].old["read"] is False

        msg_id = msg.id
        _db.session.delete(msg)
        _db.session.commit()
        hub.drain()
        assert recorded[2].type == DELETE
        assert recorded[2].old["id"] == msg_id
        assert recorded[2].new is None

    def test_rollback_publishes_nothing(self, hub, recorded):
        _db.session.add(ChatMessage(sender_id="u1", message="rascunho"))
        _db.session.flush()
        _db.session.rollback()
        _db.session.commit()
        hub.drain()
        assert recorded == []

    def test_untracked_tables_are_ignored(self, hub):
        everything = []
        sub = hub.subscribe("*", everything.append)
        try:
            _db.session.add(Sector(id="edu", name="Secretaria de Educação"))
            _db.session.commit()
            hub.drain()
        finally:
            sub.unsubscribe()
        assert everything == []
