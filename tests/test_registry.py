"""Tests for the conversation registry."""

import asyncio

import pytest

from parley.conversations import (
    ClientNotSubscribedError,
    ConversationNotFoundError,
    ConversationStatus,
    InvalidConversationNameError,
)
from parley.engine import AssistantText, Completion


class TestGetOrCreate:
    async def test_returns_same_state(self, registry, store):
        first = await registry.get_or_create("default")
        second = await registry.get_or_create("default")

        assert first is second
        assert "default" in registry
        assert len(registry) == 1
        assert await store.get_conversation("default") is not None

    async def test_concurrent_loads_share_one_state(self, registry, engines, store):
        states = await asyncio.gather(*(registry.get_or_create("shared") for _ in range(5)))

        assert all(state is states[0] for state in states)
        assert len(engines.engines) == 1
        assert [c.name for c in await store.list_conversations()] == ["shared"]

    @pytest.mark.parametrize("name", ["!!!", "???", "  "])
    async def test_unusable_name_is_rejected(self, registry, store, name):
        for _ in range(2):
            with pytest.raises(InvalidConversationNameError):
                await registry.get_or_create(name)

        assert len(registry) == 0
        assert await store.list_conversations() == []

    async def test_names_are_normalized(self, registry):
        state = await registry.get_or_create("  My Project! ")

        assert state.name == "my-project"
        assert registry.get("my-project") is state

    async def test_resumes_from_stored_token(self, registry, engines, store):
        info = await store.create_conversation("resumed")
        await store.update_resume_token(info.id, "tok-9")

        await registry.get_or_create("resumed")

        assert engines.current.resume_token == "tok-9"

    async def test_load_notifies_listeners(self, registry):
        calls = []
        remove = registry.add_listener(lambda: calls.append("changed"))

        await registry.get_or_create("a")
        remove()
        await registry.get_or_create("b")

        assert calls == ["changed"]

    async def test_records_origin_of_new_conversation(self, registry, store, recorder):
        await registry.subscribe("telegram-1", "from-bot", "bot", recorder)

        info = await store.get_conversation("from-bot")
        assert info.created_by == "bot"


class TestClients:
    async def test_subscribe_binds_client(self, registry, recorder):
        state = await registry.subscribe("web-1", "default", "web", recorder)

        assert registry.get_client_conversation("web-1") == "default"
        assert state.subscriber_count == 1

    async def test_resubscribe_moves_client(self, registry, recorder):
        first = await registry.subscribe("web-1", "one", "web", recorder)
        second = await registry.subscribe("web-1", "two", "web", recorder)

        assert not first.has_subscribers
        assert second.subscriber_count == 1
        assert registry.get_client_conversation("web-1") == "two"

    async def test_unsubscribe(self, registry, recorder):
        state = await registry.subscribe("web-1", "default", "web", recorder)

        registry.unsubscribe("web-1")
        registry.unsubscribe("web-1")

        assert registry.get_client_conversation("web-1") is None
        assert not state.has_subscribers

    async def test_send_routes_to_bound_conversation(self, registry, engines, make_recorder):
        web = make_recorder()
        bot = make_recorder()
        await registry.subscribe("web-1", "default", "web", web)
        await registry.subscribe("telegram-1", "default", "bot", bot)

        assert await registry.send("telegram-1", "hello", "bot") is True

        assert engines.current.pushed == ["hello"]
        # Every subscriber sees the message, including the sender
        assert web.types() == ["user_message"]
        assert bot.events[0].source == "bot"

    async def test_send_without_binding_raises(self, registry):
        with pytest.raises(ClientNotSubscribedError):
            await registry.send("nobody", "hello")

    async def test_send_after_archive_raises(self, registry, recorder):
        await registry.subscribe("web-1", "default", "web", recorder)
        await registry.archive("default")

        with pytest.raises(ConversationNotFoundError):
            await registry.send("web-1", "hello")

    async def test_busy_send_returns_false(self, registry, make_recorder):
        web = make_recorder()
        bot = make_recorder()
        await registry.subscribe("web-1", "default", "web", web)
        await registry.subscribe("telegram-1", "default", "bot", bot)

        assert await registry.send("web-1", "first") is True
        assert await registry.send("telegram-1", "second", "bot") is False

        assert web.types() == ["user_message", "error"]
        assert bot.types() == ["user_message", "error"]


class TestLifecycle:
    async def test_archive_evicts_and_closes(self, registry, store, engines):
        state = await registry.get_or_create("old")
        await store.pin("old")

        assert await registry.archive("old") is True

        assert "old" not in registry
        assert state.status == ConversationStatus.TERMINATED
        assert engines.current.closed
        info = await store.get_conversation("old")
        assert info.archived and not info.pinned

    async def test_unarchive_pin_rename_notify(self, registry, store):
        await store.create_conversation("notes")
        calls = []
        registry.add_listener(lambda: calls.append(1))

        assert await registry.pin("notes") is True
        assert await registry.unpin("notes") is True
        assert await registry.rename("notes", "Meeting notes") is True
        assert await registry.archive("notes") is True
        assert await registry.unarchive("notes") is True
        assert await registry.pin("missing") is False

        assert len(calls) == 5
        info = await store.get_conversation("notes")
        assert info.title == "Meeting notes"
        assert not info.archived

    async def test_delete_removes_everything(self, registry, store):
        state = await registry.get_or_create("doomed")
        await store.create_message(state.id, "user", "hi", "web")
        await store.track_thread(1, 10, "doomed")

        assert await registry.delete("doomed") is True

        assert "doomed" not in registry
        assert await store.get_conversation("doomed") is None
        assert await store.get_messages(state.id) == []
        assert await store.get_thread_conversation(1, 10) is None

    async def test_reload_after_archive_creates_fresh_state(self, registry):
        first = await registry.get_or_create("default")
        await registry.archive("default")

        second = await registry.get_or_create("default")

        assert second is not first
        assert second.status == ConversationStatus.IDLE

    async def test_lifecycle_ops_use_canonical_name(self, registry, store):
        state = await registry.get_or_create("default")

        assert await registry.pin("Default")
        assert await registry.archive(" DEFAULT ")

        assert "default" not in registry
        assert state.status == ConversationStatus.TERMINATED
        assert (await store.get_conversation("default")).archived

    async def test_cleanup_evicts_unwatched(self, registry, recorder):
        await registry.subscribe("web-1", "watched", "web", recorder)
        await registry.get_or_create("idle")

        assert await registry.cleanup() == 1

        assert "watched" in registry
        assert "idle" not in registry

    async def test_cleanup_keeps_busy_conversations(
        self, registry, engines, recorder, wait_until
    ):
        await registry.subscribe("web-1", "busy", "web", recorder)
        await registry.send("web-1", "hello")
        registry.unsubscribe("web-1")

        assert await registry.cleanup() == 0
        assert registry.get("busy").is_busy

        state = registry.get("busy")
        engines.current.emit(Completion(success=True))
        await wait_until(lambda: not state.is_busy)

        assert await registry.cleanup() == 1
        assert "busy" not in registry

    async def test_get_messages(self, registry, engines, wait_until):
        state = await registry.get_or_create("default")
        await state.send_message("hello")
        engines.current.emit(AssistantText(text="hi"), Completion(success=True))
        await wait_until(lambda: not state.is_busy)

        messages = await registry.get_messages("default")

        assert [m.content for m in messages] == ["hello", "hi"]
        assert await registry.get_messages("missing") == []


class TestFileBroadcast:
    async def test_delivers_to_watched_conversations_only(
        self, registry, media_path, make_recorder
    ):
        one = make_recorder()
        two = make_recorder()
        await registry.subscribe("web-1", "one", "web", one)
        await registry.subscribe("web-2", "two", "web", two)
        await registry.get_or_create("nobody-watching")
        path = media_path / "shared.txt"
        path.write_text("x")

        delivered = await registry.broadcast_file_delivery(path, caption="fyi")

        assert delivered == 2
        assert one.of_type("file_delivery")[0].caption == "fyi"
        assert two.of_type("file_delivery")[0].url == "/api/media/shared.txt"
