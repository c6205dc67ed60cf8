"""Tests for the per-conversation state machine."""

import asyncio

import pytest

from parley.conversations import (
    BUSY_MESSAGE,
    ConversationClosedError,
    ConversationStatus,
)
from parley.engine import (
    AssistantText,
    CompactionFinished,
    CompactionStarted,
    Completion,
    SessionIdentity,
    ToolInvocation,
)


def _idle(conversation):
    return lambda: conversation.status == ConversationStatus.IDLE


class TestSendMessage:
    async def test_starts_a_turn(self, conversation, engines, store, recorder):
        conversation.subscribe("web-1", "web", recorder)

        assert await conversation.send_message("hello") is True

        assert conversation.status == ConversationStatus.PROCESSING
        assert conversation.is_listening
        assert engines.current.pushed == ["hello"]
        assert recorder.types() == ["user_message"]
        assert recorder.events[0].source == "web"

        messages = await store.get_messages(conversation.id)
        assert [(m.role, m.content, m.origin) for m in messages] == [
            ("user", "hello", "web")
        ]

    async def test_busy_rejects_second_message(self, conversation, engines, store, recorder):
        conversation.subscribe("web-1", "web", recorder)
        await conversation.send_message("first")

        assert await conversation.send_message("second", origin="bot") is False

        assert engines.current.pushed == ["first"]
        errors = recorder.of_type("error")
        assert [e.error for e in errors] == [BUSY_MESSAGE]
        messages = await store.get_messages(conversation.id)
        assert [m.content for m in messages] == ["first"]

    async def test_concurrent_sends_admit_exactly_one(self, conversation, engines):
        results = await asyncio.gather(
            conversation.send_message("a"),
            conversation.send_message("b"),
            conversation.send_message("c"),
        )

        assert sorted(results) == [False, False, True]
        assert len(engines.current.pushed) == 1

    async def test_closed_conversation_raises(self, conversation):
        await conversation.close()

        with pytest.raises(ConversationClosedError):
            await conversation.send_message("hello")

    async def test_push_failure_resets_and_retries(self, conversation, engines):
        engines.current.fail_push = True

        assert await conversation.send_message("hello") is True

        assert len(engines.engines) == 2
        assert engines.engines[0].closed
        assert engines.current.pushed == ["hello"]

    async def test_push_failing_twice_returns_to_idle(self, conversation, engines, recorder):
        conversation.subscribe("web-1", "web", recorder)
        engines.fail_push = True
        engines.current.fail_push = True

        assert await conversation.send_message("hello") is False

        assert conversation.status == ConversationStatus.IDLE
        errors = recorder.of_type("error")
        assert len(errors) == 1
        assert errors[0].error.startswith("Failed to send message")


class TestEngineOutput:
    async def test_full_turn(self, conversation, engines, store, recorder, wait_until):
        conversation.subscribe("web-1", "web", recorder)
        await conversation.send_message("hello")

        engines.current.emit(
            AssistantText(text="Hi there"),
            Completion(
                success=True,
                cost_usd=0.01,
                duration_ms=1200,
                usage={"input_tokens": 100, "cache_read_input_tokens": 50},
            ),
        )
        await wait_until(_idle(conversation))

        assert recorder.types() == [
            "user_message",
            "assistant_message",
            "context_update",
            "result",
        ]
        context = recorder.of_type("context_update")[0]
        assert (context.used_tokens, context.max_tokens, context.used_percentage) == (
            150,
            1000,
            15,
        )
        result = recorder.of_type("result")[0]
        assert result.success is True
        assert result.cost == 0.01

        messages = await store.get_messages(conversation.id)
        assert [(m.role, m.origin) for m in messages] == [
            ("user", "web"),
            ("assistant", "engine"),
        ]

    async def test_no_context_update_without_usage(self, conversation, engines, recorder, wait_until):
        conversation.subscribe("web-1", "web", recorder)
        await conversation.send_message("hello")

        engines.current.emit(Completion(success=True))
        await wait_until(_idle(conversation))

        assert recorder.types() == ["user_message", "result"]

    async def test_tool_and_compaction_events(self, conversation, engines, recorder, wait_until):
        conversation.subscribe("web-1", "web", recorder)
        await conversation.send_message("hello")

        engines.current.emit(
            ToolInvocation(tool_id="t1", name="Bash", input={"command": "ls"}),
            CompactionStarted(),
            CompactionFinished(pre_tokens=5000, trigger="auto"),
            Completion(success=True),
        )
        await wait_until(_idle(conversation))

        tool = recorder.of_type("tool_use")[0]
        assert (tool.tool_name, tool.tool_id, tool.tool_input) == (
            "Bash",
            "t1",
            {"command": "ls"},
        )
        assert recorder.of_type("compacting")
        compacted = recorder.of_type("compacted")[0]
        assert (compacted.pre_tokens, compacted.trigger) == (5000, "auto")
        assert compacted.to_wire()["preTokens"] == 5000

    async def test_resume_token_persisted(self, conversation, engines, store, wait_until):
        await conversation.send_message("hello")

        engines.current.emit(SessionIdentity(token="tok-1"), Completion(success=True))
        await wait_until(_idle(conversation))

        assert conversation.resume_token == "tok-1"
        stored = await store.get_conversation(conversation.name)
        assert stored.resume_token == "tok-1"

    async def test_events_after_completion_reach_subscribers(self, conversation, engines, recorder, wait_until):
        conversation.subscribe("web-1", "web", recorder)
        await conversation.send_message("hello")
        engines.current.emit(Completion(success=True))
        await wait_until(_idle(conversation))

        assert await conversation.send_message("again") is True
        assert engines.current.pushed == ["hello", "again"]


class TestRecovery:
    async def test_stream_crash_recovers(self, conversation, engines, store, recorder, wait_until):
        conversation.subscribe("web-1", "web", recorder)
        await conversation.send_message("hello")
        engines.current.emit(SessionIdentity(token="tok-1"))
        await wait_until(lambda: conversation.resume_token == "tok-1")

        engines.current.crash(RuntimeError("boom"))
        await wait_until(lambda: len(engines.engines) == 2)
        await wait_until(_idle(conversation))

        assert [e.error for e in recorder.of_type("error")] == ["boom"]
        assert engines.engines[0].closed
        # A crash discards the resume token
        assert engines.current.resume_token is None
        assert conversation.resume_token is None
        stored = await store.get_conversation(conversation.name)
        assert stored.resume_token is None

        assert await conversation.send_message("retry") is True
        assert engines.current.pushed == ["retry"]

    async def test_stream_ending_mid_turn_recovers(self, conversation, engines, recorder, wait_until):
        conversation.subscribe("web-1", "web", recorder)
        await conversation.send_message("hello")

        engines.current.finish()
        await wait_until(lambda: len(engines.engines) == 2)
        await wait_until(_idle(conversation))

        errors = recorder.of_type("error")
        assert len(errors) == 1
        assert "stopped before finishing" in errors[0].error

    async def test_idle_stream_end_resets_quietly(self, conversation, engines, recorder, wait_until):
        conversation.subscribe("web-1", "web", recorder)
        await conversation.send_message("hello")
        engines.current.emit(SessionIdentity(token="tok-1"), Completion(success=True))
        await wait_until(_idle(conversation))

        engines.current.finish()
        await wait_until(lambda: len(engines.engines) == 2)

        assert recorder.of_type("error") == []
        assert engines.current.resume_token == "tok-1"
        assert conversation.status == ConversationStatus.IDLE


class TestStopGeneration:
    async def test_idle_returns_false(self, conversation):
        assert await conversation.stop_generation() is False

    async def test_interrupts_engine(self, conversation, engines):
        await conversation.send_message("hello")

        assert await conversation.stop_generation() is True
        assert engines.current.interrupts == 1

    async def test_failed_interrupt_recovers(self, conversation, engines, recorder):
        conversation.subscribe("web-1", "web", recorder)
        await conversation.send_message("hello")
        engines.current.fail_interrupt = True

        assert await conversation.stop_generation() is True

        assert conversation.status == ConversationStatus.IDLE
        assert len(engines.engines) == 2
        assert recorder.of_type("error")[0].error.startswith("Failed to stop generation")

    @pytest.mark.parametrize("stop_grace", [0.02])
    async def test_ignored_interrupt_resets_after_grace(
        self, conversation, engines, recorder, wait_until
    ):
        conversation.subscribe("web-1", "web", recorder)
        await conversation.send_message("hello")
        engines.current.emit(SessionIdentity(token="tok-1"))
        await wait_until(lambda: conversation.resume_token == "tok-1")

        # The engine accepts the interrupt and then never answers
        assert await conversation.stop_generation() is True
        assert conversation.status == ConversationStatus.PROCESSING

        await wait_until(_idle(conversation))

        assert len(engines.engines) == 2
        assert engines.engines[0].closed
        assert engines.current.resume_token == "tok-1"
        assert recorder.of_type("error")[0].error.startswith("Engine did not stop")
        assert await conversation.send_message("again") is True
        assert engines.current.pushed == ["again"]

    @pytest.mark.parametrize("stop_grace", [0.05])
    async def test_honoured_interrupt_keeps_engine(
        self, conversation, engines, recorder, wait_until
    ):
        conversation.subscribe("web-1", "web", recorder)
        await conversation.send_message("hello")
        await conversation.stop_generation()
        engines.current.emit(Completion(success=False))
        await wait_until(_idle(conversation))

        # A new turn started before the old grace period ends is left alone
        await conversation.send_message("next")
        await asyncio.sleep(0.1)

        assert conversation.status == ConversationStatus.PROCESSING
        assert len(engines.engines) == 1
        assert recorder.of_type("error") == []


class TestSubscribers:
    async def test_failing_callback_is_dropped(self, conversation, recorder):
        def broken(event):
            raise RuntimeError("socket gone")

        conversation.subscribe("broken", "web", broken)
        conversation.subscribe("web-1", "web", recorder)

        await conversation.send_message("hello")

        assert conversation.subscriber_count == 1
        assert recorder.types() == ["user_message"]

    async def test_failing_coroutine_callback_is_dropped(self, conversation, recorder, wait_until):
        async def broken(event):
            raise RuntimeError("socket gone")

        conversation.subscribe("broken", "web", broken)
        conversation.subscribe("web-1", "web", recorder)

        await conversation.send_message("hello")
        await wait_until(lambda: conversation.subscriber_count == 1)

    async def test_unsubscribe(self, conversation, recorder):
        conversation.subscribe("web-1", "web", recorder)
        conversation.unsubscribe("web-1")

        await conversation.send_message("hello")

        assert not conversation.has_subscribers
        assert recorder.events == []


class TestFileDelivery:
    async def test_new_output_file_is_delivered_and_attached(
        self, conversation, engines, store, media_path, recorder, wait_until
    ):
        conversation.subscribe("web-1", "web", recorder)
        (media_path / "before.txt").write_text("old")
        await conversation.send_message("make a chart")

        (media_path / "chart.png").write_bytes(b"png")
        engines.current.emit(AssistantText(text="Here it is"), Completion(success=True))
        await wait_until(_idle(conversation))

        assert recorder.types() == [
            "user_message",
            "assistant_message",
            "result",
            "file_delivery",
        ]
        delivery = recorder.of_type("file_delivery")[0]
        assert delivery.filename == "chart.png"
        assert delivery.file_type == "image"
        assert delivery.url == "/api/media/chart.png"

        reply = await store.get_latest_message(conversation.id, role="assistant")
        assert reply.metadata == {
            "files": [{"type": "image", "filename": "chart.png", "url": "/api/media/chart.png"}]
        }

    async def test_two_new_files_in_one_turn(
        self, conversation, engines, store, media_path, recorder, wait_until
    ):
        conversation.subscribe("web-1", "web", recorder)
        await conversation.send_message("export both")

        (media_path / "a.csv").write_text("a")
        (media_path / "b.png").write_bytes(b"png")
        engines.current.emit(AssistantText(text="Exported"), Completion(success=True))
        await wait_until(_idle(conversation))

        deliveries = recorder.of_type("file_delivery")
        assert [d.filename for d in deliveries] == ["a.csv", "b.png"]
        reply = await store.get_latest_message(conversation.id, role="assistant")
        assert [f["url"] for f in reply.metadata["files"]] == [
            "/api/media/a.csv",
            "/api/media/b.png",
        ]

        await conversation.deliver_file(media_path / "b.png")

        reply = await store.get_latest_message(conversation.id, role="assistant")
        assert len(reply.metadata["files"]) == 2
        assert len(recorder.of_type("file_delivery")) == 3

    async def test_redelivery_does_not_duplicate_attachment(
        self, conversation, store, media_path
    ):
        await store.create_message(conversation.id, "assistant", "done", "engine")
        path = media_path / "report.pdf"
        path.write_bytes(b"pdf")

        await conversation.deliver_file(path)
        await conversation.deliver_file(path)

        reply = await store.get_latest_message(conversation.id, role="assistant")
        assert len(reply.metadata["files"]) == 1
        assert reply.metadata["files"][0]["type"] == "document"

    async def test_file_outside_media_root_has_no_url(
        self, conversation, store, tmp_path, recorder
    ):
        conversation.subscribe("web-1", "web", recorder)
        await store.create_message(conversation.id, "assistant", "done", "engine")
        path = tmp_path / "elsewhere.mp3"
        path.write_bytes(b"mp3")

        output = await conversation.deliver_file(path, caption="listen")

        assert output.url is None
        delivery = recorder.of_type("file_delivery")[0]
        assert delivery.file_type == "audio"
        assert delivery.caption == "listen"
        reply = await store.get_latest_message(conversation.id, role="assistant")
        assert reply.metadata is None


class TestClose:
    async def test_close_terminates(self, conversation, engines, recorder):
        conversation.subscribe("web-1", "web", recorder)
        await conversation.send_message("hello")

        await conversation.close()
        await conversation.close()

        assert conversation.status == ConversationStatus.TERMINATED
        assert not conversation.has_subscribers
        assert engines.current.closed
        assert await conversation.stop_generation() is False
