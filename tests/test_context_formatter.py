"""Tests for context building."""

import logging

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from relay_agent.domain.context.context_formatter import EMPTY_CONTEXT_TEXT
from relay_agent.domain.errors import ContextBuildError
from relay_agent.domain.models.context_models import EntryRole


def say(manager, thread_id, source, text, **extra):
    message = {"thread_id": thread_id, "source": source, "text": text}
    if source == "user":
        message["source_id"] = "U1"
    message.update(extra)
    return manager.add_message(message)


class TestBuildLayout:
    def test_scenario_a_single_user_message(self, manager, thread_id):
        say(manager, thread_id, "user", "hello")

        entries = manager.build_context(thread_id)

        assert len(entries) == 3
        assert entries[0].content["type"] == "conversation_stats"
        assert entries[1].role == EntryRole.SYSTEM
        assert isinstance(entries[1].content, str)
        assert entries[2].role == EntryRole.USER
        assert entries[2].content["text"] == "hello"

    def test_indexes_increase_and_timestamps_do_not_decrease(self, manager, clock, thread_id):
        say(manager, thread_id, "user", "hi")
        clock.advance(seconds=1)
        manager.record_tool_execution(thread_id, "getUserInfo", {"user": "U1"}, {"name": "Ana"})
        clock.advance(seconds=1)
        say(manager, thread_id, "assistant", "hello Ana")
        clock.advance(seconds=1)
        say(manager, thread_id, "user", "thanks")

        entries = manager.build_context(thread_id)

        assert [e.index for e in entries] == list(range(len(entries)))
        timestamps = [e.timestamp for e in entries]
        assert timestamps == sorted(timestamps)

    def test_late_platform_message_does_not_go_back_in_time(self, manager, clock, thread_id):
        t0 = clock.now.timestamp()
        manager.ingest_platform_message({"ts": f"{t0:.6f}", "channel": "C123", "user": "U1", "text": "first"}, thread_id)
        clock.advance(seconds=5)
        manager.record_tool_execution(thread_id, "addReaction", {"name": "eyes"}, {"ok": True})
        # Posted before the reaction but delivered after it
        manager.ingest_platform_message({"ts": f"{t0 + 3:.6f}", "channel": "C123", "user": "U1", "text": "late"}, thread_id)

        entries = manager.build_context(thread_id)

        assert [e.content.get("text") for e in entries[2:] if e.role == EntryRole.USER] == ["first", "late"]
        timestamps = [e.timestamp for e in entries]
        assert timestamps == sorted(timestamps)
        assert entries[-1].timestamp == clock.now

    def test_prefix_uses_first_timeline_timestamp(self, manager, clock, thread_id):
        first_time = clock.now
        say(manager, thread_id, "user", "hi")
        clock.advance(seconds=5)
        say(manager, thread_id, "user", "anyone?")

        entries = manager.build_context(thread_id)
        assert entries[0].timestamp == first_time
        assert entries[1].timestamp == first_time

    def test_tool_call_sorts_before_message_it_produced(self, manager, thread_id):
        say(manager, thread_id, "user", "hi")
        manager.record_posted_message(
            thread_id,
            {"tool": "postMessage", "parameters": {"text": "hello!"}, "reasoning": "greet back"},
            {"ts": "1700000002.000200", "channel": "C123"}
        )

        entries = manager.build_context(thread_id)

        assert entries[3].content["type"] == "tool_call"
        assert entries[3].content["args"] == {"text": "hello!"}
        assert entries[4].role == EntryRole.ASSISTANT
        assert entries[4].content["message_ts"] == "1700000002.000200"

    def test_stats_and_persona(self, manager, thread_id):
        manager.set_metadata(thread_id, "context", {"channel_name": "#general", "mentioned_users": ["U9"]})
        manager.set_metadata(thread_id, "iterations", 2)
        say(manager, thread_id, "user", "hey")

        stats, persona = manager.build_context(thread_id)[:2]

        channel_info = stats.content["stats"]["channel_info"]
        assert channel_info["channel"] == "#general"
        assert channel_info["participants"] == 1
        assert channel_info["is_initial_message"] is True
        assert channel_info["mentioned_users_count"] == 1
        assert stats.content["stats"]["message_counts"]["user_messages"] == 1
        assert "<@U1>" in persona.content
        assert "#general" in persona.content
        assert "iteration of this conversation is 2" in persona.content
        assert "The current date and time is Wednesday, May 01, 2024" in persona.content

    def test_tool_role_is_system(self, manager, thread_id):
        say(manager, thread_id, "tool", "search finished")
        assert manager.build_context(thread_id)[-1].role == EntryRole.SYSTEM


class TestTurns:
    def test_turn_advances_after_bot_reply(self, manager, clock, thread_id):
        say(manager, thread_id, "user", "one")
        clock.advance(seconds=1)
        say(manager, thread_id, "assistant", "reply")
        clock.advance(seconds=1)
        say(manager, thread_id, "user", "two")

        turns = [e.turn for e in manager.build_context(thread_id)[2:]]
        assert turns == [0, 0, 1]

    def test_consecutive_user_messages_share_a_turn(self, manager, clock, thread_id):
        say(manager, thread_id, "user", "one")
        clock.advance(seconds=10)
        say(manager, thread_id, "user", "two")

        turns = [e.turn for e in manager.build_context(thread_id)[2:]]
        assert turns == [0, 0]

    def test_fast_follow_up_stays_in_turn(self, manager, clock, thread_id):
        say(manager, thread_id, "user", "one")
        clock.advance(ms=20)
        say(manager, thread_id, "assistant", "reply")
        clock.advance(ms=20)
        say(manager, thread_id, "user", "two")

        turns = [e.turn for e in manager.build_context(thread_id)[2:]]
        assert turns == [0, 0, 0]


class TestOptions:
    def test_limit_keeps_most_recent_messages(self, manager, clock, thread_id):
        for i in range(30):
            say(manager, thread_id, "user", f"m{i}")
            clock.advance(seconds=1)

        entries = manager.build_context(thread_id)
        assert len(entries) == 2 + 25
        assert entries[2].content["text"] == "m5"

        entries = manager.build_context(thread_id, limit=3)
        assert [e.content["text"] for e in entries[2:]] == ["m27", "m28", "m29"]

    def test_zero_limit_is_not_the_default(self, manager, clock, thread_id):
        manager.record_tool_execution(thread_id, "search", {"q": "x"}, [])
        for i in range(3):
            say(manager, thread_id, "user", f"m{i}")
            clock.advance(seconds=1)

        entries = manager.build_context(thread_id, limit=0)

        assert len(entries) == 1
        assert entries[0].content == EMPTY_CONTEXT_TEXT

    def test_tool_calls_before_window_are_dropped(self, manager, clock, thread_id):
        manager.record_tool_execution(thread_id, "search", {"q": "x"}, [])
        for i in range(3):
            clock.advance(seconds=1)
            say(manager, thread_id, "user", f"m{i}")

        entries = manager.build_context(thread_id, limit=2)
        assert all(e.content.get("type") != "tool_call" for e in entries[2:])

    def test_exclude_bot_messages_and_tool_calls(self, manager, clock, thread_id):
        say(manager, thread_id, "user", "hi")
        manager.record_tool_execution(thread_id, "search", {"q": "x"}, [])
        say(manager, thread_id, "assistant", "found nothing")

        entries = manager.build_context(thread_id, include_bot_messages=False, include_tool_calls=False)
        assert len(entries) == 3
        assert entries[2].role == EntryRole.USER

    def test_build_prunes_overlong_threads(self, manager, clock, thread_id):
        for i in range(80):
            say(manager, thread_id, "user", f"m{i}")
            clock.advance(seconds=1)

        manager.build_context(thread_id)
        assert manager.get_thread_summary(thread_id).counts.total == 51


class TestFailures:
    def test_unknown_thread_gets_fallback_entry(self, manager):
        entries = manager.build_context("empty-thread")
        assert len(entries) == 1
        assert entries[0].index == 0
        assert entries[0].role == EntryRole.SYSTEM
        assert entries[0].content == EMPTY_CONTEXT_TEXT

    def test_failing_entry_is_skipped(self, manager, metrics, thread_id, monkeypatch):
        say(manager, thread_id, "user", "good", id="ok-1")
        say(manager, thread_id, "user", "bad", id="broken")
        say(manager, thread_id, "user", "good again", id="ok-2")

        original = manager.formatter._message_entry

        def flaky(message, *args):
            if message.id == "broken":
                raise ValueError("cannot serialize")
            return original(message, *args)

        monkeypatch.setattr(manager.formatter, "_message_entry", flaky)
        entries = manager.build_context(thread_id)

        assert [e.content["message_id"] for e in entries[2:]] == ["ok-1", "ok-2"]
        assert [e.index for e in entries] == [0, 1, 2, 3]
        assert metrics.get_counter("context.build.entry_failures") == 1

    def test_build_error_when_fallback_fails(self, manager, monkeypatch):
        def broken():
            raise RuntimeError("no clock")

        monkeypatch.setattr(manager.formatter, "_fallback_entry", broken)
        with pytest.raises(ContextBuildError):
            manager.build_context("empty-thread")


def test_langchain_rendering(manager, clock, thread_id):
    say(manager, thread_id, "user", "hi")
    clock.advance(seconds=1)
    say(manager, thread_id, "assistant", "hello")

    messages = manager.build_llm_messages(thread_id)

    assert [type(m) for m in messages] == [SystemMessage, SystemMessage, HumanMessage, AIMessage]
    assert '"text": "hi"' in messages[2].content


class TestDebugRendering:
    def test_console_rendering_only_when_debug_enabled(self, manager, thread_id, caplog, monkeypatch):
        import relay_agent.domain.context.context_manager as context_manager_module

        rendered = []
        monkeypatch.setattr(
            context_manager_module,
            "format_context_for_console",
            lambda entries: rendered.append(len(entries)) or "rendered"
        )
        say(manager, thread_id, "user", "hi")

        caplog.set_level(logging.INFO, logger=context_manager_module.__name__)
        manager.build_context(thread_id)
        assert rendered == []

        caplog.set_level(logging.DEBUG, logger=context_manager_module.__name__)
        manager.build_context(thread_id)
        assert rendered == [3]
