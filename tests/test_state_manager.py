"""Tests for thread metadata and button state."""

from relay_agent.domain.context.state.thread_state import split_thread_id
from relay_agent.domain.models.context_models import ButtonStatus


class TestMetadata:
    def test_set_and_get(self, manager, thread_id):
        assert manager.set_metadata(thread_id, "iterations", 3) is True
        assert manager.get_metadata(thread_id, "iterations") == 3
        assert manager.get_metadata(thread_id) == {"iterations": 3}

    def test_missing_key_returns_default(self, manager, thread_id):
        assert manager.get_metadata(thread_id, "nope") is None
        assert manager.get_metadata(thread_id, "nope", "fallback") == "fallback"
        assert manager.get_metadata("unknown-thread") == {}

    def test_values_are_copied(self, manager, thread_id):
        value = {"nested": [1]}
        manager.set_metadata(thread_id, "data", value)
        value["nested"].append(2)
        manager.get_metadata(thread_id, "data")["nested"].append(3)

        assert manager.get_metadata(thread_id, "data") == {"nested": [1]}

    def test_empty_key_is_rejected(self, manager, thread_id):
        assert manager.set_metadata(thread_id, "", 1) is False

    def test_context_sets_channel_and_thread_ts(self, manager):
        manager.set_metadata("thread-1", "context", {"channel_id": "D42", "thread_ts": "1700.1"})
        assert manager.get_channel("thread-1") == "D42"
        assert manager.get_thread_ts("thread-1") == "1700.1"

    def test_channel_and_ts_from_thread_id(self, manager, thread_id):
        assert manager.get_channel(thread_id) == "C123"
        assert manager.get_thread_ts(thread_id) == "1700000000.000100"


class TestButtons:
    def test_set_and_get(self, manager, thread_id):
        assert manager.set_button_state(thread_id, "pick", "active", {"options": ["a", "b"]}) is True

        state = manager.get_button_state(thread_id, "pick")
        assert state.state == ButtonStatus.ACTIVE
        assert state.metadata == {"options": ["a", "b"]}

    def test_invalid_state_is_rejected(self, manager, thread_id):
        assert manager.set_button_state(thread_id, "pick", "exploded") is False
        assert manager.get_button_state(thread_id, "pick") is None

    def test_active_buttons_exclude_selected(self, manager, thread_id):
        manager.set_button_state(thread_id, "first", ButtonStatus.ACTIVE)
        manager.set_button_state(thread_id, "second", ButtonStatus.ACTIVE)
        manager.set_button_state(thread_id, "first", ButtonStatus.SELECTED)

        assert [b.action_id for b in manager.get_active_buttons(thread_id)] == ["second"]

    def test_button_click_marks_selected(self, manager):
        manager.set_button_state("C1:1700.1", "approve", ButtonStatus.ACTIVE, {"label": "Approve?"})
        message_id = manager.ingest_button_click({
            "user": {"id": "U7"},
            "channel": {"id": "C1"},
            "message": {"ts": "1700.5", "thread_ts": "1700.1"},
            "actions": [{"action_id": "approve", "value": "yes", "text": {"text": "Yes"}}],
        })

        assert message_id is not None
        state = manager.get_button_state("C1:1700.1", "approve")
        assert state.state == ButtonStatus.SELECTED
        assert state.metadata == {"label": "Approve?", "selected_value": "yes"}
        assert manager.get_thread_messages("C1:1700.1")[0].text == "[Button Selection: Yes]"


def test_state_for_llm(manager, thread_id):
    manager.record_tool_execution(thread_id, "postMessage", {"text": "hi"}, {"ts": "1700000001.0"})
    manager.record_tool_execution(thread_id, "createButtonMessage", {"text": "pick"}, {"action_id": "pick"})
    manager.record_tool_execution(thread_id, "search", {"q": "x"}, error="timeout")

    view = manager.get_state_for_llm(thread_id)

    assert view.channel_id == "C123"
    assert view.thread_ts == "1700000000.000100"
    assert view.sent_messages_count == 1
    assert [b.action_id for b in view.active_buttons] == ["pick"]
    assert len(view.recent_tool_results) == 3
    assert {"execution": "search", "status": "error", "success": False} in view.recent_tool_results


def test_split_thread_id():
    assert split_thread_id("C1:1700.1") == {"channel_id": "C1", "thread_ts": "1700.1"}
    assert split_thread_id("D99") == {"channel_id": "D99", "thread_ts": None}
    assert split_thread_id("1700.1") == {"channel_id": None, "thread_ts": "1700.1"}
