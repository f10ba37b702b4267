"""Tests for raw payload normalization."""

from datetime import datetime, timezone

from relay_agent.domain.context.normalizer import (
    format_blocks,
    normalize_button_click,
    normalize_llm_message,
    normalize_platform_message,
    parse_platform_ts,
)


def test_parse_platform_ts():
    assert parse_platform_ts("1700000000.5") == datetime.fromtimestamp(1700000000.5, tz=timezone.utc)
    assert parse_platform_ts(None) is None
    assert parse_platform_ts("not-a-ts") is None


def test_format_blocks():
    blocks = [
        {"type": "header", "text": {"type": "plain_text", "text": "Report"}},
        {"type": "section", "text": {"type": "mrkdwn", "text": "All good"}, "fields": [{"text": "CPU: 3%"}]},
        {"type": "divider"},
        {"type": "actions", "elements": [{"type": "button", "text": {"text": "OK"}, "value": "ok"}]},
        {"type": "image", "alt_text": "chart"},
    ]
    assert format_blocks(blocks) == "## Report\nAll good\nCPU: 3%\n---\nButtons: [OK: ok]\n[Image: chart]"


class TestPlatformMessages:
    def test_user_message(self):
        message = normalize_platform_message(
            {"ts": "1700000000.000100", "channel": "C1", "user": "U1", "text": "hello"}
        )
        assert message["thread_id"] == "C1:1700000000.000100"
        assert message["source"] == "user"
        assert message["source_id"] == "U1"
        assert message["type"] == "text"
        assert message["id"] == "1700000000.000100"

    def test_post_time_kept_in_metadata_not_as_timestamp(self):
        message = normalize_platform_message({"ts": "1700000000.5", "channel": "C1", "user": "U1", "text": "x"})

        assert "timestamp" not in message
        assert message["metadata"]["ts"] == "1700000000.5"
        assert message["metadata"]["posted_at"] == datetime.fromtimestamp(1700000000.5, tz=timezone.utc).isoformat()

    def test_bot_message_with_buttons(self):
        message = normalize_platform_message(
            {
                "ts": "1700000001.0",
                "thread_ts": "1700000000.0",
                "channel": "C1",
                "bot_id": "B1",
                "blocks": [{"type": "actions", "elements": [{"type": "button", "text": {"text": "Go"}}]}],
            }
        )
        assert message["thread_id"] == "C1:1700000000.0"
        assert message["source"] == "assistant"
        assert message["type"] == "button_message"
        assert message["text"] == "Buttons: [Go]"

    def test_bot_user_id_marks_bot(self):
        message = normalize_platform_message({"ts": "1.0", "user": "UBOT", "text": "x"}, "t", bot_user_id="UBOT")
        assert message["source"] == "assistant"


class TestLlmMessages:
    def test_post_message_with_sequence(self):
        message = normalize_llm_message(
            {"tool": "postMessage", "parameters": {"text": "Done!"}, "reasoning": "report"},
            "t",
            {"ts": "1700.2", "channel": "C1"},
            sequence=4
        )
        assert message["id"] == "bot_1700.2"
        assert message["from_tool_execution"] is True
        assert message["sequence"] == 4
        assert message["metadata"]["reasoning"] == "report"

    def test_button_message_lists_labels(self):
        message = normalize_llm_message(
            {"tool": "createButtonMessage", "parameters": {"text": "Pick", "buttons": [{"text": "A"}, "B"]}},
            "t"
        )
        assert message["type"] == "button_message"
        assert message["text"] == "Pick\nButtons: A, B"
        assert "sequence" not in message


def test_button_click():
    message = normalize_button_click({
        "user": {"id": "U7"},
        "channel": {"id": "C1"},
        "container": {"message_ts": "1700.5"},
        "actions": [{"action_id": "approve", "value": "yes"}],
    })
    assert message["thread_id"] == "C1:1700.5"
    assert message["type"] == "button_click"
    assert message["text"] == "[Button Selection: yes]"
    assert message["metadata"]["action_id"] == "approve"
