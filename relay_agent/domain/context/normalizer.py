"""
Turns raw platform and LLM payloads into message dicts the MessageStore accepts.

Payloads arrive in several shapes (platform events, LLM tool calls, button
clicks, system notes). Each normalizer returns a plain dict with `thread_id`,
`source`, `text`, `type` and `metadata`. Messages are stamped by the store when
they are ingested; a platform post time is kept in `metadata`. Validation
happens when the dict is added to the store.
"""

from typing import Dict, List, Any, Mapping, Optional
from datetime import datetime, timezone
import uuid

from ..models.context_models import MessageSource, MessageType


def parse_platform_ts(ts: Any) -> Optional[datetime]:
    """Convert a platform timestamp ("1700000000.000100") into a UTC datetime"""

    if ts is None or ts == "":
        return None
    try:
        return datetime.fromtimestamp(float(ts), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def format_blocks(blocks: Any) -> str:
    """Flatten rich message blocks into readable text"""

    if not isinstance(blocks, list):
        return ""

    lines: List[str] = []
    for block in blocks:
        if not isinstance(block, Mapping):
            continue
        block_type = block.get("type")
        block_text = (block.get("text") or {}).get("text") if isinstance(block.get("text"), Mapping) else None

        if block_type == "header":
            if block_text:
                lines.append(f"## {block_text}")
        elif block_type == "section":
            if block_text:
                lines.append(block_text)
            for field in block.get("fields") or []:
                if isinstance(field, Mapping) and field.get("text"):
                    lines.append(field["text"])
        elif block_type == "actions":
            buttons = []
            for element in block.get("elements") or []:
                if not isinstance(element, Mapping) or element.get("type") != "button":
                    continue
                label = (element.get("text") or {}).get("text") or "Button"
                value = element.get("value")
                buttons.append(f"[{label}: {value}]" if value else f"[{label}]")
            if buttons:
                lines.append("Buttons: " + ", ".join(buttons))
        elif block_type == "context":
            for element in block.get("elements") or []:
                if not isinstance(element, Mapping):
                    continue
                if element.get("type") in ("mrkdwn", "plain_text"):
                    lines.append(f"_{element.get('text', '')}_")
                elif element.get("type") == "image":
                    lines.append(f"[Image: {element.get('alt_text') or 'No description'}]")
        elif block_type == "divider":
            lines.append("---")
        elif block_type == "image":
            title = (block.get("title") or {}).get("text") if isinstance(block.get("title"), Mapping) else None
            lines.append(f"[Image: {block.get('alt_text') or title or 'No description'}]")
        elif block_text:
            lines.append(block_text)

    return "\n".join(lines)


def format_rich_content(message: Mapping[str, Any]) -> str:
    """Readable text for a message's blocks and attachments"""

    parts: List[str] = []
    blocks_text = format_blocks(message.get("blocks"))
    if blocks_text:
        parts.append(blocks_text)

    for attachment in message.get("attachments") or []:
        if not isinstance(attachment, Mapping):
            continue
        attachment_blocks = format_blocks(attachment.get("blocks"))
        if attachment_blocks:
            parts.append(attachment_blocks)
        if attachment.get("text"):
            parts.append(attachment["text"])
        fallback = attachment.get("fallback")
        if fallback and fallback not in "\n".join(parts):
            parts.append(fallback)

    return "\n".join(parts).strip()


def _has_buttons(message: Mapping[str, Any]) -> bool:
    blocks = list(message.get("blocks") or [])
    for attachment in message.get("attachments") or []:
        if isinstance(attachment, Mapping):
            blocks.extend(attachment.get("blocks") or [])
    return any(isinstance(b, Mapping) and b.get("type") == "actions" for b in blocks)


def platform_thread_id(channel_id: Optional[str], thread_ts: Optional[str]) -> Optional[str]:
    if channel_id and thread_ts:
        return f"{channel_id}:{thread_ts}"
    return thread_ts or channel_id


def normalize_platform_message(
    event: Mapping[str, Any],
    thread_id: Optional[str] = None,
    bot_user_id: Optional[str] = None
) -> Dict[str, Any]:
    """Normalize a chat platform message event"""

    is_bot = bool(event.get("bot_id")) or (bot_user_id is not None and event.get("user") == bot_user_id)
    text = event.get("text") or ""
    if event.get("blocks") or event.get("attachments"):
        text = format_rich_content(event) or text

    ts = event.get("ts")
    thread_ts = event.get("thread_ts") or ts
    posted_at = parse_platform_ts(ts)
    return {
        "id": ts or f"platform_{uuid.uuid4().hex}",
        "thread_id": thread_id or platform_thread_id(event.get("channel"), thread_ts),
        "source": MessageSource.ASSISTANT.value if is_bot else MessageSource.USER.value,
        "source_id": "bot" if is_bot else event.get("user"),
        "text": text or "Message with no text content",
        "type": (MessageType.BUTTON if _has_buttons(event) else MessageType.TEXT).value,
        "metadata": {
            "channel": event.get("channel"),
            "ts": ts,
            "posted_at": posted_at.isoformat() if posted_at else None,
            "thread_ts": event.get("thread_ts"),
            "is_bot": is_bot,
            "has_attachments": bool(event.get("attachments")),
            "has_blocks": bool(event.get("blocks")),
            "reactions": event.get("reactions") or [],
        },
    }


def normalize_llm_message(
    llm_response: Mapping[str, Any],
    thread_id: str,
    platform_result: Optional[Mapping[str, Any]] = None,
    sequence: Optional[int] = None
) -> Dict[str, Any]:
    """Normalize an assistant message produced by an LLM tool call"""

    tool = llm_response.get("tool")
    parameters = llm_response.get("parameters") or {}
    message_type = MessageType.TEXT
    text = parameters.get("text") or ""

    if tool == "createButtonMessage":
        message_type = MessageType.BUTTON
        labels = []
        for button in parameters.get("buttons") or []:
            if isinstance(button, str):
                labels.append(button)
            elif isinstance(button, Mapping):
                labels.append(button.get("text") or button.get("value") or "Button")
        text = text or "Button message"
        if labels:
            text += "\nButtons: " + ", ".join(labels)
    elif tool == "postMessage" and ("#buttons:" in text or isinstance(parameters.get("buttons"), list)):
        message_type = MessageType.BUTTON

    ts = (platform_result or {}).get("ts")
    message: Dict[str, Any] = {
        "id": f"bot_{ts}" if ts else f"llm_{uuid.uuid4().hex}",
        "thread_id": thread_id,
        "source": MessageSource.ASSISTANT.value,
        "source_id": "llm",
        "text": text or "Message with no text content",
        "type": message_type.value,
        "metadata": {
            "tool": tool,
            "reasoning": llm_response.get("reasoning"),
            "ts": ts,
            "channel": (platform_result or {}).get("channel"),
            "has_buttons": message_type == MessageType.BUTTON,
        },
    }
    if sequence is not None:
        message["from_tool_execution"] = True
        message["sequence"] = sequence
    return message


def normalize_button_click(payload: Mapping[str, Any], thread_id: Optional[str] = None) -> Dict[str, Any]:
    """Normalize an interactive button click into a user message"""

    action = (payload.get("actions") or [{}])[0]
    button_value = action.get("value") or payload.get("value") or ""
    button_text = (action.get("text") or {}).get("text") if isinstance(action.get("text"), Mapping) else None
    button_text = button_text or button_value or "Button"

    message = payload.get("message") or {}
    container = payload.get("container") or {}
    channel_id = (payload.get("channel") or {}).get("id")
    message_ts = message.get("ts") or container.get("message_ts")
    thread_ts = message.get("thread_ts") or message_ts

    return {
        "id": f"btn_{uuid.uuid4().hex}",
        "thread_id": thread_id or platform_thread_id(channel_id, thread_ts),
        "source": MessageSource.USER.value,
        "source_id": (payload.get("user") or {}).get("id"),
        "text": f"[Button Selection: {button_text}]",
        "type": MessageType.BUTTON_CLICK.value,
        "metadata": {
            "button_value": button_value,
            "button_text": button_text,
            "action_id": action.get("action_id"),
            "message_ts": message_ts,
            "channel_id": channel_id,
        },
    }


def normalize_system_message(
    thread_id: str,
    text: str,
    message_type: MessageType = MessageType.SYSTEM_NOTE,
    metadata: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    return {
        "id": f"sys_{uuid.uuid4().hex}",
        "thread_id": thread_id,
        "source": MessageSource.SYSTEM.value,
        "source_id": "system",
        "text": text or "System message",
        "type": message_type.value,
        "metadata": dict(metadata or {}),
    }
