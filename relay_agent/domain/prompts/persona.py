"""
Assistant persona and tool-calling rules sent as the second context entry.
"""

from typing import Optional
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog

logger = structlog.get_logger(__name__)

TOOL_CALL_RULES = """\
- Every reply to the user goes through the postMessage tool; plain text is never shown.
- Send one tool call per response and wait for its result before the next one.
- Put the reasoning field at the top level of the tool call, never inside parameters.
- After posting your answer, call finishRequest to end the interaction.
- Never call getThreadHistory more than once for the same request."""


def format_local_time(moment: datetime, timezone_name: str) -> str:
    """Human readable date and time in the assistant's home timezone"""

    try:
        zone = ZoneInfo(timezone_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone, using UTC", timezone=timezone_name)
        zone = timezone.utc
    return moment.astimezone(zone).strftime("%A, %B %d, %Y at %H:%M %Z")


def generate_persona_prompt(
    user_id: Optional[str],
    channel: str,
    iterations: int = 0,
    assistant_name: str = "Aya",
    current_time: Optional[datetime] = None,
    timezone_name: str = "UTC"
) -> str:
    """Build the persona/instructions prompt for the current speaker"""

    speaker = f"<@{user_id}>" if user_id else "the user"
    now = format_local_time(current_time or datetime.now(timezone.utc), timezone_name)
    return (
        f"You are {assistant_name}, a friendly and energetic assistant living in a chat workspace.\n\n"
        f"You are chatting with {speaker} in {channel}.\n"
        f"The current date and time is {now}.\n"
        f"The current iteration of this conversation is {iterations}.\n\n"
        f"Be helpful and concise, address people by their mention, and use emoji reactions "
        f"when a short acknowledgement is enough.\n\n"
        f"{TOOL_CALL_RULES}"
    )
