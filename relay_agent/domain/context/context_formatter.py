"""
Serializes a thread into the ordered, turn-numbered context the LLM reads.

Output layout:

    [0] conversation stats   (system)
    [1] persona/instructions (system)
    [2..] messages and tool calls merged by sequence
"""

from typing import Dict, List, Any, NamedTuple, Optional, Union
from datetime import datetime
import re
import time
import structlog

from .digest import strip_internal_keys
from .history_pruner import HistoryPruner
from .memory.message_store import MessageStore
from .memory.tool_execution_cache import ToolExecutionCache
from .state.state_manager import StateManager
from ..errors import ContextBuildError
from ..models.context_models import (
    ContextEntry,
    ContextMessage,
    EntryRole,
    MessageSource,
    ToolExecutionRecord,
    utcnow,
)
from ..prompts.persona import generate_persona_prompt
from ...infrastructure.config.settings import ContextSettings
from ...infrastructure.observability.logging import MetricsCollector, context_logger

logger = structlog.get_logger(__name__)

# Bookkeeping keys the LLM does not need to see again
INTERNAL_ARG_KEYS = {"reasoning", "timestamp", "sequence", "toolName", "tool_name", "error"}

MENTION_PATTERN = re.compile(r"<@([A-Z0-9]+)>")

STATS_GUIDANCE = (
    "Use this information to decide whether to call getThreadHistory. "
    "In DMs or threads with only 1 message, extra context retrieval isn't needed."
)

EMPTY_CONTEXT_TEXT = (
    "No conversation history is available for this thread yet. "
    "Treat the next user request as the start of the conversation."
)

ROLE_BY_SOURCE = {
    MessageSource.USER: EntryRole.USER,
    MessageSource.ASSISTANT: EntryRole.ASSISTANT,
    MessageSource.SYSTEM: EntryRole.SYSTEM,
    MessageSource.TOOL: EntryRole.SYSTEM,
}


class TimelineItem(NamedTuple):
    sequence: int
    timestamp: datetime
    # tool calls sort before the message they produced when both share a sequence
    rank: int
    payload: Union[ContextMessage, ToolExecutionRecord]


class ContextFormatter:
    """Builds ContextEntry sequences from the message store and tool cache"""

    def __init__(
        self,
        message_store: MessageStore,
        tool_cache: ToolExecutionCache,
        pruner: HistoryPruner,
        state_manager: StateManager,
        settings: ContextSettings,
        metrics: MetricsCollector,
        clock=utcnow
    ):
        self.message_store = message_store
        self.tool_cache = tool_cache
        self.pruner = pruner
        self.state_manager = state_manager
        self.settings = settings
        self.metrics = metrics
        self.clock = clock

    def build(
        self,
        thread_id: str,
        limit: Optional[int] = None,
        include_bot_messages: bool = True,
        include_tool_calls: bool = True
    ) -> List[ContextEntry]:
        """Build the context for a thread. Never returns an empty list."""

        if limit is None:
            limit = self.settings.default_context_limit

        started = time.perf_counter()
        try:
            entries = self._build(thread_id, limit, include_bot_messages, include_tool_calls)
        except Exception:
            logger.exception("Context build failed, falling back to minimal context", thread_id=thread_id)
            entries = []

        if not entries:
            try:
                entries = [self._fallback_entry()]
            except Exception as e:
                raise ContextBuildError(thread_id, e) from e

        self.metrics.record_latency("context.build", (time.perf_counter() - started) * 1000)
        return entries

    def _build(
        self,
        thread_id: str,
        limit: int,
        include_bot_messages: bool,
        include_tool_calls: bool
    ) -> List[ContextEntry]:
        if self.pruner.needs_pruning(thread_id):
            self.pruner.prune_thread_history(thread_id)

        messages = self.message_store.get_thread_messages(thread_id)
        executions = self.tool_cache.get_thread_executions(thread_id) if include_tool_calls else []

        visible = [m for m in messages if include_bot_messages or m.source != MessageSource.ASSISTANT]
        if limit <= 0:
            visible, executions = [], []
        elif len(visible) > limit:
            visible = visible[-limit:]
            # Tool calls older than the message window fall out with it
            window_start = min(m.sequence for m in visible)
            executions = [r for r in executions if r.sequence >= window_start]

        timeline = sorted(
            [TimelineItem(m.sequence, m.timestamp, 1, m) for m in visible]
            + [TimelineItem(r.sequence, r.timestamp, 0, r) for r in executions],
            key=lambda item: (item.sequence, item.timestamp, item.rank)
        )
        if not timeline:
            return []

        metadata = self.state_manager.get_metadata(thread_id)
        platform = metadata.get("context") or {}
        channel_id = self.state_manager.get_channel(thread_id)
        prefix_time = timeline[0].timestamp

        entries = [
            self._stats_entry(messages, executions, platform, channel_id, limit, prefix_time),
            self._persona_entry(messages, metadata, platform, channel_id, prefix_time),
        ]

        turn = 0
        last_user_time: Optional[datetime] = None
        bot_since_user = False
        skipped = 0

        for item in timeline:
            payload = item.payload
            if isinstance(payload, ContextMessage) and payload.source == MessageSource.USER:
                if last_user_time is not None and bot_since_user and self._gap_ms(last_user_time, item.timestamp) > self.settings.turn_gap_ms:
                    turn += 1
                last_user_time = item.timestamp
                bot_since_user = False
            elif isinstance(payload, ToolExecutionRecord) or payload.source in (MessageSource.ASSISTANT, MessageSource.TOOL):
                bot_since_user = True

            try:
                if isinstance(payload, ContextMessage):
                    entry = self._message_entry(payload, len(entries), turn, platform, channel_id)
                else:
                    entry = self._tool_entry(payload, len(entries), turn)
            except Exception as e:
                skipped += 1
                self.metrics.increment_counter("context.build.entry_failures")
                logger.warning("Skipping context entry", thread_id=thread_id, sequence=item.sequence, error=str(e))
                continue
            entries.append(entry)

        if len(entries) == 2:
            return []

        context_logger.log_context_build(
            thread_id=thread_id,
            entries=len(entries),
            messages=len(visible),
            tool_calls=len(executions),
            skipped_entries=skipped
        )
        return entries

    @staticmethod
    def _gap_ms(earlier: datetime, later: datetime) -> float:
        return (later - earlier).total_seconds() * 1000

    def _stats_entry(
        self,
        messages: List[ContextMessage],
        executions: List[ToolExecutionRecord],
        platform: Dict[str, Any],
        channel_id: Optional[str],
        limit: int,
        timestamp: datetime
    ) -> ContextEntry:
        user_messages = [m for m in messages if m.source == MessageSource.USER]
        bot_messages = [m for m in messages if m.source == MessageSource.ASSISTANT]
        participants = {m.source_id for m in user_messages if m.source_id}
        mentioned_users = platform.get("mentioned_users") or []
        is_dm = bool(platform.get("is_direct_message")) or bool(channel_id and channel_id.startswith("D"))
        total = len(messages)

        return ContextEntry(
            index=0,
            turn=0,
            timestamp=timestamp,
            role=EntryRole.SYSTEM,
            content={
                "type": "conversation_stats",
                "stats": {
                    "channel_info": {
                        "channel": self._channel_name(platform, is_dm),
                        "is_dm": is_dm,
                        "is_thread": bool(platform.get("is_thread")),
                        "is_multi_party": len(participants) > 1,
                        "participants": len(participants),
                        "is_initial_message": total == 1,
                        "has_mentions": len(mentioned_users) > 0,
                        "mentioned_users_count": len(mentioned_users),
                    },
                    "message_counts": {
                        "total_messages": total,
                        "user_messages": len(user_messages),
                        "bot_messages": len(bot_messages),
                        "available_messages": min(total, limit),
                    },
                    "tool_usage": {
                        "total_tool_calls": len(executions),
                        "thread_history_calls": sum(1 for r in executions if r.tool_name == "getThreadHistory"),
                    },
                },
                "guidance": STATS_GUIDANCE,
            },
        )

    def _persona_entry(
        self,
        messages: List[ContextMessage],
        metadata: Dict[str, Any],
        platform: Dict[str, Any],
        channel_id: Optional[str],
        timestamp: datetime
    ) -> ContextEntry:
        is_dm = bool(platform.get("is_direct_message")) or bool(channel_id and channel_id.startswith("D"))
        user_id = None
        for msg in reversed(messages):
            if msg.source == MessageSource.USER:
                user_id = self._extract_user_id(msg, platform)
                break

        return ContextEntry(
            index=1,
            turn=0,
            timestamp=timestamp,
            role=EntryRole.SYSTEM,
            content=generate_persona_prompt(
                user_id=user_id,
                channel=self._channel_name(platform, is_dm),
                iterations=metadata.get("iterations", 0),
                assistant_name=self.settings.assistant_name,
                current_time=self.clock(),
                timezone_name=self.settings.default_timezone,
            ),
        )

    @staticmethod
    def _channel_name(platform: Dict[str, Any], is_dm: bool) -> str:
        return platform.get("channel_name") or ("Direct Message" if is_dm else "Unknown Channel")

    @staticmethod
    def _extract_user_id(message: ContextMessage, platform: Dict[str, Any]) -> str:
        if message.source_id and message.source_id.startswith(("U", "W")):
            return message.source_id

        match = MENTION_PATTERN.search(message.text or "")
        if match:
            return match.group(1)

        if message.metadata.get("user_id"):
            return message.metadata["user_id"]

        user = platform.get("user") or {}
        if isinstance(user, dict) and user.get("id"):
            return user["id"]

        return message.source_id or "USER"

    def _message_entry(
        self,
        message: ContextMessage,
        index: int,
        turn: int,
        platform: Dict[str, Any],
        channel_id: Optional[str]
    ) -> ContextEntry:
        meta = message.metadata
        content: Dict[str, Any] = {
            "text": message.text,
            "message_id": message.id,
            "type": message.type.value,
        }

        if message.source == MessageSource.USER:
            content["user_id"] = self._extract_user_id(message, platform)

        # Platform identifiers let later tool calls (reactions, updates) target this message
        message_ts = meta.get("ts") or meta.get("message_ts")
        if message_ts:
            content["message_ts"] = message_ts
            content["api_identifier"] = message_ts

        message_channel = meta.get("channel") or meta.get("channel_id") or channel_id
        if message_channel:
            content["channel_id"] = message_channel

        if meta.get("message_index") is not None:
            content["message_index"] = meta["message_index"]
        if meta.get("is_parent"):
            content["is_parent"] = True
        if meta.get("thread_ts"):
            content["thread_ts"] = meta["thread_ts"]
        if meta.get("reactions"):
            content["reactions"] = meta["reactions"]
            if meta.get("formatted_reactions"):
                content["formatted_reactions"] = meta["formatted_reactions"]

        return ContextEntry(
            index=index,
            turn=turn,
            timestamp=message.timestamp,
            role=ROLE_BY_SOURCE[message.source],
            content=content,
        )

    def _tool_entry(self, record: ToolExecutionRecord, index: int, turn: int) -> ContextEntry:
        return ContextEntry(
            index=index,
            turn=turn,
            timestamp=record.timestamp,
            role=EntryRole.SYSTEM,
            content={
                "type": "tool_call",
                "tool_name": record.tool_name,
                "status": record.status.value,
                "args": strip_internal_keys(record.arguments, INTERNAL_ARG_KEYS),
                "result": record.result,
                "error": record.error,
            },
        )

    def _fallback_entry(self) -> ContextEntry:
        return ContextEntry(
            index=0,
            turn=0,
            timestamp=self.clock(),
            role=EntryRole.SYSTEM,
            content=EMPTY_CONTEXT_TEXT,
        )
