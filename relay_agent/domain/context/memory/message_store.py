from typing import Dict, List, Any, Mapping, Optional
import uuid
import structlog
from pydantic import ValidationError

from ..sequencer import Sequencer
from ..state.thread_state import ThreadStateRegistry
from ...errors import MessageValidationError
from ...models.context_models import (
    ContextMessage,
    MessageCounts,
    MessageSource,
    ThreadSummary,
    utcnow,
)

logger = structlog.get_logger(__name__)


class MessageStore:
    """Canonical message records and the per-thread message order"""

    def __init__(self, registry: ThreadStateRegistry, sequencer: Sequencer, clock=utcnow):
        self.registry = registry
        self.sequencer = sequencer
        self.clock = clock

    def add_message(self, message: Mapping[str, Any]) -> Optional[str]:
        """Add a normalized message to its thread.

        Returns the message id, or None when the message is invalid. Re-adding
        an id the thread already holds is a no-op that returns the same id.
        """

        try:
            thread_id, source = self._require_fields(message)
        except MessageValidationError as e:
            logger.warning("Rejected message", reason=str(e), field=e.field)
            return None

        message_id = message.get("id") or f"msg_{uuid.uuid4().hex}"
        state = self.registry.get_or_create(thread_id)

        with state.lock:
            if message_id in state.messages:
                logger.debug("Message already recorded", thread_id=thread_id, message_id=message_id)
                return message_id

            # Validate before touching the sequencer so a rejected message leaves no gap
            try:
                record = ContextMessage(
                    id=message_id,
                    thread_id=thread_id,
                    timestamp=message.get("timestamp") or self.clock(),
                    sequence=0,
                    source=source,
                    source_id=message.get("source_id"),
                    text=message.get("text") or "",
                    type=message.get("type") or "text",
                    metadata=dict(message.get("metadata") or {}),
                )
            except ValidationError as e:
                logger.warning("Rejected message", thread_id=thread_id, reason=str(e))
                return None

            record.sequence = self._assign_sequence(thread_id, source, message)
            state.messages[message_id] = record
            if message_id not in state.message_ids:
                state.message_ids.append(message_id)

        return message_id

    def _require_fields(self, message: Mapping[str, Any]):
        if not isinstance(message, Mapping):
            raise MessageValidationError("Message must be a mapping")

        thread_id = message.get("thread_id")
        if not thread_id or not isinstance(thread_id, str):
            raise MessageValidationError("Message has no thread_id", field="thread_id")

        try:
            source = MessageSource(message.get("source"))
        except ValueError:
            raise MessageValidationError(f"Unknown message source {message.get('source')!r}", field="source")

        return thread_id, source

    def _assign_sequence(self, thread_id: str, source: MessageSource, message: Mapping[str, Any]) -> int:
        # Messages produced by a tool execution share that execution's slot in the timeline
        if source != MessageSource.USER and message.get("from_tool_execution"):
            inherited = message.get("sequence")
            if isinstance(inherited, int) and self.sequencer.was_issued(thread_id, inherited):
                return inherited
            logger.warning(
                "Tool message has no valid sequence, assigning a fresh one",
                thread_id=thread_id,
                sequence=inherited
            )
        return self.sequencer.next(thread_id)

    def get_thread_messages(self, thread_id: str) -> List[ContextMessage]:
        """Messages in the thread's active view, in insertion order"""

        state = self.registry.get(thread_id)
        if state is None:
            return []

        with state.lock:
            return [msg.model_copy(deep=True) for msg in state.active_messages()]

    def get_message(self, thread_id: str, message_id: str) -> Optional[ContextMessage]:
        state = self.registry.get(thread_id)
        if state is None:
            return None

        with state.lock:
            msg = state.messages.get(message_id)
            return msg.model_copy(deep=True) if msg else None

    def message_count(self, thread_id: str) -> int:
        state = self.registry.get(thread_id)
        if state is None:
            return 0
        with state.lock:
            return len(state.message_ids)

    def get_thread_summary(self, thread_id: str) -> ThreadSummary:
        """Message counts by source for the thread's active view"""

        state = self.registry.get(thread_id)
        if state is None:
            return ThreadSummary(thread_id=thread_id)

        with state.lock:
            counts: Dict[str, int] = {source.value: 0 for source in MessageSource}
            for msg in state.active_messages():
                counts[msg.source.value] += 1
            total = len(state.message_ids)

        return ThreadSummary(
            thread_id=thread_id,
            counts=MessageCounts(total=total, **counts),
            is_empty=total == 0,
            has_user_messages=counts[MessageSource.USER.value] > 0
        )
