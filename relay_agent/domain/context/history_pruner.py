from typing import List, Set
import uuid
import structlog

from .sequencer import Sequencer
from .state.thread_state import ThreadStateRegistry
from ..models.context_models import ContextMessage, MessageSource, MessageType, utcnow
from ...infrastructure.config.settings import ContextSettings
from ...infrastructure.observability.logging import MetricsCollector, context_logger

logger = structlog.get_logger(__name__)

PRUNE_NOTICE_TEXT = (
    "{removed} earlier messages in this conversation were summarized and removed "
    "from the context to keep it short. Call getThreadHistory if you need them."
)


class HistoryPruner:
    """Shrinks an overlong thread view while keeping decision-relevant messages"""

    def __init__(
        self,
        registry: ThreadStateRegistry,
        sequencer: Sequencer,
        settings: ContextSettings,
        metrics: MetricsCollector,
        clock=utcnow
    ):
        self.registry = registry
        self.sequencer = sequencer
        self.settings = settings
        self.metrics = metrics
        self.clock = clock

    def needs_pruning(self, thread_id: str) -> bool:
        state = self.registry.get(thread_id)
        if state is None:
            return False
        with state.lock:
            return len(state.message_ids) > self.settings.max_messages

    def prune_thread_history(self, thread_id: str) -> int:
        """Drop messages outside the keep-set; returns how many were removed"""

        state = self.registry.get(thread_id)
        if state is None:
            return 0

        with state.lock:
            message_ids = list(state.message_ids)
            before = len(message_ids)
            if before <= self.settings.min_messages_to_keep or before <= self.settings.max_messages:
                return 0

            keep = self._keep_set(state.messages, message_ids)
            removed = before - len(keep)
            if removed <= 0:
                return 0

            state.message_ids = [msg_id for msg_id in message_ids if msg_id in keep]
            state.pruned_count += removed

            notice = ContextMessage(
                id=f"prune_{uuid.uuid4().hex}",
                thread_id=thread_id,
                timestamp=self.clock(),
                sequence=self.sequencer.next(thread_id),
                source=MessageSource.SYSTEM,
                source_id="system",
                text=PRUNE_NOTICE_TEXT.format(removed=removed),
                type=MessageType.SYSTEM_NOTE,
                metadata={"event": "history_pruned", "removed": removed, "total_pruned": state.pruned_count}
            )
            state.messages[notice.id] = notice
            state.message_ids.append(notice.id)
            kept = len(keep)

        self.metrics.increment_counter("context.history.pruned", removed)
        context_logger.log_pruning(thread_id=thread_id, before=before, removed=removed, kept=kept)
        return removed

    def _keep_set(self, messages, message_ids: List[str]) -> Set[str]:
        keep: Set[str] = set()

        # The root message anchors what the conversation was about
        if self.settings.keep_root_message and message_ids:
            keep.add(message_ids[0])

        always_keep = self.settings.always_keep_message_types
        for msg_id in message_ids:
            msg = messages.get(msg_id)
            if msg is not None and msg.type.value in always_keep:
                keep.add(msg_id)

        for msg_id in reversed(message_ids):
            if len(keep) >= self.settings.target_messages:
                break
            keep.add(msg_id)

        return keep
