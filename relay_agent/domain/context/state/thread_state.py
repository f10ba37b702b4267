from typing import Dict, Any, List, Optional
from datetime import datetime
import threading

from ...models.context_models import (
    ButtonState,
    ContextMessage,
    ToolExecutionRecord,
    utcnow,
)

# Platform channel ids start with these prefixes (public, DM, group)
CHANNEL_ID_PREFIXES = ("C", "D", "G")


def split_thread_id(thread_id: str) -> Dict[str, Optional[str]]:
    """Split a `channel:ts` thread id into its parts"""

    if not thread_id:
        return {"channel_id": None, "thread_ts": None}
    if ":" in thread_id:
        channel_id, _, thread_ts = thread_id.partition(":")
        return {"channel_id": channel_id or None, "thread_ts": thread_ts or None}
    if thread_id.startswith(CHANNEL_ID_PREFIXES):
        return {"channel_id": thread_id, "thread_ts": None}
    return {"channel_id": None, "thread_ts": thread_id}


class ThreadState:
    """All engine state for one conversation thread.

    Only the engine's own components touch these fields, always while holding
    `lock`. Collaborators get copies.
    """

    def __init__(self, thread_id: str):
        self.thread_id = thread_id
        self.lock = threading.RLock()
        self.created_at: datetime = utcnow()

        # Message store
        self.messages: Dict[str, ContextMessage] = {}
        self.message_ids: List[str] = []
        self.pruned_count: int = 0

        # Tool execution cache, oldest first
        self.tool_executions: List[ToolExecutionRecord] = []
        self.digest_index: Dict[str, ToolExecutionRecord] = {}

        # Well-known metadata
        parts = split_thread_id(thread_id)
        self.channel_id: Optional[str] = parts["channel_id"]
        self.thread_ts: Optional[str] = parts["thread_ts"]
        self.sent_messages: List[str] = []

        # Dynamic metadata and button state
        self.metadata: Dict[str, Any] = {}
        self.button_states: Dict[str, ButtonState] = {}

    def active_messages(self) -> List[ContextMessage]:
        return [self.messages[msg_id] for msg_id in self.message_ids if msg_id in self.messages]


class ThreadStateRegistry:
    """Lazily creates and hands out ThreadState instances"""

    def __init__(self):
        self._states: Dict[str, ThreadState] = {}
        self._lock = threading.Lock()

    def get_or_create(self, thread_id: str) -> ThreadState:
        state = self._states.get(thread_id)
        if state is not None:
            return state

        with self._lock:
            state = self._states.get(thread_id)
            if state is None:
                state = ThreadState(thread_id)
                self._states[thread_id] = state
            return state

    def get(self, thread_id: str) -> Optional[ThreadState]:
        return self._states.get(thread_id)

    def thread_ids(self) -> List[str]:
        with self._lock:
            return list(self._states.keys())

    def __contains__(self, thread_id: str) -> bool:
        return thread_id in self._states

    def __len__(self) -> int:
        return len(self._states)
