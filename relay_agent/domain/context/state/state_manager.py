from typing import Dict, Any, List, Optional, Union
import copy
import structlog

from .thread_state import ThreadStateRegistry, split_thread_id
from ...models.context_models import ActiveButton, ButtonState, ButtonStatus, utcnow

logger = structlog.get_logger(__name__)


class StateManager:
    """Per-thread metadata and button state"""

    def __init__(self, registry: ThreadStateRegistry):
        self.registry = registry

    def set_metadata(self, thread_id: str, key: str, value: Any) -> bool:
        """Set a metadata value for a thread"""

        if not thread_id or not key:
            logger.warning("Rejected metadata update", thread_id=thread_id, key=key)
            return False

        state = self.registry.get_or_create(thread_id)
        with state.lock:
            state.metadata[key] = copy.deepcopy(value)

            # The platform context carries the authoritative channel and thread ts
            if key == "context" and isinstance(value, dict):
                if value.get("channel_id"):
                    state.channel_id = value["channel_id"]
                if value.get("thread_ts"):
                    state.thread_ts = value["thread_ts"]
            elif key == "channel_id" and value:
                state.channel_id = value

        return True

    def get_metadata(self, thread_id: str, key: Optional[str] = None, default: Any = None) -> Any:
        """Get one metadata value, or a copy of the whole map when key is None"""

        state = self.registry.get(thread_id)
        if state is None:
            return {} if key is None else default

        with state.lock:
            if key is None:
                return copy.deepcopy(state.metadata)
            if key not in state.metadata:
                return default
            return copy.deepcopy(state.metadata[key])

    def set_button_state(
        self,
        thread_id: str,
        action_id: str,
        state: Union[str, ButtonStatus],
        metadata: Optional[Dict[str, Any]] = None
    ) -> bool:
        """Set the state of a button set"""

        try:
            status = ButtonStatus(state)
        except ValueError:
            logger.warning("Unknown button state", thread_id=thread_id, action_id=action_id, state=state)
            return False

        thread_state = self.registry.get_or_create(thread_id)
        with thread_state.lock:
            thread_state.button_states[action_id] = ButtonState(
                state=status,
                metadata=copy.deepcopy(metadata),
                updated_at=utcnow()
            )

        logger.info("Button state updated", thread_id=thread_id, action_id=action_id, state=status.value)
        return True

    def get_button_state(self, thread_id: str, action_id: str) -> Optional[ButtonState]:
        state = self.registry.get(thread_id)
        if state is None:
            return None

        with state.lock:
            button = state.button_states.get(action_id)
            return button.model_copy(deep=True) if button else None

    def get_active_buttons(self, thread_id: str) -> List[ActiveButton]:
        """All button sets still waiting for a click"""

        state = self.registry.get(thread_id)
        if state is None:
            return []

        with state.lock:
            return [
                ActiveButton(action_id=action_id, metadata=copy.deepcopy(button.metadata))
                for action_id, button in state.button_states.items()
                if button.state == ButtonStatus.ACTIVE
            ]

    def get_channel(self, thread_id: str) -> Optional[str]:
        """Resolve the channel id for a thread"""

        state = self.registry.get(thread_id)
        if state is None:
            return split_thread_id(thread_id)["channel_id"]

        with state.lock:
            return state.channel_id

    def get_thread_ts(self, thread_id: str) -> Optional[str]:
        """Resolve the platform thread timestamp used for replies"""

        state = self.registry.get(thread_id)
        if state is None:
            return split_thread_id(thread_id)["thread_ts"] or thread_id or None

        with state.lock:
            return state.thread_ts or thread_id

    def track_sent_message(self, thread_id: str, message_ts: str) -> None:
        state = self.registry.get_or_create(thread_id)
        with state.lock:
            if message_ts not in state.sent_messages:
                state.sent_messages.append(message_ts)

    def sent_message_count(self, thread_id: str) -> int:
        state = self.registry.get(thread_id)
        if state is None:
            return 0
        with state.lock:
            return len(state.sent_messages)

