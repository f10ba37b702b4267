from typing import Dict, List, Any, Mapping, Optional, Union
import logging
import structlog

from .context_formatter import ContextFormatter
from .history_pruner import HistoryPruner
from .llm_messages import to_langchain_messages
from .memory.message_store import MessageStore
from .memory.tool_execution_cache import ToolExecutionCache
from .normalizer import (
    normalize_button_click,
    normalize_llm_message,
    normalize_platform_message,
    normalize_system_message,
)
from .sequencer import Sequencer
from .state.state_manager import StateManager
from .state.thread_state import ThreadStateRegistry
from ..models.context_models import (
    ActiveButton,
    ButtonState,
    ButtonStatus,
    ContextEntry,
    ContextMessage,
    ThreadStateView,
    ThreadSummary,
    ToolExecutionRecord,
    utcnow,
)
from ...infrastructure.config.settings import ContextSettings
from ...infrastructure.observability.logging import MetricsCollector, format_context_for_console

logger = structlog.get_logger(__name__)


class ContextManager:
    """Thread-scoped context engine.

    One instance owns every thread's messages, tool executions, metadata and
    button state, and turns them into LLM context on demand. Create one per
    orchestrator (or per test) and pass it to collaborators explicitly.
    """

    def __init__(
        self,
        settings: Optional[ContextSettings] = None,
        metrics: Optional[MetricsCollector] = None,
        clock=utcnow
    ):
        # Defaults only; loading from the environment is the caller's job
        self.settings = settings if settings is not None else ContextSettings.model_construct()
        self.metrics = metrics if metrics is not None else MetricsCollector(emit_logs=False)
        self.clock = clock

        self.registry = ThreadStateRegistry()
        self.sequencer = Sequencer()
        self.state_manager = StateManager(self.registry)
        self.message_store = MessageStore(self.registry, self.sequencer, clock)
        self.tool_cache = ToolExecutionCache(self.registry, self.sequencer, self.settings, self.metrics, clock)
        self.pruner = HistoryPruner(self.registry, self.sequencer, self.settings, self.metrics, clock)
        self.formatter = ContextFormatter(
            self.message_store,
            self.tool_cache,
            self.pruner,
            self.state_manager,
            self.settings,
            self.metrics,
            clock
        )

    # Messages

    def add_message(self, message: Mapping[str, Any]) -> Optional[str]:
        """Add a normalized message; returns its id or None if it was rejected"""
        return self.message_store.add_message(message)

    def ingest_platform_message(
        self,
        event: Mapping[str, Any],
        thread_id: Optional[str] = None,
        bot_user_id: Optional[str] = None
    ) -> Optional[str]:
        """Normalize and add a raw chat platform message event"""
        return self.add_message(normalize_platform_message(event, thread_id, bot_user_id))

    def ingest_button_click(self, payload: Mapping[str, Any], thread_id: Optional[str] = None) -> Optional[str]:
        """Record a button click as a user message and mark its button set selected"""

        message = normalize_button_click(payload, thread_id)
        message_id = self.add_message(message)
        action_id = message["metadata"].get("action_id")
        if message_id and action_id:
            previous = self.state_manager.get_button_state(message["thread_id"], action_id)
            metadata = dict(previous.metadata or {}) if previous else {}
            metadata["selected_value"] = message["metadata"].get("button_value")
            self.state_manager.set_button_state(message["thread_id"], action_id, ButtonStatus.SELECTED, metadata)
        return message_id

    def add_system_note(self, thread_id: str, text: str, metadata: Optional[Dict[str, Any]] = None) -> Optional[str]:
        return self.add_message(normalize_system_message(thread_id, text, metadata=metadata))

    def get_thread_messages(self, thread_id: str) -> List[ContextMessage]:
        return self.message_store.get_thread_messages(thread_id)

    def get_thread_summary(self, thread_id: str) -> ThreadSummary:
        return self.message_store.get_thread_summary(thread_id)

    def prune_thread_history(self, thread_id: str) -> int:
        return self.pruner.prune_thread_history(thread_id)

    # Tool executions

    def record_tool_execution(
        self,
        thread_id: str,
        tool_name: str,
        args: Optional[Mapping[str, Any]],
        result: Any = None,
        error: Optional[Union[str, BaseException]] = None,
        skipped: bool = False
    ) -> Optional[ToolExecutionRecord]:
        """Record a tool outcome and apply its side effects on thread state"""

        record = self.tool_cache.record_tool_execution(thread_id, tool_name, args, result, error, skipped)
        if record is None or record.error or skipped:
            return record

        outcome = record.result if isinstance(record.result, dict) else {}
        if tool_name == "postMessage" and outcome.get("ts"):
            self.state_manager.track_sent_message(thread_id, outcome["ts"])
        elif tool_name == "createButtonMessage":
            action_id = outcome.get("action_id") or outcome.get("actionId")
            if action_id:
                self.state_manager.set_button_state(thread_id, action_id, ButtonStatus.ACTIVE, outcome.get("metadata"))

        return record

    def record_posted_message(
        self,
        thread_id: str,
        llm_response: Mapping[str, Any],
        platform_result: Optional[Mapping[str, Any]] = None
    ) -> Optional[str]:
        """Record a postMessage call and the assistant message it produced.

        The message inherits the execution's sequence so the two sit together
        in the timeline.
        """

        args = dict(llm_response.get("parameters") or {})
        if llm_response.get("reasoning"):
            args.setdefault("reasoning", llm_response["reasoning"])
        tool_name = llm_response.get("tool") or "postMessage"

        record = self.record_tool_execution(thread_id, tool_name, args, dict(platform_result or {}))
        if record is None:
            return None
        message = normalize_llm_message(llm_response, thread_id, platform_result, sequence=record.sequence)
        return self.add_message(message)

    def has_executed(self, thread_id: str, tool_name: str, args: Optional[Mapping[str, Any]] = None) -> bool:
        return self.tool_cache.has_executed(thread_id, tool_name, args)

    def get_tool_result(self, thread_id: str, tool_name: str, args: Optional[Mapping[str, Any]] = None) -> Any:
        return self.tool_cache.get_tool_result(thread_id, tool_name, args)

    def get_execution(
        self,
        thread_id: str,
        tool_name: str,
        args: Optional[Mapping[str, Any]] = None
    ) -> Optional[ToolExecutionRecord]:
        return self.tool_cache.get_execution(thread_id, tool_name, args)

    def get_tool_execution_history(self, thread_id: str, limit: int = 10) -> List[ToolExecutionRecord]:
        return self.tool_cache.get_tool_execution_history(thread_id, limit)

    def has_similar_post(self, thread_id: str, text: str, threshold: float = 0.85) -> bool:
        return self.tool_cache.has_similar_post(thread_id, text, threshold)

    def evict(self, thread_id: str) -> int:
        return self.tool_cache.evict(thread_id)

    # Metadata and buttons

    def set_metadata(self, thread_id: str, key: str, value: Any) -> bool:
        return self.state_manager.set_metadata(thread_id, key, value)

    def get_metadata(self, thread_id: str, key: Optional[str] = None, default: Any = None) -> Any:
        return self.state_manager.get_metadata(thread_id, key, default)

    def set_button_state(
        self,
        thread_id: str,
        action_id: str,
        state: Union[str, ButtonStatus],
        metadata: Optional[Dict[str, Any]] = None
    ) -> bool:
        return self.state_manager.set_button_state(thread_id, action_id, state, metadata)

    def get_button_state(self, thread_id: str, action_id: str) -> Optional[ButtonState]:
        return self.state_manager.get_button_state(thread_id, action_id)

    def get_active_buttons(self, thread_id: str) -> List[ActiveButton]:
        return self.state_manager.get_active_buttons(thread_id)

    def get_channel(self, thread_id: str) -> Optional[str]:
        return self.state_manager.get_channel(thread_id)

    def get_thread_ts(self, thread_id: str) -> Optional[str]:
        return self.state_manager.get_thread_ts(thread_id)

    # Context

    def build_context(
        self,
        thread_id: str,
        limit: Optional[int] = None,
        include_bot_messages: bool = True,
        include_tool_calls: bool = True
    ) -> List[ContextEntry]:
        """Ordered, turn-numbered context for the next LLM call"""

        entries = self.formatter.build(
            thread_id,
            limit=limit,
            include_bot_messages=include_bot_messages,
            include_tool_calls=include_tool_calls
        )
        if logging.getLogger(__name__).isEnabledFor(logging.DEBUG):
            logger.debug("Context built", thread_id=thread_id, context=format_context_for_console(entries))
        return entries

    def build_llm_messages(self, thread_id: str, **options):
        """Context rendered as LangChain chat messages"""
        return to_langchain_messages(self.build_context(thread_id, **options))

    def get_state_for_llm(self, thread_id: str) -> ThreadStateView:
        """Compact thread state summary"""

        recent = self.tool_cache.get_tool_execution_history(thread_id, 5)
        return ThreadStateView(
            thread_id=thread_id,
            thread_ts=self.get_thread_ts(thread_id),
            channel_id=self.get_channel(thread_id),
            sent_messages_count=self.state_manager.sent_message_count(thread_id),
            active_buttons=self.get_active_buttons(thread_id),
            recent_tool_results=[
                {"execution": record.tool_name, "status": record.status.value, "success": not record.error}
                for record in recent
            ]
        )
