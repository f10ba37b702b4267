from typing import Dict, List, Any, Callable, Mapping, Optional, Union
from datetime import timedelta
import difflib
import uuid
import structlog
from pydantic import ValidationError

from .snapshot import snapshot
from ..digest import digest, normalize_arguments, strip_internal_keys
from ..sequencer import Sequencer
from ..state.thread_state import ThreadState, ThreadStateRegistry
from ...errors import DigestError, SnapshotError
from ...models.context_models import ToolExecutionRecord, utcnow
from ....infrastructure.config.settings import ContextSettings
from ....infrastructure.observability.logging import MetricsCollector, context_logger

logger = structlog.get_logger(__name__)

# Argument keys that never change a call's identity
DIGEST_IGNORED_KEYS = {"reasoning"}


def summarize_thread_history(result: Any) -> Any:
    """Keep the shape of a history fetch without the fetched messages"""

    if not isinstance(result, Mapping):
        return result
    messages = result.get("messages")
    summary = {key: value for key, value in result.items() if key != "messages"}
    summary["messages_count"] = len(messages) if isinstance(messages, list) else 0
    return summary


# Tool name -> reducer applied to results before they are cached
RESULT_SUMMARIZERS: Dict[str, Callable[[Any], Any]] = {
    "getThreadHistory": summarize_thread_history,
}


class ToolExecutionCache:
    """Per-thread tool execution history with digest-based dedup and eviction"""

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

    def _digest(self, tool_name: str, args: Optional[Mapping[str, Any]]) -> str:
        return digest(tool_name, strip_internal_keys(args, DIGEST_IGNORED_KEYS))

    def record_tool_execution(
        self,
        thread_id: str,
        tool_name: str,
        args: Optional[Mapping[str, Any]],
        result: Any = None,
        error: Optional[Union[str, BaseException]] = None,
        skipped: bool = False
    ) -> Optional[ToolExecutionRecord]:
        """Record a tool call outcome and return a copy of the stored record"""

        if not thread_id or not tool_name:
            logger.warning("Rejected tool execution", thread_id=thread_id, tool_name=tool_name)
            return None

        args = dict(args or {})
        try:
            key = self._digest(tool_name, args)
        except DigestError as e:
            logger.warning("Cannot digest tool arguments", thread_id=thread_id, tool_name=tool_name, reason=str(e))
            return None

        stored_args = self._snapshot_args(tool_name, args)
        stored_result = self._snapshot_result(thread_id, tool_name, result)
        error_text = None
        if error is not None:
            error_text = str(error) or type(error).__name__
        reasoning = args.get("reasoning")
        if reasoning is not None and not isinstance(reasoning, str):
            reasoning = str(reasoning)

        state = self.registry.get_or_create(thread_id)
        with state.lock:
            previous = state.digest_index.get(key)
            # A skipped retry keeps pointing at the outcome it was deduplicated against
            if previous is not None and skipped and stored_result is None:
                stored_result = previous.result

            try:
                record = ToolExecutionRecord(
                    id=f"tool_{tool_name}_{uuid.uuid4().hex[:12]}",
                    thread_id=thread_id,
                    tool_name=tool_name,
                    arguments=stored_args,
                    arguments_digest=key,
                    result=stored_result,
                    error=error_text,
                    skipped=skipped,
                    reasoning=reasoning,
                    timestamp=self.clock(),
                    sequence=0
                )
            except ValidationError as e:
                logger.warning("Rejected tool execution", thread_id=thread_id, tool_name=tool_name, reason=str(e))
                return None

            # Thread state changes only once the record has validated
            if previous is not None:
                state.tool_executions = [r for r in state.tool_executions if r is not previous]
            record.sequence = self.sequencer.next(thread_id)
            state.tool_executions.append(record)
            state.digest_index[key] = record

            if len(state.tool_executions) > self.settings.max_executions_per_thread:
                self._evict_locked(state)

            stored = record.model_copy(deep=True)

        context_logger.log_tool_execution(
            tool_name=tool_name,
            thread_id=thread_id,
            sequence=stored.sequence,
            status=stored.status.value,
            reasoning=stored.reasoning,
            error=stored.error
        )
        return stored

    def _snapshot_args(self, tool_name: str, args: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return snapshot(args)
        except SnapshotError:
            return normalize_arguments(args, tool_name)

    def _snapshot_result(self, thread_id: str, tool_name: str, result: Any) -> Any:
        summarizer = RESULT_SUMMARIZERS.get(tool_name)
        if summarizer is not None and result is not None:
            result = summarizer(result)
        try:
            return snapshot(result)
        except SnapshotError as e:
            logger.warning("Tool result not cacheable", thread_id=thread_id, tool_name=tool_name, reason=str(e))
            return {"unavailable": True, "reason": str(e)}

    def _lookup(self, thread_id: str, tool_name: str, args: Optional[Mapping[str, Any]]) -> Optional[ToolExecutionRecord]:
        state = self.registry.get(thread_id)
        if state is None:
            return None
        try:
            key = self._digest(tool_name, args)
        except DigestError:
            return None
        return state.digest_index.get(key)

    def has_executed(self, thread_id: str, tool_name: str, args: Optional[Mapping[str, Any]] = None) -> bool:
        """True if an identical call is already cached for this thread"""

        state = self.registry.get(thread_id)
        if state is None:
            return False
        with state.lock:
            found = self._lookup(thread_id, tool_name, args) is not None

        self.metrics.increment_counter("context.tool_cache.hits" if found else "context.tool_cache.misses")
        return found

    def get_tool_result(self, thread_id: str, tool_name: str, args: Optional[Mapping[str, Any]] = None) -> Any:
        """Cached result of an identical call, or None"""

        state = self.registry.get(thread_id)
        if state is None:
            return None
        with state.lock:
            record = self._lookup(thread_id, tool_name, args)
            return snapshot(record.result) if record is not None else None

    def get_execution(self, thread_id: str, tool_name: str, args: Optional[Mapping[str, Any]] = None) -> Optional[ToolExecutionRecord]:
        state = self.registry.get(thread_id)
        if state is None:
            return None
        with state.lock:
            record = self._lookup(thread_id, tool_name, args)
            return record.model_copy(deep=True) if record is not None else None

    def get_thread_executions(self, thread_id: str) -> List[ToolExecutionRecord]:
        """All cached executions for a thread, oldest first"""

        state = self.registry.get(thread_id)
        if state is None:
            return []
        with state.lock:
            return [record.model_copy(deep=True) for record in state.tool_executions]

    def get_tool_execution_history(self, thread_id: str, limit: int = 10) -> List[ToolExecutionRecord]:
        """Most recent executions first"""

        executions = self.get_thread_executions(thread_id)
        executions.sort(key=lambda r: (r.timestamp, r.sequence), reverse=True)
        return executions[:max(limit, 0)]

    def execution_count(self, thread_id: str) -> int:
        state = self.registry.get(thread_id)
        if state is None:
            return 0
        with state.lock:
            return len(state.tool_executions)

    def has_similar_post(self, thread_id: str, text: str, threshold: float = 0.85) -> bool:
        """True if a previously posted message is nearly identical to `text`"""

        if not text:
            return False
        state = self.registry.get(thread_id)
        if state is None:
            return False

        with state.lock:
            previous_texts = [
                r.arguments.get("text")
                for r in state.tool_executions
                if r.tool_name == "postMessage" and isinstance(r.arguments.get("text"), str)
            ]

        return any(
            difflib.SequenceMatcher(None, text, previous).ratio() > threshold
            for previous in previous_texts
        )

    def evict(self, thread_id: str) -> int:
        """Drop stale and overflow executions; returns the number removed"""

        state = self.registry.get(thread_id)
        if state is None:
            return 0
        with state.lock:
            return self._evict_locked(state)

    def _evict_locked(self, state: ThreadState) -> int:
        never_expire = self.settings.never_expire_tools
        max_entries = self.settings.max_executions_per_thread
        cutoff = self.clock() - timedelta(seconds=self.settings.max_execution_age_seconds)
        before = len(state.tool_executions)

        survivors = [
            r for r in state.tool_executions
            if r.tool_name in never_expire or r.timestamp >= cutoff
        ]

        if len(survivors) > max_entries:
            protected = [r for r in survivors if r.tool_name in never_expire]
            if len(protected) >= max_entries:
                keep = protected[-max_entries:]
            else:
                room = max_entries - len(protected)
                expiring = [r for r in survivors if r.tool_name not in never_expire]
                keep = protected + expiring[-room:]
            keep_ids = {id(r) for r in keep}
            survivors = [r for r in survivors if id(r) in keep_ids]

        removed = before - len(survivors)
        if removed == 0:
            return 0

        state.tool_executions = survivors
        # Later records overwrite earlier ones, so each digest points at its most recent call
        state.digest_index = {}
        for record in survivors:
            state.digest_index[record.arguments_digest] = record

        self.metrics.increment_counter("context.tool_cache.evicted", removed)
        context_logger.log_context_update(
            thread_id=state.thread_id,
            context_type="tool_executions",
            action="evicted",
            details={"removed": removed, "remaining": len(survivors)}
        )
        return removed
