from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Union
from pydantic import BaseModel, Field
import asyncio
import inspect
import time
import weakref
import structlog

from ..context.context_manager import ContextManager
from ..errors import format_error_for_llm
from ..models.context_models import ToolStatus

logger = structlog.get_logger(__name__)

ToolHandler = Callable[[Dict[str, Any]], Union[Any, Awaitable[Any]]]


class ToolResult(BaseModel):
    """Outcome of one tool call as seen by the orchestrator"""
    tool_name: str
    status: ToolStatus
    data: Any = None
    error: Optional[str] = None
    cached: bool = False
    execution_metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status != ToolStatus.ERROR


class ToolExecutor:
    """Runs tool handlers once per (thread, tool, arguments).

    A call whose digest was already recorded in the thread without an error
    returns the cached result and is recorded as skipped. Otherwise the handler
    runs and its result or error is recorded.
    """

    def __init__(self, context_manager: ContextManager, timeout: Optional[float] = None):
        self.context_manager = context_manager
        self.timeout = timeout
        # A thread's lock lives only while some call holds or awaits it
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _thread_lock(self, thread_id: str) -> asyncio.Lock:
        lock = self._locks.get(thread_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[thread_id] = lock
        return lock

    async def execute(
        self,
        thread_id: str,
        tool_name: str,
        args: Optional[Mapping[str, Any]],
        handler: ToolHandler
    ) -> ToolResult:
        arguments = dict(args or {})

        # Serialize per thread so two identical calls cannot both miss the cache
        lock = self._thread_lock(thread_id)
        async with lock:
            previous = self.context_manager.get_execution(thread_id, tool_name, arguments)
            # Failed calls are retried; only successful outcomes are reused
            if previous is not None and previous.error is None:
                cached = self.context_manager.get_tool_result(thread_id, tool_name, arguments)
                self.context_manager.record_tool_execution(thread_id, tool_name, arguments, skipped=True)
                logger.info("Skipping duplicate tool call", thread_id=thread_id, tool_name=tool_name)
                return ToolResult(tool_name=tool_name, status=ToolStatus.SKIPPED, data=cached, cached=True)

            started = time.perf_counter()
            try:
                result = await self._run(handler, arguments)
            except asyncio.TimeoutError:
                timeout_error = asyncio.TimeoutError("Tool execution timeout")
                return self._failed(thread_id, tool_name, arguments, timeout_error, started)
            except Exception as e:
                return self._failed(thread_id, tool_name, arguments, e, started)

            duration_ms = (time.perf_counter() - started) * 1000
            self.context_manager.record_tool_execution(thread_id, tool_name, arguments, result)
            self._record_latency(tool_name, duration_ms, "success")
            return ToolResult(
                tool_name=tool_name,
                status=ToolStatus.SUCCESS,
                data=result,
                execution_metadata={"execution_time_ms": duration_ms}
            )

    async def _run(self, handler: ToolHandler, arguments: Dict[str, Any]) -> Any:
        outcome = handler(dict(arguments))
        if inspect.isawaitable(outcome):
            if self.timeout is not None:
                return await asyncio.wait_for(outcome, self.timeout)
            return await outcome
        return outcome

    def _failed(
        self,
        thread_id: str,
        tool_name: str,
        arguments: Dict[str, Any],
        error: BaseException,
        started: float
    ) -> ToolResult:
        duration_ms = (time.perf_counter() - started) * 1000
        record = self.context_manager.record_tool_execution(thread_id, tool_name, arguments, error=error)
        message = record.error if record is not None else (str(error) or type(error).__name__)
        self._record_latency(tool_name, duration_ms, "error")
        return ToolResult(
            tool_name=tool_name,
            status=ToolStatus.ERROR,
            data=format_error_for_llm(error),
            error=message,
            execution_metadata={"execution_time_ms": duration_ms}
        )

    def _record_latency(self, tool_name: str, duration_ms: float, outcome: str):
        self.context_manager.metrics.record_latency(
            "tool.execute",
            duration_ms,
            tags={"tool_name": tool_name, "outcome": outcome}
        )
