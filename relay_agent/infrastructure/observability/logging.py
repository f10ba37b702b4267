import structlog
import logging
import sys
import json
from typing import Dict, Any, Optional, Sequence
from datetime import datetime, timezone
import os


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    service_name: str = "relay-agent"
) -> None:
    """Setup structured logging configuration"""

    # Configure Python logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO)
    )

    # Processors for structlog
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_service_context,
    ]

    # Add appropriate renderer based on format
    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer(default=str))
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    # Configure structlog
    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # Set service name in context
    structlog.contextvars.bind_contextvars(
        service=service_name,
        environment=os.getenv("ENVIRONMENT", "development"),
        version=os.getenv("SERVICE_VERSION", "unknown")
    )


def add_service_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add service context to all log entries"""

    # Add timestamp if not present
    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()

    # Thread id bound by the orchestrator for the current turn
    thread_id = structlog.contextvars.get_contextvars().get("thread_id")
    if thread_id and "thread_id" not in event_dict:
        event_dict["thread_id"] = thread_id

    return event_dict


class ContextLogger:
    """Specialized logger for thread context engine events"""

    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)

    def log_tool_execution(
        self,
        tool_name: str,
        thread_id: str,
        sequence: int,
        status: str,
        reasoning: Optional[str] = None,
        error: Optional[str] = None
    ):
        """Log a recorded tool execution"""

        self.logger.info(
            "tool_execution",
            tool_name=tool_name,
            thread_id=thread_id,
            sequence=sequence,
            status=status,
            reasoning=reasoning,
            error=error
        )

    def log_context_update(
        self,
        thread_id: str,
        context_type: str,
        action: str,
        details: Optional[Dict[str, Any]] = None
    ):
        """Log context updates"""

        self.logger.info(
            "context_update",
            thread_id=thread_id,
            context_type=context_type,
            action=action,
            details=details or {}
        )

    def log_pruning(self, thread_id: str, before: int, removed: int, kept: int):
        self.logger.info(
            "history_pruned",
            thread_id=thread_id,
            before=before,
            removed=removed,
            kept=kept
        )

    def log_context_build(
        self,
        thread_id: str,
        entries: int,
        messages: int,
        tool_calls: int,
        skipped_entries: int = 0
    ):
        self.logger.info(
            "context_built",
            thread_id=thread_id,
            entries=entries,
            messages=messages,
            tool_calls=tool_calls,
            skipped_entries=skipped_entries
        )


# Global logger instance
context_logger = ContextLogger("relay_agent.context")


class MetricsCollector:
    """Collect and export metrics"""

    def __init__(self, emit_logs: bool = True):
        self.metrics: Dict[str, Any] = {}
        self.emit_logs = emit_logs

    def record_latency(self, operation: str, duration_ms: float, tags: Optional[Dict[str, str]] = None):
        """Record operation latency"""

        key = f"latency.{operation}"
        if key not in self.metrics:
            self.metrics[key] = {
                "count": 0,
                "sum": 0,
                "min": float('inf'),
                "max": 0
            }

        self.metrics[key]["count"] += 1
        self.metrics[key]["sum"] += duration_ms
        self.metrics[key]["min"] = min(self.metrics[key]["min"], duration_ms)
        self.metrics[key]["max"] = max(self.metrics[key]["max"], duration_ms)

        if self.emit_logs:
            context_logger.logger.debug(
                "metric",
                metric_type="latency",
                operation=operation,
                duration_ms=duration_ms,
                tags=tags or {}
            )

    def increment_counter(self, name: str, value: int = 1, tags: Optional[Dict[str, str]] = None):
        """Increment a counter metric"""

        if name not in self.metrics:
            self.metrics[name] = 0
        self.metrics[name] += value

        if self.emit_logs:
            context_logger.logger.debug(
                "metric",
                metric_type="counter",
                name=name,
                value=value,
                tags=tags or {}
            )

    def get_counter(self, name: str) -> int:
        value = self.metrics.get(name, 0)
        return value if isinstance(value, int) else 0

    def get_metrics_summary(self) -> Dict[str, Any]:
        """Get summary of all metrics"""

        summary = {}
        for key, value in self.metrics.items():
            if isinstance(value, dict) and "count" in value:
                # Latency metric
                summary[key] = {
                    "count": value["count"],
                    "avg": value["sum"] / value["count"] if value["count"] > 0 else 0,
                    "min": value["min"] if value["min"] != float('inf') else 0,
                    "max": value["max"]
                }
            else:
                # Counter
                summary[key] = value

        return summary


# Console view of a built context, used for debug logs
SYMBOLS = {
    "system": "[SYS]",
    "user": "[USER]",
    "assistant": "[ASST]",
    "tool": "[TOOL]",
    "time": "[TIME]",
}


def _entry_field(entry: Any, name: str, default: Any = None) -> Any:
    if isinstance(entry, dict):
        return entry.get(name, default)
    return getattr(entry, name, default)


def _role_value(entry: Any) -> str:
    role = _entry_field(entry, "role", "")
    return getattr(role, "value", role)


def format_context_entry(entry: Any) -> str:
    """Format a single context entry for console display"""

    role = _role_value(entry)
    content = _entry_field(entry, "content")
    turn = _entry_field(entry, "turn", 0)
    index = _entry_field(entry, "index", 0)

    if isinstance(content, dict) and content.get("type") == "conversation_stats":
        stats = content.get("stats", {})
        channel_info = stats.get("channel_info", {})
        counts = stats.get("message_counts", {})
        tools = stats.get("tool_usage", {})
        return "\n".join([
            f"{SYMBOLS['system']} CONVERSATION STATS",
            f"  Channel: {channel_info.get('channel')} (DM: {channel_info.get('is_dm')}, Thread: {channel_info.get('is_thread')})",
            f"  Messages: {counts.get('total_messages')} ({counts.get('user_messages')} user, {counts.get('bot_messages')} bot)",
            f"  Tool calls: {tools.get('total_tool_calls')} (Thread history: {tools.get('thread_history_calls')})",
        ])

    if isinstance(content, dict) and content.get("type") == "tool_call":
        line = f"{SYMBOLS['tool']} [{index}] Turn {turn}: {content.get('tool_name')} -> {content.get('status')}"
        if content.get("args"):
            line += f" {json.dumps(content['args'], default=str)}"
        return line

    prefix = SYMBOLS.get(role, f"[{str(role).upper()}]")
    if isinstance(content, dict):
        text = content.get("text", "")
        user = content.get("user_id")
        who = f" <@{user}>" if user else ""
        return f"{prefix}{who} [{index}] Turn {turn}\n> {text}"

    text = str(content or "")
    if len(text) > 100:
        text = text[:100] + "..."
    return f"{prefix} [{index}] {text}"


def format_context_for_console(entries: Sequence[Any]) -> str:
    """Format a whole built context for console display"""

    if not entries:
        return "Empty context"
    return "\n\n".join(format_context_entry(entry) for entry in entries)
