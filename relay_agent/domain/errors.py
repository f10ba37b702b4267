from typing import Any, Dict, Optional


class ContextEngineError(Exception):
    """Base class for thread context engine errors"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


class MessageValidationError(ContextEngineError):
    """Raised when a message is missing required fields or has unknown enum values"""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message, {"field": field} if field else None)
        self.field = field


class DigestError(ContextEngineError):
    """Raised when tool arguments cannot be canonicalized (e.g. cyclic structures)"""

    def __init__(self, tool_name: str, reason: str):
        super().__init__(f"Cannot digest arguments for {tool_name!r}: {reason}", {"tool_name": tool_name})
        self.tool_name = tool_name


class SnapshotError(ContextEngineError):
    """Raised when a tool result cannot be snapshotted"""


class ContextBuildError(ContextEngineError):
    """Raised when build() cannot produce even the fallback context entry"""

    def __init__(self, thread_id: str, cause: Optional[BaseException] = None):
        super().__init__(f"Could not build context for thread {thread_id!r}", {"thread_id": thread_id})
        self.thread_id = thread_id
        self.cause = cause


def format_error_for_llm(error: BaseException) -> Dict[str, Any]:
    """Render an error in a shape the LLM can read as a tool result"""

    return {
        "error": True,
        "message": str(error) or "An unknown error occurred",
        "type": type(error).__name__,
        "details": getattr(error, "details", {}) or {},
    }
