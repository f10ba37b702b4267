from typing import Dict, Any, Optional, List
from pydantic import BaseModel, Field
from datetime import datetime

from ....domain.models.context_models import (
    ButtonStatus,
    ContextEntry,
    MessageSource,
    MessageType,
)


class MessageRequest(BaseModel):
    """Message to append to a thread"""
    id: Optional[str] = None
    source: MessageSource
    source_id: Optional[str] = None
    text: str = ""
    type: MessageType = MessageType.TEXT
    timestamp: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class MessageAccepted(BaseModel):
    message_id: str


class ToolExecutionRequest(BaseModel):
    """Outcome of a tool call made outside the engine"""
    tool_name: str = Field(min_length=1)
    arguments: Dict[str, Any] = Field(default_factory=dict)
    result: Any = None
    error: Optional[str] = None
    skipped: bool = False


class ToolLookupResponse(BaseModel):
    tool_name: str
    executed: bool
    result: Any = None


class ContextResponse(BaseModel):
    thread_id: str
    entries: List[ContextEntry]


class MetadataValue(BaseModel):
    value: Any = None


class MetadataResponse(BaseModel):
    key: str
    value: Any = None


class ButtonStateRequest(BaseModel):
    state: ButtonStatus
    metadata: Optional[Dict[str, Any]] = None


class PruneResponse(BaseModel):
    thread_id: str
    removed: int
