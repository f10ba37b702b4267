from typing import Dict, Any, List, Optional, Union
from pydantic import BaseModel, Field, field_validator
from datetime import datetime, timezone
from enum import Enum


def utcnow() -> datetime:
    """Current time as an aware UTC datetime"""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so every timestamp in the engine is comparable"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class MessageSource(str, Enum):
    """Where a message came from"""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


class MessageType(str, Enum):
    """Kinds of messages the engine understands"""
    TEXT = "text"
    BUTTON = "button_message"
    BUTTON_CLICK = "button_click"
    IMAGE = "image"
    FILE = "file"
    SYSTEM_NOTE = "system_note"


class EntryRole(str, Enum):
    """Roles of serialized context entries"""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class ToolStatus(str, Enum):
    """Outcome of a tool execution"""
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"


class ButtonStatus(str, Enum):
    """Interactive button lifecycle"""
    ACTIVE = "active"
    SELECTED = "selected"


class ContextMessage(BaseModel):
    """A canonical message record inside a thread"""
    id: str = Field(description="Unique message identifier")
    thread_id: str = Field(description="Thread this message belongs to")
    timestamp: datetime = Field(default_factory=utcnow)
    sequence: int = Field(ge=0, description="Per-thread order index, assigned once at insertion")
    source: MessageSource
    source_id: Optional[str] = Field(None, description="Opaque actor identifier")
    text: str = ""
    type: MessageType = Field(default=MessageType.TEXT)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class ToolExecutionRecord(BaseModel):
    """One recorded tool call and its outcome"""
    id: str = Field(description="Execution identifier")
    thread_id: str
    tool_name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    arguments_digest: str = Field(description="Digest of tool name + normalized arguments")
    result: Optional[Any] = None
    error: Optional[str] = None
    skipped: bool = False
    reasoning: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    sequence: int = Field(ge=0)

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @property
    def status(self) -> ToolStatus:
        # skipped wins over error: a skipped call never ran
        if self.skipped:
            return ToolStatus.SKIPPED
        if self.error:
            return ToolStatus.ERROR
        return ToolStatus.SUCCESS


class ButtonState(BaseModel):
    """State of one interactive button set, keyed by action id"""
    state: ButtonStatus = Field(default=ButtonStatus.ACTIVE)
    metadata: Optional[Dict[str, Any]] = None
    updated_at: datetime = Field(default_factory=utcnow)


class ContextEntry(BaseModel):
    """One unit of the ordered, role-tagged sequence handed to the LLM"""
    index: int = Field(ge=0)
    turn: int = Field(ge=0)
    timestamp: datetime
    role: EntryRole
    content: Union[str, Dict[str, Any]]

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class MessageCounts(BaseModel):
    """Per-source message counts"""
    total: int = 0
    user: int = 0
    assistant: int = 0
    system: int = 0
    tool: int = 0


class ThreadSummary(BaseModel):
    """Counts for a thread's active message view"""
    thread_id: str
    counts: MessageCounts = Field(default_factory=MessageCounts)
    is_empty: bool = True
    has_user_messages: bool = False


class ActiveButton(BaseModel):
    """A button set still waiting for a click"""
    action_id: str
    metadata: Optional[Dict[str, Any]] = None


class ThreadStateView(BaseModel):
    """Compact thread state handed to the LLM or to collaborators"""
    thread_id: str
    thread_ts: Optional[str] = None
    channel_id: Optional[str] = None
    sent_messages_count: int = 0
    active_buttons: List[ActiveButton] = Field(default_factory=list)
    recent_tool_results: List[Dict[str, Any]] = Field(default_factory=list)
