from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from typing import Annotated, Any, Dict, Optional
import json
import structlog

from ..schema.requests import (
    ButtonStateRequest,
    ContextResponse,
    MessageAccepted,
    MessageRequest,
    MetadataResponse,
    MetadataValue,
    PruneResponse,
    ToolExecutionRequest,
    ToolLookupResponse,
)
from ....domain.context.context_manager import ContextManager
from ....domain.errors import ContextBuildError
from ....domain.models.context_models import (
    ButtonState,
    ThreadSummary,
    ToolExecutionRecord,
)

logger = structlog.get_logger(__name__)

# Endpoints are plain functions: the engine is synchronous and FastAPI runs them in its worker pool
router = APIRouter(prefix="/threads", tags=["threads"])


def get_context_manager(request: Request) -> ContextManager:
    return request.app.state.context_manager


Manager = Annotated[ContextManager, Depends(get_context_manager)]


@router.post("/{thread_id}/messages", status_code=status.HTTP_201_CREATED, response_model=MessageAccepted)
def add_message(thread_id: str, body: MessageRequest, manager: Manager):
    message = body.model_dump(exclude_none=True)
    message["thread_id"] = thread_id

    message_id = manager.add_message(message)
    if message_id is None:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Message rejected")
    return MessageAccepted(message_id=message_id)


@router.post("/{thread_id}/tool-executions", status_code=status.HTTP_201_CREATED, response_model=ToolExecutionRecord)
def record_tool_execution(thread_id: str, body: ToolExecutionRequest, manager: Manager):
    record = manager.record_tool_execution(
        thread_id,
        body.tool_name,
        body.arguments,
        result=body.result,
        error=body.error,
        skipped=body.skipped
    )
    if record is None:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Tool execution rejected")
    return record


@router.get("/{thread_id}/tool-executions/lookup", response_model=ToolLookupResponse)
def lookup_tool_execution(
    thread_id: str,
    manager: Manager,
    tool_name: str = Query(min_length=1),
    args: str = Query(default="{}", description="JSON object of call arguments")
):
    try:
        arguments = json.loads(args)
    except json.JSONDecodeError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid args JSON: {e.msg}")
    if not isinstance(arguments, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="args must be a JSON object")

    executed = manager.has_executed(thread_id, tool_name, arguments)
    result = manager.get_tool_result(thread_id, tool_name, arguments) if executed else None
    return ToolLookupResponse(tool_name=tool_name, executed=executed, result=result)


@router.get("/{thread_id}/context", response_model=ContextResponse)
def build_context(
    thread_id: str,
    manager: Manager,
    limit: Optional[int] = Query(default=None, ge=1),
    include_bot_messages: bool = True,
    include_tool_calls: bool = True
):
    try:
        entries = manager.build_context(
            thread_id,
            limit=limit,
            include_bot_messages=include_bot_messages,
            include_tool_calls=include_tool_calls
        )
    except ContextBuildError as e:
        logger.error("Context build failed", thread_id=thread_id, error=str(e))
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    return ContextResponse(thread_id=thread_id, entries=entries)


@router.get("/{thread_id}/summary", response_model=ThreadSummary)
def thread_summary(thread_id: str, manager: Manager):
    return manager.get_thread_summary(thread_id)


@router.get("/{thread_id}/state")
def thread_state(thread_id: str, manager: Manager) -> Dict[str, Any]:
    return manager.get_state_for_llm(thread_id).model_dump(mode="json")


@router.put("/{thread_id}/metadata/{key}", response_model=MetadataResponse)
def set_metadata(thread_id: str, key: str, body: MetadataValue, manager: Manager):
    if not manager.set_metadata(thread_id, key, body.value):
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Metadata rejected")
    return MetadataResponse(key=key, value=manager.get_metadata(thread_id, key))


@router.get("/{thread_id}/metadata/{key}", response_model=MetadataResponse)
def get_metadata(thread_id: str, key: str, manager: Manager):
    sentinel = object()
    value = manager.get_metadata(thread_id, key, sentinel)
    if value is sentinel:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"No metadata {key!r}")
    return MetadataResponse(key=key, value=value)


@router.put("/{thread_id}/buttons/{action_id}", response_model=ButtonState)
def set_button_state(thread_id: str, action_id: str, body: ButtonStateRequest, manager: Manager):
    if not manager.set_button_state(thread_id, action_id, body.state, body.metadata):
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Button state rejected")
    return manager.get_button_state(thread_id, action_id)


@router.get("/{thread_id}/buttons/{action_id}", response_model=ButtonState)
def get_button_state(thread_id: str, action_id: str, manager: Manager):
    state = manager.get_button_state(thread_id, action_id)
    if state is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"No button {action_id!r}")
    return state


@router.post("/{thread_id}/prune", response_model=PruneResponse)
def prune_history(thread_id: str, manager: Manager):
    return PruneResponse(thread_id=thread_id, removed=manager.prune_thread_history(thread_id))
