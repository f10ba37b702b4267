from typing import List, Sequence
import json

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from ..models.context_models import ContextEntry, EntryRole


def entry_text(entry: ContextEntry) -> str:
    """Render entry content as the text an LLM message carries"""

    if isinstance(entry.content, str):
        return entry.content
    payload = {"index": entry.index, "turn": entry.turn, "timestamp": entry.timestamp.isoformat()}
    payload.update(entry.content)
    return json.dumps(payload, ensure_ascii=False, default=str)


def to_langchain_messages(entries: Sequence[ContextEntry]) -> List[BaseMessage]:
    """Convert built context entries into LangChain chat messages"""

    messages: List[BaseMessage] = []
    for entry in entries:
        text = entry_text(entry)
        if entry.role == EntryRole.USER:
            messages.append(HumanMessage(content=text))
        elif entry.role == EntryRole.ASSISTANT:
            messages.append(AIMessage(content=text))
        else:
            messages.append(SystemMessage(content=text))
    return messages
