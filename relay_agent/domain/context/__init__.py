# This module handles thread context engineering

# +---------------------+      +-----------------------+
# |   Message Store     |      | Tool Execution Cache  |
# |---------------------|      |-----------------------|
# | Messages per thread |      | Calls keyed by digest |
# | Active id order     |      | Age + size eviction   |
# | Pruned by History   |      | Cached results        |
# |   Pruner            |      |                       |
# +---------------------+      +-----------------------+
#            \                        /
#             \   shared sequence    /
#              \   per thread       /
#               v                  v
# +----------------------------------------+
# |          Context Formatter             |
# |----------------------------------------|
# | [0] conversation stats                 |
# | [1] persona / tool-call rules          |
# | [2..] messages and tool calls by seq   |
# |       with turn numbers                |
# +----------------------------------------+
#                     |
#                     v
#        [LLM call / tool dispatch]

from .context_manager import ContextManager
from .digest import digest
from .llm_messages import to_langchain_messages

__all__ = ["ContextManager", "digest", "to_langchain_messages"]
