# State = everything the engine knows about one thread right now.

# Metadata set by the orchestrator (platform context, iteration counters)

# Channel id and thread ts of the conversation

# Timestamps of messages the assistant already sent

# Button sets and whether they are still waiting for a click

# Messages and tool executions live in the same ThreadState, guarded by its lock
