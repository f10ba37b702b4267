from typing import Dict


class Sequencer:
    """Per-thread monotonic counter ordering messages and tool executions"""

    def __init__(self):
        self._counters: Dict[str, int] = {}

    def next(self, thread_id: str) -> int:
        """Return 0 on the first call for a thread, then 1, 2, ..."""

        sequence = self._counters.get(thread_id, 0)
        self._counters[thread_id] = sequence + 1
        return sequence

    def issued(self, thread_id: str) -> int:
        """Number of sequence values handed out for a thread so far"""
        return self._counters.get(thread_id, 0)

    def was_issued(self, thread_id: str, sequence: int) -> bool:
        return 0 <= sequence < self.issued(thread_id)
