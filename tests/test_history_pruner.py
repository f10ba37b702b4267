"""Tests for history pruning."""

from relay_agent.domain.context.history_pruner import PRUNE_NOTICE_TEXT
from relay_agent.domain.models.context_models import MessageType
from relay_agent.infrastructure.config.settings import ContextSettings


def fill(manager, thread_id, count, clock, overrides=None):
    ids = []
    for i in range(count):
        message = {"thread_id": thread_id, "source": "user", "source_id": "U1", "text": f"message {i}"}
        message.update((overrides or {}).get(i, {}))
        ids.append(manager.add_message(message))
        clock.advance(seconds=1)
    return ids


class TestPruneThreadHistory:
    def test_scenario_c_removes_all_but_keep_set(self, manager, clock, thread_id):
        ids = fill(manager, thread_id, 76, clock)

        removed = manager.prune_thread_history(thread_id)

        # root + 49 most recent
        assert removed == 76 - 50
        messages = manager.get_thread_messages(thread_id)
        assert len(messages) == 51
        assert messages[0].id == ids[0]
        notice = messages[-1]
        assert notice.type == MessageType.SYSTEM_NOTE
        assert notice.text == PRUNE_NOTICE_TEXT.format(removed=26)

    def test_pruning_bound_with_forced_kept_messages(self, manager, clock, thread_id):
        overrides = {5: {"type": "button_click"}, 12: {"source": "system", "type": "system_note"}}
        ids = fill(manager, thread_id, 80, clock, overrides)

        manager.prune_thread_history(thread_id)

        remaining = {m.id for m in manager.get_thread_messages(thread_id)}
        assert ids[0] in remaining
        assert ids[5] in remaining
        assert ids[12] in remaining
        forced = 3
        # + 1 for the notice itself
        assert len(remaining) <= 50 + forced + 1

    def test_noop_below_max(self, manager, clock, thread_id):
        fill(manager, thread_id, 75, clock)
        assert manager.prune_thread_history(thread_id) == 0
        assert len(manager.get_thread_messages(thread_id)) == 75

    def test_noop_below_minimum(self, clock, metrics, thread_id):
        from relay_agent.domain.context.context_manager import ContextManager

        settings = ContextSettings(max_messages=5, target_messages=3, min_messages_to_keep=10)
        manager = ContextManager(settings, metrics, clock)
        fill(manager, thread_id, 8, clock)

        assert manager.prune_thread_history(thread_id) == 0

    def test_root_can_be_dropped_when_disabled(self, clock, metrics, thread_id):
        from relay_agent.domain.context.context_manager import ContextManager

        settings = ContextSettings(keep_root_message=False)
        manager = ContextManager(settings, metrics, clock)
        ids = fill(manager, thread_id, 76, clock)

        assert manager.prune_thread_history(thread_id) == 26
        remaining = [m.id for m in manager.get_thread_messages(thread_id)]
        assert ids[0] not in remaining
        assert remaining[:-1] == ids[26:]

    def test_pruned_records_stay_addressable(self, manager, clock, thread_id):
        ids = fill(manager, thread_id, 76, clock)
        manager.prune_thread_history(thread_id)

        assert manager.message_store.get_message(thread_id, ids[1]) is not None
        assert manager.get_thread_summary(thread_id).counts.total == 51

    def test_notice_gets_a_fresh_sequence(self, manager, clock, thread_id):
        fill(manager, thread_id, 76, clock)
        manager.prune_thread_history(thread_id)
        assert manager.get_thread_messages(thread_id)[-1].sequence == 76

    def test_metrics_counter(self, manager, metrics, clock, thread_id):
        fill(manager, thread_id, 76, clock)
        manager.prune_thread_history(thread_id)
        assert metrics.get_counter("context.history.pruned") == 26

    def test_unknown_thread(self, manager):
        assert manager.prune_thread_history("nope") == 0
