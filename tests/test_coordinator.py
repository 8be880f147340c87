"""Propagation coordinator: dedup window, schema-hash dedup, debounce, backoff."""

import asyncio

import pytest

from sheetflow.models.schema import schema_hash


class TestRecentPropagation:
    def test_unknown_edge_is_not_recent(self, coordinator):
        assert not coordinator.was_recently_propagated("wf", "a", "b")

    def test_record_is_recent_within_max_age(self, coordinator, clock):
        coordinator.track_successful_propagation("wf", "a", "b", sheet_name="Sheet1")
        clock.advance(coordinator.default_max_age)
        assert coordinator.was_recently_propagated("wf", "a", "b", sheet_name="Sheet1")

        clock.advance(1)
        assert not coordinator.was_recently_propagated("wf", "a", "b", sheet_name="Sheet1")

    def test_temporary_and_persisted_ids_share_records(self, coordinator):
        coordinator.track_successful_propagation("temp-wf", "a", "b")
        assert coordinator.was_recently_propagated("wf", "a", "b")

    def test_sheets_are_tracked_separately(self, coordinator):
        coordinator.track_successful_propagation("wf", "a", "b", sheet_name="Sheet1")
        assert not coordinator.was_recently_propagated("wf", "a", "b", sheet_name="Sheet2")


class TestSchemaHashDedup:
    def test_same_columns_any_order_match_within_double_window(self, coordinator, clock):
        coordinator.track_successful_propagation(
            "wf", "a", "b", sheet_name="S",
            schema=[{"name": "a", "type": "string"}, {"name": "b", "type": "number"}],
        )
        clock.advance(coordinator.default_max_age * 1.5)

        same = [{"name": "b", "type": "string"}, {"name": "a", "type": "number"}]
        assert coordinator.was_recently_propagated("wf", "a", "b", sheet_name="S", schema=same)

        different = [{"name": "a"}, {"name": "c"}]
        assert not coordinator.was_recently_propagated("wf", "a", "b", sheet_name="S", schema=different)

    def test_hash_match_expires_after_double_window(self, coordinator, clock):
        schema = ["a", "b"]
        coordinator.track_successful_propagation("wf", "a", "b", schema=schema)
        clock.advance(coordinator.default_max_age * 2 + 1)
        assert not coordinator.was_recently_propagated("wf", "a", "b", schema=schema)

    def test_hash_is_order_insensitive(self):
        assert schema_hash([{"name": "a"}, {"name": "b"}]) == schema_hash([{"name": "b"}, {"name": "a"}])
        assert schema_hash([]) is None

    def test_types_only_count_when_opted_in(self):
        left = [{"name": "a", "type": "string"}]
        right = [{"name": "a", "type": "number"}]
        assert schema_hash(left) == schema_hash(right)
        assert schema_hash(left, include_types=True) != schema_hash(right, include_types=True)


class TestDebounce:
    @pytest.mark.asyncio
    async def test_burst_collapses_to_one_record(self, coordinator):
        for version in range(5):
            coordinator.track_successful_propagation("wf", "a", "b", version=version, debounce=True)

        assert coordinator.pending_count == 1
        assert coordinator.recorded_total == 0
        assert coordinator.was_recently_propagated("wf", "a", "b")

        assert coordinator.flush_pending() == 1
        assert coordinator.recorded_total == 1
        assert coordinator.get_record("wf", "a", "b").version == 4

    @pytest.mark.asyncio
    async def test_debounce_timer_commits_after_interval(self, coordinator):
        for _ in range(3):
            coordinator.track_successful_propagation("wf", "a", "b", debounce=True)
            await asyncio.sleep(0.05)

        await asyncio.sleep(coordinator.debounce_interval + 0.2)
        assert coordinator.pending_count == 0
        assert coordinator.recorded_total == 1

    @pytest.mark.asyncio
    async def test_immediate_call_cancels_pending(self, coordinator):
        coordinator.track_successful_propagation("wf", "a", "b", version=1, debounce=True)
        coordinator.track_successful_propagation("wf", "a", "b", version=2)

        assert coordinator.pending_count == 0
        assert coordinator.recorded_total == 1
        assert coordinator.get_record("wf", "a", "b").version == 2

    def test_debounce_interval_has_floor(self, settings):
        from sheetflow.services.schema import PropagationCoordinator

        assert PropagationCoordinator(settings).debounce_interval >= 2.0


class TestScheduling:
    def test_in_progress_edge_is_not_repropagated(self, coordinator):
        coordinator.mark_started("wf", "a", "b")
        assert not coordinator.should_propagate("wf", "a", "b")
        assert coordinator.should_propagate("wf", "a", "b", force=True)

    def test_cooldown_after_success(self, coordinator, clock):
        coordinator.mark_started("wf", "a", "b")
        coordinator.mark_success("wf", "a", "b")
        assert not coordinator.should_propagate("wf", "a", "b")

        clock.advance(coordinator.cooldown + 1)
        assert coordinator.should_propagate("wf", "a", "b")

    def test_error_backoff_doubles_and_caps(self, coordinator, clock):
        backoffs = [coordinator.mark_error("wf", "a", "b", "boom") for _ in range(8)]
        assert backoffs[:4] == [1.0, 2.0, 4.0, 8.0]
        assert backoffs[-1] == 60.0

        assert not coordinator.should_propagate("wf", "a", "b")
        clock.advance(61)
        assert coordinator.should_propagate("wf", "a", "b")

    def test_success_resets_backoff(self, coordinator):
        coordinator.mark_error("wf", "a", "b", "boom")
        coordinator.mark_error("wf", "a", "b", "boom")
        coordinator.mark_success("wf", "a", "b")
        assert coordinator.mark_error("wf", "a", "b", "boom") == 1.0

    @pytest.mark.asyncio
    async def test_clear_history_for_one_workflow(self, coordinator):
        coordinator.track_successful_propagation("wf", "a", "b")
        coordinator.track_successful_propagation("other", "a", "b")
        coordinator.track_successful_propagation("wf", "a", "c", debounce=True)
        coordinator.mark_error("wf", "a", "b", "boom")

        assert coordinator.clear_history("temp-wf") == 1
        assert coordinator.pending_count == 0
        assert not coordinator.was_recently_propagated("wf", "a", "b")
        assert coordinator.was_recently_propagated("other", "a", "b")
        assert coordinator.should_propagate("wf", "a", "b")

    def test_stats(self, coordinator):
        coordinator.track_successful_propagation("wf", "a", "b")
        coordinator.mark_started("wf", "a", "c")
        coordinator.mark_error("wf", "a", "d", "boom")
        stats = coordinator.get_stats()
        assert stats["records"] == 1
        assert stats["in_progress"] == 1
        assert stats["backing_off"] == 1


class TestSweep:
    def test_sweep_drops_stale_records_and_idle_states(self, coordinator, clock):
        coordinator.track_successful_propagation("wf", "a", "b")
        coordinator.mark_started("wf", "a", "e")
        coordinator.mark_success("wf", "a", "e")
        coordinator.mark_started("wf", "a", "d")

        clock.advance(coordinator.default_max_age * 2 + 1)
        coordinator.mark_started("wf", "a", "c")
        coordinator.mark_error("wf", "a", "c", "boom")

        assert coordinator.sweep() == 2
        stats = coordinator.get_stats()
        assert stats["records"] == 0
        assert stats["in_progress"] == 1
        assert stats["backing_off"] == 1
        assert not coordinator.should_propagate("wf", "a", "c")
        assert not coordinator.should_propagate("wf", "a", "d")

        clock.advance(121)
        assert coordinator.sweep() == 0
        assert coordinator.should_propagate("wf", "a", "c")
        assert coordinator.mark_error("wf", "a", "c", "boom") == 1.0

    def test_commit_sweeps_once_max_age_has_passed(self, coordinator, clock):
        coordinator.track_successful_propagation("wf", "a", "b")
        clock.advance(coordinator.default_max_age * 2 + 1)
        coordinator.track_successful_propagation("wf", "a", "c")

        assert coordinator.get_record("wf", "a", "b") is None
        assert coordinator.get_record("wf", "a", "c") is not None
        assert coordinator.recorded_total == 2

    @pytest.mark.asyncio
    async def test_pending_debounce_survives_sweep(self, coordinator, clock):
        coordinator.track_successful_propagation("wf", "a", "b", debounce=True)
        clock.advance(coordinator.default_max_age * 3)
        coordinator.sweep()
        assert coordinator.pending_count == 1
        assert coordinator.was_recently_propagated("wf", "a", "b")
        coordinator.flush_pending()
