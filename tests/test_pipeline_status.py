"""Tests for the in-process pipeline status store."""

from engine.pipeline_status import STAGE_MESSAGES, PipelineStage, PipelineStatusStore


class FakeTimer:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def make_store(ttl=60, max_entries=3):
    timer = FakeTimer()
    return PipelineStatusStore(ttl_seconds=ttl, max_entries=max_entries, clock=timer), timer


class TestPipelineStatusStore:
    def test_set_and_get(self):
        store, _ = make_store()
        store.set_stage(1, PipelineStage.FETCHING_ORCID)

        status = store.get(1)
        assert status.stage == PipelineStage.FETCHING_ORCID
        assert status.message == STAGE_MESSAGES[PipelineStage.FETCHING_ORCID]

    def test_missing(self):
        store, _ = make_store()
        assert store.get(1) is None

    def test_entries_expire(self):
        store, timer = make_store(ttl=60)
        store.set_stage(1, PipelineStage.STARTING)

        timer.now += 61
        assert store.get(1) is None
        assert len(store) == 0

    def test_oldest_evicted_when_full(self):
        store, timer = make_store(max_entries=2)
        for user_id in (1, 2, 3):
            store.set_stage(user_id, PipelineStage.STARTING)
            timer.now += 1

        assert store.get(1) is None
        assert store.get(2) is not None
        assert store.get(3) is not None

    def test_warnings_carry_over_between_stages(self):
        store, _ = make_store()
        store.set_stage(1, PipelineStage.FETCHING_PUBLICATIONS)
        store.add_warning(1, "ORCID returned no works")
        store.set_stage(1, PipelineStage.SYNTHESIZING)

        assert store.get(1).warnings == ["ORCID returned no works"]

        store.set_stage(1, PipelineStage.COMPLETE, warnings=[])
        assert store.get(1).warnings == []

    def test_add_warning_without_entry_is_ignored(self):
        store, _ = make_store()
        store.add_warning(1, "lost")
        assert store.get(1) is None

    def test_clear(self):
        store, _ = make_store()
        store.set_stage(1, PipelineStage.STARTING)
        store.set_stage(2, PipelineStage.STARTING)

        store.clear(1)
        assert store.get(1) is None
        store.clear_all()
        assert len(store) == 0
