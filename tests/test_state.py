"""
Tests for persisted run state.
"""

import json
import logging

import pytest

from adlab.exceptions import CorruptStateError
from adlab.pipeline.plan import Plan, Stage
from adlab.pipeline.state import NodeState, RunState, StageRecord, StageStatus


def _state(tmp_path):
    return RunState(tmp_path / "state" / "lab.state.json", "lab")


class TestRunState:
    def test_missing_file_is_empty(self, tmp_path):
        state = RunState.load(tmp_path / "none.json", "lab")
        assert state.stages == {}
        assert state.status_of("anything") == StageStatus.PENDING

    def test_mark_running_then_succeeded(self, tmp_path):
        state = _state(tmp_path)
        state.mark("start-vm:DC01", StageStatus.RUNNING)
        record = state.stages["start-vm:DC01"]
        assert record.attempts == 1
        assert record.started_at is not None
        assert record.finished_at is None

        state.mark("start-vm:DC01", StageStatus.SUCCEEDED)
        assert state.is_done("start-vm:DC01")
        assert record.finished_at is not None

    def test_failure_keeps_error_until_next_attempt(self, tmp_path):
        state = _state(tmp_path)
        state.mark("a", StageStatus.RUNNING)
        state.mark("a", StageStatus.FAILED, error="boom")
        assert state.stages["a"].error == "boom"
        assert not state.is_done("a")

        state.mark("a", StageStatus.RUNNING)
        assert state.stages["a"].error is None
        assert state.stages["a"].attempts == 2

    def test_skipped_counts_as_done(self, tmp_path):
        state = _state(tmp_path)
        state.mark("a", StageStatus.SKIPPED)
        assert state.is_done("a")

    def test_persisted_after_every_transition(self, tmp_path):
        state = _state(tmp_path)
        state.lab_sha256 = "abc"
        state.mark("a", StageStatus.RUNNING)

        data = json.loads(state.path.read_text())
        assert data["version"] == 1
        assert data["lab"] == "lab"
        assert data["lab_sha256"] == "abc"
        assert data["stages"]["a"]["status"] == "running"

    def test_round_trip(self, tmp_path):
        state = _state(tmp_path)
        state.mark("a", StageStatus.RUNNING)
        state.mark("a", StageStatus.FAILED, error="nope")

        loaded = RunState.load(state.path, "lab")

        assert loaded.stages["a"] == state.stages["a"]
        assert loaded.updated_at == state.updated_at

    def test_reset_some(self, tmp_path):
        state = _state(tmp_path)
        state.mark("a", StageStatus.SUCCEEDED)
        state.mark("b", StageStatus.SUCCEEDED)

        assert state.reset(["a", "zzz"]) == ["a"]
        assert RunState.load(state.path, "lab").status_of("a") == StageStatus.PENDING
        assert state.is_done("b")

    def test_reset_all(self, tmp_path):
        state = _state(tmp_path)
        state.mark("a", StageStatus.SUCCEEDED)
        assert state.reset() == ["a"]
        assert RunState.load(state.path, "lab").stages == {}

    def test_other_lab_warns(self, tmp_path, caplog, monkeypatch):
        # setup_logging stops adlab records reaching the root logger
        monkeypatch.setattr(logging.getLogger("adlab"), "propagate", True)
        state = _state(tmp_path)
        state.save()
        with caplog.at_level("WARNING", logger="adlab.pipeline.state"):
            RunState.load(state.path, "other")
        assert "belongs to lab 'lab'" in caplog.text

    @pytest.mark.parametrize(
        "content",
        [
            "{not json",
            "[]",
            '{"stages": {"a": {"status": "exploded"}}}',
            '{"stages": ["a"]}',
        ],
    )
    def test_unreadable_file_raises(self, tmp_path, content):
        path = tmp_path / "lab.state.json"
        path.write_text(content)

        with pytest.raises(CorruptStateError) as exc_info:
            RunState.load(path, "lab")
        assert str(path) in exc_info.value.message
        assert "adlab reset" in exc_info.value.suggestion


class TestStageRecord:
    def test_from_dict_defaults(self):
        assert StageRecord.from_dict({}) == StageRecord()

    def test_to_dict_uses_values(self):
        assert StageRecord(StageStatus.FAILED).to_dict()["status"] == "failed"


class TestNodeStates:
    def test_highest_succeeded_milestone(self, tmp_path):
        plan = Plan(
            [
                Stage("create-vm:A", "A", "", milestone=NodeState.CREATED),
                Stage("start-vm:A", "A", "", milestone=NodeState.RUNNING),
                Stage("promote:A", "A", "", milestone=NodeState.PROMOTED),
                Stage("create-vm:B", "B", "", milestone=NodeState.CREATED),
                Stage("no-milestone:C", "C", ""),
            ]
        )
        state = _state(tmp_path)
        state.mark("create-vm:A", StageStatus.SUCCEEDED)
        state.mark("start-vm:A", StageStatus.SUCCEEDED)
        state.mark("promote:A", StageStatus.FAILED, error="x")

        assert state.node_states(plan) == {
            "A": NodeState.RUNNING,
            "B": NodeState.ABSENT,
            "C": NodeState.ABSENT,
        }

    def test_rank_follows_declaration(self):
        assert NodeState.ABSENT.rank == 0
        assert NodeState.CLONED.rank > NodeState.CONFIGURED.rank > NodeState.JOINED.rank
