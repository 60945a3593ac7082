"""Tests for the key-value store and the run recorder."""

from datetime import datetime

import pytest

from agent_kernel.models.loop import CostRecord, LoopResult, LoopStatus, TranscriptEntry, Usage
from agent_kernel.storage.store import (
    AUDIT_PARTITION,
    KeyValueStore,
    RunRecorder,
    cost_partition,
    transcript_partition,
)


def _make_result(
    run_id: str = "run_1",
    team_id: str = "developer",
    started_at: datetime = datetime(2026, 3, 2, 10, 0, 0),
    status: LoopStatus = LoopStatus.COMPLETED,
    calls: int = 2,
) -> LoopResult:
    return LoopResult(
        run_id=run_id,
        team_id=team_id,
        assignment="Write the release notes",
        status=status,
        iterations=calls,
        summary="Release notes drafted",
        transcript=[
            TranscriptEntry(kind="model_call", iteration=i + 1, timestamp=started_at)
            for i in range(calls)
        ],
        cost_records=[
            CostRecord(
                team_id=team_id,
                provider="anthropic",
                model="claude-3-5-haiku-latest",
                input_tokens=1000,
                output_tokens=500,
                cost=0.0028,
                iteration=i + 1,
                recorded_at=started_at,
            )
            for i in range(calls)
        ],
        usage=Usage(input_tokens=1000 * calls, output_tokens=500 * calls, api_calls=calls,
                    total_cost=0.0028 * calls),
        started_at=started_at,
        ended_at=started_at,
    )


class TestKeyValueStore:
    def setup_method(self):
        self.kv = KeyValueStore(db_path=":memory:")

    def teardown_method(self):
        self.kv.close()

    def test_put_and_get(self):
        self.kv.put({"pk": "P", "sk": "1", "value": 42})
        assert self.kv.get("P", "1") == {"pk": "P", "sk": "1", "value": 42}
        assert self.kv.get("P", "2") is None

    def test_put_replaces_same_key(self):
        self.kv.put({"pk": "P", "sk": "1", "value": 1})
        self.kv.put({"pk": "P", "sk": "1", "value": 2})
        assert self.kv.get("P", "1")["value"] == 2
        assert self.kv.count("P") == 1

    def test_keys_required(self):
        with pytest.raises(ValueError):
            self.kv.put({"pk": "P", "value": 1})
        with pytest.raises(ValueError):
            self.kv.put({"pk": "P", "sk": 7})

    def test_query_orders_and_ranges(self):
        for sk in ["c", "a", "d", "b"]:
            self.kv.put({"pk": "P", "sk": sk})
        self.kv.put({"pk": "Q", "sk": "a"})

        assert [i["sk"] for i in self.kv.query("P")] == ["a", "b", "c", "d"]
        assert [i["sk"] for i in self.kv.query("P", sk_from="b", sk_to="c")] == ["b", "c"]
        assert [i["sk"] for i in self.kv.query("P", limit=2, descending=True)] == ["d", "c"]

    def test_count(self):
        self.kv.put({"pk": "P", "sk": "1"})
        self.kv.put({"pk": "Q", "sk": "1"})
        assert self.kv.count() == 2
        assert self.kv.count("P") == 1

    def test_file_backed_store_persists(self, tmp_path):
        path = str(tmp_path / "kernel.db")
        kv = KeyValueStore(db_path=path)
        kv.put({"pk": "P", "sk": "1", "value": "kept"})
        kv.close()

        reopened = KeyValueStore(db_path=path)
        assert reopened.get("P", "1")["value"] == "kept"
        reopened.close()


class TestRunRecorder:
    def setup_method(self):
        self.kv = KeyValueStore()
        self.recorder = RunRecorder(self.kv)

    def teardown_method(self):
        self.kv.close()

    def test_record_run_writes_all_partitions(self):
        self.recorder.record_run(_make_result())

        transcripts = self.recorder.transcripts("developer")
        assert len(transcripts) == 1
        assert transcripts[0]["run_id"] == "run_1"
        assert transcripts[0]["status"] == "completed"
        assert "cost_records" not in transcripts[0]
        assert len(transcripts[0]["transcript"]) == 2

        costs = self.recorder.costs_for_day("2026-03-02")
        assert [c["iteration"] for c in costs] == [1, 2]
        assert all(c["run_id"] == "run_1" for c in costs)

        audit = self.recorder.audit_events()
        assert audit[-1].action == "agent_loop_finished"
        assert audit[-1].details["status"] == "completed"

    def test_partition_keys(self):
        self.recorder.record_run(_make_result())
        assert self.kv.count(transcript_partition("developer")) == 1
        assert self.kv.count(cost_partition("2026-03-02")) == 2
        assert self.kv.count(AUDIT_PARTITION) == 1

    def test_transcripts_newest_first(self):
        for hour in (9, 11, 10):
            self.recorder.record_run(_make_result(
                run_id=f"run_{hour}", started_at=datetime(2026, 3, 2, hour, 0, 0), calls=0,
            ))
        assert [t["run_id"] for t in self.recorder.transcripts("developer", limit=2)] == [
            "run_11", "run_10",
        ]

    def test_failed_run_audited_as_failure(self):
        self.recorder.record_run(_make_result(status=LoopStatus.FAILED, calls=0))
        event = self.recorder.audit_events()[-1]
        assert event.success is False
        assert self.recorder.costs_for_day("2026-03-02") == []


class TestAuditChain:
    def setup_method(self):
        self.kv = KeyValueStore()
        self.recorder = RunRecorder(self.kv)

    def teardown_method(self):
        self.kv.close()

    def test_events_are_chained(self):
        events = [self.recorder.append_audit(f"action_{i}") for i in range(5)]

        assert events[0].prior_event_hash is None
        for i in range(1, len(events)):
            assert events[i].prior_event_hash == events[i - 1].signature
        assert self.recorder.verify_audit_chain() is True

    def test_audit_events_oldest_first_within_limit(self):
        for i in range(10):
            self.recorder.append_audit(f"action_{i}")
        assert [e.action for e in self.recorder.audit_events(limit=3)] == [
            "action_7", "action_8", "action_9",
        ]

    def test_chain_integrity_100_events(self):
        for i in range(110):
            self.recorder.append_audit("world_paused", details={"n": i})
        assert self.kv.count(AUDIT_PARTITION) == 110
        assert self.recorder.verify_audit_chain() is True

    def test_tampered_event_detected(self):
        for i in range(3):
            self.recorder.append_audit("credit_limits_changed", details={"daily": i})

        item = self.kv.get(AUDIT_PARTITION, f"{2:012d}")
        item["details"] = {"daily": 1000}
        self.kv.put(item)

        assert self.recorder.verify_audit_chain() is False

    def test_removed_event_detected(self):
        for i in range(3):
            self.recorder.append_audit("world_resumed")

        first = self.kv.get(AUDIT_PARTITION, f"{1:012d}")
        second = self.kv.get(AUDIT_PARTITION, f"{2:012d}")
        # Replace the middle event with a copy of the first
        self.kv.put({**first, "sk": second["sk"], "sequence": 2})

        assert self.recorder.verify_audit_chain() is False
