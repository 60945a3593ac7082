"""Tests for the World State Store."""

import threading
from datetime import datetime, timedelta

from agent_kernel.models.world import Task, TaskStatus, Team
from agent_kernel.world_model.store import DEFAULT_TEAMS, StoreLimits, WorldStateStore


class FakeClock:
    def __init__(self, start: datetime = datetime(2026, 3, 2, 10, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def _make_task(task_id: str, status: TaskStatus, created_at: datetime, team_id: str = "developer") -> Task:
    return Task(
        id=task_id,
        team_id=team_id,
        title=f"Task {task_id}",
        status=status,
        created_by="test",
        created_at=created_at,
        updated_at=created_at,
    )


class TestWorldStateStore:
    def setup_method(self):
        self.clock = FakeClock()
        self.store = WorldStateStore(clock=self.clock)

    def test_default_teams_with_controls(self):
        snap = self.store.snapshot()
        assert set(snap.teams) == set(DEFAULT_TEAMS)
        assert set(snap.team_controls) == set(DEFAULT_TEAMS)
        assert snap.teams["gtm"].name == "Go-to-Market Team"
        assert len(snap.teams["sales"].agents) == 5

    def test_snapshot_is_isolated_copy(self):
        snap = self.store.snapshot()
        snap.teams["developer"].name = "Changed"
        snap.tasks.append(_make_task("t1", TaskStatus.PENDING, self.clock()))

        fresh = self.store.snapshot()
        assert fresh.teams["developer"].name == "Developer Team"
        assert fresh.tasks == []

    def test_snapshot_stamped_with_clock(self):
        assert self.store.snapshot().captured_at == self.clock.now

    def test_mutate_bumps_version_and_returns_value(self):
        before = self.store.snapshot().version

        result = self.store.mutate(lambda s: s.tasks.append(
            _make_task("t1", TaskStatus.PENDING, self.clock())) or "done")

        assert result == "done"
        assert self.store.snapshot().version == before + 1
        assert self.store.get_task("t1") is not None

    def test_teams_are_deep_copied_from_defaults(self):
        self.store.mutate(lambda s: setattr(s.teams["design"], "active", False))
        assert DEFAULT_TEAMS["design"].active is True
        assert "design" not in self.store.team_ids()
        assert "design" in self.store.team_ids(active_only=False)

    def test_custom_teams(self):
        store = WorldStateStore(teams={"ops": Team(team_id="ops", name="Ops Team")})
        assert store.team_ids() == ["ops"]

    def test_append_helpers(self):
        def apply(state):
            self.store.append_activity(state, "developer", "Coder", "Shipped it", tag="Milestone")
            self.store.append_communication(state, "developer", "design", "Need a mockup")
            self.store.append_control_entry(state, "TEST", {"k": "v"})

        self.store.mutate(apply)
        snap = self.store.snapshot()

        assert snap.activities[0].id.startswith("act_")
        assert snap.activities[0].timestamp == self.clock.now
        assert snap.communications[0].to_agent == "Team"
        assert snap.control_log[0].action == "TEST"

    def test_list_activities_newest_first(self):
        def apply(state):
            for i in range(5):
                self.store.append_activity(state, "developer", "Coder", f"step {i}")
                self.clock.advance(minutes=1)

        self.store.mutate(apply)
        messages = [a.message for a in self.store.list_activities("developer", limit=3)]
        assert messages == ["step 4", "step 3", "step 2"]

    def test_list_tasks_filters(self):
        now = self.clock()
        self.store.mutate(lambda s: s.tasks.extend([
            _make_task("a", TaskStatus.PENDING, now, "developer"),
            _make_task("b", TaskStatus.COMPLETED, now, "developer"),
            _make_task("c", TaskStatus.PENDING, now, "design"),
        ]))

        assert [t.id for t in self.store.list_tasks("developer")] == ["a", "b"]
        assert [t.id for t in self.store.list_tasks(status=TaskStatus.PENDING)] == ["a", "c"]

    def test_locked_allows_mutate_inside(self):
        with self.store.locked() as live:
            assert live.version == 0
            self.store.mutate(lambda s: self.store.append_control_entry(s, "INSIDE", {}))
        assert self.store.snapshot().control_log[-1].action == "INSIDE"

    def test_concurrent_mutations_are_not_lost(self):
        def worker():
            for _ in range(50):
                self.store.mutate(lambda s: self.store.append_control_entry(s, "TICK", {}))

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        snap = self.store.snapshot()
        assert snap.version == 200
        assert len(snap.control_log) == 200


class TestBoundedBuffers:
    def setup_method(self):
        self.clock = FakeClock()
        self.store = WorldStateStore(
            clock=self.clock,
            limits=StoreLimits(max_tasks=3, max_activities=5, max_communications=2),
        )

    def test_finished_tasks_evicted_first(self):
        start = self.clock()
        self.store.mutate(lambda s: s.tasks.extend([
            _make_task("old_pending", TaskStatus.PENDING, start),
            _make_task("done", TaskStatus.COMPLETED, start + timedelta(minutes=1)),
            _make_task("active", TaskStatus.IN_PROGRESS, start + timedelta(minutes=2)),
            _make_task("new", TaskStatus.PENDING, start + timedelta(minutes=3)),
        ]))

        assert [t.id for t in self.store.list_tasks()] == ["old_pending", "active", "new"]

    def test_oldest_tasks_evicted_when_nothing_finished(self):
        start = self.clock()
        self.store.mutate(lambda s: s.tasks.extend([
            _make_task(f"t{i}", TaskStatus.PENDING, start + timedelta(minutes=i)) for i in range(5)
        ]))
        assert [t.id for t in self.store.list_tasks()] == ["t2", "t3", "t4"]

    def test_activity_ring_buffer(self):
        def apply(state):
            for i in range(8):
                self.store.append_activity(state, "developer", "Coder", f"a{i}")

        self.store.mutate(apply)
        snap = self.store.snapshot()
        assert [a.message for a in snap.activities] == ["a3", "a4", "a5", "a6", "a7"]

    def test_activities_expire_after_ttl(self):
        self.store.mutate(lambda s: self.store.append_activity(s, "developer", "Coder", "stale"))
        self.clock.advance(days=8)
        self.store.mutate(lambda s: self.store.append_activity(s, "developer", "Coder", "fresh"))

        assert [a.message for a in self.store.snapshot().activities] == ["fresh"]

    def test_communications_bounded(self):
        def apply(state):
            for i in range(4):
                self.store.append_communication(state, "developer", "design", f"m{i}")

        self.store.mutate(apply)
        assert [c.message for c in self.store.snapshot().communications] == ["m2", "m3"]
