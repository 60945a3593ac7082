"""Tests for the Context Builder."""

from datetime import datetime, timedelta

import pytest

from agent_kernel.context.builder import TRUNCATION_MARKER, ContextBuilder, format_relative_time
from agent_kernel.models.world import Priority, Task, TaskStatus
from agent_kernel.world_model.store import WorldStateStore


class FakeClock:
    def __init__(self, start: datetime = datetime(2026, 3, 2, 10, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def _make_store(clock: FakeClock) -> WorldStateStore:
    return WorldStateStore(clock=clock)


def _add_tasks(store: WorldStateStore, team_id: str, count: int, status=TaskStatus.PENDING, title_len=40):
    now = store.now()

    def apply(state):
        for i in range(count):
            state.tasks.append(Task(
                id=f"task_{team_id}_{i}",
                team_id=team_id,
                title=f"{team_id} task {i} " + "x" * title_len,
                status=status,
                priority=Priority.HIGH if i % 2 else Priority.LOW,
                created_by=team_id,
                created_at=now,
                updated_at=now,
            ))

    store.mutate(apply)


def _add_activities(store: WorldStateStore, clock: FakeClock, count: int, message_len=40):
    def apply(state):
        for i in range(count):
            team = ["developer", "design", "sales"][i % 3]
            store.append_activity(state, team, "Lead", f"activity {i} " + "y" * message_len)
            clock.advance(minutes=1)

    store.mutate(apply)


class TestRelativeTime:
    NOW = datetime(2026, 3, 2, 10, 0, 0)

    @pytest.mark.parametrize("delta,expected", [
        (timedelta(seconds=30), "just now"),
        (timedelta(minutes=5), "5m ago"),
        (timedelta(minutes=90), "1h ago"),
        (timedelta(hours=30), "1d ago"),
    ])
    def test_buckets(self, delta, expected):
        assert format_relative_time(self.NOW - delta, self.NOW) == expected

    def test_missing_times(self):
        assert format_relative_time(None, self.NOW) == "unknown"


class TestContextBuilder:
    def setup_method(self):
        self.clock = FakeClock()
        self.store = _make_store(self.clock)
        self.builder = ContextBuilder(organization="Acme")

    def test_sections_in_order(self):
        text = self.builder.build("developer", self.store.snapshot())

        headers = ["## Identity", "## System State", "## Current Work", "## Other Teams",
                   "## Recent Activity", "## Budget", "## Guidelines"]
        positions = [text.index(h) for h in headers]
        assert positions == sorted(positions)
        assert "You are the Developer Team lead for Acme." in text
        assert "No active tasks or pending decisions" in text

    def test_session_section_after_first_iteration(self):
        snap = self.store.snapshot()
        assert "## Session Context" not in self.builder.build("developer", snap, iteration=1)
        assert "iteration 3" in self.builder.build("developer", snap, iteration=3)

    def test_unknown_team_raises(self):
        with pytest.raises(KeyError):
            self.builder.build("nobody", self.store.snapshot())

    def test_deterministic_for_same_snapshot(self):
        _add_activities(self.store, self.clock, 5)
        snap = self.store.snapshot()
        first = self.builder.build("developer", snap)
        self.clock.advance(days=3)
        assert self.builder.build("developer", snap) == first

    def test_relative_times_use_snapshot_time(self):
        self.store.mutate(lambda s: self.store.append_activity(s, "design", "Designer", "Drew a logo"))
        self.clock.advance(minutes=90)
        text = self.builder.build("developer", self.store.snapshot())
        assert "[design/Designer] Drew a logo (Progress, 1h ago)" in text

    def test_current_work_lists_team_tasks(self):
        _add_tasks(self.store, "developer", 3)
        _add_tasks(self.store, "design", 2)
        text = self.builder.build("developer", self.store.snapshot())

        assert "Tasks (3 total):" in text
        assert "task_developer_0" in text
        assert "task_design_0" not in text
        assert "- Design Team: 0 active, 2 pending tasks" in text

    def test_paused_team_shown_as_paused(self):
        self.store.mutate(lambda s: setattr(s.team_controls["legal"], "paused", True))
        text = self.builder.build("developer", self.store.snapshot())
        assert "(legal): paused" in text

    def test_budget_warning(self):
        self.store.mutate(lambda s: setattr(s.credit_protection, "current_daily_spend", 40.0))
        text = self.builder.build("developer", self.store.snapshot())
        assert "Daily: $40.00 / $50.00 (80% used)" in text
        assert "WARNING: Credit status is warning" in text


class TestBudgetDegradation:
    def setup_method(self):
        self.clock = FakeClock()
        self.store = _make_store(self.clock)

    def test_large_state_fits_budget_with_identity_intact(self):
        _add_tasks(self.store, "developer", 40)
        _add_tasks(self.store, "design", 40)
        _add_activities(self.store, self.clock, 150, message_len=400)
        snap = self.store.snapshot()
        builder = ContextBuilder(char_budget=8000)

        text = builder.build("developer", snap)

        assert len(text) <= 8000
        assert text.startswith(builder._identity("developer", snap))
        assert "Team ID: developer" in text
        for agent in snap.teams["developer"].agents:
            assert agent in text
        # Activity is degraded before anything else
        assert "activity 149" not in text
        assert "get_recent_activity" in text

    def test_activity_degraded_before_other_teams(self):
        _add_activities(self.store, self.clock, 30, message_len=300)
        snap = self.store.snapshot()
        full = ContextBuilder(char_budget=100000).build("developer", snap)
        builder = ContextBuilder(char_budget=len(full) - 100)

        text = builder.build("developer", snap)

        assert "Summary by team" in text
        assert "- Design Team:" in text

    def test_hard_trim_keeps_identity(self):
        _add_tasks(self.store, "developer", 40, title_len=200)
        snap = self.store.snapshot()
        identity = ContextBuilder()._identity("developer", snap)
        budget = len(identity) + 300

        text = ContextBuilder(char_budget=budget).build("developer", snap)

        assert len(text) <= budget
        assert text.startswith(identity)
        assert text.endswith(TRUNCATION_MARKER)

    def test_identity_never_cut_even_if_over_budget(self):
        snap = self.store.snapshot()
        builder = ContextBuilder(char_budget=50)
        assert builder.build("developer", snap) == builder._identity("developer", snap)
