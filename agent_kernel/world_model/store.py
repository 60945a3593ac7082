"""
World State Store — the single shared model of teams, work and global controls.

Updated by: Tool Dispatcher actions + World Controller
Queried by: Context Builder, Agent Loop, query surface

Every write goes through mutate(), which runs in one critical section, so a
gate check and the mutation it guards can never interleave with another
writer. Readers take deep-copied snapshots.
"""

import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterator, List, Optional, TypeVar
from uuid import uuid4

from pydantic import BaseModel

from agent_kernel.models.world import (
    Activity,
    AutomationLevel,
    Communication,
    ControlLogEntry,
    Decision,
    DecisionStatus,
    Task,
    TaskStatus,
    Team,
    TeamControl,
    WorldState,
)

T = TypeVar("T")


DEFAULT_TEAMS: Dict[str, Team] = {
    "developer": Team(
        team_id="developer",
        name="Developer Team",
        badge="DEV",
        focus="platform development, code quality, system architecture",
        agents=["Architect", "Coder", "QA Engineer"],
    ),
    "design": Team(
        team_id="design",
        name="Design Team",
        badge="DSN",
        focus="user experience, visual design, animations, brand consistency",
        agents=["UX Lead", "Visual Designer", "Motion Designer"],
    ),
    "communications": Team(
        team_id="communications",
        name="Communications Team",
        badge="COM",
        focus="content strategy, brand voice, social media engagement",
        agents=["Content Strategist", "Copywriter", "Social Manager"],
    ),
    "legal": Team(
        team_id="legal",
        name="Legal Team",
        badge="LGL",
        focus="regulatory compliance, contracts, intellectual property protection",
        agents=["Compliance Officer", "Contract Analyst", "IP Counsel"],
    ),
    "marketing": Team(
        team_id="marketing",
        name="Marketing Team",
        badge="MKT",
        focus="user acquisition, brand positioning, growth metrics",
        agents=["Growth Lead", "Brand Strategist", "Analytics Expert"],
    ),
    "gtm": Team(
        team_id="gtm",
        name="Go-to-Market Team",
        badge="GTM",
        focus="product launch, strategic partnerships, market intelligence",
        agents=["Launch Coordinator", "Partnership Manager", "Market Researcher"],
    ),
    "sales": Team(
        team_id="sales",
        name="Sales Team",
        badge="SLS",
        focus="revenue growth, pipeline management, customer relationships",
        agents=[
            "Sales Director", "Account Executive", "SDR Lead",
            "Solutions Consultant", "Customer Success",
        ],
    ),
}


class StoreLimits(BaseModel):
    """Bounded buffer sizes. Oldest entries are evicted first."""

    max_tasks: int = 100
    max_decisions: int = 50
    max_communications: int = 100
    max_activities: int = 200
    max_control_log: int = 1000
    max_pending_actions: int = 100     # Queue refuses new actions when full
    activity_ttl: timedelta = timedelta(days=7)


def _evict_tasks(tasks: List[Task], limit: int) -> List[Task]:
    overflow = len(tasks) - limit
    if overflow <= 0:
        return tasks
    # Finished work goes first, oldest first; then the oldest of the rest.
    finished = [t for t in tasks if t.status in (TaskStatus.COMPLETED, TaskStatus.CANCELLED)]
    finished.sort(key=lambda t: t.created_at)
    evict = {t.id for t in finished[:overflow]}
    kept = [t for t in tasks if t.id not in evict]
    if len(kept) > limit:
        kept = kept[len(kept) - limit:]
    return kept


class WorldStateStore:
    """
    In-memory World State guarded by a re-entrant lock.
    """

    def __init__(
        self,
        teams: Optional[Dict[str, Team]] = None,
        limits: Optional[StoreLimits] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.limits = limits or StoreLimits()
        self._clock = clock
        self._lock = threading.RLock()

        teams = teams if teams is not None else DEFAULT_TEAMS
        self._state = WorldState(
            teams={tid: t.model_copy(deep=True) for tid, t in teams.items()},
            team_controls={tid: TeamControl() for tid in teams},
        )

    def now(self) -> datetime:
        return self._clock()

    def snapshot(self) -> WorldState:
        """Deep copy of the current state, stamped with the capture time."""
        with self._lock:
            snap = self._state.model_copy(deep=True)
        snap.captured_at = self._clock()
        return snap

    def mutate(self, fn: Callable[[WorldState], T]) -> T:
        """Apply fn to the live state inside one critical section."""
        with self._lock:
            result = fn(self._state)
            self._state.version += 1
            self._enforce_limits(self._state)
            return result

    @contextmanager
    def locked(self) -> Iterator[WorldState]:
        """
        Hold the lock across a check-then-mutate sequence. The yielded state
        is live and must only be read; writes still go through mutate(),
        which re-enters the same lock.
        """
        with self._lock:
            yield self._state

    # --- Helpers for use inside mutate() ---

    def append_activity(
        self,
        state: WorldState,
        team_id: str,
        agent_id: str,
        message: str,
        tag: str = "Progress",
        type: str = "agent",
    ) -> Activity:
        activity = Activity(
            id=f"act_{uuid4().hex[:12]}",
            team_id=team_id,
            agent_id=agent_id,
            message=message,
            tag=tag,
            type=type,
            timestamp=self._clock(),
        )
        state.activities.append(activity)
        return activity

    def append_communication(
        self,
        state: WorldState,
        from_team: str,
        to_team: str,
        message: str,
        from_agent: str = "Team Lead",
        to_agent: Optional[str] = None,
        related_task: Optional[str] = None,
    ) -> Communication:
        comm = Communication(
            id=f"msg_{uuid4().hex[:12]}",
            from_team=from_team,
            from_agent=from_agent,
            to_team=to_team,
            to_agent=to_agent or "Team",
            message=message,
            related_task=related_task,
            timestamp=self._clock(),
        )
        state.communications.append(comm)
        return comm

    def append_control_entry(self, state: WorldState, action: str, details: dict) -> None:
        state.control_log.append(
            ControlLogEntry(timestamp=self._clock(), action=action, details=details)
        )

    # --- Read projections ---

    def get_task(self, task_id: str) -> Optional[Task]:
        with self._lock:
            for task in self._state.tasks:
                if task.id == task_id:
                    return task.model_copy(deep=True)
        return None

    def get_decision(self, decision_id: str) -> Optional[Decision]:
        with self._lock:
            for decision in self._state.decisions:
                if decision.id == decision_id:
                    return decision.model_copy(deep=True)
        return None

    def list_tasks(
        self, team_id: Optional[str] = None, status: Optional[TaskStatus] = None
    ) -> List[Task]:
        with self._lock:
            return [
                t.model_copy(deep=True) for t in self._state.tasks
                if (team_id is None or t.team_id == team_id)
                and (status is None or t.status == status)
            ]

    def list_decisions(
        self, team_id: Optional[str] = None, status: Optional[DecisionStatus] = None
    ) -> List[Decision]:
        with self._lock:
            return [
                d.model_copy(deep=True) for d in self._state.decisions
                if (team_id is None or d.team_id == team_id)
                and (status is None or d.status == status)
            ]

    def list_activities(self, team_id: Optional[str] = None, limit: int = 20) -> List[Activity]:
        """Most recent first."""
        with self._lock:
            matching = [
                a for a in self._state.activities
                if team_id is None or a.team_id == team_id
            ]
            return [a.model_copy() for a in reversed(matching[-limit:])]

    def team_ids(self, active_only: bool = True) -> List[str]:
        with self._lock:
            return [
                tid for tid, team in self._state.teams.items()
                if team.active or not active_only
            ]

    def automation_level(self, team_id: str) -> Optional[AutomationLevel]:
        with self._lock:
            control = self._state.team_controls.get(team_id)
            return control.automation_level if control else None

    # --- Internals ---

    def _enforce_limits(self, state: WorldState) -> None:
        limits = self.limits

        state.tasks = _evict_tasks(state.tasks, limits.max_tasks)

        if len(state.decisions) > limits.max_decisions:
            state.decisions = state.decisions[-limits.max_decisions:]
        if len(state.communications) > limits.max_communications:
            state.communications = state.communications[-limits.max_communications:]

        cutoff = self._clock() - limits.activity_ttl
        if state.activities and state.activities[0].timestamp < cutoff:
            state.activities = [a for a in state.activities if a.timestamp >= cutoff]
        if len(state.activities) > limits.max_activities:
            state.activities = state.activities[-limits.max_activities:]

        if len(state.control_log) > limits.max_control_log:
            state.control_log = state.control_log[-limits.max_control_log:]
