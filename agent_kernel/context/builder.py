"""
Context Builder — renders a team's view of the World State as a system prompt.

Pure: the same snapshot always yields the same text. Relative times are
measured from snapshot.captured_at, never from the wall clock.

Sections, in order: identity, session (iteration > 1), system state,
current work, other teams, recent activity, budget, guidelines.

When the result exceeds the character budget, lower-priority sections are
degraded one step at a time: recent activity summarised, then omitted;
other teams summarised, then omitted; current work summarised; finally
everything after identity is hard-trimmed. Identity is never cut.
"""

from collections import OrderedDict
from datetime import datetime
from typing import Callable, List, Optional

from pydantic import BaseModel

from agent_kernel.governance.controller import evaluate_credit
from agent_kernel.models.controller import CreditVerdict
from agent_kernel.models.world import DecisionStatus, Priority, TaskStatus, WorldState

TRUNCATION_MARKER = "\n\n[... context truncated ...]"

GUIDELINES = """## Guidelines

1. USE TOOLS to take real action. Do not just describe what you would do - actually do it.
2. Create specific, actionable tasks for your team members with clear deliverables.
3. Request owner decisions for anything with significant business impact or budget implications.
4. Coordinate with other teams when work crosses boundaries using send_message.
5. Report progress on findings and analysis so the owner has visibility.
6. Call signal_completion when your assignment is fully done. Include a summary.
7. Be concise. Focus on outcomes and action, not process description.
8. Check system state first if you need context before acting.
9. Break large assignments into multiple tasks rather than one monolithic task.
10. If a task is blocked, update its status and create a decision request if needed."""


class ContextLimits(BaseModel):
    max_tasks_shown: int = 10
    max_decisions_shown: int = 5
    max_activities_shown: int = 15
    max_communications_shown: int = 5


def format_relative_time(then: Optional[datetime], now: Optional[datetime]) -> str:
    if then is None or now is None:
        return "unknown"
    minutes = int((now - then).total_seconds() // 60)
    if minutes < 1:
        return "just now"
    if minutes < 60:
        return f"{minutes}m ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours}h ago"
    return f"{hours // 24}d ago"


class ContextBuilder:

    def __init__(
        self,
        char_budget: int = 8000,
        limits: Optional[ContextLimits] = None,
        organization: str = "the organization",
    ):
        self.char_budget = char_budget
        self.limits = limits or ContextLimits()
        self.organization = organization

    def build(self, team_id: str, snapshot: WorldState, iteration: int = 1) -> str:
        if team_id not in snapshot.teams:
            raise KeyError(f"Unknown team: {team_id}")

        sections = OrderedDict()
        sections["identity"] = self._identity(team_id, snapshot)
        if iteration > 1:
            sections["session"] = self._session(iteration)
        sections["system"] = self._system_state(snapshot)
        sections["work"] = self._current_work(team_id, snapshot, summarize=False)
        sections["cross_team"] = self._cross_team(team_id, snapshot, summarize=False)
        sections["activity"] = self._recent_activity(snapshot, summarize=False)
        sections["budget"] = self._budget(snapshot)
        sections["guidelines"] = GUIDELINES

        degradations: List[Callable[[], None]] = [
            lambda: sections.__setitem__("activity", self._recent_activity(snapshot, summarize=True)),
            lambda: sections.__setitem__(
                "activity", "## Recent Activity\n\nOmitted for length. Use get_recent_activity for details."
            ),
            lambda: sections.__setitem__("cross_team", self._cross_team(team_id, snapshot, summarize=True)),
            lambda: sections.__setitem__(
                "cross_team", "## Other Teams\n\nOmitted for length. Use get_system_state for details."
            ),
            lambda: sections.__setitem__("work", self._current_work(team_id, snapshot, summarize=True)),
        ]

        text = self._join(sections)
        for degrade in degradations:
            if len(text) <= self.char_budget:
                return text
            degrade()
            text = self._join(sections)

        if len(text) <= self.char_budget:
            return text
        return self._hard_trim(sections)

    # --- Assembly ---

    @staticmethod
    def _join(sections: "OrderedDict[str, Optional[str]]") -> str:
        return "\n\n".join(s for s in sections.values() if s)

    def _hard_trim(self, sections: "OrderedDict[str, Optional[str]]") -> str:
        identity = sections["identity"]
        rest = "\n\n".join(s for key, s in sections.items() if key != "identity" and s)
        room = self.char_budget - len(identity) - 2 - len(TRUNCATION_MARKER)
        if room <= 0:
            return identity
        return identity + "\n\n" + rest[:room] + TRUNCATION_MARKER

    # --- Sections ---

    def _identity(self, team_id: str, snap: WorldState) -> str:
        team = snap.teams[team_id]
        agents = "\n".join(f"  {i}. {name}" for i, name in enumerate(team.agents, 1))
        focus = f"\nYour focus: {team.focus}\n" if team.focus else ""
        return (
            "## Identity\n\n"
            f"You are the {team.name} lead for {self.organization}.\n\n"
            f"Team ID: {team_id}\n"
            f"Your agents:\n{agents}\n"
            f"{focus}\n"
            "You coordinate your team to accomplish tasks, create deliverables, and "
            "collaborate with other teams. You act on behalf of your agents using tools - "
            "you don't just describe what you would do, you actually do it."
        )

    @staticmethod
    def _session(iteration: int) -> str:
        return (
            "## Session Context\n\n"
            f"You are in iteration {iteration} of this work session. Previous iterations may have:\n"
            "- Created tasks or decisions\n"
            "- Sent messages to other teams\n"
            "- Made progress on objectives\n\n"
            "Check current state before taking action to avoid duplication."
        )

    @staticmethod
    def _system_state(snap: WorldState) -> str:
        lines = [
            "## System State",
            "",
            f"Snapshot time: {snap.captured_at.isoformat() if snap.captured_at else 'unknown'}",
            f"World state: {snap.world_status.value}",
            f"Total teams: {len(snap.teams)}",
            "",
            "Team statuses:",
        ]
        for tid, team in snap.teams.items():
            control = snap.team_controls[tid]
            status = "paused" if control.paused else control.orchestration_status
            lines.append(f"  - {team.name} ({tid}): {status}, {control.automation_level.value}")
        return "\n".join(lines)

    def _current_work(self, team_id: str, snap: WorldState, summarize: bool) -> str:
        tasks = [t for t in reversed(snap.tasks) if t.team_id == team_id]
        decisions = [d for d in reversed(snap.decisions) if d.team_id == team_id]
        if not tasks and not decisions:
            return "## Current Work\n\nNo active tasks or pending decisions for your team."

        active = [t for t in tasks if t.status == TaskStatus.IN_PROGRESS]
        pending = [t for t in tasks if t.status == TaskStatus.PENDING]
        blocked = [t for t in tasks if t.status == TaskStatus.BLOCKED]
        pending_decisions = [d for d in decisions if d.status == DecisionStatus.PENDING]
        resolved = [d for d in decisions if d.status != DecisionStatus.PENDING]

        lines = ["## Current Work"]

        if summarize:
            lines.append(
                f"\nSummary: {len(active)} active, {len(pending)} pending, {len(blocked)} blocked "
                f"tasks; {len(pending_decisions)} pending decisions"
            )
            urgent = [
                t for t in active + pending + blocked
                if t.priority in (Priority.CRITICAL, Priority.HIGH)
            ][:3]
            if urgent:
                lines.append("\nHigh-priority items:")
                for t in urgent:
                    lines.append(f'  - [{t.id}] "{t.title}" ({t.status.value}, {t.priority.value})')
            lines.append("\nUse get_tasks tool for full task list.")
            return "\n".join(lines)

        shown = self.limits.max_tasks_shown
        if tasks:
            lines.append(f"\nTasks ({len(tasks)} total):")
            if active:
                lines.append(f"  Active ({len(active)}):")
                for t in active[:shown]:
                    lines.append(f'    - [{t.id}] "{t.title}" ({t.priority.value}, {t.progress:g}% done)')
                if len(active) > shown:
                    lines.append(f"    ... and {len(active) - shown} more")
            if pending:
                lines.append(f"  Pending ({len(pending)}):")
                for t in pending[:shown]:
                    lines.append(f'    - [{t.id}] "{t.title}" ({t.priority.value})')
                if len(pending) > shown:
                    lines.append(f"    ... and {len(pending) - shown} more")
            if blocked:
                lines.append(f"  Blocked ({len(blocked)}):")
                for t in blocked[:3]:
                    lines.append(f'    - [{t.id}] "{t.title}"')

        if pending_decisions:
            lines.append("\nPending decisions (awaiting owner):")
            for d in pending_decisions[:self.limits.max_decisions_shown]:
                lines.append(f'  - [{d.id}] "{d.title}" ({d.priority.value})')
        if resolved:
            lines.append("\nRecently resolved decisions:")
            for d in resolved[:3]:
                lines.append(f'  - "{d.title}" -> {d.status.value}')

        return "\n".join(lines)

    def _cross_team(self, team_id: str, snap: WorldState, summarize: bool) -> Optional[str]:
        others = [(tid, t) for tid, t in snap.teams.items() if tid != team_id and t.active]
        if not others:
            return None

        lines = ["## Other Teams"]
        if summarize:
            open_tasks = sum(
                1 for t in snap.tasks
                if t.team_id != team_id and t.status not in (TaskStatus.COMPLETED, TaskStatus.CANCELLED)
            )
            lines.append(f"\n{len(others)} other teams with {open_tasks} open tasks between them.")
            return "\n".join(lines)

        for tid, team in others:
            team_tasks = [t for t in snap.tasks if t.team_id == tid]
            active = sum(1 for t in team_tasks if t.status == TaskStatus.IN_PROGRESS)
            pending = sum(1 for t in team_tasks if t.status == TaskStatus.PENDING)
            lines.append(f"- {team.name}: {active} active, {pending} pending tasks")

        comms = [
            c for c in reversed(snap.communications)
            if c.from_team == team_id or c.to_team == team_id
        ][:self.limits.max_communications_shown]
        if comms:
            lines.append("\nRecent cross-team messages:")
            for c in comms:
                direction = f"-> {c.to_team}" if c.from_team == team_id else f"<- {c.from_team}"
                lines.append(f'  {direction}: "{c.message[:80]}"')

        return "\n".join(lines)

    def _recent_activity(self, snap: WorldState, summarize: bool) -> str:
        activities = list(reversed(snap.activities))
        if not activities:
            return "## Recent Activity\n\nNo recent activity."

        now = snap.captured_at
        lines = ["## Recent Activity"]

        if summarize:
            by_team = OrderedDict()
            for a in activities[:50]:
                entry = by_team.setdefault(a.team_id, {"count": 0, "latest": a.timestamp})
                entry["count"] += 1
            lines.append(f"\n{len(activities)} total activities. Summary by team:")
            for tid, entry in by_team.items():
                lines.append(
                    f"- {tid}: {entry['count']} activities "
                    f"(latest: {format_relative_time(entry['latest'], now)})"
                )
            lines.append("\nUse get_recent_activity tool for details.")
            return "\n".join(lines)

        shown = self.limits.max_activities_shown
        for a in activities[:shown]:
            lines.append(
                f"- [{a.team_id}/{a.agent_id}] {a.message} "
                f"({a.tag}, {format_relative_time(a.timestamp, now)})"
            )
        if len(activities) > shown:
            lines.append(f"... and {len(activities) - shown} more activities")
        return "\n".join(lines)

    @staticmethod
    def _budget(snap: WorldState) -> Optional[str]:
        if snap.captured_at is None:
            return None
        credit = evaluate_credit(snap.credit_protection, snap.captured_at)
        lines = [
            "## Budget",
            f"Daily: ${credit.daily.spent:.2f} / ${credit.daily.limit:.2f} "
            f"({credit.daily.usage_percent}% used)",
            f"Monthly: ${credit.monthly.spent:.2f} / ${credit.monthly.limit:.2f} "
            f"({credit.monthly.usage_percent}% used)",
        ]
        if credit.verdict != CreditVerdict.OK:
            lines.append(f"\nWARNING: Credit status is {credit.verdict.value}. {credit.message}")
        return "\n".join(lines)
