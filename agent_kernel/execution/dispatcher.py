"""
Tool Dispatcher — executes catalog tools against the World State.

Receives tool invocations from the Agent Loop (actor=agent) or the owner
surface (actor=owner) and returns a uniform ToolResult.

Behavioral Contract:
- Never raises: unknown tools, invalid input and handler errors all
  become ToolResult(success=False)
- Observation tools read a snapshot and never mutate
- Action tools run gate check + mutation in one critical section; on a
  gate rejection nothing is written
- Agents are held to the full action gate, the owner to the hard stops
- Repeating an identical update_task_status is a no-op
"""

import logging
from typing import Callable, Dict, List, Optional
from uuid import uuid4

from pydantic import ValidationError

from agent_kernel.execution.catalog import TOOL_SPECS
from agent_kernel.governance.controller import (
    evaluate_action_gate,
    evaluate_credit,
    evaluate_owner_gate,
)
from agent_kernel.models.controller import GateDecision
from agent_kernel.models.tools import (
    Actor,
    CreateDecisionInput,
    CreateTaskInput,
    DeleteTaskInput,
    GetDecisionsInput,
    GetTasksInput,
    RecentActivityInput,
    ReportProgressInput,
    ResolveDecisionInput,
    SendMessageInput,
    SignalCompletionInput,
    SystemStateInput,
    TeamAssistanceInput,
    TeamInfoInput,
    ToolCategory,
    ToolName,
    ToolResult,
    UpdateTaskStatusInput,
)
from agent_kernel.models.world import (
    Decision,
    DecisionStatus,
    Task,
    TaskStatus,
    WorldState,
)
from agent_kernel.world_model.store import WorldStateStore

logger = logging.getLogger(__name__)

MAX_QUERY_LIMIT = 50

OWNER = "owner"

# Pending < started < finished. blocked and in_progress share a rank so
# work can move between them; nothing moves backwards.
_STATUS_RANK = {
    TaskStatus.PENDING: 0,
    TaskStatus.IN_PROGRESS: 1,
    TaskStatus.BLOCKED: 1,
    TaskStatus.COMPLETED: 2,
    TaskStatus.CANCELLED: 2,
}
_TERMINAL = (TaskStatus.COMPLETED, TaskStatus.CANCELLED)


def _ok(message: str, data=None) -> ToolResult:
    return ToolResult(success=True, message=message, data=data)


def _fail(message: str, data=None) -> ToolResult:
    return ToolResult(success=False, message=message, data=data)


def _validation_message(tool: str, error: ValidationError) -> str:
    problems = []
    for item in error.errors():
        field = ".".join(str(p) for p in item["loc"]) or "input"
        problems.append(f"{field}: {item['msg']}")
    return f"Invalid input for {tool}: " + "; ".join(problems)


def _find_task(state: WorldState, task_id: str) -> Optional[Task]:
    return next((t for t in state.tasks if t.id == task_id), None)


def _find_decision(state: WorldState, decision_id: str) -> Optional[Decision]:
    return next((d for d in state.decisions if d.id == decision_id), None)


def _valid_teams(state: WorldState) -> str:
    return ", ".join(tid for tid, t in state.teams.items() if t.active)


def _clamp_progress(value: float) -> float:
    return max(0.0, min(100.0, value))


class ToolDispatcher:
    """
    Routes a tool invocation to its handler. Handlers for action tools run
    inside WorldStateStore.mutate(); observation handlers get a snapshot.
    """

    def __init__(self, store: WorldStateStore):
        self.store = store

    def dispatch(
        self,
        tool_name: str,
        tool_input: Optional[dict],
        team_id: Optional[str],
        snapshot: Optional[WorldState] = None,
        actor: Actor = Actor.AGENT,
        triggered: bool = False,
    ) -> ToolResult:
        """
        Execute one tool call.

        team_id is the calling team for agents; for the owner it may be
        None. `triggered` marks an owner-triggered run (see the action gate).
        """
        try:
            name = ToolName(tool_name)
        except ValueError:
            return _fail(f"unknown tool: {tool_name}")

        spec = TOOL_SPECS[name]
        if spec.owner_only and actor != Actor.OWNER:
            return _fail(f"{name.value} is reserved for the owner")
        if actor == Actor.AGENT and not team_id:
            return _fail("Agent tool calls require a team")

        try:
            params = spec.input_model.model_validate(tool_input or {})
        except ValidationError as e:
            return _fail(_validation_message(name.value, e))

        handler = _HANDLERS[name]
        try:
            if spec.category == ToolCategory.OBSERVATION:
                snap = snapshot if snapshot is not None else self.store.snapshot()
                return handler(self, params, team_id, snap)
            if spec.category == ToolCategory.CONTROL:
                return handler(self, params, team_id, None)
            return self._run_action(name, params, team_id, actor, triggered, handler)
        except Exception as e:
            logger.exception("Tool %s failed for team %s", name.value, team_id)
            return _fail(f"Tool error: {e}")

    def annotate_decision(self, decision_id: str, note: str) -> ToolResult:
        """Owner note on a decision; the only change allowed after resolution."""
        if not note.strip():
            return _fail("Annotation must not be empty")

        with self.store.locked() as live:
            gate = evaluate_owner_gate(live)
            if not gate.allowed:
                return _gate_failure(gate)

            def apply(state: WorldState) -> ToolResult:
                decision = _find_decision(state, decision_id)
                if decision is None:
                    return _fail(f"Decision not found: {decision_id}")
                decision.annotations.append(note)
                return _ok("Annotation added", decision.model_dump(mode="json"))

            return self.store.mutate(apply)

    def broadcast(self, message: str, team_ids: List[str]) -> ToolResult:
        """
        Owner message to several teams, all or nothing: every target is
        checked before any message is written, then all are sent in one
        mutation.
        """
        if not team_ids:
            return _fail("No target teams")
        try:
            requests = [
                SendMessageInput.model_validate({"toTeam": team_id, "message": message})
                for team_id in dict.fromkeys(team_ids)
            ]
        except ValidationError as e:
            return _fail(_validation_message("broadcast", e))

        with self.store.locked() as live:
            gate = evaluate_owner_gate(live)
            if not gate.allowed:
                return _gate_failure(gate)
            unknown = [r.toTeam for r in requests if r.toTeam not in live.teams]
            if unknown:
                return _fail(
                    f"Invalid target team: {', '.join(unknown)}. Valid teams: {_valid_teams(live)}"
                )

            def apply(state: WorldState) -> ToolResult:
                sent = [self._send_message(r, OWNER, state) for r in requests]
                return _ok(
                    f"Broadcast sent to {len(sent)} team(s)",
                    {
                        "teams": [r.toTeam for r in requests],
                        "communications": [s.data for s in sent],
                    },
                )

            return self.store.mutate(apply)

    # --- Internals ---

    def _run_action(self, name, params, team_id, actor, triggered, handler) -> ToolResult:
        with self.store.locked() as live:
            gate = self._gate(live, name, team_id, actor, triggered)
            if not gate.allowed:
                logger.info(
                    "Gate rejected %s for %s (%s): %s",
                    name.value, team_id or OWNER, actor.value, gate.reason,
                )
                return _gate_failure(gate)

            origin = team_id if actor == Actor.AGENT else OWNER
            return self.store.mutate(lambda state: handler(self, params, origin, state))

    def _gate(
        self,
        state: WorldState,
        name: ToolName,
        team_id: Optional[str],
        actor: Actor,
        triggered: bool,
    ) -> GateDecision:
        if actor == Actor.OWNER:
            return evaluate_owner_gate(state, team_id)
        return evaluate_action_gate(
            state,
            team_id,
            now=self.store.now(),
            triggered=triggered,
            action_type=TOOL_SPECS[name].action_type,
        )

    def _log(self, state: WorldState, team_id: str, message: str, tag: str, agent: str = "Team Lead"):
        if team_id == OWNER:
            self.store.append_activity(state, OWNER, "Owner", message, tag=tag, type="owner")
        else:
            self.store.append_activity(state, team_id, agent, message, tag=tag)

    # --- Observation handlers ---

    def _get_system_state(self, params: SystemStateInput, team_id, snap: WorldState) -> ToolResult:
        include = set(params.include)
        data = {}

        if "world" in include:
            data["world_status"] = snap.world_status.value
            data["global_paused"] = snap.global_paused
            data["emergency_stop"] = snap.emergency_stop.triggered

        if "teams" in include:
            data["teams"] = [
                {
                    "id": tid,
                    "name": team.name,
                    "active": team.active,
                    "status": snap.team_controls[tid].orchestration_status,
                    "automation_level": snap.team_controls[tid].automation_level.value,
                    "paused": snap.team_controls[tid].paused,
                    "agent_count": len(team.agents),
                    "run_count": snap.team_controls[tid].run_count,
                }
                for tid, team in snap.teams.items()
            ]

        if "tasks" in include:
            data["tasks"] = {"total": len(snap.tasks)}
            for status in TaskStatus:
                data["tasks"][status.value] = sum(1 for t in snap.tasks if t.status == status)

        if "decisions" in include:
            data["decisions"] = {"total": len(snap.decisions)}
            for status in DecisionStatus:
                data["decisions"][status.value] = sum(
                    1 for d in snap.decisions if d.status == status
                )

        if "activities" in include:
            data["recent_activities"] = [
                {"agent": a.agent_id, "team": a.team_id, "message": a.message, "tag": a.tag,
                 "time": a.timestamp.isoformat()}
                for a in reversed(snap.activities[-5:])
            ]

        if "credits" in include:
            check = evaluate_credit(snap.credit_protection, snap.captured_at or self.store.now())
            data["credit_status"] = check.model_dump(mode="json")

        return _ok("System state retrieved", data)

    def _get_tasks(self, params: GetTasksInput, team_id, snap: WorldState) -> ToolResult:
        tasks = [
            t for t in reversed(snap.tasks)
            if (params.teamId is None or t.team_id == params.teamId)
            and (params.status is None or t.status == params.status)
        ]
        tasks = tasks[:min(params.limit, MAX_QUERY_LIMIT)]
        return _ok(f"Found {len(tasks)} task(s)", [t.model_dump(mode="json") for t in tasks])

    def _get_decisions(self, params: GetDecisionsInput, team_id, snap: WorldState) -> ToolResult:
        decisions = [
            d for d in reversed(snap.decisions)
            if params.status is None or d.status == params.status
        ]
        decisions = decisions[:min(params.limit, MAX_QUERY_LIMIT)]
        return _ok(
            f"Found {len(decisions)} decision(s)",
            [d.model_dump(mode="json") for d in decisions],
        )

    def _get_team_info(self, params: TeamInfoInput, team_id, snap: WorldState) -> ToolResult:
        team = snap.teams.get(params.teamId)
        if team is None:
            return _fail(f"Team not found: {params.teamId}. Valid teams: {_valid_teams(snap)}")

        control = snap.team_controls[params.teamId]
        team_tasks = [t for t in snap.tasks if t.team_id == params.teamId]
        team_activities = [a for a in snap.activities if a.team_id == params.teamId]
        return _ok(
            f"Team info for {team.name}",
            {
                "id": team.team_id,
                "name": team.name,
                "focus": team.focus,
                "agents": team.agents,
                "active": team.active,
                "automation_level": control.automation_level.value,
                "paused": control.paused,
                "active_tasks": sum(1 for t in team_tasks if t.status == TaskStatus.IN_PROGRESS),
                "pending_tasks": sum(1 for t in team_tasks if t.status == TaskStatus.PENDING),
                "completed_tasks": sum(1 for t in team_tasks if t.status == TaskStatus.COMPLETED),
                "recent_activity": [
                    {"agent": a.agent_id, "message": a.message, "tag": a.tag,
                     "time": a.timestamp.isoformat()}
                    for a in reversed(team_activities[-5:])
                ],
            },
        )

    def _get_recent_activity(self, params: RecentActivityInput, team_id, snap: WorldState) -> ToolResult:
        activities = [
            a for a in reversed(snap.activities)
            if params.teamId is None or a.team_id == params.teamId
        ]
        activities = activities[:min(params.limit, MAX_QUERY_LIMIT)]
        return _ok(
            f"{len(activities)} recent activities",
            [
                {"agent": a.agent_id, "team": a.team_id, "message": a.message, "tag": a.tag,
                 "time": a.timestamp.isoformat()}
                for a in activities
            ],
        )

    # --- Action handlers (run inside mutate) ---

    def _create_task(self, params: CreateTaskInput, origin: str, state: WorldState) -> ToolResult:
        target = state.teams.get(params.teamId)
        if target is None or not target.active:
            return _fail(f"Invalid team: {params.teamId}. Valid teams: {_valid_teams(state)}")

        now = self.store.now()
        task = Task(
            id=f"task_{uuid4().hex[:12]}",
            team_id=params.teamId,
            title=params.title,
            description=params.description,
            priority=params.priority,
            assigned_agents=list(params.assignedAgents),
            created_by=origin,
            created_at=now,
            updated_at=now,
        )
        state.tasks.append(task)
        self._log(state, origin, f"Created task: {task.title} (for {params.teamId})", "Task")
        return _ok(
            f'Task created: "{task.title}" assigned to {params.teamId}',
            task.model_dump(mode="json"),
        )

    def _update_task_status(
        self, params: UpdateTaskStatusInput, origin: str, state: WorldState
    ) -> ToolResult:
        task = _find_task(state, params.taskId)
        if task is None:
            return _fail(f"Task not found: {params.taskId}")

        progress = _clamp_progress(params.progress) if params.progress is not None else None
        if params.status == TaskStatus.COMPLETED and progress is None:
            progress = 100.0

        unchanged = (
            task.status == params.status
            and (progress is None or progress == task.progress)
            and (params.result is None or params.result == task.result)
        )
        if unchanged:
            return _ok(f'Task "{task.title}" already {task.status.value}', task.model_dump(mode="json"))

        if task.status in _TERMINAL:
            return _fail(f'Task "{task.title}" is already {task.status.value}')
        if _STATUS_RANK[params.status] < _STATUS_RANK[task.status]:
            return _fail(
                f'Cannot move task "{task.title}" from {task.status.value} back to {params.status.value}'
            )

        now = self.store.now()
        task.status = params.status
        if params.status == TaskStatus.IN_PROGRESS and task.started_at is None:
            task.started_at = now
        if params.status == TaskStatus.COMPLETED:
            task.completed_at = now
        if progress is not None:
            task.progress = progress
        if params.result is not None:
            task.result = params.result
        task.updated_at = now

        self._log(state, origin, f'Task "{task.title}" updated to {task.status.value}', "Task")
        return _ok(f'Task "{task.title}" updated to {task.status.value}', task.model_dump(mode="json"))

    def _create_decision_request(
        self, params: CreateDecisionInput, origin: str, state: WorldState
    ) -> ToolResult:
        decision = Decision(
            id=f"dec_{uuid4().hex[:12]}",
            team_id=origin,
            title=params.title,
            description=params.description,
            priority=params.priority,
            impact=params.impact,
            options=list(params.options),
            requested_by=origin,
            created_at=self.store.now(),
        )
        state.decisions.append(decision)
        self._log(state, origin, f"Requested decision: {decision.title}", "Decision")
        return _ok(
            f'Decision request created: "{decision.title}" (awaiting owner approval)',
            decision.model_dump(mode="json"),
        )

    def _send_message(self, params: SendMessageInput, origin: str, state: WorldState) -> ToolResult:
        target = state.teams.get(params.toTeam)
        if target is None:
            return _fail(f"Invalid target team: {params.toTeam}. Valid teams: {_valid_teams(state)}")

        comm = self.store.append_communication(
            state,
            from_team=origin,
            to_team=params.toTeam,
            message=params.message,
            from_agent="Owner" if origin == OWNER else "Team Lead",
            to_agent=params.toAgent,
            related_task=params.relatedTask,
        )
        self._log(state, origin, f"Message to {target.name}: {params.message}", "Communication")
        return _ok(f"Message sent to {target.name}", comm.model_dump(mode="json"))

    def _report_progress(self, params: ReportProgressInput, origin: str, state: WorldState) -> ToolResult:
        activity = self.store.append_activity(
            state,
            origin,
            "Owner" if origin == OWNER else params.agent,
            params.message,
            tag=params.tag,
            type="owner" if origin == OWNER else "agent",
        )
        return _ok("Progress reported and visible in activity feed", activity.model_dump(mode="json"))

    def _delete_task(self, params: DeleteTaskInput, origin: str, state: WorldState) -> ToolResult:
        task = _find_task(state, params.taskId)
        if task is None:
            return _fail(f"Task not found: {params.taskId}")
        if task.status == TaskStatus.IN_PROGRESS:
            return _fail(
                f'Cannot delete task "{task.title}" - it is currently in progress. Update status first.'
            )
        if origin != OWNER and origin not in (task.team_id, task.created_by):
            return _fail(f"Cannot delete task belonging to another team ({task.team_id})")

        state.tasks = [t for t in state.tasks if t.id != task.id]
        reason = f" ({params.reason})" if params.reason else ""
        self._log(state, origin, f"Deleted task: {task.title}{reason}", "Task")
        return _ok(f'Task "{task.title}" deleted', {"id": task.id})

    def _request_team_assistance(
        self, params: TeamAssistanceInput, origin: str, state: WorldState
    ) -> ToolResult:
        target = state.teams.get(params.toTeam)
        if target is None or not target.active:
            return _fail(f"Invalid target team: {params.toTeam}. Valid teams: {_valid_teams(state)}")
        if params.toTeam == origin:
            return _fail("Cannot request assistance from your own team")

        now = self.store.now()
        requester = state.teams[origin].name if origin in state.teams else "Owner"
        description = params.task
        if params.context:
            description += f"\n\nContext: {params.context}"
        description += f"\n\nRequested by: {requester}"

        task = Task(
            id=f"task_{uuid4().hex[:12]}",
            team_id=params.toTeam,
            title=f"[Assistance Request] {params.task[:80]}",
            description=description,
            priority=params.priority,
            created_by=origin,
            created_at=now,
            updated_at=now,
            is_assistance_request=True,
            requesting_team=origin,
            blocking=params.blocking,
        )
        state.tasks.append(task)

        blocking = " (BLOCKING)" if params.blocking else ""
        self.store.append_communication(
            state,
            from_team=origin,
            to_team=params.toTeam,
            message=f"Assistance requested: {params.task}{blocking}",
            related_task=task.id,
        )
        self._log(state, origin, f"Requested assistance from {target.name}: {params.task}", "Delegation")
        return _ok(
            f"Assistance request sent to {target.name}. Task created with "
            f"{params.priority.value} priority.",
            task.model_dump(mode="json"),
        )

    def _resolve_decision(
        self, params: ResolveDecisionInput, origin: str, state: WorldState
    ) -> ToolResult:
        decision = _find_decision(state, params.decisionId)
        if decision is None:
            return _fail(f"Decision not found: {params.decisionId}")
        if decision.status != DecisionStatus.PENDING:
            return _fail(f"Decision already resolved with status: {decision.status.value}")
        if params.status == DecisionStatus.PENDING:
            return _fail("A decision cannot be resolved as pending")
        if params.selectedOption and decision.options and params.selectedOption not in decision.options:
            return _fail(f"Unknown option: {params.selectedOption}")

        decision.status = params.status
        decision.resolution = params.resolution
        decision.selected_option = params.selectedOption
        decision.resolved_by = origin
        decision.resolved_at = self.store.now()

        self._log(state, origin, f'Decision "{decision.title}" {params.status.value}', "Decision")
        return _ok(
            f'Decision "{decision.title}" resolved as {params.status.value}',
            decision.model_dump(mode="json"),
        )

    # --- Control handler ---

    def _signal_completion(self, params: SignalCompletionInput, team_id, _state) -> ToolResult:
        return _ok(
            "Assignment marked as complete. Agent loop will stop.",
            {
                "completed": True,
                "summary": params.summary,
                "tasks_created": params.tasksCreated,
                "decisions_requested": params.decisionsRequested,
                "messages_sent": params.messagesSent,
            },
        )


def _gate_failure(gate: GateDecision) -> ToolResult:
    return _fail(gate.reason, {"code": gate.code.value})


_HANDLERS: Dict[ToolName, Callable[..., ToolResult]] = {
    ToolName.GET_SYSTEM_STATE: ToolDispatcher._get_system_state,
    ToolName.GET_TASKS: ToolDispatcher._get_tasks,
    ToolName.GET_DECISIONS: ToolDispatcher._get_decisions,
    ToolName.GET_TEAM_INFO: ToolDispatcher._get_team_info,
    ToolName.GET_RECENT_ACTIVITY: ToolDispatcher._get_recent_activity,
    ToolName.CREATE_TASK: ToolDispatcher._create_task,
    ToolName.UPDATE_TASK_STATUS: ToolDispatcher._update_task_status,
    ToolName.CREATE_DECISION_REQUEST: ToolDispatcher._create_decision_request,
    ToolName.SEND_MESSAGE: ToolDispatcher._send_message,
    ToolName.REPORT_PROGRESS: ToolDispatcher._report_progress,
    ToolName.DELETE_TASK: ToolDispatcher._delete_task,
    ToolName.REQUEST_TEAM_ASSISTANCE: ToolDispatcher._request_team_assistance,
    ToolName.RESOLVE_DECISION: ToolDispatcher._resolve_decision,
    ToolName.SIGNAL_COMPLETION: ToolDispatcher._signal_completion,
}

if set(_HANDLERS) != set(ToolName):
    raise RuntimeError("Every ToolName needs exactly one handler")
