"""
Agent Kernel API — FastAPI endpoints.

Exposes the orchestration core via a REST API for:
- World state, task, decision and activity queries
- Owner task/decision commands (gated by the hard stops only)
- Orchestration (start / stop / execute / submit a team's Agent Loop)
- World controls: pause, resume, emergency stop, credit limits,
  team automation, automation windows
- Action triggers and the owner approval queue
- Circuit breaker and audit inspection

Policy rejections map to 409, unknown resources to 404, invalid input to 400.
"""

from datetime import datetime
from typing import List, Literal, Optional

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from agent_kernel.agent.loop import AgentLoop
from agent_kernel.agent.model_client import AnthropicModelClient, ModelClient
from agent_kernel.config.settings import Settings, get_settings
from agent_kernel.context.builder import ContextBuilder
from agent_kernel.errors import ConfigurationError
from agent_kernel.execution.dispatcher import ToolDispatcher
from agent_kernel.governance.controller import WorldController
from agent_kernel.models.tools import Actor, ToolName, ToolResult
from agent_kernel.models.world import (
    ActionType,
    AutomationLevel,
    DecisionStatus,
    Priority,
    TaskStatus,
    WorldStatus,
)
from agent_kernel.orchestration.service import Orchestrator
from agent_kernel.resilience.caller import ResilientCaller
from agent_kernel.resilience.circuit_breaker import CircuitRegistry
from agent_kernel.storage.store import KeyValueStore, RunRecorder
from agent_kernel.utils.logging_utils import setup_logging
from agent_kernel.world_model.store import WorldStateStore

MODEL_CIRCUIT = "model_api"


# --- Request/Response Models ---

class TaskCreateRequest(BaseModel):
    title: str
    team_id: str
    description: str = ""
    priority: Priority = Priority.MEDIUM
    assigned_agents: List[str] = []


class TaskStatusRequest(BaseModel):
    status: TaskStatus
    progress: Optional[float] = None
    result: Optional[str] = None


class DecisionResolveRequest(BaseModel):
    status: DecisionStatus
    resolution: str = ""
    selected_option: Optional[str] = None


class AnnotationRequest(BaseModel):
    note: str


class BroadcastRequest(BaseModel):
    message: str
    teams: Optional[List[str]] = None      # None = every active team


class OrchestrateRequest(BaseModel):
    team_id: str
    action: Literal["start", "stop", "execute", "submit"]
    task: Optional[str] = None
    timeout_seconds: Optional[float] = Field(default=None, gt=0)


class PauseRequest(BaseModel):
    reason: str = "Manual pause by owner"


class ResumeRequest(BaseModel):
    target_status: WorldStatus = WorldStatus.MANUAL


class EmergencyStopRequest(BaseModel):
    reason: str = "Emergency stop triggered"


class EmergencyResetRequest(BaseModel):
    confirmation_code: Optional[str] = None


class WorldStatusRequest(BaseModel):
    status: WorldStatus


class CreditLimitsRequest(BaseModel):
    daily_limit: Optional[float] = Field(default=None, ge=0)
    monthly_limit: Optional[float] = Field(default=None, ge=0)


class AutomationLevelRequest(BaseModel):
    level: AutomationLevel
    allowed_actions: Optional[List[ActionType]] = None   # None keeps the current list


class AutomationWindowRequest(BaseModel):
    schedule: str
    teams: List[str] = []


class ActionRequest(BaseModel):
    team_id: str
    action_type: ActionType
    parameters: dict = {}


class QueueActionRequest(ActionRequest):
    requires_approval: bool = True


class ApproveActionRequest(BaseModel):
    timeout_seconds: Optional[float] = Field(default=None, gt=0)


class RejectActionRequest(BaseModel):
    reason: str = "Rejected by owner"


# --- Result mapping ---

def _tool_response(result: ToolResult) -> dict:
    """Return a successful tool result or raise the matching HTTP error."""
    if result.success:
        return result.model_dump(mode="json")
    if isinstance(result.data, dict) and "code" in result.data:
        raise HTTPException(409, result.message)
    if "not found" in result.message.lower():
        raise HTTPException(404, result.message)
    raise HTTPException(400, result.message)


def _control_response(result: dict) -> dict:
    """Same mapping for World Controller / Orchestrator result dicts."""
    if result.get("success"):
        return result
    message = result.get("message", "")
    if message.startswith("Unknown team") or "not found" in message.lower():
        raise HTTPException(404, message)
    if message.startswith("Invalid"):
        raise HTTPException(400, message)
    raise HTTPException(409, message)


# --- Application Factory ---

def create_app(
    settings: Optional[Settings] = None,
    store: Optional[WorldStateStore] = None,
    model_client: Optional[ModelClient] = None,
    kv_store: Optional[KeyValueStore] = None,
    circuit_registry: Optional[CircuitRegistry] = None,
    caller: Optional[ResilientCaller] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    settings = settings or get_settings()

    app = FastAPI(
        title="Agent Kernel API",
        description="Agentic orchestration core — world state, controls and agent loops",
        version="0.1.0-alpha",
    )

    # Initialize components
    ws = store or WorldStateStore()
    controller = WorldController(ws)
    if store is None:
        controller.set_credit_limits(settings.daily_budget_limit, settings.monthly_budget_limit)

    dispatcher = ToolDispatcher(ws)
    circuits = circuit_registry or CircuitRegistry(settings.breaker_config())
    resilient = caller or ResilientCaller(circuits.get(MODEL_CIRCUIT), settings.retry_config())
    client = model_client or AnthropicModelClient(
        settings.anthropic_api_key, base_url=settings.model_base_url
    )
    kv = kv_store or KeyValueStore(settings.storage_db_path)
    recorder = RunRecorder(kv)

    loop = AgentLoop(
        store=ws,
        controller=controller,
        dispatcher=dispatcher,
        context_builder=ContextBuilder(
            char_budget=settings.context_char_budget,
            organization=settings.organization,
        ),
        caller=resilient,
        model_client=client,
        config=settings.loop_config(),
    )
    orchestrator = Orchestrator(
        store=ws,
        controller=controller,
        loop=loop,
        recorder=recorder,
        execute_timeout_seconds=settings.execute_timeout_seconds,
        max_workers=settings.orchestrator_workers,
    )

    # Store components on app state for access in endpoints
    app.state.settings = settings
    app.state.world_store = ws
    app.state.controller = controller
    app.state.dispatcher = dispatcher
    app.state.circuits = circuits
    app.state.kv_store = kv
    app.state.recorder = recorder
    app.state.agent_loop = loop
    app.state.orchestrator = orchestrator

    def audited(action: str, result: dict, team_id: Optional[str] = None, **details) -> dict:
        recorder.append_audit(
            action=action,
            team_id=team_id,
            actor="owner",
            success=bool(result.get("success")),
            details={"message": result.get("message"), **details},
        )
        return _control_response(result)

    # === QUERIES ===

    @app.get("/status")
    def get_status():
        """World status, control flags, credit usage and per-team summary."""
        snapshot = ws.snapshot()
        teams = {}
        for tid, team in snapshot.teams.items():
            team_tasks = [t for t in snapshot.tasks if t.team_id == tid]
            teams[tid] = {
                **team.model_dump(mode="json"),
                "task_counts": {
                    s.value: sum(1 for t in team_tasks if t.status == s) for s in TaskStatus
                },
                "in_flight": orchestrator.in_flight(tid),
            }
        return {
            **controller.get_world_status(),
            "teams": teams,
            "pending_decisions": sum(
                1 for d in snapshot.decisions if d.status == DecisionStatus.PENDING
            ),
        }

    @app.get("/teams/{team_id}")
    def get_team(team_id: str):
        status = controller.get_team_status(team_id)
        if status is None:
            raise HTTPException(404, f"Unknown team: {team_id}")
        return status

    @app.get("/tasks")
    def list_tasks(
        team_id: Optional[str] = None,
        status: Optional[TaskStatus] = None,
        limit: int = Query(100, ge=1),
    ):
        tasks = ws.list_tasks(team_id, status)
        return [t.model_dump(mode="json") for t in reversed(tasks)][:limit]

    @app.get("/tasks/{task_id}")
    def get_task(task_id: str):
        task = ws.get_task(task_id)
        if task is None:
            raise HTTPException(404, "Task not found")
        return task.model_dump(mode="json")

    @app.get("/decisions")
    def list_decisions(
        team_id: Optional[str] = None,
        status: Optional[DecisionStatus] = None,
        limit: int = Query(50, ge=1),
    ):
        decisions = ws.list_decisions(team_id, status)
        return [d.model_dump(mode="json") for d in reversed(decisions)][:limit]

    @app.get("/activities")
    def list_activities(team_id: Optional[str] = None, limit: int = Query(20, ge=1)):
        return [a.model_dump(mode="json") for a in ws.list_activities(team_id, limit)]

    @app.get("/events")
    def list_events(team_id: Optional[str] = None, limit: int = Query(50, ge=1)):
        return orchestrator.events(team_id, limit)

    @app.get("/circuits")
    def circuit_status():
        return circuits.status()

    @app.post("/circuits/reset")
    def reset_circuits():
        circuits.reset_all()
        recorder.append_audit(action="circuits_reset", actor="owner")
        return circuits.status()

    @app.get("/control-log")
    def control_log(limit: int = Query(50, ge=1)):
        return controller.get_control_log(limit)

    @app.get("/runs/{team_id}")
    def list_runs(team_id: str, limit: int = Query(20, ge=1)):
        """Persisted transcripts of finished runs, newest first."""
        return recorder.transcripts(team_id, limit)

    @app.get("/costs")
    def list_costs(day: Optional[str] = None):
        day = day or ws.now().strftime("%Y-%m-%d")
        records = recorder.costs_for_day(day)
        return {
            "day": day,
            "total_cost": round(sum(r.get("cost", 0.0) for r in records), 6),
            "records": records,
        }

    @app.get("/audit")
    def audit_events(limit: int = Query(50, ge=1)):
        return [e.model_dump(mode="json") for e in recorder.audit_events(limit)]

    @app.get("/audit/verify")
    def verify_audit():
        """Verify chain integrity."""
        return {
            "integrity_valid": recorder.verify_audit_chain(),
            "total_events": kv.count("AUDIT"),
        }

    # === OWNER COMMANDS (hard stops only) ===

    @app.post("/tasks")
    def create_task(req: TaskCreateRequest):
        result = dispatcher.dispatch(
            ToolName.CREATE_TASK.value,
            {
                "title": req.title,
                "teamId": req.team_id,
                "description": req.description,
                "priority": req.priority.value,
                "assignedAgents": req.assigned_agents,
            },
            None,
            actor=Actor.OWNER,
        )
        return _tool_response(result)

    @app.put("/tasks/{task_id}/status")
    def update_task_status(task_id: str, req: TaskStatusRequest):
        task = ws.get_task(task_id)
        if task is None:
            raise HTTPException(404, "Task not found")
        tool_input = {"taskId": task_id, "status": req.status.value}
        if req.progress is not None:
            tool_input["progress"] = req.progress
        if req.result is not None:
            tool_input["result"] = req.result
        result = dispatcher.dispatch(
            ToolName.UPDATE_TASK_STATUS.value, tool_input, None, actor=Actor.OWNER
        )
        return _tool_response(result)

    @app.delete("/tasks/{task_id}")
    def delete_task(task_id: str, reason: str = ""):
        task = ws.get_task(task_id)
        if task is None:
            raise HTTPException(404, "Task not found")
        result = dispatcher.dispatch(
            ToolName.DELETE_TASK.value,
            {"taskId": task_id, "reason": reason},
            None,
            actor=Actor.OWNER,
        )
        return _tool_response(result)

    @app.put("/decisions/{decision_id}")
    def resolve_decision(decision_id: str, req: DecisionResolveRequest):
        decision = ws.get_decision(decision_id)
        if decision is None:
            raise HTTPException(404, "Decision not found")
        result = dispatcher.dispatch(
            ToolName.RESOLVE_DECISION.value,
            {
                "decisionId": decision_id,
                "status": req.status.value,
                "resolution": req.resolution,
                "selectedOption": req.selected_option,
            },
            None,
            actor=Actor.OWNER,
        )
        if result.success:
            recorder.append_audit(
                action="decision_resolved",
                team_id=decision.team_id,
                actor="owner",
                details={"decision_id": decision_id, "status": req.status.value},
            )
        return _tool_response(result)

    @app.post("/decisions/{decision_id}/annotations")
    def annotate_decision(decision_id: str, req: AnnotationRequest):
        return _tool_response(dispatcher.annotate_decision(decision_id, req.note))

    @app.post("/broadcast")
    def broadcast(req: BroadcastRequest):
        """Owner message to several teams. Delivered to all of them or to none."""
        targets = req.teams if req.teams is not None else ws.team_ids()
        result = _tool_response(dispatcher.broadcast(req.message, targets))
        return {"success": True, "message": result["message"], **result["data"]}

    # === ORCHESTRATION ===

    @app.post("/orchestrate")
    def orchestrate(req: OrchestrateRequest):
        if req.action == "start":
            return audited("orchestration_start", orchestrator.start(req.team_id), req.team_id)
        if req.action == "stop":
            return audited("orchestration_stop", orchestrator.stop(req.team_id), req.team_id)

        if not req.task:
            raise HTTPException(400, f"task is required for {req.action}")
        if ws.automation_level(req.team_id) is None:
            raise HTTPException(404, f"Unknown team: {req.team_id}")
        run = orchestrator.execute if req.action == "execute" else orchestrator.submit
        try:
            result = run(req.team_id, req.task, req.timeout_seconds)
        except ConfigurationError as e:
            raise HTTPException(503, str(e))
        if result.get("timed_out"):
            raise HTTPException(504, result["message"])
        if "result" in result or result.get("queued"):
            # A finished run is reported even when it ended FAILED or at the ceiling.
            return result
        return _control_response(result)

    # === WORLD CONTROLS (never gated by automation level) ===

    @app.post("/world/pause")
    def pause_world(req: PauseRequest):
        return audited("world_pause", controller.pause_world(req.reason), reason=req.reason)

    @app.post("/world/resume")
    def resume_world(req: ResumeRequest):
        return audited(
            "world_resume",
            controller.resume_world(target_status=req.target_status),
            target_status=req.target_status.value,
        )

    @app.put("/world/status")
    def set_world_status(req: WorldStatusRequest):
        return audited(
            "world_status_change", controller.set_world_status(req.status), status=req.status.value
        )

    @app.post("/world/emergency-stop")
    def emergency_stop(req: EmergencyStopRequest):
        return audited("emergency_stop", controller.emergency_stop(req.reason), reason=req.reason)

    @app.post("/world/emergency-stop/reset")
    def reset_emergency_stop(req: EmergencyResetRequest):
        result = controller.reset_emergency_stop(req.confirmation_code)
        if not result["success"]:
            recorder.append_audit(
                action="emergency_stop_reset", actor="owner", success=False,
                details={"message": result["message"]},
            )
            raise HTTPException(400, result["message"])
        return audited("emergency_stop_reset", result)

    @app.put("/world/credit-limits")
    def set_credit_limits(req: CreditLimitsRequest):
        return audited(
            "credit_limits_update",
            controller.set_credit_limits(req.daily_limit, req.monthly_limit),
            daily_limit=req.daily_limit,
            monthly_limit=req.monthly_limit,
        )

    @app.get("/world/credit")
    def credit_status(estimated_cost: float = 0.0):
        return controller.check_credit_limits(estimated_cost).model_dump(mode="json")

    @app.post("/world/credit/reset-daily")
    def reset_daily_spend():
        return audited("daily_spend_reset", controller.reset_daily_spend())

    @app.post("/world/credit/reset-monthly")
    def reset_monthly_spend():
        return audited("monthly_spend_reset", controller.reset_monthly_spend())

    @app.put("/teams/{team_id}/automation")
    def set_team_automation(team_id: str, req: AutomationLevelRequest):
        result = controller.set_team_automation(team_id, req.level, req.allowed_actions)
        return audited(
            "team_automation_change",
            result,
            team_id,
            level=req.level.value,
            allowed_actions=(result.get("team") or {}).get("allowed_actions"),
        )

    @app.post("/teams/{team_id}/pause")
    def pause_team(team_id: str, req: PauseRequest):
        return audited("team_pause", controller.pause_team(team_id, req.reason), team_id, reason=req.reason)

    @app.post("/teams/{team_id}/resume")
    def resume_team(team_id: str):
        return audited("team_resume", controller.resume_team(team_id), team_id)

    @app.get("/world/automation-windows")
    def list_automation_windows():
        return [w.model_dump(mode="json") for w in ws.snapshot().automation_windows]

    @app.post("/world/automation-windows")
    def add_automation_window(req: AutomationWindowRequest):
        return audited(
            "automation_window_add",
            controller.add_automation_window(req.schedule, req.teams),
            schedule=req.schedule,
        )

    @app.delete("/world/automation-windows/{window_id}")
    def remove_automation_window(window_id: str):
        return audited(
            "automation_window_remove",
            controller.remove_automation_window(window_id),
            window_id=window_id,
        )

    @app.get("/world/automation-windows/active")
    def active_windows(team_id: str, at: Optional[datetime] = None):
        if ws.automation_level(team_id) is None:
            raise HTTPException(404, f"Unknown team: {team_id}")
        return {"team_id": team_id, "within_window": controller.is_within_automation_window(team_id, at)}

    # === ACTION TRIGGERS AND APPROVALS ===

    @app.get("/world/actions")
    def pending_actions(team_id: Optional[str] = None):
        return controller.get_pending_actions(team_id)

    @app.post("/world/actions")
    def queue_action(req: QueueActionRequest):
        return audited(
            "action_queue",
            controller.queue_action(
                req.team_id, req.action_type, req.parameters, req.requires_approval
            ),
            req.team_id,
            action_type=req.action_type.value,
        )

    @app.post("/world/actions/trigger")
    def trigger_action(req: ActionRequest):
        return audited(
            "action_trigger",
            controller.trigger_team_action(req.team_id, req.action_type, req.parameters),
            req.team_id,
            action_type=req.action_type.value,
        )

    @app.post("/world/actions/{action_id}/approve")
    def approve_action(action_id: str, req: Optional[ApproveActionRequest] = None):
        """Approve a queued action; an approved execute with a task runs now."""
        timeout = req.timeout_seconds if req else None
        try:
            result = orchestrator.approve(action_id, timeout)
        except ConfigurationError as e:
            raise HTTPException(503, str(e))
        team_id = (result.get("approved") or {}).get("team_id")
        return audited("action_approve", result, team_id, action_id=action_id)

    @app.post("/world/actions/{action_id}/reject")
    def reject_action(action_id: str, req: Optional[RejectActionRequest] = None):
        reason = req.reason if req else "Rejected by owner"
        result = controller.reject_action(action_id, reason)
        team_id = (result.get("action") or {}).get("team_id")
        return audited("action_reject", result, team_id, action_id=action_id, reason=reason)

    return app


# Default application instance
setup_logging(get_settings().log_level)
app = create_app()
