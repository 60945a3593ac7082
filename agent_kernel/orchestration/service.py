"""
Orchestrator — runs Agent Loops for teams on a worker pool.

States per team (TeamControl.orchestration_status):
  idle -> running -> stopped -> running ...

Behavioral Contract:
- execute() requires the team to be running and allows at most one
  in-flight loop per team. Loops for different teams run independently.
- execute() blocks until the loop ends or the wall-clock ceiling elapses.
  On the ceiling the loop is cancelled and exits at its next iteration
  boundary; its tool dispatches are never cut short.
- stop() cancels the in-flight loop the same way.
- submit() runs only what the gate allows without a trigger and queues
  what it holds back for the owner; approve() runs a queued assignment.
- Finished runs are handed to the RunRecorder, never earlier.
- Events are kept per team in bounded buffers.
"""

import logging
import threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import datetime
from typing import Deque, Dict, List, Optional

from agent_kernel.agent.loop import AgentLoop
from agent_kernel.governance.controller import WorldController, estimate_action_cost
from agent_kernel.models.loop import LoopResult
from agent_kernel.models.world import ActionType, WorldState
from agent_kernel.storage.store import RunRecorder
from agent_kernel.world_model.store import WorldStateStore

logger = logging.getLogger(__name__)

RUNNING = "running"
STOPPED = "stopped"


class Orchestrator:
    """One Agent Loop invocation per team at a time."""

    def __init__(
        self,
        store: WorldStateStore,
        controller: WorldController,
        loop: AgentLoop,
        recorder: Optional[RunRecorder] = None,
        execute_timeout_seconds: float = 300.0,
        max_workers: int = 4,
        max_events_per_team: int = 200,
    ):
        self.store = store
        self.controller = controller
        self.loop = loop
        self.recorder = recorder
        self.execute_timeout_seconds = execute_timeout_seconds
        self.max_events_per_team = max_events_per_team

        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="agent-loop")
        self._lock = threading.Lock()
        self._in_flight: Dict[str, threading.Event] = {}
        self._events: Dict[str, Deque[dict]] = {}

    # --- Lifecycle ---

    def start(self, team_id: str) -> dict:
        def apply(state: WorldState) -> Optional[str]:
            team = state.teams.get(team_id)
            if team is None:
                return f"Unknown team: {team_id}"
            if not team.active:
                return f"Team {team_id} is inactive"
            state.team_controls[team_id].orchestration_status = RUNNING
            self.store.append_control_entry(state, "ORCHESTRATION_STARTED", {"team_id": team_id})
            return None

        error = self.store.mutate(apply)
        if error:
            return {"success": False, "message": error}

        logger.info("Orchestration started for team %s", team_id)
        self._record_event({"type": "orchestration_started", "team_id": team_id})
        return {"success": True, "message": f"Orchestration started for {team_id}", "team_id": team_id}

    def stop(self, team_id: str) -> dict:
        def apply(state: WorldState) -> bool:
            if team_id not in state.teams:
                return False
            state.team_controls[team_id].orchestration_status = STOPPED
            self.store.append_control_entry(state, "ORCHESTRATION_STOPPED", {"team_id": team_id})
            return True

        if not self.store.mutate(apply):
            return {"success": False, "message": f"Unknown team: {team_id}"}

        with self._lock:
            cancel = self._in_flight.get(team_id)
        if cancel is not None:
            cancel.set()

        logger.info("Orchestration stopped for team %s (in-flight run cancelled: %s)", team_id, cancel is not None)
        self._record_event({"type": "orchestration_stopped", "team_id": team_id})
        return {
            "success": True,
            "message": f"Orchestration stopped for {team_id}",
            "team_id": team_id,
            "cancelled_run": cancel is not None,
        }

    def is_running(self, team_id: str) -> bool:
        control = self.store.snapshot().team_controls.get(team_id)
        return control is not None and control.orchestration_status == RUNNING

    def in_flight(self, team_id: str) -> bool:
        with self._lock:
            return team_id in self._in_flight

    # --- Execution ---

    def execute(self, team_id: str, task: str, timeout_s: Optional[float] = None) -> dict:
        """
        Run one assignment for a team and wait for it.

        An owner-initiated execute counts as an explicit trigger: it clears
        the manual and automation-window gates but never a hard stop.
        ConfigurationError from the loop propagates to the caller.
        """
        refusal = self._precheck(team_id, task)
        if refusal:
            return refusal
        return self._run(team_id, task, timeout_s, triggered=True)

    def submit(
        self,
        team_id: str,
        task: str,
        timeout_s: Optional[float] = None,
        requested_by: str = "owner",
    ) -> dict:
        """
        Run an assignment only if the world lets the team act on its own.

        When the gate holds it back for the owner (manual mode, semi-auto
        outside a window or off the allow-list) it is queued for approval
        instead. Hard stops are refused outright.
        """
        refusal = self._precheck(team_id, task)
        if refusal:
            return refusal

        gate = self.controller.check_loop_gate(
            team_id, estimate_action_cost(ActionType.EXECUTE), action_type=ActionType.EXECUTE
        )
        if gate.allowed:
            return self._run(team_id, task, timeout_s, triggered=False)
        if not gate.requires_approval:
            return {"success": False, "message": gate.reason, "code": gate.code.value}

        queued = self.controller.queue_action(
            team_id, ActionType.EXECUTE, {"task": task}, queued_by=requested_by, reason=gate.reason
        )
        if queued["success"]:
            self._record_event(
                {"type": "run_queued", "team_id": team_id, "action_id": queued["action"]["id"]}
            )
            queued = {**queued, "queued": True}
        return queued

    def approve(self, action_id: str, timeout_s: Optional[float] = None) -> dict:
        """
        Approve a queued action. An approved execute that carries a task is
        run right away as an owner-triggered run; its outcome is under "run".
        """
        approval = self.controller.approve_action(action_id)
        if not approval["success"]:
            return approval

        pending = approval["approved"]
        task = pending["parameters"].get("task")
        if pending["action_type"] != ActionType.EXECUTE.value or not task:
            return approval
        return {**approval, "run": self.execute(pending["team_id"], task, timeout_s)}

    def _precheck(self, team_id: str, task: str) -> Optional[dict]:
        if not task or not task.strip():
            return {"success": False, "message": "Task is required"}
        if not self.is_running(team_id):
            return {
                "success": False,
                "message": f"Orchestration for {team_id} is not running. Start it first.",
            }
        return None

    def _run(self, team_id: str, task: str, timeout_s: Optional[float], triggered: bool) -> dict:
        cancel = threading.Event()
        with self._lock:
            if team_id in self._in_flight:
                return {"success": False, "message": f"Team {team_id} already has a run in progress"}
            self._in_flight[team_id] = cancel

        def bump(state: WorldState) -> None:
            control = state.team_controls[team_id]
            control.run_count += 1
            control.last_run = self.store.now()

        try:
            self.store.mutate(bump)
            future = self._executor.submit(
                self.loop.run, team_id, task, cancel, self._record_event, triggered
            )
        except Exception:
            with self._lock:
                self._in_flight.pop(team_id, None)
            raise
        future.add_done_callback(lambda f: self._on_finished(team_id, f))

        timeout = timeout_s if timeout_s is not None else self.execute_timeout_seconds
        try:
            result: LoopResult = future.result(timeout=timeout)
        except FutureTimeoutError:
            cancel.set()
            logger.warning("Run for team %s exceeded %.1fs; cancellation requested", team_id, timeout)
            return {
                "success": False,
                "message": f"Run exceeded {timeout:g}s and was cancelled at the next iteration boundary",
                "timed_out": True,
            }

        return {
            "success": result.status.value == "completed",
            "message": result.summary,
            "result": result.model_dump(mode="json", exclude={"transcript"}),
        }

    def _on_finished(self, team_id: str, future: Future) -> None:
        with self._lock:
            self._in_flight.pop(team_id, None)

        error = future.exception()
        if error is not None:
            logger.error("Run for team %s raised: %s", team_id, error)
            if self.recorder is not None:
                self.recorder.append_audit(
                    action="agent_loop_error",
                    team_id=team_id,
                    actor="orchestrator",
                    success=False,
                    details={"error": str(error), "type": type(error).__name__},
                )
            return

        if self.recorder is not None:
            try:
                self.recorder.record_run(future.result())
            except Exception:
                logger.exception("Failed to persist run for team %s", team_id)

    # --- Events ---

    def _record_event(self, event: dict) -> None:
        event.setdefault("timestamp", datetime.utcnow().isoformat())
        team_id = event.get("team_id") or "system"
        with self._lock:
            buffer = self._events.get(team_id)
            if buffer is None:
                buffer = deque(maxlen=self.max_events_per_team)
                self._events[team_id] = buffer
            buffer.append(event)

    def events(self, team_id: Optional[str] = None, limit: int = 50) -> List[dict]:
        """Most recent events, newest last."""
        with self._lock:
            if team_id is not None:
                merged = list(self._events.get(team_id, ()))
            else:
                merged = sorted(
                    (e for buffer in self._events.values() for e in buffer),
                    key=lambda e: e.get("timestamp", ""),
                )
        return merged[-limit:] if limit > 0 else []

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            for cancel in self._in_flight.values():
                cancel.set()
        self._executor.shutdown(wait=wait)
