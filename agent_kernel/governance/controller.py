"""
World Controller — the owner's control plane over the whole agent world.

Combines a global world status with per-team automation levels (AND
semantics: an action proceeds only if neither forbids it), credit
protection and the emergency stop.

Behavioral Contract:
- Gates are pure functions of a WorldState and never raise; a rejection
  is a GateDecision with a human-readable reason
- Gate precedence: emergency stop -> global pause -> team paused ->
  team stopped -> budget hard stop -> world status / team level
- The emergency stop has no automatic recovery; only an explicit reset
  with the confirmation code clears it, and the world stays paused
- Work the gates hold back for the owner (manual, semi-auto outside a
  window or the allow-list) may be queued; approving it triggers it
  under the hard stops and the credit check
- Every control action is written to the control log
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional, Tuple
from uuid import uuid4

from croniter import croniter

from agent_kernel.models.controller import (
    BudgetUsage,
    CreditCheck,
    CreditVerdict,
    GateCode,
    GateDecision,
)
from agent_kernel.models.world import (
    ActionType,
    AutomationLevel,
    AutomationWindow,
    CreditProtection,
    PendingAction,
    PendingActionStatus,
    WorldState,
    WorldStatus,
)
from agent_kernel.world_model.store import WorldStateStore

logger = logging.getLogger(__name__)

RESET_CONFIRMATION_CODE = "CONFIRM_RESET"

CAUTION_THRESHOLD = 0.5
WARNING_THRESHOLD = 0.75
CRITICAL_THRESHOLD = 0.9

_AUTONOMOUS_LEVELS = (AutomationLevel.SUPERVISED, AutomationLevel.AUTONOMOUS)

# Rough USD per action, used for credit projection before anything runs
ACTION_COST_ESTIMATES: Dict[ActionType, float] = {
    ActionType.THINK: 0.01,
    ActionType.EXECUTE: 0.05,
    ActionType.COMMUNICATE: 0.02,
    ActionType.REPORT: 0.03,
    ActionType.SYNC: 0.01,
    ActionType.RESEARCH: 0.1,
    ActionType.CREATE: 0.15,
    ActionType.REVIEW: 0.05,
}


def estimate_action_cost(action_type: ActionType) -> float:
    return ACTION_COST_ESTIMATES.get(action_type, 0.05)


# --- Credit protection ---

def _current_spend(credit: CreditProtection, now: datetime) -> Tuple[float, float]:
    """Spend for the current UTC day and month; a stale period counts as zero."""
    daily = credit.current_daily_spend
    monthly = credit.current_monthly_spend
    if credit.spend_day is not None and credit.spend_day != now.strftime("%Y-%m-%d"):
        daily = 0.0
    if credit.spend_month is not None and credit.spend_month != now.strftime("%Y-%m"):
        monthly = 0.0
    return daily, monthly


def _roll_over(credit: CreditProtection, now: datetime) -> None:
    daily, monthly = _current_spend(credit, now)
    credit.current_daily_spend = daily
    credit.current_monthly_spend = monthly
    credit.spend_day = now.strftime("%Y-%m-%d")
    credit.spend_month = now.strftime("%Y-%m")


def _ratio(amount: float, limit: float) -> float:
    if limit <= 0:
        # A zero limit allows no spend at all.
        return float("inf")
    return amount / limit


def _usage(spent: float, projected: float, limit: float) -> BudgetUsage:
    ratio = _ratio(projected, limit)
    return BudgetUsage(
        spent=round(spent, 6),
        projected=round(projected, 6),
        limit=limit,
        remaining=round(limit - spent, 6),
        usage_percent=round(ratio * 100) if ratio != float("inf") else 100,
    )


def evaluate_credit(
    credit: CreditProtection, now: datetime, estimated_cost: float = 0.0
) -> CreditCheck:
    """Compare projected spend (current + estimated) against both limits."""
    daily, monthly = _current_spend(credit, now)
    projected_daily = daily + estimated_cost
    projected_monthly = monthly + estimated_cost
    ratio = max(
        _ratio(projected_daily, credit.daily_limit),
        _ratio(projected_monthly, credit.monthly_limit),
    )

    if ratio >= credit.hard_stop_threshold:
        verdict, message = CreditVerdict.HARD_STOP, "Credit limit reached - all operations stopped"
    elif ratio >= CRITICAL_THRESHOLD:
        verdict, message = CreditVerdict.CRITICAL, "Critical credit usage - approaching limit"
    elif ratio >= WARNING_THRESHOLD:
        verdict, message = CreditVerdict.WARNING, "High credit usage"
    elif ratio >= CAUTION_THRESHOLD:
        verdict, message = CreditVerdict.CAUTION, "Moderate credit usage - use caution"
    else:
        verdict, message = CreditVerdict.OK, "Within limits"

    return CreditCheck(
        verdict=verdict,
        can_proceed=verdict != CreditVerdict.HARD_STOP,
        message=message,
        estimated_cost=estimated_cost,
        daily=_usage(daily, projected_daily, credit.daily_limit),
        monthly=_usage(monthly, projected_monthly, credit.monthly_limit),
    )


# --- Automation windows ---

def window_matches(window: AutomationWindow, team_id: str, when: datetime) -> bool:
    if window.teams and team_id not in window.teams:
        return False
    try:
        return croniter.match(window.schedule, when)
    except (ValueError, KeyError):
        # Invalid cron expression: never open (fail-safe)
        return False


def in_automation_window(state: WorldState, team_id: str, when: datetime) -> bool:
    return any(window_matches(w, team_id, when) for w in state.automation_windows)


# --- Gates ---

_APPROVABLE = (GateCode.REQUIRES_TRIGGER, GateCode.REQUIRES_APPROVAL, GateCode.OUTSIDE_WINDOW)


def _deny(code: GateCode, reason: str, credit: Optional[CreditCheck] = None) -> GateDecision:
    return GateDecision(
        allowed=False, reason=reason, code=code, credit=credit,
        requires_approval=code in _APPROVABLE,
    )


def _hard_stops(state: WorldState, team_id: Optional[str]) -> Optional[GateDecision]:
    """Checks that apply to every actor, owner included."""
    if state.emergency_stop.triggered:
        reason = state.emergency_stop.reason or "no reason given"
        return _deny(GateCode.EMERGENCY_STOP, f"Emergency stop active: {reason}")

    if state.global_paused:
        reason = f"World is paused: {state.pause_reason}" if state.pause_reason else "World is paused"
        return _deny(GateCode.WORLD_PAUSED, reason)

    if team_id is None:
        return None

    team = state.teams.get(team_id)
    control = state.team_controls.get(team_id)
    if team is None or control is None:
        return _deny(GateCode.UNKNOWN_TEAM, f"Unknown team: {team_id}")
    if not team.active:
        return _deny(GateCode.TEAM_STOPPED, f"Team {team_id} is inactive")

    if control.paused:
        return _deny(GateCode.TEAM_PAUSED, f"Team {team_id} is paused")

    if control.automation_level == AutomationLevel.STOPPED:
        return _deny(GateCode.TEAM_STOPPED, f"Team {team_id} automation stopped")

    return None


def evaluate_owner_gate(state: WorldState, team_id: Optional[str] = None) -> GateDecision:
    """Gate for owner-initiated mutations: the hard stops only."""
    denied = _hard_stops(state, team_id)
    if denied:
        return denied
    return GateDecision(allowed=True, reason="Owner action permitted", code=GateCode.ALLOWED)


def evaluate_action_gate(
    state: WorldState,
    team_id: str,
    estimated_cost: float = 0.0,
    now: Optional[datetime] = None,
    triggered: bool = False,
    action_type: ActionType = ActionType.EXECUTE,
) -> GateDecision:
    """
    Whether a team's agents may act right now.

    `triggered` marks a run the owner explicitly started, which satisfies
    the "requires owner trigger" rules of manual mode but none of the
    hard stops. In semi-auto mode `action_type` must also be on the
    team's allow-list, when it has one.
    """
    if now is None:
        now = state.captured_at or datetime.utcnow()

    denied = _hard_stops(state, team_id)
    if denied:
        return denied

    credit = evaluate_credit(state.credit_protection, now, estimated_cost)
    if not credit.can_proceed:
        return _deny(GateCode.CREDIT_LIMIT, credit.message, credit)

    control = state.team_controls[team_id]
    level = control.automation_level
    status = state.world_status

    if status == WorldStatus.PAUSED:
        return _deny(GateCode.WORLD_PAUSED, "World is paused", credit)

    if status == WorldStatus.MANUAL:
        if not triggered:
            return _deny(
                GateCode.REQUIRES_TRIGGER, "Manual mode - action requires owner trigger", credit
            )

    elif status == WorldStatus.SEMI_AUTO:
        if not triggered:
            if level not in _AUTONOMOUS_LEVELS:
                return _deny(GateCode.REQUIRES_TRIGGER, f"Team {team_id} in manual mode", credit)
            if not in_automation_window(state, team_id, now):
                return _deny(
                    GateCode.OUTSIDE_WINDOW,
                    "Semi-auto mode - outside automation window",
                    credit,
                )
            if control.allowed_actions and action_type not in control.allowed_actions:
                return _deny(
                    GateCode.REQUIRES_APPROVAL,
                    f"Semi-auto mode - {action_type.value} not in team {team_id} allowed actions",
                    credit,
                )

    elif status == WorldStatus.AUTONOMOUS:
        if level not in _AUTONOMOUS_LEVELS and not triggered:
            return _deny(GateCode.REQUIRES_TRIGGER, f"Team {team_id} in manual mode", credit)

    return GateDecision(
        allowed=True,
        reason="Owner-triggered run" if triggered else f"{status.value} mode",
        code=GateCode.ALLOWED,
        credit=credit,
    )


class WorldController:
    """
    Owner control plane. All writes go through the store's critical
    section; operations return plain result dicts rather than raising.
    """

    def __init__(self, store: WorldStateStore):
        self.store = store

    # --- Global controls ---

    def pause_world(self, reason: str = "Manual pause by owner", paused_by: str = "owner") -> dict:
        def apply(state: WorldState) -> None:
            self._apply_pause(state, reason, paused_by)

        self.store.mutate(apply)
        logger.warning("World paused by %s: %s", paused_by, reason)
        return {"success": True, "message": "World paused successfully", "state": self.get_world_status()}

    def resume_world(
        self,
        resumed_by: str = "owner",
        target_status: WorldStatus = WorldStatus.MANUAL,
    ) -> dict:
        def apply(state: WorldState) -> Optional[str]:
            if state.emergency_stop.triggered:
                return "Emergency stop is active. Manual reset required."
            if target_status == WorldStatus.PAUSED:
                return "Cannot resume into paused status"
            state.global_paused = False
            state.pause_reason = None
            state.paused_at = None
            state.world_status = target_status
            self.store.append_control_entry(
                state, "WORLD_RESUMED",
                {"resumed_by": resumed_by, "target_status": target_status.value},
            )
            return None

        refusal = self.store.mutate(apply)
        if refusal:
            logger.info("World resume refused: %s", refusal)
            return {"success": False, "message": refusal}

        logger.info("World resumed by %s in %s mode", resumed_by, target_status.value)
        return {
            "success": True,
            "message": f"World resumed in {target_status.value} mode",
            "state": self.get_world_status(),
        }

    def set_world_status(self, status: WorldStatus, changed_by: str = "owner") -> dict:
        def apply(state: WorldState) -> Optional[str]:
            if status != WorldStatus.PAUSED and state.emergency_stop.triggered:
                return "Emergency stop is active. Manual reset required."
            previous = state.world_status
            state.world_status = status
            if status == WorldStatus.PAUSED:
                state.global_paused = True
                state.paused_at = self.store.now()
            else:
                state.global_paused = False
                state.pause_reason = None
                state.paused_at = None
            self.store.append_control_entry(
                state, "WORLD_STATUS_CHANGED",
                {"from": previous.value, "to": status.value, "changed_by": changed_by},
            )
            return None

        refusal = self.store.mutate(apply)
        if refusal:
            return {"success": False, "message": refusal}

        logger.info("World status set to %s by %s", status.value, changed_by)
        return {
            "success": True,
            "message": f"World status changed to {status.value}",
            "state": self.get_world_status(),
        }

    # --- Team controls ---

    def pause_team(self, team_id: str, reason: str = "Manual pause", paused_by: str = "owner") -> dict:
        def apply(state: WorldState) -> bool:
            control = state.team_controls.get(team_id)
            if control is None:
                return False
            control.paused = True
            control.pause_reason = reason
            control.paused_at = self.store.now()
            self.store.append_control_entry(
                state, "TEAM_PAUSED", {"team_id": team_id, "reason": reason, "paused_by": paused_by}
            )
            return True

        if not self.store.mutate(apply):
            return {"success": False, "message": f"Unknown team: {team_id}"}

        logger.info("Team %s paused: %s", team_id, reason)
        return {"success": True, "message": f"Team {team_id} paused", "team": self.get_team_status(team_id)}

    def resume_team(self, team_id: str, resumed_by: str = "owner") -> dict:
        def apply(state: WorldState) -> Optional[str]:
            control = state.team_controls.get(team_id)
            if control is None:
                return f"Unknown team: {team_id}"
            if state.global_paused:
                return "Cannot resume team while world is paused. Resume world first."
            control.paused = False
            control.pause_reason = None
            control.paused_at = None
            self.store.append_control_entry(
                state, "TEAM_RESUMED", {"team_id": team_id, "resumed_by": resumed_by}
            )
            return None

        refusal = self.store.mutate(apply)
        if refusal:
            return {"success": False, "message": refusal}

        logger.info("Team %s resumed", team_id)
        return {"success": True, "message": f"Team {team_id} resumed", "team": self.get_team_status(team_id)}

    def set_team_automation(
        self,
        team_id: str,
        level: AutomationLevel,
        allowed_actions: Optional[List[ActionType]] = None,
    ) -> dict:
        """Set a team's level; allowed_actions=None keeps its current allow-list."""

        def apply(state: WorldState) -> Optional[AutomationLevel]:
            control = state.team_controls.get(team_id)
            if control is None:
                return None
            previous = control.automation_level
            control.automation_level = level
            if allowed_actions is not None:
                control.allowed_actions = list(dict.fromkeys(allowed_actions))
            self.store.append_control_entry(
                state, "TEAM_AUTOMATION_CHANGED",
                {
                    "team_id": team_id,
                    "from": previous.value,
                    "to": level.value,
                    "allowed_actions": [a.value for a in control.allowed_actions],
                },
            )
            return previous

        previous = self.store.mutate(apply)
        if previous is None:
            return {"success": False, "message": f"Unknown team: {team_id}"}

        logger.info("Team %s automation %s -> %s", team_id, previous.value, level.value)
        return {
            "success": True,
            "message": f"Team {team_id} automation set to {level.value}",
            "team": self.get_team_status(team_id),
        }

    # --- Credit protection ---

    def set_credit_limits(
        self, daily: Optional[float] = None, monthly: Optional[float] = None
    ) -> dict:
        def apply(state: WorldState) -> CreditProtection:
            credit = state.credit_protection
            if daily is not None:
                credit.daily_limit = daily
            if monthly is not None:
                credit.monthly_limit = monthly
            self.store.append_control_entry(
                state, "CREDIT_LIMITS_UPDATED",
                {"daily_limit": credit.daily_limit, "monthly_limit": credit.monthly_limit},
            )
            return credit.model_copy()

        credit = self.store.mutate(apply)
        logger.info("Credit limits set: daily=%s monthly=%s", credit.daily_limit, credit.monthly_limit)
        return {
            "success": True,
            "message": "Credit limits updated",
            "credit_protection": credit.model_dump(mode="json"),
        }

    def check_credit_limits(self, estimated_cost: float = 0.0) -> CreditCheck:
        snapshot = self.store.snapshot()
        return evaluate_credit(snapshot.credit_protection, snapshot.captured_at, estimated_cost)

    def record_spend(self, amount: float, source: str = "agent_action") -> CreditCheck:
        """Add actual spend; a hard stop pauses the world when auto-stop is on."""

        def apply(state: WorldState) -> Tuple[CreditCheck, bool]:
            now = self.store.now()
            credit = state.credit_protection
            _roll_over(credit, now)
            credit.current_daily_spend += amount
            credit.current_monthly_spend += amount

            check = evaluate_credit(credit, now)
            auto_paused = False
            if not check.can_proceed and credit.auto_stop_on_limit and not state.global_paused:
                self._apply_pause(state, f"Credit limit reached: {check.message}", "credit_protection")
                auto_paused = True

            self.store.append_control_entry(
                state, "SPEND_RECORDED",
                {
                    "amount": amount,
                    "source": source,
                    "daily_spend": credit.current_daily_spend,
                    "monthly_spend": credit.current_monthly_spend,
                },
            )
            return check, auto_paused

        check, auto_paused = self.store.mutate(apply)
        if auto_paused:
            logger.warning("Credit hard stop reached, world paused: %s", check.message)
        elif check.verdict != CreditVerdict.OK:
            logger.info("Credit usage %s after %.4f from %s", check.verdict.value, amount, source)
        return check

    def reset_daily_spend(self) -> dict:
        def apply(state: WorldState) -> None:
            state.credit_protection.current_daily_spend = 0.0
            self.store.append_control_entry(state, "DAILY_SPEND_RESET", {})

        self.store.mutate(apply)
        return {"success": True, "message": "Daily spend reset"}

    def reset_monthly_spend(self) -> dict:
        def apply(state: WorldState) -> None:
            state.credit_protection.current_monthly_spend = 0.0
            self.store.append_control_entry(state, "MONTHLY_SPEND_RESET", {})

        self.store.mutate(apply)
        return {"success": True, "message": "Monthly spend reset"}

    # --- Emergency controls ---

    def emergency_stop(self, reason: str = "Emergency stop triggered") -> dict:
        def apply(state: WorldState) -> None:
            state.emergency_stop.triggered = True
            state.emergency_stop.reason = reason
            state.emergency_stop.triggered_at = self.store.now()
            self._apply_pause(state, reason, "emergency_stop")
            self.store.append_control_entry(state, "EMERGENCY_STOP", {"reason": reason})

        self.store.mutate(apply)
        logger.critical("EMERGENCY STOP: %s", reason)
        return {
            "success": True,
            "message": "EMERGENCY STOP ACTIVATED - All operations halted",
            "state": self.get_world_status(),
        }

    def reset_emergency_stop(
        self, confirmation_code: Optional[str], reset_by: str = "owner"
    ) -> dict:
        if confirmation_code != RESET_CONFIRMATION_CODE:
            return {
                "success": False,
                "message": f"Emergency stop reset requires confirmation code: {RESET_CONFIRMATION_CODE}",
            }

        def apply(state: WorldState) -> None:
            state.emergency_stop.triggered = False
            state.emergency_stop.reason = None
            state.emergency_stop.triggered_at = None
            self.store.append_control_entry(state, "EMERGENCY_STOP_RESET", {"reset_by": reset_by})

        self.store.mutate(apply)
        logger.warning("Emergency stop reset by %s; world remains paused", reset_by)
        return {
            "success": True,
            "message": "Emergency stop reset. World remains paused - resume when ready.",
            "state": self.get_world_status(),
        }

    # --- Automation windows ---

    def add_automation_window(self, schedule: str, teams: Optional[List[str]] = None) -> dict:
        if not croniter.is_valid(schedule):
            return {"success": False, "message": f"Invalid cron schedule: {schedule}"}

        window = AutomationWindow(
            id=f"window_{uuid4().hex[:12]}", schedule=schedule, teams=list(teams or [])
        )

        def apply(state: WorldState) -> Optional[str]:
            unknown = [t for t in window.teams if t not in state.teams]
            if unknown:
                return f"Unknown team: {', '.join(unknown)}"
            state.automation_windows.append(window)
            self.store.append_control_entry(
                state, "AUTOMATION_WINDOW_ADDED", window.model_dump(mode="json")
            )
            return None

        refusal = self.store.mutate(apply)
        if refusal:
            return {"success": False, "message": refusal}
        return {
            "success": True,
            "message": "Automation window added",
            "window": window.model_dump(mode="json"),
        }

    def remove_automation_window(self, window_id: str) -> dict:
        def apply(state: WorldState) -> bool:
            remaining = [w for w in state.automation_windows if w.id != window_id]
            if len(remaining) == len(state.automation_windows):
                return False
            state.automation_windows = remaining
            self.store.append_control_entry(
                state, "AUTOMATION_WINDOW_REMOVED", {"window_id": window_id}
            )
            return True

        if not self.store.mutate(apply):
            return {"success": False, "message": "Window not found"}
        return {"success": True, "message": "Automation window removed"}

    def is_within_automation_window(self, team_id: str, when: Optional[datetime] = None) -> bool:
        snapshot = self.store.snapshot()
        return in_automation_window(snapshot, team_id, when or snapshot.captured_at)

    # --- Action triggers and the approval queue ---

    def trigger_team_action(
        self,
        team_id: str,
        action_type: ActionType,
        parameters: Optional[dict] = None,
        triggered_by: str = "owner",
    ) -> dict:
        """Owner trigger: cleared by the hard stops and the projected credit check only."""
        estimated = estimate_action_cost(action_type)
        with self.store.locked() as live:
            refusal = self._trigger_refusal(live, team_id, estimated)
            if refusal:
                return {"success": False, "message": refusal}

            action = {
                "id": f"action_{uuid4().hex[:12]}",
                "team_id": team_id,
                "action_type": action_type.value,
                "parameters": dict(parameters or {}),
                "triggered_at": self.store.now().isoformat(),
                "triggered_by": triggered_by,
                "status": "triggered",
                "estimated_cost": estimated,
            }
            self.store.mutate(
                lambda state: self.store.append_control_entry(state, "ACTION_TRIGGERED", action)
            )

        logger.info("Action %s triggered for team %s by %s", action_type.value, team_id, triggered_by)
        return {
            "success": True,
            "message": f"Action {action_type.value} triggered for team {team_id}",
            "action": action,
        }

    def queue_action(
        self,
        team_id: str,
        action_type: ActionType,
        parameters: Optional[dict] = None,
        requires_approval: bool = True,
        queued_by: str = "owner",
        reason: Optional[str] = None,
    ) -> dict:
        def apply(state: WorldState) -> Tuple[Optional[str], Optional[PendingAction]]:
            if team_id not in state.team_controls:
                return f"Unknown team: {team_id}", None
            if len(state.pending_actions) >= self.store.limits.max_pending_actions:
                return "Pending action queue is full. Approve or reject queued actions first.", None
            action = PendingAction(
                id=f"pending_{uuid4().hex[:12]}",
                team_id=team_id,
                action_type=action_type,
                parameters=dict(parameters or {}),
                status=(
                    PendingActionStatus.PENDING_APPROVAL if requires_approval
                    else PendingActionStatus.QUEUED
                ),
                queued_at=self.store.now(),
                queued_by=queued_by,
                reason=reason,
                estimated_cost=estimate_action_cost(action_type),
            )
            state.pending_actions.append(action)
            self.store.append_control_entry(state, "ACTION_QUEUED", action.model_dump(mode="json"))
            return None, action.model_copy()

        refusal, action = self.store.mutate(apply)
        if refusal:
            return {"success": False, "message": refusal}

        logger.info("Action %s queued for team %s (%s)", action_type.value, team_id, action.status.value)
        return {
            "success": True,
            "message": f"Action queued for {'approval' if requires_approval else 'execution'}",
            "action": action.model_dump(mode="json"),
        }

    def approve_action(self, action_id: str, approved_by: str = "owner") -> dict:
        """
        Trigger a queued action. When the trigger is refused (a hard stop
        or the credit check) the action stays queued.
        """
        with self.store.locked() as live:
            pending = next((a for a in live.pending_actions if a.id == action_id), None)
            if pending is None:
                return {"success": False, "message": f"Action not found: {action_id}"}

            refusal = self._trigger_refusal(live, pending.team_id, pending.estimated_cost)
            if refusal:
                return {"success": False, "message": refusal, "action": pending.model_dump(mode="json")}

            approved_at = self.store.now()

            def apply(state: WorldState) -> None:
                state.pending_actions = [a for a in state.pending_actions if a.id != action_id]
                self.store.append_control_entry(
                    state, "ACTION_APPROVED",
                    {
                        **pending.model_dump(mode="json"),
                        "status": "approved",
                        "approved_at": approved_at.isoformat(),
                        "approved_by": approved_by,
                    },
                )

            self.store.mutate(apply)
            # Still under the lock, so the refusal check above holds.
            triggered = self.trigger_team_action(
                pending.team_id, pending.action_type, pending.parameters, approved_by
            )

        return {
            **triggered,
            "message": f"Action approved: {triggered['message']}",
            "approved": pending.model_dump(mode="json"),
        }

    def reject_action(self, action_id: str, reason: str = "Rejected by owner") -> dict:
        def apply(state: WorldState) -> Optional[PendingAction]:
            pending = next((a for a in state.pending_actions if a.id == action_id), None)
            if pending is None:
                return None
            state.pending_actions = [a for a in state.pending_actions if a.id != action_id]
            self.store.append_control_entry(
                state, "ACTION_REJECTED",
                {**pending.model_dump(mode="json"), "status": "rejected", "rejection_reason": reason},
            )
            return pending.model_copy()

        pending = self.store.mutate(apply)
        if pending is None:
            return {"success": False, "message": f"Action not found: {action_id}"}

        logger.info("Action %s for team %s rejected: %s", action_id, pending.team_id, reason)
        return {
            "success": True,
            "message": "Action rejected",
            "action": {**pending.model_dump(mode="json"), "status": "rejected", "rejection_reason": reason},
        }

    def get_pending_actions(self, team_id: Optional[str] = None) -> dict:
        snapshot = self.store.snapshot()
        actions = [a for a in snapshot.pending_actions if team_id is None or a.team_id == team_id]
        return {
            "count": len(actions),
            "actions": [a.model_dump(mode="json") for a in actions],
            "total_estimated_cost": round(sum(a.estimated_cost for a in actions), 6),
        }

    # --- Gate ---

    def check_loop_gate(
        self,
        team_id: str,
        estimated_cost: float = 0.0,
        triggered: bool = False,
        action_type: ActionType = ActionType.EXECUTE,
    ) -> GateDecision:
        """Snapshot-based gate, consulted once per Agent Loop iteration."""
        snapshot = self.store.snapshot()
        decision = evaluate_action_gate(
            snapshot, team_id, estimated_cost, snapshot.captured_at, triggered, action_type
        )
        if not decision.allowed:
            logger.info("Gate rejected team %s: %s", team_id, decision.reason)
        return decision

    # --- Status ---

    def get_world_status(self) -> dict:
        snapshot = self.store.snapshot()
        credit = evaluate_credit(snapshot.credit_protection, snapshot.captured_at)
        return {
            "world_status": snapshot.world_status.value,
            "global_paused": snapshot.global_paused,
            "pause_reason": snapshot.pause_reason,
            "paused_at": snapshot.paused_at.isoformat() if snapshot.paused_at else None,
            "emergency_stop": snapshot.emergency_stop.model_dump(mode="json"),
            "team_controls": {
                tid: control.model_dump(mode="json")
                for tid, control in snapshot.team_controls.items()
            },
            "credit_status": credit.model_dump(mode="json"),
            "automation_windows": [w.model_dump(mode="json") for w in snapshot.automation_windows],
            "pending_actions_count": len(snapshot.pending_actions),
            "version": snapshot.version,
        }

    def get_team_status(self, team_id: str) -> Optional[dict]:
        snapshot = self.store.snapshot()
        control = snapshot.team_controls.get(team_id)
        if control is None:
            return None
        return {
            "team_id": team_id,
            **control.model_dump(mode="json"),
            "can_execute": evaluate_action_gate(snapshot, team_id).allowed,
        }

    def get_control_log(self, limit: int = 50) -> List[dict]:
        snapshot = self.store.snapshot()
        return [e.model_dump(mode="json") for e in snapshot.control_log[-limit:]]

    # --- Internals ---

    def _apply_pause(self, state: WorldState, reason: str, paused_by: str) -> None:
        state.global_paused = True
        state.pause_reason = reason
        state.paused_at = self.store.now()
        state.world_status = WorldStatus.PAUSED
        self.store.append_control_entry(
            state, "WORLD_PAUSED", {"reason": reason, "paused_by": paused_by}
        )

    def _trigger_refusal(self, state: WorldState, team_id: str, estimated_cost: float) -> Optional[str]:
        gate = evaluate_owner_gate(state, team_id)
        if gate.code == GateCode.UNKNOWN_TEAM:
            return gate.reason
        if not gate.allowed:
            return f"Cannot trigger action: {gate.reason}"
        credit = evaluate_credit(state.credit_protection, self.store.now(), estimated_cost)
        if not credit.can_proceed:
            return credit.message
        return None
