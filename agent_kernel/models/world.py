"""World State — the single shared model of teams, work and global controls."""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class WorldStatus(str, Enum):
    PAUSED = "paused"
    MANUAL = "manual"          # Every action needs an owner trigger
    SEMI_AUTO = "semi_auto"    # Autonomous only inside automation windows
    AUTONOMOUS = "autonomous"


class AutomationLevel(str, Enum):
    """Per-team permission tier."""
    STOPPED = "stopped"
    MANUAL = "manual"
    SUPERVISED = "supervised"
    AUTONOMOUS = "autonomous"


class ActionType(str, Enum):
    """Kinds of agent work the owner can allow, trigger or approve."""
    THINK = "think"
    EXECUTE = "execute"
    COMMUNICATE = "communicate"
    REPORT = "report"
    SYNC = "sync"
    RESEARCH = "research"
    CREATE = "create"
    REVIEW = "review"


class PendingActionStatus(str, Enum):
    PENDING_APPROVAL = "pending_approval"
    QUEUED = "queued"


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    BLOCKED = "blocked"


class DecisionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    DEFERRED = "deferred"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Team(BaseModel):
    """An independent unit of orchestration. Deactivated, never deleted."""

    team_id: str
    name: str
    badge: str = ""
    focus: str = ""
    agents: List[str] = []
    active: bool = True


class TeamControl(BaseModel):
    """Owner-facing controls for one team."""

    paused: bool = False
    pause_reason: Optional[str] = None
    paused_at: Optional[datetime] = None
    automation_level: AutomationLevel = AutomationLevel.MANUAL
    allowed_actions: List[ActionType] = []  # Semi-auto allow-list; empty = any
    orchestration_status: str = "idle"      # "idle" | "running" | "stopped"
    run_count: int = 0
    last_run: Optional[datetime] = None


class Task(BaseModel):
    id: str
    team_id: str
    title: str
    description: str = ""
    priority: Priority = Priority.MEDIUM
    status: TaskStatus = TaskStatus.PENDING
    progress: float = Field(ge=0, le=100, default=0)
    assigned_agents: List[str] = []
    created_by: str
    created_at: datetime
    updated_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result: Optional[str] = None
    is_assistance_request: bool = False
    requesting_team: Optional[str] = None
    blocking: bool = False


class Decision(BaseModel):
    """A request for owner judgment. Immutable once resolved, except annotations."""

    id: str
    team_id: str
    title: str
    description: str
    priority: Priority = Priority.MEDIUM
    status: DecisionStatus = DecisionStatus.PENDING
    impact: str = ""
    options: List[str] = []
    requested_by: str
    created_at: datetime
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution: Optional[str] = None
    selected_option: Optional[str] = None
    annotations: List[str] = []


class Communication(BaseModel):
    """A cross-team coordination message."""

    id: str
    from_team: str
    from_agent: str = "Team Lead"
    to_team: str
    to_agent: str = "Team"
    message: str
    related_task: Optional[str] = None
    timestamp: datetime


class Activity(BaseModel):
    """Append-only activity feed entry."""

    id: str
    team_id: str
    agent_id: str
    message: str
    tag: str = "Progress"
    type: str = "agent"                     # "agent" | "owner" | "system"
    timestamp: datetime


class CreditProtection(BaseModel):
    daily_limit: float = 50.0
    monthly_limit: float = 500.0
    current_daily_spend: float = 0.0
    current_monthly_spend: float = 0.0
    hard_stop_threshold: float = 1.0        # Fraction of the limit
    auto_stop_on_limit: bool = True
    spend_day: Optional[str] = None         # "YYYY-MM-DD" the daily spend belongs to
    spend_month: Optional[str] = None       # "YYYY-MM"


class EmergencyStop(BaseModel):
    triggered: bool = False
    reason: Optional[str] = None
    triggered_at: Optional[datetime] = None


class AutomationWindow(BaseModel):
    """Cron schedule during which semi-auto teams may act without a trigger."""

    id: str
    schedule: str                           # e.g. "* 9-17 * * 1-5"
    teams: List[str] = []                   # Empty = every team


class PendingAction(BaseModel):
    """An action held for the owner's approval."""

    id: str
    team_id: str
    action_type: ActionType
    parameters: dict = {}
    status: PendingActionStatus = PendingActionStatus.PENDING_APPROVAL
    queued_at: datetime
    queued_by: str = "owner"
    reason: Optional[str] = None            # Why it was not run right away
    estimated_cost: float = 0.0


class ControlLogEntry(BaseModel):
    timestamp: datetime
    action: str
    details: dict = {}


class WorldState(BaseModel):
    """The orchestration core's internal representation of everything it governs."""

    world_status: WorldStatus = WorldStatus.PAUSED
    global_paused: bool = False
    pause_reason: Optional[str] = None
    paused_at: Optional[datetime] = None
    credit_protection: CreditProtection = CreditProtection()
    emergency_stop: EmergencyStop = EmergencyStop()
    automation_windows: List[AutomationWindow] = []
    pending_actions: List[PendingAction] = []  # Oldest first
    teams: Dict[str, Team] = {}
    team_controls: Dict[str, TeamControl] = {}
    tasks: List[Task] = []
    decisions: List[Decision] = []
    communications: List[Communication] = []
    activities: List[Activity] = []         # Oldest first
    control_log: List[ControlLogEntry] = []
    version: int = 0
    captured_at: Optional[datetime] = None  # Set on snapshots
