"""World Controller verdicts — gate decisions and credit checks."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel


class CreditVerdict(str, Enum):
    OK = "ok"
    CAUTION = "caution"        # >= 50% of a limit
    WARNING = "warning"        # >= 75%
    CRITICAL = "critical"      # >= 90%
    HARD_STOP = "hard_stop"    # >= hard_stop_threshold, action must be rejected


class BudgetUsage(BaseModel):
    spent: float
    projected: float
    limit: float
    remaining: float
    usage_percent: int


class CreditCheck(BaseModel):
    """Outcome of comparing projected spend against the configured limits."""

    verdict: CreditVerdict
    can_proceed: bool
    message: str
    estimated_cost: float = 0.0
    daily: BudgetUsage
    monthly: BudgetUsage


class GateCode(str, Enum):
    ALLOWED = "allowed"
    EMERGENCY_STOP = "emergency_stop"
    WORLD_PAUSED = "world_paused"
    TEAM_PAUSED = "team_paused"
    TEAM_STOPPED = "team_stopped"
    UNKNOWN_TEAM = "unknown_team"
    CREDIT_LIMIT = "credit_limit"
    REQUIRES_TRIGGER = "requires_trigger"
    REQUIRES_APPROVAL = "requires_approval"
    OUTSIDE_WINDOW = "outside_automation_window"


class GateDecision(BaseModel):
    """The World Controller's ruling on whether a team may act right now."""

    allowed: bool
    reason: str
    code: GateCode
    requires_approval: bool = False        # The owner could approve it instead
    credit: Optional[CreditCheck] = None
