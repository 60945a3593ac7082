"""Agent Kernel data models."""

from agent_kernel.models.controller import (
    BudgetUsage,
    CreditCheck,
    CreditVerdict,
    GateCode,
    GateDecision,
)
from agent_kernel.models.loop import (
    CostRecord,
    LoopConfig,
    LoopResult,
    LoopStatus,
    ModelRequest,
    ModelResponse,
    TranscriptEntry,
    Usage,
)
from agent_kernel.models.resilience import (
    CircuitBreakerConfig,
    CircuitState,
    CircuitStats,
    RetryConfig,
)
from agent_kernel.models.storage import AuditEvent
from agent_kernel.models.tools import (
    Actor,
    ToolCall,
    ToolCategory,
    ToolInvocation,
    ToolName,
    ToolResult,
)
from agent_kernel.models.world import (
    ActionType,
    Activity,
    AutomationLevel,
    AutomationWindow,
    Communication,
    ControlLogEntry,
    CreditProtection,
    Decision,
    DecisionStatus,
    EmergencyStop,
    PendingAction,
    PendingActionStatus,
    Priority,
    Task,
    TaskStatus,
    Team,
    TeamControl,
    WorldState,
    WorldStatus,
)

__all__ = [
    "ActionType",
    "Activity",
    "Actor",
    "AuditEvent",
    "AutomationLevel",
    "AutomationWindow",
    "BudgetUsage",
    "CircuitBreakerConfig",
    "CircuitState",
    "CircuitStats",
    "Communication",
    "ControlLogEntry",
    "CostRecord",
    "CreditCheck",
    "CreditProtection",
    "CreditVerdict",
    "Decision",
    "DecisionStatus",
    "EmergencyStop",
    "GateCode",
    "GateDecision",
    "LoopConfig",
    "LoopResult",
    "LoopStatus",
    "ModelRequest",
    "ModelResponse",
    "PendingAction",
    "PendingActionStatus",
    "Priority",
    "RetryConfig",
    "Task",
    "TaskStatus",
    "Team",
    "TeamControl",
    "ToolCall",
    "ToolCategory",
    "ToolInvocation",
    "ToolName",
    "ToolResult",
    "TranscriptEntry",
    "Usage",
    "WorldState",
    "WorldStatus",
]
