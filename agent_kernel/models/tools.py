"""Tool records — the typed inputs and uniform result contract of the tool catalog."""

from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from agent_kernel.models.world import DecisionStatus, Priority, TaskStatus


class ToolCategory(str, Enum):
    OBSERVATION = "observation"   # Read-only
    ACTION = "action"             # Mutates World State, gated
    CONTROL = "control"           # Loop lifecycle


class ToolName(str, Enum):
    GET_SYSTEM_STATE = "get_system_state"
    GET_TASKS = "get_tasks"
    GET_DECISIONS = "get_decisions"
    GET_TEAM_INFO = "get_team_info"
    GET_RECENT_ACTIVITY = "get_recent_activity"
    CREATE_TASK = "create_task"
    UPDATE_TASK_STATUS = "update_task_status"
    CREATE_DECISION_REQUEST = "create_decision_request"
    SEND_MESSAGE = "send_message"
    REPORT_PROGRESS = "report_progress"
    DELETE_TASK = "delete_task"
    REQUEST_TEAM_ASSISTANCE = "request_team_assistance"
    RESOLVE_DECISION = "resolve_decision"
    SIGNAL_COMPLETION = "signal_completion"


class Actor(str, Enum):
    """Who is invoking a tool."""
    AGENT = "agent"
    OWNER = "owner"


class ToolInvocation(BaseModel):
    """A structured tool call decoded from a model response."""

    id: str
    name: str
    input: dict = {}


class ToolResult(BaseModel):
    success: bool
    message: str
    data: Optional[Any] = None


class ToolCall(BaseModel):
    """One dispatched invocation, as kept in the loop's accumulator."""

    id: Optional[str] = None
    name: str
    input: dict = {}
    result: ToolResult
    iteration: int
    skipped: bool = False


# --- Tool inputs ---

class ToolInput(BaseModel):
    model_config = ConfigDict(extra="ignore")


class SystemStateInput(ToolInput):
    include: List[str] = Field(
        default=["world", "teams", "tasks", "decisions", "activities", "credits"],
        description="Sections to include: world, teams, tasks, decisions, activities, credits.",
    )


class GetTasksInput(ToolInput):
    teamId: Optional[str] = Field(default=None, description="Filter by team ID")
    status: Optional[TaskStatus] = Field(default=None, description="Filter by status")
    limit: int = Field(default=20, ge=1, description="Max results (capped at 50)")


class GetDecisionsInput(ToolInput):
    status: Optional[DecisionStatus] = Field(default=None, description="Filter by status")
    limit: int = Field(default=20, ge=1, description="Max results (capped at 50)")


class TeamInfoInput(ToolInput):
    teamId: str = Field(description="The team ID to look up")


class RecentActivityInput(ToolInput):
    teamId: Optional[str] = Field(default=None, description="Filter to a specific team")
    limit: int = Field(default=10, ge=1, description="Max results (capped at 50)")


class CreateTaskInput(ToolInput):
    title: str = Field(min_length=1, description="Brief, specific task title")
    teamId: str = Field(description="Team to assign this task to")
    description: str = Field(default="", description="What needs to be done")
    priority: Priority = Field(default=Priority.MEDIUM, description="Task priority")
    assignedAgents: List[str] = Field(default=[], description="Agent names to assign")


class UpdateTaskStatusInput(ToolInput):
    taskId: str = Field(description="The task ID to update")
    status: TaskStatus = Field(description="New status")
    progress: Optional[float] = Field(default=None, description="Progress percentage 0-100")
    result: Optional[str] = Field(default=None, description="Result summary for completed tasks")


class CreateDecisionInput(ToolInput):
    title: str = Field(min_length=1, description="Clear, concise decision title")
    description: str = Field(description="Context and rationale for the decision")
    priority: Priority = Field(default=Priority.MEDIUM, description="How urgent it is")
    impact: str = Field(default="", description="Expected business impact")
    options: List[str] = Field(default=[], description="Options for the owner to choose from")


class SendMessageInput(ToolInput):
    toTeam: str = Field(description="Target team ID")
    message: str = Field(min_length=1, description="The message to send")
    toAgent: Optional[str] = Field(default=None, description="Specific agent name")
    relatedTask: Optional[str] = Field(default=None, description="Related task ID")


class ReportProgressInput(ToolInput):
    message: str = Field(min_length=1, description="Progress report, findings or analysis")
    agent: str = Field(default="Team Lead", description="Which agent is reporting")
    tag: str = Field(default="Progress", description="Activity category, e.g. Analysis, Milestone")


class DeleteTaskInput(ToolInput):
    taskId: str = Field(description="The task ID to delete")
    reason: str = Field(default="", description="Reason for deletion")


class TeamAssistanceInput(ToolInput):
    toTeam: str = Field(description="Target team ID")
    task: str = Field(min_length=1, description="What you need the team to do")
    context: str = Field(default="", description="Why the help is needed")
    priority: Priority = Field(default=Priority.HIGH, description="Priority of the request")
    blocking: bool = Field(default=False, description="Whether this blocks your current work")


class ResolveDecisionInput(ToolInput):
    decisionId: str = Field(description="The decision ID to resolve")
    status: DecisionStatus = Field(description="Resolution status")
    resolution: str = Field(default="", description="Explanation of the resolution")
    selectedOption: Optional[str] = Field(default=None, description="Which option was selected")


class SignalCompletionInput(ToolInput):
    summary: str = Field(description="Summary of what was accomplished")
    tasksCreated: int = 0
    decisionsRequested: int = 0
    messagesSent: int = 0
