"""
Tool catalog — the closed set of tools exposed to agents.

Each ToolName has exactly one ToolSpec carrying its category, description
and typed input model. The Anthropic tool schema is generated from the
input models, so the schema and validation can never disagree.
"""

import copy
from typing import Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict

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
    ToolInput,
    ToolName,
    UpdateTaskStatusInput,
)
from agent_kernel.models.world import ActionType


class ToolSpec(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    name: ToolName
    category: ToolCategory
    description: str
    input_model: Type[ToolInput]
    owner_only: bool = False   # Hidden from the model, refused for agents
    action_type: Optional[ActionType] = None   # Action tools only; checked against allow-lists


_SPECS = [
    # Observation
    ToolSpec(
        name=ToolName.GET_SYSTEM_STATE,
        category=ToolCategory.OBSERVATION,
        description=(
            "Get a snapshot of the current system state including world status, all team "
            "statuses, task counts, recent activity, and credit usage. Call this first to "
            "understand context before taking action."
        ),
        input_model=SystemStateInput,
    ),
    ToolSpec(
        name=ToolName.GET_TASKS,
        category=ToolCategory.OBSERVATION,
        description=(
            "List tasks, optionally filtered by team or status. Returns task details "
            "including assignees and progress."
        ),
        input_model=GetTasksInput,
    ),
    ToolSpec(
        name=ToolName.GET_DECISIONS,
        category=ToolCategory.OBSERVATION,
        description=(
            "List decisions, optionally filtered by status. Use to check for pending "
            "approvals or resolved decisions."
        ),
        input_model=GetDecisionsInput,
    ),
    ToolSpec(
        name=ToolName.GET_TEAM_INFO,
        category=ToolCategory.OBSERVATION,
        description="Get details about a team: its agents, task counts and recent activity.",
        input_model=TeamInfoInput,
    ),
    ToolSpec(
        name=ToolName.GET_RECENT_ACTIVITY,
        category=ToolCategory.OBSERVATION,
        description="Get the most recent activity feed, across all teams or for one team.",
        input_model=RecentActivityInput,
    ),
    # Action
    ToolSpec(
        name=ToolName.CREATE_TASK,
        category=ToolCategory.ACTION,
        action_type=ActionType.CREATE,
        description=(
            "Create a new task and assign it to a team. Tasks represent concrete work to "
            "be done. Be specific about deliverables."
        ),
        input_model=CreateTaskInput,
    ),
    ToolSpec(
        name=ToolName.UPDATE_TASK_STATUS,
        category=ToolCategory.ACTION,
        action_type=ActionType.EXECUTE,
        description=(
            "Update the status or progress of an existing task. Use to mark tasks as "
            "started, completed, blocked, etc."
        ),
        input_model=UpdateTaskStatusInput,
    ),
    ToolSpec(
        name=ToolName.CREATE_DECISION_REQUEST,
        category=ToolCategory.ACTION,
        action_type=ActionType.REVIEW,
        description=(
            "Request a decision from the owner. Use for high-impact choices, budget "
            "approvals, strategic direction, or anything requiring human judgment."
        ),
        input_model=CreateDecisionInput,
    ),
    ToolSpec(
        name=ToolName.SEND_MESSAGE,
        category=ToolCategory.ACTION,
        action_type=ActionType.COMMUNICATE,
        description=(
            "Send a message to another team or specific agent for coordination. Use for "
            "cross-team collaboration, handoffs, and status updates."
        ),
        input_model=SendMessageInput,
    ),
    ToolSpec(
        name=ToolName.REPORT_PROGRESS,
        category=ToolCategory.ACTION,
        action_type=ActionType.REPORT,
        description=(
            "Report findings, analysis results, or progress updates. Creates a visible "
            "entry in the activity feed that the owner and other teams can see."
        ),
        input_model=ReportProgressInput,
    ),
    ToolSpec(
        name=ToolName.DELETE_TASK,
        category=ToolCategory.ACTION,
        action_type=ActionType.EXECUTE,
        description=(
            "Delete a task that is no longer needed. Use for cleanup of obsolete or "
            "duplicate tasks. Cannot delete tasks that are in_progress."
        ),
        input_model=DeleteTaskInput,
    ),
    ToolSpec(
        name=ToolName.REQUEST_TEAM_ASSISTANCE,
        category=ToolCategory.ACTION,
        action_type=ActionType.COMMUNICATE,
        description=(
            "Request another team to perform a specific task. This creates a task for the "
            "target team and notifies it. Use this when you need specialized help from "
            "another team to complete your work."
        ),
        input_model=TeamAssistanceInput,
    ),
    ToolSpec(
        name=ToolName.RESOLVE_DECISION,
        category=ToolCategory.ACTION,
        action_type=ActionType.REVIEW,
        description="Resolve a pending decision.",
        input_model=ResolveDecisionInput,
        owner_only=True,
    ),
    # Control
    ToolSpec(
        name=ToolName.SIGNAL_COMPLETION,
        category=ToolCategory.CONTROL,
        description=(
            "Signal that the current assignment is complete. This stops the agent loop. "
            "Always call this when you have finished your work. Include a summary of what "
            "was accomplished."
        ),
        input_model=SignalCompletionInput,
    ),
]

TOOL_SPECS: Dict[ToolName, ToolSpec] = {spec.name: spec for spec in _SPECS}

_missing = set(ToolName) - set(TOOL_SPECS)
if _missing or len(TOOL_SPECS) != len(_SPECS):
    raise RuntimeError(f"Tool catalog is not exhaustive: missing {sorted(m.value for m in _missing)}")

for _spec in _SPECS:
    if (_spec.category == ToolCategory.ACTION) != (_spec.action_type is not None):
        raise RuntimeError(f"{_spec.name.value}: action tools, and only they, need an action type")


def _inline_refs(schema: dict) -> dict:
    """Resolve local $ref pointers so the schema is self-contained."""
    defs = schema.pop("$defs", {})

    def resolve(node):
        if isinstance(node, dict):
            ref = node.get("$ref")
            if ref and ref.startswith("#/$defs/"):
                target = copy.deepcopy(defs[ref.split("/")[-1]])
                extra = {k: v for k, v in node.items() if k != "$ref"}
                target.update(extra)
                return resolve(target)
            # Drop pydantic's generated titles but keep properties named "title".
            return {
                k: resolve(v) for k, v in node.items()
                if not (k == "title" and isinstance(v, str))
            }
        if isinstance(node, list):
            return [resolve(item) for item in node]
        return node

    return resolve(schema)


def input_schema(spec: ToolSpec) -> dict:
    schema = _inline_refs(spec.input_model.model_json_schema())
    schema.setdefault("type", "object")
    schema.setdefault("properties", {})
    return schema


def tool_schemas(actor: Actor = Actor.AGENT) -> List[dict]:
    """Anthropic-format tool definitions visible to the given actor."""
    return [
        {
            "name": spec.name.value,
            "description": spec.description,
            "input_schema": input_schema(spec),
        }
        for spec in _SPECS
        if actor == Actor.OWNER or not spec.owner_only
    ]
