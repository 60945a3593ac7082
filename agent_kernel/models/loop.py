"""Agent Loop records — what goes to the model, what comes back, and what the loop reports."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from agent_kernel.models.tools import ToolCall, ToolInvocation


class LoopStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"
    FAILED = "failed"


class LoopConfig(BaseModel):
    """Configuration for one Agent Loop invocation."""

    max_iterations: int = Field(ge=1, default=6)
    model: str = "claude-3-5-haiku-latest"
    provider: str = "anthropic"
    max_tokens: int = 1024
    estimated_cost_per_call: float = 0.01   # Checked against the budget before each call


class Usage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    api_calls: int = 0
    total_cost: float = 0.0


class ModelRequest(BaseModel):
    system_prompt: str
    messages: List[dict]
    tools: List[dict]
    model: str
    max_tokens: int = 1024


class ModelResponse(BaseModel):
    """Free-form text, structured tool invocations, or both."""

    text: List[str] = []
    tool_invocations: List[ToolInvocation] = []
    usage: Usage = Usage()
    raw_content: List[dict] = []            # Assistant content blocks, replayed verbatim


class CostRecord(BaseModel):
    team_id: str
    provider: str
    model: str
    input_tokens: int
    output_tokens: int
    cost: float
    iteration: int
    recorded_at: datetime


class TranscriptEntry(BaseModel):
    """One model call or one tool dispatch."""

    kind: str                               # "model_call" | "tool_call" | "gate" | "error"
    iteration: int
    timestamp: datetime
    detail: dict = {}


class LoopResult(BaseModel):
    """Everything a finished loop hands back for external persistence."""

    run_id: str
    team_id: str
    assignment: str
    status: LoopStatus
    iterations: int = 0
    reason: Optional[str] = None
    summary: str = ""
    completion_summary: Optional[str] = None
    tool_calls: List[ToolCall] = []
    text_responses: List[str] = []
    transcript: List[TranscriptEntry] = []
    cost_records: List[CostRecord] = []
    usage: Usage = Usage()
    started_at: datetime
    ended_at: Optional[datetime] = None
