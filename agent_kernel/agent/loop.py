"""
Agent Loop — observe, act, evaluate, repeat.

A team lead model iterates with tools until it signals completion, answers
without calling a tool, runs out of iterations, or cannot proceed.

States:
  RUNNING -> COMPLETED              signal_completion, or a turn with no tool calls
          -> MAX_ITERATIONS_REACHED the iteration ceiling was hit first
          -> FAILED                 gate rejection, cancellation, or the model
                                    call failed after retries

Per iteration:
  1. Cancellation + World Controller gate (never calls the model when blocked)
  2. Context from a fresh World State snapshot
  3. Model call through the Resilient Caller
  4. Spend recorded with the World Controller
  5. Tool invocations dispatched in order; signal_completion stops the batch

The loop never writes to durable storage. Everything it did is returned in
the LoopResult for the caller to persist.
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from agent_kernel.agent.model_client import ModelClient
from agent_kernel.context.builder import ContextBuilder
from agent_kernel.errors import ConfigurationError
from agent_kernel.execution.catalog import tool_schemas
from agent_kernel.execution.dispatcher import ToolDispatcher
from agent_kernel.governance.controller import WorldController
from agent_kernel.models.loop import (
    CostRecord,
    LoopConfig,
    LoopResult,
    LoopStatus,
    ModelRequest,
    ModelResponse,
    TranscriptEntry,
)
from agent_kernel.models.tools import Actor, ToolCall, ToolName, ToolResult
from agent_kernel.models.world import Team
from agent_kernel.resilience.caller import ResilientCaller
from agent_kernel.world_model.store import WorldStateStore

logger = logging.getLogger(__name__)

EventCallback = Callable[[dict], None]

# USD per 1K tokens: (input, output)
PRICING: Dict[str, Dict[str, Tuple[float, float]]] = {
    "anthropic": {
        "claude-3-5-haiku-latest": (0.0008, 0.004),
        "claude-3-5-sonnet-latest": (0.003, 0.015),
        "claude-3-opus-latest": (0.015, 0.075),
    },
}


def compute_cost(
    provider: str,
    model: str,
    input_tokens: int,
    output_tokens: int,
    pricing: Optional[Dict[str, Dict[str, Tuple[float, float]]]] = None,
) -> float:
    """Cost of one call. Unknown models are priced at zero."""
    rates = (pricing or PRICING).get(provider, {}).get(model)
    if rates is None:
        return 0.0
    input_rate, output_rate = rates
    return round(input_tokens / 1000 * input_rate + output_tokens / 1000 * output_rate, 6)


def build_assignment_prompt(assignment: str, team: Team) -> str:
    return (
        "## Assignment\n\n"
        f"{assignment}\n\n"
        "## Your Team\n\n"
        f"You are leading: {', '.join(team.agents)}\n\n"
        "## Instructions\n\n"
        "1. Assess the current situation using observation tools if needed.\n"
        "2. Take concrete action using your tools - create tasks, coordinate with teams, "
        "report findings.\n"
        "3. When finished, call signal_completion with a summary of what you accomplished.\n\n"
        "Begin."
    )


def _assistant_content(response: ModelResponse) -> List[dict]:
    """Content blocks to replay as the assistant turn."""
    if response.raw_content:
        return response.raw_content
    blocks = [{"type": "text", "text": t} for t in response.text if t]
    blocks.extend(
        {"type": "tool_use", "id": inv.id, "name": inv.name, "input": inv.input}
        for inv in response.tool_invocations
    )
    return blocks


class AgentLoop:
    """
    Runs one assignment for one team. Instances hold no per-run state, so
    one loop object may serve several teams concurrently.
    """

    def __init__(
        self,
        store: WorldStateStore,
        controller: WorldController,
        dispatcher: ToolDispatcher,
        context_builder: ContextBuilder,
        caller: ResilientCaller,
        model_client: ModelClient,
        config: Optional[LoopConfig] = None,
        pricing: Optional[Dict[str, Dict[str, Tuple[float, float]]]] = None,
    ):
        self.store = store
        self.controller = controller
        self.dispatcher = dispatcher
        self.context_builder = context_builder
        self.caller = caller
        self.model_client = model_client
        self.config = config or LoopConfig()
        self.pricing = pricing or PRICING

    def run(
        self,
        team_id: str,
        assignment: str,
        cancel_event: Optional[threading.Event] = None,
        on_event: Optional[EventCallback] = None,
        triggered: bool = False,
    ) -> LoopResult:
        """
        Run the loop to a terminal state.

        ConfigurationError propagates; every other failure ends the run in
        FAILED with the reason recorded.
        """
        emit = self._emitter(team_id, on_event)
        result = LoopResult(
            run_id=f"run_{uuid4().hex[:12]}",
            team_id=team_id,
            assignment=assignment,
            status=LoopStatus.RUNNING,
            started_at=self.store.now(),
        )
        emit("loop_started", run_id=result.run_id, task=assignment[:100])

        team = self.store.snapshot().teams.get(team_id)
        if team is None:
            return self._finish(result, LoopStatus.FAILED, emit, reason=f"Unknown team: {team_id}")

        messages: List[dict] = [
            {"role": "user", "content": build_assignment_prompt(assignment, team)}
        ]
        tools = tool_schemas(Actor.AGENT)
        max_iterations = self.config.max_iterations

        for iteration in range(1, max_iterations + 1):
            # 1. Cancellation and gate, checked together at the iteration boundary
            if cancel_event is not None and cancel_event.is_set():
                self._record(result, "gate", iteration, reason="cancelled")
                return self._finish(result, LoopStatus.FAILED, emit, reason="cancelled")

            gate = self.controller.check_loop_gate(
                team_id, self.config.estimated_cost_per_call, triggered
            )
            if not gate.allowed:
                self._record(result, "gate", iteration, code=gate.code.value, reason=gate.reason)
                return self._finish(result, LoopStatus.FAILED, emit, reason=gate.reason)

            result.iterations = iteration
            emit("iteration_started", iteration=iteration, max_iterations=max_iterations)

            # 2. Context
            snapshot = self.store.snapshot()
            request = ModelRequest(
                system_prompt=self.context_builder.build(team_id, snapshot, iteration),
                messages=messages,
                tools=tools,
                model=self.config.model,
                max_tokens=self.config.max_tokens,
            )

            # 3. Model call
            try:
                response = self.caller.call(lambda: self.model_client.complete(request))
            except ConfigurationError as e:
                self._record(result, "error", iteration, error=str(e), fatal=True)
                self._finish(result, LoopStatus.FAILED, emit, reason=str(e))
                raise
            except Exception as e:
                reason = f"Model call failed on iteration {iteration}: {e}"
                self._record(result, "error", iteration, error=str(e) or type(e).__name__)
                return self._finish(result, LoopStatus.FAILED, emit, reason=reason)

            # 4. Usage and spend
            cost = self._account(result, response, iteration)
            self._record(
                result, "model_call", iteration,
                input_tokens=response.usage.input_tokens,
                output_tokens=response.usage.output_tokens,
                cost=cost,
                tool_invocations=[inv.name for inv in response.tool_invocations],
                text="\n".join(response.text)[:500],
            )
            messages.append({"role": "assistant", "content": _assistant_content(response)})
            result.text_responses.extend(t for t in response.text if t)

            if not response.tool_invocations:
                result.completion_summary = (
                    "\n".join(response.text).strip() or "Agent completed without explicit summary."
                )
                return self._finish(result, LoopStatus.COMPLETED, emit)

            # 5. Tools, strictly in order
            completed = self._dispatch_batch(result, response, messages, team_id, iteration, triggered, emit)
            emit(
                "iteration_completed",
                iteration=iteration,
                tool_calls=len(response.tool_invocations),
                completed=completed,
            )
            if completed:
                return self._finish(result, LoopStatus.COMPLETED, emit)

        emit("max_iterations_reached", iterations=max_iterations)
        return self._finish(result, LoopStatus.MAX_ITERATIONS_REACHED, emit)

    # --- Steps ---

    def _account(self, result: LoopResult, response: ModelResponse, iteration: int) -> float:
        usage = response.usage
        cost = compute_cost(
            self.config.provider, self.config.model,
            usage.input_tokens, usage.output_tokens, self.pricing,
        )
        result.usage.input_tokens += usage.input_tokens
        result.usage.output_tokens += usage.output_tokens
        result.usage.api_calls += 1
        result.usage.total_cost = round(result.usage.total_cost + cost, 6)
        result.cost_records.append(
            CostRecord(
                team_id=result.team_id,
                provider=self.config.provider,
                model=self.config.model,
                input_tokens=usage.input_tokens,
                output_tokens=usage.output_tokens,
                cost=cost,
                iteration=iteration,
                recorded_at=self.store.now(),
            )
        )
        if cost > 0:
            self.controller.record_spend(cost, source=f"agent_loop:{result.team_id}")
        return cost

    def _dispatch_batch(
        self,
        result: LoopResult,
        response: ModelResponse,
        messages: List[dict],
        team_id: str,
        iteration: int,
        triggered: bool,
        emit: Callable[..., None],
    ) -> bool:
        """Dispatch every invocation in order. Returns True once completion is signaled."""
        tool_results = []
        completed = False

        for inv in response.tool_invocations:
            if completed:
                skipped = ToolResult(success=False, message="Skipped: completion already signaled")
                result.tool_calls.append(
                    ToolCall(id=inv.id, name=inv.name, input=inv.input, result=skipped,
                             iteration=iteration, skipped=True)
                )
                self._record(result, "tool_call", iteration, tool=inv.name, skipped=True)
                continue

            emit("tool_call", tool=inv.name, input=inv.input)
            tool_result = self.dispatcher.dispatch(
                inv.name, inv.input, team_id, actor=Actor.AGENT, triggered=triggered
            )
            emit("tool_result", tool=inv.name, success=tool_result.success, message=tool_result.message)

            result.tool_calls.append(
                ToolCall(id=inv.id, name=inv.name, input=inv.input, result=tool_result, iteration=iteration)
            )
            self._record(
                result, "tool_call", iteration,
                tool=inv.name, input=inv.input,
                success=tool_result.success, message=tool_result.message,
            )
            tool_results.append({
                "type": "tool_result",
                "tool_use_id": inv.id,
                "content": json.dumps(tool_result.model_dump(mode="json")),
            })

            if inv.name == ToolName.SIGNAL_COMPLETION.value and tool_result.success:
                completed = True
                result.completion_summary = (tool_result.data or {}).get("summary") or "Completed"
                emit("completion_signaled", summary=result.completion_summary)

        messages.append({"role": "user", "content": tool_results})
        return completed

    # --- Bookkeeping ---

    def _finish(
        self,
        result: LoopResult,
        status: LoopStatus,
        emit: Callable[..., None],
        reason: Optional[str] = None,
    ) -> LoopResult:
        result.status = status
        result.reason = reason
        result.ended_at = self.store.now()

        if status == LoopStatus.COMPLETED:
            result.summary = result.completion_summary or "Completed"
        elif status == LoopStatus.MAX_ITERATIONS_REACHED:
            attempted = [c.name for c in result.tool_calls if not c.skipped]
            result.summary = (
                f"Did not finish within {result.iterations} iterations. "
                f"Attempted: {', '.join(attempted) if attempted else 'nothing'}"
            )
        else:
            result.summary = f"Could not proceed: {reason}"

        log = logger.warning if status == LoopStatus.FAILED else logger.info
        log("Loop %s for team %s ended %s after %d iteration(s): %s",
            result.run_id, result.team_id, status.value, result.iterations, result.summary)

        emit(
            "loop_completed",
            status=status.value,
            iterations=result.iterations,
            tool_calls=len(result.tool_calls),
            summary=result.summary,
        )
        return result

    def _record(self, result: LoopResult, kind: str, iteration: int, **detail) -> None:
        result.transcript.append(
            TranscriptEntry(kind=kind, iteration=iteration, timestamp=self.store.now(), detail=detail)
        )

    @staticmethod
    def _emitter(team_id: str, on_event: Optional[EventCallback]) -> Callable[..., None]:
        def emit(event_type: str, **payload) -> None:
            if on_event is None:
                return
            event = {"type": event_type, "team_id": team_id, "timestamp": datetime.utcnow().isoformat()}
            event.update(payload)
            try:
                on_event(event)
            except Exception:
                logger.exception("Event callback failed for %s", event_type)

        return emit
