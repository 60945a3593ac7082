"""Tests for the Tool Catalog and Tool Dispatcher."""

from datetime import datetime, timedelta

import pytest

from agent_kernel.execution.catalog import TOOL_SPECS, input_schema, tool_schemas
from agent_kernel.execution.dispatcher import ToolDispatcher
from agent_kernel.governance.controller import WorldController
from agent_kernel.models.tools import Actor, ToolCategory, ToolName
from agent_kernel.models.world import ActionType, AutomationLevel, TaskStatus, WorldStatus
from agent_kernel.world_model.store import WorldStateStore


class FakeClock:
    def __init__(self, start: datetime = datetime(2026, 3, 2, 10, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def _make_world(
    status: WorldStatus = WorldStatus.AUTONOMOUS,
    level: AutomationLevel = AutomationLevel.AUTONOMOUS,
    clock: FakeClock = None,
):
    store = WorldStateStore(clock=clock or FakeClock())
    controller = WorldController(store)
    controller.set_world_status(status)
    for team_id in store.team_ids():
        controller.set_team_automation(team_id, level)
    return store, controller, ToolDispatcher(store)


def _state_without_meta(store: WorldStateStore) -> dict:
    return store.snapshot().model_dump(exclude={"captured_at", "version"})


class TestToolCatalog:
    def test_every_tool_is_cataloged(self):
        assert set(TOOL_SPECS) == set(ToolName)

    def test_categories(self):
        assert TOOL_SPECS[ToolName.GET_TASKS].category == ToolCategory.OBSERVATION
        assert TOOL_SPECS[ToolName.CREATE_TASK].category == ToolCategory.ACTION
        assert TOOL_SPECS[ToolName.SIGNAL_COMPLETION].category == ToolCategory.CONTROL

    def test_agent_schemas_hide_owner_tools(self):
        agent_names = {s["name"] for s in tool_schemas(Actor.AGENT)}
        owner_names = {s["name"] for s in tool_schemas(Actor.OWNER)}

        assert "resolve_decision" not in agent_names
        assert "resolve_decision" in owner_names
        assert len(agent_names) == len(ToolName) - 1

    def test_only_action_tools_carry_an_action_type(self):
        for spec in TOOL_SPECS.values():
            assert (spec.action_type is not None) == (spec.category == ToolCategory.ACTION)
        assert TOOL_SPECS[ToolName.CREATE_TASK].action_type == ActionType.CREATE
        assert TOOL_SPECS[ToolName.REPORT_PROGRESS].action_type == ActionType.REPORT

    def test_schema_is_self_contained(self):
        schema = input_schema(TOOL_SPECS[ToolName.CREATE_TASK])

        assert schema["type"] == "object"
        assert "$defs" not in schema
        assert set(schema["required"]) == {"title", "teamId"}
        assert schema["properties"]["priority"]["enum"] == ["low", "medium", "high", "critical"]
        # A property named "title" survives title stripping
        assert "title" in schema["properties"]


class TestDispatchBasics:
    def setup_method(self):
        self.store, self.controller, self.dispatcher = _make_world()

    def test_unknown_tool(self):
        result = self.dispatcher.dispatch("launch_rockets", {}, "developer")
        assert not result.success
        assert result.message == "unknown tool: launch_rockets"

    def test_invalid_input_reports_field(self):
        result = self.dispatcher.dispatch("create_task", {"teamId": "developer"}, "developer")
        assert not result.success
        assert result.message.startswith("Invalid input for create_task")
        assert "title" in result.message

    def test_agents_cannot_use_owner_tools(self):
        result = self.dispatcher.dispatch(
            "resolve_decision", {"decisionId": "d", "status": "approved"}, "developer"
        )
        assert not result.success
        assert "reserved for the owner" in result.message

    def test_agent_call_requires_team(self):
        assert not self.dispatcher.dispatch("get_tasks", {}, None).success

    def test_handler_error_is_returned_not_raised(self, monkeypatch):
        def explode(*args, **kwargs):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(self.store, "snapshot", explode)
        result = self.dispatcher.dispatch("get_tasks", {}, "developer")
        assert not result.success
        assert result.message == "Tool error: disk on fire"


class TestObservationTools:
    def setup_method(self):
        self.store, self.controller, self.dispatcher = _make_world()
        for i in range(3):
            self.dispatcher.dispatch("create_task", {"title": f"Task {i}", "teamId": "developer"}, "developer")
        self.dispatcher.dispatch("create_task", {"title": "Mockups", "teamId": "design"}, "developer")

    def test_get_tasks_filters_newest_first(self):
        result = self.dispatcher.dispatch("get_tasks", {"teamId": "developer", "limit": 2}, "developer")
        assert result.success
        assert [t["title"] for t in result.data] == ["Task 2", "Task 1"]

    def test_limit_capped(self):
        for i in range(60):
            self.dispatcher.dispatch("report_progress", {"message": f"note {i}"}, "developer")
        result = self.dispatcher.dispatch("get_recent_activity", {"limit": 500}, "developer")
        assert len(result.data) == 50

    def test_system_state_sections(self):
        result = self.dispatcher.dispatch("get_system_state", {"include": ["tasks", "credits"]}, "developer")
        assert result.data["tasks"]["total"] == 4
        assert result.data["tasks"]["pending"] == 4
        assert result.data["credit_status"]["verdict"] == "ok"
        assert "teams" not in result.data

    def test_team_info(self):
        result = self.dispatcher.dispatch("get_team_info", {"teamId": "design"}, "developer")
        assert result.data["pending_tasks"] == 1
        assert not self.dispatcher.dispatch("get_team_info", {"teamId": "nobody"}, "developer").success

    def test_observation_allowed_when_paused(self):
        self.controller.pause_world("maintenance")
        assert self.dispatcher.dispatch("get_tasks", {}, "developer").success

    def test_uses_provided_snapshot(self):
        snap = self.store.snapshot()
        self.dispatcher.dispatch("create_task", {"title": "Later", "teamId": "developer"}, "developer")
        result = self.dispatcher.dispatch("get_tasks", {}, "developer", snapshot=snap)
        assert len(result.data) == 4


class TestActionTools:
    def setup_method(self):
        self.clock = FakeClock()
        self.store, self.controller, self.dispatcher = _make_world(clock=self.clock)

    def _create_task(self, team_id: str = "developer", creator: str = "developer") -> str:
        result = self.dispatcher.dispatch(
            "create_task", {"title": "Write API docs", "teamId": team_id, "priority": "high"}, creator
        )
        assert result.success
        return result.data["id"]

    def test_create_task(self):
        task = self.store.get_task(self._create_task())
        assert task.status == TaskStatus.PENDING
        assert task.created_by == "developer"
        assert self.store.snapshot().activities[-1].tag == "Task"

    def test_create_task_invalid_team(self):
        result = self.dispatcher.dispatch("create_task", {"title": "X", "teamId": "nobody"}, "developer")
        assert not result.success
        assert "Valid teams" in result.message

    def test_update_task_lifecycle(self):
        task_id = self._create_task()

        self.clock.advance(minutes=5)
        self.dispatcher.dispatch("update_task_status", {"taskId": task_id, "status": "in_progress"}, "developer")
        started = self.store.get_task(task_id)
        assert started.started_at == self.clock.now

        self.clock.advance(minutes=5)
        self.dispatcher.dispatch(
            "update_task_status", {"taskId": task_id, "status": "completed", "result": "Done"}, "developer"
        )
        done = self.store.get_task(task_id)
        assert done.progress == 100
        assert done.completed_at == self.clock.now
        assert done.started_at == started.started_at

    def test_update_task_status_is_idempotent(self):
        task_id = self._create_task()
        tool_input = {"taskId": task_id, "status": "in_progress", "progress": 40}

        first = self.dispatcher.dispatch("update_task_status", tool_input, "developer")
        after_first = self.store.get_task(task_id)
        activities = len(self.store.snapshot().activities)

        self.clock.advance(minutes=10)
        second = self.dispatcher.dispatch("update_task_status", tool_input, "developer")
        after_second = self.store.get_task(task_id)

        assert first.success and second.success
        assert after_second.status == after_first.status
        assert after_second.updated_at == after_first.updated_at
        assert after_second.progress == 40
        assert len(self.store.snapshot().activities) == activities

    def test_completed_twice_is_noop(self):
        task_id = self._create_task()
        tool_input = {"taskId": task_id, "status": "completed"}
        self.dispatcher.dispatch("update_task_status", tool_input, "developer")
        assert self.dispatcher.dispatch("update_task_status", tool_input, "developer").success

    def test_no_backwards_transitions(self):
        task_id = self._create_task()
        self.dispatcher.dispatch("update_task_status", {"taskId": task_id, "status": "in_progress"}, "developer")

        result = self.dispatcher.dispatch("update_task_status", {"taskId": task_id, "status": "pending"}, "developer")
        assert not result.success

        self.dispatcher.dispatch("update_task_status", {"taskId": task_id, "status": "blocked"}, "developer")
        assert self.store.get_task(task_id).status == TaskStatus.BLOCKED

        self.dispatcher.dispatch("update_task_status", {"taskId": task_id, "status": "cancelled"}, "developer")
        reopened = self.dispatcher.dispatch(
            "update_task_status", {"taskId": task_id, "status": "in_progress"}, "developer"
        )
        assert not reopened.success

    def test_progress_clamped(self):
        task_id = self._create_task()
        self.dispatcher.dispatch(
            "update_task_status", {"taskId": task_id, "status": "in_progress", "progress": 250}, "developer"
        )
        assert self.store.get_task(task_id).progress == 100

    def test_delete_task_rules(self):
        task_id = self._create_task()
        assert not self.dispatcher.dispatch("delete_task", {"taskId": task_id}, "design").success

        self.dispatcher.dispatch("update_task_status", {"taskId": task_id, "status": "in_progress"}, "developer")
        in_progress = self.dispatcher.dispatch("delete_task", {"taskId": task_id}, "developer")
        assert "in progress" in in_progress.message

        self.dispatcher.dispatch("update_task_status", {"taskId": task_id, "status": "completed"}, "developer")
        assert self.dispatcher.dispatch("delete_task", {"taskId": task_id, "reason": "dup"}, "developer").success
        assert self.store.get_task(task_id) is None

    def test_request_team_assistance(self):
        result = self.dispatcher.dispatch(
            "request_team_assistance",
            {"toTeam": "legal", "task": "Review the privacy policy", "blocking": True},
            "developer",
        )
        assert result.success
        task = self.store.get_task(result.data["id"])
        assert task.team_id == "legal"
        assert task.title.startswith("[Assistance Request]")
        assert task.is_assistance_request and task.blocking
        comm = self.store.snapshot().communications[-1]
        assert comm.related_task == task.id
        assert "(BLOCKING)" in comm.message

    def test_cannot_request_assistance_from_self(self):
        result = self.dispatcher.dispatch(
            "request_team_assistance", {"toTeam": "developer", "task": "Help"}, "developer"
        )
        assert not result.success

    def test_send_message_and_progress(self):
        assert self.dispatcher.dispatch("send_message", {"toTeam": "design", "message": "hi"}, "developer").success
        assert not self.dispatcher.dispatch("send_message", {"toTeam": "mars", "message": "hi"}, "developer").success

        result = self.dispatcher.dispatch(
            "report_progress", {"message": "Benchmarks done", "agent": "QA Engineer", "tag": "Analysis"}, "developer"
        )
        assert result.data["agent_id"] == "QA Engineer"

    def test_decision_flow(self):
        created = self.dispatcher.dispatch(
            "create_decision_request",
            {"title": "Pick a vendor", "description": "Two quotes", "options": ["A", "B"]},
            "developer",
        )
        decision_id = created.data["id"]

        bad_option = self.dispatcher.dispatch(
            "resolve_decision", {"decisionId": decision_id, "status": "approved", "selectedOption": "C"},
            None, actor=Actor.OWNER,
        )
        assert not bad_option.success

        resolved = self.dispatcher.dispatch(
            "resolve_decision", {"decisionId": decision_id, "status": "approved", "selectedOption": "A"},
            None, actor=Actor.OWNER,
        )
        assert resolved.success
        assert self.store.get_decision(decision_id).resolved_by == "owner"

        again = self.dispatcher.dispatch(
            "resolve_decision", {"decisionId": decision_id, "status": "rejected"}, None, actor=Actor.OWNER
        )
        assert not again.success

        note = self.dispatcher.annotate_decision(decision_id, "Signed on Friday")
        assert note.success
        assert self.store.get_decision(decision_id).annotations == ["Signed on Friday"]

    def test_signal_completion_does_not_mutate(self):
        before = _state_without_meta(self.store)
        result = self.dispatcher.dispatch("signal_completion", {"summary": "All done"}, "developer")

        assert result.success
        assert result.data["completed"] is True
        assert result.data["summary"] == "All done"
        assert _state_without_meta(self.store) == before


class TestGatedActions:
    def test_pause_world_blocks_create_task_and_leaves_state_unchanged(self):
        store, controller, dispatcher = _make_world()
        controller.pause_world("maintenance")
        before = _state_without_meta(store)
        version = store.snapshot().version

        for team_id in store.team_ids():
            result = dispatcher.dispatch("create_task", {"title": "X", "teamId": team_id}, team_id)
            assert result.success is False
            assert result.data == {"code": "world_paused"}

        assert _state_without_meta(store) == before
        assert store.snapshot().version == version

    def test_manual_world_needs_trigger(self):
        store, controller, dispatcher = _make_world(status=WorldStatus.MANUAL)
        tool_input = {"title": "X", "teamId": "developer"}

        assert not dispatcher.dispatch("create_task", tool_input, "developer").success
        assert dispatcher.dispatch("create_task", tool_input, "developer", triggered=True).success

    def test_semi_auto_allow_list_per_tool(self):
        store, controller, dispatcher = _make_world(status=WorldStatus.SEMI_AUTO)
        controller.add_automation_window("* 9-17 * * 1-5", ["developer"])
        controller.set_team_automation("developer", AutomationLevel.AUTONOMOUS, [ActionType.REPORT])
        version = store.snapshot().version

        denied = dispatcher.dispatch("create_task", {"title": "X", "teamId": "developer"}, "developer")
        assert not denied.success
        assert denied.data == {"code": "requires_approval"}
        assert store.snapshot().version == version

        assert dispatcher.dispatch("report_progress", {"message": "hi"}, "developer").success
        assert dispatcher.dispatch(
            "create_task", {"title": "X", "teamId": "developer"}, "developer", triggered=True
        ).success

    def test_owner_bypasses_automation_level_but_not_hard_stops(self):
        store, controller, dispatcher = _make_world(status=WorldStatus.MANUAL, level=AutomationLevel.MANUAL)
        tool_input = {"title": "Owner task", "teamId": "developer"}

        assert dispatcher.dispatch("create_task", tool_input, None, actor=Actor.OWNER).success

        controller.pause_world()
        result = dispatcher.dispatch("create_task", tool_input, None, actor=Actor.OWNER)
        assert not result.success
        assert result.data["code"] == "world_paused"

    def test_credit_hard_stop_blocks_agent_actions(self):
        store, controller, dispatcher = _make_world()
        store.mutate(lambda s: setattr(s.credit_protection, "auto_stop_on_limit", False))
        controller.record_spend(100)

        result = dispatcher.dispatch("report_progress", {"message": "hi"}, "developer")
        assert result.data["code"] == "credit_limit"

    @pytest.mark.parametrize("status", list(WorldStatus))
    @pytest.mark.parametrize("level", list(AutomationLevel))
    def test_emergency_stop_blocks_every_action(self, status, level):
        store, controller, dispatcher = _make_world(status=status, level=level)
        seeded = dispatcher.dispatch(
            "create_task", {"title": "seed", "teamId": "developer"}, None, actor=Actor.OWNER
        )
        controller.emergency_stop("incident")
        before = _state_without_meta(store)

        calls = [
            ("create_task", {"title": "X", "teamId": "developer"}),
            ("send_message", {"toTeam": "design", "message": "hi"}),
            ("report_progress", {"message": "hi"}),
            ("create_decision_request", {"title": "T", "description": "D"}),
            ("request_team_assistance", {"toTeam": "legal", "task": "help"}),
        ]
        if seeded.success:
            calls.append(("update_task_status", {"taskId": seeded.data["id"], "status": "in_progress"}))

        for name, tool_input in calls:
            for triggered in (False, True):
                result = dispatcher.dispatch(name, tool_input, "developer", triggered=triggered)
                assert not result.success
                assert result.data == {"code": "emergency_stop"}
            owner = dispatcher.dispatch(name, tool_input, None, actor=Actor.OWNER)
            assert not owner.success

        assert _state_without_meta(store) == before


class TestBroadcast:
    def setup_method(self):
        self.store, self.controller, self.dispatcher = _make_world(WorldStatus.MANUAL)

    def test_sends_to_every_target_once(self):
        result = self.dispatcher.broadcast("All hands at 3pm", ["design", "legal", "design"])

        assert result.success
        assert result.data["teams"] == ["design", "legal"]
        comms = self.store.snapshot().communications
        assert [(c.from_team, c.to_team) for c in comms] == [("owner", "design"), ("owner", "legal")]

    def test_unknown_target_writes_nothing(self):
        before = _state_without_meta(self.store)
        version = self.store.snapshot().version

        result = self.dispatcher.broadcast("hi", ["design", "mars"])

        assert not result.success
        assert "mars" in result.message
        assert _state_without_meta(self.store) == before
        assert self.store.snapshot().version == version

    def test_empty_message_or_targets_rejected(self):
        assert self.dispatcher.broadcast("", ["design"]).message.startswith("Invalid input")
        assert self.dispatcher.broadcast("hi", []).message == "No target teams"
        assert self.store.snapshot().communications == []

    def test_hard_stop_writes_nothing(self):
        self.controller.emergency_stop("drill")
        version = self.store.snapshot().version

        result = self.dispatcher.broadcast("hi", ["design"])

        assert not result.success
        assert result.data == {"code": "emergency_stop"}
        assert self.store.snapshot().version == version
