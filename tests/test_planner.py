"""Tests for the task planner and plan state (scripted model, no network)."""

import json

import pytest

from agentic_autocoder.errors import PlanFormatError, PlanValidationError, StepDependencyError
from agentic_autocoder.model_client import ModelConfig
from agentic_autocoder.planner import (
    TaskPlanner,
    load_plan_file,
    normalize_plan_text,
    parse_plan,
    save_plan_file,
    validate_plan,
)
from agentic_autocoder.protocol import OperationKind, parse_response
from agentic_autocoder.session import AutocoderSession
from agentic_autocoder.task_state import COMPLETED, FAILED, IN_PROGRESS, PENDING

from conftest import FakeModelClient


# =============================================================================
# FIXTURES - Planner replies
# =============================================================================

REACT_TODO_PLAN = {
    "totalSteps": 5,
    "steps": [
        {"description": "Create the my-app project folder", "files": [], "dependencies": []},
        {"description": "Initialise package.json with React dependencies",
         "files": ["my-app/package.json"], "dependencies": [0]},
        {"description": "Create the TodoList component",
         "files": ["my-app/src/TodoList.jsx"], "dependencies": [1]},
        {"description": "Wire TodoList into App",
         "files": ["my-app/src/App.jsx"], "dependencies": [2]},
        {"description": "Add component tests",
         "files": ["my-app/src/TodoList.test.jsx"], "dependencies": [2, 3]},
    ],
}

TWO_STEP_PLAN = {
    "totalSteps": 2,
    "steps": [
        {"description": "Create folder", "files": [], "dependencies": []},
        {"description": "Create file", "files": ["a.txt"], "dependencies": [0]},
    ],
}


def make_planner(*replies):
    client = FakeModelClient(list(replies))
    return TaskPlanner(client, ModelConfig(model="test/model", phase="plan")), client


# =============================================================================
# TESTS - Text normalization
# =============================================================================

class TestNormalizePlanText:
    """Tests for stripping fences around planner output."""

    def test_json_fence_stripped(self):
        assert normalize_plan_text('```json\n{"a": 1}\n```') == '{"a": 1}'

    def test_bare_backticks_stripped(self):
        assert normalize_plan_text('`{"a": 1}`') == '{"a": 1}'

    def test_prose_rejected(self):
        with pytest.raises(PlanFormatError):
            normalize_plan_text("Sure! Here is your plan: {...}")


# =============================================================================
# TESTS - Validation
# =============================================================================

class TestValidatePlan:
    """Structural validation rejects the whole plan on any violation."""

    def test_valid_plan_passes(self):
        validate_plan(REACT_TODO_PLAN)

    @pytest.mark.parametrize("data", [
        {"totalSteps": 0, "steps": []},
        {"totalSteps": 1, "steps": []},
        {"totalSteps": 1, "steps": [{"description": ""}]},
        {"totalSteps": 1, "steps": [{"description": "   "}]},
        {"totalSteps": 1, "steps": [{"description": "ok", "dependencies": "0"}]},
        {"totalSteps": 1, "steps": [{"description": "ok", "files": "a.txt"}]},
        {"totalSteps": "1", "steps": [{"description": "ok"}]},
        {"steps": [{"description": "ok"}]},
        [{"description": "ok"}],
    ])
    def test_invalid_plans_rejected(self, data):
        with pytest.raises(PlanValidationError):
            validate_plan(data)

    def test_length_mismatch_rejected(self):
        with pytest.raises(PlanValidationError) as exc:
            validate_plan({"totalSteps": 3, "steps": [{"description": "one"}]})
        assert "totalSteps is 3" in str(exc.value)

    def test_forward_dependency_rejected(self):
        """A step cannot wait on a step that runs after it."""
        data = {
            "totalSteps": 2,
            "steps": [
                {"description": "one", "dependencies": [1]},
                {"description": "two"},
            ],
        }
        with pytest.raises(PlanValidationError) as exc:
            validate_plan(data)
        assert "step 1 depends on later steps 2" in str(exc.value)

    def test_dependency_cycle_rejected(self):
        """Every cycle has a forward edge, so cycles never reach execution."""
        data = {
            "totalSteps": 3,
            "steps": [
                {"description": "one", "dependencies": [2]},
                {"description": "two", "dependencies": [0]},
                {"description": "three", "dependencies": [1]},
            ],
        }
        with pytest.raises(PlanValidationError):
            parse_plan(json.dumps(data), "req")

    def test_validation_error_is_a_format_error(self):
        with pytest.raises(PlanFormatError):
            validate_plan({"totalSteps": 0, "steps": []})


# =============================================================================
# TESTS - Planner
# =============================================================================

class TestTaskPlanner:
    """Tests for TaskPlanner.plan()."""

    def test_react_todo_plan(self):
        """A 5-step dependency-aware plan comes back fully pending."""
        planner, client = make_planner(json.dumps(REACT_TODO_PLAN))
        plan = planner.plan("Create a React todo app")

        assert plan.total_steps == 5
        assert plan.current_step == 0
        assert plan.original_request == "Create a React todo app"
        assert all(step.status == PENDING for step in plan.steps)
        assert plan.steps[4].dependencies == {2, 3}
        assert "Create a React todo app" in client.calls[0][1].content

    def test_react_todo_first_step_response(self, config, tmp_path, no_sleep):
        """Executing step 1 of the plan creates exactly the project folder."""
        planner, _ = make_planner(json.dumps(REACT_TODO_PLAN))
        plan = planner.plan("Create a React todo app")
        step_reply = "I'll start with the project folder.\n$$$ FOLDER_CREATE my-app %%%"

        ops = parse_response(step_reply)
        assert [(op.kind, op.path) for op in ops] == [(OperationKind.CREATE_FOLDER, "my-app")]

        session = AutocoderSession(config, client=FakeModelClient([step_reply]), sleep=no_sleep)
        entries = session.execute_step(plan, 0)

        assert [e.description for e in entries] == ["Created folder my-app"]
        assert (tmp_path / "my-app").is_dir()
        assert plan.steps[0].status == COMPLETED
        assert plan.current_step == 1

    def test_fenced_reply_accepted(self):
        planner, _ = make_planner("```json\n" + json.dumps(TWO_STEP_PLAN) + "\n```")
        assert planner.plan("do it").total_steps == 2

    def test_empty_request_rejected_without_model_call(self):
        planner, client = make_planner()
        with pytest.raises(ValueError):
            planner.plan("   ")
        assert client.calls == []

    def test_non_json_reply(self):
        planner, _ = make_planner("{this is not json}")
        with pytest.raises(PlanFormatError):
            planner.plan("do it")

    def test_invalid_dependencies_dropped(self):
        """Out-of-range and self-referencing dependency indices are ignored."""
        data = {
            "totalSteps": 2,
            "steps": [
                {"description": "one", "dependencies": [0, 5]},
                {"description": "two", "dependencies": [0, -1]},
            ],
        }
        plan = parse_plan(json.dumps(data), "req")
        assert plan.steps[0].dependencies == set()
        assert plan.steps[1].dependencies == {0}

    def test_statuses_reset_to_pending(self):
        """Whatever statuses the model returns, a new plan starts pending."""
        data = {"totalSteps": 1, "steps": [{"description": "one", "status": "completed"}]}
        assert parse_plan(json.dumps(data), "req").steps[0].status == PENDING


# =============================================================================
# TESTS - Plan state
# =============================================================================

class TestTaskPlanState:
    """Tests for the dependency invariant and progress events."""

    def test_start_blocked_by_unmet_dependency(self):
        plan = parse_plan(json.dumps(TWO_STEP_PLAN), "req")
        with pytest.raises(StepDependencyError):
            plan.start_step(1)
        assert plan.steps[1].status == PENDING

    def test_complete_advances_cursor(self):
        plan = parse_plan(json.dumps(TWO_STEP_PLAN), "req")
        plan.start_step(0)
        assert plan.steps[0].status == IN_PROGRESS
        plan.complete_step(0)
        assert plan.steps[0].status == COMPLETED
        assert plan.current_step == 1
        assert plan.next_step() is plan.steps[1]

        plan.start_step(1)
        plan.complete_step(1, files=["a.txt", "b.txt"])
        assert plan.is_terminal and plan.is_complete
        assert plan.steps[1].files == ["a.txt", "b.txt"]
        assert plan.next_step() is None

    def test_fail_step(self):
        plan = parse_plan(json.dumps(TWO_STEP_PLAN), "req")
        plan.start_step(0)
        plan.fail_step(0)
        assert plan.steps[0].status == FAILED
        assert plan.current_step == 0

    def test_progress_event_shape(self):
        plan = parse_plan(json.dumps(TWO_STEP_PLAN), "req")
        event = plan.to_progress_event()
        assert event["currentStep"] == 0
        assert event["totalSteps"] == 2
        assert event["steps"][1] == {
            "description": "Create file",
            "status": PENDING,
            "files": ["a.txt"],
            "dependencies": [0],
        }


class TestPlanFiles:
    """Tests for saving and replaying plans."""

    def test_saved_plan_replays_as_fresh_plan(self, tmp_path):
        plan = parse_plan(json.dumps(TWO_STEP_PLAN), "make things")
        plan.start_step(0)
        plan.complete_step(0)

        path = save_plan_file(plan, tmp_path / "plans" / "plan.yaml")
        loaded = load_plan_file(path)

        assert loaded.original_request == "make things"
        assert loaded.current_step == 0
        assert [s.status for s in loaded.steps] == [PENDING, PENDING]
        assert loaded.steps[1].dependencies == {0}

    def test_unsupported_extension(self, tmp_path):
        path = tmp_path / "plan.txt"
        path.write_text("{}")
        with pytest.raises(ValueError):
            load_plan_file(path)
