"""Task planner: turns a free-text request into a validated TaskPlan."""

import json
import logging
import re
from pathlib import Path
from typing import Any, Dict

import jsonschema
import yaml

from agentic_autocoder.errors import PlanFormatError, PlanValidationError
from agentic_autocoder.model_client import ModelClient, ModelConfig, complete_text
from agentic_autocoder.prompts import TASK_PLANNING_PROMPT
from agentic_autocoder.task_state import PENDING, TaskPlan, TaskStep

logger = logging.getLogger(__name__)


PLAN_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["totalSteps", "steps"],
    "properties": {
        "totalSteps": {"type": "integer", "exclusiveMinimum": 0},
        "steps": {
            "type": "array",
            "minItems": 1,
            "items": {
                "type": "object",
                "required": ["description"],
                "properties": {
                    "description": {"type": "string", "pattern": r"\S"},
                    "files": {"type": "array", "items": {"type": "string"}},
                    "dependencies": {"type": "array", "items": {"type": "integer"}},
                },
            },
        },
    },
}

_LEADING_FENCE = re.compile(r"^```[A-Za-z0-9_-]*\s*")
_TRAILING_FENCE = re.compile(r"\s*```$")


def normalize_plan_text(raw: str) -> str:
    """
    Strip code fences and stray backticks around a planner response.

    Raises:
        PlanFormatError: If the result is not a single JSON object.
    """
    text = (raw or "").strip()
    text = _LEADING_FENCE.sub("", text)
    text = _TRAILING_FENCE.sub("", text)
    text = text.strip("`").strip()

    if not text.startswith("{") or not text.endswith("}"):
        raise PlanFormatError(
            "Response is not a valid JSON object. It must start with { and end with }"
        )
    return text


def validate_plan(data: Any) -> None:
    """
    Structural validation of a parsed plan. No partial acceptance.

    Checks: totalSteps is a positive integer; steps is a non-empty list of
    exactly totalSteps entries; each step has a non-empty string
    description; files and dependencies, when present, are lists; no step
    depends on a step that comes after it.

    Raises:
        PlanValidationError: On the first violation found.
    """
    error = jsonschema.exceptions.best_match(
        jsonschema.Draft7Validator(PLAN_SCHEMA).iter_errors(data)
    )
    if error is not None:
        location = "/".join(str(p) for p in error.absolute_path) or "plan"
        raise PlanValidationError(f"Plan structure validation failed at {location}: {error.message}")

    if len(data["steps"]) != data["totalSteps"]:
        raise PlanValidationError(
            f"Plan structure validation failed: totalSteps is {data['totalSteps']} "
            f"but {len(data['steps'])} steps were given"
        )

    # Steps run in order, so a dependency on a later step can never be met
    total = len(data["steps"])
    for index, step in enumerate(data["steps"]):
        forward = sorted(
            dep for dep in step.get("dependencies") or []
            if index < dep < total
        )
        if forward:
            raise PlanValidationError(
                f"Plan structure validation failed at steps/{index}/dependencies: "
                f"step {index + 1} depends on later steps "
                + ", ".join(str(dep + 1) for dep in forward)
            )


def build_plan(data: Dict[str, Any], request: str) -> TaskPlan:
    """Build a fresh TaskPlan (all steps pending, cursor at 0) from validated data."""
    total = len(data["steps"])
    steps = []
    for index, raw_step in enumerate(data["steps"]):
        dependencies = set()
        for dep in raw_step.get("dependencies") or []:
            dep = int(dep)
            if dep == index or dep < 0 or dep >= total:
                logger.warning("Step %d: ignoring invalid dependency index %s", index + 1, dep)
                continue
            dependencies.add(dep)
        steps.append(TaskStep(
            description=raw_step["description"].strip(),
            status=PENDING,
            files=list(raw_step.get("files") or []),
            dependencies=dependencies,
        ))
    return TaskPlan(total_steps=total, steps=steps, original_request=request, current_step=0)


def parse_plan(raw: str, request: str) -> TaskPlan:
    """Normalize, decode, validate and build a plan from raw model text."""
    text = normalize_plan_text(raw)
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise PlanFormatError(f"Failed to parse task plan: {e}")
    validate_plan(data)
    return build_plan(data, request)


class TaskPlanner:
    """Plans one request at a time using an injected model client."""

    def __init__(self, client: ModelClient, model_config: ModelConfig):
        self.client = client
        self.model_config = model_config

    def plan(self, request: str) -> TaskPlan:
        """
        Ask the model for a step plan and validate it.

        Raises:
            ValueError: If the request is empty.
            PlanFormatError / PlanValidationError: If the response is unusable.
            ModelClientError: If the model call fails.
        """
        if not request or not isinstance(request, str) or not request.strip():
            raise ValueError("Invalid request: Request cannot be empty")

        logger.info("Evaluating request with task planner...")
        raw = complete_text(
            self.client,
            TASK_PLANNING_PROMPT,
            "Analyze this request and respond with ONLY a valid JSON object. Remember:\n"
            "1. NO markdown\n2. NO code blocks\n3. NO backticks\n4. NO explanation text\n"
            f"Request: {request}",
            self.model_config,
        )
        logger.debug("Raw planner response: %s", raw)

        plan = parse_plan(raw, request)
        logger.info("Created task plan with %d steps", plan.total_steps)
        for i, step in enumerate(plan.steps):
            logger.info("  %d. %s", i + 1, step.description)
        return plan


# =============================================================================
# PLAN FILES
# =============================================================================

def save_plan_file(plan: TaskPlan, path: Path) -> Path:
    """Write a plan as YAML so it can be reviewed and replayed with `run --plan`."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(plan.to_dict(), sort_keys=False))
    return path


def load_plan_file(path: Path) -> TaskPlan:
    """
    Load a YAML or JSON plan file; statuses are reset to pending.

    Raises:
        PlanValidationError: If the file does not describe a valid plan.
        ValueError: If the file type is not supported.
    """
    path = Path(path)
    content = path.read_text()
    if path.suffix in (".yaml", ".yml"):
        data = yaml.safe_load(content)
    elif path.suffix == ".json":
        data = json.loads(content)
    else:
        raise ValueError(f"Unsupported file type: {path.suffix}. Use .yaml, .yml, or .json")

    validate_plan(data)
    return build_plan(data, data.get("originalRequest", ""))
