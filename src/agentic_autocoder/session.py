"""Run a request end to end: plan, then execute each step under the retry controller."""

import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from agentic_autocoder.config import Config
from agentic_autocoder.errors import AutocoderError
from agentic_autocoder.executor import CommandExecutor, ResultEntry
from agentic_autocoder.model_client import (
    ModelClient,
    ModelConfig,
    complete_text,
    get_openrouter_client,
)
from agentic_autocoder.planner import TaskPlanner
from agentic_autocoder.prompts import PROTOCOL_SYSTEM_PROMPT, STEP_USER_PROMPT
from agentic_autocoder.protocol import FileOperation, OperationKind, parse_response
from agentic_autocoder.retry import RetryController
from agentic_autocoder.task_state import COMPLETED, TaskPlan

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[Dict[str, Any]], None]
ResultCallback = Callable[[ResultEntry], None]


@dataclass
class RunResult:
    """Outcome of one request, as written to the run report."""
    run_id: str
    request: str
    status: str  # SUCCESS | FAILED
    plan: Optional[TaskPlan]
    results: List[ResultEntry] = field(default_factory=list)
    error: Optional[str] = None
    start_time: datetime = field(default_factory=datetime.now)
    end_time: Optional[datetime] = None

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "request": self.request,
            "status": self.status,
            "plan": self.plan.to_dict() if self.plan else None,
            "results": [r.to_dict() for r in self.results],
            "error": self.error,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_seconds": self.duration_seconds,
        }


def new_run_id() -> str:
    return f"run-{uuid.uuid4().hex[:8]}"


def step_context(plan: TaskPlan, index: int) -> str:
    return f"Step {index + 1}: {plan.steps[index].description}"


def build_step_prompt(plan: TaskPlan, index: int) -> str:
    step = plan.steps[index]
    previous = [s.description for s in plan.steps[:index] if s.status == COMPLETED]
    return STEP_USER_PROMPT.format(
        plan_json=json.dumps(plan.to_dict(), indent=2),
        step_number=index + 1,
        total_steps=plan.total_steps,
        description=step.description,
        files=", ".join(step.files) or "None specified",
        previous=", ".join(previous) or "None",
    )


def touched_files(operations: List[FileOperation]) -> List[str]:
    return [
        op.path for op in operations
        if op.kind in (OperationKind.CREATE_FILE, OperationKind.MODIFY_FILE)
    ]


class AutocoderSession:
    """
    Owns the collaborators for one workspace.

    A client passed in is borrowed; a client built here is closed by close().
    """

    def __init__(
        self,
        config: Config,
        client: Optional[ModelClient] = None,
        sleep: Callable[[float], None] = time.sleep,
        editor_bridge: Optional[Callable[[str], Any]] = None,
    ):
        self.config = config
        self._owns_client = client is None
        self.client = client or get_openrouter_client(config.openrouter_api_key)
        self.sleep = sleep

        self.executor = CommandExecutor(config.workspace_root)
        self.planner = TaskPlanner(self.client, self._model_config(config.planner_model, "plan"))
        self.step_config = self._model_config(config.step_model, "step")
        self.controller = RetryController(
            self.client,
            self.executor,
            self._model_config(config.diagnosis_model, "diagnose"),
            max_retries=config.max_retries,
            retry_delay=config.retry_delay_s,
            sleep=sleep,
            editor_bridge=editor_bridge,
        )
        self.last_result: Optional[RunResult] = None

    def _model_config(self, model: str, phase: str) -> ModelConfig:
        return ModelConfig(model=model, timeout=self.config.request_timeout_s, phase=phase)

    # --- lifecycle -----------------------------------------------------------

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    # --- building blocks (shared with the execution graph) --------------------

    def plan_request(self, request: str) -> TaskPlan:
        if not request or not request.strip():
            raise ValueError("Invalid request: Request cannot be empty")
        return self.controller.execute_with_retry(
            lambda: self.planner.plan(request), "Task planning"
        )

    def emit_progress(self, plan: TaskPlan, on_progress: Optional[ProgressCallback]) -> None:
        if on_progress:
            on_progress(plan.to_progress_event())

    def execute_step(
        self,
        plan: TaskPlan,
        index: int,
        on_progress: Optional[ProgressCallback] = None,
    ) -> List[ResultEntry]:
        """
        Run one step: model response, parse, execute, record files.

        The step is failed and progress emitted before any error propagates.
        """
        context = step_context(plan, index)
        try:
            plan.start_step(index)
            self.emit_progress(plan, on_progress)
            logger.info("Executing %s", context)

            def attempt():
                response = complete_text(
                    self.client, PROTOCOL_SYSTEM_PROMPT, build_step_prompt(plan, index), self.step_config
                )
                warnings: List[str] = []
                operations = parse_response(response, warnings)
                for warning in warnings:
                    logger.warning("%s: %s", context, warning)
                if not operations:
                    logger.info("%s: response contained no operations", context)
                return operations, self.executor.run(operations)

            operations, results = self.controller.execute_with_retry(attempt, context)
        except Exception:
            plan.fail_step(index)
            self.emit_progress(plan, on_progress)
            raise

        plan.complete_step(index, touched_files(operations))
        self.emit_progress(plan, on_progress)
        return results

    def finish(
        self,
        result: RunResult,
        error: Optional[BaseException] = None,
    ) -> RunResult:
        result.end_time = datetime.now()
        if error is None and result.plan is not None and result.plan.is_complete:
            result.status = "SUCCESS"
        else:
            result.status = "FAILED"
            result.error = str(error) if error is not None else "Plan did not complete"
        self.last_result = result
        return result

    # --- sequential runner ---------------------------------------------------

    def run_request(
        self,
        request: str,
        on_progress: Optional[ProgressCallback] = None,
        on_result: Optional[ResultCallback] = None,
        plan: Optional[TaskPlan] = None,
        run_id: Optional[str] = None,
    ) -> RunResult:
        """
        Plan (unless a plan is given) and execute every step in order.

        On failure the partial result is kept in `last_result` and the
        error is re-raised.
        """
        result = RunResult(run_id=run_id or new_run_id(), request=request, status="RUNNING", plan=plan)
        try:
            if result.plan is None:
                result.plan = self.plan_request(request)
            plan = result.plan
            self.emit_progress(plan, on_progress)

            while not plan.is_terminal:
                index = plan.current_step
                for entry in self.execute_step(plan, index, on_progress):
                    result.results.append(entry)
                    if on_result:
                        on_result(entry)
                if not plan.is_terminal and self.config.step_delay_s:
                    self.sleep(self.config.step_delay_s)
        except (AutocoderError, ValueError, OSError) as e:
            self.finish(result, e)
            raise

        return self.finish(result)
