"""Task plan state shared by the planner, the session and the execution graph."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from agentic_autocoder.errors import StepDependencyError

PENDING = "pending"
IN_PROGRESS = "in-progress"
COMPLETED = "completed"
FAILED = "failed"


@dataclass
class TaskStep:
    description: str
    status: str = PENDING  # pending | in-progress | completed | failed
    files: List[str] = field(default_factory=list)
    dependencies: Set[int] = field(default_factory=set)  # 0-based step indices

    def to_dict(self) -> Dict[str, Any]:
        return {
            "description": self.description,
            "status": self.status,
            "files": list(self.files),
            "dependencies": sorted(self.dependencies),
        }


@dataclass
class TaskPlan:
    """Ordered, dependency-aware breakdown of one user request.

    Not safe for concurrent mutation; one caller drives it at a time.
    """
    total_steps: int
    steps: List[TaskStep]
    original_request: str
    current_step: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.current_step >= self.total_steps

    @property
    def is_complete(self) -> bool:
        return all(step.status == COMPLETED for step in self.steps)

    def unmet_dependencies(self, index: int) -> List[int]:
        return sorted(
            dep for dep in self.steps[index].dependencies
            if self.steps[dep].status != COMPLETED
        )

    def next_step(self) -> Optional[TaskStep]:
        """The step under the cursor, or None when terminal or blocked."""
        if self.is_terminal:
            return None
        if self.unmet_dependencies(self.current_step):
            return None
        return self.steps[self.current_step]

    def _check_index(self, index: int) -> None:
        if index < 0 or index >= len(self.steps):
            raise IndexError(f"Invalid step index: {index}")

    def start_step(self, index: int) -> TaskStep:
        self._check_index(index)
        unmet = self.unmet_dependencies(index)
        if unmet:
            raise StepDependencyError(
                f"Step {index + 1} is waiting for steps: "
                + ", ".join(str(dep + 1) for dep in unmet)
            )
        step = self.steps[index]
        step.status = IN_PROGRESS
        return step

    def complete_step(self, index: int, files: Optional[List[str]] = None) -> None:
        self._check_index(index)
        step = self.steps[index]
        step.status = COMPLETED
        if files:
            step.files = list(files)
        if index == self.current_step:
            self.current_step = min(self.current_step + 1, self.total_steps)

    def fail_step(self, index: int) -> None:
        self._check_index(index)
        self.steps[index].status = FAILED

    def to_progress_event(self) -> Dict[str, Any]:
        return {
            "currentStep": self.current_step,
            "totalSteps": self.total_steps,
            "steps": [step.to_dict() for step in self.steps],
        }

    def to_dict(self) -> Dict[str, Any]:
        data = self.to_progress_event()
        data["originalRequest"] = self.original_request
        return data
