"""Retry / self-healing controller.

Wraps any operation in a bounded retry loop. Each failure is first checked
for a missing dependency (installed without asking the model); otherwise the
error is sent for analysis and the suggested fix is applied before the
operation is retried.
"""

import functools
import json
import logging
import re
import shlex
import subprocess
import sys
import time
import traceback
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, TypeVar

from agentic_autocoder.constants import MAX_RETRIES, RETRY_DELAY_S
from agentic_autocoder.errors import (
    AutocoderError,
    DependencyError,
    EscalatedStopError,
    ExhaustionError,
    SolutionError,
)
from agentic_autocoder.executor import CommandExecutor
from agentic_autocoder.model_client import (
    ModelClient,
    ModelClientError,
    ModelConfig,
    complete_text,
)
from agentic_autocoder.prompts import ERROR_ANALYSIS_PROMPT, ERROR_ANALYSIS_USER_PROMPT
from agentic_autocoder.protocol import CommandSpec, parse_response

logger = logging.getLogger(__name__)

T = TypeVar("T")

NODE = "node"
PYTHON = "python"


@dataclass
class RetryContext:
    """Per-invocation retry state; never shared between calls."""
    attempt: int = 0
    last_error: Optional[BaseException] = None
    last_solution: Optional[str] = None
    resolved_dependencies: Set[str] = field(default_factory=set)


# =============================================================================
# DEPENDENCY DETECTION
# =============================================================================

DEPENDENCY_PATTERNS: List[Tuple[str, "re.Pattern[str]", str]] = [
    ("module_not_found", re.compile(r"Cannot find module '([^']+)'"), NODE),
    ("require_error", re.compile(r"Error: require\(\) of '([^']+)'"), NODE),
    ("import_error", re.compile(r"ImportError: No module named '([^']+)'"), PYTHON),
    ("npm_missing", re.compile(r"npm ERR! missing: ([^@\s]+)"), NODE),
    ("python_import", re.compile(r"ModuleNotFoundError: No module named '([^']+)'"), PYTHON),
]

_NODE_MODULES_PATH = re.compile(r"node_modules[/\\]([^/\\\s'\"]+)")
_VALID_PACKAGE_NAME = re.compile(r"^(@[A-Za-z0-9._-]+/)?[A-Za-z0-9_][A-Za-z0-9._-]*$")


def _error_text(error: Any) -> str:
    if error is None:
        return ""
    if isinstance(error, str):
        return error
    return str(error) or repr(error)


def match_missing_dependency(error: Any) -> Optional[Tuple[str, str]]:
    """Return (name, ecosystem) for a missing-dependency error, else None."""
    text = _error_text(error)
    for _label, pattern, ecosystem in DEPENDENCY_PATTERNS:
        match = pattern.search(text)
        if match and match.group(1).strip():
            return match.group(1).strip(), ecosystem

    if "node_modules" in text:
        match = _NODE_MODULES_PATH.search(text)
        if match:
            return match.group(1).strip(), NODE
    return None


def detect_missing_dependency(error: Any) -> Optional[str]:
    """
    Extract a missing dependency name from an error or message.

    >>> detect_missing_dependency("Cannot find module 'express'")
    'express'
    >>> detect_missing_dependency("ModuleNotFoundError: No module named 'requests'")
    'requests'
    """
    found = match_missing_dependency(error)
    return found[0] if found else None


def dependency_ecosystem(error: Any) -> Optional[str]:
    found = match_missing_dependency(error)
    return found[1] if found else None


class DependencyResolver:
    """Installs a missing dependency into the workspace."""

    def __init__(self, executor: CommandExecutor):
        self.executor = executor

    @property
    def workspace_root(self) -> Path:
        return self.executor.workspace_root

    def get_dependency_tree(self) -> Dict[str, Any]:
        """`npm ls --json` for the workspace, or {} when unavailable."""
        try:
            result = subprocess.run(
                ["npm", "ls", "--json"],
                cwd=str(self.workspace_root),
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except OSError as e:
            logger.warning("Failed to get dependency tree: %s", e)
            return {}
        # npm ls exits non-zero on problems but still prints the tree
        try:
            tree = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as e:
            logger.warning("Failed to parse dependency tree: %s", e)
            return {}
        return tree if isinstance(tree, dict) else {}

    @staticmethod
    def find_transitive_versions(tree: Dict[str, Any], target: str) -> List[str]:
        """Versions of `target` pinned anywhere in the tree, in discovery order."""
        versions: List[str] = []

        def traverse(node: Any) -> None:
            if not isinstance(node, dict):
                return
            dependencies = node.get("dependencies")
            if not isinstance(dependencies, dict):
                return
            entry = dependencies.get(target)
            if isinstance(entry, dict) and entry.get("version") and entry["version"] not in versions:
                versions.append(entry["version"])
            for child in dependencies.values():
                traverse(child)

        traverse(tree)
        return versions

    def resolve(self, name: str, ecosystem: str = NODE) -> None:
        """
        Install `name` into the workspace.

        Raises:
            DependencyError: The name was refused, there is no package.json
                for a Node dependency, or the install command failed.
        """
        if not _VALID_PACKAGE_NAME.match(name):
            raise DependencyError(name, f"Refusing to install dependency with unexpected name: {name!r}")

        if ecosystem == PYTHON:
            package = name.split(".")[0]
            command = f"{shlex.quote(sys.executable)} -m pip install {package}"
        else:
            command = self._node_install_command(name)

        try:
            self.executor.run_command(CommandSpec(
                command=command,
                description=f"Installing missing dependency {name}",
            ))
        except (AutocoderError, OSError) as e:
            raise DependencyError(name, f"Failed to install dependency {name}: {e}") from e

    def _node_install_command(self, name: str) -> str:
        package_json = self.workspace_root / "package.json"
        try:
            json.loads(package_json.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            raise DependencyError(name, f"No package.json found or invalid format; cannot install {name}")

        versions = self.find_transitive_versions(self.get_dependency_tree(), name)
        if versions:
            logger.info("Installing %s@%s as detected from dependency tree", name, versions[0])
            return f"npm install {name}@{versions[0]}"
        logger.info("Installing latest version of %s", name)
        return f"npm install {name}"


# =============================================================================
# ERROR ANALYSIS
# =============================================================================

@dataclass
class ErrorAnalysis:
    analysis: str
    explanation: str
    solution: Optional[str] = None
    should_stop: bool = False
    requires_user_input: bool = False
    user_message: Optional[str] = None
    confidence: Optional[float] = None

    @classmethod
    def unusable(cls) -> "ErrorAnalysis":
        """Stand-in for a reply we could not understand: stop and ask the user."""
        return cls(
            analysis="Failed to parse AI response",
            explanation="There was an error understanding the AI's suggestion",
            solution=None,
            should_stop=True,
            requires_user_input=True,
            user_message="Please provide more details about what you're trying to do",
            confidence=0.0,
        )


_FENCE = re.compile(r"^```[A-Za-z0-9_-]*\s*|\s*```$")


def parse_error_analysis(raw: str) -> ErrorAnalysis:
    """Parse an analysis reply; malformed or incomplete replies become a stop."""
    text = _FENCE.sub("", (raw or "").strip()).strip("`").strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        logger.error("Error parsing AI response: %s", e)
        return ErrorAnalysis.unusable()

    if not isinstance(data, dict):
        logger.error("Error parsing AI response: expected a JSON object")
        return ErrorAnalysis.unusable()

    analysis, explanation = data.get("analysis"), data.get("explanation")
    solution = data.get("solution")
    if not analysis or not explanation or not isinstance(explanation, str):
        logger.error("Incomplete AI response structure")
        return ErrorAnalysis.unusable()
    if solution is not None and not isinstance(solution, str):
        logger.error("Incomplete AI response structure: solution must be text or null")
        return ErrorAnalysis.unusable()

    return ErrorAnalysis(
        analysis=str(analysis),
        explanation=explanation,
        solution=solution.strip() if solution and solution.strip() else None,
        should_stop=bool(data.get("shouldStop", False)),
        requires_user_input=bool(data.get("requiresUserInput", False)),
        user_message=data.get("userMessage"),
        confidence=data.get("confidence") if isinstance(data.get("confidence"), (int, float)) else None,
    )


def error_details(error: BaseException) -> Dict[str, Any]:
    """Message, stack, name, code and command of an error, for the analysis prompt."""
    return {
        "message": str(error),
        "stack": "".join(traceback.format_exception(type(error), error, error.__traceback__)),
        "name": type(error).__name__,
        "code": getattr(error, "code", None) or getattr(error, "errno", None),
        "command": getattr(error, "command", None),
    }


class SolutionKind(str, Enum):
    FILE_OPERATIONS = "file_operations"
    PACKAGE_MANAGER = "package_manager"
    EDITOR_API = "editor_api"
    SHELL = "shell"


_DIRECTIVE_MARKERS = ("FILE_CREATE", "FILE_MODIFY", "FOLDER_CREATE", "COMMAND_EXEC")
_PACKAGE_MANAGERS = ("npm", "yarn", "pnpm", "pip", "pip3")
_EDITOR_API_MARKERS = ("vscode.workspace", "vscode.window")


def classify_solution(solution: str) -> SolutionKind:
    """Decide how a suggested fix is executed."""
    if any(marker in solution for marker in _DIRECTIVE_MARKERS):
        return SolutionKind.FILE_OPERATIONS
    first = solution.strip().split(None, 1)[0] if solution.strip() else ""
    if first in _PACKAGE_MANAGERS and len(solution.strip().split()) > 1:
        return SolutionKind.PACKAGE_MANAGER
    if any(marker in solution for marker in _EDITOR_API_MARKERS):
        return SolutionKind.EDITOR_API
    return SolutionKind.SHELL


# =============================================================================
# CONTROLLER
# =============================================================================

class RetryController:
    """
    Bounded retry with dependency resolution and AI-assisted repair.

    State per call: Executing -> Success, or Error -> one of
    DependencyResolved / AIFixApplied (retry), Escalate (EscalatedStopError),
    Exhausted (ExhaustionError).
    """

    def __init__(
        self,
        client: ModelClient,
        executor: CommandExecutor,
        model_config: ModelConfig,
        max_retries: int = MAX_RETRIES,
        retry_delay: float = RETRY_DELAY_S,
        sleep: Callable[[float], None] = time.sleep,
        resolver: Optional[DependencyResolver] = None,
        editor_bridge: Optional[Callable[[str], Any]] = None,
    ):
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.client = client
        self.executor = executor
        self.model_config = model_config
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.sleep = sleep
        self.resolver = resolver or DependencyResolver(executor)
        self.editor_bridge = editor_bridge

    def execute_with_retry(
        self,
        operation: Callable[[], T],
        context: str,
        on_error: Optional[Callable[[BaseException, int], None]] = None,
        on_retry: Optional[Callable[[int], None]] = None,
    ) -> T:
        """
        Run `operation` until it succeeds or the budget is spent.

        Raises:
            EscalatedStopError: Analysis said to stop (first occurrence, no more attempts).
            ExhaustionError: All `max_retries` attempts failed.
        """
        state = RetryContext()

        for attempt in range(1, self.max_retries + 1):
            state.attempt = attempt
            try:
                return operation()
            except (EscalatedStopError, ExhaustionError):
                raise
            except Exception as error:
                state.last_error = error
                logger.error("Error in %s (Attempt %d/%d): %s", context, attempt, self.max_retries, error)
                if on_error:
                    on_error(error, attempt)

                if self._resolve_dependency(error, state):
                    continue

                if on_retry:
                    on_retry(attempt)
                if self._repair(error, context, state):
                    continue

                if attempt < self.max_retries:
                    self.sleep(self.retry_delay)

        raise ExhaustionError(self.max_retries, context, state.last_error)

    def _resolve_dependency(self, error: BaseException, state: RetryContext) -> bool:
        found = match_missing_dependency(error)
        if not found:
            return False
        name, ecosystem = found
        if name in state.resolved_dependencies:
            return False

        logger.info("Detected missing dependency: %s", name)
        state.resolved_dependencies.add(name)
        try:
            self.resolver.resolve(name, ecosystem)
        except DependencyError as e:
            logger.error("Failed to resolve dependency %s: %s", e.dependency, e)
            return False
        logger.info("Successfully resolved dependency: %s", name)
        return True

    def _repair(self, error: BaseException, context: str, state: RetryContext) -> bool:
        try:
            analysis = self.analyze_error(error, context, state.last_solution, state.attempt)
        except ModelClientError as e:
            logger.error("Error getting AI analysis: %s", e)
            return False

        if analysis.should_stop:
            raise EscalatedStopError(
                analysis.explanation,
                context=context,
                attempt=state.attempt,
                user_message=analysis.user_message,
            )
        if not analysis.solution:
            return False

        state.last_solution = analysis.solution
        logger.info("Applying AI suggested fix (Attempt %d): %s", state.attempt, analysis.solution)
        try:
            self.apply_solution(analysis.solution, context)
        except (AutocoderError, OSError, ValueError) as e:
            logger.error("Error applying AI solution: %s", e)
            return False

        logger.info("Applied AI fix (Attempt %d): %s", state.attempt, analysis.explanation)
        return True

    def analyze_error(
        self,
        error: BaseException,
        context: str,
        last_solution: Optional[str],
        attempt: int,
    ) -> ErrorAnalysis:
        """Ask the model for a diagnosis. Raises ModelClientError if the call fails."""
        user_prompt = ERROR_ANALYSIS_USER_PROMPT.format(
            context=context,
            details=json.dumps(error_details(error), indent=2, default=str),
            attempt=attempt,
            last_solution=last_solution or "None",
            workspace_root=self.executor.workspace_root,
        )
        raw = complete_text(self.client, ERROR_ANALYSIS_PROMPT, user_prompt, self.model_config)
        return parse_error_analysis(raw)

    def apply_solution(self, solution: str, context: str) -> None:
        """
        Execute a suggested fix through the path its kind calls for.

        Raises:
            SolutionError: If the fix cannot be applied at all.
            AutocoderError / OSError: If applying it fails.
        """
        if not solution or not isinstance(solution, str):
            raise SolutionError("Invalid solution format")

        kind = classify_solution(solution)
        logger.debug("Solution classified as %s", kind.value)

        if kind == SolutionKind.FILE_OPERATIONS:
            warnings: List[str] = []
            operations = parse_response(solution, warnings)
            if not operations:
                raise SolutionError(
                    "Solution contains no complete directives"
                    + (f": {'; '.join(warnings)}" if warnings else "")
                )
            self.executor.run(operations)

        elif kind == SolutionKind.PACKAGE_MANAGER:
            self.executor.run_command(CommandSpec(
                command=self._package_manager_command(solution),
                description=f"Executing AI solution for {context}",
            ))

        elif kind == SolutionKind.EDITOR_API:
            if self.editor_bridge is None:
                raise SolutionError("Editor API solutions need an editor bridge")
            self.editor_bridge(solution)

        else:
            logger.info("Applying general solution: %s", solution.strip())
            self.executor.run_command(CommandSpec(
                command=solution.strip(),
                description=f"Executing AI solution for {context}",
            ))

    def _package_manager_command(self, solution: str) -> str:
        parts = solution.strip().split()
        if parts[0] in ("npm", "yarn", "pnpm") and parts[1] in ("init", "create"):
            project_dir = parts[-1].strip("'\"")
            if project_dir != parts[1] and not project_dir.startswith("-"):
                self.executor.create_folder(project_dir)
        if parts[0] in ("pip", "pip3"):
            # the bare pip on PATH may belong to another interpreter
            return " ".join([shlex.quote(sys.executable), "-m", "pip"] + parts[1:])
        return solution.strip()


def wrap_command(func: Callable[..., T], name: str, controller: RetryController) -> Callable[..., T]:
    """Return `func` wrapped so every call runs under `controller` with logging callbacks."""

    def on_error(error: BaseException, attempt: int) -> None:
        logger.warning("Error in %s (Attempt %d/%d): %s", name, attempt, controller.max_retries, error)

    def on_retry(attempt: int) -> None:
        logger.info(
            "Analyzing error and attempting fix (Attempt %d/%d)...",
            attempt + 1, controller.max_retries,
        )

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        return controller.execute_with_retry(
            lambda: func(*args, **kwargs), name, on_error=on_error, on_retry=on_retry
        )

    return wrapper
