"""Tests for the retry / self-healing controller (scripted model, injected sleep)."""

import json
import shlex
import sys

import pytest

from agentic_autocoder.errors import (
    CommandExecutionError,
    DependencyError,
    EscalatedStopError,
    ExhaustionError,
    SolutionError,
)
from agentic_autocoder.executor import CommandExecutor
from agentic_autocoder.model_client import ModelClientError, ModelConfig
from agentic_autocoder.retry import (
    NODE,
    PYTHON,
    DependencyResolver,
    RetryController,
    SolutionKind,
    classify_solution,
    dependency_ecosystem,
    detect_missing_dependency,
    parse_error_analysis,
    wrap_command,
)

from conftest import FakeModelClient, analysis_reply


class RecordingResolver:
    """Stands in for DependencyResolver; records calls, fails unless `installs`."""

    def __init__(self, installs=True):
        self.installs = installs
        self.calls = []

    def resolve(self, name, ecosystem=NODE):
        self.calls.append((name, ecosystem))
        if not self.installs:
            raise DependencyError(name, f"Failed to install dependency {name}")


class FailingOperation:
    """Raises the given error every call (or the first `times` calls)."""

    def __init__(self, error, times=None, result="done"):
        self.error = error
        self.times = times
        self.result = result
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.times is None or self.calls <= self.times:
            raise self.error
        return self.result


def make_controller(tmp_path, replies=(), max_retries=3, sleep=None, resolver=None, editor_bridge=None):
    client = FakeModelClient(list(replies))
    controller = RetryController(
        client,
        CommandExecutor(tmp_path),
        ModelConfig(model="test/model", phase="diagnose"),
        max_retries=max_retries,
        retry_delay=2.0,
        sleep=sleep or (lambda s: None),
        resolver=resolver or RecordingResolver(installs=False),
        editor_bridge=editor_bridge,
    )
    return controller, client


# =============================================================================
# TESTS - Dependency detection
# =============================================================================

class TestDetectMissingDependency:
    """Extraction of dependency names from error text."""

    @pytest.mark.parametrize("message,expected", [
        ("Error: Cannot find module 'express'", "express"),
        ("Error: require() of 'lodash' is not supported", "lodash"),
        ("ImportError: No module named 'yaml'", "yaml"),
        ("npm ERR! missing: react@18.2.0, required by app", "react"),
        ("ModuleNotFoundError: No module named 'requests'", "requests"),
        ("Error loading /app/node_modules/chalk/index.js", "chalk"),
    ])
    def test_known_patterns(self, message, expected):
        assert detect_missing_dependency(message) == expected

    def test_exception_objects(self):
        assert detect_missing_dependency(RuntimeError("Cannot find module 'vite'")) == "vite"

    def test_unrelated_error(self):
        assert detect_missing_dependency("SyntaxError: invalid syntax") is None
        assert detect_missing_dependency(None) is None

    def test_ecosystem(self):
        assert dependency_ecosystem("Cannot find module 'express'") == NODE
        assert dependency_ecosystem("ModuleNotFoundError: No module named 'numpy'") == PYTHON


class TestDependencyResolver:
    """Installing detected dependencies."""

    TREE = {
        "dependencies": {
            "react-scripts": {
                "version": "5.0.1",
                "dependencies": {"chalk": {"version": "4.1.2"}},
            },
            "eslint": {"dependencies": {"chalk": {"version": "4.1.2"}}},
            "jest": {"dependencies": {"chalk": {"version": "3.0.0"}}},
        }
    }

    def test_find_transitive_versions(self):
        versions = DependencyResolver.find_transitive_versions(self.TREE, "chalk")
        assert versions == ["4.1.2", "3.0.0"]

    def test_node_without_package_json(self, tmp_path):
        resolver = DependencyResolver(CommandExecutor(tmp_path))
        with pytest.raises(DependencyError) as exc:
            resolver.resolve("express", NODE)
        assert exc.value.dependency == "express"
        assert "package.json" in str(exc.value)

    def test_node_installs_pinned_version(self, tmp_path, monkeypatch):
        (tmp_path / "package.json").write_text('{"dependencies": {}}')
        executor = CommandExecutor(tmp_path)
        resolver = DependencyResolver(executor)
        commands = []
        monkeypatch.setattr(resolver, "get_dependency_tree", lambda: self.TREE)
        monkeypatch.setattr(executor, "run_command", lambda spec: commands.append(spec.command))

        resolver.resolve("chalk", NODE)
        assert commands == ["npm install chalk@4.1.2"]

    def test_node_installs_latest_when_not_in_tree(self, tmp_path, monkeypatch):
        (tmp_path / "package.json").write_text("{}")
        executor = CommandExecutor(tmp_path)
        resolver = DependencyResolver(executor)
        commands = []
        monkeypatch.setattr(resolver, "get_dependency_tree", lambda: {})
        monkeypatch.setattr(executor, "run_command", lambda spec: commands.append(spec.command))

        resolver.resolve("express", NODE)
        assert commands == ["npm install express"]

    def test_python_uses_running_interpreter(self, tmp_path, monkeypatch):
        executor = CommandExecutor(tmp_path)
        commands = []
        monkeypatch.setattr(executor, "run_command", lambda spec: commands.append(spec.command))

        DependencyResolver(executor).resolve("yaml.constructor", PYTHON)
        assert commands == [f"{shlex.quote(sys.executable)} -m pip install yaml"]

    def test_suspicious_name_refused(self, tmp_path):
        resolver = DependencyResolver(CommandExecutor(tmp_path))
        with pytest.raises(DependencyError):
            resolver.resolve("./local-file", NODE)
        with pytest.raises(DependencyError):
            resolver.resolve("x; rm -rf /", PYTHON)

    def test_failed_install_raises(self, tmp_path, monkeypatch):
        """A failing install command surfaces as DependencyError with the cause chained."""
        executor = CommandExecutor(tmp_path)

        def fail(spec):
            raise CommandExecutionError(spec.command, "exit code 1", returncode=1)

        monkeypatch.setattr(executor, "run_command", fail)
        with pytest.raises(DependencyError) as exc:
            DependencyResolver(executor).resolve("requests", PYTHON)
        assert exc.value.dependency == "requests"
        assert isinstance(exc.value.__cause__, CommandExecutionError)


# =============================================================================
# TESTS - Error analysis
# =============================================================================

class TestParseErrorAnalysis:
    """Parsing the diagnosis reply."""

    def test_complete_reply(self):
        analysis = parse_error_analysis(analysis_reply(solution="npm install"))
        assert analysis.solution == "npm install"
        assert analysis.should_stop is False

    def test_null_solution_allowed(self):
        assert parse_error_analysis(analysis_reply(solution=None)).solution is None

    @pytest.mark.parametrize("raw", [
        "not json at all",
        "[1, 2, 3]",
        json.dumps({"analysis": "x"}),
        json.dumps({"analysis": "x", "explanation": "y", "solution": 42}),
    ])
    def test_malformed_reply_means_stop(self, raw):
        analysis = parse_error_analysis(raw)
        assert analysis.should_stop is True
        assert analysis.requires_user_input is True

    def test_fenced_reply(self):
        raw = "```json\n" + analysis_reply(solution="ls") + "\n```"
        assert parse_error_analysis(raw).solution == "ls"


class TestClassifySolution:
    """Routing a suggested fix to the right execution path."""

    @pytest.mark.parametrize("solution,kind", [
        ("$$$ FILE_CREATE a.txt\nx\n$$$ FILE_END %%%", SolutionKind.FILE_OPERATIONS),
        ("$$$ FOLDER_CREATE src %%%", SolutionKind.FILE_OPERATIONS),
        ("npm install react", SolutionKind.PACKAGE_MANAGER),
        ("pip install requests", SolutionKind.PACKAGE_MANAGER),
        ("yarn add vite", SolutionKind.PACKAGE_MANAGER),
        ("vscode.window.showInformationMessage('hi')", SolutionKind.EDITOR_API),
        ("git init", SolutionKind.SHELL),
        ("npm", SolutionKind.SHELL),
    ])
    def test_classification(self, solution, kind):
        assert classify_solution(solution) == kind


# =============================================================================
# TESTS - Controller
# =============================================================================

class TestExecuteWithRetry:
    """The retry state machine."""

    def test_success_first_try(self, tmp_path):
        controller, client = make_controller(tmp_path)
        assert controller.execute_with_retry(lambda: 42, "ctx") == 42
        assert client.calls == []

    def test_exhaustion_after_max_retries(self, tmp_path, no_sleep):
        """Exactly max_retries attempts, then one terminal error with count and cause."""
        controller, client = make_controller(
            tmp_path, replies=[analysis_reply()] * 3, max_retries=3, sleep=no_sleep,
        )
        operation = FailingOperation(RuntimeError("boom"))

        with pytest.raises(ExhaustionError) as exc:
            controller.execute_with_retry(operation, "Step 1: build")

        assert operation.calls == 3
        assert exc.value.attempts == 3
        assert str(exc.value) == "Failed after 3 attempts in Step 1: build. Last error: boom"
        assert no_sleep.calls == [2.0, 2.0]

    def test_should_stop_halts_on_first_attempt(self, tmp_path, no_sleep):
        controller, client = make_controller(
            tmp_path,
            replies=[analysis_reply(should_stop=True, explanation="Needs an API key")],
            max_retries=50,
            sleep=no_sleep,
        )
        operation = FailingOperation(RuntimeError("401 Unauthorized"))

        with pytest.raises(EscalatedStopError) as exc:
            controller.execute_with_retry(operation, "ctx")

        assert operation.calls == 1
        assert len(client.calls) == 1
        assert str(exc.value) == "AI suggests stopping: Needs an API key"
        assert exc.value.attempt == 1
        assert no_sleep.calls == []

    def test_malformed_analysis_stops(self, tmp_path):
        controller, _ = make_controller(tmp_path, replies=["I am not JSON"], max_retries=50)
        operation = FailingOperation(RuntimeError("boom"))
        with pytest.raises(EscalatedStopError):
            controller.execute_with_retry(operation, "ctx")
        assert operation.calls == 1

    def test_ai_fix_applied_then_retried(self, tmp_path, no_sleep):
        """A file-operation fix is applied and the operation retried without sleeping."""
        fix = "$$$ FILE_CREATE config.json\n{}\n$$$ FILE_END %%%"
        controller, _ = make_controller(tmp_path, replies=[analysis_reply(solution=fix)], sleep=no_sleep)
        calls = []

        def operation():
            calls.append(1)
            if not (tmp_path / "config.json").exists():
                raise FileNotFoundError("config.json missing")
            return "ok"

        assert controller.execute_with_retry(operation, "ctx") == "ok"
        assert len(calls) == 2
        assert no_sleep.calls == []

    def test_previous_solution_sent_with_next_analysis(self, tmp_path):
        controller, client = make_controller(
            tmp_path,
            replies=[analysis_reply(solution="$$$ FOLDER_CREATE tmp %%%"), analysis_reply()],
            max_retries=2,
        )
        with pytest.raises(ExhaustionError):
            controller.execute_with_retry(FailingOperation(RuntimeError("still broken")), "ctx")
        second_prompt = client.calls[1][1].content
        assert "Previous Solution Tried: $$$ FOLDER_CREATE tmp %%%" in second_prompt
        assert "Attempt: 2" in second_prompt

    def test_dependency_resolved_without_model(self, tmp_path):
        resolver = RecordingResolver(installs=True)
        controller, client = make_controller(tmp_path, resolver=resolver)
        operation = FailingOperation(RuntimeError("Cannot find module 'express'"), times=1)

        assert controller.execute_with_retry(operation, "ctx") == "done"
        assert resolver.calls == [("express", NODE)]
        assert client.calls == []

    def test_failed_install_falls_back_to_ai_repair(self, tmp_path):
        """A DependencyError from the resolver is logged and the model is consulted."""
        resolver = RecordingResolver(installs=False)
        controller, client = make_controller(
            tmp_path,
            replies=[analysis_reply(solution="$$$ FOLDER_CREATE vendor %%%")],
            resolver=resolver,
        )
        operation = FailingOperation(RuntimeError("Cannot find module 'left-pad'"), times=1)

        assert controller.execute_with_retry(operation, "ctx") == "done"
        assert resolver.calls == [("left-pad", NODE)]
        assert len(client.calls) == 1
        assert (tmp_path / "vendor").is_dir()

    def test_same_dependency_not_resolved_twice(self, tmp_path):
        resolver = RecordingResolver(installs=True)
        controller, client = make_controller(
            tmp_path, replies=[analysis_reply()], max_retries=2, resolver=resolver,
        )
        operation = FailingOperation(RuntimeError("ModuleNotFoundError: No module named 'numpy'"))

        with pytest.raises(ExhaustionError):
            controller.execute_with_retry(operation, "ctx")
        assert resolver.calls == [("numpy", PYTHON)]
        assert len(client.calls) == 1

    def test_analysis_failure_is_logged_and_retried(self, tmp_path):
        controller, _ = make_controller(
            tmp_path,
            replies=[ModelClientError("timeout"), ModelClientError("timeout")],
            max_retries=2,
        )
        operation = FailingOperation(RuntimeError("boom"))
        with pytest.raises(ExhaustionError):
            controller.execute_with_retry(operation, "ctx")
        assert operation.calls == 2

    def test_failed_fix_is_logged_and_retried(self, tmp_path):
        """A fix rejected by the sanitizer does not end the loop."""
        controller, _ = make_controller(
            tmp_path,
            replies=[analysis_reply(solution="rm -rf / ; echo done"), analysis_reply()],
            max_retries=2,
        )
        operation = FailingOperation(RuntimeError("boom"))
        with pytest.raises(ExhaustionError):
            controller.execute_with_retry(operation, "ctx")
        assert operation.calls == 2

    def test_nested_terminal_errors_pass_through(self, tmp_path):
        controller, client = make_controller(tmp_path)
        inner = ExhaustionError(5, "inner", RuntimeError("x"))
        operation = FailingOperation(inner)
        with pytest.raises(ExhaustionError) as exc:
            controller.execute_with_retry(operation, "outer")
        assert exc.value is inner
        assert operation.calls == 1
        assert client.calls == []

    def test_callbacks(self, tmp_path):
        controller, _ = make_controller(tmp_path, replies=[analysis_reply()] * 2, max_retries=2)
        errors, retries = [], []
        with pytest.raises(ExhaustionError):
            controller.execute_with_retry(
                FailingOperation(RuntimeError("boom")),
                "ctx",
                on_error=lambda e, attempt: errors.append((str(e), attempt)),
                on_retry=retries.append,
            )
        assert errors == [("boom", 1), ("boom", 2)]
        assert retries == [1, 2]

    def test_invalid_budget(self, tmp_path):
        with pytest.raises(ValueError):
            make_controller(tmp_path, max_retries=0)


class TestApplySolution:
    """Executing suggested fixes."""

    def test_editor_api_needs_bridge(self, tmp_path):
        controller, _ = make_controller(tmp_path)
        with pytest.raises(SolutionError):
            controller.apply_solution("vscode.window.showInformationMessage('x')", "ctx")

    def test_editor_api_goes_to_bridge(self, tmp_path):
        seen = []
        controller, _ = make_controller(tmp_path, editor_bridge=seen.append)
        controller.apply_solution("vscode.workspace.saveAll()", "ctx")
        assert seen == ["vscode.workspace.saveAll()"]

    def test_directive_text_without_complete_blocks(self, tmp_path):
        controller, _ = make_controller(tmp_path)
        with pytest.raises(SolutionError):
            controller.apply_solution("$$$ FILE_CREATE a.txt\nno end", "ctx")

    def test_pip_runs_with_current_interpreter(self, tmp_path, monkeypatch):
        controller, _ = make_controller(tmp_path)
        commands = []
        monkeypatch.setattr(controller.executor, "run_command", lambda spec: commands.append(spec.command))
        controller.apply_solution("pip install requests", "ctx")
        assert commands == [f"{shlex.quote(sys.executable)} -m pip install requests"]

    def test_package_manager_fix_labelled_as_ai_solution(self, tmp_path, monkeypatch):
        controller, _ = make_controller(tmp_path)
        specs = []
        monkeypatch.setattr(controller.executor, "run_command", specs.append)
        controller.apply_solution("npm install react", "Step 2: Add routing")
        assert specs[0].command == "npm install react"
        assert specs[0].description == "Executing AI solution for Step 2: Add routing"

    def test_npm_create_makes_project_folder(self, tmp_path, monkeypatch):
        controller, _ = make_controller(tmp_path)
        commands = []
        monkeypatch.setattr(controller.executor, "run_command", lambda spec: commands.append(spec.command))
        controller.apply_solution("npm create vite@latest my-app", "ctx")
        assert (tmp_path / "my-app").is_dir()
        assert commands == ["npm create vite@latest my-app"]

    def test_shell_solution_runs(self, tmp_path):
        controller, _ = make_controller(tmp_path)
        controller.apply_solution(f"{shlex.quote(sys.executable)} -c \"open('made.txt', 'w').close()\"", "ctx")
        assert (tmp_path / "made.txt").exists()


class TestWrapCommand:
    """wrap_command keeps the wrapped callable's identity and return value."""

    def test_wrapped_call(self, tmp_path):
        controller, _ = make_controller(tmp_path)

        def build(x, y=1):
            """Build something."""
            return x + y

        wrapped = wrap_command(build, "Build", controller)
        assert wrapped(2, y=3) == 5
        assert wrapped.__name__ == "build"
        assert wrapped.__doc__ == "Build something."
