"""Command executor: applies parsed operations to the workspace.

File operations are confined to the workspace root. Commands are sanitized
with a denylist and run as argument vectors without a shell. This is
best-effort sanitization, not a security boundary.
"""

import logging
import os
import re
import shlex
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from agentic_autocoder.constants import FORCED_COMMAND_ENV, MAX_OUTPUT_BYTES
from agentic_autocoder.errors import (
    CommandExecutionError,
    PathValidationError,
    UnsafeCommandError,
)
from agentic_autocoder.protocol import (
    CommandSpec,
    FileOperation,
    OperationKind,
    apply_edits,
)

logger = logging.getLogger(__name__)


@dataclass
class ResultEntry:
    """Outcome of one executed operation or command, for any UI layer."""
    description: str
    succeeded: bool
    output: Optional[str] = None

    def to_dict(self) -> dict:
        data = {"description": self.description, "succeeded": self.succeeded}
        if self.output is not None:
            data["output"] = self.output
        return data


# =============================================================================
# SANITIZATION
# =============================================================================

_SHELL_METACHARACTERS = re.compile(r"[;&|`$<>]")
_HTML_LIKE = re.compile(r"</?[A-Za-z][^>]*>|&[a-z]+;")
_BARE_INTEGER = re.compile(r"^\d+$")
_PARENT_REFERENCE = re.compile(r"(^|[\s/\\=])\.\.([/\\\s]|$)")


def sanitize_command(command: str) -> str:
    """
    Validate a command line and return it trimmed.

    Rejects (UnsafeCommandError) empty commands, HTML-like content, shell
    metacharacters, parent-directory references and bare integers that
    look like process IDs.
    """
    if command is None or not str(command).strip():
        raise UnsafeCommandError(str(command or ""), "empty command")
    cleaned = str(command).strip()

    if _HTML_LIKE.search(cleaned):
        raise UnsafeCommandError(cleaned, "contains HTML-like content")
    match = _SHELL_METACHARACTERS.search(cleaned)
    if match:
        raise UnsafeCommandError(cleaned, f"contains shell metacharacter {match.group(0)!r}")
    if _PARENT_REFERENCE.search(cleaned):
        raise UnsafeCommandError(cleaned, "contains a parent directory reference")
    if _BARE_INTEGER.match(cleaned):
        raise UnsafeCommandError(cleaned, "bare number looks like a process ID")
    return cleaned


def split_command(command: str) -> List[str]:
    """Tokenise a sanitized command into an argument vector."""
    try:
        argv = shlex.split(command, posix=os.name != "nt")
    except ValueError as e:
        raise UnsafeCommandError(command, f"cannot be tokenised: {e}")
    if not argv:
        raise UnsafeCommandError(command, "empty command")
    return argv


# =============================================================================
# ERROR NORMALIZATION
# =============================================================================

_PYTHON_ERRORS = [
    (re.compile(r"SyntaxError: (.*)"), "Syntax error"),
    (re.compile(r"IndentationError: (.*)"), "Indentation error"),
    (re.compile(r"ImportError: (.*)"), "Import error"),
    (re.compile(r"FileNotFoundError: (.*)"), "File not found"),
]


def is_python_command(command: str) -> bool:
    return "python" in command.lower()


def normalize_python_error(error_output: str) -> Optional[str]:
    """Map a Python traceback to a normalized 'Python error: ...' message."""
    for pattern, label in _PYTHON_ERRORS:
        match = pattern.search(error_output)
        if match:
            return f"Python error: {label}: {match.group(1).strip()}"
    return None


def _cap(text: Optional[str]) -> str:
    if not text:
        return ""
    if len(text) > MAX_OUTPUT_BYTES:
        return text[:MAX_OUTPUT_BYTES]
    return text


# =============================================================================
# EXECUTOR
# =============================================================================

class CommandExecutor:
    """Runs FileOperations and CommandSpecs against one workspace root."""

    def __init__(self, workspace_root, env: Optional[Dict[str, str]] = None):
        self.workspace_root = Path(workspace_root).resolve()
        self._extra_env = dict(env or {})

    # --- paths ---------------------------------------------------------------

    def resolve_path(self, relative: str) -> Path:
        """Resolve a workspace-relative path, rejecting anything outside the root."""
        if relative is None or not str(relative).strip():
            raise PathValidationError("Empty path")
        candidate = Path(str(relative).strip())
        if candidate.is_absolute():
            raise PathValidationError(f"Absolute paths are not allowed: {relative}")
        resolved = (self.workspace_root / candidate).resolve()
        if resolved != self.workspace_root and self.workspace_root not in resolved.parents:
            raise PathValidationError(f"Path escapes the workspace root: {relative}")
        return resolved

    def build_env(self) -> Dict[str, str]:
        env = dict(os.environ)
        env.update(FORCED_COMMAND_ENV)
        env.update(self._extra_env)
        return env

    # --- file operations -----------------------------------------------------

    def create_folder(self, path: str) -> ResultEntry:
        full_path = self.resolve_path(path)
        full_path.mkdir(parents=True, exist_ok=True)
        logger.info("Created folder: %s", path)
        return ResultEntry(description=f"Created folder {path}", succeeded=True)

    def create_file(self, path: str, content: str) -> ResultEntry:
        full_path = self.resolve_path(path)
        full_path.parent.mkdir(parents=True, exist_ok=True)
        full_path.write_text(content or "", encoding="utf-8")
        logger.info("Created file: %s", path)
        return ResultEntry(description=f"Created file {path}", succeeded=True)

    def modify_file(self, operation: FileOperation) -> ResultEntry:
        full_path = self.resolve_path(operation.path)
        if not full_path.is_file():
            raise FileNotFoundError(f"File to modify not found: {operation.path}")

        original = full_path.read_text(encoding="utf-8")
        warnings: List[str] = []
        modified = apply_edits(original, operation.edits, warnings)
        full_path.write_text(modified, encoding="utf-8")

        applied = len(operation.edits) - len(warnings)
        logger.info("Modified file: %s (%d/%d edits applied)", operation.path, applied, len(operation.edits))
        return ResultEntry(
            description=f"Modified file {operation.path}",
            succeeded=True,
            output="; ".join(warnings) if warnings else None,
        )

    # --- commands ------------------------------------------------------------

    def _resolve_cwd(self, cwd: Optional[str]) -> Path:
        if not cwd or cwd.strip() in (".", "./"):
            return self.workspace_root
        directory = self.resolve_path(cwd)
        if not directory.is_dir():
            raise PathValidationError(f"Invalid working directory: {cwd}")
        return directory

    def _run_foreground(self, argv: List[str], cwd: Path) -> subprocess.CompletedProcess:
        return subprocess.run(
            argv,
            cwd=str(cwd),
            env=self.build_env(),
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
        )

    def _start_background(self, command: str, argv: List[str], cwd: Path, description: str) -> ResultEntry:
        try:
            process = subprocess.Popen(
                argv,
                cwd=str(cwd),
                env=self.build_env(),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            logger.error("Background command failed to start: %s (%s)", command, e)
            return ResultEntry(description=f"Started background process: {description}",
                               succeeded=True, output=f"Failed to start: {e}")

        watcher = threading.Thread(
            target=_watch_background, args=(process, command), daemon=True
        )
        watcher.start()
        logger.info("Started background process (pid %s): %s", process.pid, command)
        return ResultEntry(description=f"Started background process: {description}", succeeded=True)

    def run_command(self, spec: CommandSpec) -> ResultEntry:
        """
        Run one command.

        Background commands are detached and return immediately; their
        failures are only logged. Foreground commands block and raise
        CommandExecutionError on non-zero exit.
        """
        command = sanitize_command(spec.command)
        argv = split_command(command)
        cwd = self._resolve_cwd(spec.cwd)
        description = spec.description or command
        logger.info("%s: %s", description, command)

        if spec.is_background:
            return self._start_background(command, argv, cwd, description)

        try:
            result = self._run_foreground(argv, cwd)
        except FileNotFoundError as e:
            raise CommandExecutionError(command, f"Command not found: {e}", returncode=127)
        except OSError as e:
            raise CommandExecutionError(command, str(e))

        stdout, stderr = _cap(result.stdout), _cap(result.stderr)
        if result.returncode == 0:
            if stderr.strip():
                logger.info("Command stderr: %s", stderr.strip())
            output = stdout.strip()
            logger.debug("Command output: %s", output)
            return ResultEntry(description=description, succeeded=True, output=output or None)

        error_output = stderr or stdout or f"exit code {result.returncode}"
        logger.error("Command failed: %s\n%s", command, error_output.strip())

        if "ERESOLVE" in error_output and _is_npm_install(argv):
            return self._retry_legacy_peer_deps(command, argv, cwd, description)

        message = f"exit code {result.returncode}"
        if is_python_command(command):
            message = normalize_python_error(error_output) or message

        raise CommandExecutionError(
            command, message, stdout=stdout, stderr=stderr, returncode=result.returncode
        )

    def _retry_legacy_peer_deps(self, command: str, argv: List[str], cwd: Path, description: str) -> ResultEntry:
        logger.warning("Detected npm dependency conflict, retrying with --legacy-peer-deps")
        retry_argv = argv + ["--legacy-peer-deps"]
        retry_command = f"{command} --legacy-peer-deps"
        result = self._run_foreground(retry_argv, cwd)
        stdout, stderr = _cap(result.stdout), _cap(result.stderr)
        if result.returncode != 0:
            raise CommandExecutionError(
                retry_command,
                f"NPM install failed with --legacy-peer-deps (exit code {result.returncode})",
                stdout=stdout, stderr=stderr, returncode=result.returncode,
            )
        return ResultEntry(
            description=f"{description} (with --legacy-peer-deps)",
            succeeded=True,
            output=stdout.strip() or None,
        )

    def exec_commands(self, specs: List[CommandSpec]) -> List[ResultEntry]:
        return [self.run_command(spec) for spec in specs]

    # --- dispatch ------------------------------------------------------------

    def run(self, operations: List[FileOperation]) -> List[ResultEntry]:
        """Apply operations in order; the first failure raises."""
        results: List[ResultEntry] = []
        for operation in operations:
            if operation.kind == OperationKind.CREATE_FOLDER:
                results.append(self.create_folder(operation.path))
            elif operation.kind == OperationKind.CREATE_FILE:
                results.append(self.create_file(operation.path, operation.content))
            elif operation.kind == OperationKind.MODIFY_FILE:
                results.append(self.modify_file(operation))
            elif operation.kind == OperationKind.EXEC_COMMAND:
                results.extend(self.exec_commands(operation.commands))
            else:
                raise ValueError(f"Unknown operation kind: {operation.kind}")
        return results


def _is_npm_install(argv: List[str]) -> bool:
    name = Path(argv[0]).name.lower()
    return name in ("npm", "npm.cmd") and len(argv) > 1 and argv[1] in ("install", "i")


def _watch_background(process: subprocess.Popen, command: str) -> None:
    """Wait for a detached process and log its failure; never raises to the caller."""
    _, stderr = process.communicate()
    if process.returncode:
        detail = (stderr or b"").decode("utf-8", errors="replace").strip()
        logger.error(
            "Background command exited with code %s: %s%s",
            process.returncode, command, f"\n{detail}" if detail else "",
        )
    else:
        logger.info("Background command finished: %s", command)
