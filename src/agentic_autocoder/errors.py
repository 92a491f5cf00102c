"""Error taxonomy for planning, execution and self-healing."""

from typing import Optional


class AutocoderError(Exception):
    """Base class for all autocoder errors."""
    pass


class FormatError(AutocoderError):
    """A model response is not in the expected format."""
    pass


class PlanFormatError(FormatError):
    """Planner response is not a well-formed JSON object."""
    pass


class PlanValidationError(PlanFormatError):
    """Planner JSON parsed but failed structural validation."""
    pass


class DependencyError(AutocoderError):
    """A missing dependency was detected but could not be installed."""

    def __init__(self, dependency: str, message: str):
        super().__init__(message)
        self.dependency = dependency


class PathValidationError(AutocoderError):
    """A path is empty, absolute, or escapes the workspace root."""
    pass


class CommandExecutionError(AutocoderError):
    """A command exited non-zero (or could not be started).

    Carries the command line plus captured stdout/stderr so the
    retry controller can hand full context to error analysis.
    """

    def __init__(
        self,
        command: str,
        message: str,
        stdout: str = "",
        stderr: str = "",
        returncode: Optional[int] = None,
    ):
        text = f'Failed to execute command "{command}": {message}'
        if stderr and stderr.strip() and stderr.strip() not in message:
            text += f"\n{stderr.strip()}"
        super().__init__(text)
        self.command = command
        self.stdout = stdout
        self.stderr = stderr
        self.returncode = returncode

    @property
    def code(self) -> Optional[int]:
        return self.returncode


class UnsafeCommandError(CommandExecutionError):
    """Command rejected by sanitization before execution."""

    def __init__(self, command: str, reason: str):
        super().__init__(command, f"Rejected by sanitizer: {reason}")
        self.reason = reason


class StepDependencyError(AutocoderError):
    """A step was started before all of its dependencies completed."""
    pass


class SolutionError(AutocoderError):
    """An AI-suggested solution could not be applied."""
    pass


class ExhaustionError(AutocoderError):
    """Terminal: the retry budget ran out."""

    def __init__(self, attempts: int, context: str, last_error: Optional[BaseException]):
        last_message = str(last_error) if last_error is not None else "Unknown error"
        super().__init__(
            f"Failed after {attempts} attempts in {context}. Last error: {last_message}"
        )
        self.attempts = attempts
        self.context = context
        self.last_error = last_error


class EscalatedStopError(AutocoderError):
    """Terminal: error analysis recommended stopping."""

    def __init__(self, explanation: str, context: str = "", attempt: int = 0,
                 user_message: Optional[str] = None):
        super().__init__(f"AI suggests stopping: {explanation}")
        self.explanation = explanation
        self.context = context
        self.attempt = attempt
        self.user_message = user_message
