from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .models import CodeExecutionResult


class ExecutorError(Exception):
    """Base exception for code execution related errors.

    This is the parent class for all exceptions raised by the executors, the parser
    and the execution context store. Catching it catches every failure the package
    produces on purpose.

    Example:
        try:
            await executor.execute_code(invocation_context, code_input)
        except ExecutorError as e:
            print(f"Code execution failed: {e}")
    """

    pass


class ConfigurationError(ExecutorError):
    """Raised when an executor or parser is built with an unusable configuration.

    Configuration errors are fatal: they surface at construction time and are never
    retried.
    """

    pass


class InvalidDelimiterError(ConfigurationError):
    """Raised when a user supplied delimiter pair cannot be turned into a pattern."""

    pass


class UnsafeExecutionNotAllowedError(ConfigurationError):
    """Raised when a LocalExecutor is built without opting in to unsafe execution."""

    def __init__(self, message: str = "local executor requires explicit opt-in to unsafe execution"):
        super().__init__(message)


class UnsupportedModelError(ConfigurationError):
    """Raised when the built-in executor is asked to prepare a request for a model
    that has no native code execution tool.

    Args:
        model: The model name found on the request.
    """

    def __init__(self, model: Optional[str]):
        self.model = model
        super().__init__(f"native code execution tool is not supported for model {model!r}")


class ContainerRuntimeUnavailableError(ConfigurationError):
    """Raised when the container runtime cannot be reached while building a ContainerExecutor."""

    pass


class InvalidInvocationError(ExecutorError):
    """Raised when an execution is requested without an invocation or session to record it in.

    This is not retried.
    """

    pass


class ExecutionError(ExecutorError):
    """Base class for transient execution failures.

    Execution errors are retried by the executors up to their configured number of
    attempts.
    """

    pass


class ExecutionTimeoutError(ExecutionError):
    """Raised when a single execution attempt exceeds its time limit.

    Args:
        timeout: The limit that was exceeded, in seconds.
    """

    def __init__(self, timeout: float, message: Optional[str] = None):
        self.timeout = timeout
        super().__init__(message or f"execution timed out after {timeout:g} seconds")


class SpawnError(ExecutionError):
    """Raised when the process running the code could not be started at all.

    This is distinct from a process that started and exited with a non-zero code.
    """

    pass


class NonZeroExitError(ExecutionError):
    """Raised by the retry loop when an attempt completed with a non-zero exit code.

    Args:
        result: The result of the failed attempt.
    """

    def __init__(self, result: "CodeExecutionResult"):
        self.result = result
        super().__init__(f"code exited with status {result.exit_code}")


class ContainerOperationError(ExecutionError):
    """Raised when a call into the container runtime fails during an execution."""

    pass


class RetriesExhaustedError(ExecutionError):
    """Raised when every execution attempt failed.

    The partial result is attached so callers still get timing and identity
    metadata, and can render the failure back into the conversation.

    Args:
        result: The result describing the final failed attempt.
        attempts: The number of attempts that were made.
    """

    def __init__(self, result: "CodeExecutionResult", attempts: int):
        self.result = result
        self.attempts = attempts
        message = result.error.message if result.error else f"exit code {result.exit_code}"
        super().__init__(f"code execution failed after {attempts} attempt(s): {message}")


class ShutdownError(ExecutorError):
    """Exception raised when there is an error during executor shutdown.

    This exception indicates that something went wrong while releasing the
    resources held by an executor, such as removing its temporary directory or the
    containers it still tracks.

    Example:
        try:
            executor.close()
        except ShutdownError as e:
            print(f"Failed to shut down executor: {e}")
    """

    pass
