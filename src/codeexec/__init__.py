"""Code execution for agent runtimes.

This package extracts code from model output, runs it on a pluggable backend and
renders the results back into the conversation. Execution state (execution id, input
files, error counts and result history) is kept in the session state so it survives
across invocations.

Key Components:
    - CodeExecutor: Abstract base class owning the retry, timeout and history policy
    - BuiltInExecutor: Delegates execution to the model's native code execution tool
    - LocalExecutor: Runs code as a local subprocess (explicit opt-in, unsafe)
    - ContainerExecutor: Runs code inside docker containers
    - CodeBlockParser / ExecutionResultFormatter: Text in, text out
    - CodeExecutorContext: Per-session execution state
    - CodeExecutionProcessor: Runs the code of a model turn and renders the result

Example:
    from codeexec import (
        CodeExecutionInput,
        ContainerExecutor,
        ContainerExecutorConfig,
        InvocationContext,
        Session,
    )

    invocation = InvocationContext(session=Session(app_name="app", user_id="user"))
    with ContainerExecutor(container_config=ContainerExecutorConfig(image="python:3.12-slim")) as executor:
        result = executor.execute_code_sync(invocation, CodeExecutionInput(code="print('Hello, World!')"))
        print(result.stdout)  # Outputs: Hello, World!
"""

from .builtin_executor import BuiltInExecutor, LlmRequest
from .code_executor import CodeExecutor
from .config import (
    ContainerExecutorConfig,
    ExecutionConfig,
    LocalExecutorConfig,
    configure_logging,
)
from .container_executor import ContainerExecutor
from .context import CodeExecutorContext, CodeExecutorState, get_context_from_invocation
from .delimiters import CodeBlock, CodeBlockParser, ExecutionResultFormatter
from .exceptions import (
    ConfigurationError,
    ContainerOperationError,
    ContainerRuntimeUnavailableError,
    ExecutionError,
    ExecutionTimeoutError,
    ExecutorError,
    InvalidDelimiterError,
    InvalidInvocationError,
    NonZeroExitError,
    RetriesExhaustedError,
    ShutdownError,
    SpawnError,
    UnsafeExecutionNotAllowedError,
    UnsupportedModelError,
)
from .local_executor import LocalExecutor
from .models import (
    CodeExecutionFile,
    CodeExecutionInput,
    CodeExecutionResult,
    DelimiterPair,
    ExecutionException,
)
from .processor import CodeExecutionOutcome, CodeExecutionProcessor
from .session import InvocationContext, Session, State
from .utils import CodeExecutionUtils

__all__ = [
    "BuiltInExecutor",
    "LlmRequest",
    "CodeExecutor",
    "ContainerExecutorConfig",
    "ExecutionConfig",
    "LocalExecutorConfig",
    "configure_logging",
    "ContainerExecutor",
    "CodeExecutorContext",
    "CodeExecutorState",
    "get_context_from_invocation",
    "CodeBlock",
    "CodeBlockParser",
    "ExecutionResultFormatter",
    "ConfigurationError",
    "ContainerOperationError",
    "ContainerRuntimeUnavailableError",
    "ExecutionError",
    "ExecutionTimeoutError",
    "ExecutorError",
    "InvalidDelimiterError",
    "InvalidInvocationError",
    "NonZeroExitError",
    "RetriesExhaustedError",
    "ShutdownError",
    "SpawnError",
    "UnsafeExecutionNotAllowedError",
    "UnsupportedModelError",
    "LocalExecutor",
    "CodeExecutionFile",
    "CodeExecutionInput",
    "CodeExecutionResult",
    "DelimiterPair",
    "ExecutionException",
    "CodeExecutionOutcome",
    "CodeExecutionProcessor",
    "InvocationContext",
    "Session",
    "State",
    "CodeExecutionUtils",
]
