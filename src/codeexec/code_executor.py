from abc import ABC, abstractmethod
import asyncio
import logging
import time
from typing import List, Optional

from .config import ExecutionConfig
from .context import CodeExecutorContext, get_context_from_invocation
from .exceptions import (
    ExecutionError,
    ExecutionTimeoutError,
    ExecutorError,
    InvalidInvocationError,
    NonZeroExitError,
    RetriesExhaustedError,
    ShutdownError,
)
from .models import CodeExecutionInput, CodeExecutionResult, DelimiterPair, ExecutionException
from .session import InvocationContext

logger = logging.getLogger(__name__)


class CodeExecutor(ABC):
    """Abstract base class for code execution implementations.

    This class owns the behaviour shared by every backend: resolving the execution
    context of the invocation, retrying failed attempts with a fixed delay, counting
    errors per invocation, timing the call and recording successful results in the
    execution history. Concrete executors only implement a single attempt.

    An attempt fails when it raises an ExecutionError or returns a non-zero exit
    code. Cancelling the awaiting task interrupts the attempt or the retry delay and
    propagates immediately, without further attempts.

    Args:
        config: The execution policy. Defaults are used when None.

    Example:
        class EchoExecutor(CodeExecutor):
            async def _execute_once(self, code_input, execution_id, execution_context):
                return CodeExecutionResult(stdout=code_input.code)

        result = await EchoExecutor().execute_code(invocation_context, CodeExecutionInput(code="hi"))
    """

    def __init__(self, config: Optional[ExecutionConfig] = None):
        self._config = config or ExecutionConfig()
        self._is_closed = False

    @property
    def config(self) -> ExecutionConfig:
        return self._config

    def optimize_data_file(self) -> bool:
        return self._config.optimize_data_files

    def is_long_running(self) -> bool:
        return self._config.long_running

    def is_stateful(self) -> bool:
        return self._config.stateful

    def error_retry_attempts(self) -> int:
        return self._config.max_retries

    def code_block_delimiters(self) -> List[DelimiterPair]:
        return list(self._config.code_block_delimiters)

    def execution_result_delimiters(self) -> DelimiterPair:
        return self._config.execution_result_delimiters

    @property
    def is_closed(self) -> bool:
        return self._is_closed

    def resolve_timeout(self, code_input: CodeExecutionInput) -> Optional[float]:
        """The time limit of one attempt in seconds, None when unlimited."""
        if code_input.timeout is not None and code_input.timeout > 0:
            return code_input.timeout
        return self._config.default_timeout or None

    @abstractmethod
    async def _execute_once(
        self,
        code_input: CodeExecutionInput,
        execution_id: Optional[str],
        execution_context: CodeExecutorContext,
    ) -> CodeExecutionResult:
        """Run the code once.

        Args:
            code_input: The code and its inputs.
            execution_id: The execution session the call belongs to.
            execution_context: The execution context of the invocation.

        Returns:
            CodeExecutionResult: The outcome of the attempt.

        Raises:
            ExecutionError: If the attempt failed in a way that may be retried.
        """
        pass

    def _do_close(self) -> None:
        """Release backend resources. Called once by `close`."""
        pass

    async def execute_code(
        self, invocation_context: InvocationContext, code_input: CodeExecutionInput
    ) -> Optional[CodeExecutionResult]:
        """Execute code with the retry policy of the executor.

        Args:
            invocation_context: The invocation the execution belongs to.
            code_input: The code and its inputs.

        Returns:
            CodeExecutionResult: The result of the first successful attempt, stamped
            with the total duration and the execution id.

        Raises:
            ExecutorError: If the executor has been closed.
            InvalidInvocationError: If the invocation or its session is missing.
            RetriesExhaustedError: If every attempt failed. Its `result` carries the
                last attempt's output, the error, the duration and the execution id.
        """
        if self._is_closed:
            raise ExecutorError("Executor has already been closed.")

        start_time = time.monotonic()
        execution_context = get_context_from_invocation(invocation_context, code_input.execution_id)
        if execution_context is None:
            raise InvalidInvocationError("code execution requires an invocation context with a session")

        execution_id = code_input.execution_id or execution_context.get_execution_id()
        invocation_id = invocation_context.invocation_id
        attempts = self._config.max_retries + 1

        last_error: Optional[ExecutionError] = None
        last_result: Optional[CodeExecutionResult] = None
        for attempt in range(attempts):
            if attempt > 0:
                await asyncio.sleep(self._config.retry_delay)

            try:
                result = await self._execute_once(code_input, execution_id, execution_context)
            except ExecutionError as e:
                last_error = e
                last_result = getattr(e, "result", None)
            else:
                if result.exit_code == 0 and result.error is None:
                    result = result.model_copy(
                        update={
                            "code": code_input.code,
                            "duration_seconds": time.monotonic() - start_time,
                            "execution_id": execution_id,
                        }
                    )
                    if attempt > 0:
                        logger.info(f"Code execution {execution_id} succeeded after {attempt + 1} attempts")
                    execution_context.add_execution_result(result)
                    return result
                last_error = NonZeroExitError(result)
                last_result = result

            error_count = execution_context.increment_error_count(invocation_id)
            logger.warning(
                f"Code execution {execution_id} failed (attempt {attempt + 1}/{attempts}, "
                f"errors for invocation {invocation_id}: {error_count}): {last_error}"
            )

        if last_error is None:
            raise ExecutorError(f"Code execution {execution_id} made no attempt")
        failure = CodeExecutionResult(
            code=code_input.code,
            stdout=last_result.stdout if last_result else "",
            stderr=last_result.stderr if last_result else "",
            exit_code=last_result.exit_code if last_result and last_result.exit_code != 0 else 1,
            error=ExecutionException.from_exception(last_error),
            timed_out=isinstance(last_error, ExecutionTimeoutError),
            output_files=last_result.output_files if last_result else [],
            duration_seconds=time.monotonic() - start_time,
            execution_id=execution_id,
        )
        logger.error(f"Code execution {execution_id} failed after {attempts} attempt(s): {last_error}")
        raise RetriesExhaustedError(failure, attempts) from last_error

    def execute_code_sync(
        self, invocation_context: InvocationContext, code_input: CodeExecutionInput
    ) -> Optional[CodeExecutionResult]:
        """Blocking variant of `execute_code` for callers without an event loop."""
        return asyncio.run(self.execute_code(invocation_context, code_input))

    def close(self) -> None:
        """Release the resources held by the executor.

        Raises:
            ShutdownError: If an error occurs while releasing resources.
        """
        if not self._is_closed:
            try:
                self._do_close()
            except Exception as e:
                raise ShutdownError(f"Failed during shutdown: {e}") from e
            finally:
                self._is_closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, tb):
        self.close()
