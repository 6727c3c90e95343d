import asyncio

import pytest

from codeexec import (
    CodeExecutionInput,
    CodeExecutionResult,
    ExecutionConfig,
    ExecutionException,
    ExecutionTimeoutError,
    ExecutorError,
    InvalidInvocationError,
    InvocationContext,
    RetriesExhaustedError,
    ShutdownError,
    get_context_from_invocation,
)


class TestRetryPolicy:
    @pytest.mark.asyncio
    async def test_success_on_first_attempt(self, make_executor, invocation_context, ok_result):
        executor = make_executor([ok_result])

        result = await executor.execute_code(invocation_context, CodeExecutionInput(code="print('ok')"))

        assert result.stdout == "ok\n"
        assert result.code == "print('ok')"
        assert result.execution_id == "inv-1"
        assert result.duration_seconds is not None and result.duration_seconds >= 0
        assert len(executor.calls) == 1

    @pytest.mark.asyncio
    async def test_success_after_transient_failures(
        self, make_executor, invocation_context, ok_result, transient_error
    ):
        executor = make_executor([transient_error, CodeExecutionResult(exit_code=1, stderr="flaky"), ok_result])

        result = await executor.execute_code(invocation_context, CodeExecutionInput(code="x"))

        assert result.succeeded
        assert len(executor.calls) == 3
        context = get_context_from_invocation(invocation_context)
        assert context.get_error_count("inv-1") == 2

    @pytest.mark.asyncio
    async def test_attempts_are_bounded_by_max_retries(self, make_executor, invocation_context, transient_error):
        executor = make_executor([transient_error], ExecutionConfig(max_retries=3, retry_delay=0))

        with pytest.raises(RetriesExhaustedError) as exc_info:
            await executor.execute_code(invocation_context, CodeExecutionInput(code="x"))

        assert len(executor.calls) == 4
        assert exc_info.value.attempts == 4
        assert exc_info.value.__cause__ is transient_error

    @pytest.mark.asyncio
    async def test_no_retries(self, make_executor, invocation_context, transient_error):
        executor = make_executor([transient_error], ExecutionConfig(max_retries=0, retry_delay=0))

        with pytest.raises(RetriesExhaustedError):
            await executor.execute_code(invocation_context, CodeExecutionInput(code="x"))

        assert len(executor.calls) == 1

    @pytest.mark.asyncio
    async def test_exhausted_result_carries_metadata(self, make_executor, invocation_context):
        failing = CodeExecutionResult(stdout="partial", stderr="ValueError: bad", exit_code=3)
        executor = make_executor([failing])

        with pytest.raises(RetriesExhaustedError) as exc_info:
            await executor.execute_code(invocation_context, CodeExecutionInput(code="raise ValueError('bad')"))

        result = exc_info.value.result
        assert result.exit_code == 3
        assert result.stdout == "partial"
        assert result.stderr == "ValueError: bad"
        assert result.error is not None
        assert result.error.type == "NonZeroExitError"
        assert result.execution_id == "inv-1"
        assert result.code == "raise ValueError('bad')"
        assert result.duration_seconds is not None
        assert not result.timed_out

    @pytest.mark.asyncio
    async def test_exhausted_after_exception_has_exit_code_one(self, make_executor, invocation_context):
        executor = make_executor([ExecutionTimeoutError(5)], ExecutionConfig(max_retries=1, retry_delay=0))

        with pytest.raises(RetriesExhaustedError) as exc_info:
            await executor.execute_code(invocation_context, CodeExecutionInput(code="x"))

        result = exc_info.value.result
        assert result.exit_code == 1
        assert result.timed_out
        assert result.error.type == "ExecutionTimeoutError"
        assert "5 seconds" in result.error.message

    @pytest.mark.asyncio
    async def test_result_with_error_counts_as_failure(self, make_executor, invocation_context, ok_result):
        errored = CodeExecutionResult(error=ExecutionException(type="SpawnError", message="no interpreter"))
        executor = make_executor([errored, ok_result])

        result = await executor.execute_code(invocation_context, CodeExecutionInput(code="x"))

        assert result.succeeded
        assert len(executor.calls) == 2

    @pytest.mark.asyncio
    async def test_failure_increments_error_count_per_attempt(
        self, make_executor, invocation_context, transient_error
    ):
        executor = make_executor([transient_error])

        with pytest.raises(RetriesExhaustedError):
            await executor.execute_code(invocation_context, CodeExecutionInput(code="x"))

        context = get_context_from_invocation(invocation_context)
        assert context.get_error_count("inv-1") == 3

    @pytest.mark.asyncio
    async def test_non_execution_errors_are_not_retried(self, make_executor, invocation_context):
        executor = make_executor([ValueError("bug")])

        with pytest.raises(ValueError):
            await executor.execute_code(invocation_context, CodeExecutionInput(code="x"))

        assert len(executor.calls) == 1

    @pytest.mark.asyncio
    async def test_retry_delay_is_applied_between_attempts(self, make_executor, invocation_context, transient_error):
        executor = make_executor([transient_error], ExecutionConfig(max_retries=2, retry_delay=0.1))

        loop = asyncio.get_running_loop()
        start = loop.time()
        with pytest.raises(RetriesExhaustedError):
            await executor.execute_code(invocation_context, CodeExecutionInput(code="x"))

        assert loop.time() - start >= 0.19

    @pytest.mark.asyncio
    async def test_config_allowing_no_attempt_raises_executor_error(self, make_executor, invocation_context, ok_result):
        executor = make_executor([ok_result], ExecutionConfig.model_construct(max_retries=-1, retry_delay=0))

        with pytest.raises(ExecutorError, match="made no attempt"):
            await executor.execute_code(invocation_context, CodeExecutionInput(code="x"))

        assert executor.calls == []


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_during_retry_delay_stops_retrying(self, make_executor, invocation_context, transient_error):
        executor = make_executor([transient_error], ExecutionConfig(max_retries=5, retry_delay=10))

        task = asyncio.create_task(executor.execute_code(invocation_context, CodeExecutionInput(code="x")))
        while not executor.calls:
            await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert len(executor.calls) == 1

    @pytest.mark.asyncio
    async def test_cancel_during_attempt(self, make_executor, invocation_context):
        started = asyncio.Event()

        executor = make_executor([CodeExecutionResult()])

        async def slow_attempt(code_input, execution_id, execution_context):
            started.set()
            await asyncio.sleep(10)

        executor._execute_once = slow_attempt
        task = asyncio.create_task(executor.execute_code(invocation_context, CodeExecutionInput(code="x")))
        await started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert get_context_from_invocation(invocation_context).get_execution_results() == []


class TestExecutionContext:
    @pytest.mark.asyncio
    async def test_missing_session_is_rejected(self, make_executor, ok_result):
        executor = make_executor([ok_result])

        with pytest.raises(InvalidInvocationError):
            await executor.execute_code(InvocationContext(session=None), CodeExecutionInput(code="x"))
        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_successful_results_are_recorded(self, make_executor, invocation_context, ok_result):
        executor = make_executor([ok_result])

        await executor.execute_code(invocation_context, CodeExecutionInput(code="a"))
        await executor.execute_code(invocation_context, CodeExecutionInput(code="b"))

        history = get_context_from_invocation(invocation_context).get_execution_results()
        assert [r.code for r in history] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_explicit_execution_id(self, make_executor, invocation_context, ok_result):
        executor = make_executor([ok_result])

        result = await executor.execute_code(invocation_context, CodeExecutionInput(code="a", execution_id="exec-7"))

        assert result.execution_id == "exec-7"
        assert executor.execution_ids == ["exec-7"]
        context = get_context_from_invocation(invocation_context, "exec-7")
        assert [r.code for r in context.get_execution_results()] == ["a"]

    def test_execute_code_sync(self, make_executor, invocation_context, ok_result):
        executor = make_executor([ok_result])

        result = executor.execute_code_sync(invocation_context, CodeExecutionInput(code="a"))

        assert result.stdout == "ok\n"


class TestTimeoutResolution:
    def test_per_call_timeout_wins(self, make_executor):
        executor = make_executor([], ExecutionConfig(default_timeout=30))

        assert executor.resolve_timeout(CodeExecutionInput(code="x", timeout=2)) == 2

    def test_default_timeout(self, make_executor):
        executor = make_executor([], ExecutionConfig(default_timeout=30))

        assert executor.resolve_timeout(CodeExecutionInput(code="x")) == 30
        assert executor.resolve_timeout(CodeExecutionInput(code="x", timeout=0)) == 30

    def test_zero_default_means_unlimited(self, make_executor):
        executor = make_executor([], ExecutionConfig(default_timeout=0))

        assert executor.resolve_timeout(CodeExecutionInput(code="x")) is None


class TestLifecycle:
    def test_accessors_reflect_config(self, make_executor):
        config = ExecutionConfig(stateful=True, long_running=True, optimize_data_files=True, max_retries=4)
        executor = make_executor([], config)

        assert executor.is_stateful()
        assert executor.is_long_running()
        assert executor.optimize_data_file()
        assert executor.error_retry_attempts() == 4
        assert executor.code_block_delimiters()[0].start == "```tool_code\n"
        assert executor.execution_result_delimiters().start == "```tool_output\n"

    def test_close_is_idempotent(self, make_executor):
        executor = make_executor([])

        executor.close()
        executor.close()

        assert executor.is_closed
        assert executor.closed_count == 1

    @pytest.mark.asyncio
    async def test_closed_executor_rejects_calls(self, make_executor, invocation_context, ok_result):
        executor = make_executor([ok_result])
        executor.close()

        with pytest.raises(ExecutorError):
            await executor.execute_code(invocation_context, CodeExecutionInput(code="x"))

    def test_close_failure_raises_shutdown_error(self, make_executor):
        executor = make_executor([])

        def broken_close():
            raise OSError("device busy")

        executor._do_close = broken_close
        with pytest.raises(ShutdownError):
            executor.close()
        assert executor.is_closed

    def test_context_manager_closes(self, make_executor):
        with make_executor([]) as executor:
            assert not executor.is_closed
        assert executor.is_closed
