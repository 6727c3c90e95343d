"""Pytest fixtures for codeexec tests."""

from pathlib import Path
import tempfile
from typing import List, Optional

import pytest

from codeexec import (
    CodeExecutionInput,
    CodeExecutionResult,
    CodeExecutor,
    ExecutionConfig,
    InvocationContext,
    Session,
)
from codeexec.context import CodeExecutorContext
from codeexec.exceptions import ExecutionError


class ScriptedExecutor(CodeExecutor):
    """Replays a scripted list of outcomes, one per attempt.

    Each entry is either a CodeExecutionResult to return or an exception to raise.
    The last entry repeats once the script runs out.
    """

    def __init__(self, outcomes: List, config: Optional[ExecutionConfig] = None):
        super().__init__(config)
        self.outcomes = list(outcomes)
        self.calls: List[CodeExecutionInput] = []
        self.execution_ids: List[Optional[str]] = []
        self.closed_count = 0

    async def _execute_once(self, code_input, execution_id, execution_context: CodeExecutorContext):
        self.calls.append(code_input)
        self.execution_ids.append(execution_id)
        outcome = self.outcomes[min(len(self.calls), len(self.outcomes)) - 1]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    def _do_close(self):
        self.closed_count += 1


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def session():
    return Session(app_name="test-app", user_id="test-user")


@pytest.fixture
def invocation_context(session):
    return InvocationContext(invocation_id="inv-1", session=session)


@pytest.fixture
def fast_config():
    """Retry policy without delays, so failing attempts don't slow tests down."""
    return ExecutionConfig(max_retries=2, retry_delay=0)


@pytest.fixture
def make_executor(fast_config):
    """Factory for ScriptedExecutor instances, using the fast retry policy by default."""

    def _make(outcomes, config: Optional[ExecutionConfig] = None) -> ScriptedExecutor:
        return ScriptedExecutor(outcomes, config or fast_config)

    return _make


@pytest.fixture
def ok_result():
    return CodeExecutionResult(stdout="ok\n")


@pytest.fixture
def transient_error():
    return ExecutionError("container went away")
