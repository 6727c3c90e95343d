"""Per-session code execution state.

The state lives in the session's state map under a single reserved key. Inside the
package it is handled as a typed `CodeExecutorState`; it is converted to and from a
plain dict only when read from or written to the session.
"""

import logging
import threading
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .exceptions import ExecutorError
from .models import CodeExecutionFile, CodeExecutionResult
from .session import InvocationContext, State

CONTEXT_KEY = "_code_execution_context"
SESSION_ID_KEY = "execution_session_id"
PROCESSED_FILE_NAMES_KEY = "processed_input_files"
INPUT_FILE_KEY = "_code_executor_input_files"
ERROR_COUNT_KEY = "_code_executor_error_counts"
CODE_EXECUTION_RESULTS_KEY = "_code_execution_results"


class CodeExecutorState(BaseModel):
    """The typed contents of the reserved session state key."""

    model_config = ConfigDict(populate_by_name=True)

    execution_id: Optional[str] = Field(default=None, alias=SESSION_ID_KEY)
    processed_file_names: List[str] = Field(default_factory=list, alias=PROCESSED_FILE_NAMES_KEY)
    input_files: List[CodeExecutionFile] = Field(default_factory=list, alias=INPUT_FILE_KEY)
    error_counts: Dict[str, int] = Field(default_factory=dict, alias=ERROR_COUNT_KEY)
    execution_results: Dict[str, List[CodeExecutionResult]] = Field(
        default_factory=dict, alias=CODE_EXECUTION_RESULTS_KEY
    )


class CodeExecutorContext:
    """Manages persistent state for code execution sessions.

    Tracks the execution id, input files, processed file names, per invocation error
    counts and the execution history. The typed state is cached together with the
    map it was read from. Accessors reload it only when the session holds a different
    map, which is the case after another context over the same session wrote to it,
    so two contexts see each other's committed changes. Mutations serialize only the
    fields they touch. Accessors on one context are serialized by a lock;
    read-modify-write sequences spanning two contexts are not.

    Args:
        session_state: The session state view to read from and write into.
    """

    def __init__(self, session_state: State):
        self._session_state = session_state
        self._lock = threading.RLock()
        self._state: Optional[CodeExecutorState] = None
        self._raw: Optional[Dict[str, Any]] = None
        if not session_state.has(CONTEXT_KEY):
            self._store(CodeExecutorState())

    def _load(self) -> CodeExecutorState:
        raw = self._session_state.get(CONTEXT_KEY) or {}
        if self._state is not None and raw is self._raw:
            return self._state
        try:
            state = CodeExecutorState.model_validate(raw)
        except ValidationError as e:
            raise ExecutorError(f"corrupt code execution state under {CONTEXT_KEY!r}: {e}") from e
        self._state, self._raw = state, raw
        return state

    def _store(self, state: CodeExecutorState, *fields: str) -> None:
        """Write the state back, serializing only `fields` when given."""
        if fields and self._raw is not None:
            raw = dict(self._raw)
            raw.update(state.model_dump(by_alias=True, include=set(fields)))
        else:
            raw = state.model_dump(by_alias=True)
        self._publish(state, raw)

    def _publish(self, state: CodeExecutorState, raw: Dict[str, Any]) -> None:
        self._session_state.set(CONTEXT_KEY, raw)
        self._state, self._raw = state, raw

    def get_state_delta(self) -> Dict[str, Any]:
        """Return the state to merge back into the session, keyed under the reserved key."""
        with self._lock:
            return {CONTEXT_KEY: dict(self._session_state.get(CONTEXT_KEY) or {})}

    def get_execution_id(self) -> Optional[str]:
        with self._lock:
            return self._load().execution_id

    def set_execution_id(self, execution_id: str) -> None:
        with self._lock:
            state = self._load()
            state.execution_id = execution_id
            self._store(state, "execution_id")

    def get_processed_file_names(self) -> List[str]:
        with self._lock:
            return list(self._load().processed_file_names)

    def add_processed_file_names(self, *file_names: str) -> None:
        """Append file names to the processed list. Duplicates are kept."""
        with self._lock:
            state = self._load()
            state.processed_file_names.extend(file_names)
            self._store(state, "processed_file_names")

    def get_input_files(self) -> List[CodeExecutionFile]:
        with self._lock:
            return list(self._load().input_files)

    def add_input_files(self, *files: CodeExecutionFile) -> None:
        with self._lock:
            state = self._load()
            state.input_files.extend(files)
            self._store(state, "input_files")

    def clear_input_files(self, *files: CodeExecutionFile) -> None:
        """Clear the pending input files together with the processed file names.

        The arguments are accepted for call-site symmetry with `add_input_files`
        and do not narrow what gets cleared.
        """
        with self._lock:
            state = self._load()
            state.input_files = []
            state.processed_file_names = []
            self._store(state, "input_files", "processed_file_names")

    def get_error_count(self, invocation_id: str) -> int:
        with self._lock:
            return self._load().error_counts.get(invocation_id, 0)

    def increment_error_count(self, invocation_id: str) -> int:
        """Increment and return the error count of an invocation."""
        with self._lock:
            state = self._load()
            count = state.error_counts.get(invocation_id, 0) + 1
            state.error_counts[invocation_id] = count
            self._store(state, "error_counts")
            return count

    def reset_error_count(self, invocation_id: str) -> None:
        with self._lock:
            state = self._load()
            if state.error_counts.pop(invocation_id, None) is not None:
                self._store(state, "error_counts")

    def get_execution_results(self, execution_id: Optional[str] = None) -> List[CodeExecutionResult]:
        """Return the history of an execution id, the context's own id by default."""
        with self._lock:
            state = self._load()
            key = execution_id or state.execution_id
            if not key:
                return []
            return list(state.execution_results.get(key, []))

    def update_execution_result(self, execution_id: str, code: str, stdout: str, stderr: str) -> None:
        """Append a result built from its parts to the history of `execution_id`."""
        self.add_execution_result(
            CodeExecutionResult(code=code, stdout=stdout, stderr=stderr, execution_id=execution_id)
        )

    def add_execution_result(self, result: CodeExecutionResult) -> None:
        """Append a result to the history of its execution id.

        The result's own execution id is used when present, the context's otherwise.

        Raises:
            ExecutorError: If neither the result nor the context has an execution id.
        """
        with self._lock:
            state = self._load()
            execution_id = result.execution_id or state.execution_id
            if not execution_id:
                raise ExecutorError("cannot record an execution result without an execution id")
            if result.execution_id != execution_id:
                result = result.model_copy(update={"execution_id": execution_id})
            state.execution_results.setdefault(execution_id, []).append(result)

            # Earlier entries are already serialized, only the new one is dumped
            raw = dict(self._raw or {})
            raw_results = dict(raw.get(CODE_EXECUTION_RESULTS_KEY) or {})
            raw_results[execution_id] = [*raw_results.get(execution_id, []), result.model_dump(by_alias=True)]
            raw[CODE_EXECUTION_RESULTS_KEY] = raw_results
            self._publish(state, raw)


def get_context_from_invocation(
    invocation_context: Optional[InvocationContext], execution_id: Optional[str] = None
) -> Optional[CodeExecutorContext]:
    """Resolve the CodeExecutorContext for an invocation.

    The context is backed by the session's state map, so its changes persist across
    invocations of the same session. The execution id is set to `execution_id`, or
    to the invocation id when that is empty.

    Returns:
        The context, or None when the invocation or its session is missing.
    """
    if invocation_context is None or invocation_context.session is None:
        logging.debug("No invocation session available, code executor context not resolved")
        return None

    context = CodeExecutorContext(State(invocation_context.session.state))
    if execution_id:
        context.set_execution_id(execution_id)
    elif invocation_context.invocation_id:
        context.set_execution_id(invocation_context.invocation_id)
    return context
