from datetime import datetime, timezone
import mimetypes
import os
from pathlib import Path
import traceback
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, Field, model_validator

_MIME_OVERRIDES = {
    ".py": "text/x-python",
    ".go": "text/x-go",
    ".js": "text/javascript",
    ".csv": "text/csv",
    ".json": "application/json",
    ".txt": "text/plain",
}

_TEXT_APPLICATION_TYPES = {"application/json", "application/xml", "application/javascript"}


def infer_mime_type(filename: str, content: bytes) -> str:
    """Infer a MIME type from the file extension, falling back to a content sniff."""
    ext = os.path.splitext(filename)[1].lower()
    if ext in _MIME_OVERRIDES:
        return _MIME_OVERRIDES[ext]

    guessed, _ = mimetypes.guess_type(filename)
    if guessed:
        return guessed

    # NUL bytes in the first block are a reliable sign of binary content
    if b"\x00" in content[:512]:
        return "application/octet-stream"
    return "text/plain"


class DelimiterPair(BaseModel):
    """A start and end marker used to find, or to emit, a block inside free-form text.

    Example:
        DelimiterPair(start="```python\\n", end="\\n```")
    """

    start: str
    end: str


class ExecutionException(BaseModel):
    """A serializable representation of an error that occurred during code execution.

    This captures the type, message and optionally the traceback of an exception so
    that it can be stored in the session state and rendered back into the
    conversation.

    Attributes:
        type: The name of the exception class (e.g., "ExecutionTimeoutError").
        message: The string representation of the exception message.
        traceback: Optional string containing the formatted traceback information.
    """

    type: str
    message: str
    traceback: Optional[str] = None

    @classmethod
    def from_exception(cls, e: Union[BaseException, str], include_traceback: bool = False):
        """Create an ExecutionException instance from a Python exception or error message.

        Args:
            e: Either an Exception instance or an error message string.
            include_traceback: Whether to include the traceback information if available.

        Returns:
            ExecutionException: A new instance containing the exception details.
        """
        if isinstance(e, str):
            return cls(type="GenericError", message=e, traceback=None)
        tb_str = None
        if include_traceback and e.__traceback__:
            tb_str = "".join(traceback.format_exception(type(e), value=e, tb=e.__traceback__))
        return cls(type=type(e).__name__, message=str(e), traceback=tb_str)

    def __str__(self):
        return self.message


class CodeExecutionFile(BaseModel):
    """A file handed to, or produced by, an executor.

    Attributes:
        name: The file name, including any relative path.
        content: The raw file content.
        mime_type: The MIME type, inferred from the name and content when omitted.
        size: The declared size in bytes, defaults to the content length.
    """

    name: str
    content: bytes = b""
    mime_type: str = ""
    size: int = -1

    @model_validator(mode="after")
    def _fill_defaults(self):
        if self.size < 0:
            self.size = len(self.content)
        if not self.mime_type:
            self.mime_type = infer_mime_type(self.name, self.content)
        return self

    @classmethod
    def from_path(cls, path: Union[str, Path]) -> "CodeExecutionFile":
        path = Path(path)
        return cls(name=path.name, content=path.read_bytes())

    def write_to(self, path: Union[str, Path]) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(self.content)

    def is_text(self) -> bool:
        return (
            not self.mime_type or self.mime_type.startswith("text/") or self.mime_type in _TEXT_APPLICATION_TYPES
        )

    def is_binary(self) -> bool:
        return not self.is_text()

    def __str__(self):
        return f"CodeExecutionFile(name={self.name}, size={self.size}, mime_type={self.mime_type})"


class CodeExecutionInput(BaseModel):
    """The input of a single code execution call.

    Attributes:
        code: The code to execute.
        language: Language hint (e.g. "python", "go", "javascript", "bash"). Executors
            default to Python when it is empty or unknown.
        execution_id: Correlates calls that belong to one stateful execution session.
        working_directory: Overrides the executor's working directory for this call.
        environment: Extra environment variables for the executed code.
        timeout: Per call timeout in seconds. The executor default applies when None.
        input_files: Files made available to the code before it runs.
    """

    code: str
    language: str = ""
    execution_id: Optional[str] = None
    working_directory: Optional[str] = None
    environment: Dict[str, str] = Field(default_factory=dict)
    timeout: Optional[float] = None
    input_files: List[CodeExecutionFile] = Field(default_factory=list)


class CodeExecutionResult(BaseModel):
    """Represents the complete outcome of executing a code snippet.

    A result is produced once per call and is appended, never mutated, into the
    execution history kept by the CodeExecutorContext.

    Attributes:
        code: The code that was executed.
        stdout: Captured standard output.
        stderr: Captured standard error.
        exit_code: The process exit code (0 indicates success).
        error: Infrastructure level error, separate from stderr.
        timed_out: Whether the execution exceeded its time limit.
        output_files: Files generated during the execution.
        duration_seconds: Total elapsed time including retries.
        execution_id: The execution session the result belongs to.
        timestamp: When the result was produced (UTC).
    """

    code: str = ""
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    error: Optional[ExecutionException] = None
    timed_out: bool = False
    output_files: List[CodeExecutionFile] = Field(default_factory=list)
    duration_seconds: Optional[float] = None
    execution_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and self.error is None
