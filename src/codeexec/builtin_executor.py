import logging
from typing import List, Optional, Sequence

from google.genai import types
from pydantic import BaseModel, Field

from .code_executor import CodeExecutor
from .config import ExecutionConfig
from .context import CodeExecutorContext
from .exceptions import UnsupportedModelError
from .models import CodeExecutionInput, CodeExecutionResult
from .session import InvocationContext

SUPPORTED_MODEL_PREFIXES = ("gemini-2",)


class LlmRequest(BaseModel):
    """The model request the built-in executor prepares before it is sent."""

    model: Optional[str] = None
    contents: List[types.Content] = Field(default_factory=list)
    config: Optional[types.GenerateContentConfig] = None


def has_code_execution_tool(request: LlmRequest) -> bool:
    if request.config is None or not request.config.tools:
        return False
    return any(isinstance(tool, types.Tool) and tool.code_execution is not None for tool in request.config.tools)


class BuiltInExecutor(CodeExecutor):
    """Uses the model's native code execution tool.

    The code runs inside the model provider, so `execute_code` does no local work.
    The executor's job is to prepare the model request: it checks the model supports
    native code execution and declares the tool on the request.

    Args:
        config: The execution policy.
        supported_model_prefixes: Model name prefixes that support the tool.
    """

    def __init__(
        self,
        config: Optional[ExecutionConfig] = None,
        supported_model_prefixes: Sequence[str] = SUPPORTED_MODEL_PREFIXES,
    ):
        super().__init__(config)
        self.supported_model_prefixes = tuple(supported_model_prefixes)

    async def execute_code(
        self, invocation_context: InvocationContext, code_input: CodeExecutionInput
    ) -> Optional[CodeExecutionResult]:
        return None

    async def _execute_once(
        self,
        code_input: CodeExecutionInput,
        execution_id: Optional[str],
        execution_context: CodeExecutorContext,
    ) -> CodeExecutionResult:
        # The model runs the code, there is nothing to do locally
        return CodeExecutionResult(code=code_input.code, execution_id=execution_id)

    def process_llm_request(self, request: LlmRequest) -> None:
        """Declare the native code execution tool on the request, in place.

        Raises:
            UnsupportedModelError: If the request's model does not support the tool.
        """
        if not request.model or not request.model.startswith(self.supported_model_prefixes):
            raise UnsupportedModelError(request.model)

        if request.config is None:
            request.config = types.GenerateContentConfig()
        if has_code_execution_tool(request):
            return

        tools = list(request.config.tools or [])
        tools.append(types.Tool(code_execution=types.ToolCodeExecution()))
        request.config.tools = tools
        logging.debug(f"Added native code execution tool to request for {request.model}")
