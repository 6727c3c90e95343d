"""Glue between a conversation turn and a code executor.

On the request side, data files attached by the user are staged as input files and,
when the executor optimizes data files, explored before the model sees them. On the
response side, the first code block of the model output is executed and the result is
rendered back into text.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

from google.genai import types
from pydantic import BaseModel, Field

from .builtin_executor import BuiltInExecutor, LlmRequest
from .code_executor import CodeExecutor
from .context import CodeExecutorContext
from .delimiters import ExecutionResultFormatter
from .exceptions import InvalidInvocationError, RetriesExhaustedError
from .models import CodeExecutionFile, CodeExecutionInput, CodeExecutionResult
from .session import InvocationContext, State
from .utils import DATA_FILE_UTIL_MAP, CodeExecutionUtils

logger = logging.getLogger(__name__)


class CodeExecutionOutcome(BaseModel):
    """What a single code execution contributed to the conversation.

    Attributes:
        prefix: Model text preceding the executed code block.
        code: The executed code.
        result: The execution result, failures included.
        result_text: The result rendered for the model.
        formatted_result: The result wrapped in the execution result delimiters.
        state_delta: The execution context state to merge into the session.
    """

    prefix: str = ""
    code: str
    result: CodeExecutionResult
    result_text: str
    formatted_result: str
    state_delta: Dict[str, Any] = Field(default_factory=dict)


def get_or_set_execution_id(
    executor: CodeExecutor, invocation_context: InvocationContext, execution_context: CodeExecutorContext
) -> Optional[str]:
    """Return the id shared by stateful executions, None for stateless executors.

    The session id becomes the execution id when the context has none yet.
    """
    if not executor.is_stateful():
        return None

    execution_id = execution_context.get_execution_id()
    if not execution_id:
        execution_id = invocation_context.session.id
        execution_context.set_execution_id(execution_id)
    return execution_id


class CodeExecutionProcessor:
    def __init__(self, executor: CodeExecutor):
        self.executor = executor
        self.formatter = ExecutionResultFormatter(executor.execution_result_delimiters())

    def _context_for(self, invocation_context: Optional[InvocationContext]) -> CodeExecutorContext:
        if invocation_context is None or invocation_context.session is None:
            raise InvalidInvocationError("code execution requires an invocation context with a session")
        return CodeExecutorContext(State(invocation_context.session.state))

    def _retries_exhausted(self, invocation_context: InvocationContext, execution_context: CodeExecutorContext) -> bool:
        error_count = execution_context.get_error_count(invocation_context.invocation_id)
        if error_count >= self.executor.error_retry_attempts():
            logger.info(
                f"Skipping code execution for invocation {invocation_context.invocation_id}: "
                f"{error_count} error(s) reached the retry limit"
            )
            return True
        return False

    async def _run(
        self,
        invocation_context: InvocationContext,
        execution_context: CodeExecutorContext,
        code_input: CodeExecutionInput,
        prefix: str = "",
    ) -> CodeExecutionOutcome:
        try:
            result = await self.executor.execute_code(invocation_context, code_input)
        except RetriesExhaustedError as e:
            result = e.result
            execution_context.add_execution_result(result)

        # Failed attempts were already counted by the executor
        invocation_id = invocation_context.invocation_id
        if result.succeeded and result.stderr:
            execution_context.increment_error_count(invocation_id)
        elif result.succeeded:
            execution_context.reset_error_count(invocation_id)

        return CodeExecutionOutcome(
            prefix=prefix,
            code=code_input.code,
            result=result,
            result_text=CodeExecutionUtils.build_code_execution_result_text(result),
            formatted_result=self.formatter.format_result(result),
            state_delta=execution_context.get_state_delta(),
        )

    async def process_model_output(
        self, invocation_context: InvocationContext, text: str
    ) -> Optional[CodeExecutionOutcome]:
        """Execute the first code block found in the model output.

        Returns:
            The outcome, or None when the executor is built-in, the invocation has
            reached its error limit or the text holds no code block.

        Raises:
            InvalidInvocationError: If the invocation or its session is missing.
        """
        if isinstance(self.executor, BuiltInExecutor):
            return None

        execution_context = self._context_for(invocation_context)
        if self._retries_exhausted(invocation_context, execution_context):
            return None

        extracted = CodeExecutionUtils.extract_code_and_truncate(text, self.executor.code_block_delimiters())
        if extracted is None:
            return None

        code_input = CodeExecutionInput(
            code=extracted.code,
            language=extracted.language,
            input_files=execution_context.get_input_files(),
            execution_id=get_or_set_execution_id(self.executor, invocation_context, execution_context),
        )
        return await self._run(invocation_context, execution_context, code_input, prefix=extracted.prefix)

    def extract_and_replace_inline_files(
        self, execution_context: CodeExecutorContext, contents: List[types.Content]
    ) -> List[CodeExecutionFile]:
        """Move supported inline data out of user contents into the context's input files.

        Each inline data part is replaced by a text part naming the staged file.

        Returns:
            Every input file known to the context, previously staged ones included.
        """
        all_input_files = execution_context.get_input_files()
        saved_file_names = {file.name for file in all_input_files}

        for i, content in enumerate(contents):
            if content.role != "user" or not content.parts:
                continue
            for j, part in enumerate(content.parts):
                if part.inline_data is None or part.inline_data.mime_type not in DATA_FILE_UTIL_MAP:
                    continue

                mime_type = part.inline_data.mime_type
                file_name = f"data_{i + 1}_{j + 1}{DATA_FILE_UTIL_MAP[mime_type].extension}"
                content.parts[j] = types.Part(text=f"\nAvailable file: `{file_name}`\n")

                if file_name not in saved_file_names:
                    file = CodeExecutionFile(name=file_name, content=part.inline_data.data or b"", mime_type=mime_type)
                    execution_context.add_input_files(file)
                    all_input_files.append(file)
                    saved_file_names.add(file_name)

        return all_input_files

    async def preprocess_data_files(
        self, invocation_context: InvocationContext, files: Sequence[CodeExecutionFile]
    ) -> List[CodeExecutionOutcome]:
        """Run the exploration code for each data file that was not processed yet.

        Files of unsupported types are skipped. Each explored file is marked processed.
        """
        if isinstance(self.executor, BuiltInExecutor) or not self.executor.optimize_data_file():
            return []

        execution_context = self._context_for(invocation_context)
        if self._retries_exhausted(invocation_context, execution_context):
            return []

        processed_file_names = set(execution_context.get_processed_file_names())
        outcomes = []
        for file in files:
            if file.name in processed_file_names:
                continue
            code = CodeExecutionUtils.get_data_file_preprocessing_code(file)
            if code is None:
                logger.debug(f"No exploration code for {file.name} ({file.mime_type})")
                continue

            code_input = CodeExecutionInput(
                code=code,
                language="python",
                input_files=[file],
                execution_id=get_or_set_execution_id(self.executor, invocation_context, execution_context),
            )
            outcome = await self._run(
                invocation_context, execution_context, code_input, prefix=f"Processing input file: `{file.name}`"
            )
            if file.name not in execution_context.get_processed_file_names():
                execution_context.add_processed_file_names(file.name)
            processed_file_names.add(file.name)
            outcome.state_delta = execution_context.get_state_delta()
            outcomes.append(outcome)
        return outcomes

    async def preprocess_request(
        self, invocation_context: InvocationContext, request: LlmRequest
    ) -> List[CodeExecutionOutcome]:
        """Prepare a model request for code execution.

        A built-in executor declares its tool on the request. Otherwise inline data
        files are staged and, when the executor optimizes data files, explored; the
        exploration code and its result are appended to the request contents.
        """
        if isinstance(self.executor, BuiltInExecutor):
            self.executor.process_llm_request(request)
            return []
        if not self.executor.optimize_data_file():
            return []

        execution_context = self._context_for(invocation_context)
        if self._retries_exhausted(invocation_context, execution_context):
            return []

        all_input_files = self.extract_and_replace_inline_files(execution_context, request.contents)
        outcomes = await self.preprocess_data_files(invocation_context, all_input_files)
        for outcome in outcomes:
            request.contents.append(
                types.Content(
                    role="model",
                    parts=[
                        types.Part(text=outcome.prefix),
                        CodeExecutionUtils.build_executable_code_part(outcome.code),
                    ],
                )
            )
            request.contents.append(
                types.Content(role="model", parts=[CodeExecutionUtils.build_code_execution_result_part(outcome.result)])
            )
        return outcomes
