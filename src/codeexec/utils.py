import base64
import binascii
from pathlib import PurePath
import re
from typing import Dict, NamedTuple, Optional, Sequence

from google.genai import types
from pydantic import BaseModel

from .delimiters import infer_language_from_delimiter
from .exceptions import InvalidDelimiterError
from .models import CodeExecutionFile, CodeExecutionResult, DelimiterPair


class DataFileUtil(BaseModel):
    """How a data file of one MIME type is named and loaded for exploration."""

    extension: str
    loader_code_template: str


DATA_FILE_UTIL_MAP: Dict[str, DataFileUtil] = {
    "text/csv": DataFileUtil(extension=".csv", loader_code_template="pd.read_csv({file_name!r})"),
}

DATA_FILE_HELPER_LIB = '''
import pandas as pd

def crop(s: str, max_chars: int = 64) -> str:
  """Crops a string to max_chars characters."""
  return s[: max_chars - 3] + '...' if len(s) > max_chars else s


def explore_df(df: pd.DataFrame) -> None:
  """Prints some information about a pandas DataFrame."""

  with pd.option_context(
      'display.max_columns', None, 'display.expand_frame_repr', False
  ):
    # Print the column names to never encounter KeyError when selecting one.
    df_dtypes = df.dtypes

    # Obtain information about data types and missing values.
    df_nulls = (len(df) - df.isnull().sum()).apply(
        lambda x: f'{x} / {df.shape[0]} non-null'
    )

    # Explore unique total values in columns using `.unique()`.
    df_unique_count = df.apply(lambda x: len(x.unique()))

    # Explore unique values in columns using `.unique()`.
    df_unique = df.apply(lambda x: crop(str(list(x.unique()))))

    df_info = pd.concat(
        (
            df_dtypes.rename('Dtype'),
            df_nulls.rename('Non-Null Count'),
            df_unique_count.rename('Unique Values Count'),
            df_unique.rename('Unique Values'),
        ),
        axis=1,
    )
    df_info.index.name = 'Columns'
    print(f"""Total rows: {df.shape[0]}
Total columns: {df.shape[1]}

{df_info}""")
'''

_NON_IDENTIFIER_RE = re.compile(r"[^a-zA-Z0-9_]")


class ExtractedCode(NamedTuple):
    prefix: str
    code: str
    language: str


def normalize_variable_name(file_name: str) -> str:
    """Turn a file name into a Python identifier, e.g. "2024 sales.csv" -> "_2024_sales"."""
    var_name = _NON_IDENTIFIER_RE.sub("_", PurePath(file_name).stem) or "df"
    if var_name[0].isdigit():
        var_name = "_" + var_name
    return var_name


class CodeExecutionUtils:
    """Helpers that move code and execution results between model content and executors."""

    @staticmethod
    def get_encoded_file_content(data: bytes) -> bytes:
        """Return the content base64 encoded, unless it already is."""
        try:
            if base64.b64encode(base64.b64decode(data, validate=True)) == data:
                return data
        except binascii.Error:
            pass
        return base64.b64encode(data)

    @staticmethod
    def extract_code_and_truncate(text: str, delimiters: Sequence[DelimiterPair]) -> Optional[ExtractedCode]:
        """Extract the first delimited code block of `text`, dropping everything after it.

        Returns:
            The text before the block, the code and the language inferred from the
            matched start marker, or None when there is no non-empty code block.

        Raises:
            InvalidDelimiterError: If no delimiters are given.
        """
        if not delimiters:
            raise InvalidDelimiterError("at least one code block delimiter is required")

        leading = "|".join(re.escape(d.start) for d in delimiters)
        trailing = "|".join(re.escape(d.end) for d in delimiters)
        pattern = re.compile(
            rf"(?P<prefix>.*?)(?P<start>{leading})(?P<code>.*?)(?:{trailing})(?P<suffix>.*?)$", re.DOTALL
        )
        match = pattern.search(text)
        if match is None or not match.group("code"):
            return None
        return ExtractedCode(
            prefix=match.group("prefix"),
            code=match.group("code"),
            language=infer_language_from_delimiter(match.group("start")),
        )

    @staticmethod
    def extract_code_and_truncate_content(
        content: Optional[types.Content], delimiters: Sequence[DelimiterPair]
    ) -> Optional[str]:
        """Extract the first code block of a model content and truncate its parts after it.

        An executable code part without a result following it wins over code blocks in
        the text parts. The content is modified in place.
        """
        if content is None or not content.parts:
            return None

        parts = content.parts
        for i, part in enumerate(parts):
            if part.executable_code is not None and (
                i == len(parts) - 1 or parts[i + 1].code_execution_result is None
            ):
                content.parts = parts[: i + 1]
                return part.executable_code.code

        text_parts = [part for part in parts if part.text]
        if not text_parts:
            return None

        extracted = CodeExecutionUtils.extract_code_and_truncate(
            "\n".join(part.text for part in text_parts), delimiters
        )
        if extracted is None:
            return None

        new_parts = []
        if extracted.prefix:
            new_parts.append(text_parts[0].model_copy(update={"text": extracted.prefix}))
        new_parts.append(CodeExecutionUtils.build_executable_code_part(extracted.code))
        content.parts = new_parts
        return extracted.code

    @staticmethod
    def build_executable_code_part(code: str) -> types.Part:
        return types.Part(executable_code=types.ExecutableCode(code=code, language=types.Language.PYTHON))

    @staticmethod
    def build_code_execution_result_text(result: CodeExecutionResult) -> str:
        """Render a result as the text the model reads back.

        Failures render the captured stderr, or the error when stderr is empty.
        """
        if result.stderr:
            return result.stderr
        if not result.succeeded:
            return f"Execution error: {result.error.message if result.error else f'exit code {result.exit_code}'}"

        final_result = []
        if result.stdout or result.output_files:
            final_result.append(f"Code execution result:\n{result.stdout}\n")
        if result.output_files:
            final_result.append("Saved artifacts:\n" + ",".join(f.name for f in result.output_files))
        return "\n\n".join(final_result)

    @staticmethod
    def build_code_execution_result_part(result: CodeExecutionResult) -> types.Part:
        outcome = (
            types.Outcome.OUTCOME_OK if result.succeeded and not result.stderr else types.Outcome.OUTCOME_FAILED
        )
        return types.Part(
            code_execution_result=types.CodeExecutionResult(
                outcome=outcome, output=CodeExecutionUtils.build_code_execution_result_text(result)
            )
        )

    @staticmethod
    def convert_code_execution_parts(
        content: types.Content,
        code_block_delimiter: DelimiterPair,
        execution_result_delimiters: DelimiterPair,
    ) -> None:
        """Replace a trailing code or result part with its delimited text form, in place.

        A single result part is converted and the content is attributed to the user,
        since models only accept execution results in user turns.
        """
        if not content.parts:
            return

        last = content.parts[-1]
        if last.executable_code is not None:
            content.parts[-1] = types.Part(
                text=code_block_delimiter.start + (last.executable_code.code or "") + code_block_delimiter.end
            )
        elif len(content.parts) == 1 and last.code_execution_result is not None:
            content.parts[-1] = types.Part(
                text=execution_result_delimiters.start
                + (last.code_execution_result.output or "")
                + execution_result_delimiters.end
            )
            content.role = "user"

    @staticmethod
    def get_data_file_preprocessing_code(file: CodeExecutionFile) -> Optional[str]:
        """Return code that loads a data file and explores it, None for unsupported types."""
        util = DATA_FILE_UTIL_MAP.get(file.mime_type)
        if util is None:
            return None

        var_name = normalize_variable_name(file.name)
        loader_code = util.loader_code_template.format(file_name=file.name)
        return f"""
{DATA_FILE_HELPER_LIB}

# Load the dataframe.
{var_name} = {loader_code}

# Use `explore_df` to guide my analysis.
explore_df({var_name})
"""
