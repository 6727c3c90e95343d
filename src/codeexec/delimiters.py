"""Parsing of code blocks out of model output, and formatting of results back into text."""

import logging
import re
from typing import Dict, List, Optional, Pattern, Sequence, Tuple

from pydantic import BaseModel

from .config import default_code_block_delimiters, default_execution_result_delimiters
from .exceptions import InvalidDelimiterError
from .models import CodeExecutionResult, DelimiterPair

logger = logging.getLogger(__name__)

MARKDOWN_CODE_BLOCK_RE = re.compile(r"```([a-zA-Z0-9_+-]*)\n([\s\S]*?)\n```")
_MARKER_WORD_RE = re.compile(r"[a-z0-9_]+")

# Checked in order against the words of the lower-cased start marker
_LANGUAGE_HINTS: Tuple[Tuple[Tuple[str, ...], str], ...] = (
    (("python", "py"), "python"),
    (("go", "golang"), "go"),
    (("javascript", "js", "node"), "javascript"),
    (("bash", "shell", "sh"), "bash"),
    (("tool_code",), "python"),
)


def compile_delimiter_pattern(delimiter: DelimiterPair) -> Pattern[str]:
    """Compile a non-greedy pattern capturing the text between a delimiter pair.

    Raises:
        InvalidDelimiterError: If either marker is empty or the pattern does not compile.
    """
    if not delimiter.start or not delimiter.end:
        raise InvalidDelimiterError(f"invalid delimiter pattern: empty marker in {delimiter!r}")
    try:
        return re.compile(re.escape(delimiter.start) + r"([\s\S]*?)" + re.escape(delimiter.end))
    except re.error as e:
        raise InvalidDelimiterError(f"invalid delimiter pattern: {e}") from e


def infer_language_from_delimiter(start: str) -> str:
    """Guess the language of a delimiter from its start marker, "" when unknown."""
    words = set(_MARKER_WORD_RE.findall(start.lower()))
    for needles, language in _LANGUAGE_HINTS:
        if words.intersection(needles):
            return language
    return ""


class CodeBlock(BaseModel):
    """A code block found in a piece of text.

    Attributes:
        language: The language tag, empty when unknown.
        code: The code between the markers.
        start: Offset of the first character of the match in the source text.
        end: Offset just past the last character of the match.
    """

    language: str
    code: str
    start: int
    end: int


class CodeBlockParser:
    """Extracts code blocks from text using markdown fences and configurable delimiters.

    Markdown fences are matched first, then each delimiter pair is scanned on its own.
    Blocks covering the same span are reported once, keeping the first match.

    Args:
        delimiters: Delimiter pairs to scan for. The default code block delimiters are
            used when None.

    Raises:
        InvalidDelimiterError: If a delimiter pair cannot be compiled.

    Example:
        parser = CodeBlockParser()
        blocks = parser.extract_code_blocks("```python\\nprint(1)\\n```")
        blocks[0].code  # 'print(1)'
    """

    def __init__(self, delimiters: Optional[Sequence[DelimiterPair]] = None):
        self.delimiters: List[DelimiterPair] = (
            list(delimiters) if delimiters is not None else default_code_block_delimiters()
        )
        self._patterns = [(d, compile_delimiter_pattern(d)) for d in self.delimiters]

    def extract_code_blocks(self, text: str) -> List[CodeBlock]:
        blocks = self._extract_markdown_blocks(text)
        blocks.extend(self._extract_delimiter_blocks(text))
        return self._deduplicate(blocks)

    def _extract_markdown_blocks(self, text: str) -> List[CodeBlock]:
        return [
            CodeBlock(language=m.group(1), code=m.group(2), start=m.start(), end=m.end())
            for m in MARKDOWN_CODE_BLOCK_RE.finditer(text)
        ]

    def _extract_delimiter_blocks(self, text: str) -> List[CodeBlock]:
        blocks: List[CodeBlock] = []
        for delimiter, pattern in self._patterns:
            language = infer_language_from_delimiter(delimiter.start)
            for m in pattern.finditer(text):
                blocks.append(CodeBlock(language=language, code=m.group(1), start=m.start(), end=m.end()))
        return blocks

    @staticmethod
    def _deduplicate(blocks: List[CodeBlock]) -> List[CodeBlock]:
        seen: Dict[Tuple[int, int], bool] = {}
        result: List[CodeBlock] = []
        for block in blocks:
            key = (block.start, block.end)
            if key not in seen:
                seen[key] = True
                result.append(block)
        return result

    @staticmethod
    def filter_by_language(blocks: List[CodeBlock], *languages: str) -> List[CodeBlock]:
        """Keep the blocks whose language is one of `languages`, compared case-insensitively.

        All blocks are returned when no language is given.
        """
        if not languages:
            return blocks
        wanted = {language.lower() for language in languages}
        return [block for block in blocks if block.language.lower() in wanted]


class ExecutionResultFormatter:
    """Renders execution results back into conversation text.

    Args:
        delimiters: Markers wrapped around each formatted result. The default
            execution result delimiters are used when None.
    """

    def __init__(self, delimiters: Optional[DelimiterPair] = None):
        self.delimiters = delimiters or default_execution_result_delimiters()
        self._pattern = compile_delimiter_pattern(self.delimiters)

    @staticmethod
    def primary_content(result: CodeExecutionResult) -> str:
        """The text a result contributes to the conversation: stdout on success,
        stderr followed by the execution error on failure."""
        if result.exit_code == 0 and result.error is None:
            return result.stdout

        parts = []
        if result.stderr:
            parts.append(result.stderr)
        if result.error is not None:
            parts.append(f"Execution error: {result.error.message}")
        return "\n".join(parts)

    def format_result(self, result: CodeExecutionResult) -> str:
        """Wrap the result's primary content in the delimiters.

        A manifest of the output files follows the closing delimiter on a new line,
        so the wrapped body is exactly the primary content.
        """
        output = self.delimiters.start + self.primary_content(result) + self.delimiters.end
        if result.output_files:
            lines = [f"[Generated {len(result.output_files)} output file(s)]"]
            lines.extend(f"- {f.name} ({f.size} bytes)" for f in result.output_files)
            output += "\n" + "\n".join(lines)
        return output

    @staticmethod
    def format_inline_result(result: CodeExecutionResult) -> str:
        if result.exit_code == 0 and result.error is None:
            if result.stdout.strip():
                return result.stdout.strip()
            return "Execution completed successfully"

        if result.stderr.strip():
            return f"error: {result.stderr.strip()}"

        if result.error is not None:
            return f"execution failed: {result.error.message}"

        return "Execution failed"

    def extract_execution_results(self, text: str) -> List[str]:
        return [m.group(1) for m in self._pattern.finditer(text)]
