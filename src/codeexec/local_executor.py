import asyncio
import logging
import os
from pathlib import Path
import shutil
import signal
import tempfile
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import shortuuid

from .code_executor import CodeExecutor
from .config import ExecutionConfig, LocalExecutorConfig
from .context import CodeExecutorContext
from .exceptions import ExecutionError, ExecutionTimeoutError, SpawnError, UnsafeExecutionNotAllowedError
from .models import CodeExecutionFile, CodeExecutionInput, CodeExecutionResult

logger = logging.getLogger(__name__)

DRIVER_PREFIX = "codeexec_driver_"
IGNORED_SUFFIXES = (".pyc", ".pyo", ".tmp")

_FileSnapshot = Dict[str, Tuple[int, int]]


def wrap_go_program(code: str) -> str:
    """Wrap bare Go statements in a main package, leaving full programs untouched."""
    if "package main" in code:
        return code
    imports = 'import "fmt"\n\n' if "fmt." in code else ""
    return f"package main\n\n{imports}func main() {{\n{code}\n}}\n"


def is_output_candidate(name: str) -> bool:
    """Whether a file in the working directory may be reported as an output file."""
    return not (name.startswith(".") or name.endswith(IGNORED_SUFFIXES) or name.startswith(DRIVER_PREFIX))


class LocalExecutor(CodeExecutor):
    """Executes code in the local environment.

    WARNING:
        This executor is NOT safe for running untrusted code. The code runs with the
        same privileges as the calling process. It must be enabled explicitly with
        `LocalExecutorConfig(allow_unsafe=True)`.

    Code runs as a subprocess in the working directory: Python, Go and JavaScript
    are written to a driver file and run with their toolchain, shell code is piped
    to bash. Files that appear or change in the working directory during the call
    are returned as output files.

    Args:
        config: The execution policy.
        local_config: Backend settings. `allow_unsafe` must be True.

    Raises:
        UnsafeExecutionNotAllowedError: If unsafe execution was not enabled.
    """

    def __init__(self, config: Optional[ExecutionConfig] = None, local_config: Optional[LocalExecutorConfig] = None):
        super().__init__(config)
        self.local_config = local_config or LocalExecutorConfig()
        if not self.local_config.allow_unsafe:
            raise UnsafeExecutionNotAllowedError()

        self._temp_dir: Optional[Path] = None
        if self.local_config.work_dir is not None:
            self.work_dir = Path(self.local_config.work_dir)
        else:
            self._temp_dir = Path(tempfile.mkdtemp(prefix="codeexec-local-"))
            self.work_dir = self._temp_dir
            logger.info(f"Created temporary working directory {self._temp_dir}")

    async def _execute_once(
        self,
        code_input: CodeExecutionInput,
        execution_id: Optional[str],
        execution_context: CodeExecutorContext,
    ) -> CodeExecutionResult:
        work_dir = Path(code_input.working_directory) if code_input.working_directory else self.work_dir
        try:
            work_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ExecutionError(f"failed to create working directory: {e}") from e

        for file in code_input.input_files:
            try:
                file.write_to(work_dir / file.name)
            except OSError as e:
                raise ExecutionError(f"failed to write input file {file.name}: {e}") from e
            execution_context.add_processed_file_names(file.name)

        before = self._snapshot(work_dir)
        language = code_input.language.strip().lower()
        logger.debug(f"Dispatching {language or 'unspecified'} code for execution {execution_id} in {work_dir}")

        if language in ("go", "golang"):
            result = await self._run_go(code_input, work_dir)
        elif language in ("javascript", "js", "node"):
            result = await self._run_javascript(code_input, work_dir)
        elif language in ("bash", "shell", "sh"):
            result = await self._run_bash(code_input, work_dir)
        else:
            result = await self._run_python(code_input, work_dir)

        result.output_files = self._find_output_files(work_dir, before)
        return result

    async def _run_python(self, code_input: CodeExecutionInput, work_dir: Path) -> CodeExecutionResult:
        return await self._run_driver(
            code_input, work_dir, ".py", code_input.code, lambda driver: [self.local_config.python_command, driver]
        )

    async def _run_go(self, code_input: CodeExecutionInput, work_dir: Path) -> CodeExecutionResult:
        return await self._run_driver(
            code_input, work_dir, ".go", wrap_go_program(code_input.code), lambda driver: ["go", "run", driver]
        )

    async def _run_javascript(self, code_input: CodeExecutionInput, work_dir: Path) -> CodeExecutionResult:
        return await self._run_driver(code_input, work_dir, ".js", code_input.code, lambda driver: ["node", driver])

    async def _run_bash(self, code_input: CodeExecutionInput, work_dir: Path) -> CodeExecutionResult:
        return await self._run_command(["bash"], work_dir, code_input, stdin=code_input.code)

    async def _run_driver(
        self,
        code_input: CodeExecutionInput,
        work_dir: Path,
        suffix: str,
        source: str,
        command: Callable[[str], Sequence[str]],
    ) -> CodeExecutionResult:
        # Concurrent calls share the working directory, each needs its own driver file
        driver = f"{DRIVER_PREFIX}{shortuuid.uuid()}{suffix}"
        driver_path = work_dir / driver
        try:
            driver_path.write_text(source)
        except OSError as e:
            raise ExecutionError(f"failed to write {driver}: {e}") from e
        try:
            return await self._run_command(command(driver), work_dir, code_input)
        finally:
            driver_path.unlink(missing_ok=True)

    async def _run_command(
        self,
        command: Sequence[str],
        work_dir: Path,
        code_input: CodeExecutionInput,
        stdin: Optional[str] = None,
    ) -> CodeExecutionResult:
        env = os.environ.copy()
        env.update(code_input.environment)
        timeout = self.resolve_timeout(code_input)

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(work_dir),
                env=env,
                stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            raise SpawnError(f"failed to start {command[0]}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(stdin.encode() if stdin is not None else None), timeout=timeout
            )
        except asyncio.TimeoutError:
            raise ExecutionTimeoutError(timeout or 0) from None
        finally:
            if process.returncode is None:
                await self._kill(process)

        return CodeExecutionResult(
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
            exit_code=process.returncode or 0,
        )

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        # The process leads its own session, so the whole group goes with it
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except OSError:
            process.kill()
        await process.wait()

    @staticmethod
    def _snapshot(work_dir: Path) -> _FileSnapshot:
        snapshot: _FileSnapshot = {}
        for entry in os.scandir(work_dir):
            if entry.is_file(follow_symlinks=False):
                stat = entry.stat(follow_symlinks=False)
                snapshot[entry.name] = (stat.st_size, stat.st_mtime_ns)
        return snapshot

    def _find_output_files(self, work_dir: Path, before: _FileSnapshot) -> List[CodeExecutionFile]:
        try:
            after = self._snapshot(work_dir)
        except OSError as e:
            logger.warning(f"Failed to scan {work_dir} for output files: {e}")
            return []

        output_files: List[CodeExecutionFile] = []
        for name, stamp in sorted(after.items()):
            if not is_output_candidate(name) or before.get(name) == stamp:
                continue
            try:
                output_files.append(CodeExecutionFile.from_path(work_dir / name))
            except OSError as e:
                logger.warning(f"Skipping unreadable output file {name}: {e}")
        return output_files

    def _do_close(self) -> None:
        if self._temp_dir is not None:
            shutil.rmtree(self._temp_dir)
            logger.info(f"Removed temporary working directory {self._temp_dir}")
            self._temp_dir = None
