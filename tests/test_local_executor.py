import asyncio
import shutil

from flaky import flaky
import pytest

from codeexec import (
    CodeExecutionFile,
    CodeExecutionInput,
    ExecutionConfig,
    LocalExecutor,
    LocalExecutorConfig,
    RetriesExhaustedError,
    UnsafeExecutionNotAllowedError,
    get_context_from_invocation,
)
from codeexec.local_executor import DRIVER_PREFIX, is_output_candidate, wrap_go_program

requires_python3 = pytest.mark.skipif(shutil.which("python3") is None, reason="python3 not installed")
requires_bash = pytest.mark.skipif(shutil.which("bash") is None, reason="bash not installed")
requires_node = pytest.mark.skipif(shutil.which("node") is None, reason="node not installed")
requires_go = pytest.mark.skipif(shutil.which("go") is None, reason="go not installed")


@pytest.fixture
def executor():
    executor = LocalExecutor(
        ExecutionConfig(max_retries=0, retry_delay=0, default_timeout=30),
        LocalExecutorConfig(allow_unsafe=True),
    )
    yield executor
    executor.close()


def test_requires_unsafe_opt_in():
    with pytest.raises(UnsafeExecutionNotAllowedError):
        LocalExecutor()


def test_temporary_work_dir_is_removed_on_close():
    executor = LocalExecutor(local_config=LocalExecutorConfig(allow_unsafe=True))
    work_dir = executor.work_dir
    assert work_dir.is_dir()

    executor.close()

    assert not work_dir.exists()


def test_configured_work_dir_is_kept_on_close(temp_dir):
    executor = LocalExecutor(local_config=LocalExecutorConfig(allow_unsafe=True, work_dir=temp_dir))

    executor.close()

    assert temp_dir.is_dir()


def test_wrap_go_program():
    assert wrap_go_program("package main\nfunc main() {}") == "package main\nfunc main() {}"

    wrapped = wrap_go_program('fmt.Println("hi")')
    assert wrapped.startswith('package main\n\nimport "fmt"\n\nfunc main() {\n')
    assert 'fmt.Println("hi")' in wrapped

    assert "import" not in wrap_go_program("x := 1\n_ = x")


@pytest.mark.parametrize(
    "name,expected",
    [
        ("result.txt", True),
        ("plot.png", True),
        (".hidden", False),
        ("module.pyc", False),
        ("scratch.tmp", False),
        ("codeexec_driver_3kTMd92jSuvc4Ym7.py", False),
        ("codeexec_driver_bV8dQ2.go", False),
        ("code.py", True),
    ],
)
def test_is_output_candidate(name, expected):
    assert is_output_candidate(name) is expected


@requires_python3
class TestPython:
    @pytest.mark.asyncio
    async def test_stdout(self, executor, invocation_context):
        result = await executor.execute_code(invocation_context, CodeExecutionInput(code="print(6 * 7)"))

        assert result.stdout == "42\n"
        assert result.stderr == ""
        assert result.exit_code == 0
        assert result.execution_id == "inv-1"

    @pytest.mark.asyncio
    async def test_language_defaults_to_python(self, executor, invocation_context):
        result = await executor.execute_code(
            invocation_context, CodeExecutionInput(code="print('default')", language="cobol")
        )

        assert result.stdout == "default\n"

    @pytest.mark.asyncio
    async def test_non_zero_exit(self, executor, invocation_context):
        with pytest.raises(RetriesExhaustedError) as exc_info:
            await executor.execute_code(
                invocation_context, CodeExecutionInput(code="import sys\nprint('oops', file=sys.stderr)\nsys.exit(3)")
            )

        result = exc_info.value.result
        assert result.exit_code == 3
        assert "oops" in result.stderr
        assert exc_info.value.attempts == 1

    @pytest.mark.asyncio
    async def test_environment_and_input_files(self, executor, invocation_context):
        code = (
            "import os\n"
            "data = open('input.txt').read()\n"
            "open('output.txt', 'w').write(data.upper() + os.environ['SUFFIX'])\n"
        )
        code_input = CodeExecutionInput(
            code=code,
            environment={"SUFFIX": "!"},
            input_files=[CodeExecutionFile(name="input.txt", content=b"hello world")],
        )

        result = await executor.execute_code(invocation_context, code_input)

        assert [f.name for f in result.output_files] == ["output.txt"]
        assert result.output_files[0].content == b"HELLO WORLD!"
        context = get_context_from_invocation(invocation_context)
        assert context.get_processed_file_names() == ["input.txt"]

    @pytest.mark.asyncio
    async def test_only_new_or_changed_files_are_reported(self, executor, invocation_context):
        await executor.execute_code(invocation_context, CodeExecutionInput(code="open('a.txt', 'w').write('a')"))

        code = "open('b.txt', 'w').write('b')\nimport os\nprint(os.listdir('.'))"
        result = await executor.execute_code(invocation_context, CodeExecutionInput(code=code))

        assert [f.name for f in result.output_files] == ["b.txt"]
        assert not any(f.name.startswith(DRIVER_PREFIX) for f in result.output_files)

    @pytest.mark.asyncio
    async def test_per_call_working_directory(self, executor, invocation_context, temp_dir):
        result = await executor.execute_code(
            invocation_context,
            CodeExecutionInput(code="open('here.txt', 'w').write('x')", working_directory=str(temp_dir / "job")),
        )

        assert (temp_dir / "job" / "here.txt").read_text() == "x"
        assert [f.name for f in result.output_files] == ["here.txt"]

    @pytest.mark.asyncio
    async def test_concurrent_calls_run_their_own_code(self, executor, invocation_context):
        results = await asyncio.gather(
            *(executor.execute_code(invocation_context, CodeExecutionInput(code=f"print({i})")) for i in range(4))
        )

        assert [result.stdout.strip() for result in results] == ["0", "1", "2", "3"]
        assert not any(path.name.startswith(DRIVER_PREFIX) for path in executor.work_dir.iterdir())

    @pytest.mark.asyncio
    async def test_removed_working_directory_still_returns_result(self, executor, invocation_context, temp_dir):
        code = "import os, shutil\nshutil.rmtree(os.getcwd())\nprint('done')"

        result = await executor.execute_code(
            invocation_context, CodeExecutionInput(code=code, working_directory=str(temp_dir / "job"))
        )

        assert result.stdout == "done\n"
        assert result.exit_code == 0
        assert result.output_files == []

    @flaky(max_runs=3, min_passes=1)
    @pytest.mark.asyncio
    async def test_timeout(self, executor, invocation_context):
        loop = asyncio.get_running_loop()
        start = loop.time()

        with pytest.raises(RetriesExhaustedError) as exc_info:
            await executor.execute_code(
                invocation_context, CodeExecutionInput(code="import time\ntime.sleep(30)", timeout=1)
            )

        assert loop.time() - start < 10
        result = exc_info.value.result
        assert result.timed_out
        assert result.exit_code == 1
        assert result.error.type == "ExecutionTimeoutError"

    @pytest.mark.asyncio
    async def test_missing_interpreter_is_a_spawn_failure(self, invocation_context):
        executor = LocalExecutor(
            ExecutionConfig(max_retries=1, retry_delay=0),
            LocalExecutorConfig(allow_unsafe=True, python_command="no-such-python-interpreter"),
        )
        try:
            with pytest.raises(RetriesExhaustedError) as exc_info:
                await executor.execute_code(invocation_context, CodeExecutionInput(code="print(1)"))
        finally:
            executor.close()

        assert exc_info.value.attempts == 2
        assert exc_info.value.result.exit_code == 1
        assert exc_info.value.result.error.type == "SpawnError"


@requires_bash
class TestBash:
    @pytest.mark.asyncio
    async def test_stdin_script(self, executor, invocation_context):
        result = await executor.execute_code(
            invocation_context, CodeExecutionInput(code="X=5\necho $((X * 2))", language="bash")
        )

        assert result.stdout == "10\n"

    @pytest.mark.asyncio
    async def test_shell_alias(self, executor, invocation_context):
        result = await executor.execute_code(
            invocation_context, CodeExecutionInput(code="echo hi > greeting.txt", language="sh")
        )

        assert [f.name for f in result.output_files] == ["greeting.txt"]
        assert result.output_files[0].content == b"hi\n"

    @flaky(max_runs=3, min_passes=1)
    @pytest.mark.asyncio
    async def test_default_timeout(self, invocation_context):
        executor = LocalExecutor(
            ExecutionConfig(max_retries=0, retry_delay=0, default_timeout=2),
            LocalExecutorConfig(allow_unsafe=True),
        )
        loop = asyncio.get_running_loop()
        start = loop.time()
        try:
            with pytest.raises(RetriesExhaustedError) as exc_info:
                await executor.execute_code(invocation_context, CodeExecutionInput(code="sleep 5", language="bash"))
        finally:
            executor.close()

        assert loop.time() - start < 4.5
        result = exc_info.value.result
        assert result.timed_out
        assert result.exit_code == 1
        assert result.error.type == "ExecutionTimeoutError"


@requires_node
@pytest.mark.asyncio
async def test_javascript(executor, invocation_context):
    result = await executor.execute_code(
        invocation_context, CodeExecutionInput(code="console.log([1, 2, 3].map(x => x * 2).join(','))", language="js")
    )

    assert result.stdout == "2,4,6\n"


@requires_go
@flaky(max_runs=3, min_passes=1)
@pytest.mark.asyncio
async def test_go_snippet_is_wrapped(executor, invocation_context):
    result = await executor.execute_code(
        invocation_context, CodeExecutionInput(code='fmt.Println("from go")', language="go", timeout=120)
    )

    assert result.stdout == "from go\n"
