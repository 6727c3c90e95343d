import asyncio
import io
import logging
from pathlib import PurePosixPath
import tarfile
import threading
import time
from typing import Dict, List, Optional, Tuple

import docker
from docker.errors import DockerException, ImageNotFound
from docker.models.containers import Container

from .code_executor import CodeExecutor
from .config import ContainerExecutorConfig, ExecutionConfig
from .context import CodeExecutorContext
from .exceptions import (
    ConfigurationError,
    ContainerOperationError,
    ContainerRuntimeUnavailableError,
    ExecutionTimeoutError,
    ExecutorError,
)
from .local_executor import IGNORED_SUFFIXES, wrap_go_program
from .models import CodeExecutionFile, CodeExecutionInput, CodeExecutionResult

logger = logging.getLogger(__name__)

GO_DRIVER = "main.go"

_FileStamp = Tuple[int, int]


def build_container_command(language: str, code: str) -> List[str]:
    """The command that runs `code` inside the container, Python by default."""
    language = language.strip().lower()
    if language in ("go", "golang"):
        return ["go", "run", GO_DRIVER]
    if language in ("javascript", "js", "node"):
        return ["node", "-e", code]
    if language in ("bash", "shell", "sh"):
        return ["bash", "-c", code]
    return ["python3", "-c", code]


def make_tar_archive(files: Dict[str, bytes], mtime: int) -> bytes:
    stream = io.BytesIO()
    with tarfile.open(fileobj=stream, mode="w") as tar:
        for name, content in files.items():
            info = tarfile.TarInfo(name=name)
            info.size = len(content)
            info.mtime = mtime
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(content))
    return stream.getvalue()


class ContainerExecutor(CodeExecutor):
    """Executes code inside docker containers.

    Each call runs in a container started from the configured image. Without the
    stateful option the container is created for the call and removed afterwards.
    With it, calls sharing an execution id reuse one container, so files written by
    earlier calls stay visible, until the executor is closed.

    Input files are copied into the working directory before the code runs. Regular
    files that are new or changed since the last call on the same container are
    copied back as output files.

    Args:
        config: The execution policy.
        container_config: Image, resource limits and daemon settings.
        client: A docker client to use instead of one built from the environment.

    Raises:
        ContainerRuntimeUnavailableError: If the docker daemon cannot be reached.
        ConfigurationError: If neither an image nor a Dockerfile directory is configured,
            or the image can be neither found, pulled nor built.
    """

    def __init__(
        self,
        config: Optional[ExecutionConfig] = None,
        container_config: Optional[ContainerExecutorConfig] = None,
        client: Optional[docker.DockerClient] = None,
    ):
        super().__init__(config)
        self.container_config = container_config or ContainerExecutorConfig()
        if not self.container_config.image and self.container_config.dockerfile is None:
            raise ConfigurationError("container executor requires an image or a Dockerfile directory")

        owns_client = client is None
        try:
            if client is None:
                if self.container_config.base_url:
                    client = docker.DockerClient(
                        base_url=self.container_config.base_url, timeout=int(self.container_config.connect_timeout)
                    )
                else:
                    client = docker.from_env(timeout=int(self.container_config.connect_timeout))
            client.ping()
        except DockerException as e:
            if owns_client and client is not None:
                client.close()
            raise ContainerRuntimeUnavailableError(f"Failed to connect to Docker daemon: {e}") from e

        self.client = client
        try:
            self.image = self._ensure_image()
        except ConfigurationError:
            if owns_client:
                client.close()
            raise

        self._lock = threading.Lock()
        self._containers: Dict[str, Container] = {}
        self._active: Dict[str, Container] = {}
        self._reported: Dict[str, Dict[str, _FileStamp]] = {}

    def _ensure_image(self) -> str:
        tag = self.container_config.resolved_image
        try:
            self.client.images.get(tag)
            return tag
        except ImageNotFound:
            pass
        except DockerException as e:
            raise ConfigurationError(f"failed to look up image {tag}: {e}") from e

        try:
            if self.container_config.dockerfile is not None:
                logger.info(f"Building image {tag} from {self.container_config.dockerfile}")
                self.client.images.build(path=str(self.container_config.dockerfile), tag=tag, rm=True)
            else:
                logger.info(f"Pulling image {tag}")
                self.client.images.pull(tag)
        except DockerException as e:
            raise ConfigurationError(f"failed to prepare image {tag}: {e}") from e
        return tag

    @property
    def active_container_count(self) -> int:
        with self._lock:
            return len(self._active)

    def _acquire_container(self, execution_key: Optional[str]) -> Container:
        with self._lock:
            if execution_key is not None and execution_key in self._containers:
                return self._containers[execution_key]

        try:
            container = self.client.containers.run(
                self.image,
                command=["sleep", "infinity"],
                detach=True,
                working_dir=self.container_config.work_dir,
                environment={"PYTHONUNBUFFERED": "1"},
                mem_limit=self.container_config.mem_limit,
                nano_cpus=self.container_config.nano_cpus,
                network_disabled=self.container_config.network_disabled,
                tty=False,
            )
        except DockerException as e:
            raise ContainerOperationError(f"failed to start container from {self.image}: {e}") from e

        logger.debug(f"Started container {container.id[:12]} for execution {execution_key}")
        with self._lock:
            self._active[container.id] = container
            self._reported[container.id] = {}
            if execution_key is not None:
                self._containers[execution_key] = container
        return container

    def _release_container(self, container: Container, execution_key: Optional[str]) -> None:
        with self._lock:
            self._active.pop(container.id, None)
            self._reported.pop(container.id, None)
            if execution_key is not None and self._containers.get(execution_key) is container:
                del self._containers[execution_key]
        try:
            container.remove(force=True)
        except DockerException as e:
            logger.warning(f"Failed to remove container {container.id[:12]}: {e}")

    def _put_files(self, container: Container, files: Dict[str, bytes]) -> None:
        mtime = int(time.time())
        try:
            container.put_archive(self.container_config.work_dir, make_tar_archive(files, mtime))
        except DockerException as e:
            raise ContainerOperationError(f"failed to copy files into container: {e}") from e
        with self._lock:
            reported = self._reported.setdefault(container.id, {})
            for name, content in files.items():
                reported[name] = (len(content), mtime)

    def _exec(self, container: Container, command: List[str], environment: Dict[str, str]) -> Tuple[int, str, str]:
        try:
            exec_result = container.exec_run(
                command,
                workdir=self.container_config.work_dir,
                environment=environment or None,
                demux=True,
            )
        except DockerException as e:
            raise ContainerOperationError(f"failed to execute code in container: {e}") from e

        stdout, stderr = exec_result.output or (None, None)
        return (
            exec_result.exit_code or 0,
            stdout.decode(errors="replace") if stdout else "",
            stderr.decode(errors="replace") if stderr else "",
        )

    def _collect_output_files(self, container: Container) -> List[CodeExecutionFile]:
        try:
            bits, _ = container.get_archive(self.container_config.work_dir)
        except DockerException as e:
            raise ContainerOperationError(f"failed to copy files out of container: {e}") from e

        tar_stream = io.BytesIO()
        for chunk in bits:
            tar_stream.write(chunk)
        tar_stream.seek(0)

        with self._lock:
            reported = self._reported.setdefault(container.id, {})

        output_files: List[CodeExecutionFile] = []
        with tarfile.open(fileobj=tar_stream, mode="r") as tar:
            for member in tar:
                if not member.isfile():
                    continue
                # Archive entries are rooted at the basename of the working directory
                parts = PurePosixPath(member.name).parts[1:]
                if not parts or any(part.startswith(".") for part in parts):
                    continue
                name = "/".join(parts)
                if name == GO_DRIVER or name.endswith(IGNORED_SUFFIXES):
                    continue

                stamp = (member.size, int(member.mtime))
                if reported.get(name) == stamp:
                    continue
                file_obj = tar.extractfile(member)
                if file_obj is None:
                    continue
                output_files.append(CodeExecutionFile(name=name, content=file_obj.read()))
                reported[name] = stamp
        return output_files

    async def _execute_once(
        self,
        code_input: CodeExecutionInput,
        execution_id: Optional[str],
        execution_context: CodeExecutorContext,
    ) -> CodeExecutionResult:
        execution_key = execution_id if self.is_stateful() and execution_id else None
        container = await asyncio.to_thread(self._acquire_container, execution_key)
        keep_container = execution_key is not None
        timeout = self.resolve_timeout(code_input)

        try:
            staged = {file.name: file.content for file in code_input.input_files}
            if code_input.language.strip().lower() in ("go", "golang"):
                staged[GO_DRIVER] = wrap_go_program(code_input.code).encode()
            if staged:
                await asyncio.to_thread(self._put_files, container, staged)
            if code_input.input_files:
                execution_context.add_processed_file_names(*(file.name for file in code_input.input_files))

            command = build_container_command(code_input.language, code_input.code)
            try:
                exit_code, stdout, stderr = await asyncio.wait_for(
                    asyncio.to_thread(self._exec, container, command, code_input.environment), timeout=timeout
                )
            except asyncio.TimeoutError:
                # The exec keeps running in the container, removing the container stops it
                keep_container = False
                if execution_key is not None:
                    logger.warning(f"Discarding state of execution {execution_key} after timeout")
                raise ExecutionTimeoutError(timeout or 0) from None
            except asyncio.CancelledError:
                keep_container = False
                raise

            output_files = await asyncio.to_thread(self._collect_output_files, container)
            return CodeExecutionResult(stdout=stdout, stderr=stderr, exit_code=exit_code, output_files=output_files)
        finally:
            if not keep_container:
                await asyncio.to_thread(self._release_container, container, execution_key)

    def _do_close(self) -> None:
        with self._lock:
            containers = list(self._active.values())
            self._active.clear()
            self._containers.clear()
            self._reported.clear()

        failures = []
        for container in containers:
            try:
                container.remove(force=True)
            except DockerException as e:
                failures.append(f"{container.id[:12]}: {e}")
        self.client.close()

        if failures:
            raise ExecutorError(f"failed to remove containers: {'; '.join(failures)}")
        logger.info(f"Removed {len(containers)} container(s)")
