import logging
import os
from pathlib import Path
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .exceptions import ConfigurationError
from .models import DelimiterPair

ENV_PREFIX = "CODEEXEC_"

DEFAULT_IMAGE_TAG = "codeexec-executor:latest"
DEFAULT_CONTAINER_WORK_DIR = "/workspace"


def default_code_block_delimiters() -> List[DelimiterPair]:
    return [
        DelimiterPair(start="```tool_code\n", end="\n```"),
        DelimiterPair(start="```python\n", end="\n```"),
        DelimiterPair(start="```go\n", end="\n```"),
        DelimiterPair(start="```javascript\n", end="\n```"),
        DelimiterPair(start="```bash\n", end="\n```"),
    ]


def default_execution_result_delimiters() -> DelimiterPair:
    return DelimiterPair(start="```tool_output\n", end="\n```")


def configure_logging(level: Optional[str] = None) -> None:
    """Configure a basic stream handler for the package.

    The level comes from the argument, then from CODEEXEC_LOGGING_LEVEL, then INFO.
    """
    logging_level = level or os.environ.get(f"{ENV_PREFIX}LOGGING_LEVEL", "INFO")
    logging.basicConfig(
        level=logging_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


class ExecutionConfig(BaseModel):
    """Execution policy shared by every executor.

    One instance belongs to one executor and never changes after construction;
    use `with_options` to derive a modified copy.

    Attributes:
        optimize_data_files: Whether data files found in the request are explored
            before the model's own code runs.
        long_running: Whether the executor supports long running operations.
        stateful: Whether executions sharing an execution id share a runtime.
        max_retries: Retries after the first failed attempt.
        retry_delay: Seconds to wait between attempts.
        default_timeout: Seconds a single attempt may run when the call sets none.
        code_block_delimiters: Delimiters that identify code blocks in model output.
        execution_result_delimiters: Delimiters wrapped around formatted results.
    """

    model_config = ConfigDict(frozen=True)

    optimize_data_files: bool = False
    long_running: bool = False
    stateful: bool = False
    max_retries: int = Field(default=2, ge=0)
    retry_delay: float = Field(default=1.0, ge=0)
    default_timeout: float = Field(default=30.0, ge=0)
    code_block_delimiters: List[DelimiterPair] = Field(default_factory=default_code_block_delimiters)
    execution_result_delimiters: DelimiterPair = Field(default_factory=default_execution_result_delimiters)

    @field_validator("code_block_delimiters")
    @classmethod
    def _check_code_block_delimiters(cls, value: List[DelimiterPair]) -> List[DelimiterPair]:
        for pair in value:
            if not pair.start or not pair.end:
                raise ValueError(f"delimiter markers must not be empty: {pair!r}")
        return value

    @field_validator("execution_result_delimiters")
    @classmethod
    def _check_result_delimiters(cls, value: DelimiterPair) -> DelimiterPair:
        if not value.start or not value.end:
            raise ValueError(f"delimiter markers must not be empty: {value!r}")
        return value

    @classmethod
    def create(cls, **options) -> "ExecutionConfig":
        """Build a config, reporting invalid options as a ConfigurationError."""
        try:
            return cls(**options)
        except ValidationError as e:
            raise ConfigurationError(f"invalid execution config: {e}") from e

    def with_options(self, **options) -> "ExecutionConfig":
        return self.create(**{**self.model_dump(), **options})

    @classmethod
    def from_env(cls, prefix: str = ENV_PREFIX, **overrides) -> "ExecutionConfig":
        """Build a config from environment variables such as CODEEXEC_MAX_RETRIES."""
        options = {}
        for name in ("max_retries", "retry_delay", "default_timeout"):
            value = os.environ.get(f"{prefix}{name.upper()}")
            if value is not None:
                options[name] = value
        for name in ("stateful", "long_running", "optimize_data_files"):
            value = os.environ.get(f"{prefix}{name.upper()}")
            if value is not None:
                options[name] = value.lower() == "true"
        options.update(overrides)
        return cls.create(**options)


class LocalExecutorConfig(BaseModel):
    """Backend settings for the LocalExecutor.

    Attributes:
        allow_unsafe: Must be True, local execution runs with the caller's privileges.
        work_dir: Working directory. A temporary directory owned by the executor is
            used when it is not set.
        python_command: Interpreter used for Python code.
    """

    model_config = ConfigDict(frozen=True)

    allow_unsafe: bool = False
    work_dir: Optional[Path] = None
    python_command: str = "python3"


class ContainerExecutorConfig(BaseModel):
    """Backend settings for the ContainerExecutor.

    Either `image` or `dockerfile` must be set. When only a Dockerfile directory is
    given the image is built under DEFAULT_IMAGE_TAG.

    Attributes:
        base_url: Docker daemon URL. The environment (DOCKER_HOST) is used when None.
        image: Tag of a predefined or custom image.
        dockerfile: Directory containing a Dockerfile to build the image from.
        work_dir: Working directory inside the container.
        mem_limit: Memory limit for each container.
        nano_cpus: CPU limit in units of 1e-9 CPUs.
        network_disabled: Whether containers run without network access.
        connect_timeout: Seconds allowed for the connectivity check at construction.
    """

    model_config = ConfigDict(frozen=True)

    base_url: Optional[str] = None
    image: Optional[str] = None
    dockerfile: Optional[Path] = None
    work_dir: str = DEFAULT_CONTAINER_WORK_DIR
    mem_limit: Union[int, str] = 512 * 1024 * 1024
    nano_cpus: int = 1_000_000_000
    network_disabled: bool = True
    connect_timeout: float = 10.0

    @property
    def resolved_image(self) -> str:
        return self.image or DEFAULT_IMAGE_TAG
