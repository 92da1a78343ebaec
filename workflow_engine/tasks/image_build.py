"""Container image build tasks."""

from __future__ import annotations

import dataclasses
from typing import Optional

from workflow_engine.core.exceptions import (
    ConfigurationError,
    UnsupportedInterfaceError,
    WorkflowEngineException,
    join_errors,
)
from workflow_engine.core.logging import get_logger
from workflow_engine.shell import commands
from workflow_engine.shell.runner import CancelScope, Writer
from workflow_engine.shell.stream import stream_stderr
from workflow_engine.tasks.base import TaskOptions

logger = get_logger(__name__)

BUILD_INTERFACES = ("docker", "podman", "bake")


class GenericImageBuildTask:
    """``docker build`` or ``podman build`` from the configured build options."""

    name = "image-build"

    def __init__(self, cli_interface: str, options: TaskOptions) -> None:
        self.cli_interface = cli_interface
        self.options = options

    @property
    def label(self) -> str:
        return f"{self.cli_interface} build"

    def argv(self) -> list[str]:
        """Build argv; malformed KEY=VALUE build args are reported with the other option errors."""
        build = self.options.image_build
        errors: list[Exception] = []
        if self.options.build_arg_items:
            try:
                build = dataclasses.replace(build, build_args=commands.build_args_json(self.options.build_arg_items))
            except ConfigurationError as exc:
                errors.append(exc)
        try:
            argv = commands.image_build_argv(self.cli_interface, build)
        except WorkflowEngineException as exc:
            errors.append(exc)
        error = join_errors(errors)
        if error is not None:
            raise error
        return argv

    async def run(self, scope: Optional[CancelScope], stderr: Writer) -> None:
        argv = self.argv()
        logger.info("task.start", task=self.name, cli=self.cli_interface)
        await stream_stderr(argv, stderr, self.label, self.options.run_options(scope))


class BakeImageBuildTask:
    """``docker buildx bake`` against a bake definition file."""

    name = "image-build"
    label = "image build"

    def __init__(self, options: TaskOptions) -> None:
        self.options = options

    def argv(self) -> list[str]:
        return commands.bake_argv(self.options.bakefile, self.options.bake_target)

    async def run(self, scope: Optional[CancelScope], stderr: Writer) -> None:
        argv = self.argv()
        logger.info("task.start", task=self.name, cli="bake")
        await stream_stderr(argv, stderr, self.label, self.options.run_options(scope))


def new_image_build_task(cli_interface: str, options: TaskOptions) -> GenericImageBuildTask | BakeImageBuildTask:
    name = cli_interface.strip().lower()
    if name == "bake":
        return BakeImageBuildTask(options)
    if name in commands.CONTAINER_CLIS:
        return GenericImageBuildTask(name, options)
    raise UnsupportedInterfaceError(
        f"unsupported image build cli interface '{cli_interface}', must be docker, podman or bake",
        details={"supported": list(BUILD_INTERFACES)},
    )
