"""Saving a container image to a tar archive, optionally pulling it first."""

from __future__ import annotations

import asyncio
import dataclasses
from pathlib import Path
from typing import Optional

from workflow_engine.core.logging import get_logger
from workflow_engine.shell import commands
from workflow_engine.shell.runner import CancelScope, Writer
from workflow_engine.shell.stream import SizeMonitorWriter, TeeWriter, stream_stderr, stream_stdout
from workflow_engine.tasks.base import TaskOptions, open_artifact, require

logger = get_logger(__name__)


class ImageSaveTask:
    """Save an image to a tar archive, optionally pulling it first."""

    name = "image-save"
    label = "image save"

    def __init__(self, cli_interface: str, options: TaskOptions) -> None:
        self.cli = commands.container_cli(cli_interface)
        self.options = options

    async def run(self, scope: Optional[CancelScope], stderr: Writer) -> None:
        require(
            "Image save task",
            image_name=self.options.image_name,
            image_tar_filename=self.options.image_tar_filename,
        )
        tar_path = Path(self.options.image_tar_filename)
        run_options = self.options.run_options(scope)
        logger.info("task.start", task=self.name, image=self.options.image_name, archive=str(tar_path))

        # open first so an unusable path fails before any pull
        with open_artifact(tar_path) as archive:
            if self.options.image_save_pull:
                # docker reports pull progress on stdout
                pull_argv = commands.image_pull_argv(self.cli, self.options.image_name)
                await stream_stdout(pull_argv, stderr, "image pull", run_options)

            monitor = SizeMonitorWriter(self.label, str(tar_path), stderr, interval=self.options.monitor_interval)
            stop = asyncio.Event()
            monitoring = asyncio.ensure_future(monitor.monitor(stop))
            try:
                await stream_stderr(
                    commands.image_save_argv(self.cli, self.options.image_name),
                    stderr,
                    self.label,
                    dataclasses.replace(run_options, stdout=TeeWriter(archive, monitor)),
                )
            finally:
                stop.set()
                await monitoring

        logger.info("task.complete", task=self.name, bytes_written=monitor.written)
