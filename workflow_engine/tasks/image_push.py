"""Image push task."""

from __future__ import annotations

from typing import Optional

from workflow_engine.core.logging import get_logger
from workflow_engine.shell import commands
from workflow_engine.shell.runner import CancelScope, Writer
from workflow_engine.shell.stream import stream_stderr
from workflow_engine.tasks.base import TaskOptions, require

logger = get_logger(__name__)


class ImagePushTask:
    """``<cli> push``.

    The tag is only appended when ``push_tag_arg`` is enabled; otherwise the
    container CLI resolves the image from its own configuration.
    """

    name = "image-push"

    def __init__(self, cli_interface: str, options: TaskOptions) -> None:
        self.cli = commands.container_cli(cli_interface)
        self.options = options

    @property
    def label(self) -> str:
        return f"{self.cli} push"

    def argv(self) -> list[str]:
        tag = self.options.image_name if self.options.push_tag_arg else ""
        return commands.image_push_argv(self.cli, tag)

    async def run(self, scope: Optional[CancelScope], stderr: Writer) -> None:
        if self.options.push_tag_arg:
            require("Image push task", image_name=self.options.image_name)
        logger.info("task.start", task=self.name, push_tag_arg=self.options.push_tag_arg)
        await stream_stderr(self.argv(), stderr, self.label, self.options.run_options(scope))
