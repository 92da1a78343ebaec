"""Vulnerability scan of a container image: syft SBOM, then grype."""

from __future__ import annotations

import dataclasses
from pathlib import Path
from typing import Optional

from workflow_engine.core.logging import get_logger
from workflow_engine.shell import commands
from workflow_engine.shell.runner import CancelScope, Writer
from workflow_engine.shell.stream import stream_stderr
from workflow_engine.tasks.base import TaskOptions, artifact_path, ensure_parent, require

logger = get_logger(__name__)


class GrypeImageScanTask:
    """Generate an SBOM with syft, then scan it for vulnerabilities with grype.

    grype only starts after syft has exited cleanly. The resulting report is
    listed to the display writer with ``gatecheck ls``.
    """

    name = "image-vul-scan"

    def __init__(self, options: TaskOptions) -> None:
        self.options = options

    @property
    def sbom_path(self) -> str:
        return artifact_path(self.options.artifact_dir, self.options.sbom_filename)

    @property
    def grype_path(self) -> str:
        return artifact_path(self.options.artifact_dir, self.options.grype_filename)

    def pre_run(self) -> None:
        require(
            "Grype image scan task",
            image_name=self.options.image_name,
            sbom_filename=self.options.sbom_filename,
            grype_filename=self.options.grype_filename,
            artifact_directory=self.options.artifact_dir,
        )

    async def run(self, scope: Optional[CancelScope], stderr: Writer) -> None:
        self.pre_run()
        ensure_parent(Path(self.sbom_path))
        run_options = self.options.run_options(scope)
        logger.info("task.start", task=self.name, image=self.options.image_name)

        await stream_stderr(
            commands.syft_scan_argv(self.options.image_name, self.sbom_path), stderr, "syft", run_options
        )
        await stream_stderr(
            commands.grype_scan_argv(self.sbom_path, self.grype_path, self.options.grype_config_filename),
            stderr,
            "grype",
            run_options,
        )
        await stream_stderr(
            commands.gatecheck_list_argv(self.grype_path, epss=True),
            stderr,
            "gatecheck",
            dataclasses.replace(run_options, stdout=self.options.display_writer()),
        )
