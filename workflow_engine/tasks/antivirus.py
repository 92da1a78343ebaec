"""Antivirus scan with clamav."""

from __future__ import annotations

import dataclasses
import io
from pathlib import Path
from typing import Optional

from workflow_engine.core.exceptions import CommandFailedError, SpawnError
from workflow_engine.core.logging import get_logger
from workflow_engine.shell import commands
from workflow_engine.shell.runner import CancelScope, RunOptions, Writer
from workflow_engine.shell.stream import TeeWriter, stream_elapsed, stream_stderr
from workflow_engine.tasks.base import TaskOptions, artifact_path, open_artifact, require

logger = get_logger(__name__)


class ClamAntivirusScanTask:
    """Refresh the clamav database, then scan the target and keep the report.

    A failed ``freshclam`` only produces a warning; the scan then runs with
    whatever database is already installed.
    """

    name = "image-antivirus-scan"

    def __init__(self, options: TaskOptions) -> None:
        self.options = options

    @property
    def report_path(self) -> str:
        return artifact_path(self.options.artifact_dir, self.options.clam_filename)

    def pre_run(self) -> None:
        require(
            "Clam Antivirus scan task",
            filename=self.options.clam_filename,
            artifact_directory=self.options.artifact_dir,
            target=self.options.clamscan_target,
        )

    async def run(self, scope: Optional[CancelScope], stderr: Writer) -> None:
        self.pre_run()
        run_options = self.options.run_options(scope)
        logger.info("task.start", task=self.name, target=self.options.clamscan_target)

        with open_artifact(Path(self.report_path)) as report:
            await self._run_freshclam(stderr, run_options)

            buffer = io.BytesIO()
            await stream_elapsed(
                commands.clamscan_argv(self.options.clamscan_target),
                stderr,
                self.options.elapsed_interval,
                "clamscan",
                dataclasses.replace(run_options, stdout=TeeWriter(buffer, report)),
            )

        display = self.options.display_writer()
        display.write(buffer.getvalue())
        flush = getattr(display, "flush", None)
        if flush is not None:
            flush()

    async def _run_freshclam(self, stderr: Writer, run_options: RunOptions) -> None:
        if self.options.freshclam_disabled:
            logger.debug("antivirus.freshclam_skipped")
            return
        try:
            # freshclam is chatty; its output only matters when the update fails
            await stream_stderr(
                commands.freshclam_argv(), stderr, "freshclam", dataclasses.replace(run_options, error_only=True)
            )
        except (CommandFailedError, SpawnError) as exc:
            logger.warning("antivirus.freshclam_failed", error=exc.message, exit_code=exc.exit_code)
