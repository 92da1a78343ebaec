"""Source code scans: SAST with semgrep and secrets detection with gitleaks."""

from __future__ import annotations

import dataclasses
import io
from collections.abc import Sequence
from pathlib import Path
from typing import Callable, Optional

from workflow_engine.core.exceptions import WorkflowEngineException, join_errors
from workflow_engine.core.logging import get_logger
from workflow_engine.shell import commands
from workflow_engine.shell.runner import CancelScope, Writer
from workflow_engine.shell.stream import stream_stderr
from workflow_engine.tasks.base import Task, TaskOptions, artifact_path, ensure_parent, open_artifact, require

logger = get_logger(__name__)


class SemgrepCodeScanTask:
    name = "sast-code-scan"

    def __init__(self, options: TaskOptions) -> None:
        self.options = options

    @property
    def report_path(self) -> str:
        return artifact_path(self.options.artifact_dir, self.options.semgrep_filename)

    @property
    def label(self) -> str:
        return "semgrep code scan"

    async def run(self, scope: Optional[CancelScope], stderr: Writer) -> None:
        require(
            "Semgrep code scan task",
            semgrep_rules=self.options.semgrep_rules,
            semgrep_filename=self.options.semgrep_filename,
        )
        argv = commands.semgrep_argv(self.options.semgrep_rules, self.options.semgrep_experimental)
        run_options = self.options.run_options(scope)
        path = Path(self.report_path)
        logger.info("task.start", task=self.name, rules=self.options.semgrep_rules, report=str(path))

        report = open_artifact(path)
        try:
            await stream_stderr(argv, stderr, self.label, dataclasses.replace(run_options, stdout=report))
        except Exception:
            report.close()
            path.unlink(missing_ok=True)
            logger.warning("semgrep.report_removed", report=str(path))
            raise
        report.close()

        await stream_stderr(
            commands.gatecheck_list_argv(str(path)),
            stderr,
            "gatecheck",
            dataclasses.replace(run_options, stdout=self.options.display_writer()),
        )


class GitleaksCodeScanTask:
    name = "secrets-code-scan"
    label = "gitleaks secrets scan"

    def __init__(self, options: TaskOptions) -> None:
        self.options = options

    @property
    def report_path(self) -> str:
        return artifact_path(self.options.artifact_dir, self.options.gitleaks_filename)

    async def run(self, scope: Optional[CancelScope], stderr: Writer) -> None:
        require(
            "Gitleaks secrets scan task",
            source_directory=self.options.gitleaks_src_dir,
            report_path=self.report_path,
        )
        run_options = self.options.run_options(scope)
        ensure_parent(Path(self.report_path))
        logger.info("task.start", task=self.name, source=self.options.gitleaks_src_dir)

        await stream_stderr(
            commands.gitleaks_argv(self.options.gitleaks_src_dir, self.report_path),
            stderr,
            self.label,
            run_options,
        )
        await stream_stderr(
            commands.gatecheck_list_argv(self.report_path),
            stderr,
            "gatecheck",
            dataclasses.replace(run_options, stdout=self.options.display_writer()),
        )


class CombinedCodeScanTask:
    """Run several code scans in order.

    Stderr streams live while each scan's display output is held back and
    written in order once every scan has finished. Failures are collected and
    raised together.
    """

    name = "code-scan"

    def __init__(
        self,
        options: TaskOptions,
        task_types: Sequence[Callable[[TaskOptions], Task]] = (SemgrepCodeScanTask, GitleaksCodeScanTask),
    ) -> None:
        self.options = options
        self.task_types = task_types

    async def run(self, scope: Optional[CancelScope], stderr: Writer) -> None:
        errors: list[WorkflowEngineException] = []
        buffers: list[io.BytesIO] = []

        for task_type in self.task_types:
            if scope is not None and scope.cancelled:
                logger.warning("task.skipped_after_cancel", task=self.name)
                break
            buffer = io.BytesIO()
            buffers.append(buffer)
            task = task_type(dataclasses.replace(self.options, display=buffer))
            try:
                await task.run(scope, stderr)
            except WorkflowEngineException as exc:
                logger.error("task.failed", task=task.name, **exc.to_dict())
                errors.append(exc)

        display = self.options.display_writer()
        for buffer in buffers:
            display.write(buffer.getvalue())
        flush = getattr(display, "flush", None)
        if flush is not None:
            flush()

        error = join_errors(errors)
        if error is not None:
            raise error
