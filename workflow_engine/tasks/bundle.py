"""Gatecheck bundle tasks: create/extend the bundle, validate it, publish it with oras."""

from __future__ import annotations

import dataclasses
from collections.abc import Sequence
from pathlib import Path
from typing import Optional

from workflow_engine.core.exceptions import MissingOptionError
from workflow_engine.core.logging import get_logger
from workflow_engine.shell import commands
from workflow_engine.shell.runner import CancelScope, Writer
from workflow_engine.shell.stream import stream_stderr
from workflow_engine.tasks.base import TaskOptions, ensure_parent, require

logger = get_logger(__name__)


class GatecheckBundleTask:
    """Add artifacts to the gatecheck bundle, creating the bundle on first use."""

    name = "bundle"
    label = "gatecheck bundle"

    def __init__(self, options: TaskOptions, files: Sequence[str]) -> None:
        self.options = options
        self.files = list(files)

    def argvs(self, bundle_exists: bool) -> list[list[str]]:
        bundle = self.options.bundle_filename
        argvs = []
        for index, filename in enumerate(self.files):
            if index == 0 and not bundle_exists:
                argvs.append(commands.gatecheck_bundle_create_argv(bundle, filename))
            else:
                argvs.append(commands.gatecheck_bundle_add_argv(bundle, filename))
        return argvs

    async def run(self, scope: Optional[CancelScope], stderr: Writer) -> None:
        require("Gatecheck bundle task", bundle_filename=self.options.bundle_filename)
        if not self.files:
            raise MissingOptionError(
                "Gatecheck bundle task pre-start error -> at least one artifact file is required",
                details={"option": "files"},
            )
        bundle_path = Path(self.options.bundle_filename)
        ensure_parent(bundle_path)
        logger.info("task.start", task=self.name, bundle=str(bundle_path), files=self.files)

        run_options = self.options.run_options(scope)
        for argv in self.argvs(bundle_path.exists()):
            await stream_stderr(argv, stderr, self.label, run_options)


class GatecheckValidateTask:
    name = "validate"
    label = "gatecheck validate"

    def __init__(self, options: TaskOptions, target: str = "") -> None:
        self.options = options
        self.target = target or options.bundle_filename

    def argv(self) -> list[str]:
        return commands.gatecheck_validate_argv(self.target, self.options.gatecheck_config_filename)

    async def run(self, scope: Optional[CancelScope], stderr: Writer) -> None:
        require("Gatecheck validate task", target=self.target)
        logger.info("task.start", task=self.name, target=self.target)
        await stream_stderr(
            self.argv(),
            stderr,
            self.label,
            dataclasses.replace(self.options.run_options(scope), stdout=self.options.display_writer()),
        )


class OrasBundlePublishTask:
    """Push the gatecheck bundle to an OCI registry as an artifact blob."""

    name = "bundle-publish"
    label = "oras push"

    def __init__(self, options: TaskOptions) -> None:
        self.options = options

    def argv(self) -> list[str]:
        return commands.oras_push_bundle_argv(self.options.bundle_tag, self.options.bundle_filename)

    async def run(self, scope: Optional[CancelScope], stderr: Writer) -> None:
        require(
            "Oras bundle publish task",
            bundle_tag=self.options.bundle_tag,
            bundle_filename=self.options.bundle_filename,
        )
        logger.info("task.start", task=self.name, tag=self.options.bundle_tag)
        await stream_stderr(
            self.argv(),
            stderr,
            self.label,
            dataclasses.replace(self.options.run_options(scope), stdout=self.options.display_writer()),
        )
