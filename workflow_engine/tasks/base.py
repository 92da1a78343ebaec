"""Shared task plumbing: options derived from Config and pre-run validation."""

from __future__ import annotations

import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Protocol

from workflow_engine.core.exceptions import ArtifactIOError, MissingOptionError, join_errors
from workflow_engine.settings.config import Config
from workflow_engine.shell.commands import ImageBuildOptions
from workflow_engine.shell.runner import CancelScope, RunOptions, Writer


class Task(Protocol):
    """Protocol implemented by every task in the catalog."""

    name: str

    async def run(self, scope: Optional[CancelScope], stderr: Writer) -> None: ...


@dataclass(slots=True)
class TaskOptions:
    """Per-task parameters, derived from the bound Config at dispatch."""

    display: Optional[Writer] = None
    dry_run: bool = False
    image_name: str = ""
    artifact_dir: str = ""
    cli_interface: str = "docker"
    image_build: ImageBuildOptions = field(default_factory=ImageBuildOptions)
    build_arg_items: list[str] = field(default_factory=list)
    bakefile: str = ""
    bake_target: str = ""
    image_tar_filename: str = ""
    image_save_pull: bool = False
    sbom_filename: str = ""
    grype_filename: str = ""
    grype_config_filename: str = ""
    clam_filename: str = ""
    clamscan_target: str = ""
    freshclam_disabled: bool = False
    semgrep_filename: str = ""
    semgrep_rules: str = ""
    semgrep_experimental: bool = False
    gitleaks_filename: str = ""
    gitleaks_src_dir: str = ""
    bundle_filename: str = ""
    bundle_tag: str = ""
    push_tag_arg: bool = False
    gatecheck_config_filename: str = ""
    monitor_interval: float = 1.0
    elapsed_interval: float = 3.0

    @classmethod
    def from_config(cls, config: Config, display: Optional[Writer] = None, dry_run: bool = False) -> TaskOptions:
        build = config.image_build
        return cls(
            display=display,
            dry_run=dry_run,
            image_name=config.image_tag,
            artifact_dir=config.artifact_dir,
            cli_interface=build.cli_interface,
            image_build=ImageBuildOptions(
                context=build.build_dir,
                dockerfile=build.dockerfile,
                platform=build.platform,
                target=build.target,
                cache_to=build.cache_to,
                cache_from=build.cache_from,
                squash_layers=build.squash_layers,
            ),
            build_arg_items=list(build.args),
            bakefile=build.bakefile,
            bake_target=build.bake_target,
            image_tar_filename=artifact_path(config.artifact_dir, build.save_filename),
            image_save_pull=build.save_pull,
            sbom_filename=config.image_scan.syft_filename,
            grype_filename=config.image_scan.grype_filename,
            grype_config_filename=config.image_scan.grype_config_filename,
            clam_filename=config.image_scan.clamav_filename,
            freshclam_disabled=config.image_scan.freshclam_disabled,
            semgrep_filename=config.code_scan.semgrep_filename,
            semgrep_rules=config.code_scan.semgrep_rules,
            semgrep_experimental=config.code_scan.semgrep_experimental,
            gitleaks_filename=config.code_scan.gitleaks_filename,
            gitleaks_src_dir=config.code_scan.gitleaks_src_dir,
            bundle_filename=artifact_path(config.artifact_dir, config.gatecheck_bundle_filename),
            bundle_tag=config.image_publish.bundle_tag,
            push_tag_arg=config.image_publish.push_tag_arg,
            gatecheck_config_filename=config.validation.gatecheck_config_filename,
        )

    def display_writer(self) -> Writer:
        return self.display if self.display is not None else sys.stdout.buffer

    def run_options(self, scope: Optional[CancelScope]) -> RunOptions:
        return RunOptions(dry_run=self.dry_run, scope=scope)


def artifact_path(artifact_dir: str, filename: str) -> str:
    if not filename:
        return ""
    if not artifact_dir:
        return filename
    return str(Path(artifact_dir) / filename)


def require(task_name: str, **values: str) -> None:
    """Raise every missing option at once; keyword names become the reported option names."""
    errors = [
        MissingOptionError(
            f"{task_name} pre-start error -> {option.replace('_', ' ')} is required",
            details={"option": option},
        )
        for option, value in values.items()
        if not value
    ]
    error = join_errors(errors)
    if error is not None:
        raise error


def ensure_parent(path: Path) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ArtifactIOError(f"cannot create directory {path.parent}: {exc}", details={"path": str(path)}) from exc


def open_artifact(path: Path):
    """Open an artifact for writing, creating parents and truncating any previous content."""
    ensure_parent(path)
    try:
        return open(path, "wb")
    except OSError as exc:
        raise ArtifactIOError(f"cannot open artifact {path}: {exc}", details={"path": str(path)}) from exc
