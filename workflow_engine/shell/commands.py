"""Argument vectors for the external tools the tasks drive.

Every builder is pure: the same inputs always produce the same argv. Missing
required inputs raise a :class:`ConfigurationError` before anything runs.
"""

from __future__ import annotations

import json
from dataclasses import dataclass

from workflow_engine.core.exceptions import (
    ConfigurationError,
    MissingOptionError,
    UnsupportedInterfaceError,
    join_errors,
)

CONTAINER_CLIS = ("docker", "podman")
BUNDLE_ARTIFACT_TYPE = "application/vnd.gatecheckdev.gatecheck.bundle.tar+gzip"


@dataclass(slots=True)
class ImageBuildOptions:
    context: str = ""
    dockerfile: str = ""
    platform: str = ""
    target: str = ""
    cache_to: str = ""
    cache_from: str = ""
    squash_layers: bool = False
    build_args: str = ""  # JSON object encoded as a string


def container_cli(cli_interface: str) -> str:
    name = cli_interface.strip().lower()
    if name not in CONTAINER_CLIS:
        raise UnsupportedInterfaceError(
            f"unsupported cli interface '{cli_interface}', must be docker or podman",
            details={"supported": list(CONTAINER_CLIS)},
        )
    return name


def parse_build_args(raw: str) -> dict[str, str]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"invalid build args format, must be JSON map as string: {exc}") from exc
    if not isinstance(value, dict):
        raise ConfigurationError("invalid build args format, must be JSON map as string")
    return {str(key): str(item) for key, item in value.items()}


def build_args_json(items: list[str]) -> str:
    """Encode ``KEY=VALUE`` items as the JSON map string taken by :class:`ImageBuildOptions`."""
    build_args = {}
    for item in items:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise ConfigurationError(f"invalid build arg '{item}', expected KEY=VALUE")
        build_args[key.strip()] = value
    return json.dumps(build_args, sort_keys=True) if build_args else ""


def image_build_argv(cli_interface: str, options: ImageBuildOptions) -> list[str]:
    """``<cli> build`` with build args sorted by key, then optional flags, then file and context."""
    errors: list[Exception] = []
    try:
        cli = container_cli(cli_interface)
    except UnsupportedInterfaceError as exc:
        errors.append(exc)
        cli = cli_interface

    try:
        build_args = parse_build_args(options.build_args)
    except ConfigurationError as exc:
        errors.append(exc)
        build_args = {}

    if not options.dockerfile:
        errors.append(MissingOptionError("build image Dockerfile required", details={"option": "dockerfile"}))
    if not options.context:
        errors.append(MissingOptionError("build image context required", details={"option": "context"}))

    error = join_errors(errors)
    if error is not None:
        raise error

    argv = [cli, "build"]
    for key in sorted(build_args):
        argv += ["--build-arg", f"{key}={build_args[key]}"]
    if options.platform:
        argv += ["--platform", options.platform]
    if options.target:
        argv += ["--target", options.target]
    if options.cache_to:
        argv += ["--cache-to", options.cache_to]
    if options.cache_from:
        argv += ["--cache-from", options.cache_from]
    if options.squash_layers:
        argv.append("--squash-layers")
    argv += ["--file", options.dockerfile, options.context]
    return argv


def bake_argv(bakefile: str, bake_target: str) -> list[str]:
    errors = []
    if not bake_target:
        errors.append(MissingOptionError("image build bake target required", details={"option": "bake_target"}))
    if not bakefile:
        errors.append(MissingOptionError("image build bake file required", details={"option": "bakefile"}))
    error = join_errors(errors)
    if error is not None:
        raise error
    return ["docker", "buildx", "bake", "--file", bakefile, bake_target]


def _require_image(image: str) -> None:
    if not image:
        raise MissingOptionError("image name is required", details={"option": "image_name"})


def image_save_argv(cli_interface: str, image: str) -> list[str]:
    cli = container_cli(cli_interface)
    _require_image(image)
    return [cli, "save", image]


def image_pull_argv(cli_interface: str, image: str) -> list[str]:
    cli = container_cli(cli_interface)
    _require_image(image)
    return [cli, "pull", image]


def image_push_argv(cli_interface: str, tag: str = "") -> list[str]:
    argv = [container_cli(cli_interface), "push"]
    if tag:
        argv.append(tag)
    return argv


def syft_scan_argv(image: str, sbom_path: str) -> list[str]:
    return ["syft", "scan", image, "--scope=squashed", "-o", f"syft-json={sbom_path}", "-vv"]


def grype_scan_argv(sbom_path: str, report_path: str, config_filename: str = "") -> list[str]:
    argv = ["grype", f"sbom:{sbom_path}", "-o", f"json={report_path}", "-vv"]
    if config_filename:
        argv += ["--config", config_filename]
    return argv


def freshclam_argv() -> list[str]:
    return ["freshclam"]


def clamscan_argv(target: str) -> list[str]:
    return [
        "clamscan",
        "--infected",
        "--recursive",
        "--archive-verbose",
        "--scan-archive=yes",
        "--max-filesize=1000M",
        "--max-scansize=1000M",
        "--stdout",
        target,
    ]


def semgrep_argv(rules: str, experimental: bool = False) -> list[str]:
    if not rules:
        raise MissingOptionError("Semgrep rules are required", details={"option": "semgrep_rules"})
    if experimental:
        return ["osemgrep", "ci", "--json", "--experimental", "--config", rules]
    return ["semgrep", "ci", "--json", "--config", rules]


def gitleaks_argv(source: str, report_path: str) -> list[str]:
    return [
        "gitleaks",
        "detect",
        "--exit-code",
        "0",
        "--verbose",
        "--source",
        source,
        "--report-path",
        report_path,
    ]


def gatecheck_list_argv(filename: str, epss: bool = False) -> list[str]:
    if epss:
        return ["gatecheck", "ls", "--verbose", "--epss", filename]
    return ["gatecheck", "ls", filename]


def gatecheck_bundle_create_argv(bundle_filename: str, target_filename: str) -> list[str]:
    return ["gatecheck", "bundle", "create", bundle_filename, target_filename]


def gatecheck_bundle_add_argv(bundle_filename: str, target_filename: str) -> list[str]:
    return ["gatecheck", "bundle", "add", bundle_filename, target_filename]


def gatecheck_validate_argv(target: str, config_filename: str = "") -> list[str]:
    argv = ["gatecheck", "validate"]
    if config_filename:
        argv += ["--config", config_filename]
    argv.append(target)
    return argv


def oras_push_bundle_argv(bundle_tag: str, bundle_filename: str) -> list[str]:
    return [
        "oras",
        "push",
        "--disable-path-validation",
        "--artifact-type",
        BUNDLE_ARTIFACT_TYPE,
        bundle_tag,
        bundle_filename,
    ]
