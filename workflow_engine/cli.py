"""Command line application: ``run-task`` dispatch and ``config`` utilities."""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import os
import signal
import sys
import tempfile
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import structlog

from workflow_engine.core.exceptions import (
    ArtifactIOError,
    ConfigurationError,
    DecodeError,
    UnknownTaskError,
    WorkflowEngineException,
)
from workflow_engine.core.logging import configure_logging, level_from_flags
from workflow_engine.settings import docs
from workflow_engine.settings.config import (
    Config,
    default_config,
    encode_config,
    fold_into_defaults,
    load_config_file,
    load_env_file,
    parse_output,
    render_template,
    template_context,
    unmarshal,
)
from workflow_engine.settings.meta import MetaConfig, decode_bool, new_meta_config
from workflow_engine.shell.runner import CancelScope, Writer
from workflow_engine.tasks import (
    ClamAntivirusScanTask,
    CombinedCodeScanTask,
    GatecheckBundleTask,
    GatecheckValidateTask,
    GitleaksCodeScanTask,
    GrypeImageScanTask,
    ImagePushTask,
    ImageSaveTask,
    OrasBundlePublishTask,
    SemgrepCodeScanTask,
    Task,
    TaskOptions,
    new_image_build_task,
)
from workflow_engine.tasks.base import artifact_path

logger = structlog.get_logger(__name__)

EXIT_OK = 0
EXIT_USER_INPUT = 1
EXIT_SYSTEM = 2
EXIT_TASK_FAILURE = 3

LOG_JSON_ENV = "WFE_LOG_JSON"
TEMP_IMAGE_SUFFIX = ".container-image.tar"

_BUILD_FIELDS = (
    "image_build_enabled",
    "image_build_cli_interface",
    "image_build_build_dir",
    "image_build_dockerfile",
    "image_build_platform",
    "image_build_target",
    "image_build_cache_to",
    "image_build_cache_from",
    "image_build_squash_layers",
    "image_build_args",
    "image_build_bakefile",
    "image_build_bake_target",
)
_SEMGREP_FIELDS = (
    "artifact_dir",
    "code_scan_enabled",
    "code_scan_semgrep_filename",
    "code_scan_semgrep_rules",
    "code_scan_semgrep_experimental",
)
_GITLEAKS_FIELDS = (
    "artifact_dir",
    "code_scan_enabled",
    "code_scan_gitleaks_filename",
    "code_scan_gitleaks_src_dir",
)


@dataclass(frozen=True)
class TaskEntry:
    """One ``run-task`` target: its help text, the MetaFields it exposes and its enable toggle."""

    help: str
    fields: tuple[str, ...]
    enabled: Callable[[Config], bool] = lambda config: True


TASKS: dict[str, TaskEntry] = {
    "image-build": TaskEntry(
        "Build a container image with docker, podman or docker buildx bake",
        _BUILD_FIELDS,
        lambda config: config.image_build.enabled,
    ),
    "image-save": TaskEntry(
        "Save the container image to a tar archive",
        (
            "image_tag",
            "artifact_dir",
            "image_build_cli_interface",
            "image_build_save_filename",
            "image_build_save_pull",
        ),
    ),
    "image-vul-scan": TaskEntry(
        "Generate an SBOM with syft and scan it for vulnerabilities with grype",
        (
            "image_tag",
            "artifact_dir",
            "image_scan_enabled",
            "image_scan_syft_filename",
            "image_scan_grype_config_filename",
            "image_scan_grype_filename",
        ),
        lambda config: config.image_scan.enabled,
    ),
    "image-antivirus-scan": TaskEntry(
        "Save the image to a temporary archive and scan it with clamav",
        (
            "image_tag",
            "artifact_dir",
            "image_scan_enabled",
            "image_build_cli_interface",
            "image_build_save_pull",
            "image_scan_clamav_filename",
            "image_scan_freshclam_disabled",
        ),
        lambda config: config.image_scan.enabled,
    ),
    "image-push": TaskEntry(
        "Push the container image to its registry",
        ("image_tag", "image_build_cli_interface", "image_publish_enabled", "image_publish_push_tag_arg"),
        lambda config: config.image_publish.enabled,
    ),
    "sast-code-scan": TaskEntry(
        "Static analysis of the source code with semgrep",
        _SEMGREP_FIELDS,
        lambda config: config.code_scan.enabled,
    ),
    "secrets-code-scan": TaskEntry(
        "Scan the source code for committed secrets with gitleaks",
        _GITLEAKS_FIELDS,
        lambda config: config.code_scan.enabled,
    ),
    "code-scan": TaskEntry(
        "Run the semgrep and gitleaks scans in sequence",
        tuple(dict.fromkeys(_SEMGREP_FIELDS + _GITLEAKS_FIELDS)),
        lambda config: config.code_scan.enabled,
    ),
    "bundle": TaskEntry(
        "Add artifacts to the gatecheck bundle",
        ("artifact_dir", "gatecheck_bundle_filename"),
    ),
    "bundle-publish": TaskEntry(
        "Push the gatecheck bundle to an OCI registry with oras",
        (
            "artifact_dir",
            "gatecheck_bundle_filename",
            "image_publish_bundle_enabled",
            "image_publish_bundle_tag",
        ),
        lambda config: config.image_publish.bundle_publish_enabled,
    ),
    "validate": TaskEntry(
        "Validate the gatecheck bundle or a single report",
        (
            "artifact_dir",
            "gatecheck_bundle_filename",
            "validation_enabled",
            "validation_gatecheck_config_filename",
        ),
        lambda config: config.validation.enabled,
    ),
}


class _Parser(argparse.ArgumentParser):
    """ArgumentParser whose usage errors map onto the user input exit code."""

    def error(self, message: str) -> None:  # type: ignore[override]
        self.print_usage(sys.stderr)
        self.exit(EXIT_USER_INPUT, f"{self.prog}: error: {message}\n")


def default_bundle_files(options: TaskOptions) -> list[str]:
    """Report artifacts from earlier tasks that exist on disk, in pipeline order."""
    candidates = [
        artifact_path(options.artifact_dir, options.sbom_filename),
        artifact_path(options.artifact_dir, options.grype_filename),
        artifact_path(options.artifact_dir, options.clam_filename),
        artifact_path(options.artifact_dir, options.semgrep_filename),
        artifact_path(options.artifact_dir, options.gitleaks_filename),
    ]
    return [candidate for candidate in candidates if candidate and Path(candidate).is_file()]


class App:
    """The workflow engine CLI.

    ``meta`` is the MetaField catalog the parser binds flags into. ``stdout``
    receives display output, ``stderr`` receives labelled child output; both
    default to the process streams.
    """

    def __init__(
        self,
        meta: MetaConfig,
        stdout: Optional[Writer] = None,
        stderr: Optional[Writer] = None,
    ) -> None:
        self.meta = meta
        self.stdout = stdout if stdout is not None else sys.stdout.buffer
        self.stderr = stderr if stderr is not None else sys.stderr.buffer

    # ------------------------------------------------------------------
    # Parser
    # ------------------------------------------------------------------

    def build_parser(self) -> argparse.ArgumentParser:
        parser = _Parser(
            prog="workflow-engine",
            description="Portable security pipeline: build, scan, bundle and validate container images.",
        )
        noise = parser.add_mutually_exclusive_group()
        noise.add_argument("-v", "--verbose", action="store_true", help="Print debug logs")
        noise.add_argument("-s", "--silent", action="store_true", help="Only print error logs")
        parser.add_argument("-c", "--config", default="", help="Configuration file (json, yaml or toml, optionally *.tmpl)")
        parser.add_argument("--env-file", default="", help="Load environment variables from a dotenv file")

        commands = parser.add_subparsers(dest="command", metavar="COMMAND", required=True)
        self._add_run_task(commands)
        self._add_config(commands)
        return parser

    def _add_run_task(self, commands) -> None:
        run_task = commands.add_parser("run-task", help="Run a single pipeline task")
        tasks = run_task.add_subparsers(dest="task", metavar="TASK", required=True)
        for name, entry in TASKS.items():
            task_parser = tasks.add_parser(name, help=entry.help, description=entry.help)
            for attr in entry.fields:
                getattr(self.meta, attr).bind_to_parser(task_parser)
            task_parser.add_argument("--dry-run", action="store_true", help="Log commands without running them")
            task_parser.add_argument(
                "--timeout",
                type=float,
                default=None,
                help="Cancel the task after this many seconds (default: no timeout)",
            )
            if name == "bundle":
                task_parser.add_argument(
                    "files", nargs="*", help="Artifacts to add (default: existing reports in the artifact directory)"
                )
            elif name in ("validate", "image-antivirus-scan"):
                task_parser.add_argument(
                    "target", nargs="?", default="", help="File to process instead of the default target"
                )
            task_parser.set_defaults(handler=self._run_task)

    def _add_config(self, commands) -> None:
        config = commands.add_parser("config", help="Inspect, generate and convert configuration")
        sub = config.add_subparsers(dest="config_command", metavar="SUBCOMMAND", required=True)

        init = sub.add_parser("init", help="Write the default configuration")
        init.add_argument("-o", "--output", default="yaml", help="<format>[=<file>] (default: %(default)s)")
        init.set_defaults(handler=self._config_init)

        info = sub.add_parser("info", help="Print the configuration bound from flags, env and file")
        for _, field in self.meta.items():
            field.bind_to_parser(info)
        info.add_argument("-o", "--output", default="yaml", help="<format>[=<file>] (default: %(default)s)")
        info.set_defaults(handler=self._config_info)

        variables = sub.add_parser("vars", help="List environment variables and their current values")
        variables.set_defaults(handler=self._config_vars)

        render = sub.add_parser("render", help="Render a Jinja2 template with env and config in scope")
        render.add_argument("template", help="Template file")
        render.add_argument("-o", "--output", default="", help="Write to this file instead of stdout")
        render.set_defaults(handler=self._config_render)

        convert = sub.add_parser("convert", help="Convert a configuration file to another format")
        convert.add_argument("-i", "--input", required=True, help="Configuration file to read")
        convert.add_argument("-o", "--output", required=True, help="<format>[=<file>]")
        convert.set_defaults(handler=self._config_convert)

        action = sub.add_parser("generate-action", help="Generate a composite GitHub Action (action.yml)")
        action.add_argument("-o", "--output", default="", help="Write to this file instead of stdout")
        action.set_defaults(handler=self._config_generate_action)

        table = sub.add_parser("generate-table", help="Markdown table of config keys and environment variables")
        table.set_defaults(handler=self._config_generate_table)

        action_table = sub.add_parser("generate-action-table", help="Markdown table of GitHub Action inputs")
        action_table.set_defaults(handler=self._config_generate_action_table)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(self, argv: Optional[Sequence[str]] = None) -> int:
        parser = self.build_parser()
        try:
            args = parser.parse_args(argv)
        except SystemExit as exc:
            return exc.code if isinstance(exc.code, int) else EXIT_USER_INPUT

        level = level_from_flags(args.verbose, args.silent)
        try:
            json_output = decode_bool(os.environ.get(LOG_JSON_ENV) or "false")
        except DecodeError as exc:
            configure_logging(level)
            logger.error("cli.invalid_environment", variable=LOG_JSON_ENV, **exc.to_dict())
            return EXIT_USER_INPUT
        configure_logging(level, json_output=json_output)

        try:
            if args.env_file and not load_env_file(args.env_file):
                raise ConfigurationError(f"cannot open env file: {args.env_file}")
            return args.handler(args)
        except (ArtifactIOError, OSError) as exc:
            logger.error("cli.system_failure", error=str(exc))
            return EXIT_SYSTEM
        except WorkflowEngineException as exc:
            logger.error("cli.configuration_error", **exc.to_dict())
            return EXIT_USER_INPUT

    def bind(self, args: argparse.Namespace) -> Config:
        """Fold the config file into the defaults, then evaluate every MetaField."""
        meta = self.meta
        if args.config:
            meta = fold_into_defaults(meta, load_config_file(args.config))
        config = Config()
        unmarshal(config, meta)
        return config

    # ------------------------------------------------------------------
    # run-task
    # ------------------------------------------------------------------

    def _run_task(self, args: argparse.Namespace) -> int:
        entry = TASKS.get(args.task)
        if entry is None:
            raise UnknownTaskError(f"unknown task: {args.task}", details={"tasks": list(TASKS)})

        config = self.bind(args)
        logger.debug("config.bound", config=config.model_dump(by_alias=True))

        if not entry.enabled(config):
            logger.info("task.disabled", task=args.task)
            return EXIT_OK

        options = TaskOptions.from_config(config, display=self.stdout, dry_run=args.dry_run)
        return asyncio.run(self._dispatch(args, options))

    async def _dispatch(self, args: argparse.Namespace, options: TaskOptions) -> int:
        scope = CancelScope(timeout=args.timeout)
        signals = self._install_signal_handlers(scope)
        log = logger.bind(task=args.task)
        try:
            await self._execute(args, options, scope)
        except WorkflowEngineException as exc:
            log.error("task.failed", **exc.to_dict())
            return EXIT_TASK_FAILURE
        finally:
            loop = asyncio.get_running_loop()
            for sig in signals:
                loop.remove_signal_handler(sig)

        log.info("task.complete")
        return EXIT_OK

    def _install_signal_handlers(self, scope: CancelScope) -> list[signal.Signals]:
        loop = asyncio.get_running_loop()
        installed = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, scope.cancel)
            except (NotImplementedError, RuntimeError, ValueError) as exc:
                logger.debug("cli.signal_handler_unavailable", signal=sig.name, error=str(exc))
                continue
            installed.append(sig)
        return installed

    async def _execute(self, args: argparse.Namespace, options: TaskOptions, scope: CancelScope) -> None:
        name = args.task
        if name == "image-antivirus-scan":
            await self._antivirus_scan(args.target, options, scope)
            return

        task: Task
        if name == "image-build":
            task = new_image_build_task(options.cli_interface, options)
        elif name == "image-save":
            task = ImageSaveTask(options.cli_interface, options)
        elif name == "image-vul-scan":
            task = GrypeImageScanTask(options)
        elif name == "image-push":
            task = ImagePushTask(options.cli_interface, options)
        elif name == "sast-code-scan":
            task = SemgrepCodeScanTask(options)
        elif name == "secrets-code-scan":
            task = GitleaksCodeScanTask(options)
        elif name == "code-scan":
            task = CombinedCodeScanTask(options)
        elif name == "bundle":
            task = GatecheckBundleTask(options, args.files or default_bundle_files(options))
        elif name == "bundle-publish":
            task = OrasBundlePublishTask(options)
        elif name == "validate":
            task = GatecheckValidateTask(options, args.target)
        else:
            raise UnknownTaskError(f"unknown task: {name}", details={"tasks": list(TASKS)})

        await task.run(scope, self.stderr)

    async def _antivirus_scan(self, target: str, options: TaskOptions, scope: CancelScope) -> None:
        if target:
            await ClamAntivirusScanTask(dataclasses.replace(options, clamscan_target=target)).run(scope, self.stderr)
            return

        fd, image_tar = tempfile.mkstemp(suffix=TEMP_IMAGE_SUFFIX)
        os.close(fd)
        logger.debug("antivirus.temp_image", path=image_tar)
        try:
            save = ImageSaveTask(options.cli_interface, dataclasses.replace(options, image_tar_filename=image_tar))
            await save.run(scope, self.stderr)
            scan = ClamAntivirusScanTask(dataclasses.replace(options, clamscan_target=image_tar))
            await scan.run(scope, self.stderr)
        finally:
            Path(image_tar).unlink(missing_ok=True)

    # ------------------------------------------------------------------
    # config
    # ------------------------------------------------------------------

    def _emit(self, text: str, filename: str = "") -> None:
        if filename:
            Path(filename).write_text(text, encoding="utf-8")
            logger.info("config.written", path=filename)
            return
        self.stdout.write(text.encode("utf-8"))
        flush = getattr(self.stdout, "flush", None)
        if flush is not None:
            flush()

    def _config_init(self, args: argparse.Namespace) -> int:
        fmt, filename = parse_output(args.output)
        self._emit(encode_config(default_config(self.meta), fmt), filename)
        return EXIT_OK

    def _config_info(self, args: argparse.Namespace) -> int:
        fmt, filename = parse_output(args.output)
        self._emit(encode_config(self.bind(args), fmt), filename)
        return EXIT_OK

    def _config_vars(self, args: argparse.Namespace) -> int:
        meta = self.meta
        if args.config:
            meta = fold_into_defaults(meta, load_config_file(args.config))
        self._emit(docs.vars_table(meta))
        return EXIT_OK

    def _config_render(self, args: argparse.Namespace) -> int:
        config = self.bind(args)
        context = template_context(config=config.model_dump(by_alias=True))
        self._emit(render_template(Path(args.template), context), args.output)
        return EXIT_OK

    def _config_convert(self, args: argparse.Namespace) -> int:
        fmt, filename = parse_output(args.output)
        self._emit(encode_config(load_config_file(args.input), fmt, exclude_unset=True), filename)
        return EXIT_OK

    def _config_generate_action(self, args: argparse.Namespace) -> int:
        self._emit(docs.action_yaml(self.meta), args.output)
        return EXIT_OK

    def _config_generate_table(self, args: argparse.Namespace) -> int:
        self._emit(docs.env_table(self.meta))
        return EXIT_OK

    def _config_generate_action_table(self, args: argparse.Namespace) -> int:
        self._emit(docs.action_table(self.meta))
        return EXIT_OK


def main(argv: list[str] | None = None) -> None:
    app = App(new_meta_config())
    sys.exit(app.run(argv))


if __name__ == "__main__":
    main()
