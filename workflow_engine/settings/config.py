"""Typed pipeline configuration and the MetaConfig binder.

Each bound leaf of :class:`Config` carries a ``metafield`` marker naming the
MetaConfig attribute it is filled from. Sub-sections are walked without a
marker of their own.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Callable, Iterator, Mapping
from pathlib import Path
from typing import Any, Optional

import structlog
import tomli_w
import yaml
from dotenv import load_dotenv
from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateError
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.fields import FieldInfo

from workflow_engine.core.exceptions import ConfigurationError
from workflow_engine.settings.meta import MetaConfig, MetaField

logger = structlog.get_logger(__name__)

METAFIELD_KEY = "metafield"
FORMATS = ("json", "yaml", "yml", "toml")
TEMPLATE_SUFFIXES = (".tmpl", ".tpl")


def bound(metafield: str, alias: str, default: Any = "", **kwargs: Any) -> Any:
    """Declare a config leaf filled from the named MetaField."""
    return Field(default, alias=alias, json_schema_extra={METAFIELD_KEY: metafield}, **kwargs)


class _Section(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class ImageBuildConfig(_Section):
    enabled: bool = bound("image_build_enabled", "enabled", False)
    cli_interface: str = bound("image_build_cli_interface", "cliInterface")
    build_dir: str = bound("image_build_build_dir", "buildDir")
    dockerfile: str = bound("image_build_dockerfile", "dockerfile")
    platform: str = bound("image_build_platform", "platform")
    target: str = bound("image_build_target", "target")
    cache_to: str = bound("image_build_cache_to", "cacheTo")
    cache_from: str = bound("image_build_cache_from", "cacheFrom")
    squash_layers: bool = bound("image_build_squash_layers", "squashLayers", False)
    args: list[str] = Field(
        default_factory=list, alias="args", json_schema_extra={METAFIELD_KEY: "image_build_args"}
    )
    bakefile: str = bound("image_build_bakefile", "bakefile")
    bake_target: str = bound("image_build_bake_target", "bakeTarget")
    save_filename: str = bound("image_build_save_filename", "saveFilename")
    save_pull: bool = bound("image_build_save_pull", "savePull", False)


class ImageScanConfig(_Section):
    enabled: bool = bound("image_scan_enabled", "enabled", False)
    syft_filename: str = bound("image_scan_syft_filename", "syftFilename")
    grype_config_filename: str = bound("image_scan_grype_config_filename", "grypeConfigFilename")
    grype_filename: str = bound("image_scan_grype_filename", "grypeFilename")
    clamav_filename: str = bound("image_scan_clamav_filename", "clamavFilename")
    freshclam_disabled: bool = bound("image_scan_freshclam_disabled", "freshclamDisabled", False)


class CodeScanConfig(_Section):
    enabled: bool = bound("code_scan_enabled", "enabled", False)
    gitleaks_filename: str = bound("code_scan_gitleaks_filename", "gitleaksFilename")
    gitleaks_src_dir: str = bound("code_scan_gitleaks_src_dir", "gitleaksSrcDir")
    semgrep_filename: str = bound("code_scan_semgrep_filename", "semgrepFilename")
    semgrep_rules: str = bound("code_scan_semgrep_rules", "semgrepRules")
    semgrep_experimental: bool = bound("code_scan_semgrep_experimental", "semgrepExperimental", False)


class ImagePublishConfig(_Section):
    enabled: bool = bound("image_publish_enabled", "enabled", False)
    push_tag_arg: bool = bound("image_publish_push_tag_arg", "pushTagArg", False)
    bundle_publish_enabled: bool = bound("image_publish_bundle_enabled", "bundlePublishEnabled", False)
    bundle_tag: str = bound("image_publish_bundle_tag", "bundleTag")


class ValidationConfig(_Section):
    enabled: bool = bound("validation_enabled", "enabled", False)
    gatecheck_config_filename: str = bound("validation_gatecheck_config_filename", "gatecheckConfigFilename")


class Config(_Section):
    """All parameters for the task catalog."""

    version: str = Field("1", alias="version")
    image_tag: str = bound("image_tag", "imageTag")
    artifact_dir: str = bound("artifact_dir", "artifactDir")
    gatecheck_bundle_filename: str = bound("gatecheck_bundle_filename", "gatecheckBundleFilename")
    image_build: ImageBuildConfig = Field(default_factory=ImageBuildConfig, alias="imageBuild")
    image_scan: ImageScanConfig = Field(default_factory=ImageScanConfig, alias="imageScan")
    code_scan: CodeScanConfig = Field(default_factory=CodeScanConfig, alias="codeScan")
    image_publish: ImagePublishConfig = Field(default_factory=ImagePublishConfig, alias="imagePublish")
    validation: ValidationConfig = Field(default_factory=ValidationConfig, alias="deploy")


def metafield_tag(info: FieldInfo) -> Optional[str]:
    extra = info.json_schema_extra
    if isinstance(extra, dict):
        tag = extra.get(METAFIELD_KEY)
        return tag if isinstance(tag, str) else None
    return None


def _is_section(info: FieldInfo) -> bool:
    annotation = info.annotation
    return isinstance(annotation, type) and issubclass(annotation, BaseModel)


def bound_leaves(model: type[BaseModel] = Config, prefix: str = "") -> Iterator[tuple[str, str]]:
    """Yield ``(dotted serialized path, metafield tag)`` for every bound leaf, depth first."""
    for name, info in model.model_fields.items():
        key = f"{prefix}{info.alias or name}"
        if _is_section(info):
            yield from bound_leaves(info.annotation, f"{key}.")
            continue
        tag = metafield_tag(info)
        if tag is not None:
            yield key, tag


def _assign(dst: BaseModel, src: MetaConfig, resolve: Callable[[MetaField], Any]) -> None:
    for name, info in type(dst).model_fields.items():
        value = getattr(dst, name)
        if isinstance(value, BaseModel):
            _assign(value, src, resolve)
            continue

        tag = metafield_tag(info)
        if tag is None:
            continue

        field = src.get(tag)
        if field is None:
            logger.error("config.field_not_found", key=tag)
            continue

        logger.debug("config.evaluate_field", key=tag)
        setattr(dst, name, resolve(field))


def unmarshal(dst: Config, src: MetaConfig, environ: Optional[Mapping[str, str]] = None) -> None:
    """Fill every bound leaf of ``dst`` with the evaluated value of its MetaField.

    Tags without a matching MetaField are logged and skipped. Decoder failures
    propagate as :class:`DecodeError`.
    """
    logger.debug("config.unmarshal_start")
    _assign(dst, src, lambda field: field.evaluate(environ))


def default_config(src: MetaConfig) -> Config:
    """Config populated from MetaField defaults only, ignoring flags and environment."""
    config = Config()
    _assign(config, src, lambda field: field.decoded_default())
    return config


def fold_into_defaults(src: MetaConfig, file_config: Config) -> MetaConfig:
    """Return a MetaConfig whose defaults include the values set in a config file.

    Only keys present in the file are folded in, so flags and the environment
    still override them.
    """
    defaults: dict[str, str] = {}

    def collect(model: BaseModel) -> None:
        for name in model.model_fields_set:
            info = type(model).model_fields[name]
            value = getattr(model, name)
            if isinstance(value, BaseModel):
                collect(value)
                continue
            tag = metafield_tag(info)
            field = src.get(tag) if tag else None
            if field is None:
                continue
            defaults[tag] = field.kind.encode(value)

    collect(file_config)
    logger.debug("config.fold_defaults", keys=sorted(defaults))
    return src.with_defaults(defaults)


# ============================================================================
# FILE FORMATS
# ============================================================================


def parse_output(output: str) -> tuple[str, str]:
    """Split an ``<format>=<filename>`` output argument; a bare format writes to stdout."""
    if "=" in output:
        fmt, filename = output.split("=", 1)
        return fmt, filename
    return output, ""


def _check_format(fmt: str) -> str:
    fmt = fmt.lower()
    if fmt not in FORMATS:
        raise ConfigurationError(
            f"unsupported format: '{fmt}'", details={"supported": list(FORMATS)}
        )
    return fmt


def encode_config(config: Config, fmt: str, exclude_unset: bool = False) -> str:
    fmt = _check_format(fmt)
    data = config.model_dump(by_alias=True, exclude_unset=exclude_unset)
    if fmt == "json":
        return json.dumps(data, indent=2) + "\n"
    if fmt in ("yaml", "yml"):
        return yaml.safe_dump(data, sort_keys=False, indent=4)
    return tomli_w.dumps(data)


def decode_config(text: str, fmt: str) -> Config:
    fmt = _check_format(fmt)
    try:
        if fmt == "json":
            data = json.loads(text)
        elif fmt in ("yaml", "yml"):
            data = yaml.safe_load(text)
        else:
            data = tomllib.loads(text)
    except (json.JSONDecodeError, yaml.YAMLError, tomllib.TOMLDecodeError) as exc:
        raise ConfigurationError(f"cannot decode {fmt} configuration: {exc}") from exc

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"{fmt} configuration must be a mapping, got {type(data).__name__}")

    try:
        return Config.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(f"invalid configuration: {exc}", details={"errors": exc.errors()}) from exc


def format_for(path: Path) -> tuple[str, bool]:
    """Return the config format implied by ``path`` and whether it is a template."""
    suffixes = [suffix.lower() for suffix in path.suffixes]
    is_template = bool(suffixes) and suffixes[-1] in TEMPLATE_SUFFIXES
    if is_template:
        suffixes = suffixes[:-1]
    if not suffixes:
        raise ConfigurationError(f"cannot determine configuration format for {path}")
    return _check_format(suffixes[-1].lstrip(".")), is_template


def template_context(environ: Optional[Mapping[str, str]] = None, **extra: Any) -> dict[str, Any]:
    environ = os.environ if environ is None else environ
    return {"env": dict(environ), **extra}


def render_template(path: Path, context: Mapping[str, Any]) -> str:
    environment = Environment(
        loader=FileSystemLoader(str(path.parent)),
        undefined=StrictUndefined,
        keep_trailing_newline=True,
        autoescape=False,
    )
    try:
        return environment.get_template(path.name).render(**context)
    except TemplateError as exc:
        raise ConfigurationError(f"cannot render template {path}: {exc}") from exc


def load_config_file(path: str | Path, environ: Optional[Mapping[str, str]] = None) -> Config:
    """Read a JSON, YAML or TOML config file; ``*.tmpl``/``*.tpl`` files are rendered first."""
    path = Path(path)
    fmt, is_template = format_for(path)
    log = logger.bind(config_file=str(path), format=fmt, template=is_template)

    log.debug("config.load_file")
    if not path.is_file():
        raise ConfigurationError(f"cannot open configuration file: {path}")

    if is_template:
        text = render_template(path, template_context(environ))
    else:
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigurationError(f"cannot open configuration file: {path}") from exc

    config = decode_config(text, fmt)
    log.debug("config.file_loaded")
    return config


def load_env_file(env_path: Optional[str] = None) -> bool:
    """Load environment variables from a .env file.

    Existing environment variables win over values from the file.

    Returns:
        True if file was loaded, False if not found.
    """
    env_file = Path(env_path or ".env")
    if env_file.exists():
        load_dotenv(env_file, override=False)
        logger.debug("config.env_file_loaded", path=str(env_file))
        return True
    return False
