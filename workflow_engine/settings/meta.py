"""MetaField descriptors and the MetaConfig catalog.

A MetaField describes one tunable: its CLI flag, its environment variable, its
default and the kind used to decode string input. ``evaluate`` resolves the
effective value with a fixed precedence:

1. the CLI value slot, when present and not equal to the decoded default
2. the environment variable, when set to a non-empty string
3. the decoded default
"""

from __future__ import annotations

import argparse
import dataclasses
import os
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from workflow_engine.core.exceptions import DecodeError

TRUE_TOKENS = frozenset({"y", "yes", "1", "true", "on"})
FALSE_TOKENS = frozenset({"n", "no", "0", "false", "off"})


def decode_string(value: str) -> str:
    return value


def decode_int(value: str) -> int:
    try:
        return int(value.strip(), 10)
    except ValueError as exc:
        raise DecodeError(f"invalid integer value: {value!r}") from exc


def decode_bool(value: str) -> bool:
    token = value.strip().lower()
    if token in TRUE_TOKENS:
        return True
    if token in FALSE_TOKENS:
        return False
    raise DecodeError(
        f"invalid boolean value: {value!r}",
        details={"truthy": sorted(TRUE_TOKENS), "falsy": sorted(FALSE_TOKENS)},
    )


def decode_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def encode_bool(value: bool) -> str:
    return "true" if value else "false"


def encode_list(value: list[str]) -> str:
    return ",".join(value)


class Kind(Enum):
    """Declared type of a MetaField; each kind owns exactly one decoder and encoder."""

    STRING = "String"
    BOOL = "Bool"
    INT = "Int"
    LIST = "List"

    def decode(self, value: str) -> Any:
        return _DECODERS[self](value)

    def encode(self, value: Any) -> str:
        return _ENCODERS[self](value)


_DECODERS: dict[Kind, Callable[[str], Any]] = {
    Kind.STRING: decode_string,
    Kind.BOOL: decode_bool,
    Kind.INT: decode_int,
    Kind.LIST: decode_list,
}

_ENCODERS: dict[Kind, Callable[[Any], str]] = {
    Kind.STRING: str,
    Kind.BOOL: encode_bool,
    Kind.INT: str,
    Kind.LIST: encode_list,
}

class _SlotAction(argparse.Action):
    """argparse action that decodes the flag value into a MetaField slot."""

    def __init__(self, option_strings, dest, metafield: MetaField, **kwargs) -> None:
        self.metafield = metafield
        super().__init__(option_strings, dest, **kwargs)

    def __call__(self, parser, namespace, values, option_string=None) -> None:
        field = self.metafield
        try:
            decoded = field.kind.decode(values)
        except DecodeError as exc:
            parser.error(f"argument {option_string}: {exc.message}")
        if field.kind is Kind.LIST and isinstance(field.flag_value, list):
            decoded = field.flag_value + decoded
        field.flag_value = decoded


@dataclass(slots=True, eq=False)
class MetaField:
    """Descriptor for one tunable parameter."""

    flag_name: str
    flag_desc: str
    env_key: str
    action_input_name: str
    kind: Kind
    default: str
    flag_value: Any = None

    def __post_init__(self) -> None:
        try:
            self.kind.decode(self.default)
        except DecodeError as exc:
            raise DecodeError(
                f"default for {self.env_key} does not decode as {self.kind.value}: {exc.message}"
            ) from exc

    @property
    def action_type(self) -> str:
        return self.kind.value

    def decoded_default(self) -> Any:
        return self.kind.decode(self.default)

    def evaluate(self, environ: Mapping[str, str] | None = None) -> Any:
        environ = os.environ if environ is None else environ
        default = self.decoded_default()

        if self.flag_value is not None and self.flag_value != default:
            return self.flag_value

        env_value = environ.get(self.env_key, "")
        if env_value != "":
            try:
                return self.kind.decode(env_value)
            except DecodeError as exc:
                raise DecodeError(
                    f"{self.env_key}: {exc.message}",
                    details={"env_key": self.env_key, "value": env_value},
                ) from exc

        return default

    def evaluate_string(self, environ: Mapping[str, str] | None = None) -> str:
        self._expect(Kind.STRING)
        return self.evaluate(environ)

    def evaluate_bool(self, environ: Mapping[str, str] | None = None) -> bool:
        self._expect(Kind.BOOL)
        return self.evaluate(environ)

    def evaluate_int(self, environ: Mapping[str, str] | None = None) -> int:
        self._expect(Kind.INT)
        return self.evaluate(environ)

    def evaluate_string_slice(self, environ: Mapping[str, str] | None = None) -> list[str]:
        self._expect(Kind.LIST)
        return self.evaluate(environ)

    def _expect(self, kind: Kind) -> None:
        if self.kind is not kind:
            raise TypeError(f"invalid type: {self.env_key} is {self.kind.value}, expected {kind.value}")

    def with_default(self, default: str) -> MetaField:
        """Return a copy with a new default; the flag slot is carried over."""
        return dataclasses.replace(self, default=default)

    def bind_to_parser(self, parser: argparse.ArgumentParser) -> argparse.Action:
        """Register the flag on ``parser``; the slot is cleared so each parse starts empty."""
        self.flag_value = None
        kwargs: dict[str, Any] = {
            "action": _SlotAction,
            "metafield": self,
            "dest": argparse.SUPPRESS,
            "default": argparse.SUPPRESS,
            "help": f"{self.flag_desc} (env: {self.env_key}, default: {self.default!r})",
        }
        if self.kind is Kind.BOOL:
            kwargs.update(nargs="?", const="true")
        kwargs["metavar"] = _METAVARS[self.kind]
        return parser.add_argument(f"--{self.flag_name}", **kwargs)


_METAVARS = {
    Kind.STRING: "VALUE",
    Kind.BOOL: "BOOL",
    Kind.INT: "N",
    Kind.LIST: "A,B,...",
}


def _string(flag: str, desc: str, env: str, action_input: str, default: str = "") -> MetaField:
    return MetaField(flag, desc, env, action_input, Kind.STRING, default)


def _bool(flag: str, desc: str, env: str, action_input: str, default: str) -> MetaField:
    return MetaField(flag, desc, env, action_input, Kind.BOOL, default)


@dataclass(slots=True)
class MetaConfig:
    """Catalog of every tunable, keyed by attribute name.

    Config leaves refer to these attributes by name through their
    ``metafield`` marker.
    """

    image_tag: MetaField
    artifact_dir: MetaField
    gatecheck_bundle_filename: MetaField
    image_build_enabled: MetaField
    image_build_cli_interface: MetaField
    image_build_build_dir: MetaField
    image_build_dockerfile: MetaField
    image_build_platform: MetaField
    image_build_target: MetaField
    image_build_cache_to: MetaField
    image_build_cache_from: MetaField
    image_build_squash_layers: MetaField
    image_build_args: MetaField
    image_build_bakefile: MetaField
    image_build_bake_target: MetaField
    image_build_save_filename: MetaField
    image_build_save_pull: MetaField
    image_scan_enabled: MetaField
    image_scan_syft_filename: MetaField
    image_scan_grype_config_filename: MetaField
    image_scan_grype_filename: MetaField
    image_scan_clamav_filename: MetaField
    image_scan_freshclam_disabled: MetaField
    code_scan_enabled: MetaField
    code_scan_gitleaks_filename: MetaField
    code_scan_gitleaks_src_dir: MetaField
    code_scan_semgrep_filename: MetaField
    code_scan_semgrep_rules: MetaField
    code_scan_semgrep_experimental: MetaField
    image_publish_enabled: MetaField
    image_publish_push_tag_arg: MetaField
    image_publish_bundle_enabled: MetaField
    image_publish_bundle_tag: MetaField
    validation_enabled: MetaField
    validation_gatecheck_config_filename: MetaField

    def items(self) -> Iterator[tuple[str, MetaField]]:
        for entry in dataclasses.fields(self):
            yield entry.name, getattr(self, entry.name)

    def get(self, name: str) -> MetaField | None:
        value = getattr(self, name, None)
        return value if isinstance(value, MetaField) else None

    def with_defaults(self, defaults: Mapping[str, str]) -> MetaConfig:
        """Return a catalog whose defaults are replaced by ``defaults`` (attribute name -> encoded value)."""
        changes = {}
        for name, value in defaults.items():
            field = self.get(name)
            if field is None:
                continue
            changes[name] = field.with_default(value)
        return dataclasses.replace(self, **changes)


def new_meta_config() -> MetaConfig:
    return MetaConfig(
        image_tag=_string(
            "tag", "The full image tag for the target container image", "WFE_IMAGE_TAG", "tag", "my-app:latest"
        ),
        artifact_dir=_string(
            "artifact-dir",
            "The target directory for all generated artifacts",
            "WFE_ARTIFACT_DIR",
            "artifact_dir",
            "artifacts",
        ),
        gatecheck_bundle_filename=_string(
            "bundle-filename",
            "The filename for the gatecheck bundle, a validatable archive of security artifacts",
            "WFE_GATECHECK_BUNDLE_FILENAME",
            "gatecheck_bundle_filename",
            "gatecheck-bundle.tar.gz",
        ),
        image_build_enabled=_bool(
            "image-build-enabled",
            "Enable/Disable the image build task",
            "WFE_IMAGE_BUILD_ENABLED",
            "image_build_enabled",
            "true",
        ),
        image_build_cli_interface=_string(
            "cli-interface",
            "The container CLI to drive: docker, podman or bake (build only)",
            "WFE_IMAGE_BUILD_CLI_INTERFACE",
            "cli_interface",
            "docker",
        ),
        image_build_build_dir=_string(
            "build-dir",
            "The build directory to use during an image build",
            "WFE_IMAGE_BUILD_DIR",
            "build_dir",
            ".",
        ),
        image_build_dockerfile=_string(
            "dockerfile",
            "The Dockerfile/Containerfile to use during an image build",
            "WFE_IMAGE_BUILD_DOCKERFILE",
            "dockerfile",
            "Dockerfile",
        ),
        image_build_platform=_string(
            "platform",
            "The target platform for build (e.g., linux/amd64)",
            "WFE_IMAGE_BUILD_PLATFORM",
            "platform",
        ),
        image_build_target=_string(
            "target", "The target build stage to build", "WFE_IMAGE_BUILD_TARGET", "target"
        ),
        image_build_cache_to=_string(
            "cache-to",
            'Cache export destinations (e.g., "user/app:cache", "type=local,src=path/to/dir")',
            "WFE_IMAGE_BUILD_CACHE_TO",
            "cache_to",
        ),
        image_build_cache_from=_string(
            "cache-from",
            'External cache sources (e.g., "user/app:cache", "type=local,src=path/to/dir")',
            "WFE_IMAGE_BUILD_CACHE_FROM",
            "cache_from",
        ),
        image_build_squash_layers=_bool(
            "squash-layers",
            "Squash image layers - only supported with the podman CLI",
            "WFE_IMAGE_BUILD_SQUASH_LAYERS",
            "squash_layers",
            "false",
        ),
        image_build_args=MetaField(
            "build-args",
            "Comma separated list of KEY=VALUE build time variables",
            "WFE_IMAGE_BUILD_ARGS",
            "build_args",
            Kind.LIST,
            "",
        ),
        image_build_bakefile=_string(
            "bakefile",
            "The bake definition file used with the bake CLI interface",
            "WFE_IMAGE_BUILD_BAKEFILE",
            "bakefile",
            "docker-bake.hcl",
        ),
        image_build_bake_target=_string(
            "bake-target",
            "The bake target to build with the bake CLI interface",
            "WFE_IMAGE_BUILD_BAKE_TARGET",
            "bake_target",
            "default",
        ),
        image_build_save_filename=_string(
            "save-filename",
            "The filename for the image archive written by image-save",
            "WFE_IMAGE_BUILD_SAVE_FILENAME",
            "save_filename",
            "image.tar",
        ),
        image_build_save_pull=_bool(
            "pull",
            "Pull the image before saving if it is not loaded locally",
            "WFE_IMAGE_BUILD_SAVE_PULL",
            "pull",
            "false",
        ),
        image_scan_enabled=_bool(
            "image-scan-enabled",
            "Enable/Disable the image scan tasks",
            "WFE_IMAGE_SCAN_ENABLED",
            "image_scan_enabled",
            "true",
        ),
        image_scan_syft_filename=_string(
            "syft-filename",
            "The filename for the syft SBOM report - must contain 'syft'",
            "WFE_IMAGE_SCAN_SYFT_FILENAME",
            "syft_filename",
            "sbom-report.syft.json",
        ),
        image_scan_grype_config_filename=_string(
            "grype-config-filename",
            "The config filename for the grype vulnerability report",
            "WFE_IMAGE_SCAN_GRYPE_CONFIG_FILENAME",
            "grype_config_filename",
        ),
        image_scan_grype_filename=_string(
            "grype-filename",
            "The filename for the grype vulnerability report - must contain 'grype'",
            "WFE_IMAGE_SCAN_GRYPE_FILENAME",
            "grype_filename",
            "image-vulnerability-report.grype.json",
        ),
        image_scan_clamav_filename=_string(
            "clamav-filename",
            "The filename for the clamscan virus report - must contain 'clamav'",
            "WFE_IMAGE_SCAN_CLAMAV_FILENAME",
            "clamav_filename",
            "virus-report.clamav.txt",
        ),
        image_scan_freshclam_disabled=_bool(
            "freshclam-disabled",
            "Skip the freshclam virus database update before scanning",
            "WFE_IMAGE_SCAN_FRESHCLAM_DISABLED",
            "freshclam_disabled",
            "false",
        ),
        code_scan_enabled=_bool(
            "code-scan-enabled",
            "Enable/Disable the code scan tasks",
            "WFE_CODE_SCAN_ENABLED",
            "code_scan_enabled",
            "true",
        ),
        code_scan_gitleaks_filename=_string(
            "gitleaks-filename",
            "The filename for the gitleaks secret report - must contain 'gitleaks'",
            "WFE_CODE_SCAN_GITLEAKS_FILENAME",
            "gitleaks_filename",
            "secrets-report.gitleaks.json",
        ),
        code_scan_gitleaks_src_dir=_string(
            "gitleaks-src-dir",
            "The target directory for the gitleaks scan",
            "WFE_CODE_SCAN_GITLEAKS_SRC_DIR",
            "gitleaks_src_dir",
            ".",
        ),
        code_scan_semgrep_filename=_string(
            "semgrep-filename",
            "The filename for the semgrep code scan report - must contain 'semgrep'",
            "WFE_CODE_SCAN_SEMGREP_FILENAME",
            "semgrep_filename",
            "code-scan-report.semgrep.json",
        ),
        code_scan_semgrep_rules=_string(
            "semgrep-rules",
            "Semgrep ruleset manual override (e.g., p/default, p/owasp-top-ten)",
            "WFE_CODE_SCAN_SEMGREP_RULES",
            "semgrep_rules",
            "p/default",
        ),
        code_scan_semgrep_experimental=_bool(
            "experimental",
            "Run using osemgrep, the statically compiled version of semgrep",
            "WFE_CODE_SCAN_SEMGREP_EXPERIMENTAL",
            "semgrep_experimental",
            "false",
        ),
        image_publish_enabled=_bool(
            "image-publish-enabled",
            "Enable/Disable the image publish task",
            "WFE_IMAGE_PUBLISH_ENABLED",
            "image_publish_enabled",
            "true",
        ),
        image_publish_push_tag_arg=_bool(
            "push-tag-arg",
            "Pass the image tag to the push command as a positional argument",
            "WFE_IMAGE_PUBLISH_PUSH_TAG_ARG",
            "push_tag_arg",
            "false",
        ),
        image_publish_bundle_enabled=_bool(
            "bundle-publish-enabled",
            "Enable/Disable gatecheck artifact bundle publish task",
            "WFE_IMAGE_BUNDLE_PUBLISH_ENABLED",
            "bundle_publish_enabled",
            "true",
        ),
        image_publish_bundle_tag=_string(
            "bundle-tag",
            "The full image tag for the target gatecheck bundle image blob",
            "WFE_IMAGE_PUBLISH_BUNDLE_TAG",
            "bundle_tag",
            "my-app/artifact-bundle:latest",
        ),
        validation_enabled=_bool(
            "validation-enabled",
            "Enable/Disable the validation task",
            "WFE_DEPLOY_ENABLED",
            "validation_enabled",
            "true",
        ),
        validation_gatecheck_config_filename=_string(
            "gatecheck-config-filename",
            "The filename for the gatecheck config used during validation",
            "WFE_DEPLOY_GATECHECK_CONFIG_FILENAME",
            "gatecheck_config_filename",
        ),
    )
