"""Unit tests for external tool argument vectors."""

import pytest

from workflow_engine.core.exceptions import (
    ConfigurationError,
    JoinedError,
    MissingOptionError,
    UnsupportedInterfaceError,
)
from workflow_engine.shell import commands
from workflow_engine.shell.commands import ImageBuildOptions


class TestImageBuild:
    """Tests for the docker/podman build argv."""

    def test_build_args_sorted_by_key(self):
        options = ImageBuildOptions(
            dockerfile="Dockerfile",
            context=".",
            platform="linux/amd64",
            build_args='{"B":"2","A":"1"}',
        )

        assert commands.image_build_argv("docker", options) == [
            "docker",
            "build",
            "--build-arg",
            "A=1",
            "--build-arg",
            "B=2",
            "--platform",
            "linux/amd64",
            "--file",
            "Dockerfile",
            ".",
        ]

    def test_argv_is_deterministic(self):
        options = ImageBuildOptions(dockerfile="Containerfile", context="src", build_args='{"Z":"9","M":"5"}')

        assert commands.image_build_argv("podman", options) == commands.image_build_argv("podman", options)

    def test_optional_flags(self):
        options = ImageBuildOptions(
            dockerfile="Dockerfile",
            context=".",
            target="runtime",
            cache_to="type=local,dest=/tmp/cache",
            cache_from="user/app:cache",
            squash_layers=True,
        )

        assert commands.image_build_argv("podman", options) == [
            "podman",
            "build",
            "--target",
            "runtime",
            "--cache-to",
            "type=local,dest=/tmp/cache",
            "--cache-from",
            "user/app:cache",
            "--squash-layers",
            "--file",
            "Dockerfile",
            ".",
        ]

    def test_missing_dockerfile_and_context_joined(self):
        """Test that both missing options are reported in one error."""
        with pytest.raises(JoinedError) as exc_info:
            commands.image_build_argv("docker", ImageBuildOptions())

        message = str(exc_info.value)
        assert "Dockerfile required" in message
        assert "context required" in message
        assert len(exc_info.value.errors) == 2

    def test_bad_interface_and_build_args(self):
        options = ImageBuildOptions(dockerfile="Dockerfile", context=".", build_args="not json")

        with pytest.raises(JoinedError) as exc_info:
            commands.image_build_argv("nerdctl", options)

        kinds = [type(error) for error in exc_info.value.errors]
        assert UnsupportedInterfaceError in kinds
        assert ConfigurationError in kinds

    def test_build_args_json(self):
        assert commands.build_args_json(["B=2", "A=1=x"]) == '{"A": "1=x", "B": "2"}'
        assert commands.build_args_json([]) == ""

    def test_build_args_json_rejects_bare_key(self):
        with pytest.raises(ConfigurationError, match="KEY=VALUE"):
            commands.build_args_json(["NOVALUE"])

    def test_bake(self):
        assert commands.bake_argv("docker-bake.hcl", "default") == [
            "docker",
            "buildx",
            "bake",
            "--file",
            "docker-bake.hcl",
            "default",
        ]

    def test_bake_requires_file_and_target(self):
        with pytest.raises(JoinedError):
            commands.bake_argv("", "")


class TestImageCommands:
    """Tests for save, pull and push."""

    def test_save_and_pull(self):
        assert commands.image_save_argv("docker", "my-app:latest") == ["docker", "save", "my-app:latest"]
        assert commands.image_pull_argv(" Podman ", "my-app:1") == ["podman", "pull", "my-app:1"]

    def test_save_requires_image(self):
        with pytest.raises(MissingOptionError):
            commands.image_save_argv("docker", "")

    def test_unknown_cli(self):
        with pytest.raises(UnsupportedInterfaceError, match="must be docker or podman"):
            commands.image_save_argv("bake", "my-app:latest")

    def test_push_without_tag(self):
        assert commands.image_push_argv("docker") == ["docker", "push"]

    def test_push_with_tag(self):
        assert commands.image_push_argv("docker", "my-app:1") == ["docker", "push", "my-app:1"]


class TestScanCommands:
    """Tests for scanner argv."""

    def test_syft(self):
        assert commands.syft_scan_argv("my-app:latest", "out/sbom.syft.json") == [
            "syft",
            "scan",
            "my-app:latest",
            "--scope=squashed",
            "-o",
            "syft-json=out/sbom.syft.json",
            "-vv",
        ]

    def test_grype_with_config(self):
        assert commands.grype_scan_argv("s.json", "g.json", ".grype.yaml") == [
            "grype",
            "sbom:s.json",
            "-o",
            "json=g.json",
            "-vv",
            "--config",
            ".grype.yaml",
        ]

    def test_clamscan(self):
        argv = commands.clamscan_argv("image.tar")

        assert argv[0] == "clamscan"
        assert argv[-1] == "image.tar"
        assert "--max-filesize=1000M" in argv
        assert "--stdout" in argv

    def test_semgrep(self):
        assert commands.semgrep_argv("p/default") == ["semgrep", "ci", "--json", "--config", "p/default"]
        assert commands.semgrep_argv("p/default", experimental=True) == [
            "osemgrep",
            "ci",
            "--json",
            "--experimental",
            "--config",
            "p/default",
        ]

    def test_semgrep_requires_rules(self):
        with pytest.raises(MissingOptionError):
            commands.semgrep_argv("")

    def test_gitleaks(self):
        assert commands.gitleaks_argv(".", "r.json") == [
            "gitleaks",
            "detect",
            "--exit-code",
            "0",
            "--verbose",
            "--source",
            ".",
            "--report-path",
            "r.json",
        ]


class TestGatecheckCommands:
    """Tests for gatecheck and oras argv."""

    def test_list(self):
        assert commands.gatecheck_list_argv("g.json") == ["gatecheck", "ls", "g.json"]
        assert commands.gatecheck_list_argv("g.json", epss=True) == ["gatecheck", "ls", "--verbose", "--epss", "g.json"]

    def test_bundle(self):
        assert commands.gatecheck_bundle_create_argv("b.tar.gz", "a.json") == [
            "gatecheck",
            "bundle",
            "create",
            "b.tar.gz",
            "a.json",
        ]
        assert commands.gatecheck_bundle_add_argv("b.tar.gz", "a.json")[2] == "add"

    def test_validate(self):
        assert commands.gatecheck_validate_argv("b.tar.gz") == ["gatecheck", "validate", "b.tar.gz"]
        assert commands.gatecheck_validate_argv("b.tar.gz", "gc.yaml") == [
            "gatecheck",
            "validate",
            "--config",
            "gc.yaml",
            "b.tar.gz",
        ]

    def test_oras_push(self):
        assert commands.oras_push_bundle_argv("reg/app/bundle:1", "b.tar.gz") == [
            "oras",
            "push",
            "--disable-path-validation",
            "--artifact-type",
            "application/vnd.gatecheckdev.gatecheck.bundle.tar+gzip",
            "reg/app/bundle:1",
            "b.tar.gz",
        ]
