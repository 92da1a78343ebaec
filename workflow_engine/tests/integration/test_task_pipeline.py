"""Integration tests running tasks against fake tool binaries on PATH."""

import asyncio
import dataclasses
import io

import pytest

from workflow_engine.core.exceptions import CommandCanceledError, CommandFailedError
from workflow_engine.shell.runner import CancelScope
from workflow_engine.tasks import (
    ClamAntivirusScanTask,
    CombinedCodeScanTask,
    GatecheckBundleTask,
    GatecheckValidateTask,
    GitleaksCodeScanTask,
    GrypeImageScanTask,
    ImageSaveTask,
    OrasBundlePublishTask,
    SemgrepCodeScanTask,
)

SYFT = """
for arg in "$@"; do
  case "$arg" in
    syft-json=*) out="${arg#syft-json=}" ;;
  esac
done
echo "cataloging packages" >&2
echo '{"artifacts": []}' > "$out"
"""

GRYPE = """
for arg in "$@"; do
  case "$arg" in
    sbom:*) sbom="${arg#sbom:}" ;;
    json=*) out="${arg#json=}" ;;
  esac
done
test -f "$sbom" || exit 9
echo "scanning sbom" >&2
echo '{"matches": []}' > "$out"
"""

GATECHECK = 'echo "gatecheck summary"'

GITLEAKS = """
while [ $# -gt 0 ]; do
  if [ "$1" = "--report-path" ]; then out="$2"; fi
  shift
done
echo "no leaks found" >&2
echo '[]' > "$out"
"""

DOCKER = """
case "$1" in
  save) printf 'TARDATA'; echo "saving" >&2 ;;
  pull) echo "Pulling from library" ;;
esac
"""


def _run(task, stderr, scope=None):
    async def scenario():
        await task.run(scope, stderr)

    asyncio.run(scenario())


class TestGrypeImageScan:
    """Tests for the sequential syft then grype scan."""

    def test_syft_then_grype_then_listing(self, fake_bin, invoked, task_options, artifact_dir, display):
        fake_bin("syft", SYFT)
        fake_bin("grype", GRYPE)
        fake_bin("gatecheck", GATECHECK)
        stderr = io.BytesIO()

        _run(GrypeImageScanTask(task_options), stderr)

        assert invoked() == ["syft", "grype", "gatecheck"]
        assert (artifact_dir / "sbom.syft.json").read_text() == '{"artifacts": []}\n'
        assert (artifact_dir / "image-scan.grype.json").read_text() == '{"matches": []}\n'
        assert display.getvalue() == b"gatecheck summary\n"
        log = stderr.getvalue().decode()
        assert "[syft] cataloging packages\n" in log
        assert "[grype] scanning sbom\n" in log

    def test_grype_not_started_when_syft_fails(self, fake_bin, invoked, task_options):
        fake_bin("syft", "echo boom >&2; exit 1")
        fake_bin("grype", GRYPE)
        stderr = io.BytesIO()

        with pytest.raises(CommandFailedError) as exc_info:
            _run(GrypeImageScanTask(task_options), stderr)

        assert exc_info.value.exit_code == 1
        assert invoked() == ["syft"]
        assert b"[syft] boom\n" in stderr.getvalue()

    def test_cancel_during_syft(self, fake_bin, invoked, task_options):
        fake_bin("syft", "exec sleep 5")
        fake_bin("grype", GRYPE)

        async def scenario():
            await GrypeImageScanTask(task_options).run(CancelScope(timeout=0.05), io.BytesIO())

        with pytest.raises(CommandCanceledError):
            asyncio.run(scenario())

        assert invoked() == ["syft"]


class TestImageSave:
    """Tests for writing the image archive."""

    def test_pull_then_save(self, fake_bin, invoked, task_options, artifact_dir):
        fake_bin("docker", DOCKER)
        options = dataclasses.replace(task_options, image_save_pull=True)
        stderr = io.BytesIO()

        _run(ImageSaveTask("docker", options), stderr)

        assert (artifact_dir / "image.tar").read_bytes() == b"TARDATA"
        assert invoked() == ["docker", "docker"]
        log = stderr.getvalue().decode()
        assert "[image pull] Pulling from library\n" in log
        assert "[image save] saving\n" in log
        assert f"[image save] File {artifact_dir / 'image.tar'}: 7 B written\n" in log


class TestAntivirusScan:
    """Tests for the clamav scan."""

    def test_freshclam_failure_is_only_a_warning(self, fake_bin, invoked, task_options, artifact_dir, display):
        fake_bin("freshclam", "echo database outdated >&2; exit 1")
        fake_bin("clamscan", "echo 'image.tar: OK'")
        target = artifact_dir / "image.tar"
        target.write_bytes(b"TARDATA")
        options = dataclasses.replace(task_options, clamscan_target=str(target))
        stderr = io.BytesIO()

        _run(ClamAntivirusScanTask(options), stderr)

        assert invoked() == ["freshclam", "clamscan"]
        assert b"[freshclam] database outdated\n" in stderr.getvalue()
        assert (artifact_dir / "virus-report.clamav.txt").read_bytes() == b"image.tar: OK\n"
        assert display.getvalue() == b"image.tar: OK\n"

    def test_freshclam_disabled(self, fake_bin, invoked, task_options, artifact_dir):
        fake_bin("freshclam")
        fake_bin("clamscan", "echo clean")
        options = dataclasses.replace(task_options, clamscan_target=str(artifact_dir), freshclam_disabled=True)

        _run(ClamAntivirusScanTask(options), io.BytesIO())

        assert invoked() == ["clamscan"]

    def test_clamscan_failure_propagates(self, fake_bin, task_options, artifact_dir, display):
        fake_bin("freshclam")
        fake_bin("clamscan", "echo 'image.tar: Eicar FOUND'; exit 1")
        options = dataclasses.replace(task_options, clamscan_target=str(artifact_dir))

        with pytest.raises(CommandFailedError):
            _run(ClamAntivirusScanTask(options), io.BytesIO())

        assert display.getvalue() == b""


class TestCodeScans:
    """Tests for semgrep and gitleaks."""

    def test_semgrep_report_removed_on_failure(self, fake_bin, task_options, artifact_dir):
        fake_bin("semgrep", "echo '{}'; exit 2")
        fake_bin("gatecheck", GATECHECK)

        with pytest.raises(CommandFailedError):
            _run(SemgrepCodeScanTask(task_options), io.BytesIO())

        assert not (artifact_dir / "code-scan-report.semgrep.json").exists()

    def test_semgrep_success(self, fake_bin, invoked, task_options, artifact_dir, display):
        fake_bin("semgrep", 'echo \'{"results": []}\'')
        fake_bin("gatecheck", GATECHECK)

        _run(SemgrepCodeScanTask(task_options), io.BytesIO())

        assert (artifact_dir / "code-scan-report.semgrep.json").read_text() == '{"results": []}\n'
        assert invoked() == ["semgrep", "gatecheck"]
        assert display.getvalue() == b"gatecheck summary\n"

    def test_osemgrep_when_experimental(self, fake_bin, invoked, task_options):
        fake_bin("osemgrep", "echo '{}'")
        fake_bin("gatecheck", GATECHECK)

        _run(SemgrepCodeScanTask(dataclasses.replace(task_options, semgrep_experimental=True)), io.BytesIO())

        assert invoked() == ["osemgrep", "gatecheck"]

    def test_gitleaks(self, fake_bin, invoked, task_options, artifact_dir):
        fake_bin("gitleaks", GITLEAKS)
        fake_bin("gatecheck", GATECHECK)
        stderr = io.BytesIO()

        _run(GitleaksCodeScanTask(task_options), stderr)

        assert (artifact_dir / "secrets-report.gitleaks.json").read_text() == "[]\n"
        assert invoked() == ["gitleaks", "gatecheck"]
        assert b"[gitleaks secrets scan] no leaks found\n" in stderr.getvalue()

    def test_combined_continues_after_failure(self, fake_bin, invoked, task_options, display):
        fake_bin("semgrep", "exit 2")
        fake_bin("gitleaks", GITLEAKS)
        fake_bin("gatecheck", GATECHECK)

        with pytest.raises(CommandFailedError):
            _run(CombinedCodeScanTask(task_options), io.BytesIO())

        assert invoked() == ["semgrep", "gitleaks", "gatecheck"]
        assert display.getvalue() == b"gatecheck summary\n"


class TestBundleTasks:
    """Tests for gatecheck bundle, validate and oras publish."""

    def test_bundle_created_then_extended(self, fake_bin, calls_log, task_options, artifact_dir):
        fake_bin("gatecheck", 'if [ "$2" = "create" ]; then echo bundle > "$3"; fi')
        first = artifact_dir / "sbom.syft.json"
        second = artifact_dir / "image-scan.grype.json"
        first.write_text("{}")
        second.write_text("{}")
        bundle = task_options.bundle_filename

        _run(GatecheckBundleTask(task_options, [str(first), str(second)]), io.BytesIO())
        _run(GatecheckBundleTask(task_options, [str(first)]), io.BytesIO())

        assert calls_log.read_text().splitlines() == [
            f"gatecheck bundle create {bundle} {first}",
            f"gatecheck bundle add {bundle} {second}",
            f"gatecheck bundle add {bundle} {first}",
        ]

    def test_validate_failure(self, fake_bin, task_options):
        fake_bin("gatecheck", "echo 'validation failed' >&2; exit 1")
        stderr = io.BytesIO()

        with pytest.raises(CommandFailedError):
            _run(GatecheckValidateTask(task_options), stderr)

        assert b"[gatecheck validate] validation failed\n" in stderr.getvalue()

    def test_oras_publish(self, fake_bin, calls_log, task_options):
        fake_bin("oras", "echo Pushed")

        _run(OrasBundlePublishTask(task_options), io.BytesIO())

        assert calls_log.read_text().startswith("oras push --disable-path-validation --artifact-type ")


def test_successful_freshclam_output_is_hidden(fake_bin, task_options, artifact_dir):
    fake_bin("freshclam", "echo 'daily.cvd updated' >&2")
    fake_bin("clamscan", "echo clean")
    options = dataclasses.replace(task_options, clamscan_target=str(artifact_dir))
    stderr = io.BytesIO()

    _run(ClamAntivirusScanTask(options), stderr)

    assert b"daily.cvd" not in stderr.getvalue()
