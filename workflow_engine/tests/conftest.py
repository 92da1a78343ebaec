"""
Shared pytest configuration and fixtures for workflow engine tests.

This module provides reusable fixtures for:
- A fresh MetaConfig catalog per test
- A clean WFE_* environment
- Task options rooted in a temporary artifact directory
- Fake tool binaries placed first on PATH
"""

import io
import logging
import os
import stat
from collections.abc import Callable
from pathlib import Path

import pytest
import structlog

from workflow_engine.settings.meta import MetaConfig, new_meta_config
from workflow_engine.tasks.base import TaskOptions

# ============================================================================
# Environment Fixtures
# ============================================================================


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Remove WFE_* variables so host settings never leak into a test."""
    for key in list(os.environ):
        if key.startswith("WFE_"):
            monkeypatch.delenv(key)


@pytest.fixture(autouse=True)
def reset_logging():
    """Undo any logging configuration a test (or the CLI) installed."""
    yield
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
    structlog.reset_defaults()


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def meta() -> MetaConfig:
    return new_meta_config()


@pytest.fixture
def artifact_dir(tmp_path) -> Path:
    path = tmp_path / "artifacts"
    path.mkdir()
    return path


@pytest.fixture
def display() -> io.BytesIO:
    return io.BytesIO()


@pytest.fixture
def task_options(artifact_dir, display) -> TaskOptions:
    """Task options pointing at a temporary artifact directory with default report names."""
    return TaskOptions(
        display=display,
        image_name="my-app:latest",
        artifact_dir=str(artifact_dir),
        image_tar_filename=str(artifact_dir / "image.tar"),
        sbom_filename="sbom.syft.json",
        grype_filename="image-scan.grype.json",
        clam_filename="virus-report.clamav.txt",
        semgrep_filename="code-scan-report.semgrep.json",
        semgrep_rules="p/default",
        gitleaks_filename="secrets-report.gitleaks.json",
        gitleaks_src_dir=".",
        bundle_filename=str(artifact_dir / "gatecheck-bundle.tar.gz"),
        bundle_tag="registry.local/app/bundle:latest",
        monitor_interval=0.05,
        elapsed_interval=0.05,
    )


# ============================================================================
# Fake Tool Fixtures
# ============================================================================


@pytest.fixture
def calls_log(tmp_path, monkeypatch) -> Path:
    """File every fake binary appends ``<name> <args>`` to."""
    path = tmp_path / "calls.log"
    path.touch()
    monkeypatch.setenv("TEST_CALLS_LOG", str(path))
    return path


@pytest.fixture
def fake_bin(tmp_path, monkeypatch, calls_log) -> Callable[[str, str], Path]:
    """Create executable shell scripts that shadow real tools on PATH.

    Each script records its invocation in ``calls_log`` before running ``body``.
    """
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")

    def make(name: str, body: str = "exit 0") -> Path:
        script = bin_dir / name
        script.write_text(f'#!/bin/sh\necho "{name} $*" >> "$TEST_CALLS_LOG"\n{body}\n')
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return script

    return make


@pytest.fixture
def invoked(calls_log) -> Callable[[], list[str]]:
    """Names of the fake binaries invoked so far, in order."""

    def names() -> list[str]:
        return [line.split(" ", 1)[0] for line in calls_log.read_text().splitlines()]

    return names
