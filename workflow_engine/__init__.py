"""Workflow engine: a portable security pipeline for container images and source code.

Every tunable is a MetaField resolved from CLI flags, ``WFE_*`` environment
variables, an optional config file and built-in defaults. Tasks drive
external tools (docker/podman, syft, grype, clamav, semgrep, gitleaks,
gatecheck, oras) as child processes bound to a shared cancel scope.
"""

from workflow_engine.settings.config import Config
from workflow_engine.settings.meta import MetaConfig, MetaField, new_meta_config

__version__ = "0.1.0"

__all__ = [
    "Config",
    "MetaConfig",
    "MetaField",
    "new_meta_config",
]
