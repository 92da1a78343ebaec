"""Reference output generated from the MetaConfig catalog.

Used by the ``config vars``, ``generate-action``, ``generate-table`` and
``generate-action-table`` subcommands.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Optional

import yaml

from workflow_engine.settings.config import bound_leaves
from workflow_engine.settings.meta import MetaConfig

ACTION_NAME = "workflow-engine"
ACTION_DESCRIPTION = "A portable, opinionated security pipeline"


def config_keys() -> dict[str, str]:
    """Map each MetaConfig attribute to its dotted config file key."""
    return {tag: key for key, tag in bound_leaves()}


def _cell(value: str) -> str:
    return value.replace("|", "\\|")


def _markdown_table(header: list[str], rows: list[list[str]]) -> str:
    lines = [
        "| " + " | ".join(header) + " |",
        "|" + "|".join(" --- " for _ in header) + "|",
    ]
    lines += ["| " + " | ".join(_cell(cell) for cell in row) + " |" for row in rows]
    return "\n".join(lines) + "\n"


def env_table(meta: MetaConfig) -> str:
    keys = config_keys()
    rows = [
        [keys.get(name, ""), field.env_key, f"`{field.default}`" if field.default else "", field.flag_desc]
        for name, field in meta.items()
    ]
    return _markdown_table(["Config Key", "Environment Variable", "Default Value", "Description"], rows)


def action_table(meta: MetaConfig) -> str:
    rows = [
        [field.action_input_name, field.action_type, f"`{field.default}`" if field.default else "", field.flag_desc]
        for _, field in meta.items()
    ]
    return _markdown_table(["Input", "Type", "Default Value", "Description"], rows)


def env_vars(meta: MetaConfig, environ: Optional[Mapping[str, str]] = None) -> list[tuple[str, str]]:
    """Environment variable names with the encoded value each one currently resolves to."""
    return [(field.env_key, field.kind.encode(field.evaluate(environ))) for _, field in meta.items()]


def action_manifest(meta: MetaConfig) -> dict[str, Any]:
    """A composite GitHub Action exposing every MetaField as an input."""
    inputs: dict[str, Any] = {
        "task": {"description": "The run-task target to execute", "required": True},
    }
    env: dict[str, str] = {}
    for _, field in meta.items():
        inputs[field.action_input_name] = {
            "description": field.flag_desc,
            "required": False,
            "default": field.default,
        }
        env[field.env_key] = f"${{{{ inputs.{field.action_input_name} }}}}"

    return {
        "name": ACTION_NAME,
        "description": ACTION_DESCRIPTION,
        "inputs": inputs,
        "runs": {
            "using": "composite",
            "steps": [
                {
                    "name": "Run workflow engine task",
                    "shell": "bash",
                    "run": "workflow-engine run-task ${{ inputs.task }}",
                    "env": env,
                }
            ],
        },
    }


def action_yaml(meta: MetaConfig) -> str:
    return yaml.safe_dump(action_manifest(meta), sort_keys=False, width=120)


def vars_table(meta: MetaConfig, environ: Optional[Mapping[str, str]] = None) -> str:
    return _markdown_table(["Environment Variable", "Value"], [[key, value] for key, value in env_vars(meta, environ)])
