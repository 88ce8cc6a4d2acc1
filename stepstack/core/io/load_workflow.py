from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from stepstack.core.commands import BuildCommand, GroupCommand, parse_command_line
from stepstack.core.errors import StepError, WorkflowLoadError
from stepstack.core.model import BuildState
from stepstack.core.templates.template_config import (
    TemplateConfigError,
    merged_templates,
    validate_templates,
)
from stepstack.core.workspace import Workspace


@dataclass(frozen=True)
class Workflow:
    name: str
    steps: tuple[BuildCommand, ...]
    vars: dict[str, str] = field(default_factory=dict)
    templates: dict[str, list[str]] = field(default_factory=dict)
    file: Optional[str] = None


def load_workflow(path: str) -> Workflow:
    """Load a YAML/JSON workflow file.

    Format:
      name: release            # optional, defaults to the file stem
      vars: {repo: "..."}      # optional, string values
      templates: {...}         # optional, same shape as a template file
      steps:                   # required, non-empty
        - set greeting hello
        - [sh, hello, --, echo, "{greeting}"]

    Every step is parsed here, so a malformed command fails before anything runs.
    """

    p = Path(path)
    if not p.exists():
        raise WorkflowLoadError(
            code="E_FILE_NOT_FOUND",
            message=f"file does not exist: {p}",
        )

    suffix = p.suffix.lower()
    if suffix not in {".yaml", ".yml", ".json"}:
        raise WorkflowLoadError(
            code="E_UNSUPPORTED_FORMAT",
            message=f"{p}: supported formats are .yaml/.yml and .json",
        )

    try:
        raw_text = p.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise WorkflowLoadError(code="E_FILE_READ", message=f"{p}: {e}") from e

    try:
        if suffix == ".json":
            data = json.loads(raw_text)
        else:
            data = yaml.safe_load(raw_text)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        code = "E_JSON_PARSE" if suffix == ".json" else "E_YAML_PARSE"
        raise WorkflowLoadError(code=code, message=f"{p}: {e}") from e

    if not isinstance(data, dict):
        raise WorkflowLoadError(
            code="E_INVALID_TOP_LEVEL",
            message=f"{p}: top-level document must be a mapping/object",
        )

    name = data.get("name", p.stem)
    if not isinstance(name, str) or not name.strip():
        raise WorkflowLoadError(code="E_INVALID_TYPE", message=f"{p}: name must be a non-empty string")

    steps_raw = data.get("steps")
    if steps_raw is None:
        raise WorkflowLoadError(code="E_REQUIRED_FIELD", message=f"{p}: steps is required")
    if not isinstance(steps_raw, list) or not steps_raw:
        raise WorkflowLoadError(code="E_INVALID_TYPE", message=f"{p}: steps must be a non-empty list")

    steps = tuple(_parse_step(item, idx, p) for idx, item in enumerate(steps_raw))

    return Workflow(
        name=name.strip(),
        steps=steps,
        vars=_parse_vars(data.get("vars"), p),
        templates=_parse_templates(data.get("templates"), p),
        file=str(p),
    )


def build_initial(
    workflow: Workflow,
    *,
    workspace: Workspace | None = None,
    templates: dict[str, list[str]] | None = None,
) -> tuple[BuildState, GroupCommand]:
    """Initial state and command for a run.

    Templates declared in the workflow override `templates` (defaults when None).
    """
    merged = dict(templates) if templates is not None else merged_templates()
    merged.update({k: list(v) for k, v in workflow.templates.items()})

    state = BuildState(workspace=workspace, templates=merged, vars=dict(workflow.vars))
    return state, GroupCommand(name=workflow.name, children=workflow.steps)


def _parse_step(item: Any, idx: int, p: Path) -> BuildCommand:
    try:
        if isinstance(item, str):
            return parse_command_line(item)
        if isinstance(item, list) and all(isinstance(t, str) for t in item):
            return BuildCommand.from_tokens(item)
    except StepError as e:
        raise WorkflowLoadError(
            code="E_INVALID_STEP",
            message=f"{p}: steps[{idx}]: {e.code}: {e.message}",
        ) from e
    raise WorkflowLoadError(
        code="E_INVALID_TYPE",
        message=f"{p}: steps[{idx}] must be a command line or a list of strings",
    )


def _parse_vars(raw: Any, p: Path) -> dict[str, str]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise WorkflowLoadError(code="E_INVALID_TYPE", message=f"{p}: vars must be a mapping")
    out: dict[str, str] = {}
    for k, v in raw.items():
        if not isinstance(k, str) or isinstance(v, (dict, list)) or v is None:
            raise WorkflowLoadError(
                code="E_INVALID_TYPE",
                message=f"{p}: vars.{k} must be a scalar keyed by a string",
            )
        out[k] = str(v)
    return out


def _parse_templates(raw: Any, p: Path) -> dict[str, list[str]]:
    if raw is None:
        return {}
    try:
        return validate_templates(raw)
    except TemplateConfigError as e:
        raise WorkflowLoadError(code="E_INVALID_TYPE", message=f"{p}: templates: {e}") from e
