from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml


# Each line is a command line; `{target}` and workflow vars are substituted
# when the template is expanded.
DEFAULT_TEMPLATES: dict[str, list[str]] = {
    "bootstrap": [
        "set {target}.stage bootstrap",
        "require git",
    ],
    "fetch": [
        "set {target}.stage fetch",
        "retry 3 sh fetch-{target} -- git clone --depth 1 {repo} {target}",
    ],
    "build": [
        "template bootstrap {target}",
        "template fetch {target}",
        "set {target}.stage build",
    ],
}


class TemplateConfigError(ValueError):
    pass


def load_template_file(path: str | Path) -> dict[str, list[str]]:
    """Load templates from a YAML file.

    Format:
      <name>: ["set a 1", "sh step -- make all", ...]

    Returns a mapping of template name -> list of command lines.
    """
    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise
    except (OSError, UnicodeDecodeError) as e:
        raise TemplateConfigError(f"template file could not be read: {e}") from e
    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise TemplateConfigError(f"template file is not valid YAML: {e}") from e
    if raw is None:
        return {}
    return validate_templates(raw)


def validate_templates(raw: Any) -> dict[str, list[str]]:
    if not isinstance(raw, dict):
        raise TemplateConfigError("templates must be a mapping of name -> list[str]")

    out: dict[str, list[str]] = {}
    for k, v in raw.items():
        if not isinstance(k, str) or not k.strip():
            raise TemplateConfigError("template names must be non-empty strings")
        if not isinstance(v, list) or not v:
            raise TemplateConfigError(f"template '{k}' must be a non-empty list")
        lines: list[str] = []
        for item in v:
            if not isinstance(item, str) or not item.strip():
                raise TemplateConfigError(f"template '{k}' items must be non-empty strings")
            lines.append(item.strip())
        out[k.strip()] = lines
    return out


def merged_templates(overrides: dict[str, list[str]] | None = None) -> dict[str, list[str]]:
    """Return DEFAULT_TEMPLATES merged with optional overrides.

    Overrides replace templates of the same name, and may add new ones.
    """
    merged = {k: list(v) for k, v in DEFAULT_TEMPLATES.items()}
    if overrides:
        for k, v in overrides.items():
            merged[k] = list(v)
    return merged


def load_and_merge(template_file: str | None) -> dict[str, list[str]]:
    if not template_file:
        return merged_templates()
    overrides = load_template_file(template_file)
    return merged_templates(overrides)
