from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import yaml
from loguru import logger

from stepstack.core.errors import ConfigurationError


DEFAULT_SANDBOX_IMAGE = "stepstack/build-env"
DEFAULT_SANDBOX_IMAGE_WINDOWS = "stepstack/build-env-windows"

# Seconds. None disables the timeout.
DEFAULT_COMMAND_TIMEOUT: Optional[float] = 15 * 60.0
DEFAULT_COMMAND_NO_OUTPUT_TIMEOUT: Optional[float] = None

_CONFIG_KEYS = {"path", "sandbox_image", "command_timeout", "command_no_output_timeout"}


@dataclass(frozen=True)
class SandboxImage:
    name: str

    @classmethod
    def remote(cls, name: str) -> "SandboxImage":
        if not isinstance(name, str) or not name.strip():
            raise ConfigurationError(
                code="E_SANDBOX_IMAGE_INVALID",
                message="sandbox image must be a non-empty string",
            )
        if any(ch.isspace() for ch in name):
            raise ConfigurationError(
                code="E_SANDBOX_IMAGE_INVALID",
                message=f"sandbox image must not contain whitespace: {name!r}",
            )
        return cls(name=name)

    def __str__(self) -> str:
        return self.name


def default_sandbox_image_name(platform: str | None = None) -> str:
    plat = platform if platform is not None else sys.platform
    return DEFAULT_SANDBOX_IMAGE_WINDOWS if plat == "win32" else DEFAULT_SANDBOX_IMAGE


def default_workspace_path() -> Path:
    home = (os.getenv("STEPSTACK_HOME", "") or "").strip()
    if home:
        return Path(home).expanduser()
    return Path.home() / ".stepstack"


@dataclass(frozen=True)
class Workspace:
    """Directory holding the state and caches of build steps.

    Use `WorkspaceBuilder` to create one. Commands read their timeout
    defaults and tool homes from here; nothing in it schedules work.
    """

    path: Path
    image: SandboxImage
    command_timeout: Optional[float]
    command_no_output_timeout: Optional[float]

    def primary_home(self) -> Path:
        return self.path / "local" / "tools-home"

    def secondary_home(self) -> Path:
        return self.path / "local" / "toolchain-home"

    def sandbox_image(self) -> SandboxImage:
        return self.image

    def default_timeout(self) -> Optional[float]:
        return self.command_timeout

    def default_no_output_timeout(self) -> Optional[float]:
        return self.command_no_output_timeout

    def describe(self) -> dict[str, Any]:
        return {
            "path": str(self.path),
            "primary_home": str(self.primary_home()),
            "secondary_home": str(self.secondary_home()),
            "sandbox_image": self.image.name,
            "command_timeout": self.command_timeout,
            "command_no_output_timeout": self.command_no_output_timeout,
        }


class WorkspaceBuilder:
    def __init__(self, path: str | Path):
        self._path = Path(path)
        self._sandbox_image: Optional[SandboxImage] = None
        self._command_timeout: Optional[float] = DEFAULT_COMMAND_TIMEOUT
        self._command_no_output_timeout: Optional[float] = DEFAULT_COMMAND_NO_OUTPUT_TIMEOUT

    @property
    def path(self) -> Path:
        return self._path

    def with_path(self, path: str | Path) -> "WorkspaceBuilder":
        self._path = Path(path)
        return self

    def sandbox_image(self, image: SandboxImage) -> "WorkspaceBuilder":
        """Override the image used for sandboxes (default depends on the platform)."""
        self._sandbox_image = image
        return self

    def command_timeout(self, timeout: Optional[float]) -> "WorkspaceBuilder":
        """Default overall timeout for `sh` steps. None disables it; 15 minutes by default."""
        self._command_timeout = _check_timeout(timeout, "command_timeout")
        return self

    def command_no_output_timeout(self, timeout: Optional[float]) -> "WorkspaceBuilder":
        """Default no-output timeout for `sh` steps. Disabled by default."""
        self._command_no_output_timeout = _check_timeout(timeout, "command_no_output_timeout")
        return self

    def init(self) -> Workspace:
        path = self._path.expanduser()
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(
                code="E_WORKSPACE_CREATE",
                message=f"failed to create workspace directory: {path} ({e})",
            ) from e

        image = self._sandbox_image or SandboxImage.remote(default_sandbox_image_name())
        logger.debug(f"workspace ready at {path} (image={image.name})")

        return Workspace(
            path=path,
            image=image,
            command_timeout=self._command_timeout,
            command_no_output_timeout=self._command_no_output_timeout,
        )


def load_workspace_config(path: str | Path) -> WorkspaceBuilder:
    """Load a workspace YAML file into a builder.

    Format (every key optional):
      path: /srv/stepstack
      sandbox_image: registry.example/build-env:latest
      command_timeout: 900
      command_no_output_timeout: null
    """
    p = Path(path)
    if not p.exists():
        raise ConfigurationError(
            code="E_WORKSPACE_CONFIG",
            message=f"workspace config not found: {p}",
        )
    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigurationError(code="E_WORKSPACE_CONFIG", message=f"{p}: cannot read: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(code="E_WORKSPACE_CONFIG", message=f"{p}: {e}") from e

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigurationError(
            code="E_WORKSPACE_CONFIG",
            message=f"{p}: workspace config must be a mapping",
        )

    unknown = sorted(str(k) for k in raw if k not in _CONFIG_KEYS)
    if unknown:
        raise ConfigurationError(
            code="E_WORKSPACE_CONFIG",
            message=f"{p}: unknown keys: {', '.join(unknown)}",
        )

    base = raw.get("path")
    if base is not None and not isinstance(base, str):
        raise ConfigurationError(code="E_WORKSPACE_CONFIG", message=f"{p}: path must be a string")

    builder = WorkspaceBuilder(base if base else default_workspace_path())
    if "sandbox_image" in raw and raw["sandbox_image"] is not None:
        builder.sandbox_image(SandboxImage.remote(raw["sandbox_image"]))
    if "command_timeout" in raw:
        builder.command_timeout(raw["command_timeout"])
    if "command_no_output_timeout" in raw:
        builder.command_no_output_timeout(raw["command_no_output_timeout"])
    return builder


def _check_timeout(value: Any, name: str) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigurationError(
            code="E_WORKSPACE_CONFIG",
            message=f"{name} must be a positive number of seconds or null, got {value!r}",
        )
    return float(value)
