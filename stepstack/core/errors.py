from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class StepError(Exception):
    """Base error envelope. Callers branch on `code`; `str()` is for humans."""

    code: str
    message: str
    command: Optional[str] = None
    step: Optional[int] = None

    def __str__(self) -> str:
        parts: list[str] = []
        if self.step is not None:
            parts.append(f"step {self.step}")
        if self.command:
            parts.append(self.command)
        loc = ":".join(parts) if parts else "<run>"
        return f"{loc}: {self.code}: {self.message}"


class SerializationError(StepError):
    pass


class ExecutionError(StepError):
    pass


class ConfigurationError(StepError):
    pass


class WorkflowLoadError(StepError):
    pass
