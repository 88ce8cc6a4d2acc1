from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Optional

from stepstack.core.workspace import Workspace


@dataclass(frozen=True)
class StepRecord:
    command: str
    detail: str = ""


@dataclass(frozen=True)
class BuildState:
    """State threaded through built-in commands.

    Commands never mutate an instance; they return an updated copy.
    """

    workspace: Optional[Workspace] = None
    templates: dict[str, list[str]] = field(default_factory=dict)
    vars: dict[str, str] = field(default_factory=dict)
    history: tuple[StepRecord, ...] = ()
    outputs: dict[str, str] = field(default_factory=dict)

    def record(self, command: str, detail: str = "") -> "BuildState":
        return replace(self, history=self.history + (StepRecord(command=command, detail=detail),))

    def with_var(self, key: str, value: str) -> "BuildState":
        return replace(self, vars={**self.vars, key: value})

    def with_output(self, name: str, output: str) -> "BuildState":
        return replace(self, outputs={**self.outputs, name: output})

    def executed(self) -> list[str]:
        return [r.command for r in self.history]
