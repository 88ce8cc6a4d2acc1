from __future__ import annotations

import re
import shlex
from abc import ABC, abstractmethod
from typing import ClassVar, Sequence, TypeVar

from stepstack.core.errors import ExecutionError, SerializationError
from stepstack.core.model import BuildState


_REGISTRY: dict[str, type["BuildCommand"]] = {}

_VAR_NAME = re.compile(r"^[A-Za-z0-9_.\-]+$")
_PLACEHOLDER = re.compile(r"\{\{|\}\}|\{([A-Za-z0-9_.\-]+)\}")

C = TypeVar("C", bound="type[BuildCommand]")


class BuildCommand(ABC):
    """A step that acts on a BuildState.

    Tokens look like a command line: the kind first, then its arguments.
    Parsing always goes through the registry, so `SomeCommand.from_tokens`
    accepts any registered kind.
    """

    kind: ClassVar[str] = ""

    @abstractmethod
    def execute(self, state: BuildState) -> tuple[BuildState, list["BuildCommand"]]: ...

    @abstractmethod
    def args(self) -> list[str]: ...

    @classmethod
    @abstractmethod
    def parse_args(cls, args: list[str]) -> "BuildCommand": ...

    def to_tokens(self) -> list[str]:
        return [self.kind, *self.args()]

    @classmethod
    def from_tokens(cls, tokens: Sequence[str]) -> "BuildCommand":
        tokens = list(tokens)
        if not tokens:
            raise SerializationError(code="E_EMPTY_COMMAND", message="no tokens to parse")
        kind = tokens[0]
        target = _REGISTRY.get(kind)
        if target is None:
            raise SerializationError(
                code="E_UNKNOWN_COMMAND",
                message=f"unknown command: {kind} (choose one of: {', '.join(sorted(_REGISTRY))})",
                command=shlex.join(tokens),
            )
        return target.parse_args(tokens[1:])

    def line(self) -> str:
        return shlex.join(self.to_tokens())

    def summary(self) -> str:
        return self.line()


def register(cls: C) -> C:
    if not cls.kind:
        raise ValueError(f"{cls.__name__} has no kind")
    if cls.kind in _REGISTRY:
        raise ValueError(f"command kind already registered: {cls.kind}")
    _REGISTRY[cls.kind] = cls
    return cls


def registered_kinds() -> list[str]:
    return sorted(_REGISTRY)


def split_command_line(line: str) -> list[str]:
    try:
        return shlex.split(line)
    except ValueError as e:
        raise SerializationError(
            code="E_BAD_COMMAND_LINE",
            message=str(e),
            command=line,
        ) from e


def parse_command_line(line: str) -> BuildCommand:
    return BuildCommand.from_tokens(split_command_line(line))


def bad_arguments(kind: str, message: str, args: Sequence[str]) -> SerializationError:
    return SerializationError(
        code="E_BAD_ARGUMENTS",
        message=f"{kind}: {message}",
        command=shlex.join([kind, *args]),
    )


def parse_int(kind: str, value: str, args: Sequence[str], *, minimum: int = 0) -> int:
    try:
        n = int(value)
    except ValueError:
        raise bad_arguments(kind, f"expected an integer, got {value!r}", args) from None
    if n < minimum:
        raise bad_arguments(kind, f"expected an integer >= {minimum}, got {n}", args)
    return n


def parse_seconds(kind: str, value: str, args: Sequence[str]) -> float:
    try:
        seconds = float(value)
    except ValueError:
        raise bad_arguments(kind, f"expected seconds, got {value!r}", args) from None
    if seconds < 0 or seconds != seconds or seconds == float("inf"):
        raise bad_arguments(kind, f"seconds must be finite and >= 0, got {value!r}", args)
    return seconds


def format_seconds(seconds: float) -> str:
    return str(int(seconds)) if float(seconds).is_integer() else repr(float(seconds))


def is_var_name(name: str) -> bool:
    return bool(_VAR_NAME.match(name))


def expand_vars(text: str, values: dict[str, str]) -> str:
    """Replace `{name}` with values[name]. `{{` and `}}` are literal braces."""

    def _sub(m: re.Match[str]) -> str:
        token = m.group(0)
        if token == "{{":
            return "{"
        if token == "}}":
            return "}"
        name = m.group(1)
        if name not in values:
            raise ExecutionError(code="E_UNKNOWN_VAR", message=f"unknown variable: {name}")
        return values[name]

    return _PLACEHOLDER.sub(_sub, text)
