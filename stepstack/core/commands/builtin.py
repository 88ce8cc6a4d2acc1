from __future__ import annotations

import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from loguru import logger

from stepstack.core.commands.base import (
    BuildCommand,
    bad_arguments,
    expand_vars,
    format_seconds,
    is_var_name,
    parse_int,
    parse_seconds,
    register,
    split_command_line,
)
from stepstack.core.errors import ExecutionError, StepError
from stepstack.core.model import BuildState
from stepstack.core.process import ProcessTimeout, build_env, run_process


TOOL_HINTS = {
    "git": "Install git or fix PATH.",
    "make": "Install make (build-essential on Debian/Ubuntu).",
    "docker": "Install Docker and ensure the daemon is running.",
    "npm": "Install Node.js (includes npm) or fix PATH.",
    "python3": "Install Python 3 or fix PATH (python3).",
}

# Lines of output kept in E_SH_FAILED messages.
OUTPUT_TAIL = 20


@register
@dataclass(frozen=True)
class NoopCommand(BuildCommand):
    kind = "noop"

    def execute(self, state: BuildState) -> tuple[BuildState, list[BuildCommand]]:
        return state, []

    def args(self) -> list[str]:
        return []

    @classmethod
    def parse_args(cls, args: list[str]) -> "NoopCommand":
        if args:
            raise bad_arguments(cls.kind, "takes no arguments", args)
        return cls()


@register
@dataclass(frozen=True)
class SetCommand(BuildCommand):
    kind = "set"

    key: str
    value: str

    def execute(self, state: BuildState) -> tuple[BuildState, list[BuildCommand]]:
        value = expand_vars(self.value, state.vars)
        return state.with_var(self.key, value).record(self.summary(), f"{self.key}={value}"), []

    def args(self) -> list[str]:
        return [self.key, self.value]

    @classmethod
    def parse_args(cls, args: list[str]) -> "SetCommand":
        if len(args) != 2:
            raise bad_arguments(cls.kind, "expected KEY VALUE", args)
        key, value = args
        if not is_var_name(key):
            raise bad_arguments(cls.kind, f"invalid variable name: {key!r}", args)
        return cls(key=key, value=value)


@register
@dataclass(frozen=True)
class FailCommand(BuildCommand):
    kind = "fail"

    message: str

    def execute(self, state: BuildState) -> tuple[BuildState, list[BuildCommand]]:
        raise ExecutionError(code="E_FAIL", message=self.message)

    def args(self) -> list[str]:
        return [self.message]

    @classmethod
    def parse_args(cls, args: list[str]) -> "FailCommand":
        if not args:
            raise bad_arguments(cls.kind, "expected MESSAGE", args)
        return cls(message=" ".join(args))


@register
@dataclass(frozen=True)
class RequireCommand(BuildCommand):
    kind = "require"

    tool: str

    def execute(self, state: BuildState) -> tuple[BuildState, list[BuildCommand]]:
        found = shutil.which(self.tool)
        if found is None:
            hint = TOOL_HINTS.get(self.tool, "Install it or fix PATH.")
            raise ExecutionError(
                code="E_TOOL_MISSING",
                message=f"required tool not found on PATH: {self.tool}. {hint}",
            )
        return state.record(self.summary(), found), []

    def args(self) -> list[str]:
        return [self.tool]

    @classmethod
    def parse_args(cls, args: list[str]) -> "RequireCommand":
        if len(args) != 1 or not args[0]:
            raise bad_arguments(cls.kind, "expected TOOL", args)
        return cls(tool=args[0])


@register
@dataclass(frozen=True)
class ShCommand(BuildCommand):
    """Run an external program.

    Timeouts left unset fall back to the workspace defaults; 0 disables one
    explicitly. Output is stored under `name`, and optionally (stripped) in
    the variable named by `capture`.
    """

    kind = "sh"

    name: str
    argv: tuple[str, ...]
    timeout: Optional[float] = None
    no_output_timeout: Optional[float] = None
    cwd: Optional[str] = None
    capture: Optional[str] = None

    def __post_init__(self) -> None:
        # NAME must not read as an option or the separator once serialized.
        if not self.name or self.name.startswith("--"):
            raise bad_arguments(self.kind, f"invalid NAME: {self.name!r}", self.args())
        if not self.argv:
            raise bad_arguments(self.kind, "ARGV must not be empty", self.args())

    def execute(self, state: BuildState) -> tuple[BuildState, list[BuildCommand]]:
        argv = [expand_vars(a, state.vars) for a in self.argv]
        cwd = Path(expand_vars(self.cwd, state.vars)).expanduser() if self.cwd else None
        if cwd is not None and not cwd.is_dir():
            raise ExecutionError(code="E_SH_CWD", message=f"[{self.name}] cwd not found: {cwd}")

        timeout = self._effective(self.timeout, state, "timeout")
        no_output_timeout = self._effective(self.no_output_timeout, state, "no_output")

        try:
            result = run_process(
                argv,
                cwd=cwd,
                env=build_env(state.workspace),
                timeout=timeout,
                no_output_timeout=no_output_timeout,
            )
        except ProcessTimeout as e:
            code = "E_SH_TIMEOUT" if e.kind == "timeout" else "E_SH_NO_OUTPUT_TIMEOUT"
            what = "timed out" if e.kind == "timeout" else "produced no output"
            raise ExecutionError(
                code=code,
                message=f"[{self.name}] {what} after {e.seconds:g}s",
            ) from e
        except OSError as e:
            raise ExecutionError(
                code="E_SH_SPAWN",
                message=f"[{self.name}] could not start {argv[0]!r}: {e}",
            ) from e

        if not result.ok:
            tail = "\n".join(result.output.splitlines()[-OUTPUT_TAIL:])
            message = f"[{self.name}] exited with {result.exit_code}"
            if tail:
                message += f"\n{tail}"
            raise ExecutionError(code="E_SH_FAILED", message=message)

        state = state.with_output(self.name, result.output)
        if self.capture:
            state = state.with_var(self.capture, result.output.strip())
        return state.record(self.summary(), f"exit={result.exit_code}"), []

    def _effective(self, value: Optional[float], state: BuildState, which: str) -> Optional[float]:
        if value is None and state.workspace is not None:
            if which == "timeout":
                value = state.workspace.default_timeout()
            else:
                value = state.workspace.default_no_output_timeout()
        if not value:
            return None
        return value

    def args(self) -> list[str]:
        out: list[str] = []
        if self.timeout is not None:
            out += ["--timeout", format_seconds(self.timeout)]
        if self.no_output_timeout is not None:
            out += ["--no-output-timeout", format_seconds(self.no_output_timeout)]
        if self.cwd is not None:
            out += ["--cwd", self.cwd]
        if self.capture is not None:
            out += ["--capture", self.capture]
        return out + [self.name, "--", *self.argv]

    @classmethod
    def parse_args(cls, args: list[str]) -> "ShCommand":
        options: dict[str, str] = {}
        i = 0
        while i < len(args) and args[i].startswith("--") and args[i] != "--":
            flag = args[i]
            if flag not in ("--timeout", "--no-output-timeout", "--cwd", "--capture"):
                raise bad_arguments(cls.kind, f"unknown option: {flag}", args)
            if flag in options:
                raise bad_arguments(cls.kind, f"duplicate option: {flag}", args)
            if i + 1 >= len(args):
                raise bad_arguments(cls.kind, f"{flag} needs a value", args)
            options[flag] = args[i + 1]
            i += 2

        rest = args[i:]
        if len(rest) < 3 or rest[1] != "--":
            raise bad_arguments(cls.kind, "expected [OPTIONS] NAME -- ARGV...", args)
        name, argv = rest[0], tuple(rest[2:])

        capture = options.get("--capture")
        if capture is not None and not is_var_name(capture):
            raise bad_arguments(cls.kind, f"invalid variable name: {capture!r}", args)

        return cls(
            name=name,
            argv=argv,
            timeout=parse_seconds(cls.kind, options["--timeout"], args) if "--timeout" in options else None,
            no_output_timeout=(
                parse_seconds(cls.kind, options["--no-output-timeout"], args)
                if "--no-output-timeout" in options
                else None
            ),
            cwd=options.get("--cwd"),
            capture=capture,
        )

    def summary(self) -> str:
        return f"sh {self.name}"


@register
@dataclass(frozen=True)
class GroupCommand(BuildCommand):
    """Expand into `children`, in order.

    Tokens: group NAME COUNT, then each child as LEN TOKENS...
    """

    kind = "group"

    name: str
    children: tuple[BuildCommand, ...] = ()

    def execute(self, state: BuildState) -> tuple[BuildState, list[BuildCommand]]:
        return state.record(self.summary(), f"{len(self.children)} command(s)"), list(self.children)

    def args(self) -> list[str]:
        out = [self.name, str(len(self.children))]
        for child in self.children:
            tokens = child.to_tokens()
            out += [str(len(tokens)), *tokens]
        return out

    @classmethod
    def parse_args(cls, args: list[str]) -> "GroupCommand":
        if len(args) < 2:
            raise bad_arguments(cls.kind, "expected NAME COUNT [LEN TOKENS...]...", args)
        name = args[0]
        count = parse_int(cls.kind, args[1], args)

        children: list[BuildCommand] = []
        pos = 2
        for idx in range(count):
            if pos >= len(args):
                raise bad_arguments(cls.kind, f"truncated: expected {count} children, got {idx}", args)
            size = parse_int(cls.kind, args[pos], args, minimum=1)
            pos += 1
            if pos + size > len(args):
                raise bad_arguments(cls.kind, f"truncated: child {idx + 1} needs {size} tokens", args)
            children.append(BuildCommand.from_tokens(args[pos : pos + size]))
            pos += size

        if pos != len(args):
            raise bad_arguments(cls.kind, f"{len(args) - pos} trailing token(s)", args)
        return cls(name=name, children=tuple(children))

    def summary(self) -> str:
        return f"group {self.name}"


@register
@dataclass(frozen=True)
class TemplateCommand(BuildCommand):
    kind = "template"

    name: str
    target: str

    def execute(self, state: BuildState) -> tuple[BuildState, list[BuildCommand]]:
        lines = state.templates.get(self.name)
        if lines is None:
            raise ExecutionError(
                code="E_UNKNOWN_TEMPLATE",
                message=f"unknown template: {self.name} (choose one of: {', '.join(sorted(state.templates))})",
            )

        # Lines are split before substitution; a value always stays one token.
        values = {**state.vars, "target": self.target}
        expanded: list[BuildCommand] = []
        for i, line in enumerate(lines, start=1):
            try:
                tokens = split_command_line(line)
            except StepError as e:
                raise self._invalid(i, e) from e
            tokens = [expand_vars(t, values) for t in tokens]
            try:
                expanded.append(BuildCommand.from_tokens(tokens))
            except StepError as e:
                raise self._invalid(i, e) from e

        return state.record(self.summary(), f"{len(expanded)} command(s)"), expanded

    def _invalid(self, line_no: int, error: StepError) -> ExecutionError:
        return ExecutionError(
            code="E_TEMPLATE_INVALID",
            message=f"template {self.name} line {line_no}: {error.code}: {error.message}",
        )

    def args(self) -> list[str]:
        return [self.name, self.target]

    @classmethod
    def parse_args(cls, args: list[str]) -> "TemplateCommand":
        if len(args) != 2:
            raise bad_arguments(cls.kind, "expected NAME TARGET", args)
        return cls(name=args[0], target=args[1])


@register
@dataclass(frozen=True)
class RetryCommand(BuildCommand):
    """Run `inner`; on ExecutionError try again while attempts remain.

    A failed attempt re-emits this command with one attempt fewer, so the
    retry is scheduled by the engine like any other follow-up.
    """

    kind = "retry"

    attempts: int
    inner: BuildCommand

    def execute(self, state: BuildState) -> tuple[BuildState, list[BuildCommand]]:
        try:
            new_state, follow_ups = self.inner.execute(state)
        except ExecutionError as e:
            if self.attempts <= 1:
                raise
            left = self.attempts - 1
            logger.warning(f"{self.inner.summary()} failed ({e.code}); {left} attempt(s) left")
            return state.record(self.summary(), f"{e.code}, {left} left"), [RetryCommand(left, self.inner)]
        return new_state, follow_ups

    def args(self) -> list[str]:
        return [str(self.attempts), *self.inner.to_tokens()]

    @classmethod
    def parse_args(cls, args: list[str]) -> "RetryCommand":
        if len(args) < 2:
            raise bad_arguments(cls.kind, "expected ATTEMPTS COMMAND...", args)
        attempts = parse_int(cls.kind, args[0], args, minimum=1)
        return cls(attempts=attempts, inner=BuildCommand.from_tokens(args[1:]))

    def summary(self) -> str:
        return f"retry {self.attempts} {self.inner.summary()}"
