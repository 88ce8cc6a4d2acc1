from __future__ import annotations

import json
import sys
from typing import Any, NoReturn, Optional

import typer
from loguru import logger
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from stepstack.core.commands import BuildCommand
from stepstack.core.engine import run
from stepstack.core.errors import (
    ConfigurationError,
    SerializationError,
    StepError,
    WorkflowLoadError,
)
from stepstack.core.io.load_workflow import build_initial, load_workflow
from stepstack.core.model import BuildState
from stepstack.core.templates.template_config import TemplateConfigError, load_and_merge
from stepstack.core.workspace import (
    SandboxImage,
    Workspace,
    WorkspaceBuilder,
    default_workspace_path,
    load_workspace_config,
)

app = typer.Typer(add_completion=False, no_args_is_help=True)
console = Console(highlight=False)


@app.callback()
def _callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log every engine step"),
) -> None:
    """stepstack: run build workflows as depth-first command expansion."""
    _configure_logging(verbose)


@app.command("run")
def run_cmd(
    path: str = typer.Argument(..., help="Path to a workflow file (.yaml/.yml/.json)"),
    home: Optional[str] = typer.Option(None, "--home", help="Workspace directory (default: $STEPSTACK_HOME or ~/.stepstack)"),
    workspace_config: Optional[str] = typer.Option(None, "--workspace-config", help="Workspace YAML file"),
    sandbox_image: Optional[str] = typer.Option(None, "--sandbox-image", help="Override the sandbox image"),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Default sh timeout in seconds (0 disables)"),
    no_output_timeout: Optional[float] = typer.Option(
        None, "--no-output-timeout", help="Default sh no-output timeout in seconds (0 disables)"
    ),
    template_file: Optional[str] = typer.Option(None, "--template-file", help="Optional YAML file to add/override templates"),
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
) -> None:
    """Run a workflow file to completion."""
    if format not in ("text", "json"):
        _print_errors(
            [
                StepError(
                    code="E_RUN_UNKNOWN_FORMAT",
                    message=f"unknown format: {format} (choose one of: text, json)",
                )
            ]
        )
        raise typer.Exit(code=2)

    def _emit_json(
        ok: bool,
        *,
        exit_code: int,
        workflow: str | None,
        errors: list[StepError],
        state: BuildState | None,
    ) -> None:
        payload = {
            "tool": "stepstack",
            "command": "run",
            "workflow": workflow,
            "ok": ok,
            "error_count": len(errors),
            "errors": [_to_item(e) for e in errors],
            "steps": [{"command": r.command, "detail": r.detail} for r in state.history] if state else [],
            "vars": dict(state.vars) if state else {},
        }
        typer.echo(json.dumps(payload, indent=2, sort_keys=True))
        raise typer.Exit(code=exit_code)

    def _fail(e: StepError, exit_code: int, workflow: str | None = None) -> NoReturn:
        if format == "json":
            _emit_json(False, exit_code=exit_code, workflow=workflow, errors=[e], state=None)
        _print_errors([e])
        raise typer.Exit(code=exit_code)

    try:
        workflow = load_workflow(path)
    except WorkflowLoadError as e:
        _fail(e, 1)

    templates = _load_templates(template_file, _fail, workflow.name)

    try:
        workspace = _build_workspace(home, workspace_config, sandbox_image, timeout, no_output_timeout)
    except ConfigurationError as e:
        _fail(e, 1, workflow.name)

    state, command = build_initial(workflow, workspace=workspace, templates=templates)
    try:
        final = run(state, command)
    except StepError as e:
        _fail(e, 2, workflow.name)

    if format == "json":
        _emit_json(True, exit_code=0, workflow=workflow.name, errors=[], state=final)

    _print_history(workflow.name, final)
    typer.echo(f"OK: {workflow.name} finished in {len(final.history)} step(s)")


@app.command("exec")
def exec_cmd(
    tokens: list[str] = typer.Argument(..., help="Command tokens, e.g. -- sh hello -- echo hi"),
    home: Optional[str] = typer.Option(None, "--home", help="Workspace directory"),
    template_file: Optional[str] = typer.Option(None, "--template-file", help="Optional YAML file to add/override templates"),
) -> None:
    """Run a single command given as tokens."""

    def _fail(e: StepError, exit_code: int, workflow: str | None = None) -> NoReturn:
        _print_errors([e])
        raise typer.Exit(code=exit_code)

    templates = _load_templates(template_file, _fail, None)

    try:
        command = BuildCommand.from_tokens(tokens)
    except SerializationError as e:
        _fail(e, 2)

    try:
        workspace = _build_workspace(home, None, None, None, None)
    except ConfigurationError as e:
        _fail(e, 1)

    try:
        final = run(BuildState(workspace=workspace, templates=templates), command)
    except StepError as e:
        _fail(e, 2)

    _print_history(command.summary(), final)
    typer.echo(f"OK: {len(final.history)} step(s)")


@app.command("templates")
def templates_cmd(
    template_file: Optional[str] = typer.Option(
        None,
        "--template-file",
        help="Optional YAML file to add/override templates",
    ),
) -> None:
    """List available templates."""

    def _fail(e: StepError, exit_code: int, workflow: str | None = None) -> NoReturn:
        _print_errors([e])
        raise typer.Exit(code=exit_code)

    templates_map = _load_templates(template_file, _fail, None, invalid_exit_code=2)

    typer.echo("Templates:")
    for name in sorted(templates_map.keys()):
        typer.echo(f"- {name}:")
        for line in templates_map[name]:
            typer.echo(f"    {line}")


@app.command("workspace")
def workspace_cmd(
    home: Optional[str] = typer.Option(None, "--home", help="Workspace directory"),
    workspace_config: Optional[str] = typer.Option(None, "--workspace-config", help="Workspace YAML file"),
    sandbox_image: Optional[str] = typer.Option(None, "--sandbox-image", help="Override the sandbox image"),
) -> None:
    """Create (if needed) and describe the workspace."""
    try:
        workspace = _build_workspace(home, workspace_config, sandbox_image, None, None)
    except ConfigurationError as e:
        _print_errors([e])
        raise typer.Exit(code=1)

    for key, value in workspace.describe().items():
        typer.echo(f"{key}: {'none' if value is None else value}")


def _build_workspace(
    home: str | None,
    workspace_config: str | None,
    sandbox_image: str | None,
    timeout: float | None,
    no_output_timeout: float | None,
) -> Workspace:
    if workspace_config:
        builder = load_workspace_config(workspace_config)
    else:
        builder = WorkspaceBuilder(default_workspace_path())
    if home:
        builder.with_path(home)
    if sandbox_image:
        builder.sandbox_image(SandboxImage.remote(sandbox_image))
    if timeout is not None:
        builder.command_timeout(timeout or None)
    if no_output_timeout is not None:
        builder.command_no_output_timeout(no_output_timeout or None)
    return builder.init()


def _load_templates(
    template_file: str | None,
    fail,
    workflow: str | None,
    *,
    invalid_exit_code: int = 1,
) -> dict[str, list[str]]:
    try:
        return load_and_merge(template_file)
    except FileNotFoundError:
        fail(
            ConfigurationError(
                code="E_TEMPLATE_FILE_NOT_FOUND",
                message=f"template file not found: {template_file}",
            ),
            1,
            workflow,
        )
    except TemplateConfigError as e:
        fail(ConfigurationError(code="E_TEMPLATE_FILE_INVALID", message=str(e)), invalid_exit_code, workflow)
    return {}


def _to_item(e: StepError) -> dict[str, Any]:
    if isinstance(e, WorkflowLoadError):
        source = "load"
    elif isinstance(e, ConfigurationError):
        source = "config"
    else:
        source = "run"
    return {
        "code": e.code,
        "message": e.message,
        "command": e.command,
        "step": e.step,
        "severity": "error",
        "source": source,
    }


def _print_history(title: str, state: BuildState) -> None:
    table = Table(title=escape(title))
    table.add_column("#", justify="right")
    table.add_column("Command")
    table.add_column("Detail")
    for i, record in enumerate(state.history, start=1):
        table.add_row(str(i), escape(record.command), escape(record.detail))
    console.print(table)

    if state.vars:
        console.print("Vars:")
        for key in sorted(state.vars):
            console.print(f"  {escape(key)} = {escape(state.vars[key])}")


def _print_errors(errors: list[StepError]) -> None:
    errors_sorted = sorted(errors, key=lambda e: (e.step or 0, e.command or "", e.code))
    for e in errors_sorted:
        typer.echo(str(e), err=True)


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    logger.add(
        sys.stderr,
        level="DEBUG" if verbose else "WARNING",
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <7}</level> | {message}",
    )


def main() -> None:
    app(prog_name="stepstack")


cli = typer.main.get_command(app)

if __name__ == "__main__":
    main()
