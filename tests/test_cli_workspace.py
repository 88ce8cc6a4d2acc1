from typer.testing import CliRunner

from stepstack.cli import app
from stepstack.core.workspace import default_sandbox_image_name


runner = CliRunner()


def test_cli_workspace_defaults(tmp_path):
    home = tmp_path / "ws"
    r = runner.invoke(app, ["workspace", "--home", str(home)])
    assert r.exit_code == 0, r.output
    assert home.is_dir()
    assert f"sandbox_image: {default_sandbox_image_name()}" in r.stdout
    assert "command_timeout: 900.0" in r.stdout
    assert "command_no_output_timeout: none" in r.stdout


def test_cli_workspace_image_override(tmp_path):
    r = runner.invoke(app, ["workspace", "--home", str(tmp_path), "--sandbox-image", "custom/img:2"])
    assert r.exit_code == 0, r.output
    assert "sandbox_image: custom/img:2" in r.stdout


def test_cli_workspace_config_file(tmp_path):
    r = runner.invoke(
        app,
        ["workspace", "--workspace-config", "examples/workspace.yaml", "--home", str(tmp_path)],
    )
    assert r.exit_code == 0, r.output
    assert "sandbox_image: registry.example/build-env:2024" in r.stdout
    assert "command_no_output_timeout: 120.0" in r.stdout


def test_cli_workspace_invalid_image(tmp_path):
    r = runner.invoke(app, ["workspace", "--home", str(tmp_path), "--sandbox-image", "bad image"])
    assert r.exit_code == 1
    assert "E_SANDBOX_IMAGE_INVALID" in r.output


def test_cli_workspace_env_home(monkeypatch, tmp_path):
    monkeypatch.setenv("STEPSTACK_HOME", str(tmp_path / "from-env"))
    r = runner.invoke(app, ["workspace"])
    assert r.exit_code == 0, r.output
    assert f"path: {tmp_path / 'from-env'}" in r.stdout
