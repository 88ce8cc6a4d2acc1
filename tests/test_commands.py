import pytest

from stepstack.core.commands import (
    BuildCommand,
    FailCommand,
    GroupCommand,
    NoopCommand,
    RequireCommand,
    RetryCommand,
    SetCommand,
    ShCommand,
    TemplateCommand,
    expand_vars,
    parse_command_line,
    registered_kinds,
)
from stepstack.core.engine import run
from stepstack.core.errors import ExecutionError, SerializationError
from stepstack.core.model import BuildState


REPRESENTATIVE = [
    NoopCommand(),
    SetCommand(key="stage", value="fetch {target}"),
    FailCommand(message="stop right there"),
    RequireCommand(tool="git"),
    ShCommand(name="build", argv=("make", "-j4", "all")),
    ShCommand(
        name="test",
        argv=("pytest", "-q", "--", "tests/"),
        timeout=90.5,
        no_output_timeout=0,
        cwd="src dir",
        capture="result",
    ),
    GroupCommand(name="empty"),
    GroupCommand(
        name="outer",
        children=(
            SetCommand(key="a", value="1"),
            GroupCommand(name="inner", children=(NoopCommand(), FailCommand(message="x"))),
        ),
    ),
    TemplateCommand(name="fetch", target="widget"),
    RetryCommand(attempts=3, inner=ShCommand(name="clone", argv=("git", "clone", "repo"))),
]


def test_every_kind_is_registered():
    assert registered_kinds() == sorted(
        ["noop", "set", "fail", "require", "sh", "group", "template", "retry"]
    )


def test_roundtrip_preserves_commands():
    for cmd in REPRESENTATIVE:
        tokens = cmd.to_tokens()
        assert all(isinstance(t, str) for t in tokens)
        assert BuildCommand.from_tokens(tokens) == cmd
        assert type(cmd).from_tokens(tokens) == cmd


def test_roundtrip_executes_identically():
    state = BuildState(templates={"fetch": ["set {target}.stage fetch"]}, vars={"target": "t"})
    for cmd in REPRESENTATIVE:
        # these touch the host or fail on purpose; covered elsewhere
        if isinstance(cmd, (ShCommand, RequireCommand, FailCommand, RetryCommand)):
            continue
        assert BuildCommand.from_tokens(cmd.to_tokens()).execute(state) == cmd.execute(state)


def test_parse_command_line_splits_like_a_shell():
    cmd = parse_command_line("set message 'hello, world'")
    assert cmd == SetCommand(key="message", value="hello, world")


def test_unknown_kind_is_rejected():
    with pytest.raises(SerializationError) as info:
        BuildCommand.from_tokens(["frobnicate", "now"])
    assert info.value.code == "E_UNKNOWN_COMMAND"


def test_empty_tokens_are_rejected():
    with pytest.raises(SerializationError) as info:
        BuildCommand.from_tokens([])
    assert info.value.code == "E_EMPTY_COMMAND"


def test_unbalanced_quotes_are_rejected():
    with pytest.raises(SerializationError) as info:
        parse_command_line("set a 'oops")
    assert info.value.code == "E_BAD_COMMAND_LINE"


def test_bad_arguments():
    bad = [
        ["noop", "extra"],
        ["set", "only-key"],
        ["set", "bad key", "v"],
        ["fail"],
        ["require"],
        ["sh", "name", "make"],
        ["sh", "--timeout", "soon", "name", "--", "make"],
        ["sh", "--timeout", "-1", "name", "--", "make"],
        ["sh", "--bogus", "1", "name", "--", "make"],
        ["sh", "--timeout", "1", "--timeout", "2", "name", "--", "make"],
        ["group", "g"],
        ["group", "g", "two"],
        ["group", "g", "2", "1", "noop"],
        ["group", "g", "1", "3", "set", "a"],
        ["group", "g", "1", "1", "noop", "noop"],
        ["template", "only-name"],
        ["retry", "0", "noop"],
        ["retry", "3"],
    ]
    for tokens in bad:
        with pytest.raises(SerializationError) as info:
            BuildCommand.from_tokens(tokens)
        assert info.value.code == "E_BAD_ARGUMENTS", tokens


def test_sh_rejects_names_its_parser_cannot_read():
    for name in ["", "--timeout", "--"]:
        with pytest.raises(SerializationError) as info:
            ShCommand(name=name, argv=("make",))
        assert info.value.code == "E_BAD_ARGUMENTS", name

    with pytest.raises(SerializationError) as info:
        ShCommand(name="build", argv=())
    assert info.value.code == "E_BAD_ARGUMENTS"

    cmd = ShCommand(name="-x", argv=("make",))
    assert BuildCommand.from_tokens(cmd.to_tokens()) == cmd


def test_nested_bad_child_reports_child_error():
    with pytest.raises(SerializationError) as info:
        BuildCommand.from_tokens(["group", "g", "1", "1", "nope"])
    assert info.value.code == "E_UNKNOWN_COMMAND"


def test_set_expands_vars():
    state = BuildState(vars={"name": "widget"})
    new_state, follow_ups = SetCommand(key="dir", value="build/{name}").execute(state)
    assert follow_ups == []
    assert new_state.vars == {"name": "widget", "dir": "build/widget"}
    assert new_state.executed() == ["set dir 'build/{name}'"]
    assert state.vars == {"name": "widget"}


def test_expand_vars_literal_braces_and_unknown():
    assert expand_vars("{{a}} {b}", {"b": "x"}) == "{a} x"
    assert expand_vars("print('{}')", {}) == "print('{}')"
    with pytest.raises(ExecutionError) as info:
        expand_vars("{missing}", {})
    assert info.value.code == "E_UNKNOWN_VAR"


def test_group_runs_children_depth_first():
    cmd = GroupCommand(
        name="A",
        children=(
            GroupCommand(name="B", children=(SetCommand(key="d", value="1"),)),
            SetCommand(key="c", value="1"),
        ),
    )
    final = run(BuildState(), cmd)
    assert final.executed() == ["group A", "group B", "set d 1", "set c 1"]


def test_fail_raises_execution_error():
    with pytest.raises(ExecutionError) as info:
        run(BuildState(), GroupCommand(name="g", children=(NoopCommand(), FailCommand(message="halt"))))
    assert info.value.code == "E_FAIL"
    assert info.value.message == "halt"
    assert info.value.step == 3


def test_require_reports_hint_for_missing_tool():
    with pytest.raises(ExecutionError) as info:
        RequireCommand(tool="definitely-not-installed-tool").execute(BuildState())
    assert info.value.code == "E_TOOL_MISSING"
    assert "definitely-not-installed-tool" in info.value.message


def test_template_expands_lines_with_target_and_vars():
    state = BuildState(
        templates={"fetch": ["set {target}.stage fetch", "set {target}.from {repo}"]},
        vars={"repo": "https://example.invalid/widget.git"},
    )
    new_state, follow_ups = TemplateCommand(name="fetch", target="widget").execute(state)
    assert follow_ups == [
        SetCommand(key="widget.stage", value="fetch"),
        SetCommand(key="widget.from", value="https://example.invalid/widget.git"),
    ]
    assert new_state.executed() == ["template fetch widget"]


def test_nested_templates_run_through_engine():
    state = BuildState(
        templates={
            "outer": ["set {target}.begin 1", "template inner {target}", "set {target}.end 1"],
            "inner": ["set {target}.inner 1"],
        }
    )
    final = run(state, TemplateCommand(name="outer", target="w"))
    assert final.executed() == [
        "template outer w",
        "set w.begin 1",
        "template inner w",
        "set w.inner 1",
        "set w.end 1",
    ]


def test_template_target_with_spaces_stays_one_token():
    state = BuildState(templates={"greet": ["set greeting {target}"]})
    final = run(state, TemplateCommand(name="greet", target="hello world"))
    assert final.vars == {"greeting": "hello world"}


def test_template_target_cannot_change_sh_argv():
    state = BuildState(templates={"t": ["sh step-{target} -- echo ok"]})
    _, follow_ups = TemplateCommand(name="t", target="a -- printf INJECTED").execute(state)
    assert follow_ups == [ShCommand(name="step-a -- printf INJECTED", argv=("echo", "ok"))]


def test_template_line_with_bad_quoting_is_invalid():
    state = BuildState(templates={"t": ["set a 'unclosed"]})
    with pytest.raises(ExecutionError) as info:
        TemplateCommand(name="t", target="x").execute(state)
    assert info.value.code == "E_TEMPLATE_INVALID"
    assert "E_BAD_COMMAND_LINE" in info.value.message


def test_template_errors():
    state = BuildState(templates={"broken": ["frobnicate"], "needs": ["set a {nope}"]})

    with pytest.raises(ExecutionError) as info:
        TemplateCommand(name="missing", target="t").execute(state)
    assert info.value.code == "E_UNKNOWN_TEMPLATE"

    with pytest.raises(ExecutionError) as info:
        TemplateCommand(name="broken", target="t").execute(state)
    assert info.value.code == "E_TEMPLATE_INVALID"

    with pytest.raises(ExecutionError) as info:
        TemplateCommand(name="needs", target="t").execute(state)
    assert info.value.code == "E_UNKNOWN_VAR"


def test_retry_passes_through_on_success():
    final = run(BuildState(), RetryCommand(attempts=2, inner=SetCommand(key="a", value="1")))
    assert final.vars == {"a": "1"}
    assert final.executed() == ["set a 1"]


def test_retry_gives_up_after_last_attempt():
    cmd = RetryCommand(attempts=3, inner=RequireCommand(tool="definitely-not-installed-tool"))
    with pytest.raises(ExecutionError) as info:
        run(BuildState(), cmd)
    assert info.value.code == "E_TOOL_MISSING"
    assert info.value.step == 3
    assert info.value.command == "retry 1 require definitely-not-installed-tool"


def test_retry_reemits_itself_with_fewer_attempts():
    cmd = RetryCommand(attempts=2, inner=FailCommand(message="flaky"))
    new_state, follow_ups = cmd.execute(BuildState())
    assert follow_ups == [RetryCommand(attempts=1, inner=FailCommand(message="flaky"))]
    assert new_state.history[-1].detail == "E_FAIL, 1 left"


def test_lossy_construction_is_caught_by_the_engine():
    # Constructed directly, bypassing parse-time validation of the key.
    with pytest.raises(SerializationError) as info:
        run(BuildState(), SetCommand(key="bad key", value="1"))
    assert info.value.code == "E_DESERIALIZE"
