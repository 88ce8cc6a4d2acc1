from stepstack.core.commands.base import (
    BuildCommand,
    expand_vars,
    parse_command_line,
    register,
    registered_kinds,
    split_command_line,
)
from stepstack.core.commands.builtin import (
    FailCommand,
    GroupCommand,
    NoopCommand,
    RequireCommand,
    RetryCommand,
    SetCommand,
    ShCommand,
    TemplateCommand,
)

__all__ = [
    "BuildCommand",
    "FailCommand",
    "GroupCommand",
    "NoopCommand",
    "RequireCommand",
    "RetryCommand",
    "SetCommand",
    "ShCommand",
    "TemplateCommand",
    "expand_vars",
    "parse_command_line",
    "register",
    "registered_kinds",
    "split_command_line",
]
