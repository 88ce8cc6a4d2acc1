"""Command-expansion engine.

A command acts on the state and may emit more commands; `run` drains them
depth-first until nothing is left or something fails.
"""
from stepstack.core.engine.run_commands import Command, run

__all__ = ["Command", "run"]
