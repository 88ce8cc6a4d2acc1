from __future__ import annotations

import shlex
from dataclasses import replace
from typing import Protocol, Sequence, TypeVar

from loguru import logger

from stepstack.core.errors import ExecutionError, SerializationError, StepError


S = TypeVar("S")


class Command(Protocol[S]):
    def execute(self, state: S) -> tuple[S, Sequence["Command[S]"]]: ...

    def to_tokens(self) -> list[str]: ...

    @classmethod
    def from_tokens(cls, tokens: Sequence[str]) -> "Command[S]": ...


def run(state: S, command: Command[S], *, verify_roundtrip: bool = True) -> S:
    """Execute `command` and everything it expands into; return the final state.

    Commands are kept on a LIFO stack. Follow-ups are pushed in reverse so they
    pop in declared order, and each one is fully resolved (with whatever it
    emits) before anything queued earlier resumes: A -> [B, C], B -> [D] runs
    A, B, D, C.

    Every command is serialized to tokens and parsed back before it runs, so a
    lossy to_tokens/from_tokens pair fails the run on first use rather than
    at the edges. Pass verify_roundtrip=False to execute commands as given.

    The first error aborts the run. Nothing is undone and no partial state is
    returned.
    """

    pending: list[Command[S]] = [command]
    step = 0

    logger.info(f"run started: {_describe(command)}")

    while pending:
        current = pending.pop()
        step += 1

        if verify_roundtrip:
            current = _roundtrip(current, step)

        line = _describe(current)
        logger.debug(f"step {step}: {line}")

        try:
            state, follow_ups = current.execute(state)
        except StepError as e:
            raise _located(e, step=step, command=line) from e
        except Exception as e:
            raise ExecutionError(
                code="E_EXECUTE",
                message=f"{type(e).__name__}: {e}",
                command=line,
                step=step,
            ) from e

        follow_ups = list(follow_ups)
        if follow_ups:
            logger.debug(f"step {step}: expanded into {len(follow_ups)} command(s)")
        pending.extend(reversed(follow_ups))

    logger.info(f"run finished after {step} step(s)")
    return state


def _roundtrip(command: Command[S], step: int) -> Command[S]:
    try:
        tokens = list(command.to_tokens())
    except Exception as e:
        raise SerializationError(
            code="E_SERIALIZE",
            message=f"{type(command).__name__}.to_tokens failed: {e}",
            step=step,
        ) from e

    if any(not isinstance(t, str) for t in tokens):
        raise SerializationError(
            code="E_SERIALIZE",
            message=f"{type(command).__name__}.to_tokens must return strings",
            step=step,
        )

    line = shlex.join(tokens)
    try:
        restored = type(command).from_tokens(tokens)
    except StepError as e:
        raise SerializationError(
            code="E_DESERIALIZE",
            message=str(e.message),
            command=line,
            step=step,
        ) from e
    except Exception as e:
        raise SerializationError(
            code="E_DESERIALIZE",
            message=f"{type(e).__name__}: {e}",
            command=line,
            step=step,
        ) from e

    try:
        again = list(restored.to_tokens())
    except Exception as e:
        raise SerializationError(
            code="E_SERIALIZE",
            message=f"{type(restored).__name__}.to_tokens failed after parsing: {e}",
            command=line,
            step=step,
        ) from e

    if again != tokens:
        raise SerializationError(
            code="E_ROUNDTRIP_LOSSY",
            message=f"tokens changed after a round-trip: {_join(again)}",
            command=line,
            step=step,
        )
    return restored


def _join(tokens: list) -> str:
    return shlex.join(str(t) for t in tokens)


def _located(error: StepError, *, step: int, command: str) -> StepError:
    # Errors from a nested run keep their inner location in the message only.
    message = error.message
    if error.step is not None:
        message = f"nested step {error.step}:{error.command or '?'}: {message}"
    return replace(error, message=message, step=step, command=command)


def _describe(command: Command[S]) -> str:
    try:
        return shlex.join(command.to_tokens())
    except Exception:
        return f"<{type(command).__name__}>"
