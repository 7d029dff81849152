# validator.py
# Turn grammar enforcement.
#
# A turn program is either intermediate (gathers information and ends with
# NextTurn) or final (ends with CompleteAssignment or DeadEnd). This module is
# the single authority on that classification. Rejections carry every
# violated rule, one per line, so one repair round can fix them all.

import json
from dataclasses import dataclass
from typing import Iterator

from turn_orchestrator.models import (
    FINAL_BUILTINS,
    TERMINAL_BUILTINS,
    Builtin,
    Expression,
    FunctionCall,
    JsonArray,
    JsonObject,
    Program,
    Scalar,
    TurnState,
)

# Allowed argument counts per built-in: (min, max).
BUILTIN_ARITY: dict[Builtin, tuple[int, int]] = {
    Builtin.WRITE_THOUGHTS: (1, 1),
    Builtin.NEXT_TURN: (0, 0),
    Builtin.COMPLETE_ASSIGNMENT: (1, 1),
    Builtin.DEAD_END: (1, 1),
    Builtin.OUTPUT_MESSAGE: (1, 2),
    Builtin.GET_CURRENT_CONTEXT: (0, 0),
    Builtin.GET_HISTORY: (0, 0),
}


@dataclass(frozen=True)
class Verdict:
    """Outcome of validating one program: accepted (maybe corrected) or rejected."""

    program: Program | None = None
    error: str | None = None
    corrected: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def accept(cls, program: Program, corrected: bool = False) -> "Verdict":
        return cls(program=program, corrected=corrected)

    @classmethod
    def reject(cls, errors: list[str]) -> "Verdict":
        return cls(error="\n".join(errors))


def walk_calls(expr: Expression, path: str, top_level: bool = False) -> Iterator[tuple[str, FunctionCall, bool]]:
    """Yield (path, call, is_top_level) for every call inside `expr`, outermost first."""
    if isinstance(expr, FunctionCall):
        yield path, expr, top_level
        for i, arg in enumerate(expr.args):
            yield from walk_calls(arg, f"{path}.@args[{i}]")
    elif isinstance(expr, JsonArray):
        for i, item in enumerate(expr.items):
            yield from walk_calls(item, f"{path}[{i}]")
    elif isinstance(expr, JsonObject):
        for key, value in expr.entries.items():
            yield from walk_calls(value, f"{path}.{key}")


def validate_turn(program: Program, state: TurnState) -> Verdict:
    """
    Accept or reject `program` as this turn's plan.

    The only leniency: a program that calls delegates but has no terminal
    call at all (and breaks no other rule) gets a trailing NextTurn step.
    """
    errors: list[str] = []
    steps = program.steps

    calls = [
        found
        for index, step in enumerate(steps)
        for found in walk_calls(step, f"@steps[{index}]", top_level=True)
    ]
    delegate_calls = [(path, call) for path, call, _ in calls if Builtin.lookup(call.name) is None]

    # Reflection must open the program, and only open it.
    if Builtin.lookup(steps[0].name) is not Builtin.WRITE_THOUGHTS:
        errors.append(
            f'Invalid program. The first step must call "{Builtin.WRITE_THOUGHTS.value}" to reflect '
            f'on the request before doing anything else, but it calls "{steps[0].name}".'
        )
    leading = 0
    while leading < len(steps) and steps[leading].name == Builtin.WRITE_THOUGHTS.value:
        leading += 1
    for path, call, top_level in calls:
        if call.name == Builtin.WRITE_THOUGHTS.value and not (top_level and _step_index(path) < leading):
            errors.append(
                f'Invalid program. {path} calls "{Builtin.WRITE_THOUGHTS.value}"; it may only be '
                "called by the leading steps of the program."
            )

    errors.extend(_arity_errors(calls))

    # Terminal calls: top level only, last step only.
    terminals = [(path, call, top_level) for path, call, top_level in calls if Builtin.lookup(call.name) in TERMINAL_BUILTINS]
    last_index = len(steps) - 1
    for path, call, top_level in terminals:
        if not top_level:
            errors.append(
                f'Invalid program. {path} nests "{call.name}" inside another expression; '
                "terminal calls must be top-level steps."
            )
        elif _step_index(path) != last_index:
            errors.append(
                f'Invalid program. {path} calls "{call.name}" but only the last step may end the turn.'
            )

    errors.extend(_question_errors(delegate_calls, state))

    corrected = False
    last = Builtin.lookup(steps[-1].name)
    if last is Builtin.NEXT_TURN:
        if not delegate_calls:
            errors.append(
                f'Invalid intermediate program. Calling "{Builtin.NEXT_TURN.value}" last means more '
                "information is needed, so the program must call at least one agent before it. "
                f'If no agent can help, end with "{Builtin.COMPLETE_ASSIGNMENT.value}" or '
                f'"{Builtin.DEAD_END.value}" instead.'
            )
        finals = [call.name for _, call, _ in terminals if Builtin.lookup(call.name) in FINAL_BUILTINS]
        if finals:
            errors.append(
                f'Invalid intermediate program. It must not call {_names(finals)} '
                f'when it ends with "{Builtin.NEXT_TURN.value}".'
            )
    elif last in FINAL_BUILTINS:
        if delegate_calls:
            errors.append(
                "Ambiguous program. If more information is needed, call at least one agent and end "
                f'with "{Builtin.NEXT_TURN.value}"; otherwise interpret the information already in '
                f'memory and end with "{Builtin.COMPLETE_ASSIGNMENT.value}" or '
                f'"{Builtin.DEAD_END.value}" without calling any agent. Agent calls found at: '
                f"{', '.join(path for path, _ in delegate_calls)}."
            )
        finals = [call for _, call, _ in terminals if Builtin.lookup(call.name) in FINAL_BUILTINS]
        if len(finals) > 1:
            errors.append(
                f'Invalid final program. Exactly one "{Builtin.COMPLETE_ASSIGNMENT.value}" or '
                f'"{Builtin.DEAD_END.value}" call is allowed, found {len(finals)}.'
            )
        if any(call.name == Builtin.NEXT_TURN.value for _, call, _ in terminals):
            errors.append(
                f'Invalid final program. It must not call "{Builtin.NEXT_TURN.value}".'
            )
    elif delegate_calls and not terminals and not errors:
        program = Program(steps=steps + (FunctionCall(name=Builtin.NEXT_TURN.value),))
        corrected = True
    elif not terminals:
        errors.append(
            f'Invalid program. The last step must call "{Builtin.NEXT_TURN.value}", '
            f'"{Builtin.COMPLETE_ASSIGNMENT.value}" or "{Builtin.DEAD_END.value}" to end the turn, '
            f'but it calls "{steps[-1].name}".'
        )

    if errors:
        return Verdict.reject(errors)
    return Verdict.accept(program, corrected=corrected)


def _arity_errors(calls: list[tuple[str, FunctionCall, bool]]) -> list[str]:
    errors: list[str] = []
    for path, call, _ in calls:
        builtin = Builtin.lookup(call.name)
        count = len(call.args)
        if builtin is None:
            if count != 1:
                errors.append(
                    f'Invalid agent call. {path} calls agent "{call.name}" with {count} arguments; '
                    "agents take exactly one self-contained natural-language request."
                )
            elif isinstance(call.args[0], Scalar) and not isinstance(call.args[0].value, str):
                errors.append(
                    f'Invalid agent call. {path} must pass a string request to agent "{call.name}".'
                )
            continue
        low, high = BUILTIN_ARITY[builtin]
        if not low <= count <= high:
            expected = str(low) if low == high else f"{low} to {high}"
            errors.append(
                f'Invalid call. {path} calls "{call.name}" with {count} arguments, expected {expected}.'
            )
    return errors


def _question_errors(delegate_calls: list[tuple[str, FunctionCall]], state: TurnState) -> list[str]:
    errors: list[str] = []
    seen: set[str] = set()
    in_memory = 0
    for path, call in delegate_calls:
        question = _literal_question(call)
        if question is None:
            continue
        if state.answered(question):
            in_memory += 1
            errors.append(
                f"Invalid program. {path}'s question {json.dumps(question)} already has an answer "
                "in Memory. You must not ask the same question twice."
            )
        elif question in seen:
            errors.append(
                f"Invalid program. {path}'s question {json.dumps(question)} is asked more than "
                "once in this program. You must not ask the same question twice."
            )
        seen.add(question)
    if delegate_calls and in_memory == len(delegate_calls):
        errors.append(
            "All the information requested is already available in Memory; write a final program "
            f'that interprets it and ends with "{Builtin.COMPLETE_ASSIGNMENT.value}".'
        )
    return errors


def _literal_question(call: FunctionCall) -> str | None:
    if len(call.args) == 1 and isinstance(call.args[0], Scalar) and isinstance(call.args[0].value, str):
        return call.args[0].value
    return None


def _step_index(path: str) -> int:
    # Paths of top-level steps are always "@steps[<n>]".
    return int(path[len("@steps["):path.index("]")])


def _names(names: list[str]) -> str:
    return ", ".join(f'"{name}"' for name in sorted(set(names)))
