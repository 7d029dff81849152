# interpreter.py
# Tree-walking evaluator for programs.
#
# The interpreter knows nothing about built-ins or delegates: every call is
# handed to the caller-supplied dispatch function once its arguments are
# evaluated. Siblings without data dependencies run concurrently; results are
# always recorded in step order.

import asyncio
from typing import Any, Awaitable, Callable, Iterable, Sequence

from turn_orchestrator.errors import ProgramEvaluationError
from turn_orchestrator.models import (
    Expression,
    FunctionCall,
    JsonArray,
    JsonObject,
    Program,
    ResultReference,
    Scalar,
)

Dispatch = Callable[[str, list[Any]], Awaitable[Any]]


async def evaluate_program(program: Program, dispatch: Dispatch) -> list[Any]:
    """
    Evaluate every step of `program` and return one result per step.

    Consecutive steps that do not reference each other form a group and are
    evaluated concurrently. A dispatch error aborts the whole program: pending
    siblings are cancelled and no partial results are returned.
    """
    results: list[Any] = []
    for group in step_groups(program.steps):
        if len(group) == 1:
            results.append(await _evaluate(group[0], results, dispatch))
            continue
        values = await _gather(_evaluate(step, results, dispatch) for step in group)
        results.extend(values)
    return results


def step_groups(steps: Sequence[FunctionCall]) -> list[list[FunctionCall]]:
    """Split steps into runs that only reference results of earlier runs."""
    groups: list[list[FunctionCall]] = []
    current: list[FunctionCall] = []
    start = 0
    for index, step in enumerate(steps):
        if current and max_reference(step) >= start:
            groups.append(current)
            current = []
            start = index
        current.append(step)
    if current:
        groups.append(current)
    return groups


def max_reference(expr: Expression) -> int:
    """Highest step index referenced anywhere inside `expr`, or -1."""
    if isinstance(expr, ResultReference):
        return expr.ref
    if isinstance(expr, FunctionCall):
        return max((max_reference(arg) for arg in expr.args), default=-1)
    if isinstance(expr, JsonArray):
        return max((max_reference(item) for item in expr.items), default=-1)
    if isinstance(expr, JsonObject):
        return max((max_reference(value) for value in expr.entries.values()), default=-1)
    return -1


async def _evaluate(expr: Expression, results: list[Any], dispatch: Dispatch) -> Any:
    if isinstance(expr, Scalar):
        return expr.value

    if isinstance(expr, ResultReference):
        if expr.ref >= len(results):
            raise ProgramEvaluationError(
                f"Result reference {expr.ref} is out of range: only {len(results)} "
                "preceding result(s) are available."
            )
        return results[expr.ref]

    if isinstance(expr, JsonArray):
        return await _gather(_evaluate(item, results, dispatch) for item in expr.items)

    if isinstance(expr, JsonObject):
        keys = list(expr.entries)
        values = await _gather(_evaluate(expr.entries[key], results, dispatch) for key in keys)
        return dict(zip(keys, values))

    if isinstance(expr, FunctionCall):
        args = await _gather(_evaluate(arg, results, dispatch) for arg in expr.args)
        return await dispatch(expr.name, args)

    raise ProgramEvaluationError(f"Unsupported expression node: {type(expr).__name__}")


async def _gather(coros: Iterable[Awaitable[Any]]) -> list[Any]:
    """Run awaitables concurrently, keep input order, cancel the rest on failure."""
    pending = list(coros)
    if not pending:
        return []
    if len(pending) == 1:
        return [await pending[0]]

    tasks = [asyncio.ensure_future(coro) for coro in pending]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
