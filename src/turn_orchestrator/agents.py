# agents.py
# Delegates the orchestrator can call by name.
#
# A delegate receives one self-contained natural-language request and
# returns a natural-language answer. It never sees the caller's turn state.
# Failures surface as DelegateError, whose message is itself the answer the
# orchestrator records.

import inspect
import json
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Mapping

from turn_orchestrator.completion import CompletionModel
from turn_orchestrator.errors import DelegateError, UnknownCapabilityError
from turn_orchestrator.interpreter import evaluate_program
from turn_orchestrator.models import Program
from turn_orchestrator.planner import DEFAULT_MAX_REPAIR_ATTEMPTS, ProgramPlanner, build_system_prompt
from turn_orchestrator.tracer import Span, Tracer
from turn_orchestrator.validator import Verdict

OUTPUT_MESSAGE = "OutputMessage"
ERROR_MESSAGE = "ErrorMessage"
GET_PROPERTY = "getProperty"

SKILL_BUILTINS_API = """\
// Use this to output the result of the program. "data" holds key-value pairs
// whose values come from preceding steps; it is appended to the message.
OutputMessage(message: string, data: object): string
// Use this when the request cannot be handled. Give a detailed reason,
// including any missing data that would allow the request to be completed.
ErrorMessage(reason: string): string
// Reads property "key" of "target", which must be a reference to a preceding step.
getProperty(target: object, key: string): any\
"""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def render_text(value: Any) -> str:
    """Render any evaluated value as answer text."""
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    return json.dumps(value, indent=2, ensure_ascii=False, default=str)


def output_message(message: Any, data: Any = None) -> str:
    """Message text followed by the JSON rendering of `data`, when there is any."""
    if data:
        return f"{render_text(message)}\n\n{json.dumps(data, indent=2, ensure_ascii=False, default=str)}"
    return render_text(message)


async def _call(fn: Callable[..., Any], *args: Any) -> Any:
    result = fn(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


# ---------------------------------------------------------------------------
# Agents
# ---------------------------------------------------------------------------


class Agent:
    """Base class for delegates. Subclasses set `name`/`description` and implement invoke()."""

    name: str = ""
    description: str = ""

    async def invoke(self, prompt: str, span: Span | None = None) -> str:
        raise NotImplementedError


class FunctionAgent(Agent):
    """Wraps a plain `(prompt) -> answer` callable, sync or async."""

    def __init__(
        self,
        name: str,
        description: str,
        handler: Callable[[str], str | Awaitable[str]],
    ) -> None:
        self.name = name
        self.description = description
        self._handler = handler

    async def invoke(self, prompt: str, span: Span | None = None) -> str:
        return render_text(await _call(self._handler, prompt))


def validate_skill_program(program: Program) -> Verdict:
    """Skill programs end in ErrorMessage alone, or in OutputMessage after real work."""
    steps = program.steps
    last = steps[-1].name
    if last == ERROR_MESSAGE:
        if len(steps) == 1:
            return Verdict.accept(program)
        return Verdict.reject(
            [f'Invalid error program structure: it must have exactly 1 step, calling "{ERROR_MESSAGE}".']
        )
    if last == OUTPUT_MESSAGE:
        if len(steps) > 1:
            return Verdict.accept(program)
        return Verdict.reject(
            [
                "Invalid program structure: it needs to collect data by calling the API "
                f'before calling "{OUTPUT_MESSAGE}".'
            ]
        )
    return Verdict.reject(
        [
            f'Invalid program structure: the last step must call "{OUTPUT_MESSAGE}" or '
            f'"{ERROR_MESSAGE}", but it calls "{last}".'
        ]
    )


def describe_skills(skills: Mapping[str, Callable[..., Any]]) -> str:
    """Render skills as commented signatures, using each callable's docstring."""
    blocks = []
    for name, fn in skills.items():
        doc = inspect.getdoc(fn)
        try:
            signature = str(inspect.signature(fn))
        except (TypeError, ValueError):
            signature = "(...)"
        header = "".join(f"// {line}\n" for line in doc.splitlines()) if doc else ""
        blocks.append(f"{header}{name}{signature}")
    return "\n".join(blocks)


class SkillAgent(Agent):
    """
    A delegate that plans and executes its own program over a set of skills.

    plan() asks the completion service for a skill program, execute() runs it
    with the shared interpreter, invoke() does both. Any failure becomes a
    DelegateError so the orchestrator can record it and move on.

    Example:
        agent = SkillAgent(
            "Shipment",
            "Tracks DHL shipments.",
            {"DHLTrackShipment": desk.track_shipment},
            model,
        )
        answer = await agent.invoke("Where is package 123456789?")
    """

    def __init__(
        self,
        name: str,
        description: str,
        skills: Mapping[str, Callable[..., Any]],
        model: CompletionModel,
        *,
        schema: str | None = None,
        fallback_model: CompletionModel | None = None,
        max_repair_attempts: int = DEFAULT_MAX_REPAIR_ATTEMPTS,
        tracer: Tracer | None = None,
    ) -> None:
        clashes = {OUTPUT_MESSAGE, ERROR_MESSAGE, GET_PROPERTY} & set(skills)
        if clashes:
            raise ValueError(f"Skill names clash with built-ins: {', '.join(sorted(clashes))}")
        self.name = name
        self.description = description
        self._skills = MappingProxyType(dict(skills))
        self._schema = schema if schema is not None else describe_skills(self._skills)
        self._planner = ProgramPlanner(
            model,
            system_prompt=build_system_prompt(f"{SKILL_BUILTINS_API}\n\n{self._schema}"),
            fallback_model=fallback_model,
            max_repair_attempts=max_repair_attempts,
            tracer=tracer,
        )

    @property
    def skills(self) -> Mapping[str, Callable[..., Any]]:
        return self._skills

    async def plan(self, prompt: str, span: Span | None = None) -> Program:
        result = await self._planner.plan(prompt, validate_skill_program, span=span)
        return result.program

    async def execute(self, program: Program, span: Span | None = None) -> str:
        async def dispatch(name: str, args: list[Any]) -> Any:
            return await self._dispatch(name, args, span)

        results = await evaluate_program(program, dispatch)
        return render_text(results[-1])

    async def invoke(self, prompt: str, span: Span | None = None) -> str:
        try:
            program = await self.plan(prompt, span)
            return await self.execute(program, span)
        except Exception as exc:  # noqa: BLE001 - every failure is reported as the answer
            raise DelegateError(f"Internal Error: Agent {self.name} failed to handle request. {exc}") from exc

    async def _dispatch(self, name: str, args: list[Any], span: Span | None) -> Any:
        if name == OUTPUT_MESSAGE:
            return output_message(*args)
        if name == ERROR_MESSAGE:
            reason = render_text(args[0]) if args else ""
            return f"Sorry, I cannot help you with that. {reason}".strip()
        if name == GET_PROPERTY:
            target, key = args
            if isinstance(target, dict):
                return target.get(key)
            if isinstance(target, list) and isinstance(key, int) and -len(target) <= key < len(target):
                return target[key]
            return getattr(target, str(key), None)

        skill = self._skills.get(name)
        if skill is None:
            raise UnknownCapabilityError(f"Invalid skill {self.name}[{name}]")
        if span is None:
            return await _call(skill, *args)
        with span.child(f"{self.name}.{name}", "tool", {"args": args}) as skill_span:
            response = await _call(skill, *args)
            skill_span.succeed({"response": response})
            return response
