# planner.py
# Program planner: completion service in, validated program out.
#
# Control flow per plan() call:
#   request message → completion → extract {...} → parse → validate
#   → on failure: repair message quoting the reason → completion → ...
#   → bound exhausted: whole sequence once more with the fallback model
#
# The transcript is immutable. A repair attempt sends the base messages plus
# only the latest failed output and its repair prompt, so failed attempts
# never leak into later attempts or later turns.

import logging
from typing import Callable

from pydantic import BaseModel

from turn_orchestrator import display
from turn_orchestrator.completion import CompletionModel
from turn_orchestrator.errors import (
    CompletionError,
    ProgramParseError,
    ProgramValidationError,
    RepairExhaustedError,
)
from turn_orchestrator.models import ChatMessage, Program, Transcript, parse_program
from turn_orchestrator.tracer import Span, Tracer
from turn_orchestrator.validator import Verdict

logger = logging.getLogger(__name__)

DEFAULT_MAX_REPAIR_ATTEMPTS = 2


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

PROGRAM_GRAMMAR = """\
A program is a JSON object with a single "@steps" array of function calls \
that are evaluated in order:

{
  "@steps": [
    {"@func": "<function name>", "@args": [<expression>, ...]}
  ]
}

An expression is one of:
- a JSON string, number, boolean or null
- a JSON array or object whose elements are themselves expressions
- a nested function call: {"@func": "<name>", "@args": [...]}
- a reference to the result of a preceding step: {"@ref": <step index>}

Rules:
- "@args" may be omitted when a function takes no arguments.
- "@ref" must be a zero-based index strictly smaller than the index of the \
step that uses it.
- No other properties starting with "@" are allowed.\
"""


def build_system_prompt(api: str) -> str:
    """System message: the program grammar plus the callable API."""
    return (
        "You are a service that translates user requests into programs represented "
        "as JSON.\n\n"
        f"{PROGRAM_GRAMMAR}\n\n"
        "The programs can call the functions described below:\n"
        f"```\n{api}\n```"
    )


def build_request_prompt(request: str) -> str:
    return (
        "The following is a user request:\n"
        f'"""\n{request}\n"""\n'
        "Respond with the request translated into a JSON program object with 2 spaces "
        "of indentation. Respond with the JSON object only."
    )


def build_repair_prompt(reason: str) -> str:
    return (
        "The JSON program object is invalid for the following reason:\n"
        f'"""\n{reason}\n"""\n'
        "Respond with a revised JSON program object only."
    )


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------


def extract_json_object(text: str) -> str:
    """
    Return the first balanced {...} region of `text`.

    Braces inside JSON strings are ignored. Raises ProgramParseError when the
    text holds no balanced object.
    """
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
            elif char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return text[start:index + 1]
        start = text.find("{", start + 1)

    preview = text if len(text) <= 500 else text[:500] + "…"
    raise ProgramParseError(f"Response is not JSON: no balanced {{...}} object found in:\n{preview}")


# ---------------------------------------------------------------------------
# Planner
# ---------------------------------------------------------------------------


class PlanResult(BaseModel):
    """A validated program and the transcript that produced it."""

    program: Program
    transcript: Transcript
    model: str
    corrected: bool = False


class ProgramPlanner:
    """
    Owns the conversation with the completion service for one kind of program.

    `validate` is supplied per call because what counts as valid can depend on
    state that changes between calls (e.g. the memory of earlier turns).

    Example:
        planner = ProgramPlanner(model, system_prompt=build_system_prompt(api))
        result = await planner.plan("track package 123", validate=check)
    """

    def __init__(
        self,
        model: CompletionModel,
        *,
        system_prompt: str,
        fallback_model: CompletionModel | None = None,
        max_repair_attempts: int = DEFAULT_MAX_REPAIR_ATTEMPTS,
        tracer: Tracer | None = None,
    ) -> None:
        if max_repair_attempts < 0:
            raise ValueError("max_repair_attempts must not be negative.")
        self.model = model
        self.fallback_model = fallback_model
        self.system_prompt = system_prompt
        self.max_repair_attempts = max_repair_attempts
        self._tracer = tracer or Tracer()

    async def plan(
        self,
        request: str,
        validate: Callable[[Program], Verdict],
        *,
        history: Transcript | None = None,
        span: Span | None = None,
    ) -> PlanResult:
        """
        Produce a validated program for `request`.

        `history` holds earlier successful exchanges (starting with the system
        message); when empty a fresh system message is used. Raises
        RepairExhaustedError or CompletionError when neither model succeeds.
        """
        if not history:
            history = Transcript().extend(ChatMessage(role="system", content=self.system_prompt))
        base = history.extend(ChatMessage(role="user", content=build_request_prompt(request)))

        inputs = {"request": request}
        plan_span = span.child("Planner", "tool", inputs) if span is not None else self._tracer.start_span("Planner", "tool", inputs)
        with plan_span:
            try:
                result = await self._attempt(self.model, base, validate, plan_span)
            except (RepairExhaustedError, CompletionError) as exc:
                if self.fallback_model is None:
                    raise
                logger.warning("Primary model %s failed, falling back to %s: %s", self.model.name, self.fallback_model.name, exc)
                display.fallback_engaged(self.model.name, self.fallback_model.name, str(exc))
                result = await self._attempt(self.fallback_model, base, validate, plan_span)
            plan_span.succeed({"program": result.program.to_json_obj(), "model": result.model})
            return result

    async def _attempt(
        self,
        model: CompletionModel,
        base: Transcript,
        validate: Callable[[Program], Verdict],
        span: Span,
    ) -> PlanResult:
        branch: tuple[ChatMessage, ...] = ()
        reason = ""
        attempts = self.max_repair_attempts + 1
        for attempt in range(attempts):
            display.calling_model(model.name, attempt)
            raw = await self._complete(model, base.extend(*branch), span)

            with span.child("Planner.Validation", "parser", {"response": raw}) as check_span:
                try:
                    verdict = self._translate(raw, validate)
                except (ProgramParseError, ProgramValidationError) as exc:
                    reason = str(exc)
                    check_span.fail(reason)
                    display.repair_requested(attempt + 1, reason)
                    branch = (
                        ChatMessage(role="assistant", content=raw),
                        ChatMessage(role="user", content=build_repair_prompt(reason)),
                    )
                    continue
                check_span.succeed({"program": verdict.program.to_json_obj(), "corrected": verdict.corrected})

            if verdict.corrected:
                logger.info("Accepted program from %s after synthesizing its terminal step.", model.name)
            display.program_parsed(verdict.program, verdict.corrected)
            transcript = base.extend(ChatMessage(role="assistant", content=verdict.program.to_json()))
            return PlanResult(
                program=verdict.program,
                transcript=transcript,
                model=model.name,
                corrected=verdict.corrected,
            )

        raise RepairExhaustedError(
            f"Unable to construct a program with {model.name} after {attempts} attempt(s). "
            f"Last error:\n{reason}"
        )

    async def _complete(self, model: CompletionModel, transcript: Transcript, span: Span) -> str:
        messages = transcript.to_messages()
        with span.child(f"Planner.Completion[{model.name}]", "llm", {"messages": messages}) as llm_span:
            text = await model.complete(messages)
            llm_span.succeed({"response": text})
            return text

    @staticmethod
    def _translate(raw: str, validate: Callable[[Program], Verdict]) -> Verdict:
        program = parse_program(extract_json_object(raw))
        verdict = validate(program)
        if not verdict.ok:
            raise ProgramValidationError(verdict.error)
        return verdict
