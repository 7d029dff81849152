# models.py
# Data contracts for the turn orchestrator.
# No business logic lives here: the program AST and its JSON parsing contract,
# plus the shapes threaded through a request (memory, turn state, outcomes).

from __future__ import annotations

import json
from enum import Enum
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from turn_orchestrator.errors import ProgramParseError

STEPS_KEY = "@steps"
FUNC_KEY = "@func"
ARGS_KEY = "@args"
REF_KEY = "@ref"


# ---------------------------------------------------------------------------
# Program AST
# ---------------------------------------------------------------------------


class Scalar(BaseModel):
    """A JSON string, number, boolean or null."""

    model_config = ConfigDict(frozen=True)

    value: Any = None

    def to_json_obj(self) -> Any:
        return self.value


class ResultReference(BaseModel):
    """The value produced by a preceding step of the same program."""

    model_config = ConfigDict(frozen=True)

    ref: int = Field(..., ge=0, description="Index of the preceding step.")

    def to_json_obj(self) -> dict[str, Any]:
        return {REF_KEY: self.ref}


class FunctionCall(BaseModel):
    """A call to a built-in or a delegate. Arguments are evaluated first."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    args: tuple[Expression, ...] = ()

    def to_json_obj(self) -> dict[str, Any]:
        return {FUNC_KEY: self.name, ARGS_KEY: [arg.to_json_obj() for arg in self.args]}


class JsonArray(BaseModel):
    model_config = ConfigDict(frozen=True)

    items: tuple[Expression, ...] = ()

    def to_json_obj(self) -> list[Any]:
        return [item.to_json_obj() for item in self.items]


class JsonObject(BaseModel):
    model_config = ConfigDict(frozen=True)

    entries: dict[str, Expression] = Field(default_factory=dict)

    def to_json_obj(self) -> dict[str, Any]:
        return {key: value.to_json_obj() for key, value in self.entries.items()}


Expression = Union[Scalar, JsonArray, JsonObject, FunctionCall, ResultReference]

FunctionCall.model_rebuild()
JsonArray.model_rebuild()
JsonObject.model_rebuild()


class Program(BaseModel):
    """An ordered, non-empty sequence of steps. One program per turn."""

    model_config = ConfigDict(frozen=True)

    steps: tuple[FunctionCall, ...] = Field(..., min_length=1)

    @classmethod
    def from_json_obj(cls, data: Any) -> Program:
        if not isinstance(data, dict):
            raise ProgramParseError(
                f'A program must be a JSON object with a "{STEPS_KEY}" array, '
                f"got {_type_name(data)}."
            )
        unexpected = sorted(key for key in data if key != STEPS_KEY)
        if unexpected:
            raise ProgramParseError(
                f"Unexpected program properties {_quoted(unexpected)}; "
                f'only "{STEPS_KEY}" is allowed.'
            )
        if STEPS_KEY not in data:
            raise ProgramParseError(f'Program is missing the "{STEPS_KEY}" property.')
        raw_steps = data[STEPS_KEY]
        if not isinstance(raw_steps, list):
            raise ProgramParseError(f'"{STEPS_KEY}" must be an array, got {_type_name(raw_steps)}.')
        if not raw_steps:
            raise ProgramParseError(f'"{STEPS_KEY}" must contain at least one step.')

        steps: list[FunctionCall] = []
        for index, raw in enumerate(raw_steps):
            path = f"{STEPS_KEY}[{index}]"
            step = _parse_expression(raw, path, index)
            if not isinstance(step, FunctionCall):
                raise ProgramParseError(
                    f'{path}: every step must be a function call object with a "{FUNC_KEY}" property.'
                )
            steps.append(step)
        return cls(steps=tuple(steps))

    def to_json_obj(self) -> dict[str, Any]:
        return {STEPS_KEY: [step.to_json_obj() for step in self.steps]}

    def to_json(self, indent: int | None = 2) -> str:
        return json.dumps(self.to_json_obj(), indent=indent, ensure_ascii=False)


def parse_program(text: str) -> Program:
    """
    Parse raw JSON text into a Program.

    Raises ProgramParseError naming the JSON path and the defect on any
    malformed shape. References must point at a strictly preceding step.
    """
    try:
        data = json.loads(text, strict=False)
    except json.JSONDecodeError as exc:
        raise ProgramParseError(f"Program JSON is malformed: {exc}") from exc
    return Program.from_json_obj(data)


def _parse_expression(raw: Any, path: str, step_index: int) -> Expression:
    if raw is None or isinstance(raw, (str, bool, int, float)):
        return Scalar(value=raw)

    if isinstance(raw, list):
        return JsonArray(
            items=tuple(
                _parse_expression(item, f"{path}[{i}]", step_index) for i, item in enumerate(raw)
            )
        )

    if not isinstance(raw, dict):
        raise ProgramParseError(f"{path}: unsupported value of type {_type_name(raw)}.")

    if REF_KEY in raw:
        return _parse_reference(raw, path, step_index)
    if FUNC_KEY in raw:
        return _parse_call(raw, path, step_index)
    if ARGS_KEY in raw:
        raise ProgramParseError(f'{path}: "{ARGS_KEY}" is only allowed next to "{FUNC_KEY}".')

    for key in raw:
        if key.startswith("@"):
            raise ProgramParseError(
                f'{path}: unknown property "{key}"; expected "{FUNC_KEY}", "{ARGS_KEY}" or "{REF_KEY}".'
            )
    return JsonObject(
        entries={key: _parse_expression(value, f"{path}.{key}", step_index) for key, value in raw.items()}
    )


def _parse_reference(raw: dict[str, Any], path: str, step_index: int) -> ResultReference:
    if len(raw) != 1:
        extra = sorted(key for key in raw if key != REF_KEY)
        raise ProgramParseError(
            f'{path}: a result reference must only contain "{REF_KEY}", found {_quoted(extra)}.'
        )
    ref = raw[REF_KEY]
    if isinstance(ref, bool) or not isinstance(ref, int):
        raise ProgramParseError(
            f'{path}.{REF_KEY} must be an integer step index, got {json.dumps(ref)}.'
        )
    if ref < 0:
        raise ProgramParseError(f"{path}.{REF_KEY} must not be negative, got {ref}.")
    if ref >= step_index:
        raise ProgramParseError(
            f"{path}.{REF_KEY} {ref} must refer to a preceding step "
            f"(less than {step_index})."
        )
    return ResultReference(ref=ref)


def _parse_call(raw: dict[str, Any], path: str, step_index: int) -> FunctionCall:
    unexpected = sorted(key for key in raw if key not in (FUNC_KEY, ARGS_KEY))
    if unexpected:
        raise ProgramParseError(
            f"{path}: unexpected properties {_quoted(unexpected)} in function call; "
            f'only "{FUNC_KEY}" and "{ARGS_KEY}" are allowed.'
        )
    name = raw[FUNC_KEY]
    if not isinstance(name, str) or not name.strip():
        raise ProgramParseError(f"{path}.{FUNC_KEY} must be a non-empty string, got {json.dumps(name)}.")
    raw_args = raw.get(ARGS_KEY, [])
    if not isinstance(raw_args, list):
        raise ProgramParseError(f"{path}.{ARGS_KEY} must be an array, got {_type_name(raw_args)}.")
    args = tuple(
        _parse_expression(arg, f"{path}.{ARGS_KEY}[{i}]", step_index) for i, arg in enumerate(raw_args)
    )
    return FunctionCall(name=name, args=args)


def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def _quoted(keys: list[str]) -> str:
    return ", ".join(f'"{key}"' for key in keys)


# ---------------------------------------------------------------------------
# Turn grammar
# ---------------------------------------------------------------------------


class Builtin(str, Enum):
    """Calls handled by the orchestrator itself rather than by a delegate."""

    WRITE_THOUGHTS = "WriteThoughts"
    NEXT_TURN = "NextTurn"
    COMPLETE_ASSIGNMENT = "CompleteAssignment"
    DEAD_END = "DeadEnd"
    OUTPUT_MESSAGE = "OutputMessage"
    GET_CURRENT_CONTEXT = "GetCurrentContext"
    GET_HISTORY = "GetHistory"

    @classmethod
    def lookup(cls, name: str) -> Builtin | None:
        try:
            return cls(name)
        except ValueError:
            return None


TERMINAL_BUILTINS = frozenset({Builtin.NEXT_TURN, Builtin.COMPLETE_ASSIGNMENT, Builtin.DEAD_END})
FINAL_BUILTINS = frozenset({Builtin.COMPLETE_ASSIGNMENT, Builtin.DEAD_END})


# ---------------------------------------------------------------------------
# Turn state
# ---------------------------------------------------------------------------


class Scratchpad(BaseModel):
    """Self-reflection written by the first step of every turn program."""

    model_config = ConfigDict(extra="allow")

    reasoning: str = ""
    plan: list[str] = Field(default_factory=list)
    critique: str | None = None
    observation: str | None = None


class MemoryEntry(BaseModel):
    """One delegate exchange. Failures are recorded with the error as the answer."""

    agent: str
    question: str
    answer: str


class TurnStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    ESCALATED = "escalated"
    BUDGET_EXCEEDED = "budget_exceeded"


class TurnState(BaseModel):
    """Mutable state of one top-level request. Owned by a single session."""

    max_turns: int = Field(..., ge=1)
    turn: int = 0
    status: TurnStatus = TurnStatus.RUNNING
    memory: list[MemoryEntry] = Field(default_factory=list)
    reflection: Any = None
    last_responses: list[MemoryEntry] = Field(default_factory=list)

    def answered(self, question: str) -> bool:
        return any(entry.question == question for entry in self.memory)

    def record(self, agent: str, question: str, answer: str) -> MemoryEntry:
        entry = MemoryEntry(agent=agent, question=question, answer=answer)
        self.memory.append(entry)
        self.last_responses.append(entry)
        return entry


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


class ErrorKind(str, Enum):
    DEAD_END = "DeadEnd"
    INTERNAL_ERROR = "InternalError"
    STACK_OVERFLOW = "StackOverflow"


class FinalAnswer(BaseModel):
    """Returned when the request was answered."""

    model_config = ConfigDict(populate_by_name=True)

    answer: str = Field(..., alias="CompleteAssignment")


class Escalation(BaseModel):
    """Returned when the request could not be answered."""

    model_config = ConfigDict(populate_by_name=True)

    kind: ErrorKind = Field(..., alias="Error")
    explanation: str = Field(..., alias="Escalation")


Outcome = Union[FinalAnswer, Escalation]


# ---------------------------------------------------------------------------
# Conversation with the completion service
# ---------------------------------------------------------------------------


class ChatMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Literal["system", "user", "assistant"]
    content: str


class Transcript(BaseModel):
    """Append-only message history. Extending returns a new transcript."""

    model_config = ConfigDict(frozen=True)

    messages: tuple[ChatMessage, ...] = ()

    def extend(self, *messages: ChatMessage) -> Transcript:
        return Transcript(messages=self.messages + messages)

    def to_messages(self) -> list[dict[str, str]]:
        return [message.model_dump() for message in self.messages]

    def __len__(self) -> int:
        return len(self.messages)
