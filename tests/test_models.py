import json

import pytest

from turn_orchestrator.errors import ProgramParseError
from turn_orchestrator.models import (
    Builtin,
    ErrorKind,
    Escalation,
    FinalAnswer,
    FunctionCall,
    JsonArray,
    JsonObject,
    Program,
    ResultReference,
    Scalar,
    Transcript,
    ChatMessage,
    TurnState,
    parse_program,
)


def _parse(data):
    return parse_program(json.dumps(data))


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def test_parse_program_builds_nested_ast():
    program = _parse({
        "@steps": [
            {"@func": "WriteThoughts", "@args": [{"reasoning": "look it up", "plan": ["ask"]}]},
            {"@func": "Shipment", "@args": ["Where is package 123456789?"]},
            {"@func": "CompleteAssignment", "@args": [
                {"@func": "OutputMessage", "@args": ["Status:", {"status": {"@ref": 1}}]}
            ]},
        ]
    })

    assert [step.name for step in program.steps] == ["WriteThoughts", "Shipment", "CompleteAssignment"]
    thoughts = program.steps[0].args[0]
    assert isinstance(thoughts, JsonObject)
    assert thoughts.entries["plan"] == JsonArray(items=(Scalar(value="ask"),))
    nested = program.steps[2].args[0]
    assert isinstance(nested, FunctionCall)
    assert nested.args[1].entries["status"] == ResultReference(ref=1)


def test_parse_program_missing_args_means_no_arguments():
    program = _parse({"@steps": [{"@func": "NextTurn"}]})
    assert program.steps[0].args == ()


def test_program_serializes_back_to_same_program():
    data = {
        "@steps": [
            {"@func": "WriteThoughts", "@args": [{"reasoning": "r", "plan": []}]},
            {"@func": "CRM", "@args": ["Who is kathy@example.com?"]},
            {"@func": "Shipment", "@args": [[1, 2.5, True, None, {"@ref": 1}]]},
            {"@func": "NextTurn", "@args": []},
        ]
    }
    program = _parse(data)

    assert program.to_json_obj() == data
    assert parse_program(program.to_json()) == program


def test_parse_program_tolerates_control_characters_in_strings():
    program = parse_program('{"@steps": [{"@func": "DeadEnd", "@args": ["line one\nline two"]}]}')
    assert program.steps[0].args[0].value == "line one\nline two"


# ---------------------------------------------------------------------------
# Parse errors
# ---------------------------------------------------------------------------

def test_parse_program_rejects_malformed_json():
    with pytest.raises(ProgramParseError, match="malformed"):
        parse_program('{"@steps": [')


@pytest.mark.parametrize("data, message", [
    ([], "must be a JSON object"),
    ({}, 'missing the "@steps"'),
    ({"@steps": {}}, "must be an array"),
    ({"@steps": []}, "at least one step"),
    ({"@steps": [], "extra": 1}, '"extra"'),
    ({"@steps": ["hello"]}, r"@steps\[0\]: every step must be a function call"),
])
def test_parse_program_rejects_bad_top_level(data, message):
    with pytest.raises(ProgramParseError, match=message):
        _parse(data)


def test_parse_program_reports_path_of_unknown_property():
    data = {"@steps": [{"@func": "WriteThoughts", "@args": [{"@fun": "x"}]}]}
    with pytest.raises(ProgramParseError, match=r'@steps\[0\]\.@args\[0\]: unknown property "@fun"'):
        _parse(data)


def test_parse_program_rejects_extra_keys_in_call():
    data = {"@steps": [{"@func": "NextTurn", "@args": [], "@ref": 0}]}
    with pytest.raises(ProgramParseError):
        _parse(data)

    data = {"@steps": [{"@func": "NextTurn", "note": "x"}]}
    with pytest.raises(ProgramParseError, match='"note"'):
        _parse(data)


def test_parse_program_rejects_args_without_func():
    data = {"@steps": [{"@func": "WriteThoughts", "@args": [{"@args": []}]}]}
    with pytest.raises(ProgramParseError, match='"@args" is only allowed next to "@func"'):
        _parse(data)


@pytest.mark.parametrize("func", ["", "   ", 3, None])
def test_parse_program_rejects_bad_function_names(func):
    with pytest.raises(ProgramParseError, match="non-empty string"):
        _parse({"@steps": [{"@func": func}]})


def test_parse_program_rejects_non_array_args():
    with pytest.raises(ProgramParseError, match=r"@steps\[0\]\.@args must be an array"):
        _parse({"@steps": [{"@func": "DeadEnd", "@args": "why"}]})


@pytest.mark.parametrize("ref", ["0", 1.5, True, None])
def test_parse_program_rejects_non_integer_references(ref):
    data = {"@steps": [{"@func": "A", "@args": ["q"]}, {"@func": "B", "@args": [{"@ref": ref}]}]}
    with pytest.raises(ProgramParseError, match="integer step index"):
        _parse(data)


def test_parse_program_rejects_negative_reference():
    data = {"@steps": [{"@func": "A", "@args": ["q"]}, {"@func": "B", "@args": [{"@ref": -1}]}]}
    with pytest.raises(ProgramParseError, match="must not be negative"):
        _parse(data)


@pytest.mark.parametrize("ref", [1, 2])
def test_parse_program_rejects_self_and_forward_references(ref):
    data = {"@steps": [
        {"@func": "A", "@args": ["q"]},
        {"@func": "B", "@args": [{"@ref": ref}]},
        {"@func": "C", "@args": ["q"]},
    ]}
    with pytest.raises(ProgramParseError, match=r"@steps\[1\]\.@args\[0\]\.@ref .* preceding step"):
        _parse(data)


def test_parse_program_rejects_reference_with_extra_keys():
    data = {"@steps": [{"@func": "A", "@args": ["q"]}, {"@func": "B", "@args": [{"@ref": 0, "x": 1}]}]}
    with pytest.raises(ProgramParseError, match='only contain "@ref"'):
        _parse(data)


# ---------------------------------------------------------------------------
# Turn state and outcomes
# ---------------------------------------------------------------------------

def test_builtin_lookup():
    assert Builtin.lookup("NextTurn") is Builtin.NEXT_TURN
    assert Builtin.lookup("Shipment") is None


def test_turn_state_records_memory_and_last_responses():
    state = TurnState(max_turns=3)
    state.record("Shipment", "Where is 1?", "In transit")

    assert state.answered("Where is 1?")
    assert not state.answered("Where is 2?")
    assert state.last_responses == state.memory
    assert state.memory[0].agent == "Shipment"


def test_outcomes_serialize_with_wire_names():
    assert FinalAnswer(answer="done").model_dump(by_alias=True) == {"CompleteAssignment": "done"}
    escalation = Escalation(kind=ErrorKind.DEAD_END, explanation="no agent")
    assert escalation.model_dump(by_alias=True, mode="json") == {"Error": "DeadEnd", "Escalation": "no agent"}
    assert Escalation.model_validate({"Error": "StackOverflow", "Escalation": "x"}).kind is ErrorKind.STACK_OVERFLOW


def test_transcript_extend_returns_new_transcript():
    empty = Transcript()
    extended = empty.extend(ChatMessage(role="system", content="sys"))

    assert not empty
    assert len(extended) == 1
    assert extended.to_messages() == [{"role": "system", "content": "sys"}]


def test_program_requires_at_least_one_step():
    with pytest.raises(ValueError):
        Program(steps=())
