import pytest

from turn_orchestrator.errors import CompletionError, ProgramParseError, RepairExhaustedError
from turn_orchestrator.models import ChatMessage, Transcript
from turn_orchestrator.planner import ProgramPlanner, build_system_prompt, extract_json_object
from turn_orchestrator.tracer import RecordingTracer
from turn_orchestrator.validator import Verdict

GOOD = {"@steps": [{"@func": "Done", "@args": ["ok"]}]}
BAD = {"@steps": [{"@func": "Nope", "@args": []}]}


def only_done(program):
    """Accept programs whose single step calls Done."""
    if program.steps[-1].name == "Done":
        return Verdict.accept(program)
    return Verdict.reject([f'Last step calls "{program.steps[-1].name}", expected "Done".'])


# ---------------------------------------------------------------------------
# JSON extraction
# ---------------------------------------------------------------------------

def test_extract_json_object_skips_surrounding_prose():
    text = 'Here is the program:\n```json\n{"@steps": [{"@func": "Done"}]}\n```\nHope it helps {'
    assert extract_json_object(text) == '{"@steps": [{"@func": "Done"}]}'


def test_extract_json_object_ignores_braces_inside_strings():
    text = 'x {"a": "close } and open { and \\" quote", "b": {"c": 1}} y'
    assert extract_json_object(text) == '{"a": "close } and open { and \\" quote", "b": {"c": 1}}'


def test_extract_json_object_without_object():
    with pytest.raises(ProgramParseError, match="Response is not JSON"):
        extract_json_object("I cannot help with that.")


def test_extract_json_object_unbalanced():
    with pytest.raises(ProgramParseError):
        extract_json_object('{"@steps": [')


def test_system_prompt_includes_api():
    prompt = build_system_prompt("Done(answer: string): string;")
    assert "Done(answer: string): string;" in prompt
    assert '"@steps"' in prompt


# ---------------------------------------------------------------------------
# Repair loop
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_plan_accepts_first_valid_program(make_model):
    model = make_model(GOOD)
    planner = ProgramPlanner(model, system_prompt="SYS")

    result = await planner.plan("do it", only_done)

    assert result.program.steps[0].name == "Done"
    assert result.model == "scripted"
    assert len(model.calls) == 1
    messages = model.calls[0]
    assert messages[0] == {"role": "system", "content": "SYS"}
    assert messages[1]["role"] == "user"
    assert "do it" in messages[1]["content"]
    assert [m["role"] for m in result.transcript.to_messages()] == ["system", "user", "assistant"]


@pytest.mark.asyncio
async def test_plan_repairs_with_the_rejection_reason(make_model):
    model = make_model(BAD, GOOD)
    planner = ProgramPlanner(model, system_prompt="SYS")

    result = await planner.plan("do it", only_done)

    assert result.program.steps[0].name == "Done"
    repair = model.calls[1]
    assert [m["role"] for m in repair] == ["system", "user", "assistant", "user"]
    assert '"Nope"' in repair[2]["content"]
    assert 'expected "Done"' in repair[3]["content"]


@pytest.mark.asyncio
async def test_repair_sends_only_the_latest_failed_attempt(make_model):
    model = make_model("not json at all", BAD, GOOD)
    planner = ProgramPlanner(model, system_prompt="SYS")

    result = await planner.plan("do it", only_done)

    third = model.calls[2]
    assert len(third) == 4
    assert all("not json at all" not in m["content"] for m in third)
    # The successful transcript carries no failed attempt either.
    contents = [m["content"] for m in result.transcript.to_messages()]
    assert all("Nope" not in c and "not json" not in c for c in contents)


@pytest.mark.asyncio
async def test_repair_is_bounded(make_model):
    model = make_model(BAD, BAD, BAD, GOOD)
    planner = ProgramPlanner(model, system_prompt="SYS", max_repair_attempts=2)

    with pytest.raises(RepairExhaustedError, match="after 3 attempt"):
        await planner.plan("do it", only_done)

    assert len(model.calls) == 3


@pytest.mark.asyncio
async def test_zero_repairs_means_a_single_attempt(make_model):
    model = make_model(BAD, GOOD)
    planner = ProgramPlanner(model, system_prompt="SYS", max_repair_attempts=0)

    with pytest.raises(RepairExhaustedError):
        await planner.plan("do it", only_done)

    assert len(model.calls) == 1


def test_negative_repair_attempts_rejected(make_model):
    with pytest.raises(ValueError):
        ProgramPlanner(make_model(), system_prompt="SYS", max_repair_attempts=-1)


# ---------------------------------------------------------------------------
# Fallback model
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_fallback_model_used_after_repairs_exhausted(make_model):
    primary = make_model(BAD, BAD, name="primary")
    fallback = make_model(GOOD, name="fallback")
    planner = ProgramPlanner(primary, system_prompt="SYS", fallback_model=fallback, max_repair_attempts=1)

    result = await planner.plan("do it", only_done)

    assert result.model == "fallback"
    assert len(primary.calls) == 2
    assert len(fallback.calls) == 1
    # The fallback starts from a clean transcript.
    assert [m["role"] for m in fallback.calls[0]] == ["system", "user"]


@pytest.mark.asyncio
async def test_fallback_model_used_when_completion_fails(make_model):
    primary = make_model(CompletionError("service unavailable"), name="primary")
    fallback = make_model(GOOD, name="fallback")
    planner = ProgramPlanner(primary, system_prompt="SYS", fallback_model=fallback)

    result = await planner.plan("do it", only_done)

    assert result.model == "fallback"
    assert len(primary.calls) == 1


@pytest.mark.asyncio
async def test_completion_error_without_fallback_propagates(make_model):
    planner = ProgramPlanner(make_model(CompletionError("down")), system_prompt="SYS")

    with pytest.raises(CompletionError, match="down"):
        await planner.plan("do it", only_done)


@pytest.mark.asyncio
async def test_both_models_failing_raises(make_model):
    primary = make_model(BAD, name="primary")
    fallback = make_model(BAD, name="fallback")
    planner = ProgramPlanner(primary, system_prompt="SYS", fallback_model=fallback, max_repair_attempts=0)

    with pytest.raises(RepairExhaustedError, match="fallback"):
        await planner.plan("do it", only_done)


# ---------------------------------------------------------------------------
# History and tracing
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_plan_continues_from_history(make_model):
    history = Transcript().extend(
        ChatMessage(role="system", content="SYS"),
        ChatMessage(role="user", content="earlier"),
        ChatMessage(role="assistant", content="{}"),
    )
    model = make_model(GOOD)
    planner = ProgramPlanner(model, system_prompt="IGNORED")

    result = await planner.plan("next", only_done, history=history)

    assert [m["content"] for m in model.calls[0][:3]] == ["SYS", "earlier", "{}"]
    assert len(result.transcript) == 5
    assert len(history) == 3


@pytest.mark.asyncio
async def test_plan_records_spans(make_model):
    tracer = RecordingTracer()
    model = make_model(BAD, GOOD)
    planner = ProgramPlanner(model, system_prompt="SYS", tracer=tracer)

    await planner.plan("do it", only_done)

    assert [span.name for span in tracer.roots] == ["Planner"]
    assert tracer.roots[0].status == "succeeded"
    checks = tracer.find("Planner.Validation")
    assert [span.status for span in checks] == ["failed", "succeeded"]
    assert len(tracer.find("Planner.Completion[scripted]")) == 2
    assert all(span.closed for span in tracer.spans())
