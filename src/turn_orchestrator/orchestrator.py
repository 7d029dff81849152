# orchestrator.py
# Turn orchestrator.
#
# The orchestrator owns the read-only delegate registry and configuration;
# every top-level request gets its own TurnSession, which owns the turn state,
# the transcript and the delegate concurrency limit. Sessions never share
# mutable state.
#
# Control flow per request:
#   turn += 1 → budget check → plan (validated) → evaluate
#   → NextTurn: summarise and loop
#   → CompleteAssignment / DeadEnd: return
#
# Every failure resolves to an Escalation. Nothing is raised to the caller.

import asyncio
import json
import logging
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping

from turn_orchestrator import display
from turn_orchestrator.agents import Agent, output_message, render_text
from turn_orchestrator.completion import CompletionModel
from turn_orchestrator.config import Settings
from turn_orchestrator.errors import OrchestrationError, UnknownCapabilityError
from turn_orchestrator.interpreter import evaluate_program
from turn_orchestrator.models import (
    Builtin,
    ErrorKind,
    Escalation,
    FinalAnswer,
    MemoryEntry,
    Outcome,
    Scratchpad,
    Transcript,
    TurnState,
    TurnStatus,
)
from turn_orchestrator.planner import DEFAULT_MAX_REPAIR_ATTEMPTS, ProgramPlanner, build_system_prompt
from turn_orchestrator.tracer import Span, Tracer
from turn_orchestrator.validator import validate_turn

logger = logging.getLogger(__name__)

DEFAULT_MAX_TURNS = 3
DEFAULT_MAX_CONCURRENCY = 4

TURN_API = """\
// Each program is one execution turn. It must start by calling "WriteThoughts"
// and end by calling "NextTurn", "CompleteAssignment" or "DeadEnd".
// - End with "NextTurn" when the program calls at least one agent to gather
//   information. The answers are provided in the next turn.
// - End with "CompleteAssignment" when the information already available
//   answers the request. Such a program must not call any agent.
// - End with "DeadEnd" when the request cannot be fulfilled.
// Agents cannot see this program. Every agent request must be a self-contained
// natural-language question with all needed values written out.
// Never ask an agent a question that already has an answer in Memory.
// Every turn and every agent call has a cost: use as few of them as possible.

type Scratchpad = {
  reasoning: string;       // thoughts about the request and the information so far
  plan: string[];          // short bulleted long-term plan
  critique?: string;       // is the result correct and based on real data?
  observation?: string;    // analysis of the results and the whole conversation
};

// Reflect on the request and on previous turns.
WriteThoughts(input: Scratchpad): Scratchpad;
// End the turn to gather more information.
NextTurn(): void;
// End the request with the answer. Give a user friendly result with insights.
CompleteAssignment(answer: string): string;
// End the request when it cannot be fulfilled, explaining why.
DeadEnd(reason: string): string;
// Format a message, appending the JSON rendering of "data".
OutputMessage(message: string, data?: object): string;
// The context of the page or application the request comes from.
GetCurrentContext(): object;
// The chat history that preceded the request.
GetHistory(): { question: string; answer: string }[];\
"""


class TurnOrchestrator:
    """
    Drives a request through planned turns until it is answered or escalated.

    Example:
        orchestrator = TurnOrchestrator(model, [shipment_agent], max_turns=3)
        outcome = await orchestrator.execute("Where is package 123456789?")
    """

    def __init__(
        self,
        model: CompletionModel,
        agents: Iterable[Agent] = (),
        *,
        fallback_model: CompletionModel | None = None,
        max_turns: int = DEFAULT_MAX_TURNS,
        max_repair_attempts: int = DEFAULT_MAX_REPAIR_ATTEMPTS,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        tracer: Tracer | None = None,
    ) -> None:
        if max_turns < 1:
            raise ValueError("max_turns must be at least 1.")
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1.")

        registry: dict[str, Agent] = {}
        for agent in agents:
            if not agent.name:
                raise ValueError("Every agent needs a name.")
            if Builtin.lookup(agent.name) is not None:
                raise ValueError(f"Agent name {agent.name!r} clashes with a built-in call.")
            if agent.name in registry:
                raise ValueError(f"Agent {agent.name!r} is registered twice.")
            registry[agent.name] = agent

        self._agents: Mapping[str, Agent] = MappingProxyType(registry)
        self.max_turns = max_turns
        self.max_concurrency = max_concurrency
        self.tracer = tracer or Tracer()
        self.planner = ProgramPlanner(
            model,
            system_prompt=build_system_prompt(self.api_schema()),
            fallback_model=fallback_model,
            max_repair_attempts=max_repair_attempts,
            tracer=self.tracer,
        )
        display.banner(model.name, fallback_model.name if fallback_model else None, list(registry), max_turns)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        agents: Iterable[Agent] = (),
        tracer: Tracer | None = None,
    ) -> "TurnOrchestrator":
        display.set_quiet(settings.quiet)
        return cls(
            settings.build_model(),
            agents,
            fallback_model=settings.build_fallback_model(),
            max_turns=settings.max_turns,
            max_repair_attempts=settings.max_repair_attempts,
            max_concurrency=settings.max_concurrency,
            tracer=tracer,
        )

    @property
    def agents(self) -> Mapping[str, Agent]:
        return self._agents

    def api_schema(self) -> str:
        """The callable API shown to the model: built-ins plus one entry per agent."""
        lines = [TURN_API, "", "// Agents. Each takes one self-contained request and answers in natural language."]
        for name, agent in self._agents.items():
            if agent.description:
                lines.append(f"// {agent.description}")
            lines.append(f"{name}(request: string): string;")
        return "\n".join(lines)

    async def execute(
        self,
        request: str,
        *,
        context: Mapping[str, Any] | None = None,
        history: list[Any] | None = None,
    ) -> Outcome:
        """Answer `request`. Always returns a FinalAnswer or an Escalation."""
        session = TurnSession(self, request, context=context, history=history)
        return await session.run()


class TurnSession:
    """State and dispatch for exactly one top-level request."""

    def __init__(
        self,
        orchestrator: TurnOrchestrator,
        request: str,
        *,
        context: Mapping[str, Any] | None = None,
        history: list[Any] | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self.request = request
        self.context = dict(context or {})
        self.history = list(history or [])
        self.state = TurnState(max_turns=orchestrator.max_turns)
        self.transcript = Transcript()
        self._slots = asyncio.Semaphore(orchestrator.max_concurrency)
        self._exchanges: list[MemoryEntry | None] = []
        self._builtins: dict[Builtin, Callable[..., Any]] = {
            Builtin.WRITE_THOUGHTS: self._write_thoughts,
            Builtin.NEXT_TURN: self._next_turn,
            Builtin.COMPLETE_ASSIGNMENT: self._complete_assignment,
            Builtin.DEAD_END: self._dead_end,
            Builtin.OUTPUT_MESSAGE: output_message,
            Builtin.GET_CURRENT_CONTEXT: self._get_current_context,
            Builtin.GET_HISTORY: self._get_history,
        }

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(self) -> Outcome:
        _show(display.request_received, self.request)
        root = self._orchestrator.tracer.start_span(
            "Orchestrator",
            "chain",
            {
                "request": self.request,
                "max_turns": self.state.max_turns,
                "agents": list(self._orchestrator.agents),
            },
        )
        with root:
            try:
                outcome = await self._loop(root)
            except OrchestrationError as exc:
                outcome = self._escalate(ErrorKind.INTERNAL_ERROR, str(exc))
            except Exception as exc:  # noqa: BLE001 - the caller only ever sees outcomes
                logger.exception("Unexpected failure while handling request")
                outcome = self._escalate(ErrorKind.INTERNAL_ERROR, f"Unexpected error: {exc}")

            if isinstance(outcome, FinalAnswer):
                root.succeed(outcome.model_dump(by_alias=True))
                _show(display.final_answer, outcome.answer)
            else:
                root.fail(outcome.kind.value, outcome.model_dump(by_alias=True))
                _show(display.escalation, outcome.kind.value, outcome.explanation)
        return outcome

    # ------------------------------------------------------------------
    # Turn loop
    # ------------------------------------------------------------------

    async def _loop(self, root: Span) -> Outcome:
        while True:
            self.state.turn += 1
            if self.state.turn > self.state.max_turns:
                return self._escalate(
                    ErrorKind.STACK_OVERFLOW,
                    f"Maximum number of turns reached ({self.state.max_turns}). Please try again later.",
                    status=TurnStatus.BUDGET_EXCEEDED,
                )

            display.turn_start(self.state.turn, self.state.max_turns)
            inputs = {"request": self.request, "memory": [entry.model_dump() for entry in self.state.memory]}
            with root.child(f"Orchestrator.Turn[{self.state.turn}]", "tool", inputs) as turn_span:
                outcome = await self._turn(turn_span)
                turn_span.succeed({"outcome": outcome.model_dump(by_alias=True) if outcome else "NextTurn"})
            if outcome is not None:
                return outcome

    async def _turn(self, span: Span) -> Outcome | None:
        prompt = self.turn_prompt()
        result = await self._orchestrator.planner.plan(
            prompt,
            lambda program: validate_turn(program, self.state),
            history=self.transcript,
            span=span,
        )
        self.transcript = result.transcript
        self.state.last_responses = []
        self._exchanges = []

        async def dispatch(name: str, args: list[Any]) -> Any:
            return await self._dispatch(name, args, span)

        results = await evaluate_program(result.program, dispatch)
        # Memory follows the order the calls were issued in, not completion order.
        for entry in self._exchanges:
            if entry is not None:
                self.state.record(entry.agent, entry.question, entry.answer)

        terminal = Builtin.lookup(result.program.steps[-1].name)
        if terminal is Builtin.NEXT_TURN:
            display.memory_summary(self.state.memory)
            return None
        if terminal is Builtin.COMPLETE_ASSIGNMENT:
            self.state.status = TurnStatus.SUCCEEDED
            return FinalAnswer(answer=render_text(results[-1]))
        return self._escalate(ErrorKind.DEAD_END, render_text(results[-1]))

    def turn_prompt(self) -> str:
        """The request for the current turn: the user request first, then a summary of the last turn."""
        turn = self.state.turn
        if turn == 1:
            return self.request
        return (
            f"The program for turn #{turn} must build on the interpretation and the results "
            "of the previous turn, described below.\n"
            "The following is the original request from the user:\n"
            f'"""\n{self.request}\n"""\n'
            f'The following is the "Scratchpad" written in turn #{turn - 1}:\n'
            f'"""\n{_dump(self.state.reflection)}\n"""\n'
            f"The following are the agent responses from turn #{turn - 1}:\n"
            f'"""\n{_dump([entry.model_dump() for entry in self.state.last_responses])}\n"""\n'
            "The following is the Memory of every agent question answered so far. "
            "Use it instead of asking an agent again:\n"
            f'"""\n{_dump([entry.model_dump() for entry in self.state.memory])}\n"""'
        )

    def _escalate(self, kind: ErrorKind, explanation: str, status: TurnStatus = TurnStatus.ESCALATED) -> Escalation:
        self.state.status = status
        return Escalation(kind=kind, explanation=explanation)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _dispatch(self, name: str, args: list[Any], span: Span) -> Any:
        builtin = Builtin.lookup(name)
        if builtin is not None:
            return self._builtins[builtin](*args)

        agent = self._orchestrator.agents.get(name)
        if agent is None:
            display.unknown_capability(name)
            raise UnknownCapabilityError(f"Invalid agent {name!r}: no capability with this name is registered.")

        question = render_text(args[0]) if args else ""
        slot = len(self._exchanges)
        self._exchanges.append(None)
        async with self._slots:
            display.delegate_call(name, question)
            with span.child(f"Orchestrator.{name}", "chain", {"prompt": question}) as agent_span:
                try:
                    answer = render_text(await agent.invoke(question, span=agent_span))
                except Exception as exc:  # noqa: BLE001 - delegate failures are recorded as answers
                    answer = str(exc) or type(exc).__name__
                    agent_span.fail(f"Agent {name} failed to handle request", {"message": answer})
                    display.delegate_failed(name, answer)
                else:
                    agent_span.succeed({"response": answer})
                    display.delegate_answer(name, answer)

        self._exchanges[slot] = MemoryEntry(agent=name, question=question, answer=answer)
        return answer

    def _write_thoughts(self, scratchpad: Any) -> Any:
        reflection = scratchpad
        if isinstance(scratchpad, dict):
            try:
                reflection = Scratchpad.model_validate(scratchpad).model_dump(exclude_none=True)
            except ValueError:
                logger.debug("Scratchpad does not match the expected shape; keeping it as written.")
        self.state.reflection = reflection
        return scratchpad

    def _next_turn(self) -> None:
        return None

    def _complete_assignment(self, answer: Any) -> str:
        return render_text(answer)

    def _dead_end(self, reason: Any) -> str:
        return render_text(reason)

    def _get_current_context(self) -> dict[str, Any]:
        return dict(self.context)

    def _get_history(self) -> list[Any]:
        return list(self.history)


def _dump(value: Any) -> str:
    return json.dumps(value, indent=2, ensure_ascii=False, default=str)


def _show(render: Callable[..., None], *args: Any) -> None:
    # Console output never changes the outcome of a request.
    try:
        render(*args)
    except Exception:  # noqa: BLE001 - logged, the outcome is still returned
        logger.exception("Failed to render console output")
