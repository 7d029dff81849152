# display.py
# All terminal output for the turn orchestrator.
#
# Engine modules never format strings for the terminal. They call named
# functions here. Swap this file to change the entire UI.
#
# Colour language:
#   cyan    — turns and routing
#   blue    — completion service calls
#   yellow  — validation and repair
#   magenta — delegate calls
#   green   — success
#   red     — escalations and fatal errors

import json
from typing import Any

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from turn_orchestrator.models import Program

console = Console()


def set_quiet(quiet: bool = True) -> None:
    """Silence (or restore) all console output."""
    console.quiet = quiet


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _label(tag: str, color: str) -> Text:
    t = Text()
    t.append(f" {tag} ", style=f"bold white on {color}")
    return t


def _mono(value: str, max_len: int = 120) -> str:
    value = value.replace("\n", " ")
    if len(value) > max_len:
        return value[:max_len] + "…"
    return value


def _render_arg(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


# ---------------------------------------------------------------------------
# Request lifecycle
# ---------------------------------------------------------------------------


def banner(model: str, fallback_model: str | None, agents: list[str], max_turns: int) -> None:
    console.print()
    console.print(
        Panel.fit(
            "[bold cyan]Turn Orchestrator[/bold cyan]\n"
            "[dim]Plan → validate → evaluate, one turn at a time[/dim]\n\n"
            f"[dim]Model          :[/dim] [white]{escape(model)}[/white]\n"
            f"[dim]Fallback model :[/dim] [white]{escape(fallback_model or '—')}[/white]\n"
            f"[dim]Agents         :[/dim] [white]{escape(', '.join(agents) or '—')}[/white]\n"
            f"[dim]Max turns      :[/dim] [white]{max_turns}[/white]",
            border_style="cyan",
            padding=(1, 4),
        )
    )


def request_received(request: str) -> None:
    console.print()
    console.print(Rule("[cyan]NEW REQUEST[/cyan]", style="cyan"))
    console.print(
        Panel(
            f"[white]{escape(request)}[/white]",
            title=_label("USER REQUEST", "cyan"),
            border_style="cyan",
            padding=(0, 2),
        )
    )


def turn_start(turn: int, max_turns: int) -> None:
    console.print()
    console.print(Rule(f"[cyan]TURN {turn}/{max_turns}[/cyan]", style="cyan"))


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------


def calling_model(model: str, attempt: int) -> None:
    suffix = "" if attempt == 0 else f" [dim](repair {attempt})[/dim]"
    console.print(_label("PLANNER", "blue"), f"[blue] → Requesting program from {escape(model)}…[/blue]{suffix}")


def repair_requested(attempt: int, reason: str) -> None:
    console.print(
        Panel(
            f"[white]{escape(reason)}[/white]",
            title=_label(f"PROGRAM REJECTED (attempt {attempt})", "yellow"),
            border_style="yellow",
            padding=(0, 2),
        )
    )


def fallback_engaged(primary: str, fallback: str, reason: str) -> None:
    console.print()
    console.print(
        _label("PLANNER", "yellow"),
        f"[yellow] {escape(primary)} could not produce a valid program. Retrying with {escape(fallback)}.[/yellow]",
    )
    console.print(f"[dim]  {escape(_mono(reason, 200))}[/dim]")


def program_parsed(program: Program, corrected: bool = False) -> None:
    table = Table(
        box=box.SIMPLE_HEAVY,
        border_style="cyan",
        show_header=True,
        header_style="bold cyan",
        padding=(0, 1),
    )
    table.add_column("#", justify="center", width=4)
    table.add_column("Call", style="bold white", width=20)
    table.add_column("Args", style="dim white")

    for index, step in enumerate(program.steps):
        args = ", ".join(_render_arg(arg.to_json_obj()) for arg in step.args)
        table.add_row(str(index), Text(step.name), Text(_mono(args, 80)))

    subtitle = "[yellow]terminal step synthesized[/yellow]" if corrected else None
    console.print(
        Panel(
            table,
            title=_label("PROGRAM ACCEPTED", "cyan"),
            subtitle=subtitle,
            border_style="cyan",
            padding=(0, 1),
        )
    )


# ---------------------------------------------------------------------------
# Delegation
# ---------------------------------------------------------------------------


def delegate_call(agent: str, question: str) -> None:
    console.print(f"  [magenta]Ask[/magenta]     [bold white]{escape(agent)}[/bold white]  [dim]{escape(_mono(question, 140))}[/dim]")


def delegate_answer(agent: str, answer: str) -> None:
    console.print(f"  [magenta]Answer[/magenta]  [bold white]{escape(agent)}[/bold white]  [white]{escape(_mono(answer, 140))}[/white]")


def delegate_failed(agent: str, message: str) -> None:
    console.print(f"  [red]Failed[/red]  [bold white]{escape(agent)}[/bold white]  [dim]{escape(_mono(message, 140))}[/dim]")


def unknown_capability(name: str) -> None:
    console.print(
        Panel(
            f"[bold red]Agent [white]{escape(repr(name))}[/white] is not registered.[/bold red]\n"
            "[dim]The program called a capability outside the registry. Halting.[/dim]",
            title=_label("UNKNOWN CAPABILITY ✗", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


def memory_summary(entries: list[Any]) -> None:
    if not entries:
        return
    table = Table(box=box.SIMPLE_HEAVY, border_style="dim", header_style="bold dim", padding=(0, 1))
    table.add_column("Agent", width=14)
    table.add_column("Question", style="dim white")
    table.add_column("Answer", style="white")
    for entry in entries:
        table.add_row(Text(entry.agent), Text(_mono(entry.question, 60)), Text(_mono(entry.answer, 60)))
    console.print(Panel(table, title="[dim]MEMORY[/dim]", border_style="dim", padding=(0, 1)))


def final_answer(answer: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[white]{escape(answer)}[/white]",
            title=_label("RESULT", "green"),
            border_style="green",
            padding=(1, 2),
        )
    )
    console.print()


def escalation(kind: str, explanation: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold white]{escape(explanation)}[/bold white]",
            title=_label(f"ESCALATION: {kind}", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )
    console.print()
