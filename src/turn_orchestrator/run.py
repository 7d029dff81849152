# run.py
# Entry point. Config and wiring only — no logic lives here.
#
# Reads OPENAI_API_KEY / OPENAI_MODEL (see config.py) and answers each
# request with two demo skill agents.

import asyncio
import sys

from turn_orchestrator.agents import SkillAgent
from turn_orchestrator.config import Settings
from turn_orchestrator.orchestrator import TurnOrchestrator
from turn_orchestrator.skills import crm_skills, shipment_skills

PROMPTS = [
    # One delegate round, then a final answer.
    "Track package 123456789 and tell me its current status.",

    # Two rounds: look up the customer first, then their shipment.
    "When will the parcel of the customer kathy@example.com arrive?",

    # No agent can help: should end in a DeadEnd escalation.
    "Book me a flight to Lisbon for next Tuesday.",
]


def build_orchestrator(settings: Settings) -> TurnOrchestrator:
    model = settings.build_model()
    fallback = settings.build_fallback_model()
    agents = [
        SkillAgent(
            "Shipment",
            "Use this agent to interact with the DHL shipment and tracking system: tracking, "
            "packages, delivery dates. It answers in natural language, or explains why it failed.",
            shipment_skills(),
            model,
            fallback_model=fallback,
            max_repair_attempts=settings.max_repair_attempts,
        ),
        SkillAgent(
            "CRM",
            "Use this agent to look up customer records, including the tracking numbers of "
            "their parcels. It answers in natural language, or explains why it failed.",
            crm_skills(),
            model,
            fallback_model=fallback,
            max_repair_attempts=settings.max_repair_attempts,
        ),
    ]
    return TurnOrchestrator.from_settings(settings, agents)


async def _run(prompts: list[str]) -> None:
    orchestrator = build_orchestrator(Settings.from_env())
    for prompt in prompts:
        outcome = await orchestrator.execute(prompt)
        print(f"\n[RESULT]\n{outcome.model_dump_json(by_alias=True)}\n")


def main() -> None:
    asyncio.run(_run(sys.argv[1:] or PROMPTS))


if __name__ == "__main__":
    main()
