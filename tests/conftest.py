import copy
import json

import pytest

from turn_orchestrator import display
from turn_orchestrator.completion import CompletionModel
from turn_orchestrator.errors import CompletionError


class ScriptedModel(CompletionModel):
    """Replays canned responses in order and records every message list it was sent."""

    def __init__(self, responses, name="scripted"):
        self.name = name
        self._responses = list(responses)
        self.calls = []

    async def complete(self, messages):
        self.calls.append(copy.deepcopy(messages))
        if not self._responses:
            raise CompletionError(f"{self.name} has no scripted responses left")
        item = self._responses.pop(0)
        if isinstance(item, Exception):
            raise item
        if isinstance(item, str):
            return item
        return json.dumps(item)


@pytest.fixture(autouse=True)
def quiet_console():
    display.set_quiet(True)
    yield
    display.set_quiet(False)


@pytest.fixture
def make_model():
    def _make(*responses, name="scripted"):
        return ScriptedModel(responses, name=name)
    return _make
