# config.py
# Settings for the orchestrator, read from the environment (and .env).

import os
from typing import Mapping

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

from turn_orchestrator.completion import DEFAULT_BASE_URL, OpenAIChatModel
from turn_orchestrator.errors import ConfigurationError

load_dotenv()

DEFAULT_MODEL = "anthropic/claude-3.5-haiku"

# Settings field -> environment variable(s), first match wins.
ENV_VARS: dict[str, tuple[str, ...]] = {
    "api_key": ("OPENAI_API_KEY", "OPENROUTER_API_KEY"),
    "base_url": ("OPENAI_BASE_URL",),
    "model": ("OPENAI_MODEL",),
    "fallback_model": ("OPENAI_FALLBACK_MODEL",),
    "max_turns": ("ORCHESTRATOR_MAX_TURNS",),
    "max_repair_attempts": ("ORCHESTRATOR_MAX_REPAIR_ATTEMPTS",),
    "max_concurrency": ("ORCHESTRATOR_MAX_CONCURRENCY",),
    "quiet": ("ORCHESTRATOR_QUIET",),
}


class Settings(BaseModel):
    api_key: str | None = Field(default=None, repr=False)
    base_url: str = DEFAULT_BASE_URL
    model: str = DEFAULT_MODEL
    fallback_model: str | None = None
    max_turns: int = Field(default=3, ge=1)
    max_repair_attempts: int = Field(default=2, ge=0)
    max_concurrency: int = Field(default=4, ge=1, description="Concurrent delegate calls per request.")
    quiet: bool = False

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "Settings":
        """Build settings from `env` (defaults to os.environ). Blank values are ignored."""
        env = os.environ if env is None else env
        values: dict[str, str] = {}
        for field_name, names in ENV_VARS.items():
            for name in names:
                value = env.get(name)
                if value is not None and value.strip():
                    values[field_name] = value.strip()
                    break
        try:
            return cls(**values)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid orchestrator settings: {exc}") from exc

    def build_model(self) -> OpenAIChatModel:
        return self._client_for(self.model)

    def build_fallback_model(self) -> OpenAIChatModel | None:
        if not self.fallback_model:
            return None
        return self._client_for(self.fallback_model)

    def _client_for(self, model: str) -> OpenAIChatModel:
        if not self.api_key:
            raise ConfigurationError("Missing model configuration variable: OPENAI_API_KEY")
        return OpenAIChatModel(model, api_key=self.api_key, base_url=self.base_url)
