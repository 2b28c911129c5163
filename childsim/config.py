"""Runtime settings from the environment (and a .env file, if present).

    CHILDSIM_PROVIDER         openai | deepseek | volcengine (default deepseek)
    CHILDSIM_API_KEY          falls back to OPENAI_API_KEY / DEEPSEEK_API_KEY /
                              VOLCENGINE_API_KEY for the chosen provider
    CHILDSIM_MODEL            overrides the provider's default model
    CHILDSIM_BASE_URL         overrides the provider's base URL
    CHILDSIM_STREAMING        stream replies (default true)
    CHILDSIM_TIMEOUT          HTTP timeout in seconds
    CHILDSIM_PROMPT_RATE      USD per 1K prompt tokens
    CHILDSIM_COMPLETION_RATE  USD per 1K completion tokens
    CHILDSIM_DEMO             use canned replies instead of a provider
    DATA_DIR                  where the checkpoint is kept
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel

from childsim.accounting import DEFAULT_COMPLETION_RATE, DEFAULT_PROMPT_RATE
from childsim.llm import PROVIDERS, DemoGateway, HttpGateway, ModelGateway, Provider

DEFAULT_DATA_DIR = Path(__file__).parent.parent / "data"

_ENV_KEYS = {
    "provider": "CHILDSIM_PROVIDER",
    "api_key": "CHILDSIM_API_KEY",
    "model": "CHILDSIM_MODEL",
    "base_url": "CHILDSIM_BASE_URL",
    "streaming": "CHILDSIM_STREAMING",
    "timeout": "CHILDSIM_TIMEOUT",
    "prompt_rate": "CHILDSIM_PROMPT_RATE",
    "completion_rate": "CHILDSIM_COMPLETION_RATE",
    "demo": "CHILDSIM_DEMO",
    "data_dir": "DATA_DIR",
}

_PROVIDER_KEY_VARS = {
    "openai": "OPENAI_API_KEY",
    "deepseek": "DEEPSEEK_API_KEY",
    "volcengine": "VOLCENGINE_API_KEY",
}


class Settings(BaseModel):
    provider: Provider = "deepseek"
    api_key: str = ""
    model: str = ""
    base_url: str = ""
    streaming: bool = True
    timeout: float = 120.0
    prompt_rate: float = DEFAULT_PROMPT_RATE
    completion_rate: float = DEFAULT_COMPLETION_RATE
    demo: bool = False
    data_dir: Path = DEFAULT_DATA_DIR

    @property
    def resolved_base_url(self) -> str:
        return self.base_url or PROVIDERS[self.provider]["base_url"]

    @property
    def resolved_model(self) -> str:
        return self.model or PROVIDERS[self.provider]["model"]


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    """Build Settings from ``env``, or from os.environ after loading .env."""
    if env is None:
        load_dotenv(Path(__file__).parent.parent / ".env")
        env = os.environ

    values: dict[str, str] = {}
    for field, var in _ENV_KEYS.items():
        raw = env.get(var, "").strip()
        if raw:
            values[field] = raw

    settings = Settings.model_validate(values)
    if not settings.api_key:
        fallback = env.get(_PROVIDER_KEY_VARS[settings.provider], "").strip()
        if fallback:
            settings = settings.model_copy(update={"api_key": fallback})
    return settings


def build_gateway(settings: Settings) -> ModelGateway:
    if settings.demo:
        return DemoGateway()
    return HttpGateway(
        settings.resolved_base_url,
        api_key=settings.api_key,
        model=settings.resolved_model,
        timeout=settings.timeout,
    )
