"""Runtime configuration from environment variables (and an optional .env file).

    PROVIDER_URL     LLM backend base URL           (default http://localhost:5001)
    API_KEY          bearer token for the backend   (default empty)
    PROVIDER_FORMAT  "koboldcpp" | "openai"         (default koboldcpp)
    MODEL            model id, openai format only
    LLM_TIMEOUT      seconds                        (default 120)
    DATA_DIR         settings directory             (default ./data)
    PROMPT_STYLE     "tags" | "structured"          (default tags)
    HOST / PORT      API server bind address
"""

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel

from scene_tagger.llm import HttpGenerator, ProviderFormat
from scene_tagger.models import PromptStyle

ROOT = Path(__file__).parent.parent
DEFAULT_DATA_DIR = ROOT / "data"

_ENV_FIELDS = {
    "provider_url": "PROVIDER_URL",
    "api_key": "API_KEY",
    "provider_format": "PROVIDER_FORMAT",
    "model": "MODEL",
    "timeout": "LLM_TIMEOUT",
    "data_dir": "DATA_DIR",
    "prompt_style": "PROMPT_STYLE",
    "host": "HOST",
    "port": "PORT",
}


class AppConfig(BaseModel):
    provider_url: str = "http://localhost:5001"
    api_key: str = ""
    provider_format: ProviderFormat = "koboldcpp"
    model: str = ""
    timeout: float = 120.0
    data_dir: Path = DEFAULT_DATA_DIR
    prompt_style: PromptStyle = "tags"
    host: str = "0.0.0.0"
    port: int = 13015


def load_config(env_file: Path | None = ROOT / ".env") -> AppConfig:
    """Read configuration from the environment, after loading `env_file` if present."""
    if env_file is not None:
        load_dotenv(env_file)
    values = {name: os.getenv(var) for name, var in _ENV_FIELDS.items()}
    return AppConfig(**{name: value for name, value in values.items() if value})


def build_generator(config: AppConfig) -> HttpGenerator:
    return HttpGenerator(
        provider_url=config.provider_url,
        api_key=config.api_key,
        provider_format=config.provider_format,
        model=config.model,
        timeout=config.timeout,
    )
