"""Configuration handling for the thinkproxy."""

import logging
import os
from pathlib import Path
from typing import List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

CONFIG_PATH = Path(__file__).parent.parent.parent / "config.yaml"

DEFAULT_API_BASE = "https://integrate.api.nvidia.com/v1"
DEFAULT_MODELS = [
    "deepseek-ai/deepseek-r1",
    "deepseek-ai/deepseek-r1-distill-qwen-32b",
    "deepseek-ai/deepseek-r1-distill-llama-8b",
]


class Settings(BaseModel):
    """Process-wide settings, read once at startup and never mutated."""

    model_config = ConfigDict(frozen=True)

    port: int = 3000
    api_base: str = DEFAULT_API_BASE
    api_key: str = ""
    models: List[str] = Field(default_factory=lambda: list(DEFAULT_MODELS))
    timeout: Optional[float] = 30.0
    diagnose_endpoints: List[str] = Field(default_factory=list)

    show_reasoning: bool = True
    thinking_mode: bool = True
    strip_inline_thinking: bool = False
    advertised_model: str = "gpt-4"

    default_temperature: float = 0.85
    default_max_tokens: int = 1500
    default_top_p: float = 0.95

    @property
    def primary_model(self) -> str:
        return self.models[0]

    @property
    def chat_completions_url(self) -> str:
        return f"{self.api_base.rstrip('/')}/chat/completions"


def _read_yaml(path: Path) -> dict:
    try:
        data = yaml.safe_load(path.read_text())
        logger.info(f"Successfully loaded configuration from {path.name}")
        return data or {}
    except FileNotFoundError:
        logger.info(f"No {path.name} found, using built-in defaults")
        return {}
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Error loading {path.name}: {str(e)}")
        return {}


def load_config(path: Optional[Path] = None) -> Settings:
    """
    Build the Settings from config.yaml and the process environment.

    Values from the environment (and a .env file, if present) take
    precedence over the YAML file. Unknown or missing keys fall back to
    the built-in defaults.
    """
    load_dotenv()
    raw = _read_yaml(path or CONFIG_PATH)

    upstream = raw.get("upstream") or {}
    proxy = raw.get("proxy") or {}
    defaults = proxy.get("defaults") or {}

    values = {
        "api_base": upstream.get("url"),
        "models": upstream.get("models"),
        "diagnose_endpoints": upstream.get("diagnose_endpoints"),
        "show_reasoning": proxy.get("show_reasoning"),
        "thinking_mode": proxy.get("thinking_mode"),
        "strip_inline_thinking": proxy.get("strip_inline_thinking"),
        "advertised_model": proxy.get("advertised_model"),
        "default_temperature": defaults.get("temperature"),
        "default_max_tokens": defaults.get("max_tokens"),
        "default_top_p": defaults.get("top_p"),
    }
    # a null timeout in the file disables it, so it is checked by key
    if "timeout" in upstream:
        values["timeout"] = upstream["timeout"]

    if os.environ.get("PORT"):
        values["port"] = int(os.environ["PORT"])
    if os.environ.get("NIM_API_BASE"):
        values["api_base"] = os.environ["NIM_API_BASE"]
    values["api_key"] = os.environ.get("NVIDIA_API_KEY", "")

    settings = Settings(
        **{k: v for k, v in values.items() if v is not None or k == "timeout"}
    )

    if not settings.models:
        logger.warning("No upstream models configured, using default list")
        settings = settings.model_copy(update={"models": list(DEFAULT_MODELS)})
    if not settings.diagnose_endpoints:
        settings = settings.model_copy(
            update={"diagnose_endpoints": [settings.api_base]}
        )
    if not settings.api_key:
        logger.warning("NVIDIA_API_KEY not set, upstream calls will be unauthorized")

    return settings
