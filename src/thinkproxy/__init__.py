"""An OpenAI-compatible proxy that folds NIM reasoning output into <think> tags."""

__version__ = "0.1.0"

from .config import Settings, load_config
from .api import app, create_app
from .utils import ThinkingFilter, wrap_reasoning

from .enrich import build_upstream_request
from .backends import call_backend, call_with_fallback
from .translate import StreamTranslator, translate_completion, translate_stream
