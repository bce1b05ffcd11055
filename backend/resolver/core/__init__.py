"""Core providers: settings, OpenAI clients and Supabase."""

from .config import Settings, get_settings
from .embedder import Embedder
from .llm import LLM, TokenUsage
from .supabase_client import get_supabase_client

__all__ = [
    "Settings",
    "get_settings",
    "Embedder",
    "LLM",
    "TokenUsage",
    "get_supabase_client",
]
