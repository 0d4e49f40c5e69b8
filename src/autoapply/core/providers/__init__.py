"""Model provider adapters."""

from .openrouter import OPENROUTER_CHAT_URL, call_openrouter

__all__ = ["OPENROUTER_CHAT_URL", "call_openrouter"]
