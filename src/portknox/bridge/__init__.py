"""Model registration bridges."""

from .litellm import DEFAULT_MODEL_API_KEY, LiteLLMBridge

__all__ = [
    "LiteLLMBridge",
    "DEFAULT_MODEL_API_KEY",
]
