"""Public API surface for the arena model client."""

from .openrouter_client import ModelInvocationError, ModelRequestError, ModelTimeoutError, OpenRouterClient

__all__ = ["ModelInvocationError", "ModelRequestError", "ModelTimeoutError", "OpenRouterClient"]
