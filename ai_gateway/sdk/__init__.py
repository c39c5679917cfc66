"""
SDK for AI Gateway.

Provides programmatic access to gated, cached model calls.
"""

from .gateway import Gateway, GatewayResult
from .openai_client import ModelCallConfig, StructuredOpenAI, StructuredResult

__all__ = [
    "Gateway",
    "GatewayResult",
    "ModelCallConfig",
    "StructuredOpenAI",
    "StructuredResult",
]
