"""
Token usage telemetry.

Holds token counts reported by the model provider.
"""

from dataclasses import dataclass
from typing import Any, Optional


@dataclass(frozen=True)
class TokenUsage:
    """Token counts reported for one model call.

    Contains exact provider-reported counts, never estimates. A call whose
    usage was not reported is represented by None, not by zero counts.
    """
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int

    @classmethod
    def from_provider(cls, usage: Any) -> Optional["TokenUsage"]:
        """Build TokenUsage from a provider usage object.

        Args:
            usage: Object exposing prompt_tokens, completion_tokens and
                total_tokens attributes, or None

        Returns:
            TokenUsage, or None when the provider reported no usage
        """
        if usage is None:
            return None
        prompt_tokens = getattr(usage, "prompt_tokens", None)
        completion_tokens = getattr(usage, "completion_tokens", None)
        if prompt_tokens is None or completion_tokens is None:
            return None
        total_tokens = getattr(usage, "total_tokens", None)
        if total_tokens is None:
            total_tokens = prompt_tokens + completion_tokens
        return cls(
            prompt_tokens=int(prompt_tokens),
            completion_tokens=int(completion_tokens),
            total_tokens=int(total_tokens)
        )
