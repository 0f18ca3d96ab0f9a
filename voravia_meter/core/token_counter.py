"""
Token counting and usage tracking.

Normalizes token usage reported by AI providers for cost calculation.
"""

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation.

    Contains exact token counts as reported by the provider.
    """
    input_tokens: int = 0
    output_tokens: int = 0

    def __post_init__(self):
        if self.input_tokens < 0 or self.output_tokens < 0:
            raise ValueError("token counts cannot be negative")

    @property
    def total_tokens(self) -> int:
        """Total tokens used (input + output)."""
        return self.input_tokens + self.output_tokens

    @classmethod
    def from_response_usage(cls, usage: Any) -> "TokenUsage":
        """Build from an OpenAI usage object.

        The Responses API reports input_tokens/output_tokens while Chat
        Completions reports prompt_tokens/completion_tokens.
        """
        input_tokens = getattr(usage, "input_tokens", None)
        if input_tokens is None:
            input_tokens = getattr(usage, "prompt_tokens", 0)
        output_tokens = getattr(usage, "output_tokens", None)
        if output_tokens is None:
            output_tokens = getattr(usage, "completion_tokens", 0)
        return cls(input_tokens=int(input_tokens or 0), output_tokens=int(output_tokens or 0))
