"""
Usage unit measurement.

Derives the billable units of a payload and carries provider-reported usage.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class TokenUsage:
    """Token usage reported by an upstream model.
    
    Recorded in ledger metadata for reporting; pricing never depends on it.
    """
    prompt_tokens: int
    completion_tokens: int
    
    @property
    def total_tokens(self) -> int:
        """Total tokens used (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens

    def to_dict(self) -> dict:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


def count_words(text: str) -> int:
    """Count whitespace-separated words, the billing unit for text kinds."""
    return len(text.split())


def count_characters(text: str) -> int:
    """Count characters, the billing unit for speech synthesis."""
    return len(text)
