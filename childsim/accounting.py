"""Token and cost accounting across every model call of a game."""

from __future__ import annotations

import logging

from childsim.models import TokenUsageStats, Usage

logger = logging.getLogger(__name__)

# USD per 1K tokens; overridden from configuration.
DEFAULT_PROMPT_RATE = 0.00027
DEFAULT_COMPLETION_RATE = 0.0011


class TokenAccountant:
    """Accumulates token counts and call counts until reset.

    Every gateway call is recorded, including calls whose provider reported
    no usage; those only bump ``api_calls``. Counters never decrease except
    through reset().
    """

    def __init__(
        self,
        prompt_rate: float = DEFAULT_PROMPT_RATE,
        completion_rate: float = DEFAULT_COMPLETION_RATE,
    ) -> None:
        self.prompt_rate = prompt_rate
        self.completion_rate = completion_rate
        self._prompt_tokens = 0
        self._completion_tokens = 0
        self._total_tokens = 0
        self._api_calls = 0

    def record(self, usage: Usage | None) -> TokenUsageStats:
        self._api_calls += 1
        if usage is not None:
            prompt = max(0, usage.prompt_tokens)
            completion = max(0, usage.completion_tokens)
            total = usage.total_tokens if usage.total_tokens > 0 else prompt + completion
            self._prompt_tokens += prompt
            self._completion_tokens += completion
            self._total_tokens += total
        logger.debug(
            "usage calls=%d prompt=%d completion=%d",
            self._api_calls, self._prompt_tokens, self._completion_tokens,
        )
        return self.stats()

    @property
    def estimated_cost(self) -> float:
        return (
            self._prompt_tokens * self.prompt_rate
            + self._completion_tokens * self.completion_rate
        ) / 1000

    def stats(self) -> TokenUsageStats:
        return TokenUsageStats(
            prompt_tokens=self._prompt_tokens,
            completion_tokens=self._completion_tokens,
            total_tokens=self._total_tokens,
            api_calls=self._api_calls,
            estimated_cost=self.estimated_cost,
        )

    def reset(self) -> None:
        self._prompt_tokens = 0
        self._completion_tokens = 0
        self._total_tokens = 0
        self._api_calls = 0
