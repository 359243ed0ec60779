"""Token budget arithmetic for map-reduce summarization.

Tokens are estimated from characters; the estimate is deliberately the same
everywhere (windows, batches, the synthesis check) so plans are
reproducible.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

from ..exceptions import ConfigError


def estimate_tokens(text: str, chars_per_token: float) -> int:
    if not text:
        return 0
    return math.ceil(len(text) / chars_per_token)


@dataclass(frozen=True)
class SummaryBudget:
    """Budgets derived from the model's context size.

    ``window_tokens = context - instruction reserve - output - carried context``
    """

    context_tokens: int
    instruction_reserve_tokens: int
    output_tokens: int
    carried_context_tokens: int
    chars_per_token: float = 4.0
    min_window_tokens: int = 1
    reduce_batch_tokens: Optional[int] = None
    synthesis_input_tokens: Optional[int] = None

    @property
    def window_tokens(self) -> int:
        return (
            self.context_tokens
            - self.instruction_reserve_tokens
            - self.output_tokens
            - self.carried_context_tokens
        )

    @property
    def window_chars(self) -> int:
        return int(self.window_tokens * self.chars_per_token)

    @property
    def carried_context_chars(self) -> int:
        return int(self.carried_context_tokens * self.chars_per_token)

    @property
    def batch_tokens(self) -> int:
        return self.reduce_batch_tokens or self.window_tokens

    @property
    def synthesis_tokens(self) -> int:
        return self.synthesis_input_tokens or self.window_tokens

    def estimate(self, text: str) -> int:
        return estimate_tokens(text, self.chars_per_token)

    def validate(self) -> None:
        """Reject budgets that leave too little room for transcript text.

        Raises:
            ConfigError: If the window is below ``min_window_tokens``
        """
        if self.window_tokens < self.min_window_tokens:
            raise ConfigError(
                f"Summarization window of {self.window_tokens} tokens is below the "
                f"minimum of {self.min_window_tokens}",
                config_key="summary_context_tokens",
            )
        if self.chars_per_token <= 0:
            raise ConfigError("chars_per_token must be positive", config_key="chars_per_token")

    @classmethod
    def from_config(cls, cfg) -> "SummaryBudget":
        budget = cls(
            context_tokens=cfg.summary_context_tokens,
            instruction_reserve_tokens=cfg.summary_instruction_reserve_tokens,
            output_tokens=cfg.summary_output_tokens,
            carried_context_tokens=cfg.effective_carried_context_tokens,
            chars_per_token=cfg.chars_per_token,
            min_window_tokens=cfg.min_window_tokens,
            reduce_batch_tokens=cfg.reduce_batch_tokens,
            synthesis_input_tokens=cfg.synthesis_input_tokens,
        )
        budget.validate()
        return budget
