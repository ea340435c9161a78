from __future__ import annotations

import math
from dataclasses import dataclass

from hollon.backends.base import CostEstimate

CHARS_PER_TOKEN = 4
OUTPUT_TOKEN_RATIO = 0.5


@dataclass(slots=True)
class CostCalculator:
    """Prices are cents per million tokens."""

    cost_per_input_token_cents: float = 300.0
    cost_per_output_token_cents: float = 1500.0

    def estimate(self, prompt: str, system_prompt: str = "") -> CostEstimate:
        total_chars = len(prompt) + len(system_prompt)
        input_tokens = math.ceil(total_chars / CHARS_PER_TOKEN)
        output_tokens = math.ceil(input_tokens * OUTPUT_TOKEN_RATIO)
        return self.from_actual(input_tokens, output_tokens)

    def from_actual(self, input_tokens: int, output_tokens: int) -> CostEstimate:
        input_cost = (input_tokens / 1_000_000) * self.cost_per_input_token_cents
        output_cost = (output_tokens / 1_000_000) * self.cost_per_output_token_cents
        return CostEstimate(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_cost_cents=round(input_cost + output_cost, 6),
        )
