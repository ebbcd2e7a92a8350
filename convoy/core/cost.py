"""
convoy.core.cost - Cost tracking for LLM API usage.

Calculates running cost from token counts and the per-million-token prices
carried by each :class:`~convoy.core.models.ModelSpec`.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from convoy.core.messages import Usage
from convoy.core.models import ModelSpec

_PER_MILLION = 1_000_000


def estimate_cost(usage: Usage, spec: ModelSpec) -> float:
    """
    Cost in USD of *usage* on *spec*.

    Cache-read tokens are part of the prompt count and are billed at the
    ``cache_read`` price when the catalog knows it, else at the input price.
    Unknown prices count as zero.
    """
    pricing = spec.pricing
    input_price = pricing.input or 0.0
    output_price = pricing.output or 0.0
    cache_price = pricing.cache_read if pricing.cache_read is not None else input_price

    cache_read = min(usage.cache_read_tokens, usage.prompt_tokens)
    regular_input = usage.prompt_tokens - cache_read

    return (
        regular_input * input_price
        + cache_read * cache_price
        + usage.completion_tokens * output_price
    ) / _PER_MILLION


@dataclass
class CostTracker:
    """
    Tracks cumulative token usage and cost across turns.
    """
    usage: Usage = field(default_factory=Usage)
    total_cost_usd: float = 0.0
    turn_costs: list[float] = field(default_factory=list)
    model: str = ""

    def record(self, usage: Usage, spec: ModelSpec) -> float:
        """Record one turn's usage and return its cost."""
        turn_cost = estimate_cost(usage, spec)
        self.usage = self.usage + usage
        self.total_cost_usd += turn_cost
        self.turn_costs.append(turn_cost)
        self.model = f"{spec.provider}:{spec.model_id}"
        return turn_cost

    def format_cost(self, turn_cost: float | None = None) -> str:
        """Format cost display string."""
        if turn_cost is not None and turn_cost > 0:
            return f"Turn: ${turn_cost:.4f} | Session: ${self.total_cost_usd:.4f}"
        if self.total_cost_usd > 0:
            return f"Session cost: ${self.total_cost_usd:.4f}"
        return "Session cost: $0.00"

    def format_summary(self) -> str:
        """Format a full session cost summary."""
        return "\n".join([
            "Session Cost Summary",
            f"  Model:          {self.model}",
            f"  Input tokens:   {self.usage.prompt_tokens:,}",
            f"  Output tokens:  {self.usage.completion_tokens:,}",
            f"  Cached tokens:  {self.usage.cache_read_tokens:,}",
            f"  Turns:          {len(self.turn_costs)}",
            f"  Total cost:     ${self.total_cost_usd:.4f}",
        ])
