"""Analyzer usage cost estimates (USD per 1M tokens)."""

from __future__ import annotations

_MODEL_PRICING: dict[str, tuple[float, float]] = {
    "gpt-5.2": (1.75, 14.00),
    "gpt-5-mini": (0.30, 1.00),
    "gpt-4.1": (2.00, 8.00),
    "gpt-4.1-mini": (0.40, 1.60),
    "gpt-4.1-nano": (0.10, 0.40),
    "gpt-4o": (2.50, 10.00),
    "gpt-4o-mini": (0.15, 0.60),
    "o4-mini": (1.10, 4.40),
    "o3-mini": (1.10, 4.40),
    "o1-mini": (3.00, 12.00),
    "gpt-4-turbo": (10.0, 30.0),
    "gpt-3.5-turbo": (0.50, 1.50),
}


def _pricing_for(model: str) -> tuple[float, float] | None:
    key = model.lower()
    if key in _MODEL_PRICING:
        return _MODEL_PRICING[key]
    # Dated snapshots ("gpt-4o-mini-2024-07-18") match their longest known prefix.
    prefixes = [k for k in _MODEL_PRICING if key.startswith(k)]
    if not prefixes:
        return None
    return _MODEL_PRICING[max(prefixes, key=len)]


def compute_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    """Estimated cost in USD; ``0.0`` for unknown models."""
    pricing = _pricing_for(model)
    if pricing is None:
        return 0.0
    input_per_1m, output_per_1m = pricing
    return (input_tokens * input_per_1m + output_tokens * output_per_1m) / 1_000_000.0


def pricing_table() -> dict[str, tuple[float, float]]:
    return dict(_MODEL_PRICING)
