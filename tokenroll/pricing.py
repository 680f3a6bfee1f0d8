"""Model identity normalization and cost estimation."""
from __future__ import annotations

import re
from dataclasses import dataclass

_DATE_SUFFIX_PATTERN = re.compile(r"(?:-\d{8}|-\d{4}-\d{2}-\d{2})+$")


@dataclass(frozen=True)
class TokenPrice:
    """USD per million tokens."""

    input: float
    cache_creation: float
    cache_read: float
    output: float


# Claude list prices by model family. Unknown Claude models are priced as Sonnet.
_CLAUDE_PRICING: dict[str, TokenPrice] = {
    "opus": TokenPrice(input=15.0, cache_creation=18.75, cache_read=1.50, output=75.0),
    "sonnet": TokenPrice(input=3.0, cache_creation=3.75, cache_read=0.30, output=15.0),
    "haiku": TokenPrice(input=1.0, cache_creation=1.25, cache_read=0.10, output=5.0),
}
_DEFAULT_CLAUDE_FAMILY = "sonnet"

_PRICED_PROVIDERS = {"claude_code"}


def canonical_model_name(raw_model: str | None) -> str:
    """Return a canonical model identifier with build/date suffixes removed.

    Example:
      claude-opus-4-5-20251101 -> claude-opus-4-5
    """
    raw = (raw_model or "").strip().lower()
    if not raw:
        return ""
    normalized = re.sub(r"[\s_]+", "-", raw)
    normalized = re.sub(r"-{2,}", "-", normalized).strip("-")
    stripped = _DATE_SUFFIX_PATTERN.sub("", normalized).strip("-")
    return stripped or normalized


def claude_family(raw_model: str | None) -> str:
    canonical = canonical_model_name(raw_model)
    for family in _CLAUDE_PRICING:
        if family in canonical.split("-"):
            return family
    return _DEFAULT_CLAUDE_FAMILY


def price_for(provider: str, model: str | None) -> TokenPrice | None:
    if provider not in _PRICED_PROVIDERS:
        return None
    return _CLAUDE_PRICING[claude_family(model)]


def estimate_cost(
    provider: str,
    model: str | None,
    *,
    tokens_in: int,
    tokens_out: int,
    cache_creation_tokens: int = 0,
    cache_read_tokens: int = 0,
) -> float:
    """Estimate USD cost for one usage event; 0.0 for unpriced providers."""
    price = price_for(provider, model)
    if price is None:
        return 0.0
    return (
        (tokens_in / 1_000_000) * price.input
        + (cache_creation_tokens / 1_000_000) * price.cache_creation
        + (cache_read_tokens / 1_000_000) * price.cache_read
        + (tokens_out / 1_000_000) * price.output
    )
