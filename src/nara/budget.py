"""
Token budgeting for the answering pipeline.

The estimate is a character heuristic, deliberately approximate: it only has
to be monotonic in text length.
"""
import math
from typing import Iterable, Union

from .models import PackingMode, TranscriptUnit

TOKENS_PER_CHAR = 0.25
FULL_LIMIT_TOKENS = 50_000
COMPRESSED_LIMIT_TOKENS = 100_000
DEFAULT_HEADROOM_TOKENS = 20_000
AUTO = "auto"


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) * TOKENS_PER_CHAR)


def estimate_unit_tokens(units: Iterable[TranscriptUnit]) -> int:
    return estimate_tokens(" ".join(u.text for u in units))


def available_budget(context_budget: int, headroom: int = DEFAULT_HEADROOM_TOKENS) -> int:
    """Tokens left for chapter content once prompt and answer headroom is reserved"""
    return max(0, context_budget - headroom)


def decide_mode(unit_token_estimate: int, budget: int, hint: Union[str, PackingMode] = AUTO,
                full_limit: int = FULL_LIMIT_TOKENS,
                compressed_limit: int = COMPRESSED_LIMIT_TOKENS) -> PackingMode:
    """Pick full / compressed / focused packing.

    A hint other than "auto" wins unconditionally. Otherwise the chapter goes in
    whole up to full_limit (or the budget, if smaller), compressed up to
    compressed_limit, and focused beyond that.
    """
    if isinstance(hint, PackingMode):
        return hint
    if hint != AUTO:
        try:
            return PackingMode(hint)
        except ValueError:
            raise ValueError(f"Unknown packing mode hint: {hint!r}") from None

    if unit_token_estimate <= min(full_limit, budget):
        return PackingMode.FULL
    if unit_token_estimate <= compressed_limit:
        return PackingMode.COMPRESSED
    return PackingMode.FOCUSED


__all__ = ["estimate_tokens", "estimate_unit_tokens", "available_budget", "decide_mode",
           "FULL_LIMIT_TOKENS", "COMPRESSED_LIMIT_TOKENS", "DEFAULT_HEADROOM_TOKENS"]
