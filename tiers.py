from dataclasses import dataclass
from typing import List, Optional, Sequence, Union


@dataclass(frozen=True)
class ModelTier:
    identifier: str
    alias: str


# Highest capability first; later tiers trade quality for availability.
MODEL_TIERS: List[ModelTier] = [
    ModelTier("gemini-2.5-pro", "2.5 Pro"),
    ModelTier("gemini-2.5-flash", "2.5 Flash"),
    ModelTier("gemini-2.5-flash-lite", "2.5 Flash-Lite"),
    ModelTier("gemini-2.0-flash", "2.0 Flash"),
    ModelTier("gemini-2.0-flash-lite", "2.0 Flash-Lite"),
]

DEFAULT_TIER_INDEX = 2


def find_tier(tiers: Sequence[ModelTier], choice: Union[int, str, None]) -> Optional[int]:
    """Return the index of ``choice`` (an index, identifier or alias) in ``tiers``."""
    if choice is None:
        return None
    if isinstance(choice, int):
        return choice if 0 <= choice < len(tiers) else None

    wanted = str(choice).strip().lower()
    if wanted.isdigit():
        return find_tier(tiers, int(wanted))
    for idx, tier in enumerate(tiers):
        if wanted in (tier.identifier.lower(), tier.alias.lower()):
            return idx
    return None
