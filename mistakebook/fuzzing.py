"""
Load-aware interval fuzzing.

Spreads review dates so that items created together, or moving through the
ladder in lockstep, do not all land on the same calendar day. With a load
forecast the least-loaded nearby day wins; without one, the item id is
hashed into a fixed offset so the result is reproducible.
"""

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Mapping, Optional, Union
from uuid import UUID

from .constants import (
    FUZZ_DISTANCE_PENALTY,
    FUZZ_INTERVAL_FRACTION,
    FUZZ_MAX_RADIUS,
    FUZZ_MIN_RADIUS,
)

logger = logging.getLogger(__name__)

LoadForecast = Mapping[date, int]

_FNV_OFFSET_BASIS = 0x811C9DC5
_FNV_PRIME = 0x01000193
_MASK_32 = 0xFFFFFFFF


@dataclass(frozen=True)
class FuzzResult:
    offset: int
    final_interval: int


def fuzz_radius(raw_interval: int) -> int:
    """Number of days the interval may move in either direction."""
    return max(
        FUZZ_MIN_RADIUS,
        min(int(raw_interval * FUZZ_INTERVAL_FRACTION), FUZZ_MAX_RADIUS),
    )


def stable_hash(key: Union[str, UUID]) -> int:
    """
    32-bit FNV-1a over the UTF-8 key, finished with the murmur3 fmix32
    avalanche so that ids differing in one character spread evenly.
    """
    h = _FNV_OFFSET_BASIS
    for byte in str(key).encode("utf-8"):
        h ^= byte
        h = (h * _FNV_PRIME) & _MASK_32

    h ^= h >> 16
    h = (h * 0x85EBCA6B) & _MASK_32
    h ^= h >> 13
    h = (h * 0xC2B2AE35) & _MASK_32
    h ^= h >> 16
    return h


def deterministic_offset(key: Union[str, UUID], radius: int) -> int:
    """Map the key onto an offset in [-radius, +radius]."""
    span = 2 * radius + 1
    return stable_hash(key) % span - radius


def candidate_score(load: int, offset: int) -> float:
    return load + abs(offset) * FUZZ_DISTANCE_PENALTY


def load_aware_offset(
    raw_interval: int, today: date, forecast: LoadForecast, radius: int
) -> int:
    """
    Pick the offset whose day has the lowest forecast load, penalising
    distance from the raw date. Days missing from the forecast count as
    empty. Ties go to the earliest candidate.
    """
    base_day = today + timedelta(days=raw_interval)
    best_offset = 0
    best_score: Optional[float] = None
    for offset in range(-radius, radius + 1):
        load = forecast.get(base_day + timedelta(days=offset), 0)
        score = candidate_score(load, offset)
        if best_score is None or score < best_score:
            best_offset, best_score = offset, score
    return best_offset


def apply_fuzz(
    raw_interval: int,
    item_key: Union[str, UUID],
    today: date,
    forecast: Optional[LoadForecast] = None,
) -> FuzzResult:
    """
    Perturb a raw interval within its fuzz radius.

    Returns:
        FuzzResult with the chosen offset and the final interval, which is
        never less than one day.
    """
    radius = fuzz_radius(raw_interval)
    if forecast is None:
        offset = deterministic_offset(item_key, radius)
    else:
        offset = load_aware_offset(raw_interval, today, forecast, radius)

    final_interval = max(1, raw_interval + offset)
    logger.debug(
        f"Fuzzed {item_key}: raw={raw_interval} radius={radius} "
        f"offset={offset} final={final_interval}"
    )
    return FuzzResult(offset=offset, final_interval=final_interval)
