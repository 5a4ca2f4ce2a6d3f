"""
Stage transition rules.

Maps the current item state and a recall score to the next stage, the raw
(pre-fuzz) interval, the consecutive-hard counter, the same-session requeue
flag and, for sustained mastery, a long-horizon health check.
"""

import logging
import math
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from .constants import (
    FORGOT_STAGE_REGRESSION,
    GOOD_GROWTH_NUMERATOR,
    HARD_INTERVAL_FACTOR,
    HARD_REQUEUE_THRESHOLD,
    HEALTH_CHECK_MAX_DAYS,
    HEALTH_CHECK_MIN_DAYS,
    PERFECT_DOUBLE_JUMP_BELOW_STAGE,
    PERFECT_GROWTH_FACTOR,
)
from .ladder import DEFAULT_LADDER, IntervalLadder
from .models import Score

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StageTransition:
    new_stage: int
    raw_interval: int
    requeue_in_session: bool
    consecutive_hard_count: int
    health_check_at: Optional[datetime] = None


def good_growth_multiplier(stage: int) -> float:
    """Diminishing growth factor for a Good score past the last rung."""
    return 1 + GOOD_GROWTH_NUMERATOR / math.sqrt(max(0, stage) + 1)


def _growth_base(previous_interval: Optional[int], ladder: IntervalLadder) -> int:
    if previous_interval is None or previous_interval < 1:
        return ladder.final_step
    return previous_interval


def _grow(base: int, factor: float, ladder: IntervalLadder) -> int:
    # At least one day of growth below the ceiling.
    return ladder.cap(max(base + 1, math.floor(base * factor)))


def _forgot(stage: int, ladder: IntervalLadder) -> StageTransition:
    new_stage = max(0, stage - FORGOT_STAGE_REGRESSION)
    return StageTransition(
        new_stage=new_stage,
        raw_interval=ladder.interval_for(new_stage),
        requeue_in_session=True,
        consecutive_hard_count=0,
    )


def _hard(
    stage: int,
    previous_interval: Optional[int],
    consecutive_hard_count: int,
    ladder: IntervalLadder,
) -> StageTransition:
    if ladder.is_past_ladder(stage):
        current = _growth_base(previous_interval, ladder)
    else:
        current = ladder.interval_for(stage)
    raw_interval = max(1, math.ceil(current * HARD_INTERVAL_FACTOR))

    hard_count = consecutive_hard_count + 1
    requeue = False
    if hard_count >= HARD_REQUEUE_THRESHOLD:
        requeue = True
        hard_count = 0

    return StageTransition(
        new_stage=stage,
        raw_interval=raw_interval,
        requeue_in_session=requeue,
        consecutive_hard_count=hard_count,
    )


def _good(
    stage: int, previous_interval: Optional[int], ladder: IntervalLadder
) -> StageTransition:
    if not ladder.is_past_ladder(stage):
        new_stage = stage + 1
        raw_interval = ladder.interval_for(new_stage)
    else:
        new_stage = ladder.max_stage_index
        base = _growth_base(previous_interval, ladder)
        raw_interval = _grow(base, good_growth_multiplier(stage), ladder)
    return StageTransition(
        new_stage=new_stage,
        raw_interval=raw_interval,
        requeue_in_session=False,
        consecutive_hard_count=0,
    )


def _perfect(
    stage: int,
    previous_interval: Optional[int],
    ladder: IntervalLadder,
    now: datetime,
    rng: random.Random,
) -> StageTransition:
    if not ladder.is_past_ladder(stage):
        jump = 2 if stage < PERFECT_DOUBLE_JUMP_BELOW_STAGE else 1
        new_stage = ladder.clamp_stage(stage + jump)
        return StageTransition(
            new_stage=new_stage,
            raw_interval=ladder.interval_for(new_stage),
            requeue_in_session=False,
            consecutive_hard_count=0,
        )

    base = _growth_base(previous_interval, ladder)
    raw_interval = _grow(base, PERFECT_GROWTH_FACTOR, ladder)
    health_check_days = rng.randint(HEALTH_CHECK_MIN_DAYS, HEALTH_CHECK_MAX_DAYS)
    return StageTransition(
        new_stage=ladder.max_stage_index,
        raw_interval=raw_interval,
        requeue_in_session=False,
        consecutive_hard_count=0,
        health_check_at=now + timedelta(days=health_check_days),
    )


def compute_transition(
    stage: int,
    score: Score,
    previous_interval: Optional[int],
    consecutive_hard_count: int,
    now: datetime,
    ladder: IntervalLadder = DEFAULT_LADDER,
    rng: Optional[random.Random] = None,
) -> StageTransition:
    """
    Compute the next scheduling state for one review.

    Out-of-range inputs are clamped rather than rejected: the stage into the
    ladder, the hard counter to zero or more, and a non-positive previous
    interval falls back to the last rung.

    Args:
        stage: Current stage of the item.
        score: The recall-quality score for this review.
        previous_interval: Last raw interval in days, or None.
        consecutive_hard_count: Hard outcomes since the last reset.
        now: Review timestamp; health checks are scheduled from it.
        ladder: The interval ladder to consult.
        rng: Random source for the health-check offset.

    Returns:
        A StageTransition. `raw_interval` is always at least one day.
    """
    clamped_stage = ladder.clamp_stage(stage)
    if clamped_stage != stage:
        logger.warning(f"Clamped out-of-range stage {stage} to {clamped_stage}")
    hard_count = max(0, consecutive_hard_count)

    if score == Score.Forgot:
        return _forgot(clamped_stage, ladder)
    if score == Score.Hard:
        return _hard(clamped_stage, previous_interval, hard_count, ladder)
    if score == Score.Good:
        return _good(clamped_stage, previous_interval, ladder)
    return _perfect(
        clamped_stage, previous_interval, ladder, now, rng or random.Random()
    )
