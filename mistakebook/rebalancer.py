"""
Load rebalancing for upcoming review days.

Per-review fuzzing only looks at one item at a time, so busy days can still
pile up. The rebalancer looks at the whole window: each day above 120% of
the daily target moves some of its lowest-priority items to a light nearby
day, and each nearly empty day pulls items in from busy neighbours.
Planning is pure; applying a plan is a separate step.
"""

import logging
import math
import statistics
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence
from uuid import UUID

from .db.database import MistakeDatabase
from .models import ReviewItem
from .priority import priority_score

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_DAYS = 14
DEFAULT_MAX_SHIFT_DAYS = 7
OVERLOAD_FACTOR = 1.2
MAX_MOVE_FRACTION = 0.3
SHIFT_PENALTY = 0.5
UNDERLOAD_FACTOR = 0.3
UNDERLOAD_MIN_GAP = 10


@dataclass(frozen=True)
class RebalanceMove:
    item_id: UUID
    old_review_at: datetime
    new_review_at: datetime

    @property
    def shift_days(self) -> int:
        return (self.new_review_at.date() - self.old_review_at.date()).days


@dataclass
class RebalancePlan:
    daily_target: int
    load_before: Dict[date, int]
    load_after: Dict[date, int]
    moves: List[RebalanceMove] = field(default_factory=list)

    @property
    def std_dev_before(self) -> float:
        return load_std_dev(self.load_before)

    @property
    def std_dev_after(self) -> float:
        return load_std_dev(self.load_after)


def load_std_dev(load: Dict[date, int]) -> float:
    """Population standard deviation of the daily counts."""
    if not load:
        return 0.0
    return statistics.pstdev(load.values())


def _best_target_day(
    source: date,
    load: Dict[date, int],
    daily_target: int,
    max_shift: int,
    earliest: date,
) -> Optional[date]:
    """
    The nearby day with the lowest `load + |offset| * 0.5` among days below
    target. When every candidate is full, the least-loaded one, provided it
    stays lighter than the source day after the move.
    """
    best_day: Optional[date] = None
    best_score: Optional[float] = None
    lightest: Optional[date] = None
    for offset in range(-max_shift, max_shift + 1):
        if offset == 0:
            continue
        candidate = source + timedelta(days=offset)
        if candidate < earliest or candidate not in load:
            continue
        if lightest is None or load[candidate] < load[lightest]:
            lightest = candidate
        if load[candidate] >= daily_target:
            continue
        score = load[candidate] + abs(offset) * SHIFT_PENALTY
        if best_score is None or score < best_score:
            best_day, best_score = candidate, score

    if best_day is not None:
        return best_day
    if lightest is not None and load[lightest] + 1 < load[source]:
        return lightest
    return None


def _move(
    item: ReviewItem,
    source: date,
    target: date,
    load: Dict[date, int],
    by_day: Dict[date, List[ReviewItem]],
    moves: List[RebalanceMove],
) -> None:
    new_review_at = datetime.combine(target, item.next_review_at.timetz())
    moves.append(RebalanceMove(item.id, item.next_review_at, new_review_at))
    by_day[source].remove(item)
    load[source] -= 1
    load[target] += 1


def _spread_overloaded_day(
    day: date,
    load: Dict[date, int],
    by_day: Dict[date, List[ReviewItem]],
    moves: List[RebalanceMove],
    daily_target: int,
    max_shift: int,
    earliest: date,
    today: date,
) -> None:
    day_items = by_day[day]
    to_move = min(load[day] - daily_target, math.floor(len(day_items) * MAX_MOVE_FRACTION))
    candidates = sorted(day_items, key=lambda item: priority_score(item, today))

    moved = 0
    for item in candidates:
        if moved >= to_move:
            break
        target = _best_target_day(day, load, daily_target, max_shift, earliest)
        if target is None:
            break
        _move(item, day, target, load, by_day, moves)
        moved += 1

    logger.debug(f"{day}: moved {moved} of {to_move} planned items.")


def _fill_quiet_day(
    day: date,
    window: List[date],
    load: Dict[date, int],
    by_day: Dict[date, List[ReviewItem]],
    moves: List[RebalanceMove],
    daily_target: int,
    max_shift: int,
    today: date,
) -> None:
    capacity = daily_target - load[day]
    pulled = 0
    for source in window:
        if pulled >= capacity:
            break
        if source == day or load[source] <= daily_target:
            continue
        if abs((source - day).days) > max_shift:
            continue
        for item in sorted(by_day[source], key=lambda item: priority_score(item, today)):
            if pulled >= capacity or load[source] <= daily_target:
                break
            _move(item, source, day, load, by_day, moves)
            pulled += 1

    if pulled:
        logger.debug(f"{day}: pulled in {pulled} items from busier days.")


def plan_rebalance(
    items: Sequence[ReviewItem],
    daily_target: int,
    today: date,
    days: int = DEFAULT_WINDOW_DAYS,
    max_shift: int = DEFAULT_MAX_SHIFT_DAYS,
) -> RebalancePlan:
    """
    Plan moves for items due in the `days`-day window starting today.

    Days are visited in order. A day above 120% of the target pushes some
    of its lowest-priority items to nearby days; a day below 30% of the
    target (and more than ten items short) pulls items in from nearby days
    that are over target. Items outside the window are ignored, no item is
    moved before tomorrow or further than `max_shift` days, and an item is
    moved at most once.
    """
    window = [today + timedelta(days=i) for i in range(days)]
    load: Dict[date, int] = {day: 0 for day in window}
    by_day: Dict[date, List[ReviewItem]] = defaultdict(list)
    for item in items:
        if item.next_review_at is None:
            continue
        day = item.next_review_at.date()
        if day in load:
            load[day] += 1
            by_day[day].append(item)

    load_before = dict(load)
    moves: List[RebalanceMove] = []
    earliest = today + timedelta(days=1)

    for day in window:
        if load[day] > daily_target * OVERLOAD_FACTOR:
            _spread_overloaded_day(
                day, load, by_day, moves, daily_target, max_shift, earliest, today
            )
        elif (
            day >= earliest
            and load[day] < daily_target * UNDERLOAD_FACTOR
            and load[day] < daily_target - UNDERLOAD_MIN_GAP
        ):
            _fill_quiet_day(day, window, load, by_day, moves, daily_target, max_shift, today)

    plan = RebalancePlan(
        daily_target=daily_target,
        load_before=load_before,
        load_after=load,
        moves=moves,
    )
    logger.info(
        f"Rebalance plan: {len(moves)} moves, std dev "
        f"{plan.std_dev_before:.2f} -> {plan.std_dev_after:.2f}"
    )
    return plan


def build_rebalance_plan(
    db: MistakeDatabase,
    daily_target: Optional[int] = None,
    days: int = DEFAULT_WINDOW_DAYS,
    max_shift: int = DEFAULT_MAX_SHIFT_DAYS,
    today: Optional[date] = None,
) -> RebalancePlan:
    """Plan against the items stored in the database."""
    start = today or datetime.now(timezone.utc).date()
    target = daily_target or db.get_settings().daily_target
    items = db.get_items_scheduled_between(start, start + timedelta(days=days - 1))
    return plan_rebalance(items, target, start, days=days, max_shift=max_shift)


def apply_rebalance(db: MistakeDatabase, plan: RebalancePlan) -> int:
    """Write the planned dates. Returns the number of items moved."""
    if not plan.moves:
        return 0
    return db.update_next_review_dates(
        {move.item_id: move.new_review_at for move in plan.moves}
    )
