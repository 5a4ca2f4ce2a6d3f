"""
Backlog priority scoring.

Independent of scheduling: only decides which due items are shown first
when the backlog exceeds the daily target.
"""

from datetime import date, datetime, timezone
from typing import Dict, Iterable, List, Optional

from .constants import (
    PRIORITY_HARD_WEIGHT,
    PRIORITY_OVERDUE_CAP,
    PRIORITY_OVERDUE_PER_DAY,
    PRIORITY_STAGE_PIVOT,
    PRIORITY_STAGE_WEIGHT,
    PRIORITY_UNSET_SCORE_WEIGHT,
)
from .models import ReviewItem, Score

LAST_SCORE_WEIGHTS: Dict[Score, int] = {
    Score.Forgot: 40,
    Score.Hard: 30,
    Score.Good: 20,
    Score.Perfect: 5,
}

_EARLIEST = datetime.min.replace(tzinfo=timezone.utc)


def overdue_days(next_review_at: Optional[datetime], today: date) -> int:
    if next_review_at is None:
        return 0
    return max(0, (today - next_review_at.date()).days)


def priority_score(item: ReviewItem, today: date) -> int:
    """Higher means surface earlier."""
    if item.last_score is None:
        score = PRIORITY_UNSET_SCORE_WEIGHT
    else:
        score = LAST_SCORE_WEIGHTS[Score(item.last_score)]

    score += min(
        overdue_days(item.due_at, today) * PRIORITY_OVERDUE_PER_DAY,
        PRIORITY_OVERDUE_CAP,
    )
    score += max(0, PRIORITY_STAGE_PIVOT - item.stage) * PRIORITY_STAGE_WEIGHT
    score += item.consecutive_hard_count * PRIORITY_HARD_WEIGHT
    return score


def rank_by_priority(items: Iterable[ReviewItem], today: date) -> List[ReviewItem]:
    """Sort items by descending priority, earliest scheduled first on ties."""
    return sorted(
        items,
        key=lambda item: (
            -priority_score(item, today),
            item.due_at or _EARLIEST,
        ),
    )
