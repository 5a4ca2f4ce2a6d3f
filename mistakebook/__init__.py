"""mistakebook - adaptive review scheduling for corrected sentences."""

from .models import ItemKind, ItemStatus, MistakeCategory, ReviewItem, ReviewLog, Score, UserSettings
from .ladder import DEFAULT_LADDER, IntervalLadder
from .scheduler import LadderScheduler, SchedulerConfig, SchedulerOutput
from .db import MistakeDatabase

__all__ = [
    "ItemKind",
    "ItemStatus",
    "MistakeCategory",
    "ReviewItem",
    "ReviewLog",
    "Score",
    "UserSettings",
    "DEFAULT_LADDER",
    "IntervalLadder",
    "LadderScheduler",
    "SchedulerConfig",
    "SchedulerOutput",
    "MistakeDatabase",
]
