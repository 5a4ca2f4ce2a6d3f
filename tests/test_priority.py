from datetime import datetime, timedelta, timezone

from mistakebook.models import Score
from mistakebook.priority import overdue_days, priority_score, rank_by_priority

FIXED_NOW = datetime(2024, 3, 10, 9, 30, tzinfo=timezone.utc)

TODAY = FIXED_NOW.date()


def test_never_reviewed_item(make_item):
    item = make_item(due_in_days=0)
    # unset score 15, not overdue, (10 - 0) * 2 for stage
    assert priority_score(item, TODAY) == 35


def test_components_add_up(make_item):
    item = make_item(
        due_in_days=-5,
        last_score=Score.Forgot,
        stage=3,
        consecutive_hard_count=1,
    )
    assert priority_score(item, TODAY) == 40 + 15 + 14 + 5


def test_overdue_contribution_is_capped(make_item):
    item = make_item(due_in_days=-40, last_score=Score.Good, stage=12)
    assert priority_score(item, TODAY) == 20 + 30


def test_high_stage_adds_nothing(make_item):
    item = make_item(due_in_days=0, last_score=Score.Perfect, stage=15)
    assert priority_score(item, TODAY) == 5


def test_overdue_days():
    assert overdue_days(None, TODAY) == 0
    assert overdue_days(FIXED_NOW + timedelta(days=2), TODAY) == 0
    assert overdue_days(FIXED_NOW - timedelta(days=3), TODAY) == 3


def test_rank_orders_by_descending_priority(make_item):
    weak = make_item(last_score=Score.Forgot, stage=1)
    strong = make_item(last_score=Score.Perfect, stage=8)
    middle = make_item(last_score=Score.Good, stage=4)
    ranked = rank_by_priority([strong, middle, weak], TODAY)
    assert [i.id for i in ranked] == [weak.id, middle.id, strong.id]


def test_rank_ties_go_to_earlier_schedule(make_item):
    later = make_item(due_in_days=0.5, last_score=Score.Good, stage=2)
    earlier = make_item(due_in_days=0.1, last_score=Score.Good, stage=2)
    assert priority_score(later, TODAY) == priority_score(earlier, TODAY)
    ranked = rank_by_priority([later, earlier], TODAY)
    assert [i.id for i in ranked] == [earlier.id, later.id]
