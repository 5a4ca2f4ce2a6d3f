"""
Utility functions for data marshalling between Pydantic models and database formats.
This module helps decouple the core database logic from the specifics of data conversion.

DuckDB stores every timestamp as a naive UTC TIMESTAMP; values are made naive
on the way in and get their UTC tzinfo back on the way out.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple
from pydantic import ValidationError

from ..models import ItemKind, ItemStatus, MistakeCategory, ReviewItem, ReviewLog, Score, UserSettings, ensure_utc
from ..exceptions import MarshallingError
import shutil
from datetime import datetime, timezone


ITEM_COLUMNS: Tuple[str, ...] = (
    "id",
    "kind",
    "category",
    "original_text",
    "corrected_text",
    "explanation",
    "status",
    "stage",
    "last_score",
    "consecutive_hard_count",
    "previous_interval",
    "review_count",
    "created_at",
    "last_reviewed_at",
    "next_review_at",
    "health_check_at",
)

REVIEW_INSERT_COLUMNS: Tuple[str, ...] = (
    "item_id",
    "session_uuid",
    "ts",
    "score",
    "stage_before",
    "stage_after",
    "raw_interval",
    "final_interval",
    "next_review_at",
    "health_check_at",
    "requeue_in_session",
    "resp_ms",
)

_ITEM_TIMESTAMP_FIELDS = ("created_at", "last_reviewed_at", "next_review_at", "health_check_at")
_REVIEW_TIMESTAMP_FIELDS = ("ts", "next_review_at", "health_check_at")


def to_db_timestamp(value: Optional[datetime]) -> Optional[datetime]:
    """Converts an aware (or naive, assumed UTC) datetime to naive UTC."""
    if value is None:
        return None
    return ensure_utc(value).replace(tzinfo=None)


def from_db_timestamp(value: Optional[datetime]) -> Optional[datetime]:
    """Attaches UTC to a naive timestamp read back from DuckDB."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def item_to_db_params(item: ReviewItem) -> Tuple:
    """
    Serialize a ReviewItem into a tuple ordered like ITEM_COLUMNS.
    """
    return (
        item.id,
        item.kind.value,
        item.category.value,
        item.original_text,
        item.corrected_text,
        item.explanation,
        item.status.value,
        item.stage,
        int(item.last_score) if item.last_score is not None else None,
        item.consecutive_hard_count,
        item.previous_interval,
        item.review_count,
        to_db_timestamp(item.created_at),
        to_db_timestamp(item.last_reviewed_at),
        to_db_timestamp(item.next_review_at),
        to_db_timestamp(item.health_check_at),
    )


def items_to_db_params_list(items: Sequence[ReviewItem]) -> List[Tuple]:
    return [item_to_db_params(item) for item in items]


def transform_db_row_for_item(row_dict: Dict[str, Any]) -> Dict[str, Any]:
    """
    Prepare a database row dictionary for constructing a ReviewItem model.

    Enum columns are mapped back to their enums and timestamps regain UTC.
    """
    data = row_dict.copy()
    data["kind"] = ItemKind(data["kind"])
    data["category"] = MistakeCategory(data["category"])
    data["status"] = ItemStatus(data["status"])
    if data.get("last_score") is not None:
        data["last_score"] = Score(data["last_score"])
    for field in _ITEM_TIMESTAMP_FIELDS:
        data[field] = from_db_timestamp(data.get(field))
    return data


def db_row_to_item(row_dict: Dict[str, Any]) -> ReviewItem:
    """
    Create a ReviewItem model from a database row dictionary.

    Raises:
        MarshallingError: If the row cannot be validated into a ReviewItem.
    """
    try:
        data = transform_db_row_for_item(row_dict)
        return ReviewItem(**data)
    except (ValidationError, ValueError, KeyError) as e:
        raise MarshallingError(
            f"Failed to parse review item from DB row: {row_dict}. Error: {e}",
            original_exception=e,
        ) from e


def review_log_to_db_params_tuple(log: ReviewLog) -> Tuple:
    """
    Convert a ReviewLog into a tuple ordered like REVIEW_INSERT_COLUMNS.
    """
    return (
        log.item_id,
        log.session_uuid,
        to_db_timestamp(log.ts),
        int(log.score),
        log.stage_before,
        log.stage_after,
        log.raw_interval,
        log.final_interval,
        to_db_timestamp(log.next_review_at),
        to_db_timestamp(log.health_check_at),
        log.requeue_in_session,
        log.resp_ms,
    )


def db_row_to_review_log(row_dict: Dict[str, Any]) -> ReviewLog:
    """Converts a database row dictionary to a ReviewLog Pydantic model."""
    data = row_dict.copy()
    for field in _REVIEW_TIMESTAMP_FIELDS:
        data[field] = from_db_timestamp(data.get(field))
    try:
        return ReviewLog(**data)
    except ValidationError as e:
        raise MarshallingError(
            f"Data validation failed for review log: {e}", original_exception=e
        ) from e


def db_row_to_settings(row_dict: Dict[str, Any]) -> UserSettings:
    try:
        return UserSettings(
            daily_target=row_dict["daily_target"],
            updated_at=from_db_timestamp(row_dict["updated_at"]),
        )
    except ValidationError as e:
        raise MarshallingError(
            f"Data validation failed for user settings: {e}", original_exception=e
        ) from e


def find_latest_backup(db_path: Path) -> Optional[Path]:
    """
    Locate the most recent backup file for the given database path.

    Parameters:
        db_path (Path): Path to the main database file; the function
            looks for backups in a "backups" subdirectory of
            db_path.parent.

    Returns:
        Path or None: Path to the latest backup file, or `None` if no
            backups are found.
    """
    backup_dir = db_path.parent / "backups"
    if not backup_dir.exists():
        return None

    backup_files = list(backup_dir.glob(f"{db_path.stem}-backup-*{db_path.suffix}"))
    if not backup_files:
        return None

    # Timestamped names sort chronologically.
    return max(backup_files, key=lambda p: p.name)


def backup_database(db_path: Path) -> Path:
    """
    Creates a timestamped backup of the database file.

    Args:
        db_path: The path to the database file.

    Returns:
        The path to the created backup file, or `db_path` itself if there
        is nothing to back up yet.
    """
    if not db_path.exists():
        return db_path

    backup_dir = db_path.parent / "backups"
    backup_dir.mkdir(exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S-%f")
    backup_filename = f"{db_path.stem}-backup-{timestamp}{db_path.suffix}"
    backup_path = backup_dir / backup_filename

    shutil.copy2(db_path, backup_path)
    return backup_path
