"""
DuckDB database interactions for mistakebook.
Implements the MistakeDatabase facade over review items, review logs and
user settings.
"""

import duckdb
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Union, cast
from ..exceptions import (
    DatabaseConnectionError,
    DatabaseError,
    ItemNotFoundError,
    ItemOperationError,
    MarshallingError,
    ReviewOperationError,
    SettingsOperationError,
)

from datetime import datetime, date, time, timedelta, timezone
import logging
from . import db_utils

from ..constants import DEFAULT_DAILY_TARGET, RETIRED_SENTINEL
from ..models import ItemKind, ItemStatus, MistakeCategory, ReviewItem, ReviewLog, UserSettings
from .connection import ConnectionHandler
from .schema_manager import SchemaManager

# --- Logging Setup ---
logger = logging.getLogger(__name__)

# --- Helper Functions ---


def _rows_to_dicts(cursor: duckdb.DuckDBPyConnection) -> List[Dict[str, Any]]:
    """Convert cursor results to list of dictionaries using column names."""
    rows = cursor.fetchall()
    if not rows:
        return []
    description = cursor.description
    if description is None:
        return []
    columns = [desc[0] for desc in description]
    return [dict(zip(columns, row, strict=True)) for row in rows]


def _day_start(day: date) -> datetime:
    """Naive UTC midnight of the given day, as stored in the database."""
    return datetime.combine(day, time.min)


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


class MistakeDatabase:
    """
    Acts as a Facade for the database subsystem, providing a simple, high-level
    interface for review items, their review history and user settings.

    It coordinates the ConnectionHandler, SchemaManager, and data marshalling
    utilities. Intended for use as a context manager.
    """

    def __init__(self, db_path: Union[str, Path], read_only: bool = False):
        """
        Args:
            db_path: Path to the database file. Use ':memory:' for an in-memory database.
            read_only: If True, open the database in read-only mode.
        """
        self._handler = ConnectionHandler(db_path=db_path, read_only=read_only)
        self._schema_manager = SchemaManager(self._handler)
        logger.info(
            f"MistakeDatabase initialized for DB at: {self._handler.db_path_resolved}"
        )

    @property
    def db_path_resolved(self) -> Path:
        return self._handler.db_path_resolved

    @property
    def read_only(self) -> bool:
        return self._handler.read_only

    def get_connection(self) -> duckdb.DuckDBPyConnection:
        return self._handler.get_connection()

    def close_connection(self) -> None:
        self._handler.close_connection()

    def __enter__(self) -> "MistakeDatabase":
        """
        Open the connection and create the schema if a new writable database
        was just created.
        """
        self.get_connection()
        if self._handler.is_new_db and (
            not self._handler.read_only or self._handler.is_memory
        ):
            self.initialize_schema()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Ensures the connection is closed on exiting the context."""
        self.close_connection()

    def initialize_schema(self, force_recreate_tables: bool = False) -> None:
        self._schema_manager.initialize_schema(
            force_recreate_tables=force_recreate_tables
        )

    # --- Transactions ---

    def _require_writable(self, action: str) -> None:
        if self.read_only:
            raise DatabaseConnectionError(f"Cannot {action} in read-only mode.")

    @contextmanager
    def _transaction(self, description: str) -> Iterator[duckdb.DuckDBPyConnection]:
        """
        Yields a cursor inside BEGIN/COMMIT. Any exception rolls the
        transaction back and propagates unchanged.
        """
        conn = self.get_connection()
        with conn.cursor() as cursor:
            cursor.begin()
            try:
                yield cursor
            except Exception as e:
                logger.error(f"Error during {description}: {e}")
                try:
                    cursor.rollback()
                    logger.info(f"Transaction rolled back due to error in {description}.")
                except duckdb.Error as rb_err:
                    # Log the rollback error but still raise the original,
                    # more informative error.
                    logger.error(f"Failed to rollback transaction: {rb_err}")
                raise
            cursor.commit()

    # --- Item Operations ---
    # fmt: off
    _INSERT_ITEM_SQL = f"""
        INSERT INTO review_items ({", ".join(db_utils.ITEM_COLUMNS)})
        VALUES ({", ".join(f"${i}" for i in range(1, len(db_utils.ITEM_COLUMNS) + 1))});
        """
    # fmt: on

    def add_item(self, item: ReviewItem) -> ReviewItem:
        """
        Insert a single, already scheduled item.

        Raises:
            ItemOperationError: If the item has no next_review_at, its id
                already exists, or the insert fails.
        """
        self.add_items_batch([item])
        return item

    def add_items_batch(self, items: Sequence[ReviewItem]) -> int:
        """
        Insert a sequence of items in a single transaction.

        Returns:
            int: Number of items inserted; an empty sequence is a no-op.

        Raises:
            ItemOperationError: If any item is unscheduled or the insert fails.
                Nothing is written in that case.
        """
        self._require_writable("add items")
        if not items:
            return 0

        unscheduled = [str(item.id) for item in items if item.next_review_at is None]
        if unscheduled:
            raise ItemOperationError(
                f"Items must be scheduled before they are stored: {', '.join(unscheduled)}"
            )

        params_list = db_utils.items_to_db_params_list(items)
        try:
            with self._transaction("batch item insert") as cursor:
                cursor.executemany(self._INSERT_ITEM_SQL, params_list)
        except duckdb.Error as e:
            raise ItemOperationError(
                f"Batch item insert failed: {e}", original_exception=e
            ) from e

        logger.info(f"Inserted {len(params_list)} review items.")
        return len(params_list)

    def get_item(self, item_id: uuid.UUID) -> Optional[ReviewItem]:
        """
        Fetches an item by its id.

        Returns:
            ReviewItem | None: The item, or `None` if no such id exists.

        Raises:
            ItemOperationError: If a database error occurs or the row cannot
                be parsed.
        """
        conn = self.get_connection()
        sql = "SELECT * FROM review_items WHERE id = $1;"
        try:
            cursor = conn.execute(sql, (item_id,))
            rows = _rows_to_dicts(cursor)
        except duckdb.Error as e:
            logger.error(f"Error fetching item {item_id}: {e}")
            raise ItemOperationError(
                f"Failed to fetch item: {e}", original_exception=e
            ) from e
        if not rows:
            return None
        try:
            return db_utils.db_row_to_item(rows[0])
        except MarshallingError as e:
            raise ItemOperationError(
                f"Failed to parse item {item_id} from database.",
                original_exception=e,
            ) from e

    def get_items(
        self,
        status: Optional[ItemStatus] = None,
        kind: Optional[ItemKind] = None,
        category: Optional[MistakeCategory] = None,
        limit: Optional[int] = None,
    ) -> List[ReviewItem]:
        """
        Retrieve items, optionally filtered, oldest first.

        Raises:
            ItemOperationError: If the query fails or rows cannot be parsed.
        """
        if limit == 0:
            return []
        conditions: List[str] = []
        params: List[Any] = []
        for column, value in (("status", status), ("kind", kind), ("category", category)):
            if value is not None:
                params.append(value.value)
                conditions.append(f"{column} = ${len(params)}")

        sql = "SELECT * FROM review_items"
        if conditions:
            sql += " WHERE " + " AND ".join(conditions)
        sql += " ORDER BY created_at ASC, id ASC"
        if limit is not None and limit > 0:
            params.append(limit)
            sql += f" LIMIT ${len(params)}"

        return self._fetch_items(sql, params, "items")

    def _fetch_items(self, sql: str, params: Sequence[Any], what: str) -> List[ReviewItem]:
        conn = self.get_connection()
        try:
            cursor = conn.execute(sql, list(params))
            rows = _rows_to_dicts(cursor)
        except duckdb.Error as e:
            logger.error(f"Error fetching {what}: {e}")
            raise ItemOperationError(
                f"Failed to fetch {what}: {e}", original_exception=e
            ) from e
        try:
            return [db_utils.db_row_to_item(cast(Dict[str, Any], row)) for row in rows]
        except MarshallingError as e:
            raise ItemOperationError(
                f"Failed to parse {what} from database.", original_exception=e
            ) from e

    def get_due_items(
        self,
        until: datetime,
        overdue_only: bool = False,
        limit: Optional[int] = None,
    ) -> List[ReviewItem]:
        """
        Active items scheduled strictly before `until`, earliest first. An item
        whose health check falls before `until` is due as well.

        With `overdue_only`, the cutoff becomes the start of `until`'s UTC day,
        so only items that should have been reviewed on an earlier day are
        returned.
        """
        if limit == 0:
            return []
        cutoff = db_utils.to_db_timestamp(until)
        if overdue_only:
            cutoff = _day_start(cutoff.date())

        params: List[Any] = [ItemStatus.ACTIVE.value, cutoff]
        sql = """
            SELECT * FROM review_items
            WHERE status = $1
              AND (next_review_at < $2 OR health_check_at < $2)
            ORDER BY LEAST(next_review_at, COALESCE(health_check_at, next_review_at)) ASC,
                     created_at ASC
        """
        if limit is not None and limit > 0:
            params.append(limit)
            sql += " LIMIT $3"
        return self._fetch_items(sql, params, "due items")

    def get_items_scheduled_between(self, start: date, end: date) -> List[ReviewItem]:
        """Active items due on any day in [start, end] (UTC days, inclusive)."""
        sql = """
            SELECT * FROM review_items
            WHERE status = $1 AND next_review_at >= $2 AND next_review_at < $3
            ORDER BY next_review_at ASC, created_at ASC
        """
        params = [ItemStatus.ACTIVE.value, _day_start(start), _day_start(end + timedelta(days=1))]
        return self._fetch_items(sql, params, "scheduled items")

    def get_all_original_texts(self) -> Dict[str, uuid.UUID]:
        """
        Map each normalized original text (lowercased, whitespace collapsed)
        to the id of the first item carrying it.
        """
        conn = self.get_connection()
        sql = "SELECT original_text, id FROM review_items ORDER BY created_at ASC;"
        try:
            with conn.cursor() as cursor:
                cursor.execute(sql)
                results = cursor.fetchall()
        except duckdb.Error as e:
            logger.error(f"Error fetching original texts: {e}")
            raise ItemOperationError(
                "Could not fetch original texts.", original_exception=e
            ) from e

        text_to_id: Dict[str, uuid.UUID] = {}
        for original_text, item_id in results:
            text_to_id.setdefault(normalize_text(original_text), item_id)
        return text_to_id

    def _set_status(
        self,
        item_id: uuid.UUID,
        status: ItemStatus,
        next_review_at: datetime,
    ) -> ReviewItem:
        sql = "UPDATE review_items SET status = $1, next_review_at = $2 WHERE id = $3;"
        try:
            with self._transaction(f"status change of {item_id}") as cursor:
                self._ensure_item_exists(cursor, item_id)
                cursor.execute(
                    sql,
                    (status.value, db_utils.to_db_timestamp(next_review_at), item_id),
                )
        except duckdb.Error as e:
            raise ItemOperationError(
                f"Failed to set status of item {item_id}: {e}", original_exception=e
            ) from e
        return self._get_existing_item(item_id)

    def retire_item(self, item_id: uuid.UUID) -> ReviewItem:
        """
        Take an item out of rotation. It keeps its history and stage but is
        parked at the far-future sentinel date.

        Raises:
            ItemNotFoundError: If no item has this id.
        """
        self._require_writable("retire items")
        item = self._set_status(item_id, ItemStatus.RETIRED, RETIRED_SENTINEL)
        logger.info(f"Retired item {item_id}.")
        return item

    def reactivate_item(
        self, item_id: uuid.UUID, next_review_at: Optional[datetime] = None
    ) -> ReviewItem:
        """
        Put a retired item back into rotation, due at `next_review_at`
        (default: now).

        Raises:
            ItemNotFoundError: If no item has this id.
        """
        self._require_writable("reactivate items")
        due = next_review_at or datetime.now(timezone.utc)
        item = self._set_status(item_id, ItemStatus.ACTIVE, due)
        logger.info(f"Reactivated item {item_id}, due {due.isoformat()}.")
        return item

    def delete_item(self, item_id: uuid.UUID) -> None:
        """
        Delete an item together with its review history.

        Raises:
            ItemNotFoundError: If no item has this id.
        """
        self._require_writable("delete items")
        try:
            with self._transaction(f"delete of {item_id}") as cursor:
                self._ensure_item_exists(cursor, item_id)
                cursor.execute("DELETE FROM reviews WHERE item_id = $1;", (item_id,))
                cursor.execute("DELETE FROM review_items WHERE id = $1;", (item_id,))
        except duckdb.Error as e:
            raise ItemOperationError(
                f"Failed to delete item {item_id}: {e}", original_exception=e
            ) from e
        logger.info(f"Deleted item {item_id} and its review history.")

    def update_next_review_dates(self, updates: Mapping[uuid.UUID, datetime]) -> int:
        """
        Move items to new review dates in one transaction. Scheduling state
        other than the date is left alone.

        Returns:
            int: Number of items updated.
        """
        self._require_writable("reschedule items")
        if not updates:
            return 0
        params_list = [
            (db_utils.to_db_timestamp(due), item_id) for item_id, due in updates.items()
        ]
        try:
            with self._transaction("batch reschedule") as cursor:
                for _, item_id in params_list:
                    self._ensure_item_exists(cursor, item_id)
                cursor.executemany(
                    "UPDATE review_items SET next_review_at = $1 WHERE id = $2;",
                    params_list,
                )
        except duckdb.Error as e:
            raise ItemOperationError(
                f"Batch reschedule failed: {e}", original_exception=e
            ) from e
        logger.info(f"Rescheduled {len(params_list)} items.")
        return len(params_list)

    def _ensure_item_exists(self, cursor, item_id: uuid.UUID) -> None:
        found = cursor.execute(
            "SELECT 1 FROM review_items WHERE id = $1;", (item_id,)
        ).fetchone()
        if not found:
            raise ItemNotFoundError(f"Item {item_id} not found.")

    def _get_existing_item(self, item_id: uuid.UUID) -> ReviewItem:
        item = self.get_item(item_id)
        if item is None:
            # Not reachable if the preceding transaction succeeded.
            raise ItemNotFoundError(f"Item {item_id} disappeared after update.")
        return item

    # --- Review Operations ---
    def _insert_review_and_get_id(self, cursor, log: ReviewLog) -> int:
        sql = f"""
        INSERT INTO reviews ({", ".join(db_utils.REVIEW_INSERT_COLUMNS)})
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
        RETURNING review_id;
        """
        cursor.execute(sql, db_utils.review_log_to_db_params_tuple(log))
        result = cursor.fetchone()
        if not result:
            raise ReviewOperationError("Failed to retrieve review_id after insertion.")
        return result[0]

    def _update_item_after_review(self, cursor, item: ReviewItem) -> None:
        sql = """
        UPDATE review_items
        SET stage = $1, last_score = $2, consecutive_hard_count = $3,
            previous_interval = $4, review_count = $5, last_reviewed_at = $6,
            next_review_at = $7, health_check_at = $8
        WHERE id = $9;
        """
        params = (
            item.stage,
            int(item.last_score) if item.last_score is not None else None,
            item.consecutive_hard_count,
            item.previous_interval,
            item.review_count,
            db_utils.to_db_timestamp(item.last_reviewed_at),
            db_utils.to_db_timestamp(item.next_review_at),
            db_utils.to_db_timestamp(item.health_check_at),
            item.id,
        )
        cursor.execute(sql, params)

    def apply_review(self, log: ReviewLog, item: ReviewItem) -> ReviewItem:
        """
        Atomically append a review log entry and write the item's new
        scheduling state.

        Parameters:
            log: The review event; `log.item_id` must equal `item.id`.
            item: The item carrying the state computed for this review.

        Returns:
            ReviewItem: The item as stored after the update.

        Raises:
            DatabaseConnectionError: If the database is read-only.
            ItemNotFoundError: If the item does not exist.
            ReviewOperationError: If the transaction fails for any other reason.
        """
        self._require_writable("add review")
        if log.item_id != item.id:
            raise ReviewOperationError(
                f"Review log item {log.item_id} does not match item {item.id}."
            )

        try:
            with self._transaction("review and item update") as cursor:
                self._ensure_item_exists(cursor, item.id)
                review_id = self._insert_review_and_get_id(cursor, log)
                self._update_item_after_review(cursor, item)
        except DatabaseError:
            raise
        except Exception as e:
            raise ReviewOperationError(
                f"Failed to add review and update item: {e}",
                original_exception=e,
            ) from e

        log.review_id = review_id
        return self._get_existing_item(item.id)

    def _fetch_reviews(self, sql: str, params: Sequence[Any], what: str) -> List[ReviewLog]:
        conn = self.get_connection()
        try:
            cursor = conn.execute(sql, list(params))
            rows = _rows_to_dicts(cursor)
        except duckdb.Error as e:
            logger.error(f"Error fetching {what}: {e}")
            raise ReviewOperationError(
                f"Failed to get {what}: {e}", original_exception=e
            ) from e
        try:
            return [db_utils.db_row_to_review_log(row) for row in rows]
        except MarshallingError as e:
            raise ReviewOperationError(
                f"Failed to parse {what} from database.", original_exception=e
            ) from e

    def get_reviews_for_item(
        self, item_id: uuid.UUID, order_by_ts_desc: bool = True
    ) -> List[ReviewLog]:
        order_clause = (
            "ORDER BY ts DESC, review_id DESC"
            if order_by_ts_desc
            else "ORDER BY ts ASC, review_id ASC"
        )
        sql = f"SELECT * FROM reviews WHERE item_id = $1 {order_clause};"
        return self._fetch_reviews(sql, (item_id,), f"reviews for item {item_id}")

    def get_reviews_for_session(self, session_uuid: uuid.UUID) -> List[ReviewLog]:
        sql = "SELECT * FROM reviews WHERE session_uuid = $1 ORDER BY ts ASC, review_id ASC;"
        return self._fetch_reviews(sql, (session_uuid,), f"reviews for session {session_uuid}")

    # --- Forecast and calendar ---

    def get_calendar_counts(self, start: date, end: date) -> Dict[date, int]:
        """
        Number of active items due on each UTC day in [start, end]. Every day
        in the range is present, empty days with 0.
        """
        if end < start:
            return {}
        sql = """
            SELECT CAST(next_review_at AS DATE) AS day, COUNT(*) AS n
            FROM review_items
            WHERE status = $1 AND next_review_at >= $2 AND next_review_at < $3
            GROUP BY day;
        """
        params = (ItemStatus.ACTIVE.value, _day_start(start), _day_start(end + timedelta(days=1)))
        conn = self.get_connection()
        try:
            rows = conn.execute(sql, params).fetchall()
        except duckdb.Error as e:
            logger.error(f"Error counting items between {start} and {end}: {e}")
            raise ItemOperationError(
                f"Failed to compute calendar counts: {e}", original_exception=e
            ) from e

        counts = {start + timedelta(days=i): 0 for i in range((end - start).days + 1)}
        for day, n in rows:
            counts[day] = n
        return counts

    def get_load_forecast(
        self, horizon_days: int, today: Optional[date] = None
    ) -> Dict[date, int]:
        """
        Items already due per day for `horizon_days` days starting today,
        retired items excluded.
        """
        if horizon_days < 1:
            return {}
        start = today or _utc_today()
        return self.get_calendar_counts(start, start + timedelta(days=horizon_days - 1))

    # --- Settings ---

    def get_settings(self, default_daily_target: int = DEFAULT_DAILY_TARGET) -> UserSettings:
        """Stored settings, or defaults if none were ever saved."""
        conn = self.get_connection()
        try:
            cursor = conn.execute(
                "SELECT daily_target, updated_at FROM user_settings WHERE settings_id = 1;"
            )
            rows = _rows_to_dicts(cursor)
        except duckdb.Error as e:
            logger.error(f"Error reading settings: {e}")
            raise SettingsOperationError(
                f"Failed to read settings: {e}", original_exception=e
            ) from e
        if not rows:
            return UserSettings(daily_target=default_daily_target)
        try:
            return db_utils.db_row_to_settings(rows[0])
        except MarshallingError as e:
            raise SettingsOperationError(
                "Stored settings are invalid.", original_exception=e
            ) from e

    def update_settings(self, settings: UserSettings) -> UserSettings:
        self._require_writable("update settings")
        settings.updated_at = datetime.now(timezone.utc)
        sql = """
            INSERT INTO user_settings (settings_id, daily_target, updated_at)
            VALUES (1, $1, $2)
            ON CONFLICT (settings_id) DO UPDATE SET
                daily_target = EXCLUDED.daily_target,
                updated_at = EXCLUDED.updated_at;
        """
        try:
            with self._transaction("settings update") as cursor:
                cursor.execute(
                    sql,
                    (settings.daily_target, db_utils.to_db_timestamp(settings.updated_at)),
                )
        except duckdb.Error as e:
            raise SettingsOperationError(
                f"Failed to update settings: {e}", original_exception=e
            ) from e
        logger.info(f"Daily target set to {settings.daily_target}.")
        return settings

    # --- Stats ---

    def get_database_stats(self, today: Optional[date] = None) -> Dict[str, Any]:
        """
        Aggregate counts over items and reviews.

        Returns:
            dict with keys total_items, active_items, retired_items,
            total_reviews, due_today (active items due before tomorrow,
            overdue included), reviews_today, by_kind and by_category
            (active items per value).
        """
        day = today or _utc_today()
        tomorrow = _day_start(day + timedelta(days=1))
        active = ItemStatus.ACTIVE.value
        conn = self.get_connection()
        try:
            totals = conn.execute(
                """
                SELECT
                    COUNT(*),
                    COUNT(CASE WHEN status = $1 THEN 1 END),
                    COUNT(CASE WHEN status = $1 AND next_review_at < $2 THEN 1 END)
                FROM review_items;
                """,
                (active, tomorrow),
            ).fetchone()
            reviews = conn.execute(
                """
                SELECT COUNT(*), COUNT(CASE WHEN ts >= $1 AND ts < $2 THEN 1 END)
                FROM reviews;
                """,
                (_day_start(day), tomorrow),
            ).fetchone()
            by_kind = conn.execute(
                "SELECT kind, COUNT(*) FROM review_items WHERE status = $1 GROUP BY kind;",
                (active,),
            ).fetchall()
            by_category = conn.execute(
                "SELECT category, COUNT(*) FROM review_items WHERE status = $1 GROUP BY category;",
                (active,),
            ).fetchall()
        except duckdb.Error as e:
            logger.error(f"Could not retrieve database stats due to an error: {e}")
            raise ItemOperationError(
                "Could not retrieve database stats.", original_exception=e
            ) from e

        total_items, active_items, due_today = totals if totals else (0, 0, 0)
        total_reviews, reviews_today = reviews if reviews else (0, 0)
        return {
            "total_items": total_items,
            "active_items": active_items,
            "retired_items": total_items - active_items,
            "total_reviews": total_reviews,
            "due_today": due_today,
            "reviews_today": reviews_today,
            "by_kind": {kind: count for kind, count in by_kind},
            "by_category": {category: count for category, count in by_category},
        }


def normalize_text(text: str) -> str:
    """Lowercase and collapse whitespace, for duplicate detection."""
    return " ".join(str(text).lower().split())
