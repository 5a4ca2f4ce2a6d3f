import duckdb
import logging
from .connection import ConnectionHandler
from . import schema
from ..exceptions import DatabaseConnectionError, SchemaInitializationError
from .. import config as mistakebook_config

logger = logging.getLogger(__name__)

_TABLES_IN_DROP_ORDER = ("reviews", "user_settings", "review_items")


class SchemaManager:
    """Manages the database schema initialization and maintenance."""

    def __init__(self, handler: ConnectionHandler):
        self._handler = handler

    def initialize_schema(self, force_recreate_tables: bool = False) -> None:
        """
        Creates the schema inside a transaction. Skipped in read-only mode
        unless the database is in-memory. `force_recreate_tables` drops every
        table first and refuses to do so while items or reviews exist.
        """
        if self._handle_read_only_initialization(force_recreate_tables):
            return

        conn = self._handler.get_connection()
        try:
            with conn.cursor() as cursor:
                cursor.begin()
                if force_recreate_tables:
                    self._recreate_tables(cursor)
                cursor.execute(schema.DB_SCHEMA_SQL)
                cursor.commit()
            logger.info(f"Schema ready at {self._handler.db_path_resolved}.")
        except duckdb.Error as e:
            logger.error(f"Error initializing database schema at {self._handler.db_path_resolved}: {e}")
            try:
                conn.rollback()
            except duckdb.Error as rb_err:
                logger.debug(f"Rollback after schema failure skipped: {rb_err}")
            raise SchemaInitializationError(f"Failed to initialize schema: {e}", original_exception=e) from e

    def _handle_read_only_initialization(self, force_recreate_tables: bool) -> bool:
        """Returns True if initialization should be skipped."""
        if self._handler.read_only:
            if force_recreate_tables:
                raise DatabaseConnectionError("Cannot force_recreate_tables in read-only mode.")
            if not self._handler.is_memory:
                logger.warning("Attempting to initialize schema in read-only mode. Skipping.")
                return True
        return False

    def _perform_safety_check(self, cursor: duckdb.DuckDBPyConnection) -> None:
        """Refuses to drop tables that still hold items or reviews."""
        if self._handler.is_memory or mistakebook_config.settings.testing_mode:
            return

        existing = {
            row[0]
            for row in cursor.execute(
                "SELECT table_name FROM information_schema.tables"
            ).fetchall()
        }
        counts = {}
        for table in ("review_items", "reviews"):
            if table in existing:
                result = cursor.execute(f"SELECT COUNT(*) FROM {table}").fetchone()
                counts[table] = result[0] if result else 0

        item_count = counts.get("review_items", 0)
        review_count = counts.get("reviews", 0)
        if review_count > 0 or item_count > 0:
            error_msg = (
                f"Refusing to drop tables with existing data (items: {item_count}, "
                f"reviews: {review_count}). Use backup/restore instead."
            )
            logger.error(error_msg)
            raise ValueError(error_msg)

    def _recreate_tables(self, cursor: duckdb.DuckDBPyConnection) -> None:
        self._perform_safety_check(cursor)

        logger.warning(f"Forcing table recreation for {self._handler.db_path_resolved}. ALL EXISTING DATA WILL BE LOST.")
        for table in _TABLES_IN_DROP_ORDER:
            cursor.execute(f"DROP TABLE IF EXISTS {table} CASCADE;")
        cursor.execute("DROP SEQUENCE IF EXISTS review_seq;")
