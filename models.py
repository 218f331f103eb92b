#!/usr/bin/env python3
"""
Database models and operations for Feed Monitor.

This module contains all database-related classes and functions, providing a
clean separation between data access and the fetch/health/scrape pipeline.
All operations run on a single worker coroutine that owns the sqlite
connection; callers go through ``await db.execute('operation', **params)``.
"""

from os import path, access, R_OK
from time import time
from sqlite3 import connect, Row, Error
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Dict, List, Optional, Any, Tuple

from config import config, get_logger
from records import Item, Source, HEALTH_HEALTHY, HEALTH_PAUSED
from telemetry import get_tracer, trace_span

# Module-specific logger
logger = get_logger("models")
_tracer = get_tracer("db")

# Columns a config sync may overwrite. Health and schedule columns are owned by the scheduler.
SOURCE_CONFIG_COLUMNS = (
    'name',
    'feed_url',
    'website_url',
    'fetch_interval_minutes',
    'active',
    'auto_scrape',
    'scraping_enabled',
    'requires_javascript',
    'adaptive_fetching_enabled',
    'health_auto_pause_threshold',
    'items_retention_days',
    'max_items',
    'scraper_adapter',
    'min_scrape_interval_seconds',
)

SOURCE_HEALTH_COLUMNS = (
    'health_status',
    'consecutive_failure_count',
    'last_error_message',
    'last_fetched_at',
    'last_http_status',
)

ITEM_COLUMNS = ('title', 'url', 'published_at')

JOB_PENDING = 'pending'
JOB_PROCESSING = 'processing'
JOB_COMPLETED = 'completed'
JOB_FAILED = 'failed'
IN_FLIGHT_JOB_STATUSES = (JOB_PENDING, JOB_PROCESSING)


def _now(now: Optional[int] = None) -> int:
    return int(now) if now is not None else int(time())


def initialize_database(conn) -> None:
    """Initialize the database with the defined schema from SQL file."""
    cursor = conn.cursor()

    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='sources'")
        sources_table_exists = cursor.fetchone() is not None

        if not sources_table_exists:
            logger.info("Database is new or empty. Initializing schema.")
            schema_sql = _read_schema_file()
            cursor.executescript(schema_sql)
            conn.commit()
            logger.info("Database schema initialized successfully")
        else:
            logger.info("Database already exists with proper schema")
            # Run any necessary migrations
            _run_migrations(conn)

    except Exception as e:
        logger.error(f"Error initializing database: {e}")
        raise
    finally:
        cursor.close()


def _run_migrations(conn) -> None:
    """Run any necessary database migrations."""
    cursor = conn.cursor()

    try:
        # Migration 1: per-source minimum scrape interval
        cursor.execute("PRAGMA table_info(sources)")
        columns = [column[1] for column in cursor.fetchall()]
        if 'min_scrape_interval_seconds' not in columns:
            logger.info("Adding min_scrape_interval_seconds column to sources table")
            cursor.execute("ALTER TABLE sources ADD COLUMN min_scrape_interval_seconds INTEGER")
            conn.commit()
            logger.info("Migration completed: added min_scrape_interval_seconds column")

        # Migration 2: deferred scrape jobs
        cursor.execute("PRAGMA table_info(scrape_jobs)")
        columns = [column[1] for column in cursor.fetchall()]
        if 'not_before' not in columns:
            logger.info("Adding not_before column to scrape_jobs table")
            cursor.execute("ALTER TABLE scrape_jobs ADD COLUMN not_before INTEGER")
            conn.commit()
            logger.info("Migration completed: added not_before column")

    except Exception as e:
        logger.error(f"Error running migrations: {e}")
        raise
    finally:
        cursor.close()


def _read_schema_file() -> str:
    """Read the schema from the SQL file."""
    schema_path = config.SCHEMA_FILE_PATH

    try:
        if not path.isfile(schema_path):
            raise FileNotFoundError(f"Schema file not found at {schema_path}")

        if not access(schema_path, R_OK):
            raise PermissionError(f"No read permission for schema file at {schema_path}")

        file_size = path.getsize(schema_path)
        max_size = config.SCHEMA_FILE_SIZE_LIMIT_MB * 1024 * 1024
        if file_size > max_size:
            raise ValueError(f"Schema file too large: {file_size} bytes (limit: {max_size} bytes)")

        with open(schema_path, 'r') as f:
            return f.read()
    except Exception as e:
        logger.error(f"Error reading schema file: {e}")
        raise


class DatabaseQueue:
    """A queue for database operations to ensure thread safety."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None
        self._ready = Event()

    async def start(self) -> None:
        """Start the database worker and wait until the schema is in place."""
        if self.running:
            return

        self.running = True
        self.worker_task = create_task(self._worker())
        await self._ready.wait()
        if self.worker_task.done():
            # Schema setup failed; surface the error to the caller
            self.running = False
            self.worker_task.result()
        logger.info("Database worker started")

    async def stop(self) -> None:
        """Stop the database worker."""
        if not self.running:
            return

        self.running = False
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except CancelledError:
                pass

        if self.conn:
            self.conn.close()
            self.conn = None

        # Release any waiters so they do not hang on shutdown
        for event in self.events.values():
            event.set()
        self.events.clear()
        self.results.clear()
        self._ready.clear()

        logger.info("Database worker stopped")

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        if not path.isfile(self.db_path):
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")
        else:
            logger.info(f"Using existing database at {self.db_path}")

        try:
            self.conn = connect(self.db_path)
            self.conn.row_factory = Row
            self.conn.execute("PRAGMA foreign_keys = ON")
            initialize_database(self.conn)
        finally:
            self._ready.set()

        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    if not operation_name.startswith('_') and hasattr(self, operation_name):
                        method = getattr(self, operation_name)
                        result = method(**params)
                        self.results[operation_id] = {"result": result}
                    else:
                        self.results[operation_id] = {"error": f"Unknown operation: {operation_name}"}
                except Exception as e:
                    logger.error(f"Database operation error in {operation_name}: {e}")
                    self.results[operation_id] = {"error": str(e)}
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    self.queue.task_done()

            except CancelledError:
                logger.info("Database worker cancelled")
                break
            except Exception as e:
                logger.error(f"Unexpected error in database worker: {e}")

    @trace_span(
        "db.execute",
        tracer_name="db",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, operation_name, **params: {
            "db.operation": operation_name,
            "db.params.keys": ",".join(sorted(params.keys())) if params else "",
        },
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Execute a database operation."""
        if not self.running:
            raise Exception("Database worker is not running")

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()

            result = self.results.pop(operation_id, None)
            if result is None:
                raise Exception(f"Database worker stopped before completing {operation_name}")
            if "error" in result:
                raise Exception(result["error"])

            return result["result"]
        finally:
            self.events.pop(operation_id, None)

    # Source Operations
    def upsert_source(self, source: Dict[str, Any], now: Optional[int] = None) -> int:
        """Insert a source or refresh its configuration columns, keyed by slug.

        Health and schedule columns are left alone on update, so syncing the
        configuration never un-pauses a source.
        """
        current_time = _now(now)
        values = [source.get(column) for column in SOURCE_CONFIG_COLUMNS]
        columns = ', '.join(SOURCE_CONFIG_COLUMNS)
        placeholders = ', '.join('?' for _ in SOURCE_CONFIG_COLUMNS)
        updates = ', '.join(f"{column} = excluded.{column}" for column in SOURCE_CONFIG_COLUMNS)

        cursor = self.conn.cursor()
        try:
            cursor.execute(
                f"""
                INSERT INTO sources (slug, {columns}, created_at, updated_at)
                VALUES (?, {placeholders}, ?, ?)
                ON CONFLICT(slug) DO UPDATE SET {updates}, updated_at = excluded.updated_at
                """,
                [source['slug']] + values + [current_time, current_time],
            )
            self.conn.commit()
            cursor.execute("SELECT id FROM sources WHERE slug = ?", (source['slug'],))
            return cursor.fetchone()['id']
        except Error as e:
            logger.error(f"Error upserting source {source.get('slug')}: {e}")
            self.conn.rollback()
            raise
        finally:
            cursor.close()

    def get_source(self, source_id: int) -> Optional[Source]:
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT * FROM sources WHERE id = ?", (source_id,))
            row = cursor.fetchone()
            return Source.from_row(row) if row else None
        finally:
            cursor.close()

    def get_source_by_slug(self, slug: str) -> Optional[Source]:
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT * FROM sources WHERE slug = ?", (slug,))
            row = cursor.fetchone()
            return Source.from_row(row) if row else None
        finally:
            cursor.close()

    def list_sources(self) -> List[Source]:
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT * FROM sources ORDER BY slug")
            return [Source.from_row(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def list_due_sources(self, now: Optional[int] = None, limit: int = 100) -> List[Source]:
        """Active, non-paused sources whose next fetch is due, never-scheduled first."""
        if limit <= 0:
            return []
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                """
                SELECT * FROM sources
                WHERE active = 1
                  AND health_status != ?
                  AND (next_fetch_at IS NULL OR next_fetch_at <= ?)
                ORDER BY next_fetch_at IS NOT NULL, next_fetch_at ASC, id ASC
                LIMIT ?
                """,
                (HEALTH_PAUSED, _now(now), limit),
            )
            return [Source.from_row(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def update_source_health(self, source_id: int, fields: Dict[str, Any], now: Optional[int] = None) -> bool:
        """Persist health fields (and last fetch bookkeeping) for a source."""
        unknown = set(fields) - set(SOURCE_HEALTH_COLUMNS)
        if unknown:
            raise ValueError(f"Not a health column: {', '.join(sorted(unknown))}")
        if not fields:
            return False

        assignments = ', '.join(f"{column} = ?" for column in fields)
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                f"UPDATE sources SET {assignments}, updated_at = ? WHERE id = ?",
                list(fields.values()) + [_now(now), source_id],
            )
            self.conn.commit()
            return cursor.rowcount > 0
        except Error as e:
            logger.error(f"Error updating health for source {source_id}: {e}")
            self.conn.rollback()
            raise
        finally:
            cursor.close()

    def update_source_schedule(self, source_id: int, next_fetch_at: Optional[int]) -> bool:
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "UPDATE sources SET next_fetch_at = ? WHERE id = ?",
                (next_fetch_at, source_id),
            )
            self.conn.commit()
            return cursor.rowcount > 0
        except Error as e:
            logger.error(f"Error scheduling source {source_id}: {e}")
            self.conn.rollback()
            raise
        finally:
            cursor.close()

    def update_source_headers(self, source_id: int, etag: Optional[str] = None,
                              last_modified: Optional[str] = None) -> bool:
        """Store conditional GET validators. Missing values keep what is stored."""
        if etag is None and last_modified is None:
            return False
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                """
                UPDATE sources
                SET etag = COALESCE(?, etag), last_modified = COALESCE(?, last_modified)
                WHERE id = ?
                """,
                (etag, last_modified, source_id),
            )
            self.conn.commit()
            return cursor.rowcount > 0
        except Error as e:
            logger.error(f"Error updating headers for source {source_id}: {e}")
            return False
        finally:
            cursor.close()

    def reset_source_health(self, source_id: int, next_fetch_at: Optional[int] = None,
                            now: Optional[int] = None) -> bool:
        """Return a source to healthy with no failures and make it due at ``next_fetch_at``."""
        current_time = _now(now)
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                """
                UPDATE sources
                SET health_status = ?, consecutive_failure_count = 0, last_error_message = NULL,
                    next_fetch_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (HEALTH_HEALTHY, next_fetch_at if next_fetch_at is not None else current_time,
                 current_time, source_id),
            )
            success = cursor.rowcount > 0
            if success:
                self.conn.commit()
                logger.debug(f"Reset health for source {source_id}")
            else:
                logger.warning(f"No source found with ID {source_id} to reset")
            return success
        finally:
            cursor.close()

    # Item Operations
    def find_or_create_item(self, source_id: int, guid: str, fields: Optional[Dict[str, Any]] = None,
                            now: Optional[int] = None) -> Tuple[Item, bool]:
        """Return the item with this per-source dedup key, creating it if needed.

        Existing items are returned untouched. The boolean is True only when a
        row was inserted by this call.
        """
        fields = fields or {}
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                """
                INSERT OR IGNORE INTO items (source_id, guid, title, url, published_at, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (source_id, guid, fields.get('title'), fields.get('url'),
                 fields.get('published_at'), _now(now)),
            )
            created = cursor.rowcount > 0
            self.conn.commit()
            cursor.execute("SELECT * FROM items WHERE source_id = ? AND guid = ?", (source_id, guid))
            return Item.from_row(cursor.fetchone()), created
        except Error as e:
            logger.error(f"Error reconciling item {guid} for source {source_id}: {e}")
            self.conn.rollback()
            raise
        finally:
            cursor.close()

    def get_item(self, item_id: int) -> Optional[Item]:
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT * FROM items WHERE id = ?", (item_id,))
            row = cursor.fetchone()
            return Item.from_row(row) if row else None
        finally:
            cursor.close()

    def list_unscraped_items(self, source_id: int, limit: int = 100) -> List[Item]:
        """Newest items of a source that have never been scraped."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                """
                SELECT * FROM items
                WHERE source_id = ? AND scraped_at IS NULL
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                (source_id, limit),
            )
            return [Item.from_row(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def count_items(self, source_id: Optional[int] = None) -> int:
        """Count items, optionally for a single source."""
        cursor = self.conn.cursor()
        try:
            if source_id is None:
                cursor.execute("SELECT COUNT(*) FROM items")
            else:
                cursor.execute("SELECT COUNT(*) FROM items WHERE source_id = ?", (source_id,))
            row = cursor.fetchone()
            return int(row[0]) if row else 0
        except Error as e:
            logger.error(f"Error counting items: {e}")
            return 0
        finally:
            cursor.close()

    def prune_items_for_source(self, source_id: int, retention_days: Optional[int] = None,
                               max_items: Optional[int] = None, now: Optional[int] = None) -> int:
        """Delete items older than ``retention_days`` and beyond the newest ``max_items``.

        Returns:
            Number of items deleted.
        """
        deleted = 0
        cursor = self.conn.cursor()
        try:
            if retention_days and retention_days > 0:
                cutoff = _now(now) - retention_days * 24 * 60 * 60
                cursor.execute(
                    "DELETE FROM items WHERE source_id = ? AND created_at < ?",
                    (source_id, cutoff),
                )
                deleted += cursor.rowcount

            if max_items and max_items > 0:
                cursor.execute(
                    """
                    DELETE FROM items WHERE id IN (
                        SELECT id FROM items WHERE source_id = ?
                        ORDER BY created_at DESC, id DESC
                        LIMIT -1 OFFSET ?
                    )
                    """,
                    (source_id, max_items),
                )
                deleted += cursor.rowcount

            self.conn.commit()
            if deleted:
                logger.info(f"Pruned {deleted} items for source_id={source_id}")
            return deleted
        except Error as e:
            logger.error(f"Error pruning items for source {source_id}: {e}")
            try:
                self.conn.rollback()
            except Exception:
                pass
            return 0
        finally:
            cursor.close()

    # Scrape Job Operations
    def enqueue_scrape_job(self, item_id: int, source_id: int, reason: str,
                           now: Optional[int] = None, not_before: Optional[int] = None) -> Optional[int]:
        """Queue a scrape job for an item, optionally not to be claimed before ``not_before``.

        Returns:
            The new job id, or None when the item already has a job in flight.
        """
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                """
                INSERT OR IGNORE INTO scrape_jobs (item_id, source_id, reason, status, enqueued_at, not_before)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (item_id, source_id, reason, JOB_PENDING, _now(now), not_before),
            )
            job_id = cursor.lastrowid if cursor.rowcount > 0 else None
            self.conn.commit()
            return job_id
        except Error as e:
            logger.error(f"Error enqueuing scrape job for item {item_id}: {e}")
            self.conn.rollback()
            raise
        finally:
            cursor.close()

    def has_in_flight_scrape(self, item_id: int) -> bool:
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "SELECT 1 FROM scrape_jobs WHERE item_id = ? AND status IN (?, ?) LIMIT 1",
                (item_id,) + IN_FLIGHT_JOB_STATUSES,
            )
            return cursor.fetchone() is not None
        finally:
            cursor.close()

    def count_in_flight_scrapes(self, source_id: int) -> int:
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "SELECT COUNT(*) FROM scrape_jobs WHERE source_id = ? AND status IN (?, ?)",
                (source_id,) + IN_FLIGHT_JOB_STATUSES,
            )
            return int(cursor.fetchone()[0])
        finally:
            cursor.close()

    def last_scrape_started_at(self, source_id: int) -> Optional[int]:
        """When a scrape for this source last started, or None if it never has."""
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT MAX(started_at) FROM scrape_jobs WHERE source_id = ?", (source_id,))
            row = cursor.fetchone()
            return row[0] if row else None
        finally:
            cursor.close()

    def reclaim_stale_scrape_jobs(self, older_than: int, now: Optional[int] = None) -> List[int]:
        """Fail processing jobs started more than ``older_than`` seconds ago.

        Such jobs were abandoned by a worker that died or lost its store
        connection. Failing them frees their items to be queued again.

        Returns:
            The ids of the reclaimed jobs.
        """
        current_time = _now(now)
        cutoff = current_time - older_than
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "SELECT id FROM scrape_jobs WHERE status = ? AND started_at IS NOT NULL AND started_at <= ?",
                (JOB_PROCESSING, cutoff),
            )
            job_ids = [row[0] for row in cursor.fetchall()]
            if not job_ids:
                return []
            placeholders = ','.join('?' for _ in job_ids)
            cursor.execute(
                f"""
                UPDATE scrape_jobs SET status = ?, finished_at = ?, error = ?
                WHERE id IN ({placeholders})
                """,
                [JOB_FAILED, current_time, f"Scrape abandoned after {older_than}s in processing"] + job_ids,
            )
            cursor.execute(
                f"""
                UPDATE items SET scrape_status = 'failed'
                WHERE id IN (SELECT item_id FROM scrape_jobs WHERE id IN ({placeholders}))
                """,
                job_ids,
            )
            self.conn.commit()
            logger.warning(f"Reclaimed {len(job_ids)} stale scrape jobs")
            return job_ids
        except Error as e:
            logger.error(f"Error reclaiming stale scrape jobs: {e}")
            self.conn.rollback()
            raise
        finally:
            cursor.close()

    def claim_scrape_jobs(self, limit: int = 1, now: Optional[int] = None) -> List[Dict[str, Any]]:
        """Move up to ``limit`` pending jobs to processing, oldest first.

        Deferred jobs are skipped until their ``not_before`` time has passed.
        """
        if limit <= 0:
            return []
        current_time = _now(now)
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                """
                SELECT id, item_id, source_id, reason FROM scrape_jobs
                WHERE status = ? AND (not_before IS NULL OR not_before <= ?)
                ORDER BY enqueued_at ASC, id ASC
                LIMIT ?
                """,
                (JOB_PENDING, current_time, limit),
            )
            jobs = [dict(row) for row in cursor.fetchall()]
            if jobs:
                placeholders = ','.join('?' for _ in jobs)
                cursor.execute(
                    f"UPDATE scrape_jobs SET status = ?, started_at = ? WHERE id IN ({placeholders})",
                    [JOB_PROCESSING, current_time] + [job['id'] for job in jobs],
                )
                self.conn.commit()
            return jobs
        except Error as e:
            logger.error(f"Error claiming scrape jobs: {e}")
            self.conn.rollback()
            raise
        finally:
            cursor.close()

    def complete_scrape_job(self, job_id: int, content: Optional[str] = None,
                            now: Optional[int] = None) -> bool:
        """Mark a job completed and record the scraped content on its item."""
        current_time = _now(now)
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "UPDATE scrape_jobs SET status = ?, finished_at = ?, error = NULL WHERE id = ?",
                (JOB_COMPLETED, current_time, job_id),
            )
            if cursor.rowcount == 0:
                return False
            cursor.execute(
                """
                UPDATE items SET scraped_at = ?, scrape_status = 'success', content = ?
                WHERE id = (SELECT item_id FROM scrape_jobs WHERE id = ?)
                """,
                (current_time, content, job_id),
            )
            self.conn.commit()
            return True
        except Error as e:
            logger.error(f"Error completing scrape job {job_id}: {e}")
            self.conn.rollback()
            raise
        finally:
            cursor.close()

    def fail_scrape_job(self, job_id: int, error: str, now: Optional[int] = None) -> bool:
        """Mark a job failed. The item stays unscraped and can be queued again."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "UPDATE scrape_jobs SET status = ?, finished_at = ?, error = ? WHERE id = ?",
                (JOB_FAILED, _now(now), error, job_id),
            )
            if cursor.rowcount == 0:
                return False
            cursor.execute(
                """
                UPDATE items SET scrape_status = 'failed'
                WHERE id = (SELECT item_id FROM scrape_jobs WHERE id = ?)
                """,
                (job_id,),
            )
            self.conn.commit()
            return True
        except Error as e:
            logger.error(f"Error failing scrape job {job_id}: {e}")
            self.conn.rollback()
            raise
        finally:
            cursor.close()

    def list_scrape_jobs(self, source_id: Optional[int] = None,
                         status: Optional[str] = None) -> List[Dict[str, Any]]:
        query = "SELECT * FROM scrape_jobs WHERE 1 = 1"
        params: List[Any] = []
        if source_id is not None:
            query += " AND source_id = ?"
            params.append(source_id)
        if status is not None:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY id ASC"

        cursor = self.conn.cursor()
        try:
            cursor.execute(query, params)
            return [dict(row) for row in cursor.fetchall()]
        finally:
            cursor.close()
