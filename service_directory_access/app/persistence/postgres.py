"""
PostgreSQL persistence layer for the Directory Access service.
"""

import asyncio
from typing import Callable, List, Optional

import asyncpg
from shared.logging import get_logger
from shared.errors import AccessLayerException, ConcurrentModification, RecordNotFound, StoreUnavailable
from ..access.models import AccessRecord, AccessStatus
from .base import AccessStore, ChangeListener

CHANGE_CHANNEL = "directory_access_changes"

RECORD_COLUMNS = (
    "subject_id", "access_type", "status", "approved", "requested_at",
    "approved_at", "approved_by", "denied_at", "denied_by",
    "revoked_at", "revoked_by", "expiry_date", "purchased_at",
    "user_name", "user_photo",
)


class PostgresAccessStore(AccessStore):
    """asyncpg-backed AccessStore with LISTEN/NOTIFY change feed."""

    def __init__(self, dsn: str):
        self.dsn = dsn
        self.logger = get_logger("directory_access.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None
        self._listen_conn: Optional[asyncpg.Connection] = None
        self._listeners: List[ChangeListener] = []
        self._tasks = set()

    async def start(self):
        """Start the persistence layer."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=2,
                max_size=10,
                command_timeout=30
            )

            await self._create_tables()

            self._listen_conn = await asyncpg.connect(self.dsn)
            await self._listen_conn.add_listener(CHANGE_CHANNEL, self._on_notification)

            self.logger.info("PostgreSQL persistence started")

        except Exception as e:
            self.logger.error("Failed to start PostgreSQL persistence", error=str(e))
            raise StoreUnavailable("Failed to start PostgreSQL persistence", {"error": str(e)}) from e

    async def stop(self):
        """Stop the persistence layer."""
        if self._listen_conn:
            await self._listen_conn.remove_listener(CHANGE_CHANNEL, self._on_notification)
            await self._listen_conn.close()
            self._listen_conn = None
        if self.pool:
            await self.pool.close()
            self.logger.info("PostgreSQL persistence stopped")

    async def _create_tables(self):
        """Create table, indexes and change trigger."""
        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS directory_access (
                    subject_id VARCHAR(320) PRIMARY KEY,
                    access_type VARCHAR(32) NOT NULL,
                    status VARCHAR(32) NOT NULL,
                    approved BOOLEAN NOT NULL DEFAULT FALSE,
                    requested_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                    approved_at TIMESTAMP WITH TIME ZONE,
                    approved_by VARCHAR(320),
                    denied_at TIMESTAMP WITH TIME ZONE,
                    denied_by VARCHAR(320),
                    revoked_at TIMESTAMP WITH TIME ZONE,
                    revoked_by VARCHAR(320),
                    expiry_date TIMESTAMP WITH TIME ZONE,
                    purchased_at TIMESTAMP WITH TIME ZONE,
                    user_name TEXT,
                    user_photo TEXT,
                    version INTEGER NOT NULL DEFAULT 1
                );
            """)

            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_directory_access_requested_at
                ON directory_access(requested_at DESC);
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_directory_access_status ON directory_access(status);
            """)

            await conn.execute(f"""
                CREATE OR REPLACE FUNCTION notify_directory_access_change() RETURNS trigger AS $$
                BEGIN
                    IF TG_OP = 'DELETE' THEN
                        PERFORM pg_notify('{CHANGE_CHANNEL}', OLD.subject_id);
                    ELSE
                        PERFORM pg_notify('{CHANGE_CHANNEL}', NEW.subject_id);
                    END IF;
                    RETURN NULL;
                END;
                $$ LANGUAGE plpgsql;
            """)
            await conn.execute("""
                DROP TRIGGER IF EXISTS directory_access_notify ON directory_access;
            """)
            await conn.execute("""
                CREATE TRIGGER directory_access_notify
                AFTER INSERT OR UPDATE OR DELETE ON directory_access
                FOR EACH ROW EXECUTE FUNCTION notify_directory_access_change();
            """)

    async def get(self, subject_id: str) -> Optional[AccessRecord]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("""
                SELECT * FROM directory_access WHERE subject_id = $1
            """, subject_id)

        if not row:
            return None

        try:
            return self._row_to_record(row)
        except (KeyError, TypeError, ValueError) as e:
            raise StoreUnavailable(
                f"Stored access record for {subject_id} is malformed",
                {"subject_id": subject_id, "error": str(e)}
            ) from e

    async def list_all(self) -> List[AccessRecord]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT * FROM directory_access ORDER BY requested_at DESC
            """)

        records = []
        for row in rows:
            try:
                records.append(self._row_to_record(row))
            except (KeyError, TypeError, ValueError) as e:
                self.logger.warning(
                    "Skipping malformed access record",
                    subject_id=row.get("subject_id"),
                    error=str(e)
                )
        return records

    async def put(self, record: AccessRecord, expected_version: Optional[int] = None) -> AccessRecord:
        values = self._record_values(record)
        placeholders = ", ".join(f"${i}" for i in range(1, len(RECORD_COLUMNS) + 1))

        if expected_version is None:
            assignments = ",\n                    ".join(
                f"{column} = EXCLUDED.{column}" for column in RECORD_COLUMNS[1:]
            )
            query = f"""
                INSERT INTO directory_access ({", ".join(RECORD_COLUMNS)}, version)
                VALUES ({placeholders}, 1)
                ON CONFLICT (subject_id) DO UPDATE SET
                    {assignments},
                    version = directory_access.version + 1
                RETURNING *
            """
        elif expected_version == 0:
            query = f"""
                INSERT INTO directory_access ({", ".join(RECORD_COLUMNS)}, version)
                VALUES ({placeholders}, 1)
                ON CONFLICT (subject_id) DO NOTHING
                RETURNING *
            """
        else:
            assignments = ",\n                    ".join(
                f"{column} = ${i}" for i, column in enumerate(RECORD_COLUMNS[1:], start=2)
            )
            query = f"""
                UPDATE directory_access SET
                    {assignments},
                    version = version + 1
                WHERE subject_id = $1
                  AND version = ${len(RECORD_COLUMNS) + 1}
                RETURNING *
            """
            values.append(expected_version)

        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(query, *values)

        if row is None:
            raise ConcurrentModification(record.subject_id, {"expected_version": expected_version})

        self.logger.info("Access record saved", subject_id=record.subject_id, status=record.status.value)
        return self._row_to_record(row)

    async def update(self, record: AccessRecord, expected_status: AccessStatus,
                     expected_version: int) -> AccessRecord:
        values = self._record_values(record)
        assignments = ",\n                    ".join(
            f"{column} = ${i}" for i, column in enumerate(RECORD_COLUMNS[1:], start=2)
        )
        status_param = len(RECORD_COLUMNS) + 1
        version_param = len(RECORD_COLUMNS) + 2

        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(f"""
                UPDATE directory_access SET
                    {assignments},
                    version = version + 1
                WHERE subject_id = $1
                  AND status = ${status_param}
                  AND version = ${version_param}
                RETURNING *
            """, *values, expected_status.value, expected_version)

            if row is None:
                exists = await conn.fetchval("""
                    SELECT 1 FROM directory_access WHERE subject_id = $1
                """, record.subject_id)
                if not exists:
                    raise RecordNotFound(record.subject_id)
                raise ConcurrentModification(
                    record.subject_id,
                    {"expected_status": expected_status.value, "expected_version": expected_version}
                )

        return self._row_to_record(row)

    async def delete(self, subject_id: str) -> bool:
        async with self.pool.acquire() as conn:
            result = await conn.execute("""
                DELETE FROM directory_access WHERE subject_id = $1
            """, subject_id)

        if result == "DELETE 1":
            self.logger.info("Access record deleted", subject_id=subject_id)
            return True

        self.logger.warning("Access record not found for deletion", subject_id=subject_id)
        return False

    def watch(self, listener: ChangeListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def cancel():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return cancel

    def _on_notification(self, connection, pid: int, channel: str, payload: str):
        """asyncpg listener callback; runs on the event loop thread."""
        for listener in list(self._listeners):
            task = asyncio.get_running_loop().create_task(self._dispatch(listener, payload))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _dispatch(self, listener: ChangeListener, subject_id: str):
        try:
            await listener(subject_id)
        except AccessLayerException as e:
            self.logger.warning("Change listener failed", subject_id=subject_id, code=e.code)
        except Exception as e:
            self.logger.error("Change listener failed", subject_id=subject_id, error=str(e))

    def _record_values(self, record: AccessRecord) -> list:
        data = record.to_dict()
        return [data[column] for column in RECORD_COLUMNS]

    def _row_to_record(self, row) -> AccessRecord:
        """Convert database row to AccessRecord."""
        return AccessRecord.from_dict(dict(row))

    async def health_check(self) -> bool:
        """Check database health."""
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception:
            return False
