import asyncio
import logging

import asyncpg

from .models import Record

logger = logging.getLogger(__name__)

_DRIVER_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)


class StoreError(Exception):
    """Raised for any failure talking to the time-series store."""


def _affected_rows(status: str) -> int:
    # asyncpg returns the command tag, e.g. "INSERT 0 1".
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0


class Database:
    def __init__(self, dsn: str, *, table_name: str, min_size: int = 1, max_size: int = 5):
        self._dsn = dsn
        self._table = table_name
        self._min_size = min_size
        self._max_size = max_size
        self._pool: asyncpg.Pool | None = None
        self._schema_ready = False

    @property
    def table_name(self) -> str:
        return self._table

    @property
    def schema_ready(self) -> bool:
        return self._schema_ready

    async def connect(self) -> None:
        if self._pool is not None:
            return
        try:
            self._pool = await asyncpg.create_pool(self._dsn, min_size=self._min_size, max_size=self._max_size)
        except _DRIVER_ERRORS as exc:
            raise StoreError(f"failed to connect to database: {exc}") from exc
        logger.info("Database pool ready (min=%s max=%s)", self._min_size, self._max_size)

    async def disconnect(self) -> None:
        if self._pool is not None:
            pool, self._pool = self._pool, None
            await pool.close()
            logger.info("Database pool closed")
        self._schema_ready = False

    def _require_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise StoreError("Database pool not initialized")
        return self._pool

    async def table_exists(self) -> bool:
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                return bool(
                    await conn.fetchval(
                        """
                        SELECT EXISTS (
                            SELECT FROM information_schema.tables
                            WHERE table_schema = 'public'
                            AND table_name = $1
                        )
                        """,
                        self._table,
                    )
                )
        except _DRIVER_ERRORS as exc:
            raise StoreError(f"failed to check if table exists: {exc}") from exc

    async def initialize_schema(self) -> bool:
        """Create the readings hypertable unless it already exists.

        Returns True when the table was created by this call. Calling it again
        once the table exists does nothing.
        """

        pool = self._require_pool()
        if await self.table_exists():
            logger.info("Table %s already exists", self._table)
            self._schema_ready = True
            return False

        logger.info("Creating table %s...", self._table)
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(
                        f"""
                        CREATE TABLE IF NOT EXISTS {self._table} (
                            time TIMESTAMPTZ NOT NULL,
                            temperature DOUBLE PRECISION,
                            humidity DOUBLE PRECISION,
                            light DOUBLE PRECISION,
                            device_id TEXT NOT NULL
                        )
                        """
                    )
                    await conn.execute(
                        f"SELECT create_hypertable('{self._table}', 'time', if_not_exists => TRUE)"
                    )
        except _DRIVER_ERRORS as exc:
            raise StoreError(f"failed to create table {self._table}: {exc}") from exc

        logger.info("Table %s created and converted to hypertable", self._table)
        self._schema_ready = True
        return True

    async def insert_record(self, record: Record) -> int:
        if not self._schema_ready:
            raise StoreError("schema not initialized; call initialize_schema() first")
        pool = self._require_pool()
        logger.debug(
            "DB INSERT -> table=%s time=%s temperature=%.3f humidity=%.3f light=%.3f device_id=%s",
            self._table,
            record.timestamp.isoformat(),
            record.temperature,
            record.humidity,
            record.light,
            record.device_id,
        )
        try:
            async with pool.acquire() as conn:
                status = await conn.execute(
                    f"""
                    INSERT INTO {self._table} (time, temperature, humidity, light, device_id)
                    VALUES ($1, $2, $3, $4, $5)
                    """,
                    *record.as_row(),
                )
        except _DRIVER_ERRORS as exc:
            raise StoreError(f"failed to insert sensor data: {exc}") from exc

        rows = _affected_rows(status)
        if rows == 0:
            logger.warning("DB INSERT into %s affected no rows (device_id=%s)", self._table, record.device_id)
        else:
            logger.debug("DB INSERT affected rows: %d", rows)
        return rows
