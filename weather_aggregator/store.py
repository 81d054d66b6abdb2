"""
Forecast Record Store.

Append-only history of finalized forecast periods and the queue of
decryption requests awaiting an oracle answer, backed by PostgreSQL.
InMemoryForecastStore offers the same interface for tests.
"""

import os
import logging
from dataclasses import replace
from typing import Dict, List, Optional
from contextlib import contextmanager

import psycopg2
from psycopg2.extras import RealDictCursor, Json
from psycopg2.pool import ThreadedConnectionPool

from .state import ForecastRecord, ForecastStatus, PendingRequest

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def _record_from_row(row: Dict) -> ForecastRecord:
    return ForecastRecord(
        period_id=row["period_id"],
        status=ForecastStatus(row["status"]),
        temperature=row["temperature"],
        humidity=row["humidity"],
        pressure=row["pressure"],
        wind_speed=row["wind_speed"],
        timestamp=row["completed_at"],
        participant_count=row["participant_count"],
        request_id=None if row["request_id"] is None else int(row["request_id"]),
        failure_reason=row["failure_reason"],
    )


def _pending_from_row(row: Dict) -> PendingRequest:
    return PendingRequest(
        period_id=row["period_id"],
        request_id=int(row["request_id"]),
        issued_at=row["issued_at"],
        participant_count=row["participant_count"],
        seed=int(row["seed"]),
        handle_ids=tuple(row["handle_ids"] or ()),
    )


class ForecastStore:
    """
    PostgreSQL-backed forecast store.

    Handles storage and retrieval of:
    - Finalized forecast records (completed, failed, timed out)
    - Decryption requests and their resolution status
    """

    # Default connection parameters
    DEFAULT_HOST = "localhost"
    DEFAULT_PORT = 5432
    DEFAULT_DATABASE = "weather"
    DEFAULT_USER = "weather"
    DEFAULT_PASSWORD = "weather"

    # Connection pool settings
    MIN_CONNECTIONS = 1
    MAX_CONNECTIONS = 10

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        database: Optional[str] = None,
        user: Optional[str] = None,
        password: Optional[str] = None,
        connection_string: Optional[str] = None
    ):
        """
        Initialize forecast store.

        Args:
            host: PostgreSQL host
            port: PostgreSQL port
            database: Database name
            user: Database user
            password: Database password
            connection_string: Full connection string (overrides other params)
        """
        if connection_string:
            self.connection_string = connection_string
        else:
            self.connection_string = (
                f"postgresql://{user or os.getenv('DB_USER', self.DEFAULT_USER)}"
                f":{password or os.getenv('DB_PASSWORD', self.DEFAULT_PASSWORD)}"
                f"@{host or os.getenv('DB_HOST', self.DEFAULT_HOST)}"
                f":{port or int(os.getenv('DB_PORT', self.DEFAULT_PORT))}"
                f"/{database or os.getenv('DB_NAME', self.DEFAULT_DATABASE)}"
            )

        self._pool: Optional[ThreadedConnectionPool] = None

    def connect(self) -> None:
        """Initialize connection pool."""
        try:
            self._pool = ThreadedConnectionPool(
                self.MIN_CONNECTIONS,
                self.MAX_CONNECTIONS,
                self.connection_string
            )
            logger.info("Database connection pool initialized")
        except psycopg2.Error as e:
            logger.error(f"Failed to initialize connection pool: {e}")
            raise

    def close(self) -> None:
        """Close connection pool."""
        if self._pool:
            self._pool.closeall()
            self._pool = None
            logger.info("Database connection pool closed")

    @contextmanager
    def get_connection(self):
        """Get a connection from the pool."""
        if not self._pool:
            raise RuntimeError("Connection pool not initialized. Call connect() first.")

        conn = self._pool.getconn()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            self._pool.putconn(conn)

    def initialize_schema(self) -> None:
        """Create database tables if they don't exist."""
        schema_sql = """
        -- Finalized forecast periods, never updated or deleted
        CREATE TABLE IF NOT EXISTS forecast_records (
            id SERIAL PRIMARY KEY,
            period_id BIGINT NOT NULL UNIQUE,
            status VARCHAR(32) NOT NULL,
            temperature BIGINT NOT NULL,
            humidity BIGINT NOT NULL,
            pressure BIGINT NOT NULL,
            wind_speed BIGINT NOT NULL,
            completed_at BIGINT NOT NULL,
            participant_count INTEGER NOT NULL,
            request_id NUMERIC(78, 0),
            failure_reason TEXT,
            created_at TIMESTAMP DEFAULT NOW()
        );

        -- Decryption requests awaiting an oracle answer
        CREATE TABLE IF NOT EXISTS decryption_requests (
            id SERIAL PRIMARY KEY,
            request_id NUMERIC(78, 0) NOT NULL UNIQUE,
            period_id BIGINT NOT NULL,
            issued_at BIGINT NOT NULL,
            participant_count INTEGER NOT NULL,
            seed NUMERIC(78, 0) NOT NULL,
            handle_ids JSONB NOT NULL,
            status VARCHAR(32) DEFAULT 'pending',
            created_at TIMESTAMP DEFAULT NOW()
        );

        CREATE INDEX IF NOT EXISTS idx_forecast_status ON forecast_records(status);
        CREATE INDEX IF NOT EXISTS idx_requests_status ON decryption_requests(status);
        CREATE INDEX IF NOT EXISTS idx_requests_period ON decryption_requests(period_id);
        """

        with self.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(schema_sql)

        logger.info("Database schema initialized")

    # ============ Forecast Operations ============

    def append_forecast(self, record: ForecastRecord) -> int:
        """
        Append a finalized forecast record.

        Args:
            record: Record in a terminal status

        Returns:
            ID of inserted row

        Raises:
            ValueError: If the record is not terminal
            psycopg2.IntegrityError: If the period was already stored
        """
        if not record.status.is_terminal:
            raise ValueError(f"Only terminal records are stored, got {record.status.value}")

        sql = """
        INSERT INTO forecast_records (
            period_id, status, temperature, humidity, pressure, wind_speed,
            completed_at, participant_count, request_id, failure_reason
        ) VALUES (
            %(period_id)s, %(status)s, %(temperature)s, %(humidity)s, %(pressure)s,
            %(wind_speed)s, %(completed_at)s, %(participant_count)s, %(request_id)s,
            %(failure_reason)s
        )
        RETURNING id
        """

        with self.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, {
                    "period_id": record.period_id,
                    "status": record.status.value,
                    "temperature": record.temperature,
                    "humidity": record.humidity,
                    "pressure": record.pressure,
                    "wind_speed": record.wind_speed,
                    "completed_at": record.timestamp,
                    "participant_count": record.participant_count,
                    "request_id": record.request_id,
                    "failure_reason": record.failure_reason,
                })
                result = cur.fetchone()
                return result[0]

    def get_forecast(self, period_id: int) -> Optional[ForecastRecord]:
        """
        Get a stored forecast by period.

        Returns:
            ForecastRecord or None if not found
        """
        sql = """
        SELECT period_id, status, temperature, humidity, pressure, wind_speed,
               completed_at, participant_count, request_id, failure_reason
        FROM forecast_records
        WHERE period_id = %s
        """

        with self.get_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(sql, (period_id,))
                row = cur.fetchone()
                if row:
                    return _record_from_row(row)
                return None

    def get_history(self, status: Optional[ForecastStatus] = None) -> List[ForecastRecord]:
        """
        Get stored forecasts in period order.

        Args:
            status: Optional status filter
        """
        if status:
            sql = """
            SELECT period_id, status, temperature, humidity, pressure, wind_speed,
                   completed_at, participant_count, request_id, failure_reason
            FROM forecast_records
            WHERE status = %s
            ORDER BY period_id
            """
            params = (status.value,)
        else:
            sql = """
            SELECT period_id, status, temperature, humidity, pressure, wind_speed,
                   completed_at, participant_count, request_id, failure_reason
            FROM forecast_records
            ORDER BY period_id
            """
            params = ()

        with self.get_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(sql, params)
                return [_record_from_row(row) for row in cur.fetchall()]

    # ============ Decryption Request Operations ============

    def save_pending_request(self, pending: PendingRequest) -> int:
        """
        Persist an issued decryption request.

        Returns:
            ID of inserted row
        """
        sql = """
        INSERT INTO decryption_requests (
            request_id, period_id, issued_at, participant_count, seed, handle_ids
        ) VALUES (
            %(request_id)s, %(period_id)s, %(issued_at)s, %(participant_count)s,
            %(seed)s, %(handle_ids)s
        )
        RETURNING id
        """

        with self.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, {
                    "request_id": pending.request_id,
                    "period_id": pending.period_id,
                    "issued_at": pending.issued_at,
                    "participant_count": pending.participant_count,
                    "seed": pending.seed,
                    "handle_ids": Json(list(pending.handle_ids)),
                })
                result = cur.fetchone()
                return result[0]

    def get_pending_requests(self) -> List[PendingRequest]:
        """Get every request still waiting for the oracle."""
        sql = """
        SELECT request_id, period_id, issued_at, participant_count, seed, handle_ids
        FROM decryption_requests
        WHERE status = 'pending'
        ORDER BY issued_at
        """

        with self.get_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(sql)
                return [_pending_from_row(row) for row in cur.fetchall()]

    def resolve_request(self, request_id: int, status: str) -> None:
        """
        Mark a request as resolved.

        Args:
            request_id: Oracle request id
            status: Terminal forecast status the request ended in
        """
        sql = """
        UPDATE decryption_requests
        SET status = %s
        WHERE request_id = %s
        """

        with self.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, (status, request_id))


    def finalize_request(self, record: ForecastRecord) -> int:
        """
        Store a finalized record and resolve its request in one transaction.

        Args:
            record: Terminal record carrying the request id it answers

        Returns:
            ID of inserted forecast row
        """
        if not record.status.is_terminal:
            raise ValueError(f"Only terminal records are stored, got {record.status.value}")

        insert_sql = """
        INSERT INTO forecast_records (
            period_id, status, temperature, humidity, pressure, wind_speed,
            completed_at, participant_count, request_id, failure_reason
        ) VALUES (
            %(period_id)s, %(status)s, %(temperature)s, %(humidity)s, %(pressure)s,
            %(wind_speed)s, %(completed_at)s, %(participant_count)s, %(request_id)s,
            %(failure_reason)s
        )
        RETURNING id
        """
        resolve_sql = """
        UPDATE decryption_requests
        SET status = %s
        WHERE request_id = %s
        """

        with self.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(insert_sql, {
                    "period_id": record.period_id,
                    "status": record.status.value,
                    "temperature": record.temperature,
                    "humidity": record.humidity,
                    "pressure": record.pressure,
                    "wind_speed": record.wind_speed,
                    "completed_at": record.timestamp,
                    "participant_count": record.participant_count,
                    "request_id": record.request_id,
                    "failure_reason": record.failure_reason,
                })
                row_id = cur.fetchone()[0]
                if record.request_id is not None:
                    cur.execute(resolve_sql, (record.status.value, record.request_id))
                return row_id


# In-memory store for testing without PostgreSQL
class InMemoryForecastStore:
    """
    In-memory forecast store for testing.

    Provides the same interface as ForecastStore but stores data in memory.
    """

    def __init__(self):
        """Initialize in-memory store."""
        self._forecasts: Dict[int, ForecastRecord] = {}  # keyed by period_id
        self._requests: Dict[int, PendingRequest] = {}
        self._request_status: Dict[int, str] = {}
        self._next_id = 1

    def connect(self) -> None:
        """No-op for in-memory store."""
        pass

    def close(self) -> None:
        """No-op for in-memory store."""
        pass

    def initialize_schema(self) -> None:
        """No-op for in-memory store."""
        pass

    def append_forecast(self, record: ForecastRecord) -> int:
        """Append a finalized record."""
        if not record.status.is_terminal:
            raise ValueError(f"Only terminal records are stored, got {record.status.value}")
        if record.period_id in self._forecasts:
            raise ValueError(f"Forecast for period already exists: {record.period_id}")

        self._forecasts[record.period_id] = replace(record)
        row_id = self._next_id
        self._next_id += 1
        return row_id

    def get_forecast(self, period_id: int) -> Optional[ForecastRecord]:
        """Get forecast by period."""
        return self._forecasts.get(period_id)

    def get_history(self, status: Optional[ForecastStatus] = None) -> List[ForecastRecord]:
        """Get forecasts in period order."""
        results = [
            r for r in self._forecasts.values()
            if status is None or r.status == status
        ]
        return sorted(results, key=lambda r: r.period_id)

    def save_pending_request(self, pending: PendingRequest) -> int:
        """Persist an issued request."""
        if pending.request_id in self._requests:
            raise ValueError(f"Request already exists: {pending.request_id}")
        self._requests[pending.request_id] = pending
        self._request_status[pending.request_id] = "pending"
        row_id = self._next_id
        self._next_id += 1
        return row_id

    def get_pending_requests(self) -> List[PendingRequest]:
        """Get requests still waiting for the oracle."""
        results = [
            p for rid, p in self._requests.items()
            if self._request_status[rid] == "pending"
        ]
        return sorted(results, key=lambda p: p.issued_at)

    def resolve_request(self, request_id: int, status: str) -> None:
        """Mark a request as resolved."""
        if request_id in self._request_status:
            self._request_status[request_id] = status

    def finalize_request(self, record: ForecastRecord) -> int:
        """Store a finalized record and resolve its request."""
        row_id = self.append_forecast(record)
        if record.request_id is not None:
            self.resolve_request(record.request_id, record.status.value)
        return row_id

    def get_request_status(self, request_id: int) -> Optional[str]:
        return self._request_status.get(request_id)
