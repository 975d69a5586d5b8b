"""Append-only PostgreSQL storage for tracked-route observations."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, Sequence

import psycopg2
from psycopg2.extras import execute_batch
from psycopg2.pool import ThreadedConnectionPool

from .errors import QueryFailed, StoreUnavailable, WriteFailed
from .vehicle_positions import Observation

LOGGER = logging.getLogger(__name__)

OBSERVATIONS_TABLE = "route_observations"
DEFAULT_MAX_CONNECTIONS = 5

SCHEMA_STATEMENTS = [
    f"""
    CREATE TABLE IF NOT EXISTS {OBSERVATIONS_TABLE} (
        id BIGSERIAL PRIMARY KEY,
        observed_at BIGINT NOT NULL,
        vehicle_id TEXT NOT NULL CHECK (vehicle_id <> ''),
        route_id TEXT NOT NULL CHECK (route_id <> ''),
        trip_id TEXT,
        direction_id SMALLINT CHECK (direction_id IN (0, 1)),
        latitude DOUBLE PRECISION NOT NULL,
        longitude DOUBLE PRECISION NOT NULL,
        current_stop_sequence BIGINT CHECK (current_stop_sequence >= 0),
        speed DOUBLE PRECISION CHECK (speed >= 0),
        bearing DOUBLE PRECISION,
        recorded_at TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    f"""
    CREATE INDEX IF NOT EXISTS {OBSERVATIONS_TABLE}_observed_at_idx
        ON {OBSERVATIONS_TABLE} (observed_at);
    """,
    f"""
    CREATE INDEX IF NOT EXISTS {OBSERVATIONS_TABLE}_vehicle_idx
        ON {OBSERVATIONS_TABLE} (vehicle_id);
    """,
]

INSERT_SQL = f"""
    INSERT INTO {OBSERVATIONS_TABLE} (
        observed_at, vehicle_id, route_id, trip_id, direction_id,
        latitude, longitude, current_stop_sequence, speed, bearing
    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
"""


class ObservationStore:
    """Owns the connection pool; one writer per poll cycle, readers for stats."""

    def __init__(self, pool, route_id: str) -> None:
        self._pool = pool
        self.route_id = route_id

    @classmethod
    def open(
        cls,
        database_url: str,
        route_id: str,
        max_connections: int = DEFAULT_MAX_CONNECTIONS,
    ) -> "ObservationStore":
        try:
            pool = ThreadedConnectionPool(1, max_connections, database_url)
        except psycopg2.Error as exc:
            raise StoreUnavailable("Could not connect to observation database", exc) from exc

        store = cls(pool, route_id)
        try:
            store.initialize()
        except StoreUnavailable:
            store.close()
            raise
        return store

    def __enter__(self) -> "ObservationStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @contextmanager
    def _connection(self) -> Iterator[psycopg2.extensions.connection]:
        conn = self._pool.getconn()
        try:
            yield conn
        finally:
            # Broken connections are dropped so the next cycle reconnects.
            self._pool.putconn(conn, close=bool(conn.closed))

    def initialize(self) -> None:
        """Create the table and indexes if needed; existing rows are untouched."""
        try:
            with self._connection() as conn:
                try:
                    with conn.cursor() as cur:
                        for statement in SCHEMA_STATEMENTS:
                            cur.execute(statement)
                    conn.commit()
                except psycopg2.Error:
                    if not conn.closed:
                        conn.rollback()
                    raise
        except psycopg2.Error as exc:
            raise StoreUnavailable("Could not initialize observation schema", exc) from exc
        LOGGER.debug("Observation schema ready (%s)", OBSERVATIONS_TABLE)

    def insert_batch(self, observations: Sequence[Observation]) -> int:
        """Write every observation in one transaction and return the row count.

        Raises WriteFailed after rolling back; no row of a failed batch is kept.
        """
        if not observations:
            return 0

        foreign = {obs.route_id for obs in observations if obs.route_id != self.route_id}
        if foreign:
            raise WriteFailed(
                f"batch contains routes {sorted(foreign)} but store tracks {self.route_id!r}"
            )

        rows = [obs.as_row() for obs in observations]
        try:
            with self._connection() as conn:
                try:
                    with conn.cursor() as cur:
                        execute_batch(cur, INSERT_SQL, rows)
                    conn.commit()
                except psycopg2.Error:
                    if not conn.closed:
                        conn.rollback()
                    raise
        except psycopg2.Error as exc:
            raise WriteFailed(f"could not store batch of {len(rows)} observations", exc) from exc

        LOGGER.debug("Inserted %d observations", len(rows))
        return len(rows)

    def _count(self, query: str, params: tuple = ()) -> int:
        try:
            with self._connection() as conn:
                try:
                    with conn.cursor() as cur:
                        cur.execute(query, params)
                        row = cur.fetchone()
                finally:
                    if not conn.closed:
                        conn.rollback()
        except psycopg2.Error as exc:
            raise QueryFailed("could not count observations", exc) from exc
        return int(row[0]) if row else 0

    def count_total(self) -> int:
        return self._count(f"SELECT COUNT(*) FROM {OBSERVATIONS_TABLE}")

    def count_for_tracked_route(self) -> int:
        return self._count(
            f"SELECT COUNT(*) FROM {OBSERVATIONS_TABLE} WHERE route_id = %s",
            (self.route_id,),
        )

    def close(self) -> None:
        if not self._pool.closed:
            self._pool.closeall()
