"""Poll the GTFS-RT VehiclePositions feed and store one route's buses in PostgreSQL."""
from __future__ import annotations

import argparse
import logging
import os
import signal
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Sequence

from dotenv import load_dotenv

from .errors import PollError, QueryFailed, StoreUnavailable
from .observation_store import DEFAULT_MAX_CONNECTIONS, ObservationStore
from .poll_gtfs import DEFAULT_FEED_URL, DEFAULT_HTTP_TIMEOUT, env_number, fetch_feed
from .vehicle_positions import Observation, PollOutcome, extract_route_observations

LOGGER = logging.getLogger(__name__)

DEFAULT_ROUTE_ID = "1"
DEFAULT_POLL_INTERVAL = 60.0


class PollerState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    DECODING = "decoding"
    PERSISTING = "persisting"


STAGE_NAMES = {
    PollerState.FETCHING: "fetch",
    PollerState.DECODING: "decode",
    PollerState.PERSISTING: "persist",
}


@dataclass(frozen=True)
class PollerConfig:
    feed_url: str = DEFAULT_FEED_URL
    route_id: str = DEFAULT_ROUTE_ID
    database_url: str | None = None
    interval: float = DEFAULT_POLL_INTERVAL
    http_timeout: float = DEFAULT_HTTP_TIMEOUT
    max_connections: int = DEFAULT_MAX_CONNECTIONS
    once: bool = False
    dry_run: bool = False


@dataclass(frozen=True)
class CycleResult:
    poll_number: int
    outcome: PollOutcome | None = None
    committed: int = 0
    error: PollError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class RoutePoller:
    """Runs fetch -> decode -> persist on a fixed start-to-start cadence.

    Cycles never overlap: a cycle that outlasts the interval is followed
    immediately by the next one. Failures abort only the cycle they happen in
    and there is no backoff, so an outage shows up as one failure per tick.
    """

    def __init__(
        self,
        config: PollerConfig,
        store: ObservationStore | None,
        fetch: Callable[[str, float], bytes] | None = None,
        decode: Callable[[bytes, str], tuple[list[Observation], PollOutcome]] | None = None,
        clock: Callable[[], float] = time.monotonic,
        wait: Callable[[float], bool] | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self._fetch = fetch or fetch_feed
        self._decode = decode or extract_route_observations
        self._clock = clock
        self._stop_event = threading.Event()
        self._wait = wait or self._stop_event.wait
        self.state = PollerState.IDLE
        self.poll_count = 0
        self.consecutive_failures = 0

    def _transition(self, state: PollerState) -> None:
        LOGGER.debug("Poller state %s -> %s", self.state.value, state.value)
        self.state = state

    def stop(self) -> None:
        self._stop_event.set()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def _persist(self, observations: list[Observation]) -> int:
        if self.store is None:
            LOGGER.info("Dry run: skipping write of %d observations", len(observations))
            return 0
        if not observations:
            LOGGER.info("No buses currently active on route %s", self.config.route_id)
        return self.store.insert_batch(observations)

    def run_cycle(self) -> CycleResult:
        self.poll_count += 1
        poll_number = self.poll_count
        LOGGER.info("Starting poll #%d", poll_number)

        outcome: PollOutcome | None = None
        try:
            self._transition(PollerState.FETCHING)
            raw = self._fetch(self.config.feed_url, self.config.http_timeout)

            self._transition(PollerState.DECODING)
            observations, outcome = self._decode(raw, self.config.route_id)
            for obs in observations:
                LOGGER.debug(
                    "Bus position vehicle=%s route=%s lat=%.6f lon=%.6f",
                    obs.vehicle_id,
                    obs.route_id,
                    obs.latitude,
                    obs.longitude,
                )

            self._transition(PollerState.PERSISTING)
            committed = self._persist(observations)
        except PollError as exc:
            return self._record_failure(poll_number, outcome, exc)
        except Exception as exc:
            LOGGER.exception("Unexpected error while %s", self.state.value)
            error = PollError(f"unexpected {type(exc).__name__} while {self.state.value}", exc)
            error.stage = STAGE_NAMES.get(self.state, error.stage)
            return self._record_failure(poll_number, outcome, error)
        finally:
            self._transition(PollerState.IDLE)

        self.consecutive_failures = 0
        LOGGER.info(
            "Poll #%d complete (total_vehicles=%d, route_%s_vehicles=%d, committed=%d)",
            poll_number,
            outcome.total_vehicles,
            self.config.route_id,
            outcome.route_vehicles,
            committed,
        )
        self.log_store_stats()
        return CycleResult(poll_number=poll_number, outcome=outcome, committed=committed)

    def _record_failure(
        self, poll_number: int, outcome: PollOutcome | None, exc: PollError
    ) -> CycleResult:
        self.consecutive_failures += 1
        LOGGER.error(
            "Poll #%d failed at %s stage: %s (consecutive failures: %d)",
            poll_number,
            exc.stage,
            exc.detail,
            self.consecutive_failures,
        )
        LOGGER.warning("Will retry on next interval")
        return CycleResult(poll_number=poll_number, outcome=outcome, error=exc)

    def log_store_stats(self, label: str = "Database stats") -> None:
        if self.store is None:
            return
        try:
            total = self.store.count_total()
            route_total = self.store.count_for_tracked_route()
        except QueryFailed as exc:
            LOGGER.warning("Could not read database stats: %s", exc)
            return
        LOGGER.info(
            "%s (total_observations=%d, route_%s_observations=%d)",
            label,
            total,
            self.config.route_id,
            route_total,
        )

    def run_forever(self, max_cycles: int | None = None) -> int:
        """Poll until stopped (or ``max_cycles`` is reached); return cycles run."""
        interval = self.config.interval
        LOGGER.info("Entering polling loop (interval=%ss)", interval)

        cycles = 0
        next_start = self._clock()
        while not self.stopped:
            delay = next_start - self._clock()
            if delay > 0:
                LOGGER.debug("Sleeping %.2fs before next poll.", delay)
                if self._wait(delay) or self.stopped:
                    break

            started = self._clock()
            self.run_cycle()
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            next_start = started + interval

        return cycles


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Poll a GTFS-RT VehiclePositions feed and append one route's buses to PostgreSQL."
    )
    parser.add_argument(
        "--feed-url",
        default=os.getenv("VEHICLE_POSITIONS_URL", DEFAULT_FEED_URL),
        help="GTFS-RT VehiclePositions URL (defaults to VEHICLE_POSITIONS_URL env var).",
    )
    parser.add_argument(
        "--route-id",
        default=os.getenv("TRACKED_ROUTE_ID", DEFAULT_ROUTE_ID),
        help="Route identifier to keep (defaults to TRACKED_ROUTE_ID env var, then '1').",
    )
    parser.add_argument(
        "--database-url",
        default=os.getenv("DATABASE_URL"),
        help="PostgreSQL connection string. Defaults to DATABASE_URL env var.",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=env_number("POLL_INTERVAL", DEFAULT_POLL_INTERVAL),
        help="Seconds between the start of consecutive polls (default: 60).",
    )
    parser.add_argument(
        "--http-timeout",
        type=float,
        default=env_number("HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT),
        help="Seconds to wait for the feed response (default: 10).",
    )
    parser.add_argument(
        "--max-connections",
        type=int,
        default=env_number("DB_MAX_CONNECTIONS", DEFAULT_MAX_CONNECTIONS, int),
        help="Upper bound of the database connection pool (default: 5).",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Execute a single polling iteration and exit.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Fetch and decode the feed without writing to PostgreSQL.",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Python logging level (default: INFO).",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging.",
    )
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> PollerConfig:
    if not args.feed_url or not args.feed_url.strip():
        raise SystemExit("Feed URL must not be empty.")
    if not args.route_id or not args.route_id.strip():
        raise SystemExit("Route id must not be empty.")
    if args.interval <= 0:
        raise SystemExit("Polling interval must be greater than zero.")
    if args.http_timeout <= 0:
        raise SystemExit("HTTP timeout must be greater than zero.")
    if args.max_connections <= 0:
        raise SystemExit("Connection pool size must be greater than zero.")
    if not args.dry_run and not args.database_url:
        raise SystemExit("Database URL not provided. Use --database-url or set DATABASE_URL env var.")

    return PollerConfig(
        feed_url=args.feed_url.strip(),
        route_id=args.route_id.strip(),
        database_url=args.database_url,
        interval=args.interval,
        http_timeout=args.http_timeout,
        max_connections=args.max_connections,
        once=args.once,
        dry_run=args.dry_run,
    )


def configure_logging(level_name: str, verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.getLevelName(level_name.upper())
    if not isinstance(level, int):
        raise SystemExit(f"Invalid log level: {level_name!r}")
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(message)s")


def main(argv: Sequence[str] | None = None) -> None:
    project_root = Path(__file__).resolve().parent.parent
    load_dotenv(dotenv_path=project_root / ".env")

    args = parse_args(argv)
    configure_logging(args.log_level, args.verbose)
    config = build_config(args)

    LOGGER.info("Route %s position tracker starting", config.route_id)

    store: ObservationStore | None = None
    if not config.dry_run:
        try:
            store = ObservationStore.open(
                config.database_url,
                config.route_id,
                max_connections=config.max_connections,
            )
        except StoreUnavailable as exc:
            LOGGER.error("Cannot open observation store: %s", exc)
            raise SystemExit(1) from exc
        LOGGER.info("Database initialized")
    else:
        LOGGER.info("Dry run: observations will not be written.")

    poller = RoutePoller(config, store)
    poller.log_store_stats("Database initialized with existing data")

    def _handle_shutdown(signum, frame):
        LOGGER.info("Received signal %s; shutting down poller.", signum)
        poller.stop()

    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    try:
        if config.once:
            result = poller.run_cycle()
            if not result.ok:
                raise SystemExit(1)
        else:
            poller.run_forever()
    finally:
        if store is not None:
            store.close()
        LOGGER.info("Route poller stopped")


if __name__ == "__main__":
    main()
