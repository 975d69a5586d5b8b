"""Fetch a GTFS-RT VehiclePositions snapshot and optionally print what it contains."""
from __future__ import annotations

import argparse
import logging
import os
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

import requests
from dotenv import load_dotenv

from .errors import NetworkTimeout, NetworkUnavailable, PollError, UnexpectedStatus
from .vehicle_positions import parse_feed

LOGGER = logging.getLogger(__name__)

DEFAULT_FEED_URL = "http://gtfs.bigbluebus.com/vehiclepositions.bin"
DEFAULT_HTTP_TIMEOUT = 10.0
FEED_CHUNK_SIZE = 1 << 14


def fetch_feed(url: str, timeout: float = DEFAULT_HTTP_TIMEOUT) -> bytes:
    """Single GET with no retries; the caller decides when to try again.

    ``timeout`` bounds the whole request, body included. requests only bounds
    the connect and each individual read, so the body is streamed against a
    deadline and a server trickling bytes is cut off once it passes.
    """
    LOGGER.debug("Requesting %s", url)
    deadline = time.monotonic() + timeout
    try:
        response = requests.get(url, timeout=timeout, stream=True)
    except requests.Timeout as exc:
        raise NetworkTimeout(f"no response from {url} within {timeout:g}s", exc) from exc
    except requests.RequestException as exc:
        raise NetworkUnavailable(f"could not reach {url}", exc) from exc

    with response:
        if not 200 <= response.status_code < 300:
            raise UnexpectedStatus(response.status_code, url)

        chunks: list[bytes] = []
        try:
            for chunk in response.iter_content(chunk_size=FEED_CHUNK_SIZE):
                if chunk:
                    chunks.append(chunk)
                if time.monotonic() >= deadline:
                    raise NetworkTimeout(f"{url} did not finish sending within {timeout:g}s")
        except requests.RequestException as exc:
            # A stalled read surfaces as ConnectionError and always ends past the deadline.
            if isinstance(exc, requests.Timeout) or time.monotonic() >= deadline:
                raise NetworkTimeout(f"{url} did not finish sending within {timeout:g}s", exc) from exc
            raise NetworkUnavailable(f"connection to {url} dropped mid-response", exc) from exc

    body = b"".join(chunks)
    LOGGER.debug("Received %d bytes from %s", len(body), url)
    return body


def env_number(name: str, default, cast: Callable = float):
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return cast(raw)
    except ValueError as exc:
        raise SystemExit(f"Invalid {name} value: {raw!r}. Provide a numeric value.") from exc


def _format_timestamp(value: int | None) -> str:
    if value is None:
        return "None"
    iso = datetime.fromtimestamp(value, tz=timezone.utc).isoformat()
    return f"{value} ({iso})"


def _present(message, field_name: str):
    return getattr(message, field_name) if message.HasField(field_name) else None


def describe_feed(raw: bytes) -> list[str]:
    message = parse_feed(raw)
    header = message.header
    lines = [
        f"Feed header version: {header.gtfs_realtime_version}",
        f"Feed timestamp: {_format_timestamp(header.timestamp)}",
        f"Number of entities: {len(message.entity)}",
    ]

    for index, entity in enumerate(message.entity):
        lines.append("")
        lines.append(f"--- Entity {index} ---")
        lines.append(f"Entity ID: {entity.id}")
        if not entity.HasField("vehicle"):
            lines.append("Has vehicle data: NO")
            continue

        vehicle = entity.vehicle
        lines.append("Has vehicle data: YES")
        if vehicle.HasField("trip"):
            trip = vehicle.trip
            lines.append(f"  Trip ID: {_present(trip, 'trip_id')}")
            lines.append(f"  Route ID: {_present(trip, 'route_id')}")
            lines.append(f"  Direction ID: {_present(trip, 'direction_id')}")
        else:
            lines.append("  Trip data: NONE")

        if vehicle.HasField("vehicle"):
            lines.append(f"  Vehicle ID: {_present(vehicle.vehicle, 'id')}")
            lines.append(f"  Vehicle label: {_present(vehicle.vehicle, 'label')}")
        else:
            lines.append("  Vehicle descriptor: NONE")

        if vehicle.HasField("position"):
            position = vehicle.position
            lines.append(f"  Position: {position.latitude}, {position.longitude}")
            lines.append(f"  Bearing: {_present(position, 'bearing')}")
            lines.append(f"  Speed: {_present(position, 'speed')}")
        else:
            lines.append("  Position: NONE")

        lines.append(f"  Timestamp: {_format_timestamp(_present(vehicle, 'timestamp'))}")
        lines.append(f"  Current stop: {_present(vehicle, 'current_stop_sequence')}")

    return lines


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Fetch one GTFS-RT VehiclePositions snapshot and print every entity."
    )
    parser.add_argument(
        "--feed-url",
        default=os.getenv("VEHICLE_POSITIONS_URL", DEFAULT_FEED_URL),
        help="GTFS-RT VehiclePositions URL (defaults to VEHICLE_POSITIONS_URL env var).",
    )
    parser.add_argument(
        "--http-timeout",
        type=float,
        default=env_number("HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT),
        help="Seconds allowed for the whole feed request (defaults to HTTP_TIMEOUT env var, then 10).",
    )
    parser.add_argument(
        "--output",
        help="Also write the raw protobuf payload to this path.",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")

    project_root = Path(__file__).resolve().parent.parent
    load_dotenv(dotenv_path=project_root / ".env")

    args = parse_args(argv)

    print(f"Fetching from: {args.feed_url}")
    try:
        raw_bytes = fetch_feed(args.feed_url, args.http_timeout)
    except PollError as exc:
        LOGGER.error("Could not fetch feed: %s", exc)
        raise SystemExit(1) from exc
    print(f"Received {len(raw_bytes)} bytes")

    if args.output:
        output_path = Path(args.output)
        output_path.write_bytes(raw_bytes)
        LOGGER.info("Wrote protobuf snapshot to %s", output_path)

    try:
        lines = describe_feed(raw_bytes)
    except PollError as exc:
        LOGGER.error("Could not decode feed: %s", exc)
        raise SystemExit(1) from exc
    for line in lines:
        print(line)


if __name__ == "__main__":
    main()
