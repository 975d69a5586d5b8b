"""Decode GTFS-RT VehiclePositions snapshots into tracked-route observations."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

from google.protobuf.message import DecodeError as ProtobufDecodeError
from google.transit import gtfs_realtime_pb2

from .errors import DecodeError

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class Observation:
    observed_at: int
    vehicle_id: str
    route_id: str
    latitude: float
    longitude: float
    trip_id: str | None = None
    direction_id: int | None = None
    current_stop_sequence: int | None = None
    speed: float | None = None
    bearing: float | None = None

    def as_row(self) -> tuple:
        return (
            self.observed_at,
            self.vehicle_id,
            self.route_id,
            self.trip_id,
            self.direction_id,
            self.latitude,
            self.longitude,
            self.current_stop_sequence,
            self.speed,
            self.bearing,
        )


@dataclass(frozen=True)
class PollOutcome:
    total_vehicles: int
    route_vehicles: int
    timestamp: int


def _vehicle_key(vehicle_id: str | None, entity_id: str) -> str:
    if vehicle_id:
        return vehicle_id
    return f"entity:{entity_id}"


def _optional(message, field_name: str):
    if message.HasField(field_name):
        return getattr(message, field_name)
    return None


def _optional_float(message, field_name: str) -> float | None:
    value = _optional(message, field_name)
    return float(value) if value is not None else None


def parse_feed(raw: bytes) -> gtfs_realtime_pb2.FeedMessage:
    """Parse a complete FeedMessage or raise DecodeError; nothing is salvaged."""
    message = gtfs_realtime_pb2.FeedMessage()
    try:
        message.ParseFromString(raw)
    except ProtobufDecodeError as exc:
        raise DecodeError(f"could not decode {len(raw)} byte feed", exc) from exc

    if not message.IsInitialized():
        missing = ", ".join(message.FindInitializationErrors())
        raise DecodeError(f"feed is missing required fields ({missing})")
    if not message.header.HasField("timestamp"):
        raise DecodeError("feed header carries no timestamp")
    return message


def route_id_of(vehicle: gtfs_realtime_pb2.VehiclePosition) -> str | None:
    if not vehicle.HasField("trip"):
        return None
    return vehicle.trip.route_id or None


def to_observation(
    entity: gtfs_realtime_pb2.FeedEntity,
    route_id: str,
    header_timestamp: int,
) -> Observation:
    vehicle = entity.vehicle
    position = vehicle.position

    trip_id = None
    direction_id = None
    if vehicle.HasField("trip"):
        trip_id = _optional(vehicle.trip, "trip_id")
        direction_id = _optional(vehicle.trip, "direction_id")

    descriptor_id = None
    if vehicle.HasField("vehicle"):
        descriptor_id = vehicle.vehicle.id or None

    observed_at = _optional(vehicle, "timestamp")
    if observed_at is None:
        observed_at = header_timestamp

    return Observation(
        observed_at=int(observed_at),
        vehicle_id=_vehicle_key(descriptor_id, entity.id),
        route_id=route_id,
        latitude=float(position.latitude),
        longitude=float(position.longitude),
        trip_id=trip_id,
        direction_id=direction_id,
        current_stop_sequence=_optional(vehicle, "current_stop_sequence"),
        speed=_optional_float(position, "speed"),
        bearing=_optional_float(position, "bearing"),
    )


def invalid_field(observation: Observation) -> str | None:
    """Name the first field the observations table would reject, if any."""
    if observation.direction_id is not None and observation.direction_id not in (0, 1):
        return "direction_id"
    if observation.speed is not None and observation.speed < 0:
        return "speed"
    return None


def iter_positioned_entities(
    message: gtfs_realtime_pb2.FeedMessage,
) -> Iterable[gtfs_realtime_pb2.FeedEntity]:
    for entity in message.entity:
        if entity.HasField("vehicle") and entity.vehicle.HasField("position"):
            yield entity


def extract_route_observations(
    raw: bytes, tracked_route_id: str
) -> tuple[list[Observation], PollOutcome]:
    """Return observations for ``tracked_route_id`` in feed order plus cycle stats.

    Only entities with a position are counted as candidates. An entity is kept
    when its trip descriptor names the tracked route. The observation timestamp
    falls back to the feed header when the vehicle reports none.

    A matched entity carrying a value the observations table cannot hold (a
    negative speed or a direction outside 0/1) still counts as matched but is
    left out with a warning, so one vehicle cannot fail the whole batch.
    """
    message = parse_feed(raw)
    header_timestamp = int(message.header.timestamp)

    total = 0
    matched = 0
    observations: list[Observation] = []
    for entity in iter_positioned_entities(message):
        total += 1
        route_id = route_id_of(entity.vehicle)
        if route_id != tracked_route_id:
            continue
        matched += 1
        observation = to_observation(entity, route_id, header_timestamp)
        field = invalid_field(observation)
        if field is not None:
            LOGGER.warning(
                "Skipping entity %s (vehicle %s): invalid %s=%r",
                entity.id,
                observation.vehicle_id,
                field,
                getattr(observation, field),
            )
            continue
        observations.append(observation)

    LOGGER.debug(
        "Decoded feed (entities=%d, positioned=%d, route %s=%d, kept=%d)",
        len(message.entity),
        total,
        tracked_route_id,
        matched,
        len(observations),
    )
    return observations, PollOutcome(
        total_vehicles=total,
        route_vehicles=matched,
        timestamp=header_timestamp,
    )
