"""Great-circle distance between spot coordinates."""
from __future__ import annotations

import math
from typing import Any, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from spotmerge.errors import InvalidCoordinate

EARTH_RADIUS_M = 6_371_000.0


class Coordinates(BaseModel):
    model_config = ConfigDict(frozen=True)

    lat: float = Field(ge=-90.0, le=90.0, allow_inf_nan=False)
    lng: float = Field(ge=-180.0, le=180.0, allow_inf_nan=False)

    def __init__(self, lat: Any = None, lng: Any = None, **data: Any) -> None:
        try:
            super().__init__(lat=lat, lng=lng, **data)
        except ValidationError as exc:
            first = exc.errors()[0]
            raise InvalidCoordinate(f"Invalid coordinates ({lat!r}, {lng!r}): {first['msg']}") from None


CoordinateLike = Union[Coordinates, Tuple[float, float]]


def _unpack(value: CoordinateLike) -> tuple[float, float]:
    if isinstance(value, Coordinates):
        return value.lat, value.lng
    try:
        lat, lng = value
    except (TypeError, ValueError):
        raise InvalidCoordinate(f"Expected (lat, lng), got {value!r}") from None
    coords = Coordinates(lat, lng)
    return coords.lat, coords.lng


def haversine_distance_m(a: CoordinateLike, b: CoordinateLike) -> float:
    """Distance in metres on a sphere of radius 6,371 km."""
    lat1, lng1 = _unpack(a)
    lat2, lng2 = _unpack(b)
    if (lat1, lng1) == (lat2, lng2):
        return 0.0

    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)

    h = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    h = min(1.0, h)
    return 2 * EARTH_RADIUS_M * math.atan2(math.sqrt(h), math.sqrt(1 - h))
