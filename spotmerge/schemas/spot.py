"""Spot record as read from (and written back to) the spot repository."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from spotmerge.core.geo import Coordinates

RATING_CRITERIA = ("accessibility", "safety", "visibility", "traffic")


def normalize_spot_id(value: Any) -> str:
    """Spot ids are opaque; numbers and strings address the same spot."""
    if value is None:
        raise ValueError("Spot id is required")
    spot_id = str(value).strip()
    if not spot_id:
        raise ValueError("Spot id is required")
    return spot_id


class Spot(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    coordinates: Optional[Coordinates] = None
    from_label: str = ""
    to_label: str = ""
    country: Optional[str] = None
    ratings: Dict[str, float] = Field(default_factory=dict)
    global_rating: float = Field(default=0.0, ge=0.0)
    total_reviews: int = Field(default=0, ge=0)
    description: str = ""
    photo_url: Optional[str] = None
    checkins: int = Field(default=0, ge=0)
    avg_wait_time: Optional[float] = Field(default=None, ge=0.0)
    created_at: Optional[datetime] = None
    last_used: Optional[datetime] = None
    verified: bool = False
    source: Optional[str] = None
    merged_from: Tuple[str, ...] = ()
    merged_at: Optional[datetime] = None

    @field_validator("id", mode="before")
    @classmethod
    def validate_id(cls, v: Any) -> str:
        return normalize_spot_id(v)

    @field_validator("from_label", "to_label", "description", mode="before")
    @classmethod
    def blank_text(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("merged_from", mode="before")
    @classmethod
    def validate_merged_from(cls, v: Any) -> Tuple[str, ...]:
        return tuple(normalize_spot_id(s) for s in (v or ()))

    @property
    def display_name(self) -> str:
        return f"{self.from_label} -> {self.to_label}"
