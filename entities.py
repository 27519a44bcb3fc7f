#!/usr/bin/env python3
"""
Value types shared by the scrapers, the API client and the sinks.

Location and Session are immutable. PollConfig is fixed at construction except
for ``interval_seconds``, which the adaptive interval controller adjusts in place.
"""

from __future__ import annotations

import dataclasses
import secrets
from dataclasses import dataclass, field
from enum import Enum
from numbers import Real
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from errors import AuthError, ConfigError, FetchError

# Field carrying the stable identifier of every item payload
ITEM_ID_FIELD = "post_id"


def _require_number(name: str, value: Any, minimum: Optional[float] = None) -> float:
    if isinstance(value, bool) or not isinstance(value, Real):
        raise ConfigError(f"{name} must be a number, got {value!r}")
    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {value!r}")
    return value


def generate_identity() -> str:
    """Return a fresh random identity (64 hex characters, like a device uid)."""
    return secrets.token_hex(32)


def validate_identity(identity: Any) -> str:
    if not isinstance(identity, str) or not identity.strip():
        raise ConfigError("identity must be a non-empty string")
    return identity


@dataclass(frozen=True)
class Location:
    """Geographic context a scraper requests its feeds under."""

    latitude: float
    longitude: float
    name: str = ""
    country_code: str = "DE"
    accuracy: float = 0

    def __post_init__(self):
        _require_number("latitude", self.latitude)
        _require_number("longitude", self.longitude)
        if not -90 <= self.latitude <= 90:
            raise ConfigError(f"latitude out of range: {self.latitude}")
        if not -180 <= self.longitude <= 180:
            raise ConfigError(f"longitude out of range: {self.longitude}")
        _require_number("accuracy", self.accuracy, 0)
        if not isinstance(self.name, str) or not isinstance(self.country_code, str):
            raise ConfigError("location name and country_code must be strings")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Location":
        """Build a Location from a config mapping; ``None`` values fall back to defaults."""
        if not isinstance(data, Mapping):
            raise ConfigError(f"location must be a mapping, got {type(data).__name__}")
        missing = [key for key in ("latitude", "longitude") if data.get(key) is None]
        if missing:
            raise ConfigError(f"location is missing {', '.join(missing)}")
        unknown = set(data) - {f.name for f in dataclasses.fields(cls)}
        if unknown:
            raise ConfigError(f"unknown location fields: {', '.join(sorted(unknown))}")
        return cls(**{key: value for key, value in data.items() if value is not None})

    def describe(self) -> str:
        return f"{self.name or 'Scraper'} - {self.latitude}, {self.longitude}"


@dataclass
class PollConfig:
    """Polling interval and adaptive-interval thresholds, all in seconds/items.

    ``max_backoff_seconds`` enables a bounded exponential backoff for repeated
    consecutive failed cycles; ``None`` keeps the plain interval.
    """

    interval_seconds: float = 60
    min_overlap: int = 3
    max_overlap: int = 10
    min_overlap_step: float = 30
    max_overlap_step: float = 30
    windup_delay_seconds: float = 0
    max_backoff_seconds: Optional[float] = None

    def __post_init__(self):
        for f in dataclasses.fields(self):
            value = getattr(self, f.name)
            if f.name == "max_backoff_seconds" and value is None:
                continue
            _require_number(f.name, value, 0)

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "PollConfig":
        """Build a PollConfig from a config mapping, rejecting unknown keys."""
        if not data:
            return cls()
        if not isinstance(data, Mapping):
            raise ConfigError(f"poll settings must be a mapping, got {type(data).__name__}")
        unknown = set(data) - {f.name for f in dataclasses.fields(cls)}
        if unknown:
            raise ConfigError(f"unknown poll settings: {', '.join(sorted(unknown))}")
        return cls(**data)

    def snapshot(self) -> "PollConfig":
        """Independent copy handed to subscribers."""
        return dataclasses.replace(self)


@dataclass(frozen=True)
class Session:
    """Access token plus expiration (unix seconds) and the raw auth response."""

    access_token: str
    expiration: int
    raw: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_response(cls, body: Any) -> "Session":
        if not isinstance(body, dict):
            raise AuthError(f"Unexpected authorization response: {type(body).__name__}")
        token = body.get("access_token")
        expiration = body.get("expiration_date")
        if not token or not isinstance(token, str):
            raise AuthError("Authorization response has no access_token")
        try:
            expiration = int(expiration)
        except (TypeError, ValueError):
            raise AuthError(f"Authorization response has invalid expiration_date: {expiration!r}")
        return cls(access_token=token, expiration=expiration, raw=body)

    def needs_refresh(self, now: float, margin: float = 5) -> bool:
        return now + margin >= self.expiration


@dataclass(frozen=True)
class Item:
    """One uniquely identified content unit; ``payload`` is the raw API object."""

    id: str
    payload: Dict[str, Any] = field(repr=False, compare=False)

    @classmethod
    def from_payload(cls, payload: Any) -> "Item":
        if not isinstance(payload, dict) or payload.get(ITEM_ID_FIELD) in (None, ""):
            raise FetchError(f"Malformed item without {ITEM_ID_FIELD}", details={"item": payload})
        return cls(id=str(payload[ITEM_ID_FIELD]), payload=payload)


def merge_unique(*sources: Iterable[Item]) -> List[Item]:
    """Concatenate sources in order, keeping the first occurrence of each id."""
    seen = set()
    batch = []
    for source in sources:
        for item in source:
            if item.id in seen:
                continue
            seen.add(item.id)
            batch.append(item)
    return batch


def count_overlap(new: Iterable[Item], previous: Iterable[Item]) -> int:
    """Number of distinct ids present in both batches."""
    return len({item.id for item in new} & {item.id for item in previous})


class ScraperState(Enum):
    IDLE = "idle"
    WINDUP_SCHEDULED = "windup_scheduled"
    CYCLE_RUNNING = "cycle_running"
    CYCLE_SCHEDULED = "cycle_scheduled"
    STOPPED = "stopped"


@dataclass(frozen=True)
class ScraperContext:
    """Read-only view of the scraper handed to every subscriber."""

    identity: str
    location: Location
    config: PollConfig
    requested_ids: Tuple[str, ...] = ()


@dataclass(frozen=True)
class CycleOutcome:
    """Result of one cycle: the published batch, or the error that aborted it."""

    batch: Optional[List[Item]] = None
    error: Optional[BaseException] = None
    requested_ids: Sequence[str] = ()

    @property
    def ok(self) -> bool:
        return self.error is None and self.batch is not None
