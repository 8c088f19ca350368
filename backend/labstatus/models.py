"""Upstream and response models for the lab status API."""

import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator

RFC3339_UTC_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
_RFC3339_PATTERN = re.compile(
    r"^\d{4}-\d{2}-\d{2}[Tt]\d{2}:\d{2}:\d{2}(\.\d+)?([Zz]|[+-]\d{2}:\d{2})$"
)


def format_utc(value: datetime) -> str:
    """Render an aware datetime as RFC3339 in UTC with second precision."""
    return value.astimezone(timezone.utc).strftime(RFC3339_UTC_FORMAT)


def parse_rfc3339(value: str) -> datetime:
    """Parse an RFC3339 timestamp. Raises ValueError when it is not one.

    Full date, full time with seconds and a ``Z`` or ``+HH:MM`` offset are
    required. ISO 8601 shorthands such as ``2024-01-01T00Z``, the compact
    ``20240101T000000Z`` or a colon-less ``+0000`` offset are rejected.
    """
    text = value.strip()
    if not _RFC3339_PATTERN.match(text):
        raise ValueError(f"not an RFC3339 timestamp: {value!r}")
    if text[-1] in "zZ":
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


class RawEntityState(BaseModel):
    """Entity state as returned by ``GET /api/states/<entity_id>``.

    Only ``state`` and ``last_changed`` feed the normalized output. The other
    fields are kept for logging and tolerate any shape.
    """

    model_config = ConfigDict(extra="ignore")

    entity_id: str = ""
    state: str = ""
    last_changed: str = ""
    last_updated: str = ""
    attributes: dict[str, Any] = {}
    context: dict[str, Any] = {}

    @field_validator("entity_id", "state", "last_changed", "last_updated", mode="before")
    @classmethod
    def coerce_text(cls, value):
        if value is None:
            return ""
        if isinstance(value, str):
            return value
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (int, float)):
            return str(value)
        return ""

    @field_validator("attributes", "context", mode="before")
    @classmethod
    def coerce_mapping(cls, value):
        if isinstance(value, Mapping):
            return dict(value)
        return {}


class NormalizedState(BaseModel):
    state: str
    last_changed_utc: str
    last_updated_utc: str


@dataclass(frozen=True)
class CacheEntry:
    value: NormalizedState
    fetched_at: datetime
