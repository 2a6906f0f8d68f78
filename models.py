from __future__ import annotations

import datetime
from typing import Optional

from pydantic import BaseModel, field_serializer


def format_timestamp(value: datetime.datetime) -> str:
    """Return ``value`` as fixed-width ISO-8601 UTC text.

    Microseconds are always written so that lexical order of stored values
    matches chronological order.
    """
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        raise ValueError("timestamp must be timezone-aware")
    return value.astimezone(datetime.timezone.utc).isoformat(timespec="microseconds")


class UserProfile(BaseModel):
    """Singleton patient profile."""

    id: int = 1
    first_name: str = ""
    last_name: str = ""
    dob: str = ""
    speech_therapist: str = ""


class ProfileUpdate(UserProfile):
    """Profile as received from the host; every field must be present."""

    id: int
    first_name: str
    last_name: str
    dob: str
    speech_therapist: str


class Session(BaseModel):
    """One therapy session with its derived rep count."""

    id: int
    start_time: datetime.datetime
    end_time: Optional[datetime.datetime] = None
    pressure_setting: int
    notes: str = ""
    rep_count: int = 0

    @field_serializer("start_time", "end_time")
    def _serialize_time(self, value: Optional[datetime.datetime]) -> Optional[str]:
        return format_timestamp(value) if value is not None else None


class Rep(BaseModel):
    """A single completed repetition."""

    id: int
    session_id: int
    rep_timestamp: datetime.datetime

    @field_serializer("rep_timestamp")
    def _serialize_time(self, value: datetime.datetime) -> str:
        return format_timestamp(value)
