import datetime
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ValidationError, field_validator
from tzlocal import get_localzone

TRUE_VALUES = {"1", "true", "True", "1.0"}


def parse_bool(value: object) -> bool:
    """Interpret a stored setting as a flag; unknown text reads as false."""
    if isinstance(value, bool):
        return value
    return str(value) in TRUE_VALUES


class ConfigSchema(BaseModel):
    db_path: str = "blast_emst.db"
    timezone: Optional[str] = None
    log_level: str = "INFO"

    @field_validator("timezone")
    @classmethod
    def _known_zone(cls, value: Optional[str]) -> Optional[str]:
        if value:
            try:
                ZoneInfo(value)
            except (ZoneInfoNotFoundError, ValueError):
                raise ValueError(f"unknown time zone: {value}")
        return value or None

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()

    def zone(self) -> datetime.tzinfo:
        """Return the configured zone, or the host's local zone when unset."""
        if self.timezone:
            return ZoneInfo(self.timezone)
        return get_localzone()


class AppSettings(BaseModel):
    """Typed view of the host's key/value settings."""

    default_reps: int = 25
    goal_sessions_per_week: int = 5
    default_pressure: int = 30
    theme: str = "system"
    reminders_enabled: bool = False
    rep_sound_uri: str = ""
    haptic_feedback_enabled: bool = True

    @field_validator("reminders_enabled", "haptic_feedback_enabled", mode="before")
    @classmethod
    def _stored_flag(cls, value: object) -> bool:
        return parse_bool(value)


def validate_config(data: dict) -> ConfigSchema:
    try:
        return ConfigSchema(**data)
    except ValidationError as e:
        raise ValueError(str(e))
