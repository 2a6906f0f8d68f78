"""Host-facing call boundary for the EMST session store.

Every method takes and returns primitives or JSON text. Failures never
propagate: they are logged and replaced with the method's empty value
(``-1``, ``0``, ``""``, ``"[]"``, ``"{}"``, ``False`` or the caller's default).
Code that needs the real error kinds should use the repositories in ``db``.
"""

import json
import logging
import threading
from typing import Callable, Optional, TypeVar

from pydantic import ValidationError

from config import configure_logging, load_config
from db import (
    Database,
    ProfileRepository,
    RepRepository,
    SessionRepository,
    SettingsRepository,
    initialize_database,
)
from errors import StoreError
from models import ProfileUpdate, format_timestamp
from settings_schema import ConfigSchema
from stats_service import StatisticsService

logger = logging.getLogger("emst.bridge")

T = TypeVar("T")


class EMSTBridge:
    """Fail-soft facade exposing the session store to the host application."""

    def __init__(self, config: Optional[ConfigSchema] = None) -> None:
        self.config = config or ConfigSchema()
        self._state_lock = threading.Lock()
        self._db: Optional[Database] = None
        self.sessions: Optional[SessionRepository] = None
        self.reps: Optional[RepRepository] = None
        self.profiles: Optional[ProfileRepository] = None
        self.settings: Optional[SettingsRepository] = None
        self.statistics: Optional[StatisticsService] = None

    @classmethod
    def from_yaml(cls, path: str = "emst.yaml") -> "EMSTBridge":
        config = load_config(path)
        configure_logging(config.log_level)
        return cls(config)

    @property
    def initialized(self) -> bool:
        return self._db is not None

    def init_database(self, db_path: Optional[str] = None) -> None:
        path = db_path or self.config.db_path
        try:
            db = initialize_database(path)
        except StoreError as exc:
            logger.error("Failed to initialize database: %s", exc)
            return
        with self._state_lock:
            if self._db is not None:
                self._db.close()
            self._db = db
            self.sessions = SessionRepository(db)
            self.reps = RepRepository(db)
            self.profiles = ProfileRepository(db)
            self.settings = SettingsRepository(db)
            self.statistics = StatisticsService(self.sessions, self.reps)
        logger.info("Database initialized successfully at path: %s", path)

    def close(self) -> None:
        with self._state_lock:
            if self._db is not None:
                self._db.close()
            self._db = None
            self.sessions = self.reps = self.profiles = self.settings = None
            self.statistics = None

    def _run(self, action: str, sentinel: T, operation: Callable[[], T]) -> T:
        with self._state_lock:
            if self._db is None:
                logger.error("Database connection not initialized; cannot %s.", action)
                return sentinel
            try:
                return operation()
            except StoreError as exc:
                logger.error("Failed to %s: %s", action, exc)
                return sentinel

    def start_session(self, pressure_setting: int, notes: str) -> int:
        logger.info("Attempting to start a new session.")
        session_id = self._run(
            "start new session", -1, lambda: self.sessions.start(pressure_setting, notes)
        )
        if session_id != -1:
            logger.info("Successfully started new session with id: %s", session_id)
        return session_id

    def end_session(self, session_id: int, notes: str) -> None:
        logger.info("Attempting to end session id: %s with notes: %r", session_id, notes)
        self._run("end session", None, lambda: self.sessions.end(session_id, notes))

    def get_all_sessions(self) -> str:
        logger.info("Attempting to get all sessions.")

        def dump() -> str:
            sessions = self.sessions.fetch_all_sessions()
            logger.info("Successfully retrieved %d sessions.", len(sessions))
            return json.dumps([s.model_dump(mode="json") for s in sessions])

        return self._run("get all sessions", "[]", dump)

    def get_active_session(self) -> str:
        logger.info("Checking for active session.")
        session = self._run(
            "get active session", None, lambda: self.sessions.fetch_active_session()
        )
        if session is None:
            return ""
        logger.info("Found active session with id: %s", session.id)
        return session.model_dump_json()

    def delete_session(self, session_id: int) -> bool:
        logger.info("Deleting session id: %s", session_id)

        def delete() -> bool:
            self.sessions.delete(session_id)
            return True

        return self._run("delete session", False, delete)

    def add_rep(self, session_id: int) -> None:
        logger.info("Adding rep for session id: %s", session_id)
        self._run("add rep", None, lambda: self.reps.add(session_id))

    def get_total_reps(self, session_id: int) -> int:
        logger.info("Getting rep count for session id: %s", session_id)
        return self._run(
            "get rep count", 0, lambda: self.statistics.session_rep_total(session_id)
        )

    def get_profile(self) -> str:
        logger.info("Attempting to get user profile.")
        profile = self._run("get profile", None, lambda: self.profiles.fetch())
        if profile is None:
            return "{}"
        return profile.model_dump_json()

    def update_profile(self, profile_json: str) -> None:
        logger.info("Attempting to update user profile.")
        try:
            profile = ProfileUpdate.model_validate_json(profile_json)
        except ValidationError as exc:
            logger.error("Failed to deserialize profile JSON: %s", exc)
            return
        self._run("update profile", None, lambda: self.profiles.update(profile))

    def get_setting(self, key: str, default_value: str) -> str:
        logger.info("Getting setting for key: %s", key)
        return self._run(
            f"get setting for key {key}",
            default_value,
            lambda: self.settings.get_text(key, default_value),
        )

    def set_setting(self, key: str, value: str) -> None:
        logger.info("Setting key %r to value %r", key, value)
        self._run(
            f"set setting for key {key}", None, lambda: self.settings.set_text(key, value)
        )

    def get_session_count_for_week(self) -> int:
        logger.info("Getting session count for the week.")
        return self._run(
            "get weekly session count",
            0,
            lambda: self.statistics.session_count_for_week(self.config.zone()),
        )

    def get_last_session_end_time(self) -> str:
        last_end = self._run(
            "get last session end time",
            None,
            lambda: self.statistics.last_session_end_time(),
        )
        return format_timestamp(last_end) if last_end is not None else ""
