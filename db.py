import datetime
import logging
import os
import re
import sqlite3
import threading
from contextlib import contextmanager
from typing import Iterator, List, Optional, Tuple

from pydantic import ValidationError

from errors import (
    CorruptDataError,
    ForeignKeyError,
    NotFoundError,
    ReadError,
    StoreOpenError,
    WriteError,
)
from models import Rep, Session, UserProfile, format_timestamp
from settings_schema import AppSettings, parse_bool

logger = logging.getLogger("emst.db")

PROFILE_ID = 1
_EXCESS_FRACTION = re.compile(r"(\.\d{6})\d+")


def utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def parse_timestamp(raw: object, column: str) -> datetime.datetime:
    """Decode a stored ISO-8601 instant into an aware UTC ``datetime``.

    Values without an explicit offset, or that do not parse at all, raise
    ``CorruptDataError`` instead of being defaulted.
    """
    if not isinstance(raw, str):
        raise CorruptDataError(column, raw)
    text = raw.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    text = _EXCESS_FRACTION.sub(r"\1", text)
    try:
        value = datetime.datetime.fromisoformat(text)
    except ValueError as exc:
        raise CorruptDataError(column, raw) from exc
    if value.tzinfo is None:
        raise CorruptDataError(column, raw)
    return value.astimezone(datetime.timezone.utc)


class Database:
    """Owns the single SQLite connection and serializes all access to it."""

    _TABLE_DEFINITIONS = {
        "user_profile": (
            """CREATE TABLE user_profile (
                    id INTEGER PRIMARY KEY,
                    first_name TEXT NOT NULL DEFAULT '',
                    last_name TEXT NOT NULL DEFAULT '',
                    dob TEXT NOT NULL DEFAULT '',
                    speech_therapist TEXT NOT NULL DEFAULT ''
                );""",
            ["id", "first_name", "last_name", "dob", "speech_therapist"],
        ),
        "app_settings": (
            """CREATE TABLE app_settings (
                    key TEXT PRIMARY KEY NOT NULL,
                    value TEXT NOT NULL
                );""",
            ["key", "value"],
        ),
        "sessions": (
            """CREATE TABLE sessions (
                    id INTEGER PRIMARY KEY,
                    start_time TEXT NOT NULL,
                    end_time TEXT,
                    pressure_setting INTEGER NOT NULL,
                    notes TEXT
                );""",
            ["id", "start_time", "end_time", "pressure_setting", "notes"],
        ),
        "reps": (
            """CREATE TABLE reps (
                    id INTEGER PRIMARY KEY,
                    session_id INTEGER NOT NULL,
                    rep_timestamp TEXT NOT NULL,
                    FOREIGN KEY(session_id) REFERENCES sessions(id) ON DELETE CASCADE
                );""",
            ["id", "session_id", "rep_timestamp"],
        ),
    }

    def __init__(self, db_path: str = "blast_emst.db") -> None:
        self._db_path = db_path
        self._lock = threading.RLock()
        self._conn: Optional[sqlite3.Connection] = self._open()
        try:
            self._ensure_schema()
        except sqlite3.Error as exc:
            self.close()
            raise StoreOpenError(f"cannot initialize {db_path}: {exc}") from exc
        except StoreOpenError:
            self.close()
            raise

    def _open(self) -> sqlite3.Connection:
        try:
            if self._db_path != ":memory:":
                directory = os.path.dirname(os.path.abspath(self._db_path))
                os.makedirs(directory, exist_ok=True)
            conn = sqlite3.connect(self._db_path, check_same_thread=False)
        except (sqlite3.Error, OSError) as exc:
            raise StoreOpenError(f"cannot open {self._db_path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA foreign_keys=ON;")
            enabled = conn.execute("PRAGMA foreign_keys;").fetchone()[0]
        except sqlite3.Error as exc:
            conn.close()
            raise StoreOpenError(f"cannot configure {self._db_path}: {exc}") from exc
        if enabled != 1:
            conn.close()
            raise StoreOpenError("foreign key enforcement is unavailable")
        return conn

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            if self._conn is None:
                raise StoreOpenError(f"{self._db_path} is closed")
            try:
                yield self._conn
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def _ensure_schema(self) -> None:
        with self._connection() as conn:
            for table, (sql, columns) in self._TABLE_DEFINITIONS.items():
                self._ensure_table(conn, table, sql, columns)

    def _ensure_table(
        self, conn: sqlite3.Connection, table: str, sql: str, columns: List[str]
    ) -> None:
        cur = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name=?;", (table,)
        )
        if cur.fetchone() is None:
            conn.execute(sql)
            logger.debug("created table %s", table)
            return

        cur = conn.execute(f"PRAGMA table_info({table});")
        existing_cols = [row["name"] for row in cur.fetchall()]
        if existing_cols != columns:
            raise StoreOpenError(
                f"table {table} has columns {existing_cols}, expected {columns}"
            )

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def __enter__(self) -> "Database":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def initialize_database(db_path: str) -> Database:
    """Open or create the store at ``db_path``; safe to repeat."""
    db = Database(db_path)
    logger.info("database ready at %s", db_path)
    return db


class BaseRepository:
    """Base repository providing helper methods over a shared ``Database``."""

    def __init__(self, db: Database) -> None:
        self.db = db

    @contextmanager
    def _write_connection(self) -> Iterator[sqlite3.Connection]:
        try:
            with self.db._connection() as conn:
                yield conn
        except sqlite3.IntegrityError as exc:
            if "FOREIGN KEY" in str(exc).upper():
                raise ForeignKeyError(str(exc)) from exc
            raise WriteError(str(exc)) from exc
        except sqlite3.Error as exc:
            raise WriteError(str(exc)) from exc

    @contextmanager
    def _read_connection(self) -> Iterator[sqlite3.Connection]:
        try:
            with self.db._connection() as conn:
                yield conn
        except sqlite3.Error as exc:
            raise ReadError(str(exc)) from exc

    def execute(self, query: str, params: Tuple = ()) -> int:
        with self._write_connection() as conn:
            cursor = conn.execute(query, params)
            return cursor.lastrowid

    def execute_count(self, query: str, params: Tuple = ()) -> int:
        """Run a write and return the number of affected rows."""
        with self._write_connection() as conn:
            cursor = conn.execute(query, params)
            return cursor.rowcount

    def fetch_all(self, query: str, params: Tuple = ()) -> List[sqlite3.Row]:
        with self._read_connection() as conn:
            return conn.execute(query, params).fetchall()

    def fetch_one(self, query: str, params: Tuple = ()) -> Optional[sqlite3.Row]:
        with self._read_connection() as conn:
            return conn.execute(query, params).fetchone()


class ProfileRepository(BaseRepository):
    """Repository for the singleton user profile."""

    @staticmethod
    def _ensure(conn: sqlite3.Connection) -> UserProfile:
        row = conn.execute(
            "SELECT id, first_name, last_name, dob, speech_therapist FROM user_profile WHERE id = ?;",
            (PROFILE_ID,),
        ).fetchone()
        if row is not None:
            return UserProfile(**dict(row))
        profile = UserProfile(id=PROFILE_ID)
        conn.execute(
            "INSERT INTO user_profile (id, first_name, last_name, dob, speech_therapist) VALUES (?, ?, ?, ?, ?);",
            (
                profile.id,
                profile.first_name,
                profile.last_name,
                profile.dob,
                profile.speech_therapist,
            ),
        )
        logger.info("created default profile")
        return profile

    def fetch(self) -> UserProfile:
        with self._write_connection() as conn:
            return self._ensure(conn)

    def update(self, profile: UserProfile) -> None:
        with self._write_connection() as conn:
            self._ensure(conn)
            cursor = conn.execute(
                "UPDATE user_profile SET first_name = ?, last_name = ?, dob = ?, speech_therapist = ? WHERE id = ?;",
                (
                    profile.first_name,
                    profile.last_name,
                    profile.dob,
                    profile.speech_therapist,
                    profile.id,
                ),
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"profile {profile.id} not found")


def _session_from_row(row: sqlite3.Row) -> Session:
    end_raw = row["end_time"]
    return Session(
        id=row["id"],
        start_time=parse_timestamp(row["start_time"], "start_time"),
        end_time=parse_timestamp(end_raw, "end_time") if end_raw is not None else None,
        pressure_setting=row["pressure_setting"],
        notes=row["notes"] or "",
        rep_count=row["rep_count"],
    )


class SessionRepository(BaseRepository):
    """Repository for session lifecycle and session queries."""

    _SELECT = (
        "SELECT s.id, s.start_time, s.end_time, s.pressure_setting, s.notes, "
        "COUNT(r.id) AS rep_count FROM sessions s "
        "LEFT JOIN reps r ON s.id = r.session_id"
    )

    def start(
        self,
        pressure_setting: int,
        notes: str = "",
        started_at: datetime.datetime | None = None,
    ) -> int:
        timestamp = format_timestamp(started_at or utc_now())
        session_id = self.execute(
            "INSERT INTO sessions (start_time, pressure_setting, notes) VALUES (?, ?, ?);",
            (timestamp, pressure_setting, notes),
        )
        logger.debug("started session %s", session_id)
        return session_id

    def end(
        self,
        session_id: int,
        notes: str,
        ended_at: datetime.datetime | None = None,
    ) -> None:
        timestamp = format_timestamp(ended_at or utc_now())
        changed = self.execute_count(
            "UPDATE sessions SET end_time = ?, notes = ? WHERE id = ?;",
            (timestamp, notes, session_id),
        )
        if changed == 0:
            raise NotFoundError(f"session {session_id} not found")

    def delete(self, session_id: int) -> None:
        changed = self.execute_count(
            "DELETE FROM sessions WHERE id = ?;", (session_id,)
        )
        if changed == 0:
            raise NotFoundError(f"session {session_id} not found")

    def fetch_all_sessions(self) -> List[Session]:
        rows = self.fetch_all(
            self._SELECT + " GROUP BY s.id ORDER BY s.start_time DESC, s.id DESC;"
        )
        return [_session_from_row(r) for r in rows]

    def fetch_active_session(self) -> Optional[Session]:
        row = self.fetch_one(
            self._SELECT
            + " WHERE s.end_time IS NULL GROUP BY s.id"
            " ORDER BY s.start_time DESC, s.id DESC LIMIT 1;"
        )
        return _session_from_row(row) if row is not None else None

    def fetch_detail(self, session_id: int) -> Session:
        row = self.fetch_one(
            self._SELECT + " WHERE s.id = ? GROUP BY s.id;", (session_id,)
        )
        if row is None:
            raise NotFoundError(f"session {session_id} not found")
        return _session_from_row(row)

    def fetch_end_times(
        self, start: datetime.datetime, end: datetime.datetime
    ) -> List[datetime.datetime]:
        """Return end instants of completed sessions stored within [start, end)."""
        rows = self.fetch_all(
            "SELECT end_time FROM sessions WHERE end_time IS NOT NULL AND end_time >= ? AND end_time < ?;",
            (format_timestamp(start), format_timestamp(end)),
        )
        return [parse_timestamp(r["end_time"], "end_time") for r in rows]

    def fetch_last_end_time(self) -> Optional[datetime.datetime]:
        row = self.fetch_one(
            "SELECT MAX(end_time) AS last_end FROM sessions WHERE end_time IS NOT NULL;"
        )
        if row is None or row["last_end"] is None:
            return None
        return parse_timestamp(row["last_end"], "end_time")


class RepRepository(BaseRepository):
    """Repository for reps recorded within a session."""

    def add(self, session_id: int, timestamp: datetime.datetime | None = None) -> int:
        return self.execute(
            "INSERT INTO reps (session_id, rep_timestamp) VALUES (?, ?);",
            (session_id, format_timestamp(timestamp or utc_now())),
        )

    def total_for_session(self, session_id: int) -> int:
        row = self.fetch_one(
            "SELECT COUNT(*) AS c FROM reps WHERE session_id = ?;", (session_id,)
        )
        return int(row["c"])

    def fetch_for_session(self, session_id: int) -> List[Rep]:
        rows = self.fetch_all(
            "SELECT id, session_id, rep_timestamp FROM reps WHERE session_id = ? ORDER BY id;",
            (session_id,),
        )
        return [
            Rep(
                id=r["id"],
                session_id=r["session_id"],
                rep_timestamp=parse_timestamp(r["rep_timestamp"], "rep_timestamp"),
            )
            for r in rows
        ]


class SettingsRepository(BaseRepository):
    """Repository for key/value application settings."""

    def get(self, key: str) -> Optional[str]:
        row = self.fetch_one("SELECT value FROM app_settings WHERE key = ?;", (key,))
        return row["value"] if row is not None else None

    def get_text(self, key: str, default: str) -> str:
        value = self.get(key)
        return value if value is not None else default

    def set_text(self, key: str, value: str) -> None:
        self.execute(
            "INSERT OR REPLACE INTO app_settings (key, value) VALUES (?, ?);",
            (key, value),
        )

    def get_int(self, key: str, default: int) -> int:
        try:
            return int(float(self.get_text(key, str(default))))
        except ValueError:
            return default

    def set_int(self, key: str, value: int) -> None:
        self.set_text(key, str(value))

    def get_bool(self, key: str, default: bool) -> bool:
        value = self.get(key)
        if value is None:
            return default
        return parse_bool(value)

    def set_bool(self, key: str, value: bool) -> None:
        self.set_text(key, "true" if value else "false")

    def all_settings(self) -> dict:
        rows = self.fetch_all("SELECT key, value FROM app_settings ORDER BY key;")
        return {r["key"]: r["value"] for r in rows}

    def fetch_app_settings(self) -> AppSettings:
        stored = self.all_settings()
        values: dict[str, str] = {}
        for name in AppSettings.model_fields:
            if name not in stored:
                continue
            try:
                AppSettings(**{name: stored[name]})
            except ValidationError:
                logger.warning("ignoring invalid setting %s=%r", name, stored[name])
                continue
            values[name] = stored[name]
        return AppSettings(**values)

    def save_app_settings(self, settings: AppSettings) -> None:
        items = []
        for key, value in settings.model_dump().items():
            if isinstance(value, bool):
                value = "true" if value else "false"
            items.append((key, str(value)))
        with self._write_connection() as conn:
            conn.executemany(
                "INSERT OR REPLACE INTO app_settings (key, value) VALUES (?, ?);",
                items,
            )
