import datetime
import os
import sys

import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from db import (
    RepRepository,
    SessionRepository,
    initialize_database,
    parse_timestamp,
)
from errors import (
    CorruptDataError,
    ForeignKeyError,
    NotFoundError,
    ReadError,
    WriteError,
)

UTC = datetime.timezone.utc


@pytest.fixture
def db(tmp_path):
    database = initialize_database(str(tmp_path / "sessions.db"))
    yield database
    database.close()


@pytest.fixture
def sessions(db):
    return SessionRepository(db)


@pytest.fixture
def reps(db):
    return RepRepository(db)


def test_start_then_active(sessions):
    sid = sessions.start(42, "warm up")
    active = sessions.fetch_active_session()
    assert active is not None
    assert active.id == sid
    assert active.pressure_setting == 42
    assert active.notes == "warm up"
    assert active.end_time is None
    assert active.rep_count == 0
    assert active.start_time.tzinfo is not None
    assert active.start_time.utcoffset() == datetime.timedelta(0)


def test_end_closes_session(sessions):
    sid = sessions.start(30, "")
    sessions.end(sid, "felt strong")
    assert sessions.fetch_active_session() is None
    [session] = sessions.fetch_all_sessions()
    assert session.id == sid
    assert session.notes == "felt strong"
    assert session.end_time is not None
    assert session.end_time >= session.start_time


def test_end_unknown_session(sessions):
    with pytest.raises(NotFoundError):
        sessions.end(99, "nothing")


def test_delete_unknown_session(sessions):
    with pytest.raises(NotFoundError):
        sessions.delete(99)


def test_delete_cascades_reps(db, sessions, reps):
    sid = sessions.start(30, "")
    other = sessions.start(30, "")
    for _ in range(3):
        reps.add(sid)
    reps.add(other)
    assert reps.total_for_session(sid) == 3
    sessions.delete(sid)
    assert reps.total_for_session(sid) == 0
    with db._connection() as conn:
        left = conn.execute(
            "SELECT COUNT(*) FROM reps WHERE session_id = ?;", (sid,)
        ).fetchone()[0]
    assert left == 0
    assert reps.total_for_session(other) == 1
    with pytest.raises(NotFoundError):
        sessions.fetch_detail(sid)


def test_rep_counts_joined(sessions, reps):
    base = datetime.datetime(2024, 5, 1, 8, 0, tzinfo=UTC)
    first = sessions.start(20, "a", started_at=base)
    second = sessions.start(25, "b", started_at=base + datetime.timedelta(hours=1))
    reps.add(second)
    reps.add(second)
    result = sessions.fetch_all_sessions()
    assert [s.id for s in result] == [second, first]
    assert [s.rep_count for s in result] == [2, 0]


def test_rep_fetch_for_session(sessions, reps):
    sid = sessions.start(20, "")
    stamp = datetime.datetime(2024, 5, 1, 8, 0, 5, tzinfo=UTC)
    rid = reps.add(sid, timestamp=stamp)
    [rep] = reps.fetch_for_session(sid)
    assert rep.id == rid
    assert rep.session_id == sid
    assert rep.rep_timestamp == stamp


def test_total_reps_unknown_session(reps):
    assert reps.total_for_session(12345) == 0


def test_add_rep_requires_session(reps):
    with pytest.raises(ForeignKeyError):
        reps.add(777)


def test_foreign_key_error_is_write_error(reps):
    with pytest.raises(WriteError):
        reps.add(778)


def test_not_null_violation_is_plain_write_error(sessions):
    with pytest.raises(WriteError) as info:
        sessions.start(None, "")
    assert not isinstance(info.value, ForeignKeyError)
    assert sessions.fetch_all_sessions() == []


def test_failed_read_raises_read_error(sessions):
    with pytest.raises(ReadError):
        sessions.fetch_all("SELECT * FROM missing_table;")
    # the store stays usable after a failed read
    assert sessions.fetch_active_session() is None


def test_most_recent_open_session_wins(sessions):
    base = datetime.datetime(2024, 5, 1, 8, 0, tzinfo=UTC)
    sessions.start(20, "older", started_at=base)
    newer = sessions.start(20, "newer", started_at=base + datetime.timedelta(minutes=5))
    assert sessions.fetch_active_session().id == newer


def test_naive_timestamp_rejected(sessions):
    with pytest.raises(ValueError):
        sessions.start(20, "", started_at=datetime.datetime(2024, 5, 1, 8, 0))


def test_corrupt_start_time(db, sessions):
    with db._connection() as conn:
        conn.execute(
            "INSERT INTO sessions (start_time, pressure_setting, notes) VALUES (?, ?, ?);",
            ("yesterday", 30, ""),
        )
    with pytest.raises(CorruptDataError):
        sessions.fetch_all_sessions()


def test_offsetless_end_time_is_corrupt(db, sessions):
    sid = sessions.start(30, "")
    with db._connection() as conn:
        conn.execute(
            "UPDATE sessions SET end_time = ? WHERE id = ?;",
            ("2024-05-01T10:00:00", sid),
        )
    with pytest.raises(CorruptDataError):
        sessions.fetch_detail(sid)


def test_parse_timestamp_variants():
    expected = datetime.datetime(2024, 3, 1, 10, 0, 0, 123456, tzinfo=UTC)
    assert parse_timestamp("2024-03-01T10:00:00.123456789+00:00", "t") == expected
    assert parse_timestamp("2024-03-01T10:00:00.123456Z", "t") == expected
    assert parse_timestamp("2024-03-01T12:00:00.123456+02:00", "t") == expected
    with pytest.raises(CorruptDataError):
        parse_timestamp(None, "t")
