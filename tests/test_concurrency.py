import os
import sys
import threading

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from db import RepRepository, SessionRepository, initialize_database


def test_concurrent_reps_are_serialized(tmp_path):
    db = initialize_database(str(tmp_path / "threads.db"))
    sessions = SessionRepository(db)
    reps = RepRepository(db)
    sid = sessions.start(30, "")
    errors: list[Exception] = []

    def worker() -> None:
        try:
            for _ in range(25):
                reps.add(sid)
        except Exception as exc:  # pragma: no cover - reported below
            errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    db.close()

    assert errors == []
    db = initialize_database(str(tmp_path / "threads.db"))
    try:
        assert RepRepository(db).total_for_session(sid) == 100
        assert SessionRepository(db).fetch_detail(sid).rep_count == 100
    finally:
        db.close()
