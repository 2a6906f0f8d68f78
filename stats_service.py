from __future__ import annotations
import datetime
from typing import Optional, Tuple

from db import RepRepository, SessionRepository, utc_now


class StatisticsService:
    """Compute derived session metrics directly against stored rows."""

    def __init__(
        self,
        session_repo: SessionRepository,
        rep_repo: RepRepository,
    ) -> None:
        self.sessions = session_repo
        self.reps = rep_repo

    @staticmethod
    def week_bounds(
        tz: datetime.tzinfo, now: datetime.datetime | None = None
    ) -> Tuple[datetime.datetime, datetime.datetime]:
        """Return the local ISO week containing ``now`` as UTC [start, end)."""
        local = (now or utc_now()).astimezone(tz)
        monday = local.date() - datetime.timedelta(days=local.isoweekday() - 1)
        start = datetime.datetime.combine(monday, datetime.time(), tzinfo=tz)
        end = datetime.datetime.combine(
            monday + datetime.timedelta(days=7), datetime.time(), tzinfo=tz
        )
        return (
            start.astimezone(datetime.timezone.utc),
            end.astimezone(datetime.timezone.utc),
        )

    def session_count_for_week(
        self, tz: datetime.tzinfo, now: datetime.datetime | None = None
    ) -> int:
        """Count completed sessions whose end falls in the current local ISO week.

        Open sessions are never counted. Week boundaries are taken in ``tz``.
        """
        now = now or utc_now()
        target = now.astimezone(tz).isocalendar()[:2]
        start, end = self.week_bounds(tz, now)
        # text range is approximate; membership is decided on decoded instants
        pad = datetime.timedelta(days=1)
        ends = self.sessions.fetch_end_times(start - pad, end + pad)
        return sum(1 for e in ends if e.astimezone(tz).isocalendar()[:2] == target)

    def last_session_end_time(self) -> Optional[datetime.datetime]:
        return self.sessions.fetch_last_end_time()

    def session_rep_total(self, session_id: int) -> int:
        return self.reps.total_for_session(session_id)
