from __future__ import annotations

from datetime import datetime, timedelta

from .store import AlertStore, _coerce_utc

DEFAULT_REVIEW_GRACE = timedelta(days=3)


def review_cutoff(now: datetime, grace: timedelta = DEFAULT_REVIEW_GRACE) -> datetime:
    return _coerce_utc(now) - grace


class DueJobScanner:
    """Selects orders whose post-delivery review request is due.

    Selection only; overlapping sweeps return overlapping candidate sets and the
    claim step decides which one sends.
    """

    def __init__(self, store: AlertStore, *, grace: timedelta = DEFAULT_REVIEW_GRACE) -> None:
        self._store = store
        self._grace = grace

    @property
    def grace(self) -> timedelta:
        return self._grace

    def cutoff(self, now: datetime) -> datetime:
        return review_cutoff(now, self._grace)

    def scan(self, now: datetime, *, limit: int | None = None) -> list[str]:
        return self._store.select_due_review_jobs(cutoff=self.cutoff(now), limit=limit)
