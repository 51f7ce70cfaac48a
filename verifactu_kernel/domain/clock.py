"""
Injectable time source.

The registry, the transmission worker and the certificate monitor never
read the wall clock themselves.  They take a ``Clock``, which also owns
``sleep`` so that flow-control spacing between submissions can be
exercised without waiting in tests.
"""

import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone


class Clock(ABC):
    """Source of aware UTC datetimes, plus waiting."""

    @abstractmethod
    def now(self) -> datetime:
        ...

    @abstractmethod
    def sleep(self, seconds: float) -> None:
        ...


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)


class DeterministicClock(Clock):
    """
    Clock that only moves when told to.

    ``sleep`` does not block: it records the requested wait in ``sleeps``
    and moves the clock forward by it, so a worker that spaces three
    submissions 60 seconds apart leaves ``sleeps == [60.0, 60.0]``.
    """

    DEFAULT_START = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __init__(self, start: datetime | None = None):
        self._current = start or self.DEFAULT_START
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self._current

    def set_time(self, moment: datetime) -> None:
        self._current = moment

    def advance(self, seconds: float = 1) -> None:
        self._current += timedelta(seconds=seconds)

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        if seconds > 0:
            self.advance(seconds)
