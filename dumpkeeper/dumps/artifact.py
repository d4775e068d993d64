"""
Dump artifact: one backup file on a storage target and its timestamp.
"""

import math
import posixpath
from datetime import datetime, timezone, tzinfo
from typing import Optional

from .storage import BaseStorage, StorageError


# Calendar units from finest to coarsest. A period check compares the
# requested unit and every coarser one.
PERIODS = ['second', 'minute', 'hour', 'day', 'weekOfMonth', 'month', 'year']

DEFAULT_FILENAME_FORMAT = '%Y-%m-%d_%H-%M-%S'


class InvalidPeriod(ValueError):
    """Raised when an unknown calendar unit is requested."""
    pass


class TimestampParseFailure(ValueError):
    """Raised when a file name does not carry a timestamp."""
    pass


def parse_dump_timestamp(name: str, filename_format: str = DEFAULT_FILENAME_FORMAT,
                         tz: tzinfo = timezone.utc) -> int:
    """
    Parse the creation time encoded in a dump file name.

    Everything after the first '.' is treated as extension, so both
    '2024-01-15_02-00-00.sql' and '2024-01-15_02-00-00.sql.gz' parse.

    Args:
        name: File name (no directory)
        filename_format: strftime format of the stem
        tz: Zone the stem is written in

    Returns:
        Unix timestamp

    Raises:
        TimestampParseFailure: If the stem doesn't match the format
    """
    stem = name.split('.', 1)[0]
    try:
        parsed = datetime.strptime(stem, filename_format)
    except ValueError as e:
        raise TimestampParseFailure(f"Cannot parse timestamp from {name!r}: {e}")
    return int(parsed.replace(tzinfo=tz).timestamp())


def resolve_timestamp(name: str, path: str, storage: BaseStorage,
                      filename_format: str = DEFAULT_FILENAME_FORMAT,
                      tz: tzinfo = timezone.utc) -> int:
    """
    Resolve a dump's timestamp: file name first, backend metadata second.
    """
    try:
        return parse_dump_timestamp(name, filename_format, tz)
    except TimestampParseFailure:
        return int(storage.get_modified_time(path))


def calendar_field(moment: datetime, period: str) -> int:
    """
    Value of a calendar unit of moment.

    Raises:
        InvalidPeriod: If period is not one of PERIODS
    """
    if period == 'weekOfMonth':
        return math.ceil(moment.day / 7)
    if period not in PERIODS:
        raise InvalidPeriod(
            f"Period '{period}' does not exist. Available periods: {', '.join(PERIODS)}"
        )
    return getattr(moment, period)


class DumpArtifact:
    """
    A dump file on a storage target.

    The timestamp is resolved on first access and never re-read, so one
    retention run always groups an artifact into the same buckets.
    """

    def __init__(self, storage: BaseStorage, path: str,
                 filename_format: str = DEFAULT_FILENAME_FORMAT,
                 tz: tzinfo = timezone.utc):
        self.storage = storage
        self.path = path
        self.name = posixpath.basename(path)
        self.filename_format = filename_format
        self.tz = tz
        self._timestamp: Optional[int] = None
        self._deleted = False

    def last_modified(self) -> int:
        """Unix timestamp of the dump (memoized)."""
        if self._timestamp is None:
            self._timestamp = resolve_timestamp(
                self.name, self.path, self.storage, self.filename_format, self.tz
            )
        return self._timestamp

    def time(self) -> datetime:
        """Timestamp as an aware datetime in the bucketing zone."""
        return datetime.fromtimestamp(self.last_modified(), tz=self.tz)

    def is_in_period(self, period: str, now: datetime) -> bool:
        """
        Check if the dump falls into the same period as now.

        The requested unit and every coarser one must match, so 'month'
        means same month of the same year.

        Raises:
            InvalidPeriod: If period is unknown
        """
        if period not in PERIODS:
            raise InvalidPeriod(
                f"Period '{period}' does not exist. Available periods: {', '.join(PERIODS)}"
            )

        time = self.time()
        now = now.astimezone(self.tz) if now.tzinfo else now.replace(tzinfo=self.tz)

        for unit in PERIODS[PERIODS.index(period):]:
            if calendar_field(time, unit) != calendar_field(now, unit):
                return False

        return True

    @property
    def deleted(self) -> bool:
        return self._deleted

    def delete(self):
        """
        Delete the underlying file.

        Raises:
            StorageError: If the artifact was already deleted or the backend fails
        """
        if self._deleted:
            raise StorageError(f"Dump already deleted: {self.path}")
        self.storage.delete(self.path)
        self._deleted = True

    def to_dict(self) -> dict:
        return {
            'path': self.path,
            'name': self.name,
            'timestamp': self.last_modified(),
            'created_at': self.time().isoformat(),
        }

    def __repr__(self):
        return f'<DumpArtifact {self.path}>'
