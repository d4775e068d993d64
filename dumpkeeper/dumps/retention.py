"""
Retention policy enforcement for dumps.

Implements grandfather-father-son thinning:
1. Keep the newest dump of each calendar day (up to policy.day per day)
2. Keep everything from the last policy.week days
3. Keep the newest dump per month within the last policy.month months
4. Keep the newest dump per year beyond that (policy.year most recent years)
5. Cap the result at policy.total dumps
Everything else is deleted, then empty directories are pruned.
"""

import calendar
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Callable, Dict, List, Optional, Tuple

from dumpkeeper.config import RetentionPolicy, StorageTarget
from .artifact import DumpArtifact
from .catalog import DumpCatalog
from .grouping import group_by_calendar_field
from .storage import BaseStorage, StorageError

logger = logging.getLogger(__name__)


def subtract_months(moment: datetime, months: int) -> datetime:
    """Go back a number of calendar months, clamping the day to the month's length."""
    month_index = moment.year * 12 + (moment.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


@dataclass
class RetentionReport:
    """Outcome of one retention run on a storage target."""
    target: str
    kept: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    errors: List[Tuple[str, str]] = field(default_factory=list)
    removed_directories: List[str] = field(default_factory=list)
    dry_run: bool = False
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    logs: List[str] = field(default_factory=list)
    run_id: Optional[int] = None

    @property
    def status(self) -> str:
        if not self.errors:
            return 'success'
        return 'partial'

    def to_dict(self) -> dict:
        data = {
            'target': self.target,
            'status': self.status,
            'dry_run': self.dry_run,
            'kept': self.kept,
            'deleted': self.deleted,
            'errors': [{'path': path, 'reason': reason} for path, reason in self.errors],
            'removed_directories': self.removed_directories,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
        }
        if self.run_id is not None:
            data['run_id'] = self.run_id
        return data

class RetentionEngine:
    """
    Applies a RetentionPolicy to the dumps of a storage target.

    A run first computes the keep-set from a single catalog snapshot and a
    single "now", and only then starts deleting.
    """

    def __init__(self, catalog: DumpCatalog, policy: RetentionPolicy,
                 max_workers: int = 4, clock: Optional[Callable[[], datetime]] = None,
                 tz: Optional[tzinfo] = None):
        """
        Initialize retention engine.

        Args:
            catalog: Catalog used to list and resolve targets
            policy: Retention limits
            max_workers: Upper bound on concurrent deletes
            clock: Returns the current time (defaults to UTC now)
            tz: Zone a naive "now" is read in (defaults to the catalog's zone, else UTC)
        """
        self.catalog = catalog
        self.policy = policy
        self.max_workers = max_workers
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        if tz is None:
            tz = catalog.settings.tz if catalog is not None else timezone.utc
        self.tz = tz
        self.logs: List[str] = []

    def select(self, artifacts: List[DumpArtifact], now: datetime) -> List[DumpArtifact]:
        """
        Compute the keep-set.

        Pure: reads timestamps only, touches no storage.

        Args:
            artifacts: Full catalog of the target
            now: Reference instant of the run (naive means the engine's zone)

        Returns:
            Artifacts to keep, newest first, unique by path
        """
        policy = self.policy
        now = now.astimezone(self.tz) if now.tzinfo else now.replace(tzinfo=self.tz)
        ordered = sorted(artifacts, key=lambda a: a.last_modified(), reverse=True)

        # Day tier
        daily = []
        for bucket in group_by_calendar_field(ordered, 'day').values():
            daily.extend(bucket[:policy.day] if policy.day else bucket)
        daily.sort(key=lambda a: a.last_modified(), reverse=True)

        week_cutoff = (now - timedelta(days=policy.week)).timestamp()
        month_cutoff = subtract_months(now, policy.month).timestamp() if policy.month else week_cutoff
        month_cutoff = min(month_cutoff, week_cutoff)

        recent = [a for a in daily if a.last_modified() >= week_cutoff]
        monthly = [a for a in daily if month_cutoff <= a.last_modified() < week_cutoff]
        yearly = [a for a in daily if a.last_modified() < month_cutoff]

        keep: Dict[str, DumpArtifact] = {}

        # Week tier
        for artifact in recent:
            keep.setdefault(artifact.path, artifact)

        # Month tier
        for bucket in group_by_calendar_field(monthly, 'month').values():
            keep.setdefault(bucket[0].path, bucket[0])

        # Year tier
        year_buckets = list(group_by_calendar_field(yearly, 'year').values())
        if policy.year:
            year_buckets = year_buckets[:policy.year]
        for bucket in year_buckets:
            keep.setdefault(bucket[0].path, bucket[0])

        kept = sorted(keep.values(), key=lambda a: a.last_modified(), reverse=True)

        if policy.total:
            kept = kept[:policy.total]

        return kept

    def plan(self, target_name: str) -> RetentionReport:
        """
        Compute what a run would keep and delete without touching storage.

        Raises:
            StorageTargetNotFound, DiskMisconfigured: If the target is invalid
            StorageError: If listing fails
        """
        self.logs = []
        report = RetentionReport(target=target_name, dry_run=True, started_at=self.clock())
        target, storage = self.catalog.resolve(target_name)
        artifacts = self.catalog.list_on(target, storage)

        kept = self.select(artifacts, report.started_at)
        kept_paths = {a.path for a in kept}

        report.kept = [a.path for a in artifacts if a.path in kept_paths]
        report.deleted = [a.path for a in artifacts if a.path not in kept_paths]
        report.completed_at = self.clock()
        self._log(f"Dry run on {target_name}: would keep {len(report.kept)}, delete {len(report.deleted)}")
        report.logs = list(self.logs)
        return report

    def apply(self, target_name: str) -> RetentionReport:
        """
        Enforce the policy on a target.

        Per-dump delete failures are collected in the report and do not stop
        the run. Directory cleanup failures are reported, never raised.

        Raises:
            StorageTargetNotFound, DiskMisconfigured: Before anything is listed
            StorageError: If the initial listing fails (nothing deleted yet)
        """
        self.logs = []
        now = self.clock()
        report = RetentionReport(target=target_name, started_at=now)
        self._log(f"Enforcing retention policy on target: {target_name} ({self.policy.to_dict()})")

        target, storage = self.catalog.resolve(target_name)
        artifacts = self.catalog.list_on(target, storage)

        # Decision phase
        kept = self.select(artifacts, now)
        kept_paths = {a.path for a in kept}
        doomed = [a for a in artifacts if a.path not in kept_paths]
        report.kept = [a.path for a in artifacts if a.path in kept_paths]
        self._log(f"Found {len(artifacts)} dumps: keeping {len(report.kept)}, deleting {len(doomed)}")

        # Mutation phase
        deleted, errors = self._delete_all(doomed)
        report.deleted = [a.path for a in doomed if a.path in deleted]
        report.errors = [(a.path, errors[a.path]) for a in doomed if a.path in errors]

        report.removed_directories, dir_errors = self.prune_empty_directories(storage, target)
        report.errors.extend(dir_errors)

        report.completed_at = self.clock()
        self._log(
            f"Retention complete on {target_name}. "
            f"Kept: {len(report.kept)}, "
            f"Deleted: {len(report.deleted)}, "
            f"Directories removed: {len(report.removed_directories)}, "
            f"Errors: {len(report.errors)}"
        )
        report.logs = list(self.logs)
        return report

    def _delete_all(self, doomed: List[DumpArtifact]) -> Tuple[set, Dict[str, str]]:
        deleted = set()
        errors: Dict[str, str] = {}

        if not doomed:
            return deleted, errors

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = {pool.submit(artifact.delete): artifact for artifact in doomed}
            for future in as_completed(futures):
                artifact = futures[future]
                try:
                    future.result()
                except Exception as e:
                    # Any adapter failure stays with its dump
                    errors[artifact.path] = str(e) or type(e).__name__
                    self._log(f"Failed to delete dump {artifact.path}: {e}", level=logging.ERROR)
                else:
                    deleted.add(artifact.path)
                    self._log(f"Deleted dump: {artifact.path}")

        return deleted, errors

    def prune_empty_directories(self, storage: BaseStorage,
                                target: StorageTarget) -> Tuple[List[str], List[Tuple[str, str]]]:
        """
        Remove empty directories under the target path, deepest first.

        A directory is removed only if, when checked, it holds no files and
        no subdirectories. The target path itself is left in place.

        Returns:
            (removed directory paths, [(path, reason)] failures)
        """
        removed = []
        errors = []

        try:
            directories = storage.list_directories(target.path)
        except StorageError as e:
            self._log(f"Failed to list directories of {target.path}: {e}", level=logging.WARNING)
            return removed, [(target.path, str(e))]

        for directory in sorted(directories, key=lambda d: d.count('/'), reverse=True):
            try:
                if storage.list_files(directory) or storage.list_directories(directory):
                    continue
                storage.delete_directory(directory)
                removed.append(directory)
                self._log(f"Removed empty directory: {directory}")
            except StorageError as e:
                errors.append((directory, str(e)))
                self._log(f"Failed to remove directory {directory}: {e}", level=logging.WARNING)

        return removed, errors

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: Level for the module logger
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)
