"""
Dump service - the interface the API and scheduler use.

Wraps catalog, retention engine and dump placement for the configured
targets, and records retention runs in the database.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from flask import current_app

from dumpkeeper import db
from dumpkeeper.config import DumpSettings, RetentionPolicy
from dumpkeeper.models import RetentionRun
from .artifact import DumpArtifact
from .catalog import DumpCatalog
from .retention import RetentionEngine, RetentionReport
from .storage import create_storage, join_path

logger = logging.getLogger(__name__)


class DumpService:
    """
    Core operations on configured storage targets.
    """

    def __init__(self, settings: DumpSettings, storage_factory=create_storage,
                 clock: Optional[Callable[[], datetime]] = None):
        self.settings = settings
        self.catalog = DumpCatalog(settings, storage_factory=storage_factory)
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def target_names(self) -> List[str]:
        return sorted(self.settings.targets)

    def list_artifacts(self, target_name: str) -> List[DumpArtifact]:
        """
        List dumps on a target, newest first.

        Raises:
            StorageTargetNotFound, DiskMisconfigured: If the target is invalid
            StorageError: If listing fails
        """
        return self.catalog.list(target_name)

    def apply_retention(self, target_name: str, policy: Optional[RetentionPolicy] = None,
                        dry_run: bool = False) -> RetentionReport:
        """
        Run the retention policy on a target.

        Args:
            target_name: Configured storage target
            policy: Overrides the configured policy when given
            dry_run: Only compute kept/deleted, don't touch storage

        Returns:
            RetentionReport
        """
        engine = RetentionEngine(
            self.catalog,
            policy or self.settings.policy,
            max_workers=self.settings.max_workers,
            clock=self.clock
        )
        if dry_run:
            return engine.plan(target_name)
        return engine.apply(target_name)

    def store_dump(self, target_name: str, local_path: str) -> DumpArtifact:
        """
        Place a finished dump file on a target.

        The file is named after the current time so its timestamp can be
        read back from the name:
        {target path}/{strftime(dir_name)}/{strftime(filename_format)}{extension}

        Raises:
            StorageTargetNotFound, DiskMisconfigured: If the target is invalid
            StorageError: If the upload fails
        """
        target, storage = self.catalog.resolve(target_name)
        now = self.clock().astimezone(self.settings.tz)

        directory = join_path(target.path, now.strftime(self.settings.dir_name))
        name = now.strftime(self.settings.filename_format) + self.settings.extension
        path = join_path(directory, name)

        if not storage.exists(directory):
            storage.create_directory(directory)
        storage.put(local_path, path)
        logger.info(f"Stored dump {path} on target {target_name}")

        return DumpArtifact(storage, path, self.settings.filename_format, self.settings.tz)


def get_dump_service() -> DumpService:
    """DumpService for the current Flask app."""
    return DumpService(current_app.extensions['dumpkeeper'])


def record_run(report: RetentionReport) -> RetentionRun:
    """
    Persist a retention report as a RetentionRun row.
    """
    run = RetentionRun(
        target_name=report.target,
        status=report.status,
        started_at=_naive_utc(report.started_at),
        completed_at=_naive_utc(report.completed_at),
        kept_count=len(report.kept),
        deleted_count=len(report.deleted),
        error_count=len(report.errors),
        deleted_paths=json.dumps(report.deleted),
        errors=json.dumps([{'path': p, 'reason': r} for p, r in report.errors]),
        logs='\n'.join(report.logs)
    )
    db.session.add(run)
    db.session.commit()
    report.run_id = run.id
    return run


def run_retention(target_name: str, service: Optional[DumpService] = None) -> RetentionReport:
    """
    Run retention on one target and record the outcome.

    Fatal errors (bad target, listing failure) are recorded as a failed run
    and re-raised.

    Returns:
        The report, with run_id set to the recorded RetentionRun
    """
    service = service or get_dump_service()
    started_at = datetime.now(timezone.utc)

    try:
        report = service.apply_retention(target_name)
    except Exception as e:
        logger.error(f"Retention failed for target {target_name}: {e}")
        run = RetentionRun(
            target_name=target_name,
            status='failed',
            started_at=_naive_utc(started_at),
            completed_at=_naive_utc(datetime.now(timezone.utc)),
            error_message=str(e)
        )
        db.session.add(run)
        db.session.commit()
        raise

    record_run(report)
    return report


def enforce_retention_policies() -> Dict[str, Any]:
    """
    Enforce retention on every configured target.

    This function should be called by the scheduler on a daily basis.

    Returns:
        Summary dict:
        {
            'targets_processed': int,
            'deleted': int,
            'errors': List[str]
        }
    """
    service = get_dump_service()
    summary = {
        'targets_processed': 0,
        'deleted': 0,
        'errors': []
    }

    for target_name in service.target_names():
        try:
            report = run_retention(target_name, service)
            summary['targets_processed'] += 1
            summary['deleted'] += len(report.deleted)
            if report.errors:
                summary['errors'].append(f"{target_name}: {len(report.errors)} errors")
        except Exception as e:
            summary['errors'].append(f"Failed to enforce policy for target {target_name}: {e}")

    logger.info(
        f"Retention enforcement complete. "
        f"Targets: {summary['targets_processed']}, "
        f"Deleted: {summary['deleted']}, "
        f"Errors: {len(summary['errors'])}"
    )
    return summary


def _naive_utc(moment: Optional[datetime]) -> Optional[datetime]:
    if moment is None:
        return None
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc).replace(tzinfo=None)
    return moment
