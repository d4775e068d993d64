"""
Dump catalog: lists the dumps stored on a named storage target.
"""

import logging
from typing import Callable, List, Tuple

from dumpkeeper.config import DiskConfig, DumpSettings, StorageTarget
from .artifact import DumpArtifact
from .storage import BaseStorage, create_storage

logger = logging.getLogger(__name__)


class DumpCatalog:
    """
    Builds DumpArtifact lists for storage targets.

    Nothing is cached between calls; each list() reflects the storage as it
    is right now.
    """

    def __init__(self, settings: DumpSettings,
                 storage_factory: Callable[[DiskConfig], BaseStorage] = create_storage):
        self.settings = settings
        self.storage_factory = storage_factory

    def resolve(self, target_name: str) -> Tuple[StorageTarget, BaseStorage]:
        """
        Resolve a target name to its definition and a storage handler.

        Raises:
            StorageTargetNotFound: If the target is not configured
            DiskMisconfigured: If the target's disk is missing or invalid
        """
        target = self.settings.get_target(target_name)
        disk = self.settings.get_disk(target)
        return target, self.storage_factory(disk)

    def list(self, target_name: str) -> List[DumpArtifact]:
        """
        List all dumps on a target, newest first.

        The sort is stable: dumps with identical timestamps keep the order
        the backend enumerated them in.

        Raises:
            StorageTargetNotFound, DiskMisconfigured: Before any listing happens
            StorageError: If the backend listing fails
        """
        target, storage = self.resolve(target_name)
        return self.list_on(target, storage)

    def list_on(self, target: StorageTarget, storage: BaseStorage) -> List[DumpArtifact]:
        """List dumps on an already resolved target."""
        artifacts = [
            DumpArtifact(
                storage,
                path,
                filename_format=self.settings.filename_format,
                tz=self.settings.tz
            )
            for path in storage.list_files(target.path)
        ]

        logger.debug(f"Found {len(artifacts)} dumps on target {target.name}")

        return sorted(artifacts, key=lambda artifact: artifact.last_modified(), reverse=True)
