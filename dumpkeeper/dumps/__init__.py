"""
Dump module for dumpkeeper.

This module handles the core dump lifecycle functionality:
- Storage adapters (local and S3)
- Dump artifacts and their timestamps
- Catalog listing and calendar grouping
- Retention policy enforcement
"""

from .storage import LocalStorage, S3Storage, StorageError, create_storage
from .artifact import DumpArtifact, InvalidPeriod
from .catalog import DumpCatalog
from .grouping import group_by_calendar_field, build_dump_tree
from .retention import RetentionEngine, RetentionReport
from .service import DumpService

__all__ = [
    'LocalStorage',
    'S3Storage',
    'StorageError',
    'create_storage',
    'DumpArtifact',
    'InvalidPeriod',
    'DumpCatalog',
    'group_by_calendar_field',
    'build_dump_tree',
    'RetentionEngine',
    'RetentionReport',
    'DumpService'
]
