"""
Backup module for pg_backrest.

This module handles the core data movement including:
- File transfer (local and over the remote session)
- Compression
- WAL archive push/get and the async spool drain
- Backup copy with a worker pool
- Retention policy enforcement
"""

from .executor import BackupExecutor
from .storage import FileService
from .compression import copy_stream
from .archive import ArchivePipeline, ArchiveSpool, spawn_drain
from .manifest import BackupManifest
from .retention import RetentionManager, expire

__all__ = [
    'BackupExecutor',
    'FileService',
    'copy_stream',
    'ArchivePipeline',
    'ArchiveSpool',
    'spawn_drain',
    'BackupManifest',
    'RetentionManager',
    'expire'
]
