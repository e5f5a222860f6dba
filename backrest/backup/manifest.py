"""
Backup labels and manifests.

Labels:
    full   20240115-120000F
    diff   20240115-120000F_20240116-120000D
    incr   20240115-120000F_20240116-130000I

The first 16 characters of every label name its full backup, so a chain can
be found by prefix. Each backup directory holds a ``backup.manifest`` (JSON)
describing how the backup was taken and every file in it.
"""

import json
import os
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from backrest.config import BACKUP_TYPE_DIFF, BACKUP_TYPE_FULL, BACKUP_TYPE_INCR
from backrest.errors import TransferFailure
from .storage import FileService, PATH_BACKUP_CLUSTER


MANIFEST_FILE = 'backup.manifest'

TIMESTAMP_FORMAT = '%Y%m%d-%H%M%S'
TYPE_SUFFIX = {
    BACKUP_TYPE_FULL: 'F',
    BACKUP_TYPE_DIFF: 'D',
    BACKUP_TYPE_INCR: 'I',
}

_FULL = r'\d{8}-\d{6}F'
_TIMESTAMP = r'\d{8}-\d{6}'


def label_create(backup_type: str, prior_label: Optional[str] = None, now: Optional[datetime] = None) -> str:
    """
    Generate the label for a new backup.

    Args:
        backup_type: full, diff or incr
        prior_label: Label of the backup this one is based on (diff/incr)
        now: Timestamp to use (default: current local time)

    Returns:
        Backup label
    """
    timestamp = (now or datetime.now()).strftime(TIMESTAMP_FORMAT)

    if backup_type == BACKUP_TYPE_FULL:
        return f'{timestamp}F'

    if prior_label is None:
        raise ValueError(f"{backup_type} backup requires a prior backup label")

    return f'{label_full(prior_label)}_{timestamp}{TYPE_SUFFIX[backup_type]}'


def label_full(label: str) -> str:
    """Label of the full backup a label belongs to."""
    return label[:16]


def label_regex(full: bool = True, diff: bool = False, incr: bool = False) -> str:
    """Regex matching labels of the requested types."""
    suffixes = ''.join(suffix for enabled, suffix in ((diff, 'D'), (incr, 'I')) if enabled)

    patterns = []
    if full:
        patterns.append(_FULL)
    if suffixes:
        patterns.append(f'{_FULL}_{_TIMESTAMP}[{suffixes}]')

    return '^(' + '|'.join(patterns) + ')$'


def label_sort_key(label: str):
    """Sort key ordering labels by the time the backup was taken."""
    return (label[-16:-1], label)


@dataclass
class BackupManifest:
    """Everything recorded about one backup."""
    label: str
    type: str
    prior: Optional[str] = None
    timestamp_start: Optional[str] = None
    timestamp_stop: Optional[str] = None
    archive_start: Optional[str] = None
    archive_stop: Optional[str] = None
    consistent: bool = True
    forced: bool = False
    compress: bool = True
    hardlink: bool = False
    checksum: bool = True
    files: Dict[str, dict] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> 'BackupManifest':
        known = {name: data[name] for name in cls.__dataclass_fields__ if name in data}
        return cls(**known)

    def save(self, path: str):
        """Write the manifest atomically to path."""
        tmp_path = f'{path}.tmp'
        try:
            with open(tmp_path, 'w') as f:
                json.dump(self.to_dict(), f, indent=2, sort_keys=True)
            os.rename(tmp_path, path)
        except OSError as e:
            raise TransferFailure(f"Failed to write manifest {path}: {e}")

    @classmethod
    def load(cls, path: str) -> 'BackupManifest':
        try:
            with open(path, 'r') as f:
                return cls.from_dict(json.load(f))
        except (OSError, ValueError) as e:
            raise TransferFailure(f"Failed to read manifest {path}: {e}")


def backup_list(file_service: FileService, full: bool = True, diff: bool = False, incr: bool = False,
                reverse: bool = False) -> List[str]:
    """
    List backup labels in the repository, oldest first (newest first if reverse).
    """
    labels = file_service.list(
        PATH_BACKUP_CLUSTER,
        expression=label_regex(full, diff, incr),
        ignore_missing=True
    )
    return sorted(labels, key=label_sort_key, reverse=reverse)


def manifest_load(file_service: FileService, label: str) -> BackupManifest:
    return BackupManifest.load(file_service.path_get(PATH_BACKUP_CLUSTER, os.path.join(label, MANIFEST_FILE)))
