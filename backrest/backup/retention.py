"""
Retention policy enforcement for backups and WAL archive.

Works out everything that can be removed first, then deletes:
1. Backups (newest dependents first)
2. Archived segments no retained backup needs
3. Archive directories left empty
"""

import logging
import os
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from backrest.config import BACKUP_TYPE_DIFF, BACKUP_TYPE_FULL, BACKUP_TYPE_INCR
from .manifest import BackupManifest, backup_list, label_full, label_sort_key, manifest_load
from .storage import FileService, PATH_BACKUP_ARCHIVE, PATH_BACKUP_CLUSTER


logger = logging.getLogger(__name__)

ARCHIVE_DIRECTORY_REGEX = r'^[0-9A-F]{16}$'
ARCHIVED_SEGMENT_REGEX = re.compile(r'^([0-9A-F]{24})(-[0-9a-f]{40})?(\.gz)?$')


@dataclass
class ExpireResult:
    backups_removed: List[str] = field(default_factory=list)
    segments_removed: int = 0
    directories_removed: int = 0
    archive_cutoff: Optional[str] = None


class RetentionManager:
    """
    Enforces backup and archive retention for one stanza.

    Args:
        file_service: File service for the stanza's repository
        full_retention: Number of full backups to keep (None = keep all)
        differential_retention: Number of differential backups to keep
        archive_retention_type: Which backups count for archive retention
            (full, diff or incr); None disables archive expiration
        archive_retention: Number of counted backups whose WAL is kept
            (default: the matching backup retention count)
    """

    def __init__(
        self,
        file_service: FileService,
        full_retention: Optional[int] = None,
        differential_retention: Optional[int] = None,
        archive_retention_type: Optional[str] = None,
        archive_retention: Optional[int] = None
    ):
        self.file = file_service
        self.full_retention = full_retention
        self.differential_retention = differential_retention
        self.archive_retention_type = archive_retention_type
        self.archive_retention = archive_retention

    def expire(self) -> ExpireResult:
        """
        Remove expired backups and archive.

        Returns:
            ExpireResult with what was removed

        Raises:
            TransferFailure: If the repository cannot be read or a removal fails
        """
        labels = backup_list(self.file, full=True, diff=True, incr=True)
        manifests = {label: manifest_load(self.file, label) for label in labels}

        expired = self.backups_expired(labels, manifests)
        retained = [label for label in labels if label not in expired]

        cutoff = self.archive_cutoff(retained, manifests)
        protected = [
            (manifests[label].archive_start, manifests[label].archive_stop)
            for label in retained
            if manifests[label].archive_start and manifests[label].archive_stop
        ]
        segments = self.segments_expired(cutoff, protected) if cutoff else {}

        result = ExpireResult(archive_cutoff=cutoff)

        for label in sorted(expired, key=label_sort_key, reverse=True):
            logger.info(f"removing expired backup {label}")
            self.file.remove_tree(PATH_BACKUP_CLUSTER, label)
            result.backups_removed.append(label)

        for directory, names in segments.items():
            for name in names:
                self.file.remove(PATH_BACKUP_ARCHIVE, os.path.join(directory, name))
                result.segments_removed += 1

            if not self.file.list(PATH_BACKUP_ARCHIVE, directory, ignore_missing=True):
                self.file.remove_tree(PATH_BACKUP_ARCHIVE, directory)
                result.directories_removed += 1

        if result.segments_removed:
            logger.info(f"removed {result.segments_removed} archived segments older than {cutoff}")

        return result

    # ------------------------------------------------------------------
    # Backups
    # ------------------------------------------------------------------

    def backups_expired(self, labels: List[str], manifests: Dict[str, BackupManifest]) -> Set[str]:
        """
        Work out which backups can be removed.

        Args:
            labels: All backup labels, oldest first
            manifests: Manifest for each label

        Returns:
            Set of removable labels; nothing a retained backup depends on is included
        """
        newest_first = sorted(labels, key=label_sort_key, reverse=True)
        expired: Set[str] = set()

        if self.full_retention is not None:
            fulls = [label for label in newest_first if manifests[label].type == BACKUP_TYPE_FULL]
            for full in fulls[self.full_retention:]:
                dependents = [label for label in labels if label_full(label) == full]
                logger.debug(f"full backup {full} expired with {len(dependents) - 1} dependent backups")
                expired.update(dependents)
        else:
            logger.info('full-retention not set, full backups will not be expired')

        if self.differential_retention is not None:
            diffs = [label for label in newest_first if manifests[label].type == BACKUP_TYPE_DIFF]

            if len(diffs) > self.differential_retention:
                oldest_kept = label_sort_key(diffs[self.differential_retention - 1])

                for label in labels:
                    if (manifests[label].type in (BACKUP_TYPE_DIFF, BACKUP_TYPE_INCR) and
                            label_sort_key(label) < oldest_kept):
                        expired.add(label)

        # Put back anything a retained backup still needs
        for label in labels:
            if label in expired:
                continue
            for ancestor in self._chain(label, manifests):
                if ancestor in expired:
                    logger.debug(f"{ancestor} is required by {label} and will be kept")
                    expired.discard(ancestor)

        return expired

    @staticmethod
    def _chain(label: str, manifests: Dict[str, BackupManifest]) -> List[str]:
        """Labels a backup depends on, nearest first."""
        chain = []
        prior = manifests[label].prior

        while prior and prior not in chain:
            chain.append(prior)
            prior = manifests[prior].prior if prior in manifests else None

        full = label_full(label)
        if full != label and full not in chain:
            chain.append(full)

        return chain

    # ------------------------------------------------------------------
    # Archive
    # ------------------------------------------------------------------

    def archive_cutoff(self, retained: List[str], manifests: Dict[str, BackupManifest]) -> Optional[str]:
        """
        Segment before which archived WAL may be removed.

        Returns:
            The archive start of the oldest counted backup, or None when
            archive should not be expired
        """
        if self.archive_retention_type is None:
            logger.info('archive-retention-type not set - archive logs will not be expired')
            return None

        count = self.archive_retention
        if count is None:
            if self.archive_retention_type == BACKUP_TYPE_FULL:
                count = self.full_retention
            elif self.archive_retention_type == BACKUP_TYPE_DIFF:
                count = self.differential_retention

        if count is None:
            logger.info(
                f"archive-retention not set for type {self.archive_retention_type} - "
                f"archive logs will not be expired"
            )
            return None

        counted_types = {
            BACKUP_TYPE_FULL: (BACKUP_TYPE_FULL,),
            BACKUP_TYPE_DIFF: (BACKUP_TYPE_FULL, BACKUP_TYPE_DIFF),
            BACKUP_TYPE_INCR: (BACKUP_TYPE_FULL, BACKUP_TYPE_DIFF, BACKUP_TYPE_INCR),
        }[self.archive_retention_type]

        counted = [
            label for label in sorted(retained, key=label_sort_key, reverse=True)
            if manifests[label].type in counted_types
        ]

        if len(counted) < count:
            logger.info(f"fewer than {count} {self.archive_retention_type} backups, archive logs will not be expired")
            return None

        cutoff = manifests[counted[count - 1]].archive_start
        if cutoff is None:
            logger.warning(f"backup {counted[count - 1]} has no archive start, archive logs will not be expired")
            return None

        logger.debug(f"archive retention based on backup {counted[count - 1]}, cutoff {cutoff}")
        return cutoff

    def segments_expired(self, cutoff: str, protected: List[tuple]) -> Dict[str, List[str]]:
        """
        Archived segments older than cutoff that no retained backup needs.

        Args:
            cutoff: Oldest segment to keep
            protected: (archive start, archive stop) of every retained backup

        Returns:
            Dict of archive directory -> file names to remove
        """
        removable: Dict[str, List[str]] = {}

        for directory in self.file.list(PATH_BACKUP_ARCHIVE, expression=ARCHIVE_DIRECTORY_REGEX,
                                        ignore_missing=True):
            if directory > cutoff[:16]:
                break

            for name in self.file.list(PATH_BACKUP_ARCHIVE, directory):
                match = ARCHIVED_SEGMENT_REGEX.match(name)
                if not match:
                    continue

                segment = match.group(1)
                if segment >= cutoff:
                    continue
                if any(start <= segment <= stop for start, stop in protected):
                    continue

                removable.setdefault(directory, []).append(name)

        return removable


def expire(
    file_service: FileService,
    full_retention: Optional[int] = None,
    differential_retention: Optional[int] = None,
    archive_retention_type: Optional[str] = None,
    archive_retention: Optional[int] = None
) -> ExpireResult:
    """
    Enforce retention for a stanza's repository.

    Returns:
        ExpireResult from RetentionManager.expire()
    """
    manager = RetentionManager(
        file_service,
        full_retention=full_retention,
        differential_retention=differential_retention,
        archive_retention_type=archive_retention_type,
        archive_retention=archive_retention
    )
    return manager.expire()
