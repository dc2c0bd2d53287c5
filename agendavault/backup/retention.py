"""
Retention policy enforcement for remote backups.

Keeps the newest N main backups on remote storage and deletes the rest along
with their attachment archives and registry descriptors.
"""

import logging
from typing import Any, Dict, List, Optional

from agendavault.datastore import DataStoreError
from .errors import RetentionError
from .naming import extract_date_token, is_attachments_archive, is_main_backup
from .storage import StorageError


logger = logging.getLogger(__name__)


class RetentionManager:
    """
    Enforces the keep-newest-N policy for one backup file prefix.
    """

    def __init__(self, storage, metadata_store, file_prefix: str = 'smart-agenda', keep_count: int = 10):
        """
        Initialize retention manager.

        Args:
            storage: Remote storage handler
            metadata_store: MetadataStore for the same prefix
            file_prefix: Backup file name prefix
            keep_count: Default number of main backups to keep
        """
        self.storage = storage
        self.metadata_store = metadata_store
        self.file_prefix = file_prefix
        self.keep_count = keep_count

    def cleanup(self, keep_count: Optional[int] = None) -> Dict[str, Any]:
        """
        Delete main backups beyond the newest `keep_count`.

        Args:
            keep_count: Backups to keep (default: the manager's keep_count)

        Returns:
            Dict with summary of cleanup operations:
            {
                'found': int,
                'kept': int,
                'deleted': int,
                'attachments_deleted': int,
                'errors': List[str]
            }

        Raises:
            RetentionError: If keep_count is negative or remote files cannot be listed
        """
        keep_count = self.keep_count if keep_count is None else keep_count
        if keep_count < 0:
            raise RetentionError(f"keep_count must not be negative: {keep_count}")

        try:
            files = self.storage.list_backups(self.file_prefix)
        except StorageError as e:
            raise RetentionError(f"Failed to list remote backups: {e}")

        backups = sorted(
            (f for f in files if is_main_backup(f['name'], self.file_prefix)),
            key=lambda f: f['modified_time'],
            reverse=True
        )
        archives = [f for f in files if is_attachments_archive(f['name'], self.file_prefix)]

        to_keep = backups[:keep_count]
        to_delete = backups[keep_count:]

        summary = {
            'found': len(backups),
            'kept': len(to_keep),
            'deleted': 0,
            'attachments_deleted': 0,
            'errors': []
        }

        if not to_delete:
            logger.info(f"Retention: {len(backups)} backups, nothing to delete (keep {keep_count})")
            return summary

        logger.info(f"Retention: {len(backups)} backups, deleting {len(to_delete)} (keep {keep_count})")

        descriptors = self.metadata_store.get_all()
        claimed = {
            descriptors[f['id']].attachments_file_id
            for f in to_keep
            if f['id'] in descriptors and descriptors[f['id']].attachments_file_id
        }

        for backup in to_delete:
            descriptor = descriptors.get(backup['id'])

            for archive_id in self.paired_archives(backup, descriptor, archives, claimed):
                try:
                    self.storage.delete_file(archive_id)
                    summary['attachments_deleted'] += 1
                    claimed.add(archive_id)
                    logger.info(f"Deleted attachment archive {archive_id} of {backup['name']}")
                except StorageError as e:
                    error_msg = f"Failed to delete attachment archive {archive_id}: {e}"
                    logger.warning(error_msg)
                    summary['errors'].append(error_msg)

            try:
                self.storage.delete_file(backup['id'])
                summary['deleted'] += 1
                logger.info(f"Deleted old backup: {backup['name']}")
            except StorageError as e:
                error_msg = f"Failed to delete backup {backup['name']}: {e}"
                logger.warning(error_msg)
                summary['errors'].append(error_msg)
                continue

            try:
                self.metadata_store.delete(backup['id'])
            except DataStoreError as e:
                error_msg = f"Failed to remove descriptor of {backup['name']}: {e}"
                logger.warning(error_msg)
                summary['errors'].append(error_msg)

        self.metadata_store.sync_to_remote()

        logger.info(
            f"Retention complete. Deleted: {summary['deleted']}, "
            f"archives deleted: {summary['attachments_deleted']}, "
            f"errors: {len(summary['errors'])}"
        )
        return summary

    @staticmethod
    def paired_archives(backup, descriptor, archives: List[dict], claimed: set) -> List[str]:
        """
        Archive ids belonging to a main backup.

        Uses the descriptor's attachments_file_id; descriptors without the link
        fall back to archives sharing the backup's date token that no kept
        backup claims.
        """
        if descriptor is not None and descriptor.attachments_file_id:
            return [descriptor.attachments_file_id]
        if descriptor is not None and not descriptor.has_attachments:
            return []

        token = extract_date_token(backup['name'])
        if token is None:
            return []
        return [
            archive['id'] for archive in archives
            if extract_date_token(archive['name']) == token and archive['id'] not in claimed
        ]
