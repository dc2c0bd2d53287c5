"""
Backup metadata registry.

The registry is a JSON object {backup id: descriptor} kept in the durable
settings store and mirrored to a single remote file so that other devices
signed in to the same account can list backups with their details.
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from agendavault import db
from agendavault.datastore import DataStoreError
from .errors import MetadataSyncError, StageResult
from .naming import metadata_file_name
from .storage import StorageError


logger = logging.getLogger(__name__)

REGISTRY_KEY = 'backup_metadata'


class BackupDescriptor:
    """Details of one uploaded backup, keyed by the main payload's file id."""

    def __init__(self, id: str, file_name: str, created_at: Optional[str] = None,
                 size_bytes: int = 0, has_attachments: bool = False,
                 device_type: str = 'unknown', item_counts: Optional[Dict[str, int]] = None,
                 attachments_file_id: Optional[str] = None):
        self.id = id
        self.file_name = file_name
        self.created_at = created_at or datetime.utcnow().isoformat() + 'Z'
        self.size_bytes = size_bytes
        self.has_attachments = has_attachments
        self.device_type = device_type
        self.item_counts = item_counts or {}
        self.attachments_file_id = attachments_file_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'file_name': self.file_name,
            'created_at': self.created_at,
            'size_bytes': self.size_bytes,
            'has_attachments': self.has_attachments,
            'device_type': self.device_type,
            'item_counts': dict(self.item_counts),
            'attachments_file_id': self.attachments_file_id
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], id: Optional[str] = None) -> 'BackupDescriptor':
        """Load a descriptor; missing keys take defaults, unknown keys are ignored."""
        item_counts = data.get('item_counts')
        return cls(
            id=data.get('id') or id,
            file_name=data.get('file_name') or '',
            created_at=data.get('created_at'),
            size_bytes=data.get('size_bytes') or 0,
            has_attachments=bool(data.get('has_attachments', False)),
            device_type=data.get('device_type') or 'unknown',
            item_counts=item_counts if isinstance(item_counts, dict) else {},
            attachments_file_id=data.get('attachments_file_id')
        )

    def __repr__(self):
        return f'<BackupDescriptor {self.file_name} ({self.id})>'


class MetadataStore:
    """
    Local registry of backup descriptors with a remote mirror.

    Local operations are whole-registry read-modify-write. The remote sync
    methods never raise for remote failures: they return a StageResult.
    """

    def __init__(self, settings_store, storage, file_prefix: str = 'smart-agenda'):
        """
        Args:
            settings_store: Durable key/value store holding the registry
            storage: Remote storage handler (may be None; syncs then soft-fail)
            file_prefix: Backup file name prefix
        """
        self.settings_store = settings_store
        self.storage = storage
        self.file_name = metadata_file_name(file_prefix)

    def get(self, backup_id: str) -> Optional[BackupDescriptor]:
        data = self._load().get(backup_id)
        if not isinstance(data, dict):
            return None
        return BackupDescriptor.from_dict(data, id=backup_id)

    def get_all(self) -> Dict[str, BackupDescriptor]:
        return {
            backup_id: BackupDescriptor.from_dict(data, id=backup_id)
            for backup_id, data in self._load().items()
            if isinstance(data, dict)
        }

    def put(self, descriptor: BackupDescriptor):
        """
        Add or replace a descriptor.

        Raises:
            DataStoreError: If the registry cannot be written
        """
        registry = self._load()
        registry[descriptor.id] = descriptor.to_dict()
        self._save(registry)

    def delete(self, backup_id: str):
        registry = self._load()
        if registry.pop(backup_id, None) is not None:
            self._save(registry)

    def sync_from_remote(self) -> StageResult:
        """
        Merge the remote mirror into the local registry (remote wins on collision).

        Returns:
            StageResult OK, or SOFT_FAILURE with a MetadataSyncError
        """
        stage = 'sync_metadata_from_remote'

        if self.storage is None:
            return StageResult.soft_failure(stage, MetadataSyncError("Remote storage not available"))

        try:
            files = self.storage.list_files(name=self.file_name)
            if not files:
                logger.debug("No remote metadata file yet")
                return StageResult.ok(stage)

            remote = json.loads(self.storage.download_file(files[0]['id']))
            if not isinstance(remote, dict):
                raise ValueError("metadata file is not a JSON object")

            merged = {**self._load(), **remote}
            self._save(merged)
            logger.info(f"Merged {len(remote)} remote backup descriptors")
            return StageResult.ok(stage)

        except (StorageError, ValueError, DataStoreError) as e:
            logger.warning(f"Metadata sync from remote failed: {e}")
            return StageResult.soft_failure(stage, MetadataSyncError(str(e)))

    def sync_to_remote(self) -> StageResult:
        """
        Write the local registry to the remote mirror file.

        Returns:
            StageResult OK, or SOFT_FAILURE with a MetadataSyncError
        """
        stage = 'sync_metadata_to_remote'

        if self.storage is None:
            return StageResult.soft_failure(stage, MetadataSyncError("Remote storage not available"))

        try:
            content = json.dumps(self._load(), indent=2)
            files = self.storage.list_files(name=self.file_name)
            if files:
                self.storage.update_file(files[0]['id'], content, 'application/json')
            else:
                self.storage.upload_file(self.file_name, content, 'application/json')
            logger.debug("Metadata mirrored to remote storage")
            return StageResult.ok(stage)

        except StorageError as e:
            logger.warning(f"Metadata sync to remote failed: {e}")
            return StageResult.soft_failure(stage, MetadataSyncError(str(e)))

    def _load(self) -> Dict[str, Any]:
        registry = self.settings_store.get_json(REGISTRY_KEY, {})
        return registry if isinstance(registry, dict) else {}

    def _save(self, registry: Dict[str, Any]):
        try:
            self.settings_store.set_json(REGISTRY_KEY, registry)
        except SQLAlchemyError as e:
            db.session.rollback()
            raise DataStoreError(f"Failed to write backup metadata: {e}")
