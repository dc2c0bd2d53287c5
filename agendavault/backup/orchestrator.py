"""
Backup orchestrator - runs the encrypted backup and restore workflows.

Backup workflow:
1. Collect records and app settings (10%)
2. Detect device-stored attachments (20%)
3. Bundle attachments into an encrypted archive (30-50%)
4. Encrypt the main payload (40/50%)
5. Upload the main payload (60/70%)
6. Upload the attachment archive (80-94% simulated, then 95%)
7. Persist the descriptor locally and mirror it remotely (95%)
8. Enforce retention
9. Done (100%)

Restore workflow:
Download (10%) -> parse (25%) -> decrypt (35%) -> validate (55%) ->
restore attachments (65%) -> import (75%) -> done (100%) -> reload.

Fatal errors abort the workflow and propagate. Metadata mirroring, retention
and attachment restore failures are soft and reported in the result.
"""

import json
import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from agendavault import db
from agendavault.datastore import COLLECTIONS, DataStoreError
from .attachments import AttachmentBundler
from .encryption import Envelope, EnvelopeCipher, KeyDerivation
from .errors import (
    AttachmentError, AuthRequiredError, BackupError, BackupNotFoundError, DownloadError,
    OperationInProgressError, RetentionError, StageResult, UploadError, ValidationError
)
from .metadata import BackupDescriptor, MetadataStore
from .naming import (
    attachments_file_name, backup_file_name, extract_date_token,
    is_attachments_archive, is_main_backup
)
from .progress import ProgressReporter, notification, reload_requested
from .retention import RetentionManager
from .storage import FileNotFoundInStorage, StorageError


logger = logging.getLogger(__name__)

APP_VERSION = '3.0.0'

# User preferences kept in the settings store
PREF_INCLUDE_PHOTOS = 'backup_include_photos'
PREF_INCLUDE_DOCUMENTS = 'backup_include_documents'
PREF_AUTO_BACKUP_FREQUENCY = 'auto_backup_frequency'

LAST_BACKUP_METADATA = 'last_backup_metadata'
LAST_BACKUP_TIME = 'last_backup_time'

DEFAULTS = {
    'BACKUP_FILE_PREFIX': 'smart-agenda',
    'BACKUP_KEEP_COUNT': 10,
    'BACKUP_KEY_SALT': 'SmartAgenda-v3.0-backup',
    'BACKUP_PBKDF2_ITERATIONS': 100000,
    'PROGRESS_RELEASE_DELAY': 1.0,
    'RELOAD_DELAY': 2.0,
    'SIMULATED_PROGRESS_INTERVAL': 2.0,
    'SIMULATED_PROGRESS_STEP': 2,
    'SIMULATED_PROGRESS_CEILING': 94,
    'DEVICE_CLASS': None,
}


class OrchestratorState(Enum):
    IDLE = 'idle'
    BACKING_UP = 'backing_up'
    RESTORING = 'restoring'


class BackupOrchestrator:
    """
    Coordinates the local store, encryption, remote storage and device
    filesystem for backup, restore, listing and deletion.

    One operation runs at a time: backup and restore are mutually exclusive.
    """

    def __init__(self, data_store, settings_store, storage_provider: Callable[[], Any],
                 cipher: Optional[EnvelopeCipher] = None,
                 key_derivation: Optional[KeyDerivation] = None,
                 filesystem=None,
                 reporter: Optional[ProgressReporter] = None,
                 config: Optional[Dict[str, Any]] = None):
        """
        Initialize backup orchestrator.

        Args:
            data_store: LocalDataStore with the records to back up
            settings_store: SettingsStore for preferences and the metadata registry
            storage_provider: Callable returning the remote storage handler,
                              or None when no storage account is configured
            cipher: Envelope cipher (default: EnvelopeCipher with configured iterations)
            key_derivation: Backup password derivation (default: configured salt)
            filesystem: DeviceFilesystem holding attachments (None = no attachments)
            reporter: ProgressReporter (default: a new one)
            config: Mapping overriding DEFAULTS (usually app.config)
        """
        config = config or {}
        self.settings = {key: config.get(key, default) for key, default in DEFAULTS.items()}

        self.data_store = data_store
        self.settings_store = settings_store
        self.storage_provider = storage_provider
        self.cipher = cipher or EnvelopeCipher(self.settings['BACKUP_PBKDF2_ITERATIONS'])
        self.key_derivation = key_derivation or KeyDerivation(self.settings['BACKUP_KEY_SALT'])
        self.filesystem = filesystem
        self.reporter = reporter or ProgressReporter()
        self.prefix = self.settings['BACKUP_FILE_PREFIX']

        self._lock = threading.Lock()
        self._state = OrchestratorState.IDLE

    @property
    def state(self) -> OrchestratorState:
        return self._state

    @property
    def is_backing_up(self) -> bool:
        return self._state is OrchestratorState.BACKING_UP

    @property
    def is_restoring(self) -> bool:
        return self._state is OrchestratorState.RESTORING

    @property
    def device_type(self) -> str:
        return self.settings['DEVICE_CLASS'] or ('mobile' if self.filesystem is not None else 'desktop')

    def status(self) -> Dict[str, Any]:
        """Current state plus details of the last successful backup."""
        return {
            'state': self._state.value,
            'is_backing_up': self.is_backing_up,
            'is_restoring': self.is_restoring,
            'last_backup_time': self.settings_store.get(LAST_BACKUP_TIME),
            'last_backup': self.settings_store.get_json(LAST_BACKUP_METADATA)
        }

    # ------------------------------------------------------------------
    # Backup
    # ------------------------------------------------------------------

    def create_backup(self) -> Dict[str, Any]:
        """
        Back up all local data to remote storage.

        Returns:
            {'success', 'file_id', 'file_name', 'has_attachments', 'soft_failures'}

        Raises:
            OperationInProgressError: If a backup or restore is running
            AuthRequiredError: If no remote storage account is available
            BackupError: If a fatal stage fails (LocalStoreFailure for database errors)
        """
        with self._exclusive(OrchestratorState.BACKING_UP):
            self.reporter.open('backup')
            try:
                return self._run_backup()
            except SQLAlchemyError as e:
                db.session.rollback()
                error = BackupError(f"Local database error: {e}", kind='LocalStoreFailure')
                logger.error(f"Backup failed ({error.kind}): {error}")
                notification.send(self, level='error', message=f"Backup failed: {error}")
                raise error from e
            except BackupError as e:
                logger.error(f"Backup failed ({e.kind}): {e}")
                notification.send(self, level='error', message=f"Backup failed: {e}")
                raise
            finally:
                self.reporter.release(self.settings['PROGRESS_RELEASE_DELAY'])

    def _run_backup(self) -> Dict[str, Any]:
        storage, identity = self._authenticated_storage()
        password = self.key_derivation.derive(identity)
        soft_failures: List[StageResult] = []

        # Step 1: Collect data
        self.reporter.update(10, 'Collecting data...')
        collections, payload = self._collect_data()
        logger.info(
            "Collected " + ', '.join(f"{len(collections[c])} {c}" for c in COLLECTIONS)
        )

        # Step 2: Detect attachments
        self.reporter.update(20, 'Checking attachments...')
        has_attachments = False
        if self.settings_store.get_bool(PREF_INCLUDE_DOCUMENTS, True):
            if AttachmentBundler.find_device_attachments(collections):
                if self.filesystem is None:
                    logger.warning("Records reference device files but no device filesystem is available, skipping attachments")
                else:
                    has_attachments = True

        # Step 3: Bundle attachments
        attachments_package = None
        if has_attachments:
            self.reporter.update(30, 'Archiving attachments...')
            bundler = AttachmentBundler(self.filesystem, self.cipher, self.reporter)
            attachments_package = bundler.bundle(collections, password, start=30, span=20)

        # Step 4: Encrypt main payload
        self.reporter.update(50 if has_attachments else 40, 'Encrypting backup...')
        envelope = self.cipher.encrypt(json.dumps(payload), password)
        content = json.dumps(envelope.to_dict())

        # Step 5: Upload main payload
        now = datetime.utcnow()
        file_name = backup_file_name(self.prefix, now)
        self.reporter.update(70 if has_attachments else 60, 'Uploading backup...', pulsing=True)
        uploaded = self._upload(storage, file_name, content, 'application/json')
        self.reporter.update(75 if has_attachments else 80, 'Backup uploaded')
        logger.info(f"Uploaded {file_name} ({len(content)} bytes)")

        # Step 6: Upload attachment archive
        attachments_file_id = None
        if attachments_package is not None:
            archive_name = attachments_file_name(self.prefix, now)
            with self.reporter.simulate(
                80, 'Uploading attachments...',
                ceiling=self.settings['SIMULATED_PROGRESS_CEILING'],
                step=self.settings['SIMULATED_PROGRESS_STEP'],
                interval=self.settings['SIMULATED_PROGRESS_INTERVAL']
            ):
                archive = self._upload(storage, archive_name, attachments_package, 'application/octet-stream')
            attachments_file_id = archive['id']
            logger.info(f"Uploaded {archive_name}")

        # Step 7: Persist metadata
        self.reporter.update(95, 'Saving backup details...')
        descriptor = BackupDescriptor(
            id=uploaded['id'],
            file_name=file_name,
            created_at=now.isoformat() + 'Z',
            size_bytes=len(content),
            has_attachments=attachments_file_id is not None,
            device_type=self.device_type,
            item_counts={c: len(collections[c]) for c in COLLECTIONS},
            attachments_file_id=attachments_file_id
        )
        metadata = MetadataStore(self.settings_store, storage, self.prefix)
        self._persist_descriptor(metadata, descriptor)

        sync_result = metadata.sync_to_remote()
        if not sync_result.is_ok:
            soft_failures.append(sync_result)

        # Step 8: Retention
        try:
            RetentionManager(storage, metadata, self.prefix, self.settings['BACKUP_KEEP_COUNT']).cleanup()
        except RetentionError as e:
            logger.warning(f"Retention cleanup failed: {e}")
            soft_failures.append(StageResult.soft_failure('retention', e))

        # Step 9: Done
        self.reporter.update(100, 'Backup complete')
        notification.send(self, level='success', message='Backup completed successfully')
        logger.info(f"Backup completed: {file_name}")

        return {
            'success': True,
            'file_id': uploaded['id'],
            'file_name': file_name,
            'has_attachments': descriptor.has_attachments,
            'soft_failures': [r.to_dict() for r in soft_failures]
        }

    def _collect_data(self):
        include_photos = self.settings_store.get_bool(PREF_INCLUDE_PHOTOS, True)

        try:
            collections = {c: self.data_store.get_all(c) for c in COLLECTIONS}
            app_settings = self.data_store.get_settings()
        except (DataStoreError, SQLAlchemyError) as e:
            raise BackupError(f"Failed to read local data: {e}")

        if not include_photos:
            collections['clients'] = [dict(client, photo=None) for client in collections['clients']]

        payload = {
            'version': APP_VERSION,
            'timestamp': datetime.utcnow().isoformat() + 'Z',
            'data': dict(collections, settings=app_settings),
            'metadata': {
                'device_type': self.device_type,
                'app_version': APP_VERSION
            }
        }
        return collections, payload

    def _persist_descriptor(self, metadata: MetadataStore, descriptor: BackupDescriptor):
        try:
            metadata.put(descriptor)
            self.settings_store.set_json(LAST_BACKUP_METADATA, descriptor.to_dict())
            self.settings_store.set(LAST_BACKUP_TIME, descriptor.created_at)
        except SQLAlchemyError as e:
            db.session.rollback()
            raise BackupError(f"Failed to save backup details: {e}", kind='MetadataWriteFailure')
        except DataStoreError as e:
            raise BackupError(f"Failed to save backup details: {e}", kind='MetadataWriteFailure')

    @staticmethod
    def _upload(storage, name: str, content, mime_type: str) -> Dict[str, str]:
        try:
            return storage.upload_file(name, content, mime_type)
        except StorageError as e:
            raise UploadError(f"Failed to upload {name}: {e}")

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def restore_backup(self, backup_id: str) -> Dict[str, Any]:
        """
        Replace local data with the contents of a remote backup.

        Args:
            backup_id: Remote file id of the main backup

        Returns:
            {'success', 'items_restored', 'soft_failures'}; items_restored maps
            each collection to the number of records imported

        Raises:
            OperationInProgressError: If a backup or restore is running
            AuthRequiredError: If no remote storage account is available
            WrongPasswordError: If the backup was made by a different account
            BackupError: If a fatal stage fails (LocalStoreFailure for database errors)
        """
        with self._exclusive(OrchestratorState.RESTORING):
            self.reporter.open('restore')
            try:
                result = self._run_restore(backup_id)
            except SQLAlchemyError as e:
                db.session.rollback()
                error = BackupError(f"Local database error: {e}", kind='LocalStoreFailure')
                logger.error(f"Restore failed ({error.kind}): {error}")
                notification.send(self, level='error', message=f"Restore failed: {error}")
                raise error from e
            except BackupError as e:
                logger.error(f"Restore failed ({e.kind}): {e}")
                notification.send(self, level='error', message=f"Restore failed: {e}")
                raise
            finally:
                self.reporter.release(self.settings['PROGRESS_RELEASE_DELAY'])

        self._request_reload()
        return result

    def _run_restore(self, backup_id: str) -> Dict[str, Any]:
        storage, identity = self._authenticated_storage()
        password = self.key_derivation.derive(identity)
        soft_failures: List[StageResult] = []

        # Step 1: Download
        self.reporter.update(10, 'Downloading backup...')
        raw = self._download(storage, backup_id)

        # Step 2: Parse envelope
        self.reporter.update(25, 'Reading backup...')
        try:
            envelope = Envelope.from_dict(json.loads(raw))
        except ValueError as e:
            raise ValidationError(f"Backup file is not valid JSON: {e}")
        except BackupError as e:
            raise ValidationError(f"Backup file is not a valid envelope: {e}")

        # Step 3: Decrypt
        self.reporter.update(35, 'Decrypting backup...')
        plaintext = self.cipher.decrypt(envelope, password)

        # Step 4: Validate
        self.reporter.update(55, 'Validating backup...')
        try:
            payload = json.loads(plaintext)
        except ValueError as e:
            raise ValidationError(f"Decrypted backup is not valid JSON: {e}")
        self.validate_payload(payload)

        # Step 5: Restore attachments
        self.reporter.update(65, 'Restoring attachments...')
        metadata = MetadataStore(self.settings_store, storage, self.prefix)
        descriptor = metadata.get(backup_id)
        if descriptor is None:
            sync_result = metadata.sync_from_remote()
            if not sync_result.is_ok:
                soft_failures.append(sync_result)
            descriptor = metadata.get(backup_id)

        if descriptor is not None and descriptor.has_attachments:
            attachment_result = self._restore_attachments(storage, descriptor, password)
            if not attachment_result.is_ok:
                soft_failures.append(attachment_result)

        # Step 6: Import
        self.reporter.update(75, 'Importing data...')
        data = payload['data']
        try:
            self.data_store.import_data(data, replace=True)
        except DataStoreError as e:
            raise BackupError(f"Failed to import backup data: {e}", kind='ImportFailure')

        items_restored = {
            c: len(data[c]) if isinstance(data.get(c), list) else 0 for c in COLLECTIONS
        }

        # Step 7: Done
        self.reporter.update(100, 'Restore complete')
        notification.send(self, level='success', message='Backup restored successfully')
        logger.info(f"Restored backup {backup_id} ({sum(items_restored.values())} items)")

        return {
            'success': True,
            'items_restored': items_restored,
            'soft_failures': [r.to_dict() for r in soft_failures]
        }

    @staticmethod
    def validate_payload(payload):
        """
        Check the decrypted payload structure.

        Raises:
            ValidationError: If version/data are missing or a collection is not a list
        """
        if not isinstance(payload, dict):
            raise ValidationError("Backup payload must be a JSON object")
        if not payload.get('version'):
            raise ValidationError("Backup payload has no version")

        data = payload.get('data')
        if not isinstance(data, dict):
            raise ValidationError("Backup payload has no data")
        if not isinstance(data.get('clients'), list):
            raise ValidationError("Backup data.clients must be a list")

        for collection in COLLECTIONS:
            if collection in data and not isinstance(data[collection], list):
                raise ValidationError(f"Backup data.{collection} must be a list")
        if data.get('settings') is not None and not isinstance(data['settings'], dict):
            raise ValidationError("Backup data.settings must be an object")

    def _restore_attachments(self, storage, descriptor: BackupDescriptor, password: str) -> StageResult:
        stage = 'restore_attachments'

        if self.filesystem is None:
            error = AttachmentError("Backup has attachments but no device filesystem is available")
            logger.warning(str(error))
            return StageResult.soft_failure(stage, error)

        try:
            archive_id = self._find_archive_id(storage, descriptor)
            if archive_id is None:
                raise AttachmentError(f"Attachment archive for {descriptor.file_name} not found")

            package = storage.download_file(archive_id)
            bundler = AttachmentBundler(self.filesystem, self.cipher, self.reporter)
            result = bundler.restore(package, password)
        except (BackupError, StorageError) as e:
            error = e if isinstance(e, AttachmentError) else AttachmentError(str(e))
            logger.warning(f"Attachment restore failed: {error}")
            return StageResult.soft_failure(stage, error)

        if result['failed']:
            return StageResult.soft_failure(
                stage, AttachmentError(f"{len(result['failed'])} attachments could not be restored")
            )
        return StageResult.ok(stage)

    def _find_archive_id(self, storage, descriptor: BackupDescriptor) -> Optional[str]:
        """Archive linked to a descriptor, by id or (legacy) by date token."""
        if descriptor.attachments_file_id:
            return descriptor.attachments_file_id

        token = extract_date_token(descriptor.file_name)
        if token is None:
            return None
        for file in storage.list_backups(self.prefix):
            if is_attachments_archive(file['name'], self.prefix) and extract_date_token(file['name']) == token:
                return file['id']
        return None

    def _archives_of(self, storage, metadata: MetadataStore, backup_id: str,
                     descriptor: Optional[BackupDescriptor]) -> List[str]:
        """
        Archive ids to delete along with a main backup.

        Without a descriptor the backup is paired by date token with archives
        no other descriptor links to.
        """
        if descriptor is not None and descriptor.attachments_file_id:
            return [descriptor.attachments_file_id]
        if descriptor is not None and not descriptor.has_attachments:
            return []

        try:
            files = storage.list_backups(self.prefix)
        except StorageError as e:
            logger.warning(f"Failed to list attachment archives of {backup_id}: {e}")
            return []

        backup = next((f for f in files if f['id'] == backup_id), None)
        if backup is None:
            return []
        archives = [f for f in files if is_attachments_archive(f['name'], self.prefix)]
        claimed = {
            other.attachments_file_id
            for other_id, other in metadata.get_all().items()
            if other_id != backup_id and other.attachments_file_id
        }
        return RetentionManager.paired_archives(backup, descriptor, archives, claimed)

    def _request_reload(self):
        delay = self.settings['RELOAD_DELAY']
        if delay and delay > 0:
            timer = threading.Timer(delay, reload_requested.send, args=(self,))
            timer.daemon = True
            timer.start()
        else:
            reload_requested.send(self)

    @staticmethod
    def _download(storage, file_id: str) -> bytes:
        try:
            return storage.download_file(file_id)
        except FileNotFoundInStorage:
            raise BackupNotFoundError(f"Backup not found: {file_id}")
        except StorageError as e:
            raise DownloadError(f"Failed to download backup: {e}")

    # ------------------------------------------------------------------
    # Listing and deletion
    # ------------------------------------------------------------------

    def list_available_backups(self) -> List[Dict[str, Any]]:
        """
        List main backups on remote storage, newest first, with registry details.

        Raises:
            AuthRequiredError: If no remote storage account is available
            DownloadError: If remote files cannot be listed
        """
        storage, _ = self._authenticated_storage()
        metadata = MetadataStore(self.settings_store, storage, self.prefix)
        metadata.sync_from_remote()

        try:
            files = storage.list_backups(self.prefix)
        except StorageError as e:
            raise DownloadError(f"Failed to list backups: {e}")

        descriptors = metadata.get_all()
        backups = []

        for file in files:
            if not is_main_backup(file['name'], self.prefix):
                continue
            descriptor = descriptors.get(file['id'])
            backups.append({
                'id': file['id'],
                'name': file['name'],
                'size': file['size'],
                'created': _isoformat(file['created_time']),
                'modified': _isoformat(file['modified_time']),
                'device_type': descriptor.device_type if descriptor else 'unknown',
                'has_attachments': descriptor.has_attachments if descriptor else False,
                'item_counts': descriptor.item_counts if descriptor else {}
            })

        return backups

    def delete_backup(self, backup_id: str) -> bool:
        """
        Delete a remote backup, its attachment archive and its descriptor.

        Raises:
            AuthRequiredError: If no remote storage account is available
            BackupNotFoundError: If no remote file has this id
            BackupError: If the main file cannot be deleted (kind DeleteFailure)
        """
        storage, _ = self._authenticated_storage()
        metadata = MetadataStore(self.settings_store, storage, self.prefix)
        descriptor = metadata.get(backup_id)
        if descriptor is None:
            metadata.sync_from_remote()
            descriptor = metadata.get(backup_id)

        archive_ids = self._archives_of(storage, metadata, backup_id, descriptor)

        try:
            storage.delete_file(backup_id)
        except FileNotFoundInStorage:
            raise BackupNotFoundError(f"Backup not found: {backup_id}")
        except StorageError as e:
            raise BackupError(f"Failed to delete backup: {e}", kind='DeleteFailure')

        for archive_id in archive_ids:
            try:
                storage.delete_file(archive_id)
                logger.info(f"Deleted attachment archive {archive_id} of {backup_id}")
            except StorageError as e:
                logger.warning(f"Failed to delete attachment archive of {backup_id}: {e}")

        try:
            metadata.delete(backup_id)
        except DataStoreError as e:
            logger.warning(f"Failed to remove descriptor of {backup_id}: {e}")

        metadata.sync_to_remote()
        logger.info(f"Deleted backup {backup_id}")
        return True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _authenticated_storage(self):
        storage = self.storage_provider()
        if storage is None:
            raise AuthRequiredError("Remote storage is not configured")
        identity = storage.current_identity()
        if identity is None:
            raise AuthRequiredError("Not signed in to remote storage")
        return storage, identity

    @contextmanager
    def _exclusive(self, state: OrchestratorState):
        with self._lock:
            if self._state is not OrchestratorState.IDLE:
                raise OperationInProgressError(
                    f"Cannot start {state.value}: {self._state.value} already in progress"
                )
            self._state = state
        try:
            yield
        finally:
            with self._lock:
                self._state = OrchestratorState.IDLE


def _isoformat(value) -> Optional[str]:
    if isinstance(value, datetime):
        return value.isoformat()
    return value
