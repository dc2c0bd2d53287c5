"""
Wires the backup orchestrator to the Flask app configuration.

One orchestrator per app lives in app.extensions['backup_orchestrator'] and is
shared by the API routes and the scheduler.
"""

import logging
from typing import Optional

from flask import current_app

from agendavault.datastore import LocalDataStore, SettingsStore
from agendavault.models import StorageSettings
from agendavault.utils.master_key import CredentialDecryptionError, get_master_key_manager
from .attachments import DeviceFilesystem
from .orchestrator import BackupOrchestrator
from .progress import ProgressReporter
from .storage import DirectoryStorage, S3Storage, StorageError


logger = logging.getLogger(__name__)

EXTENSION_KEY = 'backup_orchestrator'


class S3StorageProvider:
    """
    Builds S3Storage from the credentials saved in the database.

    The handler is cached until the saved settings change.
    """

    def __init__(self, app):
        self.app = app
        self.root_prefix = app.config.get('S3_ROOT_PREFIX', 'agenda-vault')
        self._cache_key = None
        self._storage = None

    def __call__(self) -> Optional[S3Storage]:
        settings = StorageSettings.query.first()
        if not settings:
            return None

        cache_key = (settings.id, settings.updated_at)
        if cache_key == self._cache_key:
            return self._storage

        try:
            master_key = get_master_key_manager(self.app)
            storage = S3Storage(
                access_key=master_key.decrypt(settings.access_key_encrypted),
                secret_key=master_key.decrypt(settings.secret_key_encrypted),
                bucket_name=settings.bucket_name,
                region=settings.region,
                root_prefix=self.root_prefix
            )
        except (CredentialDecryptionError, StorageError) as e:
            logger.error(f"Cannot use saved S3 settings: {e}")
            return None

        self._cache_key = cache_key
        self._storage = storage
        return storage


class DirectoryStorageProvider:
    """Serves one DirectoryStorage for the configured directory (None when unset)."""

    def __init__(self, app):
        base_path = app.config.get('LOCAL_STORAGE_DIR')
        self._storage = None
        if base_path:
            self._storage = DirectoryStorage(base_path, app.config.get('LOCAL_STORAGE_ACCOUNT'))

    def __call__(self) -> Optional[DirectoryStorage]:
        return self._storage


def create_storage_provider(app):
    """
    Create the remote storage provider for STORAGE_BACKEND.

    Raises:
        ValueError: If STORAGE_BACKEND is not 's3' or 'local'
    """
    backend = app.config.get('STORAGE_BACKEND', 's3')
    if backend == 's3':
        return S3StorageProvider(app)
    elif backend == 'local':
        return DirectoryStorageProvider(app)
    raise ValueError(f"Unsupported storage backend: {backend}")


def init_backup_service(app, storage_provider=None) -> BackupOrchestrator:
    """
    Build the app's backup orchestrator.

    Args:
        app: Flask app instance
        storage_provider: Override for the configured storage provider (tests)
    """
    device_dir = app.config.get('DEVICE_FILES_DIR')
    settings_store = SettingsStore()

    orchestrator = BackupOrchestrator(
        data_store=LocalDataStore(settings_store),
        settings_store=settings_store,
        storage_provider=storage_provider or create_storage_provider(app),
        filesystem=DeviceFilesystem(device_dir) if device_dir else None,
        reporter=ProgressReporter(),
        config=app.config
    )
    app.extensions[EXTENSION_KEY] = orchestrator

    logger.info(
        f"Backup service ready (storage: {app.config.get('STORAGE_BACKEND')}, "
        f"device: {orchestrator.device_type})"
    )
    return orchestrator


def get_backup_service(app=None) -> BackupOrchestrator:
    """Return the orchestrator of `app` (default: the current app)."""
    app = app or current_app
    return app.extensions[EXTENSION_KEY]
