"""
Backup module for Agenda Vault.

This module handles the encrypted backup pipeline including:
- Envelope encryption and backup key derivation
- Remote storage (S3 and directory)
- Attachment archives
- Backup metadata registry
- Retention policy enforcement
- Backup/restore orchestration and progress reporting
"""

from .orchestrator import BackupOrchestrator, OrchestratorState
from .encryption import EnvelopeCipher, KeyDerivation
from .storage import S3Storage, DirectoryStorage
from .attachments import AttachmentBundler, DeviceFilesystem
from .metadata import BackupDescriptor, MetadataStore
from .retention import RetentionManager
from .progress import ProgressReporter

__all__ = [
    'BackupOrchestrator',
    'OrchestratorState',
    'EnvelopeCipher',
    'KeyDerivation',
    'S3Storage',
    'DirectoryStorage',
    'AttachmentBundler',
    'DeviceFilesystem',
    'BackupDescriptor',
    'MetadataStore',
    'RetentionManager',
    'ProgressReporter'
]
