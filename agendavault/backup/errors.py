"""
Error taxonomy for the backup pipeline and the soft-failure result type.

Fatal kinds abort the remaining stages and propagate to the caller. Soft kinds
(AttachmentError during restore, MetadataSyncError, RetentionError) are caught
where they happen and reported as StageResult values instead.
"""

from enum import Enum
from typing import Optional


class BackupError(Exception):
    """Base class for every backup/restore failure."""

    kind = 'BackupFailure'

    def __init__(self, message: str, kind: Optional[str] = None):
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class AuthRequiredError(BackupError):
    """No authenticated remote storage identity is available."""
    kind = 'AuthRequired'


class OperationInProgressError(BackupError):
    """A backup or restore is already running on this orchestrator."""
    kind = 'OperationInProgress'


class EncryptionError(BackupError):
    """Encryption failed, or decryption failed on corrupted input."""
    kind = 'EncryptionFailure'


class WrongPasswordError(EncryptionError):
    """Decryption key does not match the key the envelope was made with."""
    kind = 'WrongPassword'


class UploadError(BackupError):
    kind = 'UploadFailure'


class DownloadError(BackupError):
    kind = 'DownloadFailure'


class BackupNotFoundError(DownloadError):
    """No remote backup file has the requested id."""
    kind = 'NotFound'


class ValidationError(BackupError):
    """Downloaded or decrypted payload is malformed."""
    kind = 'ValidationFailure'


class AttachmentError(BackupError):
    kind = 'AttachmentFailure'


class MetadataSyncError(BackupError):
    kind = 'MetadataSyncFailure'


class RetentionError(BackupError):
    kind = 'RetentionFailure'


class StageStatus(Enum):
    OK = 'ok'
    SOFT_FAILURE = 'soft_failure'
    FAILURE = 'failure'


class StageResult:
    """
    Outcome of one pipeline stage: Ok | SoftFailure(error) | Failure(error).
    """

    def __init__(self, stage: str, status: StageStatus, error: Optional[BackupError] = None):
        self.stage = stage
        self.status = status
        self.error = error

    @classmethod
    def ok(cls, stage: str) -> 'StageResult':
        return cls(stage, StageStatus.OK)

    @classmethod
    def soft_failure(cls, stage: str, error: BackupError) -> 'StageResult':
        return cls(stage, StageStatus.SOFT_FAILURE, error)

    @classmethod
    def failure(cls, stage: str, error: BackupError) -> 'StageResult':
        return cls(stage, StageStatus.FAILURE, error)

    @property
    def is_ok(self) -> bool:
        return self.status is StageStatus.OK

    @property
    def is_soft_failure(self) -> bool:
        return self.status is StageStatus.SOFT_FAILURE

    @property
    def reason(self) -> Optional[str]:
        return str(self.error) if self.error is not None else None

    def to_dict(self) -> dict:
        return {
            'stage': self.stage,
            'status': self.status.value,
            'kind': self.error.kind if self.error is not None else None,
            'reason': self.reason
        }

    def __repr__(self):
        return f'<StageResult {self.stage} {self.status.value}>'
