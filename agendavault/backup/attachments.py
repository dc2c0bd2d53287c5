"""
Attachment archives: collects device-stored client files into an encrypted ZIP.
"""

import io
import json
import logging
import zipfile
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .encryption import Envelope, EnvelopeCipher
from .errors import AttachmentError, BackupError


logger = logging.getLogger(__name__)


class DeviceFilesystem:
    """
    Device storage for attachment files, rooted at one directory.

    Paths are relative to the root; anything resolving outside it is rejected.
    """

    def __init__(self, root: str):
        self.root = Path(root).resolve()

    def read_file(self, path: str) -> bytes:
        return self._resolve(path).read_bytes()

    def write_file(self, path: str, data: bytes):
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

    def _resolve(self, path: str) -> Path:
        target = (self.root / path.lstrip('/')).resolve()
        if target != self.root and self.root not in target.parents:
            raise ValueError(f"Path escapes device storage: {path}")
        return target


class AttachmentBundler:
    """
    Builds and restores attachment archives.

    The archive is a deflated ZIP of (path, bytes) entries, encrypted with the
    binary envelope variant and shipped as the envelope's JSON document.
    """

    def __init__(self, filesystem: DeviceFilesystem, cipher: EnvelopeCipher, reporter=None):
        self.filesystem = filesystem
        self.cipher = cipher
        self.reporter = reporter

    @staticmethod
    def find_device_attachments(collections: Dict[str, Iterable[dict]]) -> List[str]:
        """
        Collect unique paths of files stored on the device.

        Args:
            collections: Mapping of collection name to records

        Returns:
            Paths in first-seen order
        """
        paths = []
        seen = set()

        for records in collections.values():
            if not isinstance(records, list):
                continue
            for record in records:
                if not isinstance(record, dict):
                    continue
                for file_ref in record.get('files') or []:
                    if not isinstance(file_ref, dict):
                        continue
                    path = file_ref.get('path')
                    if file_ref.get('stored_in_filesystem') and path and path not in seen:
                        seen.add(path)
                        paths.append(path)

        return paths

    def bundle(self, collections: Dict[str, Iterable[dict]], password: str,
               start: int = 30, span: int = 20) -> str:
        """
        Archive and encrypt every device-stored attachment.

        Files that cannot be read are logged and left out of the archive.

        Args:
            collections: Mapping of collection name to records
            password: Encryption password
            start: Progress percentage before the first file
            span: Progress range covered by the files

        Returns:
            JSON document of the encrypted archive envelope

        Raises:
            AttachmentError: If the archive cannot be built or encrypted
        """
        paths = self.find_device_attachments(collections)
        total = len(paths)
        logger.info(f"Bundling {total} attachments")

        try:
            buffer = io.BytesIO()
            with zipfile.ZipFile(buffer, 'w', compression=zipfile.ZIP_DEFLATED) as archive:
                for processed, path in enumerate(paths, start=1):
                    try:
                        archive.writestr(path, self.filesystem.read_file(path))
                    except (OSError, ValueError) as e:
                        logger.warning(f"Skipping attachment {path}: {e}")

                    if self.reporter is not None:
                        percent = start + int(processed / total * span)
                        self.reporter.update(percent, f"Archiving attachments ({processed}/{total})")

            envelope = self.cipher.encrypt_file(buffer.getvalue(), password)
        except BackupError as e:
            raise AttachmentError(f"Failed to encrypt attachment archive: {e}")
        except (OSError, zipfile.BadZipFile) as e:
            raise AttachmentError(f"Failed to build attachment archive: {e}")

        return json.dumps(envelope.to_dict())

    def restore(self, package, password: str) -> Dict[str, List[str]]:
        """
        Decrypt an attachment archive and write its entries back to the device.

        Each entry is written independently; a failed write does not stop the
        remaining entries.

        Args:
            package: Envelope JSON (str/bytes) or its decoded dict
            password: Decryption password

        Returns:
            {'restored': [paths], 'failed': [paths]}

        Raises:
            AttachmentError: If the archive cannot be decrypted or opened
        """
        try:
            if isinstance(package, (str, bytes)):
                package = json.loads(package)
            data = self.cipher.decrypt_file(Envelope.from_dict(package), password)
            archive = zipfile.ZipFile(io.BytesIO(data))
        except BackupError as e:
            raise AttachmentError(f"Failed to decrypt attachment archive: {e}")
        except (ValueError, zipfile.BadZipFile) as e:
            raise AttachmentError(f"Attachment archive is not valid: {e}")

        result = {'restored': [], 'failed': []}

        with archive:
            for entry in archive.infolist():
                if entry.is_dir():
                    continue
                try:
                    self.filesystem.write_file(entry.filename, archive.read(entry))
                    result['restored'].append(entry.filename)
                except (OSError, ValueError, zipfile.BadZipFile) as e:
                    logger.warning(f"Failed to restore attachment {entry.filename}: {e}")
                    result['failed'].append(entry.filename)

        logger.info(
            f"Restored {len(result['restored'])} attachments "
            f"({len(result['failed'])} failed)"
        )
        return result
