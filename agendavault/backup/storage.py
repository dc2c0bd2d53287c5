"""
Remote file storage for encrypted backups.

Both handlers expose the same file-oriented interface:

- current_identity() -> RemoteIdentity or None
- upload_file(name, content, mime_type) -> {'id', 'name'}
- download_file(file_id) -> bytes
- list_files(name=None, contains=None) -> [file dict]
- list_backups(prefix) -> [file dict]
- update_file(file_id, content, mime_type) -> {'id', 'name'}
- delete_file(file_id)
- test_connection()

File dicts: {'id', 'name', 'size', 'created_time', 'modified_time'}, newest
first. Every stored file gets a generated id and lives at {root}/{id}/{name},
so two uploads with the same name never overwrite each other.

Supports:
- S3Storage: AWS S3 (identity from STS)
- DirectoryStorage: a local directory (identity from configuration)
"""

import logging
import os
import shutil
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union, List, Dict, Any

import boto3
from botocore.exceptions import ClientError, BotoCoreError


logger = logging.getLogger(__name__)

Content = Union[str, bytes]


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


class FileNotFoundInStorage(StorageError):
    """Raised when no stored file has the requested id."""
    pass


class RemoteIdentity:
    """Authenticated account on the remote storage service."""

    def __init__(self, account_id: str, display_name: Optional[str] = None):
        self.account_id = account_id
        self.display_name = display_name or account_id

    def __eq__(self, other):
        return isinstance(other, RemoteIdentity) and other.account_id == self.account_id

    def __hash__(self):
        return hash(self.account_id)

    def __repr__(self):
        return f'<RemoteIdentity {self.display_name}>'


def _to_bytes(content: Content) -> bytes:
    return content.encode('utf-8') if isinstance(content, str) else bytes(content)


def _matches(file_name: str, name: Optional[str], contains: Optional[str]) -> bool:
    if name is not None and file_name != name:
        return False
    if contains is not None and contains not in file_name:
        return False
    return True


def _newest_first(files: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return sorted(files, key=lambda f: f['modified_time'], reverse=True)


class S3Storage:
    """
    Handler for backup files in an AWS S3 bucket.

    Objects are stored under {root_prefix}/{file_id}/{name}.
    """

    # Use multipart upload above 100MB
    MULTIPART_THRESHOLD = 100 * 1024 * 1024
    CHUNK_SIZE = 10 * 1024 * 1024

    def __init__(self, access_key: str, secret_key: str, bucket_name: str,
                 region: str = 'us-east-1', root_prefix: str = 'agenda-vault'):
        """
        Initialize S3 storage handler.

        Args:
            access_key: AWS access key ID
            secret_key: AWS secret access key
            bucket_name: S3 bucket name
            region: AWS region (default: us-east-1)
            root_prefix: Key prefix all backup files live under
        """
        self.bucket_name = bucket_name
        self.region = region
        self.root_prefix = root_prefix.strip('/')
        self._identity = None

        try:
            session = boto3.session.Session(
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region
            )
            self.s3_client = session.client('s3')
            self.sts_client = session.client('sts')
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def current_identity(self) -> Optional[RemoteIdentity]:
        """
        Resolve the AWS account behind the configured credentials.

        Returns:
            RemoteIdentity, or None if the credentials are rejected
        """
        if self._identity is None:
            try:
                response = self.sts_client.get_caller_identity()
            except (ClientError, BotoCoreError) as e:
                logger.warning(f"Could not resolve AWS identity: {e}")
                return None
            self._identity = RemoteIdentity(response['Account'], response.get('Arn'))
        return self._identity

    def upload_file(self, name: str, content: Content, mime_type: str = 'application/json') -> Dict[str, str]:
        """
        Store a new file.

        Returns:
            {'id': generated file id, 'name': name}

        Raises:
            StorageError: If upload fails
        """
        file_id = uuid.uuid4().hex
        key = self._key(file_id, name)
        body = _to_bytes(content)

        try:
            if len(body) > self.MULTIPART_THRESHOLD:
                self._multipart_upload(key, body, mime_type)
            else:
                self.s3_client.put_object(
                    Bucket=self.bucket_name,
                    Key=key,
                    Body=body,
                    ContentType=mime_type
                )
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 upload failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 upload failed: {e}")

        return {'id': file_id, 'name': name}

    def download_file(self, file_id: str) -> bytes:
        """
        Read a stored file.

        Raises:
            FileNotFoundInStorage: If no file has this id
            StorageError: If download fails
        """
        key = self._find_key(file_id)
        try:
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=key)
            return response['Body'].read()
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 download failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 download failed: {e}")

    def update_file(self, file_id: str, content: Content, mime_type: str = 'application/json') -> Dict[str, str]:
        """Replace the content of an existing file, keeping its id and name."""
        key = self._find_key(file_id)
        try:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=_to_bytes(content),
                ContentType=mime_type
            )
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 update failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 update failed: {e}")

        return {'id': file_id, 'name': key.rsplit('/', 1)[-1]}

    def delete_file(self, file_id: str):
        """
        Delete a stored file.

        Raises:
            FileNotFoundInStorage: If no file has this id
            StorageError: If deletion fails
        """
        key = self._find_key(file_id)
        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=key)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 delete failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to delete from S3: {e}")

    def list_files(self, name: Optional[str] = None, contains: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        List stored files, optionally filtered by exact name or substring.

        Raises:
            StorageError: If listing fails
        """
        try:
            files = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=f"{self.root_prefix}/"):
                for obj in page.get('Contents', []):
                    parsed = self._parse_key(obj['Key'])
                    if parsed is None:
                        continue
                    file_id, file_name = parsed
                    if not _matches(file_name, name, contains):
                        continue
                    files.append({
                        'id': file_id,
                        'name': file_name,
                        'size': obj['Size'],
                        'created_time': obj['LastModified'],
                        'modified_time': obj['LastModified']
                    })

            return _newest_first(files)

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 list failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to list S3 objects: {e}")

    def list_backups(self, prefix: str) -> List[Dict[str, Any]]:
        """List every file belonging to the app (backups, archives, metadata mirror)."""
        return [f for f in self.list_files() if f['name'].startswith(f"{prefix}-")]

    def test_connection(self) -> bool:
        """
        Test S3 connection and bucket access.

        Raises:
            StorageError: If connection test fails
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code == '404':
                raise StorageError(f"Bucket does not exist: {self.bucket_name}")
            elif error_code == '403':
                raise StorageError(f"Access denied to bucket: {self.bucket_name}")
            else:
                raise StorageError(f"S3 connection test failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to connect to S3: {e}")

    def _key(self, file_id: str, name: str) -> str:
        return f"{self.root_prefix}/{file_id}/{name}"

    def _parse_key(self, key: str):
        parts = key[len(self.root_prefix) + 1:].split('/', 1)
        if len(parts) != 2 or not parts[0] or not parts[1]:
            return None
        return parts[0], parts[1]

    def _find_key(self, file_id: str) -> str:
        if not file_id or '/' in file_id:
            raise FileNotFoundInStorage(f"File not found: {file_id}")
        try:
            response = self.s3_client.list_objects_v2(
                Bucket=self.bucket_name,
                Prefix=f"{self.root_prefix}/{file_id}/",
                MaxKeys=1
            )
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 lookup failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 lookup failed: {e}")

        contents = response.get('Contents', [])
        if not contents:
            raise FileNotFoundInStorage(f"File not found: {file_id}")
        return contents[0]['Key']

    def _multipart_upload(self, key: str, body: bytes, mime_type: str):
        """
        Upload a large payload in CHUNK_SIZE parts.

        The multipart upload is aborted if any part fails.
        """
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=key,
            ContentType=mime_type
        )
        upload_id = response['UploadId']

        parts = []

        try:
            for part_number, offset in enumerate(range(0, len(body), self.CHUNK_SIZE), start=1):
                response = self.s3_client.upload_part(
                    Bucket=self.bucket_name,
                    Key=key,
                    PartNumber=part_number,
                    UploadId=upload_id,
                    Body=body[offset:offset + self.CHUNK_SIZE]
                )
                parts.append({
                    'PartNumber': part_number,
                    'ETag': response['ETag']
                })

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except (ClientError, BotoCoreError):
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload {upload_id}: {abort_error}")
            raise


class DirectoryStorage:
    """
    Handler for backup files in a local directory.

    Same layout as S3: {base_path}/{file_id}/{name}. Used for development,
    self-hosted sync folders and tests.
    """

    def __init__(self, base_path: str, account_id: Optional[str] = 'local-account'):
        """
        Initialize directory storage handler.

        Args:
            base_path: Base directory for stored files
            account_id: Identity reported to the backup pipeline (None = signed out)
        """
        self.base_path = Path(base_path)
        self.account_id = account_id

        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create storage directory: {e}")

    def current_identity(self) -> Optional[RemoteIdentity]:
        return RemoteIdentity(self.account_id) if self.account_id else None

    def upload_file(self, name: str, content: Content, mime_type: str = 'application/json') -> Dict[str, str]:
        if not name or '/' in name or name in ('.', '..'):
            raise StorageError(f"Invalid file name: {name!r}")

        file_id = uuid.uuid4().hex
        dest_path = self.base_path / file_id / name

        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            dest_path.write_bytes(_to_bytes(content))
        except PermissionError as e:
            raise StorageError(f"Permission denied writing to {dest_path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to store file: {e}")

        return {'id': file_id, 'name': name}

    def download_file(self, file_id: str) -> bytes:
        path = self._find_path(file_id)
        try:
            return path.read_bytes()
        except OSError as e:
            raise StorageError(f"Failed to read stored file: {e}")

    def update_file(self, file_id: str, content: Content, mime_type: str = 'application/json') -> Dict[str, str]:
        path = self._find_path(file_id)
        try:
            path.write_bytes(_to_bytes(content))
        except OSError as e:
            raise StorageError(f"Failed to update stored file: {e}")
        return {'id': file_id, 'name': path.name}

    def delete_file(self, file_id: str):
        path = self._find_path(file_id)
        try:
            shutil.rmtree(path.parent)
        except PermissionError as e:
            raise StorageError(f"Permission denied deleting {path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to delete stored file: {e}")

    def list_files(self, name: Optional[str] = None, contains: Optional[str] = None) -> List[Dict[str, Any]]:
        try:
            files = []

            for file_dir in self.base_path.iterdir():
                if not file_dir.is_dir():
                    continue
                for file_path in file_dir.iterdir():
                    if not file_path.is_file() or not _matches(file_path.name, name, contains):
                        continue
                    stat = file_path.stat()
                    files.append({
                        'id': file_dir.name,
                        'name': file_path.name,
                        'size': stat.st_size,
                        'created_time': datetime.fromtimestamp(stat.st_ctime, tz=timezone.utc),
                        'modified_time': datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
                    })

            return _newest_first(files)

        except OSError as e:
            raise StorageError(f"Failed to list stored files: {e}")

    def list_backups(self, prefix: str) -> List[Dict[str, Any]]:
        return [f for f in self.list_files() if f['name'].startswith(f"{prefix}-")]

    def test_connection(self) -> bool:
        if not self.base_path.is_dir() or not os.access(self.base_path, os.W_OK):
            raise StorageError(f"Storage directory is not writable: {self.base_path}")
        return True

    def get_full_path(self, file_id: str) -> str:
        """Get the filesystem path of a stored file."""
        return str(self._find_path(file_id))

    def _find_path(self, file_id: str) -> Path:
        if not file_id or '/' in file_id or file_id in ('.', '..'):
            raise FileNotFoundInStorage(f"File not found: {file_id}")

        file_dir = self.base_path / file_id
        if file_dir.is_dir():
            for file_path in file_dir.iterdir():
                if file_path.is_file():
                    return file_path
        raise FileNotFoundInStorage(f"File not found: {file_id}")
