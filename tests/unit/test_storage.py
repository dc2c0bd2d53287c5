"""
Unit tests for storage handlers (agendavault/backup/storage.py).

Tests S3Storage (against moto) and DirectoryStorage for backup files.
"""

import os
import time
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from agendavault.backup.storage import (
    DirectoryStorage,
    FileNotFoundInStorage,
    RemoteIdentity,
    S3Storage,
    StorageError
)


@pytest.fixture
def s3_storage(mock_s3):
    return S3Storage(
        access_key='testing',
        secret_key='testing',
        bucket_name='test-bucket',
        region='us-east-1',
        root_prefix='agenda-vault'
    )


class TestS3Storage:
    """Test S3Storage for AWS S3 operations."""

    def test_upload_creates_object_under_file_id(self, s3_storage, mock_s3):
        uploaded = s3_storage.upload_file('smart-agenda-backup-2024-01-15.enc', '{"a": 1}')

        key = f"agenda-vault/{uploaded['id']}/smart-agenda-backup-2024-01-15.enc"
        obj = mock_s3.Object('test-bucket', key)
        assert obj.get()['Body'].read() == b'{"a": 1}'
        assert obj.content_type == 'application/json'
        assert uploaded['name'] == 'smart-agenda-backup-2024-01-15.enc'

    def test_same_name_uploads_do_not_overwrite(self, s3_storage):
        first = s3_storage.upload_file('same.enc', 'one')
        second = s3_storage.upload_file('same.enc', 'two')

        assert first['id'] != second['id']
        assert s3_storage.download_file(first['id']) == b'one'
        assert s3_storage.download_file(second['id']) == b'two'

    def test_download_bytes(self, s3_storage):
        uploaded = s3_storage.upload_file('archive.zip.enc', b'\x00\x01binary', 'application/octet-stream')

        assert s3_storage.download_file(uploaded['id']) == b'\x00\x01binary'

    def test_download_missing_file(self, s3_storage):
        with pytest.raises(FileNotFoundInStorage):
            s3_storage.download_file('does-not-exist')

    def test_update_file_keeps_id(self, s3_storage):
        uploaded = s3_storage.upload_file('smart-agenda-metadata.json', '{}')

        updated = s3_storage.update_file(uploaded['id'], '{"x": 1}')

        assert updated == {'id': uploaded['id'], 'name': 'smart-agenda-metadata.json'}
        assert s3_storage.download_file(uploaded['id']) == b'{"x": 1}'

    def test_delete_file(self, s3_storage):
        uploaded = s3_storage.upload_file('old.enc', 'x')

        s3_storage.delete_file(uploaded['id'])

        with pytest.raises(FileNotFoundInStorage):
            s3_storage.download_file(uploaded['id'])

    def test_list_files_filters(self, s3_storage):
        s3_storage.upload_file('smart-agenda-backup-2024-01-15.enc', 'a')
        s3_storage.upload_file('smart-agenda-metadata.json', 'b')
        s3_storage.upload_file('other-app-backup.enc', 'c')

        assert len(s3_storage.list_files()) == 3
        assert [f['name'] for f in s3_storage.list_files(name='smart-agenda-metadata.json')] == ['smart-agenda-metadata.json']
        assert len(s3_storage.list_files(contains='backup')) == 2

    def test_list_backups_by_prefix(self, s3_storage):
        s3_storage.upload_file('smart-agenda-backup-2024-01-15.enc', 'a')
        s3_storage.upload_file('smart-agenda-attachments-2024-01-15.zip.enc', 'b')
        s3_storage.upload_file('other-app-backup-2024-01-15.enc', 'c')

        names = {f['name'] for f in s3_storage.list_backups('smart-agenda')}

        assert names == {'smart-agenda-backup-2024-01-15.enc', 'smart-agenda-attachments-2024-01-15.zip.enc'}

    def test_file_dict_fields(self, s3_storage):
        s3_storage.upload_file('a.enc', 'abc')

        file = s3_storage.list_files()[0]

        assert set(file) == {'id', 'name', 'size', 'created_time', 'modified_time'}
        assert file['size'] == 3

    def test_objects_outside_root_ignored(self, s3_storage, mock_s3):
        mock_s3.Object('test-bucket', 'unrelated/key.txt').put(Body=b'x')
        mock_s3.Object('test-bucket', 'agenda-vault/loose-file').put(Body=b'x')

        assert s3_storage.list_files() == []

    def test_current_identity_from_sts(self, s3_storage):
        identity = s3_storage.current_identity()

        assert isinstance(identity, RemoteIdentity)
        assert identity.account_id == '123456789012'

    def test_current_identity_rejected_credentials(self, s3_storage):
        s3_storage.sts_client = MagicMock()
        s3_storage.sts_client.get_caller_identity.side_effect = ClientError(
            {'Error': {'Code': 'InvalidClientTokenId', 'Message': 'bad token'}}, 'GetCallerIdentity'
        )

        assert s3_storage.current_identity() is None

    def test_connection_ok(self, s3_storage):
        assert s3_storage.test_connection() is True

    def test_connection_missing_bucket(self, mock_s3):
        storage = S3Storage('testing', 'testing', 'missing-bucket')

        with pytest.raises(StorageError, match='Bucket does not exist'):
            storage.test_connection()

    def test_upload_client_error_wrapped(self, s3_storage):
        s3_storage.s3_client = MagicMock()
        s3_storage.s3_client.put_object.side_effect = ClientError(
            {'Error': {'Code': 'AccessDenied', 'Message': 'denied'}}, 'PutObject'
        )

        with pytest.raises(StorageError, match='AccessDenied'):
            s3_storage.upload_file('a.enc', 'x')

    def test_multipart_upload_aborts_on_failure(self, s3_storage):
        s3_storage.MULTIPART_THRESHOLD = 10
        s3_storage.CHUNK_SIZE = 5
        s3_storage.s3_client = MagicMock()
        s3_storage.s3_client.create_multipart_upload.return_value = {'UploadId': 'u1'}
        s3_storage.s3_client.upload_part.side_effect = ClientError(
            {'Error': {'Code': 'InternalError', 'Message': 'boom'}}, 'UploadPart'
        )

        with pytest.raises(StorageError):
            s3_storage.upload_file('big.zip.enc', b'x' * 20)

        s3_storage.s3_client.abort_multipart_upload.assert_called_once()

    def test_multipart_upload_parts(self, s3_storage):
        s3_storage.MULTIPART_THRESHOLD = 10
        s3_storage.CHUNK_SIZE = 8
        s3_storage.s3_client = MagicMock()
        s3_storage.s3_client.create_multipart_upload.return_value = {'UploadId': 'u1'}
        s3_storage.s3_client.upload_part.return_value = {'ETag': 'etag'}

        s3_storage.upload_file('big.zip.enc', b'x' * 20)

        assert s3_storage.s3_client.upload_part.call_count == 3
        parts = s3_storage.s3_client.complete_multipart_upload.call_args.kwargs['MultipartUpload']['Parts']
        assert [p['PartNumber'] for p in parts] == [1, 2, 3]


class TestDirectoryStorage:
    """Test DirectoryStorage for local directory operations."""

    def test_creates_base_directory(self, tmp_path):
        DirectoryStorage(str(tmp_path / 'nested' / 'remote'))

        assert (tmp_path / 'nested' / 'remote').is_dir()

    def test_upload_download(self, remote_storage):
        uploaded = remote_storage.upload_file('a.enc', 'text')

        assert remote_storage.download_file(uploaded['id']) == b'text'
        assert os.path.basename(remote_storage.get_full_path(uploaded['id'])) == 'a.enc'

    def test_update_and_delete(self, remote_storage):
        uploaded = remote_storage.upload_file('a.json', '{}')

        remote_storage.update_file(uploaded['id'], '{"b": 2}')
        assert remote_storage.download_file(uploaded['id']) == b'{"b": 2}'

        remote_storage.delete_file(uploaded['id'])
        assert remote_storage.list_files() == []
        with pytest.raises(FileNotFoundInStorage):
            remote_storage.delete_file(uploaded['id'])

    def test_rejects_path_traversal(self, remote_storage):
        with pytest.raises(StorageError):
            remote_storage.upload_file('../escape.enc', 'x')
        with pytest.raises(FileNotFoundInStorage):
            remote_storage.download_file('..')

    def test_list_newest_first(self, remote_storage):
        old = remote_storage.upload_file('old.enc', 'x')
        new = remote_storage.upload_file('new.enc', 'y')
        now = time.time()
        os.utime(remote_storage.get_full_path(old['id']), (now - 100, now - 100))
        os.utime(remote_storage.get_full_path(new['id']), (now, now))

        assert [f['name'] for f in remote_storage.list_files()] == ['new.enc', 'old.enc']

    def test_list_backups_by_prefix(self, remote_storage):
        remote_storage.upload_file('smart-agenda-backup-2024-01-15.enc', 'a')
        remote_storage.upload_file('unrelated.txt', 'b')

        assert [f['name'] for f in remote_storage.list_backups('smart-agenda')] == ['smart-agenda-backup-2024-01-15.enc']

    def test_identity_from_configuration(self, tmp_path):
        assert DirectoryStorage(str(tmp_path), 'acct').current_identity() == RemoteIdentity('acct')
        assert DirectoryStorage(str(tmp_path), None).current_identity() is None

    def test_connection(self, remote_storage):
        assert remote_storage.test_connection() is True
