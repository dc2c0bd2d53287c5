"""
Unit tests for attachment archives (agendavault/backup/attachments.py).
"""

import io
import json
import zipfile
from unittest.mock import MagicMock

import pytest

from agendavault.backup.attachments import AttachmentBundler, DeviceFilesystem
from agendavault.backup.encryption import Envelope
from agendavault.backup.errors import AttachmentError, EncryptionError


class TestDeviceFilesystem:

    def test_write_creates_parents(self, tmp_path):
        fs = DeviceFilesystem(str(tmp_path))

        fs.write_file('a/b/c.txt', b'data')

        assert (tmp_path / 'a' / 'b' / 'c.txt').read_bytes() == b'data'
        assert fs.read_file('a/b/c.txt') == b'data'

    def test_leading_slash_is_relative_to_root(self, tmp_path):
        fs = DeviceFilesystem(str(tmp_path))

        fs.write_file('/docs/x.pdf', b'x')

        assert (tmp_path / 'docs' / 'x.pdf').exists()

    def test_rejects_paths_outside_root(self, tmp_path):
        fs = DeviceFilesystem(str(tmp_path / 'root'))

        with pytest.raises(ValueError):
            fs.read_file('../secret.txt')
        with pytest.raises(ValueError):
            fs.write_file('docs/../../escape.txt', b'x')


class TestFindDeviceAttachments:

    def test_finds_unique_device_paths(self, sample_clients):
        collections = {
            'clients': sample_clients + [
                {'id': 'c4', 'files': [{'path': 'docs/contract.pdf', 'stored_in_filesystem': True}]}
            ],
            'appointments': [{'id': 'a1', 'files': [{'path': 'docs/agenda.pdf', 'stored_in_filesystem': True}]}],
        }

        paths = AttachmentBundler.find_device_attachments(collections)

        assert paths == ['docs/contract.pdf', 'docs/invoice.pdf', 'docs/agenda.pdf']

    def test_ignores_files_without_path_or_flag(self):
        collections = {'clients': [
            {'id': 'c1', 'files': [{'path': 'a.pdf', 'stored_in_filesystem': False}]},
            {'id': 'c2', 'files': [{'stored_in_filesystem': True}]},
            {'id': 'c3', 'files': None},
            {'id': 'c4'},
        ]}

        assert AttachmentBundler.find_device_attachments(collections) == []


class TestBundle:

    def test_bundle_round_trip(self, device_fs, cipher, sample_clients):
        bundler = AttachmentBundler(device_fs, cipher)

        package = bundler.bundle({'clients': sample_clients}, 'pw')

        envelope = Envelope.from_dict(json.loads(package))
        with zipfile.ZipFile(io.BytesIO(cipher.decrypt_file(envelope, 'pw'))) as archive:
            assert sorted(archive.namelist()) == ['docs/contract.pdf', 'docs/invoice.pdf']
            assert archive.read('docs/contract.pdf') == b'%PDF-1.4 contract'
            assert archive.getinfo('docs/contract.pdf').compress_type == zipfile.ZIP_DEFLATED

    def test_bundle_reports_progress_per_file(self, device_fs, cipher, sample_clients):
        reporter = MagicMock()
        bundler = AttachmentBundler(device_fs, cipher, reporter)

        bundler.bundle({'clients': sample_clients}, 'pw', start=30, span=20)

        percents = [c.args[0] for c in reporter.update.call_args_list]
        assert percents == [40, 50]

    def test_unreadable_file_is_skipped(self, device_fs, cipher):
        collections = {'clients': [{'id': 'c1', 'files': [
            {'path': 'docs/missing.pdf', 'stored_in_filesystem': True},
            {'path': 'docs/invoice.pdf', 'stored_in_filesystem': True},
        ]}]}
        bundler = AttachmentBundler(device_fs, cipher)

        package = bundler.bundle(collections, 'pw')

        data = cipher.decrypt_file(Envelope.from_dict(json.loads(package)), 'pw')
        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            assert archive.namelist() == ['docs/invoice.pdf']

    def test_encryption_failure_raises_attachment_error(self, device_fs, sample_clients):
        cipher = MagicMock()
        cipher.encrypt_file.side_effect = EncryptionError('boom')
        bundler = AttachmentBundler(device_fs, cipher)

        with pytest.raises(AttachmentError):
            bundler.bundle({'clients': sample_clients}, 'pw')


class TestRestore:

    def test_restore_writes_entries(self, tmp_path, device_fs, cipher, sample_clients):
        package = AttachmentBundler(device_fs, cipher).bundle({'clients': sample_clients}, 'pw')
        target = DeviceFilesystem(str(tmp_path / 'new-device'))

        result = AttachmentBundler(target, cipher).restore(package, 'pw')

        assert sorted(result['restored']) == ['docs/contract.pdf', 'docs/invoice.pdf']
        assert result['failed'] == []
        assert target.read_file('docs/invoice.pdf') == b'%PDF-1.4 invoice'

    def test_restore_skips_directories_and_isolates_failures(self, tmp_path, cipher):
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, 'w') as archive:
            archive.writestr('docs/', b'')
            archive.writestr('../../escape.txt', b'bad')
            archive.writestr('docs/ok.txt', b'ok')
        package = json.dumps(cipher.encrypt_file(buffer.getvalue(), 'pw').to_dict())
        target = DeviceFilesystem(str(tmp_path / 'device'))

        result = AttachmentBundler(target, cipher).restore(package, 'pw')

        assert result == {'restored': ['docs/ok.txt'], 'failed': ['../../escape.txt']}

    def test_restore_wrong_password(self, device_fs, cipher, sample_clients):
        package = AttachmentBundler(device_fs, cipher).bundle({'clients': sample_clients}, 'pw')

        with pytest.raises(AttachmentError):
            AttachmentBundler(device_fs, cipher).restore(package, 'other')

    def test_restore_garbage(self, device_fs, cipher):
        with pytest.raises(AttachmentError):
            AttachmentBundler(device_fs, cipher).restore('not json', 'pw')
