"""
Shared pytest fixtures for Agenda Vault tests.

This module provides fixtures for:
- Flask app and test client
- Database setup with in-memory SQLite
- Owner account and logged-in client
- Backup collaborators (directory storage, device filesystem, orchestrator)
- Mock fixtures for external services (S3, STS, scheduler)
- Signal recorders for progress and notifications
"""

from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from agendavault import create_app, db as _db
from agendavault.models import User
from agendavault.auth import hash_password
from agendavault.datastore import LocalDataStore, SettingsStore
from agendavault.backup.attachments import DeviceFilesystem
from agendavault.backup.encryption import EnvelopeCipher
from agendavault.backup.progress import notification, progress_closed, progress_updated
from agendavault.backup.service import init_backup_service
from agendavault.backup.storage import DirectoryStorage


@pytest.fixture(scope='function')
def app():
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite database for fast, isolated tests.
    """
    app = create_app('testing')
    yield app


@pytest.fixture(scope='function')
def db(app):
    """
    Create database with all tables.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def owner(db):
    """
    Create the owner account.

    Username: admin
    Password: Admin123
    """
    user = User(
        username='admin',
        password_hash=hash_password('Admin123')
    )
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture(scope='function')
def auth_client(client, owner):
    """Test client with a logged-in session."""
    response = client.post('/api/auth/login', json={'username': 'admin', 'password': 'Admin123'})
    assert response.status_code == 200
    return client


@pytest.fixture
def settings_store(db):
    return SettingsStore()


@pytest.fixture
def data_store(settings_store):
    return LocalDataStore(settings_store)


@pytest.fixture
def cipher():
    """Envelope cipher with a low work factor for speed."""
    return EnvelopeCipher(iterations=1000)


@pytest.fixture
def remote_storage(tmp_path):
    """Directory-backed remote storage signed in as 'account-1'."""
    return DirectoryStorage(str(tmp_path / 'remote'), account_id='account-1')


@pytest.fixture
def device_fs(tmp_path):
    """Device filesystem with two client documents."""
    root = tmp_path / 'device'
    (root / 'docs').mkdir(parents=True)
    (root / 'docs' / 'contract.pdf').write_bytes(b'%PDF-1.4 contract')
    (root / 'docs' / 'invoice.pdf').write_bytes(b'%PDF-1.4 invoice')
    return DeviceFilesystem(str(root))


@pytest.fixture
def orchestrator(app, db, remote_storage, device_fs):
    """App orchestrator wired to directory storage and the device filesystem."""
    app.config['DEVICE_FILES_DIR'] = str(device_fs.root)
    return init_backup_service(app, storage_provider=lambda: remote_storage)


@pytest.fixture
def sample_clients():
    return [
        {'id': 'c1', 'name': 'Ada', 'photo': 'data:image/png;base64,AAAA', 'files': []},
        {'id': 'c2', 'name': 'Grace', 'photo': None, 'files': [
            {'name': 'contract.pdf', 'path': 'docs/contract.pdf', 'stored_in_filesystem': True}
        ]},
        {'id': 'c3', 'name': 'Linus', 'files': [
            {'name': 'invoice.pdf', 'path': 'docs/invoice.pdf', 'stored_in_filesystem': True},
            {'name': 'link', 'url': 'https://example.com/doc', 'stored_in_filesystem': False}
        ]},
    ]


@pytest.fixture
def progress_events():
    """Record (percent, message, pulsing) for every progress update."""
    events = []

    def receiver(sender, **kwargs):
        events.append((kwargs['percent'], kwargs['message'], kwargs['pulsing']))

    progress_updated.connect(receiver, weak=False)
    yield events
    progress_updated.disconnect(receiver)


@pytest.fixture
def closed_events():
    events = []

    def receiver(sender, **kwargs):
        events.append(kwargs['operation'])

    progress_closed.connect(receiver, weak=False)
    yield events
    progress_closed.disconnect(receiver)


@pytest.fixture
def notifications():
    """Record (level, message) for every notification."""
    events = []

    def receiver(sender, **kwargs):
        events.append((kwargs['level'], kwargs['message']))

    notification.connect(receiver, weak=False)
    yield events
    notification.disconnect(receiver)


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 and STS using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    import agendavault.scheduler as scheduler_module

    with patch('agendavault.scheduler.BackgroundScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        scheduler_instance.running = False
        scheduler_instance.state = 0
        scheduler_instance.get_jobs.return_value = []

        yield scheduler_instance

    scheduler_module.scheduler = None
    scheduler_module.flask_app = None
