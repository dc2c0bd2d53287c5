"""
Tests for the JSON API (agendavault/routes/).

Backup routes run against directory storage through the orchestrator
fixture; the S3 flow runs against moto.
"""

import pytest

from agendavault.backup.orchestrator import OrchestratorState
from agendavault.backup.service import S3StorageProvider, init_backup_service
from agendavault.models import StorageSettings


@pytest.fixture
def with_clients(orchestrator):
    for i in range(1, 4):
        orchestrator.data_store.add('clients', {'id': f'c{i}', 'name': f'Client {i}'})
    return orchestrator


class TestHealth:

    def test_health(self, client):
        response = client.get('/health')

        assert response.status_code == 200
        assert response.get_json() == {'status': 'healthy'}


class TestLoginRequired:

    @pytest.mark.parametrize('method, url', [
        ('get', '/api/backups/'),
        ('post', '/api/backups/'),
        ('post', '/api/backups/f1/restore'),
        ('delete', '/api/backups/f1'),
        ('get', '/api/backups/progress'),
        ('get', '/api/backups/status'),
        ('get', '/api/settings/storage'),
        ('post', '/api/settings/storage'),
        ('get', '/api/settings/preferences'),
        ('post', '/api/settings/preferences'),
    ])
    def test_requires_login(self, client, db, method, url):
        response = getattr(client, method)(url)

        assert response.status_code == 401
        assert response.get_json() == {'error': 'Authentication required'}


class TestBackupRoutes:

    def test_no_storage_configured(self, auth_client):
        response = auth_client.get('/api/backups/')

        assert response.status_code == 401
        assert response.get_json()['kind'] == 'AuthRequired'

    def test_create_list_restore_delete(self, auth_client, with_clients):
        created = auth_client.post('/api/backups/')
        assert created.status_code == 201
        backup = created.get_json()
        assert backup['success'] is True
        assert backup['file_name'].startswith('smart-agenda-backup-')

        listing = auth_client.get('/api/backups/').get_json()
        assert [b['id'] for b in listing] == [backup['file_id']]
        assert listing[0]['item_counts']['clients'] == 3

        with_clients.data_store.add('clients', {'id': 'c4'})
        restored = auth_client.post(f"/api/backups/{backup['file_id']}/restore")
        assert restored.status_code == 200
        assert restored.get_json()['items_restored']['clients'] == 3
        assert len(with_clients.data_store.get_all('clients')) == 3

        deleted = auth_client.delete(f"/api/backups/{backup['file_id']}")
        assert deleted.status_code == 200
        assert auth_client.get('/api/backups/').get_json() == []

    def test_restore_unknown_backup(self, auth_client, orchestrator):
        response = auth_client.post('/api/backups/missing/restore')

        assert response.status_code == 404
        assert response.get_json()['kind'] == 'NotFound'

    def test_delete_unknown_backup(self, auth_client, orchestrator):
        assert auth_client.delete('/api/backups/missing').status_code == 404

    def test_restore_with_other_account(self, auth_client, with_clients, remote_storage):
        backup = auth_client.post('/api/backups/').get_json()
        remote_storage.account_id = 'account-2'

        response = auth_client.post(f"/api/backups/{backup['file_id']}/restore")

        assert response.status_code == 403
        assert response.get_json()['kind'] == 'WrongPassword'

    def test_invalid_backup_file(self, auth_client, orchestrator, remote_storage):
        uploaded = remote_storage.upload_file('smart-agenda-backup-2024-01-01.enc', 'not json')

        response = auth_client.post(f"/api/backups/{uploaded['id']}/restore")

        assert response.status_code == 422
        assert response.get_json()['kind'] == 'ValidationFailure'

    def test_operation_in_progress(self, auth_client, orchestrator):
        orchestrator._state = OrchestratorState.RESTORING

        response = auth_client.post('/api/backups/')

        assert response.status_code == 409
        assert response.get_json()['kind'] == 'OperationInProgress'
        orchestrator._state = OrchestratorState.IDLE

    def test_progress_and_status(self, auth_client, with_clients):
        auth_client.post('/api/backups/')

        progress = auth_client.get('/api/backups/progress').get_json()
        assert progress['operation'] == 'backup'
        assert progress['percent'] == 100
        assert progress['active'] is False

        status = auth_client.get('/api/backups/status').get_json()
        assert status['state'] == 'idle'
        assert status['last_backup']['item_counts']['clients'] == 3


class TestPreferenceRoutes:

    def test_defaults(self, auth_client):
        response = auth_client.get('/api/settings/preferences')

        assert response.get_json() == {
            'include_photos': True,
            'include_documents': True,
            'auto_backup_frequency': 'daily'
        }

    def test_partial_update(self, auth_client):
        response = auth_client.post('/api/settings/preferences', json={
            'include_photos': False, 'auto_backup_frequency': 'weekly'
        })

        assert response.status_code == 200
        assert auth_client.get('/api/settings/preferences').get_json() == {
            'include_photos': False,
            'include_documents': True,
            'auto_backup_frequency': 'weekly'
        }

    @pytest.mark.parametrize('body', [
        {'auto_backup_frequency': 'hourly'},
        {'include_documents': 'yes'},
    ])
    def test_invalid_values(self, auth_client, body):
        response = auth_client.post('/api/settings/preferences', json=body)

        assert response.status_code == 400
        assert auth_client.get('/api/settings/preferences').get_json()['auto_backup_frequency'] == 'daily'


class TestStorageRoutes:

    def test_local_backend(self, auth_client):
        response = auth_client.get('/api/settings/storage')

        assert response.get_json() == {'backend': 'local', 'configured': False, 'path': None}

    def test_missing_fields(self, auth_client):
        response = auth_client.post('/api/settings/storage', json={'access_key': 'AKIAEXAMPLE'})

        assert response.status_code == 400
        assert response.get_json()['error'] == 'secret_key is required'

    def test_credentials_stored_encrypted(self, auth_client):
        response = auth_client.post('/api/settings/storage', json={
            'access_key': 'AKIAEXAMPLE123',
            'secret_key': 'secret-value',
            'bucket_name': 'test-bucket',
            'region': 'us-east-1'
        })

        assert response.status_code == 200
        settings = StorageSettings.query.one()
        assert settings.bucket_name == 'test-bucket'
        assert 'AKIAEXAMPLE123' not in settings.access_key_encrypted
        assert 'secret-value' not in settings.secret_key_encrypted

    def test_connection_test_with_configured_storage(self, auth_client, orchestrator):
        response = auth_client.post('/api/settings/storage/test')

        assert response.status_code == 200
        assert response.get_json()['account'] == 'account-1'

    def test_connection_test_unconfigured(self, auth_client):
        response = auth_client.post('/api/settings/storage/test')

        assert response.status_code == 400


class TestS3Backend:
    """Full flow with saved S3 credentials, against moto."""

    def test_backup_to_s3(self, app, auth_client, mock_s3):
        app.config['STORAGE_BACKEND'] = 's3'
        orchestrator = init_backup_service(app)
        assert isinstance(orchestrator.storage_provider, S3StorageProvider)

        auth_client.post('/api/settings/storage', json={
            'access_key': 'testing', 'secret_key': 'testing',
            'bucket_name': 'test-bucket', 'region': 'us-east-1'
        })
        orchestrator.data_store.add('clients', {'id': 'c1', 'name': 'Ada'})

        tested = auth_client.post('/api/settings/storage/test')
        assert tested.status_code == 200
        assert '123456789012' in tested.get_json()['account']

        created = auth_client.post('/api/backups/')
        assert created.status_code == 201

        listing = auth_client.get('/api/backups/').get_json()
        assert [b['id'] for b in listing] == [created.get_json()['file_id']]

        keys = [o.key for o in mock_s3.Bucket('test-bucket').objects.all()]
        assert any(k.endswith('.enc') for k in keys)
        assert any(k.endswith('smart-agenda-metadata.json') for k in keys)
