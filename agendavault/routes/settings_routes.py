"""
Settings routes - remote storage configuration and backup preferences.
"""

import logging
from flask import Blueprint, jsonify, request, current_app
from flask_login import login_required

from agendavault import db
from agendavault.models import StorageSettings
from agendavault.datastore import SettingsStore
from agendavault.utils.master_key import get_master_key_manager, CredentialDecryptionError
from agendavault.backup.orchestrator import (
    PREF_AUTO_BACKUP_FREQUENCY, PREF_INCLUDE_DOCUMENTS, PREF_INCLUDE_PHOTOS
)
from agendavault.backup.service import get_backup_service
from agendavault.backup.storage import S3Storage, StorageError
from agendavault.scheduler import DEFAULT_FREQUENCY, FREQUENCIES


bp = Blueprint('settings', __name__, url_prefix='/api/settings')
logger = logging.getLogger(__name__)


def _key_hint(value: str) -> str:
    # Show first 3 and last 3 characters
    if len(value) > 6:
        return f"{value[:3]}***{value[-3:]}"
    return "***"


@bp.route('/storage', methods=['GET'])
@login_required
def get_storage_settings():
    """
    Get remote storage settings (credentials are not returned).

    Returns:
        JSON with backend, bucket/region and key hints when S3 is configured
    """
    backend = current_app.config.get('STORAGE_BACKEND')

    if backend == 'local':
        return jsonify({
            'backend': 'local',
            'configured': bool(current_app.config.get('LOCAL_STORAGE_DIR')),
            'path': current_app.config.get('LOCAL_STORAGE_DIR')
        })

    settings = StorageSettings.query.first()
    if not settings:
        return jsonify({
            'backend': backend,
            'configured': False,
            'bucket_name': None,
            'region': None
        })

    try:
        access_key_hint = _key_hint(get_master_key_manager(current_app).decrypt(settings.access_key_encrypted))
    except CredentialDecryptionError:
        logger.warning("Stored access key cannot be decrypted")
        access_key_hint = None

    return jsonify({
        'backend': backend,
        'configured': True,
        'bucket_name': settings.bucket_name,
        'region': settings.region,
        'access_key_hint': access_key_hint,
        'updated_at': settings.updated_at.isoformat()
    })


@bp.route('/storage', methods=['POST'])
@login_required
def update_storage_settings():
    """
    Update S3 settings.

    Request body:
        - access_key: AWS access key ID (required)
        - secret_key: AWS secret access key (required)
        - bucket_name: S3 bucket name (required)
        - region: AWS region (required)

    Returns:
        JSON with success message
    """
    data = request.get_json(silent=True) or {}

    required_fields = ['access_key', 'secret_key', 'bucket_name', 'region']
    for field in required_fields:
        if not data.get(field):
            return jsonify({'error': f'{field} is required'}), 400

    master_key = get_master_key_manager(current_app)
    access_key_encrypted = master_key.encrypt(data['access_key'])
    secret_key_encrypted = master_key.encrypt(data['secret_key'])

    settings = StorageSettings.query.first()

    if settings:
        settings.access_key_encrypted = access_key_encrypted
        settings.secret_key_encrypted = secret_key_encrypted
        settings.bucket_name = data['bucket_name']
        settings.region = data['region']
    else:
        settings = StorageSettings(
            access_key_encrypted=access_key_encrypted,
            secret_key_encrypted=secret_key_encrypted,
            bucket_name=data['bucket_name'],
            region=data['region']
        )
        db.session.add(settings)

    db.session.commit()
    logger.info(f"Storage settings updated (bucket: {data['bucket_name']})")

    return jsonify({'message': 'Storage settings updated successfully'})


@bp.route('/storage/test', methods=['POST'])
@login_required
def test_storage_connection():
    """
    Test remote storage access.

    Uses the S3 credentials in the request body when all are given, otherwise
    the configured storage.

    Returns:
        JSON with test result
    """
    data = request.get_json(silent=True) or {}

    try:
        if all(data.get(k) for k in ['access_key', 'secret_key', 'bucket_name', 'region']):
            logger.info("Using provided credentials for test")
            storage = S3Storage(data['access_key'], data['secret_key'], data['bucket_name'], data['region'])
        else:
            storage = get_backup_service().storage_provider()
            if storage is None:
                return jsonify({'error': 'Remote storage not configured'}), 400

        storage.test_connection()
        identity = storage.current_identity()

    except StorageError as e:
        logger.warning(f"Storage connection test failed: {e}")
        return jsonify({'success': False, 'error': str(e)}), 400

    return jsonify({
        'success': True,
        'message': 'Successfully connected to remote storage',
        'account': identity.display_name if identity else None
    })


@bp.route('/preferences', methods=['GET'])
@login_required
def get_preferences():
    """
    Get backup preferences.

    Returns:
        JSON with include_photos, include_documents and auto_backup_frequency
    """
    settings_store = SettingsStore()
    return jsonify({
        'include_photos': settings_store.get_bool(PREF_INCLUDE_PHOTOS, True),
        'include_documents': settings_store.get_bool(PREF_INCLUDE_DOCUMENTS, True),
        'auto_backup_frequency': settings_store.get(PREF_AUTO_BACKUP_FREQUENCY, DEFAULT_FREQUENCY)
    })


@bp.route('/preferences', methods=['POST'])
@login_required
def update_preferences():
    """
    Update backup preferences (partial updates allowed).

    Request body:
        - include_photos: bool
        - include_documents: bool
        - auto_backup_frequency: 'daily' | 'weekly' | 'monthly' | 'off'
    """
    data = request.get_json(silent=True) or {}
    settings_store = SettingsStore()

    frequency = data.get('auto_backup_frequency')
    if frequency is not None and frequency not in FREQUENCIES:
        return jsonify({'error': f"auto_backup_frequency must be one of: {', '.join(FREQUENCIES)}"}), 400

    for field, key in (('include_photos', PREF_INCLUDE_PHOTOS), ('include_documents', PREF_INCLUDE_DOCUMENTS)):
        if field in data:
            if not isinstance(data[field], bool):
                return jsonify({'error': f'{field} must be true or false'}), 400
            settings_store.set_bool(key, data[field])

    if frequency is not None:
        settings_store.set(PREF_AUTO_BACKUP_FREQUENCY, frequency)

    return jsonify({'message': 'Preferences updated successfully'})
