"""
Backup routes - create, list, restore and delete remote backups.
"""

import logging
from flask import Blueprint, jsonify
from flask_login import login_required

from agendavault.backup.errors import (
    AuthRequiredError, BackupError, BackupNotFoundError, OperationInProgressError,
    ValidationError, WrongPasswordError
)
from agendavault.backup.service import get_backup_service


bp = Blueprint('backups', __name__, url_prefix='/api/backups')
logger = logging.getLogger(__name__)

# Most specific first
ERROR_STATUS = (
    (AuthRequiredError, 401),
    (WrongPasswordError, 403),
    (BackupNotFoundError, 404),
    (OperationInProgressError, 409),
    (ValidationError, 422),
)


def error_status(error: BackupError) -> int:
    for error_class, status in ERROR_STATUS:
        if isinstance(error, error_class):
            return status
    return 502


@bp.errorhandler(BackupError)
def handle_backup_error(error):
    return jsonify({'error': str(error), 'kind': error.kind}), error_status(error)


@bp.route('/', methods=['GET'])
@login_required
def list_backups():
    """
    List remote backups, newest first.

    Returns:
        JSON array of backups with device type, attachment flag and item counts
    """
    return jsonify(get_backup_service().list_available_backups())


@bp.route('/', methods=['POST'])
@login_required
def create_backup():
    """
    Run a backup now.

    Returns:
        JSON with file id/name, attachment flag and soft failures
    """
    result = get_backup_service().create_backup()
    return jsonify(result), 201


@bp.route('/<backup_id>/restore', methods=['POST'])
@login_required
def restore_backup(backup_id):
    """
    Restore a backup, replacing local data.

    Args:
        backup_id: Remote file id of the backup

    Returns:
        JSON with restored item count and soft failures
    """
    return jsonify(get_backup_service().restore_backup(backup_id))


@bp.route('/<backup_id>', methods=['DELETE'])
@login_required
def delete_backup(backup_id):
    """Delete a remote backup and its attachment archive."""
    get_backup_service().delete_backup(backup_id)
    return jsonify({'message': 'Backup deleted successfully'})


@bp.route('/progress', methods=['GET'])
@login_required
def get_progress():
    """Current progress of the running (or last) operation, for polling."""
    return jsonify(get_backup_service().reporter.snapshot())


@bp.route('/status', methods=['GET'])
@login_required
def get_status():
    """Orchestrator state and details of the last backup."""
    return jsonify(get_backup_service().status())
