"""
Authentication routes: first-run setup, login, logout and session status.
"""

import logging
from flask import Blueprint, jsonify, request
from flask_login import login_user, logout_user, login_required, current_user

from agendavault.auth import AccountError, UserModel, authenticate, create_owner, setup_required


bp = Blueprint('auth', __name__, url_prefix='/api/auth')
logger = logging.getLogger(__name__)


@bp.route('/setup', methods=['POST'])
def setup():
    """
    Create the owner account (only while no account exists).

    Request body:
        - username: Owner username (required)
        - password: Owner password (required)
        - password_confirm: Must match password (optional)

    Returns:
        JSON with the created username
    """
    data = request.get_json(silent=True) or {}

    if not setup_required():
        return jsonify({'error': 'Setup already completed'}), 409

    password = data.get('password', '')
    if 'password_confirm' in data and data['password_confirm'] != password:
        return jsonify({'error': 'Passwords do not match'}), 400

    try:
        user = create_owner(data.get('username', ''), password)
    except AccountError as e:
        return jsonify({'error': str(e)}), 400

    logger.info(f"Owner account created: {user.username}")
    login_user(UserModel(user), remember=True)

    return jsonify({'message': 'Setup completed successfully', 'username': user.username}), 201


@bp.route('/login', methods=['POST'])
def login():
    """
    Log in with username and password.

    Returns:
        JSON with the username, 401 on bad credentials
    """
    data = request.get_json(silent=True) or {}
    username = (data.get('username') or '').strip()
    password = data.get('password') or ''

    if setup_required():
        return jsonify({'error': 'Setup required', 'setup_required': True}), 409

    if not username or not password:
        return jsonify({'error': 'Username and password are required'}), 400

    user = authenticate(username, password)
    if user is None:
        logger.warning(f"Failed login attempt for {username}")
        return jsonify({'error': 'Invalid username or password'}), 401

    login_user(UserModel(user), remember=True)
    return jsonify({'message': 'Login successful', 'username': user.username})


@bp.route('/logout', methods=['POST'])
@login_required
def logout():
    """Log out the current user."""
    logout_user()
    return jsonify({'message': 'Logged out'})


@bp.route('/status', methods=['GET'])
def status():
    """
    Session status for the UI.

    Returns:
        JSON with setup_required, authenticated and username
    """
    authenticated = current_user.is_authenticated
    return jsonify({
        'setup_required': setup_required(),
        'authenticated': authenticated,
        'username': current_user.username if authenticated else None
    })
