"""
Account handling for the single-owner vault: password hashing, first-run
account creation and Flask-Login integration.
"""

from typing import Optional

from werkzeug.security import generate_password_hash, check_password_hash
from flask_login import UserMixin

from agendavault import db
from agendavault.models import User


MIN_PASSWORD_LENGTH = 8


class AccountError(ValueError):
    """Raised when an account cannot be created."""
    pass


def hash_password(password: str) -> str:
    """Hash a password using werkzeug's pbkdf2:sha256."""
    return generate_password_hash(password, method='pbkdf2:sha256')


def password_problems(password: str) -> list:
    """
    Check a candidate owner password.

    Args:
        password: Password to check

    Returns:
        List of human readable problems (empty when the password is acceptable)
    """
    problems = []
    if len(password) < MIN_PASSWORD_LENGTH:
        problems.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    if not any(c.isupper() for c in password):
        problems.append("Password must contain at least one uppercase letter")
    if not any(c.islower() for c in password):
        problems.append("Password must contain at least one lowercase letter")
    if not any(c.isdigit() for c in password):
        problems.append("Password must contain at least one digit")
    return problems


def setup_required() -> bool:
    """True until the owner account has been created."""
    return db.session.query(User.id).first() is None


def create_owner(username: str, password: str) -> User:
    """
    Create the vault owner account.

    Only one account may exist; the first-run setup is the only caller.

    Raises:
        AccountError: If an account already exists or the input is invalid
    """
    if not setup_required():
        raise AccountError("Setup already completed")

    username = (username or '').strip()
    if not username:
        raise AccountError("Username is required")

    problems = password_problems(password or '')
    if problems:
        raise AccountError(problems[0])

    user = User(username=username, password_hash=hash_password(password))
    db.session.add(user)
    db.session.commit()
    return user


def authenticate(username: str, password: str) -> Optional[User]:
    """Return the user when the credentials match, else None."""
    user = User.query.filter_by(username=(username or '').strip()).first()
    if user and check_password_hash(user.password_hash, password or ''):
        return user
    return None


class UserModel(UserMixin):
    """
    Flask-Login user wrapper for the User database model.
    """

    def __init__(self, user: User):
        self.user = user

    def get_id(self):
        """Return user ID as required by Flask-Login."""
        return str(self.user.id)

    @property
    def id(self):
        return self.user.id

    @property
    def username(self):
        return self.user.username
