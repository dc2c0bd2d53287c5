"""
Master key encryption for credentials kept in the database.

Remote storage credentials (S3 access/secret keys) are encrypted at rest with a
Fernet key derived from the Flask SECRET_KEY. This is unrelated to the backup
envelope encryption in agendavault.backup.encryption, whose key comes from the
remote storage identity.
"""

import base64
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC


class CredentialDecryptionError(Exception):
    """Raised when a stored credential cannot be decrypted (SECRET_KEY changed?)."""
    pass


class MasterKeyManager:
    """
    Encrypts and decrypts stored credentials using SECRET_KEY as master key.
    """

    # Fixed salt: SECRET_KEY itself is the secret. Version tagged for rotation.
    FIXED_SALT = b'agendavault_master_key_salt_v1'
    ITERATIONS = 100000

    def __init__(self, secret_key: str):
        """
        Initialize with Flask SECRET_KEY.

        Args:
            secret_key: Flask app SECRET_KEY (from config or /data/.secret_key)
        """
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=self.FIXED_SALT,
            iterations=self.ITERATIONS,
        )

        key = base64.urlsafe_b64encode(kdf.derive(secret_key.encode()))
        self._fernet = Fernet(key)

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a credential for persistent storage.

        Args:
            plaintext: Credential in plaintext

        Returns:
            Base64-encoded Fernet token
        """
        encrypted_bytes = self._fernet.encrypt(plaintext.encode())
        return base64.urlsafe_b64encode(encrypted_bytes).decode()

    def decrypt(self, encrypted: str) -> str:
        """
        Decrypt a stored credential.

        Raises:
            CredentialDecryptionError: If the token is corrupted or was made with another key
        """
        try:
            encrypted_bytes = base64.urlsafe_b64decode(encrypted.encode())
            return self._fernet.decrypt(encrypted_bytes).decode()
        except (InvalidToken, ValueError) as e:
            raise CredentialDecryptionError(f"Failed to decrypt stored credential: {e}")


def get_master_key_manager(app) -> MasterKeyManager:
    """
    Create a MasterKeyManager from Flask app config.

    Raises:
        RuntimeError: If SECRET_KEY not configured
    """
    secret_key = app.config.get('SECRET_KEY')

    if not secret_key:
        raise RuntimeError("SECRET_KEY not configured - cannot initialize MasterKeyManager")

    return MasterKeyManager(secret_key)
