"""
Envelope encryption for backup payloads and attachment archives.

AES-256-GCM with a PBKDF2-SHA256 derived key and a fresh random salt and IV
per envelope. The envelope also carries a short key-check digest so that a
decrypt with the wrong password is reported as WrongPasswordError, distinct
from a decrypt of corrupted ciphertext (EncryptionError).
"""

import base64
import binascii
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import constant_time, hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import EncryptionError, WrongPasswordError


def b64encode(raw: bytes) -> str:
    return base64.b64encode(raw).decode('ascii')


def b64decode(text: str) -> bytes:
    return base64.b64decode(text.encode('ascii'), validate=True)


class Envelope:
    """
    Ciphertext plus the parameters needed to derive its key again.
    """

    def __init__(self, ciphertext: bytes, salt: bytes, iv: bytes,
                 algorithm: str = 'AES-256-GCM', iterations: int = 100000,
                 key_check: Optional[bytes] = None):
        self.ciphertext = ciphertext
        self.salt = salt
        self.iv = iv
        self.algorithm = algorithm
        self.iterations = iterations
        self.key_check = key_check

    def to_dict(self) -> dict:
        data = {
            'encrypted': b64encode(self.ciphertext),
            'salt': b64encode(self.salt),
            'iv': b64encode(self.iv),
            'algorithm': self.algorithm,
            'iterations': self.iterations
        }
        if self.key_check is not None:
            data['key_check'] = b64encode(self.key_check)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> 'Envelope':
        """
        Rebuild an envelope from its transport form.

        Raises:
            EncryptionError: If required fields are missing or not valid base64
        """
        if not isinstance(data, dict):
            raise EncryptionError("Envelope must be a JSON object")

        missing = [field for field in ('encrypted', 'salt', 'iv') if not data.get(field)]
        if missing:
            raise EncryptionError(f"Envelope is missing fields: {', '.join(missing)}")

        try:
            key_check = data.get('key_check')
            return cls(
                ciphertext=b64decode(data['encrypted']),
                salt=b64decode(data['salt']),
                iv=b64decode(data['iv']),
                algorithm=data.get('algorithm') or EnvelopeCipher.ALGORITHM,
                iterations=int(data.get('iterations') or EnvelopeCipher.PBKDF2_ITERATIONS),
                key_check=b64decode(key_check) if key_check else None
            )
        except (binascii.Error, ValueError, TypeError, AttributeError) as e:
            raise EncryptionError(f"Envelope is not valid: {e}")

    def __repr__(self):
        return f'<Envelope {self.algorithm} {len(self.ciphertext)} bytes>'


class EnvelopeCipher:
    """
    Text and binary envelope encryption with password based keys.
    """

    ALGORITHM = 'AES-256-GCM'
    PBKDF2_ITERATIONS = 100000
    SALT_LENGTH = 16
    IV_LENGTH = 12       # 96-bit nonce for GCM
    KEY_LENGTH = 32      # AES-256
    KEY_CHECK_LENGTH = 16

    def __init__(self, iterations: Optional[int] = None):
        self.iterations = iterations or self.PBKDF2_ITERATIONS

    def encrypt(self, plaintext: str, password: str) -> Envelope:
        """
        Encrypt a text payload (serialized backup data).

        Raises:
            EncryptionError: If encryption fails
        """
        return self.encrypt_file(plaintext.encode('utf-8'), password)

    def decrypt(self, envelope: Envelope, password: str) -> str:
        """
        Decrypt a text payload.

        Raises:
            WrongPasswordError: If the password does not match the envelope key
            EncryptionError: If the ciphertext is corrupted or not UTF-8 text
        """
        data = self.decrypt_file(envelope, password)
        try:
            return data.decode('utf-8')
        except UnicodeDecodeError as e:
            raise EncryptionError(f"Decrypted payload is not text: {e}")

    def encrypt_file(self, data: bytes, password: str) -> Envelope:
        """Encrypt a binary payload (attachment archive)."""
        try:
            salt = os.urandom(self.SALT_LENGTH)
            iv = os.urandom(self.IV_LENGTH)
            key, key_check = self._derive(password, salt, self.iterations)
            ciphertext = AESGCM(key).encrypt(iv, data, None)
        except Exception as e:
            raise EncryptionError(f"Encryption failed: {e}")

        return Envelope(
            ciphertext=ciphertext,
            salt=salt,
            iv=iv,
            algorithm=self.ALGORITHM,
            iterations=self.iterations,
            key_check=key_check
        )

    def decrypt_file(self, envelope: Envelope, password: str) -> bytes:
        """Decrypt a binary payload."""
        if envelope.algorithm != self.ALGORITHM:
            raise EncryptionError(f"Unsupported algorithm: {envelope.algorithm}")

        try:
            key, key_check = self._derive(password, envelope.salt, envelope.iterations)
        except Exception as e:
            raise EncryptionError(f"Failed to derive decryption key: {e}")

        if envelope.key_check is not None and not constant_time.bytes_eq(key_check, envelope.key_check):
            raise WrongPasswordError("Backup was encrypted with a different key")

        try:
            return AESGCM(key).decrypt(envelope.iv, envelope.ciphertext, None)
        except InvalidTag:
            if envelope.key_check is None:
                # Legacy envelope: wrong key and corruption look the same
                raise WrongPasswordError("Backup was encrypted with a different key")
            raise EncryptionError("Decryption failed: ciphertext is corrupted")
        except ValueError as e:
            raise EncryptionError(f"Decryption failed: {e}")

    def _derive(self, password: str, salt: bytes, iterations: int):
        """
        Derive the AES key and its key-check digest.

        PBKDF2 yields 64 bytes: the first half is the AES key, the second half
        only feeds the key-check digest.
        """
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=self.KEY_LENGTH * 2,
            salt=salt,
            iterations=iterations,
        )
        material = kdf.derive(password.encode('utf-8'))

        digest = hashes.Hash(hashes.SHA256())
        digest.update(material[self.KEY_LENGTH:])
        key_check = digest.finalize()[:self.KEY_CHECK_LENGTH]

        return material[:self.KEY_LENGTH], key_check


class KeyDerivation:
    """
    Derives the backup password from the remote account identity.

    Deterministic for the same account across devices and sessions, so a
    backup made on one device restores on another signed in to that account.
    """

    def __init__(self, salt: str = 'SmartAgenda-v3.0-backup'):
        self.salt = salt

    def derive(self, identity) -> str:
        """
        Args:
            identity: RemoteIdentity (or a bare account id string)
        """
        account_id = getattr(identity, 'account_id', identity)
        if not account_id:
            raise EncryptionError("No account identity to derive the backup key from")
        return f"{account_id}-{self.salt}"
