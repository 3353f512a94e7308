"""
Credential Encryption Module
AES-256-CBC encryption for tenant API passwords stored as '<iv hex>:<ciphertext hex>'.
"""

import hashlib
import os
import re

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from dashboard_sync.config_manager import ConfigManager

_HEX_KEY = re.compile(r'^[0-9a-fA-F]{64}$')


class DecryptionError(Exception):
    """Raised when a stored secret cannot be decrypted."""
    pass


def derive_key(raw_key: str) -> bytes:
    """
    Turn the configured key string into 32 key bytes.

    A 64 character hex string is used as-is. Any other string of at least
    16 characters is hashed with SHA-256.

    Raises:
        ValueError: If the key is missing or too short
    """
    if not raw_key:
        raise ValueError("ENCRYPTION_KEY is not configured")
    if _HEX_KEY.match(raw_key):
        return bytes.fromhex(raw_key)
    if len(raw_key) < 16:
        raise ValueError("ENCRYPTION_KEY must be 64 hex characters or at least 16 characters long")
    return hashlib.sha256(raw_key.encode('utf-8')).digest()


def get_encryption_key() -> bytes:
    """Load the encryption key from configuration."""
    raw_key = ConfigManager().get_mautic_config().get('encryption_key') or os.getenv('ENCRYPTION_KEY', '')
    return derive_key(raw_key)


def encrypt(plain_text: str, key: bytes = None) -> str:
    """
    Encrypt a secret for storage.

    Args:
        plain_text: Secret to encrypt
        key: 32 byte key (defaults to the configured key)

    Returns:
        '<iv hex>:<ciphertext hex>' or '' for an empty input
    """
    if not plain_text:
        return ''

    key = key or get_encryption_key()
    iv = os.urandom(16)

    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plain_text.encode('utf-8')) + padder.finalize()

    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    cipher_text = encryptor.update(padded) + encryptor.finalize()

    return f"{iv.hex()}:{cipher_text.hex()}"


def decrypt(encrypted_text: str, key: bytes = None) -> str:
    """
    Decrypt a stored secret.

    Args:
        encrypted_text: '<iv hex>:<ciphertext hex>'
        key: 32 byte key (defaults to the configured key)

    Returns:
        Plain text secret or '' for an empty input

    Raises:
        DecryptionError: If the payload is malformed or the key is wrong
    """
    if not encrypted_text:
        return ''

    parts = encrypted_text.split(':')
    if len(parts) != 2:
        raise DecryptionError("Invalid encrypted data format")

    key = key or get_encryption_key()

    try:
        iv = bytes.fromhex(parts[0])
        cipher_text = bytes.fromhex(parts[1])

        decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(cipher_text) + decryptor.finalize()

        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        plain = unpadder.update(padded) + unpadder.finalize()
        return plain.decode('utf-8')
    except ValueError as e:
        raise DecryptionError(f"Failed to decrypt data: {e}") from e
