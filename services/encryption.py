import base64
import os

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

import config
from models.encryption_key import EncryptionKey

KEY_SIZE = 32
IV_SIZE = 16


class EncryptionError(Exception):
    pass


class DecryptionError(EncryptionError):
    pass


def _encrypt_bytes(data: bytes, key: bytes, iv: bytes) -> bytes:
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(data) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return encryptor.update(padded) + encryptor.finalize()


def _decrypt_bytes(data: bytes, key: bytes, iv: bytes) -> bytes:
    try:
        decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(data) + decryptor.finalize()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError as e:
        raise DecryptionError(f"Unable to decrypt value: {e}") from e


def _b64decode(value: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except ValueError as e:
        raise DecryptionError("Value is not valid base64") from e


def generate_key():
    """New AES-256 data key and IV, both base64 encoded."""
    key = base64.b64encode(os.urandom(KEY_SIZE)).decode()
    iv = base64.b64encode(os.urandom(IV_SIZE)).decode()
    return key, iv


def encrypt(plaintext: str, raw_key: str, iv: str) -> str:
    data = _encrypt_bytes(plaintext.encode("utf-8"), _b64decode(raw_key), _b64decode(iv))
    return base64.b64encode(data).decode()


def decrypt(ciphertext: str, raw_key: str, iv: str) -> str:
    data = _decrypt_bytes(_b64decode(ciphertext), _b64decode(raw_key), _b64decode(iv))
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecryptionError("Decrypted value is not valid text") from e


def wrap_key(raw_key: str, master_key: str) -> str:
    """
    Encrypts a data key under the master key.

    A fresh IV is generated for every wrap and stored in front of the
    ciphertext, so wrapping the same key twice gives different output.
    """
    iv = os.urandom(IV_SIZE)
    data = _encrypt_bytes(_b64decode(raw_key), _b64decode(master_key), iv)
    return base64.b64encode(iv + data).decode()


def unwrap_key(wrapped: str, master_key: str) -> str:
    blob = _b64decode(wrapped)
    if len(blob) <= IV_SIZE:
        raise DecryptionError("Wrapped key is truncated")
    raw = _decrypt_bytes(blob[IV_SIZE:], _b64decode(master_key), blob[:IV_SIZE])
    return base64.b64encode(raw).decode()


def master_key() -> str:
    key = config.MASTER_ENCRYPTION_KEY
    if not key:
        raise EncryptionError("MASTER_ENCRYPTION_KEY is not configured")
    return key


# ⬇️ Per-entity keys
def provision_key(db):
    raw_key, iv = generate_key()
    row = EncryptionKey(encrypted_key=wrap_key(raw_key, master_key()), iv=iv)
    db.add(row)
    db.flush()
    return row, raw_key


def encrypt_field(key_row: EncryptionKey, plaintext):
    if plaintext is None:
        return None
    raw_key = unwrap_key(key_row.encrypted_key, master_key())
    return encrypt(plaintext, raw_key, key_row.iv)


def decrypt_field(key_row: EncryptionKey, ciphertext):
    if ciphertext is None:
        return None
    if key_row is None:
        raise DecryptionError("No encryption key for encrypted value")
    raw_key = unwrap_key(key_row.encrypted_key, master_key())
    return decrypt(ciphertext, raw_key, key_row.iv)
