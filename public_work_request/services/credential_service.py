"""Encrypted CMP credentials.

Secrets are stored as ``iv:authTag:ciphertext`` (hex) using AES-256-GCM with a
32-byte key supplied base64-encoded through ``ENCRYPTION_KEY``.
"""

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..errors import CredentialUnavailable, EncryptionError

KEY_SIZE = 32
IV_SIZE = 12
AUTH_TAG_SIZE = 16


class CredentialCipher:
    def __init__(self, key):
        if len(key) != KEY_SIZE:
            raise EncryptionError(f"ENCRYPTION_KEY must decode to exactly {KEY_SIZE} bytes. Got {len(key)} bytes.")
        self._aead = AESGCM(key)

    @classmethod
    def from_config(cls, config):
        key_b64 = config.get('ENCRYPTION_KEY')
        if not key_b64:
            raise EncryptionError("ENCRYPTION_KEY is not set. It must be a base64-encoded 32-byte key.")
        try:
            key = base64.b64decode(key_b64, validate=True)
        except (binascii.Error, ValueError) as e:
            raise EncryptionError("ENCRYPTION_KEY is not valid base64.") from e
        return cls(key)

    def encrypt(self, plaintext):
        iv = os.urandom(IV_SIZE)
        sealed = self._aead.encrypt(iv, plaintext.encode('utf-8'), None)
        ciphertext, tag = sealed[:-AUTH_TAG_SIZE], sealed[-AUTH_TAG_SIZE:]
        return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, encrypted):
        parts = encrypted.split(':')
        if len(parts) != 3:
            raise EncryptionError("Invalid encrypted string format. Expected 'iv:authTag:ciphertext'.")
        try:
            iv, tag, ciphertext = (bytes.fromhex(p) for p in parts)
            plaintext = self._aead.decrypt(iv, ciphertext + tag, None)
        except (ValueError, InvalidTag) as e:
            raise EncryptionError("Could not decrypt credential.") from e
        return plaintext.decode('utf-8')


def resolve_credential(form, cipher):
    """Decrypted (client_id, client_secret) for the form's credential, if it is active."""
    credential = form.credential if form is not None else None
    if credential is None or not credential.is_active:
        raise CredentialUnavailable()
    return (
        cipher.decrypt(credential.client_id_encrypted),
        cipher.decrypt(credential.client_secret_encrypted),
    )
