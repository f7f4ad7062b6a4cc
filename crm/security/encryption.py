"""
Field-level encryption for secrets at rest (support credentials, bank account numbers, MFA secrets).

AES-256-GCM. Stored format: encrypted = "<hex ciphertext>:<hex auth tag>", iv stored separately as hex.
Every decrypt of a business secret must be mirrored by an AuditLog entry (see CredentialService).
"""
import hashlib
import hmac
import os
import secrets
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from crm.errors import ConfigurationError, DecryptionError

KEY_HEX_LENGTH = 64  # 32 bytes
IV_LENGTH = 16
AUTH_TAG_LENGTH = 16


@dataclass(frozen=True)
class EncryptedValue:
    encrypted: str
    iv: str


class FieldCipher:
    """
    Symmetric cipher built once at startup from ENCRYPTION_KEY and shared read-only.
    No in-process key rotation: rotating means re-encrypting stored secrets offline.
    """

    def __init__(self, key_hex: str):
        self._aesgcm = AESGCM(_parse_key(key_hex))

    def encrypt(self, plaintext: str) -> EncryptedValue:
        '''
        Encrypt with a fresh random IV. Tag is appended to the ciphertext after ":".
        '''
        iv = os.urandom(IV_LENGTH)
        sealed = self._aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-AUTH_TAG_LENGTH], sealed[-AUTH_TAG_LENGTH:]
        return EncryptedValue(
            encrypted=f"{ciphertext.hex()}:{tag.hex()}",
            iv=iv.hex(),
        )

    def decrypt(self, encrypted: str, iv: str) -> str:
        '''
        Decrypt a stored value. Raises DecryptionError on tampering, wrong key or malformed input.

        :param encrypted: "<hex ciphertext>:<hex tag>", split on the last ":"
        :param iv: hex IV
        '''
        if not encrypted or ":" not in encrypted:
            raise DecryptionError("Invalid encrypted format. Expected 'ciphertext:authTag'")
        ciphertext_hex, _, tag_hex = encrypted.rpartition(":")
        if not ciphertext_hex or not tag_hex:
            raise DecryptionError("Invalid encrypted format. Expected 'ciphertext:authTag'")

        try:
            ciphertext = bytes.fromhex(ciphertext_hex)
            tag = bytes.fromhex(tag_hex)
            iv_bytes = bytes.fromhex(iv or "")
        except ValueError as e:
            raise DecryptionError("Encrypted value is not valid hex") from e

        if len(tag) != AUTH_TAG_LENGTH or len(iv_bytes) < 8:
            raise DecryptionError("Invalid auth tag or IV length")

        try:
            plaintext = self._aesgcm.decrypt(iv_bytes, ciphertext + tag, None)
        except InvalidTag as e:
            raise DecryptionError("Authentication tag mismatch (tampered data or wrong key)") from e

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionError("Decrypted value is not valid UTF-8") from e


def _parse_key(key_hex: Optional[str]) -> bytes:
    if not key_hex:
        raise ConfigurationError(
            "ENCRYPTION_KEY is not set. Generate with: "
            "python -c \"import secrets; print(secrets.token_hex(32))\""
        )
    if len(key_hex) != KEY_HEX_LENGTH:
        raise ConfigurationError(
            f"ENCRYPTION_KEY must be {KEY_HEX_LENGTH} hex characters (32 bytes). Got {len(key_hex)} characters."
        )
    try:
        return bytes.fromhex(key_hex)
    except ValueError as e:
        raise ConfigurationError("ENCRYPTION_KEY must be hex encoded") from e


def load_field_cipher(environ=None) -> FieldCipher:
    """Build the process-wide cipher from the environment. Fails immediately on a bad key."""
    environ = os.environ if environ is None else environ
    return FieldCipher(environ.get("ENCRYPTION_KEY", ""))


def hash_value(value: str) -> str:
    """SHA-256 hex digest. Deterministic lookup hash (session tokens), never for passwords."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def generate_token(byte_length: int = 32) -> str:
    return secrets.token_hex(byte_length)


def generate_encryption_key() -> str:
    """New 32-byte hex key for ENCRYPTION_KEY (offline rotation only)."""
    return secrets.token_hex(32)


def secure_compare(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))
