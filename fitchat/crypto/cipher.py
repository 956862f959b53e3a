"""AES-256-GCM payload encryption."""

from typing import Optional, Protocol

from Crypto.Cipher import AES

from fitchat.crypto.keys import AES_KEY_SIZES, IV_SIZE, generate_iv, import_symmetric_key
from fitchat.errors import DecryptionError, EncryptionError, KeyFormatError


TAG_SIZE = 16


def _check_params(key: bytes, iv: bytes) -> None:
    if len(key) not in AES_KEY_SIZES:
        raise KeyFormatError("AES key must be 16, 24 or 32 bytes")
    if len(iv) != IV_SIZE:
        raise KeyFormatError("IV must be 12 bytes")


def encrypt(plaintext: str, key: bytes, iv: bytes) -> bytes:
    """Encrypt *plaintext* and return ``ciphertext || tag``.

    The caller owns *iv* and must never pass the same one twice for a key.

    Raises:
        KeyFormatError: If *key* or *iv* has the wrong size.
        EncryptionError: If *plaintext* cannot be encoded as UTF-8.
    """
    _check_params(key, iv)
    try:
        data = plaintext.encode("utf-8")
    except UnicodeEncodeError as exc:
        raise EncryptionError("plaintext is not encodable as UTF-8") from exc
    cipher = AES.new(key, AES.MODE_GCM, nonce=iv)
    ciphertext, tag = cipher.encrypt_and_digest(data)
    return ciphertext + tag


def decrypt(ciphertext: bytes, key: bytes, iv: bytes) -> str:
    """Inverse of :func:`encrypt`.

    Raises:
        DecryptionError: For any failure.  Tag mismatch, wrong key and
            corrupted input all look the same to the caller.
    """
    if len(key) not in AES_KEY_SIZES or len(iv) != IV_SIZE or len(ciphertext) < TAG_SIZE:
        raise DecryptionError("unable to decrypt payload")
    body, tag = ciphertext[:-TAG_SIZE], ciphertext[-TAG_SIZE:]
    cipher = AES.new(key, AES.MODE_GCM, nonce=iv)
    try:
        plaintext = cipher.decrypt_and_verify(body, tag)
        return plaintext.decode("utf-8")
    except ValueError as exc:
        raise DecryptionError("unable to decrypt payload") from exc


class PayloadCipher(Protocol):
    mode: str

    def encrypt(self, payload: bytes) -> bytes: ...

    def decrypt(self, payload: bytes) -> bytes: ...


class PlaintextCipher:
    """Pass-through mode: payloads travel unencrypted."""

    mode = "none"

    def encrypt(self, payload: bytes) -> bytes:
        return payload

    def decrypt(self, payload: bytes) -> bytes:
        return payload


class SharedKeyCipher:
    """AES-GCM with one key shared by everyone on the topic.

    Wire layout: ``iv (12 B) || ciphertext || tag (16 B)``, with a fresh IV
    for every payload.
    """

    mode = "aes-gcm"

    def __init__(self, key: bytes):
        if len(key) not in AES_KEY_SIZES:
            raise KeyFormatError("AES key must be 16, 24 or 32 bytes")
        self._key = bytes(key)

    def encrypt(self, payload: bytes) -> bytes:
        iv = generate_iv()
        cipher = AES.new(self._key, AES.MODE_GCM, nonce=iv)
        ciphertext, tag = cipher.encrypt_and_digest(payload)
        return iv + ciphertext + tag

    def decrypt(self, payload: bytes) -> bytes:
        if len(payload) < IV_SIZE + TAG_SIZE:
            raise DecryptionError("unable to decrypt payload")
        iv = payload[:IV_SIZE]
        body = payload[IV_SIZE:-TAG_SIZE]
        tag = payload[-TAG_SIZE:]
        cipher = AES.new(self._key, AES.MODE_GCM, nonce=iv)
        try:
            return cipher.decrypt_and_verify(body, tag)
        except ValueError as exc:
            raise DecryptionError("unable to decrypt payload") from exc


def build_payload_cipher(mode: str, key_b64: Optional[str] = None) -> PayloadCipher:
    """Select the payload cipher for *mode* (``"none"`` or ``"aes-gcm"``)."""
    if mode == PlaintextCipher.mode:
        return PlaintextCipher()
    if mode == SharedKeyCipher.mode:
        if not key_b64:
            raise KeyFormatError("aes-gcm mode needs a topic key")
        return SharedKeyCipher(import_symmetric_key(key_b64))
    raise ValueError(f"unknown encryption mode: {mode!r}")
