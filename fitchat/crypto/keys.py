"""Key material for end-to-end encrypted chat.

RSA-OAEP key pairs wrap per-message AES keys; AES-256-GCM keys encrypt the
payloads themselves.  Every key can be exported to base64 text and imported
back, so storage and transmission stay the caller's business.
"""

import base64
import binascii
import os
from dataclasses import dataclass
from typing import Union

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from fitchat.errors import DecryptionError, KeyFormatError, KeyGenerationError


RSA_KEY_SIZE = 2048
RSA_PUBLIC_EXPONENT = 65537
SYMMETRIC_KEY_SIZE = 32
IV_SIZE = 12
AES_KEY_SIZES = (16, 24, 32)

Key = Union[rsa.RSAPublicKey, rsa.RSAPrivateKey, bytes]


@dataclass(frozen=True, slots=True)
class KeyPair:
    public_key: rsa.RSAPublicKey
    private_key: rsa.RSAPrivateKey


def _oaep() -> padding.OAEP:
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None,
    )


def generate_asymmetric_keypair() -> KeyPair:
    """Generate an exportable RSA-2048 key pair for key wrapping."""
    try:
        private_key = rsa.generate_private_key(public_exponent=RSA_PUBLIC_EXPONENT, key_size=RSA_KEY_SIZE)
    except (UnsupportedAlgorithm, ValueError) as exc:
        raise KeyGenerationError("RSA key generation is unavailable") from exc
    return KeyPair(public_key=private_key.public_key(), private_key=private_key)


def generate_symmetric_key() -> bytes:
    """Generate a fresh AES-256 key for one payload."""
    try:
        return os.urandom(SYMMETRIC_KEY_SIZE)
    except NotImplementedError as exc:
        raise KeyGenerationError("no randomness source available") from exc


def generate_iv() -> bytes:
    """Return a fresh 96-bit GCM nonce.  Never reuse one with the same key."""
    try:
        return os.urandom(IV_SIZE)
    except NotImplementedError as exc:
        raise KeyGenerationError("no randomness source available") from exc


def export_key(key: Key) -> str:
    """Export key material to base64 text.

    Public keys use SubjectPublicKeyInfo DER, private keys PKCS#8 DER and
    symmetric keys their raw bytes.
    """
    if isinstance(key, rsa.RSAPrivateKey):
        raw = key.private_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
    elif isinstance(key, rsa.RSAPublicKey):
        raw = key.public_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
    elif isinstance(key, (bytes, bytearray)):
        raw = bytes(key)
    else:
        raise KeyFormatError(f"cannot export key of type {type(key).__name__}")
    return base64.b64encode(raw).decode("ascii")


def _b64decode(data: str) -> bytes:
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError, TypeError) as exc:
        raise KeyFormatError("key is not valid base64") from exc


def import_public_key(data: str) -> rsa.RSAPublicKey:
    raw = _b64decode(data)
    try:
        key = serialization.load_der_public_key(raw)
    except (ValueError, UnsupportedAlgorithm) as exc:
        raise KeyFormatError("malformed public key") from exc
    if not isinstance(key, rsa.RSAPublicKey):
        raise KeyFormatError("public key is not an RSA key")
    return key


def import_private_key(data: str) -> rsa.RSAPrivateKey:
    raw = _b64decode(data)
    try:
        key = serialization.load_der_private_key(raw, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise KeyFormatError("malformed private key") from exc
    if not isinstance(key, rsa.RSAPrivateKey):
        raise KeyFormatError("private key is not an RSA key")
    return key


def import_symmetric_key(data: str) -> bytes:
    raw = _b64decode(data)
    if len(raw) not in AES_KEY_SIZES:
        raise KeyFormatError(f"symmetric key must be 16, 24 or 32 bytes, got {len(raw)}")
    return raw


def wrap_key(symmetric_key: bytes, public_key: rsa.RSAPublicKey) -> bytes:
    """Encrypt a symmetric key for the holder of *public_key*."""
    return public_key.encrypt(bytes(symmetric_key), _oaep())


def unwrap_key(wrapped: bytes, private_key: rsa.RSAPrivateKey) -> bytes:
    """Recover a symmetric key wrapped with :func:`wrap_key`."""
    try:
        key = private_key.decrypt(wrapped, _oaep())
    except ValueError as exc:
        raise DecryptionError("unable to unwrap key") from exc
    if len(key) not in AES_KEY_SIZES:
        raise DecryptionError("unable to unwrap key")
    return key
