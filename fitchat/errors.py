"""Exception taxonomy for the fitchat messaging stack.

Format errors also subclass :class:`ValueError` and transport errors also
subclass :class:`ConnectionError`, so callers that only know the builtin
types keep working.
"""


class FitchatError(Exception):
    """Base class for every error raised by fitchat."""


class KeyGenerationError(FitchatError):
    """The cryptographic provider could not produce key material."""


class KeyFormatError(FitchatError, ValueError):
    """Key material could not be imported or has the wrong shape."""


class DecryptionError(FitchatError, ValueError):
    """Ciphertext could not be authenticated or decrypted."""


class MalformedEnvelopeError(FitchatError, ValueError):
    """Bytes on the wire do not decode to a valid message envelope."""


class TransportUnavailableError(FitchatError, ConnectionError):
    """No usable peer, or the transport is not in a state that can be used."""


class EncryptionError(FitchatError, ValueError):
    """Plaintext could not be encrypted."""
