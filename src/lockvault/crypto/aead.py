import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import constant_time
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from lockvault.utils.dataModels import KEY_SIZE, NONCE_SIZE, TAG_SIZE

logger = logging.getLogger(__name__)


class CannotDecrypt(Exception):
    """Raised for every decryption failure: short blob, wrong key or tampered data."""


def clear_bytes(buf: bytearray | memoryview | None) -> None:
    """Overwrite a mutable buffer with zeros in place."""
    if buf is None:
        return
    view = memoryview(buf)
    if view.readonly:
        return
    view[:] = b"\x00" * len(view)


def constant_time_compare(a: bytes | bytearray, b: bytes | bytearray) -> bool:
    return constant_time.bytes_eq(bytes(a), bytes(b))


def aead_encrypt(key: bytes | bytearray, plaintext: bytes | bytearray, aad: bytes | None = None) -> bytes:
    """Encrypt with AES-256-GCM and return nonce || ciphertext || tag."""
    nonce = os.urandom(NONCE_SIZE)
    aesgcm = AESGCM(key)
    ct = aesgcm.encrypt(nonce, plaintext, aad)
    return nonce + ct


def aead_decrypt(key: bytes | bytearray, blob: bytes, aad: bytes | None = None) -> bytearray:
    """Split the nonce off `blob` and decrypt the rest into a mutable buffer."""
    if len(blob) < NONCE_SIZE + TAG_SIZE:
        logger.debug("ciphertext too short (%d bytes)", len(blob))
        raise CannotDecrypt("cannot decrypt")
    nonce, ct = blob[:NONCE_SIZE], blob[NONCE_SIZE:]
    aesgcm = AESGCM(key)
    try:
        return bytearray(aesgcm.decrypt(nonce, ct, aad))
    except InvalidTag:
        logger.debug("authentication tag mismatch")
        raise CannotDecrypt("cannot decrypt") from None


class Cipher:
    """Holds one derived key for the duration of an operation.

    The key buffer is owned by the cipher and zeroed by `destroy()`; callers
    should use the cipher as a context manager so that happens on every exit
    path.
    """

    def __init__(self, key: bytearray) -> None:
        if len(key) != KEY_SIZE:
            raise ValueError(f"key must be {KEY_SIZE} bytes")
        self._key: bytearray | None = key

    def _live_key(self) -> bytearray:
        if self._key is None:
            raise RuntimeError("cipher key has been destroyed")
        return self._key

    def encrypt(self, plaintext: bytes | bytearray) -> bytes:
        return aead_encrypt(self._live_key(), plaintext)

    def decrypt(self, blob: bytes) -> bytearray:
        return aead_decrypt(self._live_key(), blob)

    def destroy(self) -> None:
        if self._key is not None:
            clear_bytes(self._key)
            self._key = None

    @property
    def destroyed(self) -> bool:
        return self._key is None

    def __enter__(self) -> "Cipher":
        return self

    def __exit__(self, *exc) -> None:
        self.destroy()
