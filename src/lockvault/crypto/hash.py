import os

from argon2.low_level import hash_secret_raw, Type as Argon2Type
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from dataclasses import dataclass

from lockvault.utils.dataModels import (
    DEFAULT_ARGON2_MEMORY_KIB,
    DEFAULT_ARGON2_PARALLELISM,
    DEFAULT_ARGON2_TIME_COST,
    DEFAULT_ITERATIONS,
    KDF_ARGON2ID,
    KDF_PBKDF2,
    KEY_SIZE,
    SALT_SIZE,
)

SUPPORTED_KDFS = (KDF_PBKDF2, KDF_ARGON2ID)


@dataclass
class KdfParams:
    """Per-vault key derivation settings, stored unencrypted in the config namespace."""
    salt: bytes
    iterations: int
    name: str = KDF_PBKDF2
    memory_kib: int = 0
    parallelism: int = 0


def new_kdf_params(name: str = KDF_PBKDF2, iterations: int | None = None,
                   memory_kib: int | None = None, parallelism: int | None = None) -> KdfParams:
    """Fresh settings with a new random salt."""
    if name not in SUPPORTED_KDFS:
        raise ValueError(f"unsupported KDF: {name}")
    salt = os.urandom(SALT_SIZE)
    if name == KDF_ARGON2ID:
        return KdfParams(
            salt=salt,
            iterations=iterations or DEFAULT_ARGON2_TIME_COST,
            name=name,
            memory_kib=memory_kib or DEFAULT_ARGON2_MEMORY_KIB,
            parallelism=parallelism or DEFAULT_ARGON2_PARALLELISM,
        )
    return KdfParams(salt=salt, iterations=iterations or DEFAULT_ITERATIONS, name=name)


def derive_key(password: bytes | bytearray, params: KdfParams) -> bytearray:
    """Derive the 32-byte vault key. The caller owns (and must zero) the result."""
    if params.iterations <= 0:
        raise ValueError("KDF iteration count must be positive")
    if params.name == KDF_ARGON2ID:
        key = hash_secret_raw(
            secret=bytes(password),
            salt=params.salt,
            time_cost=params.iterations,
            memory_cost=params.memory_kib,
            parallelism=params.parallelism,
            hash_len=KEY_SIZE,
            type=Argon2Type.ID,
        )
    elif params.name == KDF_PBKDF2:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_SIZE,
            salt=params.salt,
            iterations=params.iterations,
        )
        key = kdf.derive(password)
    else:
        raise ValueError(f"unsupported KDF: {params.name}")
    return bytearray(key)


def sha256_hex(data: bytes | bytearray) -> str:
    digest = hashes.Hash(hashes.SHA256())
    digest.update(data)
    return digest.finalize().hex()
