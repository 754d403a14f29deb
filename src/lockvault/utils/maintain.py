import fnmatch
import glob
import logging
import os
import posixpath
import sqlite3

from typing import Dict, List, Sequence

from lockvault.crypto.aead import CannotDecrypt, Cipher, clear_bytes
from lockvault.crypto.hash import derive_key, new_kdf_params
from lockvault.security.pathguard import PathRejected
from lockvault.storage.vault import StoreNotFound
from lockvault.utils.core import (
    VaultSession,
    expand_patterns,
    load_kdf_params,
    password_check_value,
    read_metadata,
    resolve_user_path,
    save_metadata,
)
from lockvault.utils.dataModels import PRIVATE_CHECKSUM_KEY, PRIVATE_FILES_KEY
from lockvault.utils.errors import ErrorKind, VaultError

logger = logging.getLogger(__name__)


def _match_tracked(session: VaultSession, patterns: Sequence[str], tracked: Sequence[str]) -> List[str]:
    """Stored paths named by `patterns`, whether or not the files still exist on disk."""
    matched: List[str] = []

    def add(path: str) -> None:
        if path in tracked and path not in matched:
            matched.append(path)

    for raw in expand_patterns(session, patterns):
        try:
            add(resolve_user_path(session, raw))
        except PathRejected as e:
            logger.warning("invalid path %s: %s", raw, e.reason)

    # globs for files that were removed from disk after sealing
    for pattern in patterns:
        if not glob.has_magic(pattern):
            continue
        try:
            rel = session.guard.normalize_to_relative(pattern)
        except PathRejected:
            continue
        rel = posixpath.normpath(rel.replace(os.sep, "/"))
        for path in tracked:
            if fnmatch.fnmatchcase(path, rel):
                add(path)
    return matched


def remove_files(session: VaultSession, patterns: Sequence[str], password: bytes | bytearray | None) -> int:
    """Stop tracking the files named by `patterns`; returns how many were removed."""
    session.cancel.check()
    metadata, cipher = read_metadata(session, password)
    with cipher:
        removed = _match_tracked(session, patterns, metadata.tracked_paths())
        if not removed:
            logger.info("no matching files found in vault")
            return 0

        for path in removed:
            metadata.remove_file(path)
        try:
            with session.store.batch():
                for path in removed:
                    session.store.remove_index_entry(path)
                    session.store.delete_blob(path)
                save_metadata(session, metadata, cipher)
        except sqlite3.Error as e:
            raise VaultError.wrap("failed to remove files", e)

    for path in removed:
        logger.info("removed from vault: %s", path)
    return len(removed)


def change_password(session: VaultSession, old_password: bytes | bytearray | None,
                    new_password: bytes | bytearray | None, kdf: str | None = None,
                    iterations: int | None = None) -> None:
    """Re-encrypt everything under a key derived from `new_password` and a fresh salt.

    Steps:
      1) Verify `old_password` and decrypt the metadata and every stored blob.
      2) Derive the new key (same KDF settings unless overridden).
      3) Re-encrypt blobs, password check and metadata.
      4) Write all of it together with the new KDF settings in one transaction.
    """
    if new_password is None:
        raise VaultError(ErrorKind.PASSWORD_REQUIRED)
    session.cancel.check()
    metadata, old_cipher = read_metadata(session, old_password)

    plaintexts: Dict[str, bytearray] = {}
    with old_cipher:
        try:
            current = load_kdf_params(session.store)
            for path in session.store.blob_paths():
                session.cancel.check()
                try:
                    plaintexts[path] = old_cipher.decrypt(session.store.get_blob(path))
                except (StoreNotFound, CannotDecrypt) as e:
                    raise VaultError.wrap(f"failed to decrypt {path}", e)
        except sqlite3.Error as e:
            for data in plaintexts.values():
                clear_bytes(data)
            raise VaultError.wrap("failed to read vault", e)
        except BaseException:
            for data in plaintexts.values():
                clear_bytes(data)
            raise

    try:
        name = kdf or current.name
        params = new_kdf_params(
            name,
            iterations or (current.iterations if name == current.name else None),
            current.memory_kib if name == current.name else None,
            current.parallelism if name == current.name else None,
        )
        new_cipher = Cipher(derive_key(new_password, params))
    except ValueError as e:
        for data in plaintexts.values():
            clear_bytes(data)
        raise VaultError.wrap("failed to derive new key", e)

    with new_cipher:
        blobs: Dict[str, bytes] = {}
        try:
            for path, data in plaintexts.items():
                blobs[path] = new_cipher.encrypt(data)
                clear_bytes(data)
        finally:
            for data in plaintexts.values():
                clear_bytes(data)
        check = new_cipher.encrypt(password_check_value())
        raw = metadata.to_bytes()
        try:
            files = new_cipher.encrypt(raw)
        finally:
            clear_bytes(raw)

    try:
        with session.store.batch():
            for path, blob in blobs.items():
                session.store.put_blob(path, blob)
            session.store.put_private(PRIVATE_CHECKSUM_KEY, check)
            session.store.put_private(PRIVATE_FILES_KEY, files)
            session.store.set_kdf(params.name, params.salt, params.iterations, params.memory_kib, params.parallelism)
            session.store.update_modified()
    except sqlite3.Error as e:
        raise VaultError.wrap("failed to store re-encrypted vault", e)
    logger.info("re-encrypted %d file(s) under the new password", len(blobs))


def compact(session: VaultSession) -> None:
    """Rewrite the container to reclaim space left by removed or replaced entries."""
    try:
        session.store.compact()
    except (sqlite3.Error, OSError) as e:
        raise VaultError.wrap("failed to compact vault", e)
