"""Vault engine: open a container, track and seal files, restore them.

Every operation takes an explicit `VaultSession` obtained from `open_vault()`.
Operations that touch encrypted content take the password as a mutable
buffer which the caller owns; derived keys and plaintext are zeroed here.
"""
import fnmatch
import glob
import logging
import os
import posixpath
import sqlite3
import stat as stat_mod

from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator, List, Protocol, Sequence, Tuple

from lockvault.crypto.aead import CannotDecrypt, Cipher, clear_bytes, constant_time_compare
from lockvault.crypto.hash import KdfParams, derive_key, new_kdf_params, sha256_hex
from lockvault.security.pathguard import PathGuard, PathRejected
from lockvault.storage.vault import BACKUP_SUFFIX, COMPACT_SUFFIX, JOURNAL_SUFFIX, StoreNotFound, VaultStore
from lockvault.utils.dataModels import (
    CONTAINER_NAME,
    DIFF_ERROR,
    DIFF_MISSING,
    KDF_PBKDF2,
    MAX_VAULT_COPIES,
    PASSWORD_CHECK_STRING,
    PRIVATE_CHECKSUM_KEY,
    PRIVATE_FILES_KEY,
    STATUS_ERROR,
    STATUS_MODIFIED,
    STATUS_UNCHANGED,
    STATUS_VAULT_ONLY,
    ChangedFiles,
    FileDiff,
    FileEntry,
    FileStatus,
    GitAdvice,
    IndexEntry,
    StatusInfo,
    UnlockResult,
    VaultMetadata,
    secure_file_mode,
)
from lockvault.utils.errors import ErrorKind, VaultError
from lockvault.utils.helper import CancelToken, iso_to_timestamp, rel_time_iso
from lockvault.utils.merge import (
    ConflictError,
    MergeStrategy,
    Prompter,
    Resolution,
    contents_identical,
    handle_conflict,
    invoke_editor,
    unified_diff,
)

logger = logging.getLogger(__name__)


class GitCapability(Protocol):
    def is_repo(self, workdir: str) -> bool: ...

    def is_tracked(self, workdir: str, path: str) -> bool: ...

    def is_ignored(self, workdir: str, path: str) -> bool: ...


@dataclass
class VaultSession:
    """An open container plus everything needed to touch files under its root."""
    root: str
    store: VaultStore
    guard: PathGuard
    cancel: CancelToken = field(default_factory=CancelToken)

    @property
    def container(self) -> Path:
        return container_path(self.root)

    def close(self) -> None:
        self.store.close()


def container_path(root: str | os.PathLike) -> Path:
    return Path(os.path.abspath(os.fspath(root))) / CONTAINER_NAME


@contextmanager
def open_vault(root: str | os.PathLike = ".", cancel: CancelToken | None = None) -> Iterator[VaultSession]:
    """Open the container in `root` for the duration of the `with` block."""
    path = container_path(root)
    try:
        store = VaultStore.open(path)
    except FileNotFoundError:
        raise VaultError(ErrorKind.NOT_INITIALIZED) from None
    except (OSError, sqlite3.Error) as e:
        raise VaultError.wrap("failed to open vault", e)

    session = VaultSession(
        root=str(path.parent),
        store=store,
        guard=PathGuard(path.parent),
        cancel=cancel or CancelToken(),
    )
    try:
        if not store.is_initialized():
            raise VaultError(ErrorKind.NOT_INITIALIZED)
        yield session
    finally:
        session.close()


# -- password and metadata ---------------------------------------------------

def password_check_value() -> bytes:
    return sha256_hex(PASSWORD_CHECK_STRING.encode("utf-8")).encode("ascii")


def load_kdf_params(store: VaultStore) -> KdfParams:
    name, memory_kib, parallelism = store.get_kdf()
    return KdfParams(
        salt=store.get_salt(),
        iterations=store.get_iterations(),
        name=name,
        memory_kib=memory_kib,
        parallelism=parallelism,
    )


def read_metadata(session: VaultSession, password: bytes | bytearray | None) -> Tuple[VaultMetadata, Cipher]:
    """Verify `password` and decrypt the metadata record.

    Returns the metadata and a live cipher; the caller must destroy the cipher.
    """
    if password is None:
        raise VaultError(ErrorKind.PASSWORD_REQUIRED)
    try:
        params = load_kdf_params(session.store)
    except (StoreNotFound, sqlite3.Error, ValueError) as e:
        raise VaultError.wrap("failed to read key derivation settings", e)
    try:
        key = derive_key(password, params)
    except ValueError as e:
        raise VaultError.wrap("failed to derive key", e)

    cipher = Cipher(key)
    try:
        try:
            check = cipher.decrypt(session.store.get_private(PRIVATE_CHECKSUM_KEY))
        except (StoreNotFound, CannotDecrypt):
            raise VaultError(ErrorKind.WRONG_PASSWORD) from None
        try:
            if not constant_time_compare(check, password_check_value()):
                raise VaultError(ErrorKind.WRONG_PASSWORD)
        finally:
            clear_bytes(check)

        try:
            raw = cipher.decrypt(session.store.get_private(PRIVATE_FILES_KEY))
        except (StoreNotFound, CannotDecrypt, sqlite3.Error) as e:
            raise VaultError.wrap("failed to read metadata", e)
        try:
            metadata = VaultMetadata.from_bytes(raw)
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise VaultError.wrap("failed to parse metadata", e)
        finally:
            clear_bytes(raw)
    except BaseException:
        cipher.destroy()
        raise
    return metadata, cipher


def save_metadata(session: VaultSession, metadata: VaultMetadata, cipher: Cipher) -> None:
    raw = metadata.to_bytes()
    try:
        blob = cipher.encrypt(raw)
    finally:
        clear_bytes(raw)
    try:
        with session.store.batch():
            session.store.put_private(PRIVATE_FILES_KEY, blob)
            session.store.update_modified()
    except sqlite3.Error as e:
        raise VaultError.wrap("failed to save metadata", e)


def verify_password(session: VaultSession, password: bytes | bytearray | None) -> None:
    """Raise VaultError(WRONG_PASSWORD) unless `password` opens the vault."""
    _, cipher = read_metadata(session, password)
    cipher.destroy()


def init_vault(root: str | os.PathLike, password: bytes | bytearray | None, kdf: str = KDF_PBKDF2,
               iterations: int | None = None, memory_kib: int | None = None,
               parallelism: int | None = None) -> Path:
    """Create a new, empty container in `root` and return its path."""
    if password is None:
        raise VaultError(ErrorKind.PASSWORD_REQUIRED)
    path = container_path(root)
    if path.exists():
        raise VaultError(ErrorKind.ALREADY_EXISTS)
    try:
        params = new_kdf_params(kdf, iterations, memory_kib, parallelism)
    except ValueError as e:
        raise VaultError.wrap("invalid key derivation settings", e)

    try:
        store = VaultStore.create(path)
    except FileExistsError:
        raise VaultError(ErrorKind.ALREADY_EXISTS) from None
    except (OSError, sqlite3.Error) as e:
        raise VaultError.wrap("failed to create vault", e)

    with store:
        try:
            store.initialize()
            store.set_kdf(params.name, params.salt, params.iterations, params.memory_kib, params.parallelism)
            with Cipher(derive_key(password, params)) as cipher:
                with store.batch():
                    store.put_private(PRIVATE_CHECKSUM_KEY, cipher.encrypt(password_check_value()))
                    raw = VaultMetadata().to_bytes()
                    try:
                        store.put_private(PRIVATE_FILES_KEY, cipher.encrypt(raw))
                    finally:
                        clear_bytes(raw)
        except (sqlite3.Error, ValueError) as e:
            raise VaultError.wrap("failed to initialize vault", e)
    logger.info("initialized vault at %s", path)
    return path


# -- tracking ----------------------------------------------------------------

_CONTAINER_FILES = frozenset(
    CONTAINER_NAME + suffix for suffix in ("", COMPACT_SUFFIX, BACKUP_SUFFIX, JOURNAL_SUFFIX)
)


def is_container_file(rel: str) -> bool:
    """True for the container itself and the side files SQLite and compaction leave next to it."""
    return rel in _CONTAINER_FILES


def _matches_container(session: VaultSession, match: str) -> bool:
    full = os.path.normpath(os.path.join(session.root, match))
    return is_container_file(os.path.relpath(full, session.root).replace(os.sep, "/"))


def expand_patterns(session: VaultSession, patterns: Sequence[str]) -> List[str]:
    """Expand glob patterns against the vault root; a pattern with no match is kept literally.

    Wildcards match dot files such as `.env`. Container files never come out of an expansion.
    """
    results: List[str] = []
    for pattern in patterns:
        if os.path.isabs(pattern):
            matches = glob.glob(pattern, recursive=True, include_hidden=True)
        else:
            matches = glob.glob(pattern, root_dir=session.root, recursive=True, include_hidden=True)
        matches = [m for m in matches if not _matches_container(session, m)]
        if matches:
            results.extend(sorted(matches))
        else:
            results.append(pattern)
    return results


def resolve_user_path(session: VaultSession, raw: str) -> str:
    rel = session.guard.normalize_to_relative(raw)
    return session.guard.validate_and_normalize(rel)


def _track_file(session: VaultSession, raw: str, metadata: VaultMetadata) -> FileEntry | None:
    try:
        rel = resolve_user_path(session, raw)
    except PathRejected as e:
        logger.error("invalid path %s: %s", raw, e.reason)
        return None
    if is_container_file(rel):
        logger.warning("skipping %s: the vault cannot contain its own container", rel)
        return None

    try:
        info = session.guard.stat(rel)
    except OSError as e:
        logger.warning("cannot access %s: %s", rel, e.strerror or e)
        return None
    if stat_mod.S_ISDIR(info.st_mode):
        logger.warning("skipping directory %s", rel)
        return None

    try:
        content = session.guard.read_file(rel)
    except OSError as e:
        logger.warning("cannot read %s: %s", rel, e.strerror or e)
        return None
    try:
        digest = sha256_hex(content)
        size = len(content)
    finally:
        clear_bytes(content)

    entry = FileEntry(
        path=rel,
        size=size,
        mode=stat_mod.S_IMODE(info.st_mode),
        mod_time=rel_time_iso(info.st_mtime),
        hash=digest,
    )
    metadata.add_file(entry)
    logger.info("locking: %s", rel)
    return entry


def lock_files(session: VaultSession, patterns: Sequence[str], password: bytes | bytearray | None) -> List[str]:
    """Track the files matched by `patterns`. Contents are sealed later by `finalize_lock`."""
    session.cancel.check()
    metadata, cipher = read_metadata(session, password)
    with cipher:
        tracked: List[FileEntry] = []
        for raw in expand_patterns(session, patterns):
            session.cancel.check()
            entry = _track_file(session, raw, metadata)
            if entry is not None:
                tracked.append(entry)

        try:
            with session.store.batch():
                for entry in tracked:
                    session.store.upsert_index_entry(entry.path, entry.size, entry.mod_time, entry.hash)
                save_metadata(session, metadata, cipher)
        except sqlite3.Error as e:
            raise VaultError.wrap("failed to update index", e)
    return [entry.path for entry in tracked]


# -- sealing -----------------------------------------------------------------

@dataclass
class _Prepared:
    path: str
    ciphertext: bytearray
    size: int
    mode: int
    mod_time: str
    hash: str


def _prepare_file(session: VaultSession, entry: FileEntry, cipher: Cipher) -> _Prepared | None:
    try:
        rel = session.guard.validate_existing(entry.path)
    except PathRejected as e:
        logger.error("invalid path in vault %s: %s", entry.path, e.reason)
        return None
    if is_container_file(rel):
        logger.warning("skipping %s: the vault cannot contain its own container", rel)
        return None

    try:
        info = session.guard.stat(rel)
        data = session.guard.read_file(rel)
    except OSError as e:
        logger.warning("cannot read %s: %s", rel, e.strerror or e)
        return None
    try:
        digest = sha256_hex(data)
        try:
            ciphertext = bytearray(cipher.encrypt(data))
        except (ValueError, OverflowError) as e:
            raise VaultError.wrap(f"failed to encrypt {rel}", e)
        return _Prepared(
            path=rel,
            ciphertext=ciphertext,
            size=len(data),
            mode=stat_mod.S_IMODE(info.st_mode),
            mod_time=rel_time_iso(info.st_mtime),
            hash=digest,
        )
    finally:
        clear_bytes(data)


def finalize_lock(session: VaultSession, password: bytes | bytearray | None, remove: bool = False) -> List[str]:
    """Encrypt every tracked file and commit the results in a single transaction.

    Nothing reaches the store unless every readable file encrypted cleanly.
    With `remove`, the plaintext originals are deleted after the commit.
    """
    session.cancel.check()
    metadata, cipher = read_metadata(session, password)
    prepared: List[_Prepared] = []
    with cipher:
        try:
            if not metadata.files:
                raise VaultError(ErrorKind.NO_TRACKED_FILES)

            for entry in metadata.entries():
                session.cancel.check()
                item = _prepare_file(session, entry, cipher)
                if item is not None:
                    prepared.append(item)
            if not prepared:
                raise VaultError(ErrorKind.OTHER, "no files could be processed")

            try:
                with session.store.batch():
                    for item in prepared:
                        session.cancel.check()
                        session.store.put_blob(item.path, item.ciphertext)
                        session.store.upsert_index_entry(item.path, item.size, item.mod_time, item.hash)
                        entry = metadata.find_file(item.path)
                        if entry is not None:
                            entry.size = item.size
                            entry.mode = item.mode
                            entry.mod_time = item.mod_time
                            entry.hash = item.hash
                    save_metadata(session, metadata, cipher)
            except sqlite3.Error as e:
                raise VaultError.wrap("failed to store encrypted files", e)
        finally:
            for item in prepared:
                clear_bytes(item.ciphertext)

    committed = [item.path for item in prepared]
    for path in committed:
        logger.info("encrypted: %s", path)

    if remove:
        for path in committed:
            try:
                session.guard.remove(path)
            except (OSError, PathRejected) as e:
                logger.warning("failed to remove %s: %s", path, e)
            else:
                logger.info("removed: %s", path)
    return committed


# -- inspection --------------------------------------------------------------

def get_changed_files(session: VaultSession, password: bytes | bytearray | None) -> ChangedFiles:
    metadata, cipher = read_metadata(session, password)
    cipher.destroy()

    result = ChangedFiles()
    for entry in metadata.entries():
        session.cancel.check()
        try:
            rel = session.guard.validate_existing(entry.path)
        except PathRejected as e:
            logger.error("invalid path in vault %s: %s", entry.path, e.reason)
            continue
        try:
            data = session.guard.read_file(rel)
        except FileNotFoundError:
            result.missing.append(rel)
            continue
        except OSError as e:
            logger.warning("cannot read %s: %s", rel, e.strerror or e)
            result.missing.append(rel)
            continue
        try:
            digest = sha256_hex(data)
        finally:
            clear_bytes(data)
        if digest == entry.hash:
            result.unchanged.append(rel)
        else:
            result.changed.append(rel)
    return result


def list_files(session: VaultSession) -> List[IndexEntry]:
    """Password-free listing from the public index."""
    entries = []
    for entry in session.store.list_index_entries():
        try:
            entry.path = session.guard.validate_existing(entry.path)
        except PathRejected:
            continue
        entries.append(entry)
    return entries


def _local_state(session: VaultSession, rel: str, expected_hash: str) -> str:
    try:
        data = session.guard.read_file(rel)
    except FileNotFoundError:
        return STATUS_VAULT_ONLY
    except OSError:
        return STATUS_ERROR
    try:
        digest = sha256_hex(data)
    finally:
        clear_bytes(data)
    return STATUS_UNCHANGED if digest == expected_hash else STATUS_MODIFIED


def status(session: VaultSession, git: GitCapability | None = None) -> StatusInfo:
    """Summarize the vault without a password, using the public index hashes."""
    store = session.store
    info = StatusInfo()
    try:
        info.last_modified = store.get_modified()
    except StoreNotFound:
        info.last_modified = None
    try:
        info.kdf, _, _ = store.get_kdf()
        info.kdf_iterations = store.get_iterations()
        info.version = store.get_version()
    except (StoreNotFound, ValueError):
        pass

    for entry in list_files(session):
        session.cancel.check()
        state = _local_state(session, entry.path, entry.hash)
        info.files.append(FileStatus(path=entry.path, status=state))
        info.tracked_count += 1
        info.total_size += entry.size
        if state == STATUS_UNCHANGED:
            info.unchanged_count += 1
        elif state == STATUS_MODIFIED:
            info.modified_count += 1
        elif state == STATUS_VAULT_ONLY:
            info.vault_only_count += 1
        else:
            info.error_count += 1

    if git is not None and git.is_repo(session.root):
        advice = GitAdvice(container_tracked=git.is_tracked(session.root, CONTAINER_NAME))
        for fs in info.files:
            if git.is_tracked(session.root, fs.path):
                advice.tracked_secrets.append(fs.path)
            else:
                advice.untracked_secrets.append(fs.path)
            if git.is_ignored(session.root, fs.path):
                advice.ignored_secrets.append(fs.path)
            else:
                advice.unignored_secrets.append(fs.path)
        info.git = advice
    return info


def diff(session: VaultSession, password: bytes | bytearray | None) -> List[FileDiff]:
    """Unified diffs (vault as a/, local as b/) for every file whose local copy differs."""
    metadata, cipher = read_metadata(session, password)
    diffs: List[FileDiff] = []
    with cipher:
        for entry in metadata.entries():
            session.cancel.check()
            try:
                rel = session.guard.validate_existing(entry.path)
            except PathRejected as e:
                logger.error("invalid path in vault %s: %s", entry.path, e.reason)
                continue

            vault_data = local_data = None
            try:
                try:
                    vault_data = cipher.decrypt(session.store.get_blob(entry.path))
                except StoreNotFound:
                    # tracked but never sealed
                    continue
                except CannotDecrypt:
                    diffs.append(FileDiff(rel, f"Cannot decrypt {rel}\n", DIFF_ERROR))
                    continue
                try:
                    local_data = session.guard.read_file(rel)
                except FileNotFoundError:
                    diffs.append(FileDiff(rel, f"File not in working directory: {rel}\n", DIFF_MISSING))
                    continue
                except OSError as e:
                    diffs.append(FileDiff(rel, f"Cannot read {rel}: {e.strerror or e}\n", DIFF_ERROR))
                    continue
                text = unified_diff(rel, vault_data, local_data)
                if text:
                    diffs.append(FileDiff(rel, text))
            finally:
                clear_bytes(vault_data)
                clear_bytes(local_data)
    return diffs


def get_vault_id(session: VaultSession) -> str:
    return session.store.get_vault_id()


def get_or_create_vault_id(session: VaultSession) -> str:
    try:
        return session.store.get_or_create_vault_id()
    except sqlite3.Error as e:
        raise VaultError.wrap("failed to read vault id", e)


# -- restoring ---------------------------------------------------------------

def filter_entries(entries: Sequence[FileEntry], patterns: Sequence[str]) -> List[FileEntry]:
    """Entries whose stored path equals, or glob-matches, one of `patterns`."""
    cleaned = []
    for pattern in patterns:
        p = pattern.replace(os.sep, "/")
        cleaned.append(posixpath.normpath(p) if p else p)
    selected = []
    for entry in entries:
        for pattern in cleaned:
            if entry.path == pattern or fnmatch.fnmatchcase(entry.path, pattern):
                selected.append(entry)
                break
    return selected


def _vault_copy_name(session: VaultSession, rel: str) -> str | None:
    candidate = f"{rel}.from-vault"
    if not session.guard.exists(candidate):
        return candidate
    for i in range(1, MAX_VAULT_COPIES):
        candidate = f"{rel}.from-vault.{i}"
        if not session.guard.exists(candidate):
            return candidate
    return None


def _write_restored(session: VaultSession, rel: str, data: bytes | bytearray, mode: int,
                    mtime: float | None = None) -> None:
    parent = posixpath.dirname(rel)
    if parent:
        session.guard.mkdir_all(parent)
    session.guard.write_file(rel, data, secure_file_mode(mode), mtime=mtime)


def _fail(result: UnlockResult, message: str) -> None:
    logger.error(message)
    result.errors.append(message)


def _unlock_one(session: VaultSession, entry: FileEntry, cipher: Cipher, strategy: MergeStrategy,
                prompter: Prompter | None, editor: Callable[[str], None], result: UnlockResult) -> None:
    vault_data = local_data = merged = None
    try:
        try:
            vault_data = cipher.decrypt(session.store.get_blob(entry.path))
        except StoreNotFound:
            _fail(result, f"{entry.path}: not found in vault")
            return
        except CannotDecrypt:
            _fail(result, f"{entry.path}: cannot decrypt")
            return

        if sha256_hex(vault_data) != entry.hash:
            _fail(result, f"{entry.path}: failed integrity check")
            return

        try:
            rel = session.guard.validate_existing(entry.path)
        except PathRejected as e:
            _fail(result, f"{entry.path}: invalid path in vault: {e.reason}")
            return

        mtime = iso_to_timestamp(entry.mod_time)
        try:
            local_data = session.guard.read_file(rel)
        except FileNotFoundError:
            local_data = None
        except OSError as e:
            _fail(result, f"{rel}: cannot read local file: {e.strerror or e}")
            return

        write_data = vault_data
        if local_data is not None:
            if contents_identical(local_data, vault_data):
                logger.info("unchanged: %s", rel)
                result.skipped.append(rel)
                return
            try:
                resolved = handle_conflict(rel, local_data, vault_data, strategy, prompter, editor=editor)
            except ConflictError as e:
                _fail(result, f"{rel}: {e}")
                return

            if resolved.resolution in (Resolution.KEEP_LOCAL, Resolution.SKIP):
                logger.info("kept local: %s", rel)
                result.skipped.append(rel)
                return
            if resolved.resolution is Resolution.KEEP_BOTH:
                try:
                    copy = _vault_copy_name(session, rel)
                    if copy is None:
                        _fail(result, f"{rel}: too many .from-vault copies")
                        return
                    _write_restored(session, copy, vault_data, entry.mode, mtime)
                except (OSError, PathRejected) as e:
                    _fail(result, f"{rel}: cannot write vault copy: {e}")
                    return
                logger.info("saved vault version as %s", copy)
                result.extracted.append(copy)
                result.skipped.append(rel)
                return
            if resolved.resolution is Resolution.EDIT_MERGED:
                merged = resolved.merged
                write_data = merged
                mtime = None

        try:
            _write_restored(session, rel, write_data, entry.mode, mtime)
        except (OSError, PathRejected) as e:
            _fail(result, f"{rel}: cannot write file: {e}")
            return
        logger.info("unlocked: %s", rel)
        result.extracted.append(rel)
    finally:
        clear_bytes(vault_data)
        clear_bytes(local_data)
        clear_bytes(merged)


def unlock(session: VaultSession, password: bytes | bytearray | None,
           strategy: MergeStrategy = MergeStrategy.ASK, patterns: Sequence[str] | None = None,
           prompter: Prompter | None = None,
           editor: Callable[[str], None] = invoke_editor) -> UnlockResult:
    """Decrypt tracked files back to disk, resolving conflicts with `strategy`.

    Per-file problems (integrity failures, rejected paths, unresolved
    conflicts) are collected in the result; processing continues.
    """
    session.cancel.check()
    metadata, cipher = read_metadata(session, password)
    with cipher:
        entries = metadata.entries()
        if patterns:
            entries = filter_entries(entries, patterns)
            if not entries:
                raise VaultError(ErrorKind.OTHER, "no files match the specified patterns")

        result = UnlockResult()
        for entry in entries:
            session.cancel.check()
            _unlock_one(session, entry, cipher, strategy, prompter, editor, result)
    return result
