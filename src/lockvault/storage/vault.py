"""Durable key/value storage for the vault container.

The container is a single SQLite file with four tables, one per namespace:

    config        unencrypted settings (format version, timestamps, KDF salt/params, vault id)
    public_index  unencrypted path -> size, mtime, content hash (password-free listing)
    blobs         path -> nonce || AES-256-GCM ciphertext || tag
    private       "checksum" (password check token) and "files" (encrypted metadata)

Every public method is one short transaction. The rollback journal is used
instead of WAL so no side files are left next to a container that lives in
version control.
"""
import logging
import os
import secrets
import sqlite3

from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List

from lockvault.utils.dataModels import FORMAT_VERSION, KDF_PBKDF2, IndexEntry
from lockvault.utils.helper import utc_now_iso

logger = logging.getLogger(__name__)

CONFIG_VERSION = "version"
CONFIG_CREATED = "created"
CONFIG_MODIFIED = "modified"
CONFIG_SALT = "salt"
CONFIG_ITERATIONS = "iterations"
CONFIG_KDF = "kdf"
CONFIG_MEMORY_KIB = "memory_kib"
CONFIG_PARALLELISM = "parallelism"
CONFIG_VAULT_ID = "vault_id"

COMPACT_SUFFIX = ".compact"
BACKUP_SUFFIX = ".backup"
JOURNAL_SUFFIX = "-journal"

_SCHEMA = (
    "CREATE TABLE IF NOT EXISTS config (key TEXT PRIMARY KEY, value BLOB)",
    """CREATE TABLE IF NOT EXISTS public_index (
        path TEXT PRIMARY KEY,
        size INTEGER NOT NULL,
        mod_time TEXT NOT NULL,
        hash TEXT NOT NULL
    )""",
    "CREATE TABLE IF NOT EXISTS blobs (path TEXT PRIMARY KEY, data BLOB NOT NULL)",
    "CREATE TABLE IF NOT EXISTS private (key TEXT PRIMARY KEY, data BLOB NOT NULL)",
)


class StoreNotFound(KeyError):
    """A requested key is absent from its namespace."""


def _sidecar(path: Path, suffix: str) -> Path:
    return path.with_name(path.name + suffix)


def recover(path: Path) -> None:
    """Repair the on-disk state left behind by an interrupted `compact()`.

    The original is only ever renamed to the backup name, and the backup is
    deleted only after the compacted copy is in place, so one of the two
    always survives.
    """
    backup = _sidecar(path, BACKUP_SUFFIX)
    tmp = _sidecar(path, COMPACT_SUFFIX)
    if backup.exists():
        if path.exists():
            logger.debug("removing stale compaction backup %s", backup)
            backup.unlink()
        else:
            logger.warning("restoring %s from interrupted compaction", path.name)
            os.replace(backup, path)
    if tmp.exists():
        logger.debug("removing leftover compaction file %s", tmp)
        tmp.unlink()


def _connect(path: Path) -> sqlite3.Connection:
    conn = sqlite3.connect(str(path), timeout=5.0)
    conn.execute("PRAGMA journal_mode=DELETE")
    conn.execute("PRAGMA synchronous=FULL")
    return conn


class VaultStore:
    def __init__(self, path: Path, conn: sqlite3.Connection) -> None:
        self.path = path
        self._conn: sqlite3.Connection | None = conn
        self._in_batch = False

    @classmethod
    def create(cls, path: Path) -> "VaultStore":
        """Create a brand-new container file. Raises FileExistsError if one is present."""
        recover(path)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        os.close(fd)
        return cls(path, _connect(path))

    @classmethod
    def open(cls, path: Path) -> "VaultStore":
        """Open an existing container. Raises FileNotFoundError if there is none."""
        recover(path)
        if not path.is_file():
            raise FileNotFoundError(str(path))
        return cls(path, _connect(path))

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> "VaultStore":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("store is closed")
        return self._conn

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Connection]:
        conn = self.conn
        if self._in_batch:
            yield conn
            return
        with conn:
            yield conn

    @contextmanager
    def batch(self) -> Iterator[None]:
        """Group several writes into one transaction: all commit together or none do."""
        if self._in_batch:
            yield
            return
        self._in_batch = True
        try:
            with self.conn:
                yield
        finally:
            self._in_batch = False

    # -- lifecycle -------------------------------------------------------

    def initialize(self) -> None:
        now = utc_now_iso()
        with self._tx() as conn:
            for stmt in _SCHEMA:
                conn.execute(stmt)
            conn.executemany(
                "INSERT OR REPLACE INTO config (key, value) VALUES (?, ?)",
                [
                    (CONFIG_VERSION, str(FORMAT_VERSION)),
                    (CONFIG_CREATED, now),
                    (CONFIG_MODIFIED, now),
                ],
            )

    def is_initialized(self) -> bool:
        try:
            row = self.conn.execute("SELECT value FROM config WHERE key = ?", (CONFIG_VERSION,)).fetchone()
        except sqlite3.DatabaseError:
            return False
        return row is not None

    # -- config ----------------------------------------------------------

    def _get_config(self, key: str):
        row = self.conn.execute("SELECT value FROM config WHERE key = ?", (key,)).fetchone()
        if row is None:
            raise StoreNotFound(key)
        return row[0]

    def _set_config(self, key: str, value) -> None:
        with self._tx() as conn:
            conn.execute("INSERT OR REPLACE INTO config (key, value) VALUES (?, ?)", (key, value))

    def set_salt(self, salt: bytes) -> None:
        self._set_config(CONFIG_SALT, bytes(salt))

    def get_salt(self) -> bytes:
        return bytes(self._get_config(CONFIG_SALT))

    def set_iterations(self, iterations: int) -> None:
        if iterations <= 0:
            raise ValueError("iterations must be positive")
        self._set_config(CONFIG_ITERATIONS, int(iterations))

    def get_iterations(self) -> int:
        return int(self._get_config(CONFIG_ITERATIONS))

    def set_kdf(self, name: str, salt: bytes, iterations: int, memory_kib: int = 0, parallelism: int = 0) -> None:
        """Persist all KDF settings in one transaction so they never disagree."""
        if iterations <= 0:
            raise ValueError("iterations must be positive")
        with self._tx() as conn:
            conn.executemany(
                "INSERT OR REPLACE INTO config (key, value) VALUES (?, ?)",
                [
                    (CONFIG_KDF, name),
                    (CONFIG_SALT, bytes(salt)),
                    (CONFIG_ITERATIONS, int(iterations)),
                    (CONFIG_MEMORY_KIB, int(memory_kib)),
                    (CONFIG_PARALLELISM, int(parallelism)),
                ],
            )

    def get_kdf(self) -> tuple[str, int, int]:
        """(name, memory_kib, parallelism). Containers without a KDF record use PBKDF2."""
        try:
            name = str(self._get_config(CONFIG_KDF))
        except StoreNotFound:
            return KDF_PBKDF2, 0, 0
        try:
            memory = int(self._get_config(CONFIG_MEMORY_KIB))
            parallelism = int(self._get_config(CONFIG_PARALLELISM))
        except StoreNotFound:
            memory, parallelism = 0, 0
        return name, memory, parallelism

    def get_version(self) -> int:
        return int(self._get_config(CONFIG_VERSION))

    def update_modified(self) -> None:
        self._set_config(CONFIG_MODIFIED, utc_now_iso())

    def get_modified(self) -> str:
        return str(self._get_config(CONFIG_MODIFIED))

    def get_created(self) -> str:
        return str(self._get_config(CONFIG_CREATED))

    def get_vault_id(self) -> str:
        return str(self._get_config(CONFIG_VAULT_ID))

    def get_or_create_vault_id(self) -> str:
        try:
            return self.get_vault_id()
        except StoreNotFound:
            pass
        vault_id = secrets.token_hex(16)
        with self._tx() as conn:
            # Another process may have won the race; keep whichever id landed first.
            conn.execute("INSERT OR IGNORE INTO config (key, value) VALUES (?, ?)", (CONFIG_VAULT_ID, vault_id))
        return self.get_vault_id()

    # -- public index ----------------------------------------------------

    def upsert_index_entry(self, path: str, size: int, mod_time: str, hash_hex: str) -> None:
        with self._tx() as conn:
            conn.execute(
                """
                INSERT INTO public_index (path, size, mod_time, hash) VALUES (?, ?, ?, ?)
                ON CONFLICT (path) DO UPDATE SET
                    size = excluded.size,
                    mod_time = excluded.mod_time,
                    hash = excluded.hash
                """,
                (path, int(size), mod_time, hash_hex),
            )

    def remove_index_entry(self, path: str) -> None:
        with self._tx() as conn:
            conn.execute("DELETE FROM public_index WHERE path = ?", (path,))

    def get_index_entry(self, path: str) -> IndexEntry | None:
        row = self.conn.execute(
            "SELECT path, size, mod_time, hash FROM public_index WHERE path = ?", (path,)
        ).fetchone()
        if row is None:
            return None
        return IndexEntry(path=row[0], size=row[1], mod_time=row[2], hash=row[3])

    def list_index_entries(self) -> List[IndexEntry]:
        rows = self.conn.execute("SELECT path, size, mod_time, hash FROM public_index ORDER BY path").fetchall()
        return [IndexEntry(path=r[0], size=r[1], mod_time=r[2], hash=r[3]) for r in rows]

    # -- encrypted blobs -------------------------------------------------

    def put_blob(self, path: str, ciphertext: bytes) -> None:
        with self._tx() as conn:
            conn.execute("INSERT OR REPLACE INTO blobs (path, data) VALUES (?, ?)", (path, bytes(ciphertext)))

    def get_blob(self, path: str) -> bytes:
        row = self.conn.execute("SELECT data FROM blobs WHERE path = ?", (path,)).fetchone()
        if row is None:
            raise StoreNotFound(path)
        # sqlite3 hands back a fresh bytes object, independent of the cursor
        return bytes(row[0])

    def delete_blob(self, path: str) -> None:
        with self._tx() as conn:
            conn.execute("DELETE FROM blobs WHERE path = ?", (path,))

    def blob_paths(self) -> List[str]:
        return [r[0] for r in self.conn.execute("SELECT path FROM blobs ORDER BY path").fetchall()]

    # -- encrypted private metadata --------------------------------------

    def put_private(self, key: str, ciphertext: bytes) -> None:
        with self._tx() as conn:
            conn.execute("INSERT OR REPLACE INTO private (key, data) VALUES (?, ?)", (key, bytes(ciphertext)))

    def get_private(self, key: str) -> bytes:
        row = self.conn.execute("SELECT data FROM private WHERE key = ?", (key,)).fetchone()
        if row is None:
            raise StoreNotFound(key)
        return bytes(row[0])

    # -- maintenance -----------------------------------------------------

    def compact(self) -> None:
        """Rewrite the container into a fresh file and swap it in place of the original."""
        src = self.path
        tmp = _sidecar(src, COMPACT_SUFFIX)
        backup = _sidecar(src, BACKUP_SUFFIX)
        if tmp.exists():
            tmp.unlink()

        try:
            self.conn.execute("VACUUM INTO ?", (str(tmp),))
        except sqlite3.Error:
            tmp.unlink(missing_ok=True)
            raise
        os.chmod(tmp, 0o600)

        self.close()
        try:
            os.replace(src, backup)
        except OSError:
            tmp.unlink(missing_ok=True)
            self._conn = _connect(src)
            raise
        try:
            os.replace(tmp, src)
        except OSError:
            os.replace(backup, src)
            self._conn = _connect(src)
            raise
        backup.unlink()
        self._conn = _connect(src)
        logger.debug("compacted %s", src)
