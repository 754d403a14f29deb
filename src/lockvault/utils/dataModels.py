import json

from dataclasses import dataclass, field
from typing import Any, Dict, List

from lockvault.utils.helper import utc_now_iso

CONTAINER_NAME = ".lockvault"
FORMAT_VERSION = 1

KDF_PBKDF2 = "pbkdf2-sha256"
KDF_ARGON2ID = "argon2id"
DEFAULT_ITERATIONS = 210000  # PBKDF2-HMAC-SHA256
DEFAULT_ARGON2_TIME_COST = 4
DEFAULT_ARGON2_MEMORY_KIB = 65536  # 64 MiB
DEFAULT_ARGON2_PARALLELISM = 2

SALT_SIZE = 32
KEY_SIZE = 32  # AES-256
NONCE_SIZE = 12
TAG_SIZE = 16

DIR_PERM_SECURE = 0o700
FILE_PERM_SECURE = 0o600
MAX_VAULT_COPIES = 100  # .from-vault, .from-vault.1 .. .from-vault.99

PASSWORD_CHECK_STRING = "lockvault-password-check"
PRIVATE_CHECKSUM_KEY = "checksum"
PRIVATE_FILES_KEY = "files"


def secure_file_mode(mode: int) -> int:
    """Keep only owner bits; restore rwx when owner-execute was recorded, else rw."""
    if mode & 0o100:
        return 0o700
    return FILE_PERM_SECURE


@dataclass
class FileEntry:
    path: str
    size: int
    mode: int
    mod_time: str
    hash: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "size": self.size,
            "mode": self.mode,
            "modTime": self.mod_time,
            "hash": self.hash,
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "FileEntry":
        return FileEntry(
            path=str(d["path"]),
            size=max(int(d.get("size", 0)), 0),
            mode=int(d.get("mode", 0)),
            mod_time=str(d.get("modTime", "")),
            hash=str(d.get("hash", "")),
        )


@dataclass
class IndexEntry:
    """Row of the unencrypted public index."""
    path: str
    size: int
    mod_time: str
    hash: str


@dataclass
class VaultMetadata:
    """Decrypted private metadata: tracked files keyed by normalized path, in insertion order."""
    version: int = FORMAT_VERSION
    created: str = field(default_factory=utc_now_iso)
    modified: str = field(default_factory=utc_now_iso)
    files: Dict[str, FileEntry] = field(default_factory=dict)

    def add_file(self, entry: FileEntry) -> None:
        if entry.size < 0:
            entry.size = 0
        self.files[entry.path] = entry
        self.modified = utc_now_iso()

    def remove_file(self, path: str) -> bool:
        if self.files.pop(path, None) is None:
            return False
        self.modified = utc_now_iso()
        return True

    def find_file(self, path: str) -> FileEntry | None:
        return self.files.get(path)

    def tracked_paths(self) -> List[str]:
        return list(self.files)

    def entries(self) -> List[FileEntry]:
        return list(self.files.values())

    def to_bytes(self) -> bytearray:
        payload = {
            "version": self.version,
            "created": self.created,
            "modified": self.modified,
            "files": [f.to_dict() for f in self.files.values()],
        }
        return bytearray(json.dumps(payload, ensure_ascii=False, separators=(",", ":")).encode("utf-8"))

    @staticmethod
    def from_bytes(b: bytes | bytearray) -> "VaultMetadata":
        obj = json.loads(bytes(b).decode("utf-8"))
        meta = VaultMetadata(
            version=int(obj.get("version", FORMAT_VERSION)),
            created=obj.get("created") or utc_now_iso(),
            modified=obj.get("modified") or utc_now_iso(),
        )
        for raw in obj.get("files") or []:
            entry = FileEntry.from_dict(raw)
            meta.files[entry.path] = entry
        return meta


@dataclass
class UnlockResult:
    extracted: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


@dataclass
class ChangedFiles:
    changed: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.changed) + len(self.unchanged) + len(self.missing)


STATUS_UNCHANGED = "unchanged"
STATUS_MODIFIED = "modified"
STATUS_VAULT_ONLY = "vault only"
STATUS_ERROR = "error"


@dataclass
class FileStatus:
    path: str
    status: str


@dataclass
class GitAdvice:
    container_tracked: bool = False
    tracked_secrets: List[str] = field(default_factory=list)
    untracked_secrets: List[str] = field(default_factory=list)
    ignored_secrets: List[str] = field(default_factory=list)
    unignored_secrets: List[str] = field(default_factory=list)


@dataclass
class StatusInfo:
    files: List[FileStatus] = field(default_factory=list)
    last_modified: str | None = None
    tracked_count: int = 0
    vault_only_count: int = 0
    modified_count: int = 0
    unchanged_count: int = 0
    error_count: int = 0
    total_size: int = 0
    algorithm: str = "AES-256-GCM"
    kdf: str = KDF_PBKDF2
    kdf_iterations: int = 0
    version: int = FORMAT_VERSION
    git: GitAdvice | None = None


DIFF_MODIFIED = "modified"
DIFF_MISSING = "missing"
DIFF_ERROR = "error"


@dataclass
class FileDiff:
    """One entry of a diff run: unified diff text, or a note for missing and unreadable files."""
    path: str
    text: str
    status: str = DIFF_MODIFIED
