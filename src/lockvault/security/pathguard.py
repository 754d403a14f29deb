"""Path traversal protection for every file the vault touches.

Paths come from two untrusted places: command line arguments and the
container itself (which may have been edited by hand). Both are run through
`validate_and_normalize` before use, and every disk operation re-validates
and then walks the path one component at a time from a directory handle on
the repository root with symlinks refused, so a path that slips past the
lexical check still cannot leave the root.
"""
from __future__ import annotations

import logging
import ntpath
import os
import posixpath
import stat as stat_mod
import time

from contextlib import contextmanager
from typing import Iterator, List

from lockvault.utils.dataModels import DIR_PERM_SECURE, FILE_PERM_SECURE

logger = logging.getLogger(__name__)

_WINDOWS_RESERVED = frozenset(
    ["CON", "PRN", "AUX", "NUL", "CONIN$", "CONOUT$"]
    + [f"COM{i}" for i in range(1, 10)]
    + [f"LPT{i}" for i in range(1, 10)]
)


class PathRejected(ValueError):
    """Raised when a path is empty, absolute, escapes the root or is otherwise unusable."""

    def __init__(self, reason: str, path: str | None) -> None:
        self.reason = reason
        self.path = path
        super().__init__(f"{reason}: {path!r}")


def _supports_confined_io() -> bool:
    return (
        os.open in os.supports_dir_fd
        and os.mkdir in os.supports_dir_fd
        and os.stat in os.supports_dir_fd
        and os.unlink in os.supports_dir_fd
        and hasattr(os, "O_NOFOLLOW")
        and hasattr(os, "O_DIRECTORY")
    )


def _read_all(fd: int) -> bytearray:
    info = os.fstat(fd)
    if stat_mod.S_ISDIR(info.st_mode):
        raise IsADirectoryError("is a directory")
    if not stat_mod.S_ISREG(info.st_mode):
        raise OSError("not a regular file")
    with os.fdopen(fd, "rb", closefd=False) as fh:
        buf = bytearray(info.st_size)
        n = fh.readinto(buf)
        if n < len(buf):
            del buf[n:]
        rest = fh.read()
        if rest:
            buf += rest
    return buf


def _write_all(fd: int, data: bytes | bytearray) -> None:
    view = memoryview(data)
    while view:
        written = os.write(fd, view)
        view = view[written:]


class PathGuard:
    def __init__(self, root: str | os.PathLike) -> None:
        self.root = os.path.abspath(os.fspath(root))
        self._confined = _supports_confined_io()

    # -- validation ------------------------------------------------------

    def validate_and_normalize(self, raw: str) -> str:
        """Return the canonical forward-slash relative form of `raw` or raise PathRejected."""
        if raw is None or raw == "":
            raise PathRejected("empty path not allowed", raw)
        if "\x00" in raw:
            raise PathRejected("path contains a NUL byte", raw)

        candidate = raw.replace(os.sep, "/")
        if os.altsep:
            candidate = candidate.replace(os.altsep, "/")

        if os.path.isabs(raw) or candidate.startswith("/"):
            raise PathRejected("absolute paths are not allowed", raw)
        if os.name == "nt" and ntpath.splitdrive(raw)[0]:
            raise PathRejected("absolute paths are not allowed", raw)

        cleaned = posixpath.normpath(candidate)
        if cleaned == ".." or cleaned.startswith("../"):
            raise PathRejected("path escapes repository", raw)
        if cleaned == ".":
            raise PathRejected("path refers to the repository root", raw)

        if os.name == "nt":
            for part in cleaned.split("/"):
                stem = part.split(".", 1)[0].rstrip(" ").upper()
                if stem in _WINDOWS_RESERVED:
                    raise PathRejected("reserved device name", raw)

        joined = os.path.normpath(os.path.join(self.root, *cleaned.split("/")))
        try:
            rel = os.path.relpath(joined, self.root)
        except ValueError:
            raise PathRejected("path escapes repository", raw) from None
        if rel == os.pardir or rel.startswith(os.pardir + os.sep) or os.path.isabs(rel):
            raise PathRejected("path escapes repository", raw)

        return rel.replace(os.sep, "/")

    def validate_existing(self, stored: str) -> str:
        """Re-check a path read back from the container before it is used on disk."""
        return self.validate_and_normalize(stored)

    def normalize_to_relative(self, path: str) -> str:
        """Turn an absolute path under the root into a root-relative one; relative paths pass through."""
        if not os.path.isabs(path):
            return path
        for base, target in (
            (self.root, os.path.abspath(path)),
            (os.path.realpath(self.root), os.path.realpath(path)),
        ):
            try:
                rel = os.path.relpath(target, base)
            except ValueError:
                continue
            if rel != os.pardir and not rel.startswith(os.pardir + os.sep):
                return rel
        raise PathRejected("path is outside repository", path)

    def _parts(self, rel: str) -> List[str]:
        return self.validate_and_normalize(rel).split("/")

    # -- confined primitives ---------------------------------------------

    @contextmanager
    def _walk(self, parts: List[str], create: bool = False, mode: int = DIR_PERM_SECURE) -> Iterator[int]:
        """Yield a directory fd for root/parts..., refusing symlinks along the way."""
        fd = os.open(self.root, os.O_RDONLY | os.O_DIRECTORY)
        try:
            for comp in parts:
                if create:
                    try:
                        os.mkdir(comp, mode, dir_fd=fd)
                    except FileExistsError:
                        pass
                nfd = os.open(comp, os.O_RDONLY | os.O_DIRECTORY | os.O_NOFOLLOW, dir_fd=fd)
                os.close(fd)
                fd = nfd
            yield fd
        finally:
            os.close(fd)

    def _checked_path(self, parts: List[str]) -> str:
        """Fallback containment check for platforms without dir_fd support."""
        path = os.path.join(self.root, *parts)
        real_root = os.path.realpath(self.root)
        real = os.path.realpath(path)
        try:
            inside = os.path.commonpath([real_root, real]) == real_root
        except ValueError:
            inside = False
        if not inside:
            raise PathRejected("path escapes repository", "/".join(parts))
        return path

    # -- operations ------------------------------------------------------

    def read_file(self, rel: str) -> bytearray:
        parts = self._parts(rel)
        if self._confined:
            with self._walk(parts[:-1]) as dfd:
                fd = os.open(parts[-1], os.O_RDONLY | os.O_NOFOLLOW, dir_fd=dfd)
                try:
                    return _read_all(fd)
                finally:
                    os.close(fd)
        path = self._checked_path(parts)
        with open(path, "rb") as fh:
            return bytearray(fh.read())

    def write_file(self, rel: str, data: bytes | bytearray, mode: int = FILE_PERM_SECURE,
                   mtime: float | None = None) -> None:
        """Write `data`, forcing `mode` even when the file already existed with looser bits."""
        parts = self._parts(rel)
        if self._confined:
            with self._walk(parts[:-1]) as dfd:
                fd = os.open(
                    parts[-1],
                    os.O_WRONLY | os.O_CREAT | os.O_TRUNC | os.O_NOFOLLOW,
                    mode,
                    dir_fd=dfd,
                )
                try:
                    os.fchmod(fd, mode)
                    _write_all(fd, data)
                    if mtime is not None and os.utime in os.supports_fd:
                        os.utime(fd, (time.time(), mtime))
                finally:
                    os.close(fd)
            return
        path = self._checked_path(parts)
        with open(path, "wb") as fh:
            fh.write(data)
        os.chmod(path, mode)
        if mtime is not None:
            os.utime(path, (time.time(), mtime))

    def mkdir_all(self, rel: str, mode: int = DIR_PERM_SECURE) -> None:
        parts = self._parts(rel)
        if self._confined:
            with self._walk(parts, create=True, mode=mode):
                return
        path = self._checked_path(parts)
        os.makedirs(path, mode, exist_ok=True)

    def stat(self, rel: str) -> os.stat_result:
        parts = self._parts(rel)
        if self._confined:
            with self._walk(parts[:-1]) as dfd:
                return os.stat(parts[-1], dir_fd=dfd, follow_symlinks=False)
        return os.lstat(self._checked_path(parts))

    def exists(self, rel: str) -> bool:
        try:
            self.stat(rel)
        except (FileNotFoundError, NotADirectoryError):
            return False
        return True

    def remove(self, rel: str) -> None:
        parts = self._parts(rel)
        if self._confined:
            with self._walk(parts[:-1]) as dfd:
                os.unlink(parts[-1], dir_fd=dfd)
            return
        os.unlink(self._checked_path(parts))
