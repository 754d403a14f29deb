"""
Tests for removal, password rotation and compaction.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from lockvault.utils.core import VaultSession, finalize_lock, list_files, lock_files, read_metadata, unlock
from lockvault.utils.errors import ErrorKind, VaultError
from lockvault.utils.maintain import change_password, compact, remove_files
from lockvault.utils.merge import MergeStrategy


def _seal(root: Path, session: VaultSession, password: bytearray, files: dict, remove: bool = False) -> None:
    for name, content in files.items():
        (root / name).parent.mkdir(parents=True, exist_ok=True)
        (root / name).write_bytes(content)
    lock_files(session, list(files), password)
    finalize_lock(session, password, remove=remove)


def _tracked(session: VaultSession, password: bytearray) -> list:
    metadata, cipher = read_metadata(session, password)
    cipher.destroy()
    return metadata.tracked_paths()


def test_remove_with_mixed_path_forms(vault_root: Path, session: VaultSession, password: bytearray) -> None:
    _seal(vault_root, session, password, {"a.txt": b"a", "b.txt": b"b", "c.txt": b"c"})

    assert remove_files(session, [str(vault_root / "a.txt")], password) == 1
    assert remove_files(session, ["./b.txt"], password) == 1
    assert remove_files(session, ["c.txt"], password) == 1

    assert _tracked(session, password) == []
    assert list_files(session) == []
    assert session.store.blob_paths() == []


def test_remove_without_match_is_soft(vault_root: Path, session: VaultSession, password: bytearray) -> None:
    _seal(vault_root, session, password, {"a.txt": b"a"})
    assert remove_files(session, ["nope.txt", "../escape.txt"], password) == 0
    assert _tracked(session, password) == ["a.txt"]


def test_remove_glob_matches_files_no_longer_on_disk(vault_root: Path, session: VaultSession,
                                                     password: bytearray) -> None:
    _seal(vault_root, session, password, {"a.env": b"a", "b.env": b"b", "keep.txt": b"k"}, remove=True)
    assert remove_files(session, ["*.env"], password) == 2
    assert _tracked(session, password) == ["keep.txt"]


def test_remove_needs_right_password(vault_root: Path, session: VaultSession, password: bytearray) -> None:
    _seal(vault_root, session, password, {"a.txt": b"a"})
    with pytest.raises(VaultError) as exc:
        remove_files(session, ["a.txt"], bytearray(b"wrong"))
    assert exc.value.kind is ErrorKind.WRONG_PASSWORD
    assert _tracked(session, password) == ["a.txt"]


def test_change_password(vault_root: Path, session: VaultSession, password: bytearray) -> None:
    _seal(vault_root, session, password, {"a.txt": b"hello", "dir/b.env": b"B=1"}, remove=True)
    old_salt = session.store.get_salt()
    new = bytearray(b"a brand new password")

    change_password(session, password, new)

    assert session.store.get_salt() != old_salt
    assert session.store.get_iterations() == 1000
    with pytest.raises(VaultError) as exc:
        unlock(session, password, MergeStrategy.USE_VAULT)
    assert exc.value.kind is ErrorKind.WRONG_PASSWORD

    result = unlock(session, new, MergeStrategy.USE_VAULT)
    assert sorted(result.extracted) == ["a.txt", "dir/b.env"]
    assert (vault_root / "a.txt").read_bytes() == b"hello"
    assert (vault_root / "dir" / "b.env").read_bytes() == b"B=1"


def test_change_password_can_raise_iterations(vault_root: Path, session: VaultSession, password: bytearray) -> None:
    _seal(vault_root, session, password, {"a.txt": b"x"})
    change_password(session, password, bytearray(b"next"), iterations=2000)
    assert session.store.get_iterations() == 2000
    assert _tracked(session, bytearray(b"next")) == ["a.txt"]


def test_change_password_with_wrong_old_password(vault_root: Path, session: VaultSession,
                                                 password: bytearray) -> None:
    _seal(vault_root, session, password, {"a.txt": b"x"})
    salt = session.store.get_salt()
    with pytest.raises(VaultError) as exc:
        change_password(session, bytearray(b"wrong"), bytearray(b"next"))
    assert exc.value.kind is ErrorKind.WRONG_PASSWORD
    assert session.store.get_salt() == salt


def test_change_password_fails_on_undecryptable_blob(vault_root: Path, session: VaultSession,
                                                     password: bytearray) -> None:
    _seal(vault_root, session, password, {"a.txt": b"x"})
    session.store.put_blob("a.txt", b"\x00" * 40)
    salt = session.store.get_salt()
    with pytest.raises(VaultError) as exc:
        change_password(session, password, bytearray(b"next"))
    assert exc.value.kind is ErrorKind.OTHER
    assert session.store.get_salt() == salt
    assert _tracked(session, password) == ["a.txt"]


def test_compact_after_remove(vault_root: Path, session: VaultSession, password: bytearray) -> None:
    files = {f"f{i}.bin": bytes([i]) * 8192 for i in range(20)}
    files["keep.txt"] = b"keep me"
    _seal(vault_root, session, password, files, remove=True)
    remove_files(session, [f"f{i}.bin" for i in range(20)], password)

    container = vault_root / ".lockvault"
    before = container.stat().st_size
    compact(session)
    assert container.stat().st_size < before

    result = unlock(session, password, MergeStrategy.USE_VAULT)
    assert result.extracted == ["keep.txt"]
    assert (vault_root / "keep.txt").read_bytes() == b"keep me"
