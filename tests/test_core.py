"""
Tests for the vault engine: tracking, sealing, restoring and inspection.
"""

from __future__ import annotations

import os
import stat

from pathlib import Path

import pytest

from lockvault.crypto.aead import Cipher
from lockvault.crypto.hash import sha256_hex
from lockvault.utils.core import (
    VaultSession,
    diff,
    finalize_lock,
    get_changed_files,
    init_vault,
    list_files,
    lock_files,
    open_vault,
    read_metadata,
    save_metadata,
    status,
    unlock,
    verify_password,
)
from lockvault.utils.dataModels import (
    DIFF_MISSING,
    STATUS_MODIFIED,
    STATUS_UNCHANGED,
    STATUS_VAULT_ONLY,
    FileEntry,
)
from lockvault.utils.errors import ErrorKind, OperationCancelled, VaultError
from lockvault.utils.merge import MergeStrategy

from conftest import PASSWORD, TEST_ITERATIONS


def _write(root: Path, rel: str, content: bytes, mode: int = 0o644) -> Path:
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    os.chmod(path, mode)
    return path


def _seal(session: VaultSession, password: bytearray, *files: str, remove: bool = False) -> None:
    lock_files(session, list(files), password)
    finalize_lock(session, password, remove=remove)


def _mode(path: Path) -> int:
    return stat.S_IMODE(os.stat(path).st_mode)


# -- init / open ---------------------------------------------------------------

def test_init_twice_is_already_exists(vault_root: Path) -> None:
    with pytest.raises(VaultError) as exc:
        init_vault(vault_root, bytearray(PASSWORD), iterations=TEST_ITERATIONS)
    assert exc.value.kind is ErrorKind.ALREADY_EXISTS


def test_init_requires_password(tmp_path: Path) -> None:
    with pytest.raises(VaultError) as exc:
        init_vault(tmp_path, None)
    assert exc.value.kind is ErrorKind.PASSWORD_REQUIRED
    assert not (tmp_path / ".lockvault").exists()


def test_open_without_container_is_not_initialized(tmp_path: Path) -> None:
    with pytest.raises(VaultError) as exc:
        with open_vault(tmp_path):
            pass
    assert exc.value.kind is ErrorKind.NOT_INITIALIZED


def test_new_vault_is_empty(session: VaultSession, password: bytearray) -> None:
    verify_password(session, password)
    metadata, cipher = read_metadata(session, password)
    cipher.destroy()
    assert metadata.files == {}
    assert list_files(session) == []


def test_argon2id_vault(tmp_path: Path) -> None:
    init_vault(tmp_path, bytearray(b"pw"), kdf="argon2id", iterations=1, memory_kib=1024, parallelism=1)
    _write(tmp_path, "a.txt", b"argon")
    with open_vault(tmp_path) as s:
        _seal(s, bytearray(b"pw"), "a.txt", remove=True)
        assert unlock(s, bytearray(b"pw"), MergeStrategy.USE_VAULT).extracted == ["a.txt"]
    assert (tmp_path / "a.txt").read_bytes() == b"argon"


# -- password handling -----------------------------------------------------------

def test_missing_password(session: VaultSession) -> None:
    with pytest.raises(VaultError) as exc:
        unlock(session, None)
    assert exc.value.kind is ErrorKind.PASSWORD_REQUIRED


def test_wrong_password_fails_without_mutation(vault_root: Path, session: VaultSession, password: bytearray) -> None:
    _write(vault_root, "a.txt", b"hello")
    _seal(session, password, "a.txt")
    _write(vault_root, "b.txt", b"new")
    container = vault_root / ".lockvault"
    before = container.read_bytes()

    wrong = bytearray(b"not the password")
    for op in (
        lambda: lock_files(session, ["b.txt"], wrong),
        lambda: finalize_lock(session, wrong),
        lambda: unlock(session, wrong, MergeStrategy.USE_VAULT),
        lambda: get_changed_files(session, wrong),
        lambda: diff(session, wrong),
        lambda: verify_password(session, wrong),
    ):
        with pytest.raises(VaultError) as exc:
            op()
        assert exc.value.kind is ErrorKind.WRONG_PASSWORD

    assert container.read_bytes() == before
    assert [e.path for e in list_files(session)] == ["a.txt"]


# -- lock ------------------------------------------------------------------------

def test_lock_then_unlock_round_trip(vault_root: Path, session: VaultSession, password: bytearray) -> None:
    _write(vault_root, "a.txt", b"hello", 0o644)
    _write(vault_root, "bin/run.sh", b"#!/bin/sh\necho hi\n", 0o755)
    _seal(session, password, "a.txt", "bin/run.sh", remove=True)
    assert not (vault_root / "a.txt").exists()
    assert not (vault_root / "bin" / "run.sh").exists()

    result = unlock(session, password, MergeStrategy.USE_VAULT)
    assert sorted(result.extracted) == ["a.txt", "bin/run.sh"]
    assert result.errors == []
    assert (vault_root / "a.txt").read_bytes() == b"hello"
    assert _mode(vault_root / "a.txt") == 0o600
    assert (vault_root / "bin" / "run.sh").read_bytes() == b"#!/bin/sh\necho hi\n"
    assert _mode(vault_root / "bin" / "run.sh") == 0o700


def test_example_lock_remove_and_restore(vault_root: Path, session: VaultSession, password: bytearray) -> None:
    _write(vault_root, "a.txt", b"hello")
    _seal(session, password, "a.txt", remove=True)
    assert not (vault_root / "a.txt").exists()
    metadata, cipher = read_metadata(session, password)
    cipher.destroy()
    assert metadata.tracked_paths() == ["a.txt"]

    result = unlock(session, password, MergeStrategy.USE_VAULT)
    assert result.extracted == ["a.txt"]
    assert (vault_root / "a.txt").read_bytes() == b"hello"
    assert _mode(vault_root / "a.txt") == 0o600


def test_restored_file_gets_recorded_mtime(vault_root: Path, session: VaultSession, password: bytearray) -> None:
    path = _write(vault_root, "a.txt", b"hello")
    os.utime(path, (1_500_000_000, 1_500_000_000))
    _seal(session, password, "a.txt", remove=True)
    unlock(session, password, MergeStrategy.USE_VAULT)
    assert int(os.stat(path).st_mtime) == 1_500_000_000


def test_lock_expands_globs_relative_to_root(vault_root: Path, session: VaultSession, password: bytearray,
                                             monkeypatch) -> None:
    _write(vault_root, "app.env", b"A=1")
    _write(vault_root, "db.env", b"B=2")
    _write(vault_root, "notes.txt", b"n")
    monkeypatch.chdir(vault_root.parent)
    tracked = lock_files(session, ["*.env"], password)
    assert sorted(tracked) == ["app.env", "db.env"]
    index = {e.path: e for e in list_files(session)}
    assert set(index) == {"app.env", "db.env"}
    assert index["app.env"].hash == sha256_hex(b"A=1")


def test_lock_skips_directories_missing_files_and_escapes(vault_root: Path, session: VaultSession,
                                                          password: bytearray) -> None:
    (vault_root / "somedir").mkdir()
    outside = vault_root.parent / "outside-secret.txt"
    outside.write_bytes(b"do not track")
    _write(vault_root, "ok.txt", b"ok")

    tracked = lock_files(session, ["somedir", "missing.txt", "../outside-secret.txt", str(outside), "ok.txt"],
                         password)
    assert tracked == ["ok.txt"]
    metadata, cipher = read_metadata(session, password)
    cipher.destroy()
    assert metadata.tracked_paths() == ["ok.txt"]


def test_lock_accepts_absolute_path_inside_root(vault_root: Path, session: VaultSession, password: bytearray) -> None:
    _write(vault_root, "conf/app.env", b"X=1")
    assert lock_files(session, [str(vault_root / "conf" / "app.env")], password) == ["conf/app.env"]


def test_lock_never_tracks_the_container(vault_root: Path, session: VaultSession, password: bytearray) -> None:
    _write(vault_root, "a.txt", b"a")
    _write(vault_root, ".lockvault.backup", b"stale")

    assert lock_files(session, [".lockvault", "./.lockvault", str(vault_root / ".lockvault")], password) == []
    assert lock_files(session, ["*", ".lockvault*"], password) == ["a.txt"]
    assert finalize_lock(session, password, remove=True) == ["a.txt"]

    assert (vault_root / ".lockvault").is_file()
    assert (vault_root / ".lockvault.backup").is_file()
    assert session.store.blob_paths() == ["a.txt"]
    assert [e.path for e in list_files(session)] == ["a.txt"]


def test_lock_globs_match_dot_files(vault_root: Path, session: VaultSession, password: bytearray) -> None:
    _write(vault_root, ".env", b"SECRET=1")
    _write(vault_root, "app.env", b"A=1")

    assert sorted(lock_files(session, ["*"], password)) == [".env", "app.env"]
    assert sorted(lock_files(session, ["*.env"], password)) == [".env", "app.env"]
    finalize_lock(session, password, remove=True)

    result = unlock(session, password, MergeStrategy.USE_VAULT, patterns=["*.env"])
    assert sorted(result.extracted) == [".env", "app.env"]


def test_finalize_encryption_failure_leaves_store_untouched(vault_root: Path, session: VaultSession,
                                                            password: bytearray, monkeypatch) -> None:
    _write(vault_root, "a.txt", b"a")
    _write(vault_root, "b.txt", b"b")
    _seal(session, password, "a.txt", "b.txt")
    _write(vault_root, "a.txt", b"a, edited")
    _write(vault_root, "b.txt", b"b, edited")

    blobs = {p: session.store.get_blob(p) for p in session.store.blob_paths()}
    index = list_files(session)
    metadata, cipher = read_metadata(session, password)
    cipher.destroy()
    hashes = {e.path: e.hash for e in metadata.entries()}

    real_encrypt = Cipher.encrypt
    calls = []

    def flaky_encrypt(self, plaintext):
        calls.append(1)
        if len(calls) == 2:
            raise ValueError("simulated encryption failure")
        return real_encrypt(self, plaintext)

    monkeypatch.setattr(Cipher, "encrypt", flaky_encrypt)
    with pytest.raises(VaultError) as exc:
        finalize_lock(session, password, remove=True)
    assert exc.value.kind is ErrorKind.OTHER
    monkeypatch.undo()

    assert {p: session.store.get_blob(p) for p in session.store.blob_paths()} == blobs
    assert list_files(session) == index
    metadata, cipher = read_metadata(session, password)
    cipher.destroy()
    assert {e.path: e.hash for e in metadata.entries()} == hashes
    assert (vault_root / "a.txt").read_bytes() == b"a, edited"
    assert (vault_root / "b.txt").read_bytes() == b"b, edited"


def test_finalize_with_nothing_tracked(session: VaultSession, password: bytearray) -> None:
    with pytest.raises(VaultError) as exc:
        finalize_lock(session, password)
    assert exc.value.kind is ErrorKind.NO_TRACKED_FILES


def test_finalize_when_every_file_is_unreadable(vault_root: Path, session: VaultSession,
                                                password: bytearray) -> None:
    _write(vault_root, "a.txt", b"x")
    lock_files(session, ["a.txt"], password)
    (vault_root / "a.txt").unlink()
    with pytest.raises(VaultError) as exc:
        finalize_lock(session, password)
    assert exc.value.kind is ErrorKind.OTHER
    assert session.store.blob_paths() == []


def test_finalize_skips_unreadable_file_and_commits_the_rest(vault_root: Path, session: VaultSession,
                                                             password: bytearray) -> None:
    _write(vault_root, "a.txt", b"a")
    _write(vault_root, "b.txt", b"b")
    lock_files(session, ["a.txt", "b.txt"], password)
    (vault_root / "a.txt").unlink()
    assert finalize_lock(session, password) == ["b.txt"]
    assert session.store.blob_paths() == ["b.txt"]


def test_cancelled_operation_stops(vault_root: Path, session: VaultSession, password: bytearray) -> None:
    _write(vault_root, "a.txt", b"a")
    session.cancel.cancel()
    with pytest.raises(OperationCancelled):
        lock_files(session, ["a.txt"], password)
    assert list_files(session) == []


# -- change detection ----------------------------------------------------------

def test_get_changed_files(vault_root: Path, session: VaultSession, password: bytearray) -> None:
    for name in ("same.txt", "edit.txt", "gone.txt"):
        _write(vault_root, name, name.encode())
    _seal(session, password, "same.txt", "edit.txt", "gone.txt")
    _write(vault_root, "edit.txt", b"changed")
    (vault_root / "gone.txt").unlink()

    changes = get_changed_files(session, password)
    assert changes.changed == ["edit.txt"]
    assert changes.unchanged == ["same.txt"]
    assert changes.missing == ["gone.txt"]
    assert changes.total == 3


def test_status_without_password(vault_root: Path, session: VaultSession, password: bytearray) -> None:
    for name in ("same.txt", "edit.txt", "gone.txt"):
        _write(vault_root, name, b"12345")
    _seal(session, password, "same.txt", "edit.txt", "gone.txt")
    _write(vault_root, "edit.txt", b"changed")
    (vault_root / "gone.txt").unlink()

    info = status(session)
    states = {fs.path: fs.status for fs in info.files}
    assert states == {"same.txt": STATUS_UNCHANGED, "edit.txt": STATUS_MODIFIED, "gone.txt": STATUS_VAULT_ONLY}
    assert (info.tracked_count, info.unchanged_count, info.modified_count, info.vault_only_count) == (3, 1, 1, 1)
    assert info.total_size == 15
    assert info.kdf_iterations == TEST_ITERATIONS
    assert info.last_modified
    assert info.git is None


class FakeGit:
    def __init__(self, tracked=(), ignored=()) -> None:
        self.tracked = set(tracked)
        self.ignored = set(ignored)

    def is_repo(self, workdir: str) -> bool:
        return True

    def is_tracked(self, workdir: str, path: str) -> bool:
        return path in self.tracked

    def is_ignored(self, workdir: str, path: str) -> bool:
        return path in self.ignored


def test_status_git_advice(vault_root: Path, session: VaultSession, password: bytearray) -> None:
    _write(vault_root, "a.env", b"a")
    _write(vault_root, "b.env", b"b")
    _seal(session, password, "a.env", "b.env")

    info = status(session, git=FakeGit(tracked={".lockvault", "a.env"}, ignored={"b.env"}))
    assert info.git.container_tracked
    assert info.git.tracked_secrets == ["a.env"]
    assert info.git.untracked_secrets == ["b.env"]
    assert info.git.ignored_secrets == ["b.env"]
    assert info.git.unignored_secrets == ["a.env"]


def test_diff(vault_root: Path, session: VaultSession, password: bytearray) -> None:
    _write(vault_root, "app.env", b"A=1\nB=2\n")
    _write(vault_root, "same.env", b"S=1\n")
    _write(vault_root, "gone.env", b"G=1\n")
    _seal(session, password, "app.env", "same.env", "gone.env")
    _write(vault_root, "app.env", b"A=1\nB=3\n")
    (vault_root / "gone.env").unlink()

    diffs = {d.path: d for d in diff(session, password)}
    assert set(diffs) == {"app.env", "gone.env"}
    assert "-B=2" in diffs["app.env"].text
    assert "+B=3" in diffs["app.env"].text
    assert diffs["gone.env"].status == DIFF_MISSING


# -- unlock ----------------------------------------------------------------------

def test_unlock_skips_identical_files_without_rewriting(vault_root: Path, session: VaultSession,
                                                        password: bytearray) -> None:
    path = _write(vault_root, "a.txt", b"same")
    _seal(session, password, "a.txt")
    os.utime(path, ns=(1_000_000_000, 1_000_000_000))
    before = os.stat(path).st_mtime_ns

    result = unlock(session, password, MergeStrategy.USE_VAULT)
    assert result.skipped == ["a.txt"]
    assert result.extracted == []
    assert os.stat(path).st_mtime_ns == before


def test_example_modified_deleted_and_untouched(vault_root: Path, session: VaultSession,
                                                password: bytearray) -> None:
    _write(vault_root, "mod.txt", b"original")
    _write(vault_root, "del.txt", b"deleted later")
    _write(vault_root, "keep.txt", b"untouched")
    _seal(session, password, "mod.txt", "del.txt", "keep.txt")
    _write(vault_root, "mod.txt", b"local edit")
    (vault_root / "del.txt").unlink()

    result = unlock(session, password, MergeStrategy.USE_VAULT)
    assert sorted(result.extracted) == ["del.txt", "mod.txt"]
    assert result.skipped == ["keep.txt"]
    assert (vault_root / "mod.txt").read_bytes() == b"original"
    assert (vault_root / "del.txt").read_bytes() == b"deleted later"


@pytest.fixture
def conflicted(vault_root: Path, session: VaultSession, password: bytearray) -> Path:
    path = _write(vault_root, "a.txt", b"vault\n")
    _seal(session, password, "a.txt")
    path.write_bytes(b"local\n")
    return path


def test_keep_local_strategy(conflicted: Path, session: VaultSession, password: bytearray) -> None:
    result = unlock(session, password, MergeStrategy.KEEP_LOCAL)
    assert result.skipped == ["a.txt"]
    assert result.extracted == []
    assert conflicted.read_bytes() == b"local\n"


def test_use_vault_strategy(conflicted: Path, session: VaultSession, password: bytearray) -> None:
    result = unlock(session, password, MergeStrategy.USE_VAULT)
    assert result.extracted == ["a.txt"]
    assert conflicted.read_bytes() == b"vault\n"


def test_keep_both_strategy(conflicted: Path, session: VaultSession, password: bytearray) -> None:
    result = unlock(session, password, MergeStrategy.KEEP_BOTH)
    assert result.extracted == ["a.txt.from-vault"]
    assert result.skipped == ["a.txt"]
    assert conflicted.read_bytes() == b"local\n"
    assert (conflicted.parent / "a.txt.from-vault").read_bytes() == b"vault\n"
    assert _mode(conflicted.parent / "a.txt.from-vault") == 0o600

    result = unlock(session, password, MergeStrategy.KEEP_BOTH)
    assert result.extracted == ["a.txt.from-vault.1"]
    assert (conflicted.parent / "a.txt.from-vault.1").read_bytes() == b"vault\n"
    copies = sorted(p.name for p in conflicted.parent.iterdir() if p.name.startswith("a.txt."))
    assert copies == ["a.txt.from-vault", "a.txt.from-vault.1"]


def test_keep_both_gives_up_when_names_run_out(conflicted: Path, session: VaultSession, password: bytearray) -> None:
    (conflicted.parent / "a.txt.from-vault").write_bytes(b"x")
    for i in range(1, 100):
        (conflicted.parent / f"a.txt.from-vault.{i}").write_bytes(b"x")
    result = unlock(session, password, MergeStrategy.KEEP_BOTH)
    assert result.extracted == []
    assert len(result.errors) == 1
    assert conflicted.read_bytes() == b"local\n"


def test_abort_strategy_records_error(conflicted: Path, session: VaultSession, password: bytearray) -> None:
    result = unlock(session, password, MergeStrategy.ABORT)
    assert result.extracted == []
    assert len(result.errors) == 1
    assert "a.txt" in result.errors[0]
    assert conflicted.read_bytes() == b"local\n"


def test_ask_strategy_with_edit(conflicted: Path, session: VaultSession, password: bytearray,
                                prompter_factory) -> None:
    def editor(filename: str) -> None:
        Path(filename).write_bytes(b"merged\n")

    prompter = prompter_factory(choices=["e"])
    result = unlock(session, password, MergeStrategy.ASK, prompter=prompter, editor=editor)
    assert result.extracted == ["a.txt"]
    assert conflicted.read_bytes() == b"merged\n"


def test_ask_strategy_skip(conflicted: Path, session: VaultSession, password: bytearray, prompter_factory) -> None:
    result = unlock(session, password, MergeStrategy.ASK, prompter=prompter_factory(choices=["x"]))
    assert result.skipped == ["a.txt"]
    assert conflicted.read_bytes() == b"local\n"


def test_unlock_patterns(vault_root: Path, session: VaultSession, password: bytearray) -> None:
    _write(vault_root, "a.env", b"a")
    _write(vault_root, "b.txt", b"b")
    _seal(session, password, "a.env", "b.txt", remove=True)

    result = unlock(session, password, MergeStrategy.USE_VAULT, patterns=["*.env"])
    assert result.extracted == ["a.env"]
    assert not (vault_root / "b.txt").exists()

    with pytest.raises(VaultError) as exc:
        unlock(session, password, MergeStrategy.USE_VAULT, patterns=["nothing-*"])
    assert "no files match" in str(exc.value)


def _tamper(session: VaultSession, password: bytearray, entry: FileEntry, content: bytes) -> None:
    metadata, cipher = read_metadata(session, password)
    with cipher:
        metadata.files[entry.path] = entry
        session.store.put_blob(entry.path, cipher.encrypt(content))
        save_metadata(session, metadata, cipher)


def test_tampered_path_is_never_written(vault_root: Path, session: VaultSession, password: bytearray) -> None:
    target = vault_root.parent / "planted-by-vault.txt"
    content = b"evil"
    entry = FileEntry(path="../planted-by-vault.txt", size=4, mode=0o644, mod_time="", hash=sha256_hex(content))
    _tamper(session, password, entry, content)

    result = unlock(session, password, MergeStrategy.USE_VAULT)
    assert result.extracted == []
    assert any("invalid path" in e for e in result.errors)
    assert not target.exists()


def test_integrity_failure_is_per_file(vault_root: Path, session: VaultSession, password: bytearray) -> None:
    _write(vault_root, "good.txt", b"good")
    _seal(session, password, "good.txt", remove=True)
    entry = FileEntry(path="bad.txt", size=3, mode=0o644, mod_time="", hash=sha256_hex(b"expected"))
    _tamper(session, password, entry, b"something else")

    result = unlock(session, password, MergeStrategy.USE_VAULT)
    assert result.extracted == ["good.txt"]
    assert any("integrity" in e for e in result.errors)
    assert not (vault_root / "bad.txt").exists()
