"""
Unit tests for the SQLite-backed container store.
"""

from __future__ import annotations

import os
import stat

from pathlib import Path

import pytest

from lockvault.storage.vault import BACKUP_SUFFIX, COMPACT_SUFFIX, StoreNotFound, VaultStore, recover
from lockvault.utils.dataModels import FORMAT_VERSION, KDF_ARGON2ID, KDF_PBKDF2


def _new_store(tmp_path: Path) -> VaultStore:
    store = VaultStore.create(tmp_path / ".lockvault")
    store.initialize()
    return store


def test_create_is_exclusive_and_owner_only(tmp_path: Path) -> None:
    path = tmp_path / ".lockvault"
    with VaultStore.create(path) as store:
        store.initialize()
        assert store.is_initialized()
        assert store.get_version() == FORMAT_VERSION
        assert store.get_created() == store.get_modified()
    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
    with pytest.raises(FileExistsError):
        VaultStore.create(path)


def test_open_missing_container(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        VaultStore.open(tmp_path / ".lockvault")


def test_uninitialized_container_is_detected(tmp_path: Path) -> None:
    with VaultStore.create(tmp_path / ".lockvault") as store:
        assert not store.is_initialized()


def test_kdf_settings(tmp_path: Path) -> None:
    with _new_store(tmp_path) as store:
        assert store.get_kdf() == (KDF_PBKDF2, 0, 0)
        store.set_kdf(KDF_ARGON2ID, b"s" * 32, 3, 65536, 2)
        assert store.get_kdf() == (KDF_ARGON2ID, 65536, 2)
        assert store.get_salt() == b"s" * 32
        assert store.get_iterations() == 3
        store.set_salt(b"t" * 32)
        store.set_iterations(5)
        assert store.get_salt() == b"t" * 32
        assert store.get_iterations() == 5
        with pytest.raises(ValueError):
            store.set_iterations(0)


def test_missing_values_raise_store_not_found(tmp_path: Path) -> None:
    with _new_store(tmp_path) as store:
        with pytest.raises(StoreNotFound):
            store.get_salt()
        with pytest.raises(StoreNotFound):
            store.get_blob("a.txt")
        with pytest.raises(StoreNotFound):
            store.get_private("files")
        with pytest.raises(StoreNotFound):
            store.get_vault_id()


def test_vault_id_created_once(tmp_path: Path) -> None:
    with _new_store(tmp_path) as store:
        vault_id = store.get_or_create_vault_id()
        assert len(vault_id) == 32
        assert store.get_or_create_vault_id() == vault_id
        assert store.get_vault_id() == vault_id


def test_index_upsert_and_remove(tmp_path: Path) -> None:
    with _new_store(tmp_path) as store:
        store.upsert_index_entry("b.txt", 1, "t1", "h1")
        store.upsert_index_entry("a.txt", 2, "t2", "h2")
        store.upsert_index_entry("b.txt", 3, "t3", "h3")
        entries = store.list_index_entries()
        assert [e.path for e in entries] == ["a.txt", "b.txt"]
        assert store.get_index_entry("b.txt").hash == "h3"
        store.remove_index_entry("b.txt")
        assert store.get_index_entry("b.txt") is None


def test_blobs_and_private(tmp_path: Path) -> None:
    with _new_store(tmp_path) as store:
        store.put_blob("a.txt", bytearray(b"cipher"))
        assert store.get_blob("a.txt") == b"cipher"
        assert store.blob_paths() == ["a.txt"]
        store.delete_blob("a.txt")
        assert store.blob_paths() == []
        store.put_private("checksum", b"token")
        assert store.get_private("checksum") == b"token"


def test_batch_rolls_back_every_write(tmp_path: Path) -> None:
    with _new_store(tmp_path) as store:
        store.put_blob("keep.txt", b"1")
        with pytest.raises(RuntimeError):
            with store.batch():
                store.put_blob("a.txt", b"2")
                store.delete_blob("keep.txt")
                raise RuntimeError("boom")
        assert store.blob_paths() == ["keep.txt"]

        with store.batch():
            store.put_blob("a.txt", b"2")
            store.put_private("files", b"m")
        assert store.blob_paths() == ["a.txt", "keep.txt"]


def test_data_survives_reopen(tmp_path: Path) -> None:
    path = tmp_path / ".lockvault"
    with _new_store(tmp_path) as store:
        store.put_blob("a.txt", b"data")
    with VaultStore.open(path) as store:
        assert store.get_blob("a.txt") == b"data"


def test_compact_keeps_data_and_cleans_up(tmp_path: Path) -> None:
    path = tmp_path / ".lockvault"
    with _new_store(tmp_path) as store:
        for i in range(50):
            store.put_blob(f"f{i}", os.urandom(4096))
        for i in range(45):
            store.delete_blob(f"f{i}")
        before = path.stat().st_size
        store.compact()
        assert path.stat().st_size < before
        assert store.blob_paths() == [f"f{i}" for i in range(45, 50)]
        assert store.is_initialized()
    assert not (tmp_path / (".lockvault" + BACKUP_SUFFIX)).exists()
    assert not (tmp_path / (".lockvault" + COMPACT_SUFFIX)).exists()
    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600


def test_recover_restores_backup_when_original_missing(tmp_path: Path) -> None:
    path = tmp_path / ".lockvault"
    with _new_store(tmp_path) as store:
        store.put_blob("a.txt", b"data")
    os.replace(path, tmp_path / (".lockvault" + BACKUP_SUFFIX))
    (tmp_path / (".lockvault" + COMPACT_SUFFIX)).write_bytes(b"partial")

    with VaultStore.open(path) as store:
        assert store.get_blob("a.txt") == b"data"
    assert not (tmp_path / (".lockvault" + BACKUP_SUFFIX)).exists()
    assert not (tmp_path / (".lockvault" + COMPACT_SUFFIX)).exists()


def test_recover_drops_stale_backup(tmp_path: Path) -> None:
    path = tmp_path / ".lockvault"
    path.write_bytes(b"current")
    backup = tmp_path / (".lockvault" + BACKUP_SUFFIX)
    backup.write_bytes(b"old")
    recover(path)
    assert path.read_bytes() == b"current"
    assert not backup.exists()
