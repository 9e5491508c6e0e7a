from __future__ import annotations

import threading
from pathlib import Path

import pytest

from utxoshell.errors import StorageError
from utxoshell.store import StoreFile


def test_handles_on_one_path_share_a_lock(tmp_path: Path) -> None:
    (tmp_path / "sub").mkdir()
    first = StoreFile(tmp_path / "store.yaml")
    second = StoreFile(tmp_path / "sub" / ".." / "store.yaml")

    assert first._lock is second._lock
    assert StoreFile(tmp_path / "other.yaml")._lock is not first._lock


def test_concurrent_transactions_are_serialized(tmp_path: Path) -> None:
    path = tmp_path / "store.yaml"

    def append(worker: int) -> None:
        store = StoreFile(path)
        for index in range(20):
            with store.transaction() as document:
                document["wallets"].append({"name": f"w{worker}-{index}"})

    threads = [threading.Thread(target=append, args=(worker,)) for worker in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(StoreFile(path).read()["wallets"]) == 80
    assert sorted(p.name for p in tmp_path.iterdir()) == ["store.yaml"]


def test_unwritable_location_raises_storage_error(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-directory"
    blocker.write_text("")
    store = StoreFile(blocker / "store.yaml")

    with pytest.raises(StorageError):
        with store.transaction() as document:
            document["providers"].append({"name": "local"})


def test_failed_block_leaves_previous_document(tmp_path: Path) -> None:
    store = StoreFile(tmp_path / "store.yaml")
    with store.transaction() as document:
        document["wallets"].append({"name": "alice"})
    before = store.path.read_bytes()

    with pytest.raises(RuntimeError):
        with store.transaction() as document:
            document["wallets"].clear()
            raise RuntimeError("abort")

    assert store.path.read_bytes() == before
