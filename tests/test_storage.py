from __future__ import annotations

import io

import pytest

from wormhole_web.errors import (
    StorageAccessError,
    TransferNotFoundError,
    TransferValidationError,
)
from wormhole_web.storage import TransferStorage


class TestTransferStorage:
    def test_path_for_rejects_bad_ids(self, storage):
        with pytest.raises(TransferValidationError):
            storage.path_for("send-1/../../etc")

    def test_store_and_remove(self, storage):
        path = storage.store("send-1", "../report.pdf", io.BytesIO(b"data"))
        assert path == storage.root / "send-1" / "report.pdf"
        assert path.read_bytes() == b"data"

        assert storage.remove("send-1")
        assert not (storage.root / "send-1").exists()

    def test_remove_missing_is_ok(self, storage):
        assert storage.remove("recv-42")

    def test_resolve_download(self, storage):
        storage.store("recv-1", "a.txt", io.BytesIO(b"hi"))
        assert storage.resolve_download("recv-1", "a.txt").read_bytes() == b"hi"

    def test_resolve_download_strips_traversal(self, storage, tmp_path):
        (tmp_path / "secret.txt").write_text("nope")
        storage.create("recv-1")
        with pytest.raises(TransferNotFoundError):
            storage.resolve_download("recv-1", "../../secret.txt")

    def test_resolve_download_refuses_symlink_escape(self, storage, tmp_path):
        outside = tmp_path / "outside.txt"
        outside.write_text("nope")
        directory = storage.create("recv-1")
        (directory / "link.txt").symlink_to(outside)

        with pytest.raises(StorageAccessError):
            storage.resolve_download("recv-1", "link.txt")

    def test_resolve_download_missing(self, storage):
        with pytest.raises(TransferNotFoundError):
            storage.resolve_download("recv-1", "a.txt")

    def test_purge(self, tmp_path):
        storage = TransferStorage(tmp_path / "root")
        storage.ensure_root()
        storage.store("send-1", "a.txt", io.BytesIO(b"x"))
        storage.purge()
        assert not storage.root.exists()
