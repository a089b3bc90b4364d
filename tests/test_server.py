"""Tests for the wormhole-web HTTP and WebSocket surface."""

from __future__ import annotations

import asyncio
import io
import json
import time
import zipfile

import httpx
import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from conftest import CODE, FakeBackend, FakeIncoming
from wormhole_web import __version__
from wormhole_web.config import Settings
from wormhole_web.errors import StorageError
from wormhole_web.server.app import create_app
from wormhole_web.server.broadcast import QueueSink
from wormhole_web.server.models import TransferDirection, TransferRecord, TransferState
from wormhole_web.server.orchestrator import SHUTDOWN_MESSAGE
from wormhole_web.validation import is_valid_transfer_id


async def _settle(app, timeout: float = 2.0) -> None:
    """Wait for every background transfer task to finish."""
    for _ in range(int(timeout / 0.01)):
        if app.state.supervisor.active == 0:
            return
        await asyncio.sleep(0.01)
    raise AssertionError("transfer tasks still running")


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "version": __version__}


# ---------------------------------------------------------------------------
# POST /api/send/text
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_send_text(client, backend, wait_for):
    resp = await client.post("/api/send/text", json={"text": "hello there"})
    assert resp.status_code == 200
    transfer_id = resp.json()["id"]
    assert transfer_id.startswith("send-")
    assert is_valid_transfer_id(transfer_id)

    record = await wait_for(transfer_id, "complete")
    assert record.code == CODE
    assert backend.sent_texts == ["hello there"]


@pytest.mark.asyncio
async def test_send_text_empty(client):
    resp = await client.post("/api/send/text", json={"text": ""})
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Text is required"


@pytest.mark.asyncio
async def test_send_text_missing_field(client):
    resp = await client.post("/api/send/text", json={})
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_send_text_malformed_body(client):
    resp = await client.post(
        "/api/send/text",
        content=b"{not json",
        headers={"Content-Type": "application/json"},
    )
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Invalid request body"


@pytest.mark.asyncio
async def test_send_text_backend_failure(settings):
    app = create_app(settings=settings, backend=FakeBackend(error="mailbox unreachable"))
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        resp = await c.post("/api/send/text", json={"text": "hi"})
    assert resp.status_code == 200

    transfer_id = resp.json()["id"]
    for _ in range(200):
        record = app.state.transfers.get(transfer_id)
        if record.state.value == "error":
            break
        await asyncio.sleep(0.01)
    assert record.error == "mailbox unreachable"


# ---------------------------------------------------------------------------
# POST /api/send/file
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_send_single_file(app, client, backend, wait_for, storage_dir):
    resp = await client.post(
        "/api/send/file", files={"file": ("notes.txt", b"hello file")},
    )
    assert resp.status_code == 200
    transfer_id = resp.json()["id"]

    record = await wait_for(transfer_id, "complete")
    await _settle(app)
    assert record.filename == "notes.txt"
    assert record.bytes_total == len(b"hello file")
    assert backend.sent_files == [("notes.txt", b"hello file")]
    # The payload is dropped once the send is over.
    assert not (storage_dir / transfer_id).exists()


@pytest.mark.asyncio
async def test_send_single_file_sanitizes_name(client, backend, wait_for):
    resp = await client.post(
        "/api/send/file", files={"file": ("../../etc/passwd", b"x")},
    )
    record = await wait_for(resp.json()["id"], "complete")
    assert record.filename == "passwd"
    assert backend.sent_files[0][0] == "passwd"


@pytest.mark.asyncio
async def test_send_multiple_files_as_zip(client, backend, wait_for):
    resp = await client.post(
        "/api/send/file",
        files=[
            ("files", ("a.txt", b"alpha")),
            ("files", ("b.txt", b"bravo")),
        ],
    )
    assert resp.status_code == 200
    record = await wait_for(resp.json()["id"], "complete")

    assert record.filename == "files.zip"
    name, data = backend.sent_files[0]
    assert name == "files.zip"
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        assert zf.read("a.txt") == b"alpha"
        assert zf.read("b.txt") == b"bravo"


@pytest.mark.asyncio
async def test_send_folder_keeps_structure(client, backend, wait_for):
    resp = await client.post(
        "/api/send/file",
        files=[
            ("files", ("cat.jpg", b"meow")),
            ("files", ("dog.jpg", b"woof")),
        ],
        data={"paths": json.dumps(["photos/cat.jpg", "photos/2024/dog.jpg"])},
    )
    record = await wait_for(resp.json()["id"], "complete")

    assert record.filename == "photos.zip"
    with zipfile.ZipFile(io.BytesIO(backend.sent_files[0][1])) as zf:
        assert sorted(zf.namelist()) == ["photos/2024/dog.jpg", "photos/cat.jpg"]


@pytest.mark.asyncio
async def test_send_single_file_with_folder_path_is_archived(client, backend, wait_for):
    resp = await client.post(
        "/api/send/file",
        files=[("files", ("cat.jpg", b"meow"))],
        data={"paths": json.dumps(["photos/cat.jpg"])},
    )
    record = await wait_for(resp.json()["id"], "complete")
    assert record.filename == "photos.zip"


@pytest.mark.asyncio
async def test_send_file_without_files(client):
    resp = await client.post("/api/send/file", data={"paths": "[]"})
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_send_file_bad_paths(client):
    resp = await client.post(
        "/api/send/file",
        files=[("files", ("a.txt", b"a")), ("files", ("b.txt", b"b"))],
        data={"paths": "not json"},
    )
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_send_file_too_large(storage_dir):
    settings = Settings(storage_dir=storage_dir, max_upload_bytes=4)
    app = create_app(settings=settings, backend=FakeBackend())
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        resp = await c.post("/api/send/file", files={"file": ("big.bin", b"0123456789")})
    assert resp.status_code == 413
    assert len(app.state.transfers) == 0


@pytest.mark.asyncio
async def test_send_file_storage_failure(app, client, monkeypatch):
    def boom(*args, **kwargs):
        raise StorageError("Failed to save file: disk full")

    monkeypatch.setattr(app.state.storage, "store", boom)
    resp = await client.post("/api/send/file", files={"file": ("a.txt", b"x")})

    # The id is still handed out; the record carries the failure.
    assert resp.status_code == 200
    record = app.state.transfers.get(resp.json()["id"])
    assert record.state.value == "error"
    assert "disk full" in record.error


# ---------------------------------------------------------------------------
# POST /api/receive
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_receive_text(client, backend, wait_for):
    resp = await client.post("/api/receive", json={"code": CODE})
    assert resp.status_code == 200
    transfer_id = resp.json()["id"]
    assert transfer_id.startswith("recv-")

    record = await wait_for(transfer_id, "complete")
    assert record.text_content == "hello"
    assert backend.received_codes == [CODE]


@pytest.mark.asyncio
async def test_receive_missing_code(client):
    resp = await client.post("/api/receive", json={"code": ""})
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Code is required"


@pytest.mark.asyncio
@pytest.mark.parametrize("code", ["guitarist-revenge", "7-guitar1st-revenge", "7-a-b; rm -rf /"])
async def test_receive_invalid_code(client, backend, code):
    resp = await client.post("/api/receive", json={"code": code})
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Invalid wormhole code format"
    assert backend.received_codes == []


# ---------------------------------------------------------------------------
# GET /api/status
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_status(client, wait_for):
    transfer_id = (await client.post("/api/receive", json={"code": CODE})).json()["id"]
    await wait_for(transfer_id, "complete")

    resp = await client.get("/api/status", params={"id": transfer_id})
    assert resp.status_code == 200
    data = resp.json()
    assert data["id"] == transfer_id
    assert data["type"] == "receive"
    assert data["status"] == "complete"
    assert data["code"] == CODE
    assert data["textContent"] == "hello"
    assert data["schemaVersion"] == 1
    assert "createdAt" not in data
    assert "created_at" not in data
    assert "downloadPath" not in data


@pytest.mark.asyncio
async def test_status_missing_id(client):
    resp = await client.get("/api/status")
    assert resp.status_code == 400
    assert resp.json()["detail"] == "ID is required"


@pytest.mark.asyncio
async def test_status_invalid_id(client):
    resp = await client.get("/api/status", params={"id": "send-1/../x"})
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_status_unknown_id(client):
    resp = await client.get("/api/status", params={"id": "send-123"})
    assert resp.status_code == 404


# ---------------------------------------------------------------------------
# GET /api/download
# ---------------------------------------------------------------------------


@pytest.fixture()
def file_backend() -> FakeBackend:
    return FakeBackend(incoming=FakeIncoming(b"quarterly numbers", name="my report.pdf"))


@pytest.fixture()
def file_app(settings, file_backend):
    return create_app(settings=settings, backend=file_backend)


@pytest.fixture()
def file_client(file_app):
    transport = httpx.ASGITransport(app=file_app)
    return httpx.AsyncClient(transport=transport, base_url="http://test")


async def _receive_file(app, client) -> str:
    transfer_id = (await client.post("/api/receive", json={"code": CODE})).json()["id"]
    for _ in range(200):
        if app.state.transfers.get(transfer_id).state.value == "complete":
            return transfer_id
        await asyncio.sleep(0.01)
    raise AssertionError("receive did not complete")


@pytest.mark.asyncio
async def test_download_received_file(file_app, file_client):
    transfer_id = await _receive_file(file_app, file_client)
    status = (await file_client.get("/api/status", params={"id": transfer_id})).json()
    assert status["downloadPath"] == f"/api/download/{transfer_id}/my%20report.pdf"

    resp = await file_client.get(status["downloadPath"])
    assert resp.status_code == 200
    assert resp.content == b"quarterly numbers"
    assert "attachment" in resp.headers["content-disposition"]


@pytest.mark.asyncio
async def test_download_invalid_id(file_client):
    resp = await file_client.get("/api/download/bogus/a.txt")
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_download_unknown_transfer(file_client):
    resp = await file_client.get("/api/download/recv-1/a.txt")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_download_unknown_file(file_app, file_client):
    transfer_id = await _receive_file(file_app, file_client)
    resp = await file_client.get(f"/api/download/{transfer_id}/other.pdf")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_download_traversal(file_app, file_client, tmp_path):
    (tmp_path / "secret.txt").write_text("top secret")
    transfer_id = await _receive_file(file_app, file_client)

    resp = await file_client.get(f"/api/download/{transfer_id}/..%2F..%2Fsecret.txt")
    assert resp.status_code in (403, 404)
    assert b"top secret" not in resp.content


@pytest.mark.asyncio
async def test_download_symlink_escape(file_app, file_client, storage_dir, tmp_path):
    outside = tmp_path / "secret.txt"
    outside.write_text("top secret")
    transfer_id = await _receive_file(file_app, file_client)
    served = storage_dir / transfer_id / "my report.pdf"
    served.unlink()
    served.symlink_to(outside)

    resp = await file_client.get(f"/api/download/{transfer_id}/my%20report.pdf")
    assert resp.status_code == 403
    assert b"top secret" not in resp.content


@pytest.mark.asyncio
async def test_download_refuses_pending_send_payload(settings):
    backend = FakeBackend(hold=True)
    app = create_app(settings=settings, backend=backend)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        resp = await client.post(
            "/api/send/file", files={"file": ("secret.txt", b"TOPSECRET")},
        )
        transfer_id = resp.json()["id"]
        for _ in range(200):
            if app.state.transfers.get(transfer_id).state.value == "waiting":
                break
            await asyncio.sleep(0.01)

        resp = await client.get(f"/api/download/{transfer_id}/secret.txt")
        assert resp.status_code == 404
        assert b"TOPSECRET" not in resp.content

        backend.release.set()
        await _settle(app)


@pytest.mark.asyncio
async def test_download_refuses_receive_in_progress(app, client, storage):
    storage.store("recv-5", "partial.bin", io.BytesIO(b"half"))
    app.state.transfers.set(TransferRecord(
        id="recv-5",
        direction=TransferDirection.RECEIVE,
        state=TransferState.RECEIVING,
        filename="partial.bin",
    ))

    resp = await client.get("/api/download/recv-5/partial.bin")
    assert resp.status_code == 404
    assert b"half" not in resp.content


@pytest.mark.asyncio
async def test_download_refuses_completed_send(app, client, storage):
    storage.store("send-5", "sent.bin", io.BytesIO(b"payload"))
    app.state.transfers.set(TransferRecord(
        id="send-5",
        direction=TransferDirection.SEND,
        state=TransferState.COMPLETE,
        filename="sent.bin",
        download_path="/api/download/send-5/sent.bin",
    ))

    resp = await client.get("/api/download/send-5/sent.bin")
    assert resp.status_code == 404


# ---------------------------------------------------------------------------
# WebSocket /api/ws
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_late_subscriber_gets_only_the_current_snapshot(app, client, wait_for):
    transfer_id = (await client.post("/api/receive", json={"code": CODE})).json()["id"]
    await wait_for(transfer_id, "complete")
    await _settle(app)

    sink = QueueSink()
    assert app.state.transfers.subscribe(transfer_id, sink)
    snapshot = json.loads(await sink.get())
    assert snapshot["status"] == "complete"
    assert snapshot["textContent"] == "hello"
    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(sink.get(), timeout=0.1)


class TestWebSocket:
    def test_streams_updates_until_complete(self, settings):
        backend = FakeBackend(hold=True)
        app = create_app(settings=settings, backend=backend)
        with TestClient(app) as tc:
            transfer_id = tc.post("/api/send/text", json={"text": "hi"}).json()["id"]
            with tc.websocket_connect(f"/api/ws?id={transfer_id}") as ws:
                first = ws.receive_json()
                assert first["id"] == transfer_id
                statuses = [first["status"]]
                if first["status"] == "sending":
                    statuses.append(ws.receive_json()["status"])

                tc.portal.call(backend.release.set)
                final = ws.receive_json()
                statuses.append(final["status"])

        assert statuses[-2:] == ["waiting", "complete"]
        assert final["code"] == CODE

    def test_late_subscriber_gets_current_snapshot(self, settings):
        app = create_app(settings=settings, backend=FakeBackend())
        with TestClient(app) as tc:
            transfer_id = tc.post("/api/receive", json={"code": CODE}).json()["id"]
            for _ in range(200):
                if tc.get("/api/status", params={"id": transfer_id}).json()["status"] == "complete":
                    break
                time.sleep(0.01)
            with tc.websocket_connect(f"/api/ws?id={transfer_id}") as ws:
                snapshot = ws.receive_json()
        assert snapshot["status"] == "complete"
        assert snapshot["textContent"] == "hello"

    def test_removed_transfer_closes_stream(self, settings):
        backend = FakeBackend(hold=True)
        app = create_app(settings=settings, backend=backend)
        with TestClient(app) as tc:
            transfer_id = tc.post("/api/send/text", json={"text": "hi"}).json()["id"]
            with tc.websocket_connect(f"/api/ws?id={transfer_id}") as ws:
                assert ws.receive_json()["id"] == transfer_id
                tc.portal.call(app.state.transfers.delete, transfer_id)
                with pytest.raises(WebSocketDisconnect) as exc_info:
                    while True:
                        ws.receive_json()
            tc.portal.call(backend.release.set)

        assert exc_info.value.code == 1008
        assert app.state.transfers.get(transfer_id) is None

    @pytest.mark.parametrize("query", ["", "?id=", "?id=send-1", "?id=../etc"])
    def test_rejects_unknown_or_invalid_ids(self, app, query):
        with TestClient(app) as tc:
            with pytest.raises(WebSocketDisconnect) as exc_info:
                with tc.websocket_connect(f"/api/ws{query}"):
                    pass
        assert exc_info.value.code == 1008


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


def test_shutdown_fails_pending_transfers_and_purges_storage(settings, storage_dir):
    app = create_app(settings=settings, backend=FakeBackend(hold=True))
    with TestClient(app) as tc:
        transfer_id = tc.post("/api/send/text", json={"text": "hi"}).json()["id"]
        assert storage_dir.exists()

    record = app.state.transfers.get(transfer_id)
    assert record.state.value == "error"
    assert record.error == SHUTDOWN_MESSAGE
    assert not storage_dir.exists()


def test_static_files_served(tmp_path, storage_dir):
    static = tmp_path / "static"
    static.mkdir()
    (static / "index.html").write_text("<h1>wormhole</h1>")
    app = create_app(
        settings=Settings(storage_dir=storage_dir, static_dir=static),
        backend=FakeBackend(),
    )
    with TestClient(app) as tc:
        assert "wormhole" in tc.get("/").text
        assert tc.get("/api/health").status_code == 200
