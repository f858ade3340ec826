"""Tests for the upload client: coordinator, HTTP client, wake lock and connectivity."""

import io
import socket
from unittest.mock import MagicMock

import pytest
import requests
from PIL import Image

from mediadrop.client.coordinator import UploadCoordinator, UploadState, infer_kind
from mediadrop.client.wakelock import WakeLock, WakeLockManager
from mediadrop.shared.contract import compute_session_id
from mediadrop.shared.errors import ChunkUploadError
from mediadrop.shared.models import MediaKind


class FakeClient:
    """In-memory stand-in for ChunkUploadClient."""

    def __init__(self, present=(), failures=0, status_error=False, on_send=None):
        self.present = list(present)
        self.received = set(present)
        self.failures_left = failures
        self.status_error = status_error
        self.on_send = on_send
        self.sent = []
        self.attempts = 0
        self.status_calls = []

    def get_uploaded_indices(self, session_id):
        self.status_calls.append(session_id)
        return list(self.present)

    def send_chunk(self, session_id, chunk_index, total_chunks, filename, kind, data, client_modified_ms=None):
        self.attempts += 1
        if self.on_send is not None:
            self.on_send(chunk_index)
        if self.failures_left > 0:
            self.failures_left -= 1
            raise requests.ConnectionError("connection reset")
        self.sent.append((chunk_index, total_chunks, data))
        self.received.add(chunk_index)
        complete = self.received >= set(range(total_chunks))
        return {"success": True, "complete": complete, "chunksReceived": len(self.received)}


class FakeLock(WakeLock):
    name = "fake"

    def __init__(self):
        self.acquired = 0
        self.released = 0
        self._held = False

    def acquire(self):
        self.acquired += 1
        self._held = True

    def release(self):
        self.released += 1
        self._held = False

    @property
    def held(self):
        return self._held


def _file(tmp_path, name="clip.mp4", size=45):
    path = tmp_path / name
    path.write_bytes(bytes(range(256)) * (size // 256) + bytes(range(size % 256)))
    return path


def _coordinator(client, **kwargs):
    delays = []
    events = []
    lock = FakeLock()
    defaults = dict(
        client=client,
        wake_lock=WakeLockManager(factory=lambda: lock),
        chunk_size=10,
        chunk_threshold=10,
        max_retries=10,
        initial_retry_delay=1.0,
        sleep=delays.append,
        on_progress=events.append,
    )
    defaults.update(kwargs)
    coordinator = UploadCoordinator(**defaults)
    return coordinator, delays, events, lock


class TestResume:
    def test_only_missing_chunks_are_sent(self, tmp_path):
        path = _file(tmp_path, size=45)
        client = FakeClient(present=[0, 1])
        coordinator, _, events, _ = _coordinator(client)

        response = coordinator.upload_file(path)

        assert [index for index, _, _ in client.sent] == [2, 3, 4]
        assert all(total == 5 for _, total, _ in client.sent)
        assert response["complete"] is True
        progress = [e.progress for e in events if e.state == UploadState.UPLOADING]
        assert progress == [0.2, 0.4, 0.6, 0.8, 1.0]
        assert events[-1].state == UploadState.COMPLETED

    def test_session_id_and_chunk_bytes(self, tmp_path):
        path = _file(tmp_path, size=25)
        client = FakeClient()
        coordinator, _, _, _ = _coordinator(client)

        coordinator.upload_file(path)

        stat = path.stat()
        expected_session = compute_session_id(path.name, stat.st_size, int(stat.st_mtime * 1000))
        assert client.status_calls == [expected_session]
        assert b"".join(data for _, _, data in client.sent) == path.read_bytes()
        assert [len(data) for _, _, data in client.sent] == [10, 10, 5]

    def test_everything_present_resends_last_chunk(self, tmp_path):
        path = _file(tmp_path, size=20)
        client = FakeClient(present=[0, 1])
        coordinator, _, events, _ = _coordinator(client)

        response = coordinator.upload_file(path)

        assert response["complete"] is True
        assert [index for index, _, _ in client.sent] == [1]
        assert client.sent[0][2] == path.read_bytes()[10:]
        assert events[-1].state == UploadState.COMPLETED

    def test_incomplete_final_response_is_a_failure(self, tmp_path):
        path = _file(tmp_path, size=20)
        client = FakeClient()
        client.send_chunk = MagicMock(return_value={"success": True, "complete": False, "chunksReceived": 1})
        coordinator, _, events, _ = _coordinator(client)

        outcomes = coordinator.upload_files([path])

        assert outcomes[0].success is False
        assert "did not complete" in outcomes[0].error
        assert events[-1].state == UploadState.FAILED


class TestRetry:
    def test_nine_failures_then_success(self, tmp_path):
        path = _file(tmp_path, size=10)
        client = FakeClient(failures=9)
        coordinator, delays, events, _ = _coordinator(client)

        response = coordinator.upload_file(path)

        assert response["complete"] is True
        assert client.attempts == 10
        assert delays == [1, 2, 4, 8, 16, 32, 64, 128, 256]
        retrying = [e.attempt for e in events if e.state == UploadState.RETRYING]
        assert retrying == list(range(1, 10))

    def test_ten_failures_is_fatal(self, tmp_path):
        path = _file(tmp_path, size=30)
        client = FakeClient(failures=100)
        coordinator, delays, _, _ = _coordinator(client)

        with pytest.raises(ChunkUploadError) as exc_info:
            coordinator.upload_file(path)

        assert exc_info.value.chunk_index == 0
        assert exc_info.value.attempts == 10
        assert "Failed to upload chunk 0 after 10 attempts" in str(exc_info.value)
        # No further attempts after the ceiling, not even for later chunks
        assert client.attempts == 10
        assert len(delays) == 9
        assert client.sent == []

    def test_backoff_schedule(self):
        coordinator, _, _, _ = _coordinator(FakeClient(), initial_retry_delay=0.5)
        assert [coordinator.backoff_delay(n) for n in range(1, 5)] == [0.5, 1.0, 2.0, 4.0]

    def test_small_file_single_attempt(self, tmp_path):
        path = _file(tmp_path, name="small.jpg", size=5)
        client = FakeClient(failures=1)
        coordinator, delays, _, lock = _coordinator(client)

        with pytest.raises(ChunkUploadError) as exc_info:
            coordinator.upload_file(path)

        assert exc_info.value.attempts == 1
        assert client.attempts == 1
        assert delays == []
        assert client.status_calls == []
        assert lock.acquired == 0

    def test_small_file_is_one_chunk(self, tmp_path):
        path = _file(tmp_path, name="small.jpg", size=5)
        client = FakeClient()
        coordinator, _, _, _ = _coordinator(client)

        coordinator.upload_file(path)

        assert [(index, total) for index, total, _ in client.sent] == [(0, 1)]


class TestConnectivity:
    def test_waits_while_offline(self, tmp_path):
        path = _file(tmp_path, size=10)
        monitor = MagicMock()
        monitor.is_online.side_effect = [False, True]
        client = FakeClient()
        coordinator, delays, events, _ = _coordinator(client, monitor=monitor)

        coordinator.upload_file(path)

        monitor.wait_until_online.assert_called_once()
        assert UploadState.WAITING in [e.state for e in events]
        assert delays == []
        assert client.attempts == 1

    def test_probe_against_real_socket(self):
        from mediadrop.client.network import ConnectivityMonitor

        server = socket.socket()
        server.bind(("127.0.0.1", 0))
        server.listen(1)
        port = server.getsockname()[1]
        try:
            assert ConnectivityMonitor(api_url=f"http://127.0.0.1:{port}/api").is_online() is True
        finally:
            server.close()
        assert ConnectivityMonitor(api_url=f"http://127.0.0.1:{port}/api", probe_timeout=0.5).is_online() is False

    def test_wait_until_online_polls(self):
        from mediadrop.client.network import ConnectivityMonitor

        monitor = ConnectivityMonitor(api_url="http://127.0.0.1:1/api", probe_interval=0.01)
        monitor.is_online = MagicMock(side_effect=[False, False, True])
        assert monitor.wait_until_online() is True
        assert monitor.is_online.call_count == 3


class TestWakeLock:
    def test_held_during_chunked_upload_and_released_after(self, tmp_path):
        path = _file(tmp_path, size=30)
        held_during_send = []
        client = FakeClient()
        coordinator, _, _, lock = _coordinator(client)
        client.on_send = lambda index: held_during_send.append(lock.held)

        coordinator.upload_file(path)

        assert held_during_send == [True, True, True]
        assert lock.acquired == 1
        assert lock.released == 1
        assert not lock.held

    def test_released_after_failure(self, tmp_path):
        path = _file(tmp_path, size=30)
        coordinator, _, _, lock = _coordinator(FakeClient(failures=100))

        with pytest.raises(ChunkUploadError):
            coordinator.upload_file(path)

        assert lock.released == 1
        assert not lock.held

    def test_reacquired_after_revocation(self, tmp_path):
        path = _file(tmp_path, size=30)
        client = FakeClient()
        coordinator, _, _, lock = _coordinator(client)

        def revoke_after_first(index):
            if index == 0:
                lock._held = False

        client.on_send = revoke_after_first
        coordinator.upload_file(path)

        assert lock.acquired == 2
        assert lock.released == 1

    def test_batch_holds_one_lock(self, tmp_path):
        paths = [_file(tmp_path, name=f"v{i}.mp4", size=30) for i in range(3)]
        coordinator, _, _, lock = _coordinator(FakeClient())

        outcomes = coordinator.upload_files(paths)

        assert [o.success for o in outcomes] == [True, True, True]
        assert lock.acquired == 1
        assert lock.released == 1

    def test_failed_file_does_not_stop_batch(self, tmp_path):
        bad = tmp_path / "notes.txt"
        bad.write_text("not media")
        good = _file(tmp_path, name="ok.mp4", size=30)
        coordinator, _, events, _ = _coordinator(FakeClient())

        outcomes = coordinator.upload_files([bad, good])

        assert [o.success for o in outcomes] == [False, True]
        assert UploadState.FAILED in [e.state for e in events]

    def test_manager_refcount(self):
        lock = FakeLock()
        manager = WakeLockManager(factory=lambda: lock)

        manager.acquire()
        manager.acquire()
        manager.release()
        assert lock.held
        manager.release()
        assert not lock.held
        assert (lock.acquired, lock.released) == (1, 1)
        manager.release()
        assert lock.released == 1

    def test_backend_errors_are_not_fatal(self):
        broken = MagicMock(spec=WakeLock)
        broken.acquire.side_effect = OSError("no dbus")
        broken.held = False
        manager = WakeLockManager(factory=lambda: broken)

        manager.acquire()
        manager.ensure_held()
        manager.release()

        assert broken.acquire.call_count == 2


class TestInferKind:
    @pytest.mark.parametrize(
        "name,kind",
        [
            ("a.jpg", MediaKind.IMAGE),
            ("a.PNG", MediaKind.IMAGE),
            ("IMG_0001.HEIC", MediaKind.IMAGE),
            ("a.mp4", MediaKind.VIDEO),
            ("a.mov", MediaKind.VIDEO),
        ],
    )
    def test_known(self, name, kind):
        assert infer_kind(name) == kind

    def test_unknown(self):
        with pytest.raises(ValueError):
            infer_kind("a.txt")


class TestChunkUploadClient:
    def _client(self):
        from mediadrop.client.uploader import ChunkUploadClient

        session = MagicMock()
        return ChunkUploadClient(api_url="http://server:8090/api/", timeout=5, session=session), session

    def test_status_probe(self):
        client, session = self._client()
        session.get.return_value.raise_for_status.return_value = None
        session.get.return_value.json.return_value = {"uploadedIndices": [3, 0, 1]}

        assert client.get_uploaded_indices("s") == [0, 1, 3]
        session.get.assert_called_once_with(
            "http://server:8090/api/chunk-status", params={"sessionId": "s"}, timeout=5
        )

    def test_status_probe_failure_means_fresh_start(self):
        client, session = self._client()
        session.get.side_effect = requests.ConnectionError("down")
        assert client.get_uploaded_indices("s") == []

    def test_send_chunk_form(self):
        client, session = self._client()
        response = session.post.return_value
        response.ok = True
        response.json.return_value = {"success": True, "complete": False}

        result = client.send_chunk("s", 1, 3, "a.mp4", MediaKind.VIDEO, b"abc", client_modified_ms=42)

        assert result == {"success": True, "complete": False}
        kwargs = session.post.call_args.kwargs
        assert session.post.call_args.args[0] == "http://server:8090/api/chunk"
        assert kwargs["data"] == {
            "chunkIndex": "1",
            "totalChunks": "3",
            "filename": "a.mp4",
            "sessionId": "s",
            "kind": "video",
            "clientModifiedAt": "42",
        }
        assert kwargs["files"]["chunk"][1] == b"abc"

    def test_send_chunk_http_error_raises(self):
        client, session = self._client()
        response = session.post.return_value
        response.ok = False
        response.status_code = 500
        response.text = "boom"
        response.raise_for_status.side_effect = requests.HTTPError("500 Server Error")

        with pytest.raises(requests.RequestException):
            client.send_chunk("s", 0, 1, "a.jpg", MediaKind.IMAGE, b"x")

    def test_health_check(self):
        client, session = self._client()
        session.get.return_value.status_code = 200
        session.get.return_value.json.return_value = {"status": "ok"}
        assert client.health_check() is True

        session.get.side_effect = requests.ConnectionError("down")
        assert client.health_check() is False


class FlaskResponse:
    """The slice of requests.Response that ChunkUploadClient reads."""

    def __init__(self, response):
        self.status_code = response.status_code
        self.ok = response.status_code < 400
        self.text = response.get_data(as_text=True)
        self._json = response.get_json(silent=True)

    def json(self):
        if self._json is None:
            raise ValueError("response body is not JSON")
        return self._json

    def raise_for_status(self):
        if not self.ok:
            raise requests.HTTPError(f"{self.status_code} Error: {self.text[:100]}")


class FlaskSession:
    """Routes ChunkUploadClient requests into a Flask test client."""

    base_url = "http://mediadrop.test"

    def __init__(self, test_client):
        self.test_client = test_client

    def _path(self, url):
        return url[len(self.base_url):]

    def get(self, url, params=None, timeout=None):
        return FlaskResponse(self.test_client.get(self._path(url), query_string=params))

    def post(self, url, files=None, data=None, timeout=None):
        form = dict(data or {})
        for field, (name, payload, mimetype) in (files or {}).items():
            form[field] = (io.BytesIO(payload), name, mimetype)
        return FlaskResponse(
            self.test_client.post(self._path(url), data=form, content_type="multipart/form-data")
        )


class TestUploadAgainstServer:
    @pytest.fixture
    def server_upload(self, flask_client):
        from mediadrop.client.uploader import ChunkUploadClient

        client = ChunkUploadClient(
            api_url=f"{FlaskSession.base_url}/api", timeout=5, session=FlaskSession(flask_client)
        )
        return _coordinator(client, chunk_size=10000, chunk_threshold=10000)

    def test_png_upload_creates_asset(self, server_upload, server_context, tmp_path):
        coordinator, _, _, _ = server_upload
        coordinator.chunk_size = coordinator.chunk_threshold = 256
        path = tmp_path / "photo.png"
        Image.new("RGB", (800, 600), color="green").save(path, format="PNG")

        outcomes = coordinator.upload_files([path])

        assert outcomes[0].success is True
        assert outcomes[0].response["complete"] is True
        assert outcomes[0].response["status"] == "completed"
        assert server_context.store.get_status_counts()["completed"] == 1

    def test_undecodable_image_is_a_failed_upload(self, server_upload, server_context, tmp_path):
        coordinator, delays, events, _ = server_upload
        path = tmp_path / "broken.jpg"
        path.write_bytes(b"\x00" * 24000)

        outcomes = coordinator.upload_files([path])

        assert outcomes[0].success is False
        assert events[-1].state == UploadState.FAILED
        # The 500 on the final chunk is retried once, then the server reports it incomplete
        assert delays == [1.0]
        assert all(count == 0 for count in server_context.store.get_status_counts().values())
        originals = server_context.settings.media_path / "originals"
        assert not originals.exists() or list(originals.iterdir()) == []

    def test_rerun_assembles_when_every_chunk_is_present(self, server_upload, server_context, tmp_path):
        coordinator, _, _, _ = server_upload
        coordinator.chunk_size = coordinator.chunk_threshold = 256
        path = tmp_path / "photo.png"
        Image.new("RGB", (800, 600), color="purple").save(path, format="PNG")
        payload = path.read_bytes()
        stat = path.stat()
        session_id = compute_session_id(path.name, stat.st_size, int(stat.st_mtime * 1000))
        # Blobs from an earlier run whose assembly never finished
        for index in range(0, len(payload), 256):
            server_context.chunk_store.accept_chunk(session_id, index // 256, payload[index:index + 256])

        outcomes = coordinator.upload_files([path])

        assert outcomes[0].success is True
        assert outcomes[0].response["complete"] is True
        assert server_context.store.get_status_counts()["completed"] == 1
        assert server_context.chunk_store.list_received_indices(session_id) == []
