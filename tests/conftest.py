import os
import sys
import tempfile
from pathlib import Path

import pytest


_PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(_PROJECT_ROOT))

_DEFAULT_TEST_DATA_DIR = tempfile.mkdtemp(prefix="mediadrop_test_data_")
os.environ.setdefault("MEDIADROP_DATA_DIR", _DEFAULT_TEST_DATA_DIR)


class FakeTranscoder:
    """Stands in for VideoTranscoder: writes small placeholder renditions."""

    def __init__(self, web_videos_dir: Path, thumbnails_dir: Path, fail_with=None, capture_date=None):
        self.web_videos_dir = Path(web_videos_dir)
        self.thumbnails_dir = Path(thumbnails_dir)
        self.fail_with = fail_with
        self.capture_date = capture_date
        self.calls = []

    def probe_capture_date(self, video_path):
        return self.capture_date

    def transcode(self, video_path):
        from mediadrop.server.media.ffmpeg import TranscodeOutput

        video_path = Path(video_path)
        self.calls.append(video_path)
        if self.fail_with is not None:
            raise self.fail_with
        self.web_videos_dir.mkdir(parents=True, exist_ok=True)
        self.thumbnails_dir.mkdir(parents=True, exist_ok=True)
        web = self.web_videos_dir / f"{video_path.stem}.mp4"
        poster = self.thumbnails_dir / f"{video_path.stem}-thumb.jpg"
        web.write_bytes(b"mp4")
        poster.write_bytes(b"jpg")
        return TranscodeOutput(web_video_path=web, poster_path=poster)


@pytest.fixture
def test_settings(tmp_path):
    from mediadrop.shared.config import Settings

    return Settings(
        MEDIADROP_DATA_DIR=str(tmp_path / "data"),
        MEDIADROP_START_WORKERS=False,
        MEDIADROP_EVENT_HEARTBEAT_SECONDS=0.05,
    )


@pytest.fixture
def fake_transcoder(test_settings):
    return FakeTranscoder(test_settings.web_videos_path, test_settings.thumbnails_path)


@pytest.fixture
def server_context(test_settings, fake_transcoder):
    from mediadrop.server.app import build_context

    context = build_context(test_settings)
    context.pipeline.transcoder = fake_transcoder
    context.transcode_worker.transcoder = fake_transcoder
    return context


@pytest.fixture
def flask_app(server_context):
    from mediadrop.server.app import create_app

    app = create_app(context=server_context)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def flask_client(flask_app):
    with flask_app.test_client() as client:
        yield client


@pytest.fixture
def make_transcoder():
    return FakeTranscoder
