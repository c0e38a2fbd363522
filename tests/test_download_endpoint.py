"""
End-to-end tests for POST /download with the download services faked out.
"""

import asyncio
import io
import json
import zipfile
from unittest.mock import AsyncMock, Mock

import pytest
from fastapi.testclient import TestClient

from ytmp3.config import settings
from ytmp3.errors import ConversionFailure, ExtractionFailure, ExtractionIncompatibility
from ytmp3.main import app
from ytmp3.routers import download as download_router
from ytmp3.services.models import DownloadResult
from ytmp3.services.playlist_download import PlaylistDownloader
from ytmp3.services.single_download import SingleItemDownloader
from ytmp3.services.temp_files import TempFile

VIDEO_URL = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"
PLAYLIST_URL = "https://www.youtube.com/playlist?list=PL123"


@pytest.fixture
def client():
    return TestClient(app)


def finished_download(filename="Never Gonna Give You Up.mp3", payload=b"ID3" + b"\xff\xfb" * 64):
    async def download(url, session):
        temp_file = TempFile()
        temp_file.path.write_bytes(payload)
        return DownloadResult(
            path=temp_file.path,
            filename=filename,
            title=filename[:-4],
            size_bytes=len(payload),
            temp_file=temp_file,
        )
    return download


@pytest.fixture
def single_downloader(monkeypatch):
    downloader = Mock()
    downloader.download = AsyncMock(side_effect=finished_download())
    monkeypatch.setattr(download_router, "single_downloader", downloader)
    return downloader


class TestValidation:

    def test_missing_url(self, client, single_downloader):
        response = client.post("/download", json={})
        assert response.status_code == 400
        assert response.json() == {"error": "Invalid YouTube URL."}
        single_downloader.download.assert_not_awaited()

    def test_non_youtube_url(self, client, single_downloader):
        response = client.post("/download", json={"url": "https://vimeo.com/1234"})
        assert response.status_code == 400
        assert response.json() == {"error": "URL must be a YouTube link."}

    def test_malformed_body(self, client, single_downloader):
        response = client.post("/download", content=b"not json", headers={"Content-Type": "application/json"})
        assert response.status_code == 400
        assert "error" in response.json()


class TestSingleDownload:

    def test_mp3_attachment(self, client, single_downloader, temp_dir):
        response = client.post("/download", json={"url": VIDEO_URL})

        assert response.status_code == 200
        assert response.headers["content-type"] == "audio/mpeg"
        assert response.headers["content-disposition"] == 'attachment; filename="Never Gonna Give You Up.mp3"'
        assert response.headers["cache-control"] == "no-cache, no-store, must-revalidate"
        assert response.content.startswith(b"ID3")
        # temp file removed once the body was sent
        assert list(temp_dir.iterdir()) == []

    def test_unicode_filename(self, client, single_downloader, temp_dir):
        single_downloader.download = AsyncMock(side_effect=finished_download(filename="日本の歌.mp3"))

        response = client.post("/download", json={"url": VIDEO_URL})

        assert response.status_code == 200
        disposition = response.headers["content-disposition"]
        assert 'filename="audio.mp3"' in disposition
        assert "filename*=utf-8''" in disposition

    def test_fallback_tool_download(self, client, temp_dir, monkeypatch):
        resolver = Mock()
        resolver.resolve = AsyncMock(side_effect=ExtractionIncompatibility("Signature extraction failed"))

        async def download_mp3(url, temp_file, session):
            temp_file.path.write_bytes(b"ID3" + b"\xff\xfb" * 32)
            return temp_file.path.stat().st_size

        fallback = Mock()
        fallback.fetch_title = AsyncMock(return_value="Rick Astley - Never Gonna Give You Up")
        fallback.download_mp3 = AsyncMock(side_effect=download_mp3)
        downloader = SingleItemDownloader(resolver, Mock(), fallback, max_concurrent=0)
        monkeypatch.setattr(download_router, "single_downloader", downloader)

        response = client.post("/download", json={"url": VIDEO_URL})

        assert response.status_code == 200
        assert response.headers["content-disposition"] == (
            'attachment; filename="Rick Astley - Never Gonna Give You Up.mp3"'
        )
        assert response.content.startswith(b"ID3")
        assert list(temp_dir.iterdir()) == []

    def test_conversion_failure(self, client, single_downloader, temp_dir):
        single_downloader.download = AsyncMock(side_effect=ConversionFailure("Error converting to MP3"))

        response = client.post("/download", json={"url": VIDEO_URL})

        assert response.status_code == 500
        assert response.json() == {"error": "Error converting to MP3"}

    def test_unexpected_error(self, client, single_downloader, temp_dir):
        single_downloader.download = AsyncMock(side_effect=RuntimeError("kaboom"))

        response = client.post("/download", json={"url": VIDEO_URL})

        assert response.status_code == 500
        assert response.json() == {"error": "Processing failed: kaboom"}

    def test_timeout(self, client, single_downloader, temp_dir, monkeypatch):
        async def slow(url, session):
            await asyncio.sleep(10)

        single_downloader.download = AsyncMock(side_effect=slow)
        monkeypatch.setattr(settings, "SINGLE_TIMEOUT_SECONDS", 0.1)

        response = client.post("/download", json={"url": VIDEO_URL})

        assert response.status_code == 504
        assert response.json() == {"error": "Timed out while processing the download."}


def playlist_listing(count):
    return json.dumps({"entries": [{"id": f"vid{i}", "title": f"Song {i}"} for i in range(count)]})


@pytest.fixture
def playlist_downloader(monkeypatch, temp_dir):
    async def download_for(url, session):
        video_id = url.rsplit("=", 1)[-1]
        if video_id == "vid1":
            raise ExtractionFailure("Download failed: private video")
        return await finished_download(filename=f"{video_id}.mp3", payload=video_id.encode() * 50)(url, session)

    downloader = Mock()
    downloader.download = AsyncMock(side_effect=download_for)
    fallback = Mock()
    fallback.dump_playlist = AsyncMock(return_value=playlist_listing(4))
    playlists = PlaylistDownloader(downloader=downloader, fallback=fallback, concurrency=3)
    monkeypatch.setattr(download_router, "playlist_downloader", playlists)
    return playlists


class TestPlaylistDownload:

    def test_zip_archive(self, client, playlist_downloader, temp_dir):
        response = client.post("/download", json={"url": PLAYLIST_URL})

        assert response.status_code == 200
        assert response.headers["content-type"] == "application/zip"
        assert response.headers["content-disposition"] == 'attachment; filename="playlist.zip"'
        with zipfile.ZipFile(io.BytesIO(response.content)) as archive:
            assert sorted(archive.namelist()) == ["vid0.mp3", "vid2.mp3", "vid3.mp3"]
            assert archive.read("vid2.mp3") == b"vid2" * 50
        assert list(temp_dir.iterdir()) == []

    def test_empty_playlist(self, client, playlist_downloader):
        playlist_downloader.fallback.dump_playlist = AsyncMock(return_value=playlist_listing(0))

        response = client.post("/download", json={"url": PLAYLIST_URL})

        assert response.status_code == 400
        assert response.json() == {"error": "Playlist is empty or unavailable."}

    def test_listing_failure(self, client, playlist_downloader):
        playlist_downloader.fallback.dump_playlist = AsyncMock(
            side_effect=ExtractionFailure("Could not read playlist information")
        )

        response = client.post("/download", json={"url": PLAYLIST_URL})

        assert response.status_code == 500
        assert response.json() == {"error": "Could not read playlist information"}

    def test_archive_failure_before_first_byte(self, client, playlist_downloader, temp_dir):
        playlist_downloader.fallback.dump_playlist = AsyncMock(return_value=playlist_listing(1))

        async def vanished(url, session):
            return DownloadResult(
                path=temp_dir / "vanished.mp3",
                filename="vid0.mp3",
                title="vid0",
                size_bytes=10,
            )

        playlist_downloader.downloader.download = AsyncMock(side_effect=vanished)

        response = client.post("/download", json={"url": PLAYLIST_URL})

        assert response.status_code == 500
        assert response.json()["error"].startswith("Error adding vid0.mp3 to ZIP")


class TestMisc:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_root(self, client):
        response = client.get("/")
        assert response.json()["endpoints"]["download"] == "POST /download"
