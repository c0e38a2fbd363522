"""
Tests for the single-item download state machine.
"""

import asyncio
from unittest.mock import AsyncMock, Mock, patch

import pytest

from ytmp3.config import settings
from ytmp3.errors import (
    ClientDisconnected,
    ConversionFailure,
    ExtractionFailure,
    ExtractionIncompatibility,
)
from ytmp3.services.models import SourceHandle, VideoMetadata
from ytmp3.services.request_guard import run_guarded
from ytmp3.services.single_download import SingleItemDownloader, TranscodeSlots
from ytmp3.services.transcoder import Transcoder

URL = "https://www.youtube.com/watch?v=abc"


async def raw_source():
    yield b"raw audio"


def make_resolver(title="My: Song"):
    resolver = Mock()
    resolver.resolve = AsyncMock(return_value=VideoMetadata(
        title=title,
        source=SourceHandle(url="https://media/251"),
        video_id="abc",
    ))
    resolver.open_stream = Mock(side_effect=lambda metadata, session: raw_source())
    return resolver


def make_transcoder(payload=b"\xff\xfb" * 10, error=None):
    async def transcode_to_file(job, session):
        job.output_path.write_bytes(payload)
        if error is not None:
            raise error
        return len(payload)

    transcoder = Mock()
    transcoder.transcode_to_file = AsyncMock(side_effect=transcode_to_file)
    return transcoder


def make_fallback(title="Fallback Title", payload=b"ID3data", error=None):
    async def download_mp3(url, temp_file, session):
        temp_file.path.write_bytes(payload)
        if error is not None:
            raise error
        return len(payload)

    fallback = Mock()
    fallback.fetch_title = AsyncMock(return_value=title)
    fallback.download_mp3 = AsyncMock(side_effect=download_mp3)
    return fallback


class TestPrimaryPath:

    @pytest.mark.asyncio
    async def test_download(self, session):
        downloader = SingleItemDownloader(make_resolver(), make_transcoder(), make_fallback(), max_concurrent=0)

        result = await downloader.download(URL, session)

        assert result.filename == "My Song.mp3"
        assert result.title == "My: Song"
        assert result.size_bytes == 20
        assert result.via_fallback is False
        assert result.path.exists()
        assert result.temp_file in session.temp_files
        downloader.fallback.fetch_title.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_conversion_failure_deletes_output(self, session, temp_dir):
        transcoder = make_transcoder(error=ConversionFailure("Error converting to MP3"))
        downloader = SingleItemDownloader(make_resolver(), transcoder, make_fallback(), max_concurrent=0)

        with pytest.raises(ConversionFailure):
            await downloader.download(URL, session)

        assert session.temp_files == []
        assert list(temp_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_extraction_failure_does_not_fall_back(self, session):
        resolver = make_resolver()
        resolver.resolve = AsyncMock(side_effect=ExtractionFailure("Download failed: HTTP Error 403"))
        fallback = make_fallback()
        downloader = SingleItemDownloader(resolver, make_transcoder(), fallback, max_concurrent=0)

        with pytest.raises(ExtractionFailure):
            await downloader.download(URL, session)

        fallback.download_mp3.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancelled_session(self, session):
        await session.cancel("client_disconnected")
        downloader = SingleItemDownloader(make_resolver(), make_transcoder(), make_fallback(), max_concurrent=0)

        with pytest.raises(ClientDisconnected):
            await downloader.download(URL, session)


class TestFallbackPath:

    @pytest.mark.asyncio
    async def test_incompatibility_switches_to_tool(self, session):
        resolver = make_resolver()
        resolver.resolve = AsyncMock(side_effect=ExtractionIncompatibility("Unable to extract nsig"))
        fallback = make_fallback(title="AC/DC - T.N.T.")
        transcoder = make_transcoder()
        downloader = SingleItemDownloader(resolver, transcoder, fallback, max_concurrent=0)

        result = await downloader.download(URL, session)

        assert result.via_fallback is True
        assert result.filename == "ACDC - T.N.T..mp3"
        assert result.size_bytes == 7
        transcoder.transcode_to_file.assert_not_awaited()
        temp_file = fallback.download_mp3.await_args.args[1]
        assert temp_file.sweep_siblings is True

    @pytest.mark.asyncio
    async def test_fallback_failure_deletes_output(self, session):
        resolver = make_resolver()
        resolver.resolve = AsyncMock(side_effect=ExtractionIncompatibility("This video is unavailable"))
        fallback = make_fallback(error=ExtractionFailure("Fallback download failed (exit code 1)"))
        downloader = SingleItemDownloader(resolver, make_transcoder(), fallback, max_concurrent=0)

        with pytest.raises(ExtractionFailure):
            await downloader.download(URL, session)

        assert session.temp_files == []


class TestClientDisconnect:

    @pytest.mark.asyncio
    async def test_disconnect_mid_transcode(self, session, temp_dir, fake_process, monkeypatch):
        monkeypatch.setattr(settings, "DISCONNECT_POLL_INTERVAL", 0.01)

        async def stalled_source():
            for _ in range(3):
                yield b"raw audio"
            await asyncio.sleep(60)

        resolver = make_resolver()
        resolver.open_stream = Mock(side_effect=lambda metadata, session: stalled_source())
        process = fake_process()
        downloader = SingleItemDownloader(resolver, Transcoder(ffmpeg_path="ffmpeg"), make_fallback(), max_concurrent=0)
        request = Mock()
        request.is_disconnected = AsyncMock(side_effect=[False, False, True])

        with patch("ytmp3.services.transcoder.asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
            with pytest.raises(ClientDisconnected):
                await run_guarded(request, session, downloader.download(URL, session), timeout=5)

        assert bytes(process.stdin.data) == b"raw audio" * 3
        assert process.killed is True
        assert session.cancel_reason == "client_disconnected"
        assert session.can_respond is False
        assert list(temp_dir.iterdir()) == []

class TestTranscodeSlots:

    @pytest.mark.asyncio
    async def test_limit(self):
        slots = TranscodeSlots(2)
        active = 0
        peak = 0

        async def job():
            nonlocal active, peak
            async with slots.acquire():
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0.01)
                active -= 1

        await asyncio.gather(*(job() for _ in range(6)))
        assert peak == 2

    @pytest.mark.asyncio
    async def test_unbounded(self):
        slots = TranscodeSlots(0)
        async with slots.acquire():
            pass
