"""
Pytest configuration for the gateway tests.

Puts the project root on sys.path and provides fakes for the external
processes (ffmpeg, yt-dlp) so nothing real is spawned.
"""

import sys
from pathlib import Path
from typing import Callable, Optional

import pytest

# Add project root to Python path for imports
project_dir = Path(__file__).parent.parent
sys.path.insert(0, str(project_dir))

from ytmp3.config import settings  # noqa: E402
from ytmp3.services.session import DownloadSession  # noqa: E402


class FakeStdin:
    """Collects what is written to a fake process's stdin"""

    def __init__(self):
        self.data = bytearray()
        self.closed = False

    def write(self, chunk: bytes) -> None:
        self.data += chunk

    async def drain(self) -> None:
        pass

    def is_closing(self) -> bool:
        return self.closed

    def close(self) -> None:
        self.closed = True


class FakeReader:
    """Stand-in for an asyncio StreamReader over fixed bytes"""

    def __init__(self, data: bytes = b""):
        self._data = data

    async def read(self, n: int = -1) -> bytes:
        if n is None or n < 0:
            data, self._data = self._data, b""
            return data
        data, self._data = self._data[:n], self._data[n:]
        return data


class FakeProcess:
    """
    Minimal asyncio.subprocess.Process double.

    on_exit runs when the process "finishes" (wait/communicate), which is
    where tests create the output files a real tool would write.
    """

    def __init__(
        self,
        returncode: int = 0,
        stdout: bytes = b"",
        stderr: bytes = b"",
        on_exit: Optional[Callable[[], None]] = None,
        pid: int = 4242,
    ):
        self._exit_code = returncode
        self.returncode = None
        self.pid = pid
        self.stdin = FakeStdin()
        self.stdout = FakeReader(stdout)
        self.stderr = FakeReader(stderr)
        self._stdout_bytes = stdout
        self._stderr_bytes = stderr
        self.on_exit = on_exit
        self.killed = False

    def _finish(self) -> int:
        if self.returncode is None:
            if self.on_exit is not None:
                self.on_exit()
            self.returncode = self._exit_code
        return self.returncode

    async def wait(self) -> int:
        return self._finish()

    async def communicate(self, input=None):
        self._finish()
        return self._stdout_bytes, self._stderr_bytes

    def kill(self) -> None:
        self.killed = True
        self.returncode = -9


@pytest.fixture
def fake_process():
    """Factory for FakeProcess instances"""
    return FakeProcess


@pytest.fixture
def temp_dir(tmp_path, monkeypatch):
    """Point TEMP_DIR at a per-test directory"""
    monkeypatch.setattr(settings, "TEMP_DIR", str(tmp_path))
    return tmp_path


@pytest.fixture
def session(temp_dir):
    """A fresh download session writing temp files under tmp_path"""
    return DownloadSession(request_id="test-request")
