"""
Integration tests of the ffmpeg tester with real child processes.

A shell script stands in for the ffmpeg binary so the exit code and the
run time are under the test's control.
"""
import os
import stat
import sys
import time

import pytest

from stream_prober import StreamProber

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="requires a POSIX shell")

STREAM_URL = "http://stream.test/live/1.ts"


@pytest.fixture
def fake_ffmpeg(tmp_path):
    """Write an executable script and return its path."""
    def _make(body: str) -> str:
        script = tmp_path / "ffmpeg"
        script.write_text("#!/bin/sh\n" + body + "\n")
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(script)
    return _make


class TestFfmpegProcess:
    @pytest.mark.asyncio
    async def test_clean_exit_is_playable(self, fake_ffmpeg):
        prober = StreamProber(timeout=5, ffmpeg_path=fake_ffmpeg("exit 0"))

        assert await prober.check_stream(STREAM_URL, "ffmpeg") is True

    @pytest.mark.asyncio
    async def test_error_exit_is_not_playable(self, fake_ffmpeg):
        prober = StreamProber(timeout=5, ffmpeg_path=fake_ffmpeg('echo "Connection refused" >&2\nexit 1'))

        assert await prober.check_stream(STREAM_URL, "ffmpeg") is False

    @pytest.mark.asyncio
    async def test_hanging_decoder_is_killed_at_timeout(self, fake_ffmpeg):
        prober = StreamProber(timeout=0.5, ffmpeg_path=fake_ffmpeg("exec sleep 30"))

        start = time.monotonic()
        result = await prober.check_stream(STREAM_URL, "ffmpeg")
        elapsed = time.monotonic() - start

        assert result is False
        assert elapsed < 0.5 + 2.0

    @pytest.mark.asyncio
    async def test_arguments_reach_the_binary(self, fake_ffmpeg, tmp_path):
        args_file = tmp_path / "args.txt"
        prober = StreamProber(
            timeout=5,
            ffmpeg_duration=3,
            ffmpeg_path=fake_ffmpeg(f'printf "%s\\n" "$@" > "{args_file}"'),
        )

        assert await prober.check_stream(STREAM_URL, "ffmpeg", user_agent="VLC/3.0.20") is True

        args = args_file.read_text().splitlines()
        assert args[args.index("-i") + 1] == STREAM_URL
        assert args[args.index("-t") + 1] == "3"
        assert args[args.index("-user_agent") + 1] == "VLC/3.0.20"

    @pytest.mark.asyncio
    async def test_missing_binary_is_not_playable(self, tmp_path):
        prober = StreamProber(timeout=5, ffmpeg_path=os.fspath(tmp_path / "no-such-ffmpeg"))

        assert await prober.check_stream(STREAM_URL, "ffmpeg") is False

    @pytest.mark.asyncio
    async def test_non_executable_binary_is_not_playable(self, tmp_path):
        binary = tmp_path / "ffmpeg"
        binary.write_text("not a program")

        assert await StreamProber(timeout=5, ffmpeg_path=str(binary)).check_stream(STREAM_URL, "ffmpeg") is False
