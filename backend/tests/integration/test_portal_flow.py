"""
End-to-end flow: list the portal channels, resolve their stream URLs and
check a sample of them with the http tester.
"""
import random

import pytest
import respx
from httpx import Response

from m3u_tester import check_m3u, check_random_sample
from models import PlaylistEntry, ThresholdConfig
from stream_prober import StreamProber

from tests.fixtures.mock_portal import make_channel


async def resolve_playlist(client) -> list[PlaylistEntry]:
    entries = []
    for channel in await client.get_all_channels():
        url = await client.resolve_stream_url(channel["cmd"])
        if url:
            entries.append(PlaylistEntry(channel["name"], url))
    return entries


class TestPortalFlow:
    @pytest.mark.asyncio
    async def test_resolve_and_sample(self, mock_portal, portal_client):
        mock_portal.set_channels([make_channel(i) for i in range(1, 4)])
        for i in range(1, 4):
            mock_portal.set_link(f"ffrt http://localhost/ch/{i}_", f"ffmpeg http://stream.test/live/{i}.m3u8?token=x")
        respx.get("http://stream.test/live/1.m3u8").mock(return_value=Response(404))
        respx.get("http://stream.test/live/2.m3u8").mock(return_value=Response(200, content=b"#EXTM3U"))
        respx.get("http://stream.test/live/3.m3u8").mock(return_value=Response(503))

        entries = await resolve_playlist(portal_client)
        result = await check_random_sample(
            entries, sample_size=3, tester="http", prober=StreamProber(timeout=2)
        )

        assert [entry.url for entry in entries] == [
            f"http://stream.test/live/{i}.m3u8?token=x" for i in range(1, 4)
        ]
        assert result.tested == 3
        assert result.succeeded == 1
        assert result.ok is True
        # One handshake for the whole flow
        assert mock_portal.handshake_count == 1

    @pytest.mark.asyncio
    async def test_unresolvable_channels_are_skipped(self, mock_portal, portal_client):
        mock_portal.set_channels([make_channel(1), make_channel(2)])
        mock_portal.set_link("ffrt http://localhost/ch/1_", "")

        entries = await resolve_playlist(portal_client)

        assert len(entries) == 1
        assert entries[0].name == "Channel 2"

    @pytest.mark.asyncio
    async def test_playlist_evaluation(self):
        entries = [PlaylistEntry("#### NEWS ####", "http://stream.test/separator")]
        entries += [PlaylistEntry(f"Channel {i}", f"http://stream.test/live/{i}.ts") for i in range(1, 5)]
        with respx.mock(assert_all_called=False) as streams:
            streams.get("http://stream.test/separator").mock(return_value=Response(404))
            streams.get(url__regex=r"http://stream\.test/live/\d\.ts").mock(return_value=Response(200, content=b"ts"))

            result = await check_m3u(
                entries,
                ThresholdConfig(min_success=2, max_failures=1),
                tester="http",
                prober=StreamProber(timeout=2),
                rng=random.Random(8),
                source="news.m3u",
            )

        assert result.status is True
        assert len(result.succeeded_streams) == 2
        assert result.source == "news.m3u"
