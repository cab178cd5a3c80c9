import asyncio
from pathlib import Path
from contextlib import asynccontextmanager

import pytest

from nonebot_plugin_sticker_converter_core.download import Downloader
from nonebot_plugin_sticker_converter_core.exceptions import DownloadFailure


@asynccontextmanager
async def raw_http_server(response: bytes):
    """Answers every request with ``response`` verbatim, then closes."""

    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        await reader.readuntil(b"\r\n\r\n")
        writer.write(response)
        await writer.drain()
        writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    try:
        yield f"http://127.0.0.1:{port}/stickers/file_1.webm"
    finally:
        server.close()
        await server.wait_closed()


SHORT_BODY = (
    b"HTTP/1.1 200 OK\r\n"
    b"Content-Length: 100\r\n"
    b"Content-Type: video/webm\r\n"
    b"\r\n"
    b"abc"
)
BAD_STATUS_LINE = b"garbage that is not http\r\n\r\n"


async def test_fetch_streams_to_file(tmp_path: Path):
    source = tmp_path / "remote.webm"
    source.write_bytes(b"\x1aE\xdf\xa3 webm")
    dest = tmp_path / "local.webm"

    result = await Downloader(timeout=5).fetch(source.as_uri(), dest)

    assert result == dest
    assert dest.read_bytes() == source.read_bytes()


async def test_fetch_bytes(tmp_path: Path):
    source = tmp_path / "remote.tgs"
    source.write_bytes(b"\x1f\x8b payload")

    assert await Downloader(timeout=5).fetch_bytes(source.as_uri()) == b"\x1f\x8b payload"


async def test_fetch_failure_removes_partial_file(tmp_path: Path):
    dest = tmp_path / "local.webm"

    with pytest.raises(DownloadFailure):
        await Downloader(timeout=5).fetch((tmp_path / "missing.webm").as_uri(), dest)

    assert not dest.exists()


@pytest.mark.parametrize("url", ["not a url", "gopher://example/file.tgs"])
async def test_fetch_bytes_rejects_unusable_urls(url: str):
    with pytest.raises(DownloadFailure):
        await Downloader(timeout=5).fetch_bytes(url)


@pytest.mark.parametrize("response", [SHORT_BODY, BAD_STATUS_LINE])
async def test_fetch_maps_broken_responses_to_download_failure(
    tmp_path: Path, response: bytes
):
    dest = tmp_path / "local.webm"

    async with raw_http_server(response) as url:
        with pytest.raises(DownloadFailure):
            await Downloader(timeout=5).fetch(url, dest)

    assert not dest.exists()


@pytest.mark.parametrize("response", [SHORT_BODY, BAD_STATUS_LINE])
async def test_fetch_bytes_maps_broken_responses_to_download_failure(response: bytes):
    async with raw_http_server(response) as url:
        with pytest.raises(DownloadFailure):
            await Downloader(timeout=5).fetch_bytes(url)
