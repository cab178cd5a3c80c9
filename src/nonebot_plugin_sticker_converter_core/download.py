import os
import shutil
import asyncio
import http.client
from pathlib import Path
from urllib.request import Request, urlopen

from nonebot import logger

from .exceptions import DownloadFailure
from .models import describe_url

USER_AGENT = "nonebot-plugin-sticker-converter-core"


class Downloader:
    def __init__(self, timeout: float = 30.0, concurrency: int = 8):
        self._timeout = timeout
        # Limit concurrent downloads to avoid excessive threads/IO
        self._semaphore = asyncio.Semaphore(concurrency)

    async def fetch(self, url: str, dest: Path) -> Path:
        """Stream ``url`` into ``dest``; a partial ``dest`` is removed on failure."""
        try:
            async with self._semaphore:
                await asyncio.to_thread(self._download_to_file, url, dest)
        except (OSError, ValueError, http.client.HTTPException) as e:
            try:
                await asyncio.to_thread(os.remove, str(dest))
            except OSError:
                pass
            logger.warning(f"下载贴纸失败({describe_url(url)}): {e}")
            raise DownloadFailure(f"下载失败: {e}") from e
        return dest

    async def fetch_bytes(self, url: str) -> bytes:
        try:
            async with self._semaphore:
                return await asyncio.to_thread(self._download_bytes, url)
        except (OSError, ValueError, http.client.HTTPException) as e:
            logger.warning(f"下载贴纸失败({describe_url(url)}): {e}")
            raise DownloadFailure(f"下载失败: {e}") from e

    def _open(self, url: str):
        request = Request(url, headers={"User-Agent": USER_AGENT})
        return urlopen(request, timeout=self._timeout)

    def _download_to_file(self, url: str, dest: Path) -> None:
        with self._open(url) as response, open(dest, "wb") as f:
            shutil.copyfileobj(response, f)

    def _download_bytes(self, url: str) -> bytes:
        with self._open(url) as response:
            return response.read()
