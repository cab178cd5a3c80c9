from pathlib import Path
from contextlib import asynccontextmanager
from collections.abc import AsyncIterator

from nonebot import get_plugin_config, logger, require

require("nonebot_plugin_localstore")
import nonebot_plugin_localstore as store

from .cache import StickerCache
from .config import Config
from .converter import StaticConverter, TgsConverter, WebmConverter
from .download import Downloader
from .lottie import BrowserLottieRenderer, LottieRenderer
from .models import StickerKind, describe_url
from .sweeper import MB, CacheSweeper, SweepResult
from .tools import ToolRunner
from .workspace import WorkspaceManager


class StickerConverter:
    def __init__(
        self,
        cache_dir: Path | None = None,
        workspace_dir: Path | None = None,
        config: Config | None = None,
        *,
        downloader: Downloader | None = None,
        tools: ToolRunner | None = None,
        renderer: LottieRenderer | None = None,
    ):
        self._config = config or get_plugin_config(Config)
        cfg = self._config
        if cache_dir is None:
            cache_dir = store.get_plugin_cache_dir() / "stickers"
        if workspace_dir is None:
            # same filesystem as the cache, so publishing is an atomic rename
            workspace_dir = store.get_plugin_cache_dir() / "workspace"

        self.cache = StickerCache(cache_dir)
        self.workspace = WorkspaceManager(workspace_dir)
        self._downloader = downloader or Downloader(cfg.sticker_download_timeout)
        self._tools = tools or ToolRunner(
            cfg.sticker_ffmpeg_path,
            cfg.sticker_gifski_path,
            cfg.sticker_tool_timeout,
        )
        self._renderer = renderer or BrowserLottieRenderer(
            cfg.sticker_lottie_js, cfg.sticker_render_concurrency
        )

        self.webm = WebmConverter(
            self.cache, self.workspace, self._downloader, self._tools
        )
        self.tgs = TgsConverter(
            self.cache, self.workspace, self._downloader, self._tools, self._renderer
        )
        self.static = StaticConverter(self.cache, self.workspace, self._downloader)

        target_mb = cfg.sticker_cache_target_mb
        self.sweeper = CacheSweeper(
            self.cache,
            max_bytes=int(cfg.sticker_cache_max_mb * MB),
            interval=cfg.sticker_sweep_interval,
            target_bytes=None if target_mb is None else int(target_mb * MB),
            min_age=cfg.sticker_evict_min_age,
        )

    async def convert(self, source_url: str, stable_id: str | None = None) -> Path | None:
        """Convert a sticker to an upload-ready file.

        ``.webm`` goes to GIF, ``.tgs`` goes to GIF (``None`` when rendering
        fails), anything else becomes a 256px wide webp. WEBM and static
        failures raise :class:`StickerConversionError` subclasses.
        """
        kind = StickerKind.from_url(source_url)
        if kind is StickerKind.WEBM:
            return await self.webm.convert(source_url, stable_id)
        if kind is StickerKind.TGS:
            return await self.tgs.convert(source_url, stable_id)
        return await self.static.convert(source_url, stable_id)

    async def convert_or_fallback(
        self,
        source_url: str,
        stable_id: str | None = None,
        fallback_url: str | None = None,
    ) -> Path | None:
        path = await self.convert(source_url, stable_id)
        if path is not None or not fallback_url:
            return path

        logger.info(f"动画贴纸转换失败, 改用静态预览: {describe_url(fallback_url)}")
        return await self.static.convert(fallback_url, stable_id)

    @asynccontextmanager
    async def open_artifact(self, path: Path) -> AsyncIterator[Path]:
        """Pin a cached artifact so the sweeper leaves it alone during upload."""
        async with self.cache.hold(path) as held:
            yield held

    def start(self) -> None:
        self.sweeper.start()

    async def stop(self) -> None:
        await self.sweeper.stop()

    async def sweep(self) -> SweepResult:
        return await self.sweeper.sweep()


_default_converter: StickerConverter | None = None


def get_sticker_converter() -> StickerConverter:
    global _default_converter
    if _default_converter is None:
        _default_converter = StickerConverter()
    return _default_converter


async def shutdown_default_converter() -> None:
    global _default_converter
    if _default_converter is not None:
        await _default_converter.stop()
        _default_converter = None
