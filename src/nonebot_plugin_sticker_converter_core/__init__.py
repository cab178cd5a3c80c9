from nonebot import get_driver
from nonebot.plugin import PluginMetadata

from .cache import StickerCache
from .config import Config
from .converter import StaticConverter, TgsConverter, WebmConverter
from .exceptions import (
    CacheWriteFailure,
    DecodeFailure,
    DownloadFailure,
    ExternalToolFailure,
    RenderFailure,
    StickerConversionError,
)
from .models import ConversionRequest, StickerKind
from .service import (
    StickerConverter,
    get_sticker_converter,
    shutdown_default_converter,
)
from .sweeper import CacheSweeper

__plugin_meta__ = PluginMetadata(
    name="贴纸转换核心库",
    description="将 WEBM/TGS/静态贴纸转换为可缓存的 GIF 或图片，可供其他插件复用",
    usage="from nonebot_plugin_sticker_converter_core import get_sticker_converter",
    type="library",
    config=Config,
)

driver = get_driver()


@driver.on_startup
async def _start_cache_sweeper() -> None:
    get_sticker_converter().start()


@driver.on_shutdown
async def _stop_cache_sweeper() -> None:
    await shutdown_default_converter()


__all__ = [
    "CacheSweeper",
    "CacheWriteFailure",
    "ConversionRequest",
    "DecodeFailure",
    "DownloadFailure",
    "ExternalToolFailure",
    "RenderFailure",
    "StaticConverter",
    "StickerCache",
    "StickerConversionError",
    "StickerConverter",
    "StickerKind",
    "TgsConverter",
    "WebmConverter",
    "get_sticker_converter",
    "shutdown_default_converter",
]
