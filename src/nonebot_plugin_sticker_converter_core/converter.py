import asyncio
from pathlib import Path

import aiofiles
from nonebot import logger
from PIL import Image, UnidentifiedImageError

from .cache import StickerCache
from .download import Downloader
from .exceptions import (
    DecodeFailure,
    ExternalToolFailure,
    RenderFailure,
    StickerConversionError,
)
from .lottie import (
    AnimationDocument,
    LottieRenderer,
    frame_indices,
    frame_step,
)
from .models import (
    TARGET_FPS,
    TARGET_SIZE,
    ConversionRequest,
    StickerKind,
    describe_url,
    url_suffix,
)
from .tools import ToolRunner
from .workspace import Workspace, WorkspaceManager


class BaseConverter:
    kind: StickerKind = StickerKind.STATIC
    ext: str = ""

    def __init__(
        self,
        cache: StickerCache,
        workspace: WorkspaceManager,
        downloader: Downloader,
    ):
        self.cache = cache
        self.workspace = workspace
        self.downloader = downloader

    async def convert(self, source_url: str, stable_id: str | None = None) -> Path:
        request = ConversionRequest(source_url, stable_id or None, self.kind)
        key = self.cache.key_for(request.identifier)
        if await self.cache.exists(key, self.ext):
            logger.debug(f"使用缓存的{self.kind.value}贴纸: {key}.{self.ext}")
            return self.cache.path_for(key, self.ext).absolute()

        return await self.cache.get_or_create(
            key, self.ext, lambda: self._convert_and_publish(request, key)
        )

    async def _convert_and_publish(self, request: ConversionRequest, key: str) -> Path:
        # an earlier owner may have published between our probe and registration
        if await self.cache.exists(key, self.ext):
            return self.cache.path_for(key, self.ext).absolute()

        try:
            async with self.workspace.scope(f"{self.kind.value}_{key}_") as ws:
                output = await self._convert(request, key, ws)
                path = await self.cache.publish(output, key, self.ext)
        except Exception:
            await self.cache.discard(key, self.ext)
            raise

        logger.info(f"贴纸转换成功: {describe_url(request.source_url)} -> {path.name}")
        return path

    async def _convert(
        self, request: ConversionRequest, key: str, ws: Workspace
    ) -> Path:
        raise NotImplementedError


class WebmConverter(BaseConverter):
    kind = StickerKind.WEBM
    ext = "gif"

    def __init__(
        self,
        cache: StickerCache,
        workspace: WorkspaceManager,
        downloader: Downloader,
        tools: ToolRunner,
    ):
        super().__init__(cache, workspace, downloader)
        self.tools = tools

    async def _convert(
        self, request: ConversionRequest, key: str, ws: Workspace
    ) -> Path:
        source = ws.file("source.webm")
        logger.debug(f"下载 WEBM: {describe_url(request.source_url)}")
        await self.downloader.fetch(request.source_url, source)

        frames = await self.tools.extract_frames(source, ws.frames_dir())
        logger.debug(f"使用 gifski 编码 GIF: {key} ({len(frames)} 帧)")
        return await self.tools.encode_gif(frames, ws.file("output.gif"))


class TgsConverter(BaseConverter):
    """Renders TGS stickers frame by frame and encodes them as GIF.

    Unlike the other converters this one never raises: any failure is logged
    and reported as ``None`` so callers can fall back to a static preview.
    """

    kind = StickerKind.TGS
    ext = "gif"

    def __init__(
        self,
        cache: StickerCache,
        workspace: WorkspaceManager,
        downloader: Downloader,
        tools: ToolRunner,
        renderer: LottieRenderer,
    ):
        super().__init__(cache, workspace, downloader)
        self.tools = tools
        self.renderer = renderer

    async def convert(  # type: ignore[override]
        self, source_url: str, stable_id: str | None = None
    ) -> Path | None:
        try:
            return await super().convert(source_url, stable_id)
        except Exception as e:
            logger.warning(f"TGS 转换失败({describe_url(source_url)}): {e}")
            return None

    async def _convert(
        self, request: ConversionRequest, key: str, ws: Workspace
    ) -> Path:
        data = await self.downloader.fetch_bytes(request.source_url)
        document = AnimationDocument.from_tgs(data)
        step = frame_step(document.frame_rate, TARGET_FPS)

        frames = await self._render_frames(document, step, ws)
        logger.debug(
            f"渲染 TGS: {key}, {len(frames)} 帧 "
            f"(原始 {document.frame_rate}fps, 步长 {step})"
        )
        return await self.tools.encode_gif(frames, ws.file("output.gif"))

    async def _render_frames(
        self, document: AnimationDocument, step: int, ws: Workspace
    ) -> list[Path]:
        frames: list[Path] = []
        try:
            async with self.renderer.open(document, TARGET_SIZE) as surface:
                indices = frame_indices(surface.total_frames, step)
                for number, index in enumerate(indices):
                    png = await surface.render(index)
                    frame = ws.frame_path(number)
                    async with aiofiles.open(frame, "wb") as f:
                        await f.write(png)
                    frames.append(frame)
        except StickerConversionError:
            raise
        except Exception as e:
            raise RenderFailure(f"渲染 TGS 帧失败: {e}") from e

        if not frames:
            raise RenderFailure("没有渲染出任何帧")
        return frames


def sniff_download_suffix(url: str) -> str:
    suffix = url_suffix(url)
    if suffix == ".png":
        return ".png"
    if suffix in (".jpg", ".jpeg"):
        return ".jpg"
    return ".webp"


def resize_image(source: Path, output: Path, width: int = TARGET_SIZE) -> Path:
    try:
        with Image.open(source) as img:
            img.seek(0)
            frame = img.convert("RGBA")
    except (
        UnidentifiedImageError,
        Image.DecompressionBombError,
        OSError,
        ValueError,
    ) as e:
        raise DecodeFailure(f"无法识别的图片: {e}") from e

    height = max(1, round(frame.height * width / frame.width))
    frame = frame.resize((width, height), Image.Resampling.LANCZOS)
    try:
        frame.save(output, format="WEBP", quality=90, method=6)
    except (OSError, ValueError) as e:
        raise ExternalToolFailure("Pillow", reason=f"编码 WEBP 失败: {e}") from e
    return output


class StaticConverter(BaseConverter):
    kind = StickerKind.STATIC
    ext = "webp"

    async def _convert(
        self, request: ConversionRequest, key: str, ws: Workspace
    ) -> Path:
        # the suffix only names the download; the artifact is always webp
        source = ws.file(f"source{sniff_download_suffix(request.source_url)}")
        logger.debug(f"下载静态贴纸: {describe_url(request.source_url)}")
        await self.downloader.fetch(request.source_url, source)

        output = ws.file("output.webp")
        return await asyncio.to_thread(resize_image, source, output, TARGET_SIZE)
