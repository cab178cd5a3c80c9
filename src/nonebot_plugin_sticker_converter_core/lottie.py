import gzip
import json
import math
import zlib
import base64
import asyncio
from string import Template
from typing import Any, Protocol
from dataclasses import dataclass, field
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from collections.abc import AsyncIterator

from nonebot import logger, require

require("nonebot_plugin_htmlrender")

from nonebot_plugin_htmlrender import get_new_page
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page

from .config import DEFAULT_LOTTIE_JS
from .exceptions import DecodeFailure, RenderFailure
from .models import TARGET_FPS, TARGET_SIZE

PLAYER_HTML = Template(
    """<!DOCTYPE html>
<html>
<head>
<style>
html, body { margin: 0; padding: 0; background: transparent; }
#lottie { width: ${size}px; height: ${size}px; overflow: hidden; }
</style>
</head>
<body><div id="lottie"></div></body>
</html>"""
)

LOAD_ANIMATION_JS = """
async (animationData) => {
    const anim = lottie.loadAnimation({
        container: document.getElementById("lottie"),
        renderer: "canvas",
        loop: false,
        autoplay: false,
        animationData,
        rendererSettings: { clearCanvas: true, preserveAspectRatio: "xMidYMid meet" },
    });
    window.__anim = anim;
    if (!anim.isLoaded) {
        await new Promise((resolve, reject) => {
            anim.addEventListener("DOMLoaded", resolve);
            anim.addEventListener("data_failed", () => reject(new Error("data_failed")));
        });
    }
    return anim.totalFrames;
}
"""

RENDER_FRAME_JS = """
(index) => {
    window.__anim.goToAndStop(index, true);
    return document.querySelector("#lottie canvas").toDataURL("image/png");
}
"""

DESTROY_ANIMATION_JS = """
() => {
    if (window.__anim) {
        window.__anim.destroy();
        window.__anim = null;
    }
}
"""


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass
class AnimationDocument:
    frame_rate: float
    in_point: float
    out_point: float
    width: int = TARGET_SIZE
    height: int = TARGET_SIZE
    layers: list[Any] = field(default_factory=list)
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def total_frames(self) -> float:
        return self.out_point - self.in_point

    @classmethod
    def from_tgs(cls, data: bytes) -> "AnimationDocument":
        """Decompress and parse a TGS payload (gzipped Lottie JSON)."""
        try:
            raw = json.loads(gzip.decompress(data).decode("utf-8"))
        except (OSError, EOFError, zlib.error, ValueError) as e:
            raise DecodeFailure(f"TGS 解压或解析失败: {e}") from e
        return cls.from_dict(raw)

    @classmethod
    def from_dict(cls, raw: Any) -> "AnimationDocument":
        if not isinstance(raw, dict):
            raise DecodeFailure("动画文档不是 JSON 对象")

        frame_rate = raw.get("fr")
        in_point = raw.get("ip", 0)
        out_point = raw.get("op")
        layers = raw.get("layers")

        if not _is_number(frame_rate) or frame_rate <= 0:
            raise DecodeFailure(f"动画帧率无效: {frame_rate!r}")
        if not _is_number(in_point) or not _is_number(out_point):
            raise DecodeFailure("动画缺少 ip/op 帧范围")
        if out_point <= in_point:
            raise DecodeFailure(f"动画帧范围为空: ip={in_point}, op={out_point}")
        if not isinstance(layers, list):
            raise DecodeFailure("动画缺少 layers")

        width = raw.get("w", TARGET_SIZE)
        height = raw.get("h", TARGET_SIZE)
        return cls(
            frame_rate=float(frame_rate),
            in_point=float(in_point),
            out_point=float(out_point),
            width=int(width) if _is_number(width) else TARGET_SIZE,
            height=int(height) if _is_number(height) else TARGET_SIZE,
            layers=layers,
            raw=raw,
        )


def frame_step(native_fps: float, target_fps: float = TARGET_FPS) -> int:
    # half-up rounding: 125 fps at a 50 fps target samples every 3rd frame
    return max(1, math.floor(native_fps / target_fps + 0.5))


def frame_indices(total_frames: float, step: int) -> range:
    return range(0, math.ceil(total_frames), step)


class RenderSurface(Protocol):
    total_frames: float

    async def render(self, index: int) -> bytes: ...


class LottieRenderer(Protocol):
    def open(
        self, document: AnimationDocument, size: int = TARGET_SIZE
    ) -> AbstractAsyncContextManager[RenderSurface]: ...


class _PageSurface:
    def __init__(self, page: Page, total_frames: float):
        self._page = page
        self.total_frames = total_frames

    async def render(self, index: int) -> bytes:
        data_url: str = await self._page.evaluate(RENDER_FRAME_JS, index)
        _, _, payload = data_url.partition("base64,")
        if not payload:
            raise RenderFailure(f"第 {index} 帧画布导出为空")
        return base64.b64decode(payload)


class BrowserLottieRenderer:
    """Plays Lottie documents with lottie-web inside a headless browser page.

    Every :meth:`open` gets its own page (and browser context) from
    nonebot_plugin_htmlrender, so concurrent conversions never share player
    state. The semaphore only bounds how many pages are open at once.
    """

    def __init__(self, lottie_js: str = DEFAULT_LOTTIE_JS, concurrency: int = 2):
        self._lottie_js = lottie_js
        self._semaphore = asyncio.Semaphore(max(1, concurrency))

    @asynccontextmanager
    async def open(
        self, document: AnimationDocument, size: int = TARGET_SIZE
    ) -> AsyncIterator[RenderSurface]:
        async with self._semaphore:
            try:
                async with get_new_page(
                    device_scale_factor=1,
                    viewport={"width": size, "height": size},
                ) as page:
                    surface = await self._load(page, document, size)
                    try:
                        yield surface
                    finally:
                        await self._destroy(page)
            except PlaywrightError as e:
                raise RenderFailure(f"无头渲染失败: {e}") from e

    async def _load(
        self, page: Page, document: AnimationDocument, size: int
    ) -> _PageSurface:
        await page.set_content(PLAYER_HTML.substitute(size=size))
        if self._lottie_js.startswith(("http://", "https://")):
            await page.add_script_tag(url=self._lottie_js)
        else:
            await page.add_script_tag(path=self._lottie_js)

        total_frames = await page.evaluate(LOAD_ANIMATION_JS, document.raw)
        if not _is_number(total_frames) or total_frames <= 0:
            raise RenderFailure(f"播放器报告的总帧数无效: {total_frames!r}")
        return _PageSurface(page, float(total_frames))

    @staticmethod
    async def _destroy(page: Page) -> None:
        try:
            await page.evaluate(DESTROY_ANIMATION_JS)
        except PlaywrightError as e:
            logger.debug(f"销毁动画实例失败: {e}")
