import time
import asyncio
import contextlib
from enum import Enum
from dataclasses import dataclass, field

from nonebot import logger

from .cache import StickerCache
from .models import CachedArtifact

MB = 1024 * 1024


class SweeperState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    EVICTING = "evicting"


@dataclass
class SweepResult:
    total: int = 0
    freed: int = 0
    removed: list[CachedArtifact] = field(default_factory=list)

    @property
    def remaining(self) -> int:
        return self.total - self.freed


class CacheSweeper:
    """Keeps the artifact cache under a size budget, oldest files first.

    Artifacts pinned through :meth:`StickerCache.hold` and artifacts younger
    than ``min_age`` seconds are never removed; they still count towards the
    total.
    """

    def __init__(
        self,
        cache: StickerCache,
        max_bytes: int = 100 * MB,
        interval: float = 300.0,
        target_bytes: int | None = None,
        min_age: float = 0.0,
    ):
        self._cache = cache
        self._max_bytes = max_bytes
        # the target never exceeds the budget
        self._target_bytes = (
            max_bytes if target_bytes is None else min(target_bytes, max_bytes)
        )
        self._interval = interval
        self._min_age = min_age
        self._task: asyncio.Task | None = None
        self.state = SweeperState.IDLE

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def sweep(self) -> SweepResult:
        self.state = SweeperState.SCANNING
        try:
            entries = await self._cache.entries()
            result = SweepResult(total=sum(e.size for e in entries))
            if result.total <= self._max_bytes:
                return result

            self.state = SweeperState.EVICTING
            logger.info(
                f"贴纸缓存 {result.total / MB:.1f}MB 超出上限 "
                f"{self._max_bytes / MB:.1f}MB, 开始清理"
            )
            await self._evict(entries, result)
            logger.info(
                f"清理了 {len(result.removed)} 个缓存文件, "
                f"释放 {result.freed / MB:.1f}MB"
            )
            if result.remaining > self._target_bytes:
                logger.warning(
                    f"清理后缓存仍有 {result.remaining / MB:.1f}MB, "
                    "剩余文件正在使用或过新"
                )
            return result
        finally:
            self.state = SweeperState.IDLE

    async def _evict(self, entries: list[CachedArtifact], result: SweepResult) -> None:
        now = time.time()
        for artifact in sorted(entries, key=lambda e: e.mtime):
            if result.remaining <= self._target_bytes:
                break
            if self._cache.is_held(artifact.path):
                logger.debug(f"跳过正在使用的缓存: {artifact.path.name}")
                continue
            if self._min_age and now - artifact.mtime < self._min_age:
                continue
            try:
                removed = await self._cache.remove(artifact)
            except OSError as e:
                logger.warning(f"删除缓存文件失败({artifact.path.name}): {e}")
                continue
            # a file that vanished on its own is freed space all the same
            result.freed += artifact.size
            if removed:
                result.removed.append(artifact)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.debug(f"缓存清理任务已启动, 间隔 {self._interval}s")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _run(self) -> None:
        while True:
            try:
                await self.sweep()
            except Exception as e:
                logger.warning(f"缓存清理失败: {e}")
            await asyncio.sleep(self._interval)
