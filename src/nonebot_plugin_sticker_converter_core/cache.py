import os
import asyncio
import hashlib
from pathlib import Path
from typing import TypeVar
from contextlib import asynccontextmanager
from collections.abc import Awaitable, Callable, AsyncIterator

from anyio import Path as AsyncPath
from nonebot import logger

from .exceptions import CacheWriteFailure
from .models import CachedArtifact

T = TypeVar("T")


class StickerCache:
    """Flat, content-addressed artifact cache: one ``<md5>.<ext>`` file per key.

    Artifacts only ever enter the directory through :meth:`publish`, which
    moves a finished file into place with ``os.replace``; the directory
    therefore never exposes a half-written conversion.
    """

    def __init__(self, cache_dir: Path):
        self._cache_dir = Path(cache_dir)
        # In-progress conversion tasks keyed by "<key>.<ext>"; concurrent callers
        # await the same task instead of converting again
        self._tasks: dict[str, asyncio.Future] = {}
        # Artifacts currently being read for upload, with reference counts
        self._holds: dict[Path, int] = {}

    @property
    def cache_dir(self) -> Path:
        return self._cache_dir

    @staticmethod
    def key_for(identifier: str) -> str:
        return hashlib.md5(identifier.encode("utf-8")).hexdigest()

    def path_for(self, key: str, ext: str) -> Path:
        return self._cache_dir / f"{key}.{ext}"

    async def exists(self, key: str, ext: str) -> bool:
        return await AsyncPath(self.path_for(key, ext)).is_file()

    async def publish(self, src: Path, key: str, ext: str) -> Path:
        dest = self.path_for(key, ext)
        try:
            await AsyncPath(self._cache_dir).mkdir(parents=True, exist_ok=True)
            # atomic replace, src must live on the same filesystem
            await asyncio.to_thread(os.replace, str(src), str(dest))
        except OSError as e:
            raise CacheWriteFailure(f"写入缓存失败({dest.name}): {e}") from e
        return dest.absolute()

    async def discard(self, key: str, ext: str) -> None:
        path = AsyncPath(self.path_for(key, ext))
        try:
            await path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"清理缓存文件失败({path.name}): {e}")

    async def get_or_create(
        self, key: str, ext: str, factory: Callable[[], Awaitable[T]]
    ) -> T:
        """Run ``factory`` at most once at a time per ``key``/``ext``.

        The conversion runs in a task owned by the cache, so every caller,
        the one that started it included, only waits for the shared outcome.
        A cancelled caller abandons its own wait while the conversion keeps
        running for everyone else. The entry is dropped as soon as the task
        finishes, so a later call after a failure starts a fresh attempt.
        """
        task_key = f"{key}.{ext}"
        task = self._tasks.get(task_key)
        if task is None or task.done():
            task = asyncio.ensure_future(factory())
            self._tasks[task_key] = task
            task.add_done_callback(lambda t: self._release(task_key, t))
        else:
            logger.debug(f"等待进行中的转换: {task_key}")
        return await asyncio.shield(task)

    def _release(self, task_key: str, task: asyncio.Future) -> None:
        if self._tasks.get(task_key) is task:
            del self._tasks[task_key]
        # mark the outcome retrieved even when no caller is left waiting
        if not task.cancelled():
            task.exception()

    def in_flight(self, key: str, ext: str) -> bool:
        return f"{key}.{ext}" in self._tasks

    @asynccontextmanager
    async def hold(self, path: Path) -> AsyncIterator[Path]:
        path = Path(path).absolute()
        self._holds[path] = self._holds.get(path, 0) + 1
        try:
            yield path
        finally:
            remaining = self._holds[path] - 1
            if remaining:
                self._holds[path] = remaining
            else:
                del self._holds[path]

    def is_held(self, path: Path) -> bool:
        return Path(path).absolute() in self._holds

    async def entries(self) -> list[CachedArtifact]:
        cache_dir = AsyncPath(self._cache_dir)
        if not await cache_dir.is_dir():
            return []

        artifacts: list[CachedArtifact] = []
        async for entry in cache_dir.iterdir():
            try:
                if not await entry.is_file():
                    continue
                stat = await entry.stat()
            except FileNotFoundError:
                # removed between listing and stat
                continue
            artifacts.append(
                CachedArtifact(
                    path=Path(entry).absolute(),
                    format=entry.suffix.lstrip("."),
                    size=stat.st_size,
                    mtime=stat.st_mtime,
                )
            )
        return artifacts

    async def remove(self, artifact: CachedArtifact) -> bool:
        try:
            await AsyncPath(artifact.path).unlink()
        except FileNotFoundError:
            return False
        return True
