import shutil
import asyncio
import tempfile
from pathlib import Path
from dataclasses import dataclass
from contextlib import asynccontextmanager
from collections.abc import AsyncIterator

from anyio import Path as AsyncPath
from nonebot import logger

FRAME_PATTERN = "frame_%04d.png"


def list_frames(frames_dir: Path) -> list[Path]:
    """Numbered frames in ``frames_dir``, in playback order."""
    if not frames_dir.is_dir():
        return []
    return sorted(frames_dir.glob("frame_*.png"))


@dataclass
class Workspace:
    path: Path

    def file(self, name: str) -> Path:
        return self.path / name

    def frames_dir(self) -> Path:
        return self.path / "frames"

    def frame_path(self, index: int) -> Path:
        return self.frames_dir() / (FRAME_PATTERN % index)


class WorkspaceManager:
    """Hands out per-conversion scratch directories under a shared root."""

    def __init__(self, root: Path):
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    @asynccontextmanager
    async def scope(self, prefix: str) -> AsyncIterator[Workspace]:
        await AsyncPath(self._root).mkdir(parents=True, exist_ok=True)
        path = Path(
            await asyncio.to_thread(tempfile.mkdtemp, prefix=prefix, dir=self._root)
        )
        workspace = Workspace(path)
        try:
            await AsyncPath(workspace.frames_dir()).mkdir()
            yield workspace
        finally:
            await self._remove(path)

    @staticmethod
    async def _remove(path: Path) -> None:
        try:
            await asyncio.to_thread(shutil.rmtree, path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"清理临时目录失败({path}): {e}")
