import asyncio
import contextlib
from pathlib import Path
from collections.abc import Sequence

from nonebot import logger

from .exceptions import ExternalToolFailure
from .models import GIF_QUALITY, TARGET_FPS, TARGET_SIZE
from .workspace import FRAME_PATTERN, list_frames

STDERR_TAIL = 500


class ToolRunner:
    """Runs the frame extractor (ffmpeg) and the GIF encoder (gifski)."""

    def __init__(
        self,
        ffmpeg: str = "ffmpeg",
        gifski: str = "gifski",
        timeout: float | None = 120.0,
    ):
        self._ffmpeg = ffmpeg
        self._gifski = gifski
        self._timeout = timeout

    async def run(self, name: str, program: str, *args: str) -> None:
        try:
            proc = await asyncio.create_subprocess_exec(
                program,
                *args,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ExternalToolFailure(name, reason=f"无法启动: {e}") from e

        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), self._timeout)
        except asyncio.TimeoutError as e:
            await self._kill(proc)
            raise ExternalToolFailure(
                name, reason=f"超时({self._timeout}s)未完成"
            ) from e
        except asyncio.CancelledError:
            await self._kill(proc)
            raise

        if proc.returncode != 0:
            tail = stderr.decode("utf-8", "replace").strip()[-STDERR_TAIL:]
            raise ExternalToolFailure(name, proc.returncode, tail)

    @staticmethod
    async def _kill(proc: asyncio.subprocess.Process) -> None:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        await proc.wait()

    async def extract_frames(
        self,
        video: Path,
        frames_dir: Path,
        fps: int = TARGET_FPS,
        width: int = TARGET_SIZE,
    ) -> list[Path]:
        await self.run(
            "ffmpeg",
            self._ffmpeg,
            "-y",
            "-loglevel",
            "error",
            "-i",
            str(video),
            "-vf",
            f"fps={fps},scale={width}:-1:flags=lanczos",
            str(frames_dir / FRAME_PATTERN),
        )
        frames = list_frames(frames_dir)
        if not frames:
            raise ExternalToolFailure("ffmpeg", 0, reason="未输出任何帧")
        logger.debug(f"ffmpeg 提取 {len(frames)} 帧: {video.name}")
        return frames

    async def encode_gif(
        self,
        frames: Sequence[Path],
        output: Path,
        fps: int = TARGET_FPS,
        width: int = TARGET_SIZE,
        quality: int = GIF_QUALITY,
    ) -> Path:
        if not frames:
            raise ExternalToolFailure("gifski", reason="没有可编码的帧")
        await self.run(
            "gifski",
            self._gifski,
            "--fps",
            str(fps),
            "--width",
            str(width),
            "--quality",
            str(quality),
            "-o",
            str(output),
            *(str(frame) for frame in frames),
        )
        if not output.is_file():
            raise ExternalToolFailure("gifski", 0, reason="未生成输出文件")
        return output
