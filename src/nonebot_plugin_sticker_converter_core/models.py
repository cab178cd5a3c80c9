from enum import Enum
from pathlib import Path, PurePosixPath
from dataclasses import dataclass
from urllib.parse import unquote, urlsplit

TARGET_SIZE = 256
TARGET_FPS = 50
GIF_QUALITY = 90


class StickerKind(str, Enum):
    STATIC = "static"
    WEBM = "webm"
    TGS = "tgs"

    @classmethod
    def from_url(cls, url: str) -> "StickerKind":
        suffix = url_suffix(url)
        if suffix == ".webm":
            return cls.WEBM
        if suffix == ".tgs":
            return cls.TGS
        return cls.STATIC


def url_suffix(url: str) -> str:
    """Lower-cased file extension of the URL path, ignoring query and fragment."""
    path = unquote(urlsplit(url).path)
    return PurePosixPath(path).suffix.lower()


@dataclass(frozen=True)
class ConversionRequest:
    source_url: str
    stable_id: str | None = None
    kind: StickerKind = StickerKind.STATIC

    @classmethod
    def from_url(
        cls, source_url: str, stable_id: str | None = None
    ) -> "ConversionRequest":
        return cls(source_url, stable_id or None, StickerKind.from_url(source_url))

    @property
    def identifier(self) -> str:
        # file ids are durable, download urls expire and rotate
        return self.stable_id or self.source_url


@dataclass
class CachedArtifact:
    path: Path
    format: str
    size: int
    mtime: float


def describe_url(url: str) -> str:
    """Host and file name only; bot download urls embed the bot token."""
    parts = urlsplit(url)
    name = PurePosixPath(unquote(parts.path)).name
    return f"{parts.netloc}/.../{name}" if name else parts.netloc
