class StickerConversionError(Exception):
    """Base class for every failure raised by the conversion pipeline."""


class DownloadFailure(StickerConversionError):
    pass


class DecodeFailure(StickerConversionError):
    pass


class RenderFailure(StickerConversionError):
    pass


class ExternalToolFailure(StickerConversionError):
    def __init__(
        self,
        tool: str,
        returncode: int | None = None,
        stderr: str = "",
        reason: str | None = None,
    ):
        self.tool = tool
        self.returncode = returncode
        self.stderr = stderr
        if reason is None:
            reason = f"退出码 {returncode}"
        message = f"{tool} {reason}"
        if stderr:
            message = f"{message}: {stderr}"
        super().__init__(message)


class CacheWriteFailure(StickerConversionError):
    pass
