from pydantic import BaseModel

DEFAULT_LOTTIE_JS = (
    "https://cdnjs.cloudflare.com/ajax/libs/bodymovin/5.12.2/lottie_canvas.min.js"
)


class Config(BaseModel):
    sticker_cache_max_mb: float = 100.0
    sticker_cache_target_mb: float | None = None
    sticker_sweep_interval: float = 300.0
    sticker_evict_min_age: float = 60.0
    sticker_tool_timeout: float = 120.0
    sticker_download_timeout: float = 30.0
    sticker_ffmpeg_path: str = "ffmpeg"
    sticker_gifski_path: str = "gifski"
    sticker_lottie_js: str = DEFAULT_LOTTIE_JS
    sticker_render_concurrency: int = 2
