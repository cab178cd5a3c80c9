from pathlib import Path

import nonebot
import pytest


def pytest_configure(config: pytest.Config) -> None:
    nonebot.init(driver="~none")
    nonebot.load_plugin("nonebot_plugin_sticker_converter_core")


@pytest.fixture
def cache_dir(tmp_path: Path) -> Path:
    return tmp_path / "stickers"


@pytest.fixture
def workspace_dir(tmp_path: Path) -> Path:
    return tmp_path / "workspace"


@pytest.fixture
def sticker_config():
    from nonebot_plugin_sticker_converter_core.config import Config

    return Config(sticker_evict_min_age=0, sticker_tool_timeout=5)
