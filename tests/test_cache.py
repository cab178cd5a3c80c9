import asyncio
import hashlib
from pathlib import Path

import pytest

from nonebot_plugin_sticker_converter_core.cache import StickerCache
from nonebot_plugin_sticker_converter_core.exceptions import CacheWriteFailure


def test_key_is_md5_of_identifier():
    assert StickerCache.key_for("abc123") == hashlib.md5(b"abc123").hexdigest()
    assert StickerCache.key_for("abc123") == StickerCache.key_for("abc123")
    assert StickerCache.key_for("abc123") != StickerCache.key_for("abc124")


def test_path_for_is_flat(cache_dir: Path):
    cache = StickerCache(cache_dir)
    key = cache.key_for("file-id")
    assert cache.path_for(key, "gif") == cache_dir / f"{key}.gif"
    # pure string construction, nothing created
    assert not cache_dir.exists()


async def test_publish_moves_artifact_into_place(cache_dir: Path, tmp_path: Path):
    cache = StickerCache(cache_dir)
    src = tmp_path / "output.gif"
    src.write_bytes(b"GIF89a")

    assert not await cache.exists("k", "gif")
    path = await cache.publish(src, "k", "gif")

    assert path == (cache_dir / "k.gif").absolute()
    assert path.read_bytes() == b"GIF89a"
    assert not src.exists()
    assert await cache.exists("k", "gif")


async def test_publish_missing_source_raises_cache_write_failure(
    cache_dir: Path, tmp_path: Path
):
    cache = StickerCache(cache_dir)
    with pytest.raises(CacheWriteFailure):
        await cache.publish(tmp_path / "missing.gif", "k", "gif")
    assert not await cache.exists("k", "gif")


async def test_get_or_create_runs_factory_once_for_concurrent_callers(
    cache_dir: Path,
):
    cache = StickerCache(cache_dir)
    calls = 0
    release = asyncio.Event()

    async def factory():
        nonlocal calls
        calls += 1
        await release.wait()
        return "result"

    tasks = [
        asyncio.create_task(cache.get_or_create("k", "gif", factory))
        for _ in range(5)
    ]
    await asyncio.sleep(0)
    assert cache.in_flight("k", "gif")
    release.set()

    assert await asyncio.gather(*tasks) == ["result"] * 5
    assert calls == 1
    assert not cache.in_flight("k", "gif")


async def test_get_or_create_shares_failure_then_allows_retry(cache_dir: Path):
    cache = StickerCache(cache_dir)
    release = asyncio.Event()
    attempts = 0

    async def failing():
        nonlocal attempts
        attempts += 1
        await release.wait()
        raise ValueError("boom")

    tasks = [
        asyncio.create_task(cache.get_or_create("k", "gif", failing))
        for _ in range(3)
    ]
    await asyncio.sleep(0)
    release.set()
    results = await asyncio.gather(*tasks, return_exceptions=True)

    assert all(isinstance(r, ValueError) for r in results)
    assert attempts == 1

    async def succeeding():
        return "ok"

    assert await cache.get_or_create("k", "gif", succeeding) == "ok"


async def test_cancelled_caller_does_not_abort_shared_conversion(cache_dir: Path):
    cache = StickerCache(cache_dir)
    release = asyncio.Event()
    calls = 0

    async def factory():
        nonlocal calls
        calls += 1
        await release.wait()
        return "result"

    first = asyncio.create_task(cache.get_or_create("k", "gif", factory))
    await asyncio.sleep(0)
    second = asyncio.create_task(cache.get_or_create("k", "gif", factory))
    await asyncio.sleep(0)

    first.cancel()
    with pytest.raises(asyncio.CancelledError):
        await first
    assert cache.in_flight("k", "gif")

    release.set()
    assert await second == "result"
    assert calls == 1
    assert not cache.in_flight("k", "gif")


async def test_conversion_finishes_after_every_caller_is_cancelled(cache_dir: Path):
    cache = StickerCache(cache_dir)
    release = asyncio.Event()
    finished = asyncio.Event()

    async def factory():
        await release.wait()
        finished.set()
        return "result"

    caller = asyncio.create_task(cache.get_or_create("k", "gif", factory))
    await asyncio.sleep(0)
    caller.cancel()
    with pytest.raises(asyncio.CancelledError):
        await caller

    release.set()
    await asyncio.wait_for(finished.wait(), 1)
    await asyncio.sleep(0.01)
    assert not cache.in_flight("k", "gif")


async def test_get_or_create_keys_by_extension(cache_dir: Path):
    cache = StickerCache(cache_dir)

    async def make(value):
        await asyncio.sleep(0.01)
        return value

    gif, webp = await asyncio.gather(
        cache.get_or_create("k", "gif", lambda: make("gif")),
        cache.get_or_create("k", "webp", lambda: make("webp")),
    )
    assert (gif, webp) == ("gif", "webp")


async def test_hold_is_reference_counted(cache_dir: Path):
    cache = StickerCache(cache_dir)
    path = cache.path_for("k", "gif")

    async with cache.hold(path):
        async with cache.hold(path):
            assert cache.is_held(path)
        assert cache.is_held(path)
    assert not cache.is_held(path)


async def test_entries_lists_files_only(cache_dir: Path):
    cache = StickerCache(cache_dir)
    assert await cache.entries() == []

    cache_dir.mkdir()
    (cache_dir / "a.gif").write_bytes(b"x" * 10)
    (cache_dir / "b.webp").write_bytes(b"x" * 20)
    (cache_dir / "nested").mkdir()

    entries = sorted(await cache.entries(), key=lambda e: e.path.name)
    assert [(e.path.name, e.format, e.size) for e in entries] == [
        ("a.gif", "gif", 10),
        ("b.webp", "webp", 20),
    ]
