from __future__ import annotations

import os
import threading
import time
from pathlib import Path

import pytest

from wavcache import derivation_cache
from wavcache.cache_keys import ResourceKind, derive_cache_key
from wavcache.derivation_cache import DerivationCache
from wavcache.errors import CachePersistError, CacheReadError, TransformError


class CountingProducer:
    def __init__(self, payload: bytes = b"artifact", delay: float = 0.0) -> None:
        self.payload = payload
        self.delay = delay
        self.calls = 0
        self._lock = threading.Lock()

    def __call__(self) -> bytes:
        with self._lock:
            self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        return self.payload


def test_entry_path_layout(tmp_path: Path):
    cache = DerivationCache(tmp_path / "cache")
    key = derive_cache_key("clip1", "")
    assert cache.entry_path(key, ResourceKind.IMAGE) == tmp_path / "cache" / f"{key}.png"
    assert cache.entry_path(key, ResourceKind.METADATA) == tmp_path / "cache" / f"{key}.json"


def test_second_fetch_is_cache_hit(tmp_path: Path):
    cache = DerivationCache(tmp_path / "cache")
    producer = CountingProducer(b'{"INAM":"x"}')
    key = derive_cache_key("clip1", "")

    first = cache.fetch_or_produce(key, ResourceKind.METADATA, producer)
    second = cache.fetch_or_produce(key, ResourceKind.METADATA, producer)

    assert first == second == b'{"INAM":"x"}'
    assert producer.calls == 1
    assert cache.contains(key, ResourceKind.METADATA)
    assert cache.entry_path(key, ResourceKind.METADATA).read_bytes() == first


def test_kinds_are_cached_independently(tmp_path: Path):
    cache = DerivationCache(tmp_path)
    key = derive_cache_key("clip1", "")
    image = CountingProducer(b"png")
    metadata = CountingProducer(b"json")

    assert cache.fetch_or_produce(key, ResourceKind.IMAGE, image) == b"png"
    assert cache.fetch_or_produce(key, ResourceKind.METADATA, metadata) == b"json"
    assert image.calls == metadata.calls == 1


def test_existing_entry_skips_producer(tmp_path: Path):
    cache = DerivationCache(tmp_path)
    key = derive_cache_key("clip1", "")
    cache.entry_path(key, ResourceKind.IMAGE).write_bytes(b"already here")

    def producer() -> bytes:
        raise AssertionError("producer must not run on a cache hit")

    assert cache.fetch_or_produce(key, ResourceKind.IMAGE, producer) == b"already here"


def test_producer_failure_writes_nothing(tmp_path: Path):
    cache_dir = tmp_path / "cache"
    cache = DerivationCache(cache_dir)
    key = derive_cache_key("clip1", "")

    def producer() -> bytes:
        raise TransformError("sox exited with status 2", returncode=2)

    with pytest.raises(TransformError):
        cache.fetch_or_produce(key, ResourceKind.IMAGE, producer)

    assert not cache.contains(key, ResourceKind.IMAGE)
    assert not cache_dir.exists() or list(cache_dir.iterdir()) == []

    retry = CountingProducer(b"png")
    assert cache.fetch_or_produce(key, ResourceKind.IMAGE, retry) == b"png"
    assert retry.calls == 1


def test_unreadable_entry_raises_read_error(tmp_path: Path):
    cache = DerivationCache(tmp_path)
    key = derive_cache_key("clip1", "")
    cache.entry_path(key, ResourceKind.METADATA).mkdir()
    producer = CountingProducer()

    with pytest.raises(CacheReadError):
        cache.fetch_or_produce(key, ResourceKind.METADATA, producer)
    assert producer.calls == 0


def test_persist_failure_is_distinct_and_leaves_no_temp_files(tmp_path: Path, monkeypatch):
    cache_dir = tmp_path / "cache"
    cache = DerivationCache(cache_dir)
    key = derive_cache_key("clip1", "")

    def failing_replace(src, dst):
        raise OSError(28, "No space left on device")

    monkeypatch.setattr(derivation_cache.os, "replace", failing_replace)

    with pytest.raises(CachePersistError):
        cache.fetch_or_produce(key, ResourceKind.IMAGE, CountingProducer())

    assert list(cache_dir.iterdir()) == []


def test_cache_dir_is_created_on_demand(tmp_path: Path):
    cache_dir = tmp_path / "nested" / "cache"
    cache = DerivationCache(cache_dir)
    key = derive_cache_key("clip1", "")
    cache.fetch_or_produce(key, ResourceKind.IMAGE, CountingProducer())
    assert cache.entry_path(key, ResourceKind.IMAGE).is_file()


def test_concurrent_misses_share_one_producer(tmp_path: Path):
    cache = DerivationCache(tmp_path)
    key = derive_cache_key("busy", "")
    producer = CountingProducer(b"slow artifact", delay=0.2)
    barrier = threading.Barrier(6)
    results: list[bytes] = []
    errors: list[BaseException] = []

    def worker() -> None:
        barrier.wait()
        try:
            results.append(cache.fetch_or_produce(key, ResourceKind.IMAGE, producer))
        except BaseException as exc:  # pragma: no cover - surfaced by assertion
            errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert errors == []
    assert results == [b"slow artifact"] * 6
    assert producer.calls == 1
    assert len(cache._in_flight) == 0


def test_distinct_keys_do_not_block_each_other(tmp_path: Path):
    cache = DerivationCache(tmp_path)
    started = threading.Event()
    release = threading.Event()

    def blocking_producer() -> bytes:
        started.set()
        release.wait(timeout=5)
        return b"slow"

    slow = threading.Thread(
        target=cache.fetch_or_produce,
        args=(derive_cache_key("slow", ""), ResourceKind.IMAGE, blocking_producer),
    )
    slow.start()
    try:
        assert started.wait(timeout=5)
        fast = cache.fetch_or_produce(derive_cache_key("fast", ""), ResourceKind.IMAGE, lambda: b"fast")
        assert fast == b"fast"
    finally:
        release.set()
        slow.join(timeout=5)
    assert os.path.exists(cache.entry_path(derive_cache_key("slow", ""), ResourceKind.IMAGE))


def test_concurrent_misses_share_one_failing_producer(tmp_path: Path):
    cache = DerivationCache(tmp_path / "cache")
    key = derive_cache_key("broken", "")
    calls = []
    calls_lock = threading.Lock()
    barrier = threading.Barrier(4)
    errors: list[BaseException] = []

    def failing_producer() -> bytes:
        with calls_lock:
            calls.append(1)
        time.sleep(0.3)
        raise TransformError("sox exited with status 2", returncode=2)

    def worker() -> None:
        barrier.wait()
        try:
            cache.fetch_or_produce(key, ResourceKind.IMAGE, failing_producer)
        except TransformError as exc:
            errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    started = time.monotonic()
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)
    elapsed = time.monotonic() - started

    assert len(calls) == 1
    assert len(errors) == 4
    assert all(exc.returncode == 2 for exc in errors)
    assert elapsed < 1.0
    assert len(cache._in_flight) == 0
    assert not cache.contains(key, ResourceKind.IMAGE)
