from __future__ import annotations

import json
import threading

import pytest

from intent_healer.config.schema import CacheConfig
from intent_healer.core.cache import CACHE_FILE_NAME, CacheKey, HealCache, extract_page_pattern, normalize_url
from intent_healer.core.models import ActionType, LocatorInfo, LocatorStrategy
from tests.helpers import make_failure

HEALED = LocatorInfo(LocatorStrategy.ID, "signin-button")


def make_key(url: str = "https://app.test/login", locator: str = "login-btn") -> CacheKey:
    return CacheKey.build(url, LocatorInfo(LocatorStrategy.ID, locator), ActionType.CLICK)


@pytest.mark.parametrize(
    ("url", "expected"),
    [
        ("https://app.test/login?next=/home#top", "https://app.test/login"),
        ("https://app.test/orders/123/items/45", "https://app.test/orders/{id}/items/{id}"),
        (
            "https://app.test/users/550e8400-e29b-41d4-a716-446655440000/edit?tab=1",
            "https://app.test/users/{uuid}/edit",
        ),
        ("", ""),
    ],
)
def test_page_pattern_extraction(url, expected):
    assert extract_page_pattern(url) == expected


def test_normalize_url_drops_query_and_fragment():
    assert normalize_url("https://app.test/a?b=1#c") == "https://app.test/a"
    assert normalize_url(None) == ""


def test_cache_key_hash_is_stable_and_ignores_volatile_url_parts():
    first = make_key("https://app.test/orders/1?x=1")
    second = make_key("https://app.test/orders/2#frag")

    assert first == second
    assert first.hash == second.hash
    assert len(first.hash) == 16
    assert make_key(locator="other").hash != first.hash


def test_cache_key_from_failure_uses_locator_action_and_hint():
    failure = make_failure(action_type=ActionType.TYPE, locator="email")
    key = CacheKey.from_failure(failure, "https://app.test/login", "email field")

    assert key.original_locator == LocatorInfo(LocatorStrategy.ID, "email")
    assert key.action_type is ActionType.TYPE
    assert key.intent_hint == "email field"


def test_put_below_admission_threshold_is_a_no_op(clock):
    cache = HealCache(CacheConfig(min_confidence_to_cache=0.85), clock=clock)
    key = make_key()

    assert cache.put(key, HEALED, 0.84) is False
    assert cache.get(key) is None
    assert cache.put(key, HEALED, 0.85) is True
    assert cache.get(key) == HEALED


def test_entry_with_two_failures_out_of_three_is_evicted_on_read(clock):
    cache = HealCache(clock=clock)
    key = make_key()
    cache.put(key, HEALED, 0.95)

    cache.record_success(key)
    cache.record_failure(key)
    cache.record_failure(key)

    assert cache.get(key) is None
    assert len(cache) == 0
    assert cache.stats().evictions == 1


def test_entry_survives_while_failures_are_not_the_majority(clock):
    cache = HealCache(clock=clock)
    key = make_key()
    cache.put(key, HEALED, 0.95)

    cache.record_failure(key)
    cache.record_failure(key)
    assert cache.get(key) == HEALED

    cache.record_success(key)
    cache.record_success(key)
    assert cache.get(key) == HEALED

    cache.record_failure(key)
    assert cache.get(key) is None


def test_entries_expire_after_ttl(clock):
    cache = HealCache(CacheConfig(ttl_seconds=10), clock=clock)
    key = make_key()
    cache.put(key, HEALED, 0.9)

    clock.advance(10)
    assert cache.get(key) == HEALED
    clock.advance(1)
    assert cache.get(key) is None


def test_full_cache_evicts_least_recently_accessed_entry(clock):
    cache = HealCache(CacheConfig(max_entries=2), clock=clock)
    first, second, third = make_key(locator="a"), make_key(locator="b"), make_key(locator="c")

    cache.put(first, HEALED, 0.9)
    clock.advance(1)
    cache.put(second, HEALED, 0.9)
    clock.advance(1)
    cache.get(first)
    clock.advance(1)
    cache.put(third, HEALED, 0.9)

    assert cache.get(second) is None
    assert cache.get(first) == HEALED
    assert cache.get(third) == HEALED


def test_hit_bookkeeping_and_stats(clock):
    cache = HealCache(clock=clock)
    key = make_key()
    cache.put(key, HEALED, 0.9, "matched by text", raw_confidence=0.93, model_id="stub:1")

    cache.get(make_key(locator="missing"))
    entry = cache.get_entry(key)
    cache.get_entry(key)

    assert entry.hit_count == 2
    assert entry.raw_confidence == 0.93
    assert entry.model_id == "stub:1"
    stats = cache.stats()
    assert (stats.size, stats.hits, stats.misses) == (1, 2, 1)
    assert stats.hit_rate == pytest.approx(2 / 3)


def test_invalidate_by_page_pattern_removes_every_matching_entry(clock):
    cache = HealCache(clock=clock)
    cache.put(make_key("https://shop.test/orders/1", "pay"), HEALED, 0.9)
    cache.put(make_key("https://shop.test/orders/2?x=1", "ship"), HEALED, 0.9)
    cache.put(make_key("https://shop.test/cart", "pay"), HEALED, 0.9)

    assert cache.invalidate_by_page_pattern("https://shop.test/orders/999") == 2
    assert len(cache) == 1
    assert cache.invalidate(make_key("https://shop.test/cart", "pay")) is True
    assert len(cache) == 0


def test_cleanup_sweeps_dead_entries(clock):
    cache = HealCache(CacheConfig(ttl_seconds=5), clock=clock)
    cache.put(make_key(locator="old"), HEALED, 0.9)
    clock.advance(4)
    cache.put(make_key(locator="new"), HEALED, 0.9)
    clock.advance(2)

    assert cache.cleanup() == 1
    assert len(cache) == 1


def test_disabled_cache_stores_nothing(clock):
    cache = HealCache(CacheConfig(enabled=False), clock=clock)
    key = make_key()

    assert cache.put(key, HEALED, 0.99) is False
    assert cache.get(key) is None


def test_persistence_round_trip(tmp_path, clock):
    config = CacheConfig(persistence_enabled=True, persistence_dir=str(tmp_path))
    key = make_key()
    cache = HealCache(config, clock=clock)
    cache.put(key, HEALED, 0.91, "by id", raw_confidence=0.95, model_id="stub:1")
    cache.record_success(key)

    rows = json.loads((tmp_path / CACHE_FILE_NAME).read_text(encoding="utf-8"))
    assert rows[0]["healed_locator_value"] == "signin-button"

    reloaded = HealCache(config, clock=clock)
    entry = reloaded.get_entry(key)
    assert entry.healed_locator == HEALED
    assert entry.success_count == 1
    assert entry.raw_confidence == 0.95


def test_persisted_expired_rows_are_dropped_on_load(tmp_path, clock):
    config = CacheConfig(persistence_enabled=True, persistence_dir=str(tmp_path), ttl_seconds=60)
    HealCache(config, clock=clock).put(make_key(), HEALED, 0.9)

    clock.advance(61)
    assert len(HealCache(config, clock=clock)) == 0


def test_unreadable_persistence_file_is_logged_not_raised(tmp_path, clock, caplog):
    (tmp_path / CACHE_FILE_NAME).write_text("{not json", encoding="utf-8")

    cache = HealCache(CacheConfig(persistence_enabled=True, persistence_dir=str(tmp_path)), clock=clock)

    assert len(cache) == 0
    assert "Failed to load heal cache" in caplog.text


def test_cleanup_thread_stops_on_shutdown():
    cache = HealCache(CacheConfig(cleanup_interval_seconds=0.01))
    cache.start_cleanup()
    sweeper = cache._sweeper

    assert sweeper.daemon
    cache.shutdown()
    assert not sweeper.is_alive()


@pytest.mark.parametrize(
    "payload",
    ['{"rows": []}', "[1, 2]", '["x"]', '[{"healed_locator_strategy": "id"}]'],
)
def test_wrongly_shaped_persistence_file_is_logged_not_raised(tmp_path, clock, caplog, payload):
    (tmp_path / CACHE_FILE_NAME).write_text(payload, encoding="utf-8")

    cache = HealCache(CacheConfig(persistence_enabled=True, persistence_dir=str(tmp_path)), clock=clock)

    assert len(cache) == 0
    assert "heal cache" in caplog.text


def test_concurrent_outcome_reports_are_all_counted(clock):
    cache = HealCache(CacheConfig(background_cleanup=False), clock=clock)
    key = make_key()
    cache.put(key, HEALED, 0.95)

    def report():
        for _ in range(250):
            cache.get_entry(key)
            cache.record_success(key)
            cache.record_failure(key)

    threads = [threading.Thread(target=report) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    entry = cache.get_entry(key)
    assert entry.hit_count == 2001
    assert (entry.success_count, entry.failure_count) == (2000, 2000)
    assert cache.stats().hits == 2001


def test_cleanup_runs_safely_alongside_readers(clock):
    cache = HealCache(CacheConfig(ttl_seconds=50, background_cleanup=False), clock=clock)
    keys = [make_key(locator=f"field-{n}") for n in range(50)]
    for key in keys:
        cache.put(key, HEALED, 0.9)
        clock.advance(1)
    seen = []
    errors = []
    done = threading.Event()

    def read():
        try:
            while not done.is_set():
                for key in keys:
                    seen.append(cache.get_entry(key))
        except Exception as exc:
            errors.append(exc)

    def sweep():
        try:
            for _ in range(60):
                clock.advance(1)
                cache.cleanup()
        except Exception as exc:
            errors.append(exc)

    readers = [threading.Thread(target=read) for _ in range(4)]
    for reader in readers:
        reader.start()
    sweeper = threading.Thread(target=sweep)
    sweeper.start()
    sweeper.join()
    done.set()
    for reader in readers:
        reader.join()

    assert errors == []
    assert all(entry is None or entry.healed_locator == HEALED for entry in seen)
    assert len(cache) == 0
